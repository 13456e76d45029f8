import re
from datetime import datetime
from typing import Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import DESCENDING, ReturnDocument

from doubt_solver.models.conversations import ConversationRecord, Message
from doubt_solver.models.documents import utcnow


def _to_record(doc: Optional[dict]) -> Optional[ConversationRecord]:
    if not doc:
        return None
    doc["_id"] = str(doc["_id"])
    return ConversationRecord.model_validate(doc)


class ConversationRepository:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.collection = db["conversations"]

    async def ensure_indexes(self):
        await self.collection.create_index([("session_id", 1), ("last_activity", DESCENDING)])
        await self.collection.create_index([("document_id", 1)])
        await self.collection.create_index([("user_id", 1), ("is_active", 1)])
        await self.collection.create_index(
            [("document_id", 1), ("session_id", 1)],
            unique=True,
            partialFilterExpression={"is_active": True},
        )

    async def find_by_id(self, conversation_id: str) -> Optional[ConversationRecord]:
        if not ObjectId.is_valid(conversation_id):
            return None
        return _to_record(await self.collection.find_one({"_id": ObjectId(conversation_id)}))

    async def find_active(self, document_id: str, session_id: str) -> Optional[ConversationRecord]:
        return _to_record(await self.collection.find_one(
            {"document_id": document_id, "session_id": session_id, "is_active": True}
        ))

    async def record_exchange(
        self,
        document_id: str,
        session_id: str,
        user_id: str,
        title: str,
        messages: list[Message],
    ) -> ConversationRecord:
        """Append turns to the session's active conversation, creating it on first use.

        `last_activity` is raised with `$max` in the same update so it never
        moves backwards, whatever the caller's clock says.
        """
        now = max([utcnow()] + [m.timestamp for m in messages])
        doc = await self.collection.find_one_and_update(
            {"document_id": document_id, "session_id": session_id, "is_active": True},
            {
                "$setOnInsert": {"user_id": user_id, "title": title, "created_at": now},
                "$push": {"messages": {"$each": [m.model_dump() for m in messages]}},
                "$max": {"last_activity": now},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return _to_record(doc)

    async def set_title(self, conversation_id: str, title: str) -> bool:
        result = await self.collection.update_one(
            {"_id": ObjectId(conversation_id), "is_active": True},
            {"$set": {"title": title}},
        )
        return result.matched_count > 0

    async def deactivate(self, conversation_id: str) -> bool:
        result = await self.collection.update_one(
            {"_id": ObjectId(conversation_id)},
            {"$set": {"is_active": False}},
        )
        return result.matched_count > 0

    async def list_active(
        self,
        user_id: str,
        document_id: Optional[str] = None,
        query: Optional[str] = None,
        skip: int = 0,
        limit: int = 10,
    ) -> tuple[list[ConversationRecord], int]:
        filters: dict = {"user_id": user_id, "is_active": True}
        if document_id:
            filters["document_id"] = document_id
        if query:
            pattern = re.compile(re.escape(query), re.IGNORECASE)
            filters["$or"] = [{"title": pattern}, {"messages.content": pattern}]

        cursor = self.collection.find(filters).sort("last_activity", DESCENDING).skip(skip).limit(limit)
        conversations = [_to_record(doc) for doc in await cursor.to_list(length=limit)]
        total = await self.collection.count_documents(filters)
        return conversations, total

    async def stats(self, user_id: str, since: datetime, top: int = 5) -> tuple[int, int, list[dict]]:
        """Count the user's active conversations and rank documents by how many each has.

        Returns ``(total, recently active, busiest documents)``. Each ranked
        row carries the document id as ``_id`` plus ``conversationCount`` and
        ``lastActivity``.
        """
        active = {"user_id": user_id, "is_active": True}
        total = await self.collection.count_documents(active)
        recent = await self.collection.count_documents({**active, "last_activity": {"$gte": since}})
        cursor = self.collection.aggregate([
            {"$match": active},
            {"$group": {
                "_id": "$document_id",
                "conversationCount": {"$sum": 1},
                "lastActivity": {"$max": "$last_activity"},
            }},
            {"$sort": {"conversationCount": -1, "lastActivity": -1}},
            {"$limit": top},
        ])
        return total, recent, await cursor.to_list(length=top)

    async def delete_by_document(self, document_id: str) -> int:
        result = await self.collection.delete_many({"document_id": document_id})
        return result.deleted_count
