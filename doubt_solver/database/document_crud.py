# doubt_solver/database/document_crud.py
from typing import Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import DESCENDING

from doubt_solver.models.documents import DocumentRecord, source_states_for, utcnow


def _to_record(doc: Optional[dict]) -> Optional[DocumentRecord]:
    if not doc:
        return None
    doc["_id"] = str(doc["_id"])
    return DocumentRecord.model_validate(doc)


class DocumentRepository:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.collection = db["documents"]

    async def ensure_indexes(self):
        await self.collection.create_index([("user_id", 1), ("uploaded_at", DESCENDING)])
        await self.collection.create_index([("processing_status", 1)])

    async def create(self, record: DocumentRecord) -> DocumentRecord:
        result = await self.collection.insert_one(record.to_mongo())
        record.id = str(result.inserted_id)
        return record

    async def find_by_id(self, doc_id: str) -> Optional[DocumentRecord]:
        if not ObjectId.is_valid(doc_id):
            return None
        return _to_record(await self.collection.find_one({"_id": ObjectId(doc_id)}))

    async def find_owned(self, doc_id: str, user_id: str) -> Optional[DocumentRecord]:
        if not ObjectId.is_valid(doc_id):
            return None
        return _to_record(await self.collection.find_one({"_id": ObjectId(doc_id), "user_id": user_id}))

    async def list_by_user(self, user_id: str, skip: int = 0, limit: int = 10) -> tuple[list[DocumentRecord], int]:
        cursor = (
            self.collection.find({"user_id": user_id}, {"extracted_text": 0})
            .sort("uploaded_at", DESCENDING)
            .skip(skip)
            .limit(limit)
        )
        docs = [_to_record(doc) for doc in await cursor.to_list(length=limit)]
        total = await self.collection.count_documents({"user_id": user_id})
        return docs, total

    async def find_by_ids(self, doc_ids: list[str]) -> dict[str, DocumentRecord]:
        ids = [ObjectId(doc_id) for doc_id in doc_ids if ObjectId.is_valid(doc_id)]
        if not ids:
            return {}
        cursor = self.collection.find({"_id": {"$in": ids}}, {"extracted_text": 0})
        docs = [_to_record(doc) for doc in await cursor.to_list(length=len(ids))]
        return {doc.id: doc for doc in docs}

    async def count_by_user(self, user_id: str) -> int:
        return await self.collection.count_documents({"user_id": user_id})

    async def list_ids_by_status(self, statuses: list[str]) -> list[str]:
        cursor = self.collection.find({"processing_status": {"$in": statuses}}, {"_id": 1}).sort("uploaded_at", 1)
        return [str(doc["_id"]) for doc in await cursor.to_list(length=None)]

    async def transition(self, doc_id: str, status: str, **fields) -> bool:
        """Move a document to `status` only if its current status allows it.

        The filter on the current status keeps transitions monotonic even when
        two writers race; a rejected move returns False.
        """
        if not ObjectId.is_valid(doc_id):
            return False
        update = {"processing_status": status, **fields}
        if status == "completed":
            update.setdefault("processed_at", utcnow())
        result = await self.collection.update_one(
            {"_id": ObjectId(doc_id), "processing_status": {"$in": source_states_for(status)}},
            {"$set": update},
        )
        return result.matched_count > 0

    async def delete(self, doc_id: str) -> bool:
        if not ObjectId.is_valid(doc_id):
            return False
        result = await self.collection.delete_one({"_id": ObjectId(doc_id)})
        return result.deleted_count > 0
