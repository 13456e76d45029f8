import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from doubt_solver.database.conversation_crud import ConversationRepository
from doubt_solver.database.document_crud import DocumentRepository
from doubt_solver.errors import NotFoundError, UpstreamError, ValidationError
from doubt_solver.models.conversations import (
    ActiveDocument,
    ConversationRecord,
    ConversationStats,
    ConversationSummary,
    Message,
    MessagePreview,
    title_from_question,
    truncate,
)
from doubt_solver.models.documents import DocumentRecord, utcnow
from doubt_solver.services.gemini import GeminiClient

logger = logging.getLogger(__name__)

CONTEXT_TURNS = 10
RECENT_DAYS = 7


@dataclass(frozen=True)
class AskResult:
    conversation_id: str
    session_id: str
    question: str
    answer: str
    timestamp: datetime


class DoubtService:
    def __init__(self, documents: DocumentRepository, conversations: ConversationRepository, llm: GeminiClient):
        self.documents = documents
        self.conversations = conversations
        self.llm = llm

    async def _owned_document(self, user_id: str, document_id: str) -> DocumentRecord:
        doc = await self.documents.find_owned(document_id, user_id)
        if doc is None:
            raise NotFoundError("Document not found or access denied")
        return doc

    async def _completed_document(self, user_id: str, document_id: str) -> DocumentRecord:
        doc = await self._owned_document(user_id, document_id)
        if doc.processing_status != "completed":
            raise ValidationError(
                f"Document is still {doc.processing_status}. Please wait for processing to complete."
            )
        return doc

    async def _owned_conversation(self, user_id: str, conversation_id: str) -> ConversationRecord:
        conversation = await self.conversations.find_by_id(conversation_id)
        if conversation is None or not conversation.is_active or conversation.user_id != user_id:
            raise NotFoundError("Conversation not found")
        return conversation

    async def ask(
        self,
        user_id: str,
        document_id: str,
        question: str,
        session_id: str,
        language: Optional[str] = "english",
    ) -> AskResult:
        question = question.strip()
        if not question:
            raise ValidationError("Question is required")
        doc = await self._completed_document(user_id, document_id)

        # the conversation is only written once there is an answer to store
        conversation = await self.conversations.find_active(document_id, session_id)
        user_turn = Message(type="user", content=question)
        history = (conversation.messages if conversation else []) + [user_turn]

        try:
            answer = await self.llm.answer_question(
                question, doc.extracted_text, history[-CONTEXT_TURNS:], language
            )
        except UpstreamError as e:
            logger.error("Answer generation failed for document %s: %s", document_id, e.message)
            raise UpstreamError("Failed to process your question", upstream_status=e.upstream_status) from e

        ai_turn = Message(type="ai", content=answer)
        conversation = await self.conversations.record_exchange(
            document_id, session_id, user_id, title_from_question(question), [user_turn, ai_turn]
        )

        return AskResult(
            conversation_id=conversation.id,
            session_id=session_id,
            question=question,
            answer=answer,
            timestamp=ai_turn.timestamp,
        )

    async def suggest_questions(self, user_id: str, document_id: str) -> list[str]:
        doc = await self._owned_document(user_id, document_id)
        if doc.processing_status != "completed":
            raise ValidationError("Document is still processing")
        return await self.llm.suggest_questions(doc.extracted_text)

    async def history(self, user_id: str, document_id: str, session_id: str) -> tuple[ConversationRecord, DocumentRecord]:
        doc = await self._owned_document(user_id, document_id)
        conversation = await self.conversations.find_active(document_id, session_id)
        if conversation is None:
            raise NotFoundError("Conversation not found")
        return conversation, doc

    async def conversation(self, user_id: str, conversation_id: str) -> tuple[ConversationRecord, Optional[DocumentRecord]]:
        conversation = await self._owned_conversation(user_id, conversation_id)
        doc = await self.documents.find_by_id(conversation.document_id)
        return conversation, doc

    async def clear(self, user_id: str, conversation_id: str) -> None:
        await self._owned_conversation(user_id, conversation_id)
        await self.conversations.deactivate(conversation_id)

    async def rename(self, user_id: str, conversation_id: str, title: str) -> ConversationRecord:
        title = (title or "").strip()
        if not title:
            raise ValidationError("Title is required")
        conversation = await self._owned_conversation(user_id, conversation_id)
        await self.conversations.set_title(conversation_id, title)
        conversation.title = title
        return conversation

    async def list_for_document(self, user_id: str, document_id: str, page: int, limit: int):
        doc = await self._owned_document(user_id, document_id)
        conversations, total = await self.conversations.list_active(
            user_id, document_id=document_id, skip=(page - 1) * limit, limit=limit
        )
        return doc, [ConversationSummary.from_record(c) for c in conversations], total

    async def list_all(self, user_id: str, page: int, limit: int):
        conversations, total = await self.conversations.list_active(user_id, skip=(page - 1) * limit, limit=limit)
        return [ConversationSummary.from_record(c) for c in conversations], total

    async def search(self, user_id: str, query: str, page: int, limit: int):
        query = (query or "").strip()
        if not query:
            raise ValidationError("Search query is required")
        conversations, total = await self.conversations.list_active(
            user_id, query=query, skip=(page - 1) * limit, limit=limit
        )
        pattern = re.compile(re.escape(query), re.IGNORECASE)
        summaries = []
        for conversation in conversations:
            summary = ConversationSummary.from_record(conversation)
            summary.matchingMessages = [
                MessagePreview(type=m.type, content=truncate(m.content, 150), timestamp=m.timestamp)
                for m in conversation.messages
                if pattern.search(m.content)
            ][:3]
            summaries.append(summary)
        return summaries, total

    async def stats(self, user_id: str) -> ConversationStats:
        since = utcnow() - timedelta(days=RECENT_DAYS)
        total, recent, busiest = await self.conversations.stats(user_id, since)
        documents = await self.documents.find_by_ids([row["_id"] for row in busiest])
        return ConversationStats(
            totalConversations=total,
            totalDocuments=await self.documents.count_by_user(user_id),
            recentConversations=recent,
            activeDocuments=[
                ActiveDocument(
                    documentId=row["_id"],
                    documentName=documents[row["_id"]].original_name,
                    fileType=documents[row["_id"]].file_type,
                    conversationCount=row["conversationCount"],
                    lastActivity=row["lastActivity"],
                )
                for row in busiest
                if row["_id"] in documents
            ],
        )

    async def delete_for_document(self, document_id: str) -> int:
        return await self.conversations.delete_by_document(document_id)
