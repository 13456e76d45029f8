from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from doubt_solver.models.documents import Pagination, utcnow

MessageType = Literal["user", "ai"]

TITLE_LENGTH = 50


def title_from_question(question: str) -> str:
    if len(question) > TITLE_LENGTH:
        return question[:TITLE_LENGTH] + "..."
    return question


def truncate(text: str, length: int) -> str:
    return text[:length] + "..." if len(text) > length else text


class Message(BaseModel):
    type: MessageType
    content: str
    timestamp: datetime = Field(default_factory=utcnow)


class ConversationRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = Field(default=None, alias="_id")
    document_id: str
    user_id: str
    session_id: str
    title: str = "New Conversation"
    messages: list[Message] = Field(default_factory=list)
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    last_activity: datetime = Field(default_factory=utcnow)

    def to_mongo(self) -> dict:
        return self.model_dump(exclude={"id"})


# ============== request bodies ===============

class AskRequest(BaseModel):
    documentId: str
    question: str = Field(..., min_length=1, max_length=5000)
    sessionId: str = Field(..., min_length=1)
    language: str = "english"


class UpdateTitleRequest(BaseModel):
    title: str


# ============== responses ===============

class AskResponse(BaseModel):
    conversationId: str
    sessionId: str
    question: str
    answer: str
    timestamp: datetime


class DocumentInfo(BaseModel):
    id: str
    name: str
    type: str


class ConversationOut(BaseModel):
    conversationId: str
    sessionId: str
    title: str
    messages: list[Message]
    lastActivity: datetime
    documentInfo: Optional[DocumentInfo] = None


class MessagePreview(BaseModel):
    type: MessageType
    content: str
    timestamp: datetime


class ConversationSummary(BaseModel):
    conversationId: str
    documentId: str
    sessionId: str
    title: str
    lastActivity: datetime
    messageCount: int
    lastMessage: Optional[MessagePreview] = None
    matchingMessages: Optional[list[MessagePreview]] = None

    @classmethod
    def from_record(cls, conv: ConversationRecord) -> "ConversationSummary":
        last = conv.messages[-1] if conv.messages else None
        return cls(
            conversationId=conv.id,
            documentId=conv.document_id,
            sessionId=conv.session_id,
            title=conv.title,
            lastActivity=conv.last_activity,
            messageCount=len(conv.messages),
            lastMessage=MessagePreview(
                type=last.type,
                content=truncate(last.content, 100),
                timestamp=last.timestamp,
            ) if last else None,
        )


class ConversationListOut(BaseModel):
    conversations: list[ConversationSummary]
    pagination: Pagination
    documentInfo: Optional[DocumentInfo] = None
    query: Optional[str] = None


class SuggestionsOut(BaseModel):
    documentId: str
    suggestions: list[str]


class ActiveDocument(BaseModel):
    documentId: str
    documentName: str
    fileType: str
    conversationCount: int
    lastActivity: datetime


class ConversationStats(BaseModel):
    totalConversations: int
    totalDocuments: int
    recentConversations: int
    activeDocuments: list[ActiveDocument]
