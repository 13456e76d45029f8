from fastapi import APIRouter, Depends, Query

from doubt_solver.api.deps import Services, get_current_user, get_services
from doubt_solver.models.conversations import (
    AskRequest,
    AskResponse,
    ConversationListOut,
    ConversationOut,
    DocumentInfo,
    SuggestionsOut,
)
from doubt_solver.models.documents import Pagination
from doubt_solver.models.users import UserRecord

router = APIRouter()


@router.post("/ask", response_model=AskResponse)
async def ask_doubt(
    request: AskRequest,
    user: UserRecord = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    result = await services.doubts.ask(
        user_id=user.id,
        document_id=request.documentId,
        question=request.question,
        session_id=request.sessionId,
        language=request.language,
    )
    return AskResponse(
        conversationId=result.conversation_id,
        sessionId=result.session_id,
        question=result.question,
        answer=result.answer,
        timestamp=result.timestamp,
    )


@router.get("/conversation/{document_id}/{session_id}", response_model=ConversationOut)
async def get_conversation_history(
    document_id: str,
    session_id: str,
    user: UserRecord = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    conversation, doc = await services.doubts.history(user.id, document_id, session_id)
    return ConversationOut(
        conversationId=conversation.id,
        sessionId=conversation.session_id,
        title=conversation.title,
        messages=conversation.messages,
        lastActivity=conversation.last_activity,
        documentInfo=DocumentInfo(id=doc.id, name=doc.original_name, type=doc.file_type),
    )


@router.get("/conversations/{document_id}", response_model=ConversationListOut)
async def get_document_conversations(
    document_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user: UserRecord = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    doc, summaries, total = await services.doubts.list_for_document(user.id, document_id, page, limit)
    return ConversationListOut(
        conversations=summaries,
        pagination=Pagination.build(page, limit, total),
        documentInfo=DocumentInfo(id=doc.id, name=doc.original_name, type=doc.file_type),
    )


@router.get("/suggestions/{document_id}", response_model=SuggestionsOut)
async def get_suggested_questions(
    document_id: str,
    user: UserRecord = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    suggestions = await services.doubts.suggest_questions(user.id, document_id)
    return SuggestionsOut(documentId=document_id, suggestions=suggestions)


@router.delete("/conversation/{conversation_id}", response_model=dict)
async def clear_conversation(
    conversation_id: str,
    user: UserRecord = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await services.doubts.clear(user.id, conversation_id)
    return {"message": "Conversation cleared successfully"}
