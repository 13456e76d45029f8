from fastapi import APIRouter, Depends, Query

from doubt_solver.api.deps import Services, get_current_user, get_services
from doubt_solver.models.conversations import (
    ConversationListOut,
    ConversationOut,
    ConversationStats,
    DocumentInfo,
    UpdateTitleRequest,
)
from doubt_solver.models.documents import Pagination
from doubt_solver.models.users import UserRecord

router = APIRouter()


@router.get("", response_model=ConversationListOut)
async def list_conversations(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: UserRecord = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    summaries, total = await services.doubts.list_all(user.id, page, limit)
    return ConversationListOut(conversations=summaries, pagination=Pagination.build(page, limit, total))


# search and stats are registered before /{conversation_id} so they are not taken as ids
@router.get("/search", response_model=ConversationListOut)
async def search_conversations(
    query: str = Query(""),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user: UserRecord = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    summaries, total = await services.doubts.search(user.id, query, page, limit)
    return ConversationListOut(
        conversations=summaries,
        pagination=Pagination.build(page, limit, total),
        query=query.strip(),
    )


@router.get("/stats/overview", response_model=ConversationStats)
async def conversation_stats(
    user: UserRecord = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await services.doubts.stats(user.id)


@router.get("/{conversation_id}", response_model=ConversationOut)
async def get_conversation(
    conversation_id: str,
    user: UserRecord = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    conversation, doc = await services.doubts.conversation(user.id, conversation_id)
    return ConversationOut(
        conversationId=conversation.id,
        sessionId=conversation.session_id,
        title=conversation.title,
        messages=conversation.messages,
        lastActivity=conversation.last_activity,
        documentInfo=DocumentInfo(id=doc.id, name=doc.original_name, type=doc.file_type) if doc else None,
    )


@router.put("/{conversation_id}/title", response_model=dict)
async def update_conversation_title(
    conversation_id: str,
    request: UpdateTitleRequest,
    user: UserRecord = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    conversation = await services.doubts.rename(user.id, conversation_id, request.title)
    return {
        "message": "Conversation title updated successfully",
        "conversationId": conversation.id,
        "title": conversation.title,
    }


@router.delete("/{conversation_id}", response_model=dict)
async def delete_conversation(
    conversation_id: str,
    user: UserRecord = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await services.doubts.clear(user.id, conversation_id)
    return {"message": "Conversation deleted successfully"}
