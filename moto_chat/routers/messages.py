from fastapi import APIRouter, Depends, Query

from moto_chat.schemas.messaging import EditMessageRequest, ReactionRequest
from moto_chat.schemas.user import Principal
from moto_chat.services.messaging_service import MessagingService
from moto_chat.utils.dependencies import get_current_user, get_messaging_service


router = APIRouter(prefix="/messages", tags=["messages"])


@router.get("/search")
async def search_messages(
    q: str = Query(..., min_length=1),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    current_user: Principal = Depends(get_current_user),
    service: MessagingService = Depends(get_messaging_service),
):
    return await service.search_messages(q, current_user.role, page=page, limit=limit, user_id=current_user.user_id)


@router.patch("/{message_id}")
async def edit_message(message_id: str, body: EditMessageRequest, current_user: Principal = Depends(get_current_user), service: MessagingService = Depends(get_messaging_service)):
    return await service.edit_message(message_id, current_user.user_id, current_user.role, body.content)


@router.delete("/{message_id}")
async def delete_message(message_id: str, current_user: Principal = Depends(get_current_user), service: MessagingService = Depends(get_messaging_service)):
    return await service.delete_message(message_id, current_user.user_id, current_user.role)


@router.post("/{message_id}/reactions")
async def add_reaction(message_id: str, body: ReactionRequest, current_user: Principal = Depends(get_current_user), service: MessagingService = Depends(get_messaging_service)):
    return await service.add_reaction(message_id, current_user.user_id, current_user.role, body.emoji)


@router.delete("/{message_id}/reactions")
async def remove_reaction(message_id: str, emoji: str = Query(..., min_length=1), current_user: Principal = Depends(get_current_user), service: MessagingService = Depends(get_messaging_service)):
    return await service.remove_reaction(message_id, current_user.user_id, current_user.role, emoji)
