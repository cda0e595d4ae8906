from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from moto_chat.schemas.messaging import SendMessageRequest
from moto_chat.schemas.user import Principal
from moto_chat.services.messaging_service import MessagingService
from moto_chat.utils.dependencies import get_current_user, get_messaging_service


router = APIRouter(prefix="/conversations", tags=["conversations"])


@router.get("")
async def list_conversations(
    status_filter: str = Query("active", alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    current_user: Principal = Depends(get_current_user),
    service: MessagingService = Depends(get_messaging_service),
):
    return await service.get_conversations_for_user(
        current_user.user_id, current_user.role, status=status_filter, page=page, limit=limit
    )


@router.get("/booking/{booking_id}")
async def get_booking_conversation(booking_id: str, current_user: Principal = Depends(get_current_user), service: MessagingService = Depends(get_messaging_service)):
    return await service.get_or_create_booking_conversation(booking_id, current_user.user_id, current_user.role)


@router.get("/direct/{target_user_id}")
async def get_direct_conversation(target_user_id: str, current_user: Principal = Depends(get_current_user), service: MessagingService = Depends(get_messaging_service)):
    return await service.get_or_create_direct_conversation(current_user.user_id, target_user_id, current_user.role)


@router.get("/{conversation_id}/messages")
async def list_messages(
    conversation_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    current_user: Principal = Depends(get_current_user),
    service: MessagingService = Depends(get_messaging_service),
):
    return await service.get_messages(conversation_id, current_user.user_id, current_user.role, page=page, limit=limit)


@router.post("/{conversation_id}/messages", status_code=status.HTTP_201_CREATED)
async def send_message(conversation_id: str, body: SendMessageRequest, current_user: Principal = Depends(get_current_user), service: MessagingService = Depends(get_messaging_service)):
    return await service.send_message(
        conversation_id,
        current_user.user_id,
        current_user.role,
        body.content,
        message_type=body.message_type,
        reply_to=body.reply_to,
        attachment=body.attachment.model_dump() if body.attachment else None,
    )


@router.put("/{conversation_id}/read")
async def mark_read(conversation_id: str, current_user: Principal = Depends(get_current_user), service: MessagingService = Depends(get_messaging_service)):
    return await service.mark_conversation_as_read(conversation_id, current_user.user_id, current_user.role)


@router.put("/{conversation_id}/archive")
async def archive(conversation_id: str, current_user: Principal = Depends(get_current_user), service: MessagingService = Depends(get_messaging_service)):
    return await service.archive_conversation(conversation_id, current_user.user_id, current_user.role)


@router.put("/{conversation_id}/unarchive")
async def unarchive(conversation_id: str, current_user: Principal = Depends(get_current_user), service: MessagingService = Depends(get_messaging_service)):
    return await service.unarchive_conversation(conversation_id, current_user.user_id, current_user.role)


@router.put("/{conversation_id}/close")
async def close(conversation_id: str, current_user: Principal = Depends(get_current_user), service: MessagingService = Depends(get_messaging_service)):
    return await service.close_conversation(conversation_id, current_user.user_id, current_user.role)


@router.delete("/{conversation_id}")
async def delete(conversation_id: str, current_user: Principal = Depends(get_current_user), service: MessagingService = Depends(get_messaging_service)):
    return await service.delete_conversation(conversation_id, current_user.user_id, current_user.role)
