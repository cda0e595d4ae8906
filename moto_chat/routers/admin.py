from fastapi import APIRouter, Depends

from moto_chat.schemas.user import MessagingUser, Principal
from moto_chat.services.messaging_service import MessagingService
from moto_chat.utils.dependencies import get_current_user, get_messaging_service


router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/stats")
async def messaging_stats(current_user: Principal = Depends(get_current_user), service: MessagingService = Depends(get_messaging_service)):
    return await service.get_messaging_stats(current_user.role)


@router.get("/staff-users")
async def staff_users(current_user: Principal = Depends(get_current_user), service: MessagingService = Depends(get_messaging_service)):
    users = await service.get_messaging_users(current_user.user_id, current_user.role)
    return {"users": [MessagingUser(**user) for user in users]}
