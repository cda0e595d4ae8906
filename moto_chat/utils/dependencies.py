from fastapi import Depends, Header

from moto_chat.database.connection import mongo_db_dependency
from moto_chat.errors import AuthenticationError
from moto_chat.repositories.booking_repository import BookingRepository
from moto_chat.repositories.conversation_repository import ConversationRepository
from moto_chat.repositories.message_repository import MessageRepository
from moto_chat.repositories.user_repository import UserRepository
from moto_chat.schemas.user import Principal
from moto_chat.services.messaging_service import MessagingService
from moto_chat.utils.security import authenticate_token, bearer_token
from moto_chat.utils.websocket_manager import get_connection_manager


async def get_current_user(authorization: str | None = Header(default=None)) -> Principal:
    token = bearer_token(authorization)
    if token is None:
        raise AuthenticationError("Authentication required")
    return authenticate_token(token)


def get_messaging_service(db = Depends(mongo_db_dependency)) -> MessagingService:
    return MessagingService(
        conversation_repo=ConversationRepository(db),
        message_repo=MessageRepository(db),
        user_repo=UserRepository(db),
        booking_repo=BookingRepository(db),
        gateway=get_connection_manager(),
    )
