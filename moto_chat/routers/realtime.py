import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from moto_chat.errors import AppError, ValidationError
from moto_chat.schemas.user import Principal
from moto_chat.services.messaging_service import MessagingService
from moto_chat.utils.dependencies import get_messaging_service
from moto_chat.utils.security import authenticate_token, bearer_token
from moto_chat.utils.websocket_manager import ConnectionManager, get_connection_manager


logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


@router.websocket("/ws")
async def realtime_socket(websocket: WebSocket, service: MessagingService = Depends(get_messaging_service)):
    # token via ?token=... or Authorization header
    token = websocket.query_params.get("token") or bearer_token(websocket.headers.get("authorization"))
    try:
        principal = authenticate_token(token)
    except AppError as exc:
        logger.info("Rejected socket connection: %s", exc.message)
        await websocket.close(code=4401)
        return

    manager = get_connection_manager()
    user_id = principal.user_id
    connection_id, came_online = await manager.connect(user_id, websocket)
    try:
        online_contacts = [uid for uid in await service.get_contact_ids(user_id) if manager.is_online(uid)]
        await manager.send_to_connection(connection_id, "online_users", {"user_ids": online_contacts})
        if came_online:
            await manager.emit_to_users(online_contacts, "user_online", {"user_id": user_id})

        while True:
            raw = await websocket.receive_text()
            await _handle_frame(raw, principal, connection_id, manager, service)
    except WebSocketDisconnect:
        pass
    except AppError as exc:
        logger.warning("Closing socket %s after error: %s", connection_id, exc.message)
    finally:
        manager.disconnect(connection_id)
        if not manager.is_online(user_id):
            await _announce_offline(user_id, manager, service)


async def _announce_offline(user_id: str, manager: ConnectionManager, service: MessagingService) -> None:
    try:
        contacts = await service.get_contact_ids(user_id)
    except AppError:
        logger.warning("Could not resolve contacts for offline notice of %s", user_id)
        return
    await manager.emit_to_users([uid for uid in contacts if manager.is_online(uid)], "user_offline", {"user_id": user_id})


async def _handle_frame(
    raw: str,
    principal: Principal,
    connection_id: str,
    manager: ConnectionManager,
    service: MessagingService,
) -> None:
    try:
        frame = json.loads(raw)
    except ValueError:
        await manager.send_to_connection(connection_id, "error", {"message": "Invalid JSON frame", "code": "validation_error"})
        return
    if not isinstance(frame, dict):
        await manager.send_to_connection(connection_id, "error", {"message": "Invalid frame", "code": "validation_error"})
        return

    event = frame.get("event")
    data = frame.get("data")
    if not isinstance(data, dict):
        # bare conversation id is accepted as shorthand
        data = {"conversation_id": data}

    try:
        await _dispatch(event, data, principal, connection_id, manager, service)
    except AppError as exc:
        await manager.send_to_connection(connection_id, "error", {"message": exc.message, "code": exc.kind, "event": event})
    except Exception:
        logger.exception("Unhandled error while processing %s on %s", event, connection_id)
        await manager.send_to_connection(connection_id, "error", {"message": "Internal server error", "code": "server_error", "event": event})


async def _dispatch(
    event: Any,
    data: Dict[str, Any],
    principal: Principal,
    connection_id: str,
    manager: ConnectionManager,
    service: MessagingService,
) -> None:
    user_id, role = principal.user_id, principal.role
    conversation_id = data.get("conversation_id")

    if event == "join_conversation":
        conversation_id = await service.authorize_room(_require_id(conversation_id), user_id, role)
        manager.join(connection_id, conversation_id)
        await manager.send_to_connection(connection_id, "conversation_joined", {"conversation_id": conversation_id})
        return

    if event == "leave_conversation":
        manager.leave(connection_id, _require_id(conversation_id))
        await manager.send_to_connection(connection_id, "conversation_left", {"conversation_id": conversation_id})
        return

    if event in ("typing_start", "typing_stop"):
        # fire-and-forget, only inside rooms this socket joined
        if conversation_id and manager.in_room(connection_id, conversation_id):
            out = "user_typing" if event == "typing_start" else "user_stop_typing"
            await manager.emit_to_conversation(
                conversation_id, out, {"conversation_id": conversation_id, "user_id": user_id},
                exclude_connection=connection_id,
            )
        return

    if event == "send_message":
        message = await service.send_message(
            _require_id(conversation_id),
            user_id,
            role,
            data.get("content"),
            message_type=data.get("message_type") or "text",
            reply_to=data.get("reply_to"),
            attachment=data.get("attachment") if isinstance(data.get("attachment"), dict) else None,
        )
        await manager.send_to_connection(connection_id, "message_sent", {
            "conversation_id": conversation_id,
            "message": message,
            "client_temp_id": data.get("client_temp_id"),
        })
        return

    if event == "mark_as_read":
        await service.mark_conversation_as_read(_require_id(conversation_id), user_id, role)
        return

    raise ValidationError(f"Unknown event: {event!r}")


def _require_id(conversation_id: Any) -> str:
    if not isinstance(conversation_id, str) or not conversation_id:
        raise ValidationError("conversation_id is required")
    return conversation_id
