"""Live connection registry for the real-time gateway.

Tracks which sockets belong to which user and which conversation rooms each
socket has joined. Registry mutations never await, so under the event loop
each connect/join/leave/disconnect is applied atomically.

Presence is per process: a user is online here iff this process holds at least
one of their sockets.
"""
import asyncio
import json
import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder


logger = logging.getLogger(__name__)


class ConnectionManager:

    def __init__(self) -> None:
        # user_id -> {connection_id: websocket}
        self.active_connections: Dict[str, Dict[str, WebSocket]] = {}
        self._owners: Dict[str, str] = {}
        # conversation_id -> connection ids joined to that room
        self._rooms: Dict[str, Set[str]] = {}
        self._joined: Dict[str, Set[str]] = {}
        self._bus = None

    def attach_bus(self, bus) -> None:
        """Route emits through a cross-instance bus instead of delivering directly."""
        self._bus = bus if getattr(bus, "enabled", False) else None

    async def connect(self, user_id: str, websocket: WebSocket) -> Tuple[str, bool]:
        """Accept and register a socket. Returns (connection_id, came_online)."""
        await websocket.accept()
        connection_id = uuid.uuid4().hex
        came_online = not self.active_connections.get(user_id)
        self.active_connections.setdefault(user_id, {})[connection_id] = websocket
        self._owners[connection_id] = user_id
        self._joined[connection_id] = set()
        logger.info("Connection %s opened for user %s", connection_id, user_id)
        return connection_id, came_online

    def disconnect(self, connection_id: str) -> Tuple[Optional[str], bool]:
        """Forget a socket. Returns (user_id, went_offline)."""
        user_id = self._owners.pop(connection_id, None)
        for conversation_id in self._joined.pop(connection_id, set()):
            members = self._rooms.get(conversation_id)
            if members is not None:
                members.discard(connection_id)
                if not members:
                    del self._rooms[conversation_id]
        if user_id is None:
            return None, False
        connections = self.active_connections.get(user_id, {})
        connections.pop(connection_id, None)
        went_offline = not connections
        if went_offline:
            self.active_connections.pop(user_id, None)
        logger.info("Connection %s closed for user %s", connection_id, user_id)
        return user_id, went_offline

    def join(self, connection_id: str, conversation_id: str) -> bool:
        if connection_id not in self._owners:
            return False
        self._rooms.setdefault(conversation_id, set()).add(connection_id)
        self._joined[connection_id].add(conversation_id)
        return True

    def leave(self, connection_id: str, conversation_id: str) -> bool:
        members = self._rooms.get(conversation_id)
        if not members or connection_id not in members:
            return False
        members.discard(connection_id)
        if not members:
            del self._rooms[conversation_id]
        self._joined.get(connection_id, set()).discard(conversation_id)
        return True

    def in_room(self, connection_id: str, conversation_id: str) -> bool:
        return connection_id in self._rooms.get(conversation_id, set())

    def room_size(self, conversation_id: str) -> int:
        return len(self._rooms.get(conversation_id, ()))

    def is_online(self, user_id: str) -> bool:
        return bool(self.active_connections.get(user_id))

    def online_user_ids(self) -> List[str]:
        return [uid for uid, conns in self.active_connections.items() if conns]

    def connection_count(self, user_id: str) -> int:
        return len(self.active_connections.get(user_id, {}))

    async def emit_to_conversation(
        self,
        conversation_id: str,
        event: str,
        payload: Dict[str, Any],
        exclude_connection: Optional[str] = None,
    ) -> None:
        await self._dispatch({
            "scope": "conversation",
            "target": conversation_id,
            "event": event,
            "data": jsonable_encoder(payload),
            "exclude": exclude_connection,
        })

    async def emit_to_user(self, user_id: str, event: str, payload: Dict[str, Any]) -> None:
        await self._dispatch({
            "scope": "user",
            "target": user_id,
            "event": event,
            "data": jsonable_encoder(payload),
            "exclude": None,
        })

    async def emit_to_users(self, user_ids: Iterable[str], event: str, payload: Dict[str, Any]) -> None:
        for user_id in dict.fromkeys(user_ids):
            await self.emit_to_user(user_id, event, payload)

    async def send_to_connection(self, connection_id: str, event: str, payload: Dict[str, Any]) -> bool:
        user_id = self._owners.get(connection_id)
        websocket = self.active_connections.get(user_id, {}).get(connection_id) if user_id else None
        if websocket is None:
            return False
        ok = await self._safe_send(websocket, self._frame(event, jsonable_encoder(payload)))
        if not ok:
            self.disconnect(connection_id)
        return ok

    async def _dispatch(self, envelope: Dict[str, Any]) -> None:
        if self._bus is not None:
            await self._bus.publish(json.dumps(envelope))
            return
        await self.deliver(envelope)

    async def deliver(self, envelope: Dict[str, Any]) -> None:
        """Send an envelope to the matching local sockets."""
        if envelope.get("scope") == "conversation":
            connection_ids = list(self._rooms.get(envelope["target"], ()))
        else:
            connection_ids = list(self.active_connections.get(envelope["target"], {}).keys())
        exclude = envelope.get("exclude")
        targets: List[Tuple[str, WebSocket]] = []
        for connection_id in connection_ids:
            if connection_id == exclude:
                continue
            user_id = self._owners.get(connection_id)
            websocket = self.active_connections.get(user_id, {}).get(connection_id)
            if websocket is not None:
                targets.append((connection_id, websocket))
        if not targets:
            return
        frame = self._frame(envelope["event"], envelope.get("data"))
        results = await asyncio.gather(*[self._safe_send(ws, frame) for _, ws in targets])
        for (connection_id, _), ok in zip(targets, results):
            if not ok:
                logger.debug("Dropping dead connection %s", connection_id)
                self.disconnect(connection_id)

    async def _safe_send(self, websocket: WebSocket, frame: str) -> bool:
        try:
            await websocket.send_text(frame)
            return True
        except Exception as exc:
            logger.debug("Failed to send to connection: %s", exc)
            return False

    def _frame(self, event: str, data: Any) -> str:
        return json.dumps({"event": event, "data": data})


_manager: Optional[ConnectionManager] = None


def get_connection_manager() -> ConnectionManager:
    global _manager
    if _manager is None:
        _manager = ConnectionManager()
    return _manager
