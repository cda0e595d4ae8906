import asyncio
import json
import logging
from typing import Awaitable, Callable, Optional

import redis.asyncio as redis

from moto_chat.config import get_settings


logger = logging.getLogger(__name__)

EnvelopeHandler = Callable[[dict], Awaitable[None]]


class NoopBus:

    enabled = False

    async def publish(self, message: str) -> None:
        return

    async def run(self, on_envelope: EnvelopeHandler) -> None:
        await asyncio.Future()

    async def close(self) -> None:
        return


class RedisBus:
    """Relays gateway envelopes between app instances over one pub/sub channel.

    Every instance, including the publisher, receives each envelope and
    delivers it to its own sockets.
    """

    enabled = True

    def __init__(self, url: str, channel: str) -> None:
        self._redis = redis.from_url(url)
        self._channel = channel
        self._running = True

    async def publish(self, message: str) -> None:
        await self._redis.publish(self._channel, message)

    async def run(self, on_envelope: EnvelopeHandler) -> None:
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(self._channel)
        try:
            while self._running:
                try:
                    msg = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                except redis.RedisError:
                    logger.exception("Redis relay read failed; retrying")
                    await asyncio.sleep(0.5)
                    continue
                if not msg or msg.get("type") != "message":
                    continue
                data = msg.get("data")
                if isinstance(data, bytes):
                    data = data.decode("utf-8")
                try:
                    envelope = json.loads(data)
                except (TypeError, ValueError):
                    logger.warning("Ignoring malformed relay envelope")
                    continue
                await on_envelope(envelope)
        finally:
            await pubsub.unsubscribe(self._channel)
            await pubsub.aclose()

    async def close(self) -> None:
        self._running = False
        await self._redis.aclose()


_bus = None


async def get_bus():
    global _bus
    if _bus is not None:
        return _bus
    settings = get_settings()
    if not settings.redis_url:
        _bus = NoopBus()
        return _bus
    _bus = RedisBus(settings.redis_url, settings.redis_channel)
    logger.info("Realtime relay enabled on channel %s", settings.redis_channel)
    return _bus


async def reset_bus() -> Optional[object]:
    global _bus
    bus, _bus = _bus, None
    if bus is not None:
        await bus.close()
    return bus
