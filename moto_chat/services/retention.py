import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from pymongo.errors import PyMongoError

from moto_chat.repositories.message_repository import MessageRepository


logger = logging.getLogger(__name__)


class RetentionSweeper:
    """Hard-purges messages that have been soft-deleted longer than the retention window."""

    def __init__(self, message_repo: MessageRepository, retention_days: int, interval_seconds: int) -> None:
        self._message_repo = message_repo
        self._retention = timedelta(days=retention_days)
        self._interval = interval_seconds

    async def sweep_once(self, now: Optional[datetime] = None) -> int:
        cutoff = (now or datetime.now(timezone.utc)) - self._retention
        purged = await self._message_repo.purge_deleted(cutoff)
        if purged:
            logger.info("Purged %d messages deleted before %s", purged, cutoff.isoformat())
        return purged

    async def run_forever(self) -> None:
        while True:
            try:
                await self.sweep_once()
            except PyMongoError:
                logger.exception("Retention sweep failed; will retry next interval")
            except Exception:
                logger.exception("Unexpected error in retention sweep; will retry next interval")
            await asyncio.sleep(self._interval)
