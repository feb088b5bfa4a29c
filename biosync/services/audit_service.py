import asyncio
import logging
from datetime import datetime
from typing import Callable, List, Optional

from biosync.data.models import SyncLogEntry, SyncStatus
from biosync.data.repositories import SyncLogRepository

logger = logging.getLogger(__name__)


class SyncAudit:
    """Start/finish rows for each sync attempt.

    Best-effort: a failing audit store is logged and otherwise ignored, it
    never aborts the sync being audited.
    """

    def __init__(self, sync_repo: SyncLogRepository, clock: Callable[[], datetime] = datetime.now):
        self.sync_repo = sync_repo
        self.clock = clock

    def _now(self) -> str:
        return self.clock().isoformat(timespec="seconds")

    async def start(self, device_id: int, kind: str = "attendance") -> Optional[int]:
        entry = SyncLogEntry(id=None, device_id=device_id, sync_type=kind,
                             status=SyncStatus.STARTED, started_at=self._now())
        try:
            return await asyncio.to_thread(self.sync_repo.insert, entry)
        except Exception as e:
            logger.warning("audit start for device %s not recorded: %s", device_id, e)
            return None

    async def finish(self, log_id: Optional[int], status: SyncStatus, records_synced: int,
                     duration_s: float, error_message: Optional[str] = None) -> bool:
        if log_id is None:
            return False
        try:
            return await asyncio.to_thread(self.sync_repo.finish, log_id, status, records_synced,
                                           round(duration_s, 3), error_message, self._now())
        except Exception as e:
            logger.warning("audit finish for sync %s not recorded: %s", log_id, e)
            return False

    async def last_success(self, device_id: int) -> Optional[SyncLogEntry]:
        try:
            return await asyncio.to_thread(self.sync_repo.last_success, device_id)
        except Exception as e:
            logger.warning("reading sync history for device %s failed: %s", device_id, e)
            return None

    async def recent(self, device_id: int, limit: int = 20) -> List[SyncLogEntry]:
        try:
            return await asyncio.to_thread(self.sync_repo.recent, device_id, limit)
        except Exception as e:
            logger.warning("reading sync history for device %s failed: %s", device_id, e)
            return []
