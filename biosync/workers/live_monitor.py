import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional, Set

from biosync.config import CONFIG, AppConfig
from biosync.data.models import AttendanceRecord, Device, PunchLog
from biosync.data.repositories import EmployeeMappingRepository, PunchLogRepository
from biosync.services.identity import RESOLVED, UNMAPPED, IdentityMap
from biosync.services.normalizer import normalize
from biosync.services.punch_writer import PunchBatchWriter
from biosync.services.zk_service import DeviceSession

logger = logging.getLogger(__name__)


@dataclass
class LiveStats:
    received: int = 0
    stored: int = 0
    inserted: int = 0
    skipped: int = 0
    failed: int = 0
    unmapped_user_ids: Set[str] = field(default_factory=set)


class LiveMonitor:
    """Persists punches pushed by a terminal in realtime.

    Uses the same resolve/normalize/insert-or-ignore path as batch sync, so a
    later batch sync over the same window adds no duplicates.
    """

    def __init__(self, device: Device, mappings: EmployeeMappingRepository, punches: PunchLogRepository,
                 config: AppConfig = CONFIG, session: Optional[DeviceSession] = None,
                 on_punch: Optional[Callable[[PunchLog], None]] = None):
        self.device = device
        self.mappings = mappings
        self.config = config
        self.session = session or DeviceSession.for_device(device, config)
        self.writer = PunchBatchWriter(punches, batch_size=1)
        self.on_punch = on_punch
        self.stats = LiveStats()
        self._identity: Optional[IdentityMap] = None

    async def start(self) -> None:
        mappings = await asyncio.to_thread(self.mappings.list_mappings)
        self._identity = IdentityMap(mappings, self.device.id)
        await self.session.connect()
        try:
            await self.session.enable_realtime(self.handle)
        except BaseException:
            await self.session.disconnect()
            raise
        logger.info("live monitor running on device %s (%d mapped users)", self.device.id, len(self._identity))

    async def stop(self) -> None:
        try:
            await self.session.disable_realtime()
        finally:
            await self.session.disconnect()
        logger.info("live monitor stopped on device %s: %s", self.device.id, self.stats)

    async def handle(self, record: AttendanceRecord) -> None:
        self.stats.received += 1
        kind, employee_id = self._identity.classify(record)
        if kind != RESOLVED:
            self.stats.skipped += 1
            if kind == UNMAPPED:
                self.stats.unmapped_user_ids.add(record.user_id)
                logger.warning("device %s: live punch from unmapped user %s", self.device.id, record.user_id)
            return
        log = normalize(record, employee_id, self.device.id, self.config.tzinfo)
        outcome = await self.writer.write([log])
        if outcome.errors:
            self.stats.failed += 1
            return
        self.stats.stored += 1
        self.stats.inserted += outcome.inserted
        if self.on_punch:
            self.on_punch(log)

    async def run(self, stop_event: asyncio.Event) -> LiveStats:
        await self.start()
        try:
            await stop_event.wait()
        finally:
            await self.stop()
        return self.stats
