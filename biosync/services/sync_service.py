import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from biosync.config import CONFIG, AppConfig
from biosync.data.models import Device, DeviceStatus, SyncStatus
from biosync.data.repositories import DeviceRepository, EmployeeMappingRepository, PunchLogRepository
from biosync.errors import DeviceConnectionError, DeviceNotFoundError, UnmappedIdentityWarning

from .audit_service import SyncAudit
from .identity import IdentityMap
from .normalizer import normalize
from .punch_writer import PunchBatchWriter, dedupe
from .zk_service import DeviceSession

logger = logging.getLogger(__name__)

SYNC_KIND = "attendance"


class SyncOptions:
    def __init__(self,
                 clear_after_sync: bool = False,
                 batch_size: Optional[int] = None):
        self.clear_after_sync = clear_after_sync
        self.batch_size = batch_size


@dataclass
class CachedSnapshot:
    record_count: int = 0
    last_sync_time: Optional[str] = None
    last_sync_records: int = 0

    @property
    def available(self) -> bool:
        return self.record_count > 0


@dataclass
class DeviceSyncResult:
    device_id: Optional[int]
    device_name: str = ""
    success: bool = False
    status: SyncStatus = SyncStatus.STARTED
    total_fetched: int = 0
    synced: int = 0
    inserted: int = 0
    skipped: int = 0
    unmapped_user_ids: List[str] = field(default_factory=list)
    conflicting_user_ids: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    error: Optional[str] = None
    cleared: bool = False
    clear_error: Optional[str] = None
    device_unreachable: bool = False
    cached: Optional[CachedSnapshot] = None
    duration_seconds: float = 0.0

    @property
    def error_count(self) -> int:
        return len(self.errors)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        d["error_count"] = self.error_count
        if self.cached is not None:
            d["cached"]["available"] = self.cached.available
        return d


@dataclass
class FleetSyncResult:
    results: List[DeviceSyncResult] = field(default_factory=list)
    message: str = ""

    @property
    def devices_attempted(self) -> int:
        return len(self.results)

    @property
    def devices_successful(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def devices_failed(self) -> int:
        return self.devices_attempted - self.devices_successful

    @property
    def total_records(self) -> int:
        return sum(r.synced for r in self.results)

    @property
    def success(self) -> bool:
        return self.devices_failed == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "devices_attempted": self.devices_attempted,
            "devices_successful": self.devices_successful,
            "devices_failed": self.devices_failed,
            "total_records": self.total_records,
            "results": [r.to_dict() for r in self.results],
        }


class SyncOrchestrator:
    def __init__(self,
                 devices: DeviceRepository,
                 mappings: EmployeeMappingRepository,
                 punches: PunchLogRepository,
                 audit: SyncAudit,
                 config: AppConfig = CONFIG,
                 session_factory: Optional[Callable[[Device], DeviceSession]] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.devices = devices
        self.mappings = mappings
        self.punches = punches
        self.audit = audit
        self.config = config
        self.session_factory = session_factory or (lambda d: DeviceSession.for_device(d, config))
        self.clock = clock

    def _options(self, options: Optional[SyncOptions]) -> SyncOptions:
        return options or SyncOptions(clear_after_sync=self.config.clear_after_sync)

    async def sync_all(self, options: Optional[SyncOptions] = None) -> FleetSyncResult:
        options = self._options(options)
        devices = await asyncio.to_thread(self.devices.list_by_status, DeviceStatus.ACTIVE)
        if not devices:
            logger.info("no active devices found to sync")
            return FleetSyncResult(message="No active devices found to sync")

        gate = asyncio.Semaphore(self.config.max_parallel_devices)

        async def guarded(device: Device) -> DeviceSyncResult:
            async with gate:
                logger.info("syncing device %s (%s:%s)", device.name, device.ip, device.port)
                try:
                    return await self._run_cycle(device, options)
                except Exception as e:
                    logger.exception("sync of device %s aborted", device.id)
                    return DeviceSyncResult(device_id=device.id, device_name=device.name,
                                            status=SyncStatus.FAILED, error=str(e), errors=[str(e)])

        results = list(await asyncio.gather(*(guarded(d) for d in devices)))
        fleet = FleetSyncResult(results=results)
        fleet.message = f"Sync completed: {fleet.devices_successful}/{fleet.devices_attempted} devices successful"
        for r in results:
            if not r.success:
                fleet.message += f"; {r.device_name or r.device_id} failed: {r.error}"
        logger.info(fleet.message)
        return fleet

    async def sync_one(self, device_id: int, options: Optional[SyncOptions] = None) -> DeviceSyncResult:
        device = await asyncio.to_thread(self.devices.get, device_id)
        if device is None:
            raise DeviceNotFoundError(device_id)
        if not device.is_active:
            logger.info("device %s is %s; syncing on explicit request", device.id, device.status.value)
        return await self._run_cycle(device, self._options(options))

    async def _run_cycle(self, device: Device, options: SyncOptions) -> DeviceSyncResult:
        started = time.monotonic()
        result = DeviceSyncResult(device_id=device.id, device_name=device.name)
        log_id = await self.audit.start(device.id, SYNC_KIND)
        session: Optional[DeviceSession] = None
        stage = "connect"
        try:
            session = self.session_factory(device)
            await session.connect()

            stage = "fetch"
            records = await session.get_attendance_logs()
            result.total_fetched = len(records)

            stage = "resolve"
            mappings = await asyncio.to_thread(self.mappings.list_mappings)
            resolution = IdentityMap(mappings, device.id).resolve_all(records)
            result.skipped = resolution.skipped
            result.unmapped_user_ids = sorted(resolution.unmapped_ids)
            result.conflicting_user_ids = sorted(resolution.conflicting_ids)

            stage = "write"
            tz = self.config.tzinfo
            logs, repeats = dedupe([normalize(r, emp, device.id, tz) for r, emp in resolution.resolved])
            writer = PunchBatchWriter(self.punches, options.batch_size or self.config.batch_size)
            outcome = await writer.write(logs)
            # in-batch repeats collapse into a row that was written
            result.synced = outcome.accepted + (repeats if outcome.confirmed else 0)
            result.inserted = outcome.inserted
            result.skipped += outcome.failed + (0 if outcome.confirmed else repeats)
            result.errors.extend(str(e) for e in outcome.errors)

            if options.clear_after_sync and outcome.confirmed:
                try:
                    await session.clear_attendance_logs()
                    result.cleared = True
                except Exception as e:
                    result.clear_error = str(e)
                    logger.warning("clearing device %s after sync failed: %s", device.id, e)

            await self._touch(device)
            result.success = True
            result.status = SyncStatus.COMPLETED
            if result.unmapped_user_ids:
                logger.warning("%s", UnmappedIdentityWarning(device.id, result.unmapped_user_ids))
        except asyncio.CancelledError:
            result.status = SyncStatus.FAILED
            result.error = "sync cancelled"
            raise
        except Exception as e:
            result.status = SyncStatus.FAILED
            result.error = str(e)
            result.errors.append(str(e))
            logger.error("sync failed for device %s at %s: %s", device.id, stage, e)
            if stage == "connect" and isinstance(e, DeviceConnectionError):
                result.device_unreachable = True
                result.cached = await self._cached_snapshot(device.id)
            await self._record_error(device, str(e))
        finally:
            if session is not None:
                await session.disconnect()
            result.duration_seconds = round(time.monotonic() - started, 3)
            await self.audit.finish(log_id, result.status, result.synced,
                                    result.duration_seconds, result.error)

        logger.info("device %s: %d fetched, %d synced (%d new), %d skipped, %d errors in %.1fs",
                    device.id, result.total_fetched, result.synced, result.inserted,
                    result.skipped, result.error_count, result.duration_seconds)
        return result

    async def _touch(self, device: Device) -> None:
        try:
            await asyncio.to_thread(self.devices.update_last_connected, device.id,
                                    self.clock().isoformat(timespec="seconds"))
        except Exception as e:
            logger.warning("updating last_connected for device %s failed: %s", device.id, e)

    async def _record_error(self, device: Device, message: str) -> None:
        try:
            await asyncio.to_thread(self.devices.set_last_error, device.id, message)
        except Exception as e:
            logger.warning("recording last_error for device %s failed: %s", device.id, e)

    async def _cached_snapshot(self, device_id: int) -> CachedSnapshot:
        snap = CachedSnapshot()
        try:
            snap.record_count = await asyncio.to_thread(self.punches.count_for_device, device_id)
        except Exception as e:
            logger.warning("counting cached punches for device %s failed: %s", device_id, e)
        last = await self.audit.last_success(device_id)
        if last is not None:
            snap.last_sync_time = last.finished_at
            snap.last_sync_records = last.records_synced
        return snap
