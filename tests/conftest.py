import time
from datetime import datetime
from types import SimpleNamespace
from typing import Dict, List, Optional

import pytest

from biosync.config import AppConfig
from biosync.data.models import (
    AttendanceRecord,
    Device,
    DeviceStatus,
    EmployeeDeviceMapping,
    SyncLogEntry,
    SyncStatus,
)
from biosync.errors import DeviceConnectionError
from biosync.services.audit_service import SyncAudit
from biosync.services.sync_service import SyncOrchestrator


# --- pyzk stand-in -----------------------------------------------------------

def zk_attendance(user_id, ts, punch=0, status=1, uid=1):
    return SimpleNamespace(user_id=user_id, timestamp=ts, punch=punch, status=status, uid=uid)


class FakeZK:
    def __init__(self, script, ip, port=4370, timeout=60, password=0, force_udp=False, ommit_ping=False, **kw):
        self.script = script
        self.ip = ip
        self.port = port
        self.timeout = timeout
        self.users = 3
        self.fingers = 5
        self.records = len(script.attendance)
        self.rec_cap = 100000
        self.end_live_capture = False

    def _log(self, name):
        self.script.calls.append(name)

    def connect(self):
        self._log("connect")
        if self.script.connect_delay:
            time.sleep(self.script.connect_delay)
        if self.script.connect_errors:
            raise self.script.connect_errors.pop(0)
        return self

    def disconnect(self):
        self._log("disconnect")
        if self.script.disconnect_error:
            raise self.script.disconnect_error
        return True

    def disable_device(self):
        self._log("disable_device")

    def enable_device(self):
        self._log("enable_device")

    def get_attendance(self):
        self._log("get_attendance")
        if self.script.delay:
            time.sleep(self.script.delay)
        return list(self.script.attendance)

    def get_users(self):
        self._log("get_users")
        return list(self.script.users_list)

    def clear_attendance(self):
        self._log("clear_attendance")

    def get_serialnumber(self):
        return "SN123"

    def get_firmware_version(self):
        return "Ver 6.60"

    def get_platform(self):
        return "ZEM560"

    def get_device_name(self):
        return "K40"

    def get_mac(self):
        return "00:17:61:00:00:01"

    def read_sizes(self):
        self._log("read_sizes")

    def live_capture(self, new_timeout=10):
        # like pyzk: registration happens first, then the stop flag is reset
        if self.script.live_setup:
            time.sleep(self.script.live_setup)
        self.end_live_capture = False
        for ev in self.script.live_events:
            yield ev
        while not self.end_live_capture:
            time.sleep(0.01)
            yield None
        self._log("live_capture_end")


class ZKScript:
    """Shared behaviour for every FakeZK a factory builds."""

    def __init__(self, attendance=None, users_list=None, connect_errors=None,
                 disconnect_error=None, live_events=None, delay=0.0,
                 connect_delay=0.0, live_setup=0.0):
        self.attendance = attendance or []
        self.users_list = users_list or []
        self.connect_errors = list(connect_errors or [])
        self.disconnect_error = disconnect_error
        self.live_events = live_events or []
        self.delay = delay
        self.connect_delay = connect_delay
        self.live_setup = live_setup
        self.calls: List[str] = []
        self.instances: List[FakeZK] = []

    def __call__(self, ip, **kwargs):
        zk = FakeZK(self, ip, **kwargs)
        self.instances.append(zk)
        return zk


# --- in-memory store ---------------------------------------------------------

class InMemoryDevices:
    def __init__(self, devices: List[Device]):
        self.by_id = {d.id: d for d in devices}
        self.touched: List[int] = []

    def list_by_status(self, status: DeviceStatus) -> List[Device]:
        return [d for d in self.by_id.values() if d.status == status]

    def get(self, device_id: int) -> Optional[Device]:
        return self.by_id.get(device_id)

    def update_last_connected(self, device_id: int, when: str) -> None:
        self.by_id[device_id].last_connected = when
        self.touched.append(device_id)

    def set_last_error(self, device_id: int, message) -> None:
        self.by_id[device_id].last_error = message


class InMemoryMappings:
    def __init__(self, mappings: List[EmployeeDeviceMapping]):
        self.mappings = mappings
        self.calls = 0

    def list_mappings(self) -> List[EmployeeDeviceMapping]:
        self.calls += 1
        return list(self.mappings)


class InMemoryPunches:
    def __init__(self, fail_calls=(), fail_all=False):
        self.rows: Dict[tuple, object] = {}
        self.fail_calls = set(fail_calls)
        self.fail_all = fail_all
        self.calls = 0

    def insert_ignore_many(self, logs) -> int:
        call = self.calls
        self.calls += 1
        if self.fail_all or call in self.fail_calls:
            raise RuntimeError("payload too large")
        inserted = 0
        for p in logs:
            if p.dedup_key not in self.rows:
                self.rows[p.dedup_key] = p
                inserted += 1
        return inserted

    def count_for_device(self, device_id: int) -> int:
        return sum(1 for k in self.rows if k[1] == device_id)


class InMemorySyncLogs:
    def __init__(self, broken=False):
        self.rows: Dict[int, SyncLogEntry] = {}
        self.broken = broken
        self.finish_calls = 0

    def insert(self, e: SyncLogEntry) -> int:
        if self.broken:
            raise RuntimeError("audit store down")
        e.id = len(self.rows) + 1
        self.rows[e.id] = e
        return e.id

    def finish(self, log_id, status, records_synced, duration_s, error_message, finished_at) -> bool:
        self.finish_calls += 1
        if self.broken:
            raise RuntimeError("audit store down")
        e = self.rows.get(log_id)
        if e is None or e.status != SyncStatus.STARTED:
            return False
        e.status, e.records_synced, e.duration_s = status, records_synced, duration_s
        e.error_message, e.finished_at = error_message, finished_at
        return True

    def last_success(self, device_id):
        done = [e for e in self.rows.values() if e.device_id == device_id and e.status == SyncStatus.COMPLETED]
        return done[-1] if done else None

    def recent(self, device_id, limit=20):
        return [e for e in self.rows.values() if e.device_id == device_id][-limit:]


class FakeSession:
    """Orchestrator-level stand-in for DeviceSession."""

    def __init__(self, records: List[AttendanceRecord], connect_error: Optional[Exception] = None,
                 fetch_error: Optional[Exception] = None, clear_error: Optional[Exception] = None):
        self.records = records
        self.connect_error = connect_error
        self.fetch_error = fetch_error
        self.clear_error = clear_error
        self.events: List[str] = []

    async def connect(self):
        self.events.append("connect")
        if self.connect_error:
            raise self.connect_error

    async def get_attendance_logs(self):
        self.events.append("fetch")
        if self.fetch_error:
            raise self.fetch_error
        return list(self.records)

    async def clear_attendance_logs(self):
        self.events.append("clear")
        if self.clear_error:
            raise self.clear_error

    async def disconnect(self):
        self.events.append("disconnect")


def record(user_id, minute=0, direction=0, verify=1, day=15, hour=9):
    return AttendanceRecord(user_id=str(user_id), user_sn=minute, timestamp=datetime(2025, 1, day, hour, minute, 0),
                            direction=direction, verify_mode=verify)


def unreachable(ip="10.0.0.9"):
    return DeviceConnectionError(f"Connection to {ip}:4370 failed: timed out", host=ip, port=4370, reason="timeout")


@pytest.fixture
def config():
    return AppConfig(batch_size=500, utc_offset="+05:30", connect_retries=1, retry_backoff_s=0)


@pytest.fixture
def make_orchestrator(config):
    """Build an orchestrator over in-memory stores with one FakeSession per device id."""

    def build(devices, sessions, mappings=(), punches=None, sync_logs=None, cfg=None):
        store = SimpleNamespace(
            devices=InMemoryDevices(list(devices)),
            mappings=InMemoryMappings(list(mappings)),
            punches=punches or InMemoryPunches(),
            sync_logs=sync_logs or InMemorySyncLogs(),
        )
        orch = SyncOrchestrator(store.devices, store.mappings, store.punches, SyncAudit(store.sync_logs),
                                config=cfg or config, session_factory=lambda d: sessions[d.id])
        return orch, store

    return build
