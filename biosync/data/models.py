from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class DeviceStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class PunchType(str, Enum):
    IN = "IN"
    OUT = "OUT"
    BREAK = "BREAK"


class SyncStatus(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Device:
    id: Optional[int]
    name: str
    ip: str
    port: int = 4370
    status: DeviceStatus = DeviceStatus.ACTIVE
    password: int = 0
    location: str = ""
    serialnumber: Optional[str] = None
    firmware: Optional[str] = None
    platform: Optional[str] = None
    device_name: Optional[str] = None
    last_connected: Optional[str] = None
    last_error: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == DeviceStatus.ACTIVE


@dataclass
class EmployeeDeviceMapping:
    employee_id: int
    device_user_id: str
    # None means the id applies on every terminal
    device_id: Optional[int] = None


@dataclass
class PunchLog:
    id: Optional[int]
    employee_id: int
    device_id: int
    punch_time: str
    punch_type: PunchType
    verification_method: str
    device_user_id: str = ""
    raw_data: str = ""
    processed: bool = False

    @property
    def dedup_key(self):
        return (self.employee_id, self.device_id, self.punch_time)


@dataclass
class SyncLogEntry:
    id: Optional[int]
    device_id: int
    sync_type: str = "attendance"
    status: SyncStatus = SyncStatus.STARTED
    records_synced: int = 0
    duration_s: Optional[float] = None
    error_message: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None


# Shapes reported by the terminal itself. Never persisted as-is.

@dataclass(frozen=True)
class DeviceInfo:
    serial_number: str
    firmware_version: str
    platform: str
    device_name: str
    user_count: int = 0
    fingerprint_count: int = 0
    log_count: int = 0
    log_capacity: int = 0
    mac: Optional[str] = None


@dataclass(frozen=True)
class DeviceUser:
    uid: int
    user_id: str
    name: str = ""
    privilege: int = 0
    password: str = ""
    group_id: str = ""
    card: int = 0


@dataclass(frozen=True)
class AttendanceRecord:
    user_id: str
    user_sn: int
    timestamp: Optional[datetime]
    direction: int = 0
    verify_mode: int = 1
