from typing import List, Optional, Sequence

from .db import get_conn
from .models import (
    Device,
    DeviceInfo,
    DeviceStatus,
    EmployeeDeviceMapping,
    PunchLog,
    PunchType,
    SyncLogEntry,
    SyncStatus,
)

_DEVICE_COLS = "id,name,ip,port,status,password,location,serialnumber,firmware,platform,device_name,last_connected,last_error"


def _device_from_row(r) -> Device:
    return Device(id=r[0], name=r[1], ip=r[2], port=int(r[3] or 4370), status=DeviceStatus(r[4] or "active"),
                  password=int(r[5] or 0), location=r[6] or "", serialnumber=r[7], firmware=r[8], platform=r[9],
                  device_name=r[10], last_connected=r[11], last_error=r[12])


class DeviceRepository:
    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path

    def list(self) -> List[Device]:
        with get_conn(self.db_path) as conn:
            cur = conn.cursor()
            cur.execute(f"SELECT {_DEVICE_COLS} FROM devices ORDER BY id")
            rows = cur.fetchall()
        return [_device_from_row(r) for r in rows]

    def list_by_status(self, status: DeviceStatus) -> List[Device]:
        with get_conn(self.db_path) as conn:
            cur = conn.cursor()
            cur.execute(f"SELECT {_DEVICE_COLS} FROM devices WHERE status=? ORDER BY id", (status.value,))
            rows = cur.fetchall()
        return [_device_from_row(r) for r in rows]

    def get(self, device_id: int) -> Optional[Device]:
        with get_conn(self.db_path) as conn:
            cur = conn.cursor()
            cur.execute(f"SELECT {_DEVICE_COLS} FROM devices WHERE id=?", (device_id,))
            r = cur.fetchone()
        if not r:
            return None
        return _device_from_row(r)

    def create(self, d: Device) -> Optional[int]:
        with get_conn(self.db_path) as conn:
            cur = conn.cursor()
            cur.execute(
                "INSERT INTO devices(name,ip,port,status,password,location) VALUES (?,?,?,?,?,?)",
                (d.name, d.ip, d.port, d.status.value, int(d.password or 0), d.location),
            )
            conn.commit()
            return cur.lastrowid

    def update_last_connected(self, device_id: int, when: str) -> None:
        with get_conn(self.db_path) as conn:
            cur = conn.cursor()
            cur.execute("UPDATE devices SET last_connected=?, last_error=NULL WHERE id=?", (when, device_id))
            conn.commit()

    def set_last_error(self, device_id: int, message: Optional[str]) -> None:
        with get_conn(self.db_path) as conn:
            cur = conn.cursor()
            cur.execute("UPDATE devices SET last_error=? WHERE id=?", (message, device_id))
            conn.commit()

    def update_info(self, device_id: int, info: DeviceInfo) -> None:
        with get_conn(self.db_path) as conn:
            cur = conn.cursor()
            cur.execute(
                "UPDATE devices SET serialnumber=?, firmware=?, platform=?, device_name=? WHERE id=?",
                (info.serial_number, info.firmware_version, info.platform, info.device_name, device_id),
            )
            conn.commit()


class EmployeeMappingRepository:
    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path

    def list_mappings(self) -> List[EmployeeDeviceMapping]:
        """All (employee, device user id) pairs that carry a device user id."""
        with get_conn(self.db_path) as conn:
            cur = conn.cursor()
            cur.execute(
                "SELECT employee_id, device_user_id, device_id FROM employee_device_users "
                "WHERE device_user_id IS NOT NULL AND device_user_id <> '' ORDER BY id"
            )
            rows = cur.fetchall()
        return [EmployeeDeviceMapping(employee_id=r[0], device_user_id=str(r[1]), device_id=r[2]) for r in rows]

    def create_employee(self, name: str, code: str = "") -> Optional[int]:
        with get_conn(self.db_path) as conn:
            cur = conn.cursor()
            cur.execute("INSERT INTO employees(code,name) VALUES (?,?)", (code, name))
            conn.commit()
            return cur.lastrowid

    def add_mapping(self, m: EmployeeDeviceMapping) -> Optional[int]:
        with get_conn(self.db_path) as conn:
            cur = conn.cursor()
            cur.execute(
                "INSERT INTO employee_device_users(employee_id,device_id,device_user_id) VALUES (?,?,?)",
                (m.employee_id, m.device_id, str(m.device_user_id)),
            )
            conn.commit()
            return cur.lastrowid


class PunchLogRepository:
    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path

    def insert_ignore_many(self, logs: Sequence[PunchLog]) -> int:
        """Insert rows, silently skipping (employee, device, time) duplicates.

        Runs as one transaction: either the whole chunk lands or none of it.
        Returns the number of rows actually inserted.
        """
        with get_conn(self.db_path) as conn:
            cur = conn.cursor()
            before = conn.total_changes
            try:
                cur.executemany(
                    "INSERT INTO attendance_punch_logs(employee_id,device_id,punch_time,punch_type,"
                    "verification_method,device_user_id,raw_data,processed) VALUES (?,?,?,?,?,?,?,?) "
                    "ON CONFLICT(employee_id,device_id,punch_time) DO NOTHING",
                    [(p.employee_id, p.device_id, p.punch_time, p.punch_type.value, p.verification_method,
                      p.device_user_id, p.raw_data, 1 if p.processed else 0) for p in logs],
                )
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            return conn.total_changes - before

    def count_for_device(self, device_id: int) -> int:
        with get_conn(self.db_path) as conn:
            cur = conn.cursor()
            cur.execute("SELECT COUNT(*) FROM attendance_punch_logs WHERE device_id=?", (device_id,))
            return int(cur.fetchone()[0])

    def list_for_device(self, device_id: int, limit: int = 100) -> List[PunchLog]:
        with get_conn(self.db_path) as conn:
            cur = conn.cursor()
            cur.execute(
                "SELECT id,employee_id,device_id,punch_time,punch_type,verification_method,device_user_id,raw_data,processed "
                "FROM attendance_punch_logs WHERE device_id=? ORDER BY punch_time LIMIT ?",
                (device_id, limit),
            )
            rows = cur.fetchall()
        return [PunchLog(id=r[0], employee_id=r[1], device_id=r[2], punch_time=r[3], punch_type=PunchType(r[4]),
                         verification_method=r[5], device_user_id=r[6] or "", raw_data=r[7] or "",
                         processed=bool(r[8])) for r in rows]


_SYNC_COLS = "id,device_id,sync_type,status,records_synced,duration_s,error_message,started_at,finished_at"


def _sync_from_row(r) -> SyncLogEntry:
    return SyncLogEntry(id=r[0], device_id=r[1], sync_type=r[2], status=SyncStatus(r[3]), records_synced=int(r[4] or 0),
                        duration_s=r[5], error_message=r[6], started_at=r[7], finished_at=r[8])


class SyncLogRepository:
    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path

    def insert(self, e: SyncLogEntry) -> Optional[int]:
        with get_conn(self.db_path) as conn:
            cur = conn.cursor()
            cur.execute(
                "INSERT INTO device_sync_logs(device_id,sync_type,status,records_synced,started_at) VALUES (?,?,?,?,?)",
                (e.device_id, e.sync_type, e.status.value, e.records_synced, e.started_at),
            )
            conn.commit()
            return cur.lastrowid

    def finish(self, log_id: int, status: SyncStatus, records_synced: int, duration_s: float,
               error_message: Optional[str], finished_at: str) -> bool:
        # Only a 'started' row may be closed; a second finish is a no-op
        with get_conn(self.db_path) as conn:
            cur = conn.cursor()
            cur.execute(
                "UPDATE device_sync_logs SET status=?, records_synced=?, duration_s=?, error_message=?, finished_at=? "
                "WHERE id=? AND status=?",
                (status.value, records_synced, duration_s, error_message, finished_at, log_id, SyncStatus.STARTED.value),
            )
            conn.commit()
            return cur.rowcount == 1

    def get(self, log_id: int) -> Optional[SyncLogEntry]:
        with get_conn(self.db_path) as conn:
            cur = conn.cursor()
            cur.execute(f"SELECT {_SYNC_COLS} FROM device_sync_logs WHERE id=?", (log_id,))
            r = cur.fetchone()
        return _sync_from_row(r) if r else None

    def last_success(self, device_id: int) -> Optional[SyncLogEntry]:
        with get_conn(self.db_path) as conn:
            cur = conn.cursor()
            cur.execute(
                f"SELECT {_SYNC_COLS} FROM device_sync_logs WHERE device_id=? AND status=? "
                "ORDER BY finished_at DESC, id DESC LIMIT 1",
                (device_id, SyncStatus.COMPLETED.value),
            )
            r = cur.fetchone()
        return _sync_from_row(r) if r else None

    def recent(self, device_id: int, limit: int = 20) -> List[SyncLogEntry]:
        with get_conn(self.db_path) as conn:
            cur = conn.cursor()
            cur.execute(
                f"SELECT {_SYNC_COLS} FROM device_sync_logs WHERE device_id=? ORDER BY id DESC LIMIT ?",
                (device_id, limit),
            )
            rows = cur.fetchall()
        return [_sync_from_row(r) for r in rows]
