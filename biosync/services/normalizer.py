"""Device-native codes and timestamps to the canonical punch representation.

Everything here is pure: no I/O, no clock reads, no exceptions for unknown
codes. Timestamps are rebuilt field-by-field from the terminal's wall clock
and suffixed with the configured business offset; they are never routed
through an aware/UTC conversion, so "device time" and "stored time" read the
same.
"""
import json
from datetime import datetime, timezone
from typing import Dict

from biosync.data.models import AttendanceRecord, PunchLog, PunchType

_PUNCH_TYPES: Dict[int, PunchType] = {
    0: PunchType.IN,
    1: PunchType.OUT,
    2: PunchType.BREAK,
}

VERIFICATION_METHODS: Dict[int, str] = {
    0: "password",
    1: "fingerprint",
    2: "card",
    3: "password+fingerprint",
    4: "password+card",
    5: "fingerprint+card",
    15: "face",
    25: "palm",
}

UNKNOWN_METHOD = "unknown"


def map_punch_type(direction) -> PunchType:
    # Unrecognised codes fall back to IN. Terminals that leave the direction
    # field unset will report every punch as IN.
    try:
        return _PUNCH_TYPES.get(int(direction), PunchType.IN)
    except (TypeError, ValueError):
        return PunchType.IN


def map_verification_method(verify_mode) -> str:
    try:
        return VERIFICATION_METHODS.get(int(verify_mode), UNKNOWN_METHOD)
    except (TypeError, ValueError):
        return UNKNOWN_METHOD


def format_offset(tz: timezone) -> str:
    total = int(tz.utcoffset(None).total_seconds())
    sign = "-" if total < 0 else "+"
    total = abs(total)
    return f"{sign}{total // 3600:02d}:{(total % 3600) // 60:02d}"


def format_device_timestamp(value: datetime, tz: timezone) -> str:
    """Render device wall-clock time as 'YYYY-MM-DDTHH:MM:SS+HH:MM'.

    Only the naive Y/M/D h:m:s fields are used. If the driver hands back an
    aware value its tzinfo is ignored rather than converted.
    """
    return (
        f"{value.year:04d}-{value.month:02d}-{value.day:02d}"
        f"T{value.hour:02d}:{value.minute:02d}:{value.second:02d}"
        f"{format_offset(tz)}"
    )


def raw_payload(record: AttendanceRecord) -> str:
    return json.dumps({
        "user_sn": record.user_sn,
        "device_user_id": record.user_id,
        "direction": record.direction,
        "verify_mode": record.verify_mode,
        "device_time": record.timestamp.strftime("%Y-%m-%d %H:%M:%S") if record.timestamp else None,
    }, sort_keys=True)


def normalize(record: AttendanceRecord, employee_id: int, device_id: int, tz: timezone) -> PunchLog:
    if record.timestamp is None:
        raise ValueError(f"record for device user {record.user_id!r} has no timestamp")
    return PunchLog(
        id=None,
        employee_id=employee_id,
        device_id=device_id,
        punch_time=format_device_timestamp(record.timestamp, tz),
        punch_type=map_punch_type(record.direction),
        verification_method=map_verification_method(record.verify_mode),
        device_user_id=record.user_id,
        raw_data=raw_payload(record),
        processed=False,
    )
