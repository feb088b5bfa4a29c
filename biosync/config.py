import os
import re
from dataclasses import dataclass, fields
from datetime import timedelta, timezone
from typing import Mapping, Optional

from biosync.errors import ConfigError

_OFFSET_RE = re.compile(r"^([+-])(\d{2}):(\d{2})$")


@dataclass
class AppConfig:
    db_path: str = "biosync.db"
    datetime_format: str = "%Y-%m-%d %H:%M:%S"
    device_timeout_s: float = 15.0
    default_port: int = 4370
    connect_retries: int = 2
    retry_backoff_s: float = 2.0
    batch_size: int = 500
    utc_offset: str = "+05:30"
    clear_after_sync: bool = False
    auto_sync_interval_min: int = 5
    max_parallel_devices: int = 1
    disable_device_during_fetch: bool = True
    ommit_ping: bool = True
    force_udp: bool = False
    log_level: str = "INFO"

    def __post_init__(self):
        if self.batch_size < 1:
            raise ConfigError("batch_size must be >= 1")
        if self.connect_retries < 1:
            raise ConfigError("connect_retries must be >= 1")
        if self.max_parallel_devices < 1:
            raise ConfigError("max_parallel_devices must be >= 1")
        if self.device_timeout_s <= 0:
            raise ConfigError("device_timeout_s must be positive")
        parse_offset(self.utc_offset)

    @property
    def tzinfo(self) -> timezone:
        return parse_offset(self.utc_offset)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "AppConfig":
        env = os.environ if environ is None else environ
        values = {}
        for f in fields(cls):
            raw = env.get(_ENV_NAMES.get(f.name, ""))
            if raw is None or raw == "":
                continue
            values[f.name] = _coerce(f.name, f.type, raw)
        return cls(**values)


_ENV_NAMES = {
    "db_path": "BIOSYNC_DB_PATH",
    "device_timeout_s": "BIOSYNC_DEVICE_TIMEOUT",
    "default_port": "BIOSYNC_DEFAULT_PORT",
    "connect_retries": "BIOSYNC_CONNECT_RETRIES",
    "retry_backoff_s": "BIOSYNC_RETRY_BACKOFF",
    "batch_size": "BIOSYNC_BATCH_SIZE",
    "utc_offset": "BIOSYNC_UTC_OFFSET",
    "clear_after_sync": "BIOSYNC_CLEAR_AFTER_SYNC",
    "auto_sync_interval_min": "BIOSYNC_SYNC_INTERVAL_MIN",
    "max_parallel_devices": "BIOSYNC_MAX_PARALLEL",
    "disable_device_during_fetch": "BIOSYNC_DISABLE_DURING_FETCH",
    "ommit_ping": "BIOSYNC_OMMIT_PING",
    "force_udp": "BIOSYNC_FORCE_UDP",
    "log_level": "BIOSYNC_LOG_LEVEL",
}


def _coerce(name: str, type_, raw: str):
    # dataclass field types are plain classes here (no postponed annotations)
    try:
        if type_ is bool:
            lowered = raw.strip().lower()
            if lowered in ("1", "true", "yes", "on"):
                return True
            if lowered in ("0", "false", "no", "off"):
                return False
            raise ValueError(raw)
        if type_ is int:
            return int(raw)
        if type_ is float:
            return float(raw)
    except ValueError:
        raise ConfigError(f"Invalid value for {_ENV_NAMES[name]}: {raw!r}") from None
    return raw.strip()


def parse_offset(value: str) -> timezone:
    """Parse a fixed '+HH:MM' / '-HH:MM' offset into a tzinfo."""
    m = _OFFSET_RE.match(value or "")
    if not m:
        raise ConfigError(f"Invalid UTC offset: {value!r} (expected +HH:MM)")
    sign, hours, minutes = m.group(1), int(m.group(2)), int(m.group(3))
    if hours > 23 or minutes > 59:
        raise ConfigError(f"Invalid UTC offset: {value!r}")
    delta = timedelta(hours=hours, minutes=minutes)
    return timezone(-delta if sign == "-" else delta)


CONFIG = AppConfig()
