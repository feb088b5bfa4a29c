from datetime import timedelta

import pytest

from biosync.config import AppConfig, parse_offset
from biosync.errors import ConfigError


def test_defaults():
    cfg = AppConfig()
    assert cfg.device_timeout_s == 15.0
    assert cfg.default_port == 4370
    assert cfg.batch_size == 500
    assert cfg.tzinfo.utcoffset(None) == timedelta(hours=5, minutes=30)


def test_from_env_coerces_types():
    cfg = AppConfig.from_env({
        "BIOSYNC_DB_PATH": "/tmp/x.db",
        "BIOSYNC_BATCH_SIZE": "250",
        "BIOSYNC_DEVICE_TIMEOUT": "7.5",
        "BIOSYNC_CLEAR_AFTER_SYNC": "yes",
        "BIOSYNC_UTC_OFFSET": "-04:00",
        "BIOSYNC_LOG_LEVEL": "",
    })
    assert cfg.db_path == "/tmp/x.db"
    assert cfg.batch_size == 250
    assert cfg.device_timeout_s == 7.5
    assert cfg.clear_after_sync is True
    assert cfg.utc_offset == "-04:00"
    assert cfg.log_level == "INFO"


@pytest.mark.parametrize("env", [
    {"BIOSYNC_BATCH_SIZE": "many"},
    {"BIOSYNC_BATCH_SIZE": "0"},
    {"BIOSYNC_UTC_OFFSET": "IST"},
    {"BIOSYNC_CLEAR_AFTER_SYNC": "maybe"},
])
def test_invalid_env_values(env):
    with pytest.raises(ConfigError):
        AppConfig.from_env(env)


def test_parse_offset_bounds():
    assert parse_offset("+00:00").utcoffset(None) == timedelta(0)
    with pytest.raises(ConfigError):
        parse_offset("+25:00")
