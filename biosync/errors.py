from typing import Iterable, Optional


class SyncError(Exception):
    """Base class for attendance-sync failures."""


class ConfigError(SyncError):
    pass


class DeviceConnectionError(SyncError, ConnectionError):
    """Socket or handshake failure talking to a terminal."""

    def __init__(self, message: str, host: str = "", port: int = 0,
                 reason: str = "other", hint: str = ""):
        super().__init__(message)
        self.host = host
        self.port = port
        self.reason = reason
        self.hint = hint


class DeviceTimeoutError(DeviceConnectionError, TimeoutError):
    def __init__(self, message: str, host: str = "", port: int = 0, hint: str = ""):
        super().__init__(message, host=host, port=port, reason="timeout", hint=hint)


class DeviceRequestError(SyncError):
    """The terminal rejected or failed a request on an open session."""


class NotConnectedError(SyncError):
    pass


class AlreadyConnectedError(SyncError):
    pass


class DeviceNotFoundError(SyncError, LookupError):
    def __init__(self, device_id):
        super().__init__(f"Device not found: {device_id}")
        self.device_id = device_id


class PartialWriteError(SyncError):
    def __init__(self, chunk_index: int, size: int, cause: Optional[BaseException] = None):
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Batch {chunk_index + 1} ({size} records) failed{detail}")
        self.chunk_index = chunk_index
        self.size = size
        self.cause = cause


class UnmappedIdentityWarning(UserWarning):
    """Device user ids with no employee mapping. Reported, never raised."""

    def __init__(self, device_id, user_ids: Iterable[str]):
        self.device_id = device_id
        self.user_ids = sorted(set(user_ids))
        super().__init__(
            f"Device {device_id}: {len(self.user_ids)} unmapped device user id(s): "
            + ", ".join(self.user_ids)
        )
