import asyncio
import errno
import inspect
import logging
import socket
import threading
from datetime import datetime
from enum import Enum
from typing import Any, Callable, List, Optional, Tuple, Union

from zk import ZK
from zk.exception import ZKError, ZKErrorConnection, ZKErrorResponse, ZKNetworkError

from biosync.config import CONFIG, AppConfig
from biosync.data.models import AttendanceRecord, Device, DeviceInfo, DeviceUser
from biosync.errors import (
    AlreadyConnectedError,
    DeviceConnectionError,
    DeviceRequestError,
    DeviceTimeoutError,
    NotConnectedError,
)

logger = logging.getLogger(__name__)

_HINTS = {
    "timeout": "Device is not responding: check it is powered on, on the network, and that the port is not firewalled.",
    "refused": "Connection refused: check the port (default 4370), the device comm settings, and that no other client holds the device.",
    "unreachable": "Network unreachable: check the device and this host share a route and the IP is in the right subnet.",
    "handshake": "Device answered but rejected the session: check the comm password.",
    "other": "Verify IP and port, then restart the device if the problem persists.",
}


class SessionState(str, Enum):
    IDLE = "idle"
    CONNECTED = "connected"
    FAILED = "failed"


def _classify(exc: BaseException) -> str:
    if isinstance(exc, (socket.timeout, TimeoutError, asyncio.TimeoutError)):
        return "timeout"
    if isinstance(exc, ConnectionRefusedError):
        return "refused"
    if isinstance(exc, OSError) and exc.errno in (errno.EHOSTUNREACH, errno.ENETUNREACH):
        return "unreachable"
    if isinstance(exc, (ZKErrorConnection, ZKErrorResponse)):
        return "handshake"
    msg = str(exc).lower()
    if "timed out" in msg or "timeout" in msg:
        return "timeout"
    if "refused" in msg:
        return "refused"
    if "unreachable" in msg or "no route" in msg or "can't reach" in msg:
        return "unreachable"
    return "other"


def _to_device_user(u: Any) -> DeviceUser:
    return DeviceUser(
        uid=int(getattr(u, 'uid', 0) or 0),
        user_id=str(getattr(u, 'user_id', '') or ''),
        name=str(getattr(u, 'name', '') or ''),
        privilege=int(getattr(u, 'privilege', 0) or 0),
        password=str(getattr(u, 'password', '') or ''),
        group_id=str(getattr(u, 'group_id', '') or ''),
        card=int(getattr(u, 'card', 0) or 0),
    )


def _to_attendance(a: Any) -> AttendanceRecord:
    # pyzk: 'punch' is the direction, 'status' is the verification mode, 'uid' the record serial
    ts = getattr(a, 'timestamp', None)
    verify = getattr(a, 'status', None)
    return AttendanceRecord(
        user_id=str(getattr(a, 'user_id', '') or ''),
        user_sn=int(getattr(a, 'uid', 0) or 0),
        timestamp=ts if isinstance(ts, datetime) else None,
        direction=int(getattr(a, 'punch', 0) or 0),
        verify_mode=1 if verify is None else int(verify),
    )


class DeviceSession:
    """One protocol session with one terminal.

    Not shared: every sync cycle builds its own instance. All blocking driver
    calls run in a worker thread and are bounded by ``timeout`` seconds.
    """

    def __init__(self, ip: str, port: int = 4370, password: int = 0, timeout: float = 15.0,
                 retries: int = 2, retry_backoff: float = 2.0, ommit_ping: bool = True,
                 force_udp: bool = False, disable_during_fetch: bool = True,
                 zk_factory: Callable[..., Any] = ZK):
        self.ip = ip
        self.port = port
        self.password = password
        self.timeout = timeout
        self.retries = max(1, retries)
        self.retry_backoff = retry_backoff
        self.ommit_ping = ommit_ping
        self.force_udp = force_udp
        self.disable_during_fetch = disable_during_fetch
        self._zk_factory = zk_factory
        self._conn: Any = None
        self._live_task: Optional[asyncio.Task] = None
        self._live_poll = 10
        self._live_stop = threading.Event()
        self.state = SessionState.IDLE
        self.last_error: Optional[str] = None

    @classmethod
    def for_device(cls, device: Device, config: AppConfig = CONFIG, **kwargs) -> "DeviceSession":
        return cls(
            device.ip,
            port=device.port or config.default_port,
            password=int(device.password or 0),
            timeout=config.device_timeout_s,
            retries=config.connect_retries,
            retry_backoff=config.retry_backoff_s,
            ommit_ping=config.ommit_ping,
            force_udp=config.force_udp,
            disable_during_fetch=config.disable_device_during_fetch,
            **kwargs,
        )

    @property
    def address(self) -> str:
        return f"{self.ip}:{self.port}"

    @property
    def connected(self) -> bool:
        return self.state == SessionState.CONNECTED

    async def __aenter__(self) -> "DeviceSession":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    def _connection_error(self, exc: BaseException, action: str) -> DeviceConnectionError:
        reason = _classify(exc)
        message = f"{action} {self.address} failed: {exc or reason}"
        if reason == "timeout":
            return DeviceTimeoutError(message, host=self.ip, port=self.port, hint=_HINTS[reason])
        return DeviceConnectionError(message, host=self.ip, port=self.port, reason=reason, hint=_HINTS[reason])

    async def _call(self, action: str, fn: Callable, *args, timeout: Optional[float] = None):
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout or self.timeout)
        except asyncio.TimeoutError:
            raise DeviceTimeoutError(
                f"{action} {self.address} timed out after {timeout or self.timeout:g}s",
                host=self.ip, port=self.port, hint=_HINTS["timeout"],
            ) from None
        except ZKErrorResponse as e:
            if action == "connect":
                raise self._connection_error(e, action) from e
            raise DeviceRequestError(f"{action} rejected by {self.address}: {e}") from e
        except (ZKNetworkError, ZKErrorConnection, OSError) as e:
            raise self._connection_error(e, action) from e
        except ZKError as e:
            raise DeviceRequestError(f"{action} on {self.address} failed: {e}") from e

    def _require(self) -> Any:
        if self.state != SessionState.CONNECTED or self._conn is None:
            raise NotConnectedError(f"Session {self.address} is not connected; call connect() first")
        return self._conn

    def _close_quietly(self, zk) -> None:
        try:
            zk.disconnect()
        except Exception as e:
            logger.debug("closing failed attempt on %s: %s", self.address, e)

    async def _handshake(self, zk) -> Any:
        """zk.connect() in a worker thread; a failed or abandoned attempt is closed.

        On timeout the thread keeps running, so whichever side finishes last
        closes the socket: this coroutine if the thread is done, else the
        thread itself once connect() returns.
        """
        guard = threading.Lock()
        state = {"finished": False, "abandoned": False}

        def run():
            try:
                return zk.connect()
            finally:
                with guard:
                    state["finished"] = True
                    late = state["abandoned"]
                if late:
                    logger.info("closing late connection to %s", self.address)
                    self._close_quietly(zk)

        try:
            return await self._call("connect", run)
        except BaseException:
            with guard:
                state["abandoned"] = True
                finished = state["finished"]
            if finished:
                await asyncio.to_thread(self._close_quietly, zk)
            raise

    async def connect(self) -> None:
        if self.state == SessionState.CONNECTED:
            raise AlreadyConnectedError(f"Session {self.address} is already connected")
        last_exc: Optional[DeviceConnectionError] = None
        for attempt in range(1, self.retries + 1):
            logger.info("[attempt %d/%d] connecting to %s", attempt, self.retries, self.address)
            zk = self._zk_factory(self.ip, port=self.port, timeout=self.timeout, password=self.password,
                                  force_udp=self.force_udp, ommit_ping=self.ommit_ping)
            try:
                self._conn = await self._handshake(zk)
                self.state = SessionState.CONNECTED
                self.last_error = None
                logger.info("connected to %s", self.address)
                return
            except DeviceConnectionError as e:
                last_exc = e
                logger.warning("[attempt %d/%d] %s", attempt, self.retries, e)
                self._conn = None
                if attempt < self.retries:
                    await asyncio.sleep(attempt * self.retry_backoff)
        self.state = SessionState.FAILED
        self.last_error = str(last_exc)
        message = f"Connection to {self.address} failed after {self.retries} attempt(s): {last_exc}"
        if isinstance(last_exc, DeviceTimeoutError):
            raise DeviceTimeoutError(message, host=self.ip, port=self.port, hint=last_exc.hint) from last_exc
        raise DeviceConnectionError(message, host=self.ip, port=self.port,
                                    reason=last_exc.reason, hint=last_exc.hint) from last_exc

    async def disconnect(self) -> None:
        conn = self._conn
        if self._live_task is not None:
            try:
                await self.disable_realtime()
            except Exception as e:
                logger.warning("stopping realtime on %s failed: %s", self.address, e)
        self._conn = None
        if self.state == SessionState.CONNECTED:
            self.state = SessionState.IDLE
        if conn is None:
            return
        try:
            await self._call("disconnect", conn.disconnect)
            logger.info("disconnected from %s", self.address)
        except Exception as e:
            logger.warning("disconnect from %s failed (ignored): %s", self.address, e)

    async def get_device_info(self) -> DeviceInfo:
        conn = self._require()

        def read(zk) -> DeviceInfo:
            serial = zk.get_serialnumber()
            firmware = zk.get_firmware_version()
            platform = zk.get_platform()
            name = zk.get_device_name()
            try:
                mac = zk.get_mac()
            except ZKError:
                mac = None
            zk.read_sizes()
            return DeviceInfo(
                serial_number=serial or "Unknown",
                firmware_version=firmware or "Unknown",
                platform=platform or "Unknown",
                device_name=name or "ZK Device",
                user_count=int(getattr(zk, 'users', 0) or 0),
                fingerprint_count=int(getattr(zk, 'fingers', 0) or 0),
                log_count=int(getattr(zk, 'records', 0) or 0),
                log_capacity=int(getattr(zk, 'rec_cap', 0) or 0),
                mac=mac,
            )

        return await self._call("get_device_info", read, conn)

    async def get_users(self) -> List[DeviceUser]:
        conn = self._require()
        users = await self._call("get_users", conn.get_users)
        logger.info("retrieved %d users from %s", len(users or []), self.address)
        return [_to_device_user(u) for u in users or []]

    async def get_attendance_logs(self) -> List[AttendanceRecord]:
        """Full dump of the terminal's log buffer. The device keeps no cursor."""
        conn = self._require()
        disable = self.disable_during_fetch

        def dump(zk):
            if disable:
                zk.disable_device()
            try:
                return zk.get_attendance() or []
            finally:
                if disable:
                    try:
                        zk.enable_device()
                    except Exception as e:
                        logger.warning("re-enabling %s failed: %s", self.address, e)

        logger.info("fetching attendance logs from %s", self.address)
        raw = await self._call("get_attendance_logs", dump, conn)
        logger.info("retrieved %d attendance records from %s", len(raw), self.address)
        return [_to_attendance(a) for a in raw]

    async def clear_attendance_logs(self) -> None:
        conn = self._require()
        logger.info("clearing attendance logs on %s", self.address)
        await self._call("clear_attendance_logs", conn.clear_attendance)
        logger.info("attendance logs cleared on %s", self.address)

    async def enable_realtime(self, callback: Callable[[AttendanceRecord], Any], poll_timeout: int = 10) -> None:
        """Push each live punch to ``callback`` until disable_realtime()."""
        conn = self._require()
        if self._live_task is not None:
            raise DeviceRequestError(f"Realtime capture already running on {self.address}")
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        done = object()
        stop = self._live_stop = threading.Event()
        conn.end_live_capture = False

        def reader():
            try:
                for event in conn.live_capture(new_timeout=poll_timeout):
                    # live_capture() resets end_live_capture during its setup, so
                    # a stop requested before then is re-applied here
                    if stop.is_set():
                        conn.end_live_capture = True
                        continue
                    if event is None:
                        continue
                    loop.call_soon_threadsafe(queue.put_nowait, _to_attendance(event))
            finally:
                loop.call_soon_threadsafe(queue.put_nowait, done)

        def reader_finished(fut) -> None:
            if not fut.cancelled() and fut.exception() is not None:
                logger.warning("realtime capture on %s ended with error: %s", self.address, fut.exception())

        async def pump():
            reader_task = asyncio.ensure_future(asyncio.to_thread(reader))
            try:
                while True:
                    item = await queue.get()
                    if item is done:
                        break
                    try:
                        result = callback(item)
                        if inspect.isawaitable(result):
                            await result
                    except Exception:
                        logger.exception("realtime callback failed for %s", self.address)
            except asyncio.CancelledError:
                # the reader thread exits on its next poll; do not wait for it
                stop.set()
                reader_task.add_done_callback(reader_finished)
                raise
            try:
                await reader_task
            except Exception as e:
                logger.warning("realtime capture on %s ended with error: %s", self.address, e)

        logger.info("starting realtime capture on %s", self.address)
        self._live_task = asyncio.create_task(pump())
        self._live_poll = poll_timeout

    async def disable_realtime(self) -> None:
        task = self._live_task
        if task is None:
            return
        self._live_task = None
        self._live_stop.set()
        if self._conn is not None:
            self._conn.end_live_capture = True
        try:
            await asyncio.wait_for(task, self.timeout + self._live_poll)
        except asyncio.TimeoutError:
            raise DeviceTimeoutError(f"Stopping realtime capture on {self.address} timed out",
                                     host=self.ip, port=self.port) from None
        logger.info("realtime capture stopped on %s", self.address)

    @property
    def realtime_active(self) -> bool:
        return self._live_task is not None and not self._live_task.done()

    async def test_connection(self) -> Tuple[bool, Union[DeviceInfo, str]]:
        try:
            await self.connect()
            info = await self.get_device_info()
            return True, info
        except Exception as e:
            logger.error("connection test for %s failed: %s", self.address, e)
            return False, str(e)
        finally:
            await self.disconnect()
