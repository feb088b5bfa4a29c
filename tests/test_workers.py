import asyncio

import pytest

from conftest import FakeSession, InMemoryMappings, InMemoryPunches, record

from biosync.config import AppConfig
from biosync.data.models import Device, EmployeeDeviceMapping, PunchType
from biosync.errors import DeviceRequestError
from biosync.services.sync_service import FleetSyncResult
from biosync.workers.live_monitor import LiveMonitor
from biosync.workers.scheduler import SyncScheduler


class StubOrchestrator:
    def __init__(self, failures=0):
        self.calls = 0
        self.failures = failures

    async def sync_all(self, options=None):
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError("registry unavailable")
        return FleetSyncResult(message="ok")


async def test_scheduler_runs_requested_iterations():
    orch = StubOrchestrator()
    seen = []
    sched = SyncScheduler(orch, interval_min=0.0001, on_result=seen.append)

    await asyncio.wait_for(sched.run(iterations=3), 2)

    assert orch.calls == 3
    assert len(seen) == 3


async def test_scheduler_survives_a_failed_run():
    orch = StubOrchestrator(failures=1)
    sched = SyncScheduler(orch, interval_min=0.0001)

    assert await sched.run_once() is None
    assert (await sched.run_once()).message == "ok"


async def test_scheduler_stop_interrupts_the_wait():
    orch = StubOrchestrator()
    sched = SyncScheduler(orch, interval_min=60)
    task = asyncio.create_task(sched.run())
    await asyncio.sleep(0.05)

    sched.stop()
    await asyncio.wait_for(task, 1)

    assert orch.calls == 1


def test_scheduler_rejects_bad_interval():
    with pytest.raises(ValueError):
        SyncScheduler(StubOrchestrator(), interval_min=0)


class LiveSession(FakeSession):
    def __init__(self):
        super().__init__([])
        self.callback = None

    async def enable_realtime(self, callback, poll_timeout=10):
        self.events.append("realtime_on")
        self.callback = callback

    async def disable_realtime(self):
        self.events.append("realtime_off")


async def test_live_monitor_stores_mapped_punches_once():
    session = LiveSession()
    punches = InMemoryPunches()
    mappings = InMemoryMappings([EmployeeDeviceMapping(employee_id=5, device_user_id="1")])
    stored = []
    monitor = LiveMonitor(Device(id=1, name="Gate", ip="10.0.0.1"), mappings, punches,
                          config=AppConfig(), session=session, on_punch=stored.append)

    await monitor.start()
    await session.callback(record(1, 0, direction=1))
    await session.callback(record(1, 0, direction=1))
    await session.callback(record(9, 1))
    await monitor.stop()

    assert session.events == ["connect", "realtime_on", "realtime_off", "disconnect"]
    assert monitor.stats.received == 3
    assert monitor.stats.stored == 2
    assert monitor.stats.inserted == 1
    assert monitor.stats.skipped == 1
    assert monitor.stats.unmapped_user_ids == {"9"}
    assert len(punches.rows) == 1
    assert stored[0].punch_type is PunchType.OUT
    assert stored[0].punch_time == "2025-01-15T09:00:00+05:30"


async def test_live_monitor_counts_write_failures():
    session = LiveSession()
    monitor = LiveMonitor(Device(id=1, name="Gate", ip="10.0.0.1"),
                          InMemoryMappings([EmployeeDeviceMapping(employee_id=5, device_user_id="1")]),
                          InMemoryPunches(fail_all=True), config=AppConfig(), session=session)

    await monitor.start()
    await session.callback(record(1))
    await monitor.stop()

    assert monitor.stats.failed == 1
    assert monitor.stats.stored == 0


class RefusingLiveSession(LiveSession):
    async def enable_realtime(self, callback, poll_timeout=10):
        self.events.append("realtime_on")
        raise DeviceRequestError("realtime registration rejected")


async def test_live_monitor_disconnects_when_realtime_fails():
    session = RefusingLiveSession()
    monitor = LiveMonitor(Device(id=1, name="Gate", ip="10.0.0.1"), InMemoryMappings([]),
                          InMemoryPunches(), config=AppConfig(), session=session)

    with pytest.raises(DeviceRequestError):
        await monitor.run(asyncio.Event())

    assert session.events == ["connect", "realtime_on", "disconnect"]
