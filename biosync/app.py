import argparse
import asyncio
import ipaddress
import json
import logging
import signal
import sys
from dataclasses import asdict, replace
from typing import List, Optional

from dotenv import load_dotenv

from biosync.config import AppConfig
from biosync.data.db import init_db
from biosync.data.models import Device, DeviceStatus, EmployeeDeviceMapping
from biosync.data.repositories import (
    DeviceRepository,
    EmployeeMappingRepository,
    PunchLogRepository,
    SyncLogRepository,
)
from biosync.errors import DeviceNotFoundError, SyncError
from biosync.services.audit_service import SyncAudit
from biosync.services.sync_service import SyncOptions, SyncOrchestrator
from biosync.services.zk_service import DeviceSession
from biosync.workers.live_monitor import LiveMonitor
from biosync.workers.scheduler import SyncScheduler

logger = logging.getLogger("biosync")

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(name)s - %(message)s'


def _print(data) -> None:
    print(json.dumps(data, indent=2, default=str))


class Context:
    def __init__(self, config: AppConfig):
        self.config = config
        path = config.db_path
        init_db(path)
        self.devices = DeviceRepository(path)
        self.mappings = EmployeeMappingRepository(path)
        self.punches = PunchLogRepository(path)
        self.sync_logs = SyncLogRepository(path)
        self.audit = SyncAudit(self.sync_logs)

    def orchestrator(self) -> SyncOrchestrator:
        return SyncOrchestrator(self.devices, self.mappings, self.punches, self.audit, config=self.config)

    def device(self, device_id: int) -> Device:
        d = self.devices.get(device_id)
        if d is None:
            raise DeviceNotFoundError(device_id)
        return d


def cmd_init_db(ctx: Context, args) -> int:
    _print({"db_path": ctx.config.db_path, "initialized": True})
    return 0


def cmd_add_device(ctx: Context, args) -> int:
    try:
        ipaddress.ip_address(args.ip.strip())
    except ValueError:
        print(f"invalid IP address: {args.ip}", file=sys.stderr)
        return 2
    d = Device(id=None, name=args.name or f"ZK-{args.ip.strip()}", ip=args.ip.strip(),
               port=args.port or ctx.config.default_port, password=args.password,
               status=DeviceStatus.INACTIVE if args.inactive else DeviceStatus.ACTIVE,
               location=args.location or "")
    d.id = ctx.devices.create(d)
    _print(asdict(d))
    return 0


def cmd_devices(ctx: Context, args) -> int:
    _print([asdict(d) for d in ctx.devices.list()])
    return 0


def cmd_map_user(ctx: Context, args) -> int:
    employee_id = args.employee_id
    if employee_id is None:
        if not args.name:
            print("either --employee-id or --name is required", file=sys.stderr)
            return 2
        employee_id = ctx.mappings.create_employee(args.name, args.code or "")
    if args.device is not None:
        ctx.device(args.device)
    m = EmployeeDeviceMapping(employee_id=employee_id, device_user_id=str(args.device_user_id), device_id=args.device)
    ctx.mappings.add_mapping(m)
    _print(asdict(m))
    return 0


async def _test(ctx: Context, device: Device) -> int:
    ok, info = await DeviceSession.for_device(device, ctx.config).test_connection()
    _print({"device_id": device.id, "ok": ok, "info": asdict(info) if ok else None, "error": None if ok else info})
    return 0 if ok else 1


def cmd_test(ctx: Context, args) -> int:
    return asyncio.run(_test(ctx, ctx.device(args.device)))


async def _info(ctx: Context, device: Device) -> int:
    async with DeviceSession.for_device(device, ctx.config) as session:
        info = await session.get_device_info()
    ctx.devices.update_info(device.id, info)
    _print(asdict(info))
    return 0


def cmd_info(ctx: Context, args) -> int:
    return asyncio.run(_info(ctx, ctx.device(args.device)))


async def _users(ctx: Context, device: Device) -> int:
    async with DeviceSession.for_device(device, ctx.config) as session:
        users = await session.get_users()
    _print([asdict(u) for u in users])
    return 0


def cmd_users(ctx: Context, args) -> int:
    return asyncio.run(_users(ctx, ctx.device(args.device)))


def cmd_sync(ctx: Context, args) -> int:
    options = SyncOptions(clear_after_sync=args.clear or ctx.config.clear_after_sync)
    orch = ctx.orchestrator()
    if args.device is None:
        result = asyncio.run(orch.sync_all(options))
        _print(result.to_dict())
        return 0 if result.success else 1
    result = asyncio.run(orch.sync_one(args.device, options))
    _print(result.to_dict())
    return 0 if result.success else 1


def _stop_on_signals(stop) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop)
        except NotImplementedError:
            # Windows event loops
            pass


async def _watch(ctx: Context, interval: float, clear: bool) -> int:
    sched = SyncScheduler(ctx.orchestrator(), interval, SyncOptions(clear_after_sync=clear),
                          on_result=lambda r: _print(r.to_dict()))
    _stop_on_signals(sched.stop)
    await sched.run()
    return 0


def cmd_watch(ctx: Context, args) -> int:
    interval = args.interval or ctx.config.auto_sync_interval_min
    return asyncio.run(_watch(ctx, interval, args.clear or ctx.config.clear_after_sync))


async def _monitor(ctx: Context, device: Device) -> int:
    stop = asyncio.Event()
    _stop_on_signals(stop.set)
    monitor = LiveMonitor(device, ctx.mappings, ctx.punches, config=ctx.config,
                          on_punch=lambda p: _print(asdict(p)))
    stats = await monitor.run(stop)
    _print({**asdict(stats), "unmapped_user_ids": sorted(stats.unmapped_user_ids)})
    return 0


def cmd_monitor(ctx: Context, args) -> int:
    return asyncio.run(_monitor(ctx, ctx.device(args.device)))


def cmd_history(ctx: Context, args) -> int:
    ctx.device(args.device)
    _print([asdict(e) for e in ctx.sync_logs.recent(args.device, args.limit)])
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="biosync", description="Biometric terminal attendance sync")
    p.add_argument("--db", dest="db_path", help="sqlite database path")
    p.add_argument("--log-level", help="DEBUG, INFO, WARNING, ERROR")
    sub = p.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="create tables").set_defaults(func=cmd_init_db)

    s = sub.add_parser("add-device", help="register a terminal")
    s.add_argument("ip")
    s.add_argument("--name")
    s.add_argument("--port", type=int)
    s.add_argument("--password", type=int, default=0)
    s.add_argument("--location")
    s.add_argument("--inactive", action="store_true")
    s.set_defaults(func=cmd_add_device)

    sub.add_parser("devices", help="list terminals").set_defaults(func=cmd_devices)

    s = sub.add_parser("map-user", help="link an employee to a device user id")
    s.add_argument("device_user_id")
    s.add_argument("--employee-id", type=int)
    s.add_argument("--name", help="create a new employee with this name")
    s.add_argument("--code")
    s.add_argument("--device", type=int, help="limit the mapping to one terminal")
    s.set_defaults(func=cmd_map_user)

    for name, func, help_ in (("test", cmd_test, "test connectivity"),
                              ("info", cmd_info, "read and store device info"),
                              ("users", cmd_users, "list users enrolled on the terminal"),
                              ("monitor", cmd_monitor, "store punches in realtime")):
        s = sub.add_parser(name, help=help_)
        s.add_argument("--device", type=int, required=True)
        s.set_defaults(func=func)

    s = sub.add_parser("sync", help="sync one terminal or all active ones")
    s.add_argument("--device", type=int)
    s.add_argument("--clear", action="store_true", help="clear the device buffer after a confirmed write")
    s.set_defaults(func=cmd_sync)

    s = sub.add_parser("watch", help="sync all active terminals periodically")
    s.add_argument("--interval", type=float, help="minutes between runs")
    s.add_argument("--clear", action="store_true")
    s.set_defaults(func=cmd_watch)

    s = sub.add_parser("history", help="recent sync attempts for a terminal")
    s.add_argument("--device", type=int, required=True)
    s.add_argument("--limit", type=int, default=20)
    s.set_defaults(func=cmd_history)
    return p


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv(override=False)
    args = build_parser().parse_args(argv)
    try:
        config = AppConfig.from_env()
        if args.db_path:
            config = replace(config, db_path=args.db_path)
    except SyncError as e:
        print(str(e), file=sys.stderr)
        return 2
    logging.basicConfig(level=(args.log_level or config.log_level).upper(), format=LOG_FORMAT)
    try:
        return args.func(Context(config), args)
    except DeviceNotFoundError as e:
        logger.error("%s", e)
        return 1
    except SyncError as e:
        logger.error("%s", e)
        if getattr(e, "hint", ""):
            logger.error("hint: %s", e.hint)
        return 1


if __name__ == '__main__':
    raise SystemExit(main())
