"""`immorterm` command line: inspect and maintain a workspace's terminals."""

from __future__ import annotations

import argparse
import asyncio
import json
from dataclasses import asdict
from pathlib import Path
from typing import Awaitable, Callable

from immorterm.constants import MAIN_MODULE
from immorterm.core.errors import ImmortermError
from immorterm.logging_config import get_logger, setup_logging
from immorterm.service import ImmortermService

logger = get_logger(__name__)

Command = Callable[[ImmortermService, argparse.Namespace], Awaitable[object]]


def _print(payload: object) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def _status(service: ImmortermService, _args: argparse.Namespace) -> object:
    return await service.status()


async def _sweep(service: ImmortermService, _args: argparse.Namespace) -> object:
    return asdict(await service.janitor.sweep_stale())


async def _log_cleanup(service: ImmortermService, _args: argparse.Namespace) -> object:
    return asdict(await service.janitor.cleanup_logs())


async def _correlate(service: ImmortermService, _args: argparse.Namespace) -> object:
    return asdict(await service.correlator.sync_once())


async def _forget(service: ImmortermService, args: argparse.Namespace) -> object:
    return asdict(await service.janitor.forget(args.window_id))


async def _forget_all(service: ImmortermService, _args: argparse.Namespace) -> object:
    return {"forgotten": await service.janitor.forget_all()}


async def _kill_all(service: ImmortermService, _args: argparse.Namespace) -> object:
    return {"killed": await service.janitor.kill_all()}


async def _migrate(service: ImmortermService, _args: argparse.Namespace) -> object:
    return asdict(service.migration.migrate())


async def _rollback(service: ImmortermService, _args: argparse.Namespace) -> object:
    return {"rolled_back": service.migration.rollback()}


async def _drain(service: ImmortermService, _args: argparse.Namespace) -> object:
    return {"processed": await service.drain_pending()}


COMMANDS: dict[str, tuple[Command, str]] = {
    "status": (_status, "Show registry, tmux and inbox state."),
    "sweep": (_sweep, "Remove stale entries and orphaned logs."),
    "log-cleanup": (_log_cleanup, "Enforce the log size ceiling."),
    "correlate": (_correlate, "Run one conversation correlation sweep."),
    "forget": (_forget, "Kill and unregister one terminal."),
    "forget-all": (_forget_all, "Kill and unregister every terminal."),
    "kill-all": (_kill_all, "Kill every tmux session of this project."),
    "migrate": (_migrate, "Import a legacy installation."),
    "rollback": (_rollback, "Restore the latest legacy backup."),
    "drain": (_drain, "Process pending terminal registrations."),
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="immorterm", description="Persistent tmux-backed terminals.")
    parser.add_argument("--workspace", type=Path, default=Path.cwd(), help="Workspace root (default: cwd).")
    parser.add_argument("--log-level", default=None, help="Override IMMORTERM_LOG_LEVEL.")
    subparsers = parser.add_subparsers(dest="command", required=True)
    for name, (_, help_text) in COMMANDS.items():
        sub = subparsers.add_parser(name, help=help_text)
        if name == "forget":
            sub.add_argument("window_id", help="Window id to forget.")
    return parser


async def _run(args: argparse.Namespace) -> object:
    service = ImmortermService(args.workspace)
    service.load(auto_migrate=False)
    handler, _ = COMMANDS[args.command]
    try:
        return await handler(service, args)
    finally:
        service.registry.close()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level)

    try:
        payload = asyncio.run(_run(args))
    except (ImmortermError, OSError) as e:
        logger.error("%s failed: %s", args.command, e)
        return 1

    _print(payload)
    return 0


if __name__ == MAIN_MODULE:
    raise SystemExit(main())
