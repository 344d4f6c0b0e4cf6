"""Lifecycle janitor - keeps the registry, manifest and logs in step with tmux.

An entry is stale when:
- It exists in the registry
- But its tmux session no longer exists
- And it is not waiting in the restoration manifest

This can happen when:
- tmux sessions are killed externally
- The machine rebooted and the manifest entry was already consumed
- A crash interrupted a forget/close cleanup
"""

from __future__ import annotations

import asyncio
from collections import deque
from pathlib import Path
from typing import Hashable, Optional

from immorterm.config.schema import ImmortermSettings
from immorterm.constants import LOG_SUFFIX
from immorterm.core import tmux_bridge
from immorterm.core.errors import MissingDependencyError
from immorterm.core.manifest import RestorationManifest
from immorterm.core.models import ForgetResult, LogCleanupResult, StaleSweepResult
from immorterm.core.naming import build_session_name, parse_window_id
from immorterm.core.reconciler import TerminalIndex
from immorterm.core.registry import SessionRegistry
from immorterm.core.task_registry import TaskRegistry
from immorterm.logging_config import get_logger
from immorterm.paths import WorkspacePaths
from immorterm.utils import format_size

logger = get_logger(__name__)

CLEANUP_TASK_PREFIX = "cleanup:"


def _delete_file(path: Path) -> bool:
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    except OSError as e:
        logger.warning("Failed to delete %s: %s", path, e)
        return False
    return True


def truncate_log(path: Path, retain_lines: int) -> bool:
    """Keep only the last `retain_lines` lines of a log, rewriting it in place.

    In-place so an appending writer (tmux pipe-pane) keeps its file handle.

    Returns:
        True if the file was truncated.
    """
    with path.open("rb") as handle:
        tail = deque(handle, maxlen=retain_lines + 1)
    if len(tail) <= retain_lines:
        return False
    tail.popleft()
    with path.open("r+b") as handle:
        handle.writelines(tail)
        handle.truncate()
    return True


class LifecycleJanitor:
    """Stale sweep, orphan logs, close grace period, log retention and forget."""

    def __init__(
        self,
        registry: SessionRegistry,
        manifest: RestorationManifest,
        paths: WorkspacePaths,
        settings: ImmortermSettings,
        tasks: TaskRegistry,
        index: TerminalIndex[Hashable],
    ) -> None:
        self.registry = registry
        self.manifest = manifest
        self.paths = paths
        self.settings = settings
        self.tasks = tasks
        self.index = index

    def _log_path(self, session_name: str) -> Path:
        return self.paths.log_path(session_name)

    def _session_name(self, window_id: str) -> str:
        session = self.registry.get(window_id)
        if session is not None:
            return session.multiplexer_session_id
        return build_session_name(self.registry.project_name, window_id)

    # Stale sweep

    async def sweep_stale(self) -> StaleSweepResult:
        """Remove registry entries whose tmux session is gone, then orphan logs.

        Raises:
            TransientExternalError: If tmux could not be queried; nothing is removed.
        """
        result = StaleSweepResult()
        if not self.settings.auto_cleanup_stale:
            logger.debug("Auto cleanup is disabled, skipping stale sweep")
            return result

        try:
            live = set(await tmux_bridge.list_sessions_strict())
        except MissingDependencyError as e:
            logger.debug("Skipping stale sweep: %s", e)
            return result

        pending = self.manifest.window_ids()
        for session in self.registry.list():
            if session.multiplexer_session_id in live:
                continue
            if session.window_id in pending:
                logger.debug("Keeping %s: still pending restoration", session.window_id)
                result.kept_pending.append(session.window_id)
                continue
            logger.info(
                "Found stale terminal %s (tmux %s no longer exists), cleaning up",
                session.window_id,
                session.multiplexer_session_id,
            )
            self.registry.remove(session.window_id)
            result.removed.append(session.window_id)

        result.logs_deleted = self.sweep_orphan_logs(live, pending)
        self.registry.set_last_cleanup()

        if result.removed or result.logs_deleted:
            logger.info(
                "Stale sweep complete: %d entries removed, %d logs deleted",
                len(result.removed),
                len(result.logs_deleted),
            )
        else:
            logger.debug("No stale terminals found")
        return result

    def sweep_orphan_logs(self, live: set[str], pending: Optional[set[str]] = None) -> list[str]:
        """Delete logs with no live session, no registry entry and no manifest entry."""
        if not self.paths.logs_dir.exists():
            return []
        if pending is None:
            pending = self.manifest.window_ids()

        deleted: list[str] = []
        for log_file in sorted(self.paths.logs_dir.glob(f"*{LOG_SUFFIX}")):
            session_name = log_file.name[: -len(LOG_SUFFIX)]
            if session_name in live:
                continue
            window_id = parse_window_id(session_name, self.registry.project_name)
            if window_id is not None and (self.registry.contains(window_id) or window_id in pending):
                logger.debug("Preserving log for restoration: %s", log_file.name)
                continue
            if self.registry.get_by_session(session_name) is not None:
                continue
            if _delete_file(log_file):
                logger.debug("Deleted orphaned log: %s", log_file.name)
                deleted.append(log_file.name)
        return deleted

    # Close grace period

    def schedule_cleanup(self, window_id: str) -> bool:
        """Schedule removal of a closed terminal after the grace period.

        Returns:
            False if a cleanup for this window id is already pending.
        """
        task_name = f"{CLEANUP_TASK_PREFIX}{window_id}"
        if self.tasks.is_pending(task_name):
            logger.debug("Cleanup already pending for %s", window_id)
            return False
        delay = self.settings.close_grace_period_s
        self.tasks.schedule_once(task_name, delay, lambda: self.expire(window_id))
        logger.info("Terminal %s closed, cleanup in %.0fs", window_id, delay)
        return True

    def cancel_cleanup(self, window_id: str) -> bool:
        cancelled = self.tasks.cancel(f"{CLEANUP_TASK_PREFIX}{window_id}")
        if cancelled:
            logger.info("Cancelled pending cleanup for %s", window_id)
        return cancelled

    def is_cleanup_pending(self, window_id: str) -> bool:
        return self.tasks.is_pending(f"{CLEANUP_TASK_PREFIX}{window_id}")

    def cancel_all_cleanups(self) -> int:
        names = self.tasks.names(CLEANUP_TASK_PREFIX)
        for name in names:
            self.tasks.cancel(name)
        return len(names)

    async def expire(self, window_id: str) -> bool:
        """Grace period elapsed: tear the terminal down unless it came back."""
        if self.index.is_tracked(window_id):
            logger.debug("Terminal %s was reopened, skipping cleanup", window_id)
            return False
        logger.info("Executing delayed cleanup for %s", window_id)
        await self._teardown(window_id)
        return True

    async def _teardown(self, window_id: str) -> ForgetResult:
        session_name = self._session_name(window_id)
        result = ForgetResult(success=False)
        result.session_killed = await tmux_bridge.kill_session(session_name)
        result.storage_removed = self.registry.remove(window_id)
        manifest_removed = self.manifest.remove(window_id)
        result.log_deleted = _delete_file(self._log_path(session_name))
        result.success = result.session_killed or result.storage_removed or manifest_removed or result.log_deleted
        return result

    # Log retention

    async def cleanup_logs(self) -> LogCleanupResult:
        """Trim oversized logs, then evict oldest logs until under the size ceiling."""
        return await asyncio.to_thread(self._cleanup_logs_sync)

    def _cleanup_logs_sync(self) -> LogCleanupResult:
        max_size = self.settings.max_log_size_bytes
        result = LogCleanupResult(max_size=max_size)
        if not self.paths.logs_dir.exists():
            return result

        files: list[tuple[float, Path, int]] = []
        for log_file in self.paths.logs_dir.glob(f"*{LOG_SUFFIX}"):
            try:
                if truncate_log(log_file, self.settings.log_retain_lines):
                    result.truncated_files.append(log_file.name)
                stat = log_file.stat()
            except OSError as e:
                logger.warning("Skipping log %s: %s", log_file.name, e)
                continue
            files.append((stat.st_mtime, log_file, stat.st_size))
        files.sort(key=lambda item: (item[0], item[1].name))

        result.current_size = sum(size for _, _, size in files)
        for _, log_file, size in files:
            if result.current_size <= max_size:
                break
            if not _delete_file(log_file):
                continue
            result.bytes_freed += size
            result.files_removed += 1
            result.removed_files.append(log_file.name)
            result.current_size -= size
            logger.info("Removed old log: %s (%s)", log_file.name, format_size(size))

        logger.debug(
            "Log cleanup complete: %d removed, %s freed, %s / %s",
            result.files_removed,
            format_size(result.bytes_freed),
            format_size(result.current_size),
            format_size(max_size),
        )
        return result

    # Explicit forget

    async def forget(self, window_id: str) -> ForgetResult:
        """Kill, unregister and delete the log of one terminal immediately."""
        self.cancel_cleanup(window_id)
        result = await self._teardown(window_id)
        logger.info(
            "Forget complete for %s: session=%s, storage=%s, log=%s",
            window_id,
            result.session_killed,
            result.storage_removed,
            result.log_deleted,
        )
        return result

    async def forget_all(self) -> int:
        window_ids = {s.window_id for s in self.registry.list()} | self.manifest.window_ids()
        forgotten = 0
        for window_id in sorted(window_ids):
            result = await self.forget(window_id)
            if result.success:
                forgotten += 1
        logger.info("Forgot %d terminals", forgotten)
        return forgotten

    async def kill_all(self) -> int:
        """Kill every tmux session of this project and clear all state."""
        self.cancel_all_cleanups()
        prefix = f"{self.registry.project_name}-"
        killed = 0
        for session_name in await tmux_bridge.list_sessions():
            if session_name.startswith(prefix) and await tmux_bridge.kill_session(session_name):
                killed += 1
        self.registry.clear()
        self.manifest.clear()
        logger.info("Killed %d tmux sessions for %s", killed, self.registry.project_name)
        return killed
