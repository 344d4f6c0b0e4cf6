"""ImmorTerm service - wires the components for one workspace.

Startup order:
1. Load the registry (corrupt state reinitializes empty).
2. Import a legacy installation if one is present.
3. Drain pending registrations so restoration sees them.
4. Restore terminals.
5. Start the periodic tasks (stale sweep and log cleanup hourly; conversation
   sync, title sync and inbox drain every few seconds).

Teardown cancels every task as one group and flushes the registry.
"""

from __future__ import annotations

from pathlib import Path
from typing import Hashable, Optional

from immorterm.config import ImmortermSettings, load_settings
from immorterm.constants import PENDING_RENAME_ENV
from immorterm.core import tmux_bridge
from immorterm.core.correlator import ConversationCorrelator, ConversationHistory
from immorterm.core.errors import MigrationError
from immorterm.core.inbox import PendingInbox
from immorterm.core.janitor import LifecycleJanitor
from immorterm.core.manifest import RestorationManifest
from immorterm.core.migration import MigrationImporter
from immorterm.core.models import RestorationResult
from immorterm.core.naming import RenameTracker, format_title, project_name_for
from immorterm.core.reconciler import Reconciler, TerminalIndex
from immorterm.core.registry import SessionRegistry
from immorterm.core.restoration import HostTerminalService, RestorationEngine
from immorterm.core.task_registry import TaskRegistry
from immorterm.logging_config import get_logger
from immorterm.paths import WorkspacePaths

logger = get_logger(__name__)


class ImmortermService:  # pylint: disable=too-many-instance-attributes  # Composition root
    """Owns every component for one workspace and routes host events to them."""

    def __init__(
        self,
        workspace: Path,
        host: Optional[HostTerminalService] = None,
        settings: Optional[ImmortermSettings] = None,
        history: Optional[ConversationHistory] = None,
    ) -> None:
        self.paths = WorkspacePaths(workspace.resolve())
        self.settings = settings or load_settings(self.paths.root)
        tmux_bridge.configure(self.settings.tmux_binary, self.settings.command_timeout_s)

        self.host = host
        self.project_name = project_name_for(self.paths.root)
        self.registry = SessionRegistry(self.paths.registry_path, self.project_name)
        self.manifest = RestorationManifest(self.paths.manifest_path)
        self.inbox = PendingInbox(self.paths.pending_dir)
        self.index: TerminalIndex[Hashable] = TerminalIndex()
        self.tasks = TaskRegistry()
        self.renames = RenameTracker()
        self.reconciler = Reconciler(self.registry, self.manifest, self.settings.naming_pattern)
        self.janitor = LifecycleJanitor(
            self.registry, self.manifest, self.paths, self.settings, self.tasks, self.index
        )
        self.correlator = ConversationCorrelator(
            self.registry,
            self.manifest,
            self.paths,
            self.settings.correlation,
            history=history,
            scan_timeout=self.settings.command_timeout_s,
        )
        self.migration = MigrationImporter(self.registry, self.manifest, self.paths)
        self.restoration: Optional[RestorationEngine] = None
        if host is not None:
            self.restoration = RestorationEngine(
                self.reconciler, host, self.index, self.paths, self.settings, janitor=self.janitor
            )
        self.degraded = False
        self._last_names: dict[str, str] = {}

    def load(self, auto_migrate: bool = True) -> None:
        """Load persisted state and import a legacy install if needed."""
        self.paths.logs_dir.mkdir(parents=True, exist_ok=True)
        self.registry.load()
        self.degraded = not tmux_bridge.is_available()
        if self.degraded:
            logger.warning("tmux not found - running in degraded mode (no persistence)")

        if auto_migrate and self.migration.needs_migration():
            try:
                self.migration.migrate()
            except MigrationError as e:
                logger.error("Legacy import failed and was rolled back: %s", e)

    async def startup(self) -> RestorationResult:
        """Load, restore and start periodic work."""
        if self.restoration is None or self.host is None:
            raise RuntimeError("startup() requires a host terminal service")

        self.load()
        await self.drain_pending()
        result = await self.restoration.restore()
        for handle, window_id in self.index.items():
            self._last_names[window_id] = self.host.terminal_name(handle)
        self._start_periodic_tasks()
        logger.info("ImmorTerm started for %s (%d terminals)", self.project_name, len(self.registry.list()))
        return result

    def _start_periodic_tasks(self) -> None:
        settings = self.settings
        self.tasks.schedule_periodic("stale-sweep", settings.stale_cleanup_interval_s, self.janitor.sweep_stale)
        self.tasks.schedule_periodic("log-cleanup", settings.log_cleanup_interval_s, self.janitor.cleanup_logs)
        if settings.conversation_sync_interval_ms > 0:
            self.tasks.schedule_periodic(
                "conversation-sync", settings.conversation_sync_interval_s, self.correlator.sync_once
            )
        self.tasks.schedule_periodic("title-sync", settings.title_sync_interval_s, self.sync_titles)
        self.tasks.schedule_periodic("pending-drain", settings.title_sync_interval_s, self.drain_pending)

    async def shutdown(self) -> None:
        """Cancel all scheduled work and persist the registry."""
        await self.tasks.shutdown()
        self.registry.close()
        logger.info("ImmorTerm stopped for %s", self.project_name)

    async def drain_pending(self) -> int:
        return await self.inbox.drain(self.reconciler.handle_pending)

    # Host events

    def _match_by_name(self, handle: Hashable) -> Optional[str]:
        """Bind an untracked terminal to a registry entry with the same unique name."""
        if self.host is None:
            return None
        name = self.host.terminal_name(handle)
        matches = [s.window_id for s in self.registry.list() if s.name == name and not self.index.is_tracked(s.window_id)]
        return matches[0] if len(matches) == 1 else None

    def on_terminal_opened(self, handle: Hashable, window_id: Optional[str] = None) -> Optional[str]:
        """Track a host terminal. Reopening within the grace period cancels cleanup."""
        if window_id is None:
            window_id = self._match_by_name(handle)
        if window_id is None:
            return None

        self.index.track(handle, window_id)
        self.janitor.cancel_cleanup(window_id)
        self.registry.touch(window_id)
        if self.host is not None:
            self._last_names[window_id] = self.host.terminal_name(handle)
        logger.debug("Tracking terminal %s", window_id)
        return window_id

    def on_terminal_closed(self, handle: Hashable) -> bool:
        """Start the close grace period for a tracked terminal."""
        window_id = self.index.untrack(handle)
        if window_id is None:
            return False
        self.renames.forget(window_id)
        self._last_names.pop(window_id, None)
        return self.janitor.schedule_cleanup(window_id)

    async def on_terminal_renamed(self, handle: Hashable, new_name: str) -> bool:
        """Sync a host-side rename unless it echoes one we issued.

        Returns:
            True if the rename was applied to registry, manifest and tmux.
        """
        window_id = self.index.window_id_for(handle)
        if window_id is None:
            return False
        session = self.registry.get(window_id)
        old_name = self._last_names.get(window_id) or (session.name if session else "")
        if old_name == new_name:
            return False

        self._last_names[window_id] = new_name
        if self.renames.consume(window_id, old_name, new_name):
            return False
        logger.info("Terminal renamed %s -> %s", old_name, new_name)
        await self._apply_name(window_id, new_name)
        return True

    async def rename(self, window_id: str, new_name: str) -> bool:
        """Command-initiated rename; the host's echo of it will be ignored."""
        session = self.registry.get(window_id)
        if session is None:
            return False
        expected_old = self._last_names.get(window_id, session.name)
        self.renames.arm(window_id, expected_old, new_name)
        await tmux_bridge.set_env(session.multiplexer_session_id, PENDING_RENAME_ENV, new_name)
        await self._apply_name(window_id, new_name)
        return True

    async def _apply_name(self, window_id: str, name: str) -> None:
        session = self.registry.update(window_id, name=name)
        self.manifest.update_name(window_id, name)
        if session is not None:
            await tmux_bridge.set_title(session.multiplexer_session_id, format_title(name))

    async def sync_titles(self) -> int:
        """Poll host names for renames that raised no event."""
        if self.host is None:
            return 0
        applied = 0
        for handle, window_id in self.index.items():
            name = self.host.terminal_name(handle)
            if name != self._last_names.get(window_id) and await self.on_terminal_renamed(handle, name):
                applied += 1
        return applied

    async def status(self) -> dict[str, object]:
        """Summary of registry, tmux and inbox state."""
        live = set(await tmux_bridge.list_sessions())
        sessions = self.registry.list()
        return {
            "project": self.project_name,
            "tmux_available": tmux_bridge.is_available(),
            "terminals": len(sessions),
            "live": sum(1 for s in sessions if s.multiplexer_session_id in live),
            "linked_conversations": sum(1 for s in sessions if s.conversation_id),
            "pending_registrations": self.inbox.pending_count(),
            "migrated": self.migration.is_migrated(),
            "last_cleanup_at": self.registry.last_cleanup_at,
        }
