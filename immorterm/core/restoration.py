"""Restoration engine - recreates host terminals for registered sessions.

Runs once per activation: NOT_STARTED -> RESTORING -> DONE. Entries are restored
one at a time with a delay between them; a failed entry is recorded and the
batch continues.
"""

from __future__ import annotations

import asyncio
from typing import Hashable, Optional, Protocol

from immorterm.config.schema import ImmortermSettings
from immorterm.constants import ASSISTANT_RESUME_TEMPLATE
from immorterm.core import tmux_bridge
from immorterm.core.janitor import LifecycleJanitor
from immorterm.core.errors import MissingDependencyError, TransientExternalError
from immorterm.core.models import (
    RestorationDetail,
    RestorationResult,
    RestoreState,
    RestoreStatus,
    TerminalSession,
    TerminalSpec,
)
from immorterm.core.reconciler import Reconciler, TerminalIndex
from immorterm.logging_config import get_logger
from immorterm.paths import WorkspacePaths

logger = get_logger(__name__)


class HostTerminalService(Protocol):
    """The host editor's terminal surface."""

    async def create_terminal(self, spec: TerminalSpec) -> Hashable:
        """Create a terminal attached to `spec.session_name` and return its handle."""

    def terminal_name(self, handle: Hashable) -> str:
        """Current display name of a terminal."""


class RestorationEngine:
    """Sequentially reattach host terminals to their tmux sessions."""

    def __init__(
        self,
        reconciler: Reconciler,
        host: HostTerminalService,
        index: TerminalIndex[Hashable],
        paths: WorkspacePaths,
        settings: ImmortermSettings,
        janitor: Optional[LifecycleJanitor] = None,
    ) -> None:
        self.reconciler = reconciler
        self.registry = reconciler.registry
        self.manifest = reconciler.manifest
        self.host = host
        self.index = index
        self.paths = paths
        self.settings = settings
        self.janitor = janitor
        self._state = RestoreState.NOT_STARTED

    @property
    def state(self) -> RestoreState:
        return self._state

    def _adopt_manifest_entries(self) -> None:
        """Register manifest-only entries so they are restored too."""
        for entry in self.manifest.entries():
            if self.registry.contains(entry.window_id):
                continue
            try:
                self.reconciler.reconcile(entry.window_id, entry.name, entry.conversation_id)
            except ValueError as e:
                logger.warning("Skipping manifest entry: %s", e)

    async def restore(self) -> RestorationResult:
        """Restore every registered terminal once.

        Returns:
            Counts and per-entry details. Never raises for a single entry.
        """
        result = RestorationResult()
        if self._state != RestoreState.NOT_STARTED:
            logger.debug("Restoration already %s, skipping", self._state.value)
            return result

        self._state = RestoreState.RESTORING
        try:
            if not self.settings.restore_on_startup:
                logger.info("Terminal restoration disabled by settings")
                return result
            if not tmux_bridge.is_available():
                logger.warning("tmux not available - terminal restoration skipped (degraded mode)")
                return result

            self._adopt_manifest_entries()
            sessions = self.registry.list()
            if not sessions:
                logger.debug("No terminals to restore")
                return result

            live = await self._live_sessions()
            logger.info("Restoring %d terminals sequentially", len(sessions))
            for position, session in enumerate(sessions):
                if position > 0 and self.settings.restore_delay_ms > 0:
                    await asyncio.sleep(self.settings.restore_delay_s)
                result.record(await self._restore_one(session, live))

            logger.info(
                "Terminal restoration complete: %d restored, %d failed, %d skipped",
                result.restored,
                result.failed,
                result.skipped,
            )
            return result
        finally:
            self._state = RestoreState.DONE

    async def _live_sessions(self) -> Optional[set[str]]:
        """Live tmux session names, or None if tmux did not answer."""
        try:
            return set(await tmux_bridge.list_sessions_strict())
        except (TransientExternalError, MissingDependencyError) as e:
            logger.warning("Could not list tmux sessions, checking each session instead: %s", e)
            return None

    async def _is_live(self, session_name: str, live: Optional[set[str]]) -> bool:
        if live is not None:
            return session_name in live
        return await tmux_bridge.session_exists(session_name)

    def _spec_for(self, session: TerminalSession) -> TerminalSpec:
        resume: Optional[str] = None
        if self.settings.conversation_auto_resume and session.conversation_id:
            resume = ASSISTANT_RESUME_TEMPLATE.format(conversation_id=session.conversation_id)
        return TerminalSpec(
            window_id=session.window_id,
            name=session.name,
            session_name=session.multiplexer_session_id,
            cwd=str(self.paths.root),
            resume_command=resume,
        )

    async def _restore_one(self, session: TerminalSession, live: Optional[set[str]]) -> RestorationDetail:
        window_id = session.window_id
        session_name = session.multiplexer_session_id
        if self.index.is_tracked(window_id):
            return RestorationDetail(window_id, session.name, RestoreStatus.SKIPPED, "Already attached to a terminal")

        try:
            reason = "Reattached to existing tmux session"
            if not await self._is_live(session_name, live):
                log_path = self.paths.log_path(session_name)
                log_path.parent.mkdir(parents=True, exist_ok=True)
                if await tmux_bridge.create_session(session_name, str(self.paths.root), str(log_path)):
                    reason = "Created new tmux session (previous session was lost)"
                    logger.warning("tmux session %s was lost; created a fresh one", session_name)
                elif await tmux_bridge.session_exists(session_name):
                    logger.info("tmux session %s already exists, attaching to it", session_name)
                else:
                    logger.error("Could not recreate tmux session %s", session_name)
                    return RestorationDetail(window_id, session.name, RestoreStatus.FAILED, "tmux session creation failed")

            handle = await self.host.create_terminal(self._spec_for(session))
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.error("Failed to restore terminal %s: %s", window_id, e, exc_info=True)
            return RestorationDetail(window_id, session.name, RestoreStatus.FAILED, str(e))

        if self.janitor is not None:
            self.janitor.cancel_cleanup(window_id)
        self.index.track(handle, window_id)
        self.registry.touch(window_id)
        logger.info("Restored terminal %s %s - %s", window_id, session.name, reason)
        return RestorationDetail(window_id, session.name, RestoreStatus.RESTORED, reason)
