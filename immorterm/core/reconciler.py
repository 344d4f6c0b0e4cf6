"""Reconciler - turns "a terminal was spawned" signals into registry entries.

Also owns the single lookup table between host terminal handles and window ids
(`TerminalIndex`) so no other component keeps its own map.
"""

from __future__ import annotations

from typing import Generic, Hashable, Iterator, Optional, TypeVar

from immorterm.core.manifest import RestorationManifest
from immorterm.core.models import PendingRegistration, ReconcileResult, TerminalSession
from immorterm.core.naming import build_session_name, is_raw_window_id, is_valid_window_id, next_default_name
from immorterm.core.registry import SessionRegistry
from immorterm.logging_config import get_logger
from immorterm.utils import now_ms

logger = get_logger(__name__)

H = TypeVar("H", bound=Hashable)


class TerminalIndex(Generic[H]):
    """Bidirectional map between host terminal handles and window ids."""

    def __init__(self) -> None:
        self._by_handle: dict[H, str] = {}
        self._by_window: dict[str, H] = {}

    def track(self, handle: H, window_id: str) -> None:
        previous = self._by_window.get(window_id)
        if previous is not None and previous != handle:
            self._by_handle.pop(previous, None)
        old_window = self._by_handle.get(handle)
        if old_window is not None and old_window != window_id:
            self._by_window.pop(old_window, None)
        self._by_handle[handle] = window_id
        self._by_window[window_id] = handle

    def untrack(self, handle: H) -> Optional[str]:
        window_id = self._by_handle.pop(handle, None)
        if window_id is not None:
            self._by_window.pop(window_id, None)
        return window_id

    def window_id_for(self, handle: H) -> Optional[str]:
        return self._by_handle.get(handle)

    def handle_for(self, window_id: str) -> Optional[H]:
        return self._by_window.get(window_id)

    def is_tracked(self, window_id: str) -> bool:
        return window_id in self._by_window

    def items(self) -> Iterator[tuple[H, str]]:
        return iter(list(self._by_handle.items()))

    def __len__(self) -> int:
        return len(self._by_handle)


class Reconciler:
    """Registers newly spawned terminals in the registry and the manifest."""

    def __init__(
        self,
        registry: SessionRegistry,
        manifest: RestorationManifest,
        naming_pattern: str = "${project}-${n}",
    ) -> None:
        self.registry = registry
        self.manifest = manifest
        self.naming_pattern = naming_pattern

    def _display_name(self, window_id: str, display_name: str) -> str:
        name = display_name.strip()
        if name and name != window_id and not is_raw_window_id(name):
            return name
        existing = [s.name for s in self.registry.list()]
        return next_default_name(self.naming_pattern, self.registry.project_name, existing)

    def reconcile(self, window_id: str, display_name: str, conversation_id: Optional[str] = None) -> ReconcileResult:
        """Register a terminal. Idempotent per window id.

        Raises:
            ValueError: If `window_id` is not a valid window id.
        """
        if not is_valid_window_id(window_id):
            raise ValueError(f"Invalid window id: {window_id!r}")

        existing = self.registry.get(window_id)
        if existing is not None:
            logger.debug("Terminal %s already registered as %s", window_id, existing.name)
            return ReconcileResult(added=False, window_id=window_id, display_name=existing.name)

        name = self._display_name(window_id, display_name)
        timestamp = now_ms()
        self.registry.add(
            TerminalSession(
                window_id=window_id,
                name=name,
                multiplexer_session_id=build_session_name(self.registry.project_name, window_id),
                created_at=timestamp,
                last_attached=timestamp,
                conversation_id=conversation_id,
            )
        )
        self.manifest.add(window_id, name, conversation_id)
        logger.info("Reconciled new terminal %s as %s", window_id, name)
        return ReconcileResult(added=True, window_id=window_id, display_name=name)

    async def handle_pending(self, record: PendingRegistration) -> ReconcileResult:
        """Inbox handler: reconcile one pending registration.

        Invalid records are acknowledged and dropped rather than retried.
        """
        try:
            return self.reconcile(record.window_id, record.display_name)
        except ValueError as e:
            logger.warning("Dropping pending registration: %s", e)
            return ReconcileResult(added=False, window_id=record.window_id, display_name=record.display_name)
