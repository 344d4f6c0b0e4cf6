"""Session registry - the durable, versioned store of known terminals.

Every component reads and mutates terminal state through `SessionRegistry`.
Mutations update the in-memory index immediately; persistence is debounced so
bursts of changes collapse into one atomic write. `flush()` forces it.
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import os
from pathlib import Path
from typing import Callable, Optional

from immorterm.constants import REGISTRY_SAVE_DEBOUNCE_S, REGISTRY_VERSION
from immorterm.core.errors import CorruptStateError
from immorterm.core.models import TerminalSession, WorkspaceRegistry
from immorterm.logging_config import get_logger
from immorterm.utils import atomic_write_json, now_ms

logger = get_logger(__name__)

RawRegistry = dict[str, object]


def _v1_to_v2(data: RawRegistry) -> RawRegistry:
    """v1 stored `terminals` with `screenSession` and `lastCleanup`."""
    sessions: list[object] = []
    terminals = data.get("terminals")
    for entry in terminals if isinstance(terminals, list) else []:
        if not isinstance(entry, dict):
            continue
        migrated = dict(entry)
        if "screenSession" in migrated:
            migrated["multiplexerSessionId"] = migrated.pop("screenSession")
        sessions.append(migrated)
    return {
        "version": 2,
        "projectName": data.get("projectName", ""),
        "sessions": sessions,
        "lastCleanupAt": data.get("lastCleanup", 0),
    }


def _v2_to_v3(data: RawRegistry) -> RawRegistry:
    """v2 named the conversation link `claudeSessionId`."""
    sessions: list[object] = []
    raw_sessions = data.get("sessions")
    for entry in raw_sessions if isinstance(raw_sessions, list) else []:
        if not isinstance(entry, dict):
            continue
        migrated = dict(entry)
        if "claudeSessionId" in migrated:
            migrated["conversationId"] = migrated.pop("claudeSessionId")
        sessions.append(migrated)
    return {**data, "version": 3, "sessions": sessions}


SCHEMA_MIGRATIONS: dict[int, Callable[[RawRegistry], RawRegistry]] = {
    1: _v1_to_v2,
    2: _v2_to_v3,
}


def migrate_schema(data: RawRegistry, path: Path) -> RawRegistry:
    """Forward-migrate a raw registry blob to the current version.

    Raises:
        CorruptStateError: If the version is missing, unknown, or newer than supported.
    """
    version = data.get("version")
    if version is None and "terminals" in data:
        version = 1
    if not isinstance(version, int) or isinstance(version, bool):
        raise CorruptStateError(path, f"invalid version {version!r}")
    if version > REGISTRY_VERSION:
        raise CorruptStateError(path, f"version {version} is newer than supported {REGISTRY_VERSION}")

    while version < REGISTRY_VERSION:
        step = SCHEMA_MIGRATIONS.get(version)
        if step is None:
            raise CorruptStateError(path, f"no migration from version {version}")
        data = step(data)
        logger.info("Migrated registry %s from v%d to v%d", path, version, data["version"])
        version = int(data["version"])  # type: ignore[call-overload]
    return data


class SessionRegistry:
    """In-memory index of terminal sessions backed by a JSON file."""

    def __init__(self, path: Path, project_name: str, debounce_s: float = REGISTRY_SAVE_DEBOUNCE_S) -> None:
        self._path = path
        self._debounce_s = debounce_s
        self._state = WorkspaceRegistry(project_name=project_name)
        self._index: dict[str, TerminalSession] = {}
        self._save_handle: Optional[asyncio.TimerHandle] = None
        self._dirty = False

    @property
    def path(self) -> Path:
        return self._path

    @property
    def project_name(self) -> str:
        return self._state.project_name

    @property
    def last_cleanup_at(self) -> int:
        return self._state.last_cleanup_at

    def load(self) -> None:
        """Load the registry from disk, reinitializing on corrupt state."""
        if not self._path.exists():
            logger.debug("No registry at %s, starting empty", self._path)
            self._replace_state(WorkspaceRegistry(project_name=self._state.project_name))
            return

        try:
            loaded, migrated = self._read()
        except CorruptStateError as e:
            logger.warning("%s; reinitializing empty registry", e)
            self._quarantine()
            self._replace_state(WorkspaceRegistry(project_name=self._state.project_name))
            self._mark_dirty()
            return

        loaded.project_name = self._state.project_name or loaded.project_name
        self._replace_state(loaded)
        if migrated:
            self._mark_dirty()
        logger.debug("Loaded %d sessions from %s", len(self._index), self._path)

    def _read(self) -> tuple[WorkspaceRegistry, bool]:
        try:
            raw: object = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise CorruptStateError(self._path, str(e)) from e
        if not isinstance(raw, dict):
            raise CorruptStateError(self._path, "top level is not an object")

        data = migrate_schema(raw, self._path)
        try:
            registry = WorkspaceRegistry.from_dict(data)
        except ValueError as e:
            raise CorruptStateError(self._path, str(e)) from e
        return registry, raw.get("version") != REGISTRY_VERSION

    def _quarantine(self) -> None:
        corrupt_path = self._path.with_name(f"{self._path.name}.corrupt")
        try:
            os.replace(self._path, corrupt_path)
        except OSError as e:
            logger.warning("Could not preserve corrupt registry %s: %s", self._path, e)

    def _replace_state(self, state: WorkspaceRegistry) -> None:
        self._state = state
        self._index = {}
        for session in state.sessions:
            if session.window_id in self._index:
                logger.warning("Dropping duplicate registry entry %s", session.window_id)
                continue
            self._index[session.window_id] = session

    def get(self, window_id: str) -> Optional[TerminalSession]:
        session = self._index.get(window_id)
        return dataclasses.replace(session) if session else None

    def get_by_name(self, name: str) -> Optional[TerminalSession]:
        for session in self._index.values():
            if session.name == name:
                return dataclasses.replace(session)
        return None

    def get_by_session(self, session_name: str) -> Optional[TerminalSession]:
        for session in self._index.values():
            if session.multiplexer_session_id == session_name:
                return dataclasses.replace(session)
        return None

    def contains(self, window_id: str) -> bool:
        return window_id in self._index

    def list(self) -> list[TerminalSession]:
        return [dataclasses.replace(s) for s in self._index.values()]

    def add(self, session: TerminalSession) -> bool:
        """Add a session. Re-adding a known window id is a no-op.

        Returns:
            True if the session was added, False if it already existed.
        """
        if session.window_id in self._index:
            logger.debug("Session %s already registered", session.window_id)
            return False
        self._index[session.window_id] = dataclasses.replace(session)
        self._mark_dirty()
        logger.debug("Registered session %s (%s)", session.window_id, session.name)
        return True

    def remove(self, window_id: str) -> bool:
        if self._index.pop(window_id, None) is None:
            return False
        self._mark_dirty()
        logger.debug("Removed session %s", window_id)
        return True

    def update(self, window_id: str, /, **changes: object) -> Optional[TerminalSession]:
        """Apply a partial update to a session.

        Returns:
            The updated session, or None if the window id is unknown.

        Raises:
            TypeError: If `changes` names a field TerminalSession does not have.
        """
        current = self._index.get(window_id)
        if current is None:
            return None
        if "window_id" in changes and changes["window_id"] != window_id:
            raise ValueError("window_id is immutable")
        updated = dataclasses.replace(current, **changes)  # type: ignore[arg-type]
        self._index[window_id] = updated
        self._mark_dirty()
        return dataclasses.replace(updated)

    def touch(self, window_id: str) -> Optional[TerminalSession]:
        """Record that the terminal was just attached."""
        return self.update(window_id, last_attached=now_ms())

    def clear(self) -> None:
        self._index.clear()
        self._mark_dirty()

    def set_last_cleanup(self, timestamp_ms: Optional[int] = None) -> None:
        self._state.last_cleanup_at = timestamp_ms if timestamp_ms is not None else now_ms()
        self._mark_dirty()

    def _mark_dirty(self) -> None:
        self._dirty = True
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.flush()
            return
        if self._save_handle is None:
            self._save_handle = loop.call_later(self._debounce_s, self._debounced_save)

    def _debounced_save(self) -> None:
        self._save_handle = None
        try:
            self.flush()
        except OSError as e:
            logger.error("Failed to persist registry %s: %s", self._path, e, exc_info=True)

    def flush(self) -> None:
        """Write pending changes to disk now."""
        if self._save_handle is not None:
            self._save_handle.cancel()
            self._save_handle = None
        if not self._dirty:
            return

        self._state.sessions = list(self._index.values())
        self._state.version = REGISTRY_VERSION
        atomic_write_json(self._path, self._state.to_dict())
        self._dirty = False
        logger.debug("Registry saved: %d sessions", len(self._index))

    def close(self) -> None:
        """Flush and stop the debounce timer (call at shutdown)."""
        self.flush()
