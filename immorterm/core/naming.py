"""Terminal naming: project names, window ids, tmux session names, titles.

Also owns the per-terminal rename flag that tells command-initiated renames
apart from user-initiated ones.
"""

import os
import re
import secrets
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

from immorterm.constants import DEFAULT_PROJECT_NAME, RAW_WINDOW_ID_PATTERN, WINDOW_ID_PATTERN
from immorterm.core.models import PendingCommandRename, RenameConfirmed, RenameState
from immorterm.logging_config import get_logger

logger = get_logger(__name__)


def project_name_for(workspace: Path) -> str:
    """Derive the tmux-safe project name from a workspace folder."""
    name = re.sub(r"[^a-z0-9-]", "-", workspace.name.lower())
    name = re.sub(r"-+", "-", name).strip("-")
    return name or DEFAULT_PROJECT_NAME


def generate_window_id(pid: Optional[int] = None) -> str:
    """Create a new window id: `{pid}-{8 hex chars}`."""
    return f"{pid if pid is not None else os.getpid()}-{secrets.token_hex(4)}"


def is_valid_window_id(window_id: str) -> bool:
    return bool(WINDOW_ID_PATTERN.match(window_id))


def is_raw_window_id(name: str) -> bool:
    """True if a display name is just an unnamed window id."""
    return bool(RAW_WINDOW_ID_PATTERN.match(name))


def build_session_name(project_name: str, window_id: str) -> str:
    return f"{project_name}-{window_id}"


def parse_window_id(session_name: str, project_name: str) -> Optional[str]:
    """Extract the window id from a tmux session name owned by this project."""
    prefix = f"{project_name}-"
    if not session_name.startswith(prefix):
        return None
    window_id = session_name[len(prefix) :]
    return window_id if is_valid_window_id(window_id) else None


def format_title(name: str, now: Optional[datetime] = None) -> str:
    """Title pushed into tmux: `DD/MM-HH:MM name`."""
    stamp = (now or datetime.now()).strftime("%d/%m-%H:%M")
    return f"{stamp} {name}"


def next_default_name(pattern: str, project_name: str, existing: Iterable[str]) -> str:
    """Fill `pattern` with the lowest counter not already taken."""
    taken = set(existing)
    n = 1
    while True:
        candidate = pattern.replace("${project}", project_name).replace("${n}", str(n))
        if candidate not in taken:
            return candidate
        n += 1


class RenameTracker:
    """Per-terminal rename flag: None, PendingCommandRename, or RenameConfirmed.

    A command-initiated rename arms the flag. The next host rename event for the
    same terminal consumes it: an event that matches the armed rename is our own
    echo and must not be synced back.
    """

    def __init__(self) -> None:
        self._states: dict[str, RenameState] = {}

    def state(self, window_id: str) -> RenameState:
        return self._states.get(window_id)

    def arm(self, window_id: str, expected_old: str, new_name: str) -> None:
        self._states[window_id] = PendingCommandRename(expected_old=expected_old, new_name=new_name)

    def consume(self, window_id: str, old_name: str, new_name: str) -> bool:
        """Consume the flag for a host rename event.

        Returns:
            True if the event echoes a pending command rename (ignore it),
            False if it is a user-initiated rename (sync it).
        """
        state = self._states.get(window_id)
        if isinstance(state, PendingCommandRename):
            if state.expected_old == old_name and state.new_name == new_name:
                self._states[window_id] = RenameConfirmed()
                logger.debug("Rename echo confirmed for %s: %s", window_id, new_name)
                return True
            self._states[window_id] = None
            logger.debug("Pending rename for %s superseded by user rename %s", window_id, new_name)
            return False
        self._states[window_id] = None
        return False

    def forget(self, window_id: str) -> None:
        self._states.pop(window_id, None)
