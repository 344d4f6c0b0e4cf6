"""Data models for ImmorTerm.

Persisted models serialize to camelCase JSON (`to_dict`/`from_dict`), matching
the files shared with the host editor and the spawner script.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from immorterm.constants import REGISTRY_VERSION


def _opt_str(value: object) -> Optional[str]:
    return str(value) if isinstance(value, str) and value else None


def _int(value: object, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return int(value)
    return default


@dataclass
class TerminalPosition:
    """Layout metadata for a terminal inside the host editor."""

    tab_index: int = 0
    split_direction: Optional[str] = None
    split_index: Optional[int] = None

    def to_dict(self) -> dict[str, object]:
        data: dict[str, object] = {"tabIndex": self.tab_index}
        if self.split_direction is not None:
            data["splitDirection"] = self.split_direction
        if self.split_index is not None:
            data["splitIndex"] = self.split_index
        return data

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> "TerminalPosition":
        split_index = data.get("splitIndex")
        return cls(
            tab_index=_int(data.get("tabIndex")),
            split_direction=_opt_str(data.get("splitDirection")),
            split_index=_int(split_index) if split_index is not None else None,
        )


@dataclass
class TerminalSession:  # pylint: disable=too-many-instance-attributes  # Data model for persisted terminals
    """A logical terminal bound to a tmux session."""

    window_id: str
    name: str
    multiplexer_session_id: str
    created_at: int  # epoch ms
    last_attached: int  # epoch ms
    conversation_id: Optional[str] = None
    position: Optional[TerminalPosition] = None
    theme: Optional[str] = None

    def to_dict(self) -> dict[str, object]:
        """Convert session to camelCase dictionary for JSON serialization."""
        data: dict[str, object] = {
            "windowId": self.window_id,
            "name": self.name,
            "multiplexerSessionId": self.multiplexer_session_id,
            "createdAt": self.created_at,
            "lastAttached": self.last_attached,
        }
        if self.conversation_id:
            data["conversationId"] = self.conversation_id
        if self.position is not None:
            data["position"] = self.position.to_dict()
        if self.theme:
            data["theme"] = self.theme
        return data

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> "TerminalSession":
        """Create session from a current-schema dictionary.

        Raises:
            ValueError: If required identifiers are missing.
        """
        window_id = data.get("windowId")
        session_id = data.get("multiplexerSessionId")
        if not isinstance(window_id, str) or not window_id:
            raise ValueError(f"Session entry missing windowId: {data!r}")
        if not isinstance(session_id, str) or not session_id:
            raise ValueError(f"Session entry missing multiplexerSessionId: {data!r}")

        position_raw = data.get("position")
        return cls(
            window_id=window_id,
            name=str(data.get("name") or window_id),
            multiplexer_session_id=session_id,
            created_at=_int(data.get("createdAt")),
            last_attached=_int(data.get("lastAttached")),
            conversation_id=_opt_str(data.get("conversationId")),
            position=TerminalPosition.from_dict(position_raw) if isinstance(position_raw, dict) else None,
            theme=_opt_str(data.get("theme")),
        )


@dataclass
class WorkspaceRegistry:
    """Persisted registry blob for one workspace."""

    project_name: str
    sessions: list[TerminalSession] = field(default_factory=list)
    version: int = REGISTRY_VERSION
    last_cleanup_at: int = 0

    def to_dict(self) -> dict[str, object]:
        return {
            "version": self.version,
            "projectName": self.project_name,
            "sessions": [s.to_dict() for s in self.sessions],
            "lastCleanupAt": self.last_cleanup_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> "WorkspaceRegistry":
        sessions_raw = data.get("sessions")
        if not isinstance(sessions_raw, list):
            raise ValueError("Registry 'sessions' must be a list")
        sessions = [TerminalSession.from_dict(s) for s in sessions_raw if isinstance(s, dict)]
        return cls(
            project_name=str(data.get("projectName") or ""),
            sessions=sessions,
            version=_int(data.get("version"), REGISTRY_VERSION),
            last_cleanup_at=_int(data.get("lastCleanupAt")),
        )


@dataclass(frozen=True)
class PendingRegistration:
    """A spawner-produced record for a terminal the registry does not know yet."""

    window_id: str
    display_name: str
    source: Optional[Path] = None


@dataclass
class ConversationCandidate:
    """Read-only view of one assistant conversation, built from its own history."""

    conversation_id: str
    project_path: str
    sample_messages: list[str] = field(default_factory=list)
    responses: list[str] = field(default_factory=list)
    mtime: Optional[float] = None  # transcript mtime, epoch seconds


class RestoreState(str, Enum):
    """Restoration engine lifecycle."""

    NOT_STARTED = "not_started"
    RESTORING = "restoring"
    DONE = "done"


class RestoreStatus(str, Enum):
    RESTORED = "restored"
    FAILED = "failed"
    SKIPPED = "skipped"


class MatchMethod(str, Enum):
    """How a conversation was matched to a session."""

    CONTENT = "content"
    SINGLE_CANDIDATE = "single_candidate"
    TIMESTAMP = "timestamp"


@dataclass(frozen=True)
class PendingCommandRename:
    """A rename we issued ourselves; the next host rename event should echo it."""

    expected_old: str
    new_name: str


@dataclass(frozen=True)
class RenameConfirmed:
    """The host echoed our rename; later rename events are user-initiated."""


RenameState = Optional[Union[PendingCommandRename, RenameConfirmed]]


@dataclass
class TerminalSpec:
    """What the host needs to create a terminal bound to a tmux session."""

    window_id: str
    name: str
    session_name: str
    cwd: str
    resume_command: Optional[str] = None


@dataclass
class ReconcileResult:
    added: bool
    window_id: str
    display_name: str


@dataclass
class RestorationDetail:
    window_id: str
    name: str
    status: RestoreStatus
    reason: str = ""


@dataclass
class RestorationResult:
    restored: int = 0
    failed: int = 0
    skipped: int = 0
    details: list[RestorationDetail] = field(default_factory=list)

    def record(self, detail: RestorationDetail) -> None:
        self.details.append(detail)
        if detail.status == RestoreStatus.RESTORED:
            self.restored += 1
        elif detail.status == RestoreStatus.FAILED:
            self.failed += 1
        else:
            self.skipped += 1


@dataclass
class StaleSweepResult:
    removed: list[str] = field(default_factory=list)
    kept_pending: list[str] = field(default_factory=list)
    logs_deleted: list[str] = field(default_factory=list)


@dataclass
class LogCleanupResult:
    bytes_freed: int = 0
    files_removed: int = 0
    current_size: int = 0
    max_size: int = 0
    removed_files: list[str] = field(default_factory=list)
    truncated_files: list[str] = field(default_factory=list)


@dataclass
class ForgetResult:
    success: bool
    session_killed: bool = False
    storage_removed: bool = False
    log_deleted: bool = False


@dataclass
class ConversationMatch:
    conversation_id: str
    method: MatchMethod
    score: float = 0.0


@dataclass
class CorrelationSweepResult:
    linked: dict[str, str] = field(default_factory=dict)  # window_id -> conversation_id
    cleared: list[str] = field(default_factory=list)
    unchanged: int = 0
    errors: int = 0


@dataclass
class MigrationResult:
    imported: int = 0
    skipped: int = 0
    backup_dir: Optional[Path] = None
    already_migrated: bool = False
