"""Error types raised by ImmorTerm components.

Expected "nothing to do" outcomes are result values, never exceptions. These
types cover genuine external or state failures only.
"""

from pathlib import Path


class ImmortermError(Exception):
    """Base class for ImmorTerm failures."""


class TransientExternalError(ImmortermError):
    """An external command (tmux, ps) failed or timed out; retry next sweep."""

    def __init__(self, operation: str, detail: str = "") -> None:
        self.operation = operation
        self.detail = detail
        message = f"{operation} failed" + (f": {detail}" if detail else "")
        super().__init__(message)


class CorruptStateError(ImmortermError):
    """Persisted state could not be read or validated."""

    def __init__(self, path: Path, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Corrupt state in {path}: {reason}")


class MissingDependencyError(ImmortermError):
    """A required binary is not installed."""

    def __init__(self, binary: str) -> None:
        self.binary = binary
        super().__init__(f"Required binary not found: {binary}")


class MigrationError(ImmortermError):
    """A legacy import step failed; the import was rolled back."""

    def __init__(self, step: str, reason: str) -> None:
        self.step = step
        self.reason = reason
        super().__init__(f"Migration failed during {step}: {reason}")
