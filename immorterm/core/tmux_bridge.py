"""tmux bridge for ImmorTerm - bounded-timeout wrappers around the tmux CLI.

All functions are stateless apart from the configured binary/timeout and a
per-operation failure counter used to escalate repeated transient errors.
Query helpers return empty values on failure; `list_sessions_strict` raises so
sweeps can tell "no sessions" apart from "tmux did not answer".
"""

import asyncio
import shutil
from typing import Optional

from immorterm.constants import TRANSIENT_FAILURE_ESCALATION
from immorterm.core.errors import MissingDependencyError, TransientExternalError
from immorterm.logging_config import get_logger

logger = get_logger(__name__)

SUBPROCESS_TIMEOUT_DEFAULT = 5.0

_NO_SERVER_MARKERS = ("no server running", "error connecting", "no such file or directory")

_tmux_binary = "tmux"
_default_timeout = SUBPROCESS_TIMEOUT_DEFAULT
_failure_counts: dict[str, int] = {}


class SubprocessTimeoutError(TransientExternalError):
    """A tmux subprocess did not finish within its time budget."""

    def __init__(self, operation: str, timeout: float, pid: Optional[int] = None) -> None:
        self.timeout = timeout
        self.pid = pid
        super().__init__(operation)

    def __str__(self) -> str:
        return f"{self.operation} timed out after {self.timeout}s (pid={self.pid})"


def configure(binary: str = "tmux", timeout: float = SUBPROCESS_TIMEOUT_DEFAULT) -> None:
    """Set the tmux binary and default command timeout."""
    global _tmux_binary, _default_timeout  # pylint: disable=global-statement
    _tmux_binary = binary
    _default_timeout = timeout


def is_available() -> bool:
    """True if the tmux binary can be found."""
    return shutil.which(_tmux_binary) is not None


async def communicate_with_timeout(
    process: asyncio.subprocess.Process,
    input_data: Optional[bytes],
    timeout: float,
    operation: str,
) -> tuple[bytes, bytes]:
    """Communicate with a process, killing it if it exceeds `timeout`.

    Raises:
        SubprocessTimeoutError: If the process did not exit in time.
    """
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(input_data), timeout=timeout)
    except asyncio.TimeoutError as exc:
        if _kill_quietly(process):
            await process.wait()
        raise SubprocessTimeoutError(operation, timeout, process.pid) from exc
    return stdout or b"", stderr or b""


def _kill_quietly(process: asyncio.subprocess.Process) -> bool:
    """Kill a process; False if it was already gone."""
    try:
        process.kill()
    except ProcessLookupError:
        return False
    return True


def _record_failure(operation: str, detail: str) -> None:
    count = _failure_counts.get(operation, 0) + 1
    _failure_counts[operation] = count
    if count >= TRANSIENT_FAILURE_ESCALATION:
        logger.warning("tmux %s failing repeatedly (%d in a row): %s", operation, count, detail)
    else:
        logger.debug("tmux %s failed: %s", operation, detail)


def _record_success(operation: str) -> None:
    _failure_counts.pop(operation, None)


def failure_count(operation: str) -> int:
    return _failure_counts.get(operation, 0)


async def _run(args: list[str], operation: str, timeout: Optional[float] = None) -> tuple[int, str, str]:
    """Run a tmux command and return (returncode, stdout, stderr).

    Raises:
        MissingDependencyError: If the tmux binary is absent.
        SubprocessTimeoutError: If tmux hangs.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            _tmux_binary,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise MissingDependencyError(_tmux_binary) from exc

    stdout, stderr = await communicate_with_timeout(process, None, timeout or _default_timeout, operation)
    return process.returncode or 0, stdout.decode("utf-8", errors="replace"), stderr.decode("utf-8", errors="replace")


async def _run_ok(args: list[str], operation: str) -> bool:
    """Run a tmux command, reporting success as a bool and logging failures."""
    try:
        returncode, _, stderr = await _run(args, operation)
    except (TransientExternalError, MissingDependencyError) as e:
        _record_failure(operation, str(e))
        return False

    if returncode != 0:
        _record_failure(operation, stderr.strip())
        return False

    _record_success(operation)
    return True


async def list_sessions_strict() -> list[str]:
    """List all tmux session names.

    An absent tmux server means no sessions, not an error.

    Raises:
        TransientExternalError: If tmux failed or timed out.
        MissingDependencyError: If tmux is not installed.
    """
    operation = "list-sessions"
    try:
        returncode, stdout, stderr = await _run(["list-sessions", "-F", "#{session_name}"], operation)
    except SubprocessTimeoutError as e:
        _record_failure(operation, str(e))
        raise

    if returncode != 0:
        if any(marker in stderr.lower() for marker in _NO_SERVER_MARKERS):
            _record_success(operation)
            return []
        _record_failure(operation, stderr.strip())
        raise TransientExternalError(operation, stderr.strip())

    _record_success(operation)
    return [line for line in stdout.strip().split("\n") if line]


async def list_sessions() -> list[str]:
    """List all tmux session names, or [] if tmux did not answer."""
    try:
        return await list_sessions_strict()
    except (TransientExternalError, MissingDependencyError) as e:
        logger.debug("Listing tmux sessions failed: %s", e)
        return []


async def session_exists(session_name: str) -> bool:
    """Check if a tmux session exists.

    Args:
        session_name: Session name

    Returns:
        True if session exists, False otherwise
    """
    try:
        returncode, _, _ = await _run(["has-session", "-t", f"={session_name}"], "has-session")
    except (TransientExternalError, MissingDependencyError) as e:
        logger.debug("has-session for %s failed: %s", session_name, e)
        return False
    return returncode == 0


async def create_session(session_name: str, working_dir: str, log_path: Optional[str] = None) -> bool:
    """Create a detached tmux session, optionally piping its output to a log.

    Args:
        session_name: Session name
        working_dir: Initial working directory
        log_path: Append-only transcript file for the pane

    Returns:
        True if successful, False otherwise
    """
    created = await _run_ok(["new-session", "-d", "-s", session_name, "-c", working_dir], "new-session")
    if not created:
        return False

    if log_path:
        quoted = log_path.replace("'", "'\\''")
        await _run_ok(["pipe-pane", "-o", "-t", session_name, f"cat >> '{quoted}'"], "pipe-pane")
    logger.debug("Created tmux session %s in %s", session_name, working_dir)
    return True


async def kill_session(session_name: str) -> bool:
    """Kill a tmux session.

    Returns:
        True if successful, False otherwise
    """
    return await _run_ok(["kill-session", "-t", f"={session_name}"], "kill-session")


async def set_title(session_name: str, title: str) -> bool:
    """Set the pane title shown inside the tmux session."""
    return await _run_ok(["select-pane", "-t", session_name, "-T", title], "set-title")


async def get_env(session_name: str, key: str) -> Optional[str]:
    """Read a variable from the tmux session environment.

    Returns:
        The value, or None if unset, removed (`-KEY`), or tmux failed.
    """
    try:
        returncode, stdout, _ = await _run(["show-environment", "-t", session_name, key], "show-environment")
    except (TransientExternalError, MissingDependencyError) as e:
        logger.debug("show-environment for %s failed: %s", session_name, e)
        return None

    line = stdout.strip()
    if returncode != 0 or not line or line.startswith("-"):
        return None
    _, _, value = line.partition("=")
    return value


async def set_env(session_name: str, key: str, value: Optional[str]) -> bool:
    """Set (or unset when value is None) a tmux session environment variable."""
    if value is None:
        return await _run_ok(["set-environment", "-t", session_name, "-u", key], "set-environment")
    return await _run_ok(["set-environment", "-t", session_name, key, value], "set-environment")


async def get_pane_pids() -> dict[str, int]:
    """Map each session name to the pid of its first pane's process."""
    operation = "list-panes"
    try:
        returncode, stdout, stderr = await _run(["list-panes", "-a", "-F", "#{session_name} #{pane_pid}"], operation)
    except (TransientExternalError, MissingDependencyError) as e:
        _record_failure(operation, str(e))
        return {}

    if returncode != 0:
        _record_failure(operation, stderr.strip())
        return {}

    _record_success(operation)
    pids: dict[str, int] = {}
    for line in stdout.strip().split("\n"):
        name, _, pid_raw = line.rpartition(" ")
        if name and pid_raw.isdigit() and name not in pids:
            pids[name] = int(pid_raw)
    return pids
