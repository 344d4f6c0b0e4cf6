"""Utility functions for ImmorTerm."""

import json
import os
import re
import time
from pathlib import Path

_ANSI_PATTERN = re.compile(
    r"\x1b"  # ESC
    r"(?:"
    r"\[[0-9;?]*[a-zA-Z]"  # CSI sequences (ESC[...m, ESC[?25h, etc.)
    r"|"
    r"\][^\x07\x1b]*(?:\x07|\x1b\\)"  # OSC sequences (ESC]...BEL or ESC]...ST)
    r"|"
    r"[()][0-9A-Za-z]"  # Charset selection (ESC(B)
    r"|"
    r"[=>]"  # Keypad modes (ESC=, ESC>)
    r")"
)


def expand_env_vars(config: object) -> object:
    """Recursively expand environment variables in config.

    Replaces ${VAR} patterns with environment variable values.

    Args:
        config: Configuration object (dict, list, str, or primitive)

    Returns:
        Configuration with all ${VAR} patterns replaced
    """
    if isinstance(config, dict):
        return {k: expand_env_vars(v) for k, v in config.items()}  # type: ignore[misc]
    if isinstance(config, list):
        return [expand_env_vars(item) for item in config]
    if isinstance(config, str):

        def replace_env_var(match: re.Match[str]) -> str:
            env_var = match.group(1)
            return os.getenv(env_var, match.group(0))

        return re.sub(r"\$\{([^}]+)\}", replace_env_var, config)
    return config


def format_size(size_bytes: int) -> str:
    """Format byte size to human-readable string.

    Args:
        size_bytes: Size in bytes

    Returns:
        Human-readable size string (e.g., "1.5KB", "2.3MB")
    """
    if size_bytes < 1024:
        return f"{size_bytes}B"
    if size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f}KB"
    return f"{size_bytes / (1024 * 1024):.1f}MB"


def strip_ansi_codes(text: str) -> str:
    """Strip ANSI escape codes and carriage returns from terminal output.

    Args:
        text: Text with ANSI escape codes

    Returns:
        Text with ANSI codes removed
    """
    return _ANSI_PATTERN.sub("", text).replace("\r", "")


def atomic_write_json(path: Path, payload: object) -> None:
    """Write JSON to `path` via a same-directory temp file and rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")

    try:
        with temp_path.open("w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)
            handle.write("\n")
        os.replace(temp_path, path)
    finally:
        temp_path.unlink(missing_ok=True)


def now_ms() -> int:
    """Current wall-clock time as epoch milliseconds."""
    return int(time.time() * 1000)
