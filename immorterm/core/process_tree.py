"""Process-tree inspection: is an assistant running inside a tmux pane?"""

from __future__ import annotations

import asyncio
from typing import Optional

import psutil

from immorterm.constants import ASSISTANT_PROCESS_NAMES, SHELL_PROCESS_NAMES
from immorterm.core.errors import TransientExternalError
from immorterm.logging_config import get_logger

logger = get_logger(__name__)


def _name(process: psutil.Process) -> str:
    try:
        return process.name().lower()
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return ""


def _children(process: psutil.Process) -> list[psutil.Process]:
    try:
        return process.children()
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return []


def find_assistant_pid(root_pid: int) -> Optional[int]:
    """Find an assistant process under a tmux pane.

    The root is the pid tmux tracks for the pane. Every shell-like child of it
    (and the root itself when it is a shell) is searched for an assistant child,
    so a second shell opened in the pane does not hide the assistant.
    """
    try:
        root = psutil.Process(root_pid)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return None

    shells = [root] if _name(root) in SHELL_PROCESS_NAMES else []
    shells.extend(child for child in _children(root) if _name(child) in SHELL_PROCESS_NAMES)

    for shell in shells:
        for child in _children(shell):
            if _name(child) in ASSISTANT_PROCESS_NAMES:
                return child.pid
    return None


async def find_assistant_pid_async(root_pid: int, timeout: float) -> Optional[int]:
    """Run the process scan off the event loop under a time budget.

    Raises:
        TransientExternalError: If the scan did not finish in time.
    """
    try:
        return await asyncio.wait_for(asyncio.to_thread(find_assistant_pid, root_pid), timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise TransientExternalError("process scan", f"timed out after {timeout}s") from exc
