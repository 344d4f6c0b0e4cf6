"""Unit tests for assistant detection in tmux pane process trees."""

import time
from unittest.mock import MagicMock, patch

import psutil
import pytest

from immorterm.core.errors import TransientExternalError
from immorterm.core.process_tree import find_assistant_pid, find_assistant_pid_async

pytestmark = pytest.mark.unit


def _proc(pid, name, children=()):
    process = MagicMock()
    process.pid = pid
    process.name.return_value = name
    process.children.return_value = list(children)
    return process


def test_assistant_under_root_shell():
    root = _proc(100, "zsh", [_proc(101, "claude")])
    with patch("immorterm.core.process_tree.psutil.Process", return_value=root):
        assert find_assistant_pid(100) == 101


def test_assistant_under_nested_shell():
    """A second shell opened in the pane does not hide the assistant."""
    nested = _proc(102, "bash", [_proc(103, "claude")])
    root = _proc(100, "tmux-pane", [_proc(101, "vim"), nested])
    with patch("immorterm.core.process_tree.psutil.Process", return_value=root):
        assert find_assistant_pid(100) == 103


def test_no_assistant():
    root = _proc(100, "bash", [_proc(101, "python")])
    with patch("immorterm.core.process_tree.psutil.Process", return_value=root):
        assert find_assistant_pid(100) is None


def test_vanished_processes_are_skipped():
    gone = _proc(101, "bash")
    gone.children.side_effect = psutil.NoSuchProcess(101)
    root = _proc(100, "zsh", [gone])
    with patch("immorterm.core.process_tree.psutil.Process", return_value=root):
        assert find_assistant_pid(100) is None

    with patch("immorterm.core.process_tree.psutil.Process", side_effect=psutil.NoSuchProcess(100)):
        assert find_assistant_pid(100) is None


@pytest.mark.asyncio
async def test_async_scan_times_out():
    def slow(_pid):
        time.sleep(0.2)

    with patch("immorterm.core.process_tree.find_assistant_pid", side_effect=slow):
        with pytest.raises(TransientExternalError, match="process scan"):
            await find_assistant_pid_async(100, timeout=0.05)
