"""Unit tests for the conversation correlator."""

import json
import os
from unittest.mock import AsyncMock, patch

import pytest

from immorterm.config.schema import CorrelationConfig
from immorterm.core.correlator import (
    ConversationCorrelator,
    ConversationHistory,
    best_candidate,
    encode_project_dir,
    extract_phrases,
    is_meaningful_message,
    read_responses,
)
from immorterm.core.manifest import RestorationManifest
from immorterm.core.models import ConversationCandidate, MatchMethod, TerminalSession
from immorterm.core.registry import SessionRegistry
from immorterm.paths import WorkspacePaths

pytestmark = pytest.mark.unit

MESSAGE_A1 = "please refactor the registry loader to handle corrupt files"
MESSAGE_A2 = "add debounced writes to the session registry class"
MESSAGE_B1 = "write documentation for the deployment pipeline"


@pytest.fixture
def workspace(tmp_path):
    paths = WorkspacePaths(tmp_path / "ws")
    paths.logs_dir.mkdir(parents=True)
    history = ConversationHistory(home=tmp_path / "assistant")
    history.home.mkdir()
    registry = SessionRegistry(paths.registry_path, "ws")
    registry.load()
    correlator = ConversationCorrelator(
        registry,
        RestorationManifest(paths.manifest_path),
        paths,
        CorrelationConfig(),
        history=history,
    )
    return correlator


def _write_history(correlator, rows):
    lines = [json.dumps({"display": display, "project": project, "sessionId": sid}) for sid, project, display in rows]
    correlator.history.history_path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def _write_log(correlator, session_name, text):
    path = correlator.paths.log_path(session_name)
    path.write_text(text, encoding="utf-8")
    return path


def _write_transcript(correlator, conversation_id, mtime=None):
    path = correlator.history.transcript_path(correlator.workspace_path, conversation_id)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps({"message": {"role": "assistant", "content": [{"type": "text", "text": "Sure, on it."}]}}) + "\n",
        encoding="utf-8",
    )
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


def test_meaningful_message_filter():
    assert is_meaningful_message(MESSAGE_A1, 15)
    assert not is_meaningful_message("short one", 15)
    assert not is_meaningful_message("/resume 1234567890abcdef", 15)
    assert not is_meaningful_message("   thank you   ", 5)


def test_extract_phrases_uses_long_words():
    assert extract_phrases(["the quick brown foxes jumped over lazy dogs"]) == [
        "quick brown foxes",
        "brown foxes jumped",
        "foxes jumped over",
        "jumped over lazy",
        "over lazy dogs",
    ]


def test_ties_keep_first_candidate():
    config = CorrelationConfig()
    first = ConversationCandidate("first", "/p", sample_messages=[MESSAGE_A1])
    second = ConversationCandidate("second", "/p", sample_messages=[MESSAGE_A1])

    best, score = best_candidate([first, second], MESSAGE_A1, config)

    assert best is first
    assert score >= config.exact_weight


def test_encode_project_dir():
    assert encode_project_dir("/home/me/my_app") == "-home-me-my-app"


def test_read_responses_takes_first_text_blocks(tmp_path):
    path = tmp_path / "conv.jsonl"
    rows = [
        {"message": {"role": "user", "content": "hi"}},
        {"message": {"role": "assistant", "content": [{"type": "tool_use"}, {"type": "text", "text": "one"}]}},
        {"message": {"role": "assistant", "content": "two"}},
    ]
    path.write_text("\n".join(json.dumps(r) for r in rows) + "\nnot json\n", encoding="utf-8")

    assert read_responses(path) == ["one", "two"]
    assert read_responses(tmp_path / "missing.jsonl") == []


def test_verbatim_messages_reach_threshold(workspace):
    """A log echoing two messages of a conversation selects that conversation."""
    ws = workspace.workspace_path
    _write_history(
        workspace,
        [("conv-a", ws, MESSAGE_A1), ("conv-a", ws, MESSAGE_A2), ("conv-b", ws, MESSAGE_B1)],
    )
    log = _write_log(
        workspace,
        "ws-1-a",
        f"\x1b[32m> \x1b[0m{MESSAGE_A1}\r\n...working...\n> add debounced writes to the\n  session registry class\n",
    )

    found = workspace.match(log, claimed=set())

    assert found.conversation_id == "conv-a"
    assert found.method == MatchMethod.CONTENT
    assert found.score >= workspace.config.threshold


def test_unrelated_log_has_no_match(workspace):
    """No overlapping text and no usable fallback yields no match."""
    _write_history(workspace, [("conv-a", "/elsewhere", MESSAGE_A1), ("conv-b", "/elsewhere", MESSAGE_B1)])
    log = _write_log(workspace, "ws-1-a", "$ ls -la\ntotal 0\n$ echo hello\nhello\n")

    assert workspace.match(log, claimed=set()) is None


def test_single_unclaimed_conversation_fallback(workspace):
    ws = workspace.workspace_path
    _write_history(workspace, [("conv-a", ws, MESSAGE_A1), ("conv-b", ws, MESSAGE_B1)])
    log = _write_log(workspace, "ws-1-a", "$ make test\n")

    found = workspace.match(log, claimed={"conv-b"})

    assert (found.conversation_id, found.method) == ("conv-a", MatchMethod.SINGLE_CANDIDATE)


def test_transcript_mtime_fallback(workspace):
    ws = workspace.workspace_path
    _write_history(workspace, [("conv-a", ws, MESSAGE_A1), ("conv-b", ws, MESSAGE_B1)])
    log = _write_log(workspace, "ws-1-a", "$ make test\n")
    os.utime(log, (10_000, 10_000))
    _write_transcript(workspace, "conv-a", mtime=10_000 - 90)
    _write_transcript(workspace, "conv-b", mtime=10_000 + 5)

    found = workspace.match(log, claimed=set())

    assert (found.conversation_id, found.method) == ("conv-b", MatchMethod.TIMESTAMP)


def test_transcripts_outside_window_are_ignored(workspace):
    ws = workspace.workspace_path
    _write_history(workspace, [("conv-a", ws, MESSAGE_A1), ("conv-b", ws, MESSAGE_B1)])
    log = _write_log(workspace, "ws-1-a", "$ make test\n")
    os.utime(log, (10_000, 10_000))
    _write_transcript(workspace, "conv-a", mtime=10_000 - 500)

    assert workspace.match(log, claimed=set()) is None


def _register(correlator, window_id, conversation_id=None):
    correlator.registry.add(
        TerminalSession(
            window_id=window_id,
            name=window_id,
            multiplexer_session_id=f"ws-{window_id}",
            created_at=0,
            last_attached=0,
            conversation_id=conversation_id,
        )
    )
    correlator.manifest.add(window_id, window_id, conversation_id)


@pytest.mark.asyncio
async def test_sync_clears_link_when_assistant_exits(workspace):
    """A linked session with no assistant process loses its link."""
    _register(workspace, "1-a", conversation_id="conv-x")

    with (
        patch("immorterm.core.correlator.tmux_bridge.get_pane_pids", new=AsyncMock(return_value={"ws-1-a": 100})),
        patch("immorterm.core.correlator.find_assistant_pid_async", new=AsyncMock(return_value=None)),
    ):
        result = await workspace.sync_once()

    assert result.cleared == ["1-a"]
    assert workspace.registry.get("1-a").conversation_id is None
    assert workspace.manifest.entries()[0].conversation_id is None


@pytest.mark.asyncio
async def test_sync_links_running_assistant(workspace):
    ws = workspace.workspace_path
    _write_history(workspace, [("conv-a", ws, MESSAGE_A1), ("conv-a", ws, MESSAGE_A2)])
    _write_log(workspace, "ws-1-a", f"{MESSAGE_A1}\n{MESSAGE_A2}\n")
    _register(workspace, "1-a")
    _register(workspace, "2-b")

    with (
        patch("immorterm.core.correlator.tmux_bridge.get_pane_pids", new=AsyncMock(return_value={"ws-1-a": 100})),
        patch("immorterm.core.correlator.find_assistant_pid_async", new=AsyncMock(return_value=101)),
    ):
        result = await workspace.sync_once()

    assert result.linked == {"1-a": "conv-a"}
    assert result.unchanged == 1
    assert workspace.registry.get("1-a").conversation_id == "conv-a"
    assert workspace.manifest.entries()[0].conversation_id == "conv-a"


@pytest.mark.asyncio
async def test_sync_counts_scan_errors(workspace):
    _register(workspace, "1-a")

    with (
        patch("immorterm.core.correlator.tmux_bridge.get_pane_pids", new=AsyncMock(return_value={"ws-1-a": 100})),
        patch("immorterm.core.correlator.find_assistant_pid_async", new=AsyncMock(side_effect=OSError("boom"))),
    ):
        result = await workspace.sync_once()

    assert result.errors == 1
    assert result.linked == {}


def test_broadens_to_other_projects_when_workspace_has_no_match(workspace):
    """A conversation started from another directory is still found by content."""
    ws = workspace.workspace_path
    _write_history(
        workspace,
        [("conv-w", ws, MESSAGE_B1), ("conv-x", "/elsewhere", MESSAGE_A1), ("conv-x", "/elsewhere", MESSAGE_A2)],
    )
    log = _write_log(workspace, "ws-1-a", f"{MESSAGE_A1}\n{MESSAGE_A2}\n")

    found = workspace.match(log, claimed=set())

    assert (found.conversation_id, found.method) == ("conv-x", MatchMethod.CONTENT)
    assert found.score >= workspace.config.threshold


def test_candidates_come_from_recent_history_tail(workspace):
    """Only the last `candidate_history_tail` history lines are considered."""
    ws = workspace.workspace_path
    workspace.config = CorrelationConfig(candidate_history_tail=2)
    _write_history(
        workspace,
        [("conv-old", ws, MESSAGE_A1), ("conv-new", ws, MESSAGE_A2), ("conv-new", ws, MESSAGE_B1)],
    )

    pool = workspace.history.candidates(None, workspace.config)

    assert [c.conversation_id for c in pool] == ["conv-new"]
    assert pool[0].sample_messages == [MESSAGE_A2, MESSAGE_B1]


def test_candidate_mtime_is_transcript_mtime(workspace):
    ws = workspace.workspace_path
    _write_history(workspace, [("conv-a", ws, MESSAGE_A1), ("conv-b", ws, MESSAGE_B1)])
    _write_transcript(workspace, "conv-a", mtime=5_000)

    pool = {c.conversation_id: c for c in workspace.history.candidates(None, workspace.config)}

    assert pool["conv-a"].mtime == 5_000
    assert pool["conv-b"].mtime is None


@pytest.mark.asyncio
async def test_sync_parses_history_once_per_sweep(workspace):
    ws = workspace.workspace_path
    _write_history(workspace, [("conv-a", ws, MESSAGE_A1), ("conv-a", ws, MESSAGE_A2)])
    _write_log(workspace, "ws-1-a", f"{MESSAGE_A1}\n{MESSAGE_A2}\n")
    _write_log(workspace, "ws-2-b", "$ ls\n")
    _register(workspace, "1-a")
    _register(workspace, "2-b")
    pane_pids = {"ws-1-a": 100, "ws-2-b": 200}

    with (
        patch("immorterm.core.correlator.tmux_bridge.get_pane_pids", new=AsyncMock(return_value=pane_pids)),
        patch("immorterm.core.correlator.find_assistant_pid_async", new=AsyncMock(return_value=101)),
        patch.object(workspace.history, "candidates", wraps=workspace.history.candidates) as spy,
    ):
        await workspace.sync_once()

    assert spy.call_count == 1


@pytest.mark.asyncio
async def test_one_failing_session_does_not_abort_the_sweep(workspace):
    """A process-scan failure for one session still lets the next one link."""
    ws = workspace.workspace_path
    _write_history(workspace, [("conv-a", ws, MESSAGE_A1), ("conv-a", ws, MESSAGE_A2)])
    _write_log(workspace, "ws-2-b", f"{MESSAGE_A1}\n{MESSAGE_A2}\n")
    _register(workspace, "1-a")
    _register(workspace, "2-b")

    async def scan(root_pid, _timeout):
        if root_pid == 100:
            raise OSError("scan failed")
        return root_pid + 1

    with (
        patch(
            "immorterm.core.correlator.tmux_bridge.get_pane_pids",
            new=AsyncMock(return_value={"ws-1-a": 100, "ws-2-b": 200}),
        ),
        patch("immorterm.core.correlator.find_assistant_pid_async", new=AsyncMock(side_effect=scan)),
    ):
        result = await workspace.sync_once()

    assert result.errors == 1
    assert result.linked == {"2-b": "conv-a"}
    assert workspace.registry.get("1-a").conversation_id is None
