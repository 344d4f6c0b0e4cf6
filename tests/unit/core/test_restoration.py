"""Unit tests for the restoration engine."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from immorterm.config.schema import ImmortermSettings
from immorterm.core import tmux_bridge
from immorterm.core.errors import TransientExternalError
from immorterm.core.manifest import RestorationManifest
from immorterm.core.models import RestoreState, RestoreStatus
from immorterm.core.reconciler import Reconciler, TerminalIndex
from immorterm.core.registry import SessionRegistry
from immorterm.core.restoration import RestorationEngine
from immorterm.paths import WorkspacePaths

pytestmark = pytest.mark.unit


class FakeHost:
    """Host terminal service that records what it was asked to create."""

    def __init__(self, fail_for=()):
        self.created = []
        self.fail_for = set(fail_for)

    async def create_terminal(self, spec):
        if spec.window_id in self.fail_for:
            raise RuntimeError("host refused")
        self.created.append(spec)
        return f"handle-{spec.window_id}"

    def terminal_name(self, handle):
        return handle


@pytest.fixture
def workspace(tmp_path):
    paths = WorkspacePaths(tmp_path)
    registry = SessionRegistry(paths.registry_path, "proj")
    registry.load()
    reconciler = Reconciler(registry, RestorationManifest(paths.manifest_path))
    return paths, reconciler


def _engine(workspace, host, **settings):
    paths, reconciler = workspace
    return RestorationEngine(
        reconciler,
        host,
        TerminalIndex(),
        paths,
        ImmortermSettings(**{"restore_delay_ms": 0, **settings}),
    )


@pytest.fixture
def tmux():
    """Patch the tmux bridge as seen by the restoration engine."""
    live = set()

    async def create_session(name, _cwd, _log):
        if name in live:
            return False
        live.add(name)
        return True

    async def list_sessions():
        return sorted(live)

    async def session_exists(name):
        return name in live

    with (
        patch("immorterm.core.restoration.tmux_bridge.is_available", new=MagicMock(return_value=True)),
        patch(
            "immorterm.core.restoration.tmux_bridge.list_sessions_strict", new=AsyncMock(side_effect=list_sessions)
        ),
        patch("immorterm.core.restoration.tmux_bridge.session_exists", new=AsyncMock(side_effect=session_exists)),
        patch("immorterm.core.restoration.tmux_bridge.create_session", new=AsyncMock(side_effect=create_session)),
    ):
        yield live


@pytest.mark.asyncio
async def test_dead_sessions_are_recreated_and_reattached(workspace, tmux):
    """Two entries with dead tmux sessions are both restored."""
    _, reconciler = workspace
    reconciler.reconcile("1-aaaaaaaa", "api")
    reconciler.reconcile("2-bbbbbbbb", "web")
    host = FakeHost()
    engine = _engine(workspace, host)

    result = await engine.restore()

    assert (result.restored, result.failed) == (2, 0)
    assert tmux == {"proj-1-aaaaaaaa", "proj-2-bbbbbbbb"}
    assert [spec.name for spec in host.created] == ["api", "web"]
    assert all("previous session was lost" in d.reason for d in result.details)
    assert engine.index.is_tracked("1-aaaaaaaa")
    assert engine.state == RestoreState.DONE


@pytest.mark.asyncio
async def test_restore_runs_once(workspace, tmux):
    _, reconciler = workspace
    reconciler.reconcile("1-aaaaaaaa", "api")
    tmux.add("proj-1-aaaaaaaa")
    engine = _engine(workspace, FakeHost())

    first = await engine.restore()
    second = await engine.restore()

    assert first.restored == 1
    assert first.details[0].reason == "Reattached to existing tmux session"
    assert second.restored == 0 and second.details == []


@pytest.mark.asyncio
async def test_one_failure_does_not_stop_the_batch(workspace, tmux):
    _, reconciler = workspace
    reconciler.reconcile("1-aaaaaaaa", "api")
    reconciler.reconcile("2-bbbbbbbb", "web")
    engine = _engine(workspace, FakeHost(fail_for={"1-aaaaaaaa"}))

    result = await engine.restore()

    assert (result.restored, result.failed) == (1, 1)
    assert result.details[0].status == RestoreStatus.FAILED
    assert result.details[0].reason == "host refused"


@pytest.mark.asyncio
async def test_resume_command_follows_conversation_link(workspace, tmux):
    _, reconciler = workspace
    reconciler.reconcile("1-aaaaaaaa", "api", conversation_id="conv-1")
    reconciler.reconcile("2-bbbbbbbb", "web")
    host = FakeHost()

    await _engine(workspace, host).restore()

    assert host.created[0].resume_command == "claude --resume conv-1"
    assert host.created[1].resume_command is None


@pytest.mark.asyncio
async def test_manifest_only_entries_are_adopted(workspace, tmux):
    """Terminals known only to the manifest are registered and restored."""
    _, reconciler = workspace
    reconciler.manifest.add("3-cccccccc", "docs")
    host = FakeHost()

    result = await _engine(workspace, host).restore()

    assert result.restored == 1
    assert reconciler.registry.get("3-cccccccc").name == "docs"


@pytest.mark.asyncio
async def test_disabled_or_missing_tmux_skips_restore(workspace, tmux):
    _, reconciler = workspace
    reconciler.reconcile("1-aaaaaaaa", "api")

    disabled = await _engine(workspace, FakeHost(), restore_on_startup=False).restore()
    assert disabled.details == []

    with patch("immorterm.core.restoration.tmux_bridge.is_available", new=MagicMock(return_value=False)):
        degraded = await _engine(workspace, FakeHost()).restore()
    assert degraded.details == []


@pytest.mark.asyncio
async def test_unanswered_listing_falls_back_to_per_session_checks(workspace, tmux):
    """A tmux listing timeout must not make live sessions look lost."""
    _, reconciler = workspace
    reconciler.reconcile("1-aaaaaaaa", "api")
    reconciler.reconcile("2-bbbbbbbb", "web")
    tmux.update({"proj-1-aaaaaaaa", "proj-2-bbbbbbbb"})
    host = FakeHost()

    with patch(
        "immorterm.core.restoration.tmux_bridge.list_sessions_strict",
        new=AsyncMock(side_effect=TransientExternalError("list-sessions", "timed out")),
    ):
        result = await _engine(workspace, host).restore()

    assert (result.restored, result.failed) == (2, 0)
    assert [spec.name for spec in host.created] == ["api", "web"]
    assert all(d.reason == "Reattached to existing tmux session" for d in result.details)
    tmux_bridge.create_session.assert_not_called()


@pytest.mark.asyncio
async def test_duplicate_session_on_create_is_attached(workspace, tmux):
    """If creation fails because the session exists after all, attach to it."""
    _, reconciler = workspace
    reconciler.reconcile("1-aaaaaaaa", "api")
    tmux.add("proj-1-aaaaaaaa")
    host = FakeHost()

    with patch("immorterm.core.restoration.tmux_bridge.list_sessions_strict", new=AsyncMock(return_value=[])):
        result = await _engine(workspace, host).restore()

    assert (result.restored, result.failed) == (1, 0)
    assert host.created[0].session_name == "proj-1-aaaaaaaa"
    tmux_bridge.create_session.assert_awaited_once()
