"""Unit tests for SessionRegistry persistence and schema migration."""

import asyncio
import json
from pathlib import Path

import pytest

from immorterm.core.errors import CorruptStateError
from immorterm.core.models import TerminalSession
from immorterm.core.registry import SessionRegistry, migrate_schema

pytestmark = pytest.mark.unit


def _session(window_id: str, name: str = "term") -> TerminalSession:
    return TerminalSession(
        window_id=window_id,
        name=name,
        multiplexer_session_id=f"proj-{window_id}",
        created_at=1000,
        last_attached=1000,
    )


def _read(path):
    return json.loads(path.read_text(encoding="utf-8"))


def test_add_is_idempotent_and_persists(tmp_path):
    """Without an event loop every mutation is written through."""
    path = tmp_path / "registry.json"
    registry = SessionRegistry(path, "proj")
    registry.load()

    assert registry.add(_session("1-aaaaaaaa")) is True
    assert registry.add(_session("1-aaaaaaaa", name="dup")) is False

    data = _read(path)
    assert data["version"] == 3
    assert data["projectName"] == "proj"
    assert [s["windowId"] for s in data["sessions"]] == ["1-aaaaaaaa"]
    assert data["sessions"][0]["name"] == "term"


def test_lookups_return_copies(tmp_path):
    registry = SessionRegistry(tmp_path / "registry.json", "proj")
    registry.add(_session("1-aaaaaaaa"))

    copy = registry.get("1-aaaaaaaa")
    copy.name = "mutated"

    assert registry.get("1-aaaaaaaa").name == "term"
    assert registry.get_by_session("proj-1-aaaaaaaa").window_id == "1-aaaaaaaa"
    assert registry.get_by_name("missing") is None


def test_update_and_window_id_immutability(tmp_path):
    registry = SessionRegistry(tmp_path / "registry.json", "proj")
    registry.add(_session("1-aaaaaaaa"))

    updated = registry.update("1-aaaaaaaa", name="server", conversation_id="conv-1")
    assert updated.name == "server"
    assert updated.conversation_id == "conv-1"
    assert registry.update("9-missing0", name="x") is None
    with pytest.raises(ValueError):
        registry.update("1-aaaaaaaa", window_id="2-bbbbbbbb")
    assert registry.get("1-aaaaaaaa").name == "server"
    assert registry.get("2-bbbbbbbb") is None


def test_reload_round_trip(tmp_path):
    path = tmp_path / "registry.json"
    first = SessionRegistry(path, "proj")
    first.add(_session("1-aaaaaaaa", "one"))
    first.add(_session("2-bbbbbbbb", "two"))
    first.remove("1-aaaaaaaa")

    second = SessionRegistry(path, "proj")
    second.load()
    assert [s.name for s in second.list()] == ["two"]


def test_corrupt_file_is_quarantined(tmp_path):
    """Unreadable JSON is moved aside and the registry starts empty."""
    path = tmp_path / "registry.json"
    path.write_text("{not json", encoding="utf-8")

    registry = SessionRegistry(path, "proj")
    registry.load()

    assert registry.list() == []
    assert (tmp_path / "registry.json.corrupt").read_text(encoding="utf-8") == "{not json"
    assert _read(path)["sessions"] == []


def test_newer_version_is_rejected():
    with pytest.raises(CorruptStateError):
        migrate_schema({"version": 99, "sessions": []}, Path("registry.json"))


def test_v1_file_is_migrated_on_load(tmp_path):
    """v1 `terminals`/`screenSession` and v2 `claudeSessionId` become v3 fields."""
    path = tmp_path / "registry.json"
    path.write_text(
        json.dumps(
            {
                "projectName": "proj",
                "terminals": [
                    {
                        "windowId": "1-aaaaaaaa",
                        "name": "api",
                        "screenSession": "proj-1-aaaaaaaa",
                        "createdAt": 5,
                        "lastAttached": 6,
                        "claudeSessionId": "conv-9",
                    }
                ],
                "lastCleanup": 77,
            }
        ),
        encoding="utf-8",
    )

    registry = SessionRegistry(path, "proj")
    registry.load()

    session = registry.get("1-aaaaaaaa")
    assert session.multiplexer_session_id == "proj-1-aaaaaaaa"
    assert session.conversation_id == "conv-9"
    assert registry.last_cleanup_at == 77

    data = _read(path)
    assert data["version"] == 3
    assert "claudeSessionId" not in data["sessions"][0]
    assert data["sessions"][0]["conversationId"] == "conv-9"


def test_load_of_current_file_does_not_rewrite(tmp_path):
    path = tmp_path / "registry.json"
    SessionRegistry(path, "proj").add(_session("1-aaaaaaaa"))
    written = path.stat().st_mtime_ns

    registry = SessionRegistry(path, "proj")
    registry.load()

    assert path.stat().st_mtime_ns == written
    assert not registry._dirty  # pylint: disable=protected-access


@pytest.mark.asyncio
async def test_writes_are_debounced_inside_event_loop(tmp_path):
    """A burst of mutations results in one write after the debounce delay."""
    path = tmp_path / "registry.json"
    registry = SessionRegistry(path, "proj", debounce_s=0.02)
    registry.add(_session("1-aaaaaaaa"))
    registry.add(_session("2-bbbbbbbb"))

    assert not path.exists()
    await asyncio.sleep(0.06)
    assert len(_read(path)["sessions"]) == 2


@pytest.mark.asyncio
async def test_flush_writes_immediately(tmp_path):
    path = tmp_path / "registry.json"
    registry = SessionRegistry(path, "proj", debounce_s=10)
    registry.add(_session("1-aaaaaaaa"))
    registry.flush()
    assert len(_read(path)["sessions"]) == 1
