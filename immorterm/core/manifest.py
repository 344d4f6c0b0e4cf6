"""Pending-restoration manifest (`.vscode/restore-terminals.json`).

The host editor reads this file on its own to recreate terminals at startup,
so it is re-read from disk on every call rather than cached. Layout:

    {"artificialDelayMilliseconds": 800,
     "terminals": [{"splitTerminals": [{"windowId": ..., "name": ..., "commands": [...]}]}]}
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from immorterm.constants import MANIFEST_DEFAULT_DELAY_MS, MANIFEST_WINDOW_ID_PATTERN, SPAWNER_SCRIPT
from immorterm.logging_config import get_logger
from immorterm.utils import atomic_write_json

logger = get_logger(__name__)

ManifestData = dict[str, object]
SplitEntry = dict[str, object]


@dataclass
class ManifestEntry:
    window_id: str
    name: str
    conversation_id: Optional[str] = None


def spawn_command(window_id: str, name: str) -> str:
    escaped = name.replace("\\", "\\\\").replace('"', '\\"')
    return f'exec {SPAWNER_SCRIPT} {window_id} "{escaped}"'


def extract_window_id(split: SplitEntry) -> Optional[str]:
    """Window id of a split entry: explicit field first, then its spawn command."""
    explicit = split.get("windowId")
    if isinstance(explicit, str) and explicit:
        return explicit
    commands = split.get("commands")
    if not isinstance(commands, list):
        return None
    for command in commands:
        if isinstance(command, str):
            match = MANIFEST_WINDOW_ID_PATTERN.search(command)
            if match:
                return match.group(1)
    return None


class RestorationManifest:
    """Read/modify/write access to the restoration manifest."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def _empty(self) -> ManifestData:
        return {"artificialDelayMilliseconds": MANIFEST_DEFAULT_DELAY_MS, "terminals": []}

    def load(self) -> ManifestData:
        if not self.path.exists():
            return self._empty()
        try:
            data: object = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning("Unreadable manifest %s (%s); treating as empty", self.path, e)
            self._quarantine()
            return self._empty()
        if not isinstance(data, dict):
            logger.warning("Manifest %s is not an object; treating as empty", self.path)
            self._quarantine()
            return self._empty()
        if not isinstance(data.get("terminals"), list):
            data["terminals"] = []
        return data

    def _quarantine(self) -> None:
        try:
            os.replace(self.path, self.path.with_name(f"{self.path.name}.corrupt"))
        except OSError as e:
            logger.warning("Could not preserve corrupt manifest %s: %s", self.path, e)

    def _save(self, data: ManifestData) -> None:
        atomic_write_json(self.path, data)

    @staticmethod
    def _splits(data: ManifestData) -> list[SplitEntry]:
        splits: list[SplitEntry] = []
        for tab in data["terminals"]:  # type: ignore[union-attr]
            if not isinstance(tab, dict):
                continue
            tab_splits = tab.get("splitTerminals")
            if isinstance(tab_splits, list):
                splits.extend(s for s in tab_splits if isinstance(s, dict))
        return splits

    def entries(self) -> list[ManifestEntry]:
        result: list[ManifestEntry] = []
        for split in self._splits(self.load()):
            window_id = extract_window_id(split)
            if window_id is None:
                continue
            conversation = split.get("conversationId") or split.get("claudeSessionId")
            result.append(
                ManifestEntry(
                    window_id=window_id,
                    name=str(split.get("name") or window_id),
                    conversation_id=conversation if isinstance(conversation, str) and conversation else None,
                )
            )
        return result

    def window_ids(self) -> set[str]:
        return {entry.window_id for entry in self.entries()}

    def contains(self, window_id: str) -> bool:
        return window_id in self.window_ids()

    def add(self, window_id: str, name: str, conversation_id: Optional[str] = None) -> bool:
        """Append a terminal as its own tab. No-op if already present."""
        data = self.load()
        if any(extract_window_id(s) == window_id for s in self._splits(data)):
            return False
        split: SplitEntry = {"windowId": window_id, "name": name, "commands": [spawn_command(window_id, name)]}
        if conversation_id:
            split["conversationId"] = conversation_id
        data["terminals"].append({"splitTerminals": [split]})  # type: ignore[union-attr]
        self._save(data)
        logger.debug("Added %s to restoration manifest", window_id)
        return True

    def remove(self, window_id: str) -> bool:
        data = self.load()
        removed = False
        kept_tabs: list[object] = []
        for tab in data["terminals"]:  # type: ignore[union-attr]
            if isinstance(tab, dict) and isinstance(tab.get("splitTerminals"), list):
                splits = [s for s in tab["splitTerminals"] if not (isinstance(s, dict) and extract_window_id(s) == window_id)]
                if len(splits) != len(tab["splitTerminals"]):
                    removed = True
                    if not splits:
                        continue
                    tab = {**tab, "splitTerminals": splits}
            kept_tabs.append(tab)
        if removed:
            data["terminals"] = kept_tabs
            self._save(data)
            logger.debug("Removed %s from restoration manifest", window_id)
        return removed

    def _modify(self, window_id: str, changes: SplitEntry) -> bool:
        data = self.load()
        for split in self._splits(data):
            if extract_window_id(split) != window_id:
                continue
            if all(split.get(k) == v for k, v in changes.items()):
                return False
            for key, value in changes.items():
                if value is None:
                    split.pop(key, None)
                else:
                    split[key] = value
            self._save(data)
            return True
        return False

    def update_name(self, window_id: str, name: str) -> bool:
        """Rename an entry, rewriting its spawn command to match."""
        return self._modify(
            window_id,
            {"windowId": window_id, "name": name, "commands": [spawn_command(window_id, name)]},
        )

    def set_conversation(self, window_id: str, conversation_id: Optional[str]) -> bool:
        return self._modify(window_id, {"conversationId": conversation_id})

    def clear(self) -> None:
        data = self.load()
        data["terminals"] = []
        self._save(data)
