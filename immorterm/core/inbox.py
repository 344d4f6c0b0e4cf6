"""Single-consumer inbox for spawner-produced pending registrations.

The spawner drops `{"windowId": ..., "displayName": ...}` files into
`.vscode/terminals/pending/`. The reconciler is the only consumer: each record
is claimed by rename, handed to the handler, then deleted (acknowledged). A
record whose handler fails is put back for the next drain.
"""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from typing import Awaitable, Callable, Optional

from immorterm.core.models import PendingRegistration
from immorterm.logging_config import get_logger
from immorterm.utils import atomic_write_json

logger = get_logger(__name__)

PENDING_SUFFIX = ".json"
CLAIMED_SUFFIX = ".claimed"


def _parse(path: Path) -> Optional[PendingRegistration]:
    try:
        data: object = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.warning("Unreadable pending registration %s: %s", path.name, e)
        return None
    if not isinstance(data, dict):
        logger.warning("Pending registration %s is not an object", path.name)
        return None
    window_id = data.get("windowId")
    if not isinstance(window_id, str) or not window_id:
        logger.warning("Pending registration %s has no windowId", path.name)
        return None
    display_name = data.get("displayName") or data.get("name") or window_id
    return PendingRegistration(window_id=window_id, display_name=str(display_name), source=path)


class PendingInbox:
    """File-backed queue of PendingRegistration records."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory
        self._lock = asyncio.Lock()

    def enqueue(self, window_id: str, display_name: str) -> Path:
        """Write a pending registration (what the spawner does)."""
        path = self.directory / f"{window_id}{PENDING_SUFFIX}"
        atomic_write_json(path, {"windowId": window_id, "displayName": display_name})
        return path

    def pending_count(self) -> int:
        if not self.directory.exists():
            return 0
        return sum(1 for _ in self.directory.glob(f"*{PENDING_SUFFIX}"))

    def _requeue_abandoned_claims(self) -> None:
        for claimed in self.directory.glob(f"*{CLAIMED_SUFFIX}"):
            try:
                os.replace(claimed, claimed.with_suffix(PENDING_SUFFIX))
                logger.info("Re-queued abandoned pending registration %s", claimed.stem)
            except OSError as e:
                logger.warning("Could not re-queue %s: %s", claimed.name, e)

    def _pending_files(self) -> list[Path]:
        files: list[tuple[float, str, Path]] = []
        for path in self.directory.glob(f"*{PENDING_SUFFIX}"):
            try:
                files.append((path.stat().st_mtime, path.name, path))
            except FileNotFoundError:
                continue
        return [path for _, _, path in sorted(files)]

    async def drain(self, handler: Callable[[PendingRegistration], Awaitable[object]]) -> int:
        """Process every pending record exactly once, oldest first.

        Returns:
            Number of records handled and acknowledged.
        """
        if not self.directory.exists():
            return 0

        async with self._lock:
            self._requeue_abandoned_claims()
            handled = 0
            for path in self._pending_files():
                claimed = path.with_suffix(CLAIMED_SUFFIX)
                try:
                    os.replace(path, claimed)
                except FileNotFoundError:
                    continue

                record = _parse(claimed)
                if record is None:
                    claimed.unlink(missing_ok=True)
                    continue

                try:
                    await handler(record)
                except Exception as e:  # pylint: disable=broad-exception-caught
                    logger.error("Failed to process pending registration %s: %s", record.window_id, e, exc_info=True)
                    os.replace(claimed, path)
                    continue

                claimed.unlink(missing_ok=True)
                handled += 1

            if handled:
                logger.info("Processed %d pending registrations", handled)
            return handled
