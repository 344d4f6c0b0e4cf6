"""One-time import of a legacy (GNU screen era) installation.

A legacy install is recognised by its `screen-auto` spawner script or by
manifest entries whose spawn command uses it. The import:

1. Backs up `.vscode/terminals/` (without logs) and the manifest.
2. Maps each legacy manifest entry into the registry.
3. Rewrites manifest spawn commands for the current spawner.
4. Writes a marker so later runs are no-ops.

Live multiplexer sessions are never touched. Any failure restores the backup.
"""

from __future__ import annotations

import json
import shutil
from datetime import datetime
from pathlib import Path
from typing import Optional

from immorterm.constants import BACKUP_DIR_PREFIX, LEGACY_SPAWNER_SCRIPT_NAME, LOGS_DIR_NAME
from immorterm.core.errors import MigrationError
from immorterm.core.manifest import RestorationManifest
from immorterm.core.models import MigrationResult, TerminalSession
from immorterm.core.naming import build_session_name, is_valid_window_id
from immorterm.core.registry import SessionRegistry
from immorterm.logging_config import get_logger
from immorterm.paths import WorkspacePaths
from immorterm.utils import atomic_write_json, now_ms

logger = get_logger(__name__)


class MigrationImporter:
    """Detects, imports and (on request) rolls back a legacy installation."""

    def __init__(self, registry: SessionRegistry, manifest: RestorationManifest, paths: WorkspacePaths) -> None:
        self.registry = registry
        self.manifest = manifest
        self.paths = paths

    def is_migrated(self) -> bool:
        return self.paths.migration_marker.exists()

    def _legacy_manifest_ids(self) -> list[str]:
        data = self.manifest.load()
        raw = json.dumps(data.get("terminals", []))
        if f"{LEGACY_SPAWNER_SCRIPT_NAME} " not in raw:
            return []
        return [entry.window_id for entry in self.manifest.entries()]

    def needs_migration(self) -> bool:
        """True if legacy files are present and no import has completed."""
        if self.is_migrated():
            return False
        legacy_script = self.paths.terminals_dir / LEGACY_SPAWNER_SCRIPT_NAME
        return legacy_script.exists() or bool(self._legacy_manifest_ids())

    def backups(self) -> list[Path]:
        """Existing backup directories, oldest first."""
        if not self.paths.vscode_dir.exists():
            return []
        return sorted(p for p in self.paths.vscode_dir.glob(f"{BACKUP_DIR_PREFIX}*") if p.is_dir())

    def _backup(self) -> Path:
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S-%f")
        backup_dir = self.paths.vscode_dir / f"{BACKUP_DIR_PREFIX}{stamp}"
        terminals_backup = backup_dir / self.paths.terminals_dir.name
        if self.paths.terminals_dir.exists():
            shutil.copytree(
                self.paths.terminals_dir,
                terminals_backup,
                ignore=shutil.ignore_patterns(LOGS_DIR_NAME),
                symlinks=True,
            )
        else:
            backup_dir.mkdir(parents=True)
        if self.paths.manifest_path.exists():
            shutil.copy2(self.paths.manifest_path, backup_dir / self.paths.manifest_path.name)
        logger.info("Backed up legacy installation to %s", backup_dir)
        return backup_dir

    def _import_entries(self, result: MigrationResult) -> None:
        project_name = self.registry.project_name
        for entry in self.manifest.entries():
            if not is_valid_window_id(entry.window_id) or self.registry.contains(entry.window_id):
                result.skipped += 1
                continue
            timestamp = now_ms()
            self.registry.add(
                TerminalSession(
                    window_id=entry.window_id,
                    name=entry.name,
                    multiplexer_session_id=build_session_name(project_name, entry.window_id),
                    created_at=timestamp,
                    last_attached=timestamp,
                    conversation_id=entry.conversation_id,
                )
            )
            self.manifest.update_name(entry.window_id, entry.name)
            result.imported += 1

    def migrate(self) -> MigrationResult:
        """Import the legacy installation. Idempotent.

        Raises:
            MigrationError: If any step failed; the backup has been restored.
        """
        result = MigrationResult()
        if self.is_migrated():
            logger.debug("Legacy import already completed")
            result.already_migrated = True
            return result
        if not self.needs_migration():
            logger.debug("No legacy installation found")
            return result

        try:
            backup_dir = self._backup()
        except OSError as e:
            raise MigrationError("backup", str(e)) from e
        result.backup_dir = backup_dir

        step = "import"
        try:
            self._import_entries(result)
            step = "finalize"
            self.registry.flush()
            atomic_write_json(
                self.paths.migration_marker,
                {"migratedAt": now_ms(), "imported": result.imported, "backupDir": str(backup_dir)},
            )
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.error("Legacy import failed during %s: %s; rolling back", step, e, exc_info=True)
            self.rollback(backup_dir)
            raise MigrationError(step, str(e)) from e

        logger.info("Imported %d legacy terminals (%d skipped)", result.imported, result.skipped)
        return result

    def rollback(self, backup_dir: Optional[Path] = None) -> bool:
        """Restore the pre-import state from a backup (latest by default).

        Returns:
            False if there is no backup to restore.
        """
        if backup_dir is None:
            existing = self.backups()
            if not existing:
                logger.warning("No legacy backup to roll back to")
                return False
            backup_dir = existing[-1]

        self.paths.migration_marker.unlink(missing_ok=True)
        self.paths.registry_path.unlink(missing_ok=True)

        terminals_backup = backup_dir / self.paths.terminals_dir.name
        if terminals_backup.exists():
            shutil.copytree(terminals_backup, self.paths.terminals_dir, symlinks=True, dirs_exist_ok=True)

        manifest_backup = backup_dir / self.paths.manifest_path.name
        if manifest_backup.exists():
            shutil.copy2(manifest_backup, self.paths.manifest_path)
        else:
            self.paths.manifest_path.unlink(missing_ok=True)

        self.registry.load()
        logger.info("Rolled back legacy import from %s", backup_dir)
        return True
