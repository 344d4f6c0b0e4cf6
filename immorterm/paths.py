from __future__ import annotations

from pathlib import Path

from immorterm.constants import (
    LOG_SUFFIX,
    LOGS_DIR_NAME,
    MANIFEST_FILE_NAME,
    MIGRATION_MARKER_FILE_NAME,
    PENDING_DIR_NAME,
    REGISTRY_FILE_NAME,
    TERMINALS_DIR_NAME,
    VSCODE_DIR_NAME,
    WORKSPACE_CONFIG_FILE_NAME,
)

GLOBAL_CONFIG_DIR = (Path("~/.immorterm")).expanduser()
GLOBAL_CONFIG_PATH = GLOBAL_CONFIG_DIR / "immorterm.yml"
GLOBAL_ENV_PATH = GLOBAL_CONFIG_DIR / ".env"


class WorkspacePaths:
    """Resolved locations of every file ImmorTerm owns inside a workspace."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.vscode_dir = root / VSCODE_DIR_NAME
        self.terminals_dir = self.vscode_dir / TERMINALS_DIR_NAME
        self.logs_dir = self.terminals_dir / LOGS_DIR_NAME
        self.pending_dir = self.terminals_dir / PENDING_DIR_NAME
        self.registry_path = self.terminals_dir / REGISTRY_FILE_NAME
        self.manifest_path = self.vscode_dir / MANIFEST_FILE_NAME
        self.config_path = self.vscode_dir / WORKSPACE_CONFIG_FILE_NAME
        self.migration_marker = self.terminals_dir / MIGRATION_MARKER_FILE_NAME

    def log_path(self, session_name: str) -> Path:
        return self.logs_dir / f"{session_name}{LOG_SUFFIX}"
