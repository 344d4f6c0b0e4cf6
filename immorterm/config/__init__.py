"""Configuration management.

Settings are resolved per workspace:
    from immorterm.config import load_settings
    settings = load_settings(workspace_root)

Resolution order: `.env` (python-dotenv, path from `IMMORTERM_ENV_PATH`),
`<workspace>/.vscode/immorterm.yml`, `~/.immorterm/immorterm.yml`, defaults.
"""

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from immorterm.config.loader import load_settings_file
from immorterm.config.schema import CorrelationConfig, ImmortermSettings
from immorterm.paths import GLOBAL_ENV_PATH, WorkspacePaths

ENV_PATH_VAR = "IMMORTERM_ENV_PATH"
TMUX_BINARY_VAR = "IMMORTERM_TMUX_BINARY"


def _load_env_file() -> None:
    env_path = os.getenv(ENV_PATH_VAR)
    dotenv_path = Path(env_path).expanduser() if env_path else GLOBAL_ENV_PATH
    load_dotenv(dotenv_path)


def load_settings(workspace: Path, global_config: Optional[Path] = None) -> ImmortermSettings:
    """Load settings for a workspace, applying environment overrides."""
    _load_env_file()
    settings = load_settings_file(WorkspacePaths(workspace).config_path, global_config)

    tmux_binary = os.getenv(TMUX_BINARY_VAR)
    if tmux_binary:
        settings = settings.model_copy(update={"tmux_binary": tmux_binary})
    return settings


__all__ = ["CorrelationConfig", "ImmortermSettings", "load_settings"]
