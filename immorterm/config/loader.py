from pathlib import Path
from typing import Optional, Type, TypeVar

import yaml
from pydantic import BaseModel

from immorterm.config.schema import ImmortermSettings
from immorterm.logging_config import get_logger
from immorterm.paths import GLOBAL_CONFIG_PATH
from immorterm.utils import expand_env_vars

logger = get_logger(__name__)

T = TypeVar("T", bound=BaseModel)


def _warn_unknown_keys(model: BaseModel, path: str, config_path: Path) -> None:
    """Recursively warn about unknown keys in a model and its nested models."""
    if hasattr(model, "model_extra") and model.model_extra:
        logger.warning("Unknown keys in %s at %s: %s", path, config_path, list(model.model_extra.keys()))

    for field_name, field_value in model.__dict__.items():
        if isinstance(field_value, BaseModel):
            _warn_unknown_keys(field_value, f"{path}.{field_name}", config_path)


def load_config(path: Path, model_class: Type[T]) -> T:
    """Load and validate configuration from a YAML file.

    Args:
        path: Path to the immorterm.yml file.
        model_class: The Pydantic model class to use for validation.

    Returns:
        The validated configuration model.
    """
    if not path.exists():
        return model_class()

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except Exception as e:
        logger.warning("Failed to read config file %s: %s", path, e)
        return model_class()

    expanded = expand_env_vars(raw)
    model = model_class.model_validate(expanded)
    _warn_unknown_keys(model, "root", path)
    return model


def load_settings_file(workspace_config: Path, global_config: Optional[Path] = None) -> ImmortermSettings:
    """Load settings from the workspace file, else the global file, else defaults."""
    if workspace_config.exists():
        return load_config(workspace_config, ImmortermSettings)
    return load_config(global_config or GLOBAL_CONFIG_PATH, ImmortermSettings)
