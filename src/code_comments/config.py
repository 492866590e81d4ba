"""Synchronization settings, loaded from .comments/config.json when present."""

import json
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from code_comments.models import RangePolicy

CONFIG_FILENAME = "config.json"


class SyncConfig(BaseModel):
    """Tunable settings for diff retrieval, caching and remapping."""

    diff_context_lines: int = Field(
        default=0, ge=0, description="Context lines requested from git diff (-U)"
    )
    diff_algorithm: str = Field(
        default="histogram", pattern=r"^(myers|minimal|patience|histogram)$"
    )
    git_timeout: float = Field(default=30.0, gt=0, description="Seconds per git invocation")
    cache_max_entries: int = Field(
        default=256, ge=1, description="Diff models kept before least recently used eviction"
    )
    range_policy: RangePolicy = RangePolicy.LENIENT
    watch_debounce_seconds: float = Field(default=0.3, ge=0.0)


def get_config_path(project_root: Path) -> Path:
    return project_root / ".comments" / CONFIG_FILENAME


def load_config(project_root: Path, **overrides: object) -> SyncConfig:
    """
    Load settings for a project, falling back to defaults.

    Args:
        project_root: Repository root containing the .comments directory
        **overrides: Values that take precedence over the file (None values are ignored)

    Returns:
        Validated SyncConfig

    Raises:
        ValueError: If the config file is not valid JSON or fails validation
    """
    data: dict[str, object] = {}
    path = get_config_path(project_root)
    if path.is_file():
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in config file {path}: {e}") from e
        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must contain a JSON object")

    data.update({key: value for key, value in overrides.items() if value is not None})

    try:
        return SyncConfig.model_validate(data)
    except ValidationError as e:
        raise ValueError(f"Invalid configuration: {e}") from e
