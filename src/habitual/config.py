"""Settings loader.

Reads ``<home>/config.yaml`` (home is $HABITUAL_HOME or ~/.habitual) and
falls back to defaults for anything not set:

```
thresholds:
  min_count_to_long_term: 2
  min_count_for_core: 3
  min_days_in_long_term: 7
core_targets:
  claude_md: ~/.claude/CLAUDE.md
  agents_md: ~/AGENTS.md
similarity:
  backend: lexical        # or "embedding"
  threshold: 0.8
  model_name: all-MiniLM-L6-v2
```
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import ConfigError
from .models import PromotionThresholds
from .similarity import DEFAULT_EMBEDDING_MODEL, DEFAULT_SIMILARITY_THRESHOLD
from .writers import DEFAULT_CORE_TARGETS

CONFIG_FILENAME = "config.yaml"


def get_home() -> Path:
    """Storage root: $HABITUAL_HOME, else ~/.habitual."""
    if env_path := os.environ.get("HABITUAL_HOME"):
        return Path(env_path).expanduser()
    return Path.home() / ".habitual"


class SimilaritySettings(BaseModel):
    backend: Literal["lexical", "embedding"] = "lexical"
    threshold: float = Field(default=DEFAULT_SIMILARITY_THRESHOLD, ge=0.0, le=1.0)
    model_name: str = DEFAULT_EMBEDDING_MODEL


class Settings(BaseModel):
    """Resolved configuration for one run."""

    home: Path = Field(default_factory=get_home)
    thresholds: PromotionThresholds = Field(default_factory=PromotionThresholds)
    core_targets: dict[str, Path] = Field(default_factory=lambda: dict(DEFAULT_CORE_TARGETS))
    similarity: SimilaritySettings = Field(default_factory=SimilaritySettings)

    @field_validator("core_targets")
    @classmethod
    def _expand_targets(cls, targets: dict[str, Path]) -> dict[str, Path]:
        return {name: Path(path).expanduser() for name, path in targets.items()}

    @property
    def observations_path(self) -> Path:
        return self.home / "observations.json"

    @property
    def long_term_path(self) -> Path:
        return self.home / "long_term_memory.json"

    @property
    def state_path(self) -> Path:
        return self.home / "state.json"

    @property
    def log_path(self) -> Path:
        return self.home / "habitual.log"


def load_settings(home: Path | None = None) -> Settings:
    """Load settings from ``<home>/config.yaml``.

    Returns defaults when the file does not exist.

    Raises:
        ConfigError: If the file is not valid YAML or has invalid values
    """
    home = Path(home).expanduser() if home is not None else get_home()
    config_path = home / CONFIG_FILENAME

    if not config_path.exists():
        return Settings(home=home)

    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read {config_path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"{config_path} must contain a mapping")

    try:
        return Settings(home=home, **{k: v for k, v in raw.items() if k != "home"})
    except ValidationError as e:
        raise ConfigError(f"Invalid settings in {config_path}: {e}") from e
