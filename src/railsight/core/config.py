"""Configuration system for railsight using Pydantic."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_SKIP_DIRS: list[str] = [
    ".git",
    ".bundle",
    "vendor",
    "node_modules",
    "tmp",
    "log",
    "coverage",
    "public",
    "storage",
    ".railsight",
]


class IndexerConfig(BaseModel):
    """Workspace indexing behaviour."""

    batch_size: int = Field(default=20, ge=1)
    timeout_seconds: float = Field(default=300.0, gt=0)
    batch_yield_seconds: float = Field(default=0.01, ge=0)
    max_file_size_kb: int = Field(default=1024, ge=1)
    extensions: list[str] = Field(default_factory=lambda: [".rb", ".rake"])
    skip_dirs: list[str] = Field(default_factory=lambda: list(DEFAULT_SKIP_DIRS))
    cache_dir: str = ".railsight"
    cache_file: str = "index.json"
    schema_path: str = "db/schema.rb"
    routes_path: str = "config/routes.rb"


class SearchWeights(BaseModel):
    """Additive ranking weights for the smart search engine.

    Match tiers are mutually exclusive; bonuses stack on top of the tier.
    """

    exact_match: float = 400.0
    prefix_match: float = 275.0
    substring_match: float = 150.0
    fuzzy_match: float = 25.0

    usage_frequency: float = 20.0
    recency: float = 15.0
    context_match: float = 30.0
    project_code: float = 10.0
    file_type_match: float = 20.0
    scope_match: float = 10.0

    @property
    def max_bonus(self) -> float:
        return (
            self.usage_frequency
            + self.recency
            + self.context_match
            + self.project_code
            + self.file_type_match
            + self.scope_match
        )

    @model_validator(mode="after")
    def _tiers_dominate_bonuses(self) -> SearchWeights:
        tiers = [self.exact_match, self.prefix_match, self.substring_match, self.fuzzy_match]
        for higher, lower in zip(tiers, tiers[1:]):
            if higher - lower <= self.max_bonus:
                raise ValueError(
                    "match tier weights must be spaced further apart than the "
                    f"sum of bonus weights ({self.max_bonus})"
                )
        return self


class SearchConfig(BaseModel):
    """Smart search configuration."""

    limit: int = Field(default=50, ge=1)
    popular_access_count: int = Field(default=100, ge=2)
    recency_decay_hours: float = Field(default=24.0, gt=0)
    weights: SearchWeights = Field(default_factory=SearchWeights)


class RailsightConfig(BaseModel):
    """Root configuration model."""

    indexer: IndexerConfig = Field(default_factory=IndexerConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)


class EnvSettings(BaseSettings):
    """Environment variable overrides."""

    model_config = SettingsConfigDict(
        env_prefix="RAILSIGHT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    log_level: str = "INFO"
    index_timeout_seconds: float | None = None


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dicts, override wins on conflicts."""
    result = {**base}
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_yaml_config(path: Path) -> dict[str, Any]:
    """Load a YAML config file, return empty dict if not found."""
    if not path.exists():
        return {}
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    return data if isinstance(data, dict) else {}


def load_config(
    project_dir: Path | None = None,
    global_config_dir: Path | None = None,
) -> RailsightConfig:
    """Load configuration with layered precedence.

    Order (later overrides earlier):
    1. Built-in defaults (Pydantic defaults)
    2. ~/.railsight/config.yaml (global user config)
    3. <project>/.railsight/config.yaml (project-level config)
    4. Environment variables
    """
    global_dir = global_config_dir or Path.home() / ".railsight"
    project_config_dir = (project_dir or Path.cwd()) / ".railsight"

    merged: dict[str, Any] = {}
    for config_path in [
        global_dir / "config.yaml",
        project_config_dir / "config.yaml",
    ]:
        layer = load_yaml_config(config_path)
        merged = _deep_merge(merged, layer)

    config = RailsightConfig(**merged)

    env = EnvSettings()
    if env.index_timeout_seconds is not None:
        config = config.model_copy(
            update={
                "indexer": config.indexer.model_copy(
                    update={"timeout_seconds": env.index_timeout_seconds}
                )
            }
        )

    return config
