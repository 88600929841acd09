"""Configuration — policy constants with optional per-project overrides.

``<project>/.stasis/config.json`` may override any field, e.g.::

    {
      "retention_days": 180,
      "tiering": {"deep_sleep_after_days": 120,
                  "retention_thresholds": {"DeepSleep": 9}},
      "health": {"freshness_half_life_days": 10}
    }

Scalar options can also come from ``STASIS_``-prefixed environment
variables (``STASIS_ARCHIVE_DIR``, ``STASIS_RETENTION_DAYS``, ...), which
take precedence over the file.
"""

import json
from pathlib import Path

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from stasis.cleanup import DEFAULT_RETENTION_DAYS
from stasis.health import DEFAULT_INTERVAL_SECONDS, HealthPolicy
from stasis.restore import DEFAULT_BUDGET_MS
from stasis.tiering import TieringPolicy

STASIS_DIR = ".stasis"
CONFIG_NAME = "config.json"
DB_NAME = "contexts.db"
ARCHIVE_DIR_NAME = "archive"
HEALTH_LOG_DIR_NAME = "health-logs"

ENV_PREFIX = "STASIS_"
ENV_PROJECT_DIR = "STASIS_PROJECT_DIR"


def _describe(error: ValidationError) -> str:
    """One line per failing field, as ``loc: msg``."""
    lines = []
    for item in error.errors():
        loc = ".".join(str(x) for x in item["loc"]) or "<root>"
        lines.append(f"{loc}: {item['msg']}")
    return "; ".join(lines)


class StasisConfig(BaseSettings):
    """Engine settings: file values, overridden by ``STASIS_*`` env vars."""

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        case_sensitive=False,
        extra="forbid",
    )

    tiering: TieringPolicy = Field(default_factory=TieringPolicy)
    health: HealthPolicy = Field(default_factory=HealthPolicy)
    retention_days: int = Field(default=DEFAULT_RETENTION_DAYS, ge=0)
    restore_budget_ms: float = Field(default=DEFAULT_BUDGET_MS, gt=0)
    maintenance_interval_seconds: float = Field(default=DEFAULT_INTERVAL_SECONDS, gt=0)
    archive_dir: Path | None = Field(
        default=None, description="Archive root (defaults to <stasis dir>/archive)"
    )

    @classmethod
    def settings_customise_sources(
        cls, settings_cls, init_settings, env_settings, dotenv_settings, file_secret_settings,
    ):
        # Earlier sources win: the environment overrides config.json.
        return env_settings, init_settings

    @classmethod
    def load(cls, stasis_dir: Path) -> "StasisConfig":
        """Read ``config.json`` from the stasis directory (if any) and apply env overrides."""
        data: dict = {}
        config_path = Path(stasis_dir) / CONFIG_NAME
        if config_path.is_file():
            try:
                data = json.loads(config_path.read_text(encoding="utf-8"))
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid config file {config_path}: {e}") from e
            if not isinstance(data, dict):
                raise ValueError(f"Config file {config_path} must contain a JSON object")
        config = cls.from_dict(data)
        if config.archive_dir is None:
            config.archive_dir = Path(stasis_dir) / ARCHIVE_DIR_NAME
        return config

    @classmethod
    def from_dict(cls, data: dict) -> "StasisConfig":
        try:
            return cls(**data)
        except ValidationError as e:
            raise ValueError(f"Unknown or malformed config option: {_describe(e)}") from e

    def to_dict(self) -> dict:
        return self.model_dump(mode="json", exclude={"archive_dir"})

    def write(self, stasis_dir: Path) -> Path:
        config_path = Path(stasis_dir) / CONFIG_NAME
        config_path.write_text(json.dumps(self.to_dict(), indent=2) + "\n", encoding="utf-8")
        return config_path
