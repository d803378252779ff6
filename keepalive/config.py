"""
Configuration management for the launcher.

Precedence: explicit values (CLI flags) > env vars > .env file > keepalive.yaml > defaults

Env vars use the KEEPALIVE_ prefix (KEEPALIVE_SCRIPT, KEEPALIVE_BACKOFF_MAX, ...).
The listening port also honours a bare PORT, as set by most hosting platforms.

Config file: <working dir>/keepalive.yaml, or the path in KEEPALIVE_CONFIG.
"""

import logging
import os
from pathlib import Path
from typing import Any, Optional, Union

import yaml
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings

from keepalive.core.backoff import BackoffPolicy
from keepalive.core.process import ChildTarget

logger = logging.getLogger(__name__)

ENV_PREFIX = "KEEPALIVE_"
CONFIG_FILE_NAME = "keepalive.yaml"


def get_config_path(working_dir: Union[str, Path, None] = None) -> Path:
    """Resolve the keepalive.yaml location before Settings init.

    KEEPALIVE_CONFIG wins; otherwise the file sits in `working_dir`, falling
    back to KEEPALIVE_WORKING_DIR and then the current directory.
    """
    raw = os.environ.get(f"{ENV_PREFIX}CONFIG", "")
    if raw:
        return Path(raw).expanduser().resolve()
    if not working_dir:
        working_dir = os.environ.get(f"{ENV_PREFIX}WORKING_DIR", "")
    base = Path(working_dir).expanduser() if working_dir else Path.cwd()
    return (base / CONFIG_FILE_NAME).resolve()


def _load_yaml_config(config_file: Path) -> dict[str, Any]:
    """Load keepalive.yaml, returning {} when missing or malformed."""
    if not config_file.exists():
        return {}
    try:
        with open(config_file) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            logger.warning(f"{CONFIG_FILE_NAME} is not a dict, ignoring: {config_file}")
            return {}
        return data
    except Exception as e:
        logger.warning(f"Error loading {config_file}: {e}")
        return {}


class Settings(BaseSettings):
    """Launcher configuration."""

    # HTTP listener
    host: str = Field(default="0.0.0.0", description="Health endpoint bind address")
    port: int = Field(default=8080, ge=0, le=65535, description="Health endpoint port")
    index_file: Path = Field(
        default=Path("index.html"),
        description="Static page served at /, relative to the working directory",
    )

    # Supervised worker
    script: Path = Field(
        default=Path("bot.py"),
        description="Worker executable or script, relative to the working directory",
    )
    working_dir: Path = Field(
        default_factory=Path.cwd,
        description="Directory the worker runs in",
    )
    interpreter: Optional[str] = Field(
        default=None,
        description="Interpreter to run the script with (python is used for .py files)",
    )

    # Restart backoff (seconds)
    backoff_initial: float = Field(default=2.0, gt=0, description="First restart delay")
    backoff_max: float = Field(default=60.0, gt=0, description="Restart delay ceiling")
    backoff_factor: float = Field(default=1.5, description="Delay growth per consecutive failure")
    backoff_reset_after: float = Field(
        default=10.0,
        ge=0,
        description="Uptime after which the delay resets to initial; 0 resets on every spawn",
    )

    # Shutdown
    shutdown_grace_period: float = Field(
        default=10.0,
        gt=0,
        description="Seconds to wait for the worker after SIGTERM before killing it",
    )

    # Logging
    log_level: str = Field(default="INFO", description="Log level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format string",
    )

    model_config = {
        "env_prefix": ENV_PREFIX,
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @model_validator(mode="before")
    @classmethod
    def _inject_fallbacks(cls, data: Any) -> Any:
        """Inject PORT and keepalive.yaml values below KEEPALIVE_* env vars."""
        if not isinstance(data, dict):
            data = {}

        if data.get("port") is None and os.environ.get("PORT"):
            data["port"] = os.environ["PORT"]

        yaml_config = _load_yaml_config(get_config_path(data.get("working_dir")))
        for key, value in yaml_config.items():
            if key not in cls.model_fields:
                logger.warning(f"Unknown key in {CONFIG_FILE_NAME}: {key}")
                continue
            if data.get(key) is None and os.environ.get(f"{ENV_PREFIX}{key.upper()}") is None:
                data[key] = value

        return data

    @field_validator("working_dir")
    @classmethod
    def _resolve_working_dir(cls, value: Path) -> Path:
        return value.expanduser().resolve()

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        level = value.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"unknown log level: {value}")
        return level

    @model_validator(mode="after")
    def _check_backoff_bounds(self) -> "Settings":
        if self.backoff_max < self.backoff_initial:
            raise ValueError(
                f"backoff_max ({self.backoff_max}) must be >= backoff_initial ({self.backoff_initial})"
            )
        return self

    @property
    def target(self) -> ChildTarget:
        """The worker to supervise."""
        return ChildTarget(
            script=self.script,
            working_dir=self.working_dir,
            interpreter=self.interpreter,
        )

    @property
    def backoff(self) -> BackoffPolicy:
        return BackoffPolicy(
            initial=self.backoff_initial,
            maximum=self.backoff_max,
            factor=self.backoff_factor,
        )

    @property
    def index_path(self) -> Path:
        if self.index_file.is_absolute():
            return self.index_file
        return self.working_dir / self.index_file


# Global settings instance, created on first use
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings(**overrides: Any) -> Settings:
    """Rebuild settings from the environment, applying explicit overrides."""
    global _settings
    _settings = Settings(**{k: v for k, v in overrides.items() if v is not None})
    return _settings
