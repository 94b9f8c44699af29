"""Configuration management for termrelay.

Loads settings from a YAML configuration file with environment variable
overrides. Supports .env files.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings

from termrelay.domain.models import SessionMode

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config/termrelay.yaml")


class ProcessConfig(BaseModel):
    command: str = Field(default="claude-code", description="Interactive CLI to spawn per session")
    args: list[str] = Field(default_factory=list)
    working_dir: str | None = Field(default=None, description="Defaults to the server's cwd")
    env: dict[str, str] = Field(default_factory=dict)
    term: str = Field(default="xterm-color")
    rows: int = Field(default=24, gt=0)
    cols: int = Field(default=80, gt=0)
    kill_grace_period: float = Field(default=0.5, ge=0)
    strip_ansi: bool = Field(default=False)


class SessionConfig(BaseModel):
    idle_timeout: float = Field(default=30 * 60, gt=0, description="Seconds of inactivity before eviction")
    sweep_interval: float = Field(default=5 * 60, gt=0, description="Seconds between idle sweeps")
    response_delay_min: float = Field(default=0.5, ge=0)
    response_delay_max: float = Field(default=1.5, ge=0)
    default_mode: SessionMode = Field(default=SessionMode.CHAT)

    @model_validator(mode="after")
    def _check_delay_bounds(self) -> SessionConfig:
        if self.response_delay_min > self.response_delay_max:
            raise ValueError("response_delay_min must not exceed response_delay_max")
        return self


class ServerConfig(BaseModel):
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000, ge=1, le=65535)
    # Events queued for one client before it is dropped as too slow
    max_pending_events: int = Field(default=1000, gt=0)


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO")
    format: str = Field(
        default="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    file: str | None = Field(default=None)


class Settings(BaseSettings):
    """Root configuration for termrelay.

    Loads from YAML file and supports environment variable overrides.
    Reads .env files automatically.
    """

    model_config = {
        "env_prefix": "TERMRELAY_",
        "env_nested_delimiter": "__",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    process: ProcessConfig = Field(default_factory=ProcessConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_settings(config_path: Path | str | None = None) -> Settings:
    """Load settings from YAML + .env + environment variables.

    Priority: PORT > YAML file > TERMRELAY_* env vars > .env file > defaults
    """
    path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH

    # Load .env file manually for non-prefixed vars
    _load_dotenv()

    yaml_data = {}
    if path.exists():
        with open(path) as f:
            yaml_data = yaml.safe_load(f) or {}
        logger.info("Loaded configuration from %s", path)
    else:
        logger.warning("Config file %s not found, using defaults + env vars", path)

    _apply_env_overrides(yaml_data)

    return Settings(**yaml_data)


def _load_dotenv() -> None:
    """Load .env file into os.environ if it exists."""
    env_path = Path(".env")
    if not env_path.exists():
        return
    with open(env_path) as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if "=" in line:
                key, _, value = line.partition("=")
                key = key.strip()
                value = value.strip()
                if not os.environ.get(key):
                    os.environ[key] = value


def _apply_env_overrides(yaml_data: dict) -> None:
    """Apply environment variable overrides for non-prefixed vars."""
    # Deployment tooling sets a bare PORT
    port = os.environ.get("PORT", "")
    if not port:
        return
    if "server" not in yaml_data or yaml_data["server"] is None:
        yaml_data["server"] = {}
    yaml_data["server"]["port"] = int(port)
