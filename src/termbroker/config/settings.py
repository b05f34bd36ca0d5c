"""Configuration management for termbroker.

Loads settings from a YAML configuration file with environment variable
overrides. Supports .env files.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config/termbroker.yaml")


class ServerConfig(BaseModel):
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000, ge=1, le=65535)
    static_dir: str | None = Field(
        default=None,
        description="Directory of a prebuilt client bundle served at /",
    )
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])


class TerminalConfig(BaseModel):
    default_shell: str | None = Field(
        default=None,
        description="Shell tried before $SHELL and the built-in fallbacks",
    )
    home_dir: str | None = Field(
        default=None,
        description="Working directory for new sessions (default: $HOME)",
    )
    term_name: str = Field(default="xterm-color")
    default_cols: int = Field(default=80, gt=0)
    default_rows: int = Field(default=24, gt=0)
    kill_grace_period: float = Field(
        default=2.0,
        gt=0,
        description="Seconds between SIGHUP and SIGKILL when closing a session",
    )
    read_chunk_size: int = Field(default=4096, gt=0)


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO")
    format: str = Field(
        default="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    file: str | None = Field(default=None)


class Settings(BaseSettings):
    """Root configuration for the termbroker server.

    Loads from YAML file and supports environment variable overrides.
    Reads .env files automatically.
    """

    model_config = {
        "env_prefix": "TERMBROKER_",
        "env_nested_delimiter": "__",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    server: ServerConfig = Field(default_factory=ServerConfig)
    terminal: TerminalConfig = Field(default_factory=TerminalConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_settings(config_path: Path | str | None = None) -> Settings:
    """Load settings from YAML + .env + environment variables.

    Priority: plain env vars (PORT, TERMBROKER_SHELL) > YAML file >
    prefixed env vars / .env > defaults
    """
    path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH

    yaml_data: dict = {}
    if path.exists():
        with open(path) as f:
            yaml_data = yaml.safe_load(f) or {}
        logger.info("Loaded configuration from %s", path)
    else:
        logger.debug("Config file %s not found, using defaults + env vars", path)

    _apply_env_overrides(yaml_data)

    return Settings(**yaml_data)


def _apply_env_overrides(yaml_data: dict) -> None:
    """Apply environment variable overrides for non-prefixed vars."""
    port = os.environ.get("PORT", "")
    shell = os.environ.get("TERMBROKER_SHELL", "")

    if port:
        yaml_data.setdefault("server", {})["port"] = port

    if shell:
        yaml_data.setdefault("terminal", {})["default_shell"] = shell
