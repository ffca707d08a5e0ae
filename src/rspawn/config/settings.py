"""Configuration management for rspawn.

Loads settings from a YAML configuration file with environment variable
overrides. Supports .env files. None of these settings change the wire
format; they only tune buffer sizes, decoding limits, timeouts and logging.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings

from rspawn.protocol.models import ProtocolLimits

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config/rspawn.yaml")


class ClientConfig(BaseModel):
    chunk_size: int = Field(default=4096, gt=0, description="Max bytes of stdin per DATA package")


class ServerConfig(BaseModel):
    host: str | None = Field(default=None, description="Bind address; all interfaces when unset")
    backlog: int = Field(default=128, gt=0)
    close_grace_period: float = Field(
        default=1.0, ge=0, description="Seconds a command may run on after end of input before SIGKILL"
    )
    linger_timeout: float = Field(
        default=1.0, ge=0, description="Seconds spent draining the client before closing"
    )
    pid_file: str | None = Field(default=None)


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO")
    format: str = Field(
        default="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    file: str | None = Field(default=None)


class Settings(BaseSettings):
    """Root configuration for rspawn.

    Loads from YAML file and supports environment variable overrides.
    Reads .env files automatically.
    """

    model_config = {
        "env_prefix": "RSPAWN_",
        "env_nested_delimiter": "__",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    protocol: ProtocolLimits = Field(default_factory=ProtocolLimits)
    client: ClientConfig = Field(default_factory=ClientConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # YAML values arrive as init kwargs; let the environment win over them
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    @model_validator(mode="after")
    def check_chunk_fits_payload_limit(self) -> Settings:
        if self.client.chunk_size > self.protocol.max_payload_length:
            raise ValueError(
                f"client.chunk_size ({self.client.chunk_size}) exceeds "
                f"protocol.max_payload_length ({self.protocol.max_payload_length})"
            )
        return self


def load_settings(config_path: Path | str | None = None) -> Settings:
    """Load settings from YAML + .env + environment variables.

    Priority: env vars > .env file > YAML file > defaults
    """
    path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH

    yaml_data = {}
    if path.exists():
        with open(path) as f:
            yaml_data = yaml.safe_load(f) or {}
        logger.info("Loaded configuration from %s", path)
    elif config_path:
        logger.warning("Config file %s not found, using defaults + env vars", path)

    return Settings(**yaml_data)
