from __future__ import annotations

import logging
import sys
from enum import Enum

from pydantic import AnyHttpUrl, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class StrEnum(str, Enum):
    pass


class Environment(StrEnum):
    dev = "dev"
    prod = "prod"


class LogLevel(StrEnum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    DEBUG: bool = False
    ENV: Environment = Environment.dev
    # App as URL prefix added for each microservice
    URL_PREFIX: str = "/api/v1/dora"
    VERSION: str = "0.1.0"

    LOGGING_LEVEL: LogLevel = LogLevel.INFO

    SERVER_HOST: str | AnyHttpUrl = "http://localhost:8000"

    # Databricks SQL warehouse
    DATABRICKS_SERVER_HOSTNAME: str = Field(min_length=1)
    DATABRICKS_HTTP_PATH: str = Field(min_length=1)
    DATABRICKS_TOKEN: str = Field(min_length=1)
    DATABRICKS_CATALOG: str = Field(default="zephyr_catalog", pattern=r"^[A-Za-z0-9_]+$")
    DATABRICKS_SCHEMA: str = Field(default="dora_gold", pattern=r"^[A-Za-z0-9_]+$")
    QUERY_TIMEOUT_SECONDS: float = Field(default=30.0, gt=0)

    BACKEND_CORS_ORIGINS: list[AnyHttpUrl | str] = []

    RATE_LIMIT_WINDOW_SECONDS: int = Field(default=900, gt=0)
    RATE_LIMIT_MAX_REQUESTS: int = Field(default=100, gt=0)

    @field_validator("LOGGING_LEVEL", mode="before")
    @classmethod
    def normalize_logging_level(cls, v):
        if isinstance(v, str):
            return v.strip().upper()
        return v

    @field_validator("BACKEND_CORS_ORIGINS", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: str | list[str]) -> list[str] | str:
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",") if i.strip()]
        elif isinstance(v, (list, str)):
            return v
        raise ValueError(v)

    # pydantic settings config
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


_settings: Settings | None = None


def get_settings() -> Settings:
    """
    Get the settings an object.
    A Lazy load of the settings object.
    :return: Settings
    """
    global _settings
    if _settings is None:
        _settings = Settings()  # type: ignore
    return _settings


def load_settings() -> Settings:
    """
    Load settings at process start.
    Any missing or malformed value is reported field by field and the process exits.
    """
    try:
        return get_settings()
    except ValidationError as exc:
        # logging may not be configured yet, so stderr gets the report as well
        print("Environment validation failed:", file=sys.stderr)  # noqa: T201
        for error in exc.errors():
            field = ".".join(str(part) for part in error["loc"])
            print(f"- {field}: {error['msg']}", file=sys.stderr)  # noqa: T201
            logger.error("Invalid configuration for %s: %s", field, error["msg"])
        raise SystemExit(1) from exc
