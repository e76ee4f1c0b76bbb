"""Configuration management for the orchestrator."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated
import os

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class OrchestratorSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    project_paths: Annotated[tuple[Path, ...], NoDecode] = Field(
        default=(Path("projects"),), validation_alias="AO_PROJECT_PATHS"
    )
    archive_path: Path = Field(
        default=Path("./storage/archive"), validation_alias="AO_ARCHIVE_PATH"
    )
    log_level: str = Field(default="INFO", validation_alias="AO_LOG_LEVEL")
    poll_interval: float = Field(default=30.0, validation_alias="AO_POLL_INTERVAL")
    poll_timeout: float = Field(default=20.0, validation_alias="AO_POLL_TIMEOUT")
    tick_timeout: float = Field(default=60.0, validation_alias="AO_TICK_TIMEOUT")
    max_concurrency: int = Field(default=8, validation_alias="AO_MAX_CONCURRENCY")
    merge_step_timeout: float = Field(default=600.0, validation_alias="AO_MERGE_STEP_TIMEOUT")
    max_consecutive_same_status: int = Field(
        default=5, validation_alias="AO_MAX_CONSECUTIVE_SAME_STATUS"
    )
    max_cycle_repetitions: int = Field(default=3, validation_alias="AO_MAX_CYCLE_REPETITIONS")
    max_history_size: int = Field(default=50, validation_alias="AO_MAX_HISTORY_SIZE")
    default_runtime: str | None = Field(default=None, validation_alias="AO_DEFAULT_RUNTIME")
    default_agent: str | None = Field(default=None, validation_alias="AO_DEFAULT_AGENT")
    default_workspace: str | None = Field(default=None, validation_alias="AO_DEFAULT_WORKSPACE")
    default_notifiers: Annotated[tuple[str, ...], NoDecode] = Field(
        default=("log",), validation_alias="AO_DEFAULT_NOTIFIERS"
    )

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "AO_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("project_paths", mode="before")
    @classmethod
    def _parse_project_paths(cls, value):
        if value is None or value == "":
            return (Path("projects"),)
        if isinstance(value, (list, tuple)):
            return tuple(Path(str(item)) for item in value)
        if isinstance(value, str):
            parts = [part.strip() for part in value.split(os.pathsep) if part.strip()]
            return tuple(Path(part) for part in parts) or (Path("projects"),)
        raise TypeError("AO_PROJECT_PATHS must be a list of paths or a path-separated string")

    @field_validator("default_notifiers", mode="before")
    @classmethod
    def _parse_notifiers(cls, value):
        if value is None or value == "":
            return ()
        if isinstance(value, str):
            return tuple(part.strip() for part in value.split(",") if part.strip())
        return value

    @field_validator("poll_interval", "poll_timeout", "tick_timeout", "merge_step_timeout")
    @classmethod
    def _validate_positive_seconds(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("Intervals and timeouts must be > 0 seconds")
        return value

    @field_validator("max_concurrency", "max_consecutive_same_status", "max_history_size")
    @classmethod
    def _validate_at_least_one(cls, value: int) -> int:
        if value < 1:
            raise ValueError("Value must be >= 1")
        return value

    @field_validator("max_cycle_repetitions")
    @classmethod
    def _validate_cycle_repetitions(cls, value: int) -> int:
        if value < 2:
            raise ValueError("AO_MAX_CYCLE_REPETITIONS must be >= 2")
        return value


@lru_cache(maxsize=1)
def get_settings() -> OrchestratorSettings:
    """Return cached settings instance."""

    settings = OrchestratorSettings()
    settings.archive_path = settings.archive_path.expanduser().resolve()
    settings.project_paths = tuple(path.expanduser().resolve() for path in settings.project_paths)
    return settings


__all__ = ["OrchestratorSettings", "get_settings"]
