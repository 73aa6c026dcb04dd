"""Configuration management for Worktree MCP."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated
import os

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class WorkspaceSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    clones_dir: Path = Field(default=Path("./clones"), validation_alias="WORKTREE_CLONES_DIR")
    production_dir: Path = Field(
        default=Path("./production"), validation_alias="WORKTREE_PRODUCTION_DIR"
    )
    cleanup_interval_seconds: float = Field(
        default=30.0, validation_alias="WORKTREE_CLEANUP_INTERVAL_SECONDS"
    )
    cleanup_min_age_seconds: float = Field(
        default=300.0, validation_alias="WORKTREE_CLEANUP_MIN_AGE_SECONDS"
    )
    port_lower_bound: int = Field(default=3000, validation_alias="WORKTREE_PORT_LOWER_BOUND")
    terminal_shell: str = Field(default="/bin/sh", validation_alias="WORKTREE_TERMINAL_SHELL")
    runner_profile_paths: Annotated[tuple[Path, ...], NoDecode] = Field(
        default=(Path("profiles"),), validation_alias="WORKTREE_RUNNER_PROFILE_PATHS"
    )
    github_token: str | None = Field(
        default=None, validation_alias=AliasChoices("GITHUB_TOKEN", "GH_TOKEN")
    )
    codex_path: str | None = Field(default=None, validation_alias="CODEX_PATH")
    chroma_persist_path: Path = Field(
        default=Path("./storage/chroma"), validation_alias="CHROMA_PERSIST_PATH"
    )
    log_level: str = Field(default="INFO", validation_alias="WORKTREE_LOG_LEVEL")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "WORKTREE_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("runner_profile_paths", mode="before")
    @classmethod
    def _parse_profile_paths(cls, value):
        if value is None or value == "":
            return (Path("profiles"),)
        if isinstance(value, (list, tuple)):
            return tuple(Path(str(item)) for item in value)
        if isinstance(value, str):
            parts = [part.strip() for part in value.split(os.pathsep) if part.strip()]
            return tuple(Path(part) for part in parts) or (Path("profiles"),)
        raise TypeError(
            "WORKTREE_RUNNER_PROFILE_PATHS must be a list of paths or a path-separated string"
        )

    @field_validator("cleanup_interval_seconds")
    @classmethod
    def _validate_interval(cls, value: float) -> float:
        if value < 1:
            raise ValueError("WORKTREE_CLEANUP_INTERVAL_SECONDS must be >= 1")
        return value

    @field_validator("cleanup_min_age_seconds")
    @classmethod
    def _validate_min_age(cls, value: float) -> float:
        if value < 0:
            raise ValueError("WORKTREE_CLEANUP_MIN_AGE_SECONDS must be >= 0")
        return value

    @field_validator("port_lower_bound")
    @classmethod
    def _validate_port(cls, value: int) -> int:
        if not 1 <= value <= 65535:
            raise ValueError("WORKTREE_PORT_LOWER_BOUND must be between 1 and 65535")
        return value


@lru_cache(maxsize=1)
def get_settings() -> WorkspaceSettings:
    """Return cached settings instance."""

    settings = WorkspaceSettings()
    settings.clones_dir = settings.clones_dir.expanduser().resolve()
    settings.production_dir = settings.production_dir.expanduser().resolve()
    settings.chroma_persist_path = settings.chroma_persist_path.expanduser().resolve()
    settings.runner_profile_paths = tuple(
        path.expanduser().resolve() for path in settings.runner_profile_paths
    )
    return settings


__all__ = ["WorkspaceSettings", "get_settings"]
