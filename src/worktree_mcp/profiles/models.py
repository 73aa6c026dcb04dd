"""Runner profile models describing how a workspace's app is installed and served."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator


class RunnerProfile(BaseModel):
    """Commands and environment used by a process supervisor for one role."""

    id: str = Field(..., description="Unique identifier for the profile.")
    label: str = Field(..., description="Human-friendly name used in system log lines.")
    start_command: list[str] = Field(
        ..., description="argv of the long-running server process."
    )
    install_command: list[str] = Field(
        default_factory=lambda: ["bun", "install"],
        description="argv of the dependency installation process.",
    )
    environment: dict[str, str] = Field(
        default_factory=dict,
        description="Variables layered over the inherited environment for both processes.",
    )
    manifest: str = Field(
        default="package.json",
        description="File whose presence means the workspace has installable dependencies.",
    )
    dependency_dir: str = Field(
        default="node_modules",
        description="Directory whose absence means dependencies still need installing.",
    )
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("id", "label")
    @classmethod
    def _normalize_text(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Runner profile id and label must not be empty")
        return normalized

    @field_validator("start_command", "install_command", mode="before")
    @classmethod
    def _ensure_argv(cls, value: Any):
        if isinstance(value, str):
            value = value.split()
        if not isinstance(value, (list, tuple)) or not value:
            raise ValueError("Commands must be a non-empty list of arguments")
        return [str(part) for part in value]

    @field_validator("environment", mode="before")
    @classmethod
    def _stringify_environment(cls, value: Any):
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise TypeError("environment must be a mapping")
        return {str(key): str(item) for key, item in value.items()}


DEV_PROFILE = RunnerProfile(
    id="dev",
    label="dev server",
    start_command=["bun", "run", "dev"],
    environment={"NODE_ENV": "development"},
)

PRODUCTION_PROFILE = RunnerProfile(
    id="production",
    label="production server",
    start_command=["bun", "run", "start"],
    environment={"NODE_ENV": "production"},
)

BUILTIN_PROFILES: dict[str, RunnerProfile] = {
    DEV_PROFILE.id: DEV_PROFILE,
    PRODUCTION_PROFILE.id: PRODUCTION_PROFILE,
}


__all__ = ["BUILTIN_PROFILES", "DEV_PROFILE", "PRODUCTION_PROFILE", "RunnerProfile"]
