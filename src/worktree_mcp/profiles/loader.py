"""Runner profile overrides read from YAML files."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable

import yaml
from pydantic import ValidationError

from .models import BUILTIN_PROFILES, RunnerProfile


class ProfileLoadError(RuntimeError):
    """Raised when one or more profile files cannot be parsed."""


def _profile_files(directory: Path) -> list[Path]:
    return sorted(directory.glob("*.yml")) + sorted(directory.glob("*.yaml"))


class ProfileLoader:
    """Layers YAML profile documents over the built-in ``dev`` and ``production`` profiles.

    A document whose ``id`` names a known profile only needs the fields it
    changes, e.g. ``{id: dev, start_command: npm run dev}``; unknown ids
    must be complete profiles. Directories are applied in order, so later
    ones win.
    """

    def __init__(self, search_paths: Iterable[Path] | None = None) -> None:
        self._search_paths = [Path(path) for path in (search_paths or []) if Path(path).is_dir()]

    @property
    def search_paths(self) -> list[Path]:
        return list(self._search_paths)

    def _overlay(
        self, profiles: dict[str, RunnerProfile], document: dict[str, Any], source: Path
    ) -> RunnerProfile:
        profile_id = document.get("id")
        base = profiles.get(profile_id) if isinstance(profile_id, str) else None
        merged = {**base.model_dump(), **document} if base is not None else document
        try:
            return RunnerProfile.model_validate(merged)
        except ValidationError as exc:
            raise ProfileLoadError(f"Profile validation error in {source}: {exc}") from exc

    def load_all(self) -> dict[str, RunnerProfile]:
        profiles: dict[str, RunnerProfile] = dict(BUILTIN_PROFILES)
        errors: list[str] = []

        for directory in self._search_paths:
            for path in _profile_files(directory):
                try:
                    document = yaml.safe_load(path.read_text(encoding="utf-8"))
                except (OSError, yaml.YAMLError) as exc:
                    errors.append(f"Failed to read {path}: {exc}")
                    continue
                if document is None:
                    continue
                if not isinstance(document, dict):
                    errors.append(f"Profile document in {path} must be a mapping")
                    continue

                try:
                    profile = self._overlay(profiles, document, path)
                except ProfileLoadError as exc:
                    errors.append(str(exc))
                    continue
                profiles[profile.id] = profile

        if errors:
            raise ProfileLoadError("; ".join(errors))
        return profiles

    def get(self, profile_id: str) -> RunnerProfile:
        try:
            return self.load_all()[profile_id]
        except KeyError as exc:
            raise ProfileLoadError(f"Runner profile '{profile_id}' not found") from exc


__all__ = ["ProfileLoadError", "ProfileLoader"]
