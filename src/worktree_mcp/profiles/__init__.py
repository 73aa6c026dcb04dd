"""Runner profiles: built-ins plus YAML overrides."""

from .loader import ProfileLoadError, ProfileLoader
from .models import BUILTIN_PROFILES, DEV_PROFILE, PRODUCTION_PROFILE, RunnerProfile

__all__ = [
    "BUILTIN_PROFILES",
    "DEV_PROFILE",
    "PRODUCTION_PROFILE",
    "ProfileLoadError",
    "ProfileLoader",
    "RunnerProfile",
]
