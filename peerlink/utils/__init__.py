"""Utility helpers shared by the server and the client."""

from .logging import configure_logging
from .profiles import ProfileError, load_config, load_profiles

__all__ = ["ProfileError", "configure_logging", "load_config", "load_profiles"]
