"""
Profile discovery and loading.

Profiles are plain YAML mappings keyed by profile name.  Each entry overrides
the defaults of :class:`peerlink.SignalingConfig`.
"""

from __future__ import annotations

import os
from dataclasses import fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .. import SignalingConfig

ENV_PROFILES_VAR = "PEERLINK_PROFILES"
CONFIG_DIR = Path(__file__).resolve().parent.parent / "configs"
PROFILES_PATH = CONFIG_DIR / "profiles.yaml"

_FLOAT_FIELDS = {"ping_interval", "pong_timeout", "join_timeout", "connect_timeout", "disconnect_timeout"}


class ProfileError(ValueError):
    """Raised when a profile file or entry cannot be used."""


def profiles_path() -> Path:
    env_path = os.environ.get(ENV_PROFILES_VAR)
    if env_path:
        return Path(env_path).expanduser()
    return PROFILES_PATH


def load_profiles(path: Optional[Path] = None) -> Dict[str, Dict[str, Any]]:
    target = path or profiles_path()
    try:
        with target.open("r", encoding="utf-8") as handle:
            profiles = yaml.safe_load(handle) or {}
    except FileNotFoundError:
        return {}
    except yaml.YAMLError as exc:
        raise ProfileError(f"Invalid profile file {target}: {exc}") from exc
    if not isinstance(profiles, dict):
        raise ProfileError(f"Profile file {target} must contain a mapping")
    return profiles


def _normalise_ice_servers(value: Any) -> list:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ProfileError("ice_servers must be a list")
    servers = []
    for entry in value:
        if isinstance(entry, str):
            servers.append({"urls": entry})
        elif isinstance(entry, dict) and entry.get("urls"):
            servers.append(dict(entry))
        else:
            raise ProfileError(f"Invalid ICE server entry: {entry!r}")
    return servers


def load_config(profile: str = "default", path: Optional[Path] = None) -> SignalingConfig:
    """
    Build a :class:`SignalingConfig` for ``profile``.

    The ``default`` profile falls back to built-in defaults when the file is
    missing; any other unknown profile name is an error.
    """

    profiles = load_profiles(path)
    entry = profiles.get(profile)
    if entry is None:
        if profile == "default":
            return SignalingConfig(profile=profile)
        raise ProfileError(f"Unknown profile '{profile}'")
    if not isinstance(entry, dict):
        raise ProfileError(f"Profile '{profile}' must be a mapping")

    known = {item.name for item in fields(SignalingConfig)}
    overrides: Dict[str, Any] = {}
    for key, value in entry.items():
        if key not in known or key == "profile":
            raise ProfileError(f"Unknown setting '{key}' in profile '{profile}'")
        if key == "ice_servers":
            value = _normalise_ice_servers(value)
        elif key in _FLOAT_FIELDS:
            try:
                value = max(0.0, float(value))
            except (TypeError, ValueError) as exc:
                raise ProfileError(f"{key} must be a number") from exc
        elif key == "queue_size":
            try:
                value = max(1, int(value))
            except (TypeError, ValueError) as exc:
                raise ProfileError("queue_size must be an integer") from exc
        elif key == "cors_origins":
            value = [str(origin) for origin in (value or [])]
        overrides[key] = value
    return SignalingConfig(profile=profile, **overrides)
