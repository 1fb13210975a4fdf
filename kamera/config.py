"""
Profile loading for relay and client settings.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from . import ClientConfig, RelayConfig

CONFIG_DIR = Path(__file__).resolve().parent / "configs"
PROFILES_PATH = CONFIG_DIR / "profiles.yaml"

LOG = logging.getLogger(__name__)


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_profiles(path: Optional[Path] = None) -> Dict[str, Any]:
    target = Path(path) if path is not None else PROFILES_PATH
    try:
        with target.open("r", encoding="utf-8") as handle:
            profiles = yaml.safe_load(handle) or {}
    except FileNotFoundError:
        LOG.warning("Profile file %s not found; using built-in defaults", target)
        profiles = {}
    if not isinstance(profiles, dict):
        LOG.warning("Ignoring malformed profile file %s", target)
        profiles = {}
    return profiles


def load_profile(name: str = "default", path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Return the ``default`` profile with the named profile merged on top.
    """

    profiles = load_profiles(path)
    base = profiles.get("default") or {}
    if name == "default":
        return dict(base)
    selected = profiles.get(name)
    if selected is None:
        LOG.warning("Unknown profile %r; falling back to default", name)
        return dict(base)
    return _merge(base, selected)


def relay_config(name: str = "default", path: Optional[Path] = None) -> RelayConfig:
    return RelayConfig.from_mapping(load_profile(name, path), profile=name)


def client_config(name: str = "default", path: Optional[Path] = None) -> ClientConfig:
    return ClientConfig.from_mapping(load_profile(name, path))
