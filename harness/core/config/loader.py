"""Configuration loader — YAML file, call-site overrides, env on top."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from loguru import logger

from harness.core.config.schema import Config

CONFIG_ENV = "HARNESS_CONFIG"
DEFAULT_CONFIG = Path("config.yaml")


def load_config(config_path: str | Path | None = None, **overrides: Any) -> Config:
    """
    Build a Config from a YAML file plus keyword overrides.

    The file is looked up in order: ``config_path``, the ``HARNESS_CONFIG``
    env variable, then ``./config.yaml``. A missing file yields defaults.

    ``overrides`` are merged into the YAML data section by section, so
    ``load_config(agent={"max_steps": 5})`` keeps the other agent keys from
    the file. Env vars still win over both (pydantic-settings).
    """
    path = _resolve_path(config_path)
    data = _deep_merge(_read_yaml(path), overrides)
    return Config(**data)


def _resolve_path(config_path: str | Path | None) -> Path | None:
    if config_path:
        return Path(config_path)
    from_env = os.environ.get(CONFIG_ENV)
    if from_env:
        return Path(from_env)
    return DEFAULT_CONFIG if DEFAULT_CONFIG.exists() else None


def _read_yaml(path: Path | None) -> dict[str, Any]:
    if path is None:
        return {}
    if not path.exists():
        logger.debug(f"Config file not found, using defaults: {path}")
        return {}

    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file must contain a mapping, got {type(data).__name__}: {path}")
    logger.debug(f"Config loaded from {path}")
    return data


def _deep_merge(base: dict[str, Any], extra: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in extra.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged
