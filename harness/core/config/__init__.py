"""Configuration module."""

from harness.core.config.loader import load_config
from harness.core.config.schema import Config

__all__ = ["Config", "load_config"]
