"""LLM providers."""

from harness.core.providers.base import BaseLLMProvider
from harness.core.providers.litellm import LiteLLMProvider

__all__ = ["BaseLLMProvider", "LiteLLMProvider"]
