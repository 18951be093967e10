"""Base LLM provider — strategy pattern interface."""

from __future__ import annotations

import abc
from collections.abc import AsyncIterator
from typing import Any

from langchain_core.messages import AIMessage, AIMessageChunk


class BaseLLMProvider(abc.ABC):
    """Abstract base for LLM providers.

    The engine only needs three capabilities: a single tool-calling chat
    completion, the same completion streamed as chunks, and a summary merge.
    """

    @abc.abstractmethod
    async def achat(
        self,
        messages: list[dict[str, Any]],
        model: str,
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int = 4096,
    ) -> AIMessage:
        """Send a chat completion request and return an AIMessage."""
        ...

    @abc.abstractmethod
    def astream_chat(
        self,
        messages: list[dict[str, Any]],
        model: str,
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int = 4096,
    ) -> AsyncIterator[AIMessageChunk]:
        """Stream a chat completion as AIMessageChunk deltas."""
        ...

    @abc.abstractmethod
    async def asummarize(
        self,
        transcript: str,
        existing_summary: str,
        model: str,
        max_tokens: int = 1024,
    ) -> str:
        """Merge a conversation transcript into an existing summary."""
        ...
