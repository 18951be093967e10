"""LiteLLM provider — thin wrapper that returns LangChain AIMessage."""

from __future__ import annotations

import json
import os
from collections.abc import AsyncIterator
from typing import Any

import litellm
from langchain_core.messages import AIMessage, AIMessageChunk
from langchain_core.messages.tool import tool_call_chunk
from loguru import logger

from harness.core.config.schema import Config
from harness.core.errors import SummarizationError
from harness.core.providers.base import BaseLLMProvider

# Suppress litellm noise
litellm.suppress_debug_info = True

SUMMARY_SYSTEM_PROMPT = (
    "You are a helpful assistant. Summarize the following conversation history "
    "into a concise, detailed narrative.\n"
    "Retain key decisions, user requirements, current plan status, and important context.\n"
    'Merge this with the "Existing Summary" strictly.\n\n'
    "IMPORTANT: Exclude any error messages or stack traces from the summary - "
    "errors are tracked separately.\n\n"
    "The conversation is formatted with:\n"
    "- [N] Role: prefix indicating message number and role "
    "(System, User, Assistant, Tool Result)\n"
    "- Content follows the role label\n"
    "- --- separates messages"
)


class LiteLLMProvider(BaseLLMProvider):
    """LiteLLM-backed provider for any model string LiteLLM understands."""

    def __init__(self, config: Config) -> None:
        self.config = config
        self._setup_keys(config)

    async def achat(
        self,
        messages: list[dict[str, Any]],
        model: str,
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int = 4096,
    ) -> AIMessage:
        """Call LiteLLM and return a LangChain AIMessage."""
        kwargs = self._build_kwargs(messages, model, tools, temperature, max_tokens)
        try:
            response = await litellm.acompletion(**kwargs)
        except Exception as e:
            logger.error(f"LLM error ({model}): {e}")
            raise
        return self._to_ai_message(response)

    async def astream_chat(
        self,
        messages: list[dict[str, Any]],
        model: str,
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int = 4096,
    ) -> AsyncIterator[AIMessageChunk]:
        """Call LiteLLM in streaming mode, yielding LangChain chunks."""
        kwargs = self._build_kwargs(messages, model, tools, temperature, max_tokens)
        kwargs["stream"] = True
        try:
            response = await litellm.acompletion(**kwargs)
            async for chunk in response:
                yield self._to_chunk(chunk)
        except Exception as e:
            logger.error(f"LLM stream error ({model}): {e}")
            raise

    async def asummarize(
        self,
        transcript: str,
        existing_summary: str,
        model: str,
        max_tokens: int = 1024,
    ) -> str:
        """Merge a formatted transcript into the running summary."""
        summary_messages = [
            {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
            {
                "role": "user",
                "content": (
                    f"Existing Summary:\n{existing_summary}\n\n"
                    f"New Conversation to Summarize:\n{transcript}"
                ),
            },
        ]
        response = await litellm.acompletion(
            model=model,
            messages=summary_messages,
            temperature=0.3,
            max_tokens=max_tokens,
            api_base=self.config.get_api_base(model),
        )
        text = response.choices[0].message.content or ""
        if not text.strip():
            raise SummarizationError(f"Model '{model}' returned an empty summary")
        return text

    def _build_kwargs(
        self,
        messages: list[dict[str, Any]],
        model: str,
        tools: list[dict[str, Any]] | None,
        temperature: float | None,
        max_tokens: int,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": max_tokens,
        }
        if temperature is not None:
            kwargs["temperature"] = temperature
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        api_base = self.config.get_api_base(model)
        if api_base:
            kwargs["api_base"] = api_base
        return kwargs

    @staticmethod
    def _to_ai_message(response: Any) -> AIMessage:
        """Convert litellm response to LangChain AIMessage."""
        choice = response.choices[0]
        msg = choice.message

        tool_calls = []
        if hasattr(msg, "tool_calls") and msg.tool_calls:
            for tc in msg.tool_calls:
                args = tc.function.arguments
                if isinstance(args, str):
                    try:
                        args = json.loads(args) if args else {}
                    except json.JSONDecodeError:
                        args = {"raw": args}
                tool_calls.append(
                    {"id": tc.id, "name": tc.function.name, "args": args}
                )

        additional_kwargs: dict[str, Any] = {}
        reasoning = getattr(msg, "reasoning_content", None)
        if reasoning:
            additional_kwargs["reasoning_content"] = reasoning

        return AIMessage(
            content=msg.content or "",
            tool_calls=tool_calls,
            additional_kwargs=additional_kwargs,
            response_metadata={
                "finish_reason": choice.finish_reason or "stop",
                "usage": {
                    "prompt_tokens": getattr(response.usage, "prompt_tokens", 0),
                    "completion_tokens": getattr(
                        response.usage, "completion_tokens", 0
                    ),
                    "total_tokens": getattr(response.usage, "total_tokens", 0),
                },
            },
        )

    @staticmethod
    def _to_chunk(chunk: Any) -> AIMessageChunk:
        """Convert a litellm stream chunk to a LangChain AIMessageChunk."""
        if not chunk.choices:
            return AIMessageChunk(content="")
        choice = chunk.choices[0]
        delta = choice.delta

        call_chunks = []
        for tc in getattr(delta, "tool_calls", None) or []:
            fn = getattr(tc, "function", None)
            call_chunks.append(
                tool_call_chunk(
                    name=getattr(fn, "name", None),
                    args=getattr(fn, "arguments", None),
                    id=getattr(tc, "id", None),
                    index=getattr(tc, "index", None),
                )
            )

        metadata: dict[str, Any] = {}
        if choice.finish_reason:
            metadata["finish_reason"] = choice.finish_reason
        return AIMessageChunk(
            content=getattr(delta, "content", None) or "",
            tool_call_chunks=call_chunks,
            response_metadata=metadata,
        )

    @staticmethod
    def _setup_keys(config: Config) -> None:
        """Set env vars for LiteLLM from config."""
        for env, val in [
            ("ANTHROPIC_API_KEY", config.providers.anthropic.api_key),
            ("OPENAI_API_KEY", config.providers.openai.api_key),
            ("OPENROUTER_API_KEY", config.providers.openrouter.api_key),
            ("DEEPSEEK_API_KEY", config.providers.deepseek.api_key),
            ("GROQ_API_KEY", config.providers.groq.api_key),
            ("GEMINI_API_KEY", config.providers.gemini.api_key),
        ]:
            if val:
                os.environ.setdefault(env, val)
