"""ContextCompactor — keeps the model's input bounded across long sessions.

Two phases:

1. Restorable compression. Oversized assistant/tool messages are replaced by
   a short reference naming their source (file path, command, tool), so the
   model can re-issue the call to get full fidelity back. System and user
   messages, and tool errors, are never touched.
2. Summarization. Only if phase 1 still leaves too many messages or too many
   estimated tokens. The older prefix is folded into the rolling summary
   (errors are moved to the ledger first) and the recent suffix is kept.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)
from loguru import logger

from harness.agent.errors import ErrorLedger
from harness.core.config.schema import ContextConfig
from harness.core.providers.base import BaseLLMProvider
from harness.memory.backend import StateBackend

SUMMARY_HEADER = "## Previous Context Summary\n"

_ROLE_LABELS = {
    "system": "System",
    "human": "User",
    "ai": "Assistant",
    "tool": "Tool Result",
}


@dataclass
class SummarizationEvent:
    """Lifecycle notification: starting, in_progress, complete or failed."""

    status: str
    summarized_count: int
    kept_count: int
    error: str | None = None


SummarizationListener = Callable[[SummarizationEvent], None]


# ── Message inspection helpers ────────────────────────────────


def _describe_call(name: str | None, args: Any) -> str:
    args_str = json.dumps(args, default=str)[:200] if args else "no args"
    return f"[Tool Call: {name or 'unknown'} with args: {args_str}]"


def extract_text(message: BaseMessage) -> str:
    """Flatten a message's content (and tool calls) to text for analysis."""
    parts: list[str] = []
    content = message.content
    if isinstance(content, str):
        parts.append(content)
    elif isinstance(content, list):
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict):
                kind = part.get("type")
                if kind == "text":
                    parts.append(part.get("text", ""))
                elif kind in ("tool_use", "tool_call"):
                    parts.append(_describe_call(part.get("name"), part.get("input") or part.get("args")))
                else:
                    parts.append(f"[{kind}]")
    else:
        parts.append(str(content or ""))

    for call in getattr(message, "tool_calls", None) or []:
        parts.append(_describe_call(call.get("name"), call.get("args")))
    return "\n".join(p for p in parts if p)


def estimate_tokens(messages: list[BaseMessage], chars_per_token: int = 4) -> float:
    """Rough token estimate: total characters / chars_per_token."""
    return sum(len(extract_text(m)) for m in messages) / chars_per_token


def tool_call_index(messages: list[BaseMessage]) -> dict[str, tuple[str, dict[str, Any]]]:
    """Map tool_call_id → (tool name, args) from every AIMessage in the list."""
    index: dict[str, tuple[str, dict[str, Any]]] = {}
    for msg in messages:
        if isinstance(msg, AIMessage):
            for call in msg.tool_calls:
                if call.get("id"):
                    index[call["id"]] = (call["name"], call.get("args") or {})
    return index


def is_error_message(message: BaseMessage, markers: list[str] | None = None) -> bool:
    """Classify a tool message as a failure.

    An explicit ``status="error"`` is authoritative; otherwise fall back to a
    case-insensitive substring match on the configured markers.
    """
    if not isinstance(message, ToolMessage):
        return False
    if getattr(message, "status", None) == "error":
        return True
    markers = markers if markers is not None else ["error", "failed", "exception"]
    text = extract_text(message).lower()
    return any(marker in text for marker in markers)


def format_transcript(messages: list[BaseMessage], max_chars: int = 2000) -> str:
    """Render messages as a numbered transcript for the summarizer."""

    def _clip(text: str) -> str:
        if len(text) > max_chars:
            return text[:max_chars] + "...[truncated]"
        return text

    blocks = []
    for i, msg in enumerate(messages, start=1):
        label = _ROLE_LABELS.get(msg.type, msg.type)
        blocks.append(f"[{i}] {label}:\n{_clip(extract_text(msg))}")
    return "\n\n---\n\n".join(blocks)


def _source_id(message: BaseMessage) -> str | None:
    if isinstance(message, ToolMessage) and message.tool_call_id:
        return message.tool_call_id
    return message.id


# ── Compactor ─────────────────────────────────────────────────


class ContextCompactor:
    """
    Produces a bounded message list for one model call.

    Side effects: refreshes ``AgentState.summary`` on the backend and logs
    errors found in the history to the ledger. Never raises on summarizer
    failure.
    """

    def __init__(
        self,
        config: ContextConfig,
        ledger: ErrorLedger,
        provider: BaseLLMProvider,
        backend: StateBackend,
        summary_model: str,
    ):
        self.config = config
        self.ledger = ledger
        self.provider = provider
        self.backend = backend
        self.summary_model = summary_model
        self._last_summarized_count = 0

    async def compact(
        self,
        messages: list[BaseMessage],
        max_messages: int,
        token_budget: int | None = None,
        listener: SummarizationListener | None = None,
    ) -> list[BaseMessage]:
        """Run both phases and return the message list to send to the model."""
        compressed = self.compress(messages)
        tokens = estimate_tokens(compressed, self.config.chars_per_token)
        budget = token_budget or self.config.summarize_token_threshold

        if len(compressed) <= max_messages and tokens < budget:
            return compressed

        keep_count = max_messages // 2
        kept = compressed[-keep_count:] if keep_count > 0 else []
        while kept and isinstance(kept[0], ToolMessage):
            kept = kept[1:]
        prefix = compressed[: len(compressed) - len(kept)]

        # Errors go to the ledger, never into the summary
        index = tool_call_index(messages)
        to_summarize: list[BaseMessage] = []
        for msg in prefix:
            if self._is_error(msg):
                self._log_error(msg, index, "Extracted during summarization")
            else:
                to_summarize.append(msg)

        if not to_summarize:
            return kept

        if len(compressed) == self._last_summarized_count:
            existing = self.backend.get_state().summary
            logger.debug(f"Reusing summary for unchanged count {len(compressed)}")
            if existing:
                return [self._summary_message(existing, prefix), *kept]
            return kept

        logger.debug(
            f"Compressed {len(messages)} → {len(compressed)} messages "
            f"(~{tokens:.0f} tokens); summarizing {len(prefix)}, keeping {len(kept)}"
        )
        notify = self._notifier(listener, len(prefix), len(kept))
        notify("starting")
        try:
            current = self.backend.get_state().summary or "No previous summary."
            notify("in_progress")
            transcript = format_transcript(to_summarize, self.config.transcript_max_chars)
            summary = await self.provider.asummarize(
                transcript,
                current,
                model=self.summary_model,
                max_tokens=self.config.summary_max_tokens,
            )
            self.backend.set_state(summary=summary)
            self._last_summarized_count = len(compressed)
            notify("complete")
            return [self._summary_message(summary, prefix), *kept]
        except Exception as e:
            logger.error(f"Summarization failed: {e}")
            notify("failed", str(e))
            return kept

    def compress(self, messages: list[BaseMessage]) -> list[BaseMessage]:
        """Phase 1: restorable compression of oversized messages."""
        index = tool_call_index(messages)
        result: list[BaseMessage] = []
        for msg in messages:
            if isinstance(msg, (HumanMessage, SystemMessage)):
                result.append(msg)
                continue

            if self._is_error(msg):
                self._log_error(msg, index, f"Role: {msg.type}")
                result.append(msg)
                continue

            content = extract_text(msg)
            if len(content) <= self.config.compression_threshold:
                result.append(msg)
                continue

            result.append(self._compress_message(msg, content, index))
        return result

    # ── Internals ─────────────────────────────────────────────

    def _is_error(self, message: BaseMessage) -> bool:
        return is_error_message(message, self.config.error_markers)

    def _log_error(
        self,
        message: BaseMessage,
        index: dict[str, tuple[str, dict[str, Any]]],
        context: str,
    ) -> None:
        tool_name, _ = self._tool_info(message, index)
        self.ledger.log(
            tool_name, extract_text(message), context, source_id=_source_id(message),
        )

    @staticmethod
    def _tool_info(
        message: BaseMessage, index: dict[str, tuple[str, dict[str, Any]]],
    ) -> tuple[str | None, dict[str, Any]]:
        if isinstance(message, ToolMessage):
            name, args = index.get(message.tool_call_id, (None, {}))
            return message.name or name, args
        return None, {}

    def _compress_message(
        self,
        message: BaseMessage,
        content: str,
        index: dict[str, tuple[str, dict[str, Any]]],
    ) -> BaseMessage:
        tool_name, args = self._tool_info(message, index)
        size = len(content)
        replacement: str | None = None

        path = args.get("path") or args.get("file_path")
        command = args.get("command")
        if tool_name in self.config.file_read_tools and path:
            replacement = (
                f"[File: {path} - {size} chars read. "
                f"Use {tool_name}() again if you need the full content.]"
            )
        elif tool_name in self.config.command_tools and command:
            preview = command[:50] + "..." if len(command) > 50 else command
            replacement = (
                f'[Command "{preview}" output: {size} chars. '
                f"Run again if needed.]"
            )
        elif tool_name:
            replacement = (
                f"[{tool_name} result: {size} chars. Key info preserved, "
                f"run again if full details needed.\n\n{self._digest(content)}]"
            )
        elif isinstance(message, AIMessage):
            replacement = f"[Previous response: {size} chars. {self._digest(content)}]"

        if replacement is None or len(replacement) >= size:
            return message
        return message.model_copy(update={"content": replacement})

    def _digest(self, content: str) -> str:
        """First lines, plus last lines when the content is long."""
        n = self.config.digest_lines
        width = self.config.digest_line_chars
        lines = content.split("\n")
        out = ["First lines:"]
        out.extend(f"  {line[:width]}" for line in lines[:n])
        if len(lines) > 10:
            out.append("...")
            out.append("Last lines:")
            out.extend(f"  {line[:width]}" for line in lines[-n:])
        return "\n".join(out)

    @staticmethod
    def _summary_message(summary: str, replaced: list[BaseMessage]) -> SystemMessage:
        # Never larger than the prefix it stands in for
        budget = sum(len(extract_text(m)) for m in replaced)
        text = f"{SUMMARY_HEADER}{summary}"
        if len(text) > budget:
            text = text[:budget]
        return SystemMessage(content=text)

    @staticmethod
    def _notifier(
        listener: SummarizationListener | None, summarized: int, kept: int,
    ) -> Callable[..., None]:
        def notify(status: str, error: str | None = None) -> None:
            if listener is None:
                return
            try:
                listener(SummarizationEvent(status, summarized, kept, error))
            except Exception as e:
                logger.warning(f"Summarization listener failed: {e}")

        return notify
