"""Streaming primitives — data-part writer and the incremental result."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from langchain_core.messages import BaseMessage

from harness.agent.compaction import SummarizationEvent
from harness.agent.state import ToolError

_DONE = object()


class StreamWriter:
    """Sink for custom data parts (status, summarization progress, ...).

    Handed to every middleware's ``on_stream_ready`` hook. Parts are plain
    dicts with a ``type`` key, e.g. ``{"type": "data-status", "data": {...}}``.
    """

    def __init__(self, queue: asyncio.Queue | None = None):
        self.queue: asyncio.Queue = queue if queue is not None else asyncio.Queue()

    def write(self, part: dict[str, Any]) -> None:
        self.queue.put_nowait(part)

    def write_status(self, message: str, **data: Any) -> None:
        self.write({"type": "data-status", "data": {"message": message, **data}})

    def write_summarization(self, event: SummarizationEvent) -> None:
        data: dict[str, Any] = {
            "status": event.status,
            "messages_summarized": event.summarized_count,
            "messages_kept": event.kept_count,
        }
        if event.error:
            data["error"] = event.error
        self.write({"type": "data-summarization", "data": data})


@dataclass
class StreamResponse:
    """Final outcome of a streamed call, resolved once the loop finishes."""

    text: str
    messages: list[BaseMessage]
    tool_errors: list[ToolError] = field(default_factory=list)
    steps: int = 0
    token_count: int = 0


class StreamResult:
    """Incremental result of ``AgentRunner.stream``.

    Iterate it for events (``text-delta``, ``tool-call``, ``tool-result``,
    ``step-finish``, ``error`` and any data parts written by middleware),
    or await ``response`` for the final StreamResponse.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self.writer = StreamWriter(self._queue)
        self.response: asyncio.Future[StreamResponse] = (
            asyncio.get_running_loop().create_future()
        )
        self._task: asyncio.Task | None = None

    def emit(self, event: dict[str, Any]) -> None:
        self._queue.put_nowait(event)

    def start(self, producer) -> None:
        self._task = asyncio.create_task(producer)

    def finish(self, response: StreamResponse) -> None:
        if not self.response.done():
            self.response.set_result(response)
        self._queue.put_nowait(_DONE)

    def fail(self, error: BaseException) -> None:
        self.emit({"type": "error", "error": str(error)})
        if not self.response.done():
            self.response.set_exception(error)
        self._queue.put_nowait(_DONE)

    async def __aiter__(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            item = await self._queue.get()
            if item is _DONE:
                break
            yield item
        # Surface a failed model invocation to the consumer
        if self.response.done() and self.response.exception() is not None:
            raise self.response.exception()

    async def text_stream(self) -> AsyncIterator[str]:
        """Yield only text deltas."""
        async for event in self:
            if event.get("type") == "text-delta":
                yield event["text"]

    async def text(self) -> str:
        """Wait for completion and return the final text."""
        return (await self.response).text
