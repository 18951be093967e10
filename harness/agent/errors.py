"""ErrorLedger — tool/step failures tracked outside the message history.

Entries are never folded into the rolling summary. They are rendered into
the system prompt on every call so the model keeps seeing its own recent
mistakes even after the messages that carried them have been compacted away.
"""

from __future__ import annotations

import time
from collections.abc import Callable

from loguru import logger
from pydantic import BaseModel

from harness.core.config.schema import ErrorLedgerConfig


class ErrorEntry(BaseModel):
    """A deduplicated failure record."""

    timestamp: float
    tool_name: str | None = None
    error: str
    context: str | None = None
    occurrence_count: int = 1


class ErrorLedger:
    """Capped, occurrence-counted error log owned by one runner instance.

    Parameters
    ----------
    config : ErrorLedgerConfig, optional
        Dedup window, capacity and how many entries ``recent()`` returns.
    clock : callable, optional
        Returns the current time in seconds. Injected by tests.
    """

    def __init__(
        self,
        config: ErrorLedgerConfig | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or ErrorLedgerConfig()
        self._clock = clock
        self._entries: list[ErrorEntry] = []
        self._sources: dict[str, None] = {}

    def log(
        self,
        tool_name: str | None,
        error: str,
        context: str | None = None,
        source_id: str | None = None,
    ) -> ErrorEntry | None:
        """Record a failure, incrementing an identical recent entry if one exists.

        ``source_id`` identifies the message the error came from (usually a
        tool call id). A source that was already logged is ignored, so the
        same tool message seen by several compaction passes counts once.
        """
        if source_id:
            if source_id in self._sources:
                return None
            self._sources[source_id] = None
            # Bounded like the entries themselves
            while len(self._sources) > self.config.max_entries * 10:
                self._sources.pop(next(iter(self._sources)))

        now = self._clock()
        existing = self._find_recent(tool_name, error, now)
        if existing is not None:
            existing.occurrence_count += 1
            existing.timestamp = now
            entry = existing
        else:
            entry = ErrorEntry(
                timestamp=now, tool_name=tool_name, error=error, context=context,
            )
            self._entries.append(entry)

        if len(self._entries) > self.config.max_entries:
            self._entries = self._entries[-self.config.max_entries:]

        logger.debug(
            f"Error logged: tool={tool_name or '?'}, "
            f"count={entry.occurrence_count}, error={error[:80]!r}"
        )
        return entry

    def recent(self, n: int | None = None) -> list[ErrorEntry]:
        """Return the ``n`` most recent entries, most repeated first."""
        n = self.config.max_recent if n is None else n
        if n <= 0:
            return []
        latest = sorted(self._entries, key=lambda e: e.timestamp)[-n:]
        return sorted(
            latest, key=lambda e: (e.occurrence_count, e.timestamp), reverse=True,
        )

    def format(self, entries: list[ErrorEntry] | None = None) -> str:
        """Render entries as a system-prompt block. Empty string if none."""
        entries = self.recent() if entries is None else entries
        if not entries:
            return ""

        lines = [
            "## Recent Errors (Do NOT Repeat These)",
            "",
            "The following errors occurred recently. "
            "Learn from them and avoid making the same mistakes.",
            "",
        ]
        for entry in entries:
            repeat = f" (×{entry.occurrence_count})" if entry.occurrence_count > 1 else ""
            lines.append(f"### {entry.tool_name or 'Unknown'}{repeat}")
            lines.append(f"```\n{entry.error}\n```")
            if entry.context:
                lines.append(f"**Context**: {entry.context}")
            lines.append("")
        lines.append("---")
        return "\n".join(lines)

    @property
    def entries(self) -> list[ErrorEntry]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()
        self._sources.clear()

    def _find_recent(
        self, tool_name: str | None, error: str, now: float,
    ) -> ErrorEntry | None:
        window = self.config.dedup_window_s
        for entry in reversed(self._entries):
            if (
                entry.tool_name == tool_name
                and entry.error == error
                and now - entry.timestamp < window
            ):
                return entry
        return None

    def __len__(self) -> int:
        return len(self._entries)

    def __bool__(self) -> bool:
        return bool(self._entries)
