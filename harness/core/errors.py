"""Exception hierarchy for the engine."""

from __future__ import annotations


class HarnessError(Exception):
    """Base class for engine errors."""


class SummarizationError(HarnessError):
    """The summarization sub-call produced no usable summary."""


class AgentAborted(HarnessError):
    """The caller's abort signal fired before the model produced a response."""
