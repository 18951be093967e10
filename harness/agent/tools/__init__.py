"""Tool system — merge extension tool sets, filter, and wrap execution."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable, Mapping
from typing import Any, Union

from langchain_core.tools import BaseTool, StructuredTool
from langchain_core.utils.function_calling import convert_to_openai_tool
from loguru import logger

from harness.agent.hooks import HookComposer

ApprovalPolicy = Union[bool, Callable[[dict[str, Any]], Any]]
ApprovalConfig = Union[list[str], Mapping[str, ApprovalPolicy]]


def merge_tool_sets(
    tool_sets: list[Mapping[str, BaseTool]],
    custom_tools: Mapping[str, BaseTool] | None = None,
) -> dict[str, BaseTool]:
    """Merge tool maps in order; later names override earlier ones.

    Custom (caller-supplied) tools are merged last and always win.
    """
    merged: dict[str, BaseTool] = {}
    for tools in tool_sets:
        merged.update(tools)
    if custom_tools:
        merged.update(custom_tools)
    return merged


def filter_tools(
    tools: Mapping[str, BaseTool],
    allowed_tools: list[str] | None = None,
    blocked_tools: list[str] | None = None,
) -> dict[str, BaseTool]:
    """Apply blocked (always) then allowed (strict whitelist) filters."""
    blocked = set(blocked_tools or [])
    result = {name: t for name, t in tools.items() if name not in blocked}
    if allowed_tools is not None:
        result = {name: result[name] for name in allowed_tools if name in result}
    return result


def approval_policy(
    name: str, config: ApprovalConfig | None,
) -> ApprovalPolicy | None:
    """Look up the approval policy for a tool name (None = no approval)."""
    if not config:
        return None
    if isinstance(config, Mapping):
        return config.get(name)
    return True if name in config else None


async def needs_approval(tool: BaseTool, args: dict[str, Any]) -> bool:
    """Evaluate a wrapped tool's approval policy against the call arguments."""
    policy = (tool.metadata or {}).get("requires_approval")
    if policy is None or policy is False:
        return False
    if policy is True:
        return True
    decision = policy(args)
    if inspect.isawaitable(decision):
        decision = await decision
    return bool(decision)


def wrap_tool(
    tool: BaseTool,
    hooks: HookComposer,
    max_retries: int = 2,
    backoff_ms: int = 100,
    requires_approval: ApprovalPolicy | None = None,
) -> BaseTool:
    """Return a new tool that notifies hooks and retries the original.

    The original tool object is left untouched.
    """
    name = tool.name

    async def _execute(**kwargs: Any) -> Any:
        await hooks.notify_input_available(name, kwargs)
        attempt = 0
        while True:
            try:
                return await tool.ainvoke(kwargs)
            except Exception as e:
                if attempt >= max_retries:
                    raise
                logger.warning(
                    f"Tool {name} failed (attempt {attempt + 1}/{max_retries + 1}), "
                    f"retrying: {e}"
                )
                await asyncio.sleep((2 ** attempt) * backoff_ms / 1000)
                attempt += 1

    metadata = dict(tool.metadata or {})
    if requires_approval is not None:
        metadata["requires_approval"] = requires_approval
    schema = tool.args_schema if tool.args_schema is not None else tool.get_input_schema()
    return StructuredTool(
        name=name,
        description=tool.description or "",
        args_schema=schema,
        coroutine=_execute,
        return_direct=tool.return_direct,
        metadata=metadata,
    )


class ToolRegistry:
    """Resolves the tool set for a runner from middleware and custom tools.

    The resolved (wrapped) set is cached until the number of registered
    middleware changes. A filtered view requested with ``allowed_tools`` is
    built fresh and never cached.
    """

    def __init__(
        self,
        hooks: HookComposer,
        custom_tools: list[BaseTool] | Mapping[str, BaseTool] | None = None,
        approval: ApprovalConfig | None = None,
        blocked_tools: list[str] | None = None,
        max_retries: int = 2,
        backoff_ms: int = 100,
    ):
        self.hooks = hooks
        if isinstance(custom_tools, Mapping):
            self.custom_tools = dict(custom_tools)
        else:
            self.custom_tools = {t.name: t for t in custom_tools or []}
        self.approval = approval
        self.blocked_tools = blocked_tools
        self.max_retries = max_retries
        self.backoff_ms = backoff_ms
        self._cache: dict[str, BaseTool] = {}
        self._cache_version: int | None = None

    @property
    def cached(self) -> dict[str, BaseTool]:
        return dict(self._cache)

    def invalidate(self) -> None:
        self._cache = {}
        self._cache_version = None

    async def resolve(self, allowed_tools: list[str] | None = None) -> dict[str, BaseTool]:
        """Return the wrapped tool set, optionally narrowed to ``allowed_tools``."""
        version = len(self.hooks)
        if allowed_tools is None and self._cache and self._cache_version == version:
            return dict(self._cache)

        await self.hooks.wait_ready()
        merged = merge_tool_sets(
            [mw.tool_map for mw in self.hooks.middleware], self.custom_tools,
        )
        resolved = {
            name: wrap_tool(
                t,
                self.hooks,
                max_retries=self.max_retries,
                backoff_ms=self.backoff_ms,
                requires_approval=approval_policy(name, self.approval),
            )
            for name, t in merged.items()
        }
        resolved = filter_tools(resolved, blocked_tools=self.blocked_tools)

        if allowed_tools is not None:
            return filter_tools(resolved, allowed_tools=allowed_tools)

        self._cache = resolved
        self._cache_version = version
        logger.debug(f"Resolved {len(resolved)} tools from {version} middleware")
        return dict(resolved)

    def catalog(self) -> list[dict[str, Any]]:
        """Catalog of the last resolved tool set for introspection."""
        result = []
        for name in sorted(self._cache):
            t = self._cache[name]
            result.append({
                "name": name,
                "description": (t.description or "").split("\n")[0],
                "requires_approval": (t.metadata or {}).get("requires_approval")
                not in (None, False),
            })
        return result


def build_tool_definitions(tools: Mapping[str, BaseTool]) -> list[dict[str, Any]]:
    """Convert LangChain tools to OpenAI function format."""
    return [convert_to_openai_tool(t) for t in tools.values()]


__all__ = [
    "ApprovalConfig",
    "ApprovalPolicy",
    "ToolRegistry",
    "approval_policy",
    "build_tool_definitions",
    "filter_tools",
    "merge_tool_sets",
    "needs_approval",
    "wrap_tool",
]
