"""Shell middleware — `bash` command execution with safety guards."""

from __future__ import annotations

import asyncio
import re
from pathlib import Path

from langchain_core.tools import tool

from harness.agent.hooks import Middleware
from harness.core.config.schema import Config

# Block destructive commands
DENY_PATTERNS: list[re.Pattern] = [
    re.compile(r"\brm\s+(-[rR]|-[rR]?f|-f?[rR])\b"),  # rm -rf, rm -r, rm -f
    re.compile(r"\bdel\s+/[fFqQ]\b"),  # Windows del /f /q
    re.compile(r"\brmdir\s+/[sS]\b"),  # Windows rmdir /s
    re.compile(r"\b(format|mkfs|diskpart)\b"),  # Disk format
    re.compile(r"\bdd\s+if="),  # dd disk copy
    re.compile(r">\s*/dev/sd"),  # Write to disk device
    re.compile(r"\b(shutdown|reboot|poweroff|halt)\b"),  # Power commands
    re.compile(r":\(\)\s*\{.*\}"),  # Fork bomb
]

MAX_OUTPUT = 10_000


def is_blocked(command: str) -> bool:
    return any(pattern.search(command) for pattern in DENY_PATTERNS)


def make_shell_tools(config: Config) -> list:
    """Create the bash tool. Blocked commands and timeouts raise."""
    timeout = config.tools.shell.timeout
    workspace = config.workspace_path
    restrict = config.tools.shell.restrict_to_workspace

    @tool
    async def bash(command: str, working_dir: str | None = None) -> str:
        """Execute a shell command. Dangerous commands (rm -rf, format, etc.) are blocked."""
        if is_blocked(command):
            raise PermissionError(f"Command blocked by safety filter: {command}")

        cwd = working_dir or str(workspace)
        if restrict and working_dir is not None:
            if not Path(working_dir).resolve().is_relative_to(workspace):
                raise PermissionError(
                    f"Access denied: working_dir '{working_dir}' is outside workspace"
                )

        proc = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise TimeoutError(f"Command timed out after {timeout}s: {command}")

        parts = []
        if stdout:
            parts.append(stdout.decode("utf-8", errors="replace"))
        if stderr:
            parts.append(f"[stderr]\n{stderr.decode('utf-8', errors='replace')}")

        output = "\n".join(parts)
        if len(output) > MAX_OUTPUT:
            output = output[:MAX_OUTPUT] + f"\n\n... truncated ({len(output)} chars)"

        exit_code = proc.returncode
        return f"[exit code: {exit_code}]\n{output}" if output else f"[exit code: {exit_code}]"

    return [bash]


def shell_middleware(config: Config) -> Middleware:
    """The bash tool, registered as an extension."""
    config.workspace_path.mkdir(parents=True, exist_ok=True)
    return Middleware(name="shell", tools=make_shell_tools(config))
