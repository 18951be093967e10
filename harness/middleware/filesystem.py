"""Filesystem middleware — read, write, edit, list inside the workspace."""

from __future__ import annotations

from pathlib import Path

from langchain_core.tools import tool

from harness.agent.hooks import Middleware
from harness.core.config.schema import Config

MAX_READ_CHARS = 50_000

PROMPT_SECTION = """## Filesystem
You can work with files inside the workspace ({workspace}) using
read_file, write_file, edit_file and list_dir. Paths are relative to the
workspace. Large file reads may later be replaced by a short reference;
call read_file again when you need the full content."""


def make_filesystem_tools(workspace: Path) -> list:
    """Create filesystem tools sandboxed to the workspace directory.

    Failures raise, so the engine records them as tool errors.
    """
    workspace = workspace.resolve()

    def _resolve(path: str) -> Path:
        """Resolve relative to the workspace and reject escapes."""
        p = Path(path).expanduser()
        resolved = (p if p.is_absolute() else workspace / p).resolve()
        if resolved != workspace and not resolved.is_relative_to(workspace):
            raise PermissionError(
                f"Access denied: path '{path}' is outside workspace '{workspace}'"
            )
        return resolved

    @tool
    def read_file(path: str) -> str:
        """Read a text file from the workspace."""
        p = _resolve(path)
        if not p.is_file():
            raise FileNotFoundError(f"File not found: {path}")
        content = p.read_text(encoding="utf-8")
        if len(content) > MAX_READ_CHARS:
            return content[:MAX_READ_CHARS] + f"\n\n... truncated ({len(content)} chars total)"
        return content

    @tool
    def write_file(path: str, content: str) -> str:
        """Write content to a file in the workspace. Creates parent directories if needed."""
        p = _resolve(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(content, encoding="utf-8")
        return f"Written {len(content)} chars to {path}"

    @tool
    def edit_file(path: str, old_text: str, new_text: str) -> str:
        """Replace exact text in a file. Fails if old_text is missing or not unique."""
        p = _resolve(path)
        if not p.is_file():
            raise FileNotFoundError(f"File not found: {path}")
        content = p.read_text(encoding="utf-8")
        count = content.count(old_text)
        if count == 0:
            raise ValueError(f"old_text not found in {path}")
        if count > 1:
            raise ValueError(
                f"old_text found {count} times in {path}; provide more context to make it unique"
            )
        p.write_text(content.replace(old_text, new_text, 1), encoding="utf-8")
        return f"Edit applied to {path}"

    @tool
    def list_dir(path: str = ".") -> str:
        """List contents of a directory in the workspace."""
        p = _resolve(path)
        if not p.is_dir():
            raise NotADirectoryError(f"Directory not found: {path}")
        entries = sorted(p.iterdir(), key=lambda e: (not e.is_dir(), e.name))
        lines = []
        for entry in entries:
            prefix = "[DIR]" if entry.is_dir() else f"[{_human_size(entry.stat().st_size)}]"
            lines.append(f"  {prefix}  {entry.name}")
        return f"{p}:\n" + "\n".join(lines) if lines else f"{p}: (empty)"

    return [read_file, write_file, edit_file, list_dir]


def filesystem_middleware(config: Config) -> Middleware:
    """Workspace file tools plus a prompt section describing them."""
    workspace = config.workspace_path
    workspace.mkdir(parents=True, exist_ok=True)

    def modify_system_prompt(prompt: str) -> str:
        return f"{prompt}\n\n{PROMPT_SECTION.format(workspace=workspace)}"

    return Middleware(
        name="filesystem",
        tools=make_filesystem_tools(workspace),
        modify_system_prompt=modify_system_prompt,
    )


def _human_size(size: float) -> str:
    """Convert bytes to human-readable size."""
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024:
            return f"{size:.0f}{unit}" if unit == "B" else f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}TB"
