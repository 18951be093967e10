"""Bundled middleware — workspace filesystem and shell tools."""

from harness.middleware.filesystem import filesystem_middleware
from harness.middleware.shell import shell_middleware

__all__ = ["filesystem_middleware", "shell_middleware"]
