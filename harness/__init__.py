"""Harness — agent execution & context-management engine."""

__version__ = "0.1.0"
