"""Logging configuration for CLI output."""

from burrow.logging.formatters import LevelFormatter

__all__ = ["LevelFormatter"]
