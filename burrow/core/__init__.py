"""Core burrow functionality."""

from __future__ import annotations

from burrow.core.signals import setup_signal_handlers

__all__ = ["setup_signal_handlers"]
