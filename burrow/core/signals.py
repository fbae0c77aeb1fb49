"""Signal handling for graceful cleanup and shutdown."""

from __future__ import annotations

import signal
import types


def setup_signal_handlers() -> None:
    """Convert SIGTERM into ``KeyboardInterrupt``.

    SIGINT already raises ``KeyboardInterrupt``. Routing SIGTERM the same way
    means every ``finally`` block and ``async with`` exit that closes broker
    sessions, releases the state lock or records a failed lifecycle state
    runs on both signals.
    """

    def sigterm_handler(signum: int, frame: types.FrameType | None) -> None:
        """Handle SIGTERM signal."""
        raise KeyboardInterrupt(f"received signal {signum}")

    signal.signal(signal.SIGTERM, sigterm_handler)

