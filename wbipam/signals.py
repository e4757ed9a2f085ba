"""Shutdown on SIGINT or SIGTERM."""

from __future__ import annotations

import os
import signal
import threading
from types import FrameType

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)

_lock = threading.Lock()
_installed = False


def setup_signal_handler() -> threading.Event:
    """Return an event set on the first shutdown signal; a second one exits with status 1.

    Must be called from the main thread, and only once; a second call raises RuntimeError.
    """
    global _installed
    with _lock:
        if _installed:
            raise RuntimeError("signal handler already set up")
        _installed = True

    stop = threading.Event()

    def handle(signum: int, frame: FrameType | None) -> None:
        if stop.is_set():
            os._exit(1)
        stop.set()

    for sig in SHUTDOWN_SIGNALS:
        signal.signal(sig, handle)
    return stop