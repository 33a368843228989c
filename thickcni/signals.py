"""Turns SIGINT and SIGTERM into a stop event for the daemon."""

from __future__ import annotations

import os
import signal
import threading

_setup_lock = threading.Lock()
_setup_done = threading.Event()


def setup_signal_handler() -> threading.Event:
    """Return an event set on the first SIGINT or SIGTERM.

    A second signal exits the process with status 1. Calling this twice
    raises RuntimeError.
    """
    with _setup_lock:
        if _setup_done.is_set():
            raise RuntimeError("signal handler has already been set up")
        _setup_done.set()

    stop = threading.Event()

    def _handle(signum: int, frame: object) -> None:
        if stop.is_set():
            os._exit(1)
        stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _handle)
    return stop