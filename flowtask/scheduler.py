"""In-memory one-shot callbacks for countdown timers."""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Protocol


class ScheduledCall(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """Runs ``callback`` once after ``delay_seconds`` unless cancelled first."""

    def call_later(self, delay_seconds: float, callback: Callable[[], None]) -> ScheduledCall: ...


class ThreadingScheduler:
    """Scheduler backed by daemon ``threading.Timer`` objects."""

    def call_later(self, delay_seconds: float, callback: Callable[[], None]) -> threading.Timer:
        handle = threading.Timer(max(0.0, delay_seconds), callback)
        handle.daemon = True
        handle.start()
        return handle
