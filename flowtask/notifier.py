"""Outbound events from the timer engine.

The engine publishes each event once; fan-out to several surfaces is the
notifier's business.
"""

from __future__ import annotations

from typing import Protocol

from flowtask.models import ReminderSnapshot


class Notifier(Protocol):
    def state_changed(self) -> None:
        """Tasks or timers changed; consumers should re-fetch."""
        ...

    def timer_ended(self, task_id: int, snapshot: ReminderSnapshot) -> None:
        """A countdown elapsed (or a nag / idle / hook alert fired)."""
        ...


class NullNotifier:
    """Drops every event."""

    def state_changed(self) -> None:
        return None

    def timer_ended(self, task_id: int, snapshot: ReminderSnapshot) -> None:
        return None


class ConsoleNotifier:
    """Prints reminders to the terminal with a bell."""

    def __init__(self, bell: bool = True) -> None:
        self.bell = bell

    def state_changed(self) -> None:
        return None

    def timer_ended(self, task_id: int, snapshot: ReminderSnapshot) -> None:
        from flowtask import display

        if self.bell:
            display.console.print("\a", end="")
        display.print_reminder(snapshot)
