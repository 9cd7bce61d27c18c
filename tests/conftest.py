"""Shared fixtures: a temporary database and deterministic time/scheduling."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

import pytest

from flowtask import db
from flowtask.models import ReminderSnapshot
from flowtask.timer import TimerEngine

# A Monday at noon: outside the default 23:00-08:00 quiet hours.
T0 = datetime(2026, 3, 2, 12, 0, 0)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class ManualCall:
    def __init__(self, due: datetime, callback: Callable[[], None]) -> None:
        self.due = due
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Scheduler whose callbacks fire only when ``advance`` passes their due time."""

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.calls: list[ManualCall] = []

    def call_later(self, delay_seconds: float, callback: Callable[[], None]) -> ManualCall:
        call = ManualCall(self.clock() + timedelta(seconds=delay_seconds), callback)
        self.calls.append(call)
        return call

    @property
    def pending(self) -> list[ManualCall]:
        return [c for c in self.calls if not c.cancelled and not c.fired]

    def advance(self, seconds: float) -> None:
        target = self.clock.now + timedelta(seconds=seconds)
        while True:
            due = [c for c in self.pending if c.due <= target]
            if not due:
                break
            call = min(due, key=lambda c: c.due)
            self.clock.now = max(self.clock.now, call.due)
            call.fired = True
            call.callback()
        self.clock.now = target


class RecordingNotifier:
    """Collects every event the engine publishes."""

    def __init__(self) -> None:
        self.state_changes = 0
        self.ended: list[tuple[int, ReminderSnapshot]] = []

    def state_changed(self) -> None:
        self.state_changes += 1

    def timer_ended(self, task_id: int, snapshot: ReminderSnapshot) -> None:
        self.ended.append((task_id, snapshot))

    @property
    def ended_ids(self) -> list[int]:
        return [task_id for task_id, _ in self.ended]


@pytest.fixture()
def conn(tmp_path: Path):
    """Provide a fresh database for each test."""
    connection = db.get_connection(db_path=tmp_path / "test.db")
    yield connection
    connection.close()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def scheduler(clock: FakeClock) -> ManualScheduler:
    return ManualScheduler(clock)


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def engine(conn, notifier, scheduler, clock) -> TimerEngine:
    return TimerEngine(conn, notifier, scheduler=scheduler, clock=clock)


@pytest.fixture()
def restart(conn, clock):
    """Build a fresh engine on the same database, as after a process restart."""

    def _restart(
        notifier: Optional[RecordingNotifier] = None,
    ) -> tuple[TimerEngine, RecordingNotifier, ManualScheduler]:
        notifier = notifier or RecordingNotifier()
        scheduler = ManualScheduler(clock)
        return TimerEngine(conn, notifier, scheduler=scheduler, clock=clock), notifier, scheduler

    return _restart
