"""Timer engine: task state machine, countdown scheduling and reminder nagging.

The engine is the single owner of the in-memory countdown schedule. Every
operation runs under one re-entrant lock, writes the database in a single
transaction and only touches the schedule once that transaction committed.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, Optional, Union

from pydantic import ValidationError

from flowtask import db
from flowtask.config import load_engine_settings
from flowtask.exceptions import (
    InvalidInputError,
    InvariantViolationError,
    ProjectNotFoundError,
    ResourceNotFoundError,
    TaskNotFoundError,
    TimerNotFoundError,
)
from flowtask.models import (
    GPU_IDLE_KIND,
    HOOK_KIND,
    MIN_SESSION_SECONDS,
    EngineSettings,
    HistoryEntry,
    HistoryEntryCreate,
    Project,
    ProjectCreate,
    ProjectUpdate,
    ReminderSnapshot,
    Resource,
    Task,
    TaskCreate,
    TaskKind,
    TaskStatus,
    TaskUpdate,
    Timer,
    TimerKind,
    TimerView,
)
from flowtask.notifier import Notifier, NullNotifier
from flowtask.scheduler import ScheduledCall, Scheduler, ThreadingScheduler

log = logging.getLogger(__name__)

Clock = Callable[[], datetime]


@dataclass
class _PendingCountdown:
    timer_id: int
    target: datetime
    call: Optional[ScheduledCall] = None


class TimerEngine:
    """Tracks focus, wait and training timers for tasks stored in SQLite."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        notifier: Optional[Notifier] = None,
        *,
        scheduler: Optional[Scheduler] = None,
        clock: Clock = datetime.now,
        reconcile: bool = True,
    ) -> None:
        self._conn = conn
        self._notifier: Notifier = notifier or NullNotifier()
        self._scheduler: Scheduler = scheduler or ThreadingScheduler()
        self._clock = clock
        self._lock = threading.RLock()
        self._pending: dict[int, _PendingCountdown] = {}
        # task id -> last overdue minute a nag fired for
        self._nag_checkpoints: dict[int, int] = {}
        # resource id -> (idle_since, last idle minute notified)
        self._idle_checkpoints: dict[int, tuple[datetime, int]] = {}
        # task id -> (timer id, target) last announced
        self._announced: dict[int, tuple[int, datetime]] = {}
        self._stop_event = threading.Event()
        self._sweep_thread: Optional[threading.Thread] = None
        if reconcile:
            self.reconcile()

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _emit_state_changed(self) -> None:
        try:
            self._notifier.state_changed()
        except Exception:
            log.exception("Notifier failed to handle state-changed")

    def _emit_timer_ended(self, task_id: int, snapshot: ReminderSnapshot) -> None:
        try:
            self._notifier.timer_ended(task_id, snapshot)
        except Exception:
            log.exception("Notifier failed to handle timer-ended for %s", task_id)

    # ------------------------------------------------------------------
    # In-memory schedule
    # ------------------------------------------------------------------

    def _schedule(self, timer: Timer, now: datetime) -> None:
        """Arm the in-memory callback for a countdown timer row."""
        if timer.target_timestamp is None:
            log.warning("Countdown timer %s has no target; not scheduling", timer.id)
            return
        task_id = timer.task_id
        delay_seconds = max(0.0, (timer.target_timestamp - now).total_seconds())
        self._cancel_schedule(task_id)
        pending = _PendingCountdown(timer_id=timer.id, target=timer.target_timestamp)
        self._pending[task_id] = pending
        pending.call = self._scheduler.call_later(
            delay_seconds, lambda: self._on_countdown(task_id, pending)
        )
        log.debug("Scheduled task %s (timer %s) in %.0fs", task_id, timer.id, delay_seconds)

    def _cancel_schedule(self, task_id: int) -> None:
        pending = self._pending.pop(task_id, None)
        if pending is not None and pending.call is not None:
            pending.call.cancel()

    def _forget(self, task_id: int) -> None:
        """Drop every transient record kept for a task."""
        self._cancel_schedule(task_id)
        self._nag_checkpoints.pop(task_id, None)
        self._announced.pop(task_id, None)

    def _on_countdown(self, task_id: int, pending: _PendingCountdown) -> None:
        with self._lock:
            if self._pending.get(task_id) is not pending:
                log.debug("Skipping stale countdown for task %s", task_id)
                return
            try:
                self._expire(task_id, expected_timer_id=pending.timer_id)
            except Exception:
                log.exception("Countdown expiration failed for task %s", task_id)

    def is_scheduled(self, task_id: int) -> bool:
        with self._lock:
            return task_id in self._pending

    def cancel_all(self) -> None:
        """Cancel every in-memory countdown (persisted timers are untouched)."""
        with self._lock:
            for pending in self._pending.values():
                if pending.call is not None:
                    pending.call.cancel()
            self._pending.clear()

    # ------------------------------------------------------------------
    # Store helpers (run inside a transaction)
    # ------------------------------------------------------------------

    def _require_task(self, task_id: int) -> Task:
        task = db.get_task(self._conn, task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def _release_resource(self, resource_id: int, now: datetime) -> Optional[Resource]:
        resource = db.get_resource(self._conn, resource_id)
        if resource is None:
            return None
        if resource.idle_since is None:
            db.set_resource_idle(self._conn, resource_id, now)
            log.info("GPU %s (%s) released", resource.id, resource.name)
        return resource

    def _discard_timers(self, task: Task, now: datetime) -> None:
        """Drop a task's timers and give back any resource it holds."""
        db.delete_timers(self._conn, task.id)
        if task.resource_id is not None:
            self._release_resource(task.resource_id, now)
            db.update_task(self._conn, task.id, resource_id=None)

    def _finalize_focus(self, timer: Timer, now: datetime) -> None:
        task = db.get_task(self._conn, timer.task_id)
        if task is not None and timer.started_at is not None:
            elapsed = int((now - timer.started_at).total_seconds())
            status = TaskStatus.QUEUED if task.status is TaskStatus.ACTIVE else task.status
            if elapsed >= MIN_SESSION_SECONDS:
                db.update_task(
                    self._conn,
                    task.id,
                    total_duration_seconds=task.total_duration_seconds + elapsed,
                    status=status,
                )
                db.append_history(
                    self._conn,
                    HistoryEntryCreate(
                        task_id=task.id,
                        title=task.title,
                        kind=TimerKind.FOCUS,
                        start_time=timer.started_at,
                        end_time=now,
                    ),
                )
                log.info("Focus on task %s ended after %ss", task.id, elapsed)
            else:
                db.update_task(self._conn, task.id, status=status)
                log.info("Discarding short focus session: %ss for task %s", elapsed, task.id)
        db.delete_timer(self._conn, timer.id)

    def _finalize_focus_sessions(self, now: datetime) -> int:
        timers = db.list_timers(self._conn, kind=TimerKind.FOCUS)
        for timer in timers:
            self._finalize_focus(timer, now)
        return len(timers)

    def _pause_training(self, task: Task, now: datetime) -> None:
        if task.resource_id is not None:
            self._release_resource(task.resource_id, now)
        db.delete_timers(self._conn, task.id)
        db.update_task(self._conn, task.id, status=TaskStatus.QUEUED, resource_id=None)
        log.info("Training task %s paused and returned to the queue", task.id)

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def create_task(
        self,
        title: str,
        kind: TaskKind = TaskKind.STANDARD,
        tag: Optional[str] = None,
        project_id: Optional[int] = None,
        parent_id: Optional[int] = None,
        estimated_duration_minutes: Optional[int] = None,
    ) -> Task:
        try:
            task_in = TaskCreate(
                title=title.strip(),
                kind=kind,
                tag=tag,
                estimated_duration_minutes=estimated_duration_minutes,
                project_id=project_id,
                parent_id=parent_id,
            )
        except ValidationError as exc:
            raise InvalidInputError(f"Invalid task: {exc.errors()[0]['msg']}") from exc
        with self._lock:
            with db.transaction(self._conn):
                task = db.add_task(self._conn, task_in, now=self._clock())
            self._emit_state_changed()
            return task

    def update_task(self, task_id: int, changes: Union[TaskUpdate, dict[str, Any]]) -> Task:
        """Apply user edits. Re-parenting under a descendant is rejected."""
        if isinstance(changes, dict):
            try:
                changes = TaskUpdate(**changes)
            except ValidationError as exc:
                raise InvalidInputError(f"Invalid update: {exc.errors()[0]['msg']}") from exc
        fields = changes.model_dump(exclude_unset=True)
        with self._lock:
            with db.transaction(self._conn):
                task = db.update_task(self._conn, task_id, **fields)
                if task is None:
                    raise TaskNotFoundError(task_id)
            self._emit_state_changed()
            return task

    def delete_task(self, task_id: int) -> None:
        with self._lock:
            now = self._clock()
            with db.transaction(self._conn):
                task = self._require_task(task_id)
                if task.resource_id is not None:
                    self._release_resource(task.resource_id, now)
                db.delete_task(self._conn, task_id)
            self._forget(task_id)
            log.info("Task %s deleted", task_id)
            self._emit_state_changed()

    def delete_all_tasks(self) -> int:
        """Wipe every task and the focus history; GPUs are kept and freed."""
        with self._lock:
            now = self._clock()
            with db.transaction(self._conn):
                for resource in db.list_resources(self._conn):
                    if resource.idle_since is None:
                        db.set_resource_idle(self._conn, resource.id, now)
                removed = db.delete_all_tasks(self._conn)
            self.cancel_all()
            self._nag_checkpoints.clear()
            self._announced.clear()
            self._idle_checkpoints.clear()
            log.warning("Deleted all %d tasks", removed)
            self._emit_state_changed()
            return removed

    def append_memo(self, task_id: int, content: str) -> Task:
        """Add a line of context to a task, e.g. where you left off."""
        content = content.strip()
        if not content:
            raise InvalidInputError("Memo is empty")
        with self._lock:
            with db.transaction(self._conn):
                task = db.append_memo(self._conn, task_id, content)
                if task is None:
                    raise TaskNotFoundError(task_id)
            self._emit_state_changed()
            return task

    def suggestions(self, max_minutes: Optional[int] = None, limit: int = 5) -> list[Task]:
        """Queued tasks whose estimate fits the time available."""
        if max_minutes is not None and max_minutes <= 0:
            raise InvalidInputError("Available time must be positive")
        with self._lock:
            return db.list_suggestions(self._conn, max_minutes=max_minutes, limit=limit)

    def get_task(self, task_id: int) -> Optional[Task]:
        with self._lock:
            return db.get_task(self._conn, task_id)

    def list_tasks(
        self, status: Optional[TaskStatus] = None, kind: Optional[TaskKind] = None
    ) -> list[Task]:
        with self._lock:
            return db.list_tasks(self._conn, status=status, kind=kind)

    def current_focus(self) -> Optional[Task]:
        """The task with the running focus stopwatch, if any."""
        with self._lock:
            timers = db.list_timers(self._conn, kind=TimerKind.FOCUS)
            if not timers:
                return None
            return db.get_task(self._conn, timers[-1].task_id)

    def timer_views(self) -> list[TimerView]:
        """Every timer with elapsed / remaining time computed now."""
        with self._lock:
            now = self._clock()
            views: list[TimerView] = []
            for timer in db.list_timers(self._conn):
                task = db.get_task(self._conn, timer.task_id)
                if task is None:
                    continue
                view = TimerView(
                    task_id=task.id,
                    title=task.title,
                    kind=timer.kind,
                    started_at=timer.started_at,
                    target_timestamp=timer.target_timestamp,
                )
                if timer.kind is TimerKind.FOCUS:
                    running = 0
                    if timer.started_at is not None:
                        running = int((now - timer.started_at).total_seconds())
                    view.elapsed_seconds = task.total_duration_seconds + running
                elif timer.target_timestamp is not None:
                    view.remaining_seconds = int((timer.target_timestamp - now).total_seconds())
                views.append(view)
            return views

    # ------------------------------------------------------------------
    # Focus
    # ------------------------------------------------------------------

    def start_focus(self, task_id: int) -> Task:
        """Make ``task_id`` the single focused task."""
        with self._lock:
            now = self._clock()
            with db.transaction(self._conn):
                task = self._require_task(task_id)
                self._finalize_focus_sessions(now)
                for other in db.list_tasks(self._conn, status=TaskStatus.ACTIVE):
                    if other.id == task_id:
                        continue
                    timer = db.get_timer(self._conn, other.id)
                    if timer is not None and timer.kind is TimerKind.TRAINING:
                        continue
                    log.warning("Forcing stray active task %s back to queued", other.id)
                    db.update_task(self._conn, other.id, status=TaskStatus.QUEUED)
                self._discard_timers(task, now)
                db.add_timer(self._conn, task_id, TimerKind.FOCUS, started_at=now)
                db.update_task(self._conn, task_id, status=TaskStatus.ACTIVE)
                task = self._require_task(task_id)
            self._forget(task_id)
            log.info("Focus started on task %s", task_id)
            self._emit_state_changed()
            return task

    def stop_focus(self) -> int:
        """Close every running focus session. Returns how many were closed."""
        with self._lock:
            now = self._clock()
            with db.transaction(self._conn):
                stopped = self._finalize_focus_sessions(now)
            if stopped:
                self._emit_state_changed()
            return stopped

    # ------------------------------------------------------------------
    # Wait countdowns
    # ------------------------------------------------------------------

    def start_wait(self, task_id: int, duration_seconds: int) -> Timer:
        if duration_seconds <= 0:
            raise InvalidInputError("Wait duration must be positive")
        with self._lock:
            now = self._clock()
            with db.transaction(self._conn):
                task = self._require_task(task_id)
                self._discard_timers(task, now)
                timer = db.add_timer(
                    self._conn,
                    task_id,
                    TimerKind.WAIT,
                    started_at=now,
                    target_timestamp=now + timedelta(seconds=duration_seconds),
                    original_duration_seconds=duration_seconds,
                )
                db.update_task(self._conn, task_id, status=TaskStatus.WAITING)
            self._forget(task_id)
            self._schedule(timer, now)
            log.info("Task %s waiting for %ss", task_id, duration_seconds)
            self._emit_state_changed()
            return timer

    def cancel_wait(self, task_id: int) -> None:
        """Drop the countdown; ephemeral tasks are deleted, others requeued."""
        with self._lock:
            now = self._clock()
            with db.transaction(self._conn):
                task = self._require_task(task_id)
                db.delete_timers(self._conn, task_id)
                if task.kind.is_ephemeral:
                    if task.resource_id is not None:
                        self._release_resource(task.resource_id, now)
                    db.delete_task(self._conn, task_id)
                else:
                    db.update_task(self._conn, task_id, status=TaskStatus.QUEUED)
            self._forget(task_id)
            if task.kind.is_ephemeral:
                log.info("Cancelled %s task %s and removed it", task.kind.value, task_id)
            else:
                log.info("Cancelled wait on task %s", task_id)
            self._emit_state_changed()

    def snooze_reminder(self, task_id: int, minutes: int) -> Timer:
        """Push a countdown's target ``minutes`` into the future."""
        if minutes <= 0:
            raise InvalidInputError("Snooze must be at least one minute")
        with self._lock:
            now = self._clock()
            with db.transaction(self._conn):
                self._require_task(task_id)
                timer = db.get_timer(self._conn, task_id)
                if timer is None or not timer.kind.is_countdown:
                    raise TimerNotFoundError(task_id)
                timer = db.set_timer_target(self._conn, task_id, now + timedelta(minutes=minutes))
                if timer is None:
                    raise TimerNotFoundError(task_id)
            self._forget(task_id)
            self._schedule(timer, now)
            log.info("Task %s snoozed for %s min", task_id, minutes)
            self._emit_state_changed()
            return timer

    # ------------------------------------------------------------------
    # Expiration
    # ------------------------------------------------------------------

    def handle_expiration(self, task_id: int) -> None:
        """Announce that a task's countdown reached zero."""
        with self._lock:
            self._expire(task_id)

    def _expire(self, task_id: int, expected_timer_id: Optional[int] = None) -> bool:
        """Announce a countdown. Returns False when there was nothing to announce."""
        self._cancel_schedule(task_id)
        now = self._clock()
        resource: Optional[Resource] = None
        with db.transaction(self._conn):
            task = db.get_task(self._conn, task_id)
            if task is None:
                log.info("Ignoring expiration for vanished task %s", task_id)
                return False
            timer = db.get_timer(self._conn, task_id)
            if expected_timer_id is not None:
                if timer is None or timer.id != expected_timer_id:
                    log.info("Ignoring stale expiration for task %s", task_id)
                    return False
                if timer.target_timestamp is not None and timer.target_timestamp > now:
                    log.debug("Countdown for task %s moved to %s", task_id, timer.target_timestamp)
                    self._schedule(timer, now)
                    return False
            if task.kind is TaskKind.TRAINING and task.resource_id is not None:
                resource = self._release_resource(task.resource_id, now)

        if timer is not None and timer.target_timestamp is not None:
            self._announced[task_id] = (timer.id, timer.target_timestamp)
        snapshot = ReminderSnapshot.from_task(task)
        if resource is not None:
            snapshot.resource_name = resource.name
        log.info("Timer ended for task %s (%s)", task_id, task.title)
        self._emit_timer_ended(task_id, snapshot)
        self._emit_state_changed()
        return True

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def start_training(self, task_id: int, resource_id: int, duration_seconds: int) -> Timer:
        """Run a training countdown on a GPU, evicting its current occupant."""
        if duration_seconds <= 0:
            raise InvalidInputError("Training duration must be positive")
        with self._lock:
            now = self._clock()
            preempted: list[int] = []
            with db.transaction(self._conn):
                task = self._require_task(task_id)
                if task.kind is not TaskKind.TRAINING:
                    raise InvariantViolationError(
                        f"Task {task_id} is a {task.kind.value} task; only training tasks use GPUs"
                    )
                if db.get_resource(self._conn, resource_id) is None:
                    raise ResourceNotFoundError(resource_id)
                incumbents = db.list_tasks(
                    self._conn, status=TaskStatus.ACTIVE, resource_id=resource_id
                )
                for incumbent in incumbents:
                    if incumbent.id == task_id:
                        continue
                    log.info("GPU %s taken by task %s; pausing task %s", resource_id, task_id, incumbent.id)
                    self._pause_training(incumbent, now)
                    preempted.append(incumbent.id)
                self._discard_timers(task, now)
                timer = db.add_timer(
                    self._conn,
                    task_id,
                    TimerKind.TRAINING,
                    started_at=now,
                    target_timestamp=now + timedelta(seconds=duration_seconds),
                    original_duration_seconds=duration_seconds,
                )
                db.set_resource_idle(self._conn, resource_id, None)
                db.update_task(
                    self._conn, task_id, status=TaskStatus.ACTIVE, resource_id=resource_id
                )
            for other in preempted:
                self._forget(other)
            self._forget(task_id)
            self._idle_checkpoints.pop(resource_id, None)
            self._schedule(timer, now)
            log.info("Training task %s started on GPU %s for %ss", task_id, resource_id, duration_seconds)
            self._emit_state_changed()
            return timer

    def pause_training(self, task_id: int) -> None:
        """Free the task's GPU and send it back to the queue; progress is dropped."""
        with self._lock:
            now = self._clock()
            with db.transaction(self._conn):
                self._pause_training(self._require_task(task_id), now)
            self._forget(task_id)
            self._emit_state_changed()

    def stop_training(self, task_id: int, force_complete: bool = False) -> Optional[Task]:
        """Stop a training task.

        A finished run (countdown elapsed, or ``force_complete``) archives the
        task and returns the new "Process ..." follow-up task; an early stop
        requeues it and returns None.
        """
        with self._lock:
            now = self._clock()
            follow_up: Optional[Task] = None
            with db.transaction(self._conn):
                task = self._require_task(task_id)
                timer = db.get_timer(self._conn, task_id)
                finished = force_complete or (
                    timer is not None
                    and timer.target_timestamp is not None
                    and timer.target_timestamp <= now
                )
                if task.resource_id is not None:
                    self._release_resource(task.resource_id, now)
                db.delete_timers(self._conn, task_id)
                if finished:
                    db.update_task(
                        self._conn, task_id, status=TaskStatus.ARCHIVED, resource_id=None
                    )
                    follow_up = db.add_task(
                        self._conn,
                        TaskCreate(
                            title=f"Process {task.title}"[:500],
                            kind=TaskKind.STANDARD,
                            project_id=task.project_id,
                        ),
                        now=now,
                    )
                else:
                    db.update_task(
                        self._conn, task_id, status=TaskStatus.QUEUED, resource_id=None
                    )
            self._forget(task_id)
            if follow_up is not None:
                log.info("Training task %s finished; follow-up task %s", task_id, follow_up.id)
            else:
                log.info("Training task %s stopped early", task_id)
            self._emit_state_changed()
            return follow_up

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def complete_task(self, task_id: int) -> Optional[Task]:
        """Acknowledge a task as done and archive it with its direct children.

        Training tasks are finished through :meth:`stop_training`, so the
        follow-up task is returned in that case.
        """
        with self._lock:
            task = self.get_task(task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            if task.kind is TaskKind.TRAINING:
                return self.stop_training(task_id, force_complete=True)

            now = self._clock()
            archived: list[int] = []
            with db.transaction(self._conn):
                timer = db.get_timer(self._conn, task_id)
                if timer is not None and timer.kind is TimerKind.FOCUS:
                    self._finalize_focus(timer, now)
                children = db.list_tasks(self._conn, parent_id=task_id)
                for t in [self._require_task(task_id), *children]:
                    if t.status is TaskStatus.ARCHIVED:
                        continue
                    self._discard_timers(t, now)
                    db.update_task(self._conn, t.id, status=TaskStatus.ARCHIVED)
                    archived.append(t.id)
            for done_id in archived:
                self._forget(done_id)
            log.info("Completed task %s (%d archived)", task_id, len(archived))
            self._emit_state_changed()
            return None

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    def add_resource(self, name: str) -> Resource:
        name = name.strip()
        if not name:
            raise InvalidInputError("GPU name is required")
        with self._lock:
            with db.transaction(self._conn):
                resource = db.add_resource(self._conn, name, now=self._clock())
            self._emit_state_changed()
            return resource

    def get_resource(self, resource_id: int) -> Optional[Resource]:
        with self._lock:
            return db.get_resource(self._conn, resource_id)

    def list_resources(self) -> list[Resource]:
        with self._lock:
            return db.list_resources(self._conn)

    def delete_resource(self, resource_id: int) -> None:
        """Remove a GPU; its active training task goes back to the queue."""
        with self._lock:
            requeued: list[int] = []
            with db.transaction(self._conn):
                if db.get_resource(self._conn, resource_id) is None:
                    raise ResourceNotFoundError(resource_id)
                for t in db.list_tasks(
                    self._conn, status=TaskStatus.ACTIVE, resource_id=resource_id
                ):
                    db.delete_timers(self._conn, t.id)
                    db.update_task(self._conn, t.id, status=TaskStatus.QUEUED, resource_id=None)
                    requeued.append(t.id)
                db.delete_resource(self._conn, resource_id)
            for t_id in requeued:
                self._forget(t_id)
            self._idle_checkpoints.pop(resource_id, None)
            self._emit_state_changed()

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def create_project(
        self, name: str, description: Optional[str] = None, color: Optional[str] = None
    ) -> Project:
        try:
            project_in = ProjectCreate(name=name.strip(), description=description, color=color)
        except ValidationError as exc:
            raise InvalidInputError(f"Invalid project: {exc.errors()[0]['msg']}") from exc
        with self._lock:
            with db.transaction(self._conn):
                project = db.add_project(self._conn, project_in, now=self._clock())
            self._emit_state_changed()
            return project

    def get_project(self, project_id: int) -> Optional[Project]:
        with self._lock:
            return db.get_project(self._conn, project_id)

    def list_projects(self) -> list[Project]:
        with self._lock:
            return db.list_projects(self._conn)

    def update_project(
        self, project_id: int, changes: Union[ProjectUpdate, dict[str, Any]]
    ) -> Project:
        if isinstance(changes, dict):
            try:
                changes = ProjectUpdate(**changes)
            except ValidationError as exc:
                raise InvalidInputError(f"Invalid update: {exc.errors()[0]['msg']}") from exc
        with self._lock:
            with db.transaction(self._conn):
                project = db.update_project(
                    self._conn, project_id, **changes.model_dump(exclude_unset=True)
                )
                if project is None:
                    raise ProjectNotFoundError(project_id)
            self._emit_state_changed()
            return project

    def delete_project(self, project_id: int) -> None:
        """Remove a project. Its tasks stay, without a project."""
        with self._lock:
            with db.transaction(self._conn):
                if not db.delete_project(self._conn, project_id):
                    raise ProjectNotFoundError(project_id)
            log.info("Project %s deleted", project_id)
            self._emit_state_changed()

    # ------------------------------------------------------------------
    # History & settings
    # ------------------------------------------------------------------

    def list_history(self, for_date: Optional[date] = None) -> list[HistoryEntry]:
        with self._lock:
            return db.list_history(self._conn, for_date=for_date)

    def delete_history(self, entry_id: int) -> bool:
        with self._lock:
            with db.transaction(self._conn):
                return db.delete_history(self._conn, entry_id)

    def settings(self) -> EngineSettings:
        with self._lock:
            return load_engine_settings(self._conn)

    def set_setting(self, key: str, value: Any) -> None:
        with self._lock:
            with db.transaction(self._conn):
                db.set_setting(self._conn, key, value)

    def export_database(self, dest: Path) -> Path:
        with self._lock:
            return db.export_database(self._conn, dest)

    # ------------------------------------------------------------------
    # External notifications
    # ------------------------------------------------------------------

    def trigger_external_notification(self, title: str, message: Optional[str] = None) -> None:
        """Raise a reminder on behalf of an outside tool. Touches no stored state."""
        if not title or not title.strip():
            raise InvalidInputError("Title is required")
        snapshot = ReminderSnapshot(
            id=0,
            title=title.strip(),
            kind=HOOK_KIND,
            message=message,
            created_at=self._clock(),
        )
        log.info("External notification: %s", snapshot.title)
        self._emit_timer_ended(0, snapshot)

    # ------------------------------------------------------------------
    # Reconciliation (cold start)
    # ------------------------------------------------------------------

    def reconcile(self) -> None:
        """Rebuild the in-memory schedule from persisted countdown timers."""
        with self._lock:
            now = self._clock()
            try:
                timers = db.list_timers(self._conn, countdown_only=True)
            except sqlite3.Error:
                log.exception("Could not load timers for reconciliation")
                timers = []
            for timer in timers:
                try:
                    if timer.target_timestamp is None:
                        log.warning("Countdown timer %s has no target; skipping", timer.id)
                        continue
                    remaining = (timer.target_timestamp - now).total_seconds()
                    if remaining > 0:
                        self._schedule(timer, now)
                    else:
                        self._expire(timer.task_id, expected_timer_id=timer.id)
                except Exception:
                    log.exception("Reconciling timer %s failed", timer.id)
            try:
                self._ensure_resource_idle_state(now)
            except Exception:
                log.exception("Resource consistency pass failed")

    def _ensure_resource_idle_state(self, now: datetime) -> None:
        with db.transaction(self._conn):
            for resource in db.list_resources(self._conn):
                if resource.active_task_id is None and resource.idle_since is None:
                    log.warning("GPU %s has no active task but is marked busy; marking idle", resource.id)
                    db.set_resource_idle(self._conn, resource.id, now)

    # ------------------------------------------------------------------
    # Nagging sweep
    # ------------------------------------------------------------------

    def adopt_countdowns(self) -> int:
        """Pick up countdowns that other connections wrote to the database.

        CLI invocations start, snooze and cancel countdowns and exit before
        they are due. Future targets are scheduled here, targets already
        passed are announced once, and schedules whose timer row is gone are
        dropped. Returns how many countdowns were announced.
        """
        with self._lock:
            now = self._clock()
            timers = db.list_timers(self._conn, countdown_only=True)
            by_task = {timer.task_id: timer for timer in timers}
            for task_id, pending in list(self._pending.items()):
                timer = by_task.get(task_id)
                if timer is None or timer.id != pending.timer_id:
                    log.info("Countdown for task %s was removed elsewhere; unscheduling", task_id)
                    self._forget(task_id)
            fired = 0
            for timer in timers:
                try:
                    target = timer.target_timestamp
                    if target is None:
                        continue
                    pending = self._pending.get(timer.task_id)
                    if pending is not None and pending.target == target:
                        continue
                    if target > now:
                        log.info("Adopting countdown for task %s due %s", timer.task_id, target)
                        self._nag_checkpoints.pop(timer.task_id, None)
                        self._schedule(timer, now)
                        continue
                    if self._announced.get(timer.task_id) == (timer.id, target):
                        continue
                    log.info("Adopting overdue countdown for task %s", timer.task_id)
                    if self._expire(timer.task_id, expected_timer_id=timer.id):
                        self._nag_checkpoints[timer.task_id] = int((now - target).total_seconds() // 60)
                        fired += 1
                except Exception:
                    log.exception("Adopting timer %s failed", timer.id)
            for task_id in list(self._announced):
                if task_id not in by_task:
                    del self._announced[task_id]
            return fired

    def run_sweep(self) -> None:
        """Adopt outside countdowns, then run both periodic checks."""
        with self._lock:
            try:
                settings = load_engine_settings(self._conn)
            except Exception:
                log.exception("Could not read settings; using defaults")
                settings = EngineSettings()
            self.adopt_countdowns()
            self.check_task_nagging(settings)
            self.check_resource_idle(settings)

    def check_task_nagging(self, settings: Optional[EngineSettings] = None) -> int:
        """Re-announce overdue countdowns at every nag-interval checkpoint."""
        with self._lock:
            settings = settings or load_engine_settings(self._conn)
            nag = settings.nag_interval_minutes
            now = self._clock()
            fired = 0
            timers = db.list_timers(self._conn, countdown_only=True)
            for timer in timers:
                try:
                    if timer.target_timestamp is None:
                        continue
                    overdue_seconds = (now - timer.target_timestamp).total_seconds()
                    if overdue_seconds <= 0:
                        continue
                    overdue_minutes = int(overdue_seconds // 60)
                    if overdue_minutes <= 0 or overdue_minutes % nag != 0:
                        continue
                    if overdue_minutes <= self._nag_checkpoints.get(timer.task_id, 0):
                        continue
                    self._nag_checkpoints[timer.task_id] = overdue_minutes
                    log.info("Task %s overdue by %s min; nagging", timer.task_id, overdue_minutes)
                    self._expire(timer.task_id, expected_timer_id=timer.id)
                    fired += 1
                except Exception:
                    log.exception("Nag check failed for task %s", timer.task_id)
            live = {t.task_id for t in timers}
            for task_id in list(self._nag_checkpoints):
                if task_id not in live:
                    del self._nag_checkpoints[task_id]
            return fired

    def check_resource_idle(self, settings: Optional[EngineSettings] = None) -> int:
        """Alert about GPUs left idle, once per idle-interval checkpoint."""
        with self._lock:
            settings = settings or load_engine_settings(self._conn)
            now = self._clock()
            quiet = settings.gpu_quiet_hours
            if quiet is not None and quiet.contains(now.hour):
                log.debug("Quiet hours; skipping idle check")
                return 0
            interval = settings.gpu_idle_interval_minutes
            fired = 0
            for resource in db.list_resources(self._conn):
                try:
                    if resource.active_task_id is not None:
                        self._idle_checkpoints.pop(resource.id, None)
                        continue
                    if resource.idle_since is None:
                        continue
                    idle_minutes = int((now - resource.idle_since).total_seconds() // 60)
                    checkpoint = (idle_minutes // interval) * interval
                    last_since, last = self._idle_checkpoints.get(resource.id, (resource.idle_since, 0))
                    if last_since != resource.idle_since:
                        last = 0
                    if checkpoint < interval or checkpoint <= last:
                        continue
                    self._idle_checkpoints[resource.id] = (resource.idle_since, checkpoint)
                    snapshot = ReminderSnapshot(
                        id=-resource.id,
                        title=f'GPU "{resource.name}" is idle ({idle_minutes}m)',
                        kind=GPU_IDLE_KIND,
                        resource_id=resource.id,
                        resource_name=resource.name,
                        created_at=now,
                    )
                    log.info("GPU %s idle for %s min", resource.id, idle_minutes)
                    self._emit_timer_ended(-resource.id, snapshot)
                    fired += 1
                except Exception:
                    log.exception("Idle check failed for GPU %s", resource.id)
            return fired

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, interval_seconds: float = 60.0) -> None:
        """Run :meth:`run_sweep` every ``interval_seconds`` on a daemon thread."""
        if self._sweep_thread is not None and self._sweep_thread.is_alive():
            return
        self._stop_event.clear()
        self._sweep_thread = threading.Thread(
            target=self._sweep_loop, args=(interval_seconds,), name="flowtask-sweep", daemon=True
        )
        self._sweep_thread.start()

    def _sweep_loop(self, interval_seconds: float) -> None:
        while not self._stop_event.wait(interval_seconds):
            try:
                self.run_sweep()
            except Exception:
                log.exception("Sweep failed")

    def shutdown(self) -> None:
        self._stop_event.set()
        if self._sweep_thread is not None:
            self._sweep_thread.join(timeout=5)
            self._sweep_thread = None
        self.cancel_all()
