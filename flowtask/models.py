"""Pydantic models for tasks, timers, GPUs, history and settings."""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

# Focus sessions shorter than this are discarded without credit or history.
MIN_SESSION_SECONDS = 180

GPU_IDLE_KIND = "gpu-idle"
HOOK_KIND = "hook"


class TaskStatus(str, enum.Enum):
    """Task lifecycle states."""

    ACTIVE = "active"
    WAITING = "waiting"
    QUEUED = "queued"
    ARCHIVED = "archived"


class TaskKind(str, enum.Enum):
    """Behavioural category of a task."""

    STANDARD = "standard"
    AD_HOC = "ad-hoc"
    TRAINING = "training"
    EXTERNAL = "external"

    @property
    def is_ephemeral(self) -> bool:
        """Ephemeral tasks are deleted, not requeued, when their wait is cancelled."""
        return self in (TaskKind.AD_HOC, TaskKind.TRAINING)


class TimerKind(str, enum.Enum):
    """Stopwatch (focus) or countdown (wait, training)."""

    FOCUS = "focus"
    WAIT = "wait"
    TRAINING = "training"

    @property
    def is_countdown(self) -> bool:
        return self is not TimerKind.FOCUS


class Task(BaseModel):
    """A single task."""

    id: int
    title: str
    status: TaskStatus = TaskStatus.QUEUED
    kind: TaskKind = TaskKind.STANDARD
    total_duration_seconds: int = 0
    tag: Optional[str] = None
    context_memo: Optional[str] = None
    estimated_duration_minutes: Optional[int] = None
    project_id: Optional[int] = None
    parent_id: Optional[int] = None
    is_next_action: bool = True
    sort_order: float = 0
    resource_id: Optional[int] = None
    created_at: datetime = Field(default_factory=datetime.now)

    @property
    def is_subtask(self) -> bool:
        return self.parent_id is not None


class TaskCreate(BaseModel):
    """Input model for creating a new task."""

    title: str = Field(min_length=1, max_length=500)
    kind: TaskKind = TaskKind.STANDARD
    tag: Optional[str] = None
    estimated_duration_minutes: Optional[int] = Field(default=None, ge=1)
    project_id: Optional[int] = None
    parent_id: Optional[int] = None


class TaskUpdate(BaseModel):
    """Partial update of the user-editable task fields.

    Only fields explicitly set are applied (``model_dump(exclude_unset=True)``).
    Status, timing and resource fields are owned by the timer engine.
    """

    title: Optional[str] = Field(default=None, min_length=1, max_length=500)
    tag: Optional[str] = None
    context_memo: Optional[str] = None
    estimated_duration_minutes: Optional[int] = Field(default=None, ge=1)
    project_id: Optional[int] = None
    parent_id: Optional[int] = None
    is_next_action: Optional[bool] = None
    sort_order: Optional[float] = None

    @field_validator("title", "is_next_action", "sort_order")
    @classmethod
    def _not_null(cls, value):
        if value is None:
            raise ValueError("may be changed but not cleared")
        return value


class Timer(BaseModel):
    """The (single) timer record attached to a task."""

    id: int
    task_id: int
    kind: TimerKind
    started_at: Optional[datetime] = None
    target_timestamp: Optional[datetime] = None
    original_duration_seconds: Optional[int] = None


class TimerView(BaseModel):
    """Read model combining a timer with its task, computed at query time."""

    task_id: int
    title: str
    kind: TimerKind
    started_at: Optional[datetime] = None
    target_timestamp: Optional[datetime] = None
    elapsed_seconds: Optional[int] = None
    remaining_seconds: Optional[int] = None

    @property
    def is_overdue(self) -> bool:
        return self.remaining_seconds is not None and self.remaining_seconds <= 0


class Resource(BaseModel):
    """A shared GPU slot. ``idle_since`` is None while it backs a training task."""

    id: int
    name: str
    idle_since: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.now)
    active_task_id: Optional[int] = None

    @property
    def is_idle(self) -> bool:
        return self.active_task_id is None


class Project(BaseModel):
    """A group of tasks, with live counts over its non-archived tasks."""

    id: int
    name: str
    description: Optional[str] = None
    color: str = "#6366f1"
    created_at: datetime = Field(default_factory=datetime.now)
    active_count: int = 0
    total_focused_seconds: int = 0


class ProjectCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    color: Optional[str] = Field(default=None, pattern=r"^#[0-9a-fA-F]{6}$")


class ProjectUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    color: Optional[str] = Field(default=None, pattern=r"^#[0-9a-fA-F]{6}$")

    @field_validator("name", "color")
    @classmethod
    def _not_null(cls, value):
        if value is None:
            raise ValueError("may be changed but not cleared")
        return value


class HistoryEntry(BaseModel):
    """A closed focus interval with the task title captured at close time."""

    id: int
    task_id: int
    title: str
    kind: TimerKind = TimerKind.FOCUS
    start_time: datetime
    end_time: datetime

    @property
    def duration_seconds(self) -> int:
        return int((self.end_time - self.start_time).total_seconds())


class HistoryEntryCreate(BaseModel):
    """Input model for appending to the history log."""

    task_id: int
    title: str = Field(min_length=1)
    kind: TimerKind = TimerKind.FOCUS
    start_time: datetime
    end_time: datetime


class QuietHours(BaseModel):
    """Hour-of-day window during which idle alerts are suppressed.

    ``start > end`` wraps around midnight (e.g. 23 -> 8).
    """

    start: int = Field(ge=0, le=23)
    end: int = Field(ge=0, le=24)

    def contains(self, hour: int) -> bool:
        if self.start <= self.end:
            return self.start <= hour < self.end
        return hour >= self.start or hour < self.end


class EngineSettings(BaseModel):
    """Operator-tunable parameters read from the settings store."""

    nag_interval_minutes: int = Field(default=15, ge=1)
    gpu_idle_interval_minutes: int = Field(default=15, ge=1)
    gpu_quiet_hours: Optional[QuietHours] = Field(
        default_factory=lambda: QuietHours(start=23, end=8)
    )


class ReminderSnapshot(BaseModel):
    """Payload of a ``timer-ended`` event: enough to render a reminder."""

    id: int
    title: str
    kind: str
    status: TaskStatus = TaskStatus.ACTIVE
    message: Optional[str] = None
    project_id: Optional[int] = None
    resource_id: Optional[int] = None
    resource_name: Optional[str] = None
    total_duration_seconds: int = 0
    created_at: datetime = Field(default_factory=datetime.now)

    @classmethod
    def from_task(cls, task: Task) -> ReminderSnapshot:
        return cls(
            id=task.id,
            title=task.title,
            kind=task.kind.value,
            status=task.status,
            project_id=task.project_id,
            resource_id=task.resource_id,
            total_duration_seconds=task.total_duration_seconds,
            created_at=task.created_at,
        )


class HookPayload(BaseModel):
    """Body of an inbound external notification."""

    title: Optional[str] = None
    message: Optional[str] = None


class AppConfig(BaseModel):
    """Application configuration (persisted to ~/.config/flowtask/config.json)."""

    db_path: Optional[str] = None  # None = use default (~/.local/share/flowtask/)
    hook_host: str = "127.0.0.1"
    hook_port: int = Field(default=62222, ge=1, le=65535)
    sweep_interval_seconds: float = Field(default=60.0, gt=0)
    log_file: Optional[str] = None
