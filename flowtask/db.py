"""SQLite database layer. All public functions return Pydantic models.

Write helpers do not commit on their own: callers group them into a unit of
work with :func:`transaction`, which commits on success and rolls back (and
raises :class:`StoreError`) on failure.
"""

from __future__ import annotations

import json
import logging
import random
import shutil
import sqlite3
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import date, datetime
from pathlib import Path
from typing import Any, Optional

from flowtask.config import get_db_path as _config_get_db_path
from flowtask.exceptions import (
    InvalidInputError,
    InvariantViolationError,
    ProjectNotFoundError,
    StoreError,
    TaskNotFoundError,
)
from flowtask.models import (
    HistoryEntry,
    HistoryEntryCreate,
    Project,
    ProjectCreate,
    Resource,
    Task,
    TaskCreate,
    TaskKind,
    TaskStatus,
    Timer,
    TimerKind,
)

log = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    name        TEXT    NOT NULL,
    description TEXT,
    color       TEXT    NOT NULL,
    created_at  TEXT    NOT NULL
);

CREATE TABLE IF NOT EXISTS tasks (
    id                     INTEGER PRIMARY KEY AUTOINCREMENT,
    title                  TEXT    NOT NULL,
    status                 TEXT    NOT NULL DEFAULT 'queued',
    kind                   TEXT    NOT NULL DEFAULT 'standard',
    total_duration_seconds INTEGER NOT NULL DEFAULT 0,
    tag                    TEXT,
    context_memo           TEXT,
    estimated_duration_minutes INTEGER,
    project_id             INTEGER REFERENCES projects(id) ON DELETE SET NULL,
    parent_id              INTEGER REFERENCES tasks(id) ON DELETE SET NULL,
    is_next_action         INTEGER NOT NULL DEFAULT 1,
    sort_order             REAL    NOT NULL DEFAULT 0,
    resource_id            INTEGER REFERENCES resources(id) ON DELETE SET NULL,
    created_at             TEXT    NOT NULL
);

CREATE TABLE IF NOT EXISTS timers (
    id                        INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id                   INTEGER NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    kind                      TEXT    NOT NULL,
    started_at                TEXT,
    target_timestamp          TEXT,
    original_duration_seconds INTEGER
);

CREATE TABLE IF NOT EXISTS resources (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    name        TEXT    NOT NULL,
    idle_since  TEXT,
    created_at  TEXT    NOT NULL
);

CREATE TABLE IF NOT EXISTS history (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id     INTEGER NOT NULL,
    title       TEXT    NOT NULL,
    kind        TEXT    NOT NULL,
    start_time  TEXT    NOT NULL,
    end_time    TEXT    NOT NULL
);

CREATE TABLE IF NOT EXISTS settings (
    key    TEXT PRIMARY KEY,
    value  TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_timers_task ON timers(task_id);
CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status, kind);
"""

_TASK_COLUMNS = frozenset(
    {
        "title",
        "status",
        "kind",
        "total_duration_seconds",
        "tag",
        "context_memo",
        "estimated_duration_minutes",
        "project_id",
        "parent_id",
        "is_next_action",
        "sort_order",
        "resource_id",
    }
)


def _get_db_path() -> Path:
    """Return the database file path from config (or default)."""
    return _config_get_db_path()


# Columns added after the first release; older databases gain them on open.
_TASK_MIGRATIONS = {
    "context_memo": "TEXT",
    "estimated_duration_minutes": "INTEGER",
}


def _migrate(conn: sqlite3.Connection) -> None:
    columns = {r["name"] for r in conn.execute("PRAGMA table_info(tasks)")}
    for name, decl in _TASK_MIGRATIONS.items():
        if name not in columns:
            log.info("Adding column tasks.%s", name)
            conn.execute(f"ALTER TABLE tasks ADD COLUMN {name} {decl}")
    conn.commit()


def get_connection(db_path: Optional[Path] = None) -> sqlite3.Connection:
    """Open a connection and ensure the schema exists.

    The connection may be shared across threads; the timer engine serialises
    access to it.
    """
    path = db_path or _get_db_path()
    conn = sqlite3.connect(str(path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.executescript(_SCHEMA)
    _migrate(conn)
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run the enclosed writes as one unit of work."""
    try:
        with conn:
            yield conn
    except sqlite3.Error as exc:
        log.error("Database transaction failed: %s", exc)
        raise StoreError(str(exc)) from exc


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


def _row_to_task(row: sqlite3.Row) -> Task:
    """Convert a database row to a Task model."""
    return Task(
        id=row["id"],
        title=row["title"],
        status=TaskStatus(row["status"]),
        kind=TaskKind(row["kind"]),
        total_duration_seconds=row["total_duration_seconds"] or 0,
        tag=row["tag"],
        context_memo=row["context_memo"],
        estimated_duration_minutes=row["estimated_duration_minutes"],
        project_id=row["project_id"],
        parent_id=row["parent_id"],
        is_next_action=bool(row["is_next_action"]),
        sort_order=row["sort_order"],
        resource_id=row["resource_id"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def add_task(
    conn: sqlite3.Connection, task_in: TaskCreate, now: Optional[datetime] = None
) -> Task:
    """Insert a new queued task and return it.

    Creation is idempotent by title: an existing non-archived task with the
    same title is returned instead of inserting a duplicate.
    """
    existing = conn.execute(
        "SELECT * FROM tasks WHERE title = ? AND status != ? ORDER BY id LIMIT 1",
        (task_in.title, TaskStatus.ARCHIVED.value),
    ).fetchone()
    if existing:
        return _row_to_task(existing)

    if task_in.parent_id is not None and get_task(conn, task_in.parent_id) is None:
        raise TaskNotFoundError(task_in.parent_id)
    if task_in.project_id is not None and not _project_exists(conn, task_in.project_id):
        raise ProjectNotFoundError(task_in.project_id)

    now = now or datetime.now()
    cur = conn.execute(
        "INSERT INTO tasks (title, status, kind, tag, estimated_duration_minutes, project_id, "
        "parent_id, is_next_action, sort_order, created_at) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?, ?)",
        (
            task_in.title,
            TaskStatus.QUEUED.value,
            task_in.kind.value,
            task_in.tag,
            task_in.estimated_duration_minutes,
            task_in.project_id,
            task_in.parent_id,
            now.timestamp() * 1000,
            now.isoformat(),
        ),
    )
    row = conn.execute("SELECT * FROM tasks WHERE id = ?", (cur.lastrowid,)).fetchone()
    return _row_to_task(row)


def get_task(conn: sqlite3.Connection, task_id: int) -> Optional[Task]:
    """Fetch a single task by ID."""
    row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    return _row_to_task(row) if row else None


def list_tasks(
    conn: sqlite3.Connection,
    status: Optional[TaskStatus] = None,
    kind: Optional[TaskKind] = None,
    resource_id: Optional[int] = None,
    parent_id: Optional[int] = None,
    predicate: Optional[Callable[[Task], bool]] = None,
) -> list[Task]:
    """List tasks, optionally filtered by column values and/or a predicate."""
    query = "SELECT * FROM tasks WHERE 1=1"
    params: list[str | int] = []
    if status is not None:
        query += " AND status = ?"
        params.append(status.value)
    if kind is not None:
        query += " AND kind = ?"
        params.append(kind.value)
    if resource_id is not None:
        query += " AND resource_id = ?"
        params.append(resource_id)
    if parent_id is not None:
        query += " AND parent_id = ?"
        params.append(parent_id)
    query += " ORDER BY sort_order ASC, id ASC"
    tasks = [_row_to_task(r) for r in conn.execute(query, params).fetchall()]
    if predicate is not None:
        tasks = [t for t in tasks if predicate(t)]
    return tasks


def _ancestor_ids(conn: sqlite3.Connection, task_id: int) -> list[int]:
    """Walk the parent chain upwards from ``task_id`` (inclusive)."""
    chain: list[int] = []
    current: Optional[int] = task_id
    while current is not None and current not in chain:
        chain.append(current)
        row = conn.execute("SELECT parent_id FROM tasks WHERE id = ?", (current,)).fetchone()
        current = row["parent_id"] if row else None
    return chain


def update_task(conn: sqlite3.Connection, task_id: int, **fields: Any) -> Optional[Task]:
    """Apply a partial update. Returns the updated task, or None if it is gone.

    Re-parenting is rejected before any write if it would make the task its
    own ancestor.
    """
    unknown = set(fields) - _TASK_COLUMNS
    if unknown:
        raise ValueError(f"Unknown task fields: {', '.join(sorted(unknown))}")
    if get_task(conn, task_id) is None:
        return None
    if not fields:
        return get_task(conn, task_id)

    new_project = fields.get("project_id")
    if new_project is not None and not _project_exists(conn, new_project):
        raise ProjectNotFoundError(new_project)

    new_parent = fields.get("parent_id")
    if new_parent is not None:
        if get_task(conn, new_parent) is None:
            raise TaskNotFoundError(new_parent)
        if task_id in _ancestor_ids(conn, new_parent):
            raise InvariantViolationError(
                f"Task {task_id} cannot be nested under its own descendant {new_parent}"
            )

    values: list[Any] = []
    for name, value in fields.items():
        if isinstance(value, (TaskStatus, TaskKind)):
            value = value.value
        elif isinstance(value, bool):
            value = int(value)
        values.append(value)
    assignments = ", ".join(f"{name} = ?" for name in fields)
    conn.execute(f"UPDATE tasks SET {assignments} WHERE id = ?", (*values, task_id))
    return get_task(conn, task_id)


def delete_task(conn: sqlite3.Connection, task_id: int) -> bool:
    """Permanently remove a task (its timers cascade)."""
    cur = conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
    return cur.rowcount > 0


def delete_all_tasks(conn: sqlite3.Connection) -> int:
    """Wipe every task and the focus history. Returns the number of tasks removed."""
    conn.execute("DELETE FROM history")
    cur = conn.execute("DELETE FROM tasks")
    return cur.rowcount


def append_memo(conn: sqlite3.Connection, task_id: int, content: str) -> Optional[Task]:
    """Add a line to the task's context memo."""
    row = conn.execute("SELECT context_memo FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if row is None:
        return None
    current = row["context_memo"]
    memo = f"{current}\n{content}" if current else content
    conn.execute("UPDATE tasks SET context_memo = ? WHERE id = ?", (memo, task_id))
    return get_task(conn, task_id)


def list_suggestions(
    conn: sqlite3.Connection, max_minutes: Optional[int] = None, limit: int = 5
) -> list[Task]:
    """Queued tasks that fit in ``max_minutes`` (by their estimate), in queue order."""
    query = "SELECT * FROM tasks WHERE status = ?"
    params: list[Any] = [TaskStatus.QUEUED.value]
    if max_minutes is not None:
        query += " AND estimated_duration_minutes <= ?"
        params.append(max_minutes)
    query += " ORDER BY sort_order ASC, id ASC LIMIT ?"
    params.append(limit)
    return [_row_to_task(r) for r in conn.execute(query, params).fetchall()]


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------

PROJECT_COLORS = ("#6366f1", "#10b981", "#f59e0b", "#ef4444", "#8b5cf6", "#ec4899")

_PROJECT_COLUMNS = frozenset({"name", "description", "color"})

_PROJECT_SELECT = """
SELECT p.*,
       COUNT(t.id) AS active_count,
       COALESCE(SUM(t.total_duration_seconds), 0) AS total_focused_seconds
FROM projects p
LEFT JOIN tasks t ON t.project_id = p.id AND t.status != 'archived'
"""


def _row_to_project(row: sqlite3.Row) -> Project:
    """Convert a database row to a Project model."""
    return Project(
        id=row["id"],
        name=row["name"],
        description=row["description"],
        color=row["color"],
        created_at=datetime.fromisoformat(row["created_at"]),
        active_count=row["active_count"],
        total_focused_seconds=row["total_focused_seconds"],
    )


def _project_exists(conn: sqlite3.Connection, project_id: int) -> bool:
    row = conn.execute("SELECT 1 FROM projects WHERE id = ?", (project_id,)).fetchone()
    return row is not None


def add_project(
    conn: sqlite3.Connection, project_in: ProjectCreate, now: Optional[datetime] = None
) -> Project:
    """Create a project; without a colour one is picked from the palette."""
    now = now or datetime.now()
    cur = conn.execute(
        "INSERT INTO projects (name, description, color, created_at) VALUES (?, ?, ?, ?)",
        (
            project_in.name,
            project_in.description,
            project_in.color or random.choice(PROJECT_COLORS),
            now.isoformat(),
        ),
    )
    project = get_project(conn, cur.lastrowid)
    if project is None:
        raise StoreError(f"Project {cur.lastrowid} vanished after insert")
    return project


def get_project(conn: sqlite3.Connection, project_id: int) -> Optional[Project]:
    row = conn.execute(
        _PROJECT_SELECT + " WHERE p.id = ? GROUP BY p.id", (project_id,)
    ).fetchone()
    return _row_to_project(row) if row else None


def list_projects(conn: sqlite3.Connection) -> list[Project]:
    """All projects with their non-archived task count and focused time."""
    rows = conn.execute(_PROJECT_SELECT + " GROUP BY p.id ORDER BY p.id ASC").fetchall()
    return [_row_to_project(r) for r in rows]


def update_project(conn: sqlite3.Connection, project_id: int, **fields: Any) -> Optional[Project]:
    """Apply a partial update. Returns the updated project, or None if it is gone."""
    unknown = set(fields) - _PROJECT_COLUMNS
    if unknown:
        raise ValueError(f"Unknown project fields: {', '.join(sorted(unknown))}")
    if fields:
        assignments = ", ".join(f"{name} = ?" for name in fields)
        conn.execute(
            f"UPDATE projects SET {assignments} WHERE id = ?", (*fields.values(), project_id)
        )
    return get_project(conn, project_id)


def delete_project(conn: sqlite3.Connection, project_id: int) -> bool:
    """Remove a project; its tasks are kept and unassigned."""
    conn.execute("UPDATE tasks SET project_id = NULL WHERE project_id = ?", (project_id,))
    cur = conn.execute("DELETE FROM projects WHERE id = ?", (project_id,))
    return cur.rowcount > 0


# ---------------------------------------------------------------------------
# Timers
# ---------------------------------------------------------------------------


def _row_to_timer(row: sqlite3.Row) -> Timer:
    """Convert a database row to a Timer model."""
    return Timer(
        id=row["id"],
        task_id=row["task_id"],
        kind=TimerKind(row["kind"]),
        started_at=_parse_ts(row["started_at"]),
        target_timestamp=_parse_ts(row["target_timestamp"]),
        original_duration_seconds=row["original_duration_seconds"],
    )


def add_timer(
    conn: sqlite3.Connection,
    task_id: int,
    kind: TimerKind,
    started_at: datetime,
    target_timestamp: Optional[datetime] = None,
    original_duration_seconds: Optional[int] = None,
) -> Timer:
    """Insert a timer row. Focus timers never carry a target."""
    if kind is TimerKind.FOCUS and target_timestamp is not None:
        raise ValueError("focus timers have no target timestamp")
    if kind.is_countdown and target_timestamp is None:
        raise ValueError(f"{kind.value} timers need a target timestamp")
    cur = conn.execute(
        "INSERT INTO timers (task_id, kind, started_at, target_timestamp, "
        "original_duration_seconds) VALUES (?, ?, ?, ?, ?)",
        (
            task_id,
            kind.value,
            _ts(started_at),
            _ts(target_timestamp),
            original_duration_seconds,
        ),
    )
    row = conn.execute("SELECT * FROM timers WHERE id = ?", (cur.lastrowid,)).fetchone()
    return _row_to_timer(row)


def get_timer(conn: sqlite3.Connection, task_id: int) -> Optional[Timer]:
    """Fetch the newest timer owned by a task."""
    row = conn.execute(
        "SELECT * FROM timers WHERE task_id = ? ORDER BY id DESC LIMIT 1", (task_id,)
    ).fetchone()
    return _row_to_timer(row) if row else None


def list_timers(
    conn: sqlite3.Connection,
    kind: Optional[TimerKind] = None,
    countdown_only: bool = False,
) -> list[Timer]:
    """List persisted timers."""
    query = "SELECT * FROM timers WHERE 1=1"
    params: list[str] = []
    if kind is not None:
        query += " AND kind = ?"
        params.append(kind.value)
    if countdown_only:
        query += " AND kind != ?"
        params.append(TimerKind.FOCUS.value)
    query += " ORDER BY id ASC"
    return [_row_to_timer(r) for r in conn.execute(query, params).fetchall()]


def delete_timers(conn: sqlite3.Connection, task_id: int) -> int:
    """Delete every timer owned by a task. Returns the number removed."""
    cur = conn.execute("DELETE FROM timers WHERE task_id = ?", (task_id,))
    return cur.rowcount


def delete_timer(conn: sqlite3.Connection, timer_id: int) -> None:
    conn.execute("DELETE FROM timers WHERE id = ?", (timer_id,))


def set_timer_target(
    conn: sqlite3.Connection, task_id: int, target_timestamp: datetime
) -> Optional[Timer]:
    """Move the target of a task's countdown timer."""
    conn.execute(
        "UPDATE timers SET target_timestamp = ? WHERE task_id = ? AND kind != ?",
        (_ts(target_timestamp), task_id, TimerKind.FOCUS.value),
    )
    return get_timer(conn, task_id)


# ---------------------------------------------------------------------------
# Resources (GPUs)
# ---------------------------------------------------------------------------


def _active_training_by_resource(conn: sqlite3.Connection) -> dict[int, int]:
    rows = conn.execute(
        "SELECT id, resource_id FROM tasks WHERE status = ? AND kind = ? "
        "AND resource_id IS NOT NULL ORDER BY id",
        (TaskStatus.ACTIVE.value, TaskKind.TRAINING.value),
    ).fetchall()
    active: dict[int, int] = {}
    for r in rows:
        active.setdefault(r["resource_id"], r["id"])
    return active


def _row_to_resource(row: sqlite3.Row, active_task_id: Optional[int] = None) -> Resource:
    """Convert a database row to a Resource model."""
    return Resource(
        id=row["id"],
        name=row["name"],
        idle_since=_parse_ts(row["idle_since"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        active_task_id=active_task_id,
    )


def add_resource(
    conn: sqlite3.Connection, name: str, now: Optional[datetime] = None
) -> Resource:
    """Register a GPU. New resources are idle from the moment they are added."""
    now = now or datetime.now()
    cur = conn.execute(
        "INSERT INTO resources (name, idle_since, created_at) VALUES (?, ?, ?)",
        (name, now.isoformat(), now.isoformat()),
    )
    row = conn.execute("SELECT * FROM resources WHERE id = ?", (cur.lastrowid,)).fetchone()
    return _row_to_resource(row)


def get_resource(conn: sqlite3.Connection, resource_id: int) -> Optional[Resource]:
    """Fetch a single resource by ID, with its active training task if any."""
    row = conn.execute("SELECT * FROM resources WHERE id = ?", (resource_id,)).fetchone()
    if not row:
        return None
    return _row_to_resource(row, _active_training_by_resource(conn).get(resource_id))


def list_resources(conn: sqlite3.Connection) -> list[Resource]:
    """List every resource with its derived ``active_task_id``."""
    active = _active_training_by_resource(conn)
    rows = conn.execute("SELECT * FROM resources ORDER BY id ASC").fetchall()
    return [_row_to_resource(r, active.get(r["id"])) for r in rows]


def set_resource_idle(
    conn: sqlite3.Connection, resource_id: int, idle_since: Optional[datetime]
) -> None:
    """Stamp a resource idle since ``idle_since``, or busy when None."""
    conn.execute(
        "UPDATE resources SET idle_since = ? WHERE id = ?", (_ts(idle_since), resource_id)
    )


def delete_resource(conn: sqlite3.Connection, resource_id: int) -> bool:
    """Remove a resource row. Tasks referencing it have ``resource_id`` nulled."""
    cur = conn.execute("DELETE FROM resources WHERE id = ?", (resource_id,))
    return cur.rowcount > 0


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


def _row_to_history(row: sqlite3.Row) -> HistoryEntry:
    """Convert a database row to a HistoryEntry model."""
    return HistoryEntry(
        id=row["id"],
        task_id=row["task_id"],
        title=row["title"],
        kind=TimerKind(row["kind"]),
        start_time=datetime.fromisoformat(row["start_time"]),
        end_time=datetime.fromisoformat(row["end_time"]),
    )


def append_history(conn: sqlite3.Connection, entry_in: HistoryEntryCreate) -> HistoryEntry:
    """Append an immutable interval to the history log."""
    cur = conn.execute(
        "INSERT INTO history (task_id, title, kind, start_time, end_time) "
        "VALUES (?, ?, ?, ?, ?)",
        (
            entry_in.task_id,
            entry_in.title,
            entry_in.kind.value,
            entry_in.start_time.isoformat(),
            entry_in.end_time.isoformat(),
        ),
    )
    row = conn.execute("SELECT * FROM history WHERE id = ?", (cur.lastrowid,)).fetchone()
    return _row_to_history(row)


def list_history(
    conn: sqlite3.Connection, for_date: Optional[date] = None
) -> list[HistoryEntry]:
    """List history entries, optionally only those started on ``for_date``."""
    query = "SELECT * FROM history"
    params: list[str] = []
    if for_date is not None:
        query += " WHERE start_time LIKE ?"
        params.append(f"{for_date.isoformat()}%")
    query += " ORDER BY start_time ASC"
    return [_row_to_history(r) for r in conn.execute(query, params).fetchall()]


def delete_history(conn: sqlite3.Connection, entry_id: int) -> bool:
    cur = conn.execute("DELETE FROM history WHERE id = ?", (entry_id,))
    return cur.rowcount > 0


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


def get_setting(conn: sqlite3.Connection, key: str, default: Any = None) -> Any:
    """Return the parsed JSON value for ``key``, or ``default`` if unset.

    Values that are not valid JSON are returned as the raw string.
    """
    row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
    if row is None:
        return default
    try:
        return json.loads(row["value"])
    except json.JSONDecodeError:
        return row["value"]


def has_setting(conn: sqlite3.Connection, key: str) -> bool:
    row = conn.execute("SELECT 1 FROM settings WHERE key = ?", (key,)).fetchone()
    return row is not None


def set_setting(conn: sqlite3.Connection, key: str, value: Any) -> None:
    """Store ``value`` as JSON under ``key``."""
    conn.execute(
        """INSERT INTO settings (key, value) VALUES (?, ?)
           ON CONFLICT(key) DO UPDATE SET value = excluded.value""",
        (key, json.dumps(value)),
    )


# ---------------------------------------------------------------------------
# Backup
# ---------------------------------------------------------------------------


def export_database(conn: sqlite3.Connection, dest: Path) -> Path:
    """Write a consistent copy of the open database to ``dest``."""
    dest = Path(dest).expanduser()
    dest.parent.mkdir(parents=True, exist_ok=True)
    target = sqlite3.connect(str(dest))
    try:
        conn.backup(target)
    except sqlite3.Error as exc:
        raise StoreError(f"Export failed: {exc}") from exc
    finally:
        target.close()
    log.info("Database exported to %s", dest)
    return dest


def _check_importable(source: Path) -> None:
    try:
        candidate = sqlite3.connect(f"{source.resolve().as_uri()}?mode=ro", uri=True)
        try:
            candidate.execute("SELECT id, title, status FROM tasks LIMIT 1").fetchall()
        finally:
            candidate.close()
    except sqlite3.Error as exc:
        raise InvalidInputError(f"{source} is not a flowtask database: {exc}") from exc


def import_database(
    source: Path, db_path: Path, now: Optional[datetime] = None
) -> Optional[Path]:
    """Replace the database at ``db_path`` with ``source``.

    The current file is first copied next to it as
    ``<name>-backup-<timestamp>.db``; that path is returned, or None when
    there was nothing to back up. Nothing may hold the database open while it
    is replaced.
    """
    source = Path(source).expanduser()
    if not source.is_file():
        raise InvalidInputError(f"{source} does not exist")
    _check_importable(source)

    now = now or datetime.now()
    backup_path: Optional[Path] = None
    try:
        if db_path.exists():
            backup_path = db_path.with_name(
                f"{db_path.stem}-backup-{now:%Y%m%d-%H%M%S}{db_path.suffix}"
            )
            shutil.copy2(db_path, backup_path)
        shutil.copy2(source, db_path)
    except OSError as exc:
        raise StoreError(f"Import failed: {exc}") from exc
    log.info("Database imported from %s (backup at %s)", source, backup_path)
    return backup_path
