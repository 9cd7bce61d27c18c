"""Tests for the database layer."""

from __future__ import annotations

import sqlite3
from datetime import date, datetime, timedelta

import pytest

from flowtask import db
from flowtask.exceptions import (
    InvalidInputError,
    InvariantViolationError,
    ProjectNotFoundError,
    StoreError,
    TaskNotFoundError,
)
from flowtask.models import (
    HistoryEntryCreate,
    ProjectCreate,
    TaskCreate,
    TaskKind,
    TaskStatus,
    TimerKind,
)

from conftest import T0


class TestTasks:
    def test_add_and_get(self, conn) -> None:
        task = db.add_task(conn, TaskCreate(title="Write tests"), now=T0)
        assert task.id == 1
        assert task.title == "Write tests"
        assert task.status == TaskStatus.QUEUED
        assert task.created_at == T0

        fetched = db.get_task(conn, task.id)
        assert fetched is not None
        assert fetched.title == task.title

    def test_get_nonexistent(self, conn) -> None:
        assert db.get_task(conn, 9999) is None

    def test_duplicate_title_returns_existing(self, conn) -> None:
        a = db.add_task(conn, TaskCreate(title="Same"))
        b = db.add_task(conn, TaskCreate(title="Same", kind=TaskKind.AD_HOC))
        assert a.id == b.id
        assert b.kind == TaskKind.STANDARD

    def test_missing_parent_rejected(self, conn) -> None:
        with pytest.raises(TaskNotFoundError):
            db.add_task(conn, TaskCreate(title="Orphan", parent_id=42))

    def test_list_filters(self, conn) -> None:
        a = db.add_task(conn, TaskCreate(title="A"), now=T0)
        b = db.add_task(conn, TaskCreate(title="B", kind=TaskKind.TRAINING), now=T0)
        c = db.add_task(conn, TaskCreate(title="C", parent_id=a.id), now=T0)
        db.update_task(conn, b.id, status=TaskStatus.ACTIVE)

        assert [t.id for t in db.list_tasks(conn)] == [a.id, b.id, c.id]
        assert [t.id for t in db.list_tasks(conn, status=TaskStatus.ACTIVE)] == [b.id]
        assert [t.id for t in db.list_tasks(conn, kind=TaskKind.TRAINING)] == [b.id]
        assert [t.id for t in db.list_tasks(conn, parent_id=a.id)] == [c.id]
        assert [t.id for t in db.list_tasks(conn, predicate=lambda t: t.title != "A")] == [
            b.id,
            c.id,
        ]

    def test_list_ordered_by_sort_order(self, conn) -> None:
        first = db.add_task(conn, TaskCreate(title="First"), now=T0)
        second = db.add_task(conn, TaskCreate(title="Second"), now=T0 + timedelta(seconds=1))
        db.update_task(conn, first.id, sort_order=second.sort_order + 1)
        assert [t.id for t in db.list_tasks(conn)] == [second.id, first.id]

    def test_update_converts_enums_and_bools(self, conn) -> None:
        task = db.add_task(conn, TaskCreate(title="x"))
        updated = db.update_task(conn, task.id, status=TaskStatus.WAITING, is_next_action=False)
        assert updated is not None
        assert updated.status == TaskStatus.WAITING
        assert updated.is_next_action is False

    def test_update_unknown_field(self, conn) -> None:
        task = db.add_task(conn, TaskCreate(title="x"))
        with pytest.raises(ValueError):
            db.update_task(conn, task.id, created_at=T0)

    def test_update_missing_task(self, conn) -> None:
        assert db.update_task(conn, 404, title="gone") is None

    def test_update_rejects_cycle(self, conn) -> None:
        a = db.add_task(conn, TaskCreate(title="A"))
        b = db.add_task(conn, TaskCreate(title="B", parent_id=a.id))
        with pytest.raises(InvariantViolationError):
            db.update_task(conn, a.id, parent_id=b.id)

    def test_delete_task_nulls_children(self, conn) -> None:
        a = db.add_task(conn, TaskCreate(title="A"))
        b = db.add_task(conn, TaskCreate(title="B", parent_id=a.id))
        assert db.delete_task(conn, a.id)
        assert db.get_task(conn, b.id).parent_id is None
        assert not db.delete_task(conn, a.id)


class TestTimers:
    def test_focus_timer_has_no_target(self, conn) -> None:
        task = db.add_task(conn, TaskCreate(title="x"))
        with pytest.raises(ValueError):
            db.add_timer(conn, task.id, TimerKind.FOCUS, started_at=T0, target_timestamp=T0)

    def test_countdown_needs_target(self, conn) -> None:
        task = db.add_task(conn, TaskCreate(title="x"))
        with pytest.raises(ValueError):
            db.add_timer(conn, task.id, TimerKind.WAIT, started_at=T0)

    def test_add_get_and_retarget(self, conn) -> None:
        task = db.add_task(conn, TaskCreate(title="x"))
        timer = db.add_timer(
            conn,
            task.id,
            TimerKind.WAIT,
            started_at=T0,
            target_timestamp=T0 + timedelta(minutes=10),
            original_duration_seconds=600,
        )
        assert db.get_timer(conn, task.id) == timer

        moved = db.set_timer_target(conn, task.id, T0 + timedelta(hours=1))
        assert moved.target_timestamp == T0 + timedelta(hours=1)
        assert moved.original_duration_seconds == 600

    def test_list_countdown_only(self, conn) -> None:
        a = db.add_task(conn, TaskCreate(title="a"))
        b = db.add_task(conn, TaskCreate(title="b"))
        db.add_timer(conn, a.id, TimerKind.FOCUS, started_at=T0)
        db.add_timer(conn, b.id, TimerKind.TRAINING, started_at=T0, target_timestamp=T0)
        assert [t.task_id for t in db.list_timers(conn, countdown_only=True)] == [b.id]
        assert [t.task_id for t in db.list_timers(conn, kind=TimerKind.FOCUS)] == [a.id]

    def test_timers_cascade_with_task(self, conn) -> None:
        task = db.add_task(conn, TaskCreate(title="x"))
        db.add_timer(conn, task.id, TimerKind.FOCUS, started_at=T0)
        db.delete_task(conn, task.id)
        assert db.list_timers(conn) == []

    def test_delete_timers(self, conn) -> None:
        task = db.add_task(conn, TaskCreate(title="x"))
        db.add_timer(conn, task.id, TimerKind.FOCUS, started_at=T0)
        db.add_timer(conn, task.id, TimerKind.FOCUS, started_at=T0)
        assert db.delete_timers(conn, task.id) == 2
        assert db.get_timer(conn, task.id) is None


class TestResources:
    def test_new_resource_is_idle(self, conn) -> None:
        gpu = db.add_resource(conn, "A100", now=T0)
        assert gpu.idle_since == T0
        assert gpu.active_task_id is None

    def test_active_task_is_derived(self, conn) -> None:
        gpu = db.add_resource(conn, "A100", now=T0)
        run = db.add_task(conn, TaskCreate(title="Run", kind=TaskKind.TRAINING))
        db.update_task(conn, run.id, status=TaskStatus.ACTIVE, resource_id=gpu.id)
        db.set_resource_idle(conn, gpu.id, None)

        (listed,) = db.list_resources(conn)
        assert listed.active_task_id == run.id
        assert listed.idle_since is None

        db.update_task(conn, run.id, status=TaskStatus.QUEUED)
        assert db.get_resource(conn, gpu.id).active_task_id is None

    def test_delete_resource_nulls_task_reference(self, conn) -> None:
        gpu = db.add_resource(conn, "A100")
        run = db.add_task(conn, TaskCreate(title="Run", kind=TaskKind.TRAINING))
        db.update_task(conn, run.id, resource_id=gpu.id)
        assert db.delete_resource(conn, gpu.id)
        assert db.get_task(conn, run.id).resource_id is None


class TestHistory:
    def _entry(self, task_id: int, start: datetime) -> HistoryEntryCreate:
        return HistoryEntryCreate(
            task_id=task_id, title="Work", start_time=start, end_time=start + timedelta(minutes=25)
        )

    def test_append_and_filter_by_date(self, conn) -> None:
        db.append_history(conn, self._entry(1, T0))
        db.append_history(conn, self._entry(1, T0 + timedelta(days=1)))

        assert len(db.list_history(conn)) == 2
        today = db.list_history(conn, for_date=date(2026, 3, 2))
        assert len(today) == 1
        assert today[0].duration_seconds == 1500

    def test_history_outlives_task(self, conn) -> None:
        task = db.add_task(conn, TaskCreate(title="Work"))
        db.append_history(conn, self._entry(task.id, T0))
        db.delete_task(conn, task.id)
        assert len(db.list_history(conn)) == 1

    def test_delete_history(self, conn) -> None:
        entry = db.append_history(conn, self._entry(1, T0))
        assert db.delete_history(conn, entry.id)
        assert db.list_history(conn) == []


class TestSettings:
    def test_json_values(self, conn) -> None:
        db.set_setting(conn, "window", {"start": 1, "end": 2})
        assert db.get_setting(conn, "window") == {"start": 1, "end": 2}
        assert db.has_setting(conn, "window")

    def test_default_when_missing(self, conn) -> None:
        assert db.get_setting(conn, "nope", 7) == 7
        assert not db.has_setting(conn, "nope")

    def test_raw_string_when_not_json(self, conn) -> None:
        conn.execute("INSERT INTO settings (key, value) VALUES ('raw', 'plain text')")
        assert db.get_setting(conn, "raw") == "plain text"

    def test_overwrite(self, conn) -> None:
        db.set_setting(conn, "n", 1)
        db.set_setting(conn, "n", 2)
        assert db.get_setting(conn, "n") == 2


class TestTransaction:
    def test_failure_rolls_back_and_raises_store_error(self, conn) -> None:
        with pytest.raises(StoreError):
            with db.transaction(conn):
                db.add_task(conn, TaskCreate(title="Rolled back"))
                db.add_timer(conn, 999, TimerKind.FOCUS, started_at=T0)
        assert db.list_tasks(conn) == []

    def test_commit_on_success(self, conn, tmp_path) -> None:
        with db.transaction(conn):
            db.add_task(conn, TaskCreate(title="Kept"))
        other = db.get_connection(db_path=tmp_path / "test.db")
        try:
            assert [t.title for t in db.list_tasks(other)] == ["Kept"]
        finally:
            other.close()


class TestProjects:
    def test_stats_cover_open_tasks_only(self, conn) -> None:
        project = db.add_project(conn, ProjectCreate(name="Thesis", color="#10b981"), now=T0)
        a = db.add_task(conn, TaskCreate(title="Outline", project_id=project.id))
        b = db.add_task(conn, TaskCreate(title="Draft", project_id=project.id))
        db.add_task(conn, TaskCreate(title="Elsewhere"))
        db.update_task(conn, a.id, total_duration_seconds=600)
        db.update_task(conn, b.id, total_duration_seconds=900, status=TaskStatus.ARCHIVED)

        fetched = db.get_project(conn, project.id)
        assert fetched.active_count == 1
        assert fetched.total_focused_seconds == 600
        assert fetched.created_at == T0

    def test_empty_project_has_zero_stats(self, conn) -> None:
        db.add_project(conn, ProjectCreate(name="Empty"))
        [project] = db.list_projects(conn)
        assert project.active_count == 0
        assert project.total_focused_seconds == 0
        assert project.color in db.PROJECT_COLORS

    def test_update(self, conn) -> None:
        project = db.add_project(conn, ProjectCreate(name="Old"))
        assert db.update_project(conn, project.id, name="New").name == "New"
        assert db.update_project(conn, 99, name="x") is None
        with pytest.raises(ValueError):
            db.update_project(conn, project.id, owner="me")

    def test_delete_unassigns_tasks(self, conn) -> None:
        project = db.add_project(conn, ProjectCreate(name="Garden"))
        task = db.add_task(conn, TaskCreate(title="Weed", project_id=project.id))
        assert db.delete_project(conn, project.id) is True
        assert db.get_task(conn, task.id).project_id is None
        assert db.delete_project(conn, project.id) is False

    def test_unknown_project_rejected(self, conn) -> None:
        with pytest.raises(ProjectNotFoundError):
            db.add_task(conn, TaskCreate(title="Orphan", project_id=5))


class TestMemoSuggestionsAndWipe:
    def test_append_memo(self, conn) -> None:
        task = db.add_task(conn, TaskCreate(title="Debug"))
        db.append_memo(conn, task.id, "repro in test_x")
        assert db.append_memo(conn, task.id, "bisect next").context_memo == (
            "repro in test_x\nbisect next"
        )
        assert db.append_memo(conn, 99, "nothing") is None

    def test_suggestions(self, conn) -> None:
        quick = db.add_task(
            conn, TaskCreate(title="Quick", estimated_duration_minutes=10), now=T0
        )
        db.add_task(
            conn,
            TaskCreate(title="Long", estimated_duration_minutes=120),
            now=T0 + timedelta(seconds=1),
        )
        done = db.add_task(
            conn, TaskCreate(title="Done", estimated_duration_minutes=5), now=T0
        )
        db.update_task(conn, done.id, status=TaskStatus.ARCHIVED)

        assert [t.id for t in db.list_suggestions(conn, max_minutes=30)] == [quick.id]
        assert [t.title for t in db.list_suggestions(conn)] == ["Quick", "Long"]
        assert len(db.list_suggestions(conn, limit=1)) == 1

    def test_delete_all_tasks(self, conn) -> None:
        task = db.add_task(conn, TaskCreate(title="A"))
        db.add_task(conn, TaskCreate(title="B", parent_id=task.id))
        db.add_timer(conn, task.id, TimerKind.FOCUS, started_at=T0)
        db.append_history(
            conn,
            HistoryEntryCreate(
                task_id=task.id, title="A", start_time=T0, end_time=T0 + timedelta(minutes=5)
            ),
        )
        db.set_setting(conn, "reminder_nag_interval", 5)

        assert db.delete_all_tasks(conn) == 2
        assert db.list_tasks(conn) == []
        assert db.list_timers(conn) == []
        assert db.list_history(conn) == []
        assert db.get_setting(conn, "reminder_nag_interval") == 5


class TestMigration:
    def test_old_database_gains_new_columns(self, tmp_path) -> None:
        path = tmp_path / "old.db"
        old = sqlite3.connect(str(path))
        old.execute(
            "CREATE TABLE tasks (id INTEGER PRIMARY KEY AUTOINCREMENT, title TEXT NOT NULL, "
            "status TEXT NOT NULL DEFAULT 'queued', kind TEXT NOT NULL DEFAULT 'standard', "
            "total_duration_seconds INTEGER NOT NULL DEFAULT 0, tag TEXT, project_id INTEGER, "
            "parent_id INTEGER, is_next_action INTEGER NOT NULL DEFAULT 1, "
            "sort_order REAL NOT NULL DEFAULT 0, resource_id INTEGER, created_at TEXT NOT NULL)"
        )
        old.execute(
            "INSERT INTO tasks (title, created_at) VALUES ('Legacy', ?)", (T0.isoformat(),)
        )
        old.commit()
        old.close()

        conn = db.get_connection(db_path=path)
        try:
            [task] = db.list_tasks(conn)
            assert task.title == "Legacy"
            assert task.context_memo is None
            assert db.append_memo(conn, task.id, "carried over").context_memo == "carried over"
        finally:
            conn.close()


class TestBackup:
    def test_export_then_import_restores_and_backs_up(self, conn, tmp_path) -> None:
        with db.transaction(conn):
            db.add_task(conn, TaskCreate(title="Before export"))
        exported = db.export_database(conn, tmp_path / "exports" / "snapshot.db")
        with db.transaction(conn):
            db.add_task(conn, TaskCreate(title="After export"))
        conn.close()

        live = tmp_path / "test.db"
        backup = db.import_database(exported, live, now=T0)
        assert backup == tmp_path / "test-backup-20260302-120000.db"

        restored = db.get_connection(db_path=live)
        saved = db.get_connection(db_path=backup)
        try:
            assert [t.title for t in db.list_tasks(restored)] == ["Before export"]
            assert [t.title for t in db.list_tasks(saved)] == ["Before export", "After export"]
        finally:
            restored.close()
            saved.close()

    def test_import_into_fresh_location_has_no_backup(self, conn, tmp_path) -> None:
        exported = db.export_database(conn, tmp_path / "snapshot.db")
        target = tmp_path / "new" / "flowtask.db"
        target.parent.mkdir()
        assert db.import_database(exported, target) is None
        assert target.exists()

    def test_import_rejects_non_database(self, tmp_path) -> None:
        bogus = tmp_path / "notes.db"
        bogus.write_text("just some notes")
        live = tmp_path / "live.db"
        with pytest.raises(InvalidInputError):
            db.import_database(bogus, live)
        assert not live.exists()

    def test_import_missing_file(self, tmp_path) -> None:
        with pytest.raises(InvalidInputError):
            db.import_database(tmp_path / "absent.db", tmp_path / "live.db")
