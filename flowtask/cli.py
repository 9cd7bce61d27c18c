"""flowtask CLI -- focus, waits and GPU training runs from the terminal."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date
from pathlib import Path
from typing import Optional

import typer

from flowtask import config as cfg
from flowtask import db, display
from flowtask.exceptions import FlowtaskError
from flowtask.logging_setup import setup_logging
from flowtask.models import TaskKind, TaskStatus
from flowtask.notifier import ConsoleNotifier
from flowtask.timer import TimerEngine

app = typer.Typer(
    name="flowtask",
    help="Track focus sessions, waits and GPU training runs.",
    no_args_is_help=True,
)
gpu_app = typer.Typer(help="Manage shared GPUs.", no_args_is_help=True)
settings_app = typer.Typer(help="Show or change reminder settings.", no_args_is_help=True)
project_app = typer.Typer(help="Group tasks into projects.", no_args_is_help=True)
app.add_typer(gpu_app, name="gpu")
app.add_typer(project_app, name="project")
app.add_typer(settings_app, name="settings")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show engine log messages"),
) -> None:
    setup_logging(logging.INFO if verbose else logging.WARNING)


@contextmanager
def _engine() -> Iterator[TimerEngine]:
    """Open the database and an engine for one command; report engine errors."""
    conn = db.get_connection()
    # Countdowns started here are announced by `serve`, which adopts them.
    engine = TimerEngine(conn, ConsoleNotifier(bell=False), reconcile=False)
    try:
        yield engine
    except FlowtaskError as exc:
        display.print_warning(str(exc))
        raise typer.Exit(1)
    finally:
        engine.shutdown()
        conn.close()


# ---------------------------------------------------------------------------
# Task management
# ---------------------------------------------------------------------------


@app.command()
def add(
    title: str = typer.Argument(..., help="What do you need to do?"),
    kind: TaskKind = typer.Option(TaskKind.STANDARD, "--kind", "-k", help="Task kind"),
    tag: Optional[str] = typer.Option(None, "--tag", help="Free-form tag"),
    project: Optional[int] = typer.Option(None, "--project", "-p", help="Project ID"),
    parent: Optional[int] = typer.Option(None, "--parent", help="Parent task ID"),
    estimate: Optional[int] = typer.Option(
        None, "--estimate", "-e", help="Expected length in minutes"
    ),
) -> None:
    """Add a new task to the queue."""
    with _engine() as engine:
        task = engine.create_task(
            title,
            kind=kind,
            tag=tag,
            project_id=project,
            parent_id=parent,
            estimated_duration_minutes=estimate,
        )
        display.print_success(f"Added task #{task.id}: {task.title}")


@app.command(name="list")
def list_tasks(
    all_tasks: bool = typer.Option(False, "--all", "-a", help="Include archived tasks"),
) -> None:
    """List your tasks."""
    with _engine() as engine:
        tasks = engine.list_tasks()
        if not all_tasks:
            tasks = [t for t in tasks if t.status is not TaskStatus.ARCHIVED]
        order = [TaskStatus.ACTIVE, TaskStatus.WAITING, TaskStatus.QUEUED, TaskStatus.ARCHIVED]
        tasks.sort(key=lambda t: order.index(t.status))
        display.print_task_list(tasks, title="Tasks")


@app.command()
def edit(
    task_id: int = typer.Argument(..., help="ID of the task to edit"),
    title: Optional[str] = typer.Option(None, "--title", "-t", help="New title"),
    tag: Optional[str] = typer.Option(None, "--tag", help="New tag"),
    project: Optional[int] = typer.Option(None, "--project", "-p", help="Move to this project"),
    parent: Optional[int] = typer.Option(None, "--parent", help="Move under this task"),
    estimate: Optional[int] = typer.Option(None, "--estimate", "-e", help="Minutes"),
    next_action: Optional[bool] = typer.Option(
        None, "--next/--not-next", help="Mark or unmark as a next action"
    ),
) -> None:
    """Change a task's title, tag, project, parent, estimate or next-action flag."""
    changes: dict[str, object] = {}
    if title is not None:
        changes["title"] = title
    if tag is not None:
        changes["tag"] = tag
    if project is not None:
        changes["project_id"] = project
    if parent is not None:
        changes["parent_id"] = parent
    if estimate is not None:
        changes["estimated_duration_minutes"] = estimate
    if next_action is not None:
        changes["is_next_action"] = next_action
    if not changes:
        display.print_info("Nothing to change.")
        return
    with _engine() as engine:
        task = engine.update_task(task_id, changes)
        display.print_success(f"Updated #{task.id}: {task.title}")


@app.command()
def delete(task_id: int = typer.Argument(..., help="ID of the task to delete")) -> None:
    """Delete a task permanently."""
    with _engine() as engine:
        engine.delete_task(task_id)
        display.print_success(f"Deleted task #{task_id}.")


@app.command()
def done(task_id: int = typer.Argument(..., help="ID of the task to mark complete")) -> None:
    """Mark a task as done (archives it and its sub-tasks)."""
    with _engine() as engine:
        follow_up = engine.complete_task(task_id)
        display.print_success(f"Completed task #{task_id}.")
        if follow_up is not None:
            display.print_info(f"Next up: #{follow_up.id} {follow_up.title}")


@app.command()
def show(task_id: int = typer.Argument(..., help="Task ID")) -> None:
    """Show a task with its context memo."""
    with _engine() as engine:
        task = engine.get_task(task_id)
        if task is None:
            display.print_warning(f"Task #{task_id} not found.")
            raise typer.Exit(1)
        display.print_task_detail(task)


@app.command()
def memo(
    task_id: int = typer.Argument(..., help="Task ID"),
    text: str = typer.Argument(..., help="Where you left off, what to do next"),
) -> None:
    """Append a line to a task's context memo."""
    with _engine() as engine:
        engine.append_memo(task_id, text)
        display.print_success(f"Memo added to #{task_id}.")


@app.command()
def suggest(
    max_minutes: Optional[int] = typer.Option(
        None, "--max-minutes", "-m", help="Only tasks estimated to fit in this many minutes"
    ),
) -> None:
    """Suggest queued tasks that fit the time you have."""
    with _engine() as engine:
        title = "Suggestions" if max_minutes is None else f"Fits in {max_minutes} min"
        display.print_task_list(engine.suggestions(max_minutes), title=title)


@app.command()
def clear(
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Delete every task and the focus history."""
    if not yes and not typer.confirm("Delete all tasks and history?"):
        display.print_info("Nothing deleted.")
        return
    with _engine() as engine:
        removed = engine.delete_all_tasks()
        display.print_success(f"Deleted {removed} tasks.")


# ---------------------------------------------------------------------------
# Focus & waits
# ---------------------------------------------------------------------------


@app.command()
def focus(task_id: int = typer.Argument(..., help="Task ID to focus on")) -> None:
    """Start the focus stopwatch on a task (stops any other focus)."""
    with _engine() as engine:
        task = engine.start_focus(task_id)
        display.print_info(f'Focusing on: "{task.title}"')


@app.command()
def stop() -> None:
    """Stop the running focus session."""
    with _engine() as engine:
        if engine.stop_focus():
            display.print_success("Focus session stopped.")
        else:
            display.print_info("No focus session running.")


@app.command()
def wait(
    task_id: int = typer.Argument(..., help="Task ID to wait on"),
    minutes: int = typer.Option(..., "--minutes", "-m", help="Countdown length in minutes"),
) -> None:
    """Park a task on a countdown and get reminded when it ends."""
    with _engine() as engine:
        engine.start_wait(task_id, minutes * 60)
        display.print_info(f"Task #{task_id} waiting for {minutes} min.")


@app.command()
def cancel(task_id: int = typer.Argument(..., help="Task ID whose wait to cancel")) -> None:
    """Cancel a countdown (ad-hoc and training tasks are removed)."""
    with _engine() as engine:
        engine.cancel_wait(task_id)
        display.print_success(f"Cancelled wait on #{task_id}.")


@app.command()
def snooze(
    task_id: int = typer.Argument(..., help="Task ID to snooze"),
    minutes: int = typer.Option(5, "--minutes", "-m", help="Snooze length in minutes"),
) -> None:
    """Push a reminder back by a few minutes."""
    with _engine() as engine:
        engine.snooze_reminder(task_id, minutes)
        display.print_info(f"Snoozed #{task_id} for {minutes} min.")


@app.command()
def timers() -> None:
    """Show running stopwatches and countdowns."""
    with _engine() as engine:
        display.print_timers(engine.timer_views())


# ---------------------------------------------------------------------------
# Training
# ---------------------------------------------------------------------------


@app.command()
def train(
    task_id: int = typer.Argument(..., help="Training task ID"),
    gpu: int = typer.Option(..., "--gpu", "-g", help="GPU ID to run on"),
    minutes: int = typer.Option(..., "--minutes", "-m", help="Expected run time in minutes"),
) -> None:
    """Start a training run on a GPU (pauses whatever was running there)."""
    with _engine() as engine:
        engine.start_training(task_id, gpu, minutes * 60)
        display.print_info(f"Training #{task_id} on GPU #{gpu} for {minutes} min.")


@app.command(name="stop-training")
def stop_training(
    task_id: int = typer.Argument(..., help="Training task ID"),
    complete: bool = typer.Option(False, "--complete", "-c", help="Treat the run as finished"),
) -> None:
    """Stop a training run, either finished or back to the queue."""
    with _engine() as engine:
        follow_up = engine.stop_training(task_id, force_complete=complete)
        if follow_up is not None:
            display.print_success(f"Training #{task_id} archived.")
            display.print_info(f"Next up: #{follow_up.id} {follow_up.title}")
        else:
            display.print_info(f"Training #{task_id} stopped and queued.")


@gpu_app.command(name="add")
def gpu_add(name: str = typer.Argument(..., help="GPU name")) -> None:
    """Register a GPU."""
    with _engine() as engine:
        resource = engine.add_resource(name)
        display.print_success(f"Added GPU #{resource.id}: {resource.name}")


@gpu_app.command(name="list")
def gpu_list() -> None:
    """List GPUs and what they are running."""
    with _engine() as engine:
        display.print_resources(engine.list_resources())


@gpu_app.command(name="remove")
def gpu_remove(gpu_id: int = typer.Argument(..., help="GPU ID")) -> None:
    """Remove a GPU (its training task returns to the queue)."""
    with _engine() as engine:
        engine.delete_resource(gpu_id)
        display.print_success(f"Removed GPU #{gpu_id}.")


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


@project_app.command(name="add")
def project_add(
    name: str = typer.Argument(..., help="Project name"),
    description: Optional[str] = typer.Option(None, "--description", "-d"),
    color: Optional[str] = typer.Option(None, "--color", help="Hex colour, e.g. #10b981"),
) -> None:
    """Create a project."""
    with _engine() as engine:
        project = engine.create_project(name, description=description, color=color)
        display.print_success(f"Added project #{project.id}: {project.name}")


@project_app.command(name="list")
def project_list() -> None:
    """List projects with open task counts and focused time."""
    with _engine() as engine:
        display.print_projects(engine.list_projects())


@project_app.command(name="edit")
def project_edit(
    project_id: int = typer.Argument(..., help="Project ID"),
    name: Optional[str] = typer.Option(None, "--name", "-n"),
    description: Optional[str] = typer.Option(None, "--description", "-d"),
    color: Optional[str] = typer.Option(None, "--color"),
) -> None:
    """Rename or recolour a project."""
    changes = {
        key: value
        for key, value in (("name", name), ("description", description), ("color", color))
        if value is not None
    }
    if not changes:
        display.print_info("Nothing to change.")
        return
    with _engine() as engine:
        project = engine.update_project(project_id, changes)
        display.print_success(f"Updated project #{project.id}: {project.name}")


@project_app.command(name="remove")
def project_remove(project_id: int = typer.Argument(..., help="Project ID")) -> None:
    """Delete a project (its tasks are kept)."""
    with _engine() as engine:
        engine.delete_project(project_id)
        display.print_success(f"Removed project #{project_id}.")


# ---------------------------------------------------------------------------
# History & settings
# ---------------------------------------------------------------------------


@app.command()
def history(
    day: Optional[str] = typer.Option(None, "--date", "-d", help="Only this day (YYYY-MM-DD)"),
) -> None:
    """Show recorded focus sessions."""
    for_date = None
    if day:
        try:
            for_date = date.fromisoformat(day)
        except ValueError:
            display.print_warning(f"'{day}' is not a YYYY-MM-DD date.")
            raise typer.Exit(1)
    with _engine() as engine:
        display.print_history(engine.list_history(for_date))


@settings_app.command(name="show")
def settings_show() -> None:
    """Show the reminder settings in effect."""
    with _engine() as engine:
        display.print_settings(engine.settings())


@settings_app.command(name="set")
def settings_set(
    key: str = typer.Argument(..., help=f"One of: {', '.join(cfg.KNOWN_SETTINGS)}"),
    value: str = typer.Argument(..., help='JSON value, e.g. 30 or {"start": 22, "end": 7}'),
) -> None:
    """Change a reminder setting."""
    if key not in cfg.KNOWN_SETTINGS:
        display.print_warning(f"Unknown setting '{key}'.")
        raise typer.Exit(1)
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        parsed = value
    with _engine() as engine:
        engine.set_setting(key, parsed)
        display.print_settings(engine.settings())


@app.command()
def config(
    db_path: Optional[str] = typer.Option(
        None, "--db-path",
        help="Set a custom database file path",
    ),
    reset: bool = typer.Option(False, "--reset", help="Reset to default local DB"),
    show: bool = typer.Option(False, "--show", help="Show current config"),
) -> None:
    """Configure where your data is stored."""
    if db_path:
        result = cfg.set_db_path(db_path)
        display.print_success(f"Database path set to: {result.db_path}")
    elif reset:
        cfg.reset_db_path()
        display.print_success("Reset to default local database.")
    elif show:
        current = cfg.load_config()
        resolved = cfg.get_db_path()
        if current.db_path:
            display.print_info(f"Database: {current.db_path}")
        else:
            display.print_info(f"Database: {resolved} (default)")
        display.print_info(f"Hook: {current.hook_host}:{current.hook_port}")
    else:
        display.print_info("Use --db-path, --reset, or --show.")


@app.command(name="export")
def export_db(
    path: Optional[Path] = typer.Argument(None, help="Where to write the copy"),
) -> None:
    """Write a copy of the database."""
    dest = path or Path(f"flowtask-backup-{date.today():%Y-%m-%d}.db")
    with _engine() as engine:
        written = engine.export_database(dest)
        display.print_success(f"Exported to {written}")


@app.command(name="import")
def import_db(
    path: Path = typer.Argument(..., help="A database written by `flowtask export`"),
) -> None:
    """Replace the database with an exported copy (the current one is backed up)."""
    try:
        backup = db.import_database(path, db._get_db_path())
    except FlowtaskError as exc:
        display.print_warning(str(exc))
        raise typer.Exit(1)
    if backup is not None:
        display.print_info(f"Previous database saved to {backup}")
    display.print_success(f"Imported {path}. Restart `flowtask serve` if it is running.")


# ---------------------------------------------------------------------------
# Long-running service
# ---------------------------------------------------------------------------


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Hook listen address"),
    port: Optional[int] = typer.Option(None, "--port", help="Hook listen port"),
) -> None:
    """Keep timers running, nag about overdue reminders and idle GPUs, accept hooks."""
    from flowtask.hook import run_hook_server

    current = cfg.load_config()
    setup_logging(logging.INFO, current.log_file)

    conn = db.get_connection()
    engine = TimerEngine(conn, ConsoleNotifier())
    engine.start(current.sweep_interval_seconds)
    display.print_info("flowtask is running. Press Ctrl-C to stop.")
    try:
        run_hook_server(engine, host or current.hook_host, port or current.hook_port)
    finally:
        engine.shutdown()
        conn.close()
