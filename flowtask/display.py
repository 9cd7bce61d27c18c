"""Rich terminal formatting helpers."""

from __future__ import annotations

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from flowtask.models import (
    GPU_IDLE_KIND,
    HOOK_KIND,
    EngineSettings,
    HistoryEntry,
    Project,
    ReminderSnapshot,
    Resource,
    Task,
    TaskKind,
    TaskStatus,
    TimerView,
)

console = Console()

_STATUS_STYLE: dict[TaskStatus, str] = {
    TaskStatus.QUEUED: "dim",
    TaskStatus.ACTIVE: "bold cyan",
    TaskStatus.WAITING: "yellow",
    TaskStatus.ARCHIVED: "green",
}

_STATUS_ICON: dict[TaskStatus, str] = {
    TaskStatus.QUEUED: "[ ]",
    TaskStatus.ACTIVE: "[~]",
    TaskStatus.WAITING: "[.]",
    TaskStatus.ARCHIVED: r"\[x]",
}


def format_duration(seconds: int) -> str:
    """Render seconds as ``1h 05m`` / ``12m 30s`` / ``-3m 10s``."""
    sign = "-" if seconds < 0 else ""
    seconds = abs(int(seconds))
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{sign}{hours}h {minutes:02d}m"
    return f"{sign}{minutes}m {secs:02d}s"


def print_task_list(tasks: list[Task], title: str = "Tasks") -> None:
    """Print a list of tasks in a panel."""
    if not tasks:
        console.print(Panel("No tasks.", title=title, border_style="dim"))
        return

    table = Table(show_header=False, box=None, pad_edge=False)
    table.add_column("status", width=3)
    table.add_column("id", width=5)
    table.add_column("title")
    table.add_column("kind", style="magenta")
    table.add_column("focused", justify="right")

    for task in tasks:
        kind = "" if task.kind is TaskKind.STANDARD else task.kind.value
        table.add_row(
            _STATUS_ICON[task.status],
            f"#{task.id}",
            ("  " if task.is_subtask else "") + task.title,
            kind,
            format_duration(task.total_duration_seconds) if task.total_duration_seconds else "",
            style=_STATUS_STYLE[task.status],
        )

    console.print(Panel(table, title=title, border_style="blue"))


def print_task_detail(task: Task) -> None:
    """Print every field of a single task, memo included."""
    lines = [
        f"Status: {task.status.value}",
        f"Kind: {task.kind.value}",
        f"Focused: {format_duration(task.total_duration_seconds)}",
    ]
    if task.estimated_duration_minutes:
        lines.append(f"Estimate: {task.estimated_duration_minutes} min")
    if task.tag:
        lines.append(f"Tag: {task.tag}")
    if task.project_id is not None:
        lines.append(f"Project: #{task.project_id}")
    if task.parent_id is not None:
        lines.append(f"Parent: #{task.parent_id}")
    body = Text("\n".join(lines))
    if task.context_memo:
        body.append("\n\n")
        body.append(task.context_memo, style="italic")
    console.print(Panel(body, title=f"#{task.id} {task.title}", border_style=_STATUS_STYLE[task.status]))


def print_timers(views: list[TimerView]) -> None:
    """Print running stopwatches and countdowns."""
    if not views:
        console.print(Panel("No timers running.", title="Timers", border_style="dim"))
        return

    table = Table(box=None, pad_edge=False)
    table.add_column("task")
    table.add_column("kind")
    table.add_column("time", justify="right")

    for view in views:
        if view.elapsed_seconds is not None:
            shown = format_duration(view.elapsed_seconds)
            style = "bold cyan"
        else:
            shown = format_duration(view.remaining_seconds or 0)
            style = "bold red" if view.is_overdue else "yellow"
        table.add_row(f"#{view.task_id} {view.title}", view.kind.value, shown, style=style)

    console.print(Panel(table, title="Timers", border_style="cyan"))


def print_resources(resources: list[Resource]) -> None:
    """Print GPUs and what they are doing."""
    if not resources:
        console.print(Panel("No GPUs registered.", title="GPUs", border_style="dim"))
        return

    table = Table(box=None, pad_edge=False)
    table.add_column("id", width=5)
    table.add_column("name")
    table.add_column("state")

    for r in resources:
        if r.active_task_id is not None:
            state = f"[bold green]training #{r.active_task_id}[/bold green]"
        elif r.idle_since is not None:
            state = f"[dim]idle since {r.idle_since:%H:%M}[/dim]"
        else:
            state = "[dim]idle[/dim]"
        table.add_row(f"#{r.id}", r.name, state)

    console.print(Panel(table, title="GPUs", border_style="green"))


def print_projects(projects: list[Project]) -> None:
    """Print projects with their open task count and focused time."""
    if not projects:
        console.print(Panel("No projects.", title="Projects", border_style="dim"))
        return

    table = Table(box=None, pad_edge=False)
    table.add_column("id", width=5)
    table.add_column("name")
    table.add_column("open", justify="right")
    table.add_column("focused", justify="right")

    for p in projects:
        table.add_row(
            f"#{p.id}",
            Text(p.name, style=p.color),
            str(p.active_count),
            format_duration(p.total_focused_seconds),
        )
    console.print(Panel(table, title="Projects", border_style="blue"))


def print_history(entries: list[HistoryEntry]) -> None:
    """Print focus history as a timeline."""
    if not entries:
        console.print(Panel("No history.", title="History", border_style="dim"))
        return

    table = Table(box=None, pad_edge=False)
    table.add_column("when")
    table.add_column("task")
    table.add_column("duration", justify="right")

    total = 0
    for e in entries:
        total += e.duration_seconds
        table.add_row(
            f"{e.start_time:%Y-%m-%d %H:%M}-{e.end_time:%H:%M}",
            e.title,
            format_duration(e.duration_seconds),
        )
    console.print(Panel(table, title=f"History ({format_duration(total)})", border_style="blue"))


def print_settings(settings: EngineSettings) -> None:
    quiet = settings.gpu_quiet_hours
    lines = [
        f"Nag interval: {settings.nag_interval_minutes} min",
        f"GPU idle interval: {settings.gpu_idle_interval_minutes} min",
        f"Quiet hours: {f'{quiet.start}:00-{quiet.end}:00' if quiet else 'off'}",
    ]
    console.print(Panel("\n".join(lines), title="Settings", border_style="green"))


def print_reminder(snapshot: ReminderSnapshot) -> None:
    """Print a timer-ended reminder."""
    if snapshot.kind == TaskKind.TRAINING.value:
        heading, style = "Training complete", "green"
    elif snapshot.kind == GPU_IDLE_KIND:
        heading, style = "GPU idle", "red"
    elif snapshot.kind == HOOK_KIND:
        heading, style = "Notification", "magenta"
    else:
        heading, style = "Timer finished", "yellow"
    body = snapshot.title if not snapshot.message else f"{snapshot.title}\n{snapshot.message}"
    console.print(Panel(Text(body, justify="center"), title=heading, border_style=style, padding=(1, 4)))


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]{message}[/green]")


def print_info(message: str) -> None:
    """Print an informational message."""
    console.print(f"[blue]{message}[/blue]")


def print_warning(message: str) -> None:
    """Print a warning message."""
    console.print(f"[yellow]{message}[/yellow]")
