"""Textual TUI for terrawatch.

Shows running, completed and errored work side by side while an apply is in
progress, with a stats bar at the bottom. Everything shown is read from the
registry selectors on a timer; the TUI never writes to the registry itself.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal, Vertical
from textual.widgets import Footer, Header, Static

from .registry import WorkItem, WorkRegistry, WorkState
from .selectors import WorkSummary, completed_work, errored_work, running_work, summarize

ACTION_STYLE: dict[str, str] = {
    "create": "green",
    "update": "yellow",
    "delete": "red",
    "read": "cyan",
    "no-op": "dim",
}

STATE_STYLE: dict[WorkState, str] = {
    WorkState.DEFINED: "dim",
    WorkState.RUNNING: "yellow",
    WorkState.COMPLETED: "green",
    WorkState.ERROR: "red",
}


def _fmt_duration(seconds: float) -> str:
    """Format seconds as human-readable duration (e.g. '2m 15s')."""
    if seconds < 60:
        return f"{seconds:.0f}s"
    minutes = int(seconds // 60)
    secs = int(seconds % 60)
    if minutes < 60:
        return f"{minutes}m {secs:02d}s"
    hours = int(minutes // 60)
    mins = minutes % 60
    return f"{hours}h {mins:02d}m"


def format_work_line(item: WorkItem) -> str:
    """Plain one-line rendering: ``<work> <resource>`` plus outcome."""
    line = f"{item.work} {item.resource}"
    if item.state is WorkState.COMPLETED:
        return f"{line} ({_fmt_duration(item.duration)})"
    if item.state is WorkState.ERROR:
        return f"{line} failed after {_fmt_duration(item.duration)}: {item.error}"
    return line


# === Widgets ===


class WorkCard(Static):
    """A card representing a single work item."""

    @staticmethod
    def format_card(item: WorkItem) -> str:
        """Format a work item as a Rich-markup string."""
        action = ACTION_STYLE.get(item.work, "white")
        style = STATE_STYLE.get(item.state, "white")
        lines = [f"[bold {action}]{item.work}[/] {item.resource}"]

        if item.state is WorkState.RUNNING:
            lines.append(f"  [{style}]{_fmt_duration(item.duration)}[/]")
        elif item.state is WorkState.COMPLETED:
            lines.append(f"  [{style}]done in {_fmt_duration(item.duration)}[/]")
        elif item.state is WorkState.ERROR:
            error = str(item.error)
            short_err = error[:40] + ".." if len(error) > 40 else error
            lines.append(f"  [{style}]{short_err}[/]")

        return "\n".join(lines)


class StatsBar(Static):
    """Bottom bar showing aggregate statistics."""

    @staticmethod
    def format_stats(summary: WorkSummary, status: str = "") -> str:
        pct = (summary.finished * 100 // summary.total) if summary.total > 0 else 0
        text = (
            f"[bold]Changes:[/] {summary.finished}/{summary.total} ({pct}%)  |  "
            f"[yellow]Running: {summary.running}[/]  "
            f"[green]Done: {summary.completed}[/]  "
            f"[red]Failed: {summary.errored}[/]"
        )
        if status:
            text += f"  |  {status}"
        return text


class WorkColumn(Vertical):
    """A single column of work cards."""

    def __init__(self, title: str, **kwargs: object) -> None:
        super().__init__(**kwargs)
        self.border_title = title


class TerrawatchApp(App[None]):
    """Live view of an apply run."""

    TITLE = "terrawatch"

    CSS = """
    Screen {
        layout: vertical;
    }

    #board {
        height: 1fr;
    }

    WorkColumn {
        width: 1fr;
        border: solid $secondary;
        padding: 1;
        overflow-y: auto;
    }

    #col-running {
        border: solid $warning;
    }

    #col-completed {
        border: solid $success;
    }

    #col-errored {
        border: solid $error;
    }

    WorkCard {
        margin-bottom: 1;
        padding: 0 1;
    }

    #stats-bar {
        dock: bottom;
        height: 1;
        background: $surface;
        padding: 0 2;
    }
    """

    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("c", "cancel", "Cancel apply"),
    ]

    def __init__(
        self,
        registry: WorkRegistry,
        job: Callable[[], Awaitable[object]] | None = None,
        refresh_interval: float = 0.5,
    ) -> None:
        super().__init__()
        self.registry = registry
        self.job = job
        self.refresh_interval = refresh_interval
        self.result: object | None = None
        self.failure: BaseException | None = None
        self._status = ""

    def compose(self) -> ComposeResult:
        """Build the widget tree."""
        yield Header()
        with Horizontal(id="board"):
            yield WorkColumn("Running", id="col-running")
            yield WorkColumn("Completed", id="col-completed")
            yield WorkColumn("Errored", id="col-errored")
        yield StatsBar(id="stats-bar")
        yield Footer()

    def on_mount(self) -> None:
        """Start the apply job and the periodic refresh."""
        self.refresh_board()
        self.set_interval(self.refresh_interval, self.refresh_board)
        if self.job is not None:
            self._status = "applying"
            self.run_worker(self._run_job(), exclusive=True)

    async def _run_job(self) -> None:
        assert self.job is not None
        try:
            self.result = await self.job()
            self._status = "[green]finished[/] (q to quit)"
        except Exception as e:
            self.failure = e
            self._status = f"[red]failed: {e}[/] (q to quit)"
        self.refresh_board()

    def refresh_board(self) -> None:
        """Re-read the registry and redraw every column."""
        items = self.registry.snapshot()
        columns = {
            "#col-running": running_work(items),
            "#col-completed": completed_work(items),
            "#col-errored": errored_work(items),
        }
        for selector, work in columns.items():
            column = self.query_one(selector, WorkColumn)
            column.remove_children()
            for item in work:
                column.mount(WorkCard(WorkCard.format_card(item)))

        stats_bar = self.query_one("#stats-bar", StatsBar)
        stats_bar.update(StatsBar.format_stats(summarize(items), self._status))

    def action_cancel(self) -> None:
        """Cancel the running apply; running items are marked as errored."""
        self.workers.cancel_all()
        self._status = "[red]cancelled[/] (q to quit)"

    def action_quit(self) -> None:
        """Quit the TUI."""
        self.exit()
