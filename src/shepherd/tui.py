"""Textual TUI dashboard for shepherd.

Shows jobs running in any project, the tail of this project's current log,
and the state of the last job launched here.
"""

from __future__ import annotations

import contextlib
from pathlib import Path

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical
from textual.widgets import Footer, Header, Static

from .config import SupervisorConfig
from .registry import GlobalJob, JobRegistry
from .state import check_pause_requested, clear_pause_file, request_pause
from .tail import LogCursor, find_current_log, strip_prefix

STATE_STYLE: dict[str, str] = {
    "running": "green",
    "paused": "yellow",
    "finished": "dim",
    "never run": "dim",
}


# === Widgets ===


class JobsTable(Static):
    """Jobs running anywhere, from the global registry."""

    @staticmethod
    def format_jobs(jobs: list[GlobalJob], width: int = 40) -> str:
        """Format jobs as a Rich-markup table.

        Args:
            jobs: Live jobs from JobRegistry.list_global().
            width: Column width for the working directory.

        Returns:
            Rich-markup formatted string.
        """
        if not jobs:
            return "[dim]No active jobs[/]"
        lines = [f"[bold]{'JOB':>8}  {'DIRECTORY':<{width}}  COMMAND[/]"]
        for job in jobs:
            directory = str(job.working_directory)
            if len(directory) > width:
                directory = ".." + directory[-(width - 2) :]
            command = job.launch_command
            if len(command) > 60:
                command = command[:58] + ".."
            lines.append(f"{job.job_id:>8}  {directory:<{width}}  {command}")
        return "\n".join(lines)


class LogPanel(Static):
    """Scrolling tail of the current job log."""

    MAX_LINES = 100

    def __init__(self, **kwargs: object) -> None:
        super().__init__(**kwargs)
        self._lines: list[str] = []
        self._cursor: LogCursor | None = None

    @staticmethod
    def format_line(line: str) -> str:
        """Strip the machine-readable prefix and trailing whitespace."""
        return strip_prefix(line).rstrip()

    def read_new_lines(self, path: Path) -> list[str]:
        """Read lines appended to path since the last call.

        Switching to a different log starts over from its beginning.
        """
        if self._cursor is None or self._cursor.path != path:
            self._cursor = LogCursor(path)
            self._lines = []
        new = [self.format_line(line) for line in self._cursor.read_new_lines()]
        self._lines = (self._lines + new)[-self.MAX_LINES :]
        return new

    def render_log(self) -> str:
        if not self._lines:
            return "[dim]No log entries yet[/]"
        return "\n".join(line.replace("[", "\\[") for line in self._lines)


class StatusBar(Static):
    """Bottom bar with the last job launched here."""

    @staticmethod
    def format_status(job_id: int | None, state: str) -> str:
        style = STATE_STYLE.get(state, "white")
        job = str(job_id) if job_id is not None else "-"
        return f"[bold]Last job:[/] {job}  |  [bold]State:[/] [{style}]{state}[/]"


# === App ===


class ShepherdApp(App[None]):
    """Textual TUI app showing live job state for shepherd."""

    TITLE = "shepherd"

    CSS = """
    Screen {
        layout: vertical;
    }

    #jobs {
        height: auto;
        max-height: 12;
        border: solid $primary-darken-1;
        padding: 0 1;
    }

    #log-box {
        height: 1fr;
        border: solid $secondary;
        padding: 0 1;
        overflow-y: auto;
    }

    #status-bar {
        dock: bottom;
        height: 1;
        background: $surface;
        padding: 0 2;
    }
    """

    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("p", "toggle_pause", "Pause/resume"),
    ]

    def __init__(self, config: SupervisorConfig | None = None) -> None:
        super().__init__()
        self._config = config

    def compose(self) -> ComposeResult:
        yield Header()
        yield JobsTable(id="jobs")
        with Vertical(id="log-box"):
            yield LogPanel(id="log")
        yield StatusBar(id="status-bar")
        yield Footer()

    def on_mount(self) -> None:
        self.refresh_dashboard()
        self.set_interval(2.0, self.refresh_dashboard)

    def refresh_dashboard(self) -> None:
        if self._config is None:
            return
        # A registry entry may vanish mid-read; skip this tick
        with contextlib.suppress(OSError):
            self._do_refresh(self._config)

    def _do_refresh(self, config: SupervisorConfig) -> None:
        registry = JobRegistry(config)
        self.query_one("#jobs", JobsTable).update(JobsTable.format_jobs(registry.list_global()))

        panel = self.query_one("#log", LogPanel)
        log_file = find_current_log(config.logs_dir)
        if log_file is not None:
            panel.read_new_lines(log_file)
        panel.update(panel.render_log())

        job_id = registry.most_recent_job()
        self.query_one("#status-bar", StatusBar).update(
            StatusBar.format_status(job_id, registry.describe(job_id))
        )

    def action_toggle_pause(self) -> None:
        """Create or remove the pause marker for the last job."""
        if self._config is None:
            return
        if check_pause_requested(self._config):
            clear_pause_file(self._config)
        else:
            request_pause(self._config, JobRegistry(self._config).most_recent_job())
        self.refresh_dashboard()

    def action_quit(self) -> None:
        self.exit()
