"""stallguard - Textual dashboard over a running supervisor."""

from enum import Enum
from queue import Empty, Queue

from textual.app import App, ComposeResult
from textual.containers import Container, Horizontal
from textual.widgets import DataTable, Footer, Static

from stallguard.models import LoopPhase, ThreadStallState
from stallguard.supervisor import SupervisorLoop, SupervisorStatus


class SortKey(Enum):
    """Sort keys for the thread table."""

    DURATION = "duration"
    ATTEMPTS = "attempts"
    TID = "tid"


def format_bytes(size: int) -> str:
    """Format bytes as human-readable string."""
    for unit in ["B", "K", "M", "G", "T"]:
        if size < 1024:
            return f"{size:5.1f}{unit}" if unit != "B" else f"{size:5d}{unit}"
        size = size / 1024
    return f"{size:.1f}P"


def format_duration(seconds: float) -> str:
    """Format a duration as H:MM:SS."""
    seconds = int(seconds)
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours}:{minutes:02d}:{secs:02d}"


class HeaderStats(Static):
    """Header widget showing process and recovery budget statistics."""

    DEFAULT_CSS = """
    HeaderStats {
        height: auto;
        min-height: 5;
        padding: 1;
        background: $surface;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        """Initialize HeaderStats."""
        super().__init__(*args, **kwargs)
        self._status: SupervisorStatus | None = None

    @property
    def status(self) -> SupervisorStatus | None:
        return self._status

    def compose(self) -> ComposeResult:
        """Compose the header stats layout."""
        yield Horizontal(
            Static(self._get_process_info(), id="process-info"),
            Static(self._get_budget_info(), id="budget-info"),
        )

    def update_status(self, status: SupervisorStatus) -> None:
        """Update the statistics from a supervisor status."""
        self._status = status
        self._refresh_display()

    def _refresh_display(self) -> None:
        """Refresh the display with current data."""
        try:
            process_info = self.query_one("#process-info", Static)
            budget_info = self.query_one("#budget-info", Static)
            process_info.update(self._get_process_info())
            budget_info.update(self._get_budget_info())
        except Exception:
            pass  # Widget not mounted yet

    def _get_process_info(self) -> str:
        """Get process info display."""
        status = self._status
        if status is None:
            return "Waiting for supervisor..."
        if status.phase is LoopPhase.WAITING_FOR_PROCESS:
            return f"[yellow]Waiting for {status.target}[/yellow]"

        snapshot = status.snapshot
        if snapshot is None:
            return f"{status.target} (pid {status.pid}) - no sample yet"

        stability = "[green]stable[/green]" if status.stable else "[red]UNSTABLE[/red]"
        lines = [
            f"{status.target} (pid {status.pid}) {stability}",
            f"CPU {snapshot.cpu_percent:6.2f}%   Mem {format_bytes(snapshot.working_set)} "
            f"({snapshot.memory_delta:+d}B)",
            f"Threads {snapshot.thread_count}   Handles {snapshot.handle_count}   "
            f"Delayed {snapshot.delayed_thread_count}",
        ]
        for reason in status.instability_reasons:
            lines.append(f"[red]{reason}[/red]")
        return "\n".join(lines)

    def _get_budget_info(self) -> str:
        """Get recovery budget display."""
        status = self._status
        if status is None:
            return ""
        budget = status.budget
        lines = [
            f"Recoveries today: {budget.recoveries_today}",
            f"Succeeded: [green]{budget.successes}[/green]  Failed: [red]{budget.failures}[/red]  "
            f"Skipped: {budget.skipped}",
        ]
        if status.last_report is not None:
            lines.append(f"Last report: {status.last_report.name}")
        return "\n".join(lines)


class ThreadTable(Container):
    """Container for the stalled thread data table."""

    DEFAULT_CSS = """
    ThreadTable {
        height: 1fr;
        border: solid $primary;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        """Initialize ThreadTable."""
        super().__init__(*args, **kwargs)
        self._current_tids: set[int] = set()
        self._sort_key: SortKey = SortKey.DURATION
        self._sort_reverse: bool = True  # Default: longest stall first

    @property
    def sort_key(self) -> SortKey:
        """Get current sort key."""
        return self._sort_key

    def cycle_sort(self) -> SortKey:
        """Cycle to the next sort key and return it."""
        keys = list(SortKey)
        current_index = keys.index(self._sort_key)
        next_index = (current_index + 1) % len(keys)
        self._sort_key = keys[next_index]
        self._sort_reverse = self._sort_key in (SortKey.DURATION, SortKey.ATTEMPTS)
        return self._sort_key

    def compose(self) -> ComposeResult:
        """Compose the thread table."""
        yield DataTable(id="thread-table")

    def on_mount(self) -> None:
        """Initialize the data table when mounted."""
        table = self.query_one("#thread-table", DataTable)
        table.cursor_type = "row"

        table.add_column("TID", key="tid", width=8)
        table.add_column("STALLED", key="duration", width=10)
        table.add_column("OBS", key="observations", width=6)
        table.add_column("TRIES", key="attempts", width=6)
        table.add_column("STATE", key="lifecycle", width=11)
        table.add_column("PRI", key="priority", width=5)
        table.add_column("Wait reason", key="wait_reason")

    def update_threads(self, threads: list[ThreadStallState] | tuple[ThreadStallState, ...]) -> None:
        """
        Update the thread table with new data.

        Uses update_cell for existing rows to avoid re-rendering the whole table.
        """
        table = self.query_one("#thread-table", DataTable)

        sorted_threads = self._sort_threads(threads)
        new_tids = {entry.tid for entry in sorted_threads}

        # Remove rows for threads that are no longer tracked
        for tid in self._current_tids - new_tids:
            try:
                table.remove_row(str(tid))
            except Exception:
                pass  # Row may not exist

        for entry in sorted_threads:
            row_key = str(entry.tid)
            if entry.tid in self._current_tids:
                self._update_row(table, row_key, entry)
            else:
                self._add_row(table, row_key, entry)

        self._current_tids = new_tids

    def _sort_threads(
        self, threads: list[ThreadStallState] | tuple[ThreadStallState, ...]
    ) -> list[ThreadStallState]:
        """Sort threads based on the current sort key."""
        key_func = {
            SortKey.DURATION: lambda t: t.duration,
            SortKey.ATTEMPTS: lambda t: t.recovery_attempts,
            SortKey.TID: lambda t: t.tid,
        }
        return sorted(threads, key=key_func[self._sort_key], reverse=self._sort_reverse)

    def _update_row(self, table: DataTable, row_key: str, entry: ThreadStallState) -> None:
        """Update an existing row using update_cell for performance."""
        try:
            table.update_cell(row_key, "duration", format_duration(entry.duration))
            table.update_cell(row_key, "observations", str(entry.observations))
            table.update_cell(row_key, "attempts", str(entry.recovery_attempts))
            table.update_cell(row_key, "lifecycle", entry.lifecycle.value)
        except Exception:
            pass  # Row may have been removed

    def _add_row(self, table: DataTable, row_key: str, entry: ThreadStallState) -> None:
        """Add a new row to the table."""
        try:
            table.add_row(
                str(entry.tid),
                format_duration(entry.duration),
                str(entry.observations),
                str(entry.recovery_attempts),
                entry.lifecycle.value,
                str(entry.attributes.priority),
                entry.attributes.wait_reason[:40],
                key=row_key,
            )
        except Exception:
            pass  # Row may already exist


class StallguardApp(App):
    """Live dashboard for one supervised process."""

    TITLE = "stallguard"
    SUB_TITLE = "Process Stall Supervisor"

    CSS = """
    Screen {
        layout: vertical;
    }

    #header-stats {
        dock: top;
        height: auto;
        min-height: 6;
    }

    Horizontal {
        height: auto;
    }

    #process-info {
        width: 2fr;
        padding-right: 2;
    }

    #budget-info {
        width: 1fr;
        padding-left: 2;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("f6", "sort", "Sort"),
    ]

    def __init__(self, supervisor: SupervisorLoop, status_queue: Queue[SupervisorStatus]) -> None:
        """
        Initialize the StallguardApp.

        Args:
            supervisor: Loop to run in the background while the app is open.
            status_queue: Queue the supervisor publishes its status to.
        """
        super().__init__()
        self._supervisor = supervisor
        self._status_queue = status_queue

    def compose(self) -> ComposeResult:
        """Compose the application layout."""
        yield HeaderStats(id="header-stats")
        yield ThreadTable()
        yield Footer()

    def on_mount(self) -> None:
        """Start the supervisor when the app is mounted."""
        self._supervisor.start()
        self.set_interval(0.5, self._check_for_updates)

    def _check_for_updates(self) -> None:
        """Drain the status queue and render the most recent status."""
        status = None
        while True:
            try:
                status = self._status_queue.get_nowait()
            except Empty:
                break

        if status is not None:
            self._update_ui(status)

    def _update_ui(self, status: SupervisorStatus) -> None:
        """Update the UI with the new supervisor status."""
        try:
            header = self.query_one("#header-stats", HeaderStats)
            header.update_status(status)
            self.query_one(ThreadTable).update_threads(status.threads)
        except Exception:
            pass  # Screen is being torn down

    def action_sort(self) -> None:
        """Handle sort action - cycle through sort keys."""
        thread_table = self.query_one(ThreadTable)
        new_sort_key = thread_table.cycle_sort()
        self.notify(f"Sort: {new_sort_key.value.upper()}")

    def action_quit(self) -> None:
        """Stop the supervisor, then exit."""
        self._supervisor.stop()
        self.exit()
