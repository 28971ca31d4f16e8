from __future__ import annotations

from pathlib import Path

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical
from textual.widgets import DataTable, Footer, Header, Static

from prsettle.observability_queries import (
    OverviewStats,
    RunSummaryRow,
    ThreadRow,
    TrackedPullRequestRow,
    load_overview,
    load_run_summaries,
    load_threads,
    load_tracked_pull_requests,
)


_WINDOW_OPTIONS: tuple[str, ...] = ("1h", "24h", "7d", "30d")
_ERROR_MAX_CHARS = 48
_DETAIL_MAX_CHARS = 64


class ObservabilityApp(App[None]):
    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("r", "refresh", "Refresh"),
        Binding("f", "cycle_repo_filter", "Repo Filter"),
        Binding("w", "cycle_window", "Window"),
        Binding("tab", "cycle_focus", "Focus"),
    ]
    CSS = """
    Screen {
        layout: vertical;
    }
    .panel-title {
        text-style: bold;
        padding-left: 1;
    }
    #summary {
        height: 3;
        padding: 0 1;
    }
    DataTable {
        height: 1fr;
    }
    """

    def __init__(
        self,
        *,
        db_path: Path,
        refresh_seconds: int = 2,
        default_window: str = "24h",
        row_limit: int | None = 200,
    ) -> None:
        super().__init__()
        self._db_path = db_path
        self._refresh_seconds = refresh_seconds
        self._window = _normalize_window(default_window)
        self._row_limit = row_limit
        self._repo_filter: str | None = None
        self._available_repos: tuple[str, ...] = ()
        self._tracked_rows: tuple[TrackedPullRequestRow, ...] = ()
        self._thread_rows: tuple[ThreadRow, ...] = ()
        self._history_rows: tuple[RunSummaryRow, ...] = ()
        self._selected_pr: tuple[str, int] | None = None

    @property
    def tracked_rows(self) -> tuple[TrackedPullRequestRow, ...]:
        return self._tracked_rows

    @property
    def thread_rows(self) -> tuple[ThreadRow, ...]:
        return self._thread_rows

    @property
    def history_rows(self) -> tuple[RunSummaryRow, ...]:
        return self._history_rows

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with Vertical():
            yield Static("", id="summary")
            yield Static("Pull Requests", classes="panel-title")
            yield DataTable(id="tracked-table")
            yield Static("Review Threads", classes="panel-title")
            yield DataTable(id="threads-table")
            yield Static("Recent Runs", classes="panel-title")
            yield DataTable(id="history-table")
        yield Footer()

    def on_mount(self) -> None:
        self._init_tables()
        self.refresh_data()
        self.set_interval(self._refresh_seconds, self.refresh_data)

    def action_refresh(self) -> None:
        self.refresh_data()

    def action_cycle_window(self) -> None:
        self._window = _next_window(self._window)
        self.refresh_data()

    def action_cycle_repo_filter(self) -> None:
        self._repo_filter = _next_repo_filter(self._repo_filter, self._available_repos)
        self.refresh_data()

    def action_cycle_focus(self) -> None:
        self.screen.focus_next()

    def on_data_table_row_highlighted(self, event: DataTable.RowHighlighted) -> None:
        if event.data_table.id != "tracked-table":
            return
        if event.cursor_row < 0 or event.cursor_row >= len(self._tracked_rows):
            return
        row = self._tracked_rows[event.cursor_row]
        self._selected_pr = (row.repo_full_name, row.pr_number)
        self._refresh_threads_table()

    def refresh_data(self) -> None:
        overview = load_overview(self._db_path, self._repo_filter, self._window)
        self._tracked_rows = load_tracked_pull_requests(
            self._db_path, self._repo_filter, limit=self._row_limit
        )
        self._history_rows = load_run_summaries(
            self._db_path, self._repo_filter, limit=self._row_limit
        )
        if self._repo_filter is None:
            self._available_repos = tuple(
                sorted({row.repo_full_name for row in self._tracked_rows})
            )
        if self._selected_pr is None and self._tracked_rows:
            first = self._tracked_rows[0]
            self._selected_pr = (first.repo_full_name, first.pr_number)
        self.query_one("#summary", Static).update(
            _summary_text(overview=overview, repo_filter=self._repo_filter, window=self._window)
        )
        self._refresh_tracked_table()
        self._refresh_threads_table()
        self._refresh_history_table()

    def _init_tables(self) -> None:
        tracked = self.query_one("#tracked-table", DataTable)
        threads = self.query_one("#threads-table", DataTable)
        history = self.query_one("#history-table", DataTable)
        tracked.cursor_type = "row"
        tracked.add_columns(
            "Repo", "PR", "Phase", "Branch", "Cycles", "Threads", "Unsettled", "Error", "Updated"
        )
        threads.add_columns(
            "Thread", "Path", "Author", "Severity", "Decision", "Status", "Rev", "Commit"
        )
        history.add_columns(
            "Time", "Repo", "PR", "Outcome", "Fixed", "Ignored", "Escalated", "Elapsed", "Detail"
        )

    def _refresh_tracked_table(self) -> None:
        table = self.query_one("#tracked-table", DataTable)
        table.clear(columns=False)
        for row in self._tracked_rows:
            table.add_row(
                row.repo_full_name,
                str(row.pr_number),
                row.phase,
                row.branch,
                str(row.cycle_count),
                str(row.thread_count),
                str(row.unsettled_thread_count),
                _snippet(row.error, max_chars=_ERROR_MAX_CHARS),
                row.updated_at,
            )

    def _refresh_threads_table(self) -> None:
        table = self.query_one("#threads-table", DataTable)
        table.clear(columns=False)
        if self._selected_pr is None:
            self._thread_rows = ()
            return
        repo_full_name, pr_number = self._selected_pr
        self._thread_rows = load_threads(
            self._db_path, repo_full_name=repo_full_name, pr_number=pr_number
        )
        for row in self._thread_rows:
            table.add_row(
                row.thread_id,
                row.path or "-",
                row.author_login,
                row.severity or "-",
                row.decision or "-",
                row.status,
                str(row.revision),
                (row.patch_ref or "-")[:12],
            )

    def _refresh_history_table(self) -> None:
        table = self.query_one("#history-table", DataTable)
        table.clear(columns=False)
        for row in self._history_rows:
            table.add_row(
                row.created_at,
                row.repo_full_name,
                str(row.pr_number),
                row.outcome,
                str(row.fixed_count),
                str(row.ignored_count),
                str(row.escalated_count),
                _render_seconds(row.elapsed_seconds),
                _snippet(row.detail, max_chars=_DETAIL_MAX_CHARS),
            )


def run_observability_tui(
    *,
    db_path: Path,
    refresh_seconds: int,
    default_window: str,
    row_limit: int | None,
) -> None:
    app = ObservabilityApp(
        db_path=db_path,
        refresh_seconds=refresh_seconds,
        default_window=default_window,
        row_limit=row_limit,
    )
    app.run()


def _summary_text(*, overview: OverviewStats, repo_filter: str | None, window: str) -> str:
    return (
        " | ".join(
            [
                f"repo={repo_filter or 'all'}",
                f"window={window}",
                f"active={overview.active_prs}",
                f"open_threads={overview.open_threads}",
                f"completed={overview.completed_prs}",
                f"escalated={overview.escalated_prs}",
                f"aborted={overview.aborted_prs}",
                f"mean={_render_seconds(overview.mean_runtime_seconds)}",
                f"stddev={_render_seconds(overview.stddev_runtime_seconds)}",
            ]
        )
        + "\nKeys: r refresh | f repo filter | w window | tab focus | q quit"
    )


def _normalize_window(value: str) -> str:
    normalized = value.strip().lower()
    if normalized not in _WINDOW_OPTIONS:
        return "24h"
    return normalized


def _next_window(current: str) -> str:
    normalized = _normalize_window(current)
    idx = _WINDOW_OPTIONS.index(normalized)
    return _WINDOW_OPTIONS[(idx + 1) % len(_WINDOW_OPTIONS)]


def _next_repo_filter(current: str | None, available: tuple[str, ...]) -> str | None:
    options: tuple[str | None, ...] = (None, *available)
    if current not in options:
        return options[0]
    idx = options.index(current)
    return options[(idx + 1) % len(options)]


def _render_seconds(value: float) -> str:
    if value < 60:
        return f"{value:.1f}s"
    if value < 3600:
        return f"{value / 60.0:.1f}m"
    return f"{value / 3600.0:.2f}h"


def _snippet(value: str | None, *, max_chars: int) -> str:
    if not value:
        return "-"
    flattened = " ".join(value.split())
    if len(flattened) <= max_chars:
        return flattened
    return flattened[: max_chars - 3] + "..."
