from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from math import sqrt
from pathlib import Path
import sqlite3


@dataclass(frozen=True)
class OverviewStats:
    active_prs: int
    escalated_prs: int
    completed_prs: int
    aborted_prs: int
    open_threads: int
    mean_runtime_seconds: float
    stddev_runtime_seconds: float


@dataclass(frozen=True)
class TrackedPullRequestRow:
    repo_full_name: str
    pr_number: int
    branch: str
    phase: str
    cycle_count: int
    thread_count: int
    unsettled_thread_count: int
    error: str | None
    updated_at: str


@dataclass(frozen=True)
class ThreadRow:
    thread_id: str
    path: str
    author_login: str
    severity: str | None
    decision: str | None
    status: str
    revision: int
    patch_ref: str | None


@dataclass(frozen=True)
class RunSummaryRow:
    repo_full_name: str
    pr_number: int
    outcome: str
    fixed_count: int
    ignored_count: int
    escalated_count: int
    elapsed_seconds: float
    detail: str
    created_at: str


def load_overview(
    db_path: Path, repo_filter: str | None = None, window: str = "24h"
) -> OverviewStats:
    with _connect(db_path) as conn:
        repo_clause, repo_params = _repo_filter_sql(repo_filter)
        thread_repo_clause, thread_repo_params = _repo_filter_sql(repo_filter, prefix="t")
        phase_counts = dict(
            conn.execute(
                f"""
                SELECT
                    CASE WHEN archived = 0 THEN 'active' ELSE phase END,
                    COUNT(*)
                FROM pr_states
                WHERE 1 = 1 {repo_clause}
                GROUP BY 1
                """,
                repo_params,
            ).fetchall()
        )
        open_threads = _fetch_int(
            conn,
            f"""
            SELECT COUNT(*)
            FROM review_threads AS t
            JOIN pr_states AS p
              ON p.repo_full_name = t.repo_full_name AND p.pr_number = t.pr_number
            WHERE p.archived = 0 AND t.status != 'resolved' {thread_repo_clause}
            """,
            thread_repo_params,
        )
        durations = [
            _as_float(row[0], "elapsed_seconds")
            for row in conn.execute(
                f"""
                SELECT elapsed_seconds
                FROM run_summaries
                WHERE created_at >= strftime('%Y-%m-%dT%H:%M:%fZ', 'now', ?)
                {repo_clause}
                """,
                (_window_modifier(window), *repo_params),
            ).fetchall()
        ]
    mean, stddev = _mean_and_stddev(durations)
    return OverviewStats(
        active_prs=_as_int(phase_counts.get("active"), "active"),
        escalated_prs=_as_int(phase_counts.get("escalated"), "escalated"),
        completed_prs=_as_int(phase_counts.get("completed"), "completed"),
        aborted_prs=_as_int(phase_counts.get("aborted"), "aborted"),
        open_threads=open_threads,
        mean_runtime_seconds=mean,
        stddev_runtime_seconds=stddev,
    )


def load_tracked_pull_requests(
    db_path: Path,
    repo_filter: str | None = None,
    *,
    include_archived: bool = True,
    limit: int | None = 200,
) -> tuple[TrackedPullRequestRow, ...]:
    repo_clause, repo_params = _repo_filter_sql(repo_filter, prefix="p")
    archived_clause = "" if include_archived else "AND p.archived = 0"
    limit_clause, limit_params = _limit_sql(limit)
    with _connect(db_path) as conn:
        rows = conn.execute(
            f"""
            SELECT
                p.repo_full_name,
                p.pr_number,
                p.branch,
                p.phase,
                p.cycle_count,
                COUNT(t.thread_id),
                SUM(CASE WHEN t.status != 'resolved' THEN 1 ELSE 0 END),
                p.error,
                p.updated_at
            FROM pr_states AS p
            LEFT JOIN review_threads AS t
              ON t.repo_full_name = p.repo_full_name AND t.pr_number = p.pr_number
            WHERE 1 = 1 {repo_clause} {archived_clause}
            GROUP BY p.repo_full_name, p.pr_number
            ORDER BY p.archived ASC, p.updated_at DESC, p.pr_number DESC
            {limit_clause}
            """,
            (*repo_params, *limit_params),
        ).fetchall()
    return tuple(
        TrackedPullRequestRow(
            repo_full_name=_as_str(row[0], "repo_full_name"),
            pr_number=_as_int(row[1], "pr_number"),
            branch=_as_str(row[2], "branch"),
            phase=_as_str(row[3], "phase"),
            cycle_count=_as_int(row[4], "cycle_count"),
            thread_count=_as_int(row[5], "thread_count"),
            unsettled_thread_count=_as_int(row[6], "unsettled_thread_count"),
            error=_as_optional_str(row[7], "error"),
            updated_at=_as_str(row[8], "updated_at"),
        )
        for row in rows
    )


def load_threads(db_path: Path, *, repo_full_name: str, pr_number: int) -> tuple[ThreadRow, ...]:
    with _connect(db_path) as conn:
        rows = conn.execute(
            """
            SELECT thread_id, path, author_login, severity, decision, status, revision, patch_ref
            FROM review_threads
            WHERE repo_full_name = ? AND pr_number = ?
            ORDER BY thread_id ASC
            """,
            (repo_full_name, pr_number),
        ).fetchall()
    return tuple(
        ThreadRow(
            thread_id=_as_str(row[0], "thread_id"),
            path=_as_str(row[1], "path"),
            author_login=_as_str(row[2], "author_login"),
            severity=_as_optional_str(row[3], "severity"),
            decision=_as_optional_str(row[4], "decision"),
            status=_as_str(row[5], "status"),
            revision=_as_int(row[6], "revision"),
            patch_ref=_as_optional_str(row[7], "patch_ref"),
        )
        for row in rows
    )


def load_run_summaries(
    db_path: Path,
    repo_filter: str | None = None,
    *,
    limit: int | None = 50,
) -> tuple[RunSummaryRow, ...]:
    repo_clause, repo_params = _repo_filter_sql(repo_filter)
    limit_clause, limit_params = _limit_sql(limit)
    with _connect(db_path) as conn:
        rows = conn.execute(
            f"""
            SELECT repo_full_name, pr_number, outcome, fixed_count, ignored_count,
                   escalated_count, elapsed_seconds, detail, created_at
            FROM run_summaries
            WHERE 1 = 1 {repo_clause}
            ORDER BY summary_id DESC
            {limit_clause}
            """,
            (*repo_params, *limit_params),
        ).fetchall()
    return tuple(
        RunSummaryRow(
            repo_full_name=_as_str(row[0], "repo_full_name"),
            pr_number=_as_int(row[1], "pr_number"),
            outcome=_as_str(row[2], "outcome"),
            fixed_count=_as_int(row[3], "fixed_count"),
            ignored_count=_as_int(row[4], "ignored_count"),
            escalated_count=_as_int(row[5], "escalated_count"),
            elapsed_seconds=_as_float(row[6], "elapsed_seconds"),
            detail=_as_str(row[7], "detail"),
            created_at=_as_str(row[8], "created_at"),
        )
        for row in rows
    )


def _mean_and_stddev(values: list[float]) -> tuple[float, float]:
    if not values:
        return 0.0, 0.0
    mean = sum(values) / len(values)
    if len(values) < 2:
        return mean, 0.0
    variance = sum((value - mean) ** 2 for value in values) / (len(values) - 1)
    return mean, sqrt(variance)


def _window_modifier(window: str) -> str:
    normalized = window.strip().lower()
    if normalized == "1h":
        return "-1 hours"
    if normalized == "24h":
        return "-24 hours"
    if normalized == "7d":
        return "-7 days"
    if normalized == "30d":
        return "-30 days"
    raise ValueError(f"Unsupported window: {window!r}")


def _repo_filter_sql(
    repo_filter: str | None, *, prefix: str | None = None
) -> tuple[str, tuple[str, ...]]:
    if repo_filter is None:
        return "", ()
    normalized = repo_filter.strip()
    if not normalized:
        return "", ()
    column = "repo_full_name" if prefix is None else f"{prefix}.repo_full_name"
    return f"AND {column} = ?", (normalized,)


def _limit_sql(limit: int | None) -> tuple[str, tuple[int, ...]]:
    if limit is None:
        return "", ()
    if limit < 1:
        raise ValueError("limit must be >= 1")
    return "LIMIT ?", (limit,)


@contextmanager
def _connect(db_path: Path) -> Iterator[sqlite3.Connection]:
    conn = sqlite3.connect(db_path)
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    try:
        yield conn
    finally:
        conn.close()


def _fetch_int(conn: sqlite3.Connection, sql: str, params: tuple[object, ...]) -> int:
    row = conn.execute(sql, params).fetchone()
    if row is None:
        raise RuntimeError("Expected count query to return a row")
    return _as_int(row[0], "count")


def _as_int(value: object, field: str) -> int:
    if isinstance(value, int):
        return value
    if value is None:
        return 0
    raise RuntimeError(f"Invalid {field} value in observability query result")


def _as_str(value: object, field: str) -> str:
    if not isinstance(value, str):
        raise RuntimeError(f"Invalid {field} value in observability query result")
    return value


def _as_optional_str(value: object, field: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise RuntimeError(f"Invalid {field} value in observability query result")
    return value


def _as_float(value: object, field: str) -> float:
    if isinstance(value, int | float):
        return float(value)
    raise RuntimeError(f"Invalid {field} value in observability query result")
