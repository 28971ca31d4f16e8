from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import replace
import json
from pathlib import Path
import sqlite3
import threading
from typing import cast

from prsettle.models import (
    Decision,
    DecisionAction,
    Phase,
    PullRequestState,
    ReviewThread,
    RiskTag,
    RunSummary,
    Severity,
    Snapshot,
    StatusRegressionError,
    ThreadAuditRecord,
    ThreadStatus,
    status_rank,
)


_PHASES = {
    "created",
    "waiting_for_reviews",
    "collecting",
    "deciding",
    "patching",
    "resolving",
    "waiting_checks",
    "merging",
    "completed",
    "aborted",
    "escalated",
}
_THREAD_STATUSES = {"open", "applied", "acknowledged", "escalated", "resolved"}
_DECISION_ACTIONS = {"fix", "ignore", "escalate"}
_RISK_TAGS = {"low", "elevated", "high", "policy_violation", "unknown"}
_SEVERITIES = {"critical", "recommended", "minor", "informational"}

_PR_STATE_COLUMNS = (
    "repo_full_name, pr_number, branch, phase, last_synced_head, snapshot_sequence, "
    "cycle_count, retry_count, stale_count, transient_error_count, lock_token, error, "
    "started_at, fixes_applied"
)
_THREAD_COLUMNS = (
    "thread_id, path, start_line, end_line, author_login, body, suggestion, content_hash, "
    "first_comment_id, category, severity, decision, status, patch_ref, revision, "
    "last_decided_hash, resolved_by_us, resolve_attempts, platform_resolved, native"
)


class StateStore:
    """SQLite-backed record of PR lifecycles, snapshots and decisions."""

    def __init__(self, db_path: Path) -> None:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db_path = db_path
        self._lock = threading.Lock()
        self._init_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS pr_states (
                    repo_full_name TEXT NOT NULL,
                    pr_number INTEGER NOT NULL,
                    branch TEXT NOT NULL,
                    phase TEXT NOT NULL,
                    last_synced_head TEXT NULL,
                    snapshot_sequence INTEGER NOT NULL DEFAULT 0,
                    cycle_count INTEGER NOT NULL DEFAULT 0,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    stale_count INTEGER NOT NULL DEFAULT 0,
                    transient_error_count INTEGER NOT NULL DEFAULT 0,
                    lock_token TEXT NULL,
                    error TEXT NULL,
                    started_at TEXT NULL,
                    fixes_applied INTEGER NOT NULL DEFAULT 0,
                    archived INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
                    PRIMARY KEY (repo_full_name, pr_number)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS review_threads (
                    repo_full_name TEXT NOT NULL,
                    pr_number INTEGER NOT NULL,
                    thread_id TEXT NOT NULL,
                    path TEXT NOT NULL,
                    start_line INTEGER NULL,
                    end_line INTEGER NULL,
                    author_login TEXT NOT NULL,
                    body TEXT NOT NULL,
                    suggestion TEXT NOT NULL,
                    content_hash TEXT NOT NULL,
                    first_comment_id INTEGER NOT NULL,
                    category TEXT NOT NULL,
                    severity TEXT NULL,
                    decision TEXT NULL,
                    status TEXT NOT NULL,
                    patch_ref TEXT NULL,
                    revision INTEGER NOT NULL,
                    last_decided_hash TEXT NULL,
                    resolved_by_us INTEGER NOT NULL DEFAULT 0,
                    resolve_attempts INTEGER NOT NULL DEFAULT 0,
                    platform_resolved INTEGER NOT NULL DEFAULT 0,
                    native INTEGER NOT NULL DEFAULT 1,
                    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
                    PRIMARY KEY (repo_full_name, pr_number, thread_id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS snapshots (
                    repo_full_name TEXT NOT NULL,
                    pr_number INTEGER NOT NULL,
                    sequence INTEGER NOT NULL,
                    head_sha TEXT NOT NULL,
                    thread_hashes_json TEXT NOT NULL,
                    taken_at TEXT NOT NULL,
                    PRIMARY KEY (repo_full_name, pr_number, sequence)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS decisions (
                    decision_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    repo_full_name TEXT NOT NULL,
                    pr_number INTEGER NOT NULL,
                    thread_id TEXT NOT NULL,
                    revision INTEGER NOT NULL,
                    action TEXT NOT NULL,
                    rationale TEXT NOT NULL,
                    risk_tag TEXT NOT NULL,
                    snapshot_sequence INTEGER NOT NULL,
                    content_hash TEXT NOT NULL,
                    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_decisions_pr
                ON decisions(repo_full_name, pr_number, thread_id)
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS audit_records (
                    audit_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    repo_full_name TEXT NOT NULL,
                    pr_number INTEGER NOT NULL,
                    thread_id TEXT NOT NULL,
                    revision INTEGER NOT NULL,
                    decision TEXT NULL,
                    rationale TEXT NOT NULL,
                    patch_ref TEXT NULL,
                    resolved INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS run_summaries (
                    summary_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    repo_full_name TEXT NOT NULL,
                    pr_number INTEGER NOT NULL,
                    outcome TEXT NOT NULL,
                    fixed_count INTEGER NOT NULL,
                    ignored_count INTEGER NOT NULL,
                    escalated_count INTEGER NOT NULL,
                    retry_count INTEGER NOT NULL,
                    stale_count INTEGER NOT NULL,
                    cycle_count INTEGER NOT NULL,
                    elapsed_seconds REAL NOT NULL,
                    detail TEXT NOT NULL,
                    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
                )
                """
            )

    def save_pr_state(self, state: PullRequestState) -> None:
        """Persist ``state`` and its threads atomically.

        A stored thread may only move backward in status when the incoming
        copy carries a higher revision (an explicit re-open).
        """
        with self._lock, self._connect() as conn:
            existing = {
                thread.thread_id: thread
                for thread in _select_threads(
                    conn, repo_full_name=state.repo_full_name, pr_number=state.pr_number
                )
            }
            for thread in state.threads:
                previous = existing.get(thread.thread_id)
                if previous is None:
                    continue
                if thread.revision < previous.revision:
                    raise StatusRegressionError(
                        f"thread {thread.thread_id} revision moved backward "
                        f"({previous.revision} -> {thread.revision})"
                    )
                if thread.revision == previous.revision and status_rank(
                    thread.status
                ) < status_rank(previous.status):
                    raise StatusRegressionError(
                        f"thread {thread.thread_id} cannot move from {previous.status} "
                        f"to {thread.status} without a re-open"
                    )

            conn.execute(
                """
                INSERT INTO pr_states(
                    repo_full_name, pr_number, branch, phase, last_synced_head,
                    snapshot_sequence, cycle_count, retry_count, stale_count,
                    transient_error_count, lock_token, error, started_at, fixes_applied, archived
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(repo_full_name, pr_number) DO UPDATE SET
                    branch=excluded.branch,
                    phase=excluded.phase,
                    last_synced_head=excluded.last_synced_head,
                    snapshot_sequence=excluded.snapshot_sequence,
                    cycle_count=excluded.cycle_count,
                    retry_count=excluded.retry_count,
                    stale_count=excluded.stale_count,
                    transient_error_count=excluded.transient_error_count,
                    lock_token=excluded.lock_token,
                    error=excluded.error,
                    started_at=excluded.started_at,
                    fixes_applied=excluded.fixes_applied,
                    archived=excluded.archived,
                    updated_at=strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
                """,
                (
                    state.repo_full_name,
                    state.pr_number,
                    state.branch,
                    state.phase,
                    state.last_synced_head,
                    state.snapshot_sequence,
                    state.cycle_count,
                    state.retry_count,
                    state.stale_count,
                    state.transient_error_count,
                    state.lock_token,
                    state.error,
                    state.started_at,
                    state.fixes_applied,
                    1 if state.is_terminal else 0,
                ),
            )
            for thread in state.threads:
                conn.execute(
                    f"""
                    INSERT INTO review_threads(repo_full_name, pr_number, {_THREAD_COLUMNS})
                    VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(repo_full_name, pr_number, thread_id) DO UPDATE SET
                        path=excluded.path,
                        start_line=excluded.start_line,
                        end_line=excluded.end_line,
                        author_login=excluded.author_login,
                        body=excluded.body,
                        suggestion=excluded.suggestion,
                        content_hash=excluded.content_hash,
                        first_comment_id=excluded.first_comment_id,
                        category=excluded.category,
                        severity=excluded.severity,
                        decision=excluded.decision,
                        status=excluded.status,
                        patch_ref=excluded.patch_ref,
                        revision=excluded.revision,
                        last_decided_hash=excluded.last_decided_hash,
                        resolved_by_us=excluded.resolved_by_us,
                        resolve_attempts=excluded.resolve_attempts,
                        platform_resolved=excluded.platform_resolved,
                        native=excluded.native,
                        updated_at=strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
                    """,
                    (
                        state.repo_full_name,
                        state.pr_number,
                        thread.thread_id,
                        thread.path,
                        thread.start_line,
                        thread.end_line,
                        thread.author_login,
                        thread.body,
                        thread.suggestion,
                        thread.content_hash,
                        thread.first_comment_id,
                        thread.category,
                        thread.severity,
                        thread.decision,
                        thread.status,
                        thread.patch_ref,
                        thread.revision,
                        thread.last_decided_hash,
                        1 if thread.resolved_by_us else 0,
                        thread.resolve_attempts,
                        1 if thread.platform_resolved else 0,
                        1 if thread.native else 0,
                    ),
                )

    def load_pr_state(self, *, repo_full_name: str, pr_number: int) -> PullRequestState | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_PR_STATE_COLUMNS}
                FROM pr_states
                WHERE repo_full_name = ? AND pr_number = ?
                """,
                (repo_full_name, pr_number),
            ).fetchone()
            if row is None:
                return None
            threads = _select_threads(conn, repo_full_name=repo_full_name, pr_number=pr_number)
        return replace(_parse_pr_state_row(row), threads=threads)

    def list_pr_states(
        self, *, repo_full_name: str | None = None, include_archived: bool = False
    ) -> tuple[PullRequestState, ...]:
        clauses: list[str] = []
        params: list[object] = []
        if repo_full_name is not None:
            clauses.append("repo_full_name = ?")
            params.append(repo_full_name)
        if not include_archived:
            clauses.append("archived = 0")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_PR_STATE_COLUMNS}
                FROM pr_states
                {where}
                ORDER BY repo_full_name ASC, pr_number ASC
                """,
                tuple(params),
            ).fetchall()
            states: list[PullRequestState] = []
            for row in rows:
                state = _parse_pr_state_row(row)
                threads = _select_threads(
                    conn, repo_full_name=state.repo_full_name, pr_number=state.pr_number
                )
                states.append(replace(state, threads=threads))
        return tuple(states)

    def record_snapshot(
        self,
        *,
        repo_full_name: str,
        pr_number: int,
        head_sha: str,
        thread_hashes: tuple[tuple[str, str], ...],
        taken_at: str,
    ) -> Snapshot:
        ordered = tuple(sorted(thread_hashes))
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                SELECT COALESCE(MAX(sequence), 0)
                FROM snapshots
                WHERE repo_full_name = ? AND pr_number = ?
                """,
                (repo_full_name, pr_number),
            ).fetchone()
            sequence = int(row[0]) + 1
            conn.execute(
                """
                INSERT INTO snapshots(
                    repo_full_name, pr_number, sequence, head_sha, thread_hashes_json, taken_at
                )
                VALUES(?, ?, ?, ?, ?, ?)
                """,
                (
                    repo_full_name,
                    pr_number,
                    sequence,
                    head_sha,
                    json.dumps([list(item) for item in ordered]),
                    taken_at,
                ),
            )
        return Snapshot(
            repo_full_name=repo_full_name,
            pr_number=pr_number,
            sequence=sequence,
            head_sha=head_sha,
            thread_hashes=ordered,
            taken_at=taken_at,
        )

    def get_snapshot(
        self, *, repo_full_name: str, pr_number: int, sequence: int
    ) -> Snapshot | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                SELECT repo_full_name, pr_number, sequence, head_sha, thread_hashes_json, taken_at
                FROM snapshots
                WHERE repo_full_name = ? AND pr_number = ? AND sequence = ?
                """,
                (repo_full_name, pr_number, sequence),
            ).fetchone()
        if row is None:
            return None
        return _parse_snapshot_row(row)

    def latest_snapshot(self, *, repo_full_name: str, pr_number: int) -> Snapshot | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                SELECT repo_full_name, pr_number, sequence, head_sha, thread_hashes_json, taken_at
                FROM snapshots
                WHERE repo_full_name = ? AND pr_number = ?
                ORDER BY sequence DESC
                LIMIT 1
                """,
                (repo_full_name, pr_number),
            ).fetchone()
        if row is None:
            return None
        return _parse_snapshot_row(row)

    def list_snapshots(self, *, repo_full_name: str, pr_number: int) -> tuple[Snapshot, ...]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT repo_full_name, pr_number, sequence, head_sha, thread_hashes_json, taken_at
                FROM snapshots
                WHERE repo_full_name = ? AND pr_number = ?
                ORDER BY sequence ASC
                """,
                (repo_full_name, pr_number),
            ).fetchall()
        return tuple(_parse_snapshot_row(row) for row in rows)

    def append_decision(self, *, repo_full_name: str, pr_number: int, decision: Decision) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO decisions(
                    repo_full_name, pr_number, thread_id, revision, action, rationale,
                    risk_tag, snapshot_sequence, content_hash
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    repo_full_name,
                    pr_number,
                    decision.thread_id,
                    decision.revision,
                    decision.action,
                    decision.rationale,
                    decision.risk_tag,
                    decision.snapshot_sequence,
                    decision.content_hash,
                ),
            )

    def list_decisions(
        self, *, repo_full_name: str, pr_number: int, thread_id: str | None = None
    ) -> tuple[Decision, ...]:
        params: list[object] = [repo_full_name, pr_number]
        thread_clause = ""
        if thread_id is not None:
            thread_clause = "AND thread_id = ?"
            params.append(thread_id)
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT thread_id, revision, action, rationale, risk_tag, snapshot_sequence,
                       content_hash
                FROM decisions
                WHERE repo_full_name = ? AND pr_number = ? {thread_clause}
                ORDER BY decision_id ASC
                """,
                tuple(params),
            ).fetchall()
        return tuple(_parse_decision_row(row) for row in rows)

    def record_audit_records(
        self, *, repo_full_name: str, pr_number: int, records: tuple[ThreadAuditRecord, ...]
    ) -> None:
        with self._lock, self._connect() as conn:
            conn.executemany(
                """
                INSERT INTO audit_records(
                    repo_full_name, pr_number, thread_id, revision, decision, rationale,
                    patch_ref, resolved, status
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        repo_full_name,
                        pr_number,
                        record.thread_id,
                        record.revision,
                        record.decision,
                        record.rationale,
                        record.patch_ref,
                        1 if record.resolved else 0,
                        record.status,
                    )
                    for record in records
                ],
            )

    def list_audit_records(
        self, *, repo_full_name: str, pr_number: int
    ) -> tuple[ThreadAuditRecord, ...]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT thread_id, revision, decision, rationale, patch_ref, resolved, status
                FROM audit_records
                WHERE repo_full_name = ? AND pr_number = ?
                ORDER BY audit_id ASC
                """,
                (repo_full_name, pr_number),
            ).fetchall()
        return tuple(_parse_audit_row(row) for row in rows)

    def record_run_summary(self, summary: RunSummary) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO run_summaries(
                    repo_full_name, pr_number, outcome, fixed_count, ignored_count,
                    escalated_count, retry_count, stale_count, cycle_count, elapsed_seconds,
                    detail
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    summary.repo_full_name,
                    summary.pr_number,
                    summary.outcome,
                    summary.fixed_count,
                    summary.ignored_count,
                    summary.escalated_count,
                    summary.retry_count,
                    summary.stale_count,
                    summary.cycle_count,
                    summary.elapsed_seconds,
                    summary.detail,
                ),
            )

    def list_run_summaries(
        self,
        *,
        repo_full_name: str | None = None,
        pr_number: int | None = None,
        limit: int = 50,
    ) -> tuple[RunSummary, ...]:
        clauses: list[str] = []
        params: list[object] = []
        if repo_full_name is not None:
            clauses.append("repo_full_name = ?")
            params.append(repo_full_name)
        if pr_number is not None:
            clauses.append("pr_number = ?")
            params.append(pr_number)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(max(1, limit))
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT repo_full_name, pr_number, outcome, fixed_count, ignored_count,
                       escalated_count, retry_count, stale_count, cycle_count,
                       elapsed_seconds, detail
                FROM run_summaries
                {where}
                ORDER BY summary_id DESC
                LIMIT ?
                """,
                tuple(params),
            ).fetchall()
        return tuple(_parse_run_summary_row(row) for row in rows)


def _select_threads(
    conn: sqlite3.Connection, *, repo_full_name: str, pr_number: int
) -> tuple[ReviewThread, ...]:
    rows = conn.execute(
        f"""
        SELECT {_THREAD_COLUMNS}
        FROM review_threads
        WHERE repo_full_name = ? AND pr_number = ?
        ORDER BY thread_id ASC
        """,
        (repo_full_name, pr_number),
    ).fetchall()
    return tuple(_parse_thread_row(row) for row in rows)


def _parse_pr_state_row(row: tuple[object, ...]) -> PullRequestState:
    if len(row) != 14:
        raise RuntimeError("Invalid pr_states row width")
    (
        repo_full_name,
        pr_number,
        branch,
        phase,
        last_synced_head,
        snapshot_sequence,
        cycle_count,
        retry_count,
        stale_count,
        transient_error_count,
        lock_token,
        error,
        started_at,
        fixes_applied,
    ) = row
    if not isinstance(repo_full_name, str):
        raise RuntimeError("Invalid repo_full_name value stored in pr_states")
    if not isinstance(pr_number, int):
        raise RuntimeError("Invalid pr_number value stored in pr_states")
    if not isinstance(branch, str):
        raise RuntimeError("Invalid branch value stored in pr_states")
    if last_synced_head is not None and not isinstance(last_synced_head, str):
        raise RuntimeError("Invalid last_synced_head value stored in pr_states")
    for name, value in (
        ("snapshot_sequence", snapshot_sequence),
        ("cycle_count", cycle_count),
        ("retry_count", retry_count),
        ("stale_count", stale_count),
        ("transient_error_count", transient_error_count),
        ("fixes_applied", fixes_applied),
    ):
        if not isinstance(value, int):
            raise RuntimeError(f"Invalid {name} value stored in pr_states")
    if lock_token is not None and not isinstance(lock_token, str):
        raise RuntimeError("Invalid lock_token value stored in pr_states")
    if error is not None and not isinstance(error, str):
        raise RuntimeError("Invalid error value stored in pr_states")
    if started_at is not None and not isinstance(started_at, str):
        raise RuntimeError("Invalid started_at value stored in pr_states")
    return PullRequestState(
        repo_full_name=repo_full_name,
        pr_number=pr_number,
        branch=branch,
        phase=_parse_phase(phase),
        last_synced_head=last_synced_head,
        snapshot_sequence=cast(int, snapshot_sequence),
        cycle_count=cast(int, cycle_count),
        retry_count=cast(int, retry_count),
        stale_count=cast(int, stale_count),
        transient_error_count=cast(int, transient_error_count),
        lock_token=lock_token,
        error=error,
        started_at=started_at,
        fixes_applied=cast(int, fixes_applied),
    )


def _parse_thread_row(row: tuple[object, ...]) -> ReviewThread:
    if len(row) != 20:
        raise RuntimeError("Invalid review_threads row width")
    (
        thread_id,
        path,
        start_line,
        end_line,
        author_login,
        body,
        suggestion,
        content_hash,
        first_comment_id,
        category,
        severity,
        decision,
        status,
        patch_ref,
        revision,
        last_decided_hash,
        resolved_by_us,
        resolve_attempts,
        platform_resolved,
        native,
    ) = row
    for name, value in (
        ("thread_id", thread_id),
        ("path", path),
        ("author_login", author_login),
        ("body", body),
        ("suggestion", suggestion),
        ("content_hash", content_hash),
        ("category", category),
    ):
        if not isinstance(value, str):
            raise RuntimeError(f"Invalid {name} value stored in review_threads")
    for name, value in (("start_line", start_line), ("end_line", end_line)):
        if value is not None and not isinstance(value, int):
            raise RuntimeError(f"Invalid {name} value stored in review_threads")
    for name, value in (
        ("first_comment_id", first_comment_id),
        ("revision", revision),
        ("resolved_by_us", resolved_by_us),
        ("resolve_attempts", resolve_attempts),
        ("platform_resolved", platform_resolved),
        ("native", native),
    ):
        if not isinstance(value, int):
            raise RuntimeError(f"Invalid {name} value stored in review_threads")
    if patch_ref is not None and not isinstance(patch_ref, str):
        raise RuntimeError("Invalid patch_ref value stored in review_threads")
    if last_decided_hash is not None and not isinstance(last_decided_hash, str):
        raise RuntimeError("Invalid last_decided_hash value stored in review_threads")
    return ReviewThread(
        thread_id=cast(str, thread_id),
        path=cast(str, path),
        start_line=cast(int | None, start_line),
        end_line=cast(int | None, end_line),
        author_login=cast(str, author_login),
        body=cast(str, body),
        suggestion=cast(str, suggestion),
        content_hash=cast(str, content_hash),
        first_comment_id=cast(int, first_comment_id),
        category=cast(str, category),
        severity=_parse_optional_severity(severity),
        decision=_parse_optional_action(decision),
        status=_parse_thread_status(status),
        patch_ref=patch_ref,
        revision=cast(int, revision),
        last_decided_hash=last_decided_hash,
        resolved_by_us=bool(resolved_by_us),
        resolve_attempts=cast(int, resolve_attempts),
        platform_resolved=bool(platform_resolved),
        native=bool(native),
    )


def _parse_snapshot_row(row: tuple[object, ...]) -> Snapshot:
    repo_full_name, pr_number, sequence, head_sha, thread_hashes_json, taken_at = row
    if not isinstance(repo_full_name, str):
        raise RuntimeError("Invalid repo_full_name value stored in snapshots")
    if not isinstance(pr_number, int) or not isinstance(sequence, int):
        raise RuntimeError("Invalid identity value stored in snapshots")
    if not isinstance(head_sha, str):
        raise RuntimeError("Invalid head_sha value stored in snapshots")
    if not isinstance(thread_hashes_json, str):
        raise RuntimeError("Invalid thread_hashes_json value stored in snapshots")
    if not isinstance(taken_at, str):
        raise RuntimeError("Invalid taken_at value stored in snapshots")
    try:
        decoded = json.loads(thread_hashes_json)
    except json.JSONDecodeError as exc:
        raise RuntimeError("Invalid thread_hashes_json value stored in snapshots") from exc
    if not isinstance(decoded, list):
        raise RuntimeError("Invalid thread_hashes_json value stored in snapshots")
    pairs: list[tuple[str, str]] = []
    for item in decoded:
        if (
            not isinstance(item, list)
            or len(item) != 2
            or not all(isinstance(part, str) for part in item)
        ):
            raise RuntimeError("Invalid thread hash pair stored in snapshots")
        pairs.append((item[0], item[1]))
    return Snapshot(
        repo_full_name=repo_full_name,
        pr_number=pr_number,
        sequence=sequence,
        head_sha=head_sha,
        thread_hashes=tuple(pairs),
        taken_at=taken_at,
    )


def _parse_decision_row(row: tuple[object, ...]) -> Decision:
    thread_id, revision, action, rationale, risk_tag, snapshot_sequence, content_hash = row
    if not isinstance(thread_id, str):
        raise RuntimeError("Invalid thread_id value stored in decisions")
    if not isinstance(revision, int) or not isinstance(snapshot_sequence, int):
        raise RuntimeError("Invalid sequence value stored in decisions")
    if not isinstance(rationale, str) or not isinstance(content_hash, str):
        raise RuntimeError("Invalid text value stored in decisions")
    return Decision(
        thread_id=thread_id,
        revision=revision,
        action=_parse_action(action),
        rationale=rationale,
        risk_tag=_parse_risk_tag(risk_tag),
        snapshot_sequence=snapshot_sequence,
        content_hash=content_hash,
    )


def _parse_audit_row(row: tuple[object, ...]) -> ThreadAuditRecord:
    thread_id, revision, decision, rationale, patch_ref, resolved, status = row
    if not isinstance(thread_id, str):
        raise RuntimeError("Invalid thread_id value stored in audit_records")
    if not isinstance(revision, int) or not isinstance(resolved, int):
        raise RuntimeError("Invalid integer value stored in audit_records")
    if not isinstance(rationale, str):
        raise RuntimeError("Invalid rationale value stored in audit_records")
    if patch_ref is not None and not isinstance(patch_ref, str):
        raise RuntimeError("Invalid patch_ref value stored in audit_records")
    return ThreadAuditRecord(
        thread_id=thread_id,
        revision=revision,
        decision=_parse_optional_action(decision),
        rationale=rationale,
        patch_ref=patch_ref,
        resolved=bool(resolved),
        status=_parse_thread_status(status),
    )


def _parse_run_summary_row(row: tuple[object, ...]) -> RunSummary:
    (
        repo_full_name,
        pr_number,
        outcome,
        fixed_count,
        ignored_count,
        escalated_count,
        retry_count,
        stale_count,
        cycle_count,
        elapsed_seconds,
        detail,
    ) = row
    if not isinstance(repo_full_name, str) or not isinstance(detail, str):
        raise RuntimeError("Invalid text value stored in run_summaries")
    counts = (pr_number, fixed_count, ignored_count, escalated_count, retry_count, stale_count)
    if not all(isinstance(value, int) for value in counts) or not isinstance(cycle_count, int):
        raise RuntimeError("Invalid count value stored in run_summaries")
    if not isinstance(elapsed_seconds, int | float):
        raise RuntimeError("Invalid elapsed_seconds value stored in run_summaries")
    return RunSummary(
        repo_full_name=repo_full_name,
        pr_number=cast(int, pr_number),
        outcome=_parse_phase(outcome),
        fixed_count=cast(int, fixed_count),
        ignored_count=cast(int, ignored_count),
        escalated_count=cast(int, escalated_count),
        retry_count=cast(int, retry_count),
        stale_count=cast(int, stale_count),
        cycle_count=cycle_count,
        elapsed_seconds=float(elapsed_seconds),
        detail=detail,
    )


def _parse_phase(value: object) -> Phase:
    if not isinstance(value, str):
        raise RuntimeError("Invalid phase value stored in state")
    if value not in _PHASES:
        raise RuntimeError(f"Unknown phase value stored in state: {value}")
    return cast(Phase, value)


def _parse_thread_status(value: object) -> ThreadStatus:
    if not isinstance(value, str):
        raise RuntimeError("Invalid status value stored in review_threads")
    if value not in _THREAD_STATUSES:
        raise RuntimeError(f"Unknown thread status stored in state: {value}")
    return cast(ThreadStatus, value)


def _parse_action(value: object) -> DecisionAction:
    if not isinstance(value, str):
        raise RuntimeError("Invalid action value stored in state")
    if value not in _DECISION_ACTIONS:
        raise RuntimeError(f"Unknown decision action stored in state: {value}")
    return cast(DecisionAction, value)


def _parse_optional_action(value: object) -> DecisionAction | None:
    if value is None:
        return None
    return _parse_action(value)


def _parse_optional_severity(value: object) -> Severity | None:
    if value is None:
        return None
    if not isinstance(value, str) or value not in _SEVERITIES:
        raise RuntimeError(f"Unknown severity value stored in state: {value!r}")
    return cast(Severity, value)


def _parse_risk_tag(value: object) -> RiskTag:
    if not isinstance(value, str) or value not in _RISK_TAGS:
        raise RuntimeError(f"Unknown risk_tag value stored in decisions: {value!r}")
    return cast(RiskTag, value)
