from __future__ import annotations

from dataclasses import replace
from pathlib import Path
import sqlite3

import pytest

from prsettle.models import (
    Decision,
    PullRequestState,
    ReviewThread,
    RunSummary,
    StatusRegressionError,
    ThreadAuditRecord,
)
from prsettle.state import StateStore, _parse_phase, _parse_pr_state_row, _parse_thread_status


def _thread(thread_id: str = "T1", **overrides: object) -> ReviewThread:
    thread = ReviewThread(
        thread_id=thread_id,
        path="src/app.py",
        start_line=3,
        end_line=4,
        author_login="alice",
        body="@alice: please rename this",
        suggestion="",
        content_hash="hash-1",
        first_comment_id=11,
    )
    return replace(thread, **overrides)  # type: ignore[arg-type]


def _state(**overrides: object) -> PullRequestState:
    state = PullRequestState(repo_full_name="o/r", pr_number=7, branch="feature")
    return replace(state, **overrides)  # type: ignore[arg-type]


def test_save_and_load_round_trip_with_threads(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "nested" / "state.db")
    state = _state(
        phase="deciding",
        last_synced_head="abc",
        snapshot_sequence=2,
        cycle_count=1,
        lock_token="tok",
        started_at="2026-01-01T00:00:00Z",
        threads=(
            _thread("T2", severity="minor", decision="fix", native=False),
            _thread("T1", status="acknowledged", decision="ignore", resolved_by_us=True),
        ),
    )

    store.save_pr_state(state)
    loaded = store.load_pr_state(repo_full_name="o/r", pr_number=7)

    assert loaded is not None
    assert loaded.phase == "deciding"
    assert loaded.last_synced_head == "abc"
    assert loaded.lock_token == "tok"
    assert [thread.thread_id for thread in loaded.threads] == ["T1", "T2"]
    assert loaded.thread("T1") == state.thread("T1")
    assert loaded.thread("T2") == state.thread("T2")
    assert store.load_pr_state(repo_full_name="o/r", pr_number=8) is None


def test_save_rejects_status_regression_without_reopen(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.db")
    store.save_pr_state(_state(threads=(_thread(status="resolved"),)))

    with pytest.raises(StatusRegressionError, match="without a re-open"):
        store.save_pr_state(_state(threads=(_thread(status="open"),)))

    reopened = _thread(status="open", revision=2, content_hash="hash-2")
    store.save_pr_state(_state(threads=(reopened,)))
    loaded = store.load_pr_state(repo_full_name="o/r", pr_number=7)
    assert loaded is not None
    assert loaded.threads[0].status == "open"
    assert loaded.threads[0].revision == 2


def test_save_rejects_revision_moving_backward(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.db")
    store.save_pr_state(_state(threads=(_thread(revision=3),)))

    with pytest.raises(StatusRegressionError, match="revision moved backward"):
        store.save_pr_state(_state(threads=(_thread(revision=2),)))


def test_list_pr_states_hides_archived_by_default(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.db")
    store.save_pr_state(_state(pr_number=1, phase="patching"))
    store.save_pr_state(_state(pr_number=2, phase="completed"))
    store.save_pr_state(replace(_state(pr_number=3), repo_full_name="x/y"))

    active = store.list_pr_states()
    assert [(state.repo_full_name, state.pr_number) for state in active] == [
        ("o/r", 1),
        ("x/y", 3),
    ]
    everything = store.list_pr_states(repo_full_name="o/r", include_archived=True)
    assert [state.pr_number for state in everything] == [1, 2]


def test_snapshots_get_monotonic_sequences_per_pr(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.db")
    first = store.record_snapshot(
        repo_full_name="o/r",
        pr_number=7,
        head_sha="h1",
        thread_hashes=(("T2", "b"), ("T1", "a")),
        taken_at="t1",
    )
    second = store.record_snapshot(
        repo_full_name="o/r", pr_number=7, head_sha="h2", thread_hashes=(), taken_at="t2"
    )
    other = store.record_snapshot(
        repo_full_name="o/r", pr_number=8, head_sha="h9", thread_hashes=(), taken_at="t3"
    )

    assert (first.sequence, second.sequence, other.sequence) == (1, 2, 1)
    assert first.thread_hashes == (("T1", "a"), ("T2", "b"))
    assert store.get_snapshot(repo_full_name="o/r", pr_number=7, sequence=1) == first
    assert store.get_snapshot(repo_full_name="o/r", pr_number=7, sequence=5) is None
    assert store.latest_snapshot(repo_full_name="o/r", pr_number=7) == second
    assert store.latest_snapshot(repo_full_name="o/r", pr_number=99) is None
    assert store.list_snapshots(repo_full_name="o/r", pr_number=7) == (first, second)


def test_decisions_are_append_only_and_filterable(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.db")
    first = Decision(
        thread_id="T1",
        revision=1,
        action="fix",
        rationale="fixable",
        risk_tag="unknown",
        snapshot_sequence=1,
        content_hash="h",
    )
    second = replace(first, action="escalate", rationale="conflict", risk_tag="high")
    other = replace(first, thread_id="T2", action="ignore")
    for decision in (first, other, second):
        store.append_decision(repo_full_name="o/r", pr_number=7, decision=decision)

    assert store.list_decisions(repo_full_name="o/r", pr_number=7) == (first, other, second)
    assert store.list_decisions(repo_full_name="o/r", pr_number=7, thread_id="T1") == (
        first,
        second,
    )


def test_audit_records_and_run_summaries(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.db")
    record = ThreadAuditRecord(
        thread_id="T1",
        revision=1,
        decision="fix",
        rationale="applied",
        patch_ref="deadbeef",
        resolved=True,
        status="applied",
    )
    store.record_audit_records(repo_full_name="o/r", pr_number=7, records=(record,))
    assert store.list_audit_records(repo_full_name="o/r", pr_number=7) == (record,)

    older = RunSummary(
        repo_full_name="o/r",
        pr_number=7,
        outcome="escalated",
        fixed_count=0,
        ignored_count=1,
        escalated_count=1,
        retry_count=0,
        stale_count=0,
        cycle_count=1,
        elapsed_seconds=3.5,
        detail="needs a human",
    )
    newer = replace(older, outcome="completed", escalated_count=0, detail="merged")
    store.record_run_summary(older)
    store.record_run_summary(newer)
    store.record_run_summary(replace(older, pr_number=8))

    assert store.list_run_summaries(repo_full_name="o/r", pr_number=7) == (newer, older)
    assert len(store.list_run_summaries()) == 3
    assert store.list_run_summaries(limit=1)[0].pr_number == 8


def test_archived_flag_tracks_terminal_phase(tmp_path: Path) -> None:
    db_path = tmp_path / "state.db"
    store = StateStore(db_path)
    store.save_pr_state(_state(phase="merging"))
    store.save_pr_state(_state(phase="completed"))

    conn = sqlite3.connect(db_path)
    try:
        row = conn.execute("SELECT archived FROM pr_states WHERE pr_number = 7").fetchone()
    finally:
        conn.close()
    assert row == (1,)


def test_row_parsers_reject_corrupt_values() -> None:
    with pytest.raises(RuntimeError, match="Unknown phase"):
        _parse_phase("sleeping")
    with pytest.raises(RuntimeError, match="Invalid phase"):
        _parse_phase(3)
    with pytest.raises(RuntimeError, match="Unknown thread status"):
        _parse_thread_status("closed")
    with pytest.raises(RuntimeError, match="row width"):
        _parse_pr_state_row(("o/r", 7))
    with pytest.raises(RuntimeError, match="branch"):
        _parse_pr_state_row(
            ("o/r", 7, None, "created", None, 0, 0, 0, 0, 0, None, None, None, 0)
        )
