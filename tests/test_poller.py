from __future__ import annotations

from pathlib import Path

import pytest

from prsettle.errors import TransientIOError
from prsettle.models import (
    PullRequestSnapshot,
    RawReviewComment,
    RawReviewThread,
    SubmittedReview,
)
from prsettle.poller import Poller, utc_iso8601
from prsettle.state import StateStore


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.current = start
        self.sleeps: list[float] = []

    def now(self) -> float:
        return self.current

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.current += seconds


class FakeSource:
    def __init__(self) -> None:
        self.head_sha = "head-1"
        self.threads: tuple[RawReviewThread, ...] = ()
        self.review_rounds: list[tuple[SubmittedReview, ...]] = []
        self.failures: list[Exception] = []
        self.pr_calls = 0

    def get_pull_request(self, pr_number: int) -> PullRequestSnapshot:
        self.pr_calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return PullRequestSnapshot(
            number=pr_number,
            title="Add widgets",
            head_ref="feature",
            head_sha=self.head_sha,
            base_ref="main",
            state="open",
            merged=False,
        )

    def list_review_threads(self, pr_number: int) -> tuple[RawReviewThread, ...]:
        _ = pr_number
        return self.threads

    def list_reviews(self, pr_number: int) -> tuple[SubmittedReview, ...]:
        _ = pr_number
        if len(self.review_rounds) > 1:
            return self.review_rounds.pop(0)
        return self.review_rounds[0] if self.review_rounds else ()


def _review(login: str) -> SubmittedReview:
    return SubmittedReview(review_id=1, author_login=login, state="COMMENTED", submitted_at="t")


def _thread(thread_id: str, author: str = "alice", body: str = "please fix") -> RawReviewThread:
    comment = RawReviewComment(
        comment_id=int(thread_id[1:]),
        author_login=author,
        body=body,
        path="src/app.py",
        line=3,
        start_line=None,
        created_at="2026-01-01T00:00:00Z",
    )
    return RawReviewThread(
        thread_id=thread_id,
        path="src/app.py",
        is_resolved=False,
        is_outdated=False,
        comments=(comment,),
    )


def _poller(
    tmp_path: Path,
    source: FakeSource,
    clock: FakeClock,
    *,
    required: tuple[str, ...] = (),
    ignored: tuple[str, ...] = (),
) -> tuple[Poller, StateStore]:
    store = StateStore(tmp_path / "state.db")
    poller = Poller(
        source=source,
        store=store,
        repo_full_name="octo/widgets",
        required_reviewers=required,
        ignored_logins=ignored,
        clock=clock,
    )
    return poller, store


def test_collect_stops_once_required_reviewers_have_reviewed(tmp_path: Path) -> None:
    source = FakeSource()
    source.threads = (_thread("T1"),)
    source.review_rounds = [(), (_review("alice"),), (_review("alice"), _review("bob"))]
    clock = FakeClock()
    poller, store = _poller(tmp_path, source, clock, required=(" Alice ", "BOB"))

    result = poller.collect(7, deadline=clock.now() + 600, poll_interval=30)

    assert result.reviews_complete is True
    assert result.timed_out is False
    assert clock.sleeps == [30, 30]
    assert result.snapshot.sequence == 1
    assert result.snapshot.head_sha == "head-1"
    assert result.snapshot.thread_hashes == (("T1", result.threads[0].content_hash),)
    assert store.latest_snapshot(repo_full_name="octo/widgets", pr_number=7) == result.snapshot


def test_collect_times_out_with_last_observed_state(tmp_path: Path) -> None:
    source = FakeSource()
    source.review_rounds = [(_review("alice"),)]
    clock = FakeClock()
    poller, _store = _poller(tmp_path, source, clock, required=("alice", "carol"))

    result = poller.collect(7, deadline=clock.now() + 100, poll_interval=30)

    assert result.timed_out is True
    assert result.reviews_complete is False
    assert clock.sleeps == [30, 30, 30]
    assert source.pr_calls == 4


def test_collect_without_required_reviewers_waits_for_deadline(tmp_path: Path) -> None:
    source = FakeSource()
    clock = FakeClock()
    poller, _store = _poller(tmp_path, source, clock)

    result = poller.collect(7, deadline=clock.now() + 10, poll_interval=30)

    assert result.timed_out is True
    assert result.reviews_complete is True
    assert result.threads == ()
    assert clock.sleeps == []

    with pytest.raises(ValueError, match="poll_interval"):
        poller.collect(7, deadline=clock.now() + 10, poll_interval=0)


def test_collect_once_numbers_snapshots_and_filters_own_comments(tmp_path: Path) -> None:
    source = FakeSource()
    source.threads = (_thread("T1"), _thread("T2", author="settle-bot", body="Working on it"))
    clock = FakeClock()
    poller, store = _poller(tmp_path, source, clock, ignored=("settle-bot",))

    first = poller.collect_once(7)
    source.head_sha = "head-2"
    second = poller.collect_once(7)

    assert [thread.thread_id for thread in first.threads] == ["T1"]
    assert (first.snapshot.sequence, second.snapshot.sequence) == (1, 2)
    assert second.snapshot.head_sha == "head-2"
    assert first.snapshot.same_threads_as(second.snapshot)
    assert first.snapshot.taken_at == utc_iso8601(1_000.0)
    assert len(store.list_snapshots(repo_full_name="octo/widgets", pr_number=7)) == 2


def test_transient_read_failures_are_retried_then_surface(tmp_path: Path) -> None:
    source = FakeSource()
    source.failures = [TransientIOError("502")]
    clock = FakeClock()
    poller, _store = _poller(tmp_path, source, clock)

    assert poller.collect_once(7).snapshot.sequence == 1
    assert clock.sleeps == [1.0]

    source.failures = [TransientIOError("502")] * 3
    with pytest.raises(TransientIOError, match="502"):
        poller.collect_once(7)

    source.failures = [RuntimeError("bad payload")]
    with pytest.raises(RuntimeError, match="bad payload"):
        poller.collect_once(7)


def test_utc_iso8601() -> None:
    assert utc_iso8601(0) == "1970-01-01T00:00:00.000000Z"
