from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import time
from typing import Protocol

from prsettle.errors import MAX_TRANSIENT_ATTEMPTS, retry_transient
from prsettle.models import (
    PullRequestSnapshot,
    RawReviewThread,
    ReviewThread,
    Snapshot,
    SubmittedReview,
)
from prsettle.normalizer import normalize
from prsettle.observability import log_event
from prsettle.state import StateStore


LOGGER = logging.getLogger("prsettle.poller")


class Clock(Protocol):
    def now(self) -> float: ...

    def sleep(self, seconds: float) -> None: ...


class SystemClock:
    def now(self) -> float:
        return time.time()

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)


def utc_iso8601(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class ReviewSource(Protocol):
    def get_pull_request(self, pr_number: int) -> PullRequestSnapshot: ...

    def list_review_threads(self, pr_number: int) -> tuple[RawReviewThread, ...]: ...

    def list_reviews(self, pr_number: int) -> tuple[SubmittedReview, ...]: ...


@dataclass(frozen=True)
class PollResult:
    snapshot: Snapshot
    threads: tuple[ReviewThread, ...]
    pull_request: PullRequestSnapshot
    reviews_complete: bool
    timed_out: bool


class Poller:
    """Polls one PR on a fixed cadence and records what it saw as a snapshot."""

    def __init__(
        self,
        *,
        source: ReviewSource,
        store: StateStore,
        repo_full_name: str,
        required_reviewers: Sequence[str] = (),
        informational_keywords: Sequence[str] = (),
        ignored_logins: Sequence[str] = (),
        clock: Clock | None = None,
        max_attempts: int = MAX_TRANSIENT_ATTEMPTS,
    ) -> None:
        self._source = source
        self._store = store
        self._repo_full_name = repo_full_name
        self._required_reviewers = tuple(login.strip().lower() for login in required_reviewers)
        self._informational_keywords = tuple(informational_keywords)
        self._ignored_logins = tuple(ignored_logins)
        self._clock = clock or SystemClock()
        self._max_attempts = max_attempts

    def collect(self, pr_number: int, *, deadline: float, poll_interval: float) -> PollResult:
        """Poll until every required reviewer has reviewed or ``deadline`` passes.

        With no required reviewers only the deadline stops polling. The last
        observed state is returned either way.
        """
        if poll_interval <= 0:
            raise ValueError("poll_interval must be > 0")
        polls = 0
        while True:
            polls += 1
            pull_request, raw_threads, reviews = self._fetch(pr_number, backoff_cap=poll_interval)
            complete = self._reviews_complete(reviews)
            now = self._clock.now()
            if complete and self._required_reviewers:
                return self._record(
                    pr_number,
                    pull_request=pull_request,
                    raw_threads=raw_threads,
                    reviews_complete=True,
                    timed_out=False,
                    polls=polls,
                )
            if now + poll_interval > deadline:
                return self._record(
                    pr_number,
                    pull_request=pull_request,
                    raw_threads=raw_threads,
                    reviews_complete=complete,
                    timed_out=True,
                    polls=polls,
                )
            self._clock.sleep(poll_interval)

    def collect_once(self, pr_number: int) -> PollResult:
        pull_request, raw_threads, reviews = self._fetch(pr_number, backoff_cap=8.0)
        return self._record(
            pr_number,
            pull_request=pull_request,
            raw_threads=raw_threads,
            reviews_complete=self._reviews_complete(reviews),
            timed_out=False,
            polls=1,
        )

    def _fetch(
        self, pr_number: int, *, backoff_cap: float
    ) -> tuple[PullRequestSnapshot, tuple[RawReviewThread, ...], tuple[SubmittedReview, ...]]:
        def _read() -> tuple[
            PullRequestSnapshot, tuple[RawReviewThread, ...], tuple[SubmittedReview, ...]
        ]:
            pull_request = self._source.get_pull_request(pr_number)
            raw_threads = self._source.list_review_threads(pr_number)
            reviews = self._source.list_reviews(pr_number)
            return pull_request, raw_threads, reviews

        return retry_transient(
            _read,
            op_name="poll_pull_request",
            attempts=self._max_attempts,
            base_delay_seconds=min(1.0, backoff_cap),
            max_delay_seconds=backoff_cap,
            sleep=self._clock.sleep,
        )

    def _reviews_complete(self, reviews: Sequence[SubmittedReview]) -> bool:
        reviewed = {review.author_login.strip().lower() for review in reviews}
        return all(login in reviewed for login in self._required_reviewers)

    def _record(
        self,
        pr_number: int,
        *,
        pull_request: PullRequestSnapshot,
        raw_threads: tuple[RawReviewThread, ...],
        reviews_complete: bool,
        timed_out: bool,
        polls: int,
    ) -> PollResult:
        threads = normalize(
            raw_threads,
            informational_keywords=self._informational_keywords,
            ignored_logins=self._ignored_logins,
        )
        snapshot = self._store.record_snapshot(
            repo_full_name=self._repo_full_name,
            pr_number=pr_number,
            head_sha=pull_request.head_sha,
            thread_hashes=tuple((thread.thread_id, thread.content_hash) for thread in threads),
            taken_at=utc_iso8601(self._clock.now()),
        )
        log_event(
            LOGGER,
            "snapshot_recorded",
            repo_full_name=self._repo_full_name,
            pr_number=pr_number,
            sequence=snapshot.sequence,
            head_sha=snapshot.head_sha,
            thread_count=len(threads),
            reviews_complete=reviews_complete,
            timed_out=timed_out,
            polls=polls,
        )
        return PollResult(
            snapshot=snapshot,
            threads=threads,
            pull_request=pull_request,
            reviews_complete=reviews_complete,
            timed_out=timed_out,
        )
