from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Literal


Severity = Literal["critical", "recommended", "minor", "informational"]
DecisionAction = Literal["fix", "ignore", "escalate"]
ThreadStatus = Literal["open", "applied", "acknowledged", "escalated", "resolved"]
CheckStatus = Literal["pending", "success", "failure"]
Phase = Literal[
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
]
RiskTag = Literal["low", "elevated", "high", "policy_violation", "unknown"]
ApplyErrorKind = Literal[
    "stale",
    "conflict",
    "no_patch",
    "risk_exceeded",
    "policy_violation",
    "transient",
]

TERMINAL_PHASES: frozenset[str] = frozenset({"completed", "aborted", "escalated"})
SEVERITIES: tuple[Severity, ...] = ("critical", "recommended", "minor", "informational")

_STATUS_RANK: dict[str, int] = {
    "open": 0,
    "applied": 1,
    "acknowledged": 1,
    "escalated": 1,
    "resolved": 2,
}


class StatusRegressionError(RuntimeError):
    """Raised when a thread status would move backward without a re-open."""


@dataclass(frozen=True)
class RawReviewComment:
    comment_id: int
    author_login: str
    body: str
    path: str
    line: int | None
    start_line: int | None
    created_at: str
    html_url: str = ""


@dataclass(frozen=True)
class RawReviewThread:
    """One reviewer conversation as the platform reports it.

    ``thread_id`` is ``None`` when the platform has no native thread for the
    comments (plain REST review comments); the normalizer groups those itself.
    """

    thread_id: str | None
    path: str
    is_resolved: bool
    is_outdated: bool
    comments: tuple[RawReviewComment, ...]


@dataclass(frozen=True)
class SubmittedReview:
    review_id: int
    author_login: str
    state: str
    submitted_at: str
    body: str = ""


@dataclass(frozen=True)
class PullRequestSnapshot:
    number: int
    title: str
    head_ref: str
    head_sha: str
    base_ref: str
    state: str
    merged: bool
    draft: bool = False


@dataclass(frozen=True)
class ReviewThread:
    thread_id: str
    path: str
    start_line: int | None
    end_line: int | None
    author_login: str
    body: str
    suggestion: str
    content_hash: str
    first_comment_id: int
    category: str = "unclassified"
    severity: Severity | None = None
    decision: DecisionAction | None = None
    status: ThreadStatus = "open"
    patch_ref: str | None = None
    revision: int = 1
    last_decided_hash: str | None = None
    resolved_by_us: bool = False
    resolve_attempts: int = 0
    platform_resolved: bool = False
    native: bool = True

    @property
    def has_suggestion(self) -> bool:
        return bool(self.suggestion.strip())

    @property
    def needs_decision(self) -> bool:
        if self.status == "resolved":
            return False
        return self.last_decided_hash != self.content_hash

    def with_status(self, status: ThreadStatus) -> ReviewThread:
        if _STATUS_RANK[status] < _STATUS_RANK[self.status]:
            raise StatusRegressionError(
                f"thread {self.thread_id} cannot move from {self.status} to {status}"
            )
        return replace(self, status=status)

    def reopened(self, *, content_hash: str, body: str, suggestion: str) -> ReviewThread:
        return replace(
            self,
            content_hash=content_hash,
            body=body,
            suggestion=suggestion,
            category="unclassified",
            severity=None,
            decision=None,
            status="open",
            patch_ref=None,
            revision=self.revision + 1,
            resolved_by_us=False,
            resolve_attempts=0,
            platform_resolved=False,
        )


@dataclass(frozen=True)
class Snapshot:
    repo_full_name: str
    pr_number: int
    sequence: int
    head_sha: str
    thread_hashes: tuple[tuple[str, str], ...]
    taken_at: str

    def same_threads_as(self, other: Snapshot) -> bool:
        return self.thread_hashes == other.thread_hashes


@dataclass(frozen=True)
class Classification:
    category: str
    severity: Severity


@dataclass(frozen=True)
class RiskAssessment:
    changed_lines: int
    files: tuple[str, ...]
    sensitive_hits: tuple[str, ...]
    protected_hits: tuple[str, ...]
    score: int
    exceeds_threshold: bool

    @property
    def tag(self) -> RiskTag:
        if self.protected_hits:
            return "policy_violation"
        if self.exceeds_threshold:
            return "high"
        if self.sensitive_hits:
            return "elevated"
        return "low"


@dataclass(frozen=True)
class Decision:
    thread_id: str
    revision: int
    action: DecisionAction
    rationale: str
    risk_tag: RiskTag
    snapshot_sequence: int
    content_hash: str


@dataclass(frozen=True)
class ProposedPatch:
    diff: str
    summary: str
    commit_message: str | None = None


@dataclass(frozen=True)
class LockRecord:
    repo_full_name: str
    pr_number: int
    token: str
    acquired_at: float
    expires_at: float
    pid: int | None = None


@dataclass(frozen=True)
class PullRequestState:
    repo_full_name: str
    pr_number: int
    branch: str
    phase: Phase = "created"
    last_synced_head: str | None = None
    snapshot_sequence: int = 0
    threads: tuple[ReviewThread, ...] = ()
    cycle_count: int = 0
    retry_count: int = 0
    stale_count: int = 0
    transient_error_count: int = 0
    lock_token: str | None = None
    error: str | None = None
    started_at: str | None = None
    fixes_applied: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def thread(self, thread_id: str) -> ReviewThread | None:
        for candidate in self.threads:
            if candidate.thread_id == thread_id:
                return candidate
        return None

    def with_thread(self, thread: ReviewThread) -> PullRequestState:
        updated: list[ReviewThread] = []
        found = False
        for candidate in self.threads:
            if candidate.thread_id == thread.thread_id:
                updated.append(thread)
                found = True
            else:
                updated.append(candidate)
        if not found:
            updated.append(thread)
        return replace(self, threads=tuple(sorted(updated, key=lambda item: item.thread_id)))


@dataclass(frozen=True)
class ThreadAuditRecord:
    thread_id: str
    revision: int
    decision: DecisionAction | None
    rationale: str
    patch_ref: str | None
    resolved: bool
    status: ThreadStatus


@dataclass(frozen=True)
class RunSummary:
    repo_full_name: str
    pr_number: int
    outcome: Phase
    fixed_count: int
    ignored_count: int
    escalated_count: int
    retry_count: int
    stale_count: int
    cycle_count: int
    elapsed_seconds: float
    detail: str


def status_rank(status: ThreadStatus) -> int:
    return _STATUS_RANK[status]
