from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, replace
import logging
import threading
from typing import Literal, Protocol

from prsettle.classifier import Classifier
from prsettle.config import AppConfig
from prsettle.decision_engine import decide, redecide_after_apply
from prsettle.errors import (
    FatalReconcileError,
    LockExpiredError,
    StaleHeadError,
    TransientIOError,
    retry_transient,
)
from prsettle.github_gateway import GitHubRequestError
from prsettle.models import (
    CheckStatus,
    Decision,
    LockRecord,
    Phase,
    PullRequestSnapshot,
    PullRequestState,
    ReviewThread,
    RunSummary,
    Snapshot,
    ThreadAuditRecord,
    ThreadStatus,
)
from prsettle.normalizer import merge_threads
from prsettle.observability import log_event, log_warning_event
from prsettle.patch_coordinator import ApplyOutcome, PatchCoordinator
from prsettle.poller import Clock, Poller, PollResult, SystemClock, utc_iso8601
from prsettle.pr_lock import PullRequestLockManager
from prsettle.state import StateStore
from prsettle.thread_resolver import ThreadResolver


LOGGER = logging.getLogger("prsettle.lifecycle")

LifecycleEvent = Literal[
    "lock_acquired",
    "reviews_ready",
    "threads_normalized",
    "fixes_pending",
    "nothing_to_patch",
    "nothing_to_settle",
    "patches_attempted",
    "stale_detected",
    "drift_detected",
    "settled",
    "checks_passed",
    "checks_failed",
    "checks_timed_out",
    "merged",
    "escalate",
    "abort",
]

_TRANSITIONS: dict[tuple[str, str], Phase] = {
    ("created", "lock_acquired"): "waiting_for_reviews",
    ("waiting_for_reviews", "reviews_ready"): "collecting",
    ("collecting", "threads_normalized"): "deciding",
    ("deciding", "fixes_pending"): "patching",
    ("deciding", "nothing_to_patch"): "resolving",
    ("deciding", "nothing_to_settle"): "waiting_checks",
    ("patching", "patches_attempted"): "resolving",
    ("patching", "stale_detected"): "collecting",
    ("resolving", "drift_detected"): "collecting",
    ("resolving", "settled"): "waiting_checks",
    ("waiting_checks", "drift_detected"): "collecting",
    ("waiting_checks", "checks_passed"): "merging",
    ("waiting_checks", "checks_failed"): "escalated",
    ("waiting_checks", "checks_timed_out"): "escalated",
    ("merging", "stale_detected"): "collecting",
    ("merging", "merged"): "completed",
}

_SETTLE_STATUSES: frozenset[ThreadStatus] = frozenset({"applied", "acknowledged", "escalated"})
_STATUS_FOR_ACTION: dict[str, ThreadStatus] = {
    "ignore": "acknowledged",
    "escalate": "escalated",
}


class InvalidTransitionError(RuntimeError):
    pass


def transition(phase: Phase, event: LifecycleEvent) -> Phase:
    """Next phase for ``event``; any non-terminal phase may escalate or abort."""
    if phase in {"completed", "aborted", "escalated"}:
        raise InvalidTransitionError(f"{phase} is terminal; cannot handle {event}")
    if event == "escalate":
        return "escalated"
    if event == "abort":
        return "aborted"
    target = _TRANSITIONS.get((phase, event))
    if target is None:
        raise InvalidTransitionError(f"No transition from {phase} on {event}")
    return target


class PullRequestGateway(Protocol):
    def get_pull_request(self, pr_number: int) -> PullRequestSnapshot: ...

    def get_check_status(self, head_sha: str) -> CheckStatus: ...

    def list_requested_reviewers(self, pr_number: int) -> tuple[str, ...]: ...

    def merge_pull_request(
        self, pr_number: int, *, strategy: str, expected_head_sha: str | None = None
    ) -> str: ...

    def delete_branch(self, branch: str) -> None: ...


class _Escalation(Exception):
    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class _Cancelled(Exception):
    pass


@dataclass
class _RunContext:
    state: PullRequestState
    lock: LockRecord
    started: float
    snapshot: Snapshot | None = None
    pending_poll: PollResult | None = None
    detail: str = ""


class LifecycleController:
    """Drives one PR from lock acquisition to a terminal outcome.

    State is persisted after every phase, so a crashed run resumes from the
    last stored phase. The PR lock is refreshed at each phase boundary and
    before every push; losing it ends the run without touching the stored
    state. Setting ``cancel_event`` suspends the run at the next boundary.
    """

    def __init__(
        self,
        *,
        config: AppConfig,
        store: StateStore,
        locks: PullRequestLockManager,
        poller: Poller,
        classifier: Classifier,
        patcher: PatchCoordinator,
        resolver: ThreadResolver,
        github: PullRequestGateway,
        clock: Clock | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self._config = config
        self._runtime = config.runtime
        self._repo_full_name = config.repo.full_name
        self._store = store
        self._locks = locks
        self._poller = poller
        self._classifier = classifier
        self._patcher = patcher
        self._resolver = resolver
        self._github = github
        self._clock = clock or SystemClock()
        self._cancel_event = cancel_event or threading.Event()

    def run(self, pr_number: int) -> RunSummary:
        """Reconcile ``pr_number`` until it completes, escalates or aborts.

        Raises ``LockConflictError`` when another worker owns the PR.
        """
        lock = self._locks.acquire(repo_full_name=self._repo_full_name, pr_number=pr_number)
        try:
            ctx = _RunContext(
                state=self._initial_state(pr_number, lock),
                lock=lock,
                started=self._clock.now(),
            )
            log_event(
                LOGGER,
                "lifecycle_started",
                repo_full_name=self._repo_full_name,
                pr_number=pr_number,
                phase=ctx.state.phase,
            )
            if ctx.state.is_terminal:
                log_event(
                    LOGGER,
                    "lifecycle_skipped",
                    repo_full_name=self._repo_full_name,
                    pr_number=pr_number,
                    phase=ctx.state.phase,
                )
                return self._summary(ctx, detail=ctx.state.error or _default_detail(ctx.state))
            if ctx.state.phase == "created":
                self._advance(ctx, "lock_acquired")
            return self._drive(ctx)
        finally:
            self._locks.release(lock)

    def _initial_state(self, pr_number: int, lock: LockRecord) -> PullRequestState:
        stored = self._store.load_pr_state(repo_full_name=self._repo_full_name, pr_number=pr_number)
        started_at = utc_iso8601(self._clock.now())
        if stored is not None and not stored.is_terminal:
            # Resume from the persisted phase.
            return replace(stored, lock_token=lock.token)
        pull_request = retry_transient(
            lambda: self._github.get_pull_request(pr_number),
            op_name="get_pull_request",
            sleep=self._clock.sleep,
        )
        if stored is not None and (pull_request.merged or pull_request.state != "open"):
            return stored
        if stored is not None:
            # A finished PR picked up again starts a fresh lifecycle but keeps
            # its threads, so settled feedback is not handled twice.
            return replace(
                stored,
                branch=pull_request.head_ref,
                phase="created",
                last_synced_head=None,
                cycle_count=0,
                retry_count=0,
                stale_count=0,
                transient_error_count=0,
                lock_token=lock.token,
                error=None,
                started_at=started_at,
                fixes_applied=0,
            )
        return PullRequestState(
            repo_full_name=self._repo_full_name,
            pr_number=pr_number,
            branch=pull_request.head_ref,
            lock_token=lock.token,
            started_at=started_at,
        )

    def _drive(self, ctx: _RunContext) -> RunSummary:
        handlers = {
            "waiting_for_reviews": self._wait_for_reviews,
            "collecting": self._collect,
            "deciding": self._decide,
            "patching": self._patch,
            "resolving": self._resolve,
            "waiting_checks": self._wait_for_checks,
            "merging": self._merge,
        }
        while not ctx.state.is_terminal:
            if self._cancel_event.is_set():
                return self._suspend(ctx)
            try:
                self._refresh_lock(ctx)
            except LockExpiredError as exc:
                return self._lost_lock(ctx, exc)
            try:
                event = handlers[ctx.state.phase](ctx)
            except _Escalation as exc:
                self._advance(ctx, "escalate", error=exc.detail)
                break
            except _Cancelled:
                return self._suspend(ctx)
            except TransientIOError as exc:
                if self._note_transient(ctx, exc):
                    break
                continue
            except LockExpiredError as exc:
                return self._lost_lock(ctx, exc)
            except FatalReconcileError as exc:
                self._advance(ctx, "abort", error=str(exc))
                break
            except Exception as exc:  # noqa: BLE001
                log_warning_event(
                    LOGGER,
                    "lifecycle_unexpected_error",
                    repo_full_name=self._repo_full_name,
                    pr_number=ctx.state.pr_number,
                    phase=ctx.state.phase,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                self._advance(ctx, "abort", error=f"{type(exc).__name__}: {exc}")
                break
            ctx.state = replace(ctx.state, transient_error_count=0)
            self._advance(ctx, event)
        return self._finish(ctx)

    def _advance(
        self, ctx: _RunContext, event: LifecycleEvent, *, error: str | None = None
    ) -> None:
        previous = ctx.state.phase
        phase = transition(previous, event)
        ctx.state = replace(ctx.state, phase=phase, error=error or ctx.state.error)
        self._store.save_pr_state(ctx.state)
        log_event(
            LOGGER,
            "lifecycle_phase_changed",
            repo_full_name=self._repo_full_name,
            pr_number=ctx.state.pr_number,
            from_phase=previous,
            to_phase=phase,
            lifecycle_event=event,
        )

    def _note_transient(self, ctx: _RunContext, exc: TransientIOError) -> bool:
        """Count a transient failure; return True when the run was aborted."""
        count = ctx.state.transient_error_count + 1
        ctx.state = replace(
            ctx.state,
            transient_error_count=count,
            retry_count=ctx.state.retry_count + 1,
        )
        log_warning_event(
            LOGGER,
            "lifecycle_transient_error",
            repo_full_name=self._repo_full_name,
            pr_number=ctx.state.pr_number,
            phase=ctx.state.phase,
            consecutive=count,
            error=str(exc),
        )
        if count > self._runtime.max_consecutive_transient:
            self._advance(
                ctx,
                "abort",
                error=f"gave up after {count} consecutive transient failures: {exc}",
            )
            return True
        self._store.save_pr_state(ctx.state)
        self._clock.sleep(self._runtime.poll_interval_seconds)
        return False

    def _wait_for_reviews(self, ctx: _RunContext) -> LifecycleEvent:
        now = self._clock.now()
        poll = self._poller.collect(
            ctx.state.pr_number,
            deadline=now + self._runtime.collect_timeout_seconds,
            poll_interval=self._runtime.poll_interval_seconds,
        )
        self._require_open(poll.pull_request)
        ctx.pending_poll = poll
        return "reviews_ready"

    def _collect(self, ctx: _RunContext) -> LifecycleEvent:
        poll = ctx.pending_poll or self._poller.collect_once(ctx.state.pr_number)
        ctx.pending_poll = None
        self._require_open(poll.pull_request)
        cycle = ctx.state.cycle_count + 1
        ctx.state = replace(
            ctx.state,
            threads=merge_threads(ctx.state.threads, poll.threads),
            snapshot_sequence=poll.snapshot.sequence,
            last_synced_head=poll.snapshot.head_sha,
            cycle_count=cycle,
        )
        ctx.snapshot = poll.snapshot
        if cycle > self._runtime.max_cycles:
            raise _Escalation(
                f"Review feedback did not settle after {self._runtime.max_cycles} cycles."
            )
        return "threads_normalized"

    def _decide(self, ctx: _RunContext) -> LifecycleEvent:
        snapshot = self._current_snapshot(ctx)
        for thread in ctx.state.threads:
            if not thread.needs_decision:
                continue
            classification = self._classifier.classify(thread)
            decision = decide(
                thread,
                classification,
                self._config.policy,
                snapshot_sequence=snapshot.sequence,
            )
            self._record_decision(ctx, decision)
            updated = replace(
                thread,
                category=classification.category,
                severity=classification.severity,
                decision=decision.action,
                last_decided_hash=thread.content_hash,
            )
            status = _STATUS_FOR_ACTION.get(decision.action)
            if status is not None:
                updated = updated.with_status(status)
            ctx.state = ctx.state.with_thread(updated)

        if not ctx.state.threads:
            return "nothing_to_settle"
        if _pending_fixes(ctx.state.threads):
            return "fixes_pending"
        return "nothing_to_patch"

    def _patch(self, ctx: _RunContext) -> LifecycleEvent:
        snapshot = self._current_snapshot(ctx)
        items = [
            (thread, self._current_decision(ctx.state.pr_number, thread))
            for thread in _pending_fixes(ctx.state.threads)
        ]
        stale = False
        if self._patcher.commit_mode == "per_cycle":
            outcomes = self._patcher.apply_batch(
                ctx.state, items, snapshot, before_push=lambda: self._refresh_lock(ctx)
            )
            for (thread, decision), outcome in zip(items, outcomes):
                if not self._apply_outcome(ctx, thread, decision, outcome):
                    stale = True
        else:
            for thread, decision in items:
                self._refresh_lock(ctx)
                outcome = self._patcher.apply(
                    ctx.state,
                    thread,
                    decision,
                    snapshot,
                    before_push=lambda: self._refresh_lock(ctx),
                )
                settled = self._apply_outcome(ctx, thread, decision, outcome)
                # Persist each push so a crash never re-applies a pushed fix.
                self._store.save_pr_state(ctx.state)
                if not settled:
                    stale = True
                    break

        if stale:
            stale_count = ctx.state.stale_count + 1
            ctx.state = replace(ctx.state, stale_count=stale_count)
            if stale_count > self._runtime.max_stale_rounds:
                raise FatalReconcileError(
                    f"Branch head kept moving; gave up after {stale_count} stale rounds."
                )
            return "stale_detected"
        return "patches_attempted"

    def _apply_outcome(
        self,
        ctx: _RunContext,
        thread: ReviewThread,
        decision: Decision,
        outcome: ApplyOutcome,
    ) -> bool:
        """Fold one apply outcome into ``ctx.state``.

        Returns False for stale outcomes, which leave the thread open for
        re-collection. Every other failure supersedes the fix decision.
        """
        if outcome.ok:
            ctx.state = replace(
                ctx.state.with_thread(
                    replace(thread.with_status("applied"), patch_ref=outcome.commit_ref)
                ),
                last_synced_head=outcome.commit_ref,
                fixes_applied=ctx.state.fixes_applied + 1,
            )
            return True
        if outcome.error is None:
            raise FatalReconcileError(f"Patch for thread {thread.thread_id} reported no commit")
        if outcome.error == "stale":
            return False
        superseding = outcome.superseding_decision or redecide_after_apply(
            thread,
            decision,
            outcome.error,
            self._config.policy,
            detail=outcome.detail,
        )
        self._record_decision(ctx, superseding)
        status = _STATUS_FOR_ACTION.get(superseding.action, "escalated")
        ctx.state = ctx.state.with_thread(
            replace(thread.with_status(status), decision=superseding.action)
        )
        return True

    def _resolve(self, ctx: _RunContext) -> LifecycleEvent:
        snapshot = self._current_snapshot(ctx)
        posted = self._resolver.load_posted_tokens(ctx.state.pr_number)
        unsettled = 0
        for thread in ctx.state.threads:
            if thread.status not in _SETTLE_STATUSES or thread.decision is None:
                continue
            outcome = self._resolver.settle(
                ctx.state,
                thread,
                self._current_decision(ctx.state.pr_number, thread),
                posted_tokens=posted,
            )
            ctx.state = ctx.state.with_thread(outcome.thread)
            if not outcome.settled:
                unsettled += 1
        if unsettled:
            ctx.state = replace(ctx.state, retry_count=ctx.state.retry_count + unsettled)

        poll = self._poller.collect_once(ctx.state.pr_number)
        drifted = not poll.snapshot.same_threads_as(snapshot)
        if not drifted and not unsettled:
            return "settled"
        if ctx.state.cycle_count >= self._runtime.max_cycles:
            if unsettled:
                raise _Escalation(
                    f"{unsettled} review thread(s) could not be resolved after "
                    f"{ctx.state.cycle_count} cycles."
                )
            raise _Escalation(
                f"New review feedback kept arriving after {ctx.state.cycle_count} cycles."
            )
        ctx.pending_poll = poll
        return "drift_detected"

    def _wait_for_checks(self, ctx: _RunContext) -> LifecycleEvent:
        escalated = [thread.thread_id for thread in ctx.state.threads if thread.status == "escalated"]
        if escalated:
            raise _Escalation(
                f"{len(escalated)} review thread(s) need a human decision: "
                f"{', '.join(escalated)}."
            )
        snapshot = self._current_snapshot(ctx)
        head = ctx.state.last_synced_head or snapshot.head_sha
        deadline = self._clock.now() + self._runtime.checks_timeout_seconds
        last_status: CheckStatus = "pending"
        outstanding: tuple[str, ...] = ()
        while True:
            if self._cancel_event.is_set():
                raise _Cancelled()
            last_status = retry_transient(
                lambda: self._github.get_check_status(head),
                op_name="get_check_status",
                sleep=self._clock.sleep,
            )
            if last_status == "failure":
                ctx.detail = (
                    "CI failed after automated fixes were pushed."
                    if ctx.state.fixes_applied
                    else "CI failed on the pull request head."
                )
                ctx.state = replace(ctx.state, error=ctx.detail)
                return "checks_failed"
            if last_status == "success":
                outstanding = self._outstanding_reviewers(ctx.state.pr_number)
                if not outstanding:
                    poll = self._poller.collect_once(ctx.state.pr_number)
                    if not poll.snapshot.same_threads_as(snapshot):
                        if ctx.state.cycle_count >= self._runtime.max_cycles:
                            raise _Escalation(
                                "New review feedback arrived while waiting for checks "
                                f"after {ctx.state.cycle_count} cycles."
                            )
                        ctx.pending_poll = poll
                        return "drift_detected"
                    return "checks_passed"
            if self._clock.now() + self._runtime.checks_poll_interval_seconds > deadline:
                break
            self._clock.sleep(self._runtime.checks_poll_interval_seconds)
            self._refresh_lock(ctx)

        if last_status == "success":
            ctx.detail = f"Review still requested from {', '.join(outstanding)}."
        else:
            ctx.detail = (
                f"Checks did not finish within {self._runtime.checks_timeout_seconds} seconds."
            )
        ctx.state = replace(ctx.state, error=ctx.detail)
        return "checks_timed_out"

    def _merge(self, ctx: _RunContext) -> LifecycleEvent:
        pr_number = ctx.state.pr_number
        pull_request = retry_transient(
            lambda: self._github.get_pull_request(pr_number),
            op_name="get_pull_request",
            sleep=self._clock.sleep,
        )
        if not pull_request.merged:
            if pull_request.state != "open":
                raise FatalReconcileError(f"PR #{pr_number} was closed before merge")
            try:
                self._github.merge_pull_request(
                    pr_number,
                    strategy=self._runtime.merge_strategy,
                    expected_head_sha=ctx.state.last_synced_head,
                )
            except StaleHeadError:
                stale_count = ctx.state.stale_count + 1
                ctx.state = replace(ctx.state, stale_count=stale_count)
                if stale_count > self._runtime.max_stale_rounds:
                    raise FatalReconcileError(
                        f"Branch head kept moving; gave up after {stale_count} stale rounds."
                    ) from None
                return "stale_detected"
            except GitHubRequestError as exc:
                raise _Escalation(f"GitHub refused the merge: {exc}") from exc
            log_event(
                LOGGER,
                "pr_merged",
                repo_full_name=self._repo_full_name,
                pr_number=pr_number,
                strategy=self._runtime.merge_strategy,
            )
        if self._runtime.delete_branch_after_merge:
            retry_transient(
                lambda: self._github.delete_branch(ctx.state.branch),
                op_name="delete_branch",
                sleep=self._clock.sleep,
            )
        ctx.detail = "Merged after all review threads were settled."
        return "merged"

    def _finish(self, ctx: _RunContext) -> RunSummary:
        state = ctx.state
        records = tuple(self._audit_record(state.pr_number, thread) for thread in state.threads)
        self._store.record_audit_records(
            repo_full_name=self._repo_full_name, pr_number=state.pr_number, records=records
        )
        summary = self._summary(ctx, detail=state.error or ctx.detail or _default_detail(state))
        self._store.record_run_summary(summary)
        log_event(
            LOGGER,
            "lifecycle_finished",
            repo_full_name=self._repo_full_name,
            pr_number=state.pr_number,
            outcome=summary.outcome,
            fixed=summary.fixed_count,
            ignored=summary.ignored_count,
            escalated=summary.escalated_count,
            cycles=summary.cycle_count,
            elapsed_seconds=summary.elapsed_seconds,
        )
        return summary

    def _refresh_lock(self, ctx: _RunContext) -> None:
        ctx.lock = self._locks.refresh(ctx.lock)

    def _suspend(self, ctx: _RunContext) -> RunSummary:
        """Stop at a phase boundary and keep the stored phase for the next run."""
        self._store.save_pr_state(ctx.state)
        log_event(
            LOGGER,
            "lifecycle_suspended",
            repo_full_name=self._repo_full_name,
            pr_number=ctx.state.pr_number,
            phase=ctx.state.phase,
        )
        summary = replace(
            self._summary(
                ctx, detail=f"Stopped during {ctx.state.phase}; the next run resumes there."
            ),
            outcome="aborted",
        )
        self._store.record_run_summary(summary)
        return summary

    def _lost_lock(self, ctx: _RunContext, exc: LockExpiredError) -> RunSummary:
        # Another worker owns the PR now; its stored state is left alone.
        log_warning_event(
            LOGGER,
            "lifecycle_lock_lost",
            repo_full_name=self._repo_full_name,
            pr_number=ctx.state.pr_number,
            phase=ctx.state.phase,
            error=str(exc),
        )
        summary = replace(
            self._summary(ctx, detail=str(exc)),
            outcome="aborted",
        )
        self._store.record_run_summary(summary)
        return summary

    def _summary(self, ctx: _RunContext, *, detail: str) -> RunSummary:
        state = ctx.state
        return RunSummary(
            repo_full_name=self._repo_full_name,
            pr_number=state.pr_number,
            outcome=state.phase,
            fixed_count=sum(1 for thread in state.threads if thread.patch_ref is not None),
            ignored_count=sum(1 for thread in state.threads if thread.decision == "ignore"),
            escalated_count=sum(1 for thread in state.threads if thread.decision == "escalate"),
            retry_count=state.retry_count,
            stale_count=state.stale_count,
            cycle_count=state.cycle_count,
            elapsed_seconds=round(max(0.0, self._clock.now() - ctx.started), 3),
            detail=detail,
        )

    def _audit_record(self, pr_number: int, thread: ReviewThread) -> ThreadAuditRecord:
        decision = self._latest_decision(pr_number, thread)
        return ThreadAuditRecord(
            thread_id=thread.thread_id,
            revision=thread.revision,
            decision=thread.decision,
            rationale=decision.rationale if decision is not None else "No decision was made.",
            patch_ref=thread.patch_ref,
            resolved=thread.status == "resolved",
            status=thread.status,
        )

    def _record_decision(self, ctx: _RunContext, decision: Decision) -> None:
        self._store.append_decision(
            repo_full_name=self._repo_full_name,
            pr_number=ctx.state.pr_number,
            decision=decision,
        )
        log_event(
            LOGGER,
            "decision_recorded",
            repo_full_name=self._repo_full_name,
            pr_number=ctx.state.pr_number,
            thread_id=decision.thread_id,
            revision=decision.revision,
            action=decision.action,
            risk_tag=decision.risk_tag,
        )

    def _latest_decision(self, pr_number: int, thread: ReviewThread) -> Decision | None:
        decisions = self._store.list_decisions(
            repo_full_name=self._repo_full_name,
            pr_number=pr_number,
            thread_id=thread.thread_id,
        )
        for decision in reversed(decisions):
            if decision.revision == thread.revision:
                return decision
        return None

    def _current_decision(self, pr_number: int, thread: ReviewThread) -> Decision:
        decision = self._latest_decision(pr_number, thread)
        if decision is None or decision.action != thread.decision:
            raise FatalReconcileError(
                f"Stored decisions for thread {thread.thread_id} do not match its state"
            )
        return decision

    def _current_snapshot(self, ctx: _RunContext) -> Snapshot:
        if ctx.snapshot is None:
            ctx.snapshot = self._store.get_snapshot(
                repo_full_name=self._repo_full_name,
                pr_number=ctx.state.pr_number,
                sequence=ctx.state.snapshot_sequence,
            )
        if ctx.snapshot is None:
            raise FatalReconcileError(
                f"Snapshot {ctx.state.snapshot_sequence} for PR #{ctx.state.pr_number} is missing"
            )
        return ctx.snapshot

    def _outstanding_reviewers(self, pr_number: int) -> tuple[str, ...]:
        requested = retry_transient(
            lambda: self._github.list_requested_reviewers(pr_number),
            op_name="list_requested_reviewers",
            sleep=self._clock.sleep,
        )
        required = self._config.review.required_reviewers
        if not required:
            return tuple(requested)
        return tuple(login for login in requested if login.lower() in required)

    def _require_open(self, pull_request: PullRequestSnapshot) -> None:
        if pull_request.merged:
            raise FatalReconcileError(f"PR #{pull_request.number} was merged outside prsettle")
        if pull_request.state != "open":
            raise FatalReconcileError(f"PR #{pull_request.number} is {pull_request.state}")


def _pending_fixes(threads: Sequence[ReviewThread]) -> list[ReviewThread]:
    return [thread for thread in threads if thread.decision == "fix" and thread.status == "open"]


def _default_detail(state: PullRequestState) -> str:
    if state.phase == "completed":
        return "Merged after all review threads were settled."
    if state.phase == "escalated":
        return "Escalated for human review."
    return "Aborted."
