from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
import logging
from pathlib import Path
import time
from typing import Protocol

from prsettle.agent_adapter import AgentAdapter, PatchRequest
from prsettle.config import CommitMode, PolicyConfig
from prsettle.decision_engine import assess_patch_risk, decide, enforce_protected_paths
from prsettle.errors import (
    ApplyConflictError,
    PolicyViolationError,
    TransientIOError,
    retry_transient,
)
from prsettle.git_ops import PushRejectedError
from prsettle.models import (
    ApplyErrorKind,
    Classification,
    Decision,
    ProposedPatch,
    PullRequestState,
    ReviewThread,
    RiskAssessment,
    Snapshot,
)
from prsettle.observability import log_event, log_warning_event


LOGGER = logging.getLogger("prsettle.patch_coordinator")


class VcsOps(Protocol):
    def ensure_checkout(self, pr_number: int) -> Path: ...

    def get_head(self, branch: str) -> str | None: ...

    def restore_branch(self, checkout_path: Path, branch: str, expected_head_sha: str) -> bool: ...

    def read_file(self, checkout_path: Path, relative_path: str) -> str | None: ...

    def check_patch(self, checkout_path: Path, diff: str) -> bool: ...

    def apply_patch(self, checkout_path: Path, diff: str) -> None: ...

    def commit_all(self, checkout_path: Path, message: str) -> str: ...

    def push_branch(self, checkout_path: Path, branch: str) -> None: ...

    def reset_to(self, checkout_path: Path, sha: str) -> None: ...


@dataclass(frozen=True)
class ApplyOutcome:
    thread_id: str
    commit_ref: str | None = None
    error: ApplyErrorKind | None = None
    detail: str = ""
    risk: RiskAssessment | None = None
    summary: str = ""
    superseding_decision: Decision | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.commit_ref is not None


@dataclass(frozen=True)
class _PreparedPatch:
    thread: ReviewThread
    patch: ProposedPatch


class PatchCoordinator:
    """Turns ``fix`` decisions into commits on the PR's existing branch.

    The branch head is compared with the expected head before any work; the
    expected head is the snapshot head until this coordinator pushes, after
    which it is our own last commit.
    """

    def __init__(
        self,
        *,
        git: VcsOps,
        agent: AgentAdapter,
        policy: PolicyConfig,
        commit_mode: CommitMode = "per_thread",
        coding_guidelines_path: str | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._git = git
        self._agent = agent
        self._policy = policy
        self._commit_mode = commit_mode
        self._coding_guidelines_path = coding_guidelines_path
        self._sleep = sleep

    @property
    def commit_mode(self) -> CommitMode:
        return self._commit_mode

    def apply(
        self,
        pr: PullRequestState,
        thread: ReviewThread,
        decision: Decision,
        snapshot: Snapshot,
        *,
        before_push: Callable[[], None] | None = None,
    ) -> ApplyOutcome:
        outcomes = self.apply_batch(pr, ((thread, decision),), snapshot, before_push=before_push)
        return outcomes[0]

    def apply_batch(
        self,
        pr: PullRequestState,
        items: Sequence[tuple[ReviewThread, Decision]],
        snapshot: Snapshot,
        *,
        before_push: Callable[[], None] | None = None,
    ) -> tuple[ApplyOutcome, ...]:
        """Apply every fix in ``items`` and push them as one commit.

        Per-thread mode calls this with a single item, so each thread still
        gets exactly one commit. ``before_push`` runs right before the commit
        is made; an exception from it stops the batch with nothing pushed.
        """
        for thread, decision in items:
            if decision.action != "fix":
                raise ValueError(f"thread {thread.thread_id} decision is {decision.action}, not fix")
            if decision.content_hash != thread.content_hash:
                raise ValueError(f"decision for thread {thread.thread_id} is for older content")
        if not items:
            return ()

        expected_head = pr.last_synced_head or snapshot.head_sha
        try:
            observed_head = self._retry(lambda: self._git.get_head(pr.branch), op_name="get_head")
        except TransientIOError as exc:
            return self._all(items, error="transient", detail=str(exc))
        if observed_head != expected_head:
            log_event(
                LOGGER,
                "patch_stale",
                repo_full_name=pr.repo_full_name,
                pr_number=pr.pr_number,
                expected_head=expected_head,
                observed_head=observed_head,
            )
            return self._all(
                items,
                error="stale",
                detail=f"branch head is {observed_head or '<missing>'}, expected {expected_head}",
            )

        checkout = self._git.ensure_checkout(pr.pr_number)
        try:
            restored = self._retry(
                lambda: self._git.restore_branch(checkout, pr.branch, expected_head),
                op_name="restore_branch",
            )
        except TransientIOError as exc:
            return self._all(items, error="transient", detail=str(exc))
        if not restored:
            return self._all(items, error="stale", detail="checkout did not match expected head")

        outcomes: dict[str, ApplyOutcome] = {}
        staged: list[_PreparedPatch] = []
        for thread, _decision in items:
            outcome, prepared = self._stage_one(pr, thread, checkout, snapshot)
            if prepared is None:
                outcomes[thread.thread_id] = outcome
                continue
            staged.append(prepared)
            outcomes[thread.thread_id] = outcome

        if not staged:
            return tuple(outcomes[thread.thread_id] for thread, _ in items)

        if before_push is not None:
            try:
                before_push()
            except Exception:
                self._git.reset_to(checkout, expected_head)
                raise
        message = _commit_message(staged)
        commit_ref = self._git.commit_all(checkout, message)
        try:
            self._retry(lambda: self._git.push_branch(checkout, pr.branch), op_name="push_branch")
        except PushRejectedError as exc:
            self._git.reset_to(checkout, expected_head)
            log_event(
                LOGGER,
                "patch_stale",
                repo_full_name=pr.repo_full_name,
                pr_number=pr.pr_number,
                expected_head=expected_head,
                observed_head=None,
            )
            for prepared in staged:
                outcomes[prepared.thread.thread_id] = ApplyOutcome(
                    thread_id=prepared.thread.thread_id, error="stale", detail=str(exc)
                )
            return tuple(outcomes[thread.thread_id] for thread, _ in items)
        except TransientIOError as exc:
            self._git.reset_to(checkout, expected_head)
            for prepared in staged:
                outcomes[prepared.thread.thread_id] = ApplyOutcome(
                    thread_id=prepared.thread.thread_id, error="transient", detail=str(exc)
                )
            return tuple(outcomes[thread.thread_id] for thread, _ in items)

        for prepared in staged:
            previous = outcomes[prepared.thread.thread_id]
            outcomes[prepared.thread.thread_id] = ApplyOutcome(
                thread_id=prepared.thread.thread_id,
                commit_ref=commit_ref,
                risk=previous.risk,
                summary=prepared.patch.summary,
            )
        log_event(
            LOGGER,
            "patch_applied",
            repo_full_name=pr.repo_full_name,
            pr_number=pr.pr_number,
            commit_ref=commit_ref,
            thread_ids=[prepared.thread.thread_id for prepared in staged],
            commit_mode=self._commit_mode,
        )
        return tuple(outcomes[thread.thread_id] for thread, _ in items)

    def _stage_one(
        self,
        pr: PullRequestState,
        thread: ReviewThread,
        checkout: Path,
        snapshot: Snapshot,
    ) -> tuple[ApplyOutcome, _PreparedPatch | None]:
        request = PatchRequest(
            repo_full_name=pr.repo_full_name,
            pr_number=pr.pr_number,
            branch=pr.branch,
            thread=thread,
            file_context=self._git.read_file(checkout, thread.path),
            coding_guidelines_path=self._coding_guidelines_path,
        )
        try:
            patch = self._retry(
                lambda: self._agent.propose_patch(request=request, cwd=checkout),
                op_name="propose_patch",
            )
        except TransientIOError as exc:
            return ApplyOutcome(thread_id=thread.thread_id, error="transient", detail=str(exc)), None
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "patch_proposal_failed",
                thread_id=thread.thread_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return (
                ApplyOutcome(
                    thread_id=thread.thread_id,
                    error="no_patch",
                    detail=f"patch proposal failed: {type(exc).__name__}",
                ),
                None,
            )
        if patch is None or not patch.diff.strip():
            return ApplyOutcome(thread_id=thread.thread_id, error="no_patch"), None

        risk = assess_patch_risk(patch.diff, self._policy)
        if thread.severity is not None:
            checked = decide(
                thread,
                Classification(category=thread.category, severity=thread.severity),
                self._policy,
                snapshot_sequence=snapshot.sequence,
                risk=risk,
            )
            if checked.action != "fix":
                error: ApplyErrorKind = (
                    "policy_violation" if checked.risk_tag == "policy_violation" else "risk_exceeded"
                )
                return (
                    ApplyOutcome(
                        thread_id=thread.thread_id,
                        error=error,
                        detail=checked.rationale,
                        risk=risk,
                        superseding_decision=checked,
                    ),
                    None,
                )

        try:
            enforce_protected_paths(risk)
        except PolicyViolationError as exc:
            return (
                ApplyOutcome(
                    thread_id=thread.thread_id,
                    error="policy_violation",
                    detail=str(exc),
                    risk=risk,
                ),
                None,
            )
        if not self._git.check_patch(checkout, patch.diff):
            return (
                ApplyOutcome(
                    thread_id=thread.thread_id,
                    error="conflict",
                    detail="dry-run apply failed",
                    risk=risk,
                ),
                None,
            )
        try:
            self._git.apply_patch(checkout, patch.diff)
        except ApplyConflictError as exc:
            return (
                ApplyOutcome(thread_id=thread.thread_id, error="conflict", detail=str(exc), risk=risk),
                None,
            )
        return (
            ApplyOutcome(thread_id=thread.thread_id, risk=risk, summary=patch.summary),
            _PreparedPatch(thread=thread, patch=patch),
        )

    def _retry(self, operation, *, op_name: str):  # type: ignore[no-untyped-def]
        return retry_transient(operation, op_name=op_name, sleep=self._sleep)

    def _all(
        self,
        items: Sequence[tuple[ReviewThread, Decision]],
        *,
        error: ApplyErrorKind,
        detail: str,
    ) -> tuple[ApplyOutcome, ...]:
        return tuple(
            ApplyOutcome(thread_id=thread.thread_id, error=error, detail=detail)
            for thread, _ in items
        )


def _commit_message(staged: Sequence[_PreparedPatch]) -> str:
    if len(staged) == 1:
        prepared = staged[0]
        subject = prepared.patch.commit_message or _default_subject(prepared.thread)
        return f"{subject}\n\nReview-Thread: {prepared.thread.thread_id}"
    lines = [f"Address {len(staged)} review threads", ""]
    for prepared in staged:
        subject = prepared.patch.commit_message or _default_subject(prepared.thread)
        lines.append(f"- {subject}")
    lines.append("")
    for prepared in staged:
        lines.append(f"Review-Thread: {prepared.thread.thread_id}")
    return "\n".join(lines)


def _default_subject(thread: ReviewThread) -> str:
    if thread.path:
        return f"Address review feedback on {thread.path}"
    return "Address review feedback"
