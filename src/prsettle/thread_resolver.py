from __future__ import annotations

from collections.abc import Callable, MutableSet
from dataclasses import dataclass, replace
import logging
import time
from typing import Protocol

from prsettle.action_markers import CommentKind, append_action_token, compute_action_token
from prsettle.config import ResolutionMode
from prsettle.errors import ResolveFailureError, retry_transient
from prsettle.models import Decision, PullRequestState, ReviewThread
from prsettle.observability import log_event, log_warning_event


LOGGER = logging.getLogger("prsettle.thread_resolver")


class ThreadGateway(Protocol):
    def post_review_comment_reply(
        self, pr_number: int, review_comment_id: int, body: str
    ) -> None: ...

    def post_issue_comment(self, issue_number: int, body: str) -> None: ...

    def resolve_review_thread(self, thread_id: str) -> bool: ...

    def list_posted_action_tokens(self, pr_number: int) -> frozenset[str]: ...


@dataclass(frozen=True)
class SettleOutcome:
    thread: ReviewThread
    comment_posted: bool
    resolve_called: bool
    error: str | None = None

    @property
    def settled(self) -> bool:
        return self.error is None


class ThreadResolver:
    """Posts the rationale for each decision and marks the thread settled.

    ``ReviewThread.resolved_by_us`` is the only record of our own resolution;
    the resolve call is never made twice for one thread revision, and never
    for a thread the platform already reports resolved.
    """

    def __init__(
        self,
        *,
        github: ThreadGateway,
        resolution_mode: ResolutionMode = "api",
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._github = github
        self._resolution_mode = resolution_mode
        self._sleep = sleep

    def load_posted_tokens(self, pr_number: int) -> set[str]:
        tokens = retry_transient(
            lambda: self._github.list_posted_action_tokens(pr_number),
            op_name="list_posted_action_tokens",
            sleep=self._sleep,
        )
        return set(tokens)

    def settle(
        self,
        pr: PullRequestState,
        thread: ReviewThread,
        decision: Decision,
        *,
        posted_tokens: MutableSet[str],
    ) -> SettleOutcome:
        if decision.thread_id != thread.thread_id or decision.revision != thread.revision:
            raise ValueError(f"decision does not match thread {thread.thread_id} revision")
        if thread.status == "resolved" or thread.resolved_by_us:
            return SettleOutcome(thread=thread, comment_posted=False, resolve_called=False)
        expected_status = {"fix": "applied", "ignore": "acknowledged", "escalate": "escalated"}
        if thread.status != expected_status[decision.action]:
            raise ValueError(
                f"thread {thread.thread_id} is {thread.status}; cannot settle a "
                f"{decision.action} decision"
            )

        kind, body = _reply_for(thread, decision)
        token = compute_action_token(
            repo_full_name=pr.repo_full_name,
            pr_number=pr.pr_number,
            thread_id=thread.thread_id,
            revision=thread.revision,
            action=decision.action,
            kind=kind,
        )
        comment_posted = False
        if token not in posted_tokens:
            try:
                self._post(pr, thread, append_action_token(body=body, token=token))
            except Exception as exc:  # noqa: BLE001
                return self._failed(thread, stage="comment", exc=exc)
            posted_tokens.add(token)
            comment_posted = True

        if decision.action == "escalate":
            log_event(
                LOGGER,
                "thread_escalated",
                repo_full_name=pr.repo_full_name,
                pr_number=pr.pr_number,
                thread_id=thread.thread_id,
                revision=thread.revision,
            )
            return SettleOutcome(thread=thread, comment_posted=comment_posted, resolve_called=False)

        if thread.platform_resolved:
            # Someone else already resolved it; record the outcome without a call.
            return SettleOutcome(
                thread=thread.with_status("resolved"),
                comment_posted=comment_posted,
                resolve_called=False,
            )

        if self._resolution_mode == "comment_only" or not thread.native:
            settled = replace(thread.with_status("resolved"), resolved_by_us=True)
            self._log_resolved(pr, settled, via="comment")
            return SettleOutcome(thread=settled, comment_posted=comment_posted, resolve_called=False)

        attempted = replace(thread, resolve_attempts=thread.resolve_attempts + 1)
        try:
            resolved = self._github.resolve_review_thread(thread.thread_id)
        except ResolveFailureError as exc:
            outcome = self._failed(attempted, stage="resolve", exc=exc)
            return replace(outcome, comment_posted=comment_posted, resolve_called=True)
        if not resolved:
            log_warning_event(
                LOGGER,
                "thread_resolve_unconfirmed",
                thread_id=thread.thread_id,
                attempts=attempted.resolve_attempts,
            )
            return SettleOutcome(
                thread=attempted,
                comment_posted=comment_posted,
                resolve_called=True,
                error="platform did not confirm resolution",
            )
        settled = replace(
            attempted.with_status("resolved"), resolved_by_us=True, platform_resolved=True
        )
        self._log_resolved(pr, settled, via="api")
        return SettleOutcome(thread=settled, comment_posted=comment_posted, resolve_called=True)

    def _post(self, pr: PullRequestState, thread: ReviewThread, body: str) -> None:
        if thread.native:
            retry_transient(
                lambda: self._github.post_review_comment_reply(
                    pr.pr_number, thread.first_comment_id, body
                ),
                op_name="post_review_comment_reply",
                sleep=self._sleep,
            )
            return
        retry_transient(
            lambda: self._github.post_issue_comment(pr.pr_number, body),
            op_name="post_issue_comment",
            sleep=self._sleep,
        )

    def _failed(self, thread: ReviewThread, *, stage: str, exc: Exception) -> SettleOutcome:
        log_warning_event(
            LOGGER,
            "thread_settle_failed",
            thread_id=thread.thread_id,
            stage=stage,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return SettleOutcome(
            thread=thread,
            comment_posted=False,
            resolve_called=False,
            error=f"{stage} failed: {exc}",
        )

    def _log_resolved(self, pr: PullRequestState, thread: ReviewThread, *, via: str) -> None:
        log_event(
            LOGGER,
            "thread_resolved",
            repo_full_name=pr.repo_full_name,
            pr_number=pr.pr_number,
            thread_id=thread.thread_id,
            revision=thread.revision,
            via=via,
        )


def _reply_for(thread: ReviewThread, decision: Decision) -> tuple[CommentKind, str]:
    # Issue comments are not threaded, so say which feedback they answer.
    prefix = "" if thread.native else f"Regarding feedback from @{thread.author_login}:\n\n"
    if decision.action == "fix":
        ref = thread.patch_ref or "<unknown commit>"
        return "fix_reply", f"{prefix}Addressed in {ref}.\n\n{decision.rationale}"
    if decision.action == "ignore":
        return "ignore_reply", f"{prefix}Leaving this as is.\n\n{decision.rationale}"
    return (
        "escalation_reply",
        f"{prefix}Needs a human decision before this can be settled.\n\n{decision.rationale}",
    )
