from __future__ import annotations

from collections.abc import Callable
import logging
import time
from typing import TypeVar

from prsettle.observability import log_event


LOGGER = logging.getLogger("prsettle.errors")
_T = TypeVar("_T")
MAX_TRANSIENT_ATTEMPTS = 3


class ReconcileError(RuntimeError):
    """Base class for reconciliation failures."""


class TransientIOError(ReconcileError):
    """Network or API failure that may succeed when retried."""


class StaleHeadError(ReconcileError):
    """Branch head moved since the snapshot the caller decided from."""

    def __init__(self, *, expected_head: str | None, observed_head: str | None) -> None:
        super().__init__(
            f"branch head moved: expected {expected_head or '<none>'}, "
            f"observed {observed_head or '<none>'}"
        )
        self.expected_head = expected_head
        self.observed_head = observed_head


class ApplyConflictError(ReconcileError):
    """Candidate patch does not apply cleanly against the branch head."""


class ResolveFailureError(ReconcileError):
    """Platform refused or failed to mark a review thread resolved."""


class PolicyViolationError(ReconcileError):
    """A decision would touch a path or action the policy forbids."""


class FatalReconcileError(ReconcileError):
    """Aborts the whole PR lifecycle."""


class LockExpiredError(FatalReconcileError):
    """The PR lock expired or was taken over while this worker held it."""


class LockConflictError(ReconcileError):
    """Another worker holds an unexpired lock for the PR."""


def retry_transient(
    operation: Callable[[], _T],
    *,
    op_name: str,
    attempts: int = MAX_TRANSIENT_ATTEMPTS,
    base_delay_seconds: float = 1.0,
    max_delay_seconds: float = 8.0,
    sleep: Callable[[float], None] = time.sleep,
) -> _T:
    """Run ``operation`` retrying ``TransientIOError`` with bounded backoff.

    The last ``TransientIOError`` propagates once ``attempts`` are used up;
    every other exception propagates immediately.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")
    delay = base_delay_seconds
    attempt = 1
    while True:
        try:
            return operation()
        except TransientIOError as exc:
            if attempt >= attempts:
                log_event(
                    LOGGER,
                    "transient_retry_exhausted",
                    op=op_name,
                    attempts=attempt,
                    error=str(exc),
                )
                raise
            log_event(
                LOGGER,
                "transient_retry_scheduled",
                op=op_name,
                attempt=attempt,
                delay_seconds=delay,
                error=str(exc),
            )
            sleep(delay)
            delay = min(delay * 2, max_delay_seconds)
            attempt += 1
