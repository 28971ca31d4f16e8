from __future__ import annotations

import difflib
import logging
from pathlib import Path

from prsettle.agent_adapter import AgentAdapter, PatchRequest
from prsettle.models import Classification, ProposedPatch, ReviewThread
from prsettle.observability import log_event


LOGGER = logging.getLogger("prsettle.suggestion_adapter")


class SuggestionPatchAdapter(AgentAdapter):
    """Turns a reviewer's ```suggestion block into a patch without an agent.

    Threads without a usable suggestion go to ``fallback`` when one is set.
    """

    def __init__(self, fallback: AgentAdapter | None = None) -> None:
        self._fallback = fallback

    def propose_patch(self, *, request: PatchRequest, cwd: Path) -> ProposedPatch | None:
        diff = suggestion_diff(request.thread, request.file_context)
        if diff is not None:
            log_event(
                LOGGER,
                "suggestion_patch_built",
                thread_id=request.thread.thread_id,
                path=request.thread.path,
            )
            return ProposedPatch(
                diff=diff,
                summary="Applied the reviewer's suggested change.",
                commit_message=f"Apply review suggestion to {request.thread.path}",
            )
        if self._fallback is None:
            return None
        return self._fallback.propose_patch(request=request, cwd=cwd)

    def classify_thread(
        self, *, thread: ReviewThread, repo_full_name: str, cwd: Path | None
    ) -> Classification:
        if self._fallback is None:
            raise RuntimeError("No agent configured to classify review threads")
        return self._fallback.classify_thread(
            thread=thread, repo_full_name=repo_full_name, cwd=cwd
        )


def suggestion_diff(thread: ReviewThread, file_context: str | None) -> str | None:
    """Unified diff replacing the thread's line range with its suggestion.

    Returns ``None`` when the thread has no suggestion, no line range, or the
    file cannot be patched line by line.
    """
    if not thread.has_suggestion or file_context is None or not thread.path:
        return None
    if thread.end_line is None or not file_context.endswith("\n"):
        return None
    start = thread.start_line if thread.start_line is not None else thread.end_line
    old_lines = file_context.splitlines(keepends=True)
    if start < 1 or thread.end_line > len(old_lines) or start > thread.end_line:
        return None
    replacement = thread.suggestion
    if replacement and not replacement.endswith("\n"):
        replacement += "\n"
    new_lines = (
        old_lines[: start - 1]
        + replacement.splitlines(keepends=True)
        + old_lines[thread.end_line :]
    )
    if new_lines == old_lines:
        return None
    return "".join(
        difflib.unified_diff(
            old_lines,
            new_lines,
            fromfile=f"a/{thread.path}",
            tofile=f"b/{thread.path}",
        )
    )
