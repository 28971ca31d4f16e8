from __future__ import annotations

from prsettle.agent_adapter import PatchRequest
from prsettle.models import ReviewThread


_MAX_FILE_CONTEXT_CHARS = 60_000


def _coding_guidelines_task_lines(*, coding_guidelines_path: str | None) -> str:
    if coding_guidelines_path:
        return f"- Review and follow the coding/testing guidelines in: {coding_guidelines_path}"
    return "- Follow a style consistent with the existing codebase."


def _thread_location(thread: ReviewThread) -> str:
    if not thread.path:
        return "the pull request as a whole"
    if thread.start_line is None and thread.end_line is None:
        return thread.path
    if thread.start_line is None or thread.start_line == thread.end_line:
        return f"{thread.path} line {thread.end_line}"
    return f"{thread.path} lines {thread.start_line}-{thread.end_line}"


def build_patch_prompt(*, request: PatchRequest) -> str:
    thread = request.thread
    coding_guidelines_lines = _coding_guidelines_task_lines(
        coding_guidelines_path=request.coding_guidelines_path
    )
    suggestion_block = thread.suggestion.strip() or "<none>"
    file_context = request.file_context
    if file_context is None:
        file_context = "<file not available>"
    elif len(file_context) > _MAX_FILE_CONTEXT_CHARS:
        file_context = f"{file_context[:_MAX_FILE_CONTEXT_CHARS]}\n<truncated>"
    return f"""
You are the review-fix agent for repository {request.repo_full_name}.

Task:
- Address one review thread on PR #{request.pr_number} (branch {request.branch}).
- The thread is attached to {_thread_location(thread)}.
{coding_guidelines_lines}
- Produce the smallest change that resolves the reviewer's concern.
- Do not modify files unrelated to the concern.
- Do not commit, push or edit files in the working tree; return a diff instead.

Output requirements:
- Set has_patch to false if the concern cannot be addressed safely with a code change.
- diff must be a unified diff with repository-relative a/ and b/ paths, applicable with
  `git apply` against the current branch head.
- summary is one or two sentences describing the change for the reviewer.
- commit_message is a short imperative commit subject, or null.

Response format:
- Return JSON only.
- The response must satisfy the provided schema.
- Do not include markdown code fences in the JSON fields.

Reviewer ({thread.author_login}) comments:
{thread.body}

Suggested change from the reviewer:
{suggestion_block}

Current content of {thread.path or '<none>'}:
{file_context}
""".strip()


def build_classification_prompt(*, thread: ReviewThread, repo_full_name: str) -> str:
    return f"""
You are the review-triage agent for repository {repo_full_name}.

Task:
- Classify one review thread attached to {_thread_location(thread)}.
- category is a short lowercase label such as bug, security, performance, style,
  naming, docs, test, question or praise.
- severity is one of: critical, recommended, minor, informational.
  - critical: correctness, security or data-loss problems that must be fixed.
  - recommended: real improvements that should be fixed.
  - minor: nits such as naming, typos or formatting.
  - informational: questions, praise or context with nothing to change.

Response format:
- Return JSON only.
- The response must satisfy the provided schema.

Reviewer ({thread.author_login}) comments:
{thread.body}

Suggested change from the reviewer:
{thread.suggestion.strip() or '<none>'}
""".strip()
