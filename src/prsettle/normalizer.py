from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, replace
import hashlib
import json
import re

from prsettle.action_markers import has_action_token
from prsettle.models import RawReviewComment, RawReviewThread, ReviewThread


_SUGGESTION_BLOCK_PATTERN = re.compile(r"```suggestion[^\n]*\n(.*?)```", re.DOTALL)


@dataclass
class _CommentGroup:
    thread_id: str | None
    path: str
    start_line: int | None
    end_line: int | None
    platform_resolved: bool
    comments: dict[int, RawReviewComment]

    def overlaps(self, comment: RawReviewComment) -> bool:
        start, end = _comment_range(comment)
        if end is None or self.end_line is None or comment.path != self.path:
            return False
        group_start = self.start_line if self.start_line is not None else self.end_line
        comment_start = start if start is not None else end
        return comment_start <= self.end_line and group_start <= end

    def add(self, comment: RawReviewComment) -> None:
        self.comments[comment.comment_id] = comment
        start, end = _comment_range(comment)
        if end is None:
            return
        comment_start = start if start is not None else end
        if self.end_line is None or end > self.end_line:
            self.end_line = end
        if self.start_line is None or comment_start < self.start_line:
            self.start_line = comment_start


def normalize(
    raw_threads: Iterable[RawReviewThread],
    *,
    informational_keywords: Sequence[str] = (),
    ignored_logins: Sequence[str] = (),
) -> tuple[ReviewThread, ...]:
    """Group raw platform comments into review threads sorted by thread id.

    Native thread ids win. Comments without one are grouped by path and
    overlapping line range and keyed by their earliest comment id. Comments
    carrying our own action marker, or written by one of ``ignored_logins``,
    are dropped so our replies never change a thread's content hash. Output
    depends only on the set of raw comments, not on the order they arrive in.
    """
    ignored = {login.strip().lower() for login in ignored_logins}
    native: dict[str, _CommentGroup] = {}
    loose: list[RawReviewComment] = []
    for raw in raw_threads:
        comments = [
            comment
            for comment in raw.comments
            if not has_action_token(comment.body)
            and comment.author_login.strip().lower() not in ignored
        ]
        if raw.thread_id is None:
            loose.extend(comments)
            continue
        group = native.get(raw.thread_id)
        if group is None:
            group = _CommentGroup(
                thread_id=raw.thread_id,
                path=raw.path,
                start_line=None,
                end_line=None,
                platform_resolved=raw.is_resolved,
                comments={},
            )
            native[raw.thread_id] = group
        else:
            group.platform_resolved = group.platform_resolved or raw.is_resolved
        for comment in comments:
            group.comments[comment.comment_id] = comment

    threads: list[ReviewThread] = []
    for group in native.values():
        thread = _build_thread(group, native=True, informational_keywords=informational_keywords)
        if thread is not None:
            threads.append(thread)
    for group in _group_loose_comments(loose):
        thread = _build_thread(group, native=False, informational_keywords=informational_keywords)
        if thread is not None:
            threads.append(thread)
    return tuple(sorted(threads, key=lambda item: item.thread_id))


def merge_threads(
    previous: Sequence[ReviewThread], fresh: Sequence[ReviewThread]
) -> tuple[ReviewThread, ...]:
    """Fold a fresh normalization into the tracked threads.

    A changed content hash re-opens the tracked thread with a new revision.
    An unchanged thread the platform now reports resolved moves to resolved.
    Tracked threads missing from ``fresh`` are kept as they are.
    """
    tracked = {thread.thread_id: thread for thread in previous}
    merged: dict[str, ReviewThread] = dict(tracked)
    for incoming in fresh:
        existing = tracked.get(incoming.thread_id)
        if existing is None:
            if incoming.platform_resolved:
                incoming = replace(incoming, status="resolved")
            merged[incoming.thread_id] = incoming
            continue
        if existing.content_hash != incoming.content_hash:
            reopened = existing.reopened(
                content_hash=incoming.content_hash,
                body=incoming.body,
                suggestion=incoming.suggestion,
            )
            merged[incoming.thread_id] = replace(
                reopened,
                category=incoming.category,
                start_line=incoming.start_line,
                end_line=incoming.end_line,
                platform_resolved=incoming.platform_resolved,
            )
            continue
        updated = replace(existing, platform_resolved=incoming.platform_resolved)
        if incoming.platform_resolved and updated.status != "resolved":
            updated = updated.with_status("resolved")
        merged[incoming.thread_id] = updated
    return tuple(merged[key] for key in sorted(merged))


def content_hash(
    *,
    path: str,
    start_line: int | None,
    end_line: int | None,
    comments: Sequence[RawReviewComment],
) -> str:
    payload = json.dumps(
        {
            "path": path,
            "range": [start_line, end_line],
            "comments": [[comment.author_login, comment.body] for comment in comments],
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def extract_suggestion(body: str) -> str:
    blocks = _SUGGESTION_BLOCK_PATTERN.findall(body)
    if not blocks:
        return ""
    return blocks[-1]


def _group_loose_comments(comments: Sequence[RawReviewComment]) -> list[_CommentGroup]:
    deduped = {comment.comment_id: comment for comment in comments}
    groups: list[_CommentGroup] = []
    for comment in sorted(deduped.values(), key=_chronological_key):
        target: _CommentGroup | None = None
        for group in groups:
            if group.overlaps(comment):
                target = group
                break
        if target is None:
            target = _CommentGroup(
                thread_id=None,
                path=comment.path,
                start_line=None,
                end_line=None,
                platform_resolved=False,
                comments={},
            )
            groups.append(target)
        target.add(comment)
    return groups


def _build_thread(
    group: _CommentGroup,
    *,
    native: bool,
    informational_keywords: Sequence[str],
) -> ReviewThread | None:
    ordered = sorted(group.comments.values(), key=_chronological_key)
    if not ordered:
        return None
    first = ordered[0]
    if native:
        start_line, end_line = _comment_range(first)
        thread_id = group.thread_id or f"c{first.comment_id}"
    else:
        start_line, end_line = group.start_line, group.end_line
        thread_id = f"c{min(comment.comment_id for comment in ordered)}"
    path = group.path or first.path
    body = "\n\n".join(f"@{comment.author_login}: {comment.body.strip()}" for comment in ordered)
    suggestion = ""
    for comment in ordered:
        candidate = extract_suggestion(comment.body)
        if candidate:
            suggestion = candidate
    category = "unclassified"
    if not suggestion and _is_informational(ordered, informational_keywords):
        category = "informational"
    return ReviewThread(
        thread_id=thread_id,
        path=path,
        start_line=start_line,
        end_line=end_line,
        author_login=first.author_login,
        body=body,
        suggestion=suggestion,
        content_hash=content_hash(
            path=path, start_line=start_line, end_line=end_line, comments=ordered
        ),
        first_comment_id=first.comment_id,
        category=category,
        platform_resolved=group.platform_resolved,
        native=native,
    )


def _is_informational(
    comments: Sequence[RawReviewComment], informational_keywords: Sequence[str]
) -> bool:
    if not informational_keywords:
        return False
    text = " ".join(comment.body.lower() for comment in comments)
    return any(re.search(rf"\b{re.escape(keyword)}", text) for keyword in informational_keywords)


def _comment_range(comment: RawReviewComment) -> tuple[int | None, int | None]:
    if comment.line is None:
        return None, None
    start = comment.start_line if comment.start_line is not None else comment.line
    return min(start, comment.line), comment.line


def _chronological_key(comment: RawReviewComment) -> tuple[str, int]:
    return (comment.created_at, comment.comment_id)
