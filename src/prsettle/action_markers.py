from __future__ import annotations

import hashlib
import re
from typing import Literal


ACTION_TOKEN_PATTERN = re.compile(r"<!--\s*prsettle-action:([0-9a-f]{64})\s*-->")
CommentKind = Literal["fix_reply", "ignore_reply", "escalation_reply", "resolve_note"]


def has_action_token(text: str) -> bool:
    return ACTION_TOKEN_PATTERN.search(text) is not None


def extract_action_tokens(text: str) -> tuple[str, ...]:
    return tuple(match.group(1) for match in ACTION_TOKEN_PATTERN.finditer(text))


def strip_action_tokens(text: str) -> str:
    return ACTION_TOKEN_PATTERN.sub("", text).strip()


def compute_action_token(
    *,
    repo_full_name: str,
    pr_number: int,
    thread_id: str,
    revision: int,
    action: str,
    kind: CommentKind,
) -> str:
    payload = f"{repo_full_name}:{pr_number}:{thread_id}:{revision}:{action}:{kind}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def append_action_token(*, body: str, token: str) -> str:
    marker = f"<!-- prsettle-action:{token} -->"
    stripped = body.strip()
    if marker in stripped:
        return stripped
    if not stripped:
        return marker
    return f"{stripped}\n\n{marker}"
