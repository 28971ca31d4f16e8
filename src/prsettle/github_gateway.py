from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
from typing import cast
from urllib.parse import quote, urlencode

from prsettle.action_markers import extract_action_tokens
from prsettle.errors import ResolveFailureError, StaleHeadError, TransientIOError
from prsettle.models import (
    CheckStatus,
    PullRequestSnapshot,
    RawReviewComment,
    RawReviewThread,
    SubmittedReview,
)
from prsettle.observability import log_event
from prsettle.shell import CommandError, run


LOGGER = logging.getLogger("prsettle.github_gateway")
_CHECKS_GREEN_CONCLUSIONS = {"success", "neutral", "skipped"}
_TERMINAL_REVIEW_STATES = {"APPROVED", "CHANGES_REQUESTED", "COMMENTED", "DISMISSED"}
_ACTIONABLE_REVIEW_BODY_STATES = {"CHANGES_REQUESTED", "COMMENTED"}
_TRANSIENT_STATUS_CODES = {408, 429, 500, 502, 503, 504}

_THREADS_QUERY = """
query($owner: String!, $name: String!, $number: Int!, $cursor: String) {
  repository(owner: $owner, name: $name) {
    pullRequest(number: $number) {
      reviewThreads(first: 100, after: $cursor) {
        pageInfo { hasNextPage endCursor }
        nodes {
          id
          isResolved
          isOutdated
          path
          comments(first: 100) {
            nodes {
              databaseId
              author { login }
              body
              createdAt
              path
              line
              startLine
              originalLine
              url
            }
          }
        }
      }
    }
  }
}
"""

_RESOLVE_THREAD_MUTATION = """
mutation($threadId: ID!) {
  resolveReviewThread(input: {threadId: $threadId}) {
    thread { id isResolved }
  }
}
"""


class GitHubPollingError(TransientIOError):
    """Recoverable GitHub read failure; caller should retry."""


class GitHubRequestError(RuntimeError):
    """Non-retryable GitHub API failure."""

    def __init__(self, message: str, *, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class GitHubGateway:
    owner: str
    name: str
    _etags_by_path: dict[str, str] = field(
        default_factory=dict,
        init=False,
        repr=False,
        compare=False,
    )
    _cached_get_payload_by_path: dict[str, object] = field(
        default_factory=dict,
        init=False,
        repr=False,
        compare=False,
    )

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def get_pull_request(self, pr_number: int) -> PullRequestSnapshot:
        path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}"
        payload = self._api_json("GET", path)
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise RuntimeError("Unexpected GitHub response: expected object for pull request")

        head = _as_object_dict(payload_obj.get("head"))
        base = _as_object_dict(payload_obj.get("base"))
        if head is None or base is None:
            raise RuntimeError("Unexpected GitHub response: missing pull request head/base")

        snapshot = PullRequestSnapshot(
            number=_as_int(payload_obj.get("number"), field="number"),
            title=_as_string(payload_obj.get("title")),
            head_ref=_as_string(head.get("ref")),
            head_sha=_as_string(head.get("sha")),
            base_ref=_as_string(base.get("ref")),
            state=_as_string(payload_obj.get("state")),
            merged=_as_bool(payload_obj.get("merged")),
            draft=_as_bool(payload_obj.get("draft", False)),
        )
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request",
            pr_number=snapshot.number,
        )
        return snapshot

    def list_pull_requests_with_label(self, label: str) -> tuple[int, ...]:
        query = urlencode({"state": "open", "labels": label, "per_page": "100"})
        path = f"/repos/{self.owner}/{self.name}/issues?{query}"
        payload = self._api_json("GET", path)
        if not isinstance(payload, list):
            raise RuntimeError("Unexpected GitHub response: expected list for issues")

        numbers: list[int] = []
        for item in payload:
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            # The issues endpoint lists PRs alongside issues; keep only the PRs.
            if "pull_request" not in item_obj:
                continue
            numbers.append(_as_int(item_obj.get("number"), field="number"))
        log_event(
            LOGGER,
            "github_read",
            endpoint="labeled_pull_requests",
            label=label,
            count=len(numbers),
        )
        return tuple(sorted(numbers))

    def list_review_threads(self, pr_number: int) -> tuple[RawReviewThread, ...]:
        """Return native review threads plus actionable review bodies.

        Review bodies have no native thread; they come back with
        ``thread_id=None`` and an empty path so the normalizer keys them itself.
        """
        threads: list[RawReviewThread] = []
        cursor: str | None = None
        while True:
            variables: dict[str, object] = {
                "owner": self.owner,
                "name": self.name,
                "number": pr_number,
            }
            if cursor is not None:
                variables["cursor"] = cursor
            payload = self._graphql(_THREADS_QUERY, variables)
            connection = _nested_object(
                payload, ("data", "repository", "pullRequest", "reviewThreads")
            )
            nodes = connection.get("nodes")
            if not isinstance(nodes, list):
                raise GitHubPollingError("Unexpected GitHub response: expected reviewThreads nodes")
            for node in nodes:
                node_obj = _as_object_dict(node)
                if node_obj is None:
                    continue
                threads.append(_parse_review_thread_node(node_obj))

            page_info = _as_object_dict(connection.get("pageInfo")) or {}
            end_cursor = page_info.get("endCursor")
            if page_info.get("hasNextPage") is True and isinstance(end_cursor, str):
                cursor = end_cursor
                continue
            break

        threads.extend(self._review_body_threads(pr_number))
        log_event(
            LOGGER,
            "github_read",
            endpoint="review_threads",
            pr_number=pr_number,
            count=len(threads),
        )
        return tuple(threads)

    def list_reviews(self, pr_number: int) -> tuple[SubmittedReview, ...]:
        reviews: list[SubmittedReview] = []
        page = 1
        while True:
            query = urlencode({"per_page": 100, "page": page})
            path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}/reviews?{query}"
            payload = self._api_json("GET", path)
            if not isinstance(payload, list):
                raise RuntimeError("Unexpected GitHub response: expected list of reviews")
            for item in payload:
                item_obj = _as_object_dict(item)
                if item_obj is None:
                    continue
                state = _as_string(item_obj.get("state")).strip().upper()
                if state not in _TERMINAL_REVIEW_STATES:
                    continue
                user_obj = _as_object_dict(item_obj.get("user"))
                reviews.append(
                    SubmittedReview(
                        review_id=_as_int(item_obj.get("id"), field="id"),
                        author_login=_as_login(user_obj.get("login") if user_obj else None),
                        state=state,
                        submitted_at=_as_string(item_obj.get("submitted_at")),
                        body=_as_string(item_obj.get("body")),
                    )
                )
            if len(payload) < 100:
                break
            page += 1
        log_event(
            LOGGER,
            "github_read",
            endpoint="reviews",
            pr_number=pr_number,
            count=len(reviews),
        )
        return tuple(reviews)

    def list_requested_reviewers(self, pr_number: int) -> tuple[str, ...]:
        path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}/requested_reviewers"
        payload = self._api_json("GET", path)
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise RuntimeError("Unexpected GitHub response: expected requested reviewers object")
        logins: list[str] = []
        users = payload_obj.get("users")
        if isinstance(users, list):
            for user in users:
                user_obj = _as_object_dict(user)
                if user_obj is not None:
                    login = _as_login(user_obj.get("login"))
                    if login:
                        logins.append(login)
        teams = payload_obj.get("teams")
        if isinstance(teams, list):
            for team in teams:
                team_obj = _as_object_dict(team)
                if team_obj is not None:
                    slug = _as_login(team_obj.get("slug"))
                    if slug:
                        logins.append(f"team:{slug}")
        log_event(
            LOGGER,
            "github_read",
            endpoint="requested_reviewers",
            pr_number=pr_number,
            count=len(logins),
        )
        return tuple(logins)

    def get_check_status(self, head_sha: str) -> CheckStatus:
        """Fold check runs and commit statuses for ``head_sha`` into one verdict.

        No reported checks at all counts as success.
        """
        runs_path = f"/repos/{self.owner}/{self.name}/commits/{head_sha}/check-runs?per_page=100"
        runs_payload = _as_object_dict(self._api_json("GET", runs_path))
        if runs_payload is None:
            raise RuntimeError("Unexpected GitHub response: expected check-runs object")
        status_path = f"/repos/{self.owner}/{self.name}/commits/{head_sha}/status"
        status_payload = _as_object_dict(self._api_json("GET", status_path))
        if status_payload is None:
            raise RuntimeError("Unexpected GitHub response: expected combined status object")

        pending = False
        failed = False
        check_runs = runs_payload.get("check_runs")
        if isinstance(check_runs, list):
            for item in check_runs:
                item_obj = _as_object_dict(item)
                if item_obj is None:
                    continue
                if _as_string(item_obj.get("status")).strip().lower() != "completed":
                    pending = True
                    continue
                conclusion = _as_string(item_obj.get("conclusion")).strip().lower()
                if conclusion not in _CHECKS_GREEN_CONCLUSIONS:
                    failed = True

        statuses = status_payload.get("statuses")
        if isinstance(statuses, list) and statuses:
            combined = _as_string(status_payload.get("state")).strip().lower()
            if combined in {"failure", "error"}:
                failed = True
            elif combined != "success":
                pending = True

        result: CheckStatus
        if failed:
            result = "failure"
        elif pending:
            result = "pending"
        else:
            result = "success"
        log_event(
            LOGGER,
            "github_read",
            endpoint="check_status",
            head_sha=head_sha,
            status=result,
        )
        return result

    def list_posted_action_tokens(self, pr_number: int) -> frozenset[str]:
        tokens: set[str] = set()
        for endpoint in ("pulls", "issues"):
            page = 1
            while True:
                query = urlencode({"per_page": 100, "page": page})
                path = f"/repos/{self.owner}/{self.name}/{endpoint}/{pr_number}/comments?{query}"
                payload = self._api_json("GET", path)
                if not isinstance(payload, list):
                    raise RuntimeError("Unexpected GitHub response: expected list of comments")
                for item in payload:
                    item_obj = _as_object_dict(item)
                    if item_obj is None:
                        continue
                    tokens.update(extract_action_tokens(_as_string(item_obj.get("body"))))
                if len(payload) < 100:
                    break
                page += 1
        log_event(
            LOGGER,
            "github_read",
            endpoint="action_tokens",
            pr_number=pr_number,
            count=len(tokens),
        )
        return frozenset(tokens)

    def post_issue_comment(self, issue_number: int, body: str) -> None:
        path = f"/repos/{self.owner}/{self.name}/issues/{issue_number}/comments"
        try:
            self._api_json("POST", path, payload={"body": body})
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_issue_comment_failed",
                repo_full_name=self.full_name,
                issue_number=issue_number,
                error_type=type(exc).__name__,
            )
            raise
        log_event(LOGGER, "github_issue_comment_posted", issue_number=issue_number)

    def post_review_comment_reply(self, pr_number: int, review_comment_id: int, body: str) -> None:
        path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}/comments"
        try:
            self._api_json(
                "POST",
                path,
                payload={"body": body, "in_reply_to": review_comment_id},
            )
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_review_reply_failed",
                repo_full_name=self.full_name,
                pr_number=pr_number,
                review_comment_id=review_comment_id,
                error_type=type(exc).__name__,
            )
            raise
        log_event(
            LOGGER,
            "github_review_reply_posted",
            pr_number=pr_number,
            review_comment_id=review_comment_id,
        )

    def resolve_review_thread(self, thread_id: str) -> bool:
        try:
            payload = self._graphql(_RESOLVE_THREAD_MUTATION, {"threadId": thread_id})
            thread = _nested_object(payload, ("data", "resolveReviewThread", "thread"))
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_resolve_failed",
                repo_full_name=self.full_name,
                thread_id=thread_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise ResolveFailureError(f"Failed to resolve review thread {thread_id}: {exc}") from exc
        resolved = thread.get("isResolved") is True
        log_event(
            LOGGER,
            "github_thread_resolved",
            thread_id=thread_id,
            resolved=resolved,
        )
        return resolved

    def merge_pull_request(
        self, pr_number: int, *, strategy: str, expected_head_sha: str | None = None
    ) -> str:
        path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}/merge"
        request: dict[str, object] = {"merge_method": strategy}
        if expected_head_sha is not None:
            request["sha"] = expected_head_sha
        try:
            payload = self._api_json("PUT", path, payload=request)
        except GitHubRequestError as exc:
            log_event(
                LOGGER,
                "github_merge_failed",
                repo_full_name=self.full_name,
                pr_number=pr_number,
                status_code=exc.status_code,
                error=str(exc),
            )
            if exc.status_code == 409:
                raise StaleHeadError(expected_head=expected_head_sha, observed_head=None) from exc
            raise
        payload_obj = _as_object_dict(payload) or {}
        merge_sha = _as_string(payload_obj.get("sha"))
        log_event(
            LOGGER,
            "github_pr_merged",
            repo_full_name=self.full_name,
            pr_number=pr_number,
            strategy=strategy,
            merge_sha=merge_sha,
        )
        return merge_sha

    def delete_branch(self, branch: str) -> None:
        path = f"/repos/{self.owner}/{self.name}/git/refs/heads/{quote(branch, safe='/')}"
        try:
            self._api_json("DELETE", path)
        except GitHubRequestError as exc:
            # 422 means the ref is already gone.
            if exc.status_code != 422:
                raise
            log_event(LOGGER, "github_branch_already_deleted", branch=branch)
            return
        log_event(LOGGER, "github_branch_deleted", repo_full_name=self.full_name, branch=branch)

    def _review_body_threads(self, pr_number: int) -> list[RawReviewThread]:
        threads: list[RawReviewThread] = []
        for review in self.list_reviews(pr_number):
            if review.state not in _ACTIONABLE_REVIEW_BODY_STATES:
                continue
            if not review.body.strip():
                continue
            threads.append(
                RawReviewThread(
                    thread_id=None,
                    path="",
                    is_resolved=False,
                    is_outdated=False,
                    comments=(
                        RawReviewComment(
                            comment_id=review.review_id,
                            author_login=review.author_login,
                            body=review.body,
                            path="",
                            line=None,
                            start_line=None,
                            created_at=review.submitted_at,
                        ),
                    ),
                )
            )
        return threads

    def _graphql(self, query: str, variables: dict[str, object]) -> dict[str, object]:
        cmd = ["gh", "api", "graphql", "--include", "-f", f"query={query}"]
        for key in sorted(variables):
            value = variables[key]
            if isinstance(value, int) and not isinstance(value, bool):
                cmd.extend(["-F", f"{key}={value}"])
            else:
                cmd.extend(["-f", f"{key}={value}"])
        raw = run(cmd, check=False)
        try:
            status_code, _headers, body = _parse_http_response(raw)
            if status_code < 200 or status_code >= 300:
                message = body.strip() or "<empty>"
                raise RuntimeError(
                    f"GitHub GraphQL request failed with status {status_code}: {message}"
                )
            payload = _as_object_dict(json.loads(body))
            if payload is None:
                raise RuntimeError("Unexpected GitHub GraphQL response: expected object")
            errors = payload.get("errors")
            if isinstance(errors, list) and errors:
                first = _as_object_dict(errors[0]) or {}
                raise RuntimeError(f"GraphQL error: {first.get('message', errors)}")
            return payload
        except Exception as exc:
            log_event(
                LOGGER,
                "github_graphql_failed",
                error_type=type(exc).__name__,
                error=str(exc),
                raw_preview=_preview_for_log(raw),
            )
            raise GitHubPollingError(f"GitHub GraphQL request failed: {exc}") from exc

    def _api_json(self, method: str, path: str, payload: dict[str, object] | None = None) -> object:
        method_upper = method.upper()
        if method_upper == "GET":
            cmd = ["gh", "api", "--method", method_upper]
            etag = self._etags_by_path.get(path)
            if etag:
                cmd.extend(["--header", f"If-None-Match: {etag}"])
            cmd.extend(["--include", path])

            raw = run(cmd, check=False)
            try:
                status_code, headers, body = _parse_http_response(raw)

                if status_code == 304:
                    cached_payload = self._cached_get_payload_by_path.get(path)
                    if cached_payload is None:
                        raise RuntimeError(f"GitHub returned 304 for uncached path: {path}")
                    return cached_payload

                if status_code < 200 or status_code >= 300:
                    message = body.strip() or "<empty>"
                    raise RuntimeError(
                        f"GitHub API request failed with status {status_code}: {message}"
                    )

                payload_obj = json.loads(body)
                etag = headers.get("etag")
                if etag:
                    self._etags_by_path[path] = etag
                    self._cached_get_payload_by_path[path] = payload_obj
                return payload_obj
            except Exception as exc:
                log_event(
                    LOGGER,
                    "github_poll_get_failed",
                    path=path,
                    error_type=type(exc).__name__,
                    error=str(exc),
                    raw_preview=_preview_for_log(raw),
                )
                raise GitHubPollingError(
                    f"GitHub polling GET failed for path {path}: {exc}"
                ) from exc

        cmd = ["gh", "api", "--method", method_upper, "--include", path]
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--input", "-"])
            stdin_payload = json.dumps(payload)
        try:
            raw = run(cmd, input_text=stdin_payload, check=False)
        except CommandError as exc:
            raise GitHubPollingError(f"GitHub {method_upper} {path} failed: {exc}") from exc
        status_code, _headers, body = _parse_http_response(raw)
        if status_code in _TRANSIENT_STATUS_CODES:
            raise GitHubPollingError(
                f"GitHub {method_upper} {path} failed with status {status_code}"
            )
        if status_code < 200 or status_code >= 300:
            message = body.strip() or "<empty>"
            raise GitHubRequestError(
                f"GitHub {method_upper} {path} failed with status {status_code}: {message}",
                status_code=status_code,
            )
        if not body.strip():
            return None
        return json.loads(body)


def _parse_review_thread_node(node: dict[str, object]) -> RawReviewThread:
    thread_id = _as_string(node.get("id"))
    if not thread_id:
        raise GitHubPollingError("Unexpected GitHub response: review thread without id")
    comments_obj = _as_object_dict(node.get("comments")) or {}
    comment_nodes = comments_obj.get("nodes")
    comments: list[RawReviewComment] = []
    if isinstance(comment_nodes, list):
        for raw_comment in comment_nodes:
            comment = _as_object_dict(raw_comment)
            if comment is None:
                continue
            author = _as_object_dict(comment.get("author"))
            line = _as_optional_int(comment.get("line"))
            if line is None:
                line = _as_optional_int(comment.get("originalLine"))
            comments.append(
                RawReviewComment(
                    comment_id=_as_int(comment.get("databaseId"), field="databaseId"),
                    author_login=_as_login(author.get("login") if author else None),
                    body=_as_string(comment.get("body")),
                    path=_as_string(comment.get("path")),
                    line=line,
                    start_line=_as_optional_int(comment.get("startLine")),
                    created_at=_as_string(comment.get("createdAt")),
                    html_url=_as_string(comment.get("url")),
                )
            )
    path = _as_string(node.get("path"))
    if not path and comments:
        path = comments[0].path
    return RawReviewThread(
        thread_id=thread_id,
        path=path,
        is_resolved=node.get("isResolved") is True,
        is_outdated=node.get("isOutdated") is True,
        comments=tuple(comments),
    )


def _nested_object(payload: object, keys: tuple[str, ...]) -> dict[str, object]:
    current = _as_object_dict(payload)
    for key in keys:
        if current is None:
            break
        current = _as_object_dict(current.get(key))
    if current is None:
        raise GitHubPollingError(
            f"Unexpected GitHub GraphQL response: missing {'.'.join(keys)}"
        )
    return current


def _parse_http_response(raw: str) -> tuple[int, dict[str, str], str]:
    normalized = raw.replace("\r\n", "\n")
    lines = normalized.split("\n")

    status_line_index = -1
    for index, line in enumerate(lines):
        if line.startswith("HTTP/"):
            status_line_index = index

    if status_line_index < 0:
        raise RuntimeError("Unexpected GitHub response: missing HTTP status line")

    status_line = lines[status_line_index]
    status_parts = status_line.split(" ", 2)
    if len(status_parts) < 2:
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}")

    try:
        status_code = int(status_parts[1])
    except ValueError as exc:
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}") from exc

    headers: dict[str, str] = {}
    body_start = len(lines)
    for index in range(status_line_index + 1, len(lines)):
        line = lines[index]
        if line == "":
            body_start = index + 1
            break
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()

    body = "\n".join(lines[body_start:])
    return status_code, headers, body


def _preview_for_log(text: str, *, limit: int = 240) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_login(value: object) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip().lower()


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise RuntimeError(f"Unexpected GitHub response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise RuntimeError(f"Unexpected GitHub response value for {field}: {value}") from exc
    raise RuntimeError(f"Unexpected GitHub response type for {field}")


def _as_optional_int(value: object) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise RuntimeError("Unexpected GitHub response type for optional int field")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise RuntimeError(
                f"Unexpected GitHub response value for optional int field: {value}"
            ) from exc
    raise RuntimeError("Unexpected GitHub response type for optional int field")


def _as_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    raise RuntimeError("Unexpected GitHub response type for bool field")
