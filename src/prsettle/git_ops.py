from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import logging

from prsettle.config import RepoConfig, RuntimeConfig
from prsettle.errors import ApplyConflictError, TransientIOError
from prsettle.observability import log_event
from prsettle.shell import CommandError, run


LOGGER = logging.getLogger("prsettle.git_ops")
_PUSH_REJECTION_MARKERS = ("[rejected]", "non-fast-forward", "fetch first", "stale info")


class PushRejectedError(RuntimeError):
    """The remote refused the push because the branch moved underneath us."""


@dataclass(frozen=True)
class RepoLayout:
    mirror_path: Path
    checkouts_root: Path


class GitRepoManager:
    def __init__(self, runtime: RuntimeConfig, repo: RepoConfig) -> None:
        self.runtime = runtime
        self.repo = repo
        self.layout = RepoLayout(
            mirror_path=runtime.base_dir / "repos" / repo.owner / f"{repo.name}.git",
            checkouts_root=runtime.base_dir / "checkouts" / repo.owner / repo.name,
        )

    def ensure_layout(self) -> None:
        self.layout.mirror_path.parent.mkdir(parents=True, exist_ok=True)
        self.layout.checkouts_root.mkdir(parents=True, exist_ok=True)
        self._ensure_mirror()

    def checkout_path(self, pr_number: int) -> Path:
        return self.layout.checkouts_root / f"pr-{pr_number}"

    def ensure_checkout(self, pr_number: int) -> Path:
        checkout_path = self.checkout_path(pr_number)
        remote_url = self.repo.effective_remote_url
        if not checkout_path.exists():
            log_event(
                LOGGER,
                "git_checkout_cloned",
                pr_number=pr_number,
                checkout_path=str(checkout_path),
            )
            run(
                [
                    "git",
                    "clone",
                    "--reference-if-able",
                    str(self.layout.mirror_path),
                    remote_url,
                    str(checkout_path),
                ]
            )
        else:
            run(["git", "-C", str(checkout_path), "remote", "set-url", "origin", remote_url])
        return checkout_path

    def get_head(self, branch: str) -> str | None:
        """Return the remote tip of ``branch``, or ``None`` if the branch is gone."""
        try:
            output = run(
                [
                    "git",
                    "ls-remote",
                    self.repo.effective_remote_url,
                    f"refs/heads/{branch}",
                ]
            )
        except CommandError as exc:
            raise TransientIOError(f"git ls-remote failed for {branch}: {exc.stderr}") from exc
        for line in output.splitlines():
            parts = line.split()
            if len(parts) == 2 and parts[1] == f"refs/heads/{branch}":
                return parts[0]
        return None

    def restore_branch(self, checkout_path: Path, branch: str, expected_head_sha: str) -> bool:
        log_event(
            LOGGER,
            "git_restore_branch",
            checkout_path=str(checkout_path),
            branch=branch,
        )
        self.fetch_origin(checkout_path)
        self._checkout_remote_branch(checkout_path, branch)
        if self.current_head_sha(checkout_path) == expected_head_sha:
            return True

        # Retry once after a fresh fetch to cover remote propagation lag.
        self.fetch_origin(checkout_path)
        self._checkout_remote_branch(checkout_path, branch)
        return self.current_head_sha(checkout_path) == expected_head_sha

    def read_file(self, checkout_path: Path, relative_path: str) -> str | None:
        if not relative_path:
            return None
        candidate = (checkout_path / relative_path).resolve()
        if checkout_path.resolve() not in candidate.parents:
            return None
        try:
            return candidate.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            return None

    def check_patch(self, checkout_path: Path, diff: str) -> bool:
        try:
            run(
                ["git", "-C", str(checkout_path), "apply", "--check", "--whitespace=nowarn", "-"],
                input_text=_ensure_trailing_newline(diff),
            )
        except CommandError as exc:
            log_event(
                LOGGER,
                "git_patch_check_failed",
                checkout_path=str(checkout_path),
                stderr=exc.stderr,
            )
            return False
        return True

    def apply_patch(self, checkout_path: Path, diff: str) -> None:
        try:
            run(
                ["git", "-C", str(checkout_path), "apply", "--whitespace=nowarn", "-"],
                input_text=_ensure_trailing_newline(diff),
            )
        except CommandError as exc:
            raise ApplyConflictError(f"Patch no longer applies: {exc.stderr.strip()}") from exc

    def list_staged_files(self, checkout_path: Path) -> tuple[str, ...]:
        run(["git", "-C", str(checkout_path), "add", "-A"])
        diff = run(["git", "-C", str(checkout_path), "diff", "--cached", "--name-only"]).strip()
        if not diff:
            return ()
        return tuple(line for line in diff.splitlines() if line.strip())

    def commit_all(self, checkout_path: Path, message: str) -> str:
        if not self.list_staged_files(checkout_path):
            raise RuntimeError("No staged changes to commit")
        log_event(
            LOGGER,
            "git_commit",
            checkout_path=str(checkout_path),
            has_message=bool(message.strip()),
        )
        run(["git", "-C", str(checkout_path), "commit", "-m", message])
        return self.current_head_sha(checkout_path)

    def push_branch(self, checkout_path: Path, branch: str) -> None:
        """Fast-forward push to the existing PR branch; never creates or forces a ref."""
        log_event(
            LOGGER,
            "git_push",
            checkout_path=str(checkout_path),
            branch=branch,
        )
        try:
            run(["git", "-C", str(checkout_path), "push", "origin", f"HEAD:refs/heads/{branch}"])
        except CommandError as exc:
            log_event(
                LOGGER,
                "git_push_failed",
                checkout_path=str(checkout_path),
                branch=branch,
                error_type=type(exc).__name__,
            )
            stderr = exc.stderr.lower()
            if any(marker in stderr for marker in _PUSH_REJECTION_MARKERS):
                raise PushRejectedError(
                    f"Push to {branch} rejected: {exc.stderr.strip()}"
                ) from exc
            raise TransientIOError(f"Push to {branch} failed: {exc.stderr.strip()}") from exc

    def reset_to(self, checkout_path: Path, sha: str) -> None:
        run(["git", "-C", str(checkout_path), "reset", "--hard", sha])
        run(["git", "-C", str(checkout_path), "clean", "-ffd"])

    def fetch_origin(self, checkout_path: Path) -> None:
        log_event(
            LOGGER,
            "git_fetch_origin",
            checkout_path=str(checkout_path),
        )
        try:
            run(["git", "-C", str(checkout_path), "fetch", "origin", "--prune"])
        except CommandError as exc:
            raise TransientIOError(f"git fetch failed: {exc.stderr.strip()}") from exc

    def current_head_sha(self, checkout_path: Path) -> str:
        return run(["git", "-C", str(checkout_path), "rev-parse", "HEAD"]).strip()

    def _checkout_remote_branch(self, checkout_path: Path, branch: str) -> None:
        run(["git", "-C", str(checkout_path), "checkout", "-B", branch, f"origin/{branch}"])
        run(["git", "-C", str(checkout_path), "reset", "--hard", f"origin/{branch}"])
        run(["git", "-C", str(checkout_path), "clean", "-ffd"])

    def _ensure_mirror(self) -> None:
        remote_url = self.repo.effective_remote_url
        source = self.repo.local_clone_source or remote_url
        if not self.layout.mirror_path.exists():
            log_event(
                LOGGER,
                "git_mirror_cloned",
                mirror_path=str(self.layout.mirror_path),
            )
            run(["git", "clone", "--mirror", source, str(self.layout.mirror_path)])

        log_event(
            LOGGER,
            "git_mirror_synced",
            mirror_path=str(self.layout.mirror_path),
        )
        run(
            [
                "git",
                f"--git-dir={self.layout.mirror_path}",
                "remote",
                "set-url",
                "origin",
                remote_url,
            ]
        )
        run(
            [
                "git",
                f"--git-dir={self.layout.mirror_path}",
                "fetch",
                "origin",
                "--prune",
            ]
        )


def _ensure_trailing_newline(diff: str) -> str:
    return diff if diff.endswith("\n") else f"{diff}\n"
