from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import errno
import json
import logging
import os
from pathlib import Path
import secrets
import time

from prsettle.errors import LockConflictError, LockExpiredError
from prsettle.models import LockRecord
from prsettle.observability import log_event


LOGGER = logging.getLogger("prsettle.pr_lock")


@dataclass(frozen=True)
class _LockOwner:
    pid: int | None
    token: str | None
    acquired_at: float | None
    expires_at: float | None


class PullRequestLockManager:
    """Exclusive, expiring per-PR locks stored as files under ``base_dir/locks``.

    A lock is held by whoever wrote the token currently in the file. An expired
    lock, or one whose owning process is gone, can be taken over by the next
    acquirer; the previous holder notices on its next ``refresh``.
    """

    def __init__(
        self,
        *,
        base_dir: Path,
        ttl_seconds: float,
        now: Callable[[], float] = time.time,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        self._locks_dir = base_dir / "locks"
        self._ttl_seconds = ttl_seconds
        self._now = now

    def lock_path(self, *, repo_full_name: str, pr_number: int) -> Path:
        owner, _, name = repo_full_name.partition("/")
        return self._locks_dir / owner / (name or "_") / f"{pr_number}.lock"

    def acquire(self, *, repo_full_name: str, pr_number: int) -> LockRecord:
        path = self.lock_path(repo_full_name=repo_full_name, pr_number=pr_number)
        path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            now = self._now()
            record = LockRecord(
                repo_full_name=repo_full_name,
                pr_number=pr_number,
                token=secrets.token_hex(16),
                acquired_at=now,
                expires_at=now + self._ttl_seconds,
                pid=os.getpid(),
            )
            try:
                fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
            except FileExistsError:
                if self._clear_reclaimable_lock(path, now=now):
                    continue
                owner = _read_lock_owner(path)
                log_event(
                    LOGGER,
                    "lock_rejected",
                    repo_full_name=repo_full_name,
                    pr_number=pr_number,
                    owner_pid=owner.pid,
                    expires_at=owner.expires_at,
                )
                raise LockConflictError(
                    f"PR {repo_full_name}#{pr_number} is locked by another worker"
                    f"{_owner_detail(owner)}. Lock file: {path}"
                ) from None

            try:
                os.write(fd, _encode_record(record))
                os.fsync(fd)
            except Exception:
                try:
                    os.close(fd)
                finally:
                    try:
                        os.unlink(path)
                    except FileNotFoundError:
                        pass
                raise
            else:
                os.close(fd)
                log_event(
                    LOGGER,
                    "lock_acquired",
                    repo_full_name=repo_full_name,
                    pr_number=pr_number,
                    expires_at=record.expires_at,
                )
                return record

        raise LockConflictError(f"PR {repo_full_name}#{pr_number} lock is contended")

    def refresh(self, record: LockRecord) -> LockRecord:
        """Extend ``record``; raise ``LockExpiredError`` if another holder took over."""
        path = self.lock_path(repo_full_name=record.repo_full_name, pr_number=record.pr_number)
        owner = _read_lock_owner(path)
        if owner.token != record.token:
            raise LockExpiredError(
                f"Lost lock on {record.repo_full_name}#{record.pr_number}; "
                "another worker holds it now"
            )
        now = self._now()
        refreshed = LockRecord(
            repo_full_name=record.repo_full_name,
            pr_number=record.pr_number,
            token=record.token,
            acquired_at=record.acquired_at,
            expires_at=now + self._ttl_seconds,
            pid=record.pid,
        )
        tmp_path = path.with_name(f"{path.name}.{record.token}.tmp")
        tmp_path.write_bytes(_encode_record(refreshed))
        os.replace(tmp_path, path)
        return refreshed

    def release(self, record: LockRecord) -> None:
        path = self.lock_path(repo_full_name=record.repo_full_name, pr_number=record.pr_number)
        owner = _read_lock_owner(path)
        if owner.token != record.token:
            return
        try:
            os.unlink(path)
        except FileNotFoundError:
            return
        log_event(
            LOGGER,
            "lock_released",
            repo_full_name=record.repo_full_name,
            pr_number=record.pr_number,
        )

    def read(self, *, repo_full_name: str, pr_number: int) -> LockRecord | None:
        path = self.lock_path(repo_full_name=repo_full_name, pr_number=pr_number)
        owner = _read_lock_owner(path)
        if owner.token is None or owner.acquired_at is None or owner.expires_at is None:
            return None
        return LockRecord(
            repo_full_name=repo_full_name,
            pr_number=pr_number,
            token=owner.token,
            acquired_at=owner.acquired_at,
            expires_at=owner.expires_at,
            pid=owner.pid,
        )

    def _clear_reclaimable_lock(self, path: Path, *, now: float) -> bool:
        owner = _read_lock_owner(path)
        expired = owner.expires_at is not None and now >= owner.expires_at
        dead_owner = (
            owner.pid is not None and owner.pid != os.getpid() and not _pid_is_running(owner.pid)
        )
        if not expired and not dead_owner:
            return False
        try:
            os.unlink(path)
        except FileNotFoundError:
            return True
        except OSError:
            return False
        log_event(
            LOGGER,
            "lock_reclaimed",
            path=str(path),
            previous_pid=owner.pid,
            expired=expired,
        )
        return True


def _encode_record(record: LockRecord) -> bytes:
    payload = {
        "pid": record.pid,
        "token": record.token,
        "acquired_at": record.acquired_at,
        "expires_at": record.expires_at,
    }
    return (json.dumps(payload, sort_keys=True) + "\n").encode("utf-8")


def _owner_detail(owner: _LockOwner) -> str:
    parts: list[str] = []
    if owner.pid is not None:
        parts.append(f"pid={owner.pid}")
    if owner.expires_at is not None:
        parts.append(f"expires_at={owner.expires_at:.0f}")
    return f" ({', '.join(parts)})" if parts else ""


def _read_lock_owner(lock_path: Path) -> _LockOwner:
    empty = _LockOwner(pid=None, token=None, acquired_at=None, expires_at=None)
    try:
        payload_text = lock_path.read_text(encoding="utf-8").strip()
    except OSError:
        return empty
    if not payload_text:
        return empty
    try:
        payload = json.loads(payload_text)
    except json.JSONDecodeError:
        return empty
    if not isinstance(payload, dict):
        return empty
    raw_pid = payload.get("pid")
    raw_token = payload.get("token")
    raw_acquired_at = payload.get("acquired_at")
    raw_expires_at = payload.get("expires_at")
    return _LockOwner(
        pid=raw_pid if isinstance(raw_pid, int) else None,
        token=raw_token if isinstance(raw_token, str) else None,
        acquired_at=float(raw_acquired_at)
        if isinstance(raw_acquired_at, int | float)
        else None,
        expires_at=float(raw_expires_at) if isinstance(raw_expires_at, int | float) else None,
    )


def _pid_is_running(pid: int) -> bool:
    if pid < 1:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError as exc:
        if exc.errno == errno.ESRCH:
            return False
        return True
    return True
