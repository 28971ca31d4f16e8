from __future__ import annotations

from collections.abc import Callable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor, wait
import logging
import threading
import time
from typing import Protocol

from prsettle.agent_adapter import AgentAdapter
from prsettle.classifier import build_classifier
from prsettle.codex_adapter import CodexAdapter
from prsettle.config import AppConfig
from prsettle.errors import LockConflictError, TransientIOError
from prsettle.git_ops import GitRepoManager
from prsettle.github_gateway import GitHubGateway
from prsettle.lifecycle import LifecycleController
from prsettle.models import RunSummary
from prsettle.observability import log_event, log_warning_event
from prsettle.patch_coordinator import PatchCoordinator
from prsettle.poller import Poller, SystemClock
from prsettle.pr_lock import PullRequestLockManager
from prsettle.state import StateStore
from prsettle.suggestion_adapter import SuggestionPatchAdapter
from prsettle.thread_resolver import ThreadResolver


LOGGER = logging.getLogger("prsettle.service")


class PullRequestRunner(Protocol):
    def run(self, pr_number: int) -> RunSummary: ...


class LabelSource(Protocol):
    def list_pull_requests_with_label(self, label: str) -> tuple[int, ...]: ...


class ReconcileService:
    """Runs one lifecycle per PR on a worker pool.

    A PR is never submitted twice while its lifecycle is running in this
    process; the per-PR lock keeps other processes out.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        store: StateStore,
        controller: PullRequestRunner,
        github: LabelSource,
        stop_event: threading.Event | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._store = store
        self._controller = controller
        self._github = github
        self._stop_event = stop_event or threading.Event()
        self._sleep = sleep
        self._running: dict[int, Future[RunSummary]] = {}
        self._running_lock = threading.Lock()
        self._summaries: list[RunSummary] = []

    def run(self, *, once: bool, pr_numbers: Sequence[int] = ()) -> tuple[RunSummary, ...]:
        """Reconcile PRs until stopped; with ``once`` run each candidate to a terminal phase.

        Explicit ``pr_numbers`` are always run, even if a previous lifecycle
        for them already finished.
        """
        explicit = tuple(dict.fromkeys(pr_numbers))
        with ThreadPoolExecutor(max_workers=self._config.runtime.worker_count) as pool:
            first = True
            while True:
                self._reap_finished()
                candidates = self._candidates(explicit=explicit if first else ())
                first = False
                self._enqueue(pool, candidates)
                log_event(
                    LOGGER,
                    "poll_completed",
                    candidate_count=len(candidates),
                    running_count=len(self._running),
                )
                if once or self._stop_event.is_set():
                    self._wait_for_all()
                    break
                self._sleep(self._config.runtime.poll_interval_seconds)
        return tuple(self._summaries)

    def stop(self) -> None:
        self._stop_event.set()

    def _candidates(self, *, explicit: tuple[int, ...]) -> tuple[int, ...]:
        if explicit:
            return explicit
        numbers: list[int] = list(self._config.repo.pr_numbers)
        label = self._config.repo.trigger_label
        if label is not None:
            try:
                numbers.extend(self._github.list_pull_requests_with_label(label))
            except TransientIOError as exc:
                log_warning_event(LOGGER, "label_poll_failed", label=label, error=str(exc))
        # Suspended or crashed lifecycles resume even after their label is gone.
        numbers.extend(
            state.pr_number
            for state in self._store.list_pr_states(repo_full_name=self._config.repo.full_name)
        )
        candidates: list[int] = []
        for pr_number in dict.fromkeys(numbers):
            stored = self._store.load_pr_state(
                repo_full_name=self._config.repo.full_name, pr_number=pr_number
            )
            if stored is not None and stored.is_terminal:
                # Finished PRs are only picked up again when named explicitly.
                continue
            candidates.append(pr_number)
        return tuple(candidates)

    def _enqueue(self, pool: ThreadPoolExecutor, candidates: Sequence[int]) -> None:
        for pr_number in candidates:
            with self._running_lock:
                if pr_number in self._running:
                    log_event(
                        LOGGER,
                        "pr_enqueue_skipped",
                        pr_number=pr_number,
                        reason="already_running",
                    )
                    continue
                self._running[pr_number] = pool.submit(self._controller.run, pr_number)
            log_event(LOGGER, "pr_enqueued", pr_number=pr_number)

    def _reap_finished(self) -> None:
        with self._running_lock:
            finished = [pr_number for pr_number, fut in self._running.items() if fut.done()]
            for pr_number in finished:
                fut = self._running.pop(pr_number)
                try:
                    summary = fut.result()
                except LockConflictError as exc:
                    log_event(LOGGER, "pr_skipped_locked", pr_number=pr_number, error=str(exc))
                    continue
                except Exception as exc:  # noqa: BLE001
                    log_warning_event(
                        LOGGER,
                        "pr_lifecycle_failed",
                        pr_number=pr_number,
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
                    continue
                self._summaries.append(summary)
                log_event(
                    LOGGER,
                    "pr_lifecycle_completed",
                    pr_number=pr_number,
                    outcome=summary.outcome,
                )

    def _wait_for_all(self) -> None:
        while True:
            with self._running_lock:
                futures = list(self._running.values())
            if not futures:
                return
            wait(futures)
            self._reap_finished()


def build_agent(config: AppConfig) -> AgentAdapter:
    fallback = CodexAdapter(config.codex) if config.codex.enabled else None
    return SuggestionPatchAdapter(fallback)


def build_controller(
    config: AppConfig,
    *,
    store: StateStore,
    github: GitHubGateway,
    git: GitRepoManager,
    agent: AgentAdapter,
    cancel_event: threading.Event | None = None,
) -> LifecycleController:
    clock = SystemClock()
    repo_full_name = config.repo.full_name
    return LifecycleController(
        config=config,
        store=store,
        locks=PullRequestLockManager(
            base_dir=config.runtime.base_dir, ttl_seconds=config.runtime.lock_ttl_seconds
        ),
        poller=Poller(
            source=github,
            store=store,
            repo_full_name=repo_full_name,
            required_reviewers=config.review.required_reviewers,
            informational_keywords=config.policy.informational_keywords,
            ignored_logins=(config.review.bot_login,) if config.review.bot_login else (),
            clock=clock,
        ),
        classifier=build_classifier(
            config.review.classifier,
            policy=config.policy,
            agent=agent,
            repo_full_name=repo_full_name,
        ),
        patcher=PatchCoordinator(
            git=git,
            agent=agent,
            policy=config.policy,
            commit_mode=config.runtime.commit_mode,
            coding_guidelines_path=config.repo.coding_guidelines_path,
            sleep=clock.sleep,
        ),
        resolver=ThreadResolver(
            github=github,
            resolution_mode=config.review.resolution_mode,
            sleep=clock.sleep,
        ),
        github=github,
        clock=clock,
        cancel_event=cancel_event,
    )


def build_service(
    config: AppConfig, *, stop_event: threading.Event | None = None
) -> ReconcileService:
    stop_event = stop_event or threading.Event()
    store = StateStore(config.state_db_path)
    github = GitHubGateway(config.repo.owner, config.repo.name)
    git = GitRepoManager(config.runtime, config.repo)
    git.ensure_layout()
    controller = build_controller(
        config,
        store=store,
        github=github,
        git=git,
        agent=build_agent(config),
        cancel_event=stop_event,
    )
    return ReconcileService(
        config,
        store=store,
        controller=controller,
        github=github,
        stop_event=stop_event,
    )
