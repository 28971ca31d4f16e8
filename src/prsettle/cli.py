from __future__ import annotations

import argparse
from dataclasses import asdict
import json
from pathlib import Path
import signal
import threading

from prsettle.config import AppConfig, load_config
from prsettle.git_ops import GitRepoManager
from prsettle.models import PullRequestState, RunSummary, Snapshot
from prsettle.observability import configure_logging
from prsettle.observability_tui import run_observability_tui
from prsettle.service import build_service
from prsettle.state import StateStore


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="prsettle")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init", help="Initialize state DB, mirror, and checkouts")
    _add_common_options(init_parser)

    run_parser = subparsers.add_parser(
        "run", help="Reconcile review feedback on pull requests until they settle"
    )
    _add_common_options(run_parser)
    run_parser.add_argument(
        "--pr",
        type=int,
        action="append",
        help="Pull request number to reconcile (repeatable); defaults to configured PRs",
    )
    run_parser.add_argument(
        "--once",
        action="store_true",
        help="Run each candidate PR to a terminal outcome, then exit",
    )

    status_parser = subparsers.add_parser("status", help="Show lifecycle state for a PR")
    _add_common_options(status_parser)
    status_parser.add_argument("--pr", type=int, required=True)
    status_parser.add_argument("--json", action="store_true", help="Print state as JSON")

    audit_parser = subparsers.add_parser(
        "audit", help="Show per-thread audit records and run summaries for a PR"
    )
    _add_common_options(audit_parser)
    audit_parser.add_argument("--pr", type=int, required=True)
    audit_parser.add_argument("--json", action="store_true", help="Print audit data as JSON")

    top_parser = subparsers.add_parser("top", help="Open the live dashboard")
    _add_common_options(top_parser)
    top_parser.add_argument("--refresh-seconds", type=int, default=2)
    top_parser.add_argument("--window", type=str, default="24h")

    return parser


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, default=Path("prsettle.toml"))
    parser.add_argument(
        "-v",
        "--verbose",
        nargs="?",
        const="low",
        default=None,
        choices=("low", "high"),
        help="Enable runtime logging to stderr (low keeps lifecycle events only)",
    )


def main() -> None:
    args = build_parser().parse_args()
    config = load_config(args.config)
    verbose = getattr(args, "verbose", None)
    if args.command == "run":
        config.runtime.base_dir.mkdir(parents=True, exist_ok=True)
        configure_logging(verbose, state_dir=config.runtime.base_dir)
    else:
        configure_logging(verbose)

    if args.command == "init":
        _cmd_init(config)
        return
    if args.command == "run":
        _cmd_run(config, pr_numbers=tuple(args.pr or ()), once=bool(args.once))
        return
    if args.command == "status":
        _cmd_status(config, pr_number=int(args.pr), as_json=bool(args.json))
        return
    if args.command == "audit":
        _cmd_audit(config, pr_number=int(args.pr), as_json=bool(args.json))
        return
    if args.command == "top":
        _cmd_top(config, refresh_seconds=int(args.refresh_seconds), window=str(args.window))
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def _cmd_init(config: AppConfig) -> None:
    config.runtime.base_dir.mkdir(parents=True, exist_ok=True)
    StateStore(config.state_db_path)
    git_manager = GitRepoManager(config.runtime, config.repo)
    git_manager.ensure_layout()

    print(f"Initialized prsettle base dir: {config.runtime.base_dir}")
    print(f"Repo: {config.repo.full_name}")
    print(f"Mirror: {git_manager.layout.mirror_path}")
    print(f"Checkouts: {git_manager.layout.checkouts_root}")


def _cmd_run(config: AppConfig, *, pr_numbers: tuple[int, ...], once: bool) -> None:
    config.runtime.base_dir.mkdir(parents=True, exist_ok=True)
    stop_event = threading.Event()
    service = build_service(config, stop_event=stop_event)
    previous_handler = signal.signal(signal.SIGTERM, lambda *_: stop_event.set())
    try:
        summaries = service.run(once=once, pr_numbers=pr_numbers)
    except KeyboardInterrupt:
        stop_event.set()
        raise
    finally:
        signal.signal(signal.SIGTERM, previous_handler)
    for summary in summaries:
        print(_render_summary(summary))


def _cmd_status(config: AppConfig, *, pr_number: int, as_json: bool) -> None:
    store = StateStore(config.state_db_path)
    state = store.load_pr_state(repo_full_name=config.repo.full_name, pr_number=pr_number)
    if state is None:
        print(f"No state recorded for {config.repo.full_name}#{pr_number}.")
        return
    snapshot = store.latest_snapshot(repo_full_name=config.repo.full_name, pr_number=pr_number)
    if as_json:
        payload = _state_payload(state)
        payload["latest_snapshot"] = asdict(snapshot) if snapshot is not None else None
        print(json.dumps(payload, indent=2))
        return
    print(
        f"repo={state.repo_full_name} pr_number={state.pr_number} phase={state.phase} "
        f"cycles={state.cycle_count} stale={state.stale_count} retries={state.retry_count}"
    )
    print(f"branch={state.branch} head={state.last_synced_head or '-'}")
    if snapshot is not None:
        print(_render_snapshot(snapshot))
    if state.error:
        print(f"error={state.error}")
    for thread in state.threads:
        print(
            f"  thread={thread.thread_id} rev={thread.revision} status={thread.status} "
            f"decision={thread.decision or '-'} severity={thread.severity or '-'} "
            f"path={thread.path or '-'}"
        )


def _cmd_audit(config: AppConfig, *, pr_number: int, as_json: bool) -> None:
    store = StateStore(config.state_db_path)
    repo_full_name = config.repo.full_name
    records = store.list_audit_records(repo_full_name=repo_full_name, pr_number=pr_number)
    summaries = store.list_run_summaries(repo_full_name=repo_full_name, pr_number=pr_number)
    decisions = store.list_decisions(repo_full_name=repo_full_name, pr_number=pr_number)
    snapshots = store.list_snapshots(repo_full_name=repo_full_name, pr_number=pr_number)
    if as_json:
        payload = {
            "repo_full_name": repo_full_name,
            "pr_number": pr_number,
            "audit_records": [asdict(record) for record in records],
            "decisions": [asdict(decision) for decision in decisions],
            "run_summaries": [asdict(summary) for summary in summaries],
            "snapshots": [asdict(snapshot) for snapshot in snapshots],
        }
        print(json.dumps(payload, indent=2))
        return

    if not records and not summaries:
        print(f"No audit data recorded for {repo_full_name}#{pr_number}.")
        return
    for summary in summaries:
        print(_render_summary(summary))
    for record in records:
        print(
            f"  thread={record.thread_id} rev={record.revision} "
            f"decision={record.decision or '-'} status={record.status} "
            f"resolved={record.resolved} commit={record.patch_ref or '-'}"
        )
        print(f"    rationale={record.rationale}")
    for snapshot in snapshots:
        print(f"  {_render_snapshot(snapshot)}")


def _cmd_top(config: AppConfig, *, refresh_seconds: int, window: str) -> None:
    config.runtime.base_dir.mkdir(parents=True, exist_ok=True)
    # Creates the schema so an empty dashboard can open.
    StateStore(config.state_db_path)
    run_observability_tui(
        db_path=config.state_db_path,
        refresh_seconds=refresh_seconds,
        default_window=window,
        row_limit=200,
    )


def _render_summary(summary: RunSummary) -> str:
    return (
        f"repo={summary.repo_full_name} pr_number={summary.pr_number} outcome={summary.outcome} "
        f"fixed={summary.fixed_count} ignored={summary.ignored_count} "
        f"escalated={summary.escalated_count} retries={summary.retry_count} "
        f"stale={summary.stale_count} cycles={summary.cycle_count} "
        f"elapsed={summary.elapsed_seconds:.1f}s detail={summary.detail}"
    )


def _render_snapshot(snapshot: Snapshot) -> str:
    return (
        f"snapshot={snapshot.sequence} head={snapshot.head_sha} "
        f"threads={len(snapshot.thread_hashes)} taken_at={snapshot.taken_at}"
    )


def _state_payload(state: PullRequestState) -> dict[str, object]:
    payload = asdict(state)
    payload.pop("lock_token", None)
    return payload
