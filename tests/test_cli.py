from __future__ import annotations

import json
from pathlib import Path
import signal
from types import SimpleNamespace

import pytest

from prsettle import cli
from prsettle.config import (
    AppConfig,
    CodexConfig,
    PolicyConfig,
    RepoConfig,
    ReviewConfig,
    RuntimeConfig,
)
from prsettle.models import (
    Decision,
    PullRequestState,
    ReviewThread,
    RunSummary,
    ThreadAuditRecord,
)
from prsettle.state import StateStore


def _app_config(tmp_path: Path) -> AppConfig:
    return AppConfig(
        runtime=RuntimeConfig(
            base_dir=tmp_path / "state",
            worker_count=1,
            poll_interval_seconds=60,
        ),
        repo=RepoConfig(
            owner="octo",
            name="widgets",
            default_branch="main",
            coding_guidelines_path=None,
            local_clone_source=None,
            remote_url=None,
            pr_numbers=(7,),
        ),
        review=ReviewConfig(),
        policy=PolicyConfig(),
        codex=CodexConfig(enabled=False, model=None, sandbox=None, profile=None, extra_args=()),
    )


def _summary(**overrides: object) -> RunSummary:
    values: dict[str, object] = {
        "repo_full_name": "octo/widgets",
        "pr_number": 7,
        "outcome": "completed",
        "fixed_count": 1,
        "ignored_count": 0,
        "escalated_count": 0,
        "retry_count": 0,
        "stale_count": 0,
        "cycle_count": 1,
        "elapsed_seconds": 12.34,
        "detail": "Merged after all review threads were settled.",
    }
    values.update(overrides)
    return RunSummary(**values)  # type: ignore[arg-type]


def _thread() -> ReviewThread:
    return ReviewThread(
        thread_id="T1",
        path="src/app.py",
        start_line=None,
        end_line=3,
        author_login="alice",
        body="@alice: This opens a security hole",
        suggestion="",
        content_hash="h1",
        first_comment_id=101,
        severity="critical",
        decision="fix",
        status="resolved",
        patch_ref="abc123",
        last_decided_hash="h1",
    )


class FakeParser:
    def __init__(self, **values: object) -> None:
        self._values = values

    def parse_args(self) -> SimpleNamespace:
        return SimpleNamespace(config=Path("cfg.toml"), **self._values)


def _patch_main(
    monkeypatch: pytest.MonkeyPatch, cfg: AppConfig, **values: object
) -> dict[str, object]:
    called: dict[str, object] = {}
    monkeypatch.setattr(cli, "build_parser", lambda: FakeParser(**values))
    monkeypatch.setattr(cli, "load_config", lambda path: cfg)

    def fake_configure_logging(verbose: object, *, state_dir: Path | None = None) -> None:
        called["logging"] = (verbose, state_dir)

    monkeypatch.setattr(cli, "configure_logging", fake_configure_logging)
    return called


def test_build_parser_supports_commands() -> None:
    parser = cli.build_parser()

    parsed_init = parser.parse_args(["init", "-v"])
    parsed_run = parser.parse_args(["run", "--once", "--pr", "7", "--pr", "9", "-v", "high"])
    parsed_status = parser.parse_args(["status", "--pr", "7", "--json"])
    parsed_top = parser.parse_args(["top"])

    assert parsed_init.command == "init"
    assert parsed_init.verbose == "low"
    assert parsed_init.config == Path("prsettle.toml")
    assert parsed_run.once is True
    assert parsed_run.pr == [7, 9]
    assert parsed_run.verbose == "high"
    assert parsed_status.pr == 7
    assert parsed_status.json is True
    assert (parsed_top.refresh_seconds, parsed_top.window) == (2, "24h")


def test_status_requires_a_pull_request_number() -> None:
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["status"])


def test_main_dispatches_init(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    cfg = _app_config(tmp_path)
    called = _patch_main(monkeypatch, cfg, command="init", verbose="low")
    monkeypatch.setattr(cli, "_cmd_init", lambda c: called.setdefault("init", c))

    cli.main()

    assert called["logging"] == ("low", None)
    assert called["init"] == cfg


def test_main_dispatches_run_with_file_logging(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    cfg = _app_config(tmp_path)
    called = _patch_main(monkeypatch, cfg, command="run", once=True, pr=[7, 9], verbose=None)

    def fake_run(config: AppConfig, *, pr_numbers: tuple[int, ...], once: bool) -> None:
        called["run"] = (config, pr_numbers, once)

    monkeypatch.setattr(cli, "_cmd_run", fake_run)

    cli.main()

    assert called["logging"] == (None, cfg.runtime.base_dir)
    assert called["run"] == (cfg, (7, 9), True)
    assert cfg.runtime.base_dir.is_dir()


@pytest.mark.parametrize("command", ["status", "audit"])
def test_main_dispatches_pr_commands(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, command: str
) -> None:
    cfg = _app_config(tmp_path)
    called = _patch_main(monkeypatch, cfg, command=command, pr=7, json=True)

    def fake_command(config: AppConfig, *, pr_number: int, as_json: bool) -> None:
        called[command] = (config, pr_number, as_json)

    monkeypatch.setattr(cli, f"_cmd_{command}", fake_command)

    cli.main()

    assert called["logging"] == (None, None)
    assert called[command] == (cfg, 7, True)


def test_main_dispatches_top(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    cfg = _app_config(tmp_path)
    called = _patch_main(monkeypatch, cfg, command="top", refresh_seconds=5, window="7d")

    def fake_top(config: AppConfig, *, refresh_seconds: int, window: str) -> None:
        called["top"] = (config, refresh_seconds, window)

    monkeypatch.setattr(cli, "_cmd_top", fake_top)

    cli.main()

    assert called["top"] == (cfg, 5, "7d")


def test_main_unknown_command_raises(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    _patch_main(monkeypatch, _app_config(tmp_path), command="unknown")

    with pytest.raises(RuntimeError, match="Unknown command"):
        cli.main()


def test_cmd_init_creates_layout(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    cfg = _app_config(tmp_path)
    calls: list[str] = []

    class FakeGit:
        def __init__(self, runtime: RuntimeConfig, repo: RepoConfig) -> None:
            _ = runtime, repo
            self.layout = SimpleNamespace(
                mirror_path=tmp_path / "mirror.git",
                checkouts_root=tmp_path / "checkouts",
            )

        def ensure_layout(self) -> None:
            calls.append("ensure_layout")

    monkeypatch.setattr(cli, "GitRepoManager", FakeGit)

    cli._cmd_init(cfg)

    assert cfg.state_db_path.exists()
    assert calls == ["ensure_layout"]
    out = capsys.readouterr().out
    assert "Repo: octo/widgets" in out
    assert f"Mirror: {tmp_path / 'mirror.git'}" in out


def test_cmd_run_prints_summaries_and_restores_signal_handler(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    cfg = _app_config(tmp_path)
    called: dict[str, object] = {}
    previous = signal.getsignal(signal.SIGTERM)

    class FakeService:
        def run(self, *, once: bool, pr_numbers: tuple[int, ...]) -> tuple[RunSummary, ...]:
            called["run"] = (once, pr_numbers)
            return (_summary(),)

    def fake_build_service(config: AppConfig, *, stop_event: object) -> FakeService:
        called["config"] = config
        called["stop_event"] = stop_event
        return FakeService()

    monkeypatch.setattr(cli, "build_service", fake_build_service)

    cli._cmd_run(cfg, pr_numbers=(7,), once=True)

    assert called["config"] == cfg
    assert called["run"] == (True, (7,))
    assert signal.getsignal(signal.SIGTERM) == previous
    out = capsys.readouterr().out
    assert "repo=octo/widgets pr_number=7 outcome=completed fixed=1" in out
    assert "elapsed=12.3s" in out


def test_cmd_status_renders_text_and_json(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    cfg = _app_config(tmp_path)
    cli._cmd_status(cfg, pr_number=7, as_json=False)
    assert "No state recorded for octo/widgets#7." in capsys.readouterr().out

    store = StateStore(cfg.state_db_path)
    store.save_pr_state(
        PullRequestState(
            repo_full_name="octo/widgets",
            pr_number=7,
            branch="feature",
            phase="escalated",
            last_synced_head="abc123",
            threads=(_thread(),),
            cycle_count=2,
            lock_token="secret",
            error="CI failed on the pull request head.",
        )
    )
    store.record_snapshot(
        repo_full_name="octo/widgets",
        pr_number=7,
        head_sha="abc123",
        thread_hashes=(("T1", "h1"),),
        taken_at="2026-01-01T00:00:00Z",
    )

    cli._cmd_status(cfg, pr_number=7, as_json=False)
    text = capsys.readouterr().out
    assert "phase=escalated cycles=2 stale=0 retries=0" in text
    assert "branch=feature head=abc123" in text
    assert "error=CI failed on the pull request head." in text
    assert "snapshot=1 head=abc123 threads=1 taken_at=2026-01-01T00:00:00Z" in text
    assert "thread=T1 rev=1 status=resolved decision=fix severity=critical" in text

    cli._cmd_status(cfg, pr_number=7, as_json=True)
    payload = json.loads(capsys.readouterr().out)
    assert payload["phase"] == "escalated"
    assert "lock_token" not in payload
    assert payload["latest_snapshot"]["sequence"] == 1
    assert payload["threads"][0]["thread_id"] == "T1"


def test_cmd_audit_renders_records_and_summaries(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    cfg = _app_config(tmp_path)
    cli._cmd_audit(cfg, pr_number=7, as_json=False)
    assert "No audit data recorded for octo/widgets#7." in capsys.readouterr().out

    store = StateStore(cfg.state_db_path)
    store.record_audit_records(
        repo_full_name="octo/widgets",
        pr_number=7,
        records=(
            ThreadAuditRecord(
                thread_id="T1",
                revision=1,
                decision="fix",
                rationale="Classified as critical (security); applied a 2-line fix.",
                patch_ref="abc123",
                resolved=True,
                status="resolved",
            ),
        ),
    )
    store.append_decision(
        repo_full_name="octo/widgets",
        pr_number=7,
        decision=Decision(
            thread_id="T1",
            revision=1,
            action="fix",
            rationale="Classified as critical (security); policy allows an automatic fix.",
            risk_tag="unknown",
            snapshot_sequence=1,
            content_hash="h1",
        ),
    )
    store.record_run_summary(_summary())
    for head_sha in ("abc000", "abc123"):
        store.record_snapshot(
            repo_full_name="octo/widgets",
            pr_number=7,
            head_sha=head_sha,
            thread_hashes=(("T1", "h1"),),
            taken_at="2026-01-01T00:00:00Z",
        )

    cli._cmd_audit(cfg, pr_number=7, as_json=False)
    text = capsys.readouterr().out
    assert "outcome=completed" in text
    assert "thread=T1 rev=1 decision=fix status=resolved resolved=True commit=abc123" in text
    assert "rationale=Classified as critical (security); applied a 2-line fix." in text
    assert "snapshot=2 head=abc123 threads=1" in text

    cli._cmd_audit(cfg, pr_number=7, as_json=True)
    payload = json.loads(capsys.readouterr().out)
    assert payload["pr_number"] == 7
    assert [record["thread_id"] for record in payload["audit_records"]] == ["T1"]
    assert payload["decisions"][0]["risk_tag"] == "unknown"
    assert payload["run_summaries"][0]["fixed_count"] == 1
    assert [snapshot["head_sha"] for snapshot in payload["snapshots"]] == ["abc000", "abc123"]


def test_cmd_top_opens_dashboard(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    cfg = _app_config(tmp_path)
    called: dict[str, object] = {}

    def fake_tui(
        *, db_path: Path, refresh_seconds: int, default_window: str, row_limit: int
    ) -> None:
        called["tui"] = (db_path, refresh_seconds, default_window, row_limit)

    monkeypatch.setattr(cli, "run_observability_tui", fake_tui)

    cli._cmd_top(cfg, refresh_seconds=3, window="1h")

    assert called["tui"] == (cfg.state_db_path, 3, "1h", 200)
    assert cfg.state_db_path.exists()
