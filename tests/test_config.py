from __future__ import annotations

from pathlib import Path

import pytest

from prsettle.config import ConfigError, load_config, parse_config


def _write(path: Path, content: str) -> Path:
    path.write_text(content, encoding="utf-8")
    return path


def _minimal() -> dict[str, object]:
    return {
        "runtime": {"base_dir": "/tmp/prsettle", "worker_count": 1, "poll_interval_seconds": 30},
        "repo": {"owner": "octo", "name": "widgets", "pr_numbers": [7]},
    }


def test_load_config_reads_all_tables_and_normalizes(tmp_path: Path) -> None:
    cfg_path = _write(
        tmp_path / "prsettle.toml",
        """
[runtime]
base_dir = "~/tmp/prsettle"
worker_count = 3
poll_interval_seconds = 20
collect_timeout_seconds = 600
checks_timeout_seconds = 1200
checks_poll_interval_seconds = 15
lock_ttl_seconds = 1800
max_cycles = 4
max_stale_rounds = 2
max_consecutive_transient = 6
commit_mode = "PER_CYCLE"
merge_strategy = "rebase"
delete_branch_after_merge = false

[repo]
owner = "octo"
name = "widgets"
default_branch = "trunk"
coding_guidelines_path = "docs/guidelines.md"
local_clone_source = "/tmp/widgets.git"
pr_numbers = [12, 7, 12]
trigger_label = "prsettle"

[review]
required_reviewers = [" Alice ", "bob", "ALICE"]
resolution_mode = "comment_only"
classifier = "codex"
bot_login = "Settle-Bot"

[policy]
critical = "escalate"
minor = "acknowledge_only"
max_changed_lines = 60
max_files = 5
sensitive_paths = ["auth/", "*.sql"]
protected_paths = ["migrations/"]
critical_keywords = ["Security", "security", "panic"]

[codex]
enabled = true
model = "gpt-x"
sandbox = "workspace-write"
extra_args = ["--full-auto"]
""",
    )

    cfg = load_config(cfg_path)

    assert cfg.runtime.base_dir == Path("~/tmp/prsettle").expanduser()
    assert cfg.runtime.worker_count == 3
    assert cfg.runtime.commit_mode == "per_cycle"
    assert cfg.runtime.merge_strategy == "rebase"
    assert cfg.runtime.delete_branch_after_merge is False
    assert cfg.runtime.max_consecutive_transient == 6
    assert cfg.repo.full_name == "octo/widgets"
    assert cfg.repo.default_branch == "trunk"
    assert cfg.repo.pr_numbers == (12, 7)
    assert cfg.repo.trigger_label == "prsettle"
    assert cfg.review.required_reviewers == ("alice", "bob")
    assert cfg.review.resolution_mode == "comment_only"
    assert cfg.review.classifier == "codex"
    assert cfg.review.bot_login == "settle-bot"
    assert cfg.policy.action_for("critical") == "escalate"
    assert cfg.policy.action_for("minor") == "acknowledge_only"
    assert cfg.policy.action_for("recommended") == "auto_fix_if_low_risk"
    assert cfg.policy.action_for("informational") == "acknowledge_only"
    assert cfg.policy.sensitive_paths == ("auth/", "*.sql")
    assert cfg.policy.protected_paths == ("migrations/",)
    assert cfg.policy.critical_keywords == ("security", "panic")
    assert cfg.codex.model == "gpt-x"
    assert cfg.codex.extra_args == ("--full-auto",)
    assert cfg.state_db_path == cfg.runtime.base_dir / "state.db"


def test_parse_config_applies_defaults() -> None:
    cfg = parse_config(_minimal())

    assert cfg.runtime.collect_timeout_seconds == 900
    assert cfg.runtime.checks_timeout_seconds == 1800
    assert cfg.runtime.lock_ttl_seconds == 3600
    assert cfg.runtime.max_cycles == 5
    assert cfg.runtime.commit_mode == "per_thread"
    assert cfg.runtime.merge_strategy == "squash"
    assert cfg.repo.default_branch == "main"
    assert cfg.repo.effective_remote_url == "git@github.com:octo/widgets.git"
    assert cfg.review.required_reviewers == ()
    assert cfg.review.resolution_mode == "api"
    assert cfg.review.classifier == "rules"
    assert cfg.review.bot_login is None
    assert cfg.policy.action_for("critical") == "auto_fix_if_clean_apply"
    assert cfg.policy.max_changed_lines == 40
    assert "nit" in cfg.policy.minor_keywords
    assert cfg.codex.enabled is True


def test_remote_url_override_is_used() -> None:
    data = _minimal()
    repo = data["repo"]
    assert isinstance(repo, dict)
    repo["remote_url"] = "https://example.com/octo/widgets.git"

    cfg = parse_config(data)

    assert cfg.repo.effective_remote_url == "https://example.com/octo/widgets.git"


@pytest.mark.parametrize(
    ("table", "key", "value", "message"),
    [
        ("runtime", "worker_count", 0, "worker_count"),
        ("runtime", "poll_interval_seconds", 2, "poll_interval_seconds"),
        ("runtime", "collect_timeout_seconds", 10, "collect_timeout_seconds"),
        ("runtime", "lock_ttl_seconds", 30, "lock_ttl_seconds"),
        ("runtime", "lock_ttl_seconds", 600, "exceed collect_timeout_seconds"),
        ("runtime", "max_cycles", 0, "max_cycles"),
        ("runtime", "max_stale_rounds", 0, "max_stale_rounds"),
        ("runtime", "commit_mode", "per_push", "commit_mode"),
        ("runtime", "merge_strategy", "octopus", "merge_strategy"),
        ("runtime", "delete_branch_after_merge", "yes", "delete_branch_after_merge"),
        ("repo", "pr_numbers", [0], "pr_numbers"),
        ("repo", "pr_numbers", "7", "pr_numbers"),
        ("review", "resolution_mode", "close", "resolution_mode"),
        ("review", "required_reviewers", [""], "required_reviewers"),
        ("policy", "critical", "fix_everything", "critical"),
        ("policy", "max_changed_lines", 0, "max_changed_lines"),
        ("policy", "max_files", 0, "max_files"),
        ("policy", "sensitive_weight", -1, "sensitive_weight"),
        ("policy", "minor_keywords", [" "], "minor_keywords"),
    ],
)
def test_parse_config_rejects_invalid_values(
    table: str, key: str, value: object, message: str
) -> None:
    data = _minimal()
    section = data.setdefault(table, {})
    assert isinstance(section, dict)
    section[key] = value

    with pytest.raises(ConfigError, match=message):
        parse_config(data)


def test_parse_config_requires_runtime_and_repo_tables() -> None:
    with pytest.raises(ConfigError, match=r"\[runtime\]"):
        parse_config({"repo": {"owner": "o", "name": "n", "pr_numbers": [1]}})
    with pytest.raises(ConfigError, match=r"\[repo\]"):
        parse_config({"runtime": _minimal()["runtime"]})


def test_parse_config_requires_a_pull_request_selector() -> None:
    data = _minimal()
    repo = data["repo"]
    assert isinstance(repo, dict)
    del repo["pr_numbers"]

    with pytest.raises(ConfigError, match="pr_numbers or repo.trigger_label"):
        parse_config(data)

    repo["trigger_label"] = "settle-me"
    assert parse_config(data).repo.trigger_label == "settle-me"


def test_codex_classifier_requires_codex_enabled() -> None:
    data = _minimal()
    data["review"] = {"classifier": "codex"}
    data["codex"] = {"enabled": False}

    with pytest.raises(ConfigError, match="requires \\[codex\\] enabled"):
        parse_config(data)


def test_optional_tables_must_be_tables() -> None:
    data = _minimal()
    data["policy"] = "strict"

    with pytest.raises(ConfigError, match=r"\[policy\] must be a TOML table"):
        parse_config(data)
