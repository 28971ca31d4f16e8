from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import tomllib
from typing import Literal, cast

from prsettle.models import SEVERITIES, Severity


CommitMode = Literal["per_thread", "per_cycle"]
ResolutionMode = Literal["api", "comment_only"]
ClassifierKind = Literal["rules", "codex"]
MergeStrategy = Literal["merge", "squash", "rebase"]
SeverityAction = Literal[
    "auto_fix_if_clean_apply",
    "auto_fix_if_low_risk",
    "acknowledge_only",
    "escalate",
]

_SEVERITY_ACTIONS: tuple[SeverityAction, ...] = (
    "auto_fix_if_clean_apply",
    "auto_fix_if_low_risk",
    "acknowledge_only",
    "escalate",
)
_DEFAULT_SEVERITY_ACTIONS: tuple[tuple[Severity, SeverityAction], ...] = (
    ("critical", "auto_fix_if_clean_apply"),
    ("recommended", "auto_fix_if_low_risk"),
    ("minor", "auto_fix_if_low_risk"),
    ("informational", "acknowledge_only"),
)
_DEFAULT_CRITICAL_KEYWORDS: tuple[str, ...] = (
    "security",
    "vulnerab",
    "injection",
    "data loss",
    "race condition",
    "deadlock",
    "crash",
    "null pointer",
    "leak",
    "must fix",
    "critical",
)
_DEFAULT_MINOR_KEYWORDS: tuple[str, ...] = (
    "nit",
    "typo",
    "naming",
    "style",
    "whitespace",
    "formatting",
    "minor",
)
_DEFAULT_INFORMATIONAL_KEYWORDS: tuple[str, ...] = (
    "fyi",
    "lgtm",
    "looks good",
    "thanks",
    "for context",
    "no action",
)


@dataclass(frozen=True)
class RuntimeConfig:
    base_dir: Path
    worker_count: int
    poll_interval_seconds: int
    collect_timeout_seconds: int = 900
    checks_timeout_seconds: int = 1800
    checks_poll_interval_seconds: int = 30
    lock_ttl_seconds: int = 3600
    max_cycles: int = 5
    max_stale_rounds: int = 3
    max_consecutive_transient: int = 5
    commit_mode: CommitMode = "per_thread"
    merge_strategy: MergeStrategy = "squash"
    delete_branch_after_merge: bool = True


@dataclass(frozen=True)
class RepoConfig:
    owner: str
    name: str
    default_branch: str
    coding_guidelines_path: str | None
    local_clone_source: str | None
    remote_url: str | None
    pr_numbers: tuple[int, ...] = ()
    trigger_label: str | None = None

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    @property
    def effective_remote_url(self) -> str:
        if self.remote_url:
            return self.remote_url
        return f"git@github.com:{self.owner}/{self.name}.git"


@dataclass(frozen=True)
class ReviewConfig:
    required_reviewers: tuple[str, ...] = ()
    resolution_mode: ResolutionMode = "api"
    classifier: ClassifierKind = "rules"
    bot_login: str | None = None


@dataclass(frozen=True)
class PolicyConfig:
    severity_actions: tuple[tuple[Severity, SeverityAction], ...] = _DEFAULT_SEVERITY_ACTIONS
    max_changed_lines: int = 40
    max_files: int = 3
    sensitive_paths: tuple[str, ...] = ()
    sensitive_weight: int = 25
    protected_paths: tuple[str, ...] = ()
    critical_keywords: tuple[str, ...] = _DEFAULT_CRITICAL_KEYWORDS
    minor_keywords: tuple[str, ...] = _DEFAULT_MINOR_KEYWORDS
    informational_keywords: tuple[str, ...] = _DEFAULT_INFORMATIONAL_KEYWORDS

    def action_for(self, severity: Severity) -> SeverityAction:
        for candidate, action in self.severity_actions:
            if candidate == severity:
                return action
        raise KeyError(f"No policy action configured for severity {severity!r}")


@dataclass(frozen=True)
class CodexConfig:
    enabled: bool
    model: str | None
    sandbox: str | None
    profile: str | None
    extra_args: tuple[str, ...]


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    repo: RepoConfig
    review: ReviewConfig
    policy: PolicyConfig
    codex: CodexConfig

    @property
    def state_db_path(self) -> Path:
        return self.runtime.base_dir / "state.db"


class ConfigError(ValueError):
    pass


def load_config(path: Path) -> AppConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)
    return parse_config(cast(dict[str, object], data))


def parse_config(data: dict[str, object]) -> AppConfig:
    runtime_data = _require_table(data, "runtime")
    repo_data = _require_table(data, "repo")
    review_data = _optional_table(data, "review") or {}
    policy_data = _optional_table(data, "policy") or {}
    codex_data = _optional_table(data, "codex") or {}

    runtime = RuntimeConfig(
        base_dir=Path(_require_str(runtime_data, "base_dir")).expanduser(),
        worker_count=_require_int(runtime_data, "worker_count"),
        poll_interval_seconds=_require_int(runtime_data, "poll_interval_seconds"),
        collect_timeout_seconds=_int_with_default(runtime_data, "collect_timeout_seconds", 900),
        checks_timeout_seconds=_int_with_default(runtime_data, "checks_timeout_seconds", 1800),
        checks_poll_interval_seconds=_int_with_default(
            runtime_data, "checks_poll_interval_seconds", 30
        ),
        lock_ttl_seconds=_int_with_default(runtime_data, "lock_ttl_seconds", 3600),
        max_cycles=_int_with_default(runtime_data, "max_cycles", 5),
        max_stale_rounds=_int_with_default(runtime_data, "max_stale_rounds", 3),
        max_consecutive_transient=_int_with_default(runtime_data, "max_consecutive_transient", 5),
        commit_mode=_choice_with_default(
            runtime_data, "commit_mode", ("per_thread", "per_cycle"), "per_thread"
        ),
        merge_strategy=_choice_with_default(
            runtime_data, "merge_strategy", ("merge", "squash", "rebase"), "squash"
        ),
        delete_branch_after_merge=_bool_with_default(
            runtime_data, "delete_branch_after_merge", True
        ),
    )
    _validate_runtime(runtime)

    repo = RepoConfig(
        owner=_require_str(repo_data, "owner"),
        name=_require_str(repo_data, "name"),
        default_branch=_str_with_default(repo_data, "default_branch", "main"),
        coding_guidelines_path=_optional_str(repo_data, "coding_guidelines_path"),
        local_clone_source=_optional_str(repo_data, "local_clone_source"),
        remote_url=_optional_str(repo_data, "remote_url"),
        pr_numbers=_tuple_of_positive_int(repo_data, "pr_numbers"),
        trigger_label=_optional_str(repo_data, "trigger_label"),
    )
    if not repo.pr_numbers and repo.trigger_label is None:
        raise ConfigError("repo.pr_numbers or repo.trigger_label must select pull requests")

    bot_login = _optional_str(review_data, "bot_login")
    review = ReviewConfig(
        required_reviewers=_logins_with_default(review_data, "required_reviewers", ()),
        resolution_mode=_choice_with_default(
            review_data, "resolution_mode", ("api", "comment_only"), "api"
        ),
        classifier=_choice_with_default(review_data, "classifier", ("rules", "codex"), "rules"),
        bot_login=bot_login.strip().lower() if bot_login is not None else None,
    )

    policy = PolicyConfig(
        severity_actions=_severity_actions(policy_data),
        max_changed_lines=_int_with_default(policy_data, "max_changed_lines", 40),
        max_files=_int_with_default(policy_data, "max_files", 3),
        sensitive_paths=_tuple_of_str_with_default(policy_data, "sensitive_paths", ()),
        sensitive_weight=_int_with_default(policy_data, "sensitive_weight", 25),
        protected_paths=_tuple_of_str_with_default(policy_data, "protected_paths", ()),
        critical_keywords=_keywords_with_default(
            policy_data, "critical_keywords", _DEFAULT_CRITICAL_KEYWORDS
        ),
        minor_keywords=_keywords_with_default(policy_data, "minor_keywords", _DEFAULT_MINOR_KEYWORDS),
        informational_keywords=_keywords_with_default(
            policy_data, "informational_keywords", _DEFAULT_INFORMATIONAL_KEYWORDS
        ),
    )
    if policy.max_changed_lines < 1:
        raise ConfigError("policy.max_changed_lines must be >= 1")
    if policy.max_files < 1:
        raise ConfigError("policy.max_files must be >= 1")
    if policy.sensitive_weight < 0:
        raise ConfigError("policy.sensitive_weight must be >= 0")

    codex = CodexConfig(
        enabled=_bool_with_default(codex_data, "enabled", True),
        model=_optional_str(codex_data, "model"),
        sandbox=_optional_str(codex_data, "sandbox"),
        profile=_optional_str(codex_data, "profile"),
        extra_args=_tuple_of_str_with_default(codex_data, "extra_args", ()),
    )
    if review.classifier == "codex" and not codex.enabled:
        raise ConfigError("review.classifier = 'codex' requires [codex] enabled = true")

    return AppConfig(runtime=runtime, repo=repo, review=review, policy=policy, codex=codex)


def _validate_runtime(runtime: RuntimeConfig) -> None:
    if runtime.worker_count < 1:
        raise ConfigError("runtime.worker_count must be >= 1")
    if runtime.poll_interval_seconds < 5:
        raise ConfigError("runtime.poll_interval_seconds must be >= 5")
    if runtime.collect_timeout_seconds < runtime.poll_interval_seconds:
        raise ConfigError("runtime.collect_timeout_seconds must be >= poll_interval_seconds")
    if runtime.checks_timeout_seconds < 1:
        raise ConfigError("runtime.checks_timeout_seconds must be >= 1")
    if runtime.checks_poll_interval_seconds < 1:
        raise ConfigError("runtime.checks_poll_interval_seconds must be >= 1")
    if runtime.lock_ttl_seconds < 60:
        raise ConfigError("runtime.lock_ttl_seconds must be >= 60")
    if runtime.lock_ttl_seconds <= runtime.collect_timeout_seconds:
        raise ConfigError("runtime.lock_ttl_seconds must exceed collect_timeout_seconds")
    if runtime.max_cycles < 1:
        raise ConfigError("runtime.max_cycles must be >= 1")
    if runtime.max_stale_rounds < 1:
        raise ConfigError("runtime.max_stale_rounds must be >= 1")
    if runtime.max_consecutive_transient < 1:
        raise ConfigError("runtime.max_consecutive_transient must be >= 1")


def _severity_actions(data: dict[str, object]) -> tuple[tuple[Severity, SeverityAction], ...]:
    actions: list[tuple[Severity, SeverityAction]] = []
    defaults = dict(_DEFAULT_SEVERITY_ACTIONS)
    for severity in SEVERITIES:
        action = _choice_with_default(data, severity, _SEVERITY_ACTIONS, defaults[severity])
        actions.append((severity, action))
    return tuple(actions)


def _require_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] is required and must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value


def _require_int(data: dict[str, object], key: str) -> int:
    value = data.get(key)
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigError(f"{key} is required and must be an integer")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigError(f"{key} must be an integer")
    return value


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _choice_with_default(  # type: ignore[no-untyped-def]
    data: dict[str, object], key: str, choices: tuple[str, ...], default
):
    value = data.get(key, default)
    if not isinstance(value, str):
        raise ConfigError(f"{key} must be one of: {', '.join(choices)}")
    normalized = value.strip().lower()
    if normalized not in choices:
        raise ConfigError(f"{key} must be one of: {', '.join(choices)}")
    return normalized


def _tuple_of_str(data: dict[str, object], key: str) -> tuple[str, ...]:
    value = data.get(key, [])
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ConfigError(f"{key} must be a list of strings")
        out.append(item)
    return tuple(out)


def _tuple_of_str_with_default(
    data: dict[str, object], key: str, default: tuple[str, ...]
) -> tuple[str, ...]:
    if key not in data:
        return default
    return _tuple_of_str(data, key)


def _keywords_with_default(
    data: dict[str, object], key: str, default: tuple[str, ...]
) -> tuple[str, ...]:
    raw = _tuple_of_str_with_default(data, key, default)
    normalized: list[str] = []
    for item in raw:
        keyword = item.strip().lower()
        if not keyword:
            raise ConfigError(f"{key} entries must be non-empty strings")
        if keyword not in normalized:
            normalized.append(keyword)
    return tuple(normalized)


def _tuple_of_positive_int(data: dict[str, object], key: str) -> tuple[int, ...]:
    value = data.get(key, [])
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of integers")
    out: list[int] = []
    for item in value:
        if not isinstance(item, int) or isinstance(item, bool) or item < 1:
            raise ConfigError(f"{key} entries must be integers >= 1")
        if item not in out:
            out.append(item)
    return tuple(out)


def _logins_with_default(
    data: dict[str, object], key: str, default: tuple[str, ...]
) -> tuple[str, ...]:
    value = data.get(key, list(default))
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of strings")
    normalized: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ConfigError(f"{key} must be a list of strings")
        login = item.strip().lower()
        if not login:
            raise ConfigError(f"{key} entries must be non-empty strings")
        if login not in normalized:
            normalized.append(login)
    return tuple(normalized)
