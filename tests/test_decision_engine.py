from __future__ import annotations

from dataclasses import replace

import pytest

from prsettle.config import PolicyConfig
from prsettle.decision_engine import (
    assess_patch_risk,
    decide,
    diff_changed_lines,
    diff_files,
    enforce_protected_paths,
    path_matches,
    redecide_after_apply,
)
from prsettle.errors import PolicyViolationError
from prsettle.models import Classification, ReviewThread


_DIFF = """\
--- a/src/app.py
+++ b/src/app.py
@@ -1,2 +1,2 @@
-x = 1
+x = 2
 y = 3
"""

_NEW_FILE_DIFF = """\
--- /dev/null
+++ b/db/migrations/0002.sql
@@ -0,0 +1 @@
+ALTER TABLE t ADD c INT;
"""


def _thread(path: str = "src/app.py", **overrides: object) -> ReviewThread:
    thread = ReviewThread(
        thread_id="T1",
        path=path,
        start_line=None,
        end_line=1,
        author_login="alice",
        body="@alice: use 2",
        suggestion="",
        content_hash="h1",
        first_comment_id=1,
    )
    return replace(thread, **overrides)  # type: ignore[arg-type]


def _policy(**overrides: object) -> PolicyConfig:
    return replace(PolicyConfig(), **overrides)  # type: ignore[arg-type]


def test_diff_helpers() -> None:
    assert diff_files(_DIFF) == ("src/app.py",)
    assert diff_changed_lines(_DIFF) == 2
    assert diff_files(_NEW_FILE_DIFF) == ("db/migrations/0002.sql",)
    assert diff_changed_lines(_NEW_FILE_DIFF) == 1
    assert diff_files("") == ()


@pytest.mark.parametrize(
    ("path", "patterns", "expected"),
    [
        ("db/migrations/0002.sql", ("migrations/",), True),
        ("migrations/0001.sql", ("migrations/",), True),
        ("src/auth/login.py", ("src/auth/*",), True),
        ("src/app.sql", ("*.sql",), True),
        ("deep/dir/secrets.env", ("secrets.env",), True),
        ("src/app.py", ("*.sql", "auth/"), False),
        ("", ("*",), False),
    ],
)
def test_path_matches(path: str, patterns: tuple[str, ...], expected: bool) -> None:
    assert path_matches(path, patterns) is expected


def test_assess_patch_risk_scores_sensitive_paths() -> None:
    policy = _policy(sensitive_paths=("src/",), sensitive_weight=25, max_changed_lines=40)
    risk = assess_patch_risk(_DIFF, policy)

    assert risk.changed_lines == 2
    assert risk.sensitive_hits == ("src/app.py",)
    assert risk.score == 27
    assert risk.exceeds_threshold is False
    assert risk.tag == "elevated"

    tight = assess_patch_risk(_DIFF, replace(policy, max_changed_lines=20))
    assert tight.tag == "high"

    protected = assess_patch_risk(_NEW_FILE_DIFF, _policy(protected_paths=("migrations/",)))
    assert protected.tag == "policy_violation"

    too_many_files = assess_patch_risk(_DIFF + _NEW_FILE_DIFF, _policy(max_files=1))
    assert too_many_files.exceeds_threshold is True


def test_protected_thread_path_escalates_before_anything_else() -> None:
    decision = decide(
        _thread(path="migrations/0001.sql"),
        Classification("style", "minor"),
        _policy(protected_paths=("migrations/",)),
        snapshot_sequence=3,
    )
    assert decision.action == "escalate"
    assert decision.risk_tag == "policy_violation"
    assert decision.snapshot_sequence == 3
    assert decision.content_hash == "h1"


def test_pre_patch_decisions_follow_severity_policy() -> None:
    policy = _policy()
    thread = _thread()

    informational = decide(
        thread, Classification("praise", "informational"), policy, snapshot_sequence=1
    )
    assert informational.action == "ignore"
    assert informational.risk_tag == "low"

    fix = decide(thread, Classification("bug", "critical"), policy, snapshot_sequence=1)
    assert fix.action == "fix"
    assert fix.risk_tag == "unknown"
    assert fix.revision == 1

    escalating = _policy(
        severity_actions=(
            ("critical", "escalate"),
            ("recommended", "auto_fix_if_low_risk"),
            ("minor", "auto_fix_if_low_risk"),
            ("informational", "acknowledge_only"),
        )
    )
    escalated = decide(thread, Classification("bug", "critical"), escalating, snapshot_sequence=1)
    assert escalated.action == "escalate"
    assert "human reviewer" in escalated.rationale


def test_decide_is_deterministic() -> None:
    policy = _policy(sensitive_paths=("src/",))
    classification = Classification("bug", "recommended")
    risk = assess_patch_risk(_DIFF, policy)

    first = decide(_thread(), classification, policy, snapshot_sequence=4, risk=risk)
    second = decide(_thread(), classification, policy, snapshot_sequence=4, risk=risk)

    assert first == second


def test_post_patch_risk_recheck() -> None:
    policy = _policy(sensitive_paths=("src/",), protected_paths=("migrations/",))
    thread = _thread()

    low_risk_sensitive = decide(
        thread,
        Classification("style", "minor"),
        policy,
        snapshot_sequence=1,
        risk=assess_patch_risk(_DIFF, policy),
    )
    assert low_risk_sensitive.action == "escalate"
    assert low_risk_sensitive.risk_tag == "elevated"

    clean_apply_sensitive = decide(
        thread,
        Classification("bug", "critical"),
        policy,
        snapshot_sequence=1,
        risk=assess_patch_risk(_DIFF, policy),
    )
    assert clean_apply_sensitive.action == "fix"
    assert clean_apply_sensitive.risk_tag == "elevated"

    touches_protected = decide(
        thread,
        Classification("bug", "critical"),
        policy,
        snapshot_sequence=1,
        risk=assess_patch_risk(_NEW_FILE_DIFF, policy),
    )
    assert touches_protected.action == "escalate"
    assert touches_protected.risk_tag == "policy_violation"

    too_big = decide(
        thread,
        Classification("bug", "recommended"),
        _policy(max_changed_lines=1),
        snapshot_sequence=1,
        risk=assess_patch_risk(_DIFF, _policy(max_changed_lines=1)),
    )
    assert too_big.action == "escalate"
    assert too_big.risk_tag == "high"

    plain = decide(
        thread,
        Classification("bug", "recommended"),
        _policy(),
        snapshot_sequence=1,
        risk=assess_patch_risk(_DIFF, _policy()),
    )
    assert plain.action == "fix"
    assert plain.risk_tag == "low"
    assert "2-line fix" in plain.rationale


def test_redecide_after_apply() -> None:
    policy = _policy()
    decision = decide(_thread(), Classification("bug", "recommended"), policy, snapshot_sequence=2)

    with pytest.raises(ValueError, match="stale"):
        redecide_after_apply(_thread(), decision, "stale", policy)

    conflict = redecide_after_apply(_thread(), decision, "conflict", policy, detail="hunk 1")
    assert conflict.action == "escalate"
    assert conflict.rationale.endswith("(hunk 1).")
    assert conflict.snapshot_sequence == 2

    assert redecide_after_apply(_thread(), decision, "risk_exceeded", policy).risk_tag == "high"
    assert (
        redecide_after_apply(_thread(), decision, "policy_violation", policy).risk_tag
        == "policy_violation"
    )
    assert redecide_after_apply(_thread(), decision, "transient", policy).action == "escalate"

    critical = _thread(severity="critical")
    no_patch_critical = redecide_after_apply(critical, decision, "no_patch", policy)
    assert no_patch_critical.action == "escalate"
    assert no_patch_critical.rationale.startswith("Critical feedback")

    minor = _thread(severity="minor")
    assert redecide_after_apply(minor, decision, "no_patch", policy).action == "ignore"


def test_enforce_protected_paths() -> None:
    policy = _policy(protected_paths=("migrations/",))
    enforce_protected_paths(assess_patch_risk(_DIFF, policy))
    with pytest.raises(PolicyViolationError, match="db/migrations/0002.sql"):
        enforce_protected_paths(assess_patch_risk(_NEW_FILE_DIFF, policy))
