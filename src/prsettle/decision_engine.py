from __future__ import annotations

from collections.abc import Sequence
from fnmatch import fnmatchcase

from prsettle.config import PolicyConfig
from prsettle.errors import PolicyViolationError
from prsettle.models import (
    ApplyErrorKind,
    Classification,
    Decision,
    DecisionAction,
    RiskAssessment,
    RiskTag,
    ReviewThread,
)


def path_matches(path: str, patterns: Sequence[str]) -> bool:
    """Glob match; a pattern ending in ``/`` matches everything below that directory."""
    if not path:
        return False
    for pattern in patterns:
        if pattern.endswith("/"):
            if path.startswith(pattern) or f"/{pattern}" in f"/{path}":
                return True
            continue
        if fnmatchcase(path, pattern) or fnmatchcase(path.rsplit("/", 1)[-1], pattern):
            return True
    return False


def diff_files(diff: str) -> tuple[str, ...]:
    files: list[str] = []
    for line in diff.splitlines():
        if not line.startswith("+++ ") and not line.startswith("--- "):
            continue
        target = line[4:].strip().split("\t", 1)[0]
        if target == "/dev/null":
            continue
        if target.startswith(("a/", "b/")):
            target = target[2:]
        if target and target not in files:
            files.append(target)
    return tuple(files)


def diff_changed_lines(diff: str) -> int:
    changed = 0
    for line in diff.splitlines():
        if line.startswith(("+++", "---")):
            continue
        if line.startswith(("+", "-")):
            changed += 1
    return changed


def assess_patch_risk(diff: str, policy: PolicyConfig) -> RiskAssessment:
    """Structural risk of a candidate patch: size, file count and sensitive paths."""
    files = diff_files(diff)
    changed_lines = diff_changed_lines(diff)
    sensitive_hits = tuple(path for path in files if path_matches(path, policy.sensitive_paths))
    protected_hits = tuple(path for path in files if path_matches(path, policy.protected_paths))
    score = changed_lines + policy.sensitive_weight * len(sensitive_hits)
    return RiskAssessment(
        changed_lines=changed_lines,
        files=files,
        sensitive_hits=sensitive_hits,
        protected_hits=protected_hits,
        score=score,
        exceeds_threshold=score > policy.max_changed_lines or len(files) > policy.max_files,
    )


def enforce_protected_paths(risk: RiskAssessment) -> None:
    if risk.protected_hits:
        raise PolicyViolationError(
            f"patch touches protected paths: {', '.join(risk.protected_hits)}"
        )


def decide(
    thread: ReviewThread,
    classification: Classification,
    policy: PolicyConfig,
    *,
    snapshot_sequence: int,
    risk: RiskAssessment | None = None,
) -> Decision:
    """Pure policy lookup; equal inputs always produce an equal ``Decision``.

    Without ``risk`` this is the pre-patch decision. With ``risk`` it is the
    re-check of a candidate patch, which may downgrade ``fix`` to ``escalate``.
    """
    severity = classification.severity

    def _decision(action: DecisionAction, rationale: str, risk_tag: RiskTag) -> Decision:
        return Decision(
            thread_id=thread.thread_id,
            revision=thread.revision,
            action=action,
            rationale=rationale,
            risk_tag=risk_tag,
            snapshot_sequence=snapshot_sequence,
            content_hash=thread.content_hash,
        )

    if path_matches(thread.path, policy.protected_paths):
        return _decision(
            "escalate",
            f"`{thread.path}` is a protected path; changes there need a human decision.",
            "policy_violation",
        )

    action = policy.action_for(severity)
    if action == "acknowledge_only":
        return _decision(
            "ignore",
            f"Classified as {severity} ({classification.category}); "
            "acknowledged without a code change.",
            risk.tag if risk is not None else "low",
        )
    if action == "escalate":
        return _decision(
            "escalate",
            f"Policy routes {severity} feedback ({classification.category}) to a human reviewer.",
            risk.tag if risk is not None else "unknown",
        )

    if risk is None:
        return _decision(
            "fix",
            f"Classified as {severity} ({classification.category}); policy allows an automatic fix.",
            "unknown",
        )

    if risk.protected_hits:
        return _decision(
            "escalate",
            "The proposed patch touches protected paths "
            f"({', '.join(risk.protected_hits)}); a human must make this change.",
            "policy_violation",
        )
    if risk.exceeds_threshold:
        return _decision(
            "escalate",
            f"The proposed patch is too large to apply automatically "
            f"({risk.changed_lines} changed lines across {len(risk.files)} files, "
            f"risk score {risk.score}).",
            "high",
        )
    if action == "auto_fix_if_low_risk" and risk.sensitive_hits:
        return _decision(
            "escalate",
            f"The proposed patch for {severity} feedback touches sensitive paths "
            f"({', '.join(risk.sensitive_hits)}); only low-risk fixes are automatic.",
            "elevated",
        )
    return _decision(
        "fix",
        f"Classified as {severity} ({classification.category}); applied a "
        f"{risk.changed_lines}-line fix.",
        risk.tag,
    )


def redecide_after_apply(
    thread: ReviewThread,
    decision: Decision,
    failure: ApplyErrorKind,
    policy: PolicyConfig,
    *,
    detail: str = "",
) -> Decision:
    """Supersede a ``fix`` decision whose patch could not be applied.

    ``stale`` is not handled here; the caller re-collects and decides again.
    """
    if failure == "stale":
        raise ValueError("stale apply results are re-collected, not re-decided")
    suffix = f" ({detail})" if detail else ""
    action: DecisionAction
    risk_tag: RiskTag = decision.risk_tag
    if failure == "conflict":
        action = "escalate"
        rationale = f"The proposed patch does not apply cleanly to the branch{suffix}."
    elif failure == "risk_exceeded":
        action = "escalate"
        rationale = f"The proposed patch exceeds the automatic-fix risk threshold{suffix}."
        risk_tag = "high"
    elif failure == "policy_violation":
        action = "escalate"
        rationale = f"The proposed patch violates repository policy{suffix}."
        risk_tag = "policy_violation"
    elif failure == "transient":
        action = "escalate"
        rationale = f"Applying the fix kept failing after retries{suffix}."
    elif (
        thread.severity is not None
        and policy.action_for(thread.severity) == "auto_fix_if_clean_apply"
    ):
        action = "escalate"
        rationale = (
            f"{thread.severity.capitalize()} feedback needs a fix but no clean patch "
            f"could be produced{suffix}."
        )
    else:
        action = "ignore"
        rationale = f"No safe code change was identified for this feedback{suffix}; acknowledged."
    return Decision(
        thread_id=decision.thread_id,
        revision=decision.revision,
        action=action,
        rationale=rationale,
        risk_tag=risk_tag,
        snapshot_sequence=decision.snapshot_sequence,
        content_hash=decision.content_hash,
    )
