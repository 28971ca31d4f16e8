from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import pytest

from prsettle.agent_adapter import AgentAdapter, PatchRequest
from prsettle.classifier import (
    UNKNOWN_CLASSIFICATION,
    DelegatedClassifier,
    FallbackClassifier,
    RuleBasedClassifier,
    build_classifier,
)
from prsettle.config import PolicyConfig
from prsettle.models import Classification, ProposedPatch, ReviewThread


def _thread(body: str, *, suggestion: str = "", category: str = "unclassified") -> ReviewThread:
    return ReviewThread(
        thread_id="T1",
        path="src/app.py",
        start_line=None,
        end_line=4,
        author_login="alice",
        body=f"@alice: {body}",
        suggestion=suggestion,
        content_hash="h",
        first_comment_id=1,
        category=category,
    )


class FakeAgent(AgentAdapter):
    def __init__(self, result: Classification | Exception) -> None:
        self.result = result
        self.calls: list[tuple[str, str, Path | None]] = []

    def propose_patch(self, *, request: PatchRequest, cwd: Path) -> ProposedPatch | None:
        _ = request, cwd
        return None

    def classify_thread(
        self, *, thread: ReviewThread, repo_full_name: str, cwd: Path | None
    ) -> Classification:
        self.calls.append((thread.thread_id, repo_full_name, cwd))
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


@pytest.mark.parametrize(
    ("body", "suggestion", "expected"),
    [
        ("This opens a security hole", "", Classification("security", "critical")),
        ("nit: rename foo", "", Classification("style", "minor")),
        ("This returns the wrong value", "", Classification("general", "recommended")),
        ("lgtm, thanks!", "", Classification("informational", "informational")),
        ("lgtm but use this", "x = 1\n", Classification("general", "recommended")),
        ("Add a test for the crash", "", Classification("bug", "critical")),
        ("This loop is quadratic", "", Classification("performance", "recommended")),
    ],
)
def test_rule_based_classifier(body: str, suggestion: str, expected: Classification) -> None:
    classifier = RuleBasedClassifier(PolicyConfig())
    assert classifier.classify(_thread(body, suggestion=suggestion)) == expected


def test_informational_threads_stay_informational_unless_critical() -> None:
    classifier = RuleBasedClassifier(PolicyConfig())
    marked = _thread("FYI this mirrors the old module", category="informational")
    assert classifier.classify(marked).severity == "informational"

    alarming = replace(marked, body="@alice: fyi this leaks credentials")
    assert classifier.classify(alarming).severity == "critical"


def test_keywords_match_at_word_start_only() -> None:
    classifier = RuleBasedClassifier(PolicyConfig())
    assert classifier.classify(_thread("the unit helper is off")).severity == "recommended"


def test_reviewer_logins_do_not_affect_severity() -> None:
    classifier = RuleBasedClassifier(PolicyConfig())
    thread = replace(
        _thread("unused"),
        author_login="security-bot",
        body="@security-bot: This returns the wrong value\n\n@nitpicker: Agreed, please fix it",
    )

    assert classifier.classify(thread) == Classification("general", "recommended")


def test_delegated_classifier_uses_agent() -> None:
    agent = FakeAgent(Classification("naming", "minor"))
    classifier = DelegatedClassifier(agent, repo_full_name="o/r", cwd=Path("/tmp/x"))

    assert classifier.classify(_thread("rename")) == Classification("naming", "minor")
    assert agent.calls == [("T1", "o/r", Path("/tmp/x"))]


def test_fallback_classifier_swallows_agent_failure() -> None:
    classifier = FallbackClassifier(
        DelegatedClassifier(FakeAgent(RuntimeError("model offline")), repo_full_name="o/r")
    )
    assert classifier.classify(_thread("anything")) == UNKNOWN_CLASSIFICATION


def test_build_classifier_kinds() -> None:
    policy = PolicyConfig()
    agent = FakeAgent(Classification("bug", "critical"))

    rules = build_classifier("rules", policy=policy, agent=None, repo_full_name="o/r")
    assert rules.classify(_thread("nit")).severity == "minor"
    codex = build_classifier("codex", policy=policy, agent=agent, repo_full_name="o/r")
    assert codex.classify(_thread("nit")).severity == "critical"

    with pytest.raises(ValueError, match="requires an agent"):
        build_classifier("codex", policy=policy, agent=None, repo_full_name="o/r")
    with pytest.raises(ValueError, match="Unknown classifier"):
        build_classifier("magic", policy=policy, agent=agent, repo_full_name="o/r")
