from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
import logging
import re

from prsettle.agent_adapter import AgentAdapter
from prsettle.config import PolicyConfig
from prsettle.models import Classification, ReviewThread
from prsettle.observability import log_warning_event


LOGGER = logging.getLogger("prsettle.classifier")
UNKNOWN_CLASSIFICATION = Classification(category="unknown", severity="recommended")

_CATEGORY_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("security", re.compile(r"\b(security|vulnerab\w*|inject\w*|xss|csrf|secret|credential)")),
    ("bug", re.compile(r"\b(bug|crash\w*|null|none\b|off[- ]by[- ]one|race|deadlock|leak)")),
    ("performance", re.compile(r"\b(perf\w*|slow|quadratic|n\+1|allocat\w*)")),
    ("test", re.compile(r"\b(test\w*|coverage|assert\w*)")),
    ("docs", re.compile(r"\b(doc\w*|comment|readme|typo)")),
    ("style", re.compile(r"\b(nit|style|naming|rename|format\w*|whitespace|lint)")),
)

_AUTHOR_PREFIX = re.compile(r"^@[^\s:]+: ", re.MULTILINE)


class Classifier(ABC):
    @abstractmethod
    def classify(self, thread: ReviewThread) -> Classification:
        """Return the category and severity for ``thread``."""


class RuleBasedClassifier(Classifier):
    """Keyword matching over the thread text.

    Critical keywords beat informational ones, which beat minor ones. Threads
    the normalizer already marked informational stay informational unless a
    critical keyword shows up.
    """

    def __init__(self, policy: PolicyConfig) -> None:
        self._policy = policy

    def classify(self, thread: ReviewThread) -> Classification:
        # Reviewer logins are not feedback text.
        comments = _AUTHOR_PREFIX.sub("", thread.body)
        text = f"{comments}\n{thread.suggestion}".lower()
        category = _category_for(text)
        if _contains_any(text, self._policy.critical_keywords):
            return Classification(category=category, severity="critical")
        if thread.category == "informational" or (
            not thread.has_suggestion
            and _contains_any(text, self._policy.informational_keywords)
        ):
            return Classification(category="informational", severity="informational")
        if _contains_any(text, self._policy.minor_keywords):
            return Classification(category=category, severity="minor")
        return Classification(category=category, severity="recommended")


class DelegatedClassifier(Classifier):
    def __init__(
        self,
        agent: AgentAdapter,
        *,
        repo_full_name: str,
        cwd: Path | None = None,
    ) -> None:
        self._agent = agent
        self._repo_full_name = repo_full_name
        self._cwd = cwd

    def classify(self, thread: ReviewThread) -> Classification:
        return self._agent.classify_thread(
            thread=thread, repo_full_name=self._repo_full_name, cwd=self._cwd
        )


class FallbackClassifier(Classifier):
    """Wraps another classifier so no failure ever escapes ``classify``."""

    def __init__(self, inner: Classifier) -> None:
        self._inner = inner

    def classify(self, thread: ReviewThread) -> Classification:
        try:
            return self._inner.classify(thread)
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "classification_failed",
                thread_id=thread.thread_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return UNKNOWN_CLASSIFICATION


def build_classifier(
    kind: str,
    *,
    policy: PolicyConfig,
    agent: AgentAdapter | None,
    repo_full_name: str,
) -> Classifier:
    if kind == "codex":
        if agent is None:
            raise ValueError("codex classifier requires an agent adapter")
        return FallbackClassifier(DelegatedClassifier(agent, repo_full_name=repo_full_name))
    if kind == "rules":
        return FallbackClassifier(RuleBasedClassifier(policy))
    raise ValueError(f"Unknown classifier kind: {kind!r}")


def _category_for(text: str) -> str:
    for category, pattern in _CATEGORY_PATTERNS:
        if pattern.search(text):
            return category
    return "general"


def _contains_any(text: str, keywords: tuple[str, ...]) -> bool:
    # Keywords match at a word start so "nit" does not fire on "unit".
    return any(re.search(rf"\b{re.escape(keyword)}", text) for keyword in keywords)
