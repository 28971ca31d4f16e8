from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from prsettle.models import Classification, ProposedPatch, ReviewThread


@dataclass(frozen=True)
class PatchRequest:
    repo_full_name: str
    pr_number: int
    branch: str
    thread: ReviewThread
    file_context: str | None
    coding_guidelines_path: str | None


class AgentAdapter(ABC):
    @abstractmethod
    def propose_patch(self, *, request: PatchRequest, cwd: Path) -> ProposedPatch | None:
        """Return a unified diff addressing ``request.thread``, or ``None`` if no safe fix exists."""

    @abstractmethod
    def classify_thread(
        self, *, thread: ReviewThread, repo_full_name: str, cwd: Path | None
    ) -> Classification:
        """Assign a category and severity to one review thread."""
