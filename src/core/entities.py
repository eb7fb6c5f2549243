from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class Candidate:
    """
    One external discussion item eligible for evaluation.
    """
    external_id: str
    channel: str
    title: str
    body: str
    author: str
    score: int
    num_comments: int
    created_at: datetime
    url: str
    permalink: str

    @property
    def text(self) -> str:
        return f"{self.title} {self.body}"

    def age_hours(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(timezone.utc)
        return max(0, int((now - self.created_at).total_seconds() // 3600))


@dataclass(frozen=True)
class Evaluation:
    """
    Relevance verdict for a single candidate.
    """
    candidate_id: str
    score: float
    recommend: bool
    rationale: str
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass(frozen=True)
class Draft:
    """
    Reply text drafted for a recommended candidate.
    """
    candidate_id: str
    text: str
    succeeded: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class ProcessedRecord:
    """
    Durable row that keeps a post from being processed twice.
    """
    workspace_id: int
    external_post_id: str
    channel: str
    title: str
    url: str
    score: Optional[float]
    recommend: bool
    rationale: Optional[str]
    draft_text: Optional[str]
    run_id: int
    definition_id: Optional[int] = None
    posted: bool = False
    dry_run: bool = False


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Run:
    """
    One execution of a workflow definition.
    """
    id: int
    workspace_id: int
    definition_id: Optional[int]
    status: RunStatus
    dry_run: bool
    started_at: datetime
    definition_snapshot: Dict[str, Any] = field(default_factory=dict)
    completed_at: Optional[datetime] = None
    result_summary: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != RunStatus.RUNNING


@dataclass(frozen=True)
class ItemResult(Generic[T]):
    """
    Outcome of one per-item call: either a value or the captured error.
    """
    index: int
    value: Optional[T] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None
