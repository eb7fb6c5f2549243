"""
Pydantic schemas for workflow definitions, model output and run summaries.
"""
from datetime import datetime
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RelevanceAssessment(BaseModel):
    """
    Structured output expected from the scoring model.
    Strict: quoted numbers or "yes"/"no" booleans are rejected, not coerced.
    """
    model_config = ConfigDict(strict=True)

    relevance_score: float = Field(..., ge=0.0, le=10.0)
    engagement_potential: float = Field(..., ge=0.0, le=10.0)
    brand_alignment: float = Field(..., ge=0.0, le=10.0)
    overall_score: float = Field(..., ge=0.0, le=10.0)
    should_reply: bool
    reasoning: str = Field(..., min_length=1)
    suggested_approach: Optional[str] = None


# ----------------------------
# Stage configuration
# ----------------------------

TIME_WINDOW_HOURS: Dict[str, int] = {
    "24h": 24,
    "7d": 24 * 7,
    "30d": 24 * 30,
}


class SearchConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    source: str = "reddit"
    channel: str = Field(..., min_length=1)  # subreddit name, without r/
    keywords: List[str] = []
    time_window: Literal["24h", "7d", "30d"] = "7d"
    listing: Literal["hot", "new", "top", "rising"] = "hot"
    max_results: int = Field(25, ge=1, le=100)

    @field_validator("channel")
    @classmethod
    def _strip_prefix(cls, value: str) -> str:
        value = value.strip()
        if value.lower().startswith("r/"):
            value = value[2:]
        if not value:
            raise ValueError("channel must not be empty")
        return value

    @field_validator("keywords")
    @classmethod
    def _clean_keywords(cls, value: List[str]) -> List[str]:
        return [k.strip() for k in value if k and k.strip()]

    @property
    def window_hours(self) -> int:
        return TIME_WINDOW_HOURS[self.time_window]


class EvaluateConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    # 0 leaves the decision to the model's should_reply flag
    threshold: float = Field(0.0, ge=0.0, le=10.0)


class ReplyConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_length: int = Field(300, ge=20, le=2000)  # words
    tone: Optional[str] = None
    reply_prompt: Optional[str] = None
    include_links: bool = False


class RecordConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    record_dry_runs: Optional[bool] = None


class SearchStageSpec(BaseModel):
    model_config = ConfigDict(frozen=True)
    kind: Literal["search"] = "search"
    config: SearchConfig


class EvaluateStageSpec(BaseModel):
    model_config = ConfigDict(frozen=True)
    kind: Literal["evaluate"] = "evaluate"
    config: EvaluateConfig = EvaluateConfig()


class ReplyStageSpec(BaseModel):
    model_config = ConfigDict(frozen=True)
    kind: Literal["reply"] = "reply"
    config: ReplyConfig = ReplyConfig()


class RecordStageSpec(BaseModel):
    model_config = ConfigDict(frozen=True)
    kind: Literal["record"] = "record"
    config: RecordConfig = RecordConfig()


StageSpec = Annotated[
    Union[SearchStageSpec, EvaluateStageSpec, ReplyStageSpec, RecordStageSpec],
    Field(discriminator="kind"),
]

STAGE_ORDER: Dict[str, int] = {
    "search": 0,
    "evaluate": 1,
    "reply": 2,
    "record": 3,
}


class WorkflowDefinition(BaseModel):
    """
    Ordered, typed stage list owned by a workspace.
    Frozen so a run always executes the snapshot it was started with.
    """
    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    workspace_id: int
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    is_active: bool = True
    stages: List[StageSpec]
    last_run_at: Optional[datetime] = None

    @field_validator("stages")
    @classmethod
    def _check_stages(cls, stages: list) -> list:
        kinds = [stage.kind for stage in stages]

        duplicates = sorted({k for k in kinds if kinds.count(k) > 1})
        if duplicates:
            raise ValueError(f"Duplicate stages: {', '.join(duplicates)}")
        if "search" not in kinds:
            raise ValueError("Workflow requires a search stage")
        if "reply" in kinds and "evaluate" not in kinds:
            raise ValueError("Reply stage requires an evaluate stage")

        return sorted(stages, key=lambda s: STAGE_ORDER[s.kind])

    def stage(self, kind: str):
        for spec in self.stages:
            if spec.kind == kind:
                return spec
        return None

    @property
    def search(self) -> SearchConfig:
        return self.stage("search").config

    def snapshot(self) -> dict:
        return self.model_dump(mode="json")


# ----------------------------
# Run summary
# ----------------------------

Outcome = Literal["approved", "rejected", "evaluation_failed", "draft_failed", "not_evaluated"]


class EvaluationSummary(BaseModel):
    score: float
    recommend: bool
    rationale: str
    error: Optional[str] = None


class DraftSummary(BaseModel):
    text: str
    succeeded: bool
    error: Optional[str] = None


class PostSummary(BaseModel):
    id: str
    title: str
    channel: str
    author: str
    url: str
    permalink: str
    score: int
    num_comments: int
    body: str
    outcome: Outcome
    evaluation: EvaluationSummary
    draft: Optional[DraftSummary] = None


class RunSummary(BaseModel):
    found: int = 0
    evaluated: int = 0
    approved: int = 0
    drafts_generated: int = 0
    duplicates_skipped: int = 0
    records_written: int = 0
    posts: List[PostSummary] = []
