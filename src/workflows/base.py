"""
Contains the stage interface and the execution context shared by stages
"""
import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from core.entities import Candidate, Draft, Evaluation, Run
from core.schemas import WorkflowDefinition
from core.workspace import WorkspaceContext, WorkspaceCredential
from ingestion.candidate_source import CandidateSource
from processing.recorder import RunRecorder
from services.llm import BaseLLMClient
from services.rate_limiter import TokenBucket


@dataclass
class EngineServices:
    """
    Collaborators the stages call out to. Built once per process.
    """
    sources: Dict[str, CandidateSource]
    scorer: BaseLLMClient
    writer: BaseLLMClient
    recorder: RunRecorder
    limiter: Optional[TokenBucket] = None
    stage_concurrency: int = 1
    record_dry_runs: bool = False


@dataclass
class ExecutionContext:
    """
    Mutable state threaded through the stages of one run.
    Earlier stages populate fields that later stages read.
    """
    run: Run
    definition: WorkflowDefinition
    workspace: Optional[WorkspaceContext] = None
    credential: Optional[WorkspaceCredential] = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    candidates: Optional[List[Candidate]] = None
    evaluations: Optional[List[Evaluation]] = None
    drafts: Optional[List[Draft]] = None
    duplicates_skipped: int = 0
    records_written: int = 0

    @property
    def dry_run(self) -> bool:
        return self.run.dry_run


class Stage(ABC):
    """
    One typed step of the pipeline.
    """

    kind: str

    def __init__(self, services: EngineServices):
        self.services = services

    @abstractmethod
    async def run(self, ctx: ExecutionContext) -> None:
        """
        Read what earlier stages produced and store this stage's output on ctx.
        Raising a WorkflowError fails the whole run.
        """
        raise NotImplementedError
