import logging
from typing import List

from core.errors import CredentialError, SourceError, WorkflowError, WorkspaceContextError
from core.schemas import (
    EvaluateConfig,
    RecordConfig,
    ReplyConfig,
    SearchConfig,
    WorkflowDefinition,
)
from processing.drafter import draft_replies
from processing.evaluator import evaluate_candidates
from workflows.base import EngineServices, ExecutionContext, Stage

logger = logging.getLogger(__name__)


class SearchStage(Stage):
    kind = "search"

    def __init__(self, services: EngineServices, config: SearchConfig):
        super().__init__(services)
        self.config = config

    async def run(self, ctx: ExecutionContext) -> None:
        source = self.services.sources.get(self.config.source)
        if source is None:
            raise SourceError(f"Unknown source type: {self.config.source}")
        if ctx.credential is None:
            raise CredentialError(f"{self.config.source.capitalize()} account not connected for this workspace")

        result = await source.fetch(ctx.credential, self.config)
        ctx.candidates = result.candidates
        ctx.duplicates_skipped = result.duplicates_skipped

        logger.info(
            f"[run {ctx.run.id}] Found {result.fetched} posts, {result.matched} matched keywords, "
            f"{result.duplicates_skipped} already processed, {len(result.candidates)} new"
        )


class EvaluateStage(Stage):
    kind = "evaluate"

    def __init__(self, services: EngineServices, config: EvaluateConfig):
        super().__init__(services)
        self.config = config

    async def run(self, ctx: ExecutionContext) -> None:
        if ctx.candidates is None:
            raise WorkflowError("Evaluate stage ran before search")
        if ctx.workspace is None:
            raise WorkspaceContextError(f"Workspace {ctx.run.workspace_id} not found for evaluation")
        ctx.workspace.validate()

        ctx.evaluations = await evaluate_candidates(
            llm=self.services.scorer,
            workspace=ctx.workspace,
            candidates=ctx.candidates,
            threshold=self.config.threshold,
            concurrency=self.services.stage_concurrency,
            limiter=self.services.limiter,
            cancel_event=ctx.cancel_event,
        )


class ReplyStage(Stage):
    kind = "reply"

    def __init__(self, services: EngineServices, config: ReplyConfig):
        super().__init__(services)
        self.config = config

    async def run(self, ctx: ExecutionContext) -> None:
        if ctx.candidates is None or ctx.evaluations is None:
            raise WorkflowError("Reply stage ran before evaluation")
        if ctx.workspace is None:
            raise WorkspaceContextError(f"Workspace {ctx.run.workspace_id} not found for drafting")

        ctx.drafts = await draft_replies(
            llm=self.services.writer,
            workspace=ctx.workspace,
            candidates=ctx.candidates,
            evaluations=ctx.evaluations,
            config=self.config,
            concurrency=self.services.stage_concurrency,
            limiter=self.services.limiter,
            cancel_event=ctx.cancel_event,
        )


class RecordStage(Stage):
    kind = "record"

    def __init__(self, services: EngineServices, config: RecordConfig):
        super().__init__(services)
        self.config = config

    @property
    def records_dry_runs(self) -> bool:
        if self.config.record_dry_runs is not None:
            return self.config.record_dry_runs
        return self.services.record_dry_runs

    async def run(self, ctx: ExecutionContext) -> None:
        if ctx.dry_run and not self.records_dry_runs:
            logger.info(f"[run {ctx.run.id}] Dry run: processed posts not recorded")
            return
        if not ctx.candidates:
            return
        if ctx.evaluations is None:
            logger.warning(f"[run {ctx.run.id}] No evaluate stage; nothing recorded")
            return

        ctx.records_written = await self.services.recorder.record(
            ctx.run,
            ctx.candidates,
            ctx.evaluations,
            ctx.drafts or [],
        )


STAGE_TYPES = {
    SearchStage.kind: SearchStage,
    EvaluateStage.kind: EvaluateStage,
    ReplyStage.kind: ReplyStage,
    RecordStage.kind: RecordStage,
}


def build_pipeline(definition: WorkflowDefinition, services: EngineServices) -> List[Stage]:
    """
    Instantiate the stages of a definition in execution order.
    A record stage with default settings is appended when the definition has none.
    """
    stages: List[Stage] = [
        STAGE_TYPES[spec.kind](services, spec.config)
        for spec in definition.stages
    ]
    if definition.stage("record") is None:
        stages.append(RecordStage(services, RecordConfig()))
    return stages
