"""
Runs one workflow run to a terminal state.
"""
import asyncio
import logging
from typing import Optional

from pydantic import ValidationError

from core.entities import Run
from core.errors import DefinitionError, RunCancelled, WorkflowError
from core.schemas import RunSummary, WorkflowDefinition
from services.run_store import RunStore
from services.workspace_store import WorkspaceStore
from workflows.base import EngineServices, ExecutionContext
from workflows.stages import build_pipeline
from workflows.summary import build_result_summary

logger = logging.getLogger(__name__)


class WorkflowExecutor:
    def __init__(self, services: EngineServices, runs: RunStore, workspaces: WorkspaceStore):
        self.services = services
        self.runs = runs
        self.workspaces = workspaces

    async def execute(self, run_id: int, cancel_event: Optional[asyncio.Event] = None) -> Optional[Run]:
        """
        Execute the stages of a running run and persist its outcome.

        Stage failures are recorded on the run rather than raised. Task
        cancellation marks the run failed and is then re-raised.

        Returns:
            The run as stored after execution, or None if it does not exist
        """
        try:
            run = await self.runs.get_run(run_id)
        except Exception as e:
            logger.exception(f"[run {run_id}] Could not load run: {e}")
            return None
        if run is None:
            logger.error(f"[run {run_id}] Not found")
            return None
        if run.is_terminal:
            logger.warning(f"[run {run_id}] Already {run.status.value}, not executing")
            return run

        log_extra = {"run_id": run.id, "workspace_id": run.workspace_id, "definition_id": run.definition_id}
        logger.info(f"[run {run.id}] Starting (dry_run={run.dry_run})", extra=log_extra)

        try:
            summary = await self._execute(run, cancel_event or asyncio.Event(), log_extra)
        except asyncio.CancelledError:
            logger.warning(f"[run {run.id}] Task cancelled", extra=log_extra)
            await self._fail(run, str(RunCancelled()), log_extra)
            raise
        except WorkflowError as e:
            logger.error(f"[run {run.id}] Failed: {e}", extra=log_extra)
            await self._fail(run, str(e), log_extra)
        except Exception as e:
            logger.exception(f"[run {run.id}] Unexpected error: {e}", extra=log_extra)
            await self._fail(run, f"Unexpected error: {e}", log_extra)
        else:
            await self._complete(run, summary, log_extra)

        try:
            return await self.runs.get_run(run.id)
        except Exception as e:
            logger.exception(f"[run {run.id}] Could not reload run: {e}", extra=log_extra)
            return None

    async def _execute(self, run: Run, cancel_event: asyncio.Event, log_extra: dict) -> RunSummary:
        try:
            definition = WorkflowDefinition.model_validate(run.definition_snapshot)
        except ValidationError as e:
            raise DefinitionError(f"Invalid workflow definition: {e}") from e

        ctx = ExecutionContext(
            run=run,
            definition=definition,
            workspace=await self.workspaces.get_workspace(run.workspace_id),
            credential=await self.workspaces.get_credential(run.workspace_id),
            cancel_event=cancel_event,
        )

        for stage in build_pipeline(definition, self.services):
            if cancel_event.is_set():
                raise RunCancelled()
            logger.info(f"[run {run.id}] Stage: {stage.kind}", extra=log_extra)
            await stage.run(ctx)

        return build_result_summary(ctx)

    async def _fail(self, run: Run, message: str, log_extra: dict) -> None:
        try:
            await self.runs.fail_run(run.id, message)
        except Exception as e:
            logger.exception(f"[run {run.id}] Could not store failure: {e}", extra=log_extra)

    async def _complete(self, run: Run, summary: RunSummary, log_extra: dict) -> None:
        try:
            finished = await self.runs.complete_run(run.id, summary.model_dump(mode="json"))
        except Exception as e:
            logger.exception(f"[run {run.id}] Could not store result: {e}", extra=log_extra)
            await self._fail(run, f"Could not store result: {e}", log_extra)
            return

        if not finished:
            logger.warning(f"[run {run.id}] Left running state before completion was stored", extra=log_extra)
            return

        if run.definition_id is not None:
            # the run is already terminal; last_run_at is bookkeeping only
            try:
                await self.workspaces.touch_last_run(run.definition_id)
            except Exception as e:
                logger.exception(f"[run {run.id}] Could not update last_run_at: {e}", extra=log_extra)

        logger.info(
            f"[run {run.id}] Completed: found={summary.found} evaluated={summary.evaluated} "
            f"approved={summary.approved} drafts={summary.drafts_generated} "
            f"skipped={summary.duplicates_skipped} recorded={summary.records_written}",
            extra=log_extra,
        )
