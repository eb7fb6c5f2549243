"""
Background run queue. start_run returns a run id immediately; workers
execute queued runs and callers poll get_run for the outcome.
"""
import asyncio
import logging
from typing import Dict, List, Optional

from core.entities import Run
from core.errors import DefinitionError, WorkspaceContextError
from core.schemas import WorkflowDefinition
from services.run_store import MAX_LISTED_RUNS, RunStore
from services.workspace_store import WorkspaceStore
from workflows.executor import WorkflowExecutor

logger = logging.getLogger(__name__)


class WorkflowRunner:
    """
    Manages queued runs with a fixed pool of asyncio workers.
    """

    def __init__(
        self,
        executor: WorkflowExecutor,
        runs: RunStore,
        workspaces: WorkspaceStore,
        worker_count: int = 2,
        poll_interval: float = 0.5,
    ):
        if worker_count < 1:
            raise ValueError("worker_count must be at least 1")
        self.executor = executor
        self.runs = runs
        self.workspaces = workspaces
        self.worker_count = worker_count
        self.poll_interval = poll_interval

        self._queue: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []
        self._cancel_events: Dict[int, asyncio.Event] = {}
        self._finished: Dict[int, asyncio.Event] = {}

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def start(self) -> None:
        """Start the worker tasks. Must be called from a running event loop."""
        if self._workers:
            return
        self._queue = asyncio.Queue()
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"run-worker-{i}")
            for i in range(self.worker_count)
        ]
        logger.info(f"Started {self.worker_count} run workers")

    async def stop(self, drain: bool = True) -> None:
        """
        Stop the workers. With drain, queued runs finish first; otherwise
        in-flight runs are cancelled and end up failed.
        """
        if not self._workers:
            return
        if drain:
            await self._queue.join()
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        while not self._queue.empty():
            run_id = self._queue.get_nowait()
            await self.runs.fail_run(run_id, "Runner stopped before the run started")
            self._cancel_events.pop(run_id, None)
            finished = self._finished.pop(run_id, None)
            if finished is not None:
                finished.set()
            self._queue.task_done()

        logger.info("Run workers stopped")

    async def __aenter__(self) -> "WorkflowRunner":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop(drain=exc_type is None)

    async def start_run(
        self,
        definition_id: Optional[int] = None,
        definition: Optional[WorkflowDefinition] = None,
        dry_run: bool = False,
    ) -> int:
        """
        Create a running run and queue it for execution.

        Args:
            definition_id: Id of a stored definition
            definition: Unsaved definition to run as-is
            dry_run: Run without recording processed posts (unless configured to)

        Returns:
            The new run id

        Raises:
            DefinitionError: Missing, inactive or ambiguous definition
            WorkspaceContextError: Unknown workspace for an unsaved definition
        """
        if (definition_id is None) == (definition is None):
            raise DefinitionError("Provide exactly one of definition_id or definition")

        if definition_id is not None:
            definition = await self.workspaces.get_definition(definition_id)
            if definition is None:
                raise DefinitionError(f"Workflow definition {definition_id} not found")
            if not definition.is_active:
                raise DefinitionError(f"Workflow definition '{definition.name}' is not active")
        elif await self.workspaces.get_workspace(definition.workspace_id) is None:
            raise WorkspaceContextError(f"Workspace {definition.workspace_id} not found")

        self.start()

        run_id = await self.runs.create_run(
            workspace_id=definition.workspace_id,
            definition_snapshot=definition.snapshot(),
            definition_id=definition.id,
            dry_run=dry_run,
        )
        self._cancel_events[run_id] = asyncio.Event()
        self._finished[run_id] = asyncio.Event()
        await self._queue.put(run_id)
        logger.info(f"[run {run_id}] Queued '{definition.name}'")
        return run_id

    async def get_run(self, run_id: int) -> Optional[Run]:
        return await self.runs.get_run(run_id)

    async def list_runs(
        self,
        workspace_id: Optional[int] = None,
        definition_id: Optional[int] = None,
        limit: int = MAX_LISTED_RUNS,
    ) -> List[Run]:
        return await self.runs.list_runs(
            workspace_id=workspace_id,
            definition_id=definition_id,
            limit=limit,
        )

    def cancel(self, run_id: int) -> bool:
        """
        Ask a queued or executing run to stop. LLM calls already started
        finish, no new one starts and the run ends failed.

        Returns:
            False if the run is not known to this runner or already finished
        """
        event = self._cancel_events.get(run_id)
        if event is None:
            return False
        event.set()
        logger.info(f"[run {run_id}] Cancellation requested")
        return True

    async def wait_for(self, run_id: int, timeout: Optional[float] = None) -> Optional[Run]:
        """
        Wait until a run leaves the running state and return it.

        Raises:
            asyncio.TimeoutError: If the run is still running after timeout
        """
        finished = self._finished.get(run_id)
        if finished is not None:
            await asyncio.wait_for(finished.wait(), timeout)
            return await self.runs.get_run(run_id)

        async def _poll() -> Optional[Run]:
            while True:
                run = await self.runs.get_run(run_id)
                if run is None or run.is_terminal:
                    return run
                await asyncio.sleep(self.poll_interval)

        return await asyncio.wait_for(_poll(), timeout)

    async def _worker(self, index: int) -> None:
        while True:
            run_id = await self._queue.get()
            try:
                await self.executor.execute(run_id, cancel_event=self._cancel_events.get(run_id))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"[run {run_id}] Worker {index} error: {e}")
            finally:
                self._cancel_events.pop(run_id, None)
                finished = self._finished.pop(run_id, None)
                if finished is not None:
                    finished.set()
                self._queue.task_done()
