"""
Run persistence. Status transitions are conditional updates so a run leaves
the running state exactly once.
"""
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from core.entities import Run, RunStatus
from services.database import Database, from_db_time, to_db_time, utcnow

logger = logging.getLogger(__name__)

MAX_LISTED_RUNS = 100


class RunStore:
    def __init__(self, database: Database):
        self.db = database
        self._initialized = False

    async def initialize(self) -> None:
        if not self._initialized:
            await self.db.init_tables()
            self._initialized = True

    async def create_run(
        self,
        workspace_id: int,
        definition_snapshot: Dict[str, Any],
        definition_id: Optional[int] = None,
        dry_run: bool = False,
        started_at: Optional[datetime] = None,
    ) -> int:
        """Create a run in the running state and return its id."""
        await self.initialize()
        run_id = await self.db.insert(
            """
            INSERT INTO workflow_runs
            (workspace_id, definition_id, status, dry_run, definition_snapshot, started_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                workspace_id,
                definition_id,
                RunStatus.RUNNING.value,
                int(dry_run),
                json.dumps(definition_snapshot),
                to_db_time(started_at or utcnow()),
            ),
        )
        logger.info(f"[run {run_id}] Created (definition={definition_id}, dry_run={dry_run})")
        return run_id

    async def complete_run(self, run_id: int, result_summary: Dict[str, Any]) -> bool:
        """
        Move a running run to completed.

        Returns:
            False if the run had already reached a terminal state
        """
        return await self._finish(run_id, RunStatus.COMPLETED, result_summary=result_summary)

    async def fail_run(self, run_id: int, error_message: str) -> bool:
        """Move a running run to failed; False if it was already terminal."""
        return await self._finish(run_id, RunStatus.FAILED, error_message=error_message)

    async def _finish(
        self,
        run_id: int,
        status: RunStatus,
        result_summary: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        await self.initialize()
        updated = await self.db.execute(
            """
            UPDATE workflow_runs
            SET status = ?, result_summary = ?, error_message = ?, completed_at = ?
            WHERE id = ? AND status = ?
            """,
            (
                status.value,
                json.dumps(result_summary) if result_summary is not None else None,
                error_message,
                to_db_time(utcnow()),
                run_id,
                RunStatus.RUNNING.value,
            ),
        )
        if not updated:
            logger.warning(f"[run {run_id}] Ignored transition to {status.value}: run is not running")
            return False
        logger.info(f"[run {run_id}] {status.value}")
        return True

    async def get_run(self, run_id: int) -> Optional[Run]:
        await self.initialize()
        row = await self.db.fetchone("SELECT * FROM workflow_runs WHERE id = ?", (run_id,))
        return self._row_to_run(row) if row else None

    async def list_runs(
        self,
        workspace_id: Optional[int] = None,
        definition_id: Optional[int] = None,
        limit: int = MAX_LISTED_RUNS,
    ) -> List[Run]:
        """Runs newest first, filtered by workspace and/or definition."""
        await self.initialize()

        clauses = []
        params: tuple = ()
        if workspace_id is not None:
            clauses.append("workspace_id = ?")
            params += (workspace_id,)
        if definition_id is not None:
            clauses.append("definition_id = ?")
            params += (definition_id,)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self.db.fetchall(
            f"SELECT * FROM workflow_runs {where} ORDER BY started_at DESC, id DESC LIMIT ?",
            params + (min(limit, MAX_LISTED_RUNS),),
        )
        return [self._row_to_run(row) for row in rows]

    @staticmethod
    def _row_to_run(row) -> Run:
        return Run(
            id=row["id"],
            workspace_id=row["workspace_id"],
            definition_id=row["definition_id"],
            status=RunStatus(row["status"]),
            dry_run=bool(row["dry_run"]),
            started_at=from_db_time(row["started_at"]),
            definition_snapshot=json.loads(row["definition_snapshot"]),
            completed_at=from_db_time(row["completed_at"]),
            result_summary=json.loads(row["result_summary"]) if row["result_summary"] else None,
            error_message=row["error_message"],
        )
