"""
ProcessedPostStore - remembers which external posts a workspace has processed.
Uniqueness of (workspace_id, post_id) is enforced by the table, so concurrent
runs racing on the same post cannot both record it.
"""
import logging
from typing import Iterable, List, Optional, Sequence, Set

from core.entities import ProcessedRecord
from services.database import Database

logger = logging.getLogger(__name__)

# SQLite's default host parameter limit is 999
_CHUNK_SIZE = 500


class ProcessedPostStore:
    """
    Set-membership check plus idempotent insert for processed posts.
    """

    def __init__(self, database: Database):
        self.db = database
        self._initialized = False

    async def initialize(self) -> None:
        """Initialize the database tables."""
        if not self._initialized:
            await self.db.init_tables()
            self._initialized = True

    async def processed_ids(
        self,
        workspace_id: int,
        post_ids: Iterable[str],
    ) -> Set[str]:
        """
        Return the subset of post_ids already processed for the workspace.
        """
        await self.initialize()

        ids = list(dict.fromkeys(post_ids))
        found: Set[str] = set()

        for start in range(0, len(ids), _CHUNK_SIZE):
            chunk = ids[start:start + _CHUNK_SIZE]
            placeholders = ",".join("?" for _ in chunk)
            rows = await self.db.fetchall(
                f"SELECT post_id FROM processed_posts "
                f"WHERE workspace_id = ? AND post_id IN ({placeholders})",
                (workspace_id, *chunk),
            )
            found.update(row["post_id"] for row in rows)

        return found

    async def is_processed(self, workspace_id: int, post_id: str) -> bool:
        return post_id in await self.processed_ids(workspace_id, [post_id])

    async def record(self, records: Sequence[ProcessedRecord]) -> int:
        """
        Insert records in one transaction, ignoring keys that already exist.

        Returns:
            The number of rows actually inserted
        """
        if not records:
            return 0

        await self.initialize()

        inserted = await self.db.executemany(
            """
            INSERT OR IGNORE INTO processed_posts
            (workspace_id, post_id, channel, post_title, post_url,
             evaluation_score, was_approved, evaluation_reasoning, reply_content,
             reply_posted, dry_run, definition_id, run_id)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                (
                    r.workspace_id,
                    r.external_post_id,
                    r.channel,
                    r.title,
                    r.url,
                    r.score,
                    int(r.recommend),
                    r.rationale,
                    r.draft_text,
                    int(r.posted),
                    int(r.dry_run),
                    r.definition_id,
                    r.run_id,
                )
                for r in records
            ),
        )

        skipped = len(records) - inserted
        if skipped:
            logger.info(f"Processed posts: {inserted} inserted, {skipped} already recorded")
        else:
            logger.debug(f"Processed posts: {inserted} inserted")
        return inserted

    async def list_for_workspace(
        self,
        workspace_id: int,
        run_id: Optional[int] = None,
        limit: int = 100,
    ) -> List[ProcessedRecord]:
        """Most recently processed posts for a workspace, optionally for one run."""
        await self.initialize()

        query = "SELECT * FROM processed_posts WHERE workspace_id = ?"
        params: tuple = (workspace_id,)
        if run_id is not None:
            query += " AND run_id = ?"
            params += (run_id,)
        query += " ORDER BY id DESC LIMIT ?"
        params += (limit,)

        rows = await self.db.fetchall(query, params)
        return [
            ProcessedRecord(
                workspace_id=row["workspace_id"],
                external_post_id=row["post_id"],
                channel=row["channel"],
                title=row["post_title"],
                url=row["post_url"],
                score=row["evaluation_score"],
                recommend=bool(row["was_approved"]),
                rationale=row["evaluation_reasoning"],
                draft_text=row["reply_content"],
                run_id=row["run_id"],
                definition_id=row["definition_id"],
                posted=bool(row["reply_posted"]),
                dry_run=bool(row["dry_run"]),
            )
            for row in rows
        ]

    async def count(self, workspace_id: int) -> int:
        await self.initialize()
        row = await self.db.fetchone(
            "SELECT COUNT(*) AS n FROM processed_posts WHERE workspace_id = ?",
            (workspace_id,),
        )
        return row["n"] if row else 0
