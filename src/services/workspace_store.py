"""
Workspace, credential and workflow definition persistence.
"""
import json
import logging
from typing import List, Optional

from pydantic import ValidationError

from core.errors import DefinitionError
from core.schemas import WorkflowDefinition
from core.workspace import WorkspaceContext, WorkspaceCredential
from services.database import Database, from_db_time, to_db_time, utcnow

logger = logging.getLogger(__name__)


class WorkspaceStore:
    def __init__(self, database: Database):
        self.db = database
        self._initialized = False

    async def initialize(self) -> None:
        if not self._initialized:
            await self.db.init_tables()
            self._initialized = True

    # ----------------------------
    # Workspaces
    # ----------------------------

    async def upsert_workspace(
        self,
        name: str,
        description: str = "",
        audience: str = "",
        brand_voice: str = "",
        domain: str = "",
        keywords: Optional[List[str]] = None,
    ) -> int:
        """Create or update a workspace by name and return its id."""
        await self.initialize()
        await self.db.execute(
            """
            INSERT INTO workspaces (name, description, audience, brand_voice, domain, keywords)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(name) DO UPDATE SET
                description = excluded.description,
                audience = excluded.audience,
                brand_voice = excluded.brand_voice,
                domain = excluded.domain,
                keywords = excluded.keywords
            """,
            (name, description, audience, brand_voice, domain, json.dumps(keywords or [])),
        )
        row = await self.db.fetchone("SELECT id FROM workspaces WHERE name = ?", (name,))
        return row["id"]

    async def get_workspace(self, workspace_id: int) -> Optional[WorkspaceContext]:
        await self.initialize()
        row = await self.db.fetchone("SELECT * FROM workspaces WHERE id = ?", (workspace_id,))
        if row is None:
            return None
        return WorkspaceContext(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            audience=row["audience"],
            brand_voice=row["brand_voice"] or "professional and helpful",
            domain=row["domain"],
            keywords=json.loads(row["keywords"] or "[]"),
        )

    async def get_workspace_id(self, name: str) -> Optional[int]:
        await self.initialize()
        row = await self.db.fetchone("SELECT id FROM workspaces WHERE name = ?", (name,))
        return row["id"] if row else None

    # ----------------------------
    # Credentials
    # ----------------------------

    async def set_credential(
        self,
        workspace_id: int,
        refresh_token: str,
        source: str = "reddit",
        account_name: Optional[str] = None,
    ) -> None:
        await self.initialize()
        await self.db.execute(
            """
            INSERT INTO workspace_credentials (workspace_id, source, refresh_token, account_name, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(workspace_id) DO UPDATE SET
                source = excluded.source,
                refresh_token = excluded.refresh_token,
                account_name = excluded.account_name,
                updated_at = excluded.updated_at
            """,
            (workspace_id, source, refresh_token, account_name, to_db_time(utcnow())),
        )

    async def get_credential(self, workspace_id: int) -> Optional[WorkspaceCredential]:
        await self.initialize()
        row = await self.db.fetchone(
            "SELECT * FROM workspace_credentials WHERE workspace_id = ?",
            (workspace_id,),
        )
        if row is None:
            return None
        return WorkspaceCredential(
            workspace_id=row["workspace_id"],
            refresh_token=row["refresh_token"],
            source=row["source"],
            account_name=row["account_name"],
        )

    # ----------------------------
    # Workflow definitions
    # ----------------------------

    async def save_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Insert a new definition or update an existing one; returns it with its id."""
        await self.initialize()
        stages = json.dumps([stage.model_dump(mode="json") for stage in definition.stages])

        if definition.id is None:
            definition_id = await self.db.insert(
                """
                INSERT INTO workflow_definitions (workspace_id, name, description, stages, is_active)
                VALUES (?, ?, ?, ?, ?)
                """,
                (definition.workspace_id, definition.name, definition.description,
                 stages, int(definition.is_active)),
            )
        else:
            updated = await self.db.execute(
                """
                UPDATE workflow_definitions
                SET name = ?, description = ?, stages = ?, is_active = ?, updated_at = ?
                WHERE id = ? AND workspace_id = ?
                """,
                (definition.name, definition.description, stages, int(definition.is_active),
                 to_db_time(utcnow()), definition.id, definition.workspace_id),
            )
            if not updated:
                raise DefinitionError(f"Workflow definition {definition.id} not found")
            definition_id = definition.id

        logger.info(f"Saved workflow definition '{definition.name}' (id={definition_id})")
        return definition.model_copy(update={"id": definition_id})

    async def get_definition(self, definition_id: int) -> Optional[WorkflowDefinition]:
        await self.initialize()
        row = await self.db.fetchone(
            "SELECT * FROM workflow_definitions WHERE id = ?",
            (definition_id,),
        )
        return self._row_to_definition(row) if row else None

    async def find_definition(self, workspace_id: int, name: str) -> Optional[WorkflowDefinition]:
        await self.initialize()
        row = await self.db.fetchone(
            "SELECT * FROM workflow_definitions WHERE workspace_id = ? AND name = ?",
            (workspace_id, name),
        )
        return self._row_to_definition(row) if row else None

    async def list_definitions(self, workspace_id: int) -> List[WorkflowDefinition]:
        await self.initialize()
        rows = await self.db.fetchall(
            "SELECT * FROM workflow_definitions WHERE workspace_id = ? ORDER BY created_at, id",
            (workspace_id,),
        )
        definitions = []
        for row in rows:
            try:
                definitions.append(self._row_to_definition(row))
            except DefinitionError as e:
                logger.error(str(e))
        return definitions

    async def delete_definition(self, definition_id: int) -> bool:
        await self.initialize()
        return bool(await self.db.execute(
            "DELETE FROM workflow_definitions WHERE id = ?",
            (definition_id,),
        ))

    async def touch_last_run(self, definition_id: int) -> None:
        await self.initialize()
        await self.db.execute(
            "UPDATE workflow_definitions SET last_run_at = ? WHERE id = ?",
            (to_db_time(utcnow()), definition_id),
        )

    @staticmethod
    def _row_to_definition(row) -> WorkflowDefinition:
        try:
            return WorkflowDefinition(
                id=row["id"],
                workspace_id=row["workspace_id"],
                name=row["name"],
                description=row["description"],
                is_active=bool(row["is_active"]),
                stages=json.loads(row["stages"]),
                last_run_at=from_db_time(row["last_run_at"]),
            )
        except (ValidationError, json.JSONDecodeError) as e:
            raise DefinitionError(f"Workflow definition {row['id']} is malformed: {e}") from e
