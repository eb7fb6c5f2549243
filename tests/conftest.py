from __future__ import annotations

import pytest
import pytest_asyncio

from fakes import NOW, FakeLLM, FakeSearchAdapter, FakeTokenExchange, assessment_json
from ingestion.candidate_source import CandidateSource
from processing.recorder import RunRecorder
from services.database import Database
from services.processed_store import ProcessedPostStore
from services.run_store import RunStore
from services.workspace_store import WorkspaceStore
from workflows.base import EngineServices
from workflows.executor import WorkflowExecutor


@pytest.fixture
def database(tmp_path) -> Database:
    return Database(str(tmp_path / "data" / "engage.db"))


@pytest.fixture
def workspace_store(database) -> WorkspaceStore:
    return WorkspaceStore(database)


@pytest.fixture
def run_store(database) -> RunStore:
    return RunStore(database)


@pytest.fixture
def processed_store(database) -> ProcessedPostStore:
    return ProcessedPostStore(database)


@pytest_asyncio.fixture
async def workspace_id(workspace_store) -> int:
    workspace_id = await workspace_store.upsert_workspace(
        name="Acme Analytics",
        description="Self-hosted product analytics",
        audience="Indie founders",
        brand_voice="friendly",
        domain="acme-analytics.example",
        keywords=["analytics"],
    )
    await workspace_store.set_credential(workspace_id, "refresh-token")
    return workspace_id


@pytest.fixture
def adapter() -> FakeSearchAdapter:
    return FakeSearchAdapter()


@pytest.fixture
def token_exchange() -> FakeTokenExchange:
    return FakeTokenExchange()


@pytest.fixture
def scorer() -> FakeLLM:
    return FakeLLM(default=assessment_json(2.0, False, "Not relevant"))


@pytest.fixture
def writer() -> FakeLLM:
    return FakeLLM(default="Have you tried looking at retention cohorts first?")


@pytest.fixture
def services(token_exchange, adapter, processed_store, scorer, writer) -> EngineServices:
    source = CandidateSource(
        token_exchange=token_exchange,
        adapter=adapter,
        store=processed_store,
        clock=lambda: NOW,
    )
    return EngineServices(
        sources={"reddit": source},
        scorer=scorer,
        writer=writer,
        recorder=RunRecorder(processed_store),
        stage_concurrency=2,
    )


@pytest.fixture
def executor(services, run_store, workspace_store) -> WorkflowExecutor:
    return WorkflowExecutor(services=services, runs=run_store, workspaces=workspace_store)
