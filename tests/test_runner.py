from __future__ import annotations

import asyncio

import pytest

from core.entities import RunStatus
from core.errors import DefinitionError, WorkspaceContextError
from core.schemas import WorkflowDefinition
from fakes import assessment_json, make_candidate
from workflows.runner import WorkflowRunner


def _definition(workspace_id: int, name: str = "saas-questions", **kwargs) -> WorkflowDefinition:
    return WorkflowDefinition(
        workspace_id=workspace_id,
        name=name,
        stages=[
            {"kind": "search", "config": {"channel": "SaaS", "keywords": ["analytics"]}},
            {"kind": "evaluate"},
        ],
        **kwargs,
    )


@pytest.fixture
def runner(executor, run_store, workspace_store) -> WorkflowRunner:
    return WorkflowRunner(executor=executor, runs=run_store, workspaces=workspace_store, worker_count=2)


@pytest.fixture
def candidates(adapter):
    adapter.candidates = [
        make_candidate("p1", title="Analytics for SaaS"),
        make_candidate("p2", title="Analytics pricing"),
        make_candidate("p3", title="Product analytics setup"),
    ]
    return adapter.candidates


@pytest.mark.asyncio
async def test_start_run_returns_id_and_run_completes(runner, workspace_store, workspace_id, candidates):
    definition = await workspace_store.save_definition(_definition(workspace_id))

    async with runner:
        run_id = await runner.start_run(definition_id=definition.id)
        queued = await runner.get_run(run_id)
        run = await runner.wait_for(run_id, timeout=5)

    assert queued.definition_id == definition.id
    assert queued.definition_snapshot["name"] == "saas-questions"
    assert run.status == RunStatus.COMPLETED
    assert run.result_summary["found"] == 3


@pytest.mark.asyncio
async def test_start_run_rejects_unknown_and_inactive_definitions(runner, workspace_store, workspace_id):
    inactive = await workspace_store.save_definition(_definition(workspace_id, is_active=False))

    with pytest.raises(DefinitionError, match="not found"):
        await runner.start_run(definition_id=9999)
    with pytest.raises(DefinitionError, match="not active"):
        await runner.start_run(definition_id=inactive.id)
    with pytest.raises(DefinitionError, match="exactly one"):
        await runner.start_run()
    with pytest.raises(DefinitionError, match="exactly one"):
        await runner.start_run(definition_id=inactive.id, definition=_definition(workspace_id))

    assert await runner.list_runs(workspace_id=workspace_id) == []
    assert not runner.running


@pytest.mark.asyncio
async def test_unsaved_definition_runs_without_definition_id(runner, workspace_id, candidates):
    async with runner:
        run_id = await runner.start_run(definition=_definition(workspace_id, name="ad-hoc"), dry_run=True)
        run = await runner.wait_for(run_id, timeout=5)

    assert run.definition_id is None
    assert run.dry_run
    assert run.status == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_unsaved_definition_needs_existing_workspace(runner):
    with pytest.raises(WorkspaceContextError):
        await runner.start_run(definition=_definition(4242))


@pytest.mark.asyncio
async def test_cancel_in_flight_run(runner, executor, scorer, workspace_store, processed_store, workspace_id, candidates):
    executor.services.stage_concurrency = 1
    entered = asyncio.Event()
    release = asyncio.Event()

    async def slow_response(prompt):
        entered.set()
        await release.wait()
        return assessment_json(9.0, True)

    scorer.responder = slow_response
    definition = await workspace_store.save_definition(_definition(workspace_id))

    async with runner:
        run_id = await runner.start_run(definition_id=definition.id)
        await asyncio.wait_for(entered.wait(), timeout=5)
        assert runner.cancel(run_id)
        release.set()
        run = await runner.wait_for(run_id, timeout=5)

    assert run.status == RunStatus.FAILED
    assert run.error_message == "Run cancelled"
    assert len(scorer.prompts) == 1
    assert await processed_store.count(workspace_id) == 0
    assert not runner.cancel(run_id)


@pytest.mark.asyncio
async def test_concurrent_runs_record_each_post_once(runner, workspace_store, processed_store, workspace_id, candidates):
    definition = await workspace_store.save_definition(_definition(workspace_id))

    async with runner:
        run_ids = [await runner.start_run(definition_id=definition.id) for _ in range(2)]
        runs = [await runner.wait_for(run_id, timeout=5) for run_id in run_ids]

    assert all(run.status == RunStatus.COMPLETED for run in runs)
    assert sum(run.result_summary["records_written"] for run in runs) == 3
    assert await processed_store.count(workspace_id) == 3


@pytest.mark.asyncio
async def test_list_runs_newest_first_and_by_definition(runner, workspace_store, workspace_id, candidates):
    first = await workspace_store.save_definition(_definition(workspace_id, name="first"))
    second = await workspace_store.save_definition(_definition(workspace_id, name="second"))

    async with runner:
        a = await runner.start_run(definition_id=first.id, dry_run=True)
        b = await runner.start_run(definition_id=second.id, dry_run=True)
        c = await runner.start_run(definition_id=first.id, dry_run=True)

    assert [run.id for run in await runner.list_runs(workspace_id=workspace_id)] == [c, b, a]
    assert [run.id for run in await runner.list_runs(definition_id=first.id)] == [c, a]
    assert [run.id for run in await runner.list_runs(workspace_id=workspace_id, limit=1)] == [c]


@pytest.mark.asyncio
async def test_wait_for_polls_runs_started_elsewhere(runner, run_store, workspace_id):
    run_id = await run_store.create_run(workspace_id, {"name": "external"})
    await run_store.complete_run(run_id, {"found": 0})

    run = await runner.wait_for(run_id, timeout=1)

    assert run.status == RunStatus.COMPLETED
    assert run.result_summary == {"found": 0}
