from __future__ import annotations

import asyncio

import pytest

from core.entities import ProcessedRecord, RunStatus
from core.errors import CredentialError, SourceError
from core.schemas import WorkflowDefinition
from fakes import FakeClock, FakeLLM, assessment_json, make_candidate
from services.rate_limiter import TokenBucket


class CountingBucket(TokenBucket):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.acquired = 0

    async def acquire(self, tokens: int = 1) -> None:
        self.acquired += 1
        await super().acquire(tokens)


def _definition(workspace_id: int, dry_run_recording=None, threshold: float = 0.0, with_reply: bool = True):
    stages = [
        {"kind": "search", "config": {"channel": "SaaS", "keywords": ["analytics"], "time_window": "7d"}},
        {"kind": "evaluate", "config": {"threshold": threshold}},
    ]
    if with_reply:
        stages.append({"kind": "reply", "config": {"max_length": 150}})
    stages.append({"kind": "record", "config": {"record_dry_runs": dry_run_recording}})
    return WorkflowDefinition(workspace_id=workspace_id, name="saas-questions", stages=stages)


async def _start(run_store, workspace_store, definition: WorkflowDefinition, dry_run: bool = False) -> int:
    saved = await workspace_store.save_definition(definition)
    return await run_store.create_run(
        workspace_id=saved.workspace_id,
        definition_snapshot=saved.snapshot(),
        definition_id=saved.id,
        dry_run=dry_run,
    )


def _five_candidates():
    return [
        make_candidate("p1", title="Best analytics stack for a small SaaS?"),
        make_candidate("p2", title="Hiring my first engineer"),
        make_candidate("p3", title="Self-hosted analytics vs Google"),
        make_candidate("p4", title="Pricing page feedback"),
        make_candidate("p5", title="Analytics events naming conventions"),
    ]


@pytest.mark.asyncio
async def test_run_end_to_end(executor, adapter, scorer, writer, run_store, workspace_store, processed_store, workspace_id):
    adapter.candidates = _five_candidates()
    seed_run = await run_store.create_run(workspace_id, {"name": "earlier"})
    await processed_store.record([ProcessedRecord(
        workspace_id=workspace_id,
        external_post_id="p5",
        channel="SaaS",
        title="Analytics events naming conventions",
        url="https://reddit.com/p5",
        score=5.0,
        recommend=False,
        rationale="earlier",
        draft_text=None,
        run_id=seed_run,
    )])
    scorer.replies = {
        "Best analytics stack": assessment_json(8.2, True, "Direct question about analytics tooling"),
        "Self-hosted analytics": assessment_json(3.0, False, "Comparison thread, low value"),
    }

    run_id = await _start(run_store, workspace_store, _definition(workspace_id))
    run = await executor.execute(run_id)

    assert run.status == RunStatus.COMPLETED
    assert run.completed_at is not None
    assert run.error_message is None

    summary = run.result_summary
    assert summary["found"] == 2
    assert summary["evaluated"] == 2
    assert summary["approved"] == 1
    assert summary["drafts_generated"] == 1
    assert summary["duplicates_skipped"] == 1
    assert summary["records_written"] == 2

    posts = summary["posts"]
    assert [p["id"] for p in posts] == ["p1", "p3"]
    assert posts[0]["outcome"] == "approved"
    assert posts[0]["evaluation"]["score"] == 8.2
    assert posts[0]["draft"]["text"] == writer.default
    assert posts[1]["outcome"] == "rejected"
    assert posts[1]["draft"] is None

    records = {r.external_post_id: r for r in await processed_store.list_for_workspace(workspace_id, run_id=run_id)}
    assert set(records) == {"p1", "p3"}
    assert records["p1"].draft_text == writer.default
    assert records["p1"].recommend
    assert not records["p3"].recommend
    assert records["p3"].draft_text is None
    assert not records["p1"].dry_run

    definition = await workspace_store.get_definition(run.definition_id)
    assert definition.last_run_at is not None


@pytest.mark.asyncio
async def test_second_run_skips_everything_already_processed(executor, adapter, run_store, workspace_store, workspace_id):
    adapter.candidates = _five_candidates()
    definition = await workspace_store.save_definition(_definition(workspace_id))

    first = await executor.execute(await run_store.create_run(workspace_id, definition.snapshot(), definition.id))
    second = await executor.execute(await run_store.create_run(workspace_id, definition.snapshot(), definition.id))

    assert first.result_summary["found"] == 3
    assert second.status == RunStatus.COMPLETED
    assert second.result_summary["found"] == 0
    assert second.result_summary["duplicates_skipped"] == 3
    assert second.result_summary["records_written"] == 0


@pytest.mark.asyncio
async def test_missing_credential_fails_run_without_records(executor, adapter, run_store, workspace_store, processed_store):
    workspace_id = await workspace_store.upsert_workspace(name="No Token Co", description="analytics")
    adapter.candidates = _five_candidates()

    run = await executor.execute(await _start(run_store, workspace_store, _definition(workspace_id)))

    assert run.status == RunStatus.FAILED
    assert run.error_message == "Reddit account not connected for this workspace"
    assert run.result_summary is None
    assert adapter.calls == []
    assert await processed_store.count(workspace_id) == 0


@pytest.mark.asyncio
async def test_rejected_token_fails_run(executor, token_exchange, adapter, run_store, workspace_store, workspace_id):
    token_exchange.error = CredentialError("Reddit token refresh failed: 401")
    adapter.candidates = _five_candidates()

    run = await executor.execute(await _start(run_store, workspace_store, _definition(workspace_id)))

    assert run.status == RunStatus.FAILED
    assert run.error_message == "Reddit token refresh failed: 401"
    assert adapter.calls == []


@pytest.mark.asyncio
async def test_source_error_fails_run(executor, adapter, run_store, workspace_store, workspace_id):
    adapter.error = SourceError("Reddit API error: 503")

    run = await executor.execute(await _start(run_store, workspace_store, _definition(workspace_id)))

    assert run.status == RunStatus.FAILED
    assert run.error_message == "Reddit API error: 503"


@pytest.mark.asyncio
async def test_unusable_workspace_context_fails_run(executor, adapter, run_store, workspace_store):
    workspace_id = await workspace_store.upsert_workspace(name="Blank Co")
    await workspace_store.set_credential(workspace_id, "refresh-token")
    adapter.candidates = _five_candidates()

    run = await executor.execute(await _start(run_store, workspace_store, _definition(workspace_id)))

    assert run.status == RunStatus.FAILED
    assert "needs a description or keywords" in run.error_message


@pytest.mark.asyncio
async def test_evaluation_failures_do_not_fail_the_run(executor, adapter, scorer, run_store, workspace_store, processed_store, workspace_id):
    adapter.candidates = _five_candidates()
    scorer.replies = {
        "Best analytics stack": assessment_json(9.0, True),
        "Self-hosted analytics": RuntimeError("connection reset"),
        "naming conventions": "not json at all",
    }

    run = await executor.execute(await _start(run_store, workspace_store, _definition(workspace_id)))

    assert run.status == RunStatus.COMPLETED
    outcomes = [p["outcome"] for p in run.result_summary["posts"]]
    assert outcomes == ["approved", "evaluation_failed", "evaluation_failed"]
    assert run.result_summary["evaluated"] == 3
    assert run.result_summary["approved"] == 1
    assert run.result_summary["records_written"] == 3


@pytest.mark.asyncio
async def test_draft_failure_is_reported_per_post(executor, adapter, scorer, writer, run_store, workspace_store, workspace_id):
    adapter.candidates = _five_candidates()[:1]
    scorer.default = assessment_json(9.0, True)
    writer.default = RuntimeError("model crashed")

    run = await executor.execute(await _start(run_store, workspace_store, _definition(workspace_id)))

    assert run.status == RunStatus.COMPLETED
    post = run.result_summary["posts"][0]
    assert post["outcome"] == "draft_failed"
    assert post["draft"]["error"] == "model crashed"
    assert run.result_summary["drafts_generated"] == 0


@pytest.mark.asyncio
async def test_dry_run_does_not_record_by_default(executor, adapter, run_store, workspace_store, processed_store, workspace_id):
    adapter.candidates = _five_candidates()

    run = await executor.execute(await _start(run_store, workspace_store, _definition(workspace_id), dry_run=True))

    assert run.status == RunStatus.COMPLETED
    assert run.dry_run
    assert run.result_summary["found"] == 3
    assert run.result_summary["records_written"] == 0
    assert await processed_store.count(workspace_id) == 0


@pytest.mark.asyncio
async def test_dry_run_records_flagged_rows_when_enabled(executor, adapter, run_store, workspace_store, processed_store, workspace_id):
    adapter.candidates = _five_candidates()

    run = await executor.execute(await _start(
        run_store, workspace_store, _definition(workspace_id, dry_run_recording=True), dry_run=True,
    ))

    assert run.result_summary["records_written"] == 3
    records = await processed_store.list_for_workspace(workspace_id)
    assert records and all(r.dry_run for r in records)


@pytest.mark.asyncio
async def test_definition_without_record_stage_still_records(executor, adapter, run_store, workspace_store, processed_store, workspace_id):
    adapter.candidates = _five_candidates()
    definition = WorkflowDefinition(
        workspace_id=workspace_id,
        name="no-record",
        stages=[
            {"kind": "search", "config": {"channel": "SaaS", "keywords": ["analytics"]}},
            {"kind": "evaluate"},
        ],
    )

    run = await executor.execute(await _start(run_store, workspace_store, definition))

    assert run.result_summary["records_written"] == 3
    assert run.result_summary["drafts_generated"] == 0
    assert await processed_store.count(workspace_id) == 3


@pytest.mark.asyncio
async def test_search_only_definition_reports_not_evaluated(executor, adapter, scorer, run_store, workspace_store, processed_store, workspace_id):
    adapter.candidates = _five_candidates()
    definition = WorkflowDefinition(
        workspace_id=workspace_id,
        name="search-only",
        stages=[{"kind": "search", "config": {"channel": "SaaS", "keywords": ["analytics"]}}],
    )

    run = await executor.execute(await _start(run_store, workspace_store, definition))

    assert run.status == RunStatus.COMPLETED
    assert {p["outcome"] for p in run.result_summary["posts"]} == {"not_evaluated"}
    assert run.result_summary["evaluated"] == 0
    assert scorer.prompts == []
    assert await processed_store.count(workspace_id) == 0


@pytest.mark.asyncio
async def test_malformed_snapshot_fails_run(executor, run_store, workspace_id):
    run_id = await run_store.create_run(workspace_id, {"name": "broken", "stages": []})

    run = await executor.execute(run_id)

    assert run.status == RunStatus.FAILED
    assert run.error_message.startswith("Invalid workflow definition")


@pytest.mark.asyncio
async def test_terminal_run_is_not_executed_again(executor, adapter, run_store, workspace_store, workspace_id):
    run_id = await _start(run_store, workspace_store, _definition(workspace_id))
    await run_store.fail_run(run_id, "stopped by operator")

    run = await executor.execute(run_id)

    assert run.status == RunStatus.FAILED
    assert run.error_message == "stopped by operator"
    assert adapter.calls == []


@pytest.mark.asyncio
async def test_cancel_before_start_fails_run(executor, adapter, run_store, workspace_store, workspace_id):
    adapter.candidates = _five_candidates()
    cancel_event = asyncio.Event()
    cancel_event.set()

    run = await executor.execute(await _start(run_store, workspace_store, _definition(workspace_id)), cancel_event=cancel_event)

    assert run.status == RunStatus.FAILED
    assert run.error_message == "Run cancelled"
    assert adapter.calls == []


@pytest.mark.asyncio
async def test_cancel_during_evaluation_stops_new_items(executor, adapter, scorer, run_store, workspace_store, processed_store, workspace_id):
    adapter.candidates = _five_candidates()
    executor.services.stage_concurrency = 1
    cancel_event = asyncio.Event()

    async def respond(prompt):
        cancel_event.set()
        return assessment_json(9.0, True)

    scorer.responder = respond

    run = await executor.execute(await _start(run_store, workspace_store, _definition(workspace_id)), cancel_event=cancel_event)

    assert run.status == RunStatus.FAILED
    assert run.error_message == "Run cancelled"
    assert len(scorer.prompts) == 1
    assert await processed_store.count(workspace_id) == 0


@pytest.mark.asyncio
async def test_llm_calls_are_throttled_by_shared_limiter(executor, adapter, scorer, writer, run_store, workspace_store, workspace_id):
    adapter.candidates = _five_candidates()
    clock = FakeClock()
    limiter = CountingBucket(capacity=2, refill_rate=1.0, clock=clock, sleep=clock.sleep)
    executor.services.limiter = limiter
    call_times = []

    async def score(prompt):
        call_times.append(clock.now)
        return assessment_json(8.0, True)

    async def draft(prompt):
        call_times.append(clock.now)
        return "Happy to share what worked for us."

    scorer.responder = score
    writer.responder = draft

    run = await executor.execute(await _start(run_store, workspace_store, _definition(workspace_id)))

    assert run.status == RunStatus.COMPLETED
    assert run.result_summary["evaluated"] == 3
    assert run.result_summary["drafts_generated"] == 3
    assert limiter.acquired == len(scorer.prompts) + len(writer.prompts) == 6
    # burst of two, then one call per refilled token
    assert clock.sleeps == [pytest.approx(1.0)] * 4
    assert sorted(call_times) == [pytest.approx(t) for t in (0.0, 0.0, 1.0, 2.0, 3.0, 4.0)]


@pytest.mark.asyncio
async def test_last_run_bookkeeping_failure_keeps_run_completed(executor, adapter, run_store, workspace_store, workspace_id, monkeypatch):
    adapter.candidates = _five_candidates()

    async def locked(definition_id):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(workspace_store, "touch_last_run", locked)

    run = await executor.execute(await _start(run_store, workspace_store, _definition(workspace_id)))

    assert run.status == RunStatus.COMPLETED
    assert run.result_summary["records_written"] == 3


@pytest.mark.asyncio
async def test_failure_that_cannot_be_stored_is_logged_not_raised(executor, adapter, run_store, workspace_store, workspace_id, monkeypatch, caplog):
    adapter.error = SourceError("Reddit search failed: HTTP 503")
    run_id = await _start(run_store, workspace_store, _definition(workspace_id))

    async def locked(run_id, message):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(run_store, "fail_run", locked)

    run = await executor.execute(run_id)

    assert run.status == RunStatus.RUNNING
    assert "Could not store failure" in caplog.text


@pytest.mark.asyncio
async def test_stage_logs_carry_run_fields(executor, adapter, run_store, workspace_store, workspace_id, caplog):
    adapter.candidates = _five_candidates()
    run_id = await _start(run_store, workspace_store, _definition(workspace_id))

    with caplog.at_level("INFO", logger="workflows.executor"):
        await executor.execute(run_id)

    stage_records = [r for r in caplog.records if "Stage:" in r.getMessage()]
    assert [r.getMessage().split("Stage: ")[1] for r in stage_records] == ["search", "evaluate", "reply", "record"]
    assert all(r.run_id == run_id and r.workspace_id == workspace_id for r in stage_records)
