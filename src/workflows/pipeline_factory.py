"""
Pipeline Factory - Builds stage pipelines and the run engine from configuration.
"""
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from ingestion.source_factory import SUPPORTED_SOURCES, create_candidate_source
from processing.recorder import RunRecorder
from services.config import Config
from services.database import Database
from services.llm import OllamaClient
from services.processed_store import ProcessedPostStore
from services.rate_limiter import TokenBucket
from services.run_store import RunStore
from services.workspace_store import WorkspaceStore
from workflows.base import EngineServices
from workflows.executor import WorkflowExecutor
from workflows.runner import WorkflowRunner

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    database: Database
    workspaces: WorkspaceStore
    runs: RunStore
    processed: ProcessedPostStore
    services: EngineServices
    executor: WorkflowExecutor
    runner: WorkflowRunner


def create_engine_from_config(
    config: Config,
    client: Optional[httpx.AsyncClient] = None,
) -> Engine:
    """
    Wire stores, sources, LLM clients and the runner from configuration.

    Args:
        config: Loaded application config
        client: Optional shared HTTP client for source adapters

    Returns:
        Engine whose runner has not been started yet
    """
    database = Database(config.DATABASE_PATH)
    workspaces = WorkspaceStore(database)
    runs = RunStore(database)
    processed = ProcessedPostStore(database)

    scorer = OllamaClient(
        base_url=config.OLLAMA_BASE_URL,
        model=config.OLLAMA_MODEL,
        temperature=config.OLLAMA_SCORING_TEMPERATURE,
        timeout=config.LLM_TIMEOUT,
    )
    writer = OllamaClient(
        base_url=config.OLLAMA_BASE_URL,
        model=config.OLLAMA_MODEL,
        temperature=config.OLLAMA_REPLY_TEMPERATURE,
        timeout=config.LLM_TIMEOUT,
    )

    services = EngineServices(
        sources={
            source: create_candidate_source(config, processed, source=source, client=client)
            for source in SUPPORTED_SOURCES
        },
        scorer=scorer,
        writer=writer,
        recorder=RunRecorder(processed),
        limiter=TokenBucket(capacity=config.LLM_RATE_CAPACITY, refill_rate=config.LLM_RATE_PER_SECOND),
        stage_concurrency=config.STAGE_CONCURRENCY,
        record_dry_runs=config.RECORD_DRY_RUNS,
    )

    executor = WorkflowExecutor(services=services, runs=runs, workspaces=workspaces)
    runner = WorkflowRunner(
        executor=executor,
        runs=runs,
        workspaces=workspaces,
        worker_count=config.WORKER_COUNT,
    )
    logger.info(
        f"Engine ready (model={config.OLLAMA_MODEL}, workers={config.WORKER_COUNT}, "
        f"stage_concurrency={config.STAGE_CONCURRENCY})"
    )

    return Engine(
        database=database,
        workspaces=workspaces,
        runs=runs,
        processed=processed,
        services=services,
        executor=executor,
        runner=runner,
    )
