"""
Command line entry point for the engagement workflow engine.

    engage init-db
    engage seed
    engage run --workflow NAME [--workspace NAME] [--dry-run]
    engage show-run ID
    engage runs [--definition-id ID] [--workspace NAME]
    engage health
"""
import argparse
import asyncio
import json
import logging
import sys
import time
from typing import Any, Dict, Optional

from pydantic import ValidationError

from core.entities import Run
from core.errors import WorkflowError
from core.schemas import WorkflowDefinition
from services.config import Config, load_config
from services.logging import setup_logging
from workflows.pipeline_factory import Engine, create_engine_from_config

logger = logging.getLogger(__name__)


def _run_to_dict(run: Run, with_summary: bool = True) -> Dict[str, Any]:
    data = {
        "id": run.id,
        "workspace_id": run.workspace_id,
        "definition_id": run.definition_id,
        "status": run.status.value,
        "dry_run": run.dry_run,
        "started_at": run.started_at.isoformat(),
        "completed_at": run.completed_at.isoformat() if run.completed_at else None,
        "error_message": run.error_message,
    }
    if with_summary:
        data["result_summary"] = run.result_summary
    return data


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2))


async def _resolve_workspace_id(engine: Engine, config: Config, name: Optional[str]) -> int:
    if name is None:
        if len(config.workspaces) != 1:
            raise WorkflowError("Pass --workspace when the config defines more than one workspace")
        name = config.workspaces[0].name

    workspace_id = await engine.workspaces.get_workspace_id(name)
    if workspace_id is None:
        raise WorkflowError(f"Workspace '{name}' not found; run 'seed' first")
    return workspace_id


async def init_db(engine: Engine, config: Config, args: argparse.Namespace) -> int:
    await engine.database.init_tables()
    logger.info(f"Database ready at {config.DATABASE_PATH}")
    return 0


async def seed(engine: Engine, config: Config, args: argparse.Namespace) -> int:
    """Upsert workspaces, credentials and workflow definitions from config.yml."""
    if not config.workspaces:
        logger.warning("No workspaces configured, nothing to seed")
        return 0

    for workspace in config.workspaces:
        workspace_id = await engine.workspaces.upsert_workspace(
            name=workspace.name,
            description=workspace.description,
            audience=workspace.audience,
            brand_voice=workspace.brand_voice,
            domain=workspace.domain,
            keywords=workspace.keywords,
        )
        if workspace.refresh_token:
            await engine.workspaces.set_credential(workspace_id, workspace.refresh_token)
        else:
            logger.warning(f"Workspace '{workspace.name}' has no refresh token; its runs will fail")

        for workflow in workspace.workflows:
            existing = await engine.workspaces.find_definition(workspace_id, workflow.name)
            try:
                definition = WorkflowDefinition(
                    id=existing.id if existing else None,
                    workspace_id=workspace_id,
                    name=workflow.name,
                    description=workflow.description,
                    is_active=workflow.enabled,
                    stages=workflow.stages,
                )
            except ValidationError as e:
                logger.error(f"Skipping workflow '{workflow.name}': {e}")
                continue

            saved = await engine.workspaces.save_definition(definition)
            logger.info(f"Seeded workflow '{saved.name}' (id={saved.id}) for '{workspace.name}'")

    return 0


async def run_workflow(engine: Engine, config: Config, args: argparse.Namespace) -> int:
    start_time = time.perf_counter()
    workspace_id = await _resolve_workspace_id(engine, config, args.workspace)

    definition = await engine.workspaces.find_definition(workspace_id, args.workflow)
    if definition is None:
        raise WorkflowError(f"Workflow '{args.workflow}' not found")

    async with engine.runner as runner:
        run_id = await runner.start_run(definition_id=definition.id, dry_run=args.dry_run)
        try:
            run = await runner.wait_for(run_id, timeout=args.timeout)
        except asyncio.TimeoutError:
            logger.error(f"[run {run_id}] Still running after {args.timeout}s, cancelling")
            runner.cancel(run_id)
            run = await runner.wait_for(run_id)

    _print(_run_to_dict(run))
    logger.info(f"Total time: {time.perf_counter() - start_time:.1f}s")
    return 0 if run.status.value == "completed" else 1


async def show_run(engine: Engine, config: Config, args: argparse.Namespace) -> int:
    run = await engine.runs.get_run(args.run_id)
    if run is None:
        logger.error(f"Run {args.run_id} not found")
        return 1
    _print(_run_to_dict(run))
    return 0


async def list_runs(engine: Engine, config: Config, args: argparse.Namespace) -> int:
    workspace_id = None
    if args.workspace:
        workspace_id = await _resolve_workspace_id(engine, config, args.workspace)

    runs = await engine.runs.list_runs(
        workspace_id=workspace_id,
        definition_id=args.definition_id,
        limit=args.limit,
    )
    _print([_run_to_dict(run, with_summary=False) for run in runs])
    return 0


async def health(engine: Engine, config: Config, args: argparse.Namespace) -> int:
    ollama_ok = await engine.services.scorer.health_check()
    reddit_ok = bool(config.REDDIT_CLIENT_ID and config.REDDIT_CLIENT_SECRET)
    _print({
        "ollama": {"ok": ollama_ok, "base_url": config.OLLAMA_BASE_URL, "model": config.OLLAMA_MODEL},
        "reddit": {"ok": reddit_ok},
        "database": config.DATABASE_PATH,
    })
    return 0 if ollama_ok and reddit_ok else 1


COMMANDS = {
    "init-db": init_db,
    "seed": seed,
    "run": run_workflow,
    "show-run": show_run,
    "runs": list_runs,
    "health": health,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Reddit engagement workflow engine")
    parser.add_argument("--config", help="Path to config.yml (default: resources/config.yml)")
    parser.add_argument("--log-level", help="Override LOG_LEVEL from config")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create database tables")
    subparsers.add_parser("seed", help="Load workspaces and workflows from config")

    run_parser = subparsers.add_parser("run", help="Run a workflow and wait for it")
    run_parser.add_argument("--workflow", required=True, help="Workflow name")
    run_parser.add_argument("--workspace", help="Workspace name")
    run_parser.add_argument("--dry-run", action="store_true", help="Do not record processed posts")
    run_parser.add_argument("--timeout", type=float, default=None, help="Seconds to wait for the run")

    show_parser = subparsers.add_parser("show-run", help="Print a stored run")
    show_parser.add_argument("run_id", type=int)

    runs_parser = subparsers.add_parser("runs", help="List recent runs, newest first")
    runs_parser.add_argument("--definition-id", type=int)
    runs_parser.add_argument("--workspace", help="Workspace name")
    runs_parser.add_argument("--limit", type=int, default=20)

    subparsers.add_parser("health", help="Check Ollama and Reddit configuration")

    return parser


async def main(argv: Optional[list] = None) -> int:
    args = build_parser().parse_args(argv)

    config = load_config(args.config)
    setup_logging(args.log_level or config.LOG_LEVEL)

    engine = create_engine_from_config(config)
    try:
        return await COMMANDS[args.command](engine, config, args)
    except WorkflowError as e:
        logger.error(str(e))
        return 1


def cli() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
