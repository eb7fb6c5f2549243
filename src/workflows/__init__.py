"""
Workflows module - Stage pipelines, run execution and the background run queue.
"""
from workflows.base import EngineServices, ExecutionContext, Stage
from workflows.executor import WorkflowExecutor
from workflows.pipeline_factory import Engine, create_engine_from_config
from workflows.runner import WorkflowRunner
from workflows.stages import build_pipeline

__all__ = [
    "EngineServices",
    "ExecutionContext",
    "Stage",
    "WorkflowExecutor",
    "WorkflowRunner",
    "Engine",
    "build_pipeline",
    "create_engine_from_config",
]
