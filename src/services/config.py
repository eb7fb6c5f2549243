"""
Loads and handles config from config.yml
Reddit app credentials (REDDIT_CLIENT_ID, REDDIT_CLIENT_SECRET) and workspace
refresh tokens are loaded from .env for security
"""
import logging
import os
from typing import List, Dict, Any, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)


class WorkflowConfig(BaseModel):
    """Raw workflow entry; stages are validated when the definition is built."""
    name: str
    description: Optional[str] = None
    enabled: bool = True
    stages: List[Dict[str, Any]] = []


class WorkspaceConfig(BaseModel):
    """Configuration for a single workspace and the workflows it owns."""
    name: str
    description: str = ""
    audience: str = ""
    brand_voice: str = "professional and helpful"
    domain: str = ""
    keywords: List[str] = []
    refresh_token: Optional[str] = None
    workflows: List[WorkflowConfig] = []


class Config(BaseModel):
    # Core
    DATABASE_PATH: str

    # Ollama
    OLLAMA_BASE_URL: str
    OLLAMA_MODEL: str
    OLLAMA_SCORING_TEMPERATURE: float = 0.3
    OLLAMA_REPLY_TEMPERATURE: float = 0.7
    LLM_TIMEOUT: float = 120.0

    # Reddit
    REDDIT_CLIENT_ID: Optional[str] = None
    REDDIT_CLIENT_SECRET: Optional[str] = None
    REDDIT_USER_AGENT: str = "engage-bot/1.0"

    # Execution
    WORKER_COUNT: int = 2
    STAGE_CONCURRENCY: int = 3
    LLM_RATE_CAPACITY: int = 5
    LLM_RATE_PER_SECOND: float = 1.0
    RECORD_DRY_RUNS: bool = False

    LOG_LEVEL: str = "INFO"

    workspaces: List[WorkspaceConfig] = []


def _bool(value: str | bool) -> bool:
    """Convert string or bool to boolean."""
    if isinstance(value, bool):
        return value
    return str(value).lower() in ("1", "true", "yes", "on")


def _get_config_path() -> str:
    """Get the path to config.yml, handling different working directories."""
    env_path = os.getenv("ENGAGE_CONFIG")
    if env_path:
        if not os.path.exists(env_path):
            raise FileNotFoundError(f"ENGAGE_CONFIG points to a missing file: {env_path}")
        return env_path

    # Try relative path first
    if os.path.exists('resources/config.yml'):
        return 'resources/config.yml'

    # Try from project root
    project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
    config_path = os.path.join(project_root, 'resources', 'config.yml')
    if os.path.exists(config_path):
        return config_path

    raise FileNotFoundError("Cannot find resources/config.yml")


def _parse_workspace_config(data: Dict[str, Any]) -> WorkspaceConfig:
    """Parse a workspace entry; its refresh token may come from the environment."""
    workflows = []
    for name, workflow_data in (data.get("workflows") or {}).items():
        try:
            workflows.append(WorkflowConfig(
                name=name,
                description=workflow_data.get("description"),
                enabled=_bool(workflow_data.get("enabled", True)),
                stages=workflow_data.get("stages", []),
            ))
        except ValidationError as e:
            logger.error(f"Failed to parse workflow '{name}': {e}")

    token_env = data.get("refresh_token_env")
    refresh_token = os.getenv(token_env) if token_env else data.get("refresh_token")

    return WorkspaceConfig(
        name=data["name"],
        description=data.get("description", ""),
        audience=data.get("audience", ""),
        brand_voice=data.get("brand_voice", "professional and helpful"),
        domain=data.get("domain", ""),
        keywords=data.get("keywords", []),
        refresh_token=refresh_token,
        workflows=workflows,
    )


def load_config(path: Optional[str] = None) -> Config:
    """Load configuration from config.yml and secrets from .env."""
    # Load .env for sensitive credentials
    load_dotenv()

    config_path = path or _get_config_path()

    with open(config_path, 'r') as file:
        config = yaml.safe_load(file) or {}

    workspaces = []
    for workspace_data in config.get("workspaces", []):
        try:
            workspaces.append(_parse_workspace_config(workspace_data))
        except (KeyError, ValidationError) as e:
            logger.error(f"Failed to parse workspace '{workspace_data.get('name', '?')}': {e}")

    return Config(
        DATABASE_PATH=config.get("DATABASE_PATH", "data/engage.db"),

        OLLAMA_BASE_URL=config.get("OLLAMA_BASE_URL", "http://localhost:11434"),
        OLLAMA_MODEL=config.get("OLLAMA_MODEL", "llama3.1:8b"),
        OLLAMA_SCORING_TEMPERATURE=float(config.get("OLLAMA_SCORING_TEMPERATURE", 0.3)),
        OLLAMA_REPLY_TEMPERATURE=float(config.get("OLLAMA_REPLY_TEMPERATURE", 0.7)),
        LLM_TIMEOUT=float(config.get("LLM_TIMEOUT", 120.0)),

        REDDIT_CLIENT_ID=os.getenv("REDDIT_CLIENT_ID"),
        REDDIT_CLIENT_SECRET=os.getenv("REDDIT_CLIENT_SECRET"),
        REDDIT_USER_AGENT=config.get("REDDIT_USER_AGENT", "engage-bot/1.0"),

        WORKER_COUNT=int(config.get("WORKER_COUNT", 2)),
        STAGE_CONCURRENCY=int(config.get("STAGE_CONCURRENCY", 3)),
        LLM_RATE_CAPACITY=int(config.get("LLM_RATE_CAPACITY", 5)),
        LLM_RATE_PER_SECOND=float(config.get("LLM_RATE_PER_SECOND", 1.0)),
        RECORD_DRY_RUNS=_bool(config.get("RECORD_DRY_RUNS", False)),

        LOG_LEVEL=str(config.get("LOG_LEVEL", "INFO")).upper(),

        workspaces=workspaces,
    )
