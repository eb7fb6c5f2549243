"""
Source Factory - Creates content source adapters from configuration.
"""
import logging
from typing import Optional

import httpx

from ingestion.base import SearchAdapter, TokenExchange
from ingestion.candidate_source import CandidateSource
from ingestion.reddit import RedditAdapter, RedditTokenExchange
from services.config import Config
from services.processed_store import ProcessedPostStore

logger = logging.getLogger(__name__)

SUPPORTED_SOURCES = ("reddit",)


def create_source_adapters(
    source: str,
    config: Config,
    client: Optional[httpx.AsyncClient] = None,
) -> tuple[TokenExchange, SearchAdapter]:
    """
    Create the token exchange and search adapter for a source.

    Raises:
        ValueError: If source type is unknown
    """
    source_type = source.lower()

    if source_type == "reddit":
        if not config.REDDIT_CLIENT_ID or not config.REDDIT_CLIENT_SECRET:
            logger.warning("REDDIT_CLIENT_ID/REDDIT_CLIENT_SECRET not set; searches will fail")
        return (
            RedditTokenExchange(
                client_id=config.REDDIT_CLIENT_ID,
                client_secret=config.REDDIT_CLIENT_SECRET,
                user_agent=config.REDDIT_USER_AGENT,
                client=client,
            ),
            RedditAdapter(user_agent=config.REDDIT_USER_AGENT, client=client),
        )

    raise ValueError(f"Unknown source type: {source_type}")


def create_candidate_source(
    config: Config,
    store: ProcessedPostStore,
    source: str = "reddit",
    client: Optional[httpx.AsyncClient] = None,
) -> CandidateSource:
    token_exchange, adapter = create_source_adapters(source, config, client=client)
    logger.info(f"Created {source} candidate source")
    return CandidateSource(token_exchange=token_exchange, adapter=adapter, store=store)
