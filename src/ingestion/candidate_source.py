"""
CandidateSource - credential exchange, search, keyword/age filter and dedup.
"""
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from core.errors import SourceError
from core.schemas import SearchConfig
from core.workspace import WorkspaceCredential
from ingestion.base import SearchAdapter, SearchResult, TokenExchange
from processing.prefilter import filter_processed, passes_prefilter
from services.processed_store import ProcessedPostStore

logger = logging.getLogger(__name__)


class CandidateSource:
    def __init__(
        self,
        token_exchange: TokenExchange,
        adapter: SearchAdapter,
        store: ProcessedPostStore,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.token_exchange = token_exchange
        self.adapter = adapter
        self.store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def fetch(self, credential: WorkspaceCredential, config: SearchConfig) -> SearchResult:
        """
        Fetch candidates that have not been processed for the credential's workspace.
        Credential and upstream errors propagate to the caller.
        """
        if config.source != self.adapter.source:
            raise SourceError(
                f"Search stage asks for '{config.source}' but the source is '{self.adapter.source}'"
            )

        access_token = await self.token_exchange.exchange(credential.refresh_token)
        items = await self.adapter.search(access_token, config)
        logger.info(f"Fetched {len(items)} posts from r/{config.channel}/{config.listing}")

        now = self._clock()
        matched = [
            item for item in items
            if passes_prefilter(
                item,
                keywords=config.keywords,
                max_age_hours=config.window_hours,
                now=now,
            )
        ]
        logger.info(f"After keyword filter: {len(matched)} posts")

        candidates, skipped = await filter_processed(matched, self.store, credential.workspace_id)

        return SearchResult(
            candidates=candidates,
            fetched=len(items),
            matched=len(matched),
            duplicates_skipped=skipped,
        )
