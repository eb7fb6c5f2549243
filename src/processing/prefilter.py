import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional, Tuple

from core.entities import Candidate
from services.processed_store import ProcessedPostStore

logger = logging.getLogger(__name__)


def keyword_match(text: str, keywords: Iterable[str]) -> bool:
    text = text.lower()
    return any(k.lower() in text for k in keywords)


def passes_prefilter(
    candidate: Candidate,
    *,
    keywords: Iterable[str],
    max_age_hours: Optional[int] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Keyword and age checks. An empty keyword list lets everything through."""
    keywords = list(keywords)

    if keywords and not keyword_match(candidate.text, keywords):
        return False

    if max_age_hours is not None:
        now = now or datetime.now(timezone.utc)
        if candidate.created_at < now - timedelta(hours=max_age_hours):
            return False

    return True


async def filter_processed(
    candidates: List[Candidate],
    store: ProcessedPostStore,
    workspace_id: int,
) -> Tuple[List[Candidate], int]:
    """
    Remove candidates already processed for the workspace, and repeats
    within the same batch.

    Returns:
        Tuple of (remaining candidates in original order, number skipped)
    """
    if not candidates:
        return [], 0

    processed = await store.processed_ids(
        workspace_id, [c.external_id for c in candidates]
    )

    unique_items = []
    seen_ids = set()
    for candidate in candidates:
        if candidate.external_id in processed or candidate.external_id in seen_ids:
            logger.debug(f"Skipping processed post: {candidate.external_id}")
            continue
        unique_items.append(candidate)
        seen_ids.add(candidate.external_id)

    skipped = len(candidates) - len(unique_items)
    logger.info(
        f"Dedup filter: {len(candidates)} -> {len(unique_items)} posts "
        f"({len(processed)} already processed)"
    )
    return unique_items, skipped
