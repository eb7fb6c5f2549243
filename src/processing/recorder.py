import logging
from typing import Dict, List, Optional

from core.entities import Candidate, Draft, Evaluation, ProcessedRecord, Run
from core.errors import RecordError
from services.processed_store import ProcessedPostStore

logger = logging.getLogger(__name__)


def build_records(
    run: Run,
    candidates: List[Candidate],
    evaluations: List[Evaluation],
    drafts: List[Draft],
) -> List[ProcessedRecord]:
    """
    One record per candidate, joined with its evaluation and optional draft.
    """
    evaluations_by_id: Dict[str, Evaluation] = {e.candidate_id: e for e in evaluations}
    drafts_by_id: Dict[str, Draft] = {d.candidate_id: d for d in drafts}

    records = []
    for candidate in candidates:
        evaluation: Optional[Evaluation] = evaluations_by_id.get(candidate.external_id)
        draft: Optional[Draft] = drafts_by_id.get(candidate.external_id)

        records.append(ProcessedRecord(
            workspace_id=run.workspace_id,
            external_post_id=candidate.external_id,
            channel=candidate.channel,
            title=candidate.title,
            url=candidate.permalink or candidate.url,
            score=evaluation.score if evaluation else None,
            recommend=evaluation.recommend if evaluation else False,
            rationale=evaluation.rationale if evaluation else None,
            draft_text=draft.text if draft and draft.succeeded else None,
            run_id=run.id,
            definition_id=run.definition_id,
            posted=False,
            dry_run=run.dry_run,
        ))
    return records


class RunRecorder:
    def __init__(self, store: ProcessedPostStore):
        self.store = store

    async def record(
        self,
        run: Run,
        candidates: List[Candidate],
        evaluations: List[Evaluation],
        drafts: List[Draft],
    ) -> int:
        """
        Write processed records as one idempotent batch; existing keys are left alone.

        Returns:
            Number of records inserted by this call
        """
        records = build_records(run, candidates, evaluations, drafts)
        if not records:
            return 0

        try:
            inserted = await self.store.record(records)
        except Exception as e:
            raise RecordError(f"Failed to record processed posts: {e}") from e

        logger.info(f"[run {run.id}] Recorded {inserted}/{len(records)} processed posts")
        return inserted
