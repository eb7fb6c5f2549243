from typing import Dict, Optional

from core.entities import Candidate, Draft, Evaluation
from core.schemas import DraftSummary, EvaluationSummary, Outcome, PostSummary, RunSummary
from workflows.base import ExecutionContext

NOT_EVALUATED = EvaluationSummary(score=0.0, recommend=False, rationale="Not evaluated")


def post_outcome(evaluation: Optional[Evaluation], draft: Optional[Draft]) -> Outcome:
    if evaluation is None:
        return "not_evaluated"
    if evaluation.failed:
        return "evaluation_failed"
    if not evaluation.recommend:
        return "rejected"
    if draft is not None and not draft.succeeded:
        return "draft_failed"
    return "approved"


def _post_summary(
    candidate: Candidate,
    evaluation: Optional[Evaluation],
    draft: Optional[Draft],
) -> PostSummary:
    return PostSummary(
        id=candidate.external_id,
        title=candidate.title,
        channel=candidate.channel,
        author=candidate.author,
        url=candidate.url,
        permalink=candidate.permalink,
        score=candidate.score,
        num_comments=candidate.num_comments,
        body=candidate.body,
        outcome=post_outcome(evaluation, draft),
        evaluation=EvaluationSummary(
            score=evaluation.score,
            recommend=evaluation.recommend,
            rationale=evaluation.rationale,
            error=evaluation.error,
        ) if evaluation else NOT_EVALUATED,
        draft=DraftSummary(text=draft.text, succeeded=draft.succeeded, error=draft.error) if draft else None,
    )


def build_result_summary(ctx: ExecutionContext) -> RunSummary:
    """
    Collapse the context into the stored run summary. Posts keep search order.
    """
    candidates = ctx.candidates or []
    evaluations = ctx.evaluations or []
    drafts = ctx.drafts or []

    evaluations_by_id: Dict[str, Evaluation] = {e.candidate_id: e for e in evaluations}
    drafts_by_id: Dict[str, Draft] = {d.candidate_id: d for d in drafts}

    return RunSummary(
        found=len(candidates),
        evaluated=len(evaluations),
        approved=sum(1 for e in evaluations if e.recommend),
        drafts_generated=sum(1 for d in drafts if d.succeeded),
        duplicates_skipped=ctx.duplicates_skipped,
        records_written=ctx.records_written,
        posts=[
            _post_summary(
                candidate,
                evaluations_by_id.get(candidate.external_id),
                drafts_by_id.get(candidate.external_id),
            )
            for candidate in candidates
        ],
    )
