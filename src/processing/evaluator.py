import asyncio
import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from core.entities import Candidate, Evaluation
from core.schemas import RelevanceAssessment
from core.scoring import normalize_score, passes_threshold
from core.workspace import WorkspaceContext
from processing.batch import map_isolated
from services.llm import BaseLLMClient
from services.rate_limiter import TokenBucket

logger = logging.getLogger(__name__)

EVALUATION_ERROR = "evaluation error"


def build_evaluation_prompt(
    workspace: WorkspaceContext,
    candidate: Candidate,
    now: Optional[datetime] = None,
) -> Tuple[str, str]:
    """
    Returns (system, prompt) for scoring one candidate against the workspace.
    """
    system = f"""You are an expert Reddit engagement specialist evaluating posts for business relevance.

CONTEXT:
Company: {workspace.name}
Website: {workspace.domain}
Product/Service: {workspace.description}
Target Audience: {workspace.audience or "not specified"}
Brand Voice: {workspace.brand_voice}
Target Keywords: {", ".join(workspace.keywords)}

EVALUATION CRITERIA:
1. relevance_score (0-10): How closely does the post relate to our business domain?
2. engagement_potential (0-10): How likely is meaningful discussion?
3. brand_alignment (0-10): Does engaging fit our brand values and voice?
4. overall_score (0-10): Weighted recommendation score

GUIDELINES:
- Score 8-10: Highly relevant, clear opportunity to add value
- Score 5-7: Moderately relevant, proceed with caution
- Score 0-4: Low relevance or high risk, avoid engagement
- Consider subreddit rules and community culture
- Avoid promotional language or spam patterns
- Focus on being helpful and adding genuine value

Return ONLY a JSON object with keys: relevance_score, engagement_potential,
brand_alignment, overall_score, should_reply (true/false), reasoning,
suggested_approach."""

    prompt = f"""Evaluate this Reddit post for engagement opportunity:

SUBREDDIT: r/{candidate.channel}
POST TITLE: {candidate.title}
POST CONTENT: {candidate.body or "[No text content]"}
METRICS: {candidate.score} upvotes, {candidate.num_comments} comments
AUTHOR: u/{candidate.author}
AGE: {candidate.age_hours(now)} hours old

Provide detailed evaluation with specific reasoning for your scores.

JSON object:"""

    return system, prompt


async def evaluate_candidate(
    *,
    llm: BaseLLMClient,
    workspace: WorkspaceContext,
    candidate: Candidate,
    threshold: float = 0.0,
    now: Optional[datetime] = None,
) -> Evaluation:
    """
    Executes LLM evaluation and validates structured output.
    Raises on call failure or schema-invalid output.
    """
    system, prompt = build_evaluation_prompt(workspace, candidate, now)
    assessment = await llm.generate_structured(prompt, RelevanceAssessment, system=system)

    return Evaluation(
        candidate_id=candidate.external_id,
        score=normalize_score(assessment.overall_score),
        recommend=passes_threshold(assessment, threshold),
        rationale=assessment.reasoning.strip(),
    )


def failed_evaluation(candidate: Candidate, error: BaseException) -> Evaluation:
    message = str(error) or error.__class__.__name__
    if isinstance(error, asyncio.TimeoutError):
        message = f"timed out: {message}"
    return Evaluation(
        candidate_id=candidate.external_id,
        score=0.0,
        recommend=False,
        rationale=EVALUATION_ERROR,
        error=message,
    )


async def evaluate_candidates(
    *,
    llm: BaseLLMClient,
    workspace: WorkspaceContext,
    candidates: List[Candidate],
    threshold: float = 0.0,
    concurrency: int = 1,
    limiter: Optional[TokenBucket] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> List[Evaluation]:
    """
    Evaluates every candidate independently, in input order.

    A failed call yields score 0 / recommend False for that candidate only.
    """
    if not candidates:
        return []

    logger.info(f"Evaluating {len(candidates)} posts (threshold={threshold}, concurrency={concurrency})")
    now = datetime.now(timezone.utc)

    async def _evaluate(candidate: Candidate) -> Evaluation:
        return await evaluate_candidate(
            llm=llm,
            workspace=workspace,
            candidate=candidate,
            threshold=threshold,
            now=now,
        )

    results = await map_isolated(
        candidates,
        _evaluate,
        concurrency=concurrency,
        limiter=limiter,
        cancel_event=cancel_event,
    )

    evaluations = []
    for candidate, result in zip(candidates, results):
        if result.ok:
            evaluation = result.value
            logger.info(
                f"Evaluated {candidate.external_id}: score={evaluation.score} recommend={evaluation.recommend}"
            )
        else:
            logger.warning(f"Evaluation failed for post {candidate.external_id}: {result.error}")
            evaluation = failed_evaluation(candidate, result.error)
        evaluations.append(evaluation)

    approved = sum(1 for e in evaluations if e.recommend)
    logger.info(f"Evaluation complete: {approved}/{len(evaluations)} recommended")
    return evaluations
