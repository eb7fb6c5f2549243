import asyncio
import logging
from typing import Dict, List, Optional, Tuple

from core.entities import Candidate, Draft, Evaluation
from core.schemas import ReplyConfig
from core.workspace import WorkspaceContext
from processing.batch import map_isolated
from services.llm import BaseLLMClient
from services.rate_limiter import TokenBucket

logger = logging.getLogger(__name__)


def build_reply_prompt(
    workspace: WorkspaceContext,
    candidate: Candidate,
    evaluation: Evaluation,
    config: ReplyConfig,
) -> Tuple[str, str]:
    tone = config.tone or workspace.brand_voice or "helpful, authentic, and conversational"
    link_rule = (
        "Links are allowed only when they directly answer the question"
        if config.include_links
        else "Do not include any links"
    )

    system = f"""You are a helpful Reddit community member representing {workspace.name}.

IDENTITY:
- Company: {workspace.name}
- Expertise: {workspace.description}
- Tone: {tone}
- Website: {workspace.domain}

STRICT RULES:
1. NEVER use promotional language or sales pitches
2. NEVER start with "As someone from {workspace.name}" or similar
3. Focus on being genuinely helpful first
4. Only mention your product if directly relevant and asked
5. Use natural Reddit language and formatting
6. Keep replies concise (under {config.max_length} words)
7. Match the subreddit's tone and culture
8. Add value through expertise, not promotion
9. {link_rule}

REDDIT FORMATTING:
- Use **bold** for emphasis sparingly
- Use > for quotes when referencing OP
- Break up text into short paragraphs
- End with a question or helpful tip when appropriate"""

    guidance = f"\nADDITIONAL GUIDANCE: {config.reply_prompt}\n" if config.reply_prompt else ""

    prompt = f"""Generate a helpful reply to this Reddit post:

ORIGINAL POST:
Title: {candidate.title}
Content: {candidate.body or "[No text content]"}
Subreddit: r/{candidate.channel}

EVALUATION CONTEXT:
{evaluation.rationale}
{guidance}
Write a natural, helpful reply that adds value to the discussion. Return only the reply text."""

    return system, prompt


async def draft_reply(
    *,
    llm: BaseLLMClient,
    workspace: WorkspaceContext,
    candidate: Candidate,
    evaluation: Evaluation,
    config: ReplyConfig,
) -> Draft:
    """Raises if generation fails or returns nothing usable."""
    system, prompt = build_reply_prompt(workspace, candidate, evaluation, config)
    text = await llm.generate_text(prompt, system=system)
    if not text:
        raise ValueError("model returned an empty reply")
    return Draft(candidate_id=candidate.external_id, text=text, succeeded=True)


async def draft_replies(
    *,
    llm: BaseLLMClient,
    workspace: WorkspaceContext,
    candidates: List[Candidate],
    evaluations: List[Evaluation],
    config: ReplyConfig,
    concurrency: int = 1,
    limiter: Optional[TokenBucket] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> List[Draft]:
    """
    Drafts a reply for every recommended candidate, in candidate order.
    A failed draft is returned with succeeded=False and never aborts the rest.
    """
    by_id: Dict[str, Evaluation] = {e.candidate_id: e for e in evaluations}
    targets = [
        (candidate, by_id[candidate.external_id])
        for candidate in candidates
        if candidate.external_id in by_id and by_id[candidate.external_id].recommend
    ]
    if not targets:
        logger.info("No recommended posts to draft replies for")
        return []

    logger.info(f"Drafting replies for {len(targets)} posts")

    async def _draft(target: Tuple[Candidate, Evaluation]) -> Draft:
        candidate, evaluation = target
        return await draft_reply(
            llm=llm,
            workspace=workspace,
            candidate=candidate,
            evaluation=evaluation,
            config=config,
        )

    results = await map_isolated(
        targets,
        _draft,
        concurrency=concurrency,
        limiter=limiter,
        cancel_event=cancel_event,
    )

    drafts = []
    for (candidate, _), result in zip(targets, results):
        if result.ok:
            drafts.append(result.value)
        else:
            logger.warning(f"Reply generation failed for post {candidate.external_id}: {result.error}")
            drafts.append(Draft(
                candidate_id=candidate.external_id,
                text="",
                succeeded=False,
                error=str(result.error) or result.error.__class__.__name__,
            ))

    generated = sum(1 for d in drafts if d.succeeded)
    logger.info(f"Drafting complete: {generated}/{len(drafts)} replies generated")
    return drafts
