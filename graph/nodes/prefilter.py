from collections import Counter

from langchain_core.runnables import RunnableConfig
from loguru import logger

from graph.context import get_context
from graph.rules import rejection_reason
from graph.state import LeadState


async def prefilter(state: LeadState, config: RunnableConfig) -> LeadState:
    """Drop emails that are certain to be worthless before anything is spent on them."""
    ctx = get_context(config)
    run = state["run"]
    candidates = state.get("candidates", [])

    passed = []
    reasons = Counter()
    for candidate in candidates:
        reason = rejection_reason(candidate.email, ctx.rules)
        if reason:
            reasons[reason] += 1
            continue
        passed.append(candidate)

    rejected = sum(reasons.values())
    if rejected:
        run.pre_filtered += rejected
        run.bump("pre_filtered", rejected)
        logger.info(
            f"[PRE-FILTER] Rejected {rejected}/{len(candidates)} emails before verification: {dict(reasons)}"
        )

    state["page_rejected"] = rejected
    state["candidates"] = passed
    return state
