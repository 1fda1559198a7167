from langchain_core.runnables import RunnableConfig
from loguru import logger

from graph.context import get_context, accept, fail_batch, stop_if_cancelled
from graph.state import LeadState
from tools.errors import PersistenceError


async def cache(state: LeadState, config: RunnableConfig) -> LeadState:
    """Reuse verdicts from earlier runs; only misses go on to the verifier."""
    ctx = get_context(config)
    run = state["run"]
    candidates = state.get("candidates", [])
    if not candidates:
        return state

    try:
        cached = await ctx.store.cached_statuses([c.email for c in candidates])
    except PersistenceError as e:
        await fail_batch(state, ctx, e)
        return state
    if stop_if_cancelled(state, ctx, "cache lookup"):
        return state

    misses = []
    for candidate in candidates:
        status = cached.get(candidate.email)
        if not status:
            misses.append(candidate)
            continue
        run.record_verification(candidate.email, candidate.source, status, cached=True)
        if status in ctx.allowed_statuses and not run.target_reached:
            accept(state, ctx, candidate, status)

    hits = len(candidates) - len(misses)
    if hits:
        logger.info(f"[CACHE] Reused {hits} cached verification results (0 credits spent)")

    state["candidates"] = misses
    return state
