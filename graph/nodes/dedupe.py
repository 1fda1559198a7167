from langchain_core.runnables import RunnableConfig
from loguru import logger

from graph.context import get_context, fail_batch, stop_if_cancelled
from graph.progress import progress_event
from graph.state import LeadState
from tools.errors import PersistenceError


async def dedupe(state: LeadState, config: RunnableConfig) -> LeadState:
    """Drop emails seen earlier in this run, already stored, or suppressed."""
    ctx = get_context(config)
    run = state["run"]

    unique = []
    for candidate in state.get("candidates", []):
        if candidate.email in run.seen:
            run.duplicates += 1
            continue
        run.seen.add(candidate.email)
        unique.append(candidate)

    existing, blocked = set(), set()
    if unique:
        try:
            existing, blocked = await ctx.store.lookup([c.email for c in unique])
        except PersistenceError as e:
            await fail_batch(state, ctx, e)
            return state
        if stop_if_cancelled(state, ctx, "dedup lookup"):
            return state

    fresh = []
    page_dupes = len(state.get("candidates", [])) - len(unique)
    page_suppressed = 0
    for candidate in unique:
        if candidate.email in blocked:
            run.suppressed += 1
            page_suppressed += 1
        elif candidate.email in existing:
            run.duplicates += 1
            page_dupes += 1
        else:
            fresh.append(candidate)

    run.after_local_filter += len(fresh)
    message = (
        f"Batch {run.batch_number}: {state.get('page_rows', 0)} fetched → {len(fresh)} new "
        f"({state.get('page_rejected', 0)} junk rejected, {page_dupes} existing, {page_suppressed} suppressed)"
    )
    logger.info(message)
    await ctx.emit(progress_event(run, "filtered", message))

    state["candidates"] = fresh
    return state
