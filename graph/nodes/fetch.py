import math
from typing import Optional

from langchain_core.runnables import RunnableConfig
from loguru import logger

from graph.context import RunContext, get_context, fail_batch, stop_if_cancelled
from graph.progress import progress_event
from graph.state import LeadState
from tools.errors import SourceError


def max_batches(target: int, safety_multiplier: int, min_fetch_size: int) -> int:
    """Upper bound on loop iterations for a run, whatever the page sizes turn out to be."""
    return 2 * math.ceil(target * safety_multiplier / min_fetch_size) + 1


def stop_reason(state: LeadState, ctx: RunContext) -> Optional[str]:
    run = state["run"]
    settings = ctx.settings
    if state.get("stop_reason"):
        return state["stop_reason"]
    if ctx.token.cancelled:
        return "cancelled"
    if run.target_reached:
        return "target_reached"
    if run.exhausted:
        return "exhausted"
    if run.examined >= run.candidate_ceiling(settings.safety_multiplier):
        return "ceiling"
    if run.batch_number >= max_batches(run.target, settings.safety_multiplier, settings.min_fetch_size):
        return "ceiling"
    return None


async def fetch(state: LeadState, config: RunnableConfig) -> LeadState:
    """Pull the next page of candidates, or decide the loop is over."""
    ctx = get_context(config)
    run = state["run"]

    if state.get("fatal_error"):
        return state

    reason = stop_reason(state, ctx)
    if reason:
        state["stop_reason"] = reason
        logger.info(f"Stopping \"{run.list_name}\" after {run.batch_number} batches: {reason}")
        return state

    settings = ctx.settings
    size = run.next_fetch_size(settings.oversample_factor, settings.min_fetch_size, settings.max_fetch_size)
    run.batch_number += 1
    logger.info(
        f"Batch {run.batch_number}: need {run.remaining} more leads, fetching {size} candidates at offset {run.offset}"
    )
    await ctx.emit(progress_event(
        run, "fetching",
        f"Batch {run.batch_number}: fetching {size} candidates ({run.accepted}/{run.target} found)...",
    ))

    try:
        rows = await ctx.source.fetch(ctx.source_filter, size, run.offset)
    except SourceError as e:
        await fail_batch(state, ctx, e)
        return state
    except Exception as e:
        logger.exception(f"Unexpected candidate source failure: {e}")
        await fail_batch(state, ctx, SourceError(str(e) or type(e).__name__))
        return state

    if stop_if_cancelled(state, ctx, "fetch"):
        return state

    if not rows:
        run.exhausted = True
        state["stop_reason"] = "exhausted"
        logger.info(f"Source exhausted for \"{run.list_name}\" after {run.examined} candidates")
        await ctx.emit(progress_event(
            run, "exhausted",
            f"No more candidates available. Found {run.accepted}/{run.target} leads.",
        ))
        return state

    run.offset += size
    run.fetched += len(rows)
    run.examined += len(rows)
    state["batch"] = rows
    state["page_rows"] = len(rows)
    return state
