import asyncio

from langchain_core.runnables import RunnableConfig
from loguru import logger

from graph.context import RunContext, get_context, accept
from graph.progress import progress_event
from graph.state import LeadState
from tools.errors import PersistenceError, VerificationCallError


async def verify_one(ctx: RunContext, email: str) -> str:
    """One verification call. Failures become the `error` status and never propagate."""
    try:
        return await ctx.verifier.verify(email)
    except VerificationCallError as e:
        logger.warning(f"Verification failed for {email}: {e}")
        return "error"
    except Exception as e:
        logger.error(f"Unexpected verification failure for {email}: {e}")
        return "error"


async def verify(state: LeadState, config: RunnableConfig) -> LeadState:
    """Verify cache misses in small concurrent sub-batches."""
    ctx = get_context(config)
    run = state["run"]
    pending = state.get("candidates", [])
    size = max(1, ctx.settings.verify_batch_size)

    for start in range(0, len(pending), size):
        if run.target_reached or ctx.token.cancelled:
            break

        sub_batch = pending[start:start + size]
        run.sent_to_verifier += len(sub_batch)
        statuses = await asyncio.gather(*(verify_one(ctx, c.email) for c in sub_batch))

        results = {}
        for candidate, status in zip(sub_batch, statuses):
            results[candidate.email] = status
            run.record_verification(candidate.email, candidate.source, status)
            if status in ctx.allowed_statuses and not run.target_reached:
                accept(state, ctx, candidate, status)

        try:
            await ctx.store.remember_verifications(results)
        except PersistenceError as e:
            logger.warning(f"Could not cache {len(results)} verification results: {e}")
            state.setdefault("errors", []).append(str(e))

        await ctx.emit(progress_event(
            run, "verifying",
            f"Verified: {run.accepted}/{run.target} clean leads "
            f"({run.sent_to_verifier} sent to Reoon, {run.cached} from cache)",
        ))

    if ctx.token.cancelled and not state.get("stop_reason"):
        state["stop_reason"] = "cancelled"
    state["candidates"] = []
    return state
