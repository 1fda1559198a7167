import os
import re
import json
from typing import List, Optional, Tuple

from langchain_core.runnables import RunnableConfig
from loguru import logger

from graph.context import RunContext, get_context
from graph.progress import progress_event
from graph.state import LeadState, AcceptedLead, RunState, utcnow
from tools.errors import PersistenceError


def safe_name(list_name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9]", "_", list_name) or "list"


def write_unsaved(directory: str, list_name: str, leads: List[AcceptedLead]) -> Optional[str]:
    """Dump leads that could not be persisted so they are never silently lost."""
    path = os.path.join(directory, f"{safe_name(list_name)}_{utcnow().strftime('%Y%m%dT%H%M%S')}.json")
    try:
        os.makedirs(directory, exist_ok=True)
        with open(path, "w") as f:
            json.dump([lead.to_record() for lead in leads], f, indent=2)
    except OSError as e:
        logger.error(f"Could not write unsaved leads to {path}: {e}")
        return None
    logger.warning(f"Wrote {len(leads)} unsaved leads to {path}")
    return path


async def persist_leads(ctx: RunContext, run: RunState, leads: List[AcceptedLead],
                        cancelled: bool = False) -> Tuple[int, Optional[str], Optional[str]]:
    """
    Write accepted leads chunk by chunk, re-checking existence before each insert.

    Returns:
        (rows inserted, persistence error message, path of the unsaved-leads dump)
    """
    if not leads:
        return 0, None, None

    chunk_size = max(1, ctx.settings.save_chunk_size)
    if cancelled:
        message = f"Stopped! Saving {len(leads)} leads collected so far..."
    else:
        message = f"Saving {len(leads)} leads to database..."
    await ctx.emit(progress_event(run, "saving", message))

    persisted = 0
    for start in range(0, len(leads), chunk_size):
        chunk = leads[start:start + chunk_size]
        try:
            existing = await ctx.store.existing_leads([lead.email for lead in chunk])
            fresh = [lead for lead in chunk if lead.email not in existing]
            inserted = await ctx.store.insert_leads(fresh)
        except PersistenceError as e:
            unsaved = leads[start:]
            unsaved_file = write_unsaved(ctx.settings.unsaved_dir, run.list_name, unsaved)
            logger.error(f"Persisting \"{run.list_name}\" failed after {persisted} rows: {e}")
            return persisted, f"Database save failed with {len(unsaved)} leads at risk: {e}", unsaved_file

        persisted += inserted
        skipped = len(chunk) - inserted
        await ctx.emit(progress_event(
            run, "saving",
            f"Saved {start + len(chunk)}/{len(leads)} leads"
            + (f" ({skipped} already stored)" if skipped else ""),
        ))

    logger.info(f"Persisted {persisted}/{len(leads)} leads for \"{run.list_name}\"")
    return persisted, None, None


async def save(state: LeadState, config: RunnableConfig) -> LeadState:
    """Persist accepted leads. Runs on every non-fatal ending, cancelled runs included."""
    ctx = get_context(config)
    persisted, error, unsaved_file = await persist_leads(
        ctx, state["run"], state.get("clean_leads", []),
        cancelled=state.get("stop_reason") == "cancelled",
    )
    state["persisted"] = persisted
    if error:
        state["persistence_error"] = error
        state["unsaved_file"] = unsaved_file
    return state
