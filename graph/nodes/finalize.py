import os
import csv
from typing import Optional

from langchain_core.runnables import RunnableConfig
from loguru import logger

from graph.context import get_context
from graph.nodes.save import safe_name
from graph.progress import done_event, error_event
from graph.state import LeadState, RunState, utcnow

SAMPLE_COLUMNS = ("email", "source", "status", "cached")


def write_sample_csv(directory: str, run: RunState) -> Optional[str]:
    """Write the audit sample of verification outcomes. Returns the file path."""
    if not run.samples:
        return None
    path = os.path.join(directory, f"{safe_name(run.list_name)}_{utcnow().strftime('%Y%m%dT%H%M%S')}.csv")
    try:
        os.makedirs(directory, exist_ok=True)
        with open(path, "w", newline="") as f:
            writer = csv.DictWriter(f, fieldnames=SAMPLE_COLUMNS)
            writer.writeheader()
            writer.writerows(run.samples)
    except OSError as e:
        logger.error(f"Could not write verification sample to {path}: {e}")
        return None
    logger.info(f"Wrote {len(run.samples)} verification samples to {path}")
    return path


def log_source_stats(run: RunState) -> None:
    for source, stats in sorted(run.source_stats.items()):
        total = stats["total"]
        safe_pct = 100.0 * stats["safe"] / total if total else 0.0
        logger.info(
            f"[SOURCE] {source}: checked={total} safe={stats['safe']} ({safe_pct:.1f}%) "
            f"invalid={stats['invalid']} catch_all={stats['catch_all']} unknown={stats['unknown']}"
        )


async def finalize(state: LeadState, config: RunnableConfig) -> LeadState:
    """Emit the single terminal event of the run."""
    ctx = get_context(config)
    run = state["run"]

    if state.get("fatal_error"):
        logger.error(f"Run \"{run.list_name}\" failed with no leads: {state['fatal_error']}")
        await ctx.emit(error_event(state["fatal_error"]))
        return state

    log_source_stats(run)
    state["sample_file"] = write_sample_csv(ctx.settings.samples_dir, run)

    cancelled = state.get("stop_reason") == "cancelled"
    event = done_event(
        run,
        persisted=state.get("persisted", 0),
        cancelled=cancelled,
        sample_file=state.get("sample_file"),
        persistence_error=state.get("persistence_error"),
        unsaved_file=state.get("unsaved_file"),
    )
    logger.info(f"Run \"{run.list_name}\" finished: {event.message}")
    await ctx.emit(event)
    return state
