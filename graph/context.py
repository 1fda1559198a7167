from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, FrozenSet, List

from langchain_core.runnables import RunnableConfig
from loguru import logger

from graph.cancellation import CancellationToken
from graph.events import ProgressEvent
from graph.progress import progress_event
from graph.rules import FilterRules, DEFAULT_RULES
from graph.state import LeadState, AcceptedLead, NormalizedCandidate
from tools.bigquery import SourceFilter
from tools.settings import Settings

Emit = Callable[[ProgressEvent], Awaitable[None]]


@dataclass
class RunContext:
    """Collaborators and policy for one run, passed to every node via the graph config."""
    settings: Settings
    source: Any
    verifier: Any
    store: Any
    emit: Emit
    token: CancellationToken
    classify_gender: Callable[[str], str]
    source_filter: SourceFilter = field(default_factory=SourceFilter)
    rules: FilterRules = DEFAULT_RULES
    # Same list as state["clean_leads"]; still reachable if the graph raises
    clean_leads: List[AcceptedLead] = field(default_factory=list)

    @property
    def allowed_statuses(self) -> FrozenSet[str]:
        return frozenset(self.settings.allowed_statuses)


def get_context(config: RunnableConfig) -> RunContext:
    return config["configurable"]["ctx"]


def accept(state: LeadState, ctx: RunContext, candidate: NormalizedCandidate, status: str) -> AcceptedLead:
    run = state["run"]
    lead = AcceptedLead.from_candidate(candidate, status, run.list_name)
    ctx.clean_leads.append(lead)
    state["clean_leads"] = ctx.clean_leads
    run.accepted += 1
    return lead


def stop_if_cancelled(state: LeadState, ctx: RunContext, after: str) -> bool:
    """Check the token after a blocking call; drop the in-flight batch if set."""
    if not ctx.token.cancelled:
        return False
    logger.info(f"[ABORT] Detected after {after}, stopping \"{state['run'].list_name}\"")
    state["stop_reason"] = "cancelled"
    state["batch"] = []
    state["candidates"] = []
    return True


async def fail_batch(state: LeadState, ctx: RunContext, exc: Exception) -> None:
    """Batch-level failure: fatal with zero accepted leads, otherwise finish with what we have."""
    run = state["run"]
    error_msg = f"Error in batch {run.batch_number}: {exc}. Continuing with {run.accepted} leads..."
    logger.error(error_msg)
    state.setdefault("errors", []).append(str(exc))
    await ctx.emit(progress_event(run, "error_in_batch", error_msg))

    state["batch"] = []
    state["candidates"] = []
    if run.accepted == 0:
        state["fatal_error"] = str(exc)
    else:
        run.exhausted = True
        state["stop_reason"] = "source_error"
