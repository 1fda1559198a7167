"""List generation workflow.

The adaptive loop is a LangGraph state machine::

    fetch -> normalize -> prefilter -> dedupe -> cache -> verify -> fetch ...
    fetch -> save -> finalize          (target met, exhausted, ceiling, cancelled)
    fetch -> finalize                  (fatal error with zero leads)

:func:`generate_list` wraps one run: input validation, configuration check,
run lock, graph execution and the guarantee of exactly one terminal event.
"""
import time
from dataclasses import dataclass
from typing import Optional

from langgraph.graph import StateGraph, START, END
from loguru import logger

from graph.cancellation import CancellationToken
from graph.context import RunContext, Emit
from graph.nodes.cache import cache
from graph.nodes.dedupe import dedupe
from graph.nodes.fetch import fetch, max_batches
from graph.nodes.finalize import finalize
from graph.nodes.normalize import normalize, GENDER_FILTERS
from graph.nodes.prefilter import prefilter
from graph.nodes.save import save, persist_leads, write_unsaved
from graph.nodes.verify import verify
from graph.events import DoneEvent, ErrorEvent
from graph.progress import status_event, error_event, done_event
from graph.rules import FilterRules, load_filter_rules
from graph.state import LeadState, RunState
from tools.bigquery import SourceFilter
from tools.errors import ConfigurationError, PersistenceError
from tools.gender import infer_gender
from tools.idempotency import RunLock
from tools.settings import Settings

LOOP_NODES = ("fetch", "normalize", "prefilter", "dedupe", "cache", "verify")


@dataclass
class ListRequest:
    """One invocation of the generator."""
    list_name: str
    target: int
    gender: str = "All"
    industry_filter: Optional[str] = None

    def validate(self) -> None:
        if not self.list_name or not self.list_name.strip():
            raise ValueError("listName is required")
        if not isinstance(self.target, int) or self.target <= 0:
            raise ValueError("target must be a positive integer")
        gender = (self.gender or "All").strip().lower()
        if gender != "all" and gender not in GENDER_FILTERS:
            raise ValueError(f"gender must be one of All, male, female (got '{self.gender}')")


def build_workflow():
    """Build the list generation workflow."""
    workflow = StateGraph(LeadState)

    workflow.add_node("fetch", fetch)
    workflow.add_node("normalize", normalize)
    workflow.add_node("prefilter", prefilter)
    workflow.add_node("dedupe", dedupe)
    workflow.add_node("cache", cache)
    workflow.add_node("verify", verify)
    workflow.add_node("save", save)
    workflow.add_node("finalize", finalize)

    workflow.add_edge(START, "fetch")

    def branch_after_fetch(state: LeadState) -> str:
        if state.get("fatal_error"):
            return "finalize"
        if state.get("stop_reason"):
            return "save"
        return "normalize"

    workflow.add_conditional_edges(
        "fetch",
        branch_after_fetch,
        {
            "normalize": "normalize",
            "save": "save",
            "finalize": "finalize",
        }
    )

    workflow.add_edge("normalize", "prefilter")
    workflow.add_edge("prefilter", "dedupe")
    workflow.add_edge("dedupe", "cache")
    workflow.add_edge("cache", "verify")
    workflow.add_edge("verify", "fetch")
    workflow.add_edge("save", "finalize")
    workflow.add_edge("finalize", END)

    return workflow.compile()


app_graph = build_workflow()


def recursion_limit(target: int, settings: Settings) -> int:
    """Graph step budget: enough for every batch the fetch node can allow, plus save/finalize."""
    batches = max_batches(target, settings.safety_multiplier, settings.min_fetch_size)
    return (batches + 2) * len(LOOP_NODES) + 10


async def finish_after_failure(ctx: RunContext, run: RunState) -> None:
    """Unexpected failure after leads were accepted: save them and end with `done`."""
    run.exhausted = True
    cancelled = ctx.token.cancelled
    try:
        persisted, persistence_error, unsaved_file = await persist_leads(ctx, run, ctx.clean_leads, cancelled)
    except Exception as e:
        logger.exception(f"Saving leads of \"{run.list_name}\" after a failure also failed: {e}")
        persisted = 0
        persistence_error = f"Database save failed with {len(ctx.clean_leads)} leads at risk: {e}"
        unsaved_file = write_unsaved(ctx.settings.unsaved_dir, run.list_name, ctx.clean_leads)
    await ctx.emit(done_event(
        run,
        persisted=persisted,
        cancelled=cancelled,
        persistence_error=persistence_error,
        unsaved_file=unsaved_file,
    ))


async def generate_list(
    request: ListRequest,
    settings: Settings,
    source,
    verifier,
    store,
    emit: Emit,
    token: Optional[CancellationToken] = None,
    lock: Optional[RunLock] = None,
    rules: Optional[FilterRules] = None,
    classify_gender=infer_gender,
) -> Optional[LeadState]:
    """
    Run one list generation end to end.

    Every call emits exactly one terminal event (`done` or `error`) through
    `emit`, and never raises. Once a lead is accepted the terminal event is
    always `done`, even when the workflow itself fails.

    Args:
        request: List name, target, gender and industry filter
        settings: Loaded settings
        source: Candidate source with `fetch(filter, limit, offset)`
        verifier: Verifier with `verify(email)`
        store: LeadStore
        emit: Async callback receiving progress events in order
        token: Cancellation token (a fresh one when omitted)
        lock: Optional per-list run lock

    Returns:
        Final workflow state, or None when the run never started or failed
    """
    token = token or CancellationToken()
    start_time = time.time()
    terminal_sent = False

    async def send(event) -> None:
        nonlocal terminal_sent
        if isinstance(event, (DoneEvent, ErrorEvent)):
            terminal_sent = True
        await emit(event)

    try:
        request.validate()
    except ValueError as e:
        await send(error_event(str(e)))
        return None

    list_name = request.list_name.strip()
    locked = False
    run = None
    ctx = None
    try:
        missing = settings.missing()
        if missing:
            raise ConfigurationError(missing)

        if lock is not None:
            if not await lock.acquire(list_name):
                logger.warning(f"Run for \"{list_name}\" rejected: another run holds the lock")
                await send(error_event(f"A run for list \"{list_name}\" is already in progress"))
                return None
            locked = True

        await send(status_event(
            f"Starting list generation for \"{list_name}\" (target {request.target}, gender {request.gender})..."
        ))

        run = RunState(
            list_name=list_name,
            target=request.target,
            gender_filter=request.gender,
            industry_filter=request.industry_filter,
        )
        ctx = RunContext(
            settings=settings,
            source=source,
            verifier=verifier,
            store=store,
            emit=send,
            token=token,
            classify_gender=classify_gender,
            source_filter=SourceFilter(industry=request.industry_filter, sources=list(settings.enabled_sources)),
            rules=rules or load_filter_rules(settings.filter_rules_path),
        )
        initial_state: LeadState = {
            "run": run,
            "batch": [],
            "candidates": [],
            "clean_leads": ctx.clean_leads,
            "stop_reason": None,
            "fatal_error": None,
            "persisted": 0,
            "errors": [],
        }

        logger.info(f"Starting workflow for \"{list_name}\": target={request.target}, gender={request.gender}, "
                    f"industry={request.industry_filter!r}")
        result = await app_graph.ainvoke(
            initial_state,
            config={"configurable": {"ctx": ctx}, "recursion_limit": recursion_limit(request.target, settings)},
        )
        logger.info(f"Workflow for \"{list_name}\" completed in {time.time() - start_time:.2f}s")
        return result

    except ConfigurationError as e:
        logger.error(str(e))
        await send(error_event(str(e)))
    except Exception as e:
        logger.exception(f"List generation for \"{list_name}\" failed: {e}")
        if terminal_sent:
            logger.warning(f"Terminal event for \"{list_name}\" already sent; nothing left to report")
        elif ctx is not None and ctx.clean_leads:
            await finish_after_failure(ctx, run)
        elif isinstance(e, PersistenceError):
            await send(error_event(f"Lead store unavailable: {e}"))
        else:
            await send(error_event(f"List generation failed: {e}"))
    finally:
        if locked:
            await lock.release(list_name)
    return None
