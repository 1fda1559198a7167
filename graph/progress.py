import os
from typing import Optional

from graph.events import StatusEvent, ProgressSnapshot, DoneEvent, ErrorEvent, RunStats
from graph.state import RunState


def status_event(message: str) -> StatusEvent:
    return StatusEvent(message=message)


def error_event(message: str) -> ErrorEvent:
    return ErrorEvent(message=message)


def progress_event(run: RunState, phase: str, message: str) -> ProgressSnapshot:
    """Snapshot of the run counters tagged with the phase that just happened."""
    return ProgressSnapshot(
        phase=phase,
        batch=run.batch_number,
        clean=run.accepted,
        target=run.target,
        fetched=run.fetched,
        sent_to_reoon=run.sent_to_verifier,
        duplicates=run.duplicates,
        suppressed=run.suppressed,
        pre_filtered=run.pre_filtered,
        breakdown=dict(run.status_breakdown),
        message=message,
    )


def summary_message(run: RunState, cancelled: bool) -> str:
    if cancelled:
        if run.accepted == 0:
            return "Stopped by user before any leads were found."
        return f"Stopped by user. Kept {run.accepted} leads for list \"{run.list_name}\"."
    if run.accepted < run.target:
        return (
            f"Generated {run.accepted} leads (Target {run.target}). "
            f"Source exhausted after checking {run.examined} candidates."
        )
    return f"Successfully generated {run.accepted} clean leads for list \"{run.list_name}\"."


def done_event(
    run: RunState,
    persisted: int,
    cancelled: bool,
    sample_file: Optional[str] = None,
    persistence_error: Optional[str] = None,
    unsaved_file: Optional[str] = None,
) -> DoneEvent:
    """Terminal summary. `success` is false only when persisting failed."""
    message = summary_message(run, cancelled)
    if persistence_error:
        message = f"{message} {persistence_error}"
    stats = RunStats(
        total_fetched=run.fetched,
        total_after_local_filter=run.after_local_filter,
        total_sent_to_reoon=run.sent_to_verifier,
        total_verified_clean=run.accepted,
        duplicates_skipped=run.duplicates,
        suppressed_skipped=run.suppressed,
        pre_filtered=run.pre_filtered,
        candidates_checked=run.examined,
        status_breakdown=dict(run.status_breakdown),
        source_stats={src: dict(counts) for src, counts in run.source_stats.items()},
        sample_csv_entries=len(run.samples),
        sample_csv_file=os.path.basename(sample_file) if sample_file else None,
        message=message,
    )
    return DoneEvent(
        success=persistence_error is None,
        list_name=run.list_name,
        requested=run.target,
        stats=stats,
        clean_leads=run.accepted,
        persisted=persisted,
        exhausted=run.exhausted,
        cancelled=cancelled,
        persistence_error=persistence_error,
        unsaved_file=unsaved_file,
        message=message,
    )
