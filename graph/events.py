"""Progress events streamed to the client during a run.

Four variants, discriminated by ``type``. The core builds these models; the
HTTP layer turns them into Server-Sent Events with :func:`to_sse`.
"""
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class StatusEvent(BaseModel):
    type: Literal["status"] = "status"
    message: str


class ProgressSnapshot(BaseModel):
    type: Literal["progress"] = "progress"
    phase: Literal["fetching", "filtered", "verifying", "saving", "exhausted", "error_in_batch"]
    batch: int = 0
    clean: int = 0
    target: int = 0
    fetched: int = 0
    sent_to_reoon: int = 0
    duplicates: int = 0
    suppressed: int = 0
    pre_filtered: int = 0
    breakdown: Dict[str, int] = Field(default_factory=dict)
    message: str = ""


class RunStats(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    total_fetched: int = Field(0, alias="totalFetched")
    total_after_local_filter: int = Field(0, alias="totalCandidatesAfterLocalFilter")
    total_sent_to_reoon: int = Field(0, alias="totalSentToReoon")
    total_verified_clean: int = Field(0, alias="totalVerifiedClean")
    duplicates_skipped: int = Field(0, alias="duplicatesSkipped")
    suppressed_skipped: int = Field(0, alias="suppressedSkipped")
    pre_filtered: int = Field(0, alias="preFiltered")
    candidates_checked: int = Field(0, alias="candidatesChecked")
    status_breakdown: Dict[str, int] = Field(default_factory=dict, alias="statusBreakdown")
    source_stats: Dict[str, Dict[str, int]] = Field(default_factory=dict, alias="sourceStats")
    sample_csv_entries: int = Field(0, alias="sampleCsvEntries")
    sample_csv_file: Optional[str] = Field(None, alias="sampleCsvFile")
    message: str = ""


class DoneEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["done"] = "done"
    success: bool = True
    list_name: str = Field(alias="listName")
    requested: int
    stats: RunStats
    clean_leads: int = Field(alias="cleanLeads")
    persisted: int = 0
    exhausted: bool = False
    cancelled: bool = False
    persistence_error: Optional[str] = Field(None, alias="persistenceError")
    unsaved_file: Optional[str] = Field(None, alias="unsavedFile")
    message: str = ""


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    message: str


ProgressEvent = Union[StatusEvent, ProgressSnapshot, DoneEvent, ErrorEvent]


def to_payload(event: ProgressEvent) -> Dict[str, Any]:
    """Wire representation of an event (camelCase where the client expects it)."""
    return event.model_dump(by_alias=True)


def to_sse(event: ProgressEvent) -> str:
    return f"data: {event.model_dump_json(by_alias=True)}\n\n"
