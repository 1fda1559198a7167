import math
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import TypedDict, Optional, List, Dict, Any, Set

VERIFICATION_STATUSES = (
    "safe", "invalid", "catch_all", "risky", "unknown", "disabled", "error", "unverified",
)
SOURCE_STAT_KEYS = ("safe", "invalid", "catch_all", "unknown")
MAX_AUDIT_SAMPLES = 200


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _text(row: Dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = row.get(key)
        if value is not None and value != "":
            return str(value)
    return ""


@dataclass
class CandidateRecord:
    """One row pulled from the candidate source, not yet vetted."""
    email: str = ""
    first_name: str = ""
    last_name: str = ""
    company: str = ""
    source: str = ""
    source_detail: str = ""
    job_title: str = ""
    industry: str = ""
    location: str = ""
    company_domain: str = ""
    linkedin_url: str = ""

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CandidateRecord":
        """Build a record from a source row, tolerating camelCase aliases."""
        return cls(
            email=_text(row, "email"),
            first_name=_text(row, "first_name", "firstName"),
            last_name=_text(row, "last_name", "lastName"),
            company=_text(row, "company_name", "company"),
            source=_text(row, "source"),
            source_detail=_text(row, "source_detail", "sourceDetail"),
            job_title=_text(row, "job_title", "jobTitle"),
            industry=_text(row, "industry"),
            location=_text(row, "location"),
            company_domain=_text(row, "company_domain", "companyDomain"),
            linkedin_url=_text(row, "linkedin_url", "linkedinUrl"),
        )


@dataclass
class NormalizedCandidate(CandidateRecord):
    """Candidate with a single lowercase email and an inferred gender."""
    gender: str = "unknown"


@dataclass
class AcceptedLead(NormalizedCandidate):
    """A verified candidate that met the acceptable-status policy."""
    verified_status: str = "unverified"
    verified_at: Optional[datetime] = None
    list_name: str = ""
    pushed_downstream: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_candidate(cls, candidate: NormalizedCandidate, status: str, list_name: str,
                       verified_at: Optional[datetime] = None) -> "AcceptedLead":
        values = asdict(candidate)
        return cls(
            **values,
            verified_status=status,
            verified_at=verified_at or utcnow(),
            list_name=list_name,
        )

    def to_record(self) -> Dict[str, Any]:
        """JSON-ready representation stored in the lead table."""
        record = asdict(self)
        record["verified_at"] = self.verified_at.isoformat() if self.verified_at else None
        record["created_at"] = self.created_at.isoformat()
        return record


@dataclass
class RunState:
    """Per-run counters and cursor. Owned and mutated only by the orchestrator."""
    list_name: str
    target: int
    gender_filter: str = "All"
    industry_filter: Optional[str] = None
    accepted: int = 0
    examined: int = 0
    fetched: int = 0
    after_local_filter: int = 0
    sent_to_verifier: int = 0
    duplicates: int = 0
    suppressed: int = 0
    pre_filtered: int = 0
    normalize_rejected: int = 0
    cached: int = 0
    batch_number: int = 0
    offset: int = 0
    exhausted: bool = False
    status_breakdown: Dict[str, int] = field(default_factory=dict)
    source_stats: Dict[str, Dict[str, int]] = field(default_factory=dict)
    seen: Set[str] = field(default_factory=set)
    samples: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def remaining(self) -> int:
        return max(0, self.target - self.accepted)

    @property
    def target_reached(self) -> bool:
        return self.accepted >= self.target

    def candidate_ceiling(self, safety_multiplier: int) -> int:
        return self.target * safety_multiplier

    def next_fetch_size(self, oversample_factor: float, min_size: int, max_size: int) -> int:
        """Size of the next source page.

        The factor never drops below the configured oversample factor and rises
        to the observed examined/accepted ratio when attrition is heavier.
        """
        factor = oversample_factor
        if self.examined > 0:
            factor = max(oversample_factor, self.examined / max(self.accepted, 1))
        wanted = math.ceil(self.remaining * factor)
        return max(min_size, min(max_size, wanted))

    def bump(self, status: str, amount: int = 1) -> None:
        self.status_breakdown[status] = self.status_breakdown.get(status, 0) + amount

    def record_verification(self, email: str, source: str, status: str, cached: bool = False) -> None:
        """Count one verification outcome globally, per source and in the audit sample."""
        self.bump(status)
        if cached:
            self.cached += 1
            self.bump("cached")

        src = source or "unknown"
        stats = self.source_stats.setdefault(
            src, {"total": 0, "safe": 0, "invalid": 0, "catch_all": 0, "unknown": 0, "other": 0}
        )
        stats["total"] += 1
        stats[status if status in SOURCE_STAT_KEYS else "other"] += 1

        if len(self.samples) < MAX_AUDIT_SAMPLES:
            self.samples.append({"email": email, "source": source, "status": status, "cached": cached})


class LeadState(TypedDict, total=False):
    """State shape for the list generation workflow."""
    run: RunState
    batch: List[CandidateRecord]              # raw rows of the current page
    candidates: List[NormalizedCandidate]     # survivors of the current page
    page_rows: int                            # rows returned by the current page
    page_rejected: int                        # pre-filter rejections in the current page
    clean_leads: List[AcceptedLead]           # accepted so far, in acceptance order
    stop_reason: Optional[str]                # target_reached | exhausted | ceiling | cancelled | source_error
    fatal_error: Optional[str]
    persisted: int
    persistence_error: Optional[str]
    unsaved_file: Optional[str]
    sample_file: Optional[str]
    errors: List[str]
