from dataclasses import asdict
from typing import Callable, Optional

from langchain_core.runnables import RunnableConfig
from loguru import logger

from graph.context import get_context
from graph.state import LeadState, CandidateRecord, NormalizedCandidate

GENDER_FILTERS = {
    "male": "male",
    "men": "male",
    "female": "female",
    "women": "female",
}


def canonical_email(raw: str) -> Optional[str]:
    """First address of a possibly comma-separated field, trimmed and lowercased."""
    email = (raw or "").split(",")[0].strip().lower()
    if email.count("@") != 1:
        return None
    return email


def wanted_gender(gender_filter: Optional[str]) -> Optional[str]:
    """Gender a run keeps, or None when every gender is accepted."""
    return GENDER_FILTERS.get((gender_filter or "").strip().lower())


def normalize_candidate(record: CandidateRecord, classify: Callable[[str], str],
                        gender_filter: Optional[str] = None) -> Optional[NormalizedCandidate]:
    """
    Canonicalize one raw row.

    Args:
        record: Row from the candidate source
        classify: First name -> "male" | "female" | "unknown"
        gender_filter: Requested gender (All/Male/Female)

    Returns:
        The normalized candidate, or None when the row is rejected
    """
    email = canonical_email(record.email)
    first_name = (record.first_name or "").strip()
    if not email or not first_name:
        return None

    gender = classify(first_name)
    wanted = wanted_gender(gender_filter)
    if wanted and gender != wanted:
        return None

    values = asdict(record)
    values.update(email=email, first_name=first_name)
    return NormalizedCandidate(**values, gender=gender)


async def normalize(state: LeadState, config: RunnableConfig) -> LeadState:
    ctx = get_context(config)
    run = state["run"]
    rows = state.get("batch", [])

    survivors = []
    for record in rows:
        candidate = normalize_candidate(record, ctx.classify_gender, run.gender_filter)
        if candidate is None:
            run.normalize_rejected += 1
            continue
        survivors.append(candidate)

    if len(survivors) < len(rows):
        logger.debug(f"Batch {run.batch_number}: normalizer dropped {len(rows) - len(survivors)} rows")

    state["batch"] = []
    state["candidates"] = survivors
    return state
