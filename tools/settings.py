import os
import json
from dataclasses import dataclass, field
from typing import List, Optional
from loguru import logger

REQUIRED_SETTINGS = ("bq_project_id", "bq_query_template", "reoon_api_key")


@dataclass
class Settings:
    """Runtime configuration for one list generation run."""
    bq_project_id: Optional[str] = None
    bq_query_template: Optional[str] = None
    bq_location: str = "US"
    bq_timeout: float = 30.0
    google_credentials_json: Optional[str] = None
    reoon_api_key: Optional[str] = None
    reoon_mode: str = "power"
    reoon_timeout: float = 30.0
    allowed_statuses: List[str] = field(default_factory=lambda: ["safe"])
    enabled_sources: List[str] = field(default_factory=list)
    oversample_factor: float = 5.0
    safety_multiplier: int = 20
    min_fetch_size: int = 100
    max_fetch_size: int = 2000
    verify_batch_size: int = 5
    save_chunk_size: int = 500
    redis_url: str = "redis://localhost:6379"
    filter_rules_path: Optional[str] = None
    samples_dir: str = "verification_samples"
    unsaved_dir: str = "unsaved"

    def missing(self) -> List[str]:
        """Names of required settings that are not set."""
        return [name for name in REQUIRED_SETTINGS if not getattr(self, name)]


def _json_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if not raw:
        return list(default)
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"Invalid JSON in {name}, using default {default}")
        return list(default)
    if not isinstance(value, list):
        logger.warning(f"{name} must be a JSON list, using default {default}")
        return list(default)
    return [str(v) for v in value if str(v).strip()]


def _number(name: str, default, cast):
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = cast(raw)
    except ValueError:
        logger.warning(f"Invalid value for {name}: {raw!r}, using default {default}")
        return default
    if value <= 0:
        logger.warning(f"{name} must be positive, using default {default}")
        return default
    return value


def load_settings() -> Settings:
    """Read settings from the environment (`.env` is loaded by the app)."""
    return Settings(
        bq_project_id=os.getenv("BQ_PROJECT_ID"),
        bq_query_template=os.getenv("BQ_QUERY_TEMPLATE"),
        bq_location=os.getenv("BQ_LOCATION", "US"),
        bq_timeout=_number("BQ_TIMEOUT", 30.0, float),
        google_credentials_json=os.getenv("GOOGLE_APPLICATION_CREDENTIALS_JSON"),
        reoon_api_key=os.getenv("REOON_API_KEY"),
        reoon_mode=os.getenv("REOON_MODE", "power"),
        reoon_timeout=_number("REOON_TIMEOUT", 30.0, float),
        allowed_statuses=_json_list("REOON_STATUSES", ["safe"]),
        enabled_sources=_json_list("ENABLED_SOURCES", []),
        oversample_factor=_number("OVERSAMPLE_FACTOR", 5.0, float),
        safety_multiplier=_number("SAFETY_MULTIPLIER", 20, int),
        min_fetch_size=_number("MIN_FETCH_SIZE", 100, int),
        max_fetch_size=_number("MAX_FETCH_SIZE", 2000, int),
        verify_batch_size=_number("VERIFY_BATCH_SIZE", 5, int),
        save_chunk_size=_number("SAVE_CHUNK_SIZE", 500, int),
        redis_url=os.getenv("REDIS_URL", "redis://localhost:6379"),
        filter_rules_path=os.getenv("FILTER_RULES_JSON"),
        samples_dir=os.getenv("SAMPLES_DIR", "verification_samples"),
        unsaved_dir=os.getenv("UNSAVED_DIR", "unsaved"),
    )
