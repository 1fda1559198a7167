import re
import json
import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from loguru import logger
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from graph.state import CandidateRecord
from tools.errors import SourceError

FETCH_ATTEMPTS = 2
RETRY_DELAY_SECONDS = 2

query_log = logger.bind(channel="bigquery")

_TRAILING_LIMIT = re.compile(r"\s+LIMIT\s+\d+(\s+OFFSET\s+\d+)?[\s;]*$", re.IGNORECASE)
_TRAILING_ORDER = re.compile(r"\s+ORDER\s+BY\s+.+$", re.IGNORECASE | re.DOTALL)
_WHERE = re.compile(r"\bwhere\b", re.IGNORECASE)


@dataclass
class SourceFilter:
    """What the source should return. Gender is filtered locally, never in SQL."""
    industry: Optional[str] = None
    sources: List[str] = field(default_factory=list)


def classify_error(message: str) -> str:
    msg = message.lower()
    if "timeout" in msg or "timed out" in msg or "deadline" in msg:
        return "timeout"
    if "credentials" in msg or "auth" in msg:
        return "credentials"
    if "denied" in msg or "permission" in msg:
        return "permission"
    if "syntax error" in msg:
        return "sql_error"
    return "unknown"


def _append_condition(query: str, condition: str) -> str:
    joiner = " AND " if _WHERE.search(query) else " WHERE "
    return f"{query}{joiner}{condition}"


def build_query(template: str, source_filter: SourceFilter, limit: int, offset: int) -> Tuple[str, Dict[str, Any]]:
    """
    Turn the configured query template into one page query.

    Args:
        template: Base SELECT configured by the operator
        source_filter: Industry substring and source allow-list
        limit: Page size
        offset: Rows to skip

    Returns:
        SQL text and named query parameters
    """
    query = template.strip().rstrip(";")
    query = _TRAILING_LIMIT.sub("", query)
    query = _TRAILING_ORDER.sub("", query)
    params: Dict[str, Any] = {}

    # Gender never reaches SQL; the placeholder becomes a no-op
    if "..." in query:
        query = query.replace("...", "1=1")

    query = _append_condition(query, "first_name IS NOT NULL")

    industry = (source_filter.industry or "").strip()
    if industry:
        query = _append_condition(query, "LOWER(industry) LIKE LOWER(@industry)")
        params["industry"] = f"%{industry}%"

    if source_filter.sources:
        query = _append_condition(query, "source IN UNNEST(@sources)")
        params["sources"] = list(source_filter.sources)

    query += f" ORDER BY RAND() LIMIT {int(limit)} OFFSET {int(offset)}"
    return query, params


class BigQuerySource:
    """Candidate source backed by a BigQuery table of raw leads."""

    def __init__(self, project_id: Optional[str], query_template: Optional[str], location: str = "US",
                 timeout: float = 30.0, credentials_json: Optional[str] = None):
        self.project_id = project_id
        self.query_template = query_template
        self.location = location
        self.timeout = timeout
        self.credentials_json = credentials_json
        self._client = None

    def _get_client(self):
        if self._client is not None:
            return self._client

        from google.cloud import bigquery
        from google.oauth2 import service_account

        if self.credentials_json:
            try:
                info = json.loads(self.credentials_json)
            except json.JSONDecodeError as e:
                raise SourceError(
                    "GOOGLE_APPLICATION_CREDENTIALS_JSON is set but contains invalid JSON",
                    kind="credentials",
                ) from e
            credentials = service_account.Credentials.from_service_account_info(info)
            logger.info("BigQuery: using credentials from GOOGLE_APPLICATION_CREDENTIALS_JSON")
            self._client = bigquery.Client(
                project=self.project_id or info.get("project_id"), credentials=credentials
            )
        else:
            logger.info("BigQuery: using default credentials")
            self._client = bigquery.Client(project=self.project_id)
        return self._client

    def _execute(self, sql: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        from google.cloud import bigquery

        query_parameters = []
        if "industry" in params:
            query_parameters.append(bigquery.ScalarQueryParameter("industry", "STRING", params["industry"]))
        if "sources" in params:
            query_parameters.append(bigquery.ArrayQueryParameter("sources", "STRING", params["sources"]))

        job = self._get_client().query(
            sql,
            job_config=bigquery.QueryJobConfig(query_parameters=query_parameters),
            location=self.location,
        )
        return [dict(row.items()) for row in job.result(timeout=self.timeout)]

    @retry(
        reraise=True,
        retry=retry_if_exception_type(SourceError),
        stop=stop_after_attempt(FETCH_ATTEMPTS),
        wait=wait_fixed(RETRY_DELAY_SECONDS),
    )
    async def _run_query(self, sql: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        try:
            return await asyncio.wait_for(asyncio.to_thread(self._execute, sql, params), timeout=self.timeout)
        except SourceError:
            raise
        except asyncio.TimeoutError as e:
            logger.error(f"BigQuery query timed out after {self.timeout:.0f}s")
            raise SourceError(f"BigQuery query timed out after {self.timeout:.0f}s", kind="timeout", query=sql) from e
        except Exception as e:
            kind = classify_error(str(e))
            logger.error(f"BigQuery query failed ({kind}): {e}")
            raise SourceError(str(e), kind=kind, query=sql) from e

    async def fetch(self, source_filter: SourceFilter, limit: int, offset: int) -> List[CandidateRecord]:
        """Fetch one page of candidates. An empty list means the source is exhausted."""
        if not self.project_id or not self.query_template:
            raise SourceError("BigQuery settings missing", kind="credentials")

        sql, params = build_query(self.query_template, source_filter, limit, offset)
        query_log.info(f"Executing Query: {sql} params={params}")
        rows = await self._run_query(sql, params)
        logger.info(f"BigQuery returned {len(rows)} rows (limit={limit}, offset={offset})")
        return [CandidateRecord.from_row(row) for row in rows]
