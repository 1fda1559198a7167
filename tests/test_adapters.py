import os
import sys
from unittest.mock import patch

import httpx
import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from tools.bigquery import BigQuerySource, SourceFilter, build_query, classify_error
from tools.errors import SourceError, VerificationCallError
from tools.reoon import ReoonVerifier, REOON_VERIFY_URL
from tools.settings import load_settings


class TestReoonVerifier:
    """Verification client against a mocked transport."""

    def setup_method(self):
        self.requests = []

    def client(self, handler):
        def recorder(request):
            self.requests.append(request)
            return handler(request)
        return httpx.AsyncClient(transport=httpx.MockTransport(recorder))

    @pytest.mark.asyncio
    async def test_status_is_lowercased(self):
        client = self.client(lambda request: httpx.Response(200, json={"status": "SAFE"}))
        verifier = ReoonVerifier("secret", client=client)

        assert await verifier.verify("jsmith@acme.co") == "safe"

        request = self.requests[0]
        assert str(request.url).startswith(REOON_VERIFY_URL)
        assert request.url.params["email"] == "jsmith@acme.co"
        assert request.url.params["key"] == "secret"
        assert request.url.params["mode"] == "power"

    @pytest.mark.asyncio
    async def test_missing_status_is_unknown(self):
        client = self.client(lambda request: httpx.Response(200, json={"reason": "n/a"}))
        verifier = ReoonVerifier("secret", client=client)

        assert await verifier.verify("jsmith@acme.co") == "unknown"

    @pytest.mark.asyncio
    async def test_http_error_raises(self):
        client = self.client(lambda request: httpx.Response(500, text="upstream down"))
        verifier = ReoonVerifier("secret", client=client)

        with pytest.raises(VerificationCallError) as exc:
            await verifier.verify("jsmith@acme.co")
        assert "HTTP 500" in str(exc.value)

    @pytest.mark.asyncio
    async def test_transport_error_raises(self):
        def boom(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        verifier = ReoonVerifier("secret", client=self.client(boom))

        with pytest.raises(VerificationCallError):
            await verifier.verify("jsmith@acme.co")

    @pytest.mark.asyncio
    async def test_no_api_key_skips_call(self):
        verifier = ReoonVerifier(None, client=self.client(lambda request: httpx.Response(200, json={})))

        assert await verifier.verify("jsmith@acme.co") == "unknown"
        assert self.requests == []


class TestBigQuerySource:

    def test_build_query_strips_paging_and_adds_filters(self):
        template = "SELECT * FROM `leads.raw` WHERE ... ORDER BY created_at DESC LIMIT 10;"

        sql, params = build_query(template, SourceFilter(industry=" SaaS "), limit=100, offset=200)

        assert sql == (
            "SELECT * FROM `leads.raw` WHERE 1=1 AND first_name IS NOT NULL "
            "AND LOWER(industry) LIKE LOWER(@industry) ORDER BY RAND() LIMIT 100 OFFSET 200"
        )
        assert params == {"industry": "%SaaS%"}

    def test_build_query_without_where(self):
        sql, params = build_query("SELECT email, first_name FROM t", SourceFilter(sources=["apollo"]), 50, 0)

        assert sql == (
            "SELECT email, first_name FROM t WHERE first_name IS NOT NULL "
            "AND source IN UNNEST(@sources) ORDER BY RAND() LIMIT 50 OFFSET 0"
        )
        assert params == {"sources": ["apollo"]}

    def test_classify_error(self):
        assert classify_error("Query timed out") == "timeout"
        assert classify_error("Could not automatically determine credentials") == "credentials"
        assert classify_error("Access Denied: Table leads.raw") == "permission"
        assert classify_error("Syntax error: Unexpected keyword") == "sql_error"
        assert classify_error("something else") == "unknown"

    @pytest.mark.asyncio
    async def test_fetch_maps_rows(self):
        source = BigQuerySource("proj", "SELECT * FROM t")
        rows = [{"email": "Ann@Acme.co", "firstName": "Ann", "company_name": "Acme", "source": "apollo"}]

        with patch.object(BigQuerySource, "_execute", return_value=rows) as execute:
            records = await source.fetch(SourceFilter(), limit=100, offset=0)

        assert execute.call_count == 1
        assert records[0].email == "Ann@Acme.co"
        assert records[0].first_name == "Ann"
        assert records[0].company == "Acme"

    @pytest.mark.asyncio
    async def test_fetch_retries_then_raises_classified_error(self):
        source = BigQuerySource("proj", "SELECT * FROM t")

        with patch.object(BigQuerySource, "_execute", side_effect=RuntimeError("Syntax error at [1:8]")) as execute:
            with pytest.raises(SourceError) as exc:
                await source.fetch(SourceFilter(), limit=100, offset=0)

        assert execute.call_count == 2
        assert exc.value.kind == "sql_error"

    @pytest.mark.asyncio
    async def test_fetch_without_settings(self):
        with pytest.raises(SourceError) as exc:
            await BigQuerySource(None, None).fetch(SourceFilter(), limit=100, offset=0)
        assert exc.value.kind == "credentials"


class TestSettings:

    def test_defaults_and_missing(self, monkeypatch):
        for name in ("BQ_PROJECT_ID", "BQ_QUERY_TEMPLATE", "REOON_API_KEY", "REOON_STATUSES", "SAFETY_MULTIPLIER"):
            monkeypatch.delenv(name, raising=False)

        settings = load_settings()

        assert settings.allowed_statuses == ["safe"]
        assert settings.safety_multiplier == 20
        assert settings.missing() == ["bq_project_id", "bq_query_template", "reoon_api_key"]

    def test_env_values(self, monkeypatch):
        monkeypatch.setenv("BQ_PROJECT_ID", "proj")
        monkeypatch.setenv("REOON_STATUSES", '["safe", "catch_all"]')
        monkeypatch.setenv("ENABLED_SOURCES", '["apollo"]')
        monkeypatch.setenv("OVERSAMPLE_FACTOR", "3.5")

        settings = load_settings()

        assert settings.bq_project_id == "proj"
        assert settings.allowed_statuses == ["safe", "catch_all"]
        assert settings.enabled_sources == ["apollo"]
        assert settings.oversample_factor == 3.5

    def test_malformed_values_fall_back(self, monkeypatch):
        monkeypatch.setenv("REOON_STATUSES", "safe,catch_all")
        monkeypatch.setenv("MIN_FETCH_SIZE", "lots")
        monkeypatch.setenv("SAVE_CHUNK_SIZE", "-5")

        settings = load_settings()

        assert settings.allowed_statuses == ["safe"]
        assert settings.min_fetch_size == 100
        assert settings.save_chunk_size == 500
