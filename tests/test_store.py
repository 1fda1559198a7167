import json
import os
import sys

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fakes import make_store
from graph.state import AcceptedLead, NormalizedCandidate
from tools.idempotency import RunLock


def lead(email, list_name="q3", status="safe", source="apollo"):
    candidate = NormalizedCandidate(email=email, first_name="Sam", source=source)
    return AcceptedLead.from_candidate(candidate, status, list_name)


class TestLeadStore:
    """Redis-backed lead, verification and suppression storage."""

    def setup_method(self):
        self.store = make_store()

    @pytest.mark.asyncio
    async def test_insert_is_idempotent(self):
        chunk = [lead("a1@acme.co"), lead("a2@acme.co")]

        first = await self.store.insert_leads(chunk)
        second = await self.store.insert_leads(chunk)

        assert first == 2
        assert second == 0
        assert await self.store.count_leads() == 2
        assert await self.store.count_leads("q3") == 2

    @pytest.mark.asyncio
    async def test_one_row_per_email_across_lists(self):
        await self.store.insert_leads([lead("a1@acme.co", list_name="first")])
        inserted = await self.store.insert_leads([lead("a1@acme.co", list_name="second")])

        assert inserted == 0
        stored = json.loads(await self.store.r.hget("leads", "a1@acme.co"))
        assert stored["list_name"] == "first"
        assert stored["verified_status"] == "safe"
        assert stored["verified_at"] is not None

    @pytest.mark.asyncio
    async def test_lookup_separates_leads_and_suppressions(self):
        await self.store.insert_leads([lead("known@acme.co")])
        await self.store.add_suppressed(["Blocked@Acme.co"], source="uploaded")

        existing, blocked = await self.store.lookup(["known@acme.co", "blocked@acme.co", "new@acme.co"])

        assert existing == {"known@acme.co"}
        assert blocked == {"blocked@acme.co"}

    @pytest.mark.asyncio
    async def test_lookup_empty_batch(self):
        assert await self.store.lookup([]) == (set(), set())

    @pytest.mark.asyncio
    async def test_cached_statuses(self):
        await self.store.remember_verifications({
            "seen@acme.co": "invalid",
            "failed@acme.co": "error",
        })
        await self.store.insert_leads([lead("stored@acme.co", status="catch_all")])

        cached = await self.store.cached_statuses(
            ["seen@acme.co", "failed@acme.co", "stored@acme.co", "new@acme.co"]
        )

        assert cached == {"seen@acme.co": "invalid", "stored@acme.co": "catch_all"}

    @pytest.mark.asyncio
    async def test_existing_leads(self):
        await self.store.insert_leads([lead("a1@acme.co")])
        assert await self.store.existing_leads(["a1@acme.co", "a2@acme.co"]) == {"a1@acme.co"}

    @pytest.mark.asyncio
    async def test_list_stats(self):
        await self.store.insert_leads([lead("a1@acme.co", "beta"), lead("a2@acme.co", "alpha"),
                                       lead("a3@acme.co", "beta")])

        assert await self.store.list_stats() == [
            {"sourceCampaignTag": "alpha", "total": 1},
            {"sourceCampaignTag": "beta", "total": 2},
        ]

    @pytest.mark.asyncio
    async def test_suppression_is_idempotent(self):
        added = await self.store.add_suppressed(["x@acme.co", " X@ACME.CO ", "y@acme.co", ""], source="uploaded")
        again = await self.store.add_suppressed(["y@acme.co", "z@acme.co"], source="synced-from-leads")

        assert added == 2
        assert again == 1
        stats = await self.store.suppression_stats()
        assert stats == {"total": 3, "bySource": {"uploaded": 2, "synced-from-leads": 1}}

    @pytest.mark.asyncio
    async def test_iter_lead_emails(self):
        await self.store.insert_leads([lead("a1@acme.co"), lead("a2@acme.co")])
        emails = [email async for email in self.store.iter_lead_emails()]
        assert sorted(emails) == ["a1@acme.co", "a2@acme.co"]

    @pytest.mark.asyncio
    async def test_clear_suppression(self):
        await self.store.add_suppressed(["x@acme.co", "y@acme.co"], source="uploaded")

        assert await self.store.clear_suppression() == 2
        assert await self.store.clear_suppression() == 0
        assert (await self.store.suppression_stats())["total"] == 0

    @pytest.mark.asyncio
    async def test_ping(self):
        assert await self.store.ping() is True


class TestRunLock:

    def setup_method(self):
        self.lock = RunLock(make_store().r, ttl=60)

    @pytest.mark.asyncio
    async def test_acquire_once(self):
        assert await self.lock.acquire("q3") is True
        assert await self.lock.acquire("q3") is False
        assert await self.lock.acquire("q4") is True
        assert await self.lock.r.ttl("lock:list:q3") > 0

    @pytest.mark.asyncio
    async def test_release(self):
        await self.lock.acquire("q3")
        assert await self.lock.release("q3") is True
        assert await self.lock.acquire("q3") is True

    @pytest.mark.asyncio
    async def test_empty_name_rejected(self):
        assert await self.lock.acquire("") is False

    @pytest.mark.asyncio
    async def test_release_without_acquire(self):
        assert await self.lock.release("q3") is False

    @pytest.mark.asyncio
    async def test_expired_holder_cannot_release_new_owner(self):
        other = RunLock(self.lock.r, ttl=60)
        third = RunLock(self.lock.r, ttl=60)

        assert await self.lock.acquire("q3") is True
        # Lock expires while the first run is still going
        await self.lock.r.delete("lock:list:q3")
        assert await other.acquire("q3") is True

        assert await self.lock.release("q3") is False
        assert await third.acquire("q3") is False
        assert await other.release("q3") is True
        assert await third.acquire("q3") is True
