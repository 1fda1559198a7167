import json
from contextlib import contextmanager
from typing import Dict, Iterable, List, Optional, Set, Tuple, Any, AsyncIterator

import redis.asyncio as redis
from redis.exceptions import RedisError
from loguru import logger

from graph.state import AcceptedLead, utcnow
from tools.errors import PersistenceError

LEADS_KEY = "leads"                  # email -> lead JSON, one row per email
LISTS_KEY = "leads:lists"            # known list tags
LIST_MEMBERS_KEY = "leads:list:{}"   # list tag -> emails
VERIFICATIONS_KEY = "verifications"  # email -> {status, verified_at}
SUPPRESSION_KEY = "suppression"      # email -> {source, created_at}

NOT_A_VERDICT = {"error", "unverified"}


@contextmanager
def _store_errors(action: str, at_risk: int = 0):
    try:
        yield
    except RedisError as e:
        logger.error(f"Lead store {action} failed: {e}")
        raise PersistenceError(f"Lead store {action} failed: {e}", at_risk=at_risk) from e


def _status_of(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return None
    status = data.get("status") or data.get("verified_status")
    if not status or status in NOT_A_VERDICT:
        return None
    return status


class LeadStore:
    """Redis-backed storage for accepted leads, verification results and suppressions.

    Every batch operation is a single pipelined round trip.
    """

    def __init__(self, client):
        self.r = client

    @classmethod
    def from_url(cls, url: str) -> "LeadStore":
        return cls(redis.from_url(url, decode_responses=True))

    async def ping(self) -> bool:
        try:
            return bool(await self.r.ping())
        except RedisError as e:
            logger.error(f"Redis ping failed: {e}")
            return False

    async def close(self) -> None:
        await self.r.aclose()

    async def lookup(self, emails: List[str]) -> Tuple[Set[str], Set[str]]:
        """
        Check a batch against stored leads and the suppression set.

        Args:
            emails: Normalized emails of one batch

        Returns:
            (emails already stored as leads, emails on the suppression list)
        """
        if not emails:
            return set(), set()
        with _store_errors("lookup"):
            pipe = self.r.pipeline(transaction=False)
            pipe.hmget(LEADS_KEY, emails)
            pipe.hmget(SUPPRESSION_KEY, emails)
            leads, suppressed = await pipe.execute()
        existing = {email for email, value in zip(emails, leads) if value is not None}
        blocked = {email for email, value in zip(emails, suppressed) if value is not None}
        return existing, blocked

    async def cached_statuses(self, emails: List[str]) -> Dict[str, str]:
        """Previously obtained verification verdicts for these emails."""
        if not emails:
            return {}
        with _store_errors("cache lookup"):
            pipe = self.r.pipeline(transaction=False)
            pipe.hmget(VERIFICATIONS_KEY, emails)
            pipe.hmget(LEADS_KEY, emails)
            verifications, leads = await pipe.execute()

        cached = {}
        for email, verification, lead in zip(emails, verifications, leads):
            status = _status_of(verification) or _status_of(lead)
            if status:
                cached[email] = status
        return cached

    async def remember_verifications(self, results: Dict[str, str]) -> int:
        """Store verification verdicts so later runs can reuse them. Errors are not stored."""
        verified_at = utcnow().isoformat()
        mapping = {
            email: json.dumps({"status": status, "verified_at": verified_at})
            for email, status in results.items()
            if status not in NOT_A_VERDICT
        }
        if not mapping:
            return 0
        with _store_errors("verification write"):
            await self.r.hset(VERIFICATIONS_KEY, mapping=mapping)
        return len(mapping)

    async def existing_leads(self, emails: List[str]) -> Set[str]:
        if not emails:
            return set()
        with _store_errors("existence check"):
            values = await self.r.hmget(LEADS_KEY, emails)
        return {email for email, value in zip(emails, values) if value is not None}

    async def insert_leads(self, leads: List[AcceptedLead]) -> int:
        """
        Insert leads that are not stored yet.

        Uses HSETNX so the store keeps exactly one row per email even when
        two writers race on the same address.

        Returns:
            Number of rows actually inserted
        """
        if not leads:
            return 0
        with _store_errors("insert", at_risk=len(leads)):
            pipe = self.r.pipeline(transaction=False)
            for lead in leads:
                pipe.hsetnx(LEADS_KEY, lead.email, json.dumps(lead.to_record()))
            flags = await pipe.execute()

            inserted = [lead for lead, flag in zip(leads, flags) if flag]
            if inserted:
                pipe = self.r.pipeline(transaction=False)
                for lead in inserted:
                    pipe.sadd(LIST_MEMBERS_KEY.format(lead.list_name), lead.email)
                    pipe.sadd(LISTS_KEY, lead.list_name)
                    pipe.hset(VERIFICATIONS_KEY, lead.email, json.dumps({
                        "status": lead.verified_status,
                        "verified_at": lead.verified_at.isoformat() if lead.verified_at else None,
                    }))
                await pipe.execute()
        return len(inserted)

    async def count_leads(self, list_name: Optional[str] = None) -> int:
        with _store_errors("count"):
            if list_name:
                return await self.r.scard(LIST_MEMBERS_KEY.format(list_name))
            return await self.r.hlen(LEADS_KEY)

    async def list_stats(self) -> List[Dict[str, Any]]:
        """Lead count per list tag, sorted by tag."""
        with _store_errors("list stats"):
            tags = sorted(await self.r.smembers(LISTS_KEY))
            if not tags:
                return []
            pipe = self.r.pipeline(transaction=False)
            for tag in tags:
                pipe.scard(LIST_MEMBERS_KEY.format(tag))
            counts = await pipe.execute()
        return [{"sourceCampaignTag": tag, "total": count} for tag, count in zip(tags, counts)]

    async def iter_lead_emails(self) -> AsyncIterator[str]:
        with _store_errors("scan"):
            async for email, _ in self.r.hscan_iter(LEADS_KEY):
                yield email

    async def add_suppressed(self, emails: Iterable[str], source: str) -> int:
        """Add emails to the suppression set. Already-present emails are left untouched."""
        emails = list(dict.fromkeys(e.strip().lower() for e in emails if e and e.strip()))
        if not emails:
            return 0
        entry = json.dumps({"source": source, "created_at": utcnow().isoformat()})
        with _store_errors("suppression insert"):
            pipe = self.r.pipeline(transaction=False)
            for email in emails:
                pipe.hsetnx(SUPPRESSION_KEY, email, entry)
            flags = await pipe.execute()
        return sum(1 for flag in flags if flag)

    async def suppression_stats(self) -> Dict[str, Any]:
        by_source: Dict[str, int] = {}
        with _store_errors("suppression stats"):
            total = await self.r.hlen(SUPPRESSION_KEY)
            async for _, raw in self.r.hscan_iter(SUPPRESSION_KEY):
                try:
                    source = json.loads(raw).get("source", "unknown")
                except json.JSONDecodeError:
                    source = "unknown"
                by_source[source] = by_source.get(source, 0) + 1
        return {"total": total, "bySource": by_source}

    async def clear_suppression(self) -> int:
        """Drop the whole suppression list. Returns how many emails it held."""
        with _store_errors("suppression clear"):
            pipe = self.r.pipeline(transaction=True)
            pipe.hlen(SUPPRESSION_KEY)
            pipe.delete(SUPPRESSION_KEY)
            count, _ = await pipe.execute()
        logger.info(f"Cleared {count} suppressed emails")
        return count
