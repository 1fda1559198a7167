import os
import re
import json
from dataclasses import dataclass
from typing import FrozenSet, Optional
from loguru import logger

ROLE_PREFIXES: FrozenSet[str] = frozenset({
    "info", "admin", "support", "sales", "contact", "hello",
    "help", "service", "billing", "office", "team", "hr",
    "marketing", "press", "media", "webmaster", "postmaster",
    "noreply", "no-reply", "do-not-reply", "donotreply",
    "abuse", "spam", "mailer-daemon", "root", "hostmaster",
    "accounts", "enquiry", "enquiries", "feedback",
    "general", "careers", "jobs", "recruitment", "newsletter",
    "subscribe", "unsubscribe", "notifications", "alerts",
    "updates", "orders", "invoices", "payments", "returns",
    "reception", "security", "compliance", "legal", "privacy",
    "customerservice", "customer-service", "cs", "it",
    "tech", "techsupport", "helpdesk", "ops", "operations",
    "mail", "email", "test", "testing", "demo", "example",
    "null", "void", "nobody", "none", "temp", "temporary",
    "user", "default", "www", "ftp", "server", "system",
    "sysadmin", "administrator",
})

DISPOSABLE_DOMAINS: FrozenSet[str] = frozenset({
    "mailinator.com", "guerrillamail.com", "guerrillamail.de",
    "tempmail.com", "throwaway.email", "yopmail.com",
    "trashmail.com", "sharklasers.com", "grr.la",
    "guerrillamailblock.com", "maildrop.cc", "dispostable.com",
    "temp-mail.org", "fakeinbox.com", "getnada.com",
    "mailnesia.com", "tempail.com", "tempr.email",
    "discard.email", "mailsac.com", "mohmal.com",
    "burnermail.io", "inboxkitten.com", "minutemail.com",
    "example.com", "example.org", "example.net",
    "test.com", "test.org", "localhost", "invalid.com",
    "noemail.com", "email.com", "none.com", "na.com",
    "nomail.com", "fake.com", "null.com",
})

ILLEGAL_CHARS = re.compile(r"[\s,;!#$%^&*()=+\[\]{}|\\<>/\"']")
ROLE_NOISE = re.compile(r"[._\-+0-9]")
REPEATED_CHAR = re.compile(r"^(.)\1{4,}$")


@dataclass(frozen=True)
class FilterRules:
    """Static tables used by the pre-verification filter."""
    role_prefixes: FrozenSet[str] = ROLE_PREFIXES
    disposable_domains: FrozenSet[str] = DISPOSABLE_DOMAINS

    def extended(self, role_prefixes=(), disposable_domains=()) -> "FilterRules":
        return FilterRules(
            role_prefixes=self.role_prefixes | {p.strip().lower() for p in role_prefixes if p.strip()},
            disposable_domains=self.disposable_domains | {d.strip().lower() for d in disposable_domains if d.strip()},
        )


DEFAULT_RULES = FilterRules()


def load_filter_rules(path: Optional[str] = None) -> FilterRules:
    """Default tables, extended by an optional JSON file.

    The file may hold ``role_prefixes`` and ``disposable_domains`` lists.
    """
    path = path or os.getenv("FILTER_RULES_JSON")
    if not path:
        return DEFAULT_RULES
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except FileNotFoundError:
        logger.warning(f"Filter rules not found at {path}, using defaults")
        return DEFAULT_RULES
    except json.JSONDecodeError:
        logger.error(f"Invalid JSON in filter rules {path}")
        return DEFAULT_RULES

    rules = DEFAULT_RULES.extended(
        role_prefixes=data.get("role_prefixes", []),
        disposable_domains=data.get("disposable_domains", []),
    )
    logger.info(
        f"Loaded filter rules from {path}: {len(rules.role_prefixes)} role prefixes, "
        f"{len(rules.disposable_domains)} disposable domains"
    )
    return rules


def rejection_reason(email: str, rules: FilterRules = DEFAULT_RULES) -> Optional[str]:
    """First rule the address breaks, or None when it may be verified.

    Rules run in a fixed order; the first match wins.
    """
    at = email.find("@")
    if at < 1:
        return "malformed"
    local, domain = email[:at], email[at + 1:]

    last_dot = domain.rfind(".")
    if last_dot < 1 or len(domain) - last_dot - 1 < 2:
        return "malformed"

    if ILLEGAL_CHARS.search(email):
        return "illegal_characters"

    if len(local) < 2:
        return "short_local_part"

    lowered = local.lower()
    if lowered in rules.role_prefixes or ROLE_NOISE.sub("", lowered) in rules.role_prefixes:
        return "role_account"

    if domain.lower() in rules.disposable_domains:
        return "disposable_domain"

    if REPEATED_CHAR.match(local) or local.isdigit():
        return "fake_pattern"

    return None
