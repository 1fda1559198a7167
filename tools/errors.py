from typing import Optional


class LeadListError(Exception):
    """Base class for list generation failures."""


class ConfigurationError(LeadListError):
    """Required settings are missing. Raised before any fetch happens."""

    def __init__(self, missing):
        self.missing = list(missing)
        super().__init__(f"Missing configuration: {', '.join(self.missing)}")


class SourceError(LeadListError):
    """Candidate source query failed (timeout, auth, syntax, ...)."""

    def __init__(self, message: str, kind: str = "unknown", query: Optional[str] = None):
        super().__init__(message)
        self.kind = kind
        self.query = query


class VerificationCallError(LeadListError):
    """A single verification call failed. Recorded as status `error`."""

    def __init__(self, email: str, message: str):
        super().__init__(f"Verification failed for {email}: {message}")
        self.email = email


class PersistenceError(LeadListError):
    """Store read or write failed."""

    def __init__(self, message: str, at_risk: int = 0):
        super().__init__(message)
        self.at_risk = at_risk
