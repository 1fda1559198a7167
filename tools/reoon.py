import time
import httpx
from typing import Optional
from loguru import logger

from tools.errors import VerificationCallError

REOON_VERIFY_URL = "https://emailverifier.reoon.com/api/v1/verify"

verification_log = logger.bind(channel="verification")


class ReoonVerifier:
    """Email verification client for the Reoon API.

    One call per address; failures raise :class:`VerificationCallError` and
    are never retried here.
    """

    def __init__(self, api_key: Optional[str], mode: str = "power", timeout: float = 30.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.api_key = api_key
        self.mode = mode
        self.timeout = timeout
        self.base_url = REOON_VERIFY_URL
        self._client = client

    async def verify(self, email: str) -> str:
        """
        Verify one email address.

        Args:
            email: Normalized email address

        Returns:
            Status string reported by the service (`unknown` when absent)
        """
        if not self.api_key:
            return "unknown"

        start = time.monotonic()
        try:
            data = await self._get(email)
        except httpx.HTTPStatusError as e:
            message = f"HTTP {e.response.status_code}: {e.response.text[:200]}"
            verification_log.error(f"{email}: ERROR={message}")
            raise VerificationCallError(email, message) from e
        except (httpx.HTTPError, ValueError) as e:
            verification_log.error(f"{email}: ERROR={e!r}")
            raise VerificationCallError(email, str(e) or type(e).__name__) from e

        status = str(data.get("status") or "unknown").lower()
        duration = (time.monotonic() - start) * 1000
        verification_log.info(f"{email}: Status={status}, Duration={duration:.0f}ms")
        return status

    async def _get(self, email: str) -> dict:
        params = {"email": email, "key": self.api_key, "mode": self.mode}
        if self._client is not None:
            response = await self._client.get(self.base_url, params=params, timeout=self.timeout)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(self.base_url, params=params)
        response.raise_for_status()
        return response.json()
