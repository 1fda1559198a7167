import asyncio
from typing import Optional
from loguru import logger


class CancellationToken:
    """Cooperative stop flag shared by the HTTP layer and one run.

    Setting it never interrupts an in-flight call; the orchestrator polls it
    after every external call and then finalizes normally.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "stopped by user") -> None:
        if not self._event.is_set():
            logger.info(f"Cancellation requested: {reason}")
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()
