import uuid
from typing import Dict

from redis.exceptions import RedisError, WatchError
from loguru import logger

from tools.errors import PersistenceError

DEFAULT_LOCK_TTL = 3600


class RunLock:
    """Redis-based guard that allows one active generation run per list name.

    Each acquisition stores a fresh owner token; release only deletes the key
    while it still holds that token, so a holder whose lock expired cannot
    free a lock taken by a later run.
    """

    def __init__(self, client, ttl: int = DEFAULT_LOCK_TTL):
        self.r = client
        self.ttl = ttl
        self._tokens: Dict[str, str] = {}

    @staticmethod
    def _key(list_name: str) -> str:
        return f"lock:list:{list_name}"

    async def acquire(self, list_name: str) -> bool:
        """
        Take the lock for a list name if nobody holds it.

        Args:
            list_name: List tag the run writes to

        Returns:
            True if the lock was taken, False if another run holds it
        """
        if not list_name:
            logger.warning("Empty list name provided to run lock")
            return False
        token = uuid.uuid4().hex
        try:
            result = await self.r.set(self._key(list_name), token, ex=self.ttl, nx=True)
        except RedisError as e:
            raise PersistenceError(f"Run lock for '{list_name}' failed: {e}") from e
        if result:
            self._tokens[list_name] = token
        return bool(result)

    async def release(self, list_name: str) -> bool:
        """Release the lock if this instance still owns it."""
        token = self._tokens.pop(list_name, None)
        if token is None:
            return False
        key = self._key(list_name)
        try:
            async with self.r.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                if await pipe.get(key) != token:
                    logger.warning(f"Run lock for '{list_name}' expired and is held by another run; not releasing")
                    return False
                pipe.multi()
                pipe.delete(key)
                await pipe.execute()
            return True
        except WatchError:
            logger.warning(f"Run lock for '{list_name}' changed while releasing; not releasing")
            return False
        except RedisError as e:
            logger.error(f"Failed to release run lock for '{list_name}': {e}")
            return False
