"""In-progress claim markers for signatures being dispatched.

A claim is a Redis key set with NX and a TTL. The holder refreshes it before
each ledger call, so the TTL only has to cover one event. It bounds how long
a crashed worker can block a signature; once it expires, a later backfill
pass picks the signature up again.
"""

from __future__ import annotations

import logging
import os
import socket
import uuid

from redis.asyncio import Redis

logger = logging.getLogger(__name__)

DEFAULT_KEY_PREFIX = "burn_sync:claim:"
DEFAULT_CLAIM_TTL_SECONDS = 300

# Delete only if the stored owner token is ours.
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

# Reset the TTL only if the stored owner token is ours.
_REFRESH_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("expire", KEYS[1], ARGV[2])
else
    return 0
end
"""


def _default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class SignatureClaims:
    """Claim markers shared by all dispatch workers.

    Example:
        ```python
        claims = SignatureClaims(Redis.from_url("redis://localhost:6379"))
        if await claims.claim(signature):
            try:
                ...
            finally:
                await claims.release(signature)
        ```
    """

    def __init__(
        self,
        redis: Redis,
        *,
        ttl_seconds: int = DEFAULT_CLAIM_TTL_SECONDS,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        owner: str | None = None,
    ) -> None:
        self._redis = redis
        self._ttl = ttl_seconds
        self._key_prefix = key_prefix
        self._owner = owner or _default_owner()

    @property
    def owner(self) -> str:
        return self._owner

    def _key(self, signature: str) -> str:
        return f"{self._key_prefix}{signature}"

    async def claim(self, signature: str) -> bool:
        """Try to take the claim for ``signature``.

        Returns:
            True if this process now holds it, False if another worker does.
        """
        was_set = await self._redis.set(
            self._key(signature),
            self._owner,
            nx=True,
            ex=self._ttl,
        )
        if not was_set:
            logger.debug("Signature %s is claimed elsewhere", signature)
        return bool(was_set)

    async def release(self, signature: str) -> bool:
        """Release our claim. Returns False if we no longer held it."""
        deleted = await self._redis.eval(_RELEASE_SCRIPT, 1, self._key(signature), self._owner)
        return int(deleted or 0) > 0

    async def refresh(self, signature: str) -> bool:
        """Push our claim's expiry out by a full TTL.

        Returns:
            False if the claim expired or passed to another worker.
        """
        refreshed = await self._redis.eval(
            _REFRESH_SCRIPT, 1, self._key(signature), self._owner, self._ttl
        )
        return int(refreshed or 0) > 0
