"""
Redis run locks.

Reconciliation talks to a rate-limited API with one credential and decides
what is free versus billable from ledger state, so no two runs may work on
the same tenant at once. Full runs hold ``all`` to keep full runs apart, and
every run holds ``tenant:<id>`` while it processes that tenant.

A held lock is renewed in the background. If renewal fails the lease is
marked lost and the holder stops at its next checkpoint.
"""

import asyncio
import secrets
from contextlib import asynccontextmanager
from typing import AsyncIterator

from redis.asyncio import Redis
from redis.exceptions import RedisError

from metering.errors import RunLockedError
from metering.utils.logging import get_logger

logger = get_logger(__name__)

KEY_PREFIX = "metering:reconcile:"
ALL_SCOPE = "all"

# Delete only if the stored token is ours
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""

# Extend only if the stored token is ours
_RENEW_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("pexpire", KEYS[1], ARGV[2])
end
return 0
"""


class LockLease:
    """A held lock. ``lost`` turns true once renewal fails."""

    def __init__(self, scope: str, token: str) -> None:
        self.scope = scope
        self.token = token
        self.lost = False


class RunLock:
    """Token-checked ``SET NX EX`` lock with background renewal."""

    def __init__(
        self,
        redis: Redis,
        ttl_seconds: int = 900,
        renew_interval_seconds: float | None = None,
    ) -> None:
        self._redis = redis
        self._ttl = ttl_seconds
        self._renew_interval = (
            renew_interval_seconds if renew_interval_seconds is not None else ttl_seconds / 3
        )

    @staticmethod
    def scope_for(tenant_id: str | None) -> str:
        if tenant_id is None:
            return ALL_SCOPE
        return f"tenant:{tenant_id}"

    async def acquire(self, scope: str) -> str | None:
        """Return a release token, or None when the scope is already locked."""
        token = secrets.token_hex(16)
        acquired = await self._redis.set(KEY_PREFIX + scope, token, nx=True, ex=self._ttl)
        if not acquired:
            return None
        logger.debug("run_lock_acquired", scope=scope, ttl=self._ttl)
        return token

    async def renew(self, scope: str, token: str) -> bool:
        renewed = await self._redis.eval(
            _RENEW_SCRIPT, 1, KEY_PREFIX + scope, token, int(self._ttl * 1000)
        )
        return bool(renewed)

    async def release(self, scope: str, token: str) -> bool:
        released = await self._redis.eval(_RELEASE_SCRIPT, 1, KEY_PREFIX + scope, token)
        if not released:
            logger.warning("run_lock_lost", scope=scope)
        return bool(released)

    async def _keep_alive(self, lease: LockLease) -> None:
        while True:
            await asyncio.sleep(self._renew_interval)
            try:
                renewed = await self.renew(lease.scope, lease.token)
            except RedisError as e:
                logger.error("run_lock_renew_failed", scope=lease.scope, error=str(e))
                renewed = False
            if not renewed:
                lease.lost = True
                logger.error("run_lock_expired", scope=lease.scope)
                return

    @asynccontextmanager
    async def hold(self, scope: str) -> AsyncIterator[LockLease]:
        """Hold and renew the lock for the duration of the block or raise RunLockedError."""
        token = await self.acquire(scope)
        if token is None:
            raise RunLockedError(scope)

        lease = LockLease(scope, token)
        keeper = asyncio.create_task(self._keep_alive(lease), name=f"run-lock:{scope}")
        try:
            yield lease
        finally:
            keeper.cancel()
            await asyncio.gather(keeper, return_exceptions=True)
            await self.release(scope, token)
