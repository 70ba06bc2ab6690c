from __future__ import annotations
from typing import Optional
import redis.asyncio as redis


class Ledger:
    """Expiring key/value namespace on Redis.

    Every mutating call is a single Redis command, so the atomicity comes
    from the server, not from read-then-write in here.
    """

    def __init__(self, r: redis.Redis) -> None:
        self.r = r

    async def claim(self, key: str, value: str, ttl_seconds: int) -> bool:
        # SET NX EX: create-if-absent with expiry in one round trip
        ok = await self.r.set(key, value, nx=True, ex=ttl_seconds)
        return bool(ok)

    async def replace(self, key: str, value: str) -> bool:
        # only if present, TTL untouched
        ok = await self.r.set(key, value, xx=True, keepttl=True)
        return bool(ok)

    async def put(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.r.set(key, value, ex=ttl_seconds)

    async def get(self, key: str) -> Optional[str]:
        return await self.r.get(key)

    async def release(self, key: str) -> None:
        await self.r.delete(key)
