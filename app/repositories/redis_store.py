"""
Redis-backed rate limit counters, for running several API instances.

Each key is a hash ``{count, reset_time, created_at}`` (times in epoch
milliseconds) that Redis expires itself at ``reset_time``.
"""
from datetime import datetime, timezone
from typing import Optional, Tuple
import logging

import redis.asyncio as redis
from redis.exceptions import WatchError

from models.rate_limit import RateLimitRecord
from repositories.base import RateLimitRepository

logger = logging.getLogger(__name__)

KEY_PREFIX = "rate_limit:"


def _to_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def _from_ms(value) -> datetime:
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


class RedisRateLimitRepository(RateLimitRepository):

    def __init__(self, client: redis.Redis, prefix: str = KEY_PREFIX):
        self.client = client
        self.prefix = prefix

    def _name(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def _record(self, key: str, data) -> Optional[RateLimitRecord]:
        if not data:
            return None
        return RateLimitRecord(
            key=key,
            count=int(data["count"]),
            reset_time=_from_ms(data["reset_time"]),
            created_at=_from_ms(data.get("created_at", data["reset_time"])),
        )

    async def get(self, key: str) -> Optional[RateLimitRecord]:
        data = await self.client.hgetall(self._name(key))
        return self._record(key, data)

    async def consume(
        self,
        key: str,
        max_requests: int,
        reset_time: datetime,
        now: datetime,
    ) -> Tuple[RateLimitRecord, bool]:
        name = self._name(key)
        async with self.client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(name)
                    record = self._record(key, await pipe.hgetall(name))

                    if record is not None and now < record.reset_time and record.count >= max_requests:
                        return record, False

                    pipe.multi()
                    if record is None or now >= record.reset_time:
                        record = RateLimitRecord(key=key, count=1, reset_time=reset_time, created_at=now)
                        pipe.delete(name)
                        pipe.hset(name, mapping={
                            "count": 1,
                            "reset_time": _to_ms(reset_time),
                            "created_at": _to_ms(now),
                        })
                        pipe.pexpireat(name, _to_ms(reset_time))
                    else:
                        pipe.hincrby(name, "count", 1)
                        record.count += 1
                    await pipe.execute()
                    return record, True
                except WatchError:
                    # Key changed under us, retry with fresh state
                    logger.debug("Rate limit key contended, retrying")
                    continue

    async def delete(self, key: str) -> None:
        await self.client.delete(self._name(key))

    async def delete_expired(self, now: datetime) -> int:
        # Redis evicts keys at reset_time on its own
        return 0
