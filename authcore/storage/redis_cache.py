from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

import redis.asyncio as aioredis

from authcore.clock import Clock, utc_now
from authcore.logging import get_logger
from authcore.service.rate_limit import CounterState

logger = get_logger(__name__)


class RedisAttemptCounter:
    """Shared fixed-window attempt counter for multi-instance deployments.

    Each key is incremented and given its expiry in one Lua call, so
    concurrent hits from several processes never lose an increment and a
    window always expires.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # INCR and arm the TTL on the first hit of a window, return count and remaining ms
    _HIT_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
end
local ttl = redis.call('PTTL', KEYS[1])
if ttl < 0 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""

    def __init__(
        self,
        redis_url: str,
        *,
        prefix: str = "authcore:attempts:",
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[aioredis.Redis] = None,
        clock: Clock = utc_now,
    ) -> None:
        self.redis_url = redis_url
        self.prefix = prefix
        self._clock = clock
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._hit = self.client.register_script(self._HIT_SCRIPT)

    async def hit(self, key: str, window: timedelta) -> CounterState:
        window_ms = max(1, int(window.total_seconds() * 1000))
        count, ttl_ms = await self._hit(keys=[self.prefix + key], args=[window_ms])
        reset_at = self._clock() + timedelta(milliseconds=int(ttl_ms))
        return CounterState(count=int(count), reset_at=reset_at)

    async def peek(self, key: str) -> Optional[CounterState]:
        raw = await self.client.get(self.prefix + key)
        if raw is None:
            return None
        ttl_ms = await self.client.pttl(self.prefix + key)
        reset_at: datetime = self._clock() + timedelta(milliseconds=max(int(ttl_ms), 0))
        return CounterState(count=int(raw), reset_at=reset_at)

    async def reset(self, key: str) -> None:
        await self.client.delete(self.prefix + key)

    async def close(self) -> None:
        await self.client.aclose()
        logger.info("redis_counter_closed")
