"""
Reservation Service — レート制限

IP ごとの固定ウィンドウ方式。カウンタは Redis に置くので
複数プロセスで起動しても上限は共有される。

    INCR ratelimit:<ip>     → 1 なら PEXPIRE でウィンドウを開始
    count > max_requests    → 429 TOO_MANY_REQUESTS
"""

from dataclasses import dataclass

import redis.asyncio as aioredis
from fastapi import Request

KEY_PREFIX = "ratelimit"


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int


class RateLimiter:
    def __init__(self, redis: aioredis.Redis, window_ms: int, max_requests: int) -> None:
        self.redis = redis
        self.window_ms = window_ms
        self.max_requests = max_requests

    async def hit(self, client_key: str) -> RateLimitResult:
        key = f"{KEY_PREFIX}:{client_key}"
        count = await self.redis.incr(key)
        if count == 1:
            await self.redis.pexpire(key, self.window_ms)
            ttl_ms = self.window_ms
        else:
            ttl_ms = await self.redis.pttl(key)
            if ttl_ms < 0:
                # PEXPIRE 前に落ちてTTLが付かなかったキー
                await self.redis.pexpire(key, self.window_ms)
                ttl_ms = self.window_ms

        return RateLimitResult(
            allowed=count <= self.max_requests,
            limit=self.max_requests,
            remaining=max(self.max_requests - count, 0),
            reset_seconds=-(-ttl_ms // 1000),
        )


def client_ip(request: Request) -> str:
    """プロキシ 1 段を信頼し、X-Forwarded-For の先頭を実 IP とみなす。"""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"
