"""
模块职能：
- 按 (客户端 IP, 动作类别) 做固定窗口限流：
  login 5 次 / 15 分钟，registration 3 次 / 小时，password_reset 3 次 / 小时，api_call 100 次 / 分钟。
- 窗口规则：now - windowStart >= window 时开新窗口；每次请求计数 +1；count <= max 放行；
  拒绝时给出 retry_after（向上取整秒，至少 1）。
- 计数存储可替换：
  - MemoryRateLimitStore：进程内 dict + 锁（默认，单实例）
  - BlobRateLimitStore：写到 Blob 存储 rate_limit_{ip}_{action}（多实例下非原子）
  - RedisRateLimitStore：INCR + EXPIRE（多实例部署，配置 RATE_LIMIT_REDIS_URL 时启用）
- 计数存储故障时放行请求并记错误日志。

日志：
- rate_limited / rate_limit_store_error
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Dict, Optional, Tuple

from pydantic import ValidationError
from redis import Redis
from redis.exceptions import RedisError

from blogauth.core.clock import Clock, utcnow
from blogauth.core.config import Settings
from blogauth.core.errors import StoreError
from blogauth.core.models_user import RateLimitWindow
from blogauth.infra.blob_store import BlobStore
from blogauth.infra.logger import emit, emit_error

RATE_LIMIT_PREFIX = "rate_limit_"


class ActionClass(str, Enum):
    login = "login"
    registration = "registration"
    password_reset = "password_reset"
    api_call = "api_call"


@dataclass(frozen=True)
class Limit:
    max_requests: int
    window_seconds: int


LIMITS: Dict[ActionClass, Limit] = {
    ActionClass.login: Limit(5, 15 * 60),
    ActionClass.registration: Limit(3, 60 * 60),
    ActionClass.password_reset: Limit(3, 60 * 60),
    ActionClass.api_call: Limit(100, 60),
}


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: Optional[int] = None


def rate_limit_key(ip: str, action: ActionClass) -> str:
    return f"{RATE_LIMIT_PREFIX}{ip}_{action.value}"


class RateLimitStore:
    """hit() 计一次数，返回 (本窗口内计数, 本窗口剩余秒数)。"""

    def hit(self, key: str, window_seconds: int, now: float) -> Tuple[int, float]:
        raise NotImplementedError


class MemoryRateLimitStore(RateLimitStore):
    def __init__(self):
        self._lock = Lock()
        self._windows: Dict[str, Tuple[int, float]] = {}

    def hit(self, key: str, window_seconds: int, now: float) -> Tuple[int, float]:
        with self._lock:
            count, window_start = self._windows.get(key, (0, now))
            if now - window_start >= window_seconds:
                count, window_start = 0, now
            count += 1
            self._windows[key] = (count, window_start)
            self._cleanup(now, window_seconds)
            return count, window_seconds - (now - window_start)

    def _cleanup(self, now: float, window_seconds: int) -> None:
        # 只清理比当前窗口更老的条目；最长窗口为 1 小时
        horizon = max(window_seconds, 60 * 60)
        if len(self._windows) < 10_000:
            return
        stale = [k for k, (_, start) in self._windows.items() if now - start >= horizon]
        for k in stale:
            self._windows.pop(k, None)


class BlobRateLimitStore(RateLimitStore):
    def __init__(self, blobs: BlobStore):
        self.blobs = blobs

    def hit(self, key: str, window_seconds: int, now: float) -> Tuple[int, float]:
        data = self.blobs.get(key)
        try:
            window = RateLimitWindow.model_validate(data) if data else RateLimitWindow(window_start=now)
        except ValidationError:
            window = RateLimitWindow(window_start=now)
        if now - window.window_start >= window_seconds:
            window = RateLimitWindow(window_start=now)
        window.count += 1
        self.blobs.set(key, window.to_store())
        return window.count, window_seconds - (now - window.window_start)


class RedisRateLimitStore(RateLimitStore):
    """窗口由 key 的 TTL 表示：第一次 INCR 时设置过期时间。"""

    def __init__(self, client: Redis):
        self.client = client

    def hit(self, key: str, window_seconds: int, now: float) -> Tuple[int, float]:
        count = int(self.client.incr(key))
        if count == 1:
            self.client.expire(key, window_seconds)
        ttl_ms = self.client.pttl(key)
        if ttl_ms is None or ttl_ms < 0:
            # 没有 TTL 的 key 补上过期时间
            self.client.expire(key, window_seconds)
            ttl_ms = window_seconds * 1000
        return count, ttl_ms / 1000.0


class RateLimiter:
    def __init__(self, store: Optional[RateLimitStore] = None,
                 limits: Optional[Dict[ActionClass, Limit]] = None, clock: Clock = utcnow):
        self.store = store or MemoryRateLimitStore()
        self.limits = dict(limits or LIMITS)
        self.clock = clock

    def check(self, ip: Optional[str], action: ActionClass) -> RateLimitDecision:
        ip = ip or "unknown"
        limit = self.limits[action]
        key = rate_limit_key(ip, action)
        try:
            count, remaining = self.store.hit(key, limit.window_seconds, self.clock().timestamp())
        except (StoreError, RedisError) as e:
            emit_error("rate_limit_store_error", ip=ip, action=action.value, error=str(e))
            return RateLimitDecision(allowed=True)

        if count <= limit.max_requests:
            return RateLimitDecision(allowed=True)

        retry_after = max(1, math.ceil(remaining))
        emit("rate_limited", level="WARNING", ip=ip, action=action.value, count=count, retry_after=retry_after)
        return RateLimitDecision(allowed=False, retry_after_seconds=retry_after)


def build_rate_limiter(settings: Settings, blobs: Optional[BlobStore] = None, clock: Clock = utcnow) -> RateLimiter:
    if settings.rate_limit_redis_url:
        store: RateLimitStore = RedisRateLimitStore(Redis.from_url(settings.rate_limit_redis_url))
        backend = "redis"
    elif blobs is not None:
        store = BlobRateLimitStore(blobs)
        backend = "blob"
    else:
        store = MemoryRateLimitStore()
        backend = "memory"
    emit("rate_limiter_ready", backend=backend)
    return RateLimiter(store=store, clock=clock)
