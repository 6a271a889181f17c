# tests/test_rate_limit.py
import pytest

from blogauth.core.errors import StoreError
from blogauth.infra.blob_store import MemoryBlobStore
from blogauth.services.rate_limit import (
    LIMITS, ActionClass, BlobRateLimitStore, MemoryRateLimitStore, RateLimiter, RateLimitStore,
    RedisRateLimitStore, rate_limit_key,
)
from conftest import FakeClock


class FakeRedis:
    """只实现 INCR / EXPIRE / PTTL，过期时间跟着假时钟走。"""

    def __init__(self, clock):
        self.clock = clock
        self.values = {}
        self.expiry = {}

    def _now(self):
        return self.clock().timestamp()

    def _purge(self, key):
        if key in self.expiry and self.expiry[key] <= self._now():
            self.values.pop(key, None)
            self.expiry.pop(key, None)

    def incr(self, key):
        self._purge(key)
        self.values[key] = self.values.get(key, 0) + 1
        return self.values[key]

    def expire(self, key, seconds):
        self.expiry[key] = self._now() + seconds
        return True

    def pttl(self, key):
        self._purge(key)
        if key not in self.values:
            return -2
        if key not in self.expiry:
            return -1
        return int((self.expiry[key] - self._now()) * 1000)


@pytest.fixture(params=["memory", "blob", "redis"])
def limiter(request):
    clock = FakeClock()
    if request.param == "memory":
        store = MemoryRateLimitStore()
    elif request.param == "blob":
        store = BlobRateLimitStore(MemoryBlobStore())
    else:
        store = RedisRateLimitStore(FakeRedis(clock))
    return RateLimiter(store=store, clock=clock), clock


def test_limits_table():
    assert (LIMITS[ActionClass.login].max_requests, LIMITS[ActionClass.login].window_seconds) == (5, 900)
    assert (LIMITS[ActionClass.registration].max_requests, LIMITS[ActionClass.registration].window_seconds) == (3, 3600)
    assert (LIMITS[ActionClass.password_reset].max_requests, LIMITS[ActionClass.password_reset].window_seconds) == (3, 3600)
    assert (LIMITS[ActionClass.api_call].max_requests, LIMITS[ActionClass.api_call].window_seconds) == (100, 60)


def test_sixth_login_in_window_is_denied(limiter):
    rl, _clock = limiter
    for _ in range(5):
        assert rl.check("1.2.3.4", ActionClass.login).allowed
    decision = rl.check("1.2.3.4", ActionClass.login)
    assert decision.allowed is False
    assert 1 <= decision.retry_after_seconds <= 900


def test_window_resets_after_elapsed_time(limiter):
    rl, clock = limiter
    for _ in range(6):
        rl.check("1.2.3.4", ActionClass.login)
    clock.advance(minutes=10)
    denied = rl.check("1.2.3.4", ActionClass.login)
    assert denied.allowed is False
    assert denied.retry_after_seconds == pytest.approx(300, abs=1)

    clock.advance(minutes=5, seconds=1)
    assert rl.check("1.2.3.4", ActionClass.login).allowed
    # 新窗口从 1 开始计数：还能再放行 4 次
    for _ in range(4):
        assert rl.check("1.2.3.4", ActionClass.login).allowed
    assert rl.check("1.2.3.4", ActionClass.login).allowed is False


def test_counters_are_per_ip_and_per_action(limiter):
    rl, _clock = limiter
    for _ in range(3):
        assert rl.check("10.0.0.1", ActionClass.registration).allowed
    assert rl.check("10.0.0.1", ActionClass.registration).allowed is False
    assert rl.check("10.0.0.2", ActionClass.registration).allowed
    assert rl.check("10.0.0.1", ActionClass.login).allowed


def test_blob_store_persists_window_under_rate_limit_key():
    blobs = MemoryBlobStore()
    clock = FakeClock()
    rl = RateLimiter(store=BlobRateLimitStore(blobs), clock=clock)
    rl.check("9.9.9.9", ActionClass.password_reset)
    rl.check("9.9.9.9", ActionClass.password_reset)
    record = blobs.get(rate_limit_key("9.9.9.9", ActionClass.password_reset))
    assert record["count"] == 2
    assert record["windowStart"] == pytest.approx(clock().timestamp())


def test_missing_ip_is_counted_as_unknown():
    rl = RateLimiter(clock=FakeClock())
    for _ in range(3):
        rl.check(None, ActionClass.registration)
    assert rl.check("unknown", ActionClass.registration).allowed is False


def test_store_failure_lets_request_through():
    class BrokenStore(RateLimitStore):
        def hit(self, key, window_seconds, now):
            raise StoreError("down")

    rl = RateLimiter(store=BrokenStore(), clock=FakeClock())
    assert rl.check("1.2.3.4", ActionClass.login).allowed
