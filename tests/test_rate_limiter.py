# =============================================================================
# Unit Tests — Rate Limiter
# =============================================================================

from tests.fakes import FailingRedis, FakeRedis, _run
from wholesale_rag.services.rate_limiter import RATE_LIMIT_PREFIX, RateLimiter


class _Clock:
    def __init__(self, now: float):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestRateLimiter:
    def test_allows_up_to_limit(self):
        limiter = RateLimiter(FakeRedis(), limit=2, window_seconds=60, clock=_Clock(125.0))
        results = [_run(limiter.check("1.2.3.4")) for _ in range(3)]

        assert [r.allowed for r in results] == [True, True, False]
        assert [r.remaining for r in results] == [1, 0, 0]
        assert results[0].limit == 2
        assert results[0].reset_in_seconds == 55

    def test_window_key_expires_on_first_hit(self):
        redis = FakeRedis()
        limiter = RateLimiter(redis, limit=5, window_seconds=60, clock=_Clock(125.0))
        _run(limiter.check("client"))
        key = f"{RATE_LIMIT_PREFIX}client:2"
        assert redis.data[key] == "1"
        assert redis.ttls[key] == 60

    def test_new_window_resets_count(self):
        clock = _Clock(10.0)
        limiter = RateLimiter(FakeRedis(), limit=1, window_seconds=60, clock=clock)
        assert _run(limiter.check("c")).allowed is True
        assert _run(limiter.check("c")).allowed is False
        clock.now = 61.0
        assert _run(limiter.check("c")).allowed is True

    def test_clients_are_counted_separately(self):
        limiter = RateLimiter(FakeRedis(), limit=1, clock=_Clock(0.0))
        assert _run(limiter.check("a")).allowed is True
        assert _run(limiter.check("b")).allowed is True

    def test_redis_outage_allows_requests(self):
        limiter = RateLimiter(FailingRedis(), limit=3)
        result = _run(limiter.check("c"))
        assert result.allowed is True
        assert result.remaining == 3
