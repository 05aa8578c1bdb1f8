"""
Rate Limiter Tests
"""
import pytest
from datetime import datetime, timezone

from app.core.cache import InMemoryStore, StoreUnavailableError
from app.services.rate_limit_service import RateLimitService


class BrokenStore:
    async def sliding_window_hit(self, key, now, window, max_requests):
        raise StoreUnavailableError("connection refused")

    async def sliding_window_count(self, key, now, window):
        raise StoreUnavailableError("connection refused")

    async def delete(self, key):
        raise StoreUnavailableError("connection refused")


@pytest.mark.asyncio
@pytest.mark.unit
class TestSlidingWindow:
    async def test_allows_up_to_limit(self, clock):
        limiter = RateLimitService(InMemoryStore(clock=clock), clock=clock)

        results = [await limiter.check_limit("cron_batch", 60, 3) for _ in range(4)]

        assert [r.allowed for r in results] == [True, True, True, False]
        assert [r.remaining for r in results] == [2, 1, 0, 0]
        assert results[2].total_requests == 3

    async def test_reset_time_is_oldest_plus_window(self, clock):
        limiter = RateLimitService(InMemoryStore(clock=clock), clock=clock)
        first_request_at = clock()

        await limiter.check_limit("cron_batch", 60, 1)
        clock.advance(10)
        denied = await limiter.check_limit("cron_batch", 60, 1)

        assert not denied.allowed
        assert denied.reset_time == datetime.fromtimestamp(
            first_request_at + 60, tz=timezone.utc
        )

    async def test_window_slides(self, clock):
        limiter = RateLimitService(InMemoryStore(clock=clock), clock=clock)

        await limiter.check_limit("cron_batch", 60, 2)
        clock.advance(30)
        await limiter.check_limit("cron_batch", 60, 2)
        assert not (await limiter.check_limit("cron_batch", 60, 2)).allowed

        # the first request leaves the window
        clock.advance(31)
        assert (await limiter.check_limit("cron_batch", 60, 2)).allowed

    async def test_identifiers_are_independent(self, clock):
        limiter = RateLimitService(InMemoryStore(clock=clock), clock=clock)

        await limiter.check_limit("recipient:0811", 60, 1)

        assert (await limiter.check_limit("recipient:0822", 60, 1)).allowed

    async def test_idle_windows_are_dropped(self, clock):
        store = InMemoryStore(clock=clock)

        denied, _, _ = await store.sliding_window_hit("cron_batch", clock(), 60, 0)
        await store.sliding_window_hit("recipient:0811", clock(), 60, 5)
        clock.advance(61)
        count, oldest = await store.sliding_window_count("recipient:0811", clock(), 60)

        assert not denied
        assert (count, oldest) == (0, None)
        assert store._windows == {}

    async def test_status_does_not_consume(self, clock):
        limiter = RateLimitService(InMemoryStore(clock=clock), clock=clock)
        await limiter.check_limit("cron_batch", 60, 2)

        status = await limiter.get_status("cron_batch", 60, 2)
        status_again = await limiter.get_status("cron_batch", 60, 2)

        assert status.total_requests == 1
        assert status_again.total_requests == 1
        assert status.remaining == 1

    async def test_reset_clears_window(self, clock):
        limiter = RateLimitService(InMemoryStore(clock=clock), clock=clock)
        await limiter.check_limit("cron_batch", 60, 1)

        await limiter.reset("cron_batch")

        assert (await limiter.check_limit("cron_batch", 60, 1)).allowed


@pytest.mark.asyncio
@pytest.mark.unit
class TestFailOpen:
    async def test_store_error_allows_request(self, clock):
        limiter = RateLimitService(BrokenStore(), clock=clock)

        result = await limiter.check_limit("cron_batch", 60, 10)

        assert result.allowed
        assert result.remaining == 9

    async def test_status_and_reset_survive_store_error(self, clock):
        limiter = RateLimitService(BrokenStore(), clock=clock)

        status = await limiter.get_status("cron_batch", 60, 10)
        await limiter.reset("cron_batch")

        assert status.allowed
        assert status.total_requests == 0
