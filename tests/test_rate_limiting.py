"""
Tests for fixed-window rate limiting, speed throttling and policy routing.
"""
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from middleware.rate_limiting import (
    POLICIES,
    SUGGESTIONS,
    RateLimiter,
    SpeedThrottle,
    get_human_readable_time,
    get_window_description,
)
from models.security import ClientIdentity, RateLimitPolicy


pytestmark = [pytest.mark.unit, pytest.mark.security]

CLIENT = ClientIdentity("203.0.113.7")


def make_policy(max_requests=2, window_seconds=60, skip=False):
    return RateLimitPolicy(
        name="test",
        window_seconds=window_seconds,
        max_requests=max_requests,
        message="Slow down",
        category="Testing",
        skip_successful_requests=skip,
    )


class TestRateLimiter:

    def test_auth_policy_allows_five_then_denies_until_window_rolls(self, recording_log, clock):
        limiter = RateLimiter(POLICIES["auth"], recording_log, clock)

        decisions = [limiter.check(CLIENT) for _ in range(6)]

        assert [d.allowed for d in decisions] == [True] * 5 + [False]
        assert [d.remaining for d in decisions[:5]] == [4, 3, 2, 1, 0]
        assert decisions[5].retry_after > 0

        clock.advance(15 * 60)
        assert limiter.check(CLIENT).allowed

    def test_retry_after_is_the_remaining_window(self, recording_log, clock):
        limiter = RateLimiter(POLICIES["auth"], recording_log, clock)
        limiter.check(CLIENT)
        clock.advance(60)
        for _ in range(4):
            limiter.check(CLIENT)

        denied = limiter.check(CLIENT)
        assert not denied.allowed
        assert denied.retry_after == 15 * 60 - 60
        assert denied.guidance == SUGGESTIONS["auth"]

    def test_denial_is_logged_with_policy_label(self, recording_log, clock):
        limiter = RateLimiter(make_policy(max_requests=1), recording_log, clock)
        limiter.check(CLIENT)
        limiter.check(CLIENT)

        assert recording_log.types() == ["rate_limit_exceeded"]
        details = recording_log.records[0]["details"]
        assert details["policy"] == "test"
        assert details["limit"] == 1

    def test_identities_are_counted_separately(self, recording_log, clock):
        limiter = RateLimiter(make_policy(max_requests=1), recording_log, clock)
        assert limiter.check(CLIENT).allowed
        assert not limiter.check(CLIENT).allowed
        assert limiter.check(ClientIdentity("203.0.113.8")).allowed
        assert limiter.check(ClientIdentity("203.0.113.7", "user-1")).allowed

    def test_concurrent_requests_never_lose_updates(self, recording_log):
        limiter = RateLimiter(make_policy(max_requests=25, window_seconds=3600), recording_log)
        start = threading.Barrier(20)

        def hit(_):
            try:
                start.wait(timeout=5)
            except threading.BrokenBarrierError:
                pass
            return limiter.check(CLIENT).allowed

        with ThreadPoolExecutor(max_workers=20) as pool:
            results = list(pool.map(hit, range(100)))

        assert results.count(True) == 25
        assert results.count(False) == 75
        assert limiter.current_count(CLIENT) == 25

    def test_successful_requests_are_released_when_policy_skips_them(self, recording_log, clock):
        limiter = RateLimiter(make_policy(max_requests=2, skip=True), recording_log, clock)

        for _ in range(5):
            decision = limiter.check(CLIENT)
            assert decision.allowed
            limiter.record_outcome(CLIENT, 200, decision)

        for _ in range(2):
            limiter.record_outcome(CLIENT, 401, limiter.check(CLIENT))
        assert not limiter.check(CLIENT).allowed

    def test_auth_policy_counts_successes(self, recording_log, clock):
        limiter = RateLimiter(POLICIES["auth"], recording_log, clock)
        for _ in range(5):
            limiter.record_outcome(CLIENT, 200, limiter.check(CLIENT))
        assert not limiter.check(CLIENT).allowed

    def test_outcome_from_previous_window_is_ignored(self, recording_log, clock):
        limiter = RateLimiter(make_policy(max_requests=2, skip=True), recording_log, clock)
        stale = limiter.check(CLIENT)
        clock.advance(61)
        limiter.check(CLIENT)
        limiter.record_outcome(CLIENT, 200, stale)
        assert limiter.current_count(CLIENT) == 1

    def test_rejection_body_and_headers(self, recording_log, clock):
        limiter = RateLimiter(POLICIES["auth"], recording_log, clock)
        for _ in range(5):
            limiter.check(CLIENT)
        error = limiter.rejection(limiter.check(CLIENT))

        body = error.to_response()
        assert error.status_code == 429
        assert body["success"] is False
        assert body["error"] == "RATE_LIMIT_EXCEEDED"
        assert body["message"] == POLICIES["auth"].message
        details = body["details"]
        assert details["limit"] == 5
        assert details["window"] == "15 minutes"
        assert details["retryAfter"] == 900
        assert details["retryAfterHuman"] == "15m 0s"
        assert details["suggestion"] == SUGGESTIONS["auth"]
        assert details["category"] == "Authentication"
        assert details["type"] == "auth"
        assert "securityNote" in details
        assert error.headers["Retry-After"] == "900"
        assert error.headers["X-RateLimit-Limit"] == "5"
        assert error.headers["X-RateLimit-Remaining"] == "0"

    def test_expired_identities_are_swept(self, recording_log, clock):
        limiter = RateLimiter(POLICIES["search"], recording_log, clock)
        for index in range(5000):
            limiter.check(ClientIdentity(f"198.51.{index // 250}.{index % 250}"))
        assert limiter.tracked_identities() == 5000

        clock.advance(60 * 60)
        limiter.check(CLIENT)
        assert limiter.tracked_identities() == 1

    def test_sweep_keeps_counters_in_their_window(self, recording_log, clock):
        limiter = RateLimiter(make_policy(max_requests=5, window_seconds=60), recording_log, clock)
        first, second, third = (ClientIdentity(f"203.0.113.{n}") for n in (1, 2, 3))

        limiter.check(first)
        clock.advance(30)
        limiter.check(second)
        clock.advance(31)
        limiter.check(third)

        assert limiter.tracked_identities() == 2
        assert limiter.current_count(first) == 0
        assert limiter.current_count(second) == 1

    def test_reset_clears_counters(self, recording_log, clock):
        limiter = RateLimiter(make_policy(max_requests=1), recording_log, clock)
        limiter.check(CLIENT)
        limiter.reset()
        assert limiter.check(CLIENT).allowed


class TestSpeedThrottle:

    def test_delay_grows_past_threshold_and_is_capped(self, clock):
        throttle = SpeedThrottle(clock=clock)
        delays = [throttle.delay_for(CLIENT)[0] for _ in range(70)]

        assert delays[:50] == [0.0] * 50
        assert delays[50] == 0.5
        assert delays[51] == 1.0
        assert delays[59] == 5.0
        assert max(delays) == 5.0

    def test_successful_requests_do_not_accumulate(self, clock):
        throttle = SpeedThrottle(clock=clock)
        for _ in range(100):
            delay, window_start = throttle.delay_for(CLIENT)
            assert delay == 0.0
            throttle.record_outcome(CLIENT, 200, window_start)

    def test_window_rollover_removes_delay(self, clock):
        throttle = SpeedThrottle(delay_after=1, clock=clock)
        throttle.delay_for(CLIENT)
        assert throttle.delay_for(CLIENT)[0] == 0.5
        clock.advance(15 * 60)
        assert throttle.delay_for(CLIENT)[0] == 0.0


class TestRateLimitRegistry:

    @pytest.mark.parametrize("path,policy", [
        ("/api/user/login", "auth"),
        ("/api/seller/login", "auth"),
        ("/api/auth0-user/login", "auth"),
        ("/api/user/register", "register"),
        ("/api/product/add", "upload"),
        ("/api/product/upload", "upload"),
        ("/api/product/search", "search"),
        ("/api/user/profile", "profile"),
        ("/api/cart/update", "cart"),
        ("/api/order/place", "order"),
        ("/api/product/list", "general"),
        ("/api/address/get", "general"),
    ])
    def test_route_policy_resolution(self, registry, path, policy):
        assert registry.resolve_policy(path) == policy

    def test_unknown_policy_falls_back_to_general(self, registry):
        assert registry.limiter("nope") is registry.limiters["general"]

    def test_trusted_addresses(self, registry):
        assert registry.is_trusted(ClientIdentity("10.0.0.5"))
        assert registry.is_trusted(ClientIdentity("10.0.0.5", "user-9"))
        assert not registry.is_trusted(CLIENT)

    def test_reset_clears_every_limiter(self, registry):
        auth = registry.limiter("auth")
        for _ in range(5):
            auth.check(CLIENT)
        registry.reset()
        assert auth.check(CLIENT).allowed


def test_window_descriptions():
    assert get_window_description(15 * 60) == "15 minutes"
    assert get_window_description(60 * 60) == "1 hour"
    assert get_window_description(2 * 60 * 60) == "2 hours"
    assert get_window_description(60) == "1 minute"
    assert get_window_description(30) == "30 seconds"


def test_human_readable_times():
    assert get_human_readable_time(3725) == "1h 2m"
    assert get_human_readable_time(125) == "2m 5s"
    assert get_human_readable_time(42) == "42s"
