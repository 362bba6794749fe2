"""
Rate limiting and speed throttling per client identity.

``RateLimiter`` applies one fixed-window policy per endpoint class and denies
with retry metadata once the window's budget is spent. ``SpeedThrottle`` is
the soft control in front of it: past its own threshold it adds latency to
each request instead of rejecting.

Counter updates hold a per-key lock for the whole read-compare-increment, so
parallel requests from one identity are neither lost nor double counted.
"""
import math
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, Optional, Tuple

from models.security import (
    ClientIdentity,
    EventSeverity,
    RateLimitDecision,
    RateLimitPolicy,
    SecurityEventType,
)
from utils.exceptions import RateLimitExceededError

logger = logging.getLogger(__name__)

MINUTE = 60
HOUR = 60 * MINUTE

POLICIES: Dict[str, RateLimitPolicy] = {
    "general": RateLimitPolicy(
        name="general",
        window_seconds=15 * MINUTE,
        max_requests=100,
        message="You have exceeded the maximum number of requests allowed. Please wait before making more requests.",
        category="API Access",
        context={"endpoint": "general"},
    ),
    # Successful logins count too: repeated logins from one source are still a signal.
    "auth": RateLimitPolicy(
        name="auth",
        window_seconds=15 * MINUTE,
        max_requests=5,
        message="Too many login attempts detected. Please wait before trying to log in again for security reasons.",
        category="Authentication",
        skip_successful_requests=False,
        context={"endpoint": "login", "securityNote": "Multiple failed login attempts can indicate a security threat"},
    ),
    "register": RateLimitPolicy(
        name="register",
        window_seconds=HOUR,
        max_requests=3,
        message="Registration limit exceeded. You can only create a limited number of accounts per hour.",
        category="Account Creation",
        context={"endpoint": "register", "note": "This limit helps prevent spam account creation"},
    ),
    "upload": RateLimitPolicy(
        name="upload",
        window_seconds=HOUR,
        max_requests=10,
        message="File upload limit exceeded. You can only upload a limited number of files per hour.",
        category="File Operations",
        context={"endpoint": "upload", "note": "This limit prevents server overload and abuse"},
    ),
    "cart": RateLimitPolicy(
        name="cart",
        window_seconds=15 * MINUTE,
        max_requests=50,
        message="You are adding items to your cart too quickly. Please slow down to ensure a smooth shopping experience.",
        category="Shopping Cart",
        context={"endpoint": "cart", "tip": "Take your time to review items before adding them"},
    ),
    "order": RateLimitPolicy(
        name="order",
        window_seconds=HOUR,
        max_requests=5,
        message="Order placement limit reached. You can only place a limited number of orders per hour to prevent duplicate orders.",
        category="Order Processing",
        context={"endpoint": "order", "note": "This helps prevent accidental duplicate orders and payment issues"},
    ),
    "search": RateLimitPolicy(
        name="search",
        window_seconds=MINUTE,
        max_requests=30,
        message="Search limit exceeded. Please wait a moment before searching again.",
        category="Search Operations",
        context={"endpoint": "search", "tip": "Try using more specific search terms to find what you need faster"},
    ),
    "profile": RateLimitPolicy(
        name="profile",
        window_seconds=HOUR,
        max_requests=10,
        message="Profile update limit exceeded. You can only update your profile a limited number of times per hour.",
        category="Profile Management",
        context={"endpoint": "profile"},
    ),
}

SUGGESTIONS = {
    "auth": 'Please wait before trying to log in again. Consider using "Remember Me" to reduce login frequency.',
    "register": "Account registration is limited. Please contact support if you need assistance.",
    "upload": "File uploads are limited to prevent abuse. Please wait before uploading more files.",
    "cart": "Please slow down when adding items to your cart.",
    "order": "Order placement is limited to prevent duplicate orders. Please wait before placing another order.",
    "search": "Please wait a moment before searching again.",
    "profile": "Profile updates are limited. Please wait before making more changes.",
    "general": "You are making requests too quickly. Please slow down.",
}

# (path prefix or segment, policy). First match wins; everything else is "general".
ROUTE_POLICIES: Tuple[Tuple[str, str], ...] = (
    ("/login", "auth"),
    ("/register", "register"),
    ("/upload", "upload"),
    ("/api/product/add", "upload"),
    ("/search", "search"),
    ("/profile", "profile"),
    ("/api/cart", "cart"),
    ("/api/order", "order"),
)


def get_suggestion(policy_type: Optional[str]) -> str:
    return SUGGESTIONS.get(policy_type or "general", SUGGESTIONS["general"])


def get_window_description(window_seconds: int) -> str:
    """Human-readable window length, e.g. ``15 minutes`` or ``1 hour``."""
    if window_seconds >= HOUR:
        hours = window_seconds / HOUR
        hours = int(hours) if hours == int(hours) else hours
        return "1 hour" if hours == 1 else f"{hours} hours"
    if window_seconds >= MINUTE:
        minutes = window_seconds / MINUTE
        minutes = int(minutes) if minutes == int(minutes) else minutes
        return "1 minute" if minutes == 1 else f"{minutes} minutes"
    return f"{window_seconds} seconds"


def get_human_readable_time(seconds: int) -> str:
    hours, remainder = divmod(int(seconds), 3600)
    minutes, remaining_seconds = divmod(remainder, 60)
    if hours > 0:
        return f"{hours}h {minutes}m"
    if minutes > 0:
        return f"{minutes}m {remaining_seconds}s"
    return f"{remaining_seconds}s"


class _Counter:
    __slots__ = ("count", "window_start", "lock")

    def __init__(self, now: float):
        self.count = 0
        self.window_start = now
        self.lock = threading.Lock()


class WindowCounterStore:
    """
    Fixed-window counters keyed by identity, one lock per key.

    Counters whose window has elapsed are dropped by a sweep that runs at
    most once per window, so idle identities do not accumulate.
    """

    def __init__(self, window_seconds: int, clock: Callable[[], float] = time.time):
        self.window_seconds = window_seconds
        self._clock = clock
        self._counters: Dict[str, _Counter] = {}
        self._registry_lock = threading.Lock()
        self._last_sweep = clock()

    def __len__(self) -> int:
        return len(self._counters)

    def _counter(self, key: str) -> _Counter:
        counter = self._counters.get(key)
        if counter is None:
            with self._registry_lock:
                counter = self._counters.get(key)
                if counter is None:
                    counter = _Counter(self._clock())
                    self._counters[key] = counter
        return counter

    def _sweep(self) -> None:
        now = self._clock()
        if now - self._last_sweep < self.window_seconds:
            return
        with self._registry_lock:
            if now - self._last_sweep < self.window_seconds:
                return
            self._last_sweep = now
            for key, counter in list(self._counters.items()):
                # A counter in use is left for the next sweep.
                if not counter.lock.acquire(blocking=False):
                    continue
                try:
                    if now - counter.window_start >= self.window_seconds:
                        del self._counters[key]
                finally:
                    counter.lock.release()

    def hit(self, key: str, cap: Optional[int] = None) -> Tuple[bool, int, float, float]:
        """
        Count one request for ``key``.

        With ``cap`` set, a request that would take the count past it is not
        counted and reported as not admitted. Returns
        ``(admitted, count, window_start, now)``.
        """
        self._sweep()
        while True:
            counter = self._counter(key)
            with counter.lock:
                # Swept between lookup and lock; start over with a live counter.
                if self._counters.get(key) is not counter:
                    continue

                now = self._clock()
                if now - counter.window_start >= self.window_seconds:
                    counter.count = 0
                    counter.window_start = now

                if cap is not None and counter.count >= cap:
                    return False, counter.count, counter.window_start, now

                counter.count += 1
                return True, counter.count, counter.window_start, now

    def release(self, key: str, window_start: float) -> None:
        """Undo one hit, if it belongs to the current window."""
        counter = self._counters.get(key)
        if counter is None:
            return
        with counter.lock:
            if counter.window_start == window_start and counter.count > 0:
                counter.count -= 1

    def count(self, key: str) -> int:
        counter = self._counters.get(key)
        if counter is None:
            return 0
        with counter.lock:
            if self._clock() - counter.window_start >= self.window_seconds:
                return 0
            return counter.count

    def clear(self) -> None:
        with self._registry_lock:
            self._counters.clear()


def _identity_key(identity) -> str:
    if isinstance(identity, ClientIdentity):
        return identity.key
    return str(identity)


class RateLimiter:
    """Fixed-window limiter for a single policy."""

    def __init__(self, policy: RateLimitPolicy, event_log=None, clock: Callable[[], float] = time.time):
        self.policy = policy
        self.event_log = event_log
        self._store = WindowCounterStore(policy.window_seconds, clock)

    def check(self, identity, request=None) -> RateLimitDecision:
        key = _identity_key(identity)
        policy = self.policy
        admitted, count, window_start, now = self._store.hit(key, cap=policy.max_requests)
        reset_at = window_start + policy.window_seconds

        if admitted:
            return RateLimitDecision(
                allowed=True,
                limit=policy.max_requests,
                remaining=max(0, policy.max_requests - count),
                retry_after=0,
                reset_at=reset_at,
            )

        retry_after = max(1, math.ceil(policy.window_seconds - (now - window_start)))
        logger.warning(
            f"⚠️ [RATE-LIMITER] Rate limit exceeded for {key}: "
            f"{policy.max_requests}/{get_window_description(policy.window_seconds)} ({policy.name})"
        )
        if self.event_log is not None:
            self.event_log.record(
                SecurityEventType.RATE_LIMIT_EXCEEDED,
                EventSeverity.ALERT,
                {
                    "policy": policy.name,
                    "category": policy.category,
                    "limit": policy.max_requests,
                    "window": get_window_description(policy.window_seconds),
                    "retryAfter": retry_after,
                },
                client=identity,
                request=request,
            )

        return RateLimitDecision(
            allowed=False,
            limit=policy.max_requests,
            remaining=0,
            retry_after=retry_after,
            reset_at=reset_at,
            guidance=get_suggestion(policy.name),
        )

    def record_outcome(self, identity, status_code: int, decision: RateLimitDecision) -> None:
        """Stop counting a successful request when the policy skips successes."""
        if not (self.policy.skip_successful_requests and decision.allowed and status_code < 400):
            return
        self._store.release(_identity_key(identity), decision.reset_at - self.policy.window_seconds)

    def current_count(self, identity) -> int:
        return self._store.count(_identity_key(identity))

    def tracked_identities(self) -> int:
        return len(self._store)

    def reset(self) -> None:
        self._store.clear()

    def rejection(self, decision: RateLimitDecision) -> RateLimitExceededError:
        """Build the 429 error for a denied decision."""
        policy = self.policy
        details = {
            "limit": policy.max_requests,
            "window": get_window_description(policy.window_seconds),
            "retryAfter": decision.retry_after,
            "retryAfterHuman": get_human_readable_time(decision.retry_after),
            "suggestion": decision.guidance or get_suggestion(policy.name),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "type": policy.name,
            "category": policy.category,
            **policy.context,
        }
        headers = {
            "Retry-After": str(decision.retry_after),
            "X-RateLimit-Limit": str(policy.max_requests),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(int(decision.reset_at)),
        }
        return RateLimitExceededError(policy.name, policy.message, details, decision.retry_after, headers=headers)


class SpeedThrottle:
    """
    Adds latency to clients past ``delay_after`` requests in the window.

    Each request beyond the threshold waits ``delay_step`` seconds more than
    the previous one, up to ``max_delay``. Never rejects.
    """

    def __init__(
        self,
        window_seconds: int = 15 * MINUTE,
        delay_after: int = 50,
        delay_step: float = 0.5,
        max_delay: float = 5.0,
        skip_successful_requests: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.window_seconds = window_seconds
        self.delay_after = delay_after
        self.delay_step = delay_step
        self.max_delay = max_delay
        self.skip_successful_requests = skip_successful_requests
        self._store = WindowCounterStore(window_seconds, clock)

    def delay_for(self, identity) -> Tuple[float, float]:
        """Count the request and return ``(delay_seconds, window_start)``."""
        _, count, window_start, _ = self._store.hit(_identity_key(identity))
        if count <= self.delay_after:
            return 0.0, window_start
        return min((count - self.delay_after) * self.delay_step, self.max_delay), window_start

    def record_outcome(self, identity, status_code: int, window_start: float) -> None:
        if self.skip_successful_requests and status_code < 400:
            self._store.release(_identity_key(identity), window_start)

    def reset(self) -> None:
        self._store.clear()


class RateLimitRegistry:
    """One limiter per policy plus route-to-policy resolution."""

    def __init__(
        self,
        event_log=None,
        policies: Optional[Dict[str, RateLimitPolicy]] = None,
        trusted_addresses: Iterable[str] = (),
        clock: Callable[[], float] = time.time,
        throttle: Optional[SpeedThrottle] = None,
    ):
        self.policies = dict(policies or POLICIES)
        self.limiters: Dict[str, RateLimiter] = {
            name: RateLimiter(policy, event_log, clock) for name, policy in self.policies.items()
        }
        self.throttle = throttle or SpeedThrottle(clock=clock)
        self.trusted_addresses = frozenset(trusted_addresses)

    def resolve_policy(self, path: str) -> str:
        lowered = path.lower()
        for segment, policy in ROUTE_POLICIES:
            if segment in lowered and policy in self.limiters:
                return policy
        return "general"

    def limiter(self, name: str) -> RateLimiter:
        return self.limiters.get(name) or self.limiters["general"]

    def is_trusted(self, identity) -> bool:
        address = identity.address if isinstance(identity, ClientIdentity) else str(identity)
        return address in self.trusted_addresses

    def reset(self) -> None:
        for limiter in self.limiters.values():
            limiter.reset()
        self.throttle.reset()
