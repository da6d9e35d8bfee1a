"""
Failure-counting rate limiter for credential endpoints.

Only failed attempts count. The guard admits requests until a counter is
locked; the route then reports the outcome through the ``RateLimitTicket``
found at ``request.state.rate_limit``.
"""

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from starlette.requests import Request

from ..audit import AuditLogger, EventType
from ..exceptions import RateLimitError
from ..responses import error_response
from .backends import Clock, KeyValueBackend
from .client import get_client_ip
from .pipeline import Guard, GuardResult, proceed, stop

logger = logging.getLogger(__name__)

TICKET_STATE_KEY = "rate_limit"


@dataclass(frozen=True)
class RateLimitPolicy:
    name: str
    max_attempts: int
    window_seconds: int
    lockout_seconds: int


LOGIN_POLICY = RateLimitPolicy("login", max_attempts=5, window_seconds=15 * 60, lockout_seconds=30 * 60)
REGISTER_POLICY = RateLimitPolicy("register", max_attempts=3, window_seconds=60 * 60, lockout_seconds=60 * 60)


@dataclass
class LimitStatus:
    locked: bool
    attempts: int = 0
    retry_after: int = 0


class RateLimiter:
    def __init__(self, policy: RateLimitPolicy, backend: KeyValueBackend, clock: Clock = time.time):
        self.policy = policy
        self.backend = backend
        self.clock = clock
        self.prefix = f"ratelimit:{policy.name}:"
        self._lock = threading.Lock()

    def key_for(self, client_ip: str, path: str) -> str:
        return f"{self.prefix}{client_ip}:{path}"

    def _fresh(self, now: float) -> dict:
        return {"attempts": 0, "first_attempt": now, "locked_until": None}

    def _is_stale(self, record: dict, now: float) -> bool:
        locked_until = record.get("locked_until")
        if locked_until is not None:
            return now >= locked_until
        return now - record["first_attempt"] > self.policy.window_seconds

    def status(self, key: str) -> LimitStatus:
        try:
            record = self.backend.get(key)
        except Exception:
            logger.warning("Rate limit backend unavailable, admitting request", exc_info=True)
            return LimitStatus(locked=False)
        if record is None:
            return LimitStatus(locked=False)

        now = self.clock()
        locked_until = record.get("locked_until")
        if locked_until is not None and now < locked_until:
            return LimitStatus(
                locked=True,
                attempts=record["attempts"],
                retry_after=max(1, math.ceil(locked_until - now)),
            )
        if self._is_stale(record, now):
            return LimitStatus(locked=False)
        return LimitStatus(locked=False, attempts=record["attempts"])

    def increment(self, key: str) -> bool:
        """Record a failure. Returns True when this failure triggered a lockout."""
        try:
            with self._lock:
                now = self.clock()
                record = self.backend.get(key)
                if record is None or self._is_stale(record, now):
                    record = self._fresh(now)
                record["attempts"] += 1
                just_locked = False
                if record["attempts"] >= self.policy.max_attempts and record.get("locked_until") is None:
                    record["locked_until"] = now + self.policy.lockout_seconds
                    just_locked = True
                ttl = max(self.policy.window_seconds, self.policy.lockout_seconds) + 60
                self.backend.set(key, record, ttl=ttl)
        except Exception:
            logger.warning("Could not record %s failure for %s", self.policy.name, key, exc_info=True)
            return False

        if just_locked:
            logger.warning(
                "%s limiter locked %s for %d seconds after %d failed attempts",
                self.policy.name,
                key,
                self.policy.lockout_seconds,
                record["attempts"],
            )
        return just_locked

    def reset(self, key: str) -> None:
        try:
            self.backend.delete(key)
        except Exception:
            logger.warning("Could not reset rate limit counter %s", key, exc_info=True)

    def sweep(self) -> int:
        """Evict counters whose window elapsed and whose lockout has passed."""
        now = self.clock()
        evicted = 0
        try:
            for key in list(self.backend.keys(self.prefix)):
                record = self.backend.get(key)
                if record is not None and self._is_stale(record, now):
                    self.backend.delete(key)
                    evicted += 1
        except Exception:
            logger.warning("Rate limit sweep for %s failed", self.policy.name, exc_info=True)
        if evicted:
            logger.debug("Evicted %d stale %s counters", evicted, self.policy.name)
        return evicted


class RateLimitTicket:
    """Per-request handle a route uses to report a failed or successful attempt."""

    def __init__(self, limiter: RateLimiter, key: str):
        self.limiter = limiter
        self.key = key
        self.settled = False

    def record_increment(self) -> bool:
        self.settled = True
        return self.limiter.increment(self.key)

    def record_success(self) -> None:
        self.settled = True
        self.limiter.reset(self.key)

    @property
    def attempts_remaining(self) -> int:
        status = self.limiter.status(self.key)
        return max(0, self.limiter.policy.max_attempts - status.attempts)


def get_ticket(request: Request) -> Optional[RateLimitTicket]:
    return getattr(request.state, TICKET_STATE_KEY, None)


class RateLimitGuard(Guard):
    name = "rate_limit"

    def __init__(
        self,
        routes: Dict[Tuple[str, str], RateLimiter],
        audit: AuditLogger,
        trust_proxy: bool = False,
    ):
        self.routes = routes
        self.audit = audit
        self.trust_proxy = trust_proxy

    async def check(self, request: Request) -> GuardResult:
        limiter = self.routes.get((request.method, request.url.path))
        if limiter is None:
            return proceed()

        key = limiter.key_for(get_client_ip(request, self.trust_proxy), request.url.path)
        status = limiter.status(key)
        if status.locked:
            minutes = max(1, math.ceil(status.retry_after / 60))
            self.audit.log_security_event(
                EventType.RATE_LIMIT_EXCEEDED,
                request,
                {"limiter": limiter.policy.name, "retry_after": status.retry_after},
            )
            exc = RateLimitError(
                f"Too many failed attempts. Please try again in {minutes} minute{'s' if minutes != 1 else ''}.",
                retry_after=status.retry_after,
            )
            return stop(error_response(request, exc))

        setattr(request.state, TICKET_STATE_KEY, RateLimitTicket(limiter, key))
        return proceed()

    async def after(self, request: Request, status_code: int) -> None:
        ticket = get_ticket(request)
        if ticket is None or ticket.settled:
            return
        logger.warning(
            "%s %s finished with status %d without settling its rate limit ticket",
            request.method,
            request.url.path,
            status_code,
        )
        if status_code >= 400:
            ticket.record_increment()
