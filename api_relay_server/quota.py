"""
Per-(service, user) quota tracking.

Quotas are cumulative: there is no time window, counters only go back to
zero through an admin reset. Only successful (2xx) upstream calls count.

Two modes:

- ``soft``: read the counter before dispatch, increment after a 2xx. Each
  increment is an atomic read-modify-write, but the check and the increment
  are separate steps, so N concurrent requests for the same pair can overshoot
  the limit by up to N-1.
- ``strict``: reserve a slot atomically before dispatch and release it when
  the upstream fails. Atomic across processes only with the Redis store; the
  memory store guarantees it within one process.
"""

from dataclasses import dataclass
from typing import Optional

from api_relay_server.entities import Service, UsageCounter, UsageKey
from api_relay_server.logging_config import log_quota_exceeded
from api_relay_server.repositories import UsageRepository

SOFT = "soft"
STRICT = "strict"


@dataclass
class QuotaDecision:
    """Outcome of the pre-dispatch quota check"""
    allowed: bool
    count: int
    limit: int
    reserved: bool = False

    @property
    def remaining(self) -> Optional[int]:
        if self.limit <= 0:
            return None
        return max(0, self.limit - self.count)


class QuotaTracker:
    """Check and record usage for relay calls"""

    def __init__(self, usage: UsageRepository, mode: str = SOFT):
        if mode not in (SOFT, STRICT):
            raise ValueError(f"Unknown quota mode: {mode}")
        self.usage = usage
        self.mode = mode

    async def check(self, service: Service, username: str) -> QuotaDecision:
        """
        Decide whether a call may be dispatched.

        A limit of 0 means unlimited and skips the store read entirely.
        """
        key = UsageKey(service.id, username)
        if service.limit <= 0:
            return QuotaDecision(allowed=True, count=0, limit=0)

        if self.mode == STRICT:
            counter = await self.usage.reserve(key, service.limit)
            if counter is None:
                current = await self.usage.get(key)
                log_quota_exceeded(service.id, username, service.limit, current.count, mode=self.mode)
                return QuotaDecision(allowed=False, count=current.count, limit=service.limit)
            return QuotaDecision(allowed=True, count=counter.count, limit=service.limit, reserved=True)

        counter = await self.usage.get(key)
        if counter.count >= service.limit:
            log_quota_exceeded(service.id, username, service.limit, counter.count, mode=self.mode)
            return QuotaDecision(allowed=False, count=counter.count, limit=service.limit)
        return QuotaDecision(allowed=True, count=counter.count, limit=service.limit)

    async def record(self, service: Service, username: str, decision: QuotaDecision, success: bool) -> Optional[UsageCounter]:
        """
        Settle usage once the upstream outcome is known.

        Success increments the counter (unless a strict reservation already
        did); failure releases a strict reservation and otherwise leaves the
        counter untouched.
        """
        key = UsageKey(service.id, username)
        if decision.reserved:
            if success:
                return None
            return await self.usage.decrement(key)
        if success:
            return await self.usage.increment(key)
        return None
