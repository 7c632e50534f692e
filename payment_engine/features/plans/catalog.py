"""
payment_engine/features/plans/catalog.py

Plan catalog with a time-bounded cache.

Handles:
- The static plan definitions mirrored from the escrow program
- TTL-based refresh (one hour by default)
- Plan validation ahead of submission
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Optional, Sequence, Tuple

from payment_engine.core.errors import PlanNotFoundError
from payment_engine.models.plan import Plan

logger = logging.getLogger("payment_engine")

DEFAULT_CACHE_TTL_SECONDS = 60 * 60

# Must match the plan table compiled into the escrow program
AVAILABLE_PLANS: Tuple[Plan, ...] = (
    Plan(
        id=1,
        name="Basic",
        price=Decimal("10"),
        request_allowance=20,
        description="Basic plan with 20 requests",
    ),
    Plan(
        id=2,
        name="Standard",
        price=Decimal("20"),
        request_allowance=50,
        description="Standard plan with 50 requests",
    ),
    Plan(
        id=3,
        name="Premium",
        price=Decimal("50"),
        request_allowance=100,
        description="Premium plan with 100 requests",
    ),
)


def static_plan_source() -> Sequence[Plan]:
    return AVAILABLE_PLANS


@dataclass(frozen=True)
class PlanCacheEntry:
    entries: Tuple[Plan, ...]
    fetched_at: float
    ttl: float

    def is_fresh(self, now: float) -> bool:
        return (now - self.fetched_at) < self.ttl


class PlanCatalog:
    """
    Process-lifetime plan cache.

    Reads never fail: a source error falls back to the last cached entries, or
    to the static definitions when nothing has been cached yet. A refresh
    swaps in a new PlanCacheEntry under the lock and never mutates the
    current one.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        source: Callable[[], Sequence[Plan]] = static_plan_source,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self._source = source
        self._clock = clock
        self._entry: Optional[PlanCacheEntry] = None
        self._refresh_lock = threading.Lock()

    @property
    def fetched_at(self) -> Optional[float]:
        entry = self._entry
        return entry.fetched_at if entry else None

    def get_plans(self) -> Tuple[Plan, ...]:
        entry = self._entry
        if entry is not None and entry.is_fresh(self._clock()):
            return entry.entries

        with self._refresh_lock:
            # Another caller may have refreshed while we waited
            entry = self._entry
            now = self._clock()
            if entry is not None and entry.is_fresh(now):
                return entry.entries
            self._entry = PlanCacheEntry(
                entries=self._load(entry),
                fetched_at=now,
                ttl=self.ttl_seconds,
            )
            logger.info("plans.cache.refreshed", extra={"event_type": "plans.refresh"})
            return self._entry.entries

    def _load(self, previous: Optional[PlanCacheEntry]) -> Tuple[Plan, ...]:
        try:
            plans = tuple(self._source())
            if not plans:
                raise ValueError("plan source returned no plans")
            return plans
        except Exception as exc:
            logger.warning(
                "plans.source.failed",
                extra={"event_type": "plans.refresh", "error_code": type(exc).__name__},
            )
            if previous is not None:
                return previous.entries
            return AVAILABLE_PLANS

    def validate_plan(self, plan_id: int) -> Plan:
        """Return the plan with this id, raising PlanNotFoundError when absent."""
        for plan in self.get_plans():
            if plan.id == plan_id:
                return plan
        raise PlanNotFoundError(plan_id)
