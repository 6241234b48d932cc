"""
Cost ledger.

Append-only log of governed AI requests plus the aggregations built on it.
Recording never fails the governed call: repository and listener errors are
logged and swallowed here, and only here.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Callable, List, Optional

from ai_governor.storage.models import OPERATION_TEXT, UsageRecord, utcnow
from ai_governor.storage.repository import UsageRepository

from .pricing import PRICING_CATALOG, CostBreakdown, PricingCatalog, calculate_cost
from .token_counter import TokenUsage

logger = logging.getLogger(__name__)

UsageListener = Callable[[UsageRecord], None]


@dataclass(frozen=True)
class DailyUsage:
    """Aggregated usage of one UTC day."""
    date: date
    total_tokens: int = 0
    total_cost: Decimal = Decimal("0")
    request_count: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    failed_requests: int = 0


@dataclass(frozen=True)
class UserUsage:
    """Usage of one user over a trailing window, with a per-day breakdown."""
    user_id: str
    days: int
    total_tokens: int = 0
    total_cost: Decimal = Decimal("0")
    request_count: int = 0
    daily_breakdown: List[DailyUsage] = field(default_factory=list)


@dataclass(frozen=True)
class CacheSavings:
    tokens_saved: int = 0
    cost_saved: Decimal = Decimal("0")
    cache_hit_rate: float = 0.0


def day_bounds(day: date):
    """Return the [start, end) UTC datetimes of `day`."""
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def summarize_day(day: date, records: List[UsageRecord]) -> DailyUsage:
    """Aggregate records that all belong to `day`."""
    return DailyUsage(
        date=day,
        total_tokens=sum(r.usage.total_tokens for r in records),
        total_cost=sum((r.cost.total_cost for r in records), Decimal("0")),
        request_count=len(records),
        cache_hits=sum(1 for r in records if r.cached),
        cache_misses=sum(1 for r in records if not r.cached),
        failed_requests=sum(1 for r in records if not r.success),
    )


class CostLedger:
    """Records usage events and answers spend queries."""

    def __init__(self, repository: UsageRepository,
                 catalog: PricingCatalog = PRICING_CATALOG,
                 clock: Callable[[], datetime] = utcnow):
        self.repository = repository
        self.catalog = catalog
        self._clock = clock
        self._listeners: List[UsageListener] = []

    def add_listener(self, listener: UsageListener) -> None:
        """Register a callable notified after every appended record."""
        self._listeners.append(listener)

    def calculate_cost(self, model: str, usage: TokenUsage) -> CostBreakdown:
        return calculate_cost(model, usage, self.catalog)

    def record_usage(
        self,
        session_id: str,
        provider: str,
        model: str,
        usage: TokenUsage,
        user_id: Optional[str] = None,
        operation: str = OPERATION_TEXT,
        cached: bool = False,
        success: bool = True,
        error: Optional[str] = None,
        feature: Optional[str] = None,
    ) -> UsageRecord:
        """Append one usage record and notify listeners.

        Cache hits cost nothing; failed requests carry whatever usage was
        produced before the failure. The record is returned even if
        persisting it failed, so the caller's response is unaffected.
        """
        if cached:
            cost = CostBreakdown.zero()
        else:
            cost = self.calculate_cost(model, usage)

        record = UsageRecord(
            session_id=session_id,
            provider=provider,
            model=model,
            usage=usage,
            cost=cost,
            timestamp=self._clock(),
            operation=operation,
            cached=cached,
            user_id=user_id,
            success=success,
            error=error,
            feature=feature,
        )

        try:
            self.repository.append(record)
        except Exception:
            logger.exception("Failed to persist usage record %s", record.request_id)

        for listener in self._listeners:
            try:
                listener(record)
            except Exception:
                logger.exception("Usage listener %r failed for %s", listener, record.request_id)

        logger.info(
            "AI usage recorded request_id=%s provider=%s model=%s operation=%s "
            "tokens=%d cost=$%s cached=%s success=%s estimated=%s",
            record.request_id, provider, model, operation,
            usage.total_tokens, cost.total_cost, cached, success, usage.estimated,
        )
        return record

    def get_daily_usage(self, day: Optional[date] = None) -> DailyUsage:
        """Aggregate all records of a UTC day (today by default)."""
        day = day or self._clock().date()
        start, end = day_bounds(day)
        return summarize_day(day, self.repository.fetch(since=start, until=end))

    def get_daily_cost(self, day: Optional[date] = None) -> Decimal:
        return self.get_daily_usage(day).total_cost

    def get_user_usage_since(self, user_id: str, since: datetime) -> DailyUsage:
        """Aggregate a user's records from `since` until now."""
        records = self.repository.fetch(since=since, user_id=user_id)
        return summarize_day(since.date(), records)

    def get_user_usage(self, user_id: str, days: int = 7) -> UserUsage:
        """Usage of `user_id` over the trailing `days` days, today included."""
        if days <= 0:
            raise ValueError("days must be positive")
        today = self._clock().date()
        first_day = today - timedelta(days=days - 1)
        start, _ = day_bounds(first_day)
        _, end = day_bounds(today)
        records = self.repository.fetch(since=start, until=end, user_id=user_id)

        breakdown = []
        for offset in range(days):
            day = first_day + timedelta(days=offset)
            day_records = [r for r in records if r.timestamp.date() == day]
            breakdown.append(summarize_day(day, day_records))

        return UserUsage(
            user_id=user_id,
            days=days,
            total_tokens=sum(d.total_tokens for d in breakdown),
            total_cost=sum((d.total_cost for d in breakdown), Decimal("0")),
            request_count=sum(d.request_count for d in breakdown),
            daily_breakdown=breakdown,
        )

    def get_cache_savings(self, days: int = 7) -> CacheSavings:
        """Estimate what cache hits saved over the trailing `days` days.

        Each hit is repriced at the current rate of the model that produced
        the cached answer.
        """
        since = self._clock() - timedelta(days=days)
        records = [r for r in self.repository.fetch(since=since) if r.success]
        if not records:
            return CacheSavings()

        hits = [r for r in records if r.cached]
        tokens_saved = sum(r.usage.total_tokens for r in hits)
        cost_saved = sum(
            (self.calculate_cost(r.model, r.usage).total_cost for r in hits),
            Decimal("0"),
        )
        return CacheSavings(
            tokens_saved=tokens_saved,
            cost_saved=cost_saved,
            cache_hit_rate=len(hits) / len(records),
        )

    def export_usage_data(self, start: datetime, end: datetime) -> List[dict]:
        """Flatten records in [start, end) into JSON-ready dicts."""
        return [
            {
                "request_id": r.request_id,
                "timestamp": r.timestamp.isoformat(),
                "session_id": r.session_id,
                "user_id": r.user_id,
                "feature": r.feature,
                "provider": r.provider,
                "model": r.model,
                "operation": r.operation,
                "usage": r.usage.to_dict(),
                "cost": r.cost.to_dict(),
                "cached": r.cached,
                "success": r.success,
                "error": r.error,
            }
            for r in self.repository.fetch(since=start, until=end)
        ]
