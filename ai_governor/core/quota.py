"""
Per-user daily quotas.

Running totals live in the key-value store under day-scoped keys, so a new
UTC day starts from zero without any reset job. The check and the update
are separate store operations: two concurrent requests from the same user
can both pass the check before either is recorded. Enforcement is therefore
approximate and may overrun the limit by a few in-flight requests.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Optional

from ai_governor.storage.models import UsageRecord, UserQuota, utcnow
from ai_governor.storage.store import KeyValueStore

logger = logging.getLogger(__name__)

ANONYMOUS_USERS = frozenset({"anonymous-user", "system"})
DEFAULT_ESTIMATED_COST = 0.01
DAILY_COST_EXCEEDED = "Daily cost limit exceeded"

# Counters outlive their day briefly so late reads near midnight still see them
COUNTER_TTL_SECONDS = 2 * 86400


def is_anonymous(user_id: Optional[str]) -> bool:
    return not user_id or user_id in ANONYMOUS_USERS


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    remaining_cost: float
    remaining_tokens: int
    reason: Optional[str] = None


class QuotaGuard:
    """Checks and updates each user's daily cost and token allowance."""

    def __init__(self, store: KeyValueStore, daily_cost_limit: float,
                 daily_token_limit: int, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.daily_cost_limit = daily_cost_limit
        self.daily_token_limit = daily_token_limit
        self._clock = clock

    def _key(self, user_id: str, day: date, counter: str) -> str:
        return f"quota:{user_id}:{day.isoformat()}:{counter}"

    def _reset_key(self, user_id: str) -> str:
        return f"quota:{user_id}:last_reset"

    def _last_reset(self, user_id: str) -> Optional[date]:
        value = self.store.get(self._reset_key(user_id))
        return date.fromisoformat(value) if value else None

    def get_quota(self, user_id: str) -> UserQuota:
        """Snapshot of today's consumption for `user_id`."""
        today = self._clock().date()
        last_reset = self._last_reset(user_id)
        if last_reset != today:
            cost, tokens = Decimal("0"), 0
        else:
            cost = Decimal(str(self.store.get(self._key(user_id, today, "cost")) or "0"))
            tokens = int(Decimal(str(self.store.get(self._key(user_id, today, "tokens")) or "0")))
        return UserQuota(
            user_id=user_id,
            daily_token_limit=self.daily_token_limit,
            daily_cost_limit=self.daily_cost_limit,
            current_daily_tokens=tokens,
            current_daily_cost=float(cost),
            last_reset_date=last_reset,
        )

    def check_user_quota(self, user_id: str,
                         estimated_cost: float = DEFAULT_ESTIMATED_COST) -> QuotaDecision:
        """Decide whether `user_id` may spend `estimated_cost` more today.

        The first request of a day marks the reset and is always allowed
        with the full allowance.
        """
        today = self._clock().date()
        if self._last_reset(user_id) != today:
            self.store.set(self._reset_key(user_id), today.isoformat())
            logger.debug("Quota reset for user %s on %s", user_id, today)
            return QuotaDecision(
                allowed=True,
                remaining_cost=self.daily_cost_limit,
                remaining_tokens=self.daily_token_limit,
            )

        quota = self.get_quota(user_id)
        remaining_cost = quota.remaining_cost
        remaining_tokens = quota.remaining_tokens
        if remaining_cost <= 0 or remaining_cost < estimated_cost:
            logger.warning(
                "Quota denied for user %s: spent $%.6f of $%.2f, estimate $%.4f",
                user_id, quota.current_daily_cost, self.daily_cost_limit, estimated_cost,
            )
            return QuotaDecision(
                allowed=False,
                remaining_cost=max(remaining_cost, 0.0),
                remaining_tokens=max(remaining_tokens, 0),
                reason=DAILY_COST_EXCEEDED,
            )

        return QuotaDecision(
            allowed=True,
            remaining_cost=remaining_cost,
            remaining_tokens=remaining_tokens,
        )

    def record(self, user_id: str, tokens: int, cost: Decimal) -> None:
        """Add a completed request to today's running totals."""
        today = self._clock().date()
        if self._last_reset(user_id) != today:
            self.store.set(self._reset_key(user_id), today.isoformat())
        self.store.increment(self._key(user_id, today, "cost"), cost,
                             ttl_seconds=COUNTER_TTL_SECONDS)
        self.store.increment(self._key(user_id, today, "tokens"), tokens,
                             ttl_seconds=COUNTER_TTL_SECONDS)

    def on_usage_recorded(self, record: UsageRecord) -> None:
        """Ledger listener: charge non-cached records to their user."""
        if is_anonymous(record.user_id) or record.cached:
            return
        self.record(record.user_id, record.usage.total_tokens, record.cost.total_cost)
