"""
System-wide daily budget monitoring.

After each recorded request, the day's total spend is compared with
escalating thresholds of the daily budget. Each threshold alerts at most
once per UTC day.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Set

from ai_governor.storage.models import UsageRecord, utcnow

from .ledger import CostLedger

logger = logging.getLogger(__name__)


class AlertLevel(Enum):
    WARNING = "warning"
    CRITICAL = "critical"
    EXCEEDED = "exceeded"


@dataclass(frozen=True)
class BudgetAlert:
    level: AlertLevel
    threshold: float
    day: date
    daily_spend: Decimal
    daily_budget: Decimal

    @property
    def message(self) -> str:
        percent = int(round(self.threshold * 100))
        return (
            f"Daily AI spend ${self.daily_spend:.2f} reached {percent}% "
            f"of the ${self.daily_budget:.2f} budget"
        )


AlertHandler = Callable[[BudgetAlert], None]


def level_for_threshold(threshold: float) -> AlertLevel:
    if threshold >= 1.0:
        return AlertLevel.EXCEEDED
    if threshold >= 0.9:
        return AlertLevel.CRITICAL
    return AlertLevel.WARNING


class BudgetMonitor:
    """Emits one alert per newly crossed budget threshold per day."""

    def __init__(self, ledger: CostLedger, daily_budget_usd: float,
                 thresholds: Sequence[float] = (0.8, 0.95, 1.0), enabled: bool = True,
                 clock: Callable[[], datetime] = utcnow):
        self.ledger = ledger
        self.daily_budget = Decimal(str(daily_budget_usd))
        self.thresholds = tuple(sorted(thresholds))
        self.enabled = enabled
        self._clock = clock
        self._handlers: List[AlertHandler] = []
        self._alerted: Dict[date, Set[float]] = {}
        self._lock = threading.Lock()

    def add_handler(self, handler: AlertHandler) -> None:
        self._handlers.append(handler)

    def check(self, record: Optional[UsageRecord] = None) -> List[BudgetAlert]:
        """Compare today's spend with the thresholds and alert on new crossings.

        Usable directly as a ledger listener; `record` is only a trigger.

        Returns:
            Alerts emitted by this call, lowest threshold first
        """
        if not self.enabled:
            return []

        today = self._clock().date()
        spend = self.ledger.get_daily_cost(today)

        alerts = []
        with self._lock:
            # Only today's state is relevant once the day rolls over
            for day in [d for d in self._alerted if d != today]:
                del self._alerted[day]
            alerted = self._alerted.setdefault(today, set())
            for threshold in self.thresholds:
                if threshold in alerted:
                    continue
                if spend < self.daily_budget * Decimal(str(threshold)):
                    break
                alerted.add(threshold)
                alerts.append(BudgetAlert(
                    level=level_for_threshold(threshold),
                    threshold=threshold,
                    day=today,
                    daily_spend=spend,
                    daily_budget=self.daily_budget,
                ))

        for alert in alerts:
            self._emit(alert)
        return alerts

    def _emit(self, alert: BudgetAlert) -> None:
        if alert.level == AlertLevel.WARNING:
            logger.warning("Budget alert [%s]: %s", alert.level.value, alert.message)
        else:
            logger.error("Budget alert [%s]: %s", alert.level.value, alert.message)
        for handler in self._handlers:
            try:
                handler(alert)
            except Exception:
                logger.exception("Budget alert handler %r failed", handler)
