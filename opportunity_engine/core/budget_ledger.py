"""
Budget Ledger - monthly spend tracking with a hard ceiling.

Every paid lookup is checked against the ledger before it is issued and
recorded after it succeeds. Concurrent workers use ``reserve`` /
``commit`` / ``release`` so that the check and the hold happen in one
critical section.
"""

import calendar
import logging
import threading
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from opportunity_engine.errors import BudgetExceededError, ConfigurationError

logger = logging.getLogger(__name__)


# Unit cost per request, in yen
SOURCE_COSTS: Dict[str, float] = {
    "serper": 10.0,
    "openai_api": 50.0,
    "google_news_rss": 0.0,
    "cache": 0.0,
}

CRITICAL_FRACTION = 0.9
EXCEEDED_FRACTION = 1.0
PROJECTION_ALERT_FACTOR = 1.2
ALERT_COOLDOWN = timedelta(hours=1)
HISTORY_MONTHS = 3


@dataclass
class UsageRecord:
    source: str
    unit_cost: float
    quantity: int
    amount: float
    category: str
    timestamp: str

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class BudgetAlert:
    level: str           # warning | critical | exceeded
    kind: str            # threshold | projection
    message: str
    spend: float
    limit: float
    percentage: float
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass(frozen=True)
class Affordability:
    allowed: bool
    estimated_cost: float
    reason: Optional[str] = None


@dataclass(frozen=True)
class Reservation:
    id: int
    source: str
    quantity: int
    category: str
    amount: float


def _period_key(moment: datetime) -> str:
    return moment.strftime("%Y-%m")


class BudgetLedger:
    """
    Tracks spend against a monthly limit.

    Usage:
        ledger = BudgetLedger(monthly_limit=2000)

        check = ledger.can_afford("serper")
        if check.allowed:
            ...
            ledger.record_usage("serper", category="market_trends")
    """

    def __init__(
        self,
        monthly_limit: float = 2000.0,
        alert_threshold: float = 0.8,
        enforce_limit: bool = True,
        source_costs: Optional[Dict[str, float]] = None,
        alert_callback: Optional[Callable[[BudgetAlert], None]] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """
        Args:
            monthly_limit: Spending ceiling for one calendar month
            alert_threshold: Fraction of the limit that raises a warning
            enforce_limit: Refuse to record usage that would cross the limit
            source_costs: Unit cost per source, merged over SOURCE_COSTS
            alert_callback: Called with every BudgetAlert raised
            clock: Returns the current datetime
        """
        if monthly_limit <= 0:
            raise ConfigurationError("monthly_limit must be positive")

        self.monthly_limit = monthly_limit
        self.alert_threshold = alert_threshold
        self.enforce_limit = enforce_limit
        self.source_costs = dict(SOURCE_COSTS)
        if source_costs:
            self.source_costs.update(source_costs)
        self._alert_callback = alert_callback
        self._clock = clock
        self._lock = threading.RLock()

        now = self._clock()
        self.period_start = datetime(now.year, now.month, 1)
        self.spent = 0.0
        self.category_breakdown: Dict[str, float] = {}
        self.over_budget = False
        self.alerts: List[BudgetAlert] = []
        self._last_alert_at: Dict[str, datetime] = {}

        self.usage_history: List[UsageRecord] = []
        self.closed_periods: List[Dict[str, Any]] = []

        self._reserved: Dict[int, Reservation] = {}
        self._next_reservation = 0

    # ==================== Costs ====================

    def unit_cost(self, source: str) -> float:
        return self.source_costs.get(source, 0.0)

    def estimate(self, source: str, quantity: int = 1) -> float:
        return self.unit_cost(source) * quantity

    @property
    def reserved(self) -> float:
        with self._lock:
            return sum(r.amount for r in self._reserved.values())

    @property
    def remaining(self) -> float:
        with self._lock:
            return max(0.0, self.monthly_limit - self.spent)

    # ==================== Pre-checks ====================

    def can_afford(self, source: str, quantity: int = 1) -> Affordability:
        """Check whether a charge for `quantity` requests fits the budget."""
        with self._lock:
            self._roll_period_if_needed()
            return self._check(self.estimate(source, quantity))

    def cheapest_paid_cost(self) -> float:
        paid = [cost for cost in self.source_costs.values() if cost > 0]
        return min(paid) if paid else 0.0

    def _check(self, amount: float) -> Affordability:
        if amount <= 0:
            return Affordability(True, 0.0)
        if self.over_budget:
            check = Affordability(False, amount, "budget exhausted for this period")
        else:
            committed = self.spent + self.reserved
            if committed + amount <= self.monthly_limit:
                return Affordability(True, amount)
            check = Affordability(
                False, amount,
                f"charge of {amount:.0f} would exceed limit "
                f"({committed:.0f}/{self.monthly_limit:.0f})"
            )
        self._emit("exceeded", "exhausted", f"Budget exhausted: {check.reason}")
        return check

    def reserve(self, source: str, quantity: int = 1,
                category: str = "general") -> Optional[Reservation]:
        """Hold the cost of a paid call. Returns None if it cannot be afforded."""
        with self._lock:
            self._roll_period_if_needed()
            amount = self.estimate(source, quantity)
            check = self._check(amount)
            if not check.allowed:
                logger.info(f"Reservation refused for {source}: {check.reason}")
                return None
            self._next_reservation += 1
            reservation = Reservation(self._next_reservation, source, quantity, category, amount)
            self._reserved[reservation.id] = reservation
            return reservation

    def commit(self, reservation: Reservation) -> float:
        """Turn a held reservation into recorded spend."""
        with self._lock:
            if self._reserved.pop(reservation.id, None) is None:
                raise KeyError(f"Unknown or settled reservation {reservation.id}")
            return self._record(
                reservation.source,
                self.unit_cost(reservation.source),
                reservation.quantity,
                reservation.category,
            )

    def release(self, reservation: Reservation):
        """Drop a reservation without charging it."""
        with self._lock:
            self._reserved.pop(reservation.id, None)

    # ==================== Recording ====================

    def record_usage(self, source: str, quantity: int = 1,
                     category: Optional[str] = None,
                     unit_cost: Optional[float] = None) -> float:
        """
        Record spend and return the amount charged.

        Raises:
            BudgetExceededError: enforce_limit is set and the charge
                would push spend past the limit
        """
        cost = self.unit_cost(source) if unit_cost is None else unit_cost
        with self._lock:
            self._roll_period_if_needed()
            amount = cost * quantity
            if self.enforce_limit and amount > 0:
                committed = self.spent + self.reserved
                if committed + amount > self.monthly_limit:
                    self._emit("exceeded", "exhausted", (
                        f"Budget exhausted: charge of {amount:.0f} refused "
                        f"({committed:.0f}/{self.monthly_limit:.0f})"
                    ))
                    raise BudgetExceededError(amount, committed, self.monthly_limit)
            return self._record(source, cost, quantity, category or "general")

    def _record(self, source: str, unit_cost: float, quantity: int, category: str) -> float:
        amount = unit_cost * quantity
        self.spent += amount
        self.category_breakdown[category] = self.category_breakdown.get(category, 0.0) + amount
        self.usage_history.append(UsageRecord(
            source=source,
            unit_cost=unit_cost,
            quantity=quantity,
            amount=amount,
            category=category,
            timestamp=self._clock().isoformat(),
        ))
        # Exhausted once not even the cheapest paid call fits
        if self.spent + self.cheapest_paid_cost() > self.monthly_limit:
            self.over_budget = True

        logger.debug(f"Recorded {source} x{quantity} = {amount:.0f} ({category})")
        self._check_alerts()
        return amount

    # ==================== Alerts ====================

    def projected_total(self) -> float:
        """Spend extrapolated to the end of the current month."""
        with self._lock:
            now = self._clock()
            elapsed_days = max((now - self.period_start).total_seconds() / 86400, 1.0)
            days_in_month = calendar.monthrange(now.year, now.month)[1]
            return self.spent / elapsed_days * days_in_month

    def _tiers(self):
        return sorted(
            [
                ("warning", self.alert_threshold),
                ("critical", CRITICAL_FRACTION),
                ("exceeded", EXCEEDED_FRACTION),
            ],
            key=lambda t: t[1],
        )

    def _check_alerts(self):
        fraction = self.spent / self.monthly_limit
        crossed = [level for level, threshold in self._tiers() if fraction >= threshold]
        if crossed:
            level = crossed[-1]
            self._emit(level, "threshold", (
                f"Budget {level}: {self.spent:.0f}/{self.monthly_limit:.0f} "
                f"({fraction:.0%}) used"
            ))

        projected = self.projected_total()
        if projected > self.monthly_limit * PROJECTION_ALERT_FACTOR:
            self._emit("warning", "projection", (
                f"Projected monthly spend {projected:.0f} exceeds "
                f"limit {self.monthly_limit:.0f}"
            ))

    def _emit(self, level: str, kind: str, message: str):
        now = self._clock()
        dedupe_key = f"{kind}:{level}"
        last = self._last_alert_at.get(dedupe_key)
        if last is not None and now - last < ALERT_COOLDOWN:
            return
        self._last_alert_at[dedupe_key] = now

        alert = BudgetAlert(
            level=level,
            kind=kind,
            message=message,
            spend=self.spent,
            limit=self.monthly_limit,
            percentage=self.spent / self.monthly_limit * 100,
            timestamp=now.isoformat(),
        )
        self.alerts.append(alert)
        if level == "warning":
            logger.warning(message)
        else:
            logger.error(message)

        if self._alert_callback:
            try:
                self._alert_callback(alert)
            except Exception as e:
                logger.error(f"Budget alert callback failed: {e}")

    # ==================== Period rollover ====================

    def _roll_period_if_needed(self):
        now = self._clock()
        if _period_key(now) == _period_key(self.period_start):
            return
        self.closed_periods.append({
            "period": _period_key(self.period_start),
            "spent": self.spent,
            "limit": self.monthly_limit,
            "category_breakdown": dict(self.category_breakdown),
            "alerts": len(self.alerts),
        })
        self.closed_periods = self.closed_periods[-HISTORY_MONTHS:]

        self.period_start = datetime(now.year, now.month, 1)
        self.spent = 0.0
        self.category_breakdown = {}
        self.over_budget = False
        self.alerts = []
        self._last_alert_at = {}

        cutoff = self._months_back(self.period_start, HISTORY_MONTHS)
        self.usage_history = [
            r for r in self.usage_history
            if datetime.fromisoformat(r.timestamp) >= cutoff
        ]
        logger.info(f"Budget period rolled over to {_period_key(self.period_start)}")

    @staticmethod
    def _months_back(moment: datetime, months: int) -> datetime:
        year, month = moment.year, moment.month - months
        while month <= 0:
            month += 12
            year -= 1
        return datetime(year, month, 1)

    # ==================== Reporting ====================

    def status(self) -> Dict[str, Any]:
        with self._lock:
            self._roll_period_if_needed()
            return {
                "period": _period_key(self.period_start),
                "limit": self.monthly_limit,
                "spent": self.spent,
                "reserved": self.reserved,
                "remaining": self.remaining,
                "percentage": self.spent / self.monthly_limit * 100,
                "projected_total": self.projected_total(),
                "over_budget": self.over_budget,
                "category_breakdown": dict(self.category_breakdown),
                "alerts": [a.to_dict() for a in self.alerts],
            }

    def usage_trend(self) -> List[Dict[str, Any]]:
        """Spend per period, closed periods first, current period last."""
        with self._lock:
            self._roll_period_if_needed()
            trend = [
                {"period": p["period"], "spent": p["spent"], "limit": p["limit"]}
                for p in self.closed_periods
            ]
            trend.append({
                "period": _period_key(self.period_start),
                "spent": self.spent,
                "limit": self.monthly_limit,
            })
            return trend

    def efficiency_analysis(self) -> Dict[str, Any]:
        with self._lock:
            self._roll_period_if_needed()
            current = [
                r for r in self.usage_history
                if datetime.fromisoformat(r.timestamp) >= self.period_start
            ]
            by_source: Dict[str, float] = {}
            requests = 0
            for record in current:
                by_source[record.source] = by_source.get(record.source, 0.0) + record.amount
                requests += record.quantity

            recommendations = []
            if self.projected_total() > self.monthly_limit:
                recommendations.append(
                    "Projected spend exceeds the limit; prefer free sources or lengthen cache TTLs."
                )
            if by_source.get("openai_api", 0.0) > self.spent * 0.5 > 0:
                recommendations.append(
                    "Generation calls dominate spend; reduce revision rounds."
                )
            if self.spent / self.monthly_limit >= self.alert_threshold:
                recommendations.append("Budget nearly used; restrict lookups to high-priority items.")

            return {
                "total_requests": requests,
                "total_spent": self.spent,
                "average_cost": self.spent / requests if requests else 0.0,
                "cost_by_source": by_source,
                "most_expensive_source": max(by_source, key=by_source.get) if by_source else None,
                "cheapest_source": min(by_source, key=by_source.get) if by_source else None,
                "category_breakdown": dict(self.category_breakdown),
                "recommendations": recommendations,
            }

    def budget_adjustment_suggestion(self) -> Dict[str, Any]:
        """Suggest a limit covering the average period spend plus 20 %."""
        with self._lock:
            observed = [p["spent"] for p in self.closed_periods]
            observed.append(self.projected_total())
            average = sum(observed) / len(observed)
            suggested = round(average * 1.2)
            if suggested > self.monthly_limit:
                reason = "Average spend plus buffer is above the current limit."
            elif suggested < self.monthly_limit * 0.5:
                reason = "Spend is well under the limit; it could be lowered."
            else:
                reason = "Current limit matches observed spend."
            return {
                "current_limit": self.monthly_limit,
                "average_spend": average,
                "suggested_limit": suggested,
                "reason": reason,
            }
