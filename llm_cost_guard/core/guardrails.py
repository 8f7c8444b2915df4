"""
Budget guardrails and kill-switch enforcement.

Evaluates configured budget rules against ledger window sums after every
recorded call.

Evaluation Order (per rule, in configuration order):
1. Match check - rule model/user/feature filters must equal the event's
2. Scope derivation - global, per user, per feature, or per user+feature
3. Window aggregation - sum of ledger cost in [now - window, now] for the scope
4. Threshold escalation - 80/90/100 alerts, each fired once per episode
5. Kill decision - first rule whose window usage exceeds its limit
"""

import itertools
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from ..storage.models import UsageEvent, UsageFilter
from ..storage.repository import StorageAdapter

logger = logging.getLogger(__name__)

ALERT_THRESHOLDS = (80, 90, 100)


class ScopeBy(Enum):
    """How a rule partitions usage into independent budgets."""
    GLOBAL = "global"
    USER = "user"
    FEATURE = "feature"
    USER_FEATURE = "user_feature"

    @property
    def includes_user(self) -> bool:
        return self in (ScopeBy.USER, ScopeBy.USER_FEATURE)

    @property
    def includes_feature(self) -> bool:
        return self in (ScopeBy.FEATURE, ScopeBy.USER_FEATURE)


@dataclass(frozen=True)
class BudgetRule:
    """Spend limit over a rolling window with optional filters and scoping."""
    limit_usd: float
    window: timedelta
    id: Optional[str] = None
    model: Optional[str] = None
    user_id: Optional[str] = None
    feature: Optional[str] = None
    scope_by: Union[ScopeBy, str] = ScopeBy.GLOBAL
    kill_switch: bool = True

    def __post_init__(self):
        """Validate limit and window, normalize scope mode."""
        if self.limit_usd <= 0:
            raise ValueError("limit_usd must be > 0")
        if not isinstance(self.window, timedelta):
            raise ValueError("window must be a timedelta")
        if self.window <= timedelta(0):
            raise ValueError("window must be > 0")
        if not isinstance(self.scope_by, ScopeBy):
            try:
                scope_by = ScopeBy(str(self.scope_by).lower())
            except ValueError:
                valid = [scope.value for scope in ScopeBy]
                raise ValueError(f"scope_by must be one of: {valid}")
            object.__setattr__(self, "scope_by", scope_by)

    def matches(self, event: UsageEvent) -> bool:
        """Check the rule's static filters against an event."""
        if self.model is not None and self.model != event.model:
            return False
        if self.user_id is not None and self.user_id != event.user_id:
            return False
        if self.feature is not None and self.feature != event.feature:
            return False
        return True


@dataclass(frozen=True)
class BudgetScope:
    """Concrete scope a rule's window usage is computed against."""
    key: str
    user_id: Optional[str]
    feature: Optional[str]


@dataclass(frozen=True)
class BudgetAlert:
    """One threshold crossing for one scope."""
    rule: BudgetRule
    threshold_percent: int
    usage_usd: float
    limit_usd: float
    scope_key: str


@dataclass(frozen=True)
class BudgetKillEvent:
    """Decision that a scope's window usage exceeded its rule's limit."""
    rule: BudgetRule
    usage_usd: float
    limit_usd: float
    scope_key: str


class BudgetExceededError(Exception):
    """Raised when a recorded call pushes a kill-switch budget over its limit."""

    def __init__(self, event: BudgetKillEvent):
        super().__init__(
            f"Budget exceeded for {event.scope_key}. "
            f"Limit: ${event.limit_usd:.6f}, usage: ${event.usage_usd:.6f}"
        )
        self.event = event


@dataclass
class PolicyDecision:
    """Outcome of evaluating every rule for one event."""
    alerts: List[BudgetAlert] = field(default_factory=list)
    kill_event: Optional[BudgetKillEvent] = None


class Subscribers:
    """Ordered callback registry where each registration has its own handle."""

    def __init__(self):
        self._callbacks: Dict[int, Callable] = {}
        self._tokens = itertools.count()
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable) -> Callable[[], None]:
        """Register a callback and return a function that removes it."""
        with self._lock:
            token = next(self._tokens)
            self._callbacks[token] = callback

        def unsubscribe() -> None:
            with self._lock:
                self._callbacks.pop(token, None)

        return unsubscribe

    def notify(self, payload) -> None:
        with self._lock:
            callbacks = list(self._callbacks.values())
        for callback in callbacks:
            callback(payload)

    def __len__(self) -> int:
        return len(self._callbacks)


def resolve_scope(rule: BudgetRule, rule_id: str, event: UsageEvent) -> Optional[BudgetScope]:
    """Build the scope key for an event, None if a required dimension is missing."""
    parts = [rule_id]

    if rule.scope_by.includes_user:
        if not event.user_id:
            return None
        parts.append(f"user:{event.user_id}")

    if rule.scope_by.includes_feature:
        if not event.feature:
            return None
        parts.append(f"feature:{event.feature}")

    if rule.scope_by == ScopeBy.GLOBAL:
        parts.append("global")

    return BudgetScope(
        key="|".join(parts),
        user_id=event.user_id if rule.scope_by.includes_user else rule.user_id,
        feature=event.feature if rule.scope_by.includes_feature else rule.feature,
    )


def highest_threshold(percent: float) -> int:
    """Highest alert threshold reached at this usage percentage, 0 below 80."""
    reached = 0
    for threshold in ALERT_THRESHOLDS:
        if percent >= threshold:
            reached = threshold
    return reached


class BudgetPolicyEngine:
    """Evaluates budget rules and owns per-scope alert state.

    Alert state is keyed by (rule index, scope key) and holds the highest
    threshold already fired for the current episode. Window sums are read
    without cross-call serialization, so concurrent calls on one scope may
    each see usage from before the other's append.
    """

    def __init__(
        self,
        rules: Sequence[BudgetRule],
        storage: StorageAdapter,
        now: Callable[[], datetime],
    ):
        self.rules: Tuple[BudgetRule, ...] = tuple(rules)
        self._storage = storage
        self._now = now
        self._alert_state: Dict[Tuple[int, str], int] = {}
        self._state_lock = threading.Lock()
        self.alert_subscribers = Subscribers()
        self.kill_subscribers = Subscribers()

    def rule_id(self, index: int) -> str:
        rule = self.rules[index]
        return rule.id or f"rule-{index}"

    def alert_level(self, index: int, scope_key: str) -> int:
        """Highest threshold fired in the scope's current episode."""
        with self._state_lock:
            return self._alert_state.get((index, scope_key), 0)

    async def window_usage(self, rule: BudgetRule, scope: BudgetScope) -> float:
        """Sum of ledger cost in the rule's window for one scope."""
        now = self._now()
        events = await self._storage.list(UsageFilter(
            model=rule.model,
            user_id=scope.user_id,
            feature=scope.feature,
            since=now - rule.window,
            until=now,
        ))
        return sum(event.cost_usd for event in events)

    async def evaluate(self, event: UsageEvent) -> PolicyDecision:
        """Evaluate every rule for a freshly appended event.

        Alert callbacks run as each alert fires; kill callbacks run once,
        after all rules, for the first rule that decided a kill.

        Returns:
            PolicyDecision with fired alerts and the surfaced kill event
        """
        decision = PolicyDecision()

        for index, rule in enumerate(self.rules):
            if not rule.matches(event):
                continue

            scope = resolve_scope(rule, self.rule_id(index), event)
            if scope is None:
                continue

            usage_usd = await self.window_usage(rule, scope)
            percent = usage_usd / rule.limit_usd * 100

            for threshold in self._escalate(index, scope.key, percent):
                alert = BudgetAlert(
                    rule=rule,
                    threshold_percent=threshold,
                    usage_usd=usage_usd,
                    limit_usd=rule.limit_usd,
                    scope_key=scope.key,
                )
                logger.warning(
                    "Budget alert %d%% for %s: $%.6f of $%.6f",
                    threshold, scope.key, usage_usd, rule.limit_usd,
                )
                decision.alerts.append(alert)
                self.alert_subscribers.notify(alert)

            if decision.kill_event is None and rule.kill_switch and usage_usd > rule.limit_usd:
                decision.kill_event = BudgetKillEvent(
                    rule=rule,
                    usage_usd=usage_usd,
                    limit_usd=rule.limit_usd,
                    scope_key=scope.key,
                )

        if decision.kill_event is not None:
            logger.warning(
                "Budget kill for %s: $%.6f exceeds $%.6f",
                decision.kill_event.scope_key,
                decision.kill_event.usage_usd,
                decision.kill_event.limit_usd,
            )
            self.kill_subscribers.notify(decision.kill_event)

        return decision

    def _escalate(self, index: int, scope_key: str, percent: float) -> List[int]:
        """Update the scope's episode state and return newly crossed thresholds."""
        reached = highest_threshold(percent)
        with self._state_lock:
            previous = self._alert_state.get((index, scope_key), 0)
            # Below 80 the episode is over; the scope can fire 80/90/100 again
            self._alert_state[(index, scope_key)] = reached
        return [t for t in ALERT_THRESHOLDS if previous < t <= reached]
