"""
Metering facade.

One Guard instance prices calls, appends them to the usage ledger, runs the
budget policy engine and answers usage queries.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from .guardrails import (
    BudgetAlert,
    BudgetExceededError,
    BudgetKillEvent,
    BudgetPolicyEngine,
    BudgetRule,
)
from .pricing import PRICING_TABLE, ModelPricing, UnknownModelError, calculate_cost
from ..sdk.interceptor import BackgroundLoop, ProxyCache, WrapOptions, wrap_client
from ..storage.models import UsageEvent, UsageFilter
from ..storage.repository import MemoryStorageAdapter, StorageAdapter

logger = logging.getLogger(__name__)


class UnknownModelPolicy(Enum):
    """What to do when a recorded model has no pricing entry."""
    ERROR = "error"
    ZERO = "zero"


@dataclass
class GuardConfig:
    """Configuration for a Guard instance."""
    budgets: List[BudgetRule]
    pricing: Optional[Dict[str, ModelPricing]] = None
    storage: Optional[StorageAdapter] = None
    now: Optional[Callable[[], datetime]] = None
    throw_on_kill: bool = True
    on_unknown_model: Union[UnknownModelPolicy, str] = UnknownModelPolicy.ERROR

    def __post_init__(self):
        """Normalize the unknown-model policy."""
        if self.budgets is None:
            raise ValueError("budgets is required (use an empty list for none)")
        if not isinstance(self.on_unknown_model, UnknownModelPolicy):
            try:
                self.on_unknown_model = UnknownModelPolicy(str(self.on_unknown_model).lower())
            except ValueError:
                valid = [policy.value for policy in UnknownModelPolicy]
                raise ValueError(f"on_unknown_model must be one of: {valid}")


@dataclass(frozen=True)
class TrackResult:
    """Outcome of one recorded call."""
    event: UsageEvent
    alerts: List[BudgetAlert] = field(default_factory=list)
    kill_event: Optional[BudgetKillEvent] = None

    @property
    def kill_triggered(self) -> bool:
        return self.kill_event is not None

    def raise_for_kill(self) -> None:
        """Raise BudgetExceededError if this call triggered a kill."""
        if self.kill_event is not None:
            raise BudgetExceededError(self.kill_event)


@dataclass
class UsageSummary:
    """Aggregated spend and token totals over a set of usage events."""
    total_spend_usd: float = 0.0
    total_calls: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    by_model: Dict[str, float] = field(default_factory=dict)
    by_user: Dict[str, float] = field(default_factory=dict)
    by_feature: Dict[str, float] = field(default_factory=dict)

    @classmethod
    def from_events(cls, events: Iterable[UsageEvent]) -> "UsageSummary":
        summary = cls()
        for event in events:
            summary.total_spend_usd += event.cost_usd
            summary.total_calls += 1
            summary.total_input_tokens += event.input_tokens
            summary.total_output_tokens += event.output_tokens
            summary.by_model[event.model] = summary.by_model.get(event.model, 0.0) + event.cost_usd
            if event.user_id:
                summary.by_user[event.user_id] = summary.by_user.get(event.user_id, 0.0) + event.cost_usd
            if event.feature:
                summary.by_feature[event.feature] = summary.by_feature.get(event.feature, 0.0) + event.cost_usd
        return summary


class Guard:
    """Meters LLM calls and enforces spend budgets.

    Wraps a usage ledger and a budget policy engine behind a small API:
    ``record`` a call, ``query`` usage, subscribe to alerts and kills, and
    ``wrap`` a provider client so its calls are recorded automatically.
    """

    def __init__(self, config: GuardConfig):
        self.config = config
        self.storage = config.storage or MemoryStorageAdapter()
        self.pricing = PRICING_TABLE.with_overrides(config.pricing)
        self.now = config.now or datetime.now
        self.throw_on_kill = config.throw_on_kill
        self.on_unknown_model = config.on_unknown_model
        self.policy = BudgetPolicyEngine(config.budgets, self.storage, self.now)
        self._proxies = ProxyCache()
        self._sync_loop = BackgroundLoop()

    async def record(
        self,
        model: str,
        input_tokens: int,
        output_tokens: int,
        *,
        user_id: Optional[str] = None,
        feature: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> TrackResult:
        """Record one metered call.

        The event is appended before budgets are evaluated, so the call's own
        cost counts toward its window.

        Args:
            model: Model identifier used for pricing
            input_tokens: Input/prompt tokens (non-negative)
            output_tokens: Output/completion tokens (non-negative)
            user_id: Optional user attribution
            feature: Optional feature attribution
            timestamp: Logical time of the call (defaults to now); ledger
                ordering always uses the clock at record time

        Returns:
            TrackResult with the stored event, fired alerts and kill outcome

        Raises:
            ValueError: If token counts are negative
            UnknownModelError: If the model is unpriced and policy is ERROR
            BudgetExceededError: If a kill was decided and throw_on_kill is set
        """
        if input_tokens < 0 or output_tokens < 0:
            raise ValueError("token counts cannot be negative")

        cost_usd = calculate_cost(model, input_tokens, output_tokens, self.pricing.prices)
        if cost_usd is None:
            if self.on_unknown_model == UnknownModelPolicy.ERROR:
                raise UnknownModelError(model)
            logger.debug("No pricing for %s, recording at zero cost", model)
            cost_usd = 0.0

        created_at = self.now()
        event = await self.storage.append(UsageEvent(
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            timestamp=timestamp or created_at,
            created_at=created_at,
            cost_usd=cost_usd,
            user_id=user_id,
            feature=feature,
        ))
        logger.debug(
            "Recorded %s call: %d in / %d out tokens, $%.6f",
            model, input_tokens, output_tokens, cost_usd,
        )

        decision = await self.policy.evaluate(event)
        result = TrackResult(event=event, alerts=decision.alerts, kill_event=decision.kill_event)
        if self.throw_on_kill:
            result.raise_for_kill()
        return result

    async def query(self, usage_filter: Optional[UsageFilter] = None) -> UsageSummary:
        """Summarize ledger usage matching a filter.

        A ``window`` on the filter is resolved to ``since = now - window``.
        """
        if usage_filter is not None and usage_filter.window is not None:
            usage_filter = UsageFilter(
                model=usage_filter.model,
                user_id=usage_filter.user_id,
                feature=usage_filter.feature,
                since=self.now() - usage_filter.window,
                until=usage_filter.until,
            )
        events = await self.storage.list(usage_filter)
        return UsageSummary.from_events(events)

    def on_budget_alert(self, callback: Callable[[BudgetAlert], None]) -> Callable[[], None]:
        """Subscribe to threshold alerts. Returns an idempotent unsubscribe."""
        return self.policy.alert_subscribers.subscribe(callback)

    def on_kill(self, callback: Callable[[BudgetKillEvent], None]) -> Callable[[], None]:
        """Subscribe to kill events. Returns an idempotent unsubscribe."""
        return self.policy.kill_subscribers.subscribe(callback)

    def wrap(self, client: Any, options: Optional[WrapOptions] = None) -> Any:
        """Return a proxy of ``client`` whose calls are recorded automatically.

        Wrapping the same object with equal options returns the same proxy.
        """
        return wrap_client(self.record, client, options or WrapOptions(), self._proxies, self._sync_loop)

    def close(self) -> None:
        """Stop the background loop used to record sync client calls."""
        self._sync_loop.close()


def create_guard(budgets: List[BudgetRule], **kwargs: Any) -> Guard:
    """Build a Guard from keyword configuration."""
    return Guard(GuardConfig(budgets=budgets, **kwargs))
