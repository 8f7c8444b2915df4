"""
LLM Cost Guard.

Meters LLM API calls, summarizes spend, and enforces budgets with threshold
alerts and kill switches.
"""

from .core.guard import (
    Guard,
    GuardConfig,
    TrackResult,
    UnknownModelPolicy,
    UsageSummary,
    create_guard,
)
from .core.guardrails import (
    BudgetAlert,
    BudgetExceededError,
    BudgetKillEvent,
    BudgetRule,
    ScopeBy,
)
from .core.pricing import (
    BUILT_IN_PRICING,
    ModelPricing,
    UnknownModelError,
    calculate_cost,
    get_model_pricing,
)
from .sdk import GuardedClient, WrapOptions
from .storage import MemoryStorageAdapter, StorageAdapter, StorageError, UsageEvent, UsageFilter

__version__ = "0.1.0"

__all__ = [
    "Guard",
    "GuardConfig",
    "TrackResult",
    "UnknownModelPolicy",
    "UsageSummary",
    "create_guard",
    "BudgetAlert",
    "BudgetExceededError",
    "BudgetKillEvent",
    "BudgetRule",
    "ScopeBy",
    "BUILT_IN_PRICING",
    "ModelPricing",
    "UnknownModelError",
    "calculate_cost",
    "get_model_pricing",
    "GuardedClient",
    "WrapOptions",
    "MemoryStorageAdapter",
    "StorageAdapter",
    "StorageError",
    "UsageEvent",
    "UsageFilter",
]
