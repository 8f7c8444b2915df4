"""
Data models for storage layer.

Defines usage events and the filters used to query them.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional


@dataclass(frozen=True)
class UsageEvent:
    """Immutable record of one metered LLM call.

    Append-only events that create an auditable ledger of AI costs.
    Once written, these records must never be modified. ``created_at`` is
    the ordering key of the ledger; ``timestamp`` is the caller's logical time.
    """
    model: str
    input_tokens: int
    output_tokens: int
    timestamp: datetime
    created_at: datetime
    cost_usd: float
    user_id: Optional[str] = None
    feature: Optional[str] = None

    @property
    def total_tokens(self) -> int:
        """Total tokens used (input + output)."""
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class UsageFilter:
    """Equality and time-range criteria for ledger queries.

    ``since`` and ``until`` are inclusive bounds on ``created_at``. ``window``
    is only understood by the Guard, which turns it into ``since``.
    """
    model: Optional[str] = None
    user_id: Optional[str] = None
    feature: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    window: Optional[timedelta] = None

    def matches(self, event: UsageEvent) -> bool:
        """Check if an event satisfies every criterion set on this filter."""
        if self.model is not None and event.model != self.model:
            return False
        if self.user_id is not None and event.user_id != self.user_id:
            return False
        if self.feature is not None and event.feature != self.feature:
            return False
        if self.since is not None and event.created_at < self.since:
            return False
        if self.until is not None and event.created_at > self.until:
            return False
        return True
