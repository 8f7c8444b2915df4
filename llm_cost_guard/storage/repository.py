"""
Repository pattern for data access.

Defines the pluggable ledger interface and the in-memory reference ledger.
"""

import logging
import threading
from abc import ABC, abstractmethod
from bisect import bisect_left, bisect_right
from dataclasses import replace
from datetime import datetime
from typing import List, Optional

from .models import UsageEvent, UsageFilter

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Base class adapters may use for backend failures.

    The Guard never catches, wraps, or retries these; they propagate to the
    caller of ``record`` or ``query`` unchanged.
    """


class StorageAdapter(ABC):
    """Abstract interface for usage ledger persistence.

    Implementations must keep events ordered by non-decreasing ``created_at``
    and must be safe for concurrent access.
    """

    @abstractmethod
    async def append(self, event: UsageEvent) -> UsageEvent:
        """Append one event and return it as stored.

        The stored copy may carry a later ``created_at`` than the one given
        if that is needed to keep the ordering invariant.
        """
        ...

    @abstractmethod
    async def list(self, usage_filter: Optional[UsageFilter] = None) -> List[UsageEvent]:
        """List events matching the filter in ledger order."""
        ...

    async def reset(self) -> None:
        """Remove all events. Optional for durable backends."""
        raise NotImplementedError(f"{type(self).__name__} does not support reset")


class MemoryStorageAdapter(StorageAdapter):
    """In-memory append-only ledger.

    Suitable for testing and single-process deployments. Events are kept in
    ``created_at`` order next to a parallel list of keys so time-bounded
    queries can bisect straight to the matching slice.
    """

    def __init__(self):
        self._events: List[UsageEvent] = []
        self._keys: List[datetime] = []
        self._lock = threading.Lock()

    async def append(self, event: UsageEvent) -> UsageEvent:
        with self._lock:
            if self._keys and event.created_at < self._keys[-1]:
                event = replace(event, created_at=self._keys[-1])
            self._events.append(event)
            self._keys.append(event.created_at)
            count = len(self._events)
        logger.debug("Appended usage event for %s (%d events stored)", event.model, count)
        return event

    async def list(self, usage_filter: Optional[UsageFilter] = None) -> List[UsageEvent]:
        with self._lock:
            if usage_filter is None:
                return list(self._events)
            candidates = self._events[self._bounds(usage_filter.since, usage_filter.until)]
        return [event for event in candidates if usage_filter.matches(event)]

    async def reset(self) -> None:
        with self._lock:
            self._events = []
            self._keys = []

    def __len__(self) -> int:
        return len(self._events)

    def _bounds(self, since: Optional[datetime], until: Optional[datetime]) -> slice:
        """Slice of events whose created_at lies in [since, until]."""
        start = 0 if since is None else bisect_left(self._keys, since)
        stop = len(self._keys) if until is None else bisect_right(self._keys, until)
        return slice(start, max(start, stop))
