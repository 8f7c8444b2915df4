"""
Storage layer for LLM Cost Guard.

Usage events, ledger filters, and pluggable ledger adapters.
"""

from .models import UsageEvent, UsageFilter
from .repository import MemoryStorageAdapter, StorageAdapter, StorageError

__all__ = ["UsageEvent", "UsageFilter", "MemoryStorageAdapter", "StorageAdapter", "StorageError"]
