"""
SDK for LLM Cost Guard.

Wraps provider clients so their calls are metered automatically.
"""

from .interceptor import BackgroundLoop, GuardedClient, ProxyCache, WrapOptions, wrap_client
from .openai_client import guard_async_openai, guard_openai

__all__ = [
    "BackgroundLoop",
    "GuardedClient",
    "ProxyCache",
    "WrapOptions",
    "wrap_client",
    "guard_openai",
    "guard_async_openai",
]
