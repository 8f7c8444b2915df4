"""
Guarded OpenAI client factory.

Records usage events for cost tracking without modifying behavior.
"""

from typing import Any, Optional

from openai import AsyncOpenAI, OpenAI

from .interceptor import GuardedClient, WrapOptions


def guard_openai(
    guard: Any,
    client: Optional[Any] = None,
    options: Optional[WrapOptions] = None,
    **client_kwargs: Any
) -> GuardedClient:
    """Build (or take) an OpenAI client and wrap it with a Guard.

    Every ``chat.completions.create`` / ``responses.create`` call made
    through the returned client records a usage event on ``guard``.
    Failures are loud: API errors and budget kills propagate unchanged.

    Args:
        guard: Guard that records the calls
        client: Existing OpenAI or AsyncOpenAI client (default: ``OpenAI()``)
        options: Static or per-call user/feature attribution
        **client_kwargs: Passed to ``OpenAI(...)`` when no client is given

    Returns:
        Wrapped client exposing the same API surface

    Raises:
        ValueError: If both a client and client_kwargs are given
    """
    if client is not None and client_kwargs:
        raise ValueError("client_kwargs cannot be combined with an existing client")
    if client is None:
        client = OpenAI(**client_kwargs)
    return guard.wrap(client, options)


def guard_async_openai(
    guard: Any,
    client: Optional[Any] = None,
    options: Optional[WrapOptions] = None,
    **client_kwargs: Any
) -> GuardedClient:
    """Async counterpart of :func:`guard_openai` built on ``AsyncOpenAI``."""
    if client is not None and client_kwargs:
        raise ValueError("client_kwargs cannot be combined with an existing client")
    if client is None:
        client = AsyncOpenAI(**client_kwargs)
    return guard.wrap(client, options)
