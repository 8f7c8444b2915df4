"""
HTTP middleware for FastAPI / Starlette applications.

Pre-flight checks reject requests whose user/feature already spent their
window allowance. Handlers reach the Guard through
``request.state.llm_cost_guard`` to record calls post-flight.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Optional

from fastapi import HTTPException, Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from .core.guard import Guard
from .storage.models import UsageFilter

Resolver = Callable[[Request], Optional[str]]


def default_user_resolver(request: Request) -> Optional[str]:
    """Read the user id from the ``x-user-id`` header."""
    return request.headers.get("x-user-id") or None


def default_feature_resolver(request: Request) -> Optional[str]:
    """Read the feature from the ``x-feature`` header."""
    return request.headers.get("x-feature") or None


@dataclass(frozen=True)
class PrecheckOptions:
    """Spend allowance checked before a request reaches the handler."""
    enabled: bool
    max_spend_usd: float
    window: timedelta


@dataclass(frozen=True)
class MiddlewareOptions:
    """How requests are attributed and rejected."""
    user_id_resolver: Resolver = field(default=default_user_resolver)
    feature_resolver: Resolver = field(default=default_feature_resolver)
    over_budget_status_code: int = 429
    over_budget_message: str = "Budget exceeded"
    precheck: Optional[PrecheckOptions] = None


async def is_over_budget(guard: Guard, request: Request, options: Optional[MiddlewareOptions] = None) -> bool:
    """Check whether the request's user/feature spent their window allowance.

    Always False when no precheck is enabled.
    """
    if options is None or options.precheck is None or not options.precheck.enabled:
        return False

    usage = await guard.query(UsageFilter(
        user_id=options.user_id_resolver(request),
        feature=options.feature_resolver(request),
        window=options.precheck.window,
    ))
    return usage.total_spend_usd >= options.precheck.max_spend_usd


class BudgetGuardMiddleware(BaseHTTPMiddleware):
    """Rejects over-budget requests and exposes the Guard to handlers."""

    def __init__(self, app: Any, guard: Guard, options: Optional[MiddlewareOptions] = None):
        super().__init__(app)
        self.guard = guard
        self.options = options or MiddlewareOptions()

    async def dispatch(self, request: Request, call_next):
        if await is_over_budget(self.guard, request, self.options):
            return JSONResponse(
                status_code=self.options.over_budget_status_code,
                content={"error": self.options.over_budget_message},
            )

        request.state.llm_cost_guard = self.guard
        return await call_next(request)


def budget_precheck(guard: Guard, options: Optional[MiddlewareOptions] = None):
    """Build a FastAPI dependency that rejects over-budget requests.

    Usage::

        @app.post("/chat", dependencies=[Depends(budget_precheck(guard, options))])
    """
    options = options or MiddlewareOptions()

    async def dependency(request: Request) -> Guard:
        if await is_over_budget(guard, request, options):
            raise HTTPException(
                status_code=options.over_budget_status_code,
                detail=options.over_budget_message,
            )
        request.state.llm_cost_guard = guard
        return guard

    return dependency
