"""Application factory for the FastAPI app.

Owns the rate limit store for the lifetime of the app: the store and policy
are built here, published on ``app.state``, and the background sweeper is
started and stopped by the lifespan handler.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable

from fastapi import APIRouter, FastAPI

from admission.adapters.rate_limit.in_memory import InMemorySlidingWindowStore
from admission.api.routes import health_router, session_router
from admission.core.config import AppSettings, LogSettings, settings
from admission.core.errors import ConfigurationAppError
from admission.core.exception_handlers import setup_exception_handlers
from admission.core.logging import configure_logging
from admission.core.middleware import request_id_middleware
from admission.core.rate_limit import RateLimitPolicy, validate_rules


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    store: InMemorySlidingWindowStore = app.state.rate_limit_store
    store.start(app.state.settings.rate_limit_sweep_interval_seconds)
    try:
        yield
    finally:
        store.stop()


def _referenced_rule_names(routers: Iterable[APIRouter]) -> set[str]:
    """Collect rule names used by ``rate_limit(...)`` dependencies on the routers' routes.

    Routers are walked directly: depending on the FastAPI version, an included
    router may appear in ``app.routes`` as a single wrapper without ``dependant``.
    """

    names: set[str] = set()
    for router in routers:
        for route in router.routes:
            dependant = getattr(route, "dependant", None)
            if dependant is None:
                continue
            pending = list(dependant.dependencies)
            while pending:
                dependency = pending.pop()
                name = getattr(dependency.call, "rate_limit_rule", None)
                if name:
                    names.add(name)
                pending.extend(dependency.dependencies)
    return names


def create_app(
    app_settings: AppSettings | None = None,
    log_settings: LogSettings | None = None,
    store: InMemorySlidingWindowStore | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        app_settings: Application settings; defaults to the global settings.
        log_settings: Logging settings; defaults to the global settings.
        store: Pre-built window store (tests inject one with a fake clock).

    Returns:
        Configured FastAPI app with middleware, handlers and routers.

    Raises:
        ConfigurationAppError: If rules conflict with store limits or a route
            references a rule that is not configured.
    """
    app_settings = app_settings or settings.app
    log_settings = log_settings or settings.log

    # Logging first so subsequent init logs are formatted as desired
    configure_logging(log_settings)

    if store is None:
        store = InMemorySlidingWindowStore(
            max_entries_per_key=app_settings.rate_limit_max_entries_per_key,
            stale_after_ms=app_settings.rate_limit_stale_after_seconds * 1000,
        )
    validate_rules(
        app_settings.rate_limit_rules,
        max_entries_per_key=store.max_entries_per_key,
        stale_after_ms=store.stale_after_ms,
    )
    policy = RateLimitPolicy(store, app_settings.rate_limit_rules)

    app = FastAPI(
        title="Admission API",
        description=(
            "Request admission control with in-process sliding-window rate "
            "limits. Throttled requests receive 429 with X-RateLimit-* and "
            "Retry-After headers."
        ),
        version="0.1.0",
        lifespan=_lifespan,
    )
    app.state.settings = app_settings
    app.state.log_settings = log_settings
    app.state.rate_limit_store = store
    app.state.rate_limit_policy = policy

    app.middleware("http")(request_id_middleware)
    setup_exception_handlers(app)

    routers = (session_router, health_router)
    app.include_router(session_router, prefix="/v1")
    app.include_router(health_router)

    missing = _referenced_rule_names(routers) - policy.rule_names
    if missing:
        raise ConfigurationAppError(
            code="unknown_rate_limit_rule",
            message=f"Routes reference unconfigured rate limit rules: {sorted(missing)}",
            details={"hint": "Add the rules to APP_RATE_LIMIT_RULES"},
        )

    return app
