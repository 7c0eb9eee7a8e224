"""Admission policy and FastAPI wiring for sliding-window rate limits.

This module bridges request context to the window store.

Design goals:
- Minimal coupling: routes depend on ``rate_limit("<rule>")`` only.
- Explicit ownership: the store and policy are built by ``create_app`` and
  live on ``app.state``; nothing here is a module-level singleton.
- Typed partitioning: one key builder per ``KeyStrategy`` variant.

Decisions are returned as values by ``RateLimitPolicy.admit``. Only the
FastAPI dependency turns a rejection into an exception, which the global
exception handlers render as 429/401.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable

from fastapi import Request, Response

from admission.adapters.rate_limit.base import AbstractWindowStore, Verdict
from admission.core.errors import (
    AuthRequiredAppError,
    ConfigurationAppError,
    RateLimitExceededAppError,
)
from admission.core.logging import hash_for_logs
from admission.schemas.rate_limit import KeyStrategy, RateLimitRule

logger = logging.getLogger(__name__)


UNKNOWN_ORIGIN = "unknown"
FORWARDED_FOR_HEADER = "X-Forwarded-For"

STRATEGY_TAGS: dict[KeyStrategy, str] = {
    KeyStrategy.ORIGIN: "ip",
    KeyStrategy.PRINCIPAL: "u",
    KeyStrategy.PRINCIPAL_OR_ORIGIN: "uo",
}


@dataclass(frozen=True)
class RequestContext:
    """The parts of a request the limiter is allowed to look at.

    Attributes:
        peer_address: Transport-level client address.
        forwarded_for: Raw forwarded-for header value, if trusted and present.
        principal_id: Identifier of the already-authenticated caller, if any.
    """

    peer_address: str | None = None
    forwarded_for: str | None = None
    principal_id: str | None = None

    @classmethod
    def from_request(cls, request: Request, *, trust_forwarded_for: bool = True) -> "RequestContext":
        """Build a context from a FastAPI request.

        The principal is read from ``request.state.principal_id``, which the
        authentication dependencies set after validating the caller.
        """

        forwarded_for = request.headers.get(FORWARDED_FOR_HEADER) if trust_forwarded_for else None
        return cls(
            peer_address=request.client.host if request.client else None,
            forwarded_for=forwarded_for,
            principal_id=getattr(request.state, "principal_id", None),
        )


def client_origin(context: RequestContext) -> str:
    """Resolve the network origin of a request.

    The first comma-separated forwarded-for entry wins when it is non-empty;
    otherwise the transport peer address is used.

    Examples:
        >>> client_origin(RequestContext(peer_address="10.0.0.1", forwarded_for="1.2.3.4, 10.0.0.9"))
        '1.2.3.4'
        >>> client_origin(RequestContext(peer_address="10.0.0.1"))
        '10.0.0.1'
        >>> client_origin(RequestContext())
        'unknown'
    """

    if context.forwarded_for:
        first = context.forwarded_for.split(",")[0].strip()
        if first:
            return first
    return context.peer_address or UNKNOWN_ORIGIN


def _origin_identifier(context: RequestContext) -> str | None:
    return client_origin(context)


def _principal_identifier(context: RequestContext) -> str | None:
    return context.principal_id or None


def _principal_or_origin_identifier(context: RequestContext) -> str | None:
    return context.principal_id or client_origin(context)


_IDENTIFIER_BUILDERS: dict[KeyStrategy, Callable[[RequestContext], str | None]] = {
    KeyStrategy.ORIGIN: _origin_identifier,
    KeyStrategy.PRINCIPAL: _principal_identifier,
    KeyStrategy.PRINCIPAL_OR_ORIGIN: _principal_or_origin_identifier,
}


def build_partition_key(rule: RateLimitRule, context: RequestContext) -> str | None:
    """Compose ``<rule>:<strategy tag>:<identifier>`` for a request.

    Returns:
        The partition key, or None when the rule needs an authenticated
        principal and the request has none.
    """

    identifier = _IDENTIFIER_BUILDERS[rule.key_by](context)
    if identifier is None:
        return None
    return f"{rule.name}:{STRATEGY_TAGS[rule.key_by]}:{identifier}"


class DecisionOutcome(str, Enum):
    ADMITTED = "admitted"
    REJECTED = "rejected"
    AUTH_REQUIRED = "auth_required"


@dataclass(frozen=True)
class Decision:
    """Outcome of admitting one request under one rule."""

    outcome: DecisionOutcome
    rule: RateLimitRule
    verdict: Verdict | None = None

    @property
    def admitted(self) -> bool:
        return self.outcome is DecisionOutcome.ADMITTED

    @property
    def retry_after_seconds(self) -> int:
        return self.verdict.retry_after_seconds if self.verdict else 0

    def headers(self) -> dict[str, str]:
        """Standard rate limit headers for this decision.

        ``Retry-After`` is only present on rejection. Auth-required decisions
        carry no quota metadata.
        """

        if self.verdict is None:
            return {}

        headers = {
            "X-RateLimit-Limit": str(self.verdict.limit),
            "X-RateLimit-Remaining": str(self.verdict.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.verdict.reset_at / 1000)),
        }
        if self.outcome is DecisionOutcome.REJECTED:
            headers["Retry-After"] = str(self.verdict.retry_after_seconds)
        return headers


def validate_rules(
    rules: Iterable[RateLimitRule],
    *,
    max_entries_per_key: int,
    stale_after_ms: int,
) -> None:
    """Cross-check rules against store limits.

    Field-level validation already happened in pydantic; this catches the
    combinations that only make sense to reject at startup.

    Raises:
        ConfigurationAppError: On a window longer than the staleness
            threshold or a max above the per-partition cap.
    """

    for rule in rules:
        if rule.window_ms > stale_after_ms:
            raise ConfigurationAppError(
                code="rate_limit_window_too_long",
                message=(
                    f"Rule '{rule.name}' window ({rule.window_ms} ms) exceeds the "
                    f"partition staleness threshold ({stale_after_ms} ms)"
                ),
                details={
                    "rule": rule.name,
                    "hint": "Raise APP_RATE_LIMIT_STALE_AFTER_SECONDS or shorten the window",
                },
            )

        if rule.max > max_entries_per_key:
            raise ConfigurationAppError(
                code="rate_limit_max_above_cap",
                message=(
                    f"Rule '{rule.name}' max ({rule.max}) exceeds the per-partition "
                    f"cap ({max_entries_per_key})"
                ),
                details={
                    "rule": rule.name,
                    "hint": "Raise APP_RATE_LIMIT_MAX_ENTRIES_PER_KEY or lower the max",
                },
            )


class RateLimitPolicy:
    """Applies named rules against a window store."""

    def __init__(self, store: AbstractWindowStore, rules: Iterable[RateLimitRule]) -> None:
        self._store = store
        self._rules: dict[str, RateLimitRule] = {}
        for rule in rules:
            if rule.name in self._rules:
                raise ConfigurationAppError(
                    code="duplicate_rate_limit_rule",
                    message=f"Rate limit rule '{rule.name}' is defined more than once",
                    details={"rule": rule.name},
                )
            self._rules[rule.name] = rule

    @property
    def store(self) -> AbstractWindowStore:
        return self._store

    @property
    def rule_names(self) -> frozenset[str]:
        return frozenset(self._rules)

    def rule(self, name: str) -> RateLimitRule:
        """Look up a configured rule.

        Raises:
            ConfigurationAppError: If no rule with that name is configured.
        """

        try:
            return self._rules[name]
        except KeyError:
            raise ConfigurationAppError(
                code="unknown_rate_limit_rule",
                message=f"Rate limit rule '{name}' is not configured",
                details={"rule": name},
            ) from None

    def admit(self, context: RequestContext, rule: RateLimitRule) -> Decision:
        """Decide whether one request may proceed under ``rule``.

        Args:
            context: Request attributes used for partitioning.
            rule: The limit to apply.

        Returns:
            Decision with outcome ADMITTED, REJECTED or AUTH_REQUIRED.
        """

        key = build_partition_key(rule, context)
        if key is None:
            logger.warning(
                "rate_limit.auth_required",
                extra={"rule": rule.name, "key_by": rule.key_by.value},
            )
            return Decision(outcome=DecisionOutcome.AUTH_REQUIRED, rule=rule)

        verdict = self._store.check(key, rule.window_ms, rule.max)
        log_fields: dict[str, Any] = {
            "rule": rule.name,
            "key_by": rule.key_by.value,
            "key_hash": hash_for_logs(key),
            "limit": verdict.limit,
            "remaining": verdict.remaining,
            "window_ms": rule.window_ms,
        }

        if verdict.admitted:
            logger.info("rate_limit.allowed", extra=log_fields)
            return Decision(outcome=DecisionOutcome.ADMITTED, rule=rule, verdict=verdict)

        log_fields["retry_after_s"] = verdict.retry_after_seconds
        logger.warning("rate_limit.exceeded", extra=log_fields)
        return Decision(outcome=DecisionOutcome.REJECTED, rule=rule, verdict=verdict)


def rate_limit(rule_name: str):
    """Build a FastAPI dependency enforcing the named rule.

    Usage:
        @router.post("/login", dependencies=[Depends(rate_limit("login"))])
        async def login():
            ...

    Admitted requests get ``X-RateLimit-*`` headers (when enabled). Rejected
    requests raise ``RateLimitExceededAppError`` (429); principal-scoped rules
    without an authenticated caller raise ``AuthRequiredAppError`` (401).
    """

    async def enforce_rate_limit(request: Request, response: Response) -> None:
        app_settings = request.app.state.settings
        if not app_settings.rate_limit_enabled:
            return

        policy: RateLimitPolicy = request.app.state.rate_limit_policy
        rule = policy.rule(rule_name)
        context = RequestContext.from_request(
            request,
            trust_forwarded_for=app_settings.rate_limit_trust_forwarded_for,
        )
        decision = policy.admit(context, rule)

        if decision.outcome is DecisionOutcome.AUTH_REQUIRED:
            raise AuthRequiredAppError(
                code="authentication_required",
                message="Authentication required for this rate limit",
                details={"rule": rule.name},
            )

        headers = decision.headers()
        if not app_settings.rate_limit_include_headers:
            headers = {k: v for k, v in headers.items() if k == "Retry-After"}

        if decision.admitted:
            response.headers.update(headers)
            return

        raise RateLimitExceededAppError(
            code="rate_limit_exceeded",
            message="Rate limit exceeded. Please try again later.",
            retry_after=decision.retry_after_seconds,
            headers=headers,
        )

    enforce_rate_limit.rate_limit_rule = rule_name  # type: ignore[attr-defined]
    return enforce_rate_limit
