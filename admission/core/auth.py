"""API key authentication and principal resolution.

Keys are validated against a comma-separated list from configuration. A
validated key becomes the request's principal: a stable, non-reversible id
stored on ``request.state.principal_id`` for principal-scoped rate limits.

Design principles:
- The limiter never authenticates; it only reads ``principal_id``.
- Authentication runs as a FastAPI dependency declared before
  ``rate_limit(...)`` so the principal exists when limits are checked.
"""

from __future__ import annotations

import hashlib
import logging
from typing import Annotated

from fastapi import Header, HTTPException, Request, status

from admission.core.config import AppSettings
from admission.core.errors import AuthenticationAppError
from admission.core.logging import hash_for_logs

logger = logging.getLogger(__name__)


def parse_api_keys(keys_string: str | None) -> set[str]:
    """Parse comma-separated API keys into a set.

    Examples:
        >>> sorted(parse_api_keys("key1, key2 , key3 "))
        ['key1', 'key2', 'key3']
        >>> parse_api_keys(None)
        set()
    """
    if not keys_string:
        return set()

    return {key.strip() for key in keys_string.split(",") if key.strip()}


def principal_for_api_key(api_key: str) -> str:
    """Derive the principal id recorded for an API key.

    The id keys principal-scoped rate limit partitions, so its derivation is
    independent of the digests used for log redaction.
    """

    digest = hashlib.sha256(f"principal:{api_key}".encode()).hexdigest()
    return f"key_{digest[:24]}"


def validate_api_key(provided_key: str, app_settings: AppSettings) -> None:
    """Validate that the provided API key matches configured keys.

    Args:
        provided_key: API key to validate.
        app_settings: Settings holding the configured keys.

    Raises:
        AuthenticationAppError: If the key is invalid or no keys are configured.
    """
    valid_keys = parse_api_keys(app_settings.api_keys)

    if not valid_keys:
        logger.error(
            "api_key_validation_failed",
            extra={"reason": "api_keys_not_configured"},
        )
        raise AuthenticationAppError(
            code="api_keys_not_configured",
            message="API key authentication is enabled but no valid keys are configured",
            details={"hint": "Set APP_API_KEYS or disable auth with APP_API_KEY_REQUIRED=false"},
        )

    if provided_key not in valid_keys:
        logger.warning(
            "api_key_validation_failed",
            extra={
                "reason": "invalid_api_key",
                "api_key_hash": hash_for_logs(provided_key),
            },
        )
        raise AuthenticationAppError(
            code="invalid_api_key",
            message="Invalid or missing API key",
        )


async def verify_api_key(
    request: Request,
    x_api_key: Annotated[str | None, Header(alias="X-API-Key")] = None,
) -> None:
    """FastAPI dependency requiring a valid API key.

    On success the caller's principal is recorded on ``request.state``. When
    ``APP_API_KEY_REQUIRED=false`` the check is skipped and no principal is
    recorded, so principal-scoped limits will answer 401.

    Raises:
        HTTPException: 403 Forbidden if authentication fails.
    """
    app_settings: AppSettings = request.app.state.settings
    if not app_settings.api_key_required:
        logger.debug("auth.skipped", extra={"reason": "auth_required_false"})
        return

    if not x_api_key:
        logger.warning("auth.missing_key", extra={"api_key_present": False})
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Missing API key. Provide X-API-Key header.",
        )

    try:
        validate_api_key(x_api_key, app_settings)
    except AuthenticationAppError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=exc.message,
        ) from exc

    request.state.principal_id = principal_for_api_key(x_api_key)
    logger.info("auth.success", extra={"api_key_hash": hash_for_logs(x_api_key)})


async def identify_principal(
    request: Request,
    x_api_key: Annotated[str | None, Header(alias="X-API-Key")] = None,
) -> None:
    """FastAPI dependency recording the principal when a valid key is sent.

    Never rejects: anonymous callers (or callers with a bad key) simply stay
    unidentified, which ``principalOrOrigin`` limits handle by origin.
    """
    if not x_api_key:
        return

    try:
        validate_api_key(x_api_key, request.app.state.settings)
    except AuthenticationAppError:
        return

    request.state.principal_id = principal_for_api_key(x_api_key)
