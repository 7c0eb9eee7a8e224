"""Session endpoints guarded by admission control.

These are thin callers of the limiter: the business logic behind them lives
elsewhere. Each route names the rule it is admitted under; rules themselves
come from ``APP_RATE_LIMIT_RULES``.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from admission.core.auth import identify_principal, verify_api_key
from admission.core.rate_limit import rate_limit

LOGIN_RULE = "login"
SESSION_RULE = "session"
PUBLIC_RULE = "public"

router = APIRouter(prefix="/session", tags=["Session"])


@router.post("/login", dependencies=[Depends(rate_limit(LOGIN_RULE))])
async def login() -> dict:
    """Login attempt, limited per client origin to slow down credential stuffing."""

    return {"status": "accepted"}


@router.get(
    "/me",
    dependencies=[Depends(verify_api_key), Depends(rate_limit(SESSION_RULE))],
)
async def whoami(request: Request) -> dict:
    """Return the authenticated principal, limited per principal."""

    return {"principal_id": request.state.principal_id}


@router.get(
    "/status",
    dependencies=[Depends(identify_principal), Depends(rate_limit(PUBLIC_RULE))],
)
async def status(request: Request) -> dict:
    """Public status, limited per principal when known and per origin otherwise."""

    return {
        "status": "ok",
        "authenticated": getattr(request.state, "principal_id", None) is not None,
    }
