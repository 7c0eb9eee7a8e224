from __future__ import annotations

from admission.api.routes.health import router as health_router
from admission.api.routes.session import router as session_router

__all__ = ["health_router", "session_router"]
