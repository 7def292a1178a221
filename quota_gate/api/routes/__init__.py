from __future__ import annotations

from quota_gate.api.routes.health import router as health_router
from quota_gate.api.routes.monitoring import router as monitoring_router

__all__ = ["health_router", "monitoring_router"]
