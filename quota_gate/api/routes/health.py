from __future__ import annotations

from fastapi import APIRouter

router = APIRouter(tags=["Health"])


@router.get("/health")
def health_check() -> dict:
    """Liveness check.

    Does not touch the counter stores; use ``/v1/rate-limit/health`` for that.
    """

    return {"status": "ok"}
