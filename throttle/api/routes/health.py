from __future__ import annotations

from fastapi import APIRouter, Request

router = APIRouter(tags=["Health"])


@router.get("/health")
def health_check(request: Request) -> dict:
    """Liveness check used by load balancers and monitoring.

    Not authenticated and not rate limited.

    Returns:
        dict: ``status`` plus the number of windows the limiter is tracking.
    """

    stats = request.app.state.rate_limiter.get_stats()
    return {"status": "ok", "tracked_limits": stats.total_limits}
