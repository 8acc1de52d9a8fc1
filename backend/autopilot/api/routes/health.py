"""
Health check route. Bypasses authentication.
"""

from fastapi import APIRouter

from autopilot import __version__

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Liveness probe."""
    return {"status": "ok", "version": __version__}
