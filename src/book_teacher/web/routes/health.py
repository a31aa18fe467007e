"""Health check endpoint."""

from datetime import datetime, timezone

from fastapi import APIRouter

from book_teacher import __version__
from book_teacher.core.supervisor import get_supervisor
from book_teacher.web.schemas import HealthResponse

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Check API health status."""
    return HealthResponse(
        status="ok",
        version=__version__,
        live_sessions=len(get_supervisor().live_sessions()),
        timestamp=datetime.now(timezone.utc).isoformat(),
    )
