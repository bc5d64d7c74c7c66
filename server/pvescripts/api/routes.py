"""API route handlers."""
from datetime import datetime, timezone

from fastapi import APIRouter, Request, Response, status

from ..core.config import settings, get_config_validation_result
from ..core.models import BuildInfo, HealthResponse

router = APIRouter()


def _current_build_info() -> BuildInfo:
    return BuildInfo(version=settings.app_version, name=settings.app_name)


def _active_sessions(request: Request) -> int:
    handler = getattr(request.app.state, "execution_handler", None)
    return handler.active_sessions if handler is not None else 0


@router.get("/healthz", response_model=HealthResponse, tags=["Health"])
async def health_check(request: Request):
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        version=settings.app_version,
        timestamp=datetime.now(timezone.utc),
        active_sessions=_active_sessions(request),
        build=_current_build_info(),
    )


@router.get("/readyz", response_model=HealthResponse, tags=["Health"])
async def readiness_check(request: Request, response: Response):
    """Readiness check endpoint."""

    # Configuration errors are reported in the body rather than failing the
    # probe so the error stays visible to whoever is looking at the service.
    config_result = get_config_validation_result()
    readiness_status = "ready"
    if config_result and config_result.has_errors:
        readiness_status = "config_error"

    response.status_code = status.HTTP_200_OK
    return HealthResponse(
        status=readiness_status,
        version=settings.app_version,
        timestamp=datetime.now(timezone.utc),
        active_sessions=_active_sessions(request),
        build=_current_build_info(),
    )
