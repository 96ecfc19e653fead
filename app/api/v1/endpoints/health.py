from datetime import datetime, timezone

from fastapi import APIRouter, Request

from app.core.config import validate_env
from app.models.schemas import HealthStatus

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthStatus)
def health_check(request: Request):
    """
    Health check API:
    - pastikan service hidup
    - config terbaca, env wajib sudah diset
    """
    timestamp = datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")
    config = request.app.state.config
    settings = request.app.state.settings
    missing = validate_env(settings)

    return HealthStatus(
        status="ok" if not missing else "degraded",
        timestamp=timestamp,
        config_sections=sorted(config.keys()),
        missing_env=missing,
        details={
            "catalog_source": settings.catalog_source,
            "strategy": config.get("selection", {}).get("strategy"),
            "advisor": getattr(request.app.state.orchestrator, "advisor", None) is not None,
        },
    )
