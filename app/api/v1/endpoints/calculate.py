import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, Request
from fastapi.responses import JSONResponse

from app.core.audit import log_event
from app.core.errors import RateLimitExceeded, status_code_for, to_error_result
from app.core.security import client_identity, require_api_key

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/calculate",
    tags=["calculate"],
    dependencies=[Depends(require_api_key)],
)


@router.post("")
def run_calculation(request: Request, body: Any = Body(default=None)):
    """
    Hitung kuantitas dispensing + pilih kemasan NDC.
    - Terproteksi API key (require_api_key).
    - Rate limit per klien (X-Client-ID / X-Forwarded-For / IP).
    - Body divalidasi di orchestrator, bukan di FastAPI, supaya semua
      kegagalan input keluar sebagai VALIDATION_ERROR yang sama.
    """
    req_id = getattr(request.state, "request_id", None)
    identity = client_identity(request)

    decision = request.app.state.rate_limiter.check_and_consume(identity)
    headers = {"X-RateLimit-Remaining": str(decision.remaining)}

    if not decision.allowed:
        logger.warning("Rate limit exceeded for %s", identity)
        error = RateLimitExceeded("Too many requests. Please try again later.")
        log_event("calculation_rejected", {"client": identity, "error_code": error.code}, request_id=req_id)
        return JSONResponse(
            status_code=error.status_code,
            content=to_error_result(error).model_dump(mode="json", exclude_none=True),
            headers=headers,
        )

    result = request.app.state.orchestrator.calculate(body if body is not None else {})

    status_code = 200 if result.success else status_code_for(result.error_code)
    log_event(
        "calculation",
        {
            "client": identity,
            "success": result.success,
            "error_code": result.error_code,
            "provenance": result.selection.provenance if result.selection else None,
            "package_count": result.selection.package_count if result.selection else 0,
            "warnings": [w.category.value for w in result.warnings],
        },
        request_id=req_id,
    )

    return JSONResponse(
        status_code=status_code,
        content=result.model_dump(mode="json", exclude_none=True),
        headers=headers,
    )
