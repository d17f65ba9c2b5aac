import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

router = APIRouter(prefix="/ping", tags=["health"])

logger = logging.getLogger(__name__)


@router.get("", summary="Public health probe")
async def ping() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/ready", summary="Readiness probe")
async def ready(request: Request) -> JSONResponse:
    if getattr(request.app.state, "complaint_service", None) is None:
        return JSONResponse(status_code=503, content={"status": "unavailable", "reason": "service not configured"})

    database = getattr(request.app.state, "postgres", None)
    if database is None:
        return JSONResponse(content={"status": "ok", "storage": "memory"})

    try:
        await database.test_connection()
    except Exception:
        logger.warning("Readiness check failed", exc_info=True)
        return JSONResponse(status_code=503, content={"status": "unavailable", "storage": "postgres"})
    return JSONResponse(content={"status": "ok", "storage": "postgres"})
