from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse

from aptdesk.metrics import PrometheusExporter, metrics_registry

router = APIRouter(tags=["monitoring"])


@router.get("/metrics", response_class=PlainTextResponse, summary="Prometheus metrics")
async def metrics(request: Request) -> PlainTextResponse:
    registry = getattr(request.app.state, "metrics_registry", None) or metrics_registry
    payload = PrometheusExporter(registry).build_payload()
    return PlainTextResponse(payload, media_type="text/plain; version=0.0.4")
