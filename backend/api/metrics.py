from fastapi import APIRouter, Response

from backend.core.metrics import METRICS


router = APIRouter(tags=["metrics"])

PROMETHEUS_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


@router.get("/metrics")
def metrics_endpoint():
    """Scrape target for checkout, webhook, entitlement and socket counters."""
    return Response(content=METRICS.export_prometheus(), media_type=PROMETHEUS_CONTENT_TYPE)
