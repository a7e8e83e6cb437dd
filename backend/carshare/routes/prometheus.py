"""
Prometheus metrics endpoint for monitoring infrastructure.

Public endpoint (no authentication), exposing the metrics collected by
the service layer: operation latency, booking transitions, payment calls
and queued payment discrepancies.
"""

from fastapi import APIRouter, Response

from ..monitoring.prometheus_metrics import prometheus_metrics

router = APIRouter()


@router.get("/metrics", include_in_schema=False, response_class=Response, response_model=None)
async def get_prometheus_metrics() -> Response:
    return Response(
        content=prometheus_metrics.get_metrics(),
        media_type=prometheus_metrics.get_content_type(),
    )
