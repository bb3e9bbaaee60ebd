"""Prometheus-compatible metrics endpoint for the realtime layer."""

from fastapi import APIRouter, Response

from app.monitoring.registry import registry


router = APIRouter(tags=["metrics"])

CONTENT_TYPE = "text/plain; version=0.0.4"


@router.get("/metrics", response_class=Response)
def export_metrics() -> Response:
    """Expose stream, optimistic and notification counters for scraping."""

    return Response(content=registry.render(), media_type=CONTENT_TYPE)
