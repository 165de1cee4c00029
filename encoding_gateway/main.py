"""FastAPI application entry point."""

from fastapi import FastAPI
from fastapi.responses import Response

from encoding_gateway.core.config import settings
from encoding_gateway.core.logging import setup_logging
from encoding_gateway.core.metrics import get_content_type, get_metrics, set_app_info
from encoding_gateway.core.middleware import (
    CorrelationIdMiddleware,
    MetricsMiddleware,
    RequestLoggingMiddleware,
    TracingMiddleware,
)
from encoding_gateway.core.tracing import setup_tracing, shutdown_tracing
from encoding_gateway.modules.encoding import encoding_router

app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    description="""
## Encoding Gateway API

Dispatches video encode jobs to the encoding worker over Pub/Sub and ingests
the worker's signed webhook callbacks into video, job and variant state.

* **Jobs** - start, retry and cancel encode cycles for confirmed uploads
* **Webhook** - signed status events from the encoding worker
* **Status** - aggregate and per-quality encoding progress
    """,
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
    openapi_tags=[
        {
            "name": "health",
            "description": "Health check and metrics endpoints",
        },
        {
            "name": "encoding",
            "description": "Encode job dispatch, worker webhooks and encoding status",
        },
    ],
)

setup_logging(
    level=settings.LOG_LEVEL if not settings.DEBUG else "DEBUG",
    json_format=settings.LOG_JSON,
    include_stack_trace=True,
)

setup_tracing(
    service_name=settings.PROJECT_NAME,
    service_version=settings.VERSION,
    environment=settings.ENVIRONMENT,
    otlp_endpoint=settings.OTLP_ENDPOINT,
    enable_console_export=settings.DEBUG,
)

set_app_info(version=settings.VERSION, environment=settings.ENVIRONMENT)

app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(TracingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.add_middleware(MetricsMiddleware)


@app.on_event("shutdown")
async def on_shutdown() -> None:
    shutdown_tracing()


@app.get("/health", tags=["health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint.

    Returns:
        dict: Health status and whether job dispatch is configured.
    """
    return {
        "status": "healthy",
        "dispatch": "configured" if settings.pubsub_configured else "disabled",
    }


@app.get("/metrics", tags=["health"], include_in_schema=False)
async def metrics() -> Response:
    """Prometheus metrics in text exposition format."""
    return Response(content=get_metrics(), media_type=get_content_type())


app.include_router(encoding_router, prefix=settings.API_V1_PREFIX)
