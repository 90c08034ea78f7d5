"""FastAPI application entry point."""

import logging

from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import exc as sa_exc

from vodpipeline.core.config import get_settings
from vodpipeline.core.logging import log_error, setup_logging
from vodpipeline.core.metrics import get_content_type, get_metrics, set_app_info
from vodpipeline.core.middleware import (
    CorrelationIdMiddleware,
    MetricsMiddleware,
    RequestLoggingMiddleware,
)
from vodpipeline.modules.analytics.router import router as analytics_router
from vodpipeline.modules.pipeline.router import router as pipeline_router
from vodpipeline.modules.video.catalog import CatalogUnavailable
from vodpipeline.modules.video.router import router as video_router

settings = get_settings()
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    description="""
## Video-on-demand pipeline API

Uploaded videos are transcoded into multi-rendition HLS streams by background
workers; this API exposes playback locations, collects player view reports and
lets operators inspect and resubmit transcode jobs.

### Identity

Requests are authenticated by the gateway, which forwards the caller as
`X-User-Id` and `X-User-Role`. Administrative endpoints require the `admin` role.
""",
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
    openapi_tags=[
        {"name": "videos", "description": "Playback locations of transcoded videos"},
        {"name": "analytics", "description": "View reports and viewing totals"},
        {"name": "pipeline", "description": "Transcode pipeline administration"},
        {"name": "health", "description": "Liveness and metrics"},
    ],
)

setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON)

set_app_info(version=settings.VERSION, environment=settings.ENVIRONMENT)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.add_middleware(MetricsMiddleware)


@app.exception_handler(CatalogUnavailable)
@app.exception_handler(sa_exc.OperationalError)
@app.exception_handler(sa_exc.InterfaceError)
async def catalog_unavailable_handler(request: Request, exc: Exception) -> JSONResponse:
    log_error(logger, "Catalog unavailable", exc, path=request.url.path)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Catalog temporarily unavailable"},
    )


@app.get("/health", tags=["health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/metrics", tags=["health"], include_in_schema=False)
async def metrics() -> Response:
    """Prometheus scrape endpoint."""
    return Response(content=get_metrics(), media_type=get_content_type())


app.include_router(video_router, prefix=settings.API_V1_PREFIX)
app.include_router(analytics_router, prefix=settings.API_V1_PREFIX)
app.include_router(pipeline_router, prefix=settings.API_V1_PREFIX)
