# src/circlekit/main.py
"""Main entry point for the circlekit application."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from circlekit.api.v1 import communities_router, courses_router, posts_router
from circlekit.core.settings import settings
from circlekit.db.session import create_tables, engine
from circlekit.errors import BackendError, CircleError

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="circlekit API",
    description="Communities, feeds and membership for a small social network",
    version=settings.app_version,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)

# Add GZip middleware for compression
app.add_middleware(GZipMiddleware)

# Include API routers
app.include_router(communities_router, prefix="/api/v1")
app.include_router(courses_router, prefix="/api/v1")
app.include_router(posts_router, prefix="/api/v1")

if settings.media_base_url.startswith("/"):
    app.mount(
        settings.media_base_url,
        StaticFiles(directory=settings.media_root, check_dir=False),
        name="media",
    )


@app.exception_handler(CircleError)
async def circle_error_handler(request: Request, exc: CircleError) -> JSONResponse:
    """Turn core failures into ``{"detail", "code"}`` responses."""
    if isinstance(exc, BackendError):
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code)
    else:
        logger.warning("%s %s rejected: %s (%s)", request.method, request.url.path, exc.message, exc.code)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


@app.on_event("startup")
async def on_startup() -> None:
    if settings.auto_create_tables:
        await create_tables()
        logger.info("Database tables ensured")
    logger.info("%s %s started", settings.app_name, settings.app_version)


@app.on_event("shutdown")
async def on_shutdown() -> None:
    await engine.dispose()


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint to verify the service is running."""
    return {"status": "ok"}


@app.get("/", status_code=status.HTTP_200_OK)
async def root() -> dict[str, str]:
    """Root endpoint with basic information about the API."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
        "redoc": "/redoc",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("circlekit.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
