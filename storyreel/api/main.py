"""Main FastAPI application for Storyreel."""

from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from storyreel.core.env_loader import ensure_env_loaded

ensure_env_loaded()

from storyreel.api.routers import pipeline, stories
from storyreel.core.config import get_settings
from storyreel.core.constants import VERSION
from storyreel.core.exceptions import InvalidStageTransitionError, PreconditionError, RecordNotFoundError
from storyreel.core.logging_config import get_logger, setup_logging
from storyreel.pipelines.service import PipelineService, create_pipeline

logger = get_logger("api.main")


async def _unprocessable(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=422, content={"detail": exc.message})


async def _not_found(request: Request, exc: RecordNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": exc.message})


def create_app(service: Optional[PipelineService] = None, rate_limit: bool = True) -> FastAPI:
    """Build the app around ``service`` (a default pipeline from settings when omitted)."""
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.service is None:
            app.state.service = create_pipeline(settings)
        app.state.service.resume()
        yield
        await app.state.service.queue.shutdown()

    app = FastAPI(
        title="Storyreel API",
        description="API for the script-to-video production pipeline",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.service = service

    # Rate limiting on expensive operations
    for limiter in (stories.limiter, pipeline.limiter):
        limiter.enabled = rate_limit
    app.state.limiter = pipeline.limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    app.add_exception_handler(PreconditionError, _unprocessable)
    app.add_exception_handler(InvalidStageTransitionError, _unprocessable)
    app.add_exception_handler(RecordNotFoundError, _not_found)

    # CORS middleware for web UI
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(stories.router, prefix="/api/stories", tags=["stories"])
    app.include_router(pipeline.router, prefix="/api/stories", tags=["pipeline"])

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "version": VERSION}

    return app


def start_server(host: Optional[str] = None, port: Optional[int] = None):
    """Start the API server with settings-driven logging."""
    settings = get_settings()
    setup_logging(level=settings.log_level, log_file=settings.log_file or None)
    logger.info("Starting Storyreel API")
    uvicorn.run(
        create_app(),
        host=host or settings.host,
        port=port or settings.port,
        log_level="warning",
    )


if __name__ == "__main__":
    start_server()
