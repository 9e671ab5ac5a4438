"""FastAPI application factory and configuration.

Reference stream server with lifespan management, middleware,
and router registration.
"""

import logging
import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.api.streams import StreamBackend
from src.api.streams import router as streams_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Manage application startup and shutdown lifecycle.

    Args:
        app: The FastAPI application instance.

    Yields:
        Control to the application while it runs.
    """
    # Startup
    logger.info("Starting reference stream server...")
    yield
    # Shutdown
    logger.info("Shutting down reference stream server...")


def create_app(step_delay: float | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        step_delay: Seconds between scripted pipeline steps.
            Reads STREAM_STEP_DELAY if not provided.

    Returns:
        Configured FastAPI application instance.
    """
    application = FastAPI(
        title="Stream Session Server",
        description=(
            "Reference server for the streaming session engine. Queues document "
            "ingestion tasks and chat answers, and serves their progress as "
            "Server-Sent Events, with large citation batches delivered by reference."
        ),
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["*"],
    )

    if step_delay is None:
        step_delay = float(os.getenv("STREAM_STEP_DELAY", "0.5"))
    application.state.stream_backend = StreamBackend(step_delay=step_delay)

    application.include_router(streams_router)

    @application.get("/health")
    async def health_check() -> dict[str, str]:
        """Check service health status."""
        return {"status": "healthy", "service": "stream-session-server"}

    return application


app = create_app()
