"""FastAPI application factory."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ytflow.api.dependencies import get_coordinator
from ytflow.api.middleware import ytflow_error_handler
from ytflow.api.routes import events, flows, tasks
from ytflow.models.errors import YtFlowError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    if get_coordinator.cache_info().currsize:
        get_coordinator().shutdown(wait=False)
        get_coordinator.cache_clear()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="ytflow",
        description="Video download, transcription and summarization pipeline",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(YtFlowError, ytflow_error_handler)

    app.include_router(tasks.router)
    app.include_router(flows.router)
    app.include_router(events.router)

    @app.get("/health")
    async def health():
        return {"status": "ok", "version": "0.1.0"}

    return app


app = create_app()
