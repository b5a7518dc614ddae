"""FastAPI application exposing read-only ledger status."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from loguru import logger

from curtailment_ledger import __version__
from curtailment_ledger.api.routes import router
from curtailment_ledger.api.schemas import HealthResponse
from curtailment_ledger.pipeline import PipelineContext


def create_app(context: PipelineContext) -> FastAPI:
    """Create the API bound to an existing pipeline context."""

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("Starting curtailment ledger API ({})", context.database.url)
        yield
        logger.info("Shutting down API")

    app = FastAPI(
        title="Curtailment Ledger",
        description="""
Read-only status of ingested wind curtailment records.

## Key Endpoints

- `GET /api/v1/scopes/{scope}`: scan a day, month or year for drift
- `GET /api/v1/aggregates/{scope}`: stored curtailment totals and yield summaries

Scopes are written `YYYY`, `YYYY-MM` or `YYYY-MM-DD`.
        """,
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.context = context
    app.include_router(router)

    @app.get("/", response_class=JSONResponse)
    async def root() -> dict:
        return {
            "name": "Curtailment Ledger",
            "version": __version__,
            "docs": "/docs",
            "health": "/health",
        }

    @app.get("/health", response_model=HealthResponse)
    async def health_check() -> HealthResponse:
        return HealthResponse(
            status="healthy",
            version=__version__,
            timestamp=datetime.now(),
            database=context.database.engine.dialect.name,
        )

    return app


def serve(context: PipelineContext, host: str = "127.0.0.1", port: int = 8000) -> None:
    import uvicorn

    uvicorn.run(create_app(context), host=host, port=port)
