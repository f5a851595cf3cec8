# =============================================================================
# FastAPI Application Factory
# =============================================================================
#
#   uvicorn wholesale_rag.main:app --reload
#
# The lifespan handler builds the RAG components once per process
# (Redis pool, provider clients, compiled retrieval graph) and tears them
# down on shutdown, draining in-flight cache writes first. Tests pass
# pre-built components with fake clients to create_app().
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from wholesale_rag.api import admin, ask, ingest
from wholesale_rag.bootstrap import RAGComponents, build_components
from wholesale_rag.config import settings
from wholesale_rag.services.errors import QueryValidationError

logger = logging.getLogger(__name__)


def configure_logging(debug: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def create_app(components: RAGComponents | None = None) -> FastAPI:
    """
    Build the FastAPI app.

    Args:
        components: Pre-assembled components. When omitted they are built
            from settings at startup and closed at shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if components is not None:
            app.state.components = components
            yield
            return

        engine = None
        if settings.vectorstore_type != "chroma":
            from wholesale_rag.db.engine import async_engine, init_db

            await init_db()
            engine = async_engine

        app.state.components = build_components(settings)
        logger.info("%s v%s started", settings.app_name, settings.app_version)
        try:
            yield
        finally:
            await app.state.components.close()
            if engine is not None:
                await engine.dispose()
            logger.info("%s stopped", settings.app_name)

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description=(
            "Retrieval-augmented Q&A over a real-estate wholesaling knowledge base."
        ),
        lifespan=lifespan,
    )

    @app.exception_handler(QueryValidationError)
    async def _query_validation_handler(request: Request, exc: QueryValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    app.include_router(ask.router)
    app.include_router(admin.router)
    app.include_router(ingest.router)
    return app


configure_logging(settings.debug)
app = create_app()
