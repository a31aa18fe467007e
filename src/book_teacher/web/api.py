"""FastAPI application factory.

Main entry point for the Book Teacher Web API.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from book_teacher import __version__
from book_teacher.config.app_config import load_app_config
from book_teacher.core.errors import (
    SessionNotFoundError,
    TransientServiceError,
    TutorError,
)
from book_teacher.core.supervisor import get_supervisor
from book_teacher.db import init_db
from book_teacher.web.routes import (
    books_router,
    health_router,
    sessions_router,
    settings_router,
    students_router,
)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Open the store at startup; close live sessions at shutdown."""
    config = load_app_config()
    defaults = config.agent_defaults
    init_db(
        config.db_path,
        ai_model=defaults.ai_model,
        token_budget=defaults.token_budget,
        auto_save_seconds=defaults.auto_save_seconds,
    )
    supervisor = get_supervisor()
    supervisor.start_reaper()
    logger.info("api.startup", db_path=str(config.db_path))
    yield
    await supervisor.shutdown()
    logger.info("api.shutdown")


async def _session_not_found(request: Request, exc: SessionNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


async def _tutor_unavailable(request: Request, exc: TransientServiceError) -> JSONResponse:
    logger.warning("api.tutor_unavailable", path=request.url.path, attempts=exc.attempts)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "The tutor is unavailable, please retry"},
    )


async def _tutor_failed(request: Request, exc: TutorError) -> JSONResponse:
    logger.error("api.tutor_failed", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": str(exc)},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI app instance
    """
    app = FastAPI(
        title="Book Teacher API",
        description="Web API for the book tutoring agent",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(SessionNotFoundError, _session_not_found)
    app.add_exception_handler(TransientServiceError, _tutor_unavailable)
    app.add_exception_handler(TutorError, _tutor_failed)

    app.include_router(health_router)
    app.include_router(students_router)
    app.include_router(books_router)
    app.include_router(sessions_router)
    app.include_router(settings_router)

    return app


# Default app instance for uvicorn
app = create_app()
