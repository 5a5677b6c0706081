"""
FastAPI application setup for streamdash.

create_app() builds an application around one ServerContext. The
lifespan starts the commit scanner and, on shutdown, stops it (letting
an in-flight pass finish) and removes the server lock.
"""

import logging
import os
import sqlite3
import traceback
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from streamdash import __version__
from streamdash.core.api.deps import ServerContext, get_context
from streamdash.core.api.routes import commits, events, reconciliation, stats, streams
from streamdash.core.db.connection import StoreError
from streamdash.core.discovery.lock import remove_lock
from streamdash.core.streams.service import (
    InvalidStreamUpdateError,
    InvalidTransitionError,
    StreamExistsError,
    StreamNotFoundError,
)
from streamdash.core.worktree.inspector import InspectionError

logger = logging.getLogger(__name__)

DEFAULT_CORS_ORIGINS = ["http://localhost:5173", "http://localhost:3000"]


class ErrorCode(str, Enum):
    """Standard error codes for API responses."""

    # Client errors (4xx)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    INVALID_REQUEST = "INVALID_REQUEST"

    # Server errors (5xx)
    DATABASE_ERROR = "DATABASE_ERROR"
    GIT_ERROR = "GIT_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ErrorResponse(BaseModel):
    """Standard error response model."""

    error_code: ErrorCode
    message: str
    detail: str | None = None
    request_id: str | None = None


def error_response(
    request: Request,
    status_code: int,
    error_code: ErrorCode,
    message: str,
    detail: str | None = None,
) -> JSONResponse:
    body = ErrorResponse(
        error_code=error_code,
        message=message,
        detail=detail if detail is not None else message,
        request_id=str(id(request)),
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    ctx: ServerContext = app.state.context
    if ctx.run_scanner:
        ctx.scanner.start(run_immediately=ctx.config.scanner.run_on_start)
    try:
        yield
    finally:
        await ctx.scanner.stop()
        if ctx.lock_path is not None:
            remove_lock(ctx.lock_path, pid=os.getpid())


def create_app(context: ServerContext, cors_origins: list[str] | None = None) -> FastAPI:
    """
    Build the streamdash API application.

    Args:
        context: Components the routes operate on
        cors_origins: Allowed browser origins (defaults to local dev servers)
    """
    app = FastAPI(
        title="streamdash API",
        description="Stream and worktree status for live dashboards",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.context = context

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins if cors_origins is not None else DEFAULT_CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(streams.router, prefix="/api", tags=["streams"])
    app.include_router(commits.router, prefix="/api", tags=["commits"])
    app.include_router(stats.router, prefix="/api", tags=["stats"])
    app.include_router(reconciliation.router, prefix="/api", tags=["reconciliation"])
    app.include_router(events.router, prefix="/api", tags=["events"])

    @app.get("/")
    async def root() -> dict[str, str]:
        """Root endpoint - API health check."""
        return {"status": "ok", "message": "streamdash API"}

    @app.get("/health")
    async def health(request: Request) -> dict[str, Any]:
        """Health check endpoint, used by discovery to confirm a live server."""
        ctx = get_context(request)
        return {
            "status": "healthy",
            "project": ctx.config.project_name,
            "pid": os.getpid(),
            "started_at": ctx.started_at,
            "scanner": ctx.scanner.state,
            "clients": ctx.broadcaster.client_count,
        }

    register_exception_handlers(app)
    return app


def register_exception_handlers(app: FastAPI) -> None:
    """Map domain and framework exceptions to the standard error body."""

    @app.exception_handler(StreamNotFoundError)
    async def not_found_handler(request: Request, exc: StreamNotFoundError) -> JSONResponse:
        return error_response(request, status.HTTP_404_NOT_FOUND, ErrorCode.NOT_FOUND, str(exc))

    @app.exception_handler(StreamExistsError)
    async def exists_handler(request: Request, exc: StreamExistsError) -> JSONResponse:
        return error_response(request, status.HTTP_409_CONFLICT, ErrorCode.CONFLICT, str(exc))

    @app.exception_handler(InvalidTransitionError)
    async def transition_handler(request: Request, exc: InvalidTransitionError) -> JSONResponse:
        return error_response(request, status.HTTP_409_CONFLICT, ErrorCode.CONFLICT, str(exc))

    @app.exception_handler(InvalidStreamUpdateError)
    async def invalid_update_handler(
        request: Request, exc: InvalidStreamUpdateError
    ) -> JSONResponse:
        return error_response(
            request, status.HTTP_400_BAD_REQUEST, ErrorCode.INVALID_REQUEST, str(exc)
        )

    @app.exception_handler(InspectionError)
    async def inspection_handler(request: Request, exc: InspectionError) -> JSONResponse:
        logger.error("Git inspection failed on %s %s: %s", request.method, request.url.path, exc)
        return error_response(
            request,
            status.HTTP_502_BAD_GATEWAY,
            ErrorCode.GIT_ERROR,
            "Git inspection failed",
            str(exc),
        )

    @app.exception_handler(sqlite3.Error)
    async def database_handler(request: Request, exc: sqlite3.Error) -> JSONResponse:
        logger.error("Database error on %s %s: %s", request.method, request.url.path, exc)
        return error_response(
            request,
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            ErrorCode.DATABASE_ERROR,
            "Database operation failed",
            str(exc),
        )

    @app.exception_handler(StoreError)
    async def store_handler(request: Request, exc: StoreError) -> JSONResponse:
        logger.error("Store error on %s %s: %s", request.method, request.url.path, exc)
        return error_response(
            request,
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            ErrorCode.DATABASE_ERROR,
            "Database operation failed",
            str(exc),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        """
        Handle FastAPI HTTPException with consistent error response format.

        Logs errors for debugging without exposing stack traces to clients.
        """
        error_code = ErrorCode.INTERNAL_ERROR
        if exc.status_code == status.HTTP_404_NOT_FOUND:
            error_code = ErrorCode.NOT_FOUND
        elif exc.status_code == status.HTTP_409_CONFLICT:
            error_code = ErrorCode.CONFLICT
        elif exc.status_code < 500:
            error_code = ErrorCode.INVALID_REQUEST

        if exc.status_code >= 500:
            logger.error(
                "HTTP %d on %s %s: %s",
                exc.status_code,
                request.method,
                request.url.path,
                exc.detail,
            )
        else:
            logger.info(
                "HTTP %d on %s %s: %s",
                exc.status_code,
                request.method,
                request.url.path,
                exc.detail,
            )

        detail_msg = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
        return error_response(request, exc.status_code, error_code, detail_msg)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """
        Handle validation errors from Pydantic models and query parameters.

        Returns a clean JSON response without exposing internal implementation details.
        """
        logger.warning(
            "Validation error on %s %s: %s",
            request.method,
            request.url.path,
            exc.errors(),
        )

        first_error = exc.errors()[0] if exc.errors() else {}
        field = " -> ".join(str(loc) for loc in first_error.get("loc", []))
        error_msg = first_error.get("msg", "Invalid input")

        return error_response(
            request,
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            ErrorCode.VALIDATION_ERROR,
            "Request validation failed",
            f"{field}: {error_msg}" if field else error_msg,
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Handle all uncaught exceptions.

        Logs the full exception with traceback for debugging, but returns
        a clean error response to the client without exposing internal details.
        """
        logger.error(
            "Unhandled exception on %s %s: %s\n%s",
            request.method,
            request.url.path,
            str(exc),
            traceback.format_exc(),
        )
        return error_response(
            request,
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            ErrorCode.INTERNAL_ERROR,
            "An internal server error occurred",
            str(exc),
        )
