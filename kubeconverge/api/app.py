"""FastAPI application factory for the kubeconverge state API.

Usage::

    from kubeconverge.api.app import create_app

    app = create_app(state_store=JsonFileStateStore(path), config=config)

Used by ``kubeconverge serve`` and by the API tests.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from kubeconverge.api.routes import router
from kubeconverge.api.schemas import ErrorResponse
from kubeconverge.state.store import StateStore

_log = structlog.get_logger(component="api.app")

_API_PREFIX = "/api/v1"


def create_app(state_store: StateStore, config: Any = None) -> FastAPI:
    """Create the read-only state API.

    Args:
        state_store: Store the routes read from; reloaded per request.
        config:      KubeConvergeConfig, kept on ``app.state`` for handlers.
    """
    from kubeconverge import __version__

    app = FastAPI(
        title="kubeconverge",
        summary="Converged resource state",
        version=__version__,
        docs_url="/api/v1/docs",
        redoc_url="/api/v1/redoc",
        openapi_url="/api/v1/openapi.json",
    )

    app.state.state_store = state_store
    app.state.config = config

    app.include_router(router, prefix=_API_PREFIX)

    # -----------------------------------------------------------------------
    # Exception handlers
    # -----------------------------------------------------------------------

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        _request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        errors = exc.errors()
        first_msg = str(errors[0].get("msg", "")) if errors else ""
        return JSONResponse(
            status_code=400,
            content=ErrorResponse(error="INVALID_REQUEST", detail=first_msg).model_dump(),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(
        request: Request,
        exc: Exception,
    ) -> JSONResponse:
        """Catch-all for unhandled exceptions; never expose stack traces."""
        _log.error(
            "unhandled_exception",
            path=str(request.url.path),
            method=request.method,
            error=str(exc),
        )
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error="INTERNAL_ERROR",
                detail="An unexpected error occurred.",
            ).model_dump(),
        )

    return app
