"""Read-only routes over the persisted state.

The state document is re-read on every request so that a long-running
``kubeconverge serve`` reflects runs made by separate CLI invocations.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from kubeconverge.api.schemas import (
    ErrorResponse,
    HealthResponse,
    OutputsResponse,
    ResourceDetail,
    ResourceListResponse,
    ResourceSummary,
)
from kubeconverge.state.store import StateFormatError, StateStore

_log = structlog.get_logger(component="api.routes")

router = APIRouter()


def _store(request: Request) -> StateStore:
    store: StateStore = request.app.state.state_store
    store.load()
    return store


def _unreadable(exc: StateFormatError) -> JSONResponse:
    _log.warning("state_unreadable", error=str(exc))
    return JSONResponse(
        status_code=503,
        content=ErrorResponse(error="STATE_UNREADABLE", detail=str(exc)).model_dump(),
    )


@router.get("/health", response_model=HealthResponse)
async def health(request: Request) -> HealthResponse | JSONResponse:
    from kubeconverge import __version__

    try:
        store = _store(request)
    except StateFormatError as exc:
        return _unreadable(exc)
    return HealthResponse(version=__version__, stack=store.stack, resources=len(store.names()))


@router.get("/resources", response_model=ResourceListResponse)
async def list_resources(request: Request) -> ResourceListResponse | JSONResponse:
    try:
        store = _store(request)
    except StateFormatError as exc:
        return _unreadable(exc)
    return ResourceListResponse(
        stack=store.stack,
        resources=[
            ResourceSummary(
                name=name,
                kind=entry.kind,
                dependencies=entry.dependencies,
                updated_at=entry.updated_at,
            )
            for name, entry in store.entries().items()
        ],
    )


@router.get(
    "/resources/{name}",
    response_model=ResourceDetail,
    responses={404: {"model": ErrorResponse}},
)
async def get_resource(name: str, request: Request) -> ResourceDetail | JSONResponse:
    try:
        store = _store(request)
    except StateFormatError as exc:
        return _unreadable(exc)
    entry = store.get(name)
    if entry is None:
        return JSONResponse(
            status_code=404,
            content=ErrorResponse(error="RESOURCE_NOT_FOUND", detail=f"No resource named {name!r} in state").model_dump(),
        )
    return ResourceDetail(
        name=name,
        kind=entry.kind,
        dependencies=entry.dependencies,
        updated_at=entry.updated_at,
        descriptor_hash=entry.descriptor_hash,
        properties=entry.properties,
        outputs=entry.outputs,
    )


@router.get("/outputs", response_model=OutputsResponse)
async def outputs(request: Request) -> OutputsResponse | JSONResponse:
    try:
        store = _store(request)
    except StateFormatError as exc:
        return _unreadable(exc)
    return OutputsResponse(stack=store.stack, outputs=store.exports())
