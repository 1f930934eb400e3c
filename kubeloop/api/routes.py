"""FastAPI route handlers for the kubeloop REST API.

All routes are registered on a single APIRouter that ``create_app`` mounts
under the ``/api/v1`` prefix.

Error code conventions:
    400 INVALID_SELECTOR      -- labelSelector could not be parsed
    404 NOT_FOUND             -- object or revision absent from the store
    409 CONFLICT              -- stale resourceVersion or name taken
    410 EXPIRED               -- watch resume token older than the history
    422 INVALID               -- document failed validation
    503 UNAVAILABLE           -- store write timed out or persistence failed
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

from fastapi import APIRouter, Body, Request
from fastapi.responses import JSONResponse, StreamingResponse

from kubeloop.api.schemas import (
    ErrorResponse,
    HealthStatus,
    ObjectListResponse,
    RollbackRequest,
    SubmitResponse,
)
from kubeloop.errors import (
    AlreadyExistsError,
    ConflictError,
    KubeLoopError,
    NotFoundError,
    ResourceExpiredError,
    TransientInfraError,
    ValidationError,
)
from kubeloop.models.objects import Kind
from kubeloop.models.selectors import parse_selector_string
from kubeloop.observability.logging import get_logger
from kubeloop.store.object_store import ObjectStore, Propagation

_log = get_logger("api.routes")

router = APIRouter()

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _error(status_code: int, error: str, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorResponse(error=error, detail=detail).model_dump())


def _error_for(exc: KubeLoopError) -> JSONResponse:
    if isinstance(exc, ValidationError):
        return _error(422, "INVALID", str(exc))
    if isinstance(exc, NotFoundError):
        return _error(404, "NOT_FOUND", str(exc))
    if isinstance(exc, ConflictError | AlreadyExistsError):
        return _error(409, "CONFLICT", str(exc))
    if isinstance(exc, ResourceExpiredError):
        return _error(410, "EXPIRED", str(exc))
    if isinstance(exc, TransientInfraError):
        return _error(503, "UNAVAILABLE", str(exc))
    _log.error("api_unhandled_error", error=str(exc), reason=exc.reason)
    return _error(500, "INTERNAL_ERROR", "An unexpected error occurred.")


def _store(request: Request) -> ObjectStore:
    return request.app.state.store  # type: ignore[no-any-return]


# ---------------------------------------------------------------------------
# Objects
# ---------------------------------------------------------------------------


@router.post(
    "/objects",
    status_code=201,
    response_model=SubmitResponse,
    summary="Submit desired state",
    description="Create an object, or apply a new spec to an existing one.",
    responses={409: {"model": ErrorResponse}, 422: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def post_object(request: Request, document: dict[str, Any] = Body(...)) -> Any:
    """``POST /api/v1/objects``"""
    try:
        resource_version = await _store(request).submit(document)
    except KubeLoopError as exc:
        return _error_for(exc)
    _log.info("object_submitted", kind=document.get("kind"), resource_version=resource_version)
    return SubmitResponse(resource_version=resource_version)


@router.get(
    "/objects/{kind}",
    response_model=ObjectListResponse,
    summary="List objects of a kind",
    responses={400: {"model": ErrorResponse}},
)
async def list_objects(
    request: Request,
    kind: str,
    namespace: str | None = None,
    labelSelector: str | None = None,  # noqa: N803
) -> Any:
    """``GET /api/v1/objects/{kind}?namespace=&labelSelector=``"""
    selector = None
    if labelSelector:
        try:
            selector = parse_selector_string(labelSelector)
        except ValidationError as exc:
            return _error(400, "INVALID_SELECTOR", str(exc))
    store = _store(request)
    items = store.list(kind, namespace=namespace, selector=selector)
    return ObjectListResponse(
        kind=kind,
        items=[obj.to_dict() for obj in items],
        resource_version=store.resource_version,
    )


@router.get(
    "/objects/{kind}/{namespace}/{name}",
    summary="Get one object",
    responses={404: {"model": ErrorResponse}},
)
async def get_object(request: Request, kind: str, namespace: str, name: str) -> Any:
    """``GET /api/v1/objects/{kind}/{namespace}/{name}``"""
    try:
        obj = _store(request).get(kind, namespace, name)
    except KubeLoopError as exc:
        return _error_for(exc)
    return obj.to_dict()


@router.delete(
    "/objects/{kind}/{namespace}/{name}",
    summary="Delete one object",
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def delete_object(
    request: Request,
    kind: str,
    namespace: str,
    name: str,
    propagation: Propagation = Propagation.BACKGROUND,
    resourceVersion: int | None = None,  # noqa: N803
) -> Any:
    """``DELETE /api/v1/objects/{kind}/{namespace}/{name}?propagation=Background|Orphan``"""
    try:
        removed = await _store(request).delete(
            kind, namespace, name, expected_resource_version=resourceVersion, propagation=propagation
        )
    except KubeLoopError as exc:
        return _error_for(exc)
    if removed is None:
        return _error(404, "NOT_FOUND", f"{kind} {namespace}/{name} not found")
    _log.info("object_deleted", kind=kind, namespace=namespace, name=name, propagation=str(propagation))
    return removed.to_dict()


# ---------------------------------------------------------------------------
# Watch
# ---------------------------------------------------------------------------


@router.get(
    "/watch/{kind}",
    summary="Stream changes of a kind",
    description="Newline-delimited JSON events; resumable with ?resourceVersion=.",
    responses={400: {"model": ErrorResponse}, 410: {"model": ErrorResponse}},
)
async def watch_objects(
    request: Request,
    kind: str,
    resourceVersion: int | None = None,  # noqa: N803
    labelSelector: str | None = None,  # noqa: N803
) -> Any:
    """``GET /api/v1/watch/{kind}?resourceVersion=&labelSelector=``"""
    selector = None
    if labelSelector:
        try:
            selector = parse_selector_string(labelSelector)
        except ValidationError as exc:
            return _error(400, "INVALID_SELECTOR", str(exc))
    try:
        subscription = request.app.state.bus.subscribe(kind, selector, resume_from=resourceVersion)
    except KubeLoopError as exc:
        return _error_for(exc)

    async def _stream() -> AsyncIterator[str]:
        try:
            async for event in subscription:
                payload = {
                    "type": str(event.type),
                    "resourceVersion": event.resource_version,
                    "object": event.object.to_dict(),
                }
                yield json.dumps(payload, default=str) + "\n"
        finally:
            subscription.close()

    return StreamingResponse(_stream(), media_type="application/x-ndjson")


# ---------------------------------------------------------------------------
# Deployments
# ---------------------------------------------------------------------------


@router.post(
    "/deployments/{namespace}/{name}/rollback",
    summary="Roll a Deployment back",
    description="Copy the Pod template of an earlier revision back into the Deployment.",
    responses={404: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def post_rollback(
    request: Request,
    namespace: str,
    name: str,
    body: RollbackRequest | None = None,
) -> Any:
    """``POST /api/v1/deployments/{namespace}/{name}/rollback``"""
    manager = getattr(request.app.state, "manager", None)
    if manager is None:
        return _error(503, "UNAVAILABLE", "controllers are not running")
    revision = body.revision if body is not None else None
    try:
        updated = await manager.deployments.rollback(namespace, name, revision)
    except KubeLoopError as exc:
        return _error_for(exc)
    return updated.to_dict()


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@router.get(
    "/health",
    response_model=HealthStatus,
    summary="Health check",
    description="Lightweight liveness probe. Always returns 200 if the process is up.",
)
async def get_health(request: Request) -> HealthStatus:
    """``GET /api/v1/health``"""
    from kubeloop import __version__

    store = _store(request)
    manager = getattr(request.app.state, "manager", None)
    return HealthStatus(
        status="ok",
        version=__version__,
        controllers_running=bool(manager is not None and manager.running),
        objects={str(kind): store.count(kind) for kind in Kind if store.count(kind)},
    )
