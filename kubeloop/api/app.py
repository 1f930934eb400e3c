"""FastAPI application factory."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from kubeloop.api.routes import router
from kubeloop.watch.bus import WatchBus

if TYPE_CHECKING:
    from kubeloop.controllers.manager import ControllerManager
    from kubeloop.models.config import KubeLoopConfig
    from kubeloop.store.object_store import ObjectStore


def create_app(
    store: ObjectStore,
    bus: WatchBus | None = None,
    manager: ControllerManager | None = None,
    config: KubeLoopConfig | None = None,
) -> FastAPI:
    """Build the REST application around a running store."""
    from kubeloop import __version__

    app = FastAPI(
        title="kubeloop",
        version=__version__,
        description="Declarative workload orchestration controller",
    )
    app.state.store = store
    app.state.bus = bus or WatchBus(store)
    app.state.manager = manager
    app.state.config = config
    app.include_router(router, prefix="/api/v1")

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app
