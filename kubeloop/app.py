"""Application bootstrap for kubeloop.

Wires all components in dependency order and manages the asyncio lifecycle.
Startup order: config -> logging -> store -> watch bus -> controllers -> REST

Shutdown is graceful: components are stopped in reverse startup order.
Each component's stop error is caught and logged independently so that a
single failure does not prevent the rest from shutting down cleanly.
"""

from __future__ import annotations

import asyncio
import signal
from typing import TYPE_CHECKING

from kubeloop.config import load_config
from kubeloop.models.config import KubeLoopConfig
from kubeloop.observability.logging import get_logger, setup_logging

if TYPE_CHECKING:
    from structlog.typing import FilteringBoundLogger

    from kubeloop.controllers.manager import ControllerManager
    from kubeloop.store.object_store import ObjectStore
    from kubeloop.watch.bus import WatchBus

_SHUTDOWN_GRACE_SECONDS = 15


class _ComponentError(Exception):
    """Raised when a mandatory component fails to start."""

    def __init__(self, component: str, cause: Exception) -> None:
        super().__init__(f"Component '{component}' failed to start: {cause}")
        self.component = component
        self.cause = cause


class KubeLoopApp:
    """Application root.  Owns every component and coordinates their lifecycle.

    Calling ``stop()`` on an app that was never started (or already stopped)
    is safe.

    Args:
        config: Explicit configuration; read from the environment when omitted.
        simulate: Use the simulated readiness probe, which reports every
            bound Pod Running and ready, instead of waiting for Pod status
            written by an external node agent.
        serve_api: Start the REST server. Tests drive the app without it.
    """

    def __init__(
        self,
        config: KubeLoopConfig | None = None,
        simulate: bool = False,
        serve_api: bool = True,
    ) -> None:
        self.config: KubeLoopConfig | None = config
        self._simulate = simulate
        self._serve_api = serve_api

        self._store: ObjectStore | None = None
        self._bus: WatchBus | None = None
        self._manager: ControllerManager | None = None
        self._rest_server: object | None = None

        self._background_tasks: list[asyncio.Task[None]] = []

        self._running = False
        self._log: FilteringBoundLogger | None = None

    @property
    def store(self) -> ObjectStore | None:
        return self._store

    @property
    def manager(self) -> ControllerManager | None:
        return self._manager

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start all components in dependency order.

        Raises _ComponentError if a mandatory component cannot start.
        """
        # --- 1. Configuration -------------------------------------------
        if self.config is None:
            self.config = load_config()

        # --- 2. Logging -------------------------------------------------
        setup_logging(self.config.log.level)
        self._log = get_logger("app")
        self._log.info("kubeloop_starting", version=_kubeloop_version(), simulate=self._simulate)

        # --- 3. Object store --------------------------------------------
        await self._start_store()

        # --- 4. Watch bus -----------------------------------------------
        await self._start_bus()

        # --- 5. Scheduler, controllers and probe monitor -----------------
        await self._start_controllers()

        # --- 6. REST API ------------------------------------------------
        if self._serve_api:
            await self._start_rest()

        self._running = True
        self._log.info("kubeloop_started", port=self.config.api.port)

    # ------------------------------------------------------------------
    # Component startup helpers
    # ------------------------------------------------------------------

    async def _start_store(self) -> None:
        """Open the object store, restoring persisted objects when enabled."""
        assert self._log is not None
        assert self.config is not None
        self._log.debug("starting_store")
        try:
            from kubeloop.store.object_store import ObjectStore
            from kubeloop.store.sqlite_backend import SQLiteBackend

            store_config = self.config.store
            backend = SQLiteBackend(store_config.db_path) if store_config.persistence_enabled else None
            store = ObjectStore(
                history_size=store_config.history_size,
                write_timeout_seconds=store_config.write_timeout_seconds,
                backend=backend,
            )
            await store.open()
            self._store = store
            self._log.info("store_started", persistence=store_config.persistence_enabled)
        except Exception as exc:
            raise _ComponentError("store", exc) from exc

    async def _start_bus(self) -> None:
        assert self._log is not None
        assert self._store is not None
        try:
            from kubeloop.watch.bus import WatchBus

            self._bus = WatchBus(self._store)
        except Exception as exc:
            raise _ComponentError("watch_bus", exc) from exc

    async def _start_controllers(self) -> None:
        """Build the controller manager and start every reconcile loop."""
        assert self._log is not None
        assert self.config is not None
        assert self._store is not None
        assert self._bus is not None
        self._log.debug("starting_controllers")
        try:
            from kubeloop.controllers.manager import ControllerManager
            from kubeloop.probes.sources import SimulatedProbe

            probe = SimulatedProbe() if self._simulate else None
            manager = ControllerManager(self._store, self._bus, config=self.config, probe=probe)
            self._manager = manager
            await manager.start()
            await manager.wait_synced()
            self._log.info("controllers_started", count=len(manager.controllers))
        except Exception as exc:
            raise _ComponentError("controllers", exc) from exc

    async def _start_rest(self) -> None:
        """Start the uvicorn REST server."""
        assert self._log is not None
        assert self.config is not None
        assert self._store is not None
        self._log.debug("starting_rest_api")
        try:
            import uvicorn

            from kubeloop.api.app import create_app

            fastapi_app = create_app(
                store=self._store,
                bus=self._bus,
                manager=self._manager,
                config=self.config,
            )
            uv_config = uvicorn.Config(
                app=fastapi_app,
                host=self.config.api.host,
                port=self.config.api.port,
                log_config=None,  # structlog handles all logging
                access_log=False,
            )
            server = uvicorn.Server(uv_config)
            task = asyncio.create_task(server.serve(), name="rest-server")
            self._background_tasks.append(task)
            self._rest_server = server
            self._log.info("rest_api_started", host=self.config.api.host, port=self.config.api.port)
        except Exception as exc:
            raise _ComponentError("rest", exc) from exc

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def stop(self) -> None:
        """Gracefully stop all components in reverse startup order."""
        if not self._running and self._log is None:
            return

        log = self._log or get_logger("app")
        log.info("kubeloop_shutting_down")

        self._running = False

        if self._rest_server is not None:
            self._rest_server.should_exit = True  # type: ignore[attr-defined]
        if self._background_tasks:
            _done, pending = await asyncio.wait(self._background_tasks, timeout=_SHUTDOWN_GRACE_SECONDS)
            for task in pending:
                task.cancel()
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
        self._background_tasks.clear()
        self._rest_server = None

        await self._stop_component("controllers", self._manager)
        self._manager = None
        if self._bus is not None:
            self._bus.close()
            self._bus = None
        await self._stop_component("store", self._store, method="close")
        self._store = None

        log.info("kubeloop_stopped")
        self._log = None

    async def _stop_component(self, name: str, component: object | None, method: str = "stop") -> None:
        """Call *method* on a component if it has one, catching all errors."""
        if component is None:
            return
        log = self._log or get_logger("app")
        stop_fn = getattr(component, method, None)
        if stop_fn is None:
            return
        try:
            result = stop_fn()
            if asyncio.iscoroutine(result):
                await asyncio.wait_for(result, timeout=_SHUTDOWN_GRACE_SECONDS)
        except TimeoutError:
            log.warning("component_stop_timed_out", component=name, timeout=_SHUTDOWN_GRACE_SECONDS)
        except Exception as exc:
            log.error("component_stop_failed", component=name, error=str(exc))


def _kubeloop_version() -> str:
    from kubeloop import __version__

    return __version__


# ---------------------------------------------------------------------------
# Async entrypoint
# ---------------------------------------------------------------------------


async def main(simulate: bool = False) -> None:
    """Create the app, register OS signals, run until shutdown is requested."""
    app = KubeLoopApp(simulate=simulate)
    loop = asyncio.get_running_loop()

    shutdown_triggered = False

    def _request_shutdown() -> None:
        nonlocal shutdown_triggered
        if shutdown_triggered:
            return
        shutdown_triggered = True
        asyncio.create_task(app.stop(), name="shutdown")

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _request_shutdown)

    try:
        await app.start()
        while app.running:
            await asyncio.sleep(1)
    except _ComponentError as exc:
        log = get_logger("app")
        log.critical("fatal_startup_error", component=exc.component, error=str(exc.cause))
        await app.stop()
        raise SystemExit(1) from exc
    finally:
        if app.running:
            await app.stop()
