"""Controller manager: builds, starts and stops every reconcile loop.

Start order: node tracker -> scheduler -> workload controllers -> volume
binder -> endpoints -> autoscaler -> garbage collector -> probe monitor.
Stop runs in reverse; a failing component never prevents the others from
stopping.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable

from kubeloop.autoscaling.metrics import PodStatusMetricsSource
from kubeloop.controllers.autoscaler import HorizontalPodAutoscalerController
from kubeloop.controllers.base import Clock, Controller
from kubeloop.controllers.deployment import DeploymentController
from kubeloop.controllers.endpoints import EndpointsController
from kubeloop.controllers.garbage_collector import GarbageCollector
from kubeloop.controllers.replicaset import ReplicaSetController
from kubeloop.controllers.statefulset import StatefulSetController
from kubeloop.controllers.volume_binder import VolumeBinder
from kubeloop.interfaces import MetricsSource, ReadinessProbe, StorageProvisioner
from kubeloop.models.config import KubeLoopConfig
from kubeloop.observability.logging import get_logger
from kubeloop.probes.monitor import ProbeMonitor
from kubeloop.probes.sources import StatusReportedProbe
from kubeloop.scheduling.scheduler import Scheduler
from kubeloop.scheduling.tracker import NodeResourceTracker
from kubeloop.store.object_store import ObjectStore
from kubeloop.watch.bus import WatchBus

_logger = get_logger("controller_manager")

_STOP_GRACE_SECONDS: float = 10.0


class ControllerManager:
    """Owns the scheduler, the controllers and the probe monitor."""

    def __init__(
        self,
        store: ObjectStore,
        bus: WatchBus,
        config: KubeLoopConfig | None = None,
        metrics_source: MetricsSource | None = None,
        probe: ReadinessProbe | None = None,
        provisioner: StorageProvisioner | None = None,
        clock: Clock = time.time,
    ) -> None:
        self._store = store
        self._bus = bus
        self._config = config or KubeLoopConfig()
        self._clock = clock
        controller_config = self._config.controller

        self.tracker = NodeResourceTracker(store)
        self.scheduler = Scheduler(
            store, bus, self.tracker, config=self._config.scheduler, controller_config=controller_config, clock=clock
        )
        self.replicasets = ReplicaSetController(store, bus, controller_config, clock)
        self.deployments = DeploymentController(store, bus, controller_config, clock)
        self.statefulsets = StatefulSetController(store, bus, controller_config, clock)
        self.volume_binder = VolumeBinder(store, bus, provisioner, controller_config, clock)
        self.endpoints = EndpointsController(store, bus, controller_config, clock)
        self.autoscaler = HorizontalPodAutoscalerController(
            store,
            bus,
            metrics_source or PodStatusMetricsSource(store),
            config=self._config.autoscaler,
            controller_config=controller_config,
            clock=clock,
        )
        self.garbage_collector = GarbageCollector(store, bus, controller_config, clock)
        self.probe_monitor = ProbeMonitor(
            store,
            probe or StatusReportedProbe(),
            poll_interval_seconds=self._config.probe.poll_interval_seconds,
            clock=clock,
        )
        self._started: list[Controller] = []
        self._running = False

    @property
    def controllers(self) -> list[Controller]:
        return [
            self.scheduler,
            self.replicasets,
            self.deployments,
            self.statefulsets,
            self.volume_binder,
            self.endpoints,
            self.autoscaler,
            self.garbage_collector,
        ]

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        for controller in self.controllers:
            await controller.start()
            self._started.append(controller)
        await self.probe_monitor.start()
        self._running = True
        _logger.info("controller_manager_started", controllers=[c.name for c in self._started])

    async def wait_synced(self, timeout: float = 10.0) -> bool:
        for controller in self._started:
            if not await controller.wait_synced(timeout):
                _logger.warning("controller_sync_timeout", controller=controller.name)
                return False
        return True

    async def stop(self) -> None:
        await self._stop_one("probe_monitor", self.probe_monitor.stop())
        for controller in reversed(self._started):
            await self._stop_one(controller.name, controller.stop())
        self._started.clear()
        self.tracker.close()
        self._running = False
        _logger.info("controller_manager_stopped")

    async def _stop_one(self, name: str, stopping: Awaitable[None]) -> None:
        try:
            await asyncio.wait_for(stopping, timeout=_STOP_GRACE_SECONDS)
        except TimeoutError:
            _logger.warning("component_stop_timed_out", component=name, timeout=_STOP_GRACE_SECONDS)
        except Exception as exc:
            _logger.error("component_stop_failed", component=name, error=str(exc))
