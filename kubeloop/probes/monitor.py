"""Readiness monitor: folds probe results into Pod status.

Every ``poll_interval_seconds`` the monitor probes each bound Pod and writes
``phase``, ``ready``, ``readySince`` and the ``Ready`` condition when they
change. Terminating Pods are finalised (the node-agent finalizer removed,
which lets the store delete them) once the probe reports them stopped, or
immediately if they were never bound.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Callable

from kubeloop.interfaces import ProbeResult, ReadinessProbe
from kubeloop.models.objects import Kind, KubeObject, PodPhase, set_condition
from kubeloop.models.pods import NODE_AGENT_FINALIZER, pod_node, pod_phase
from kubeloop.observability.logging import get_logger
from kubeloop.store.object_store import ObjectStore
from kubeloop.store.retry import retry_on_conflict

_logger = get_logger("probe_monitor")

_DEFAULT_POLL_INTERVAL_S: float = 2.0


class ProbeMonitor:
    """Polls a :class:`ReadinessProbe` for every placed Pod."""

    def __init__(
        self,
        store: ObjectStore,
        probe: ReadinessProbe,
        poll_interval_seconds: float = _DEFAULT_POLL_INTERVAL_S,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._probe = probe
        self._interval = poll_interval_seconds
        self._clock = clock
        self._running = False
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="probe-monitor")
        _logger.info("probe_monitor_started", interval_s=self._interval)

    async def stop(self) -> None:
        self._running = False
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        _logger.info("probe_monitor_stopped")

    async def sync_once(self) -> int:
        """Probe every Pod once; returns the number of Pods written."""
        written = 0
        for pod in self._store.list(Kind.POD):
            try:
                if await self._sync_pod(pod):
                    written += 1
            except Exception as exc:
                _logger.error("probe_sync_failed", pod=f"{pod.namespace}/{pod.name}", error=str(exc))
        return written

    async def _loop(self) -> None:
        while self._running:
            await self.sync_once()
            await asyncio.sleep(self._interval)

    async def _sync_pod(self, pod: KubeObject) -> bool:
        if pod.terminating:
            return await self._finalize(pod)
        if pod_node(pod) is None:
            return False

        result = await self._probe.probe(pod)
        if result is None:
            return False
        now = self._clock()
        written = await retry_on_conflict(
            self._store,
            pod.key,
            lambda current: _apply_result(current, result, now),
            status=True,
        )
        return written is not None and written.resource_version != pod.resource_version

    async def _finalize(self, pod: KubeObject) -> bool:
        if NODE_AGENT_FINALIZER not in pod.finalizers:
            return False
        if pod_node(pod) is not None:
            result = await self._probe.probe(pod)
            if result is None or (result.running and not result.terminated):
                return False

        def _drop_finalizer(current: KubeObject) -> bool:
            if NODE_AGENT_FINALIZER not in current.finalizers:
                return False
            current.finalizers.remove(NODE_AGENT_FINALIZER)
            return True

        await retry_on_conflict(self._store, pod.key, _drop_finalizer)
        _logger.info("pod_finalized", pod=f"{pod.namespace}/{pod.name}")
        return True


def _apply_result(pod: KubeObject, result: ProbeResult, now: float) -> bool:
    """Fold *result* into ``pod.status``; returns False if nothing changed."""
    before = (pod.status.get("phase"), pod.status.get("ready"), pod.status.get("readySince"))

    if result.terminated:
        phase = PodPhase.FAILED
    elif result.running:
        phase = PodPhase.RUNNING
    else:
        phase = pod_phase(pod) if pod_phase(pod) != PodPhase.RUNNING else PodPhase.PENDING
    ready = result.ready and result.running and not result.terminated

    pod.status["phase"] = str(phase)
    if ready:
        if not pod.status.get("ready"):
            pod.status["readySince"] = now
    else:
        pod.status.pop("readySince", None)
    pod.status["ready"] = ready

    changed = set_condition(
        pod.status,
        "Ready",
        "True" if ready else "False",
        reason="ProbeSucceeded" if ready else "ProbeFailed",
    )
    after = (pod.status.get("phase"), pod.status.get("ready"), pod.status.get("readySince"))
    return changed or before != after
