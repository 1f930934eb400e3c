"""End-to-end convergence tests: every controller running together.

A ControllerManager is started against an in-memory store with the
simulated readiness probe, so every Pod the scheduler binds reports
Running and ready on the next probe poll. Tests submit desired state and
wait for the observed state to converge.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable

import pytest

from kubeloop.controllers.manager import ControllerManager
from kubeloop.models.config import (
    AutoscalerConfig,
    ControllerConfig,
    KubeLoopConfig,
    ProbeConfig,
)
from kubeloop.models.objects import Kind, KubeObject, ObjectKey
from kubeloop.probes.sources import SimulatedProbe
from kubeloop.store.object_store import ObjectStore
from kubeloop.store.retry import retry_on_conflict
from kubeloop.watch.bus import WatchBus
from tests import manifests

pytestmark = pytest.mark.integration

_TIMEOUT_S = 10.0


class _LoadMetricsSource:
    """Constant total CPU load spread evenly over the target's replicas."""

    def __init__(self, total_cores: float) -> None:
        self.total_cores = total_cores

    async def get_metric(self, target: KubeObject, metric_name: str, namespace: str) -> float | None:
        replicas = int(target.spec.get("replicas", 0))
        if metric_name != "cpu" or replicas == 0:
            return None
        return self.total_cores / replicas


# ---------------------------------------------------------------------------
# Fixtures and helpers
# ---------------------------------------------------------------------------


def _config() -> KubeLoopConfig:
    return KubeLoopConfig(
        controller=ControllerConfig(workers=2, backoff_base_seconds=0.01, backoff_cap_seconds=0.2),
        autoscaler=AutoscalerConfig(sync_period_seconds=0.2),
        probe=ProbeConfig(poll_interval_seconds=0.05),
    )


@pytest.fixture
def load() -> _LoadMetricsSource:
    return _LoadMetricsSource(total_cores=0.0)


@pytest.fixture
async def manager(store: ObjectStore, bus: WatchBus, load: _LoadMetricsSource) -> AsyncIterator[ControllerManager]:
    for name in ("node-1", "node-2"):
        await store.submit(manifests.node(name, labels={"kubernetes.io/hostname": name}))
    mgr = ControllerManager(store, bus, config=_config(), metrics_source=load, probe=SimulatedProbe())
    await mgr.start()
    assert await mgr.wait_synced()
    yield mgr
    await mgr.stop()


async def _eventually(predicate: Callable[[], bool], timeout: float = _TIMEOUT_S) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.02)


def _live_pods(store: ObjectStore, **labels: str) -> list[KubeObject]:
    return [
        p
        for p in store.list(Kind.POD, namespace="default")
        if not p.terminating and all(p.labels.get(k) == v for k, v in labels.items())
    ]


def _rollout_state(store: ObjectStore, name: str) -> str | None:
    deployment = store.try_get(Kind.DEPLOYMENT, "default", name)
    return None if deployment is None else deployment.status.get("rolloutState")


# ---------------------------------------------------------------------------
# Deployments
# ---------------------------------------------------------------------------


class TestDeploymentConvergence:
    async def test_rollout_completes_and_pods_are_placed(self, store: ObjectStore, manager: ControllerManager) -> None:
        await store.submit(manifests.deployment("web", 3, {"app": "web"}))

        await _eventually(lambda: _rollout_state(store, "web") == "Complete")

        pods = _live_pods(store, app="web")
        assert len(pods) == 3
        assert all(p.spec.get("nodeName") in ("node-1", "node-2") for p in pods)
        assert all(p.status.get("ready") for p in pods)

    async def test_image_change_rolls_out(self, store: ObjectStore, manager: ControllerManager) -> None:
        await store.submit(manifests.deployment("web", 2, {"app": "web"}))
        await _eventually(lambda: _rollout_state(store, "web") == "Complete")

        def _image(obj: KubeObject) -> None:
            obj.spec["template"]["spec"]["containers"][0]["image"] = "nginx:1.27"

        await retry_on_conflict(store, ObjectKey(Kind.DEPLOYMENT, "default", "web"), _image)

        def _rolled() -> bool:
            deployment = store.get(Kind.DEPLOYMENT, "default", "web")
            pods = _live_pods(store, app="web")
            return (
                deployment.status.get("revision") == 2
                and deployment.status.get("rolloutState") == "Complete"
                and len(pods) == 2
                and all(p.spec["containers"][0]["image"] == "nginx:1.27" for p in pods)
            )

        await _eventually(_rolled)

    async def test_endpoints_follow_ready_pods(self, store: ObjectStore, manager: ControllerManager) -> None:
        await store.submit(manifests.service("web", {"app": "web"}))
        await store.submit(manifests.deployment("web", 2, {"app": "web"}))

        def _two_ready() -> bool:
            endpoints = store.try_get(Kind.ENDPOINTS, "default", "web")
            return endpoints is not None and len(endpoints.spec.get("addresses", [])) == 2

        await _eventually(_two_ready)

    async def test_delete_cascades_to_pods(self, store: ObjectStore, manager: ControllerManager) -> None:
        await store.submit(manifests.deployment("web", 2, {"app": "web"}))
        await _eventually(lambda: _rollout_state(store, "web") == "Complete")

        await store.delete(Kind.DEPLOYMENT, "default", "web")

        await _eventually(
            lambda: not store.list(Kind.REPLICA_SET, namespace="default")
            and not store.list(Kind.POD, namespace="default")
        )


# ---------------------------------------------------------------------------
# StatefulSets and volumes
# ---------------------------------------------------------------------------


class TestStatefulSetConvergence:
    async def test_ordered_pods_with_bound_claims(self, store: ObjectStore, manager: ControllerManager) -> None:
        for i in range(2):
            await store.submit(manifests.volume(f"pv-{i}"))
        await store.submit(manifests.statefulset("db", 2, {"app": "db"}, claim_templates=[manifests.claim_template()]))

        def _converged() -> bool:
            sts = store.get(Kind.STATEFUL_SET, "default", "db")
            claims = store.list(Kind.PERSISTENT_VOLUME_CLAIM, namespace="default")
            return (
                sts.status.get("readyReplicas") == 2
                and len(claims) == 2
                and all(c.status.get("phase") == "Bound" for c in claims)
            )

        await _eventually(_converged)
        assert sorted(p.name for p in _live_pods(store, app="db")) == ["db-0", "db-1"]


# ---------------------------------------------------------------------------
# Autoscaling
# ---------------------------------------------------------------------------


class TestAutoscalingConvergence:
    async def test_scales_two_to_four_at_double_target(
        self, store: ObjectStore, manager: ControllerManager, load: _LoadMetricsSource
    ) -> None:
        # 2 replicas at 140% of a 100m request
        load.total_cores = 0.28
        await store.submit(manifests.deployment("web", 2, {"app": "web"}))
        await store.submit(manifests.autoscaler("web", "web", min_replicas=2, max_replicas=10, utilization=70))

        def _scaled() -> bool:
            deployment = store.get(Kind.DEPLOYMENT, "default", "web")
            return deployment.spec["replicas"] == 4 and deployment.status.get("rolloutState") == "Complete"

        await _eventually(_scaled)
        await _eventually(
            lambda: store.get(Kind.HORIZONTAL_POD_AUTOSCALER, "default", "web").status.get("desiredReplicas") == 4
        )
        # Load per Pod is now on target: no further scaling
        await asyncio.sleep(0.5)
        assert store.get(Kind.DEPLOYMENT, "default", "web").spec["replicas"] == 4
