"""Tests for kubeloop.controllers.replicaset."""

from __future__ import annotations

from kubeloop.controllers.replicaset import ReplicaSetController
from kubeloop.models.objects import Kind, KubeObject, ObjectKey, PodPhase
from kubeloop.store.object_store import ObjectStore
from kubeloop.store.retry import retry_on_conflict
from kubeloop.watch.bus import WatchBus
from tests import manifests
from tests.conftest import FakeClock

_RS_KEY = ObjectKey(Kind.REPLICA_SET, "default", "web")
_LABELS = {"app": "web"}


def _pods(store: ObjectStore) -> list[KubeObject]:
    return [p for p in store.list(Kind.POD, namespace="default") if not p.terminating]


async def _controller(store: ObjectStore, bus: WatchBus, replicas: int) -> ReplicaSetController:
    await store.submit(manifests.replicaset("web", replicas, _LABELS))
    return ReplicaSetController(store, bus)


class TestScaling:
    async def test_creates_missing_pods(self, store: ObjectStore, bus: WatchBus) -> None:
        controller = await _controller(store, bus, 3)

        await controller.reconcile_key(_RS_KEY)

        pods = _pods(store)
        rs = store.get(*_RS_KEY)
        assert len(pods) == 3
        for pod in pods:
            assert pod.name.startswith("web-")
            assert len(pod.name) == len("web-") + 5
            assert pod.labels == _LABELS
            assert pod.is_controlled_by(rs)
            assert pod.status["phase"] == "Pending"
        assert rs.status["replicas"] == 3
        assert rs.status["readyReplicas"] == 0
        assert rs.status["observedGeneration"] == rs.generation
        await controller.queue.stop()

    async def test_steady_state_is_idempotent(self, store: ObjectStore, bus: WatchBus) -> None:
        controller = await _controller(store, bus, 2)
        await controller.reconcile_key(_RS_KEY)
        names = sorted(p.name for p in _pods(store))

        await controller.reconcile_key(_RS_KEY)

        assert sorted(p.name for p in _pods(store)) == names
        await controller.queue.stop()

    async def test_scale_down_removes_cheapest_pods(self, store: ObjectStore, bus: WatchBus) -> None:
        controller = await _controller(store, bus, 3)
        await controller.reconcile_key(_RS_KEY)
        pods = sorted(_pods(store), key=lambda p: p.name)
        await manifests.mark_ready(store, pods[0])
        await manifests.mark_ready(store, pods[1])

        def _scale(rs: KubeObject) -> None:
            rs.spec["replicas"] = 2

        await retry_on_conflict(store, _RS_KEY, _scale)
        await controller.reconcile_key(_RS_KEY)

        # The unplaced Pod goes first
        assert sorted(p.name for p in _pods(store)) == [pods[0].name, pods[1].name]
        assert store.get(*_RS_KEY).status["readyReplicas"] == 2
        await controller.queue.stop()

    async def test_scale_to_zero(self, store: ObjectStore, bus: WatchBus) -> None:
        controller = await _controller(store, bus, 2)
        await controller.reconcile_key(_RS_KEY)

        def _scale(rs: KubeObject) -> None:
            rs.spec["replicas"] = 0

        await retry_on_conflict(store, _RS_KEY, _scale)
        await controller.reconcile_key(_RS_KEY)

        assert _pods(store) == []
        assert store.get(*_RS_KEY).status["replicas"] == 0
        await controller.queue.stop()

    async def test_failed_pod_replaced(self, store: ObjectStore, bus: WatchBus) -> None:
        controller = await _controller(store, bus, 1)
        await controller.reconcile_key(_RS_KEY)
        (original,) = _pods(store)

        def _fail(pod: KubeObject) -> None:
            pod.status["phase"] = str(PodPhase.FAILED)

        await retry_on_conflict(store, original.key, _fail, status=True)
        await controller.reconcile_key(_RS_KEY)

        (replacement,) = _pods(store)
        assert replacement.name != original.name
        assert store.try_get(*original.key) is None
        await controller.queue.stop()


class TestOwnership:
    async def test_adopts_matching_orphan(self, store: ObjectStore, bus: WatchBus) -> None:
        await store.submit(manifests.pod("stray", labels=_LABELS))
        controller = await _controller(store, bus, 1)

        await controller.reconcile_key(_RS_KEY)

        (pod,) = _pods(store)
        assert pod.name == "stray"
        assert pod.is_controlled_by(store.get(*_RS_KEY))
        await controller.queue.stop()

    async def test_ignores_non_matching_orphan(self, store: ObjectStore, bus: WatchBus) -> None:
        await store.submit(manifests.pod("db", labels={"app": "db"}))
        controller = await _controller(store, bus, 1)

        await controller.reconcile_key(_RS_KEY)

        assert store.get(Kind.POD, "default", "db").controller_ref() is None
        assert len(_pods(store)) == 2
        await controller.queue.stop()

    async def test_releases_pod_that_stops_matching(self, store: ObjectStore, bus: WatchBus) -> None:
        controller = await _controller(store, bus, 1)
        await controller.reconcile_key(_RS_KEY)
        (pod,) = _pods(store)

        def _relabel(current: KubeObject) -> None:
            current.labels = {"app": "debug"}

        await retry_on_conflict(store, pod.key, _relabel)
        await controller.reconcile_key(_RS_KEY)

        assert store.get(*pod.key).controller_ref() is None
        owned = [p for p in _pods(store) if p.controller_ref() is not None]
        assert len(owned) == 1
        assert owned[0].name != pod.name
        await controller.queue.stop()


class TestAvailability:
    async def test_min_ready_seconds(self, store: ObjectStore, bus: WatchBus, clock: FakeClock) -> None:
        await store.submit(manifests.replicaset("web", 1, _LABELS, min_ready_seconds=30))
        controller = ReplicaSetController(store, bus, clock=clock)
        await controller.reconcile_key(_RS_KEY)
        (pod,) = _pods(store)
        await manifests.mark_ready(store, pod, since=clock.now)

        await controller.reconcile_key(_RS_KEY)
        status = store.get(*_RS_KEY).status
        assert (status["readyReplicas"], status["availableReplicas"]) == (1, 0)

        clock.advance(30)
        await controller.reconcile_key(_RS_KEY)
        assert store.get(*_RS_KEY).status["availableReplicas"] == 1
        await controller.queue.stop()
