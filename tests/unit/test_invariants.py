"""Invariant test suite for kubeloop.

Each class pins one system-level guarantee that must hold across
controllers: replica counts converge, rollouts stay inside their surge and
availability bounds, ordinals move one at a time, placement respects
capacity and anti-affinity, and replayed events are idempotent.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

import pytest

from kubeloop.controllers.children import TEMPLATE_HASH_LABEL
from kubeloop.controllers.deployment import DeploymentController
from kubeloop.controllers.replicaset import ReplicaSetController
from kubeloop.controllers.statefulset import StatefulSetController, pod_ordinal
from kubeloop.models.objects import EventType, Kind, KubeObject, ObjectKey, WatchEvent, get_condition
from kubeloop.models.quantity import parse_cpu
from kubeloop.scheduling.scheduler import Scheduler
from kubeloop.scheduling.tracker import NodeResourceTracker
from kubeloop.store.object_store import ObjectStore
from kubeloop.store.retry import retry_on_conflict
from kubeloop.watch.bus import WatchBus
from tests import manifests
from tests.conftest import FakeClock

_HOSTNAME = "kubernetes.io/hostname"


def _live_pods(store: ObjectStore) -> list[KubeObject]:
    return [p for p in store.list(Kind.POD, namespace="default") if not p.terminating]


def _ready_count(pods: list[KubeObject]) -> int:
    return sum(1 for p in pods if p.status.get("ready"))


# ---------------------------------------------------------------------------
# ReplicaSet: owned Pods == spec.replicas after convergence
# ---------------------------------------------------------------------------


class TestReplicaCountConverges:
    @pytest.mark.parametrize(("initial", "target"), [(0, 4), (5, 2), (3, 3)])
    async def test_owned_pods_match_replicas(
        self, store: ObjectStore, bus: WatchBus, clock: FakeClock, initial: int, target: int
    ) -> None:
        controller = ReplicaSetController(store, bus, clock=clock)
        key = ObjectKey(Kind.REPLICA_SET, "default", "web")
        try:
            await store.submit(manifests.replicaset("web", initial, {"app": "web"}))
            for _ in range(3):
                await controller.reconcile_key(key)
                await manifests.mark_all_ready(store)

            def _scale(obj: KubeObject) -> None:
                obj.spec["replicas"] = target

            await retry_on_conflict(store, key, _scale)
            for _ in range(3):
                await controller.reconcile_key(key)
                await manifests.mark_all_ready(store)

            owner = store.get(*key)
            owned = [p for p in _live_pods(store) if p.is_controlled_by(owner)]
            assert len(owned) == target
        finally:
            await controller.queue.stop()


# ---------------------------------------------------------------------------
# Deployment: surge and availability bounds hold at every step
# ---------------------------------------------------------------------------


class TestRolloutBounds:
    async def test_three_replicas_surge_one_unavailable_zero(
        self, store: ObjectStore, bus: WatchBus, clock: FakeClock
    ) -> None:
        deployments = DeploymentController(store, bus, clock=clock)
        replicasets = ReplicaSetController(store, bus, clock=clock)
        key = ObjectKey(Kind.DEPLOYMENT, "default", "web")
        strategy = {"type": "RollingUpdate", "rollingUpdate": {"maxSurge": 1, "maxUnavailable": 0}}

        async def _step() -> tuple[int, int]:
            await deployments.reconcile_key(key)
            for rs in store.list(Kind.REPLICA_SET, namespace="default"):
                await replicasets.reconcile_key(rs.key)
            pods = _live_pods(store)
            observed = (len(pods), _ready_count(pods))
            await manifests.mark_all_ready(store)
            return observed

        try:
            await store.submit(manifests.deployment("web", 3, {"app": "web"}, strategy=strategy))
            for _ in range(6):
                await _step()
            assert _ready_count(_live_pods(store)) == 3

            def _image(obj: KubeObject) -> None:
                obj.spec["template"]["spec"]["containers"][0]["image"] = "nginx:1.27"

            await retry_on_conflict(store, key, _image)

            steps = [await _step() for _ in range(16)]

            # First step: 3 old ready Pods plus 1 new one not ready yet
            assert steps[0] == (4, 3)
            assert max(total for total, _ in steps) == 4
            assert min(ready for _, ready in steps) >= 3

            await deployments.reconcile_key(key)
            assert store.get(*key).status["rolloutState"] == "Complete"
            new_rs = store.get(Kind.REPLICA_SET, "default", store.get(*key).status["newReplicaSet"])
            pod_hashes = {p.labels[TEMPLATE_HASH_LABEL] for p in _live_pods(store)}
            assert pod_hashes == {new_rs.labels[TEMPLATE_HASH_LABEL]}
        finally:
            await deployments.queue.stop()
            await replicasets.queue.stop()


# ---------------------------------------------------------------------------
# StatefulSet: ordinals change one at a time, in order
# ---------------------------------------------------------------------------


class TestOrdinalOrdering:
    async def test_one_ordinal_per_pass(self, store: ObjectStore, bus: WatchBus) -> None:
        controller = StatefulSetController(store, bus)
        key = ObjectKey(Kind.STATEFUL_SET, "default", "db")

        def _ordinals() -> set[int]:
            found = {pod_ordinal("db", p.name) for p in _live_pods(store)}
            return {o for o in found if o is not None}

        try:
            await store.submit(manifests.statefulset("db", 4, {"app": "db"}))
            created: list[int] = []
            for _ in range(6):
                before = _ordinals()
                await controller.reconcile_key(key)
                added = _ordinals() - before
                assert len(added) <= 1
                created.extend(added)
                await manifests.mark_all_ready(store)
            assert created == [0, 1, 2, 3]

            def _scale(obj: KubeObject) -> None:
                obj.spec["replicas"] = 1

            await retry_on_conflict(store, key, _scale)
            removed: list[int] = []
            for _ in range(5):
                before = _ordinals()
                await controller.reconcile_key(key)
                gone = before - _ordinals()
                assert len(gone) <= 1
                removed.extend(gone)
            assert removed == [3, 2, 1]
            assert _ordinals() == {0}
        finally:
            await controller.queue.stop()


# ---------------------------------------------------------------------------
# Scheduler: never over capacity, never against required anti-affinity
# ---------------------------------------------------------------------------


class TestPlacementSafety:
    @pytest.fixture
    async def scheduler(self, store: ObjectStore, bus: WatchBus) -> AsyncIterator[Scheduler]:
        tracker = NodeResourceTracker(store)
        sched = Scheduler(store, bus, tracker)
        yield sched
        await sched.queue.stop()
        tracker.close()

    async def test_capacity_and_anti_affinity(self, store: ObjectStore, scheduler: Scheduler) -> None:
        for name in ("node-a", "node-b", "node-c"):
            await store.submit(manifests.node(name, cpu="1", labels={_HOSTNAME: name}))
        anti_affinity: dict[str, Any] = {
            "podAntiAffinity": {
                "requiredDuringSchedulingIgnoredDuringExecution": [
                    {"labelSelector": {"matchLabels": {"app": "web"}}, "topologyKey": _HOSTNAME}
                ]
            }
        }
        keys: list[ObjectKey] = []
        for i in range(5):
            await store.submit(manifests.pod(f"web-{i}", labels={"app": "web"}, cpu="400m", affinity=anti_affinity))
            keys.append(ObjectKey(Kind.POD, "default", f"web-{i}"))
        for i in range(4):
            await store.submit(manifests.pod(f"batch-{i}", labels={"app": "batch"}, cpu="400m"))
            keys.append(ObjectKey(Kind.POD, "default", f"batch-{i}"))

        for key in keys:
            await scheduler.reconcile_key(key)

        pods = [store.get(*key) for key in keys]
        per_node: dict[str, int] = {}
        web_nodes: list[str] = []
        for pod in pods:
            node_name = pod.spec.get("nodeName")
            if not node_name:
                condition = get_condition(pod.status, "PodScheduled")
                assert condition is not None and condition.reason == "Unschedulable"
                continue
            per_node[node_name] = per_node.get(node_name, 0) + parse_cpu("400m")
            if pod.labels["app"] == "web":
                web_nodes.append(node_name)

        assert all(used <= parse_cpu("1") for used in per_node.values())
        assert len(web_nodes) == len(set(web_nodes)) == 3
        assert sum(1 for pod in pods if pod.spec.get("nodeName")) == 6


# ---------------------------------------------------------------------------
# Idempotence: replaying the same events gives the same observed state
# ---------------------------------------------------------------------------


class TestReplayIdempotence:
    async def test_tracker_replay_twice(self, store: ObjectStore) -> None:
        recorded: list[WatchEvent] = []
        store.add_listener(recorded.append)
        live = NodeResourceTracker(store)

        await store.submit(manifests.node("node-1"))
        await store.submit(manifests.node("node-2"))
        await store.submit(manifests.pod("a", cpu="300m", nodeName="node-1"))
        await store.submit(manifests.pod("b", cpu="200m", nodeName="node-2"))
        await store.submit(manifests.pod("c", cpu="100m", nodeName="node-1"))
        await store.delete(Kind.POD, "default", "b")
        await store.delete(Kind.NODE, "", "node-2")

        replica = NodeResourceTracker(ObjectStore())
        for event in recorded:
            replica.apply(event)
        once = replica.snapshot().nodes
        for event in recorded:
            replica.apply(event)

        assert replica.snapshot().nodes == once == live.snapshot().nodes
        live.close()

    async def test_replicaset_controller_replay_twice(
        self, store: ObjectStore, bus: WatchBus, clock: FakeClock
    ) -> None:
        controller = ReplicaSetController(store, bus, clock=clock)
        key = ObjectKey(Kind.REPLICA_SET, "default", "web")
        recorded: list[WatchEvent] = []
        store.add_listener(recorded.append)
        try:
            await store.submit(manifests.replicaset("web", 3, {"app": "web"}))
            for _ in range(4):
                await _deliver(controller, list(recorded))
                await controller.reconcile_key(key)
                await manifests.mark_all_ready(store)

            history = list(recorded)
            before = _versions(store, Kind.POD)
            assert len(before) == 3

            for _ in range(2):
                await _deliver(controller, history)
                await controller.reconcile_key(key)

            assert _versions(store, Kind.POD) == before
            assert not _creates_after(recorded, len(history))
        finally:
            await controller.queue.stop()

    async def test_statefulset_controller_replay_twice(self, store: ObjectStore, bus: WatchBus) -> None:
        controller = StatefulSetController(store, bus)
        key = ObjectKey(Kind.STATEFUL_SET, "default", "db")
        recorded: list[WatchEvent] = []
        store.add_listener(recorded.append)
        try:
            templates = [manifests.claim_template()]
            await store.submit(manifests.statefulset("db", 2, {"app": "db"}, claim_templates=templates))
            for _ in range(4):
                await _deliver(controller, list(recorded))
                await controller.reconcile_key(key)
                await manifests.mark_all_ready(store)

            history = list(recorded)
            pods = _versions(store, Kind.POD)
            claims = _versions(store, Kind.PERSISTENT_VOLUME_CLAIM)
            assert sorted(pods) == ["db-0", "db-1"]
            assert len(claims) == 2

            for _ in range(2):
                await _deliver(controller, history)
                await controller.reconcile_key(key)

            assert _versions(store, Kind.POD) == pods
            assert _versions(store, Kind.PERSISTENT_VOLUME_CLAIM) == claims
            assert not _creates_after(recorded, len(history))
        finally:
            await controller.queue.stop()


async def _deliver(controller: ReplicaSetController | StatefulSetController, events: list[WatchEvent]) -> None:
    handlers = dict(controller.watches())
    for event in events:
        handler = handlers.get(event.object.kind)
        if handler is not None:
            await handler(event)


def _versions(store: ObjectStore, kind: str) -> dict[str, int]:
    return {obj.name: obj.resource_version for obj in store.list(kind, namespace="default") if not obj.terminating}


def _creates_after(events: list[WatchEvent], start: int) -> list[WatchEvent]:
    return [e for e in events[start:] if e.type == EventType.ADDED]
