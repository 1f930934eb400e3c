"""Tests for kubeloop.controllers.statefulset."""

from __future__ import annotations

from collections.abc import AsyncIterator

import pytest

from kubeloop.controllers.statefulset import (
    POD_NAME_LABEL,
    REVISION_LABEL,
    StatefulSetController,
    claim_name,
    pod_ordinal,
)
from kubeloop.models.objects import Kind, KubeObject, ObjectKey
from kubeloop.store.object_store import ObjectStore
from kubeloop.store.retry import retry_on_conflict
from kubeloop.watch.bus import WatchBus
from tests import manifests

_STS_KEY = ObjectKey(Kind.STATEFUL_SET, "default", "db")
_LABELS = {"app": "db"}


@pytest.fixture
async def controller(store: ObjectStore, bus: WatchBus) -> AsyncIterator[StatefulSetController]:
    ctrl = StatefulSetController(store, bus)
    yield ctrl
    await ctrl.queue.stop()


def _pod_names(store: ObjectStore) -> list[str]:
    return sorted(p.name for p in store.list(Kind.POD, namespace="default") if not p.terminating)


def _claim_names(store: ObjectStore) -> list[str]:
    return sorted(c.name for c in store.list(Kind.PERSISTENT_VOLUME_CLAIM, namespace="default"))


async def _step_ready(store: ObjectStore, controller: StatefulSetController, passes: int) -> None:
    for _ in range(passes):
        await controller.reconcile_key(_STS_KEY)
        await manifests.mark_all_ready(store)


def test_naming_helpers() -> None:
    assert claim_name("data", "db", 2) == "data-db-2"
    assert pod_ordinal("db", "db-12") == 12
    assert pod_ordinal("db", "db-x") is None
    assert pod_ordinal("db", "dbx-1") is None


class TestOrderedCreation:
    async def test_one_ordinal_at_a_time(self, store: ObjectStore, controller: StatefulSetController) -> None:
        await store.submit(manifests.statefulset("db", 3, _LABELS, claim_templates=[manifests.claim_template()]))

        await controller.reconcile_key(_STS_KEY)
        assert _pod_names(store) == ["db-0"]
        assert _claim_names(store) == ["data-db-0"]

        # db-0 is not ready yet: nothing else happens
        await controller.reconcile_key(_STS_KEY)
        assert _pod_names(store) == ["db-0"]

        await manifests.mark_all_ready(store)
        await controller.reconcile_key(_STS_KEY)
        assert _pod_names(store) == ["db-0", "db-1"]
        assert _claim_names(store) == ["data-db-0", "data-db-1"]

    async def test_pod_identity(self, store: ObjectStore, controller: StatefulSetController) -> None:
        await store.submit(manifests.statefulset("db", 1, _LABELS, claim_templates=[manifests.claim_template()]))

        await controller.reconcile_key(_STS_KEY)

        pod = store.get(Kind.POD, "default", "db-0")
        assert pod.labels[POD_NAME_LABEL] == "db-0"
        assert pod.labels["app"] == "db"
        assert pod.spec["hostname"] == "db-0"
        assert pod.spec["subdomain"] == "db"
        assert {"name": "data", "persistentVolumeClaim": {"claimName": "data-db-0"}} in pod.spec["volumes"]
        assert pod.is_controlled_by(store.get(*_STS_KEY))
        claim = store.get(Kind.PERSISTENT_VOLUME_CLAIM, "default", "data-db-0")
        assert claim.owner_references == []

    async def test_status_after_convergence(self, store: ObjectStore, controller: StatefulSetController) -> None:
        await store.submit(manifests.statefulset("db", 3, _LABELS))

        await _step_ready(store, controller, 4)

        status = store.get(*_STS_KEY).status
        assert status["replicas"] == 3
        assert status["readyReplicas"] == 3
        assert status["updatedReplicas"] == 3
        assert status["currentRevision"] == status["updateRevision"]

    async def test_parallel_creates_all(self, store: ObjectStore, controller: StatefulSetController) -> None:
        await store.submit(manifests.statefulset("db", 3, _LABELS, podManagementPolicy="Parallel"))

        await controller.reconcile_key(_STS_KEY)

        assert _pod_names(store) == ["db-0", "db-1", "db-2"]


class TestScaleDown:
    async def test_highest_ordinal_first_and_claims_kept(
        self, store: ObjectStore, controller: StatefulSetController
    ) -> None:
        await store.submit(manifests.statefulset("db", 3, _LABELS, claim_templates=[manifests.claim_template()]))
        await _step_ready(store, controller, 4)

        def _scale(obj: KubeObject) -> None:
            obj.spec["replicas"] = 1

        await retry_on_conflict(store, _STS_KEY, _scale)
        await controller.reconcile_key(_STS_KEY)
        assert _pod_names(store) == ["db-0", "db-1"]
        await controller.reconcile_key(_STS_KEY)
        assert _pod_names(store) == ["db-0"]

        assert _claim_names(store) == ["data-db-0", "data-db-1", "data-db-2"]

    async def test_claims_owned_when_deleted_with_set(
        self, store: ObjectStore, controller: StatefulSetController
    ) -> None:
        await store.submit(
            manifests.statefulset(
                "db",
                1,
                _LABELS,
                claim_templates=[manifests.claim_template()],
                persistentVolumeClaimRetentionPolicy={"whenDeleted": "Delete"},
            )
        )

        await controller.reconcile_key(_STS_KEY)

        claim = store.get(Kind.PERSISTENT_VOLUME_CLAIM, "default", "data-db-0")
        assert [ref.name for ref in claim.owner_references] == ["db"]


class TestRollingUpdate:
    async def test_updates_highest_ordinal_first(self, store: ObjectStore, controller: StatefulSetController) -> None:
        await store.submit(manifests.statefulset("db", 3, _LABELS))
        await _step_ready(store, controller, 4)
        old_revision = store.get(*_STS_KEY).status["updateRevision"]

        def _image(obj: KubeObject) -> None:
            obj.spec["template"]["spec"]["containers"][0]["image"] = "postgres:17"

        await retry_on_conflict(store, _STS_KEY, _image)
        await controller.reconcile_key(_STS_KEY)
        assert _pod_names(store) == ["db-0", "db-1"]

        await controller.reconcile_key(_STS_KEY)
        recreated = store.get(Kind.POD, "default", "db-2")
        assert recreated.labels[REVISION_LABEL] != old_revision
        assert store.get(Kind.POD, "default", "db-1").labels[REVISION_LABEL] == old_revision

        await _step_ready(store, controller, 6)
        revisions = {p.labels[REVISION_LABEL] for p in store.list(Kind.POD, namespace="default")}
        status = store.get(*_STS_KEY).status
        assert revisions == {status["updateRevision"]}
        assert status["currentRevision"] == status["updateRevision"]

    async def test_partition_holds_lower_ordinals(self, store: ObjectStore, controller: StatefulSetController) -> None:
        await store.submit(manifests.statefulset("db", 3, _LABELS))
        await _step_ready(store, controller, 4)
        old_revision = store.get(*_STS_KEY).status["updateRevision"]

        def _image(obj: KubeObject) -> None:
            obj.spec["template"]["spec"]["containers"][0]["image"] = "postgres:17"
            obj.spec["updateStrategy"] = {"type": "RollingUpdate", "rollingUpdate": {"partition": 2}}

        await retry_on_conflict(store, _STS_KEY, _image)
        await _step_ready(store, controller, 6)

        pods = {p.name: p.labels[REVISION_LABEL] for p in store.list(Kind.POD, namespace="default")}
        assert pods["db-0"] == old_revision
        assert pods["db-1"] == old_revision
        assert pods["db-2"] != old_revision
