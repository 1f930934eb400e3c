"""Tests for kubeloop.controllers.volume_binder."""

from __future__ import annotations

from typing import Any
from unittest.mock import patch

from kubeloop.controllers import children
from kubeloop.controllers.volume_binder import MatchingProvisioner, VolumeBinder, volume_phase
from kubeloop.errors import TransientInfraError
from kubeloop.models.cluster import VolumePhase
from kubeloop.models.objects import EventType, Kind, KubeObject, ObjectKey, WatchEvent
from kubeloop.store.object_store import ObjectStore
from kubeloop.watch.bus import WatchBus
from tests import manifests

_CLAIM_KEY = ObjectKey(Kind.PERSISTENT_VOLUME_CLAIM, "default", "data")


class TestMatchingProvisioner:
    async def test_picks_smallest_fitting_volume(self) -> None:
        volumes = [
            KubeObject.from_dict(manifests.volume("pv-large", size="10Gi")),
            KubeObject.from_dict(manifests.volume("pv-small", size="2Gi")),
            KubeObject.from_dict(manifests.volume("pv-tiny", size="512Mi")),
            KubeObject.from_dict(manifests.volume("pv-fast", size="2Gi", storage_class="fast")),
        ]
        claim = KubeObject.from_dict(manifests.claim("data", size="1Gi"))
        chosen = await MatchingProvisioner().provision(claim, volumes)
        assert chosen is not None
        assert chosen.name == "pv-small"

    async def test_skips_claimed_and_released_volumes(self) -> None:
        claimed = KubeObject.from_dict(manifests.volume("pv-a"))
        claimed.spec["claimRef"] = {"namespace": "default", "name": "other", "uid": "u1"}
        released = KubeObject.from_dict(manifests.volume("pv-b"))
        released.status = {"phase": "Released"}
        claim = KubeObject.from_dict(manifests.claim("data"))
        assert await MatchingProvisioner().provision(claim, [claimed, released]) is None


class TestVolumeBinder:
    async def test_binds_both_ways(self, store: ObjectStore, bus: WatchBus) -> None:
        await store.submit(manifests.volume("pv-1", size="5Gi"))
        await store.submit(manifests.claim("data", size="1Gi"))
        binder = VolumeBinder(store, bus)

        await binder.reconcile_key(_CLAIM_KEY)

        claim = store.get(Kind.PERSISTENT_VOLUME_CLAIM, "default", "data")
        volume = store.get(Kind.PERSISTENT_VOLUME, "", "pv-1")
        assert claim.spec["volumeName"] == "pv-1"
        assert claim.status["phase"] == "Bound"
        assert volume.spec["claimRef"] == {"namespace": "default", "name": "data", "uid": claim.uid}
        assert volume_phase(volume) == VolumePhase.BOUND
        await binder.queue.stop()

    async def test_unsatisfiable_claim_stays_pending(self, store: ObjectStore, bus: WatchBus) -> None:
        await store.submit(manifests.volume("pv-1", size="1Gi", storage_class="fast"))
        await store.submit(manifests.claim("data", size="1Gi"))
        binder = VolumeBinder(store, bus)

        await binder.reconcile_key(_CLAIM_KEY)

        claim = store.get(Kind.PERSISTENT_VOLUME_CLAIM, "default", "data")
        assert "volumeName" not in claim.spec
        assert claim.status["phase"] == "Pending"
        await binder.queue.stop()

    async def test_retain_volume_released_when_claim_deleted(self, store: ObjectStore, bus: WatchBus) -> None:
        await store.submit(manifests.volume("pv-1", reclaim="Retain"))
        await store.submit(manifests.claim("data"))
        binder = VolumeBinder(store, bus)
        await binder.reconcile_key(_CLAIM_KEY)

        await store.delete(Kind.PERSISTENT_VOLUME_CLAIM, "default", "data")
        await binder.reconcile_key(_CLAIM_KEY)

        volume = store.get(Kind.PERSISTENT_VOLUME, "", "pv-1")
        assert "claimRef" not in volume.spec
        assert volume_phase(volume) == VolumePhase.RELEASED

        # A Released volume is never handed to a new claim
        await store.submit(manifests.claim("data"))
        await binder.reconcile_key(_CLAIM_KEY)
        assert store.get(Kind.PERSISTENT_VOLUME_CLAIM, "default", "data").status["phase"] == "Pending"
        await binder.queue.stop()

    async def test_delete_volume_removed_with_claim(self, store: ObjectStore, bus: WatchBus) -> None:
        await store.submit(manifests.volume("pv-1", reclaim="Delete"))
        await store.submit(manifests.claim("data"))
        binder = VolumeBinder(store, bus)
        await binder.reconcile_key(_CLAIM_KEY)

        await store.delete(Kind.PERSISTENT_VOLUME_CLAIM, "default", "data")
        await binder.reconcile_key(_CLAIM_KEY)

        assert store.try_get(Kind.PERSISTENT_VOLUME, "", "pv-1") is None
        await binder.queue.stop()

    async def test_new_volume_requeues_pending_claims(self, store: ObjectStore, bus: WatchBus) -> None:
        await store.submit(manifests.claim("data"))
        binder = VolumeBinder(store, bus)
        volume = await store.create(KubeObject.from_dict(manifests.volume("pv-1")))

        await binder._on_volume_event(WatchEvent(EventType.ADDED, volume, store.resource_version))

        assert len(binder.queue) == 1
        await binder.queue.stop()

    async def test_interrupted_bind_resumes(self, store: ObjectStore, bus: WatchBus) -> None:
        await store.submit(manifests.volume("pv-1", size="5Gi"))
        await store.submit(manifests.claim("data"))
        binder = VolumeBinder(store, bus)
        failures = [TransientInfraError("store unavailable")]

        async def _flaky_write_status(*args: Any, **kwargs: Any) -> Any:
            if failures:
                raise failures.pop()
            return await children.write_status(*args, **kwargs)

        with patch("kubeloop.controllers.volume_binder.write_status", _flaky_write_status):
            await binder.reconcile_key(_CLAIM_KEY)
            # The volume names the claim but the claim was never updated
            assert store.get(Kind.PERSISTENT_VOLUME, "", "pv-1").spec["claimRef"]["name"] == "data"
            assert "volumeName" not in store.get(*_CLAIM_KEY).spec
            for _ in range(3):
                await binder.reconcile_key(_CLAIM_KEY)

        claim = store.get(*_CLAIM_KEY)
        volume = store.get(Kind.PERSISTENT_VOLUME, "", "pv-1")
        assert claim.spec["volumeName"] == "pv-1"
        assert claim.status["phase"] == "Bound"
        assert volume.spec["claimRef"]["uid"] == claim.uid
        assert volume_phase(volume) == VolumePhase.BOUND
        await binder.queue.stop()
