"""PersistentVolumeClaim binding.

Unbound claims are offered to a :class:`StorageProvisioner`; the volume it
returns is bound both ways (``claimRef`` on the volume, ``volumeName`` on
the claim) and both move to phase ``Bound``. A claim nothing can satisfy
stays ``Pending`` and is retried whenever a volume changes. A bind that
fails part-way resumes on the next pass from the volume whose ``claimRef``
already names the claim.

When a claim is deleted its volume is released according to the volume's
reclaim policy: ``Retain`` volumes become ``Released`` (and are never
rebound automatically), ``Delete`` volumes are deleted.
"""

from __future__ import annotations

import time
from typing import Any

from kubeloop.controllers.base import Clock, Controller, ReconcileContext
from kubeloop.controllers.children import write_status
from kubeloop.errors import ConflictError, ValidationError
from kubeloop.interfaces import StorageProvisioner
from kubeloop.models.cluster import ClaimRef, PersistentVolumeSpec, ReclaimPolicy, VolumePhase, parse_claim
from kubeloop.models.config import ControllerConfig
from kubeloop.models.objects import EventType, Kind, KubeObject, ObjectKey, WatchEvent
from kubeloop.observability.logging import get_logger
from kubeloop.store.object_store import ObjectStore
from kubeloop.store.retry import retry_on_conflict
from kubeloop.watch.bus import WatchBus
from kubeloop.watch.informer import EventHandler

_logger = get_logger("provisioner")


def volume_phase(volume: KubeObject) -> VolumePhase:
    try:
        return VolumePhase(volume.status.get("phase", VolumePhase.AVAILABLE))
    except ValueError:
        return VolumePhase.PENDING


class MatchingProvisioner:
    """Static provisioning: the smallest Available volume that fits, ties by name."""

    async def provision(self, claim: KubeObject, volumes: list[KubeObject]) -> KubeObject | None:
        request = parse_claim(claim.spec)
        candidates: list[tuple[int, str, KubeObject]] = []
        for volume in volumes:
            if volume.terminating or volume_phase(volume) != VolumePhase.AVAILABLE:
                continue
            try:
                spec = PersistentVolumeSpec.from_dict(volume.spec)
            except ValidationError as exc:
                _logger.warning("volume_spec_invalid", volume=volume.name, error=str(exc))
                continue
            if spec.claim_ref is not None or not spec.satisfies(request):
                continue
            candidates.append((spec.capacity_bytes, volume.name, volume))
        if not candidates:
            return None
        return min(candidates, key=lambda c: (c[0], c[1]))[2]


class VolumeBinder(Controller):
    name = "volume_binder"
    kind = Kind.PERSISTENT_VOLUME_CLAIM

    def __init__(
        self,
        store: ObjectStore,
        bus: WatchBus,
        provisioner: StorageProvisioner | None = None,
        config: ControllerConfig | None = None,
        clock: Clock = time.time,
    ) -> None:
        super().__init__(store, bus, config, clock)
        self._provisioner = provisioner or MatchingProvisioner()
        # claim key -> bound volume name, to release volumes once claims are gone
        self._bindings: dict[ObjectKey, str] = {}

    def secondary_watches(self) -> list[tuple[str, EventHandler]]:
        return [(Kind.PERSISTENT_VOLUME, self._on_volume_event)]

    async def _on_primary_event(self, event: WatchEvent) -> None:
        claim = event.object
        volume_name = claim.spec.get("volumeName")
        if volume_name:
            self._bindings[event.key] = str(volume_name)
        self.enqueue(event.key)

    async def _on_volume_event(self, event: WatchEvent) -> None:
        if event.type == EventType.DELETED:
            return
        if volume_phase(event.object) != VolumePhase.AVAILABLE:
            return
        for claim in self._store.list(Kind.PERSISTENT_VOLUME_CLAIM):
            if not claim.spec.get("volumeName"):
                self.enqueue(claim.key)

    async def reconcile(self, obj: KubeObject, ctx: ReconcileContext) -> None:
        if obj.terminating:
            return
        request = parse_claim(obj.spec)
        if request.volume_name:
            self._bindings[obj.key] = request.volume_name
            await write_status(self._store, obj, lambda status: status.update(phase=str(VolumePhase.BOUND)))
            return

        # A previous pass may have claimed a volume and failed before finishing
        volume = self._claimed_volume(obj)
        if volume is None:
            volume = await self._provisioner.provision(obj, self._store.list(Kind.PERSISTENT_VOLUME))
            if volume is None:
                ctx.log.debug(
                    "claim_pending", request_bytes=request.request_bytes, storage_class=request.storage_class
                )
                await write_status(self._store, obj, lambda status: status.update(phase=str(VolumePhase.PENDING)))
                return
            if self._store.try_get(Kind.PERSISTENT_VOLUME, "", volume.name) is None:
                volume = await self._store.create(volume)
                ctx.log.info("volume_provisioned", volume=volume.name)
        else:
            ctx.log.info("claim_bind_resumed", volume=volume.name)
        await self._bind(obj, volume, ctx)

    def _claimed_volume(self, claim: KubeObject) -> KubeObject | None:
        for volume in self._store.list(Kind.PERSISTENT_VOLUME):
            ref = volume.spec.get("claimRef") or {}
            if ref.get("uid") == claim.uid and not volume.terminating:
                return volume
        return None

    async def _bind(self, claim: KubeObject, volume: KubeObject, ctx: ReconcileContext) -> None:
        ref = ClaimRef(namespace=claim.namespace, name=claim.name, uid=claim.uid).to_dict()

        def _claim_volume(current: KubeObject) -> bool:
            existing = current.spec.get("claimRef")
            if existing and existing.get("uid") != claim.uid:
                raise ConflictError(f"PersistentVolume {current.name} was bound to another claim")
            if existing == ref:
                return False
            current.spec["claimRef"] = ref
            return True

        bound_volume = await retry_on_conflict(self._store, volume.key, _claim_volume)
        if bound_volume is None:
            raise ConflictError(f"PersistentVolume {volume.name} disappeared while binding")
        await write_status(self._store, bound_volume, lambda status: status.update(phase=str(VolumePhase.BOUND)))

        def _set_volume(current: KubeObject) -> None:
            current.spec["volumeName"] = volume.name

        await retry_on_conflict(self._store, claim.key, _set_volume)
        await write_status(self._store, claim, lambda status: status.update(phase=str(VolumePhase.BOUND)))
        self._bindings[claim.key] = volume.name
        ctx.log.info("claim_bound", volume=volume.name)

    async def on_missing(self, key: ObjectKey) -> None:
        volume_name = self._bindings.pop(key, None)
        volume = self._find_volume(key, volume_name)
        if volume is None:
            return
        spec = PersistentVolumeSpec.from_dict(volume.spec)
        if spec.reclaim_policy == ReclaimPolicy.DELETE:
            await self._store.delete(Kind.PERSISTENT_VOLUME, "", volume.name)
            self._log.info("volume_deleted", volume=volume.name, claim=str(key))
            return

        def _release(current: KubeObject) -> bool:
            if not current.spec.get("claimRef"):
                return False
            current.spec.pop("claimRef", None)
            return True

        released = await retry_on_conflict(self._store, volume.key, _release)
        if released is not None:
            await write_status(self._store, released, _mark_released)
            self._log.info("volume_released", volume=volume.name, claim=str(key))

    def _find_volume(self, key: ObjectKey, volume_name: str | None) -> KubeObject | None:
        if volume_name:
            volume = self._store.try_get(Kind.PERSISTENT_VOLUME, "", volume_name)
            if volume is not None:
                return volume
        for volume in self._store.list(Kind.PERSISTENT_VOLUME):
            ref = volume.spec.get("claimRef") or {}
            if ref.get("namespace") == key.namespace and ref.get("name") == key.name:
                return volume
        return None


def _mark_released(status: dict[str, Any]) -> None:
    status["phase"] = str(VolumePhase.RELEASED)
