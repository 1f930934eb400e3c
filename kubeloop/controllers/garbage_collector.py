"""Garbage collector: removes dependents whose owners are gone.

Watches every kind. When an object is deleted, each dependent holding an
owner reference to it is queued:

- ``Background`` deletion: a dependent left with no live owner is deleted;
  one that still has a live owner only loses the dangling reference.
- ``Orphan`` deletion: the reference to the deleted owner is stripped and
  the dependent is kept.

The initial list of every informer doubles as the startup sweep: any
object whose owners no longer exist is queued as well.
"""

from __future__ import annotations

import time

from kubeloop.controllers.base import Clock, Controller, ReconcileContext
from kubeloop.models.config import ControllerConfig
from kubeloop.models.objects import EventType, Kind, KubeObject, ObjectKey, OwnerReference, WatchEvent
from kubeloop.observability.metrics import gc_deleted_total
from kubeloop.store.object_store import PROPAGATION_ANNOTATION, ObjectStore, Propagation
from kubeloop.store.retry import retry_on_conflict
from kubeloop.watch.bus import WatchBus
from kubeloop.watch.informer import EventHandler


class GarbageCollector(Controller):
    name = "garbage_collector"
    kind = ""

    def __init__(
        self,
        store: ObjectStore,
        bus: WatchBus,
        config: ControllerConfig | None = None,
        clock: Clock = time.time,
    ) -> None:
        super().__init__(store, bus, config, clock)
        self._orphaned_owners: set[str] = set()

    def watches(self) -> list[tuple[str, EventHandler]]:
        return [(kind, self._on_event) for kind in Kind]

    async def _on_event(self, event: WatchEvent) -> None:
        obj = event.object
        if event.type == EventType.DELETED:
            dependents = self._store.list_dependents(obj.uid)
            if not dependents:
                return
            if obj.annotations.get(PROPAGATION_ANNOTATION) == Propagation.ORPHAN:
                self._orphaned_owners.add(obj.uid)
            for dependent in dependents:
                self.enqueue(dependent.key)
            return
        if obj.owner_references and any(not self._store.exists_uid(ref.uid) for ref in obj.owner_references):
            self.enqueue(obj.key)

    async def reconcile(self, obj: KubeObject, ctx: ReconcileContext) -> None:
        orphaned: list[OwnerReference] = []
        dangling: list[OwnerReference] = []
        live = 0
        for ref in obj.owner_references:
            if self._store.exists_uid(ref.uid):
                live += 1
            elif ref.uid in self._orphaned_owners:
                orphaned.append(ref)
            else:
                dangling.append(ref)

        if dangling and live == 0 and not orphaned:
            if obj.terminating:
                return
            await self._store.delete(obj.kind, obj.namespace, obj.name, propagation=Propagation.BACKGROUND)
            gc_deleted_total.labels(kind=obj.kind).inc()
            ctx.log.info("dependent_deleted", owners=[ref.name for ref in dangling])
            return

        stale = {ref.uid for ref in (*orphaned, *dangling)}
        if not stale:
            return

        def _strip(current: KubeObject) -> bool:
            kept = [ref for ref in current.owner_references if ref.uid not in stale]
            if len(kept) == len(current.owner_references):
                return False
            current.owner_references = kept
            return True

        await retry_on_conflict(self._store, obj.key, _strip)
        ctx.log.info("owner_references_removed", owners=[ref.name for ref in (*orphaned, *dangling)])
        self._forget_orphaned(stale)

    async def on_missing(self, key: ObjectKey) -> None:
        self._forget_orphaned(set(self._orphaned_owners))

    def _forget_orphaned(self, uids: set[str]) -> None:
        for uid in uids & self._orphaned_owners:
            if not self._store.list_dependents(uid):
                self._orphaned_owners.discard(uid)
