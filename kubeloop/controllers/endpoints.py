"""Endpoints controller: one Endpoints object per Service.

Lists placed, non-terminating Pods matching the Service selector as
``{pod, node, ready}`` addresses sorted by Pod name; ready Pods go under
``addresses`` and the rest under ``notReadyAddresses``.
"""

from __future__ import annotations

from typing import Any

from kubeloop.controllers.base import Controller, ReconcileContext
from kubeloop.errors import AlreadyExistsError
from kubeloop.models.objects import Kind, KubeObject, WatchEvent, owner_reference_for
from kubeloop.models.pods import is_pod_active, is_pod_ready, pod_node
from kubeloop.models.workloads import ServiceSpec
from kubeloop.store.retry import retry_on_conflict
from kubeloop.watch.informer import EventHandler


def build_endpoints(pods: list[KubeObject]) -> dict[str, list[dict[str, Any]]]:
    ready: list[dict[str, Any]] = []
    not_ready: list[dict[str, Any]] = []
    for pod in sorted(pods, key=lambda p: p.name):
        node = pod_node(pod)
        if node is None or not is_pod_active(pod):
            continue
        is_ready = is_pod_ready(pod)
        address = {"pod": pod.name, "node": node, "ready": is_ready}
        (ready if is_ready else not_ready).append(address)
    return {"addresses": ready, "notReadyAddresses": not_ready}


class EndpointsController(Controller):
    name = "endpoints"
    kind = Kind.SERVICE

    def secondary_watches(self) -> list[tuple[str, EventHandler]]:
        return [
            (Kind.POD, self._on_pod_event),
            (Kind.ENDPOINTS, self._on_endpoints_event),
        ]

    async def _on_pod_event(self, event: WatchEvent) -> None:
        # Label changes can move a Pod between Services, so every Service in
        # the namespace gets a look
        for service in self._store.list(Kind.SERVICE, namespace=event.object.namespace):
            self.enqueue(service.key)

    async def _on_endpoints_event(self, event: WatchEvent) -> None:
        self.enqueue_owner(event.object)

    async def reconcile(self, obj: KubeObject, ctx: ReconcileContext) -> None:
        if obj.terminating:
            return
        spec = ServiceSpec.from_dict(obj.spec)
        pods = self._store.list(Kind.POD, namespace=obj.namespace, selector=spec.selector)
        desired = build_endpoints(pods)

        existing = self._store.try_get(Kind.ENDPOINTS, obj.namespace, obj.name)
        if existing is None:
            endpoints = KubeObject(
                kind=Kind.ENDPOINTS,
                name=obj.name,
                namespace=obj.namespace,
                spec=desired,
                labels=dict(obj.labels),
                owner_references=[owner_reference_for(obj)],
            )
            try:
                await self._store.create(endpoints)
            except AlreadyExistsError:
                # Lost a race with another pass; the next event reconciles it
                ctx.requeue(0.0)
                return
            ctx.log.info("endpoints_created", ready=len(desired["addresses"]), not_ready=len(desired["notReadyAddresses"]))
            return

        def _mutate(current: KubeObject) -> bool:
            if current.spec == desired:
                return False
            current.spec = desired
            return True

        updated = await retry_on_conflict(self._store, existing.key, _mutate)
        if updated is not None and existing.spec != desired:
            ctx.log.debug("endpoints_updated", ready=len(desired["addresses"]), not_ready=len(desired["notReadyAddresses"]))
