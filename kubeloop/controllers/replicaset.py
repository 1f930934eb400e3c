"""ReplicaSet controller.

Keeps the number of active Pods matching a ReplicaSet's selector equal to
``spec.replicas``:

- too few: create Pods from the template, named ``<rs>-<5 char suffix>``
- too many: delete the surplus, cheapest to lose first (unplaced, then
  Pending, then not-ready, then newest; ties by name)

Matching orphans are adopted; owned Pods that stop matching are released.
Failed and Succeeded Pods are removed so they get replaced.
"""

from __future__ import annotations

from typing import Any

from kubeloop.controllers.base import Controller, ReconcileContext
from kubeloop.controllers.children import pod_from_template, random_suffix, write_status
from kubeloop.errors import AlreadyExistsError, KubeLoopError
from kubeloop.models.objects import (
    Kind,
    KubeObject,
    PodPhase,
    owner_reference_for,
    remove_condition,
    set_condition,
)
from kubeloop.models.pods import deletion_rank, is_pod_active, is_pod_available, is_pod_ready, pod_phase
from kubeloop.models.workloads import ReplicaSetSpec
from kubeloop.store.retry import retry_on_conflict
from kubeloop.watch.informer import EventHandler

_CREATE_NAME_ATTEMPTS: int = 3


class ReplicaSetController(Controller):
    name = "replicaset"
    kind = Kind.REPLICA_SET

    def secondary_watches(self) -> list[tuple[str, EventHandler]]:
        return [(Kind.POD, self._on_owned_event)]

    async def reconcile(self, obj: KubeObject, ctx: ReconcileContext) -> None:
        if obj.terminating:
            return
        spec = ReplicaSetSpec.from_dict(obj.spec)
        pods = await self._claim_pods(obj, spec)

        finished = [p for p in pods if not p.terminating and pod_phase(p) in (PodPhase.FAILED, PodPhase.SUCCEEDED)]
        for pod in finished:
            await self._store.delete(Kind.POD, pod.namespace, pod.name)
        active = [p for p in pods if is_pod_active(p)]

        failure: KubeLoopError | None = None
        diff = len(active) - spec.replicas
        if diff < 0:
            try:
                await self._create_pods(obj, spec, -diff, ctx)
            except KubeLoopError as exc:
                failure = exc
        elif diff > 0:
            victims = sorted(active, key=deletion_rank)[:diff]
            for pod in victims:
                if ctx.superseded:
                    ctx.log.debug("reconcile_superseded", remaining=diff)
                    break
                await self._store.delete(Kind.POD, pod.namespace, pod.name)
                ctx.log.info("pod_deleted", pod=pod.name, reason="surplus")

        await self._update_status(obj, spec, ctx, failure)
        if failure is not None:
            raise failure

    async def _claim_pods(self, rs: KubeObject, spec: ReplicaSetSpec) -> list[KubeObject]:
        """Owned Pods, after adopting matching orphans and releasing non-matching ones."""
        owned: list[KubeObject] = []
        for pod in self._store.list(Kind.POD, namespace=rs.namespace):
            ref = pod.controller_ref()
            matches = spec.selector.matches(pod.labels)
            if ref is None:
                if matches and not pod.terminating:
                    adopted = await retry_on_conflict(self._store, pod.key, lambda p: _adopt(p, rs))
                    if adopted is not None and adopted.is_controlled_by(rs):
                        self._log.info("pod_adopted", pod=pod.name, replicaset=rs.name)
                        owned.append(adopted)
                continue
            if ref.uid != rs.uid:
                continue
            if matches:
                owned.append(pod)
            elif not pod.terminating:
                await retry_on_conflict(self._store, pod.key, lambda p: _release(p, rs))
                self._log.info("pod_released", pod=pod.name, replicaset=rs.name)
        return owned

    async def _create_pods(self, rs: KubeObject, spec: ReplicaSetSpec, count: int, ctx: ReconcileContext) -> None:
        owner = owner_reference_for(rs)
        for _ in range(count):
            if ctx.superseded:
                ctx.log.debug("reconcile_superseded", remaining=count)
                return
            for attempt in range(_CREATE_NAME_ATTEMPTS):
                pod = pod_from_template(spec.template, f"{rs.name}-{random_suffix()}", rs.namespace, owner)
                try:
                    await self._store.create(pod)
                except AlreadyExistsError:
                    if attempt == _CREATE_NAME_ATTEMPTS - 1:
                        raise
                    continue
                ctx.log.info("pod_created", pod=pod.name)
                break

    async def _update_status(
        self,
        rs: KubeObject,
        spec: ReplicaSetSpec,
        ctx: ReconcileContext,
        failure: KubeLoopError | None,
    ) -> None:
        pods = [
            p
            for p in self._store.list(Kind.POD, namespace=rs.namespace, selector=spec.selector)
            if p.is_controlled_by(rs) and is_pod_active(p)
        ]
        ready = [p for p in pods if is_pod_ready(p)]
        available = [p for p in ready if is_pod_available(p, spec.min_ready_seconds, ctx.now)]
        if len(available) < len(ready):
            ctx.requeue(float(spec.min_ready_seconds))

        def _apply(status: dict[str, Any]) -> None:
            status["replicas"] = len(pods)
            status["readyReplicas"] = len(ready)
            status["availableReplicas"] = len(available)
            status["observedGeneration"] = rs.generation
            if failure is not None:
                set_condition(status, "ReplicaFailure", "True", failure.reason, str(failure))
            else:
                remove_condition(status, "ReplicaFailure")

        await write_status(self._store, rs, _apply)


def _adopt(pod: KubeObject, rs: KubeObject) -> bool:
    if pod.controller_ref() is not None:
        return False
    pod.owner_references.append(owner_reference_for(rs))
    return True


def _release(pod: KubeObject, rs: KubeObject) -> bool:
    before = len(pod.owner_references)
    pod.owner_references = [ref for ref in pod.owner_references if ref.uid != rs.uid]
    return len(pod.owner_references) != before
