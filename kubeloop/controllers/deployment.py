"""Deployment controller.

A Deployment owns one ReplicaSet per distinct Pod template, named
``<deployment>-<template hash>``. The ReplicaSet whose hash matches the
current template is the *new* one; all others are *old*. Each pass runs
one step of the strategy (see :mod:`kubeloop.rollout.surge`), writes the
resulting ``spec.replicas`` targets, and reports the rollout state:

    Progressing -> Complete
    Progressing -> Failed      (no progress within progressDeadlineSeconds)
    any         -> Paused      (spec.paused; scaling still reconciled)

A failed rollout is only reported, never reverted. Rolling back is an
explicit call to :meth:`DeploymentController.rollback`.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from kubeloop.controllers.base import Controller, ReconcileContext
from kubeloop.controllers.children import TEMPLATE_HASH_LABEL, template_hash, write_status
from kubeloop.errors import NotFoundError
from kubeloop.models.objects import (
    Kind,
    KubeObject,
    WatchEvent,
    owner_reference_for,
    set_condition,
)
from kubeloop.models.pods import is_pod_available, is_pod_ready
from kubeloop.models.workloads import DeploymentSpec, DeploymentStrategyType, PodTemplate
from kubeloop.observability.metrics import rollout_transitions_total
from kubeloop.rollout.surge import (
    ReplicaSetState,
    RollingStep,
    plan_recreate_step,
    plan_rolling_step,
    rollout_complete,
)
from kubeloop.store.retry import retry_on_conflict
from kubeloop.watch.informer import EventHandler

REVISION_ANNOTATION: str = "kubeloop.io/revision"


class RolloutState(StrEnum):
    PROGRESSING = "Progressing"
    PAUSED = "Paused"
    COMPLETE = "Complete"
    FAILED = "Failed"


@dataclass
class _Owned:
    """A ReplicaSet together with the Pods it controls."""

    obj: KubeObject
    pods: list[KubeObject] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.obj.name

    @property
    def replicas(self) -> int:
        return int(self.obj.spec.get("replicas", 0))

    @property
    def revision(self) -> int:
        return revision_of(self.obj)

    @property
    def live_pods(self) -> list[KubeObject]:
        return [p for p in self.pods if not p.terminating]

    def state(self, min_ready_seconds: int, now: float, count_terminating: bool = False) -> ReplicaSetState:
        pods = self.pods if count_terminating else self.live_pods
        return ReplicaSetState(
            name=self.name,
            replicas=self.replicas,
            available=sum(1 for p in self.live_pods if is_pod_available(p, min_ready_seconds, now)),
            pods=len(pods),
        )


def revision_of(rs: KubeObject) -> int:
    try:
        return int(rs.annotations.get(REVISION_ANNOTATION, "0"))
    except ValueError:
        return 0


class DeploymentController(Controller):
    name = "deployment"
    kind = Kind.DEPLOYMENT

    def secondary_watches(self) -> list[tuple[str, EventHandler]]:
        return [
            (Kind.REPLICA_SET, self._on_owned_event),
            (Kind.POD, self._on_pod_event),
        ]

    async def _on_pod_event(self, event: WatchEvent) -> None:
        ref = event.object.controller_ref()
        if ref is None or ref.kind != Kind.REPLICA_SET:
            return
        rs = self._store.try_get(Kind.REPLICA_SET, event.object.namespace, ref.name)
        if rs is not None:
            self.enqueue_owner(rs)

    # ------------------------------------------------------------------
    # Reconcile
    # ------------------------------------------------------------------

    async def reconcile(self, obj: KubeObject, ctx: ReconcileContext) -> None:
        if obj.terminating:
            return
        spec = DeploymentSpec.from_dict(obj.spec)
        owned = self._owned_replica_sets(obj)
        new_hash = template_hash(spec.template.to_dict())

        new = next((rs for rs in owned if rs.obj.labels.get(TEMPLATE_HASH_LABEL) == new_hash), None)
        old = sorted((rs for rs in owned if rs is not new), key=lambda rs: (rs.revision, rs.name))
        max_revision = max((rs.revision for rs in owned), default=0)

        if new is None:
            created = await self._create_new_replica_set(obj, spec, new_hash, max_revision + 1)
            ctx.log.info("replicaset_created", replicaset=created.name, revision=max_revision + 1)
            new = _Owned(created)
        elif new.revision < max_revision:
            # Rolled back to an earlier template: it becomes the newest revision
            updated = await self._set_revision(new.obj, max_revision + 1)
            if updated is not None:
                new = _Owned(updated, new.pods)
        if ctx.superseded:
            return

        now = ctx.now
        new_state = new.state(spec.min_ready_seconds, now)
        old_states = [rs.state(spec.min_ready_seconds, now) for rs in old]

        step = self._plan(spec, new, old, now)
        if step is not None and not step.noop:
            await self._apply_step(step, new, old, ctx)
        if ctx.superseded:
            return

        await self._cleanup_history(old, spec.revision_history_limit, ctx)

        await self._update_status(obj, spec, new, old, new_state, old_states, step, ctx)

    def _owned_replica_sets(self, deployment: KubeObject) -> list[_Owned]:
        owned = {
            rs.uid: _Owned(rs)
            for rs in self._store.list(Kind.REPLICA_SET, namespace=deployment.namespace)
            if rs.is_controlled_by(deployment)
        }
        for pod in self._store.list(Kind.POD, namespace=deployment.namespace):
            ref = pod.controller_ref()
            if ref is not None and ref.uid in owned:
                owned[ref.uid].pods.append(pod)
        return list(owned.values())

    def _plan(self, spec: DeploymentSpec, new: _Owned, old: list[_Owned], now: float) -> RollingStep | None:
        desired = spec.replicas
        new_state = new.state(spec.min_ready_seconds, now)
        if spec.paused:
            return _plan_paused(desired, new, old)
        if spec.strategy.type == DeploymentStrategyType.RECREATE:
            old_states = [rs.state(spec.min_ready_seconds, now, count_terminating=True) for rs in old]
            return plan_recreate_step(desired, new_state, old_states)
        max_surge, max_unavailable = spec.strategy.resolve(desired)
        old_states = [rs.state(spec.min_ready_seconds, now) for rs in old]
        return plan_rolling_step(desired, max_surge, max_unavailable, new_state, old_states)

    async def _apply_step(self, step: RollingStep, new: _Owned, old: list[_Owned], ctx: ReconcileContext) -> None:
        # Shrink before growing so the surge bound holds between writes
        for rs in old:
            target = step.old_replicas.get(rs.name, rs.replicas)
            if target < rs.replicas:
                await self._scale(rs.obj, target)
                ctx.log.info("replicaset_scaled", replicaset=rs.name, replicas=target, previous=rs.replicas)
        if step.new_replicas != new.replicas:
            await self._scale(new.obj, step.new_replicas)
            ctx.log.info("replicaset_scaled", replicaset=new.name, replicas=step.new_replicas, previous=new.replicas)
        for rs in old:
            target = step.old_replicas.get(rs.name, rs.replicas)
            if target > rs.replicas:
                await self._scale(rs.obj, target)

    async def _scale(self, rs: KubeObject, replicas: int) -> None:
        def _mutate(current: KubeObject) -> bool:
            if int(current.spec.get("replicas", 0)) == replicas:
                return False
            current.spec["replicas"] = replicas
            return True

        await retry_on_conflict(self._store, rs.key, _mutate)

    async def _create_new_replica_set(
        self, deployment: KubeObject, spec: DeploymentSpec, new_hash: str, revision: int
    ) -> KubeObject:
        template = spec.template.to_dict()
        template["metadata"]["labels"][TEMPLATE_HASH_LABEL] = new_hash
        rs = KubeObject(
            kind=Kind.REPLICA_SET,
            name=f"{deployment.name}-{new_hash}",
            namespace=deployment.namespace,
            spec={
                "replicas": 0,
                "minReadySeconds": spec.min_ready_seconds,
                "selector": _selector_with_hash(deployment.spec.get("selector"), new_hash),
                "template": copy.deepcopy(template),
            },
            labels={**spec.template.labels, TEMPLATE_HASH_LABEL: new_hash},
            annotations={REVISION_ANNOTATION: str(revision)},
            owner_references=[owner_reference_for(deployment)],
        )
        return await self._store.create(rs)

    async def _set_revision(self, rs: KubeObject, revision: int) -> KubeObject | None:
        def _mutate(current: KubeObject) -> None:
            current.annotations[REVISION_ANNOTATION] = str(revision)

        return await retry_on_conflict(self._store, rs.key, _mutate)

    async def _cleanup_history(self, old: list[_Owned], limit: int, ctx: ReconcileContext) -> None:
        drained = [rs for rs in old if rs.replicas == 0 and not rs.pods]
        excess = len(drained) - limit
        for rs in drained[: max(0, excess)]:
            await self._store.delete(Kind.REPLICA_SET, rs.obj.namespace, rs.name)
            ctx.log.info("replicaset_pruned", replicaset=rs.name, revision=rs.revision)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def _update_status(
        self,
        deployment: KubeObject,
        spec: DeploymentSpec,
        new: _Owned,
        old: list[_Owned],
        new_state: ReplicaSetState,
        old_states: list[ReplicaSetState],
        step: RollingStep | None,
        ctx: ReconcileContext,
    ) -> None:
        desired = spec.replicas
        _, max_unavailable = spec.strategy.resolve(desired)
        all_pods = [p for rs in [new, *old] for p in rs.live_pods]
        ready = sum(1 for p in all_pods if is_pod_ready(p))
        available = sum(1 for p in all_pods if is_pod_available(p, spec.min_ready_seconds, ctx.now))
        if ready > available:
            ctx.requeue(float(spec.min_ready_seconds))

        previous = deployment.status
        counts = (len(new.live_pods), new_state.available, available)
        previous_counts = (
            previous.get("updatedReplicas"),
            previous.get("updatedAvailableReplicas"),
            previous.get("availableReplicas"),
        )
        progressed = (step is not None and not step.noop) or counts != previous_counts
        last_progress = float(previous.get("lastProgressTime", ctx.now))
        if progressed or previous.get("observedGeneration") != deployment.generation:
            last_progress = ctx.now

        if spec.paused:
            state = RolloutState.PAUSED
        elif rollout_complete(desired, new_state, old_states):
            state = RolloutState.COMPLETE
        elif ctx.now - last_progress > spec.progress_deadline_seconds:
            state = RolloutState.FAILED
        else:
            state = RolloutState.PROGRESSING
            ctx.requeue(max(0.0, spec.progress_deadline_seconds - (ctx.now - last_progress)) + 1.0)

        def _apply(status: dict[str, Any]) -> None:
            status["replicas"] = len(all_pods)
            status["updatedReplicas"] = len(new.live_pods)
            status["readyReplicas"] = ready
            status["availableReplicas"] = available
            status["unavailableReplicas"] = max(0, desired - available)
            status["updatedAvailableReplicas"] = new_state.available
            status["observedGeneration"] = deployment.generation
            status["revision"] = new.revision
            status["newReplicaSet"] = new.name
            status["rolloutState"] = str(state)
            status["lastProgressTime"] = last_progress
            _set_rollout_conditions(status, state, new.name, available >= desired - max_unavailable)

        await write_status(self._store, deployment, _apply)
        if previous.get("rolloutState") != str(state):
            rollout_transitions_total.labels(state=str(state)).inc()
            ctx.log.info("rollout_state_changed", state=str(state), previous=previous.get("rolloutState"))

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    async def rollback(self, namespace: str, name: str, revision: int | None = None) -> KubeObject:
        """Copy the template of an earlier revision back into the Deployment.

        With no *revision*, the revision just before the current one is
        used. Raises NotFoundError when the Deployment or the revision is
        unknown.
        """
        deployment = self._store.get(Kind.DEPLOYMENT, namespace, name)
        spec = DeploymentSpec.from_dict(deployment.spec)
        current_hash = template_hash(spec.template.to_dict())
        owned = sorted(
            (rs.obj for rs in self._owned_replica_sets(deployment)),
            key=revision_of,
            reverse=True,
        )
        current = next((rs for rs in owned if rs.labels.get(TEMPLATE_HASH_LABEL) == current_hash), None)
        current_revision = revision_of(current) if current is not None else max(map(revision_of, owned), default=0)

        if revision is None:
            target = next((rs for rs in owned if revision_of(rs) < current_revision), None)
        else:
            target = next((rs for rs in owned if revision_of(rs) == revision), None)
        if target is None:
            wanted = "previous revision" if revision is None else f"revision {revision}"
            raise NotFoundError(f"Deployment {namespace}/{name}: {wanted} not found")

        template = PodTemplate.from_dict(target.spec.get("template")).to_dict()
        template["metadata"]["labels"].pop(TEMPLATE_HASH_LABEL, None)

        def _mutate(obj: KubeObject) -> None:
            obj.spec["template"] = template

        updated = await retry_on_conflict(self._store, deployment.key, _mutate)
        if updated is None:
            raise NotFoundError(f"Deployment {namespace}/{name} not found")
        self._log.info("deployment_rolled_back", deployment=f"{namespace}/{name}", to_revision=revision_of(target))
        self.enqueue(updated.key)
        return updated


def _selector_with_hash(raw: Any, new_hash: str) -> dict[str, Any]:
    selector = copy.deepcopy(raw) if isinstance(raw, dict) else {}
    if "matchLabels" not in selector and "matchExpressions" not in selector:
        selector = {"matchLabels": selector}
    selector.setdefault("matchLabels", {})
    selector["matchLabels"] = {**(selector["matchLabels"] or {}), TEMPLATE_HASH_LABEL: new_hash}
    return selector


def _plan_paused(desired: int, new: _Owned, old: list[_Owned]) -> RollingStep | None:
    """Follow scale changes on a paused Deployment without rolling the template.

    Growth goes to the newest ReplicaSet that has replicas (the new one when
    none do). Shrinking drains the oldest active ReplicaSets first.
    """
    ordered = [*old, new]
    targets = {rs.name: rs.replicas for rs in ordered}
    delta = desired - sum(targets.values())
    if delta == 0:
        return None
    active = [rs for rs in ordered if rs.replicas > 0]
    if delta > 0:
        grow = active[-1] if active else new
        targets[grow.name] += delta
    else:
        remaining = -delta
        for rs in active:
            take = min(remaining, targets[rs.name])
            targets[rs.name] -= take
            remaining -= take
            if remaining == 0:
                break
    new_replicas = targets.pop(new.name)
    return RollingStep(
        new_replicas=new_replicas,
        old_replicas=targets,
        scaled_up=max(0, delta),
        scaled_down=max(0, -delta),
    )


def _set_rollout_conditions(status: dict[str, Any], state: RolloutState, new_rs: str, available: bool) -> None:
    if state == RolloutState.COMPLETE:
        set_condition(status, "Progressing", "True", "NewReplicaSetAvailable", f"ReplicaSet {new_rs} has successfully progressed")
    elif state == RolloutState.FAILED:
        set_condition(status, "Progressing", "False", "ProgressDeadlineExceeded", f"ReplicaSet {new_rs} has timed out progressing")
    elif state == RolloutState.PAUSED:
        set_condition(status, "Progressing", "Unknown", "DeploymentPaused", "Deployment is paused")
    else:
        set_condition(status, "Progressing", "True", "ReplicaSetUpdated", f"ReplicaSet {new_rs} is progressing")
    if available:
        set_condition(status, "Available", "True", "MinimumReplicasAvailable", "Deployment has minimum availability")
    else:
        set_condition(status, "Available", "False", "MinimumReplicasUnavailable", "Deployment does not have minimum availability")
