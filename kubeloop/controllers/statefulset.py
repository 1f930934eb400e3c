"""StatefulSet controller.

Pods get stable identities ``<sts>-<ordinal>`` and per-ordinal claims
``<claim>-<sts>-<ordinal>``. Each pass builds a :class:`StatefulSetView`
and executes what :mod:`kubeloop.rollout.ordered` decides: one action for
``OrderedReady``, possibly several for ``Parallel``.

Claims are never deleted with their Pod. With ``whenDeleted: Delete`` the
claims carry an owner reference to the StatefulSet and go with it.
"""

from __future__ import annotations

import re
from typing import Any

from kubeloop.controllers.base import Controller, ReconcileContext
from kubeloop.controllers.children import pod_from_template, template_hash, write_status
from kubeloop.errors import AlreadyExistsError
from kubeloop.models.objects import Kind, KubeObject, PodPhase, owner_reference_for
from kubeloop.models.pods import is_pod_available, is_pod_ready, pod_phase
from kubeloop.models.workloads import (
    ClaimRetention,
    PodManagementPolicy,
    StatefulSetSpec,
    StatefulSetUpdateStrategy,
)
from kubeloop.rollout.ordered import (
    ActionType,
    OrderedAction,
    OrdinalState,
    StatefulSetView,
    plan_next_action,
    plan_parallel_actions,
)
from kubeloop.watch.informer import EventHandler

REVISION_LABEL: str = "controller-revision-hash"
POD_NAME_LABEL: str = "kubeloop.io/pod-name"


def claim_name(template_name: str, sts_name: str, ordinal: int) -> str:
    return f"{template_name}-{sts_name}-{ordinal}"


def pod_ordinal(sts_name: str, pod_name: str) -> int | None:
    match = re.fullmatch(rf"{re.escape(sts_name)}-(\d+)", pod_name)
    return int(match.group(1)) if match else None


class StatefulSetController(Controller):
    name = "statefulset"
    kind = Kind.STATEFUL_SET

    def secondary_watches(self) -> list[tuple[str, EventHandler]]:
        return [(Kind.POD, self._on_owned_event)]

    async def reconcile(self, obj: KubeObject, ctx: ReconcileContext) -> None:
        if obj.terminating:
            return
        spec = StatefulSetSpec.from_dict(obj.spec)
        revision = template_hash(spec.template.to_dict())
        pods = self._ordinal_pods(obj)
        view = self._view(obj, spec, revision, pods, ctx.now)

        if spec.pod_management_policy == PodManagementPolicy.PARALLEL:
            actions = plan_parallel_actions(view)
        else:
            actions = [plan_next_action(view)]

        for action in actions:
            if ctx.superseded:
                ctx.log.debug("reconcile_superseded")
                break
            await self._execute(obj, spec, revision, action, pods, ctx)

        await self._update_status(obj, spec, revision, ctx)

    def _ordinal_pods(self, sts: KubeObject) -> dict[int, KubeObject]:
        pods: dict[int, KubeObject] = {}
        for pod in self._store.list(Kind.POD, namespace=sts.namespace):
            if not pod.is_controlled_by(sts):
                continue
            ordinal = pod_ordinal(sts.name, pod.name)
            if ordinal is not None:
                pods[ordinal] = pod
        return pods

    def _view(
        self,
        sts: KubeObject,
        spec: StatefulSetSpec,
        revision: str,
        pods: dict[int, KubeObject],
        now: float,
    ) -> StatefulSetView:
        states = {
            ordinal: OrdinalState(
                ordinal=ordinal,
                running_ready=is_pod_available(pod, spec.min_ready_seconds, now),
                terminating=pod.terminating,
                failed=pod_phase(pod) in (PodPhase.FAILED, PodPhase.SUCCEEDED),
                revision=pod.labels.get(REVISION_LABEL, ""),
            )
            for ordinal, pod in pods.items()
        }
        missing: set[int] = set()
        for ordinal in range(spec.replicas):
            for template in spec.volume_claim_templates:
                name = claim_name(template.name, sts.name, ordinal)
                if self._store.try_get(Kind.PERSISTENT_VOLUME_CLAIM, sts.namespace, name) is None:
                    missing.add(ordinal)
        return StatefulSetView(
            replicas=spec.replicas,
            update_revision=revision,
            pods=states,
            missing_claims=frozenset(missing),
            has_claim_templates=bool(spec.volume_claim_templates),
            parallel=spec.pod_management_policy == PodManagementPolicy.PARALLEL,
            rolling_update=spec.update_strategy == StatefulSetUpdateStrategy.ROLLING_UPDATE,
            partition=spec.partition,
        )

    async def _execute(
        self,
        sts: KubeObject,
        spec: StatefulSetSpec,
        revision: str,
        action: OrderedAction,
        pods: dict[int, KubeObject],
        ctx: ReconcileContext,
    ) -> None:
        if action.type == ActionType.CREATE_CLAIMS:
            await self._create_claims(sts, spec, action.ordinal, ctx)
            await self._create_pod(sts, spec, revision, action.ordinal, ctx)
        elif action.type == ActionType.CREATE_POD:
            await self._create_pod(sts, spec, revision, action.ordinal, ctx)
        elif action.type == ActionType.DELETE_POD:
            pod = pods[action.ordinal]
            await self._store.delete(Kind.POD, pod.namespace, pod.name)
            ctx.log.info("pod_deleted", pod=pod.name, ordinal=action.ordinal, reason=action.reason)
        elif action.type == ActionType.WAIT:
            pod = pods.get(action.ordinal)
            if pod is not None and is_pod_ready(pod) and spec.min_ready_seconds > 0:
                ctx.requeue(float(spec.min_ready_seconds))
            ctx.log.debug("ordinal_waiting", ordinal=action.ordinal, reason=action.reason)

    async def _create_claims(self, sts: KubeObject, spec: StatefulSetSpec, ordinal: int, ctx: ReconcileContext) -> None:
        owners = [owner_reference_for(sts)] if spec.claim_retention == ClaimRetention.DELETE else []
        for template in spec.volume_claim_templates:
            claim = KubeObject(
                kind=Kind.PERSISTENT_VOLUME_CLAIM,
                name=claim_name(template.name, sts.name, ordinal),
                namespace=sts.namespace,
                spec=template.claim_spec(),
                status={"phase": "Pending"},
                labels=dict(spec.template.labels),
                owner_references=list(owners),
            )
            try:
                await self._store.create(claim)
            except AlreadyExistsError:
                continue
            ctx.log.info("claim_created", claim=claim.name, ordinal=ordinal)

    async def _create_pod(
        self, sts: KubeObject, spec: StatefulSetSpec, revision: str, ordinal: int, ctx: ReconcileContext
    ) -> None:
        name = f"{sts.name}-{ordinal}"
        pod = pod_from_template(
            spec.template,
            name,
            sts.namespace,
            owner_reference_for(sts),
            extra_labels={REVISION_LABEL: revision, POD_NAME_LABEL: name},
        )
        pod.spec["hostname"] = name
        pod.spec["subdomain"] = spec.service_name
        volumes = [v for v in pod.spec.get("volumes", []) or [] if isinstance(v, dict)]
        for template in spec.volume_claim_templates:
            volumes.append(
                {
                    "name": template.name,
                    "persistentVolumeClaim": {"claimName": claim_name(template.name, sts.name, ordinal)},
                }
            )
        if volumes:
            pod.spec["volumes"] = volumes
        try:
            await self._store.create(pod)
        except AlreadyExistsError:
            # Previous incarnation still draining; the next pass waits on it
            ctx.log.debug("pod_exists", pod=name)
            return
        ctx.log.info("pod_created", pod=name, ordinal=ordinal, revision=revision)

    async def _update_status(self, sts: KubeObject, spec: StatefulSetSpec, revision: str, ctx: ReconcileContext) -> None:
        pods = [p for p in self._ordinal_pods(sts).values() if not p.terminating]
        ready = [p for p in pods if is_pod_ready(p)]
        available = [p for p in ready if is_pod_available(p, spec.min_ready_seconds, ctx.now)]
        updated = [p for p in pods if p.labels.get(REVISION_LABEL) == revision]

        def _apply(status: dict[str, Any]) -> None:
            status["replicas"] = len(pods)
            status["readyReplicas"] = len(ready)
            status["availableReplicas"] = len(available)
            status["updatedReplicas"] = len(updated)
            status["currentReplicas"] = len(pods) - len(updated)
            status["updateRevision"] = revision
            if len(updated) == len(pods) == spec.replicas:
                status["currentRevision"] = revision
            status["observedGeneration"] = sts.generation

        await write_status(self._store, sts, _apply)
