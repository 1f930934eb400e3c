"""Scheduler: places unbound Pods onto Nodes.

For every unbound, non-terminating Pod:

1. Take an immutable :class:`ClusterSnapshot` from the Node Resource Tracker.
2. Filter: drop Nodes failing any hard constraint, counting reasons.
3. Score: weighted sum of preferred node affinity, preferred anti-affinity
   spreading and resource balance. Ties go to the least loaded Node, then
   to the lexicographically smallest name.
4. Bind with the Node's resourceVersion seen at scoring. If the Node
   changed in between, re-snapshot and try again (bounded attempts).

A Pod no Node can take gets ``PodScheduled=False`` with reason
``Unschedulable`` and is retried whenever a Node is added or modified or a
Pod is deleted.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from types import MappingProxyType

from kubeloop.controllers.base import Clock, Controller, ReconcileContext
from kubeloop.errors import ConflictError, NotFoundError, UnschedulableError
from kubeloop.models.config import ControllerConfig, SchedulerConfig
from kubeloop.models.objects import EventType, Kind, KubeObject, ObjectKey, WatchEvent, set_condition
from kubeloop.models.pods import pod_node
from kubeloop.models.workloads import PodSchedulingSpec
from kubeloop.observability.metrics import (
    scheduling_attempts_total,
    scheduling_bind_conflicts_total,
    unschedulable_pods,
)
from kubeloop.scheduling.plugins import (
    DEFAULT_FILTERS,
    FilterPlugin,
    PodUnderScheduling,
    score_anti_affinity,
    score_balance,
    score_node_affinity,
)
from kubeloop.scheduling.tracker import ClusterSnapshot, NodeInfo, NodeResourceTracker
from kubeloop.store.object_store import ObjectStore
from kubeloop.store.retry import retry_on_conflict
from kubeloop.watch.bus import WatchBus
from kubeloop.watch.informer import EventHandler


@dataclass(frozen=True)
class ScoredNode:
    name: str
    score: float
    load: float
    resource_version: int


@dataclass(frozen=True)
class SchedulingDecision:
    """Result of one filter/score pass."""

    ranked: tuple[ScoredNode, ...] = ()
    failures: dict[str, int] = field(default_factory=dict)

    @property
    def best(self) -> ScoredNode | None:
        return self.ranked[0] if self.ranked else None


def pod_view(pod: KubeObject) -> PodUnderScheduling:
    return PodUnderScheduling(
        namespace=pod.namespace,
        name=pod.name,
        labels=MappingProxyType(dict(pod.labels)),
        spec=PodSchedulingSpec.from_pod_spec(pod.spec),
    )


def unschedulable_message(failures: dict[str, int], total_nodes: int) -> str:
    """``0/3 nodes are available: 2 Insufficient cpu, 1 node(s) were unschedulable.``"""
    if total_nodes == 0:
        return "0/0 nodes are available: no nodes registered."
    parts = ", ".join(f"{count} {reason}" for reason, count in sorted(failures.items()))
    return f"0/{total_nodes} nodes are available: {parts}."


class Scheduler(Controller):
    """Assigns unbound Pods to Nodes."""

    name = "scheduler"
    kind = Kind.POD

    def __init__(
        self,
        store: ObjectStore,
        bus: WatchBus,
        tracker: NodeResourceTracker,
        config: SchedulerConfig | None = None,
        controller_config: ControllerConfig | None = None,
        filters: tuple[FilterPlugin, ...] = DEFAULT_FILTERS,
        clock: Clock = time.time,
    ) -> None:
        super().__init__(store, bus, controller_config, clock)
        self._tracker = tracker
        self._scheduler_config = config or SchedulerConfig()
        self._filters = filters
        self._unschedulable: set[ObjectKey] = set()

    # ------------------------------------------------------------------
    # Event routing
    # ------------------------------------------------------------------

    def secondary_watches(self) -> list[tuple[str, EventHandler]]:
        return [(Kind.NODE, self._on_node_event)]

    async def _on_primary_event(self, event: WatchEvent) -> None:
        pod = event.object
        if event.type == EventType.DELETED:
            self._unschedulable.discard(event.key)
            self._publish_unschedulable()
            # Freed capacity may fit a waiting Pod
            self._requeue_unschedulable()
            return
        if pod_node(pod) is None and not pod.terminating:
            self.enqueue(event.key)

    async def _on_node_event(self, event: WatchEvent) -> None:
        if event.type in (EventType.ADDED, EventType.MODIFIED):
            self._requeue_unschedulable()

    def _requeue_unschedulable(self) -> None:
        for key in sorted(self._unschedulable):
            self.enqueue(key)

    def _publish_unschedulable(self) -> None:
        unschedulable_pods.set(len(self._unschedulable))

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def select(self, pod: KubeObject, snapshot: ClusterSnapshot) -> SchedulingDecision:
        """Filter and score every Node in *snapshot* for *pod*."""
        view = pod_view(pod)
        feasible: list[NodeInfo] = []
        failures: dict[str, int] = {}
        for node in snapshot.nodes:
            reason = next((r for f in self._filters if (r := f(view, node, snapshot)) is not None), None)
            if reason is None:
                feasible.append(node)
            else:
                failures[reason] = failures.get(reason, 0) + 1
        if not feasible:
            return SchedulingDecision(failures=failures)

        cfg = self._scheduler_config
        node_affinity = score_node_affinity(view, feasible)
        anti_affinity = score_anti_affinity(view, feasible, snapshot)
        balance = score_balance(view, feasible)
        scored = [
            ScoredNode(
                name=node.name,
                score=(
                    cfg.weight_node_affinity * node_affinity[node.name]
                    + cfg.weight_anti_affinity * anti_affinity[node.name]
                    + cfg.weight_balance * balance[node.name]
                ),
                load=node.load,
                resource_version=node.resource_version,
            )
            for node in feasible
        ]
        scored.sort(key=lambda s: (-round(s.score, 6), s.load, s.name))
        return SchedulingDecision(ranked=tuple(scored), failures=failures)

    async def schedule_one(self, pod: KubeObject) -> str:
        """Place *pod*; returns the Node name.

        Raises UnschedulableError when no Node passes the filters, and
        ConflictError when every bind attempt lost a race.
        """
        attempts = self._scheduler_config.bind_attempts
        for attempt in range(1, attempts + 1):
            snapshot = self._tracker.snapshot()
            decision = self.select(pod, snapshot)
            best = decision.best
            if best is None:
                scheduling_attempts_total.labels(result="unschedulable").inc()
                raise UnschedulableError(
                    unschedulable_message(decision.failures, len(snapshot.nodes)),
                    failures=decision.failures,
                )
            try:
                await self._store.bind_pod(pod.namespace, pod.name, best.name, best.resource_version)
            except ConflictError as exc:
                current = self._store.try_get(Kind.POD, pod.namespace, pod.name)
                if current is None or current.terminating:
                    raise NotFoundError(f"Pod {pod.namespace}/{pod.name} went away during scheduling") from exc
                bound_to = pod_node(current)
                if bound_to is not None:
                    return bound_to
                scheduling_bind_conflicts_total.inc()
                scheduling_attempts_total.labels(result="conflict").inc()
                self._log.debug("bind_conflict", pod=f"{pod.namespace}/{pod.name}", node=best.name, attempt=attempt)
                pod = current
                continue
            scheduling_attempts_total.labels(result="scheduled").inc()
            self._log.info(
                "pod_bound",
                pod=f"{pod.namespace}/{pod.name}",
                node=best.name,
                score=round(best.score, 2),
                candidates=len(decision.ranked),
            )
            return best.name
        raise ConflictError(f"Pod {pod.namespace}/{pod.name}: binding lost {attempts} races")

    async def reconcile(self, obj: KubeObject, ctx: ReconcileContext) -> None:
        if pod_node(obj) is not None or obj.terminating:
            self._unschedulable.discard(obj.key)
            self._publish_unschedulable()
            return
        try:
            await self.schedule_one(obj)
        except UnschedulableError as exc:
            self._unschedulable.add(obj.key)
            self._publish_unschedulable()
            ctx.log.info("pod_unschedulable", message=str(exc))
            await retry_on_conflict(
                self._store,
                obj.key,
                lambda pod: set_condition(pod.status, "PodScheduled", "False", "Unschedulable", str(exc)),
                status=True,
            )
            return
        except NotFoundError:
            return
        self._unschedulable.discard(obj.key)
        self._publish_unschedulable()

    async def on_missing(self, key: ObjectKey) -> None:
        self._unschedulable.discard(key)
        self._publish_unschedulable()
