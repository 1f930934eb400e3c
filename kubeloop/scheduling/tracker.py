"""Node Resource Tracker.

Keeps, per Node, the sum of resource requests of the Pods bound to it,
updated synchronously from every store write so that the accounting always
matches the Node ``resourceVersion`` a snapshot was taken at. The scheduler
works on immutable :class:`ClusterSnapshot` values built from it.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING

from kubeloop.errors import ValidationError
from kubeloop.models.cluster import NodeSpec
from kubeloop.models.objects import EventType, Kind, KubeObject, ObjectKey, PodPhase, WatchEvent
from kubeloop.models.pods import pod_node, pod_phase
from kubeloop.models.workloads import PodAffinityTerm, PodSchedulingSpec, ResourceRequests
from kubeloop.observability.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Mapping

    from kubeloop.store.object_store import ObjectStore

_logger = get_logger("node_tracker")


@dataclass(frozen=True)
class PlacedPod:
    """The parts of a bound Pod that other placements depend on."""

    namespace: str
    name: str
    node_name: str
    labels: Mapping[str, str]
    requests: ResourceRequests
    required_anti_affinity: tuple[PodAffinityTerm, ...] = ()


@dataclass(frozen=True)
class NodeInfo:
    name: str
    labels: Mapping[str, str]
    spec: NodeSpec
    resource_version: int
    requested: ResourceRequests
    pods: tuple[PlacedPod, ...] = ()

    @property
    def allocatable(self) -> ResourceRequests:
        return self.spec.allocatable

    @property
    def free(self) -> ResourceRequests:
        return self.spec.allocatable - self.requested

    def utilization(self, extra: ResourceRequests | None = None) -> tuple[float, float]:
        """(cpu, memory) requested fractions, optionally with *extra* added."""
        requested = self.requested + extra if extra is not None else self.requested
        return (
            _fraction(requested.cpu_millis, self.allocatable.cpu_millis),
            _fraction(requested.memory_bytes, self.allocatable.memory_bytes),
        )

    @property
    def load(self) -> float:
        cpu, memory = self.utilization()
        return (cpu + memory) / 2


@dataclass(frozen=True)
class ClusterSnapshot:
    """Immutable view of every Node and its bound Pods."""

    nodes: tuple[NodeInfo, ...]
    resource_version: int

    def node(self, name: str) -> NodeInfo | None:
        for info in self.nodes:
            if info.name == name:
                return info
        return None

    def all_pods(self) -> tuple[PlacedPod, ...]:
        return tuple(pod for info in self.nodes for pod in info.pods)


class NodeResourceTracker:
    """Per-Node requested-resource accounting fed by store writes."""

    def __init__(self, store: ObjectStore) -> None:
        self._store = store
        self._nodes: dict[str, KubeObject] = {}
        self._node_specs: dict[str, NodeSpec] = {}
        self._placed: dict[ObjectKey, PlacedPod] = {}
        self.rebuild()
        store.add_listener(self.apply)

    def close(self) -> None:
        self._store.remove_listener(self.apply)

    def rebuild(self) -> None:
        """Recompute all accounting from the store."""
        self._nodes.clear()
        self._node_specs.clear()
        self._placed.clear()
        for node in self._store.list(Kind.NODE):
            self._track_node(node)
        for pod in self._store.list(Kind.POD):
            self._track_pod(pod)

    def apply(self, event: WatchEvent) -> None:
        """Fold one store event into the accounting."""
        obj = event.object
        if obj.kind == Kind.NODE:
            if event.type == EventType.DELETED:
                self._nodes.pop(obj.name, None)
                self._node_specs.pop(obj.name, None)
            else:
                self._track_node(obj)
        elif obj.kind == Kind.POD:
            if event.type == EventType.DELETED:
                self._placed.pop(obj.key, None)
            else:
                self._track_pod(obj)

    def requested(self, node_name: str) -> ResourceRequests:
        total = ResourceRequests()
        for pod in self._placed.values():
            if pod.node_name == node_name:
                total = total + pod.requests
        return total

    def snapshot(self) -> ClusterSnapshot:
        by_node: dict[str, list[PlacedPod]] = {name: [] for name in self._nodes}
        for pod in self._placed.values():
            if pod.node_name in by_node:
                by_node[pod.node_name].append(pod)

        infos: list[NodeInfo] = []
        for name in sorted(self._nodes):
            pods = sorted(by_node[name], key=lambda p: (p.namespace, p.name))
            requested = ResourceRequests()
            for pod in pods:
                requested = requested + pod.requests
            node = self._nodes[name]
            infos.append(
                NodeInfo(
                    name=name,
                    labels=MappingProxyType(dict(node.labels)),
                    spec=self._node_specs[name],
                    resource_version=node.resource_version,
                    requested=requested,
                    pods=tuple(pods),
                )
            )
        return ClusterSnapshot(nodes=tuple(infos), resource_version=self._store.resource_version)

    def _track_node(self, node: KubeObject) -> None:
        try:
            spec = NodeSpec.from_dict(node.spec)
        except ValidationError as exc:
            _logger.warning("node_spec_invalid", node=node.name, error=str(exc))
            self._nodes.pop(node.name, None)
            self._node_specs.pop(node.name, None)
            return
        self._nodes[node.name] = node
        self._node_specs[node.name] = spec

    def _track_pod(self, pod: KubeObject) -> None:
        node_name = pod_node(pod)
        if node_name is None or pod_phase(pod) in (PodPhase.SUCCEEDED, PodPhase.FAILED):
            self._placed.pop(pod.key, None)
            return
        try:
            scheduling = PodSchedulingSpec.from_pod_spec(pod.spec)
        except ValidationError as exc:
            _logger.warning("pod_spec_invalid", pod=f"{pod.namespace}/{pod.name}", error=str(exc))
            return
        self._placed[pod.key] = PlacedPod(
            namespace=pod.namespace,
            name=pod.name,
            node_name=node_name,
            labels=MappingProxyType(dict(pod.labels)),
            requests=scheduling.requests,
            required_anti_affinity=scheduling.affinity.required_anti_affinity,
        )


def _fraction(used: int, total: int) -> float:
    if total <= 0:
        return 1.0 if used > 0 else 0.0
    return used / total
