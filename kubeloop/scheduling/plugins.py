"""Filter and score plugins for the scheduler.

Filters return ``None`` when a Node is feasible, otherwise a short reason
string; reasons are aggregated into the ``Unschedulable`` message. Scorers
return a value in ``0..100`` for every candidate Node.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass

from kubeloop.models.workloads import PodAffinityTerm, PodSchedulingSpec
from kubeloop.scheduling.tracker import ClusterSnapshot, NodeInfo, PlacedPod

_BLOCKING_EFFECTS: frozenset[str] = frozenset({"NoSchedule", "NoExecute"})
MAX_SCORE: int = 100


@dataclass(frozen=True)
class PodUnderScheduling:
    """The incoming Pod as the plugins see it."""

    namespace: str
    name: str
    labels: Mapping[str, str]
    spec: PodSchedulingSpec


FilterPlugin = Callable[[PodUnderScheduling, NodeInfo, ClusterSnapshot], str | None]


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------


def filter_unschedulable(pod: PodUnderScheduling, node: NodeInfo, snapshot: ClusterSnapshot) -> str | None:
    if node.spec.unschedulable:
        return "node(s) were unschedulable"
    return None


def filter_resources(pod: PodUnderScheduling, node: NodeInfo, snapshot: ClusterSnapshot) -> str | None:
    free = node.free
    if pod.spec.requests.cpu_millis > free.cpu_millis:
        return "Insufficient cpu"
    if pod.spec.requests.memory_bytes > free.memory_bytes:
        return "Insufficient memory"
    return None


def filter_taints(pod: PodUnderScheduling, node: NodeInfo, snapshot: ClusterSnapshot) -> str | None:
    for taint in node.spec.taints:
        if taint.effect not in _BLOCKING_EFFECTS:
            continue
        if not any(t.tolerates(taint.key, taint.value, taint.effect) for t in pod.spec.tolerations):
            return f"node(s) had untolerated taint {{{taint.key}: {taint.value}}}"
    return None


def filter_node_affinity(pod: PodUnderScheduling, node: NodeInfo, snapshot: ClusterSnapshot) -> str | None:
    labels = dict(node.labels)
    for key, value in pod.spec.node_selector.items():
        if labels.get(key) != value:
            return "node(s) didn't match Pod's node selector"
    terms = pod.spec.affinity.required_node_terms
    if terms and not any(term.matches(labels) for term in terms):
        return "node(s) didn't match Pod's node affinity"
    return None


def filter_pod_anti_affinity(pod: PodUnderScheduling, node: NodeInfo, snapshot: ClusterSnapshot) -> str | None:
    # The incoming Pod's own required terms
    for term in pod.spec.affinity.required_anti_affinity:
        if any(_term_matches(term, pod.namespace, other) for other in _pods_in_domain(term, node, snapshot)):
            return "node(s) didn't satisfy Pod anti-affinity rules"

    # Existing Pods' required terms against the incoming Pod
    for other in snapshot.all_pods():
        other_node = snapshot.node(other.node_name)
        if other_node is None:
            continue
        for term in other.required_anti_affinity:
            if not _same_domain(term.topology_key, node, other_node):
                continue
            if other.namespace == pod.namespace and term.selector.matches(pod.labels):
                return "node(s) didn't satisfy existing Pods' anti-affinity rules"
    return None


DEFAULT_FILTERS: tuple[FilterPlugin, ...] = (
    filter_unschedulable,
    filter_node_affinity,
    filter_taints,
    filter_resources,
    filter_pod_anti_affinity,
)


# ---------------------------------------------------------------------------
# Scorers
# ---------------------------------------------------------------------------


def score_node_affinity(pod: PodUnderScheduling, nodes: list[NodeInfo]) -> dict[str, float]:
    """Share of preferred node-affinity weight each Node satisfies."""
    terms = pod.spec.affinity.preferred_node_terms
    total = sum(term.weight for term in terms)
    if total == 0:
        return {node.name: 0.0 for node in nodes}
    scores: dict[str, float] = {}
    for node in nodes:
        labels = dict(node.labels)
        matched = sum(term.weight for term in terms if term.term.matches(labels))
        scores[node.name] = MAX_SCORE * matched / total
    return scores


def score_anti_affinity(pod: PodUnderScheduling, nodes: list[NodeInfo], snapshot: ClusterSnapshot) -> dict[str, float]:
    """Spread away from Pods named by preferred anti-affinity terms.

    Raw penalty is the weighted count of matching Pods in the Node's
    topology domain, normalised so the least crowded Node scores 100.
    """
    terms = pod.spec.affinity.preferred_anti_affinity
    if not terms:
        return {node.name: 0.0 for node in nodes}
    penalties: dict[str, float] = {}
    for node in nodes:
        penalty = 0.0
        for weighted in terms:
            matches = sum(
                1
                for other in _pods_in_domain(weighted.term, node, snapshot)
                if _term_matches(weighted.term, pod.namespace, other)
            )
            penalty += weighted.weight * matches
        penalties[node.name] = penalty
    worst = max(penalties.values())
    if worst == 0:
        return {name: float(MAX_SCORE) for name in penalties}
    return {name: MAX_SCORE * (1 - penalty / worst) for name, penalty in penalties.items()}


def score_balance(pod: PodUnderScheduling, nodes: list[NodeInfo]) -> dict[str, float]:
    """Favour Nodes whose cpu and memory fractions stay close once the Pod lands."""
    scores: dict[str, float] = {}
    for node in nodes:
        cpu, memory = node.utilization(pod.spec.requests)
        scores[node.name] = MAX_SCORE * (1 - min(1.0, abs(cpu - memory)))
    return scores


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _same_domain(topology_key: str, a: NodeInfo, b: NodeInfo) -> bool:
    value = a.labels.get(topology_key)
    return value is not None and value == b.labels.get(topology_key)


def _pods_in_domain(term: PodAffinityTerm, node: NodeInfo, snapshot: ClusterSnapshot) -> list[PlacedPod]:
    if term.topology_key not in node.labels:
        return []
    return [
        pod
        for other in snapshot.nodes
        if _same_domain(term.topology_key, node, other)
        for pod in other.pods
    ]


def _term_matches(term: PodAffinityTerm, namespace: str, other: PlacedPod) -> bool:
    return other.namespace == namespace and term.selector.matches(other.labels)
