"""Pod state helpers shared by the controllers and the scheduler."""

from __future__ import annotations

from kubeloop.models.objects import KubeObject, PodPhase

# Finalizer held by the node agent until a terminating Pod has stopped
NODE_AGENT_FINALIZER: str = "kubeloop.io/node-agent"


def pod_phase(pod: KubeObject) -> PodPhase:
    try:
        return PodPhase(pod.status.get("phase", PodPhase.PENDING))
    except ValueError:
        return PodPhase.UNKNOWN


def pod_node(pod: KubeObject) -> str | None:
    node = pod.spec.get("nodeName")
    return str(node) if node else None


def is_pod_active(pod: KubeObject) -> bool:
    """Not terminating and not in a terminal phase."""
    return not pod.terminating and pod_phase(pod) not in (PodPhase.SUCCEEDED, PodPhase.FAILED)


def is_pod_ready(pod: KubeObject) -> bool:
    return pod_phase(pod) == PodPhase.RUNNING and bool(pod.status.get("ready", False)) and not pod.terminating


def is_pod_available(pod: KubeObject, min_ready_seconds: int, now: float) -> bool:
    """Ready continuously for at least *min_ready_seconds* (epoch seconds clock)."""
    if not is_pod_ready(pod):
        return False
    if min_ready_seconds <= 0:
        return True
    ready_since = pod.status.get("readySince")
    if ready_since is None:
        return False
    return now - float(ready_since) >= min_ready_seconds


def deletion_rank(pod: KubeObject) -> tuple[int, int, int, float, str]:
    """Sort key: Pods that cost the least availability sort first.

    Unplaced before placed, Pending before Running, then not-ready before
    ready, then newest before oldest, then by name for determinism.
    """
    created = pod.creation_timestamp.timestamp() if pod.creation_timestamp else 0.0
    return (
        0 if pod_node(pod) is None else 1,
        0 if pod_phase(pod) in (PodPhase.PENDING, PodPhase.UNKNOWN) else 1,
        0 if not is_pod_ready(pod) else 1,
        -created,
        pod.name,
    )
