"""Manifest builders shared by the unit and integration tests."""

from __future__ import annotations

from typing import Any

from kubeloop.models.objects import Kind, KubeObject, PodPhase
from kubeloop.store.object_store import ObjectStore
from kubeloop.store.retry import retry_on_conflict


def node(
    name: str,
    cpu: str = "4",
    memory: str = "8Gi",
    labels: dict[str, str] | None = None,
    taints: list[dict[str, str]] | None = None,
    unschedulable: bool = False,
) -> dict[str, Any]:
    spec: dict[str, Any] = {"allocatable": {"cpu": cpu, "memory": memory}}
    if taints:
        spec["taints"] = taints
    if unschedulable:
        spec["unschedulable"] = True
    return {"kind": "Node", "metadata": {"name": name, "labels": labels or {}}, "spec": spec}


def pod_spec(cpu: str = "100m", memory: str = "128Mi", image: str = "nginx:1.25", **extra: Any) -> dict[str, Any]:
    return {
        "containers": [
            {"name": "app", "image": image, "resources": {"requests": {"cpu": cpu, "memory": memory}}},
        ],
        **extra,
    }


def template(labels: dict[str, str], cpu: str = "100m", memory: str = "128Mi", image: str = "nginx:1.25") -> dict[str, Any]:
    return {"metadata": {"labels": dict(labels)}, "spec": pod_spec(cpu=cpu, memory=memory, image=image)}


def pod(
    name: str,
    labels: dict[str, str] | None = None,
    namespace: str = "default",
    cpu: str = "100m",
    memory: str = "128Mi",
    **extra: Any,
) -> dict[str, Any]:
    return {
        "kind": "Pod",
        "metadata": {"name": name, "namespace": namespace, "labels": labels or {}},
        "spec": pod_spec(cpu=cpu, memory=memory, **extra),
    }


def replicaset(name: str, replicas: int, labels: dict[str, str], min_ready_seconds: int = 0) -> dict[str, Any]:
    return {
        "kind": "ReplicaSet",
        "metadata": {"name": name, "namespace": "default"},
        "spec": {
            "replicas": replicas,
            "minReadySeconds": min_ready_seconds,
            "selector": {"matchLabels": dict(labels)},
            "template": template(labels),
        },
    }


def deployment(
    name: str,
    replicas: int,
    labels: dict[str, str],
    image: str = "nginx:1.25",
    strategy: dict[str, Any] | None = None,
    **extra: Any,
) -> dict[str, Any]:
    spec: dict[str, Any] = {
        "replicas": replicas,
        "selector": {"matchLabels": dict(labels)},
        "template": template(labels, image=image),
        **extra,
    }
    if strategy is not None:
        spec["strategy"] = strategy
    return {"kind": "Deployment", "metadata": {"name": name, "namespace": "default"}, "spec": spec}


def statefulset(
    name: str,
    replicas: int,
    labels: dict[str, str],
    claim_templates: list[dict[str, Any]] | None = None,
    image: str = "postgres:16",
    **extra: Any,
) -> dict[str, Any]:
    spec: dict[str, Any] = {
        "serviceName": name,
        "replicas": replicas,
        "selector": {"matchLabels": dict(labels)},
        "template": template(labels, image=image),
        **extra,
    }
    if claim_templates is not None:
        spec["volumeClaimTemplates"] = claim_templates
    return {"kind": "StatefulSet", "metadata": {"name": name, "namespace": "default"}, "spec": spec}


def claim_template(name: str = "data", size: str = "1Gi", storage_class: str = "standard") -> dict[str, Any]:
    return {
        "metadata": {"name": name},
        "spec": {
            "storageClassName": storage_class,
            "accessModes": ["ReadWriteOnce"],
            "resources": {"requests": {"storage": size}},
        },
    }


def service(name: str, selector: dict[str, str]) -> dict[str, Any]:
    return {"kind": "Service", "metadata": {"name": name, "namespace": "default"}, "spec": {"selector": selector}}


def volume(name: str, size: str = "1Gi", storage_class: str = "standard", reclaim: str = "Retain") -> dict[str, Any]:
    return {
        "kind": "PersistentVolume",
        "metadata": {"name": name},
        "spec": {
            "capacity": {"storage": size},
            "storageClassName": storage_class,
            "accessModes": ["ReadWriteOnce"],
            "persistentVolumeReclaimPolicy": reclaim,
        },
    }


def claim(name: str, size: str = "1Gi", storage_class: str = "standard") -> dict[str, Any]:
    return {
        "kind": "PersistentVolumeClaim",
        "metadata": {"name": name, "namespace": "default"},
        "spec": {
            "storageClassName": storage_class,
            "accessModes": ["ReadWriteOnce"],
            "resources": {"requests": {"storage": size}},
        },
    }


def autoscaler(
    name: str,
    target: str,
    min_replicas: int = 1,
    max_replicas: int = 10,
    utilization: int = 70,
    target_kind: str = "Deployment",
) -> dict[str, Any]:
    return {
        "kind": "HorizontalPodAutoscaler",
        "metadata": {"name": name, "namespace": "default"},
        "spec": {
            "scaleTargetRef": {"kind": target_kind, "name": target},
            "minReplicas": min_replicas,
            "maxReplicas": max_replicas,
            "metrics": [
                {
                    "type": "Resource",
                    "resource": {"name": "cpu", "target": {"type": "Utilization", "averageUtilization": utilization}},
                }
            ],
        },
    }


async def mark_ready(store: ObjectStore, obj: KubeObject, node_name: str = "node-1", since: float = 0.0) -> KubeObject:
    """Bind *obj* (if unbound) and report it Running and Ready since *since*."""
    if not obj.spec.get("nodeName"):

        def _place(current: KubeObject) -> None:
            current.spec["nodeName"] = node_name

        await retry_on_conflict(store, obj.key, _place)

    def _ready(current: KubeObject) -> None:
        current.status["phase"] = str(PodPhase.RUNNING)
        current.status["ready"] = True
        current.status["readySince"] = since

    result = await retry_on_conflict(store, obj.key, _ready, status=True)
    assert result is not None
    return result


async def mark_all_ready(store: ObjectStore, namespace: str = "default", since: float = 0.0) -> None:
    for item in store.list(Kind.POD, namespace=namespace):
        if not item.terminating and not item.status.get("ready"):
            await mark_ready(store, item, since=since)
