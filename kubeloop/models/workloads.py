"""Typed views over the ``spec`` of Pods and workload objects.

Every view is parsed from the raw spec dict with ``from_dict`` and raises
``ValidationError`` on malformed input, so the submission path and the
controllers share one parser.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import Any

from kubeloop.errors import ValidationError
from kubeloop.models.quantity import parse_bytes, parse_cpu
from kubeloop.models.selectors import LabelSelector

# ---------------------------------------------------------------------------
# Scheduling constraints
# ---------------------------------------------------------------------------


class NodeSelectorOperator(StrEnum):
    IN = "In"
    NOT_IN = "NotIn"
    EXISTS = "Exists"
    DOES_NOT_EXIST = "DoesNotExist"
    GT = "Gt"
    LT = "Lt"


@dataclass(frozen=True)
class NodeSelectorRequirement:
    key: str
    operator: NodeSelectorOperator
    values: tuple[str, ...] = ()

    def matches(self, labels: dict[str, str]) -> bool:
        present = self.key in labels
        if self.operator == NodeSelectorOperator.EXISTS:
            return present
        if self.operator == NodeSelectorOperator.DOES_NOT_EXIST:
            return not present
        if self.operator == NodeSelectorOperator.IN:
            return present and labels[self.key] in self.values
        if self.operator == NodeSelectorOperator.NOT_IN:
            return not present or labels[self.key] not in self.values
        if not present:
            return False
        try:
            label_value = int(labels[self.key])
            bound = int(self.values[0])
        except (ValueError, IndexError):
            return False
        if self.operator == NodeSelectorOperator.GT:
            return label_value > bound
        return label_value < bound


@dataclass(frozen=True)
class NodeSelectorTerm:
    """All requirements of a term must match (terms themselves are ORed)."""

    requirements: tuple[NodeSelectorRequirement, ...]

    def matches(self, labels: dict[str, str]) -> bool:
        return all(req.matches(labels) for req in self.requirements)


@dataclass(frozen=True)
class PreferredNodeTerm:
    weight: int
    term: NodeSelectorTerm


@dataclass(frozen=True)
class PodAffinityTerm:
    """Pods matching ``selector`` within the same ``topology_key`` domain."""

    selector: LabelSelector
    topology_key: str


@dataclass(frozen=True)
class WeightedPodAffinityTerm:
    weight: int
    term: PodAffinityTerm


@dataclass(frozen=True)
class Affinity:
    required_node_terms: tuple[NodeSelectorTerm, ...] = ()
    preferred_node_terms: tuple[PreferredNodeTerm, ...] = ()
    required_anti_affinity: tuple[PodAffinityTerm, ...] = ()
    preferred_anti_affinity: tuple[WeightedPodAffinityTerm, ...] = ()

    @classmethod
    def from_dict(cls, data: Any) -> Affinity:
        if not data:
            return cls()
        if not isinstance(data, dict):
            raise ValidationError("affinity must be a mapping", field="affinity")

        node = data.get("nodeAffinity") or {}
        required_node: list[NodeSelectorTerm] = []
        required_raw = node.get("requiredDuringSchedulingIgnoredDuringExecution") or {}
        for idx, raw in enumerate(required_raw.get("nodeSelectorTerms") or []):
            required_node.append(_parse_node_term(raw, f"affinity.nodeAffinity.required[{idx}]"))

        preferred_node: list[PreferredNodeTerm] = []
        for idx, raw in enumerate(node.get("preferredDuringSchedulingIgnoredDuringExecution") or []):
            path = f"affinity.nodeAffinity.preferred[{idx}]"
            preferred_node.append(
                PreferredNodeTerm(
                    weight=_weight(raw, path),
                    term=_parse_node_term(raw.get("preference") or {}, path),
                )
            )

        anti = data.get("podAntiAffinity") or {}
        required_anti = tuple(
            _parse_pod_term(raw, f"affinity.podAntiAffinity.required[{idx}]")
            for idx, raw in enumerate(anti.get("requiredDuringSchedulingIgnoredDuringExecution") or [])
        )
        preferred_anti: list[WeightedPodAffinityTerm] = []
        for idx, raw in enumerate(anti.get("preferredDuringSchedulingIgnoredDuringExecution") or []):
            path = f"affinity.podAntiAffinity.preferred[{idx}]"
            preferred_anti.append(
                WeightedPodAffinityTerm(
                    weight=_weight(raw, path),
                    term=_parse_pod_term(raw.get("podAffinityTerm") or {}, path),
                )
            )

        return cls(
            required_node_terms=tuple(required_node),
            preferred_node_terms=tuple(preferred_node),
            required_anti_affinity=required_anti,
            preferred_anti_affinity=tuple(preferred_anti),
        )


@dataclass(frozen=True)
class Toleration:
    key: str = ""
    operator: str = "Equal"
    value: str = ""
    effect: str = ""

    def tolerates(self, key: str, value: str, effect: str) -> bool:
        if self.effect and self.effect != effect:
            return False
        if self.operator == "Exists":
            return not self.key or self.key == key
        return self.key == key and self.value == value


@dataclass(frozen=True)
class ResourceRequests:
    cpu_millis: int = 0
    memory_bytes: int = 0

    def __add__(self, other: ResourceRequests) -> ResourceRequests:
        return ResourceRequests(self.cpu_millis + other.cpu_millis, self.memory_bytes + other.memory_bytes)

    def __sub__(self, other: ResourceRequests) -> ResourceRequests:
        return ResourceRequests(self.cpu_millis - other.cpu_millis, self.memory_bytes - other.memory_bytes)

    def fits_within(self, capacity: ResourceRequests) -> bool:
        return self.cpu_millis <= capacity.cpu_millis and self.memory_bytes <= capacity.memory_bytes

    @classmethod
    def from_resource_map(cls, data: Any, path: str = "resources") -> ResourceRequests:
        if not data:
            return cls()
        if not isinstance(data, dict):
            raise ValidationError(f"{path} must be a mapping", field=path)
        try:
            cpu = parse_cpu(data["cpu"]) if "cpu" in data else 0
            memory = parse_bytes(data["memory"]) if "memory" in data else 0
        except ValidationError as exc:
            raise ValidationError(f"{path}: {exc}", field=path) from exc
        return cls(cpu_millis=cpu, memory_bytes=memory)


@dataclass(frozen=True)
class PodSchedulingSpec:
    """Everything the scheduler needs from a Pod spec."""

    requests: ResourceRequests = ResourceRequests()
    node_selector: MappingProxyType[str, str] = field(default_factory=lambda: MappingProxyType({}))
    affinity: Affinity = Affinity()
    tolerations: tuple[Toleration, ...] = ()
    node_name: str | None = None

    @classmethod
    def from_pod_spec(cls, spec: dict[str, Any]) -> PodSchedulingSpec:
        containers = spec.get("containers") or []
        if not isinstance(containers, list):
            raise ValidationError("spec.containers must be a list", field="spec.containers")

        total = ResourceRequests()
        for idx, container in enumerate(containers):
            if not isinstance(container, dict):
                raise ValidationError(f"spec.containers[{idx}] must be a mapping", field="spec.containers")
            resources = container.get("resources") or {}
            total = total + ResourceRequests.from_resource_map(
                resources.get("requests"), f"spec.containers[{idx}].resources.requests"
            )

        node_selector = spec.get("nodeSelector") or {}
        if not isinstance(node_selector, dict):
            raise ValidationError("spec.nodeSelector must be a mapping", field="spec.nodeSelector")

        tolerations = tuple(
            Toleration(
                key=str(raw.get("key", "")),
                operator=str(raw.get("operator", "Equal")),
                value=str(raw.get("value", "")),
                effect=str(raw.get("effect", "")),
            )
            for raw in (spec.get("tolerations") or [])
            if isinstance(raw, dict)
        )

        node_name = spec.get("nodeName")
        return cls(
            requests=total,
            node_selector=MappingProxyType({str(k): str(v) for k, v in node_selector.items()}),
            affinity=Affinity.from_dict(spec.get("affinity")),
            tolerations=tolerations,
            node_name=str(node_name) if node_name else None,
        )


# ---------------------------------------------------------------------------
# Pod template
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PodTemplate:
    labels: dict[str, str]
    annotations: dict[str, str]
    spec: dict[str, Any]

    @classmethod
    def from_dict(cls, data: Any, path: str = "spec.template") -> PodTemplate:
        if not isinstance(data, dict):
            raise ValidationError(f"{path} is required", field=path)
        metadata = data.get("metadata") or {}
        spec = data.get("spec")
        if not isinstance(spec, dict):
            raise ValidationError(f"{path}.spec is required", field=f"{path}.spec")
        if not spec.get("containers"):
            raise ValidationError(f"{path}.spec.containers must not be empty", field=f"{path}.spec.containers")
        PodSchedulingSpec.from_pod_spec(spec)
        return cls(
            labels={str(k): str(v) for k, v in (metadata.get("labels") or {}).items()},
            annotations={str(k): str(v) for k, v in (metadata.get("annotations") or {}).items()},
            spec=spec,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "metadata": {"labels": dict(self.labels), "annotations": dict(self.annotations)},
            "spec": self.spec,
        }


# ---------------------------------------------------------------------------
# Workloads
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReplicaSetSpec:
    replicas: int
    selector: LabelSelector
    template: PodTemplate
    min_ready_seconds: int = 0

    @classmethod
    def from_dict(cls, spec: dict[str, Any]) -> ReplicaSetSpec:
        replicas = _non_negative_int(spec.get("replicas", 1), "spec.replicas")
        template = PodTemplate.from_dict(spec.get("template"))
        selector = _workload_selector(spec, template)
        return cls(
            replicas=replicas,
            selector=selector,
            template=template,
            min_ready_seconds=_non_negative_int(spec.get("minReadySeconds", 0), "spec.minReadySeconds"),
        )


class DeploymentStrategyType(StrEnum):
    ROLLING_UPDATE = "RollingUpdate"
    RECREATE = "Recreate"


@dataclass(frozen=True)
class DeploymentStrategy:
    type: DeploymentStrategyType = DeploymentStrategyType.ROLLING_UPDATE
    max_surge: int | str = "25%"
    max_unavailable: int | str = "25%"

    def resolve(self, desired: int) -> tuple[int, int]:
        """Return (max_surge, max_unavailable) as absolute Pod counts.

        Surge rounds up and unavailability rounds down; if both resolve to
        zero, one unavailable Pod is allowed so the rollout can progress.
        """
        surge = _resolve_int_or_percent(self.max_surge, desired, round_up=True)
        unavailable = _resolve_int_or_percent(self.max_unavailable, desired, round_up=False)
        if surge == 0 and unavailable == 0:
            unavailable = 1
        return surge, unavailable

    @classmethod
    def from_dict(cls, data: Any) -> DeploymentStrategy:
        if not data:
            return cls()
        if not isinstance(data, dict):
            raise ValidationError("spec.strategy must be a mapping", field="spec.strategy")
        try:
            strategy_type = DeploymentStrategyType(data.get("type", DeploymentStrategyType.ROLLING_UPDATE))
        except ValueError as exc:
            raise ValidationError(f"unknown strategy type {data.get('type')!r}", field="spec.strategy.type") from exc
        if strategy_type == DeploymentStrategyType.RECREATE:
            return cls(type=strategy_type, max_surge=0, max_unavailable=0)

        rolling = data.get("rollingUpdate") or {}
        max_surge = _int_or_percent(rolling.get("maxSurge", "25%"), "spec.strategy.rollingUpdate.maxSurge")
        max_unavailable = _int_or_percent(
            rolling.get("maxUnavailable", "25%"), "spec.strategy.rollingUpdate.maxUnavailable"
        )
        if _is_zero(max_surge) and _is_zero(max_unavailable):
            raise ValidationError(
                "maxSurge and maxUnavailable may not both be zero",
                field="spec.strategy.rollingUpdate",
            )
        return cls(type=strategy_type, max_surge=max_surge, max_unavailable=max_unavailable)


@dataclass(frozen=True)
class DeploymentSpec:
    replicas: int
    selector: LabelSelector
    template: PodTemplate
    strategy: DeploymentStrategy = DeploymentStrategy()
    min_ready_seconds: int = 0
    paused: bool = False
    progress_deadline_seconds: int = 600
    revision_history_limit: int = 10

    @classmethod
    def from_dict(cls, spec: dict[str, Any]) -> DeploymentSpec:
        template = PodTemplate.from_dict(spec.get("template"))
        return cls(
            replicas=_non_negative_int(spec.get("replicas", 1), "spec.replicas"),
            selector=_workload_selector(spec, template),
            template=template,
            strategy=DeploymentStrategy.from_dict(spec.get("strategy")),
            min_ready_seconds=_non_negative_int(spec.get("minReadySeconds", 0), "spec.minReadySeconds"),
            paused=bool(spec.get("paused", False)),
            progress_deadline_seconds=_non_negative_int(
                spec.get("progressDeadlineSeconds", 600), "spec.progressDeadlineSeconds"
            ),
            revision_history_limit=_non_negative_int(
                spec.get("revisionHistoryLimit", 10), "spec.revisionHistoryLimit"
            ),
        )


@dataclass(frozen=True)
class VolumeClaimTemplate:
    name: str
    storage_class: str
    access_modes: tuple[str, ...]
    request_bytes: int

    @classmethod
    def from_dict(cls, data: Any, path: str) -> VolumeClaimTemplate:
        if not isinstance(data, dict):
            raise ValidationError(f"{path} must be a mapping", field=path)
        name = (data.get("metadata") or {}).get("name") or data.get("name")
        if not name:
            raise ValidationError(f"{path}.metadata.name is required", field=path)
        claim = PersistentVolumeClaimRequest.from_dict(data.get("spec") or {}, f"{path}.spec")
        return cls(
            name=str(name),
            storage_class=claim.storage_class,
            access_modes=claim.access_modes,
            request_bytes=claim.request_bytes,
        )

    def claim_spec(self) -> dict[str, Any]:
        return {
            "storageClassName": self.storage_class,
            "accessModes": list(self.access_modes),
            "resources": {"requests": {"storage": str(self.request_bytes)}},
        }


@dataclass(frozen=True)
class PersistentVolumeClaimRequest:
    storage_class: str
    access_modes: tuple[str, ...]
    request_bytes: int
    volume_name: str = ""

    @classmethod
    def from_dict(cls, spec: dict[str, Any], path: str = "spec") -> PersistentVolumeClaimRequest:
        access_modes = spec.get("accessModes") or ["ReadWriteOnce"]
        if not isinstance(access_modes, list):
            raise ValidationError(f"{path}.accessModes must be a list", field=f"{path}.accessModes")
        requests = (spec.get("resources") or {}).get("requests") or {}
        storage = requests.get("storage", spec.get("size"))
        if storage is None:
            raise ValidationError(f"{path}.resources.requests.storage is required", field=path)
        return cls(
            storage_class=str(spec.get("storageClassName", "") or ""),
            access_modes=tuple(sorted(str(m) for m in access_modes)),
            request_bytes=parse_bytes(storage),
            volume_name=str(spec.get("volumeName", "") or ""),
        )


class PodManagementPolicy(StrEnum):
    ORDERED_READY = "OrderedReady"
    PARALLEL = "Parallel"


class StatefulSetUpdateStrategy(StrEnum):
    ROLLING_UPDATE = "RollingUpdate"
    ON_DELETE = "OnDelete"


class ClaimRetention(StrEnum):
    RETAIN = "Retain"
    DELETE = "Delete"


@dataclass(frozen=True)
class StatefulSetSpec:
    service_name: str
    replicas: int
    selector: LabelSelector
    template: PodTemplate
    volume_claim_templates: tuple[VolumeClaimTemplate, ...] = ()
    pod_management_policy: PodManagementPolicy = PodManagementPolicy.ORDERED_READY
    update_strategy: StatefulSetUpdateStrategy = StatefulSetUpdateStrategy.ROLLING_UPDATE
    partition: int = 0
    claim_retention: ClaimRetention = ClaimRetention.RETAIN
    min_ready_seconds: int = 0

    @classmethod
    def from_dict(cls, spec: dict[str, Any]) -> StatefulSetSpec:
        service_name = spec.get("serviceName")
        if not service_name:
            raise ValidationError("spec.serviceName is required", field="spec.serviceName")
        template = PodTemplate.from_dict(spec.get("template"))

        raw_templates = spec.get("volumeClaimTemplates")
        if raw_templates is None and spec.get("volumeClaimTemplate") is not None:
            raw_templates = [spec["volumeClaimTemplate"]]
        claims = tuple(
            VolumeClaimTemplate.from_dict(raw, f"spec.volumeClaimTemplates[{idx}]")
            for idx, raw in enumerate(raw_templates or [])
        )

        update = spec.get("updateStrategy") or {}
        retention = spec.get("persistentVolumeClaimRetentionPolicy") or {}
        try:
            policy = PodManagementPolicy(spec.get("podManagementPolicy", PodManagementPolicy.ORDERED_READY))
            update_type = StatefulSetUpdateStrategy(update.get("type", StatefulSetUpdateStrategy.ROLLING_UPDATE))
            claim_retention = ClaimRetention(retention.get("whenDeleted", ClaimRetention.RETAIN))
        except ValueError as exc:
            raise ValidationError(f"invalid StatefulSet policy: {exc}", field="spec") from exc

        return cls(
            service_name=str(service_name),
            replicas=_non_negative_int(spec.get("replicas", 1), "spec.replicas"),
            selector=_workload_selector(spec, template),
            template=template,
            volume_claim_templates=claims,
            pod_management_policy=policy,
            update_strategy=update_type,
            partition=_non_negative_int(
                (update.get("rollingUpdate") or {}).get("partition", 0), "spec.updateStrategy.rollingUpdate.partition"
            ),
            claim_retention=claim_retention,
            min_ready_seconds=_non_negative_int(spec.get("minReadySeconds", 0), "spec.minReadySeconds"),
        )


@dataclass(frozen=True)
class ServiceSpec:
    selector: LabelSelector

    @classmethod
    def from_dict(cls, spec: dict[str, Any]) -> ServiceSpec:
        raw = spec.get("selector")
        if raw is None:
            return cls(selector=LabelSelector.nothing())
        return cls(selector=LabelSelector.from_dict(raw))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _workload_selector(spec: dict[str, Any], template: PodTemplate) -> LabelSelector:
    raw = spec.get("selector")
    if raw is None:
        raise ValidationError("spec.selector is required", field="spec.selector")
    selector = LabelSelector.from_dict(raw)
    if selector.empty:
        raise ValidationError("spec.selector must not be empty", field="spec.selector")
    if not selector.matches(template.labels):
        raise ValidationError(
            "spec.selector does not match spec.template.metadata.labels",
            field="spec.selector",
        )
    return selector


def _non_negative_int(value: Any, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{path} must be an integer", field=path)
    if value < 0:
        raise ValidationError(f"{path} must be >= 0", field=path)
    return value


def _int_or_percent(value: Any, path: str) -> int | str:
    if isinstance(value, bool):
        raise ValidationError(f"{path} must be an integer or percentage", field=path)
    if isinstance(value, int):
        if value < 0:
            raise ValidationError(f"{path} must be >= 0", field=path)
        return value
    if isinstance(value, str) and value.endswith("%"):
        try:
            percent = int(value[:-1])
        except ValueError as exc:
            raise ValidationError(f"{path} has invalid percentage {value!r}", field=path) from exc
        if percent < 0:
            raise ValidationError(f"{path} must be >= 0%", field=path)
        return value
    raise ValidationError(f"{path} must be an integer or percentage", field=path)


def _is_zero(value: int | str) -> bool:
    if isinstance(value, int):
        return value == 0
    return int(value[:-1]) == 0


def _resolve_int_or_percent(value: int | str, total: int, round_up: bool) -> int:
    if isinstance(value, int):
        return value
    scaled = int(value[:-1]) * total / 100
    return math.ceil(scaled) if round_up else math.floor(scaled)


def _weight(raw: Any, path: str) -> int:
    if not isinstance(raw, dict):
        raise ValidationError(f"{path} must be a mapping", field=path)
    weight = raw.get("weight", 1)
    if isinstance(weight, bool) or not isinstance(weight, int) or not 1 <= weight <= 100:
        raise ValidationError(f"{path}.weight must be an integer in 1..100", field=path)
    return weight


def _parse_node_term(raw: Any, path: str) -> NodeSelectorTerm:
    if not isinstance(raw, dict):
        raise ValidationError(f"{path} must be a mapping", field=path)
    requirements: list[NodeSelectorRequirement] = []
    for idx, expr in enumerate(raw.get("matchExpressions") or []):
        expr_path = f"{path}.matchExpressions[{idx}]"
        if not isinstance(expr, dict) or not expr.get("key"):
            raise ValidationError(f"{expr_path}.key is required", field=expr_path)
        try:
            operator = NodeSelectorOperator(expr.get("operator", ""))
        except ValueError as exc:
            raise ValidationError(f"{expr_path}.operator {expr.get('operator')!r} is not supported") from exc
        values = tuple(str(v) for v in (expr.get("values") or []))
        if operator in (NodeSelectorOperator.GT, NodeSelectorOperator.LT) and len(values) != 1:
            raise ValidationError(f"{expr_path}.values must hold exactly one integer", field=expr_path)
        requirements.append(NodeSelectorRequirement(key=str(expr["key"]), operator=operator, values=values))
    return NodeSelectorTerm(requirements=tuple(requirements))


def _parse_pod_term(raw: Any, path: str) -> PodAffinityTerm:
    if not isinstance(raw, dict):
        raise ValidationError(f"{path} must be a mapping", field=path)
    topology_key = raw.get("topologyKey")
    if not topology_key:
        raise ValidationError(f"{path}.topologyKey is required", field=path)
    return PodAffinityTerm(
        selector=LabelSelector.from_dict(raw.get("labelSelector") or {}),
        topology_key=str(topology_key),
    )
