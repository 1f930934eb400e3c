"""Typed view over HorizontalPodAutoscaler specs (autoscaling/v2 layout)."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from kubeloop.errors import ValidationError
from kubeloop.models.objects import Kind
from kubeloop.models.quantity import parse_quantity

SCALABLE_KINDS: frozenset[str] = frozenset({Kind.DEPLOYMENT, Kind.REPLICA_SET, Kind.STATEFUL_SET})

DEFAULT_SCALE_DOWN_WINDOW_SECONDS: int = 300


class MetricSourceType(StrEnum):
    RESOURCE = "Resource"
    PODS = "Pods"
    EXTERNAL = "External"


class MetricTargetType(StrEnum):
    UTILIZATION = "Utilization"
    AVERAGE_VALUE = "AverageValue"
    VALUE = "Value"


class ScalingPolicyType(StrEnum):
    PODS = "Pods"
    PERCENT = "Percent"


class SelectPolicy(StrEnum):
    MAX = "Max"
    MIN = "Min"
    DISABLED = "Disabled"


@dataclass(frozen=True)
class MetricSpec:
    """One metric the autoscaler tracks, and the per-replica target for it."""

    source: MetricSourceType
    name: str
    target_type: MetricTargetType
    target_value: float

    @classmethod
    def from_dict(cls, raw: Any, path: str) -> MetricSpec:
        if not isinstance(raw, dict):
            raise ValidationError(f"{path} must be a mapping", field=path)
        try:
            source = MetricSourceType(raw.get("type", ""))
        except ValueError as exc:
            raise ValidationError(f"{path}.type {raw.get('type')!r} is not supported", field=path) from exc

        body = raw.get(source.value.lower()) or {}
        if source == MetricSourceType.RESOURCE:
            name = body.get("name")
        else:
            name = (body.get("metric") or {}).get("name")
        if not name:
            raise ValidationError(f"{path} metric name is required", field=path)

        target = body.get("target") or {}
        try:
            target_type = MetricTargetType(target.get("type", ""))
        except ValueError as exc:
            raise ValidationError(f"{path}.target.type {target.get('type')!r} is not supported", field=path) from exc

        if target_type == MetricTargetType.UTILIZATION:
            if source != MetricSourceType.RESOURCE:
                raise ValidationError(f"{path}: Utilization targets apply to Resource metrics only", field=path)
            value = target.get("averageUtilization")
        elif target_type == MetricTargetType.AVERAGE_VALUE:
            value = target.get("averageValue")
        else:
            value = target.get("value")
        if value is None:
            raise ValidationError(f"{path}.target value is required for {target_type}", field=path)
        target_value = parse_quantity(value)
        if target_value <= 0:
            raise ValidationError(f"{path}.target must be positive", field=path)
        return cls(source=source, name=str(name), target_type=target_type, target_value=target_value)


@dataclass(frozen=True)
class ScalingPolicy:
    type: ScalingPolicyType
    value: int
    period_seconds: int


@dataclass(frozen=True)
class ScalingRules:
    stabilization_window_seconds: int
    policies: tuple[ScalingPolicy, ...]
    select_policy: SelectPolicy = SelectPolicy.MAX

    @classmethod
    def from_dict(cls, raw: Any, path: str, default: ScalingRules) -> ScalingRules:
        if not raw:
            return default
        if not isinstance(raw, dict):
            raise ValidationError(f"{path} must be a mapping", field=path)
        window = raw.get("stabilizationWindowSeconds", default.stabilization_window_seconds)
        if isinstance(window, bool) or not isinstance(window, int) or not 0 <= window <= 3600:
            raise ValidationError(f"{path}.stabilizationWindowSeconds must be in 0..3600", field=path)
        policies: list[ScalingPolicy] = []
        for idx, item in enumerate(raw.get("policies") or []):
            item_path = f"{path}.policies[{idx}]"
            try:
                policy_type = ScalingPolicyType(item.get("type", ""))
            except (ValueError, AttributeError) as exc:
                raise ValidationError(f"{item_path}.type must be Pods or Percent", field=item_path) from exc
            value = item.get("value")
            period = item.get("periodSeconds")
            if not isinstance(value, int) or value <= 0 or not isinstance(period, int) or not 0 < period <= 1800:
                raise ValidationError(f"{item_path} needs positive value and periodSeconds in 1..1800", field=item_path)
            policies.append(ScalingPolicy(type=policy_type, value=value, period_seconds=period))
        try:
            select = SelectPolicy(raw.get("selectPolicy", SelectPolicy.MAX))
        except ValueError as exc:
            raise ValidationError(f"{path}.selectPolicy is not supported", field=path) from exc
        return cls(
            stabilization_window_seconds=window,
            policies=tuple(policies) or default.policies,
            select_policy=select,
        )


DEFAULT_SCALE_UP_RULES = ScalingRules(
    stabilization_window_seconds=0,
    policies=(
        ScalingPolicy(type=ScalingPolicyType.PERCENT, value=100, period_seconds=15),
        ScalingPolicy(type=ScalingPolicyType.PODS, value=4, period_seconds=15),
    ),
)

DEFAULT_SCALE_DOWN_RULES = ScalingRules(
    stabilization_window_seconds=DEFAULT_SCALE_DOWN_WINDOW_SECONDS,
    policies=(ScalingPolicy(type=ScalingPolicyType.PERCENT, value=100, period_seconds=15),),
)


@dataclass(frozen=True)
class ScaleTargetRef:
    kind: str
    name: str


@dataclass(frozen=True)
class HPASpec:
    target_ref: ScaleTargetRef
    min_replicas: int
    max_replicas: int
    metrics: tuple[MetricSpec, ...]
    scale_up: ScalingRules = DEFAULT_SCALE_UP_RULES
    scale_down: ScalingRules = DEFAULT_SCALE_DOWN_RULES

    @classmethod
    def from_dict(cls, spec: dict[str, Any], default_scale_down_window: int | None = None) -> HPASpec:
        raw_ref = spec.get("scaleTargetRef") or spec.get("targetRef") or {}
        kind = raw_ref.get("kind")
        name = raw_ref.get("name")
        if kind not in SCALABLE_KINDS or not name:
            raise ValidationError(
                "spec.scaleTargetRef must name a Deployment, ReplicaSet or StatefulSet",
                field="spec.scaleTargetRef",
            )

        min_replicas = spec.get("minReplicas", 1)
        max_replicas = spec.get("maxReplicas")
        if isinstance(min_replicas, bool) or not isinstance(min_replicas, int) or min_replicas < 1:
            raise ValidationError("spec.minReplicas must be >= 1", field="spec.minReplicas")
        if isinstance(max_replicas, bool) or not isinstance(max_replicas, int) or max_replicas < min_replicas:
            raise ValidationError("spec.maxReplicas must be >= minReplicas", field="spec.maxReplicas")

        raw_metrics = spec.get("metrics") or []
        if not raw_metrics:
            raise ValidationError("spec.metrics must not be empty", field="spec.metrics")
        metrics = tuple(MetricSpec.from_dict(raw, f"spec.metrics[{idx}]") for idx, raw in enumerate(raw_metrics))

        scale_down_default = DEFAULT_SCALE_DOWN_RULES
        if default_scale_down_window is not None:
            scale_down_default = ScalingRules(
                stabilization_window_seconds=default_scale_down_window,
                policies=DEFAULT_SCALE_DOWN_RULES.policies,
            )
        behavior = spec.get("behavior") or {}
        return cls(
            target_ref=ScaleTargetRef(kind=str(kind), name=str(name)),
            min_replicas=min_replicas,
            max_replicas=max_replicas,
            metrics=metrics,
            scale_up=ScalingRules.from_dict(behavior.get("scaleUp"), "spec.behavior.scaleUp", DEFAULT_SCALE_UP_RULES),
            scale_down=ScalingRules.from_dict(
                behavior.get("scaleDown"), "spec.behavior.scaleDown", scale_down_default
            ),
        )
