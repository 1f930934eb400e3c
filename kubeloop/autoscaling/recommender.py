"""Replica recommendation for the HorizontalPodAutoscaler controller.

For every metric the recommendation is::

    desired = ceil(current_replicas * current_value / target_value)

The maximum across metrics is clamped to ``[minReplicas, maxReplicas]``,
stabilised (scale-down takes the maximum recommendation seen within the
trailing window) and rate limited by the scaling policies.
"""

from __future__ import annotations

import math
from collections import deque
from dataclasses import dataclass, field

from kubeloop.models.autoscaling import (
    HPASpec,
    MetricSpec,
    ScalingPolicyType,
    ScalingRules,
    SelectPolicy,
)
from kubeloop.models.objects import ObjectKey

_DEFAULT_TOLERANCE: float = 0.1
# Absorbs float error from unit conversion before rounding up
_CEIL_EPSILON: float = 1e-9


@dataclass(frozen=True)
class MetricValue:
    """The observed value of one metric, in the units of its target."""

    spec: MetricSpec
    value: float | None


@dataclass(frozen=True)
class Recommendation:
    current_replicas: int
    desired_replicas: int
    metrics_available: bool = True
    limited: bool = False
    reason: str = ""
    per_metric: dict[str, int] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return self.desired_replicas != self.current_replicas


@dataclass
class _History:
    recommendations: deque[tuple[float, int]] = field(default_factory=deque)
    scale_events: deque[tuple[float, int]] = field(default_factory=deque)


def metric_replicas(current_replicas: int, value: float, target: float, tolerance: float = _DEFAULT_TOLERANCE) -> int:
    """Replica count one metric asks for; *current_replicas* inside the tolerance band."""
    ratio = value / target
    if abs(ratio - 1.0) <= tolerance:
        return current_replicas
    return math.ceil(current_replicas * ratio - _CEIL_EPSILON)


class ReplicaRecommender:
    """Computes stabilised, rate-limited recommendations per autoscaler.

    Keeps, per autoscaler key, the recent raw recommendations (for the
    stabilisation windows) and the applied scale events (for the policy
    periods). State is in-memory only.
    """

    def __init__(self, tolerance: float = _DEFAULT_TOLERANCE) -> None:
        self._tolerance = tolerance
        self._history: dict[ObjectKey, _History] = {}

    def recommend(
        self,
        key: ObjectKey,
        spec: HPASpec,
        current_replicas: int,
        metrics: list[MetricValue],
        now: float,
    ) -> Recommendation:
        per_metric: dict[str, int] = {}
        for metric in metrics:
            if metric.value is None:
                continue
            per_metric[metric.spec.name] = metric_replicas(
                current_replicas, metric.value, metric.spec.target_value, self._tolerance
            )

        if not per_metric:
            return Recommendation(
                current_replicas=current_replicas,
                desired_replicas=current_replicas,
                metrics_available=False,
                reason="no metrics available",
            )

        raw = max(per_metric.values())
        clamped = min(max(raw, spec.min_replicas), spec.max_replicas)
        limited = clamped != raw
        reason = "recommended"
        if limited:
            reason = "clamped to maxReplicas" if raw > spec.max_replicas else "clamped to minReplicas"

        history = self._history.setdefault(key, _History())
        history.recommendations.append((now, clamped))
        self._trim(history, spec, now)

        stabilised = self._stabilise(history, spec, current_replicas, clamped, now)
        desired = self._rate_limit(history, spec, current_replicas, stabilised, now)
        if desired != stabilised:
            limited = True
            reason = "rate limited by scaling policy"
        return Recommendation(
            current_replicas=current_replicas,
            desired_replicas=desired,
            limited=limited,
            reason=reason,
            per_metric=per_metric,
        )

    def record_scale(self, key: ObjectKey, from_replicas: int, to_replicas: int, now: float) -> None:
        """Remember an applied scale change for policy rate limiting."""
        if from_replicas == to_replicas:
            return
        history = self._history.setdefault(key, _History())
        history.scale_events.append((now, to_replicas - from_replicas))

    def forget(self, key: ObjectKey) -> None:
        self._history.pop(key, None)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _stabilise(self, history: _History, spec: HPASpec, current: int, recommended: int, now: float) -> int:
        up_window = spec.scale_up.stabilization_window_seconds
        down_window = spec.scale_down.stabilization_window_seconds
        up = min(v for t, v in history.recommendations if t >= now - up_window) if up_window else recommended
        down = max(v for t, v in history.recommendations if t >= now - down_window) if down_window else recommended

        result = current
        if result < up:
            result = up
        if result > down:
            result = down
        return result

    def _rate_limit(self, history: _History, spec: HPASpec, current: int, desired: int, now: float) -> int:
        if desired > current:
            limit = _scale_up_limit(spec.scale_up, history, current, now)
            return min(desired, limit)
        if desired < current:
            limit = _scale_down_limit(spec.scale_down, history, current, now)
            return max(desired, limit)
        return desired

    def _trim(self, history: _History, spec: HPASpec, now: float) -> None:
        keep = max(
            spec.scale_up.stabilization_window_seconds,
            spec.scale_down.stabilization_window_seconds,
        )
        while len(history.recommendations) > 1 and history.recommendations[0][0] < now - keep:
            history.recommendations.popleft()
        longest_period = max(
            (p.period_seconds for p in (*spec.scale_up.policies, *spec.scale_down.policies)),
            default=0,
        )
        while history.scale_events and history.scale_events[0][0] < now - longest_period:
            history.scale_events.popleft()


def _scale_up_limit(rules: ScalingRules, history: _History, current: int, now: float) -> int:
    if rules.select_policy == SelectPolicy.DISABLED:
        return current
    limits: list[int] = []
    for policy in rules.policies:
        added = sum(d for t, d in history.scale_events if d > 0 and t > now - policy.period_seconds)
        period_start = current - added
        if policy.type == ScalingPolicyType.PODS:
            limits.append(period_start + policy.value)
        else:
            limits.append(math.ceil(period_start * (1 + policy.value / 100)))
    if not limits:
        return current
    return max(limits) if rules.select_policy == SelectPolicy.MAX else min(limits)


def _scale_down_limit(rules: ScalingRules, history: _History, current: int, now: float) -> int:
    if rules.select_policy == SelectPolicy.DISABLED:
        return current
    limits: list[int] = []
    for policy in rules.policies:
        removed = sum(-d for t, d in history.scale_events if d < 0 and t > now - policy.period_seconds)
        period_start = current + removed
        if policy.type == ScalingPolicyType.PODS:
            limits.append(period_start - policy.value)
        else:
            limits.append(math.floor(period_start * (1 - policy.value / 100)))
    if not limits:
        return current
    # Max selects the largest change, which for scale-down is the lowest floor
    return min(limits) if rules.select_policy == SelectPolicy.MAX else max(limits)
