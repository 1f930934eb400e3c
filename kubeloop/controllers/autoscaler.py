"""HorizontalPodAutoscaler controller.

Every ``autoscaler.sync_period_seconds`` each autoscaler reads its metrics,
asks the :class:`ReplicaRecommender` for a replica count and writes it into
the scale target's ``spec.replicas``. Metrics that cannot be read are
skipped; with none left, the target is not touched and ``ScalingActive``
turns False.

Resource metrics with a ``Utilization`` target are observed as average
usage (cpu cores, memory bytes) and converted into a percentage of the
average per-Pod request taken from the target's Pod template.
"""

from __future__ import annotations

import time
from datetime import UTC, datetime
from typing import Any

from kubeloop.autoscaling.recommender import MetricValue, Recommendation, ReplicaRecommender
from kubeloop.controllers.base import Clock, Controller, ReconcileContext
from kubeloop.controllers.children import write_status
from kubeloop.errors import ValidationError
from kubeloop.interfaces import MetricsSource
from kubeloop.models.autoscaling import HPASpec, MetricSourceType, MetricSpec, MetricTargetType
from kubeloop.models.config import AutoscalerConfig, ControllerConfig
from kubeloop.models.objects import Kind, KubeObject, ObjectKey, set_condition
from kubeloop.models.workloads import PodSchedulingSpec
from kubeloop.observability.metrics import autoscaler_desired_replicas, autoscaler_scale_events_total
from kubeloop.store.object_store import ObjectStore
from kubeloop.store.retry import retry_on_conflict
from kubeloop.watch.bus import WatchBus


def average_request(target: KubeObject, resource: str) -> float | None:
    """Per-Pod request of *resource* from the target's template (cores / bytes)."""
    template_spec = (target.spec.get("template") or {}).get("spec")
    if not isinstance(template_spec, dict):
        return None
    try:
        requests = PodSchedulingSpec.from_pod_spec(template_spec).requests
    except ValidationError:
        return None
    if resource == "cpu":
        value = requests.cpu_millis / 1000
    elif resource == "memory":
        value = float(requests.memory_bytes)
    else:
        return None
    return value if value > 0 else None


class HorizontalPodAutoscalerController(Controller):
    name = "autoscaler"
    kind = Kind.HORIZONTAL_POD_AUTOSCALER

    def __init__(
        self,
        store: ObjectStore,
        bus: WatchBus,
        metrics_source: MetricsSource,
        config: AutoscalerConfig | None = None,
        controller_config: ControllerConfig | None = None,
        clock: Clock = time.time,
    ) -> None:
        super().__init__(store, bus, controller_config, clock)
        self._metrics_source = metrics_source
        self._autoscaler_config = config or AutoscalerConfig()
        self._recommender = ReplicaRecommender(tolerance=self._autoscaler_config.tolerance)

    @property
    def recommender(self) -> ReplicaRecommender:
        return self._recommender

    async def reconcile(self, obj: KubeObject, ctx: ReconcileContext) -> None:
        ctx.requeue(self._autoscaler_config.sync_period_seconds)
        if obj.terminating:
            return
        spec = HPASpec.from_dict(obj.spec, default_scale_down_window=self._autoscaler_config.downscale_window_seconds)
        ref = spec.target_ref
        target = self._store.try_get(ref.kind, obj.namespace, ref.name)
        if target is None:
            ctx.log.info("scale_target_missing", target=f"{ref.kind}/{ref.name}")

            def _missing(status: dict[str, Any]) -> None:
                set_condition(status, "AbleToScale", "False", "FailedGetScale", f"{ref.kind} {ref.name} not found")

            await write_status(self._store, obj, _missing)
            return

        current = int(target.spec.get("replicas", 1))
        if current == 0:
            def _disabled(status: dict[str, Any]) -> None:
                status["currentReplicas"] = 0
                status["desiredReplicas"] = 0
                set_condition(status, "AbleToScale", "True", "ReadyForNewScale", "")
                set_condition(status, "ScalingActive", "False", "ScalingDisabled", "scaling is disabled since the replica count of the target is zero")

            await write_status(self._store, obj, _disabled)
            return

        values = [await self._observe(target, metric, obj.namespace, ctx) for metric in spec.metrics]
        recommendation = self._recommender.recommend(obj.key, spec, current, values, ctx.now)
        desired = recommendation.desired_replicas

        scaled = False
        if recommendation.changed:
            scaled = await self._scale(target, desired)
            if scaled:
                self._recommender.record_scale(obj.key, current, desired, ctx.now)
                direction = "up" if desired > current else "down"
                autoscaler_scale_events_total.labels(direction=direction).inc()
                ctx.log.info(
                    "target_scaled",
                    target=f"{ref.kind}/{ref.name}",
                    replicas=desired,
                    previous=current,
                    reason=recommendation.reason,
                )
        autoscaler_desired_replicas.labels(namespace=obj.namespace, name=obj.name).set(desired)

        await self._update_status(obj, spec, current, recommendation, values, scaled, ctx)

    async def on_missing(self, key: ObjectKey) -> None:
        self._recommender.forget(key)
        try:
            autoscaler_desired_replicas.remove(key.namespace, key.name)
        except KeyError:
            pass

    async def _observe(self, target: KubeObject, metric: MetricSpec, namespace: str, ctx: ReconcileContext) -> MetricValue:
        try:
            raw = await self._metrics_source.get_metric(target, metric.name, namespace)
        except Exception as exc:
            ctx.log.warning("metric_read_failed", metric=metric.name, error=str(exc))
            return MetricValue(metric, None)
        if raw is None:
            return MetricValue(metric, None)
        if metric.target_type == MetricTargetType.UTILIZATION:
            request = average_request(target, metric.name)
            if request is None:
                ctx.log.warning("metric_missing_request", metric=metric.name)
                return MetricValue(metric, None)
            return MetricValue(metric, raw / request * 100)
        return MetricValue(metric, raw)

    async def _scale(self, target: KubeObject, replicas: int) -> bool:
        def _mutate(current: KubeObject) -> bool:
            if int(current.spec.get("replicas", 1)) == replicas:
                return False
            current.spec["replicas"] = replicas
            return True

        return await retry_on_conflict(self._store, target.key, _mutate) is not None

    async def _update_status(
        self,
        hpa: KubeObject,
        spec: HPASpec,
        current: int,
        recommendation: Recommendation,
        values: list[MetricValue],
        scaled: bool,
        ctx: ReconcileContext,
    ) -> None:
        desired = recommendation.desired_replicas

        def _apply(status: dict[str, Any]) -> None:
            status["currentReplicas"] = current
            status["desiredReplicas"] = desired
            status["currentMetrics"] = [_metric_status(v) for v in values if v.value is not None]
            status["observedGeneration"] = hpa.generation
            if scaled:
                status["lastScaleTime"] = datetime.fromtimestamp(ctx.now, tz=UTC).isoformat()
                set_condition(status, "AbleToScale", "True", "SucceededRescale", f"new size: {desired}")
            else:
                set_condition(status, "AbleToScale", "True", "ReadyForNewScale", "recommended size matches current size")

            if recommendation.metrics_available:
                set_condition(status, "ScalingActive", "True", "ValidMetricFound", "the autoscaler was able to compute a replica count")
            else:
                set_condition(status, "ScalingActive", "False", "FailedGetMetrics", "no metrics available")

            if recommendation.limited:
                reason = "TooManyReplicas" if desired >= spec.max_replicas else "TooFewReplicas"
                if recommendation.reason.startswith("rate limited"):
                    reason = "ScaleRateLimited"
                set_condition(status, "ScalingLimited", "True", reason, recommendation.reason)
            else:
                set_condition(status, "ScalingLimited", "False", "DesiredWithinRange", "the desired count is within the acceptable range")

        await write_status(self._store, hpa, _apply)


def _metric_status(value: MetricValue) -> dict[str, Any]:
    metric = value.spec
    current: dict[str, Any]
    if metric.target_type == MetricTargetType.UTILIZATION:
        current = {"averageUtilization": round(value.value or 0.0)}
    elif metric.target_type == MetricTargetType.AVERAGE_VALUE:
        current = {"averageValue": value.value}
    else:
        current = {"value": value.value}
    body_key = "resource" if metric.source == MetricSourceType.RESOURCE else metric.source.value.lower()
    return {"type": str(metric.source), body_key: {"name": metric.name, "current": current}}
