"""In-process metrics sources for the autoscaler."""

from __future__ import annotations

from kubeloop.errors import ValidationError
from kubeloop.models.objects import Kind, KubeObject
from kubeloop.models.quantity import parse_quantity
from kubeloop.models.selectors import LabelSelector
from kubeloop.observability.logging import get_logger
from kubeloop.store.object_store import ObjectStore

_logger = get_logger("metrics_source")

# Annotation prefix for externally pushed metric values on the scale target
EXTERNAL_METRIC_ANNOTATION_PREFIX: str = "metrics.kubeloop.io/"


class PodStatusMetricsSource:
    """Averages ``status.usage[<metric>]`` reported by the target's Pods.

    Node agents write usage samples into the Pod status (``{"cpu": "140m"}``);
    values are parsed as quantities, so cpu comes out in cores. External
    metrics are read from ``metrics.kubeloop.io/<name>`` annotations on
    the scale target.
    """

    def __init__(self, store: ObjectStore) -> None:
        self._store = store

    async def get_metric(self, target: KubeObject, metric_name: str, namespace: str) -> float | None:
        external = target.annotations.get(EXTERNAL_METRIC_ANNOTATION_PREFIX + metric_name)
        if external is not None:
            return _quantity_or_none(external, metric_name)

        try:
            selector = LabelSelector.from_dict(target.spec.get("selector"))
        except ValidationError:
            return None
        samples: list[float] = []
        for pod in self._store.list(Kind.POD, namespace=namespace, selector=selector):
            if pod.terminating:
                continue
            raw = (pod.status.get("usage") or {}).get(metric_name)
            if raw is None:
                continue
            value = _quantity_or_none(raw, metric_name)
            if value is not None:
                samples.append(value)
        if not samples:
            return None
        return sum(samples) / len(samples)


class StaticMetricsSource:
    """Fixed metric values, keyed by metric name or ``<target>/<metric>``."""

    def __init__(self, values: dict[str, float] | None = None) -> None:
        self._values: dict[str, float] = dict(values or {})

    def set(self, metric_name: str, value: float | None, target: str = "") -> None:
        key = f"{target}/{metric_name}" if target else metric_name
        if value is None:
            self._values.pop(key, None)
        else:
            self._values[key] = value

    async def get_metric(self, target: KubeObject, metric_name: str, namespace: str) -> float | None:
        specific = self._values.get(f"{target.name}/{metric_name}")
        if specific is not None:
            return specific
        return self._values.get(metric_name)


def _quantity_or_none(raw: object, metric_name: str) -> float | None:
    try:
        return parse_quantity(str(raw))
    except ValidationError:
        _logger.warning("metric_value_unparseable", metric=metric_name, value=str(raw))
        return None
