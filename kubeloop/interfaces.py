"""Seams to the collaborators that live outside the control plane."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from kubeloop.models.objects import KubeObject


@dataclass(frozen=True)
class ProbeResult:
    """What the node agent reports about one Pod."""

    running: bool
    ready: bool
    terminated: bool = False


@runtime_checkable
class ReadinessProbe(Protocol):
    async def probe(self, pod: KubeObject) -> ProbeResult | None:
        """Return the Pod's current state, or None if unknown."""
        ...


@runtime_checkable
class StorageProvisioner(Protocol):
    async def provision(self, claim: KubeObject, volumes: list[KubeObject]) -> KubeObject | None:
        """Pick (or create) a PersistentVolume for *claim*; None leaves it Pending."""
        ...


@runtime_checkable
class MetricsSource(Protocol):
    async def get_metric(self, target: KubeObject, metric_name: str, namespace: str) -> float | None:
        """Current value of *metric_name* for the scale target, or None if unavailable.

        Resource metrics are the average per-Pod usage (cpu in cores, memory
        in bytes); Pods metrics the per-Pod average; External metrics the
        raw value.
        """
        ...
