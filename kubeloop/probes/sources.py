"""In-process readiness probe collaborators."""

from __future__ import annotations

from kubeloop.interfaces import ProbeResult
from kubeloop.models.objects import KubeObject


class StatusReportedProbe:
    """Reads the ``status.probe`` block written by node agents.

    Example report::

        {"running": true, "ready": true, "terminated": false}

    Pods without a report are unknown (``None``) and left untouched.
    """

    async def probe(self, pod: KubeObject) -> ProbeResult | None:
        report = pod.status.get("probe")
        if not isinstance(report, dict):
            return None
        return ProbeResult(
            running=bool(report.get("running", False)),
            ready=bool(report.get("ready", False)),
            terminated=bool(report.get("terminated", False)),
        )


class SimulatedProbe:
    """Node agent stand-in: bound Pods run and become ready at once, and
    terminating Pods stop immediately. Used by ``kubeloop run --simulate``.
    """

    def __init__(self, ready: bool = True) -> None:
        self.ready = ready
        self._overrides: dict[str, ProbeResult] = {}

    def set_result(self, pod_name: str, result: ProbeResult) -> None:
        self._overrides[pod_name] = result

    async def probe(self, pod: KubeObject) -> ProbeResult | None:
        if pod.terminating:
            return ProbeResult(running=False, ready=False, terminated=True)
        override = self._overrides.get(pod.name)
        if override is not None:
            return override
        return ProbeResult(running=True, ready=self.ready)
