"""Typed views over Node, PersistentVolume and PersistentVolumeClaim specs."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from kubeloop.errors import ValidationError
from kubeloop.models.quantity import parse_bytes
from kubeloop.models.workloads import PersistentVolumeClaimRequest, ResourceRequests

_TAINT_EFFECTS: frozenset[str] = frozenset({"NoSchedule", "PreferNoSchedule", "NoExecute"})


@dataclass(frozen=True)
class Taint:
    key: str
    value: str = ""
    effect: str = "NoSchedule"


@dataclass(frozen=True)
class NodeSpec:
    allocatable: ResourceRequests
    taints: tuple[Taint, ...] = ()
    unschedulable: bool = False

    @classmethod
    def from_dict(cls, spec: dict[str, Any]) -> NodeSpec:
        allocatable = spec.get("allocatable")
        if not isinstance(allocatable, dict):
            raise ValidationError("spec.allocatable is required", field="spec.allocatable")
        taints: list[Taint] = []
        for idx, raw in enumerate(spec.get("taints") or []):
            if not isinstance(raw, dict) or not raw.get("key"):
                raise ValidationError(f"spec.taints[{idx}].key is required", field="spec.taints")
            effect = str(raw.get("effect", "NoSchedule"))
            if effect not in _TAINT_EFFECTS:
                raise ValidationError(f"spec.taints[{idx}].effect {effect!r} is not supported", field="spec.taints")
            taints.append(Taint(key=str(raw["key"]), value=str(raw.get("value", "")), effect=effect))
        return cls(
            allocatable=ResourceRequests.from_resource_map(allocatable, "spec.allocatable"),
            taints=tuple(taints),
            unschedulable=bool(spec.get("unschedulable", False)),
        )


class ReclaimPolicy(StrEnum):
    RETAIN = "Retain"
    DELETE = "Delete"


class VolumePhase(StrEnum):
    AVAILABLE = "Available"
    BOUND = "Bound"
    RELEASED = "Released"
    PENDING = "Pending"


@dataclass(frozen=True)
class ClaimRef:
    namespace: str
    name: str
    uid: str

    def to_dict(self) -> dict[str, str]:
        return {"namespace": self.namespace, "name": self.name, "uid": self.uid}


@dataclass(frozen=True)
class PersistentVolumeSpec:
    capacity_bytes: int
    storage_class: str
    access_modes: tuple[str, ...]
    reclaim_policy: ReclaimPolicy = ReclaimPolicy.RETAIN
    claim_ref: ClaimRef | None = None

    @classmethod
    def from_dict(cls, spec: dict[str, Any]) -> PersistentVolumeSpec:
        capacity = (spec.get("capacity") or {}).get("storage")
        if capacity is None:
            raise ValidationError("spec.capacity.storage is required", field="spec.capacity")
        try:
            reclaim = ReclaimPolicy(spec.get("persistentVolumeReclaimPolicy", ReclaimPolicy.RETAIN))
        except ValueError as exc:
            raise ValidationError(
                "spec.persistentVolumeReclaimPolicy must be Retain or Delete",
                field="spec.persistentVolumeReclaimPolicy",
            ) from exc
        raw_ref = spec.get("claimRef")
        claim_ref = None
        if isinstance(raw_ref, dict) and raw_ref.get("name"):
            claim_ref = ClaimRef(
                namespace=str(raw_ref.get("namespace", "default")),
                name=str(raw_ref["name"]),
                uid=str(raw_ref.get("uid", "")),
            )
        return cls(
            capacity_bytes=parse_bytes(capacity),
            storage_class=str(spec.get("storageClassName", "") or ""),
            access_modes=tuple(sorted(str(m) for m in (spec.get("accessModes") or ["ReadWriteOnce"]))),
            reclaim_policy=reclaim,
            claim_ref=claim_ref,
        )

    def satisfies(self, claim: PersistentVolumeClaimRequest) -> bool:
        """True when this volume meets or exceeds the claim's request."""
        return (
            self.storage_class == claim.storage_class
            and set(claim.access_modes).issubset(self.access_modes)
            and self.capacity_bytes >= claim.request_bytes
        )


def parse_claim(spec: dict[str, Any]) -> PersistentVolumeClaimRequest:
    """Parse a PersistentVolumeClaim spec."""
    return PersistentVolumeClaimRequest.from_dict(spec)
