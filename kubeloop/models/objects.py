"""Object envelope, identity and status-condition data structures."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, NamedTuple


class Kind(StrEnum):
    """Object kinds understood by the controllers."""

    POD = "Pod"
    NODE = "Node"
    REPLICA_SET = "ReplicaSet"
    DEPLOYMENT = "Deployment"
    STATEFUL_SET = "StatefulSet"
    PERSISTENT_VOLUME_CLAIM = "PersistentVolumeClaim"
    PERSISTENT_VOLUME = "PersistentVolume"
    HORIZONTAL_POD_AUTOSCALER = "HorizontalPodAutoscaler"
    SERVICE = "Service"
    ENDPOINTS = "Endpoints"


# Kinds stored with an empty namespace
CLUSTER_SCOPED_KINDS: frozenset[str] = frozenset({Kind.NODE, Kind.PERSISTENT_VOLUME})


class EventType(StrEnum):
    """Watch event types."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


class PodPhase(StrEnum):
    """Pod lifecycle phase."""

    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    UNKNOWN = "Unknown"


class ObjectKey(NamedTuple):
    """Unique identity of an object in the store."""

    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind}/{self.namespace}/{self.name}"
        return f"{self.kind}/{self.name}"


@dataclass(frozen=True)
class OwnerReference:
    """Parent pointer from a child object to the object that manages it."""

    kind: str
    name: str
    uid: str
    controller: bool = True
    block_owner_deletion: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "name": self.name,
            "uid": self.uid,
            "controller": self.controller,
            "blockOwnerDeletion": self.block_owner_deletion,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OwnerReference:
        return cls(
            kind=str(data.get("kind", "")),
            name=str(data.get("name", "")),
            uid=str(data.get("uid", "")),
            controller=bool(data.get("controller", True)),
            block_owner_deletion=bool(data.get("blockOwnerDeletion", True)),
        )


@dataclass(frozen=True)
class Condition:
    """Human-readable status condition reflecting the latest reconcile outcome."""

    type: str
    status: str
    reason: str = ""
    message: str = ""
    last_transition_time: str = ""

    def to_dict(self) -> dict[str, str]:
        return {
            "type": self.type,
            "status": self.status,
            "reason": self.reason,
            "message": self.message,
            "lastTransitionTime": self.last_transition_time,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Condition:
        return cls(
            type=str(data.get("type", "")),
            status=str(data.get("status", "Unknown")),
            reason=str(data.get("reason", "")),
            message=str(data.get("message", "")),
            last_transition_time=str(data.get("lastTransitionTime", "")),
        )


@dataclass
class KubeObject:
    """Generic envelope for every desired-state and observed-state object.

    The store hands out deep copies; mutating a returned object never
    changes stored state until it is written back.
    """

    kind: str
    name: str
    namespace: str = "default"
    spec: dict[str, Any] = field(default_factory=dict)
    status: dict[str, Any] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    owner_references: list[OwnerReference] = field(default_factory=list)
    finalizers: list[str] = field(default_factory=list)
    uid: str = ""
    resource_version: int = 0
    generation: int = 0
    creation_timestamp: datetime | None = None
    deletion_timestamp: datetime | None = None

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(self.kind, self.namespace, self.name)

    @property
    def terminating(self) -> bool:
        """True once deletion has been requested but finalizers are pending."""
        return self.deletion_timestamp is not None

    def copy(self) -> KubeObject:
        return copy.deepcopy(self)

    def controller_ref(self) -> OwnerReference | None:
        """Return the managing owner reference, if any."""
        for ref in self.owner_references:
            if ref.controller:
                return ref
        return None

    def is_controlled_by(self, owner: KubeObject) -> bool:
        ref = self.controller_ref()
        return ref is not None and ref.uid == owner.uid and ref.kind == owner.kind

    def to_dict(self) -> dict[str, Any]:
        """Render the object as a manifest-style document."""
        metadata: dict[str, Any] = {
            "name": self.name,
            "namespace": self.namespace,
            "uid": self.uid,
            "resourceVersion": str(self.resource_version),
            "generation": self.generation,
            "labels": dict(self.labels),
            "annotations": dict(self.annotations),
            "ownerReferences": [ref.to_dict() for ref in self.owner_references],
            "finalizers": list(self.finalizers),
            "creationTimestamp": _iso(self.creation_timestamp),
            "deletionTimestamp": _iso(self.deletion_timestamp),
        }
        return {
            "kind": self.kind,
            "metadata": metadata,
            "spec": copy.deepcopy(self.spec),
            "status": copy.deepcopy(self.status),
        }

    @classmethod
    def from_dict(cls, document: dict[str, Any]) -> KubeObject:
        """Inverse of :meth:`to_dict`. Performs no validation."""
        metadata = document.get("metadata") or {}
        return cls(
            kind=str(document.get("kind", "")),
            name=str(metadata.get("name", "")),
            namespace=str(metadata.get("namespace", "default") or ""),
            spec=copy.deepcopy(document.get("spec") or {}),
            status=copy.deepcopy(document.get("status") or {}),
            labels=dict(metadata.get("labels") or {}),
            annotations=dict(metadata.get("annotations") or {}),
            owner_references=[OwnerReference.from_dict(r) for r in metadata.get("ownerReferences") or []],
            finalizers=list(metadata.get("finalizers") or []),
            uid=str(metadata.get("uid", "") or ""),
            resource_version=int(metadata.get("resourceVersion") or 0),
            generation=int(metadata.get("generation") or 0),
            creation_timestamp=_parse_iso(metadata.get("creationTimestamp")),
            deletion_timestamp=_parse_iso(metadata.get("deletionTimestamp")),
        )


@dataclass(frozen=True)
class WatchEvent:
    """A change notification: the object as it was right after the write."""

    type: EventType
    object: KubeObject
    resource_version: int

    @property
    def key(self) -> ObjectKey:
        return self.object.key


def owner_reference_for(owner: KubeObject, controller: bool = True) -> OwnerReference:
    """Build an owner reference pointing at *owner*."""
    return OwnerReference(kind=owner.kind, name=owner.name, uid=owner.uid, controller=controller)


# ---------------------------------------------------------------------------
# Condition helpers
# ---------------------------------------------------------------------------


def get_condition(status: dict[str, Any], condition_type: str) -> Condition | None:
    """Return the condition of *condition_type* from a status dict, if present."""
    for raw in status.get("conditions", []) or []:
        if isinstance(raw, dict) and raw.get("type") == condition_type:
            return Condition.from_dict(raw)
    return None


def set_condition(
    status: dict[str, Any],
    condition_type: str,
    condition_status: str,
    reason: str = "",
    message: str = "",
    now: datetime | None = None,
) -> bool:
    """Upsert a condition in *status*; returns True if anything changed.

    lastTransitionTime only moves when the condition's status flips.
    """
    timestamp = _iso(now or datetime.now(tz=UTC))
    conditions: list[dict[str, Any]] = list(status.get("conditions", []) or [])
    for idx, raw in enumerate(conditions):
        if raw.get("type") != condition_type:
            continue
        existing = Condition.from_dict(raw)
        if (existing.status, existing.reason, existing.message) == (condition_status, reason, message):
            return False
        transition = existing.last_transition_time
        if existing.status != condition_status:
            transition = timestamp
        conditions[idx] = Condition(condition_type, condition_status, reason, message, transition).to_dict()
        status["conditions"] = conditions
        return True

    conditions.append(Condition(condition_type, condition_status, reason, message, timestamp).to_dict())
    status["conditions"] = conditions
    return True


def remove_condition(status: dict[str, Any], condition_type: str) -> bool:
    """Drop a condition from *status*; returns True if it was present."""
    conditions = status.get("conditions", []) or []
    kept = [c for c in conditions if c.get("type") != condition_type]
    if len(kept) == len(conditions):
        return False
    status["conditions"] = kept
    return True


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_iso(value: Any) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed
