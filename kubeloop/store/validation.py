"""Desired-state document validation for the submission path.

Accepts the manifest layout (``kind``, ``metadata.name``, ``spec``) and the
flat envelope layout (``kind``, ``name``, ``namespace``, ``spec``). Known
kinds additionally have their spec parsed by the matching typed view, so a
document the controllers could not interpret is rejected up front.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from typing import Any

from kubeloop.errors import ValidationError
from kubeloop.models.autoscaling import HPASpec
from kubeloop.models.cluster import NodeSpec, PersistentVolumeSpec, parse_claim
from kubeloop.models.objects import CLUSTER_SCOPED_KINDS, Kind, KubeObject, OwnerReference
from kubeloop.models.workloads import (
    DeploymentSpec,
    PodSchedulingSpec,
    ReplicaSetSpec,
    ServiceSpec,
    StatefulSetSpec,
)

# RFC 1123 subdomain, as used for object names
_NAME_RE = re.compile(r"^[a-z0-9]([-a-z0-9.]{0,251}[a-z0-9])?$")


def _validate_pod(spec: dict[str, Any]) -> None:
    if not spec.get("containers"):
        raise ValidationError("spec.containers must not be empty", field="spec.containers")
    PodSchedulingSpec.from_pod_spec(spec)


def _validate_endpoints(spec: dict[str, Any]) -> None:
    if not isinstance(spec.get("addresses", []), list):
        raise ValidationError("spec.addresses must be a list", field="spec.addresses")


_SPEC_VALIDATORS: dict[str, Callable[[dict[str, Any]], object]] = {
    Kind.POD: _validate_pod,
    Kind.NODE: NodeSpec.from_dict,
    Kind.REPLICA_SET: ReplicaSetSpec.from_dict,
    Kind.DEPLOYMENT: DeploymentSpec.from_dict,
    Kind.STATEFUL_SET: StatefulSetSpec.from_dict,
    Kind.PERSISTENT_VOLUME: PersistentVolumeSpec.from_dict,
    Kind.PERSISTENT_VOLUME_CLAIM: parse_claim,
    Kind.HORIZONTAL_POD_AUTOSCALER: HPASpec.from_dict,
    Kind.SERVICE: ServiceSpec.from_dict,
    Kind.ENDPOINTS: _validate_endpoints,
}


def validate_spec(kind: str, spec: dict[str, Any]) -> None:
    """Run the kind-specific validator, if one is registered."""
    validator = _SPEC_VALIDATORS.get(kind)
    if validator is not None:
        validator(spec)


def validate_document(document: Any) -> KubeObject:
    """Validate a submitted document and return it as a :class:`KubeObject`.

    Raises ValidationError naming the first offending field.
    """
    if not isinstance(document, dict):
        raise ValidationError("document must be a mapping")

    kind = document.get("kind")
    if not isinstance(kind, str) or not kind:
        raise ValidationError("kind is required", field="kind")

    metadata = document.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise ValidationError("metadata must be a mapping", field="metadata")

    name = metadata.get("name", document.get("name"))
    if not isinstance(name, str) or not name:
        raise ValidationError("name is required", field="metadata.name")
    if not _NAME_RE.match(name):
        raise ValidationError(f"name {name!r} is not a valid DNS subdomain", field="metadata.name")

    if kind in CLUSTER_SCOPED_KINDS:
        namespace = ""
    else:
        namespace = metadata.get("namespace", document.get("namespace")) or "default"
        if not isinstance(namespace, str) or not _NAME_RE.match(namespace):
            raise ValidationError(f"namespace {namespace!r} is not valid", field="metadata.namespace")

    spec = document.get("spec")
    if not isinstance(spec, dict):
        raise ValidationError("spec is required", field="spec")

    labels = metadata.get("labels", document.get("labels")) or {}
    annotations = metadata.get("annotations") or {}
    if not isinstance(labels, dict) or not isinstance(annotations, dict):
        raise ValidationError("labels and annotations must be mappings", field="metadata.labels")

    raw_refs = metadata.get("ownerReferences", document.get("ownerReferences")) or []
    if not isinstance(raw_refs, list) or not all(isinstance(r, dict) for r in raw_refs):
        raise ValidationError("ownerReferences must be a list of mappings", field="metadata.ownerReferences")
    owner_refs = [OwnerReference.from_dict(r) for r in raw_refs]
    if sum(1 for ref in owner_refs if ref.controller) > 1:
        raise ValidationError("at most one ownerReference may be the controller", field="metadata.ownerReferences")

    validate_spec(kind, spec)

    raw_version = metadata.get("resourceVersion", document.get("resourceVersion")) or 0
    try:
        resource_version = int(raw_version)
    except (TypeError, ValueError) as exc:
        raise ValidationError("resourceVersion must be an integer", field="metadata.resourceVersion") from exc

    return KubeObject(
        kind=kind,
        name=name,
        namespace=namespace,
        spec=spec,
        status=dict(document.get("status") or {}),
        labels={str(k): str(v) for k, v in labels.items()},
        annotations={str(k): str(v) for k, v in annotations.items()},
        owner_references=owner_refs,
        finalizers=[str(f) for f in metadata.get("finalizers") or []],
        resource_version=resource_version,
    )
