"""Helpers shared by controllers that create and account for child objects."""

from __future__ import annotations

import copy
import hashlib
import json
import random
from collections.abc import Callable
from typing import Any

from kubeloop.models.objects import Kind, KubeObject, OwnerReference, PodPhase
from kubeloop.models.workloads import PodTemplate
from kubeloop.store.object_store import ObjectStore
from kubeloop.store.retry import retry_on_conflict

# Same alphabet Kubernetes uses for generated names: no vowels, no ambiguous digits
_SUFFIX_ALPHABET: str = "bcdfghjklmnpqrstvwxz2456789"
_SUFFIX_LENGTH: int = 5
_HASH_LENGTH: int = 10

TEMPLATE_HASH_LABEL: str = "pod-template-hash"


def random_suffix(length: int = _SUFFIX_LENGTH) -> str:
    return "".join(random.choice(_SUFFIX_ALPHABET) for _ in range(length))


def template_hash(template: dict[str, Any]) -> str:
    """Stable short hash of a Pod template's canonical JSON."""
    canonical = json.dumps(template, sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.sha256(canonical.encode()).hexdigest()
    # Keep it DNS-safe and free of pure-digit ambiguity
    return "".join(_SUFFIX_ALPHABET[int(c, 16) % len(_SUFFIX_ALPHABET)] for c in digest[:_HASH_LENGTH])


def pod_from_template(
    template: PodTemplate,
    name: str,
    namespace: str,
    owner: OwnerReference,
    extra_labels: dict[str, str] | None = None,
) -> KubeObject:
    spec = copy.deepcopy(template.spec)
    spec.pop("nodeName", None)
    return KubeObject(
        kind=Kind.POD,
        name=name,
        namespace=namespace,
        spec=spec,
        status={"phase": str(PodPhase.PENDING)},
        labels={**template.labels, **(extra_labels or {})},
        annotations=dict(template.annotations),
        owner_references=[owner],
    )


async def write_status(store: ObjectStore, obj: KubeObject, apply: Callable[[dict[str, Any]], None]) -> KubeObject | None:
    """Apply *apply* to the object's status and write it back if it changed."""

    def _mutate(current: KubeObject) -> bool:
        before = copy.deepcopy(current.status)
        apply(current.status)
        return current.status != before

    return await retry_on_conflict(store, obj.key, _mutate, status=True)
