"""Versioned, strongly-consistent in-memory object store.

Objects are keyed by (kind, namespace, name). Every successful write is
assigned the next value of a single store-wide ``resourceVersion`` counter,
recorded in a bounded event history, and published synchronously to the
registered listeners (the watch bus).

Concurrency
-----------
All writes are serialised by one ``asyncio.Lock``. A write carrying a stale
``resourceVersion`` fails with ``ConflictError``; callers re-read and retry
(see :mod:`kubeloop.store.retry`). Lock acquisition and persistence are
bounded by ``write_timeout_seconds`` and surface as ``TransientInfraError``.

Deletion
--------
Objects without finalizers are removed immediately (``DELETED``). Objects
with finalizers get a ``deletionTimestamp`` (``MODIFIED``) and are removed
once the last finalizer is dropped by an update.

Reads never block and always return deep copies.
"""

from __future__ import annotations

import asyncio
import builtins
import contextlib
import uuid
from collections import deque
from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from kubeloop.errors import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    ResourceExpiredError,
    TransientInfraError,
    ValidationError,
)
from kubeloop.models.objects import (
    CLUSTER_SCOPED_KINDS,
    EventType,
    Kind,
    KubeObject,
    ObjectKey,
    WatchEvent,
    set_condition,
)
from kubeloop.models.pods import NODE_AGENT_FINALIZER
from kubeloop.models.selectors import LabelSelector
from kubeloop.observability.logging import get_logger
from kubeloop.observability.metrics import (
    store_conflicts_total,
    store_objects,
    store_resource_version,
    store_transient_errors_total,
    store_writes_total,
)
from kubeloop.store.sqlite_backend import SQLiteBackend
from kubeloop.store.validation import validate_document

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_DEFAULT_HISTORY_SIZE: int = 10_000
_DEFAULT_WRITE_TIMEOUT_S: float = 5.0

PROPAGATION_ANNOTATION: str = "kubeloop.io/propagation-policy"
LAST_BINDING_ANNOTATION: str = "kubeloop.io/last-binding"

Listener = Callable[[WatchEvent], None]


class Propagation(StrEnum):
    """What happens to dependents when an owner is deleted."""

    BACKGROUND = "Background"
    ORPHAN = "Orphan"


class ObjectStore:
    """Versioned key-value store of desired-state and observed-state objects.

    Example::

        store = ObjectStore()
        rv = await store.submit({"kind": "ReplicaSet", "metadata": {"name": "web"}, "spec": {...}})
        rs = store.get("ReplicaSet", "default", "web")
    """

    def __init__(
        self,
        history_size: int = _DEFAULT_HISTORY_SIZE,
        write_timeout_seconds: float = _DEFAULT_WRITE_TIMEOUT_S,
        backend: SQLiteBackend | None = None,
    ) -> None:
        self._log = get_logger("store")
        self._objects: dict[ObjectKey, KubeObject] = {}
        self._resource_version: int = 0

        # Bounded event history for watch resumption
        self._history: deque[WatchEvent] = deque()
        self._history_size = max(1, history_size)
        self._history_floor: int = 0  # oldest resourceVersion a watch may resume from

        self._listeners: list[Listener] = []
        self._lock = asyncio.Lock()
        self._write_timeout = write_timeout_seconds
        self._backend = backend

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """Open the persistence backend (if any) and restore its objects."""
        if self._backend is None:
            return
        await self._backend.open()
        objects, last_version = await self._backend.load()
        for obj in objects:
            self._objects[obj.key] = obj
        self._resource_version = last_version
        self._history_floor = last_version
        for kind in {obj.kind for obj in objects}:
            store_objects.labels(kind=kind).set(self.count(kind))
        self._log.info("store_restored", objects=len(objects), resource_version=last_version)

    async def close(self) -> None:
        if self._backend is not None:
            await self._backend.close()

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        with contextlib.suppress(ValueError):
            self._listeners.remove(listener)

    # ------------------------------------------------------------------
    # Read interface
    # ------------------------------------------------------------------

    @property
    def resource_version(self) -> int:
        """The latest resourceVersion assigned by the store."""
        return self._resource_version

    def get(self, kind: str, namespace: str, name: str) -> KubeObject:
        """Return a copy of the object; raises NotFoundError if absent."""
        obj = self._objects.get(_key(kind, namespace, name))
        if obj is None:
            raise NotFoundError(f"{kind} {namespace}/{name} not found")
        return obj.copy()

    def try_get(self, kind: str, namespace: str, name: str) -> KubeObject | None:
        obj = self._objects.get(_key(kind, namespace, name))
        return obj.copy() if obj is not None else None

    def list(
        self,
        kind: str,
        namespace: str | None = None,
        selector: LabelSelector | None = None,
    ) -> builtins.list[KubeObject]:
        """List copies of all objects of *kind*, sorted by (namespace, name)."""
        results = [
            obj.copy()
            for key, obj in self._objects.items()
            if key.kind == kind
            and (namespace is None or key.namespace == namespace)
            and (selector is None or selector.matches(obj.labels))
        ]
        results.sort(key=lambda o: (o.namespace, o.name))
        return results

    def list_dependents(self, owner_uid: str) -> builtins.list[KubeObject]:
        """Objects holding an owner reference to *owner_uid*."""
        results = [
            obj.copy()
            for obj in self._objects.values()
            if any(ref.uid == owner_uid for ref in obj.owner_references)
        ]
        results.sort(key=lambda o: (o.kind, o.namespace, o.name))
        return results

    def count(self, kind: str) -> int:
        return sum(1 for key in self._objects if key.kind == kind)

    def exists_uid(self, uid: str) -> bool:
        return any(obj.uid == uid for obj in self._objects.values())

    def events_since(self, resource_version: int, kind: str | None = None) -> builtins.list[WatchEvent]:
        """Return retained events newer than *resource_version*.

        Raises ResourceExpiredError if events after *resource_version* have
        already been dropped from the bounded history.
        """
        if resource_version < self._history_floor:
            raise ResourceExpiredError(
                f"resourceVersion {resource_version} is older than the retained history ({self._history_floor})"
            )
        return [
            ev
            for ev in self._history
            if ev.resource_version > resource_version and (kind is None or ev.object.kind == kind)
        ]

    # ------------------------------------------------------------------
    # Write interface
    # ------------------------------------------------------------------

    async def create(self, obj: KubeObject) -> KubeObject:
        """Create a new object. Raises AlreadyExistsError on a duplicate key."""
        async with self._write_section(obj.kind, "create"):
            return await self._create_locked(obj)

    async def update(self, obj: KubeObject, force: bool = False) -> KubeObject:
        """Replace metadata and spec of an existing object (status is kept).

        Unless *force* is set, ``obj.resource_version`` must equal the
        stored version or ConflictError is raised. Writes that change
        nothing are skipped and return the stored object.
        """
        async with self._write_section(obj.kind, "update"):
            current = self._require(obj.key)
            self._check_version(current, obj.resource_version, force)
            updated = obj.copy()
            updated.status = current.status
            return await self._replace_locked(current, updated)

    async def update_status(self, obj: KubeObject, force: bool = False) -> KubeObject:
        """Replace only the status of an existing object."""
        async with self._write_section(obj.kind, "update_status"):
            current = self._require(obj.key)
            self._check_version(current, obj.resource_version, force)
            updated = current.copy()
            updated.status = obj.copy().status
            return await self._replace_locked(current, updated)

    async def delete(
        self,
        kind: str,
        namespace: str,
        name: str,
        expected_resource_version: int | None = None,
        propagation: Propagation = Propagation.BACKGROUND,
    ) -> KubeObject | None:
        """Request deletion. Returns the last state, or None if already gone."""
        async with self._write_section(kind, "delete"):
            current = self._objects.get(_key(kind, namespace, name))
            if current is None:
                return None
            if expected_resource_version is not None:
                self._check_version(current, expected_resource_version, force=False)

            if current.finalizers:
                if current.terminating:
                    return current.copy()
                marked = current.copy()
                marked.deletion_timestamp = datetime.now(tz=UTC)
                marked.annotations[PROPAGATION_ANNOTATION] = str(propagation)
                return await self._commit_locked(EventType.MODIFIED, marked)

            removed = current.copy()
            removed.deletion_timestamp = removed.deletion_timestamp or datetime.now(tz=UTC)
            removed.annotations.setdefault(PROPAGATION_ANNOTATION, str(propagation))
            return await self._commit_locked(EventType.DELETED, removed)

    async def bind_pod(self, namespace: str, name: str, node_name: str, expected_node_version: int) -> KubeObject:
        """Atomically assign a Pod to a Node.

        The write is conditioned on the Node's resourceVersion being
        unchanged since the caller scored it; the Node is touched as part
        of the binding so concurrent bindings to one Node conflict.
        """
        async with self._write_section(Kind.POD, "bind"):
            pod = self._require(ObjectKey(Kind.POD, namespace, name))
            node = self._require(ObjectKey(Kind.NODE, "", node_name))
            if node.resource_version != expected_node_version:
                store_conflicts_total.labels(kind=Kind.NODE).inc()
                raise ConflictError(
                    f"Node {node_name} changed since scoring "
                    f"(expected {expected_node_version}, found {node.resource_version})",
                    current_version=node.resource_version,
                )
            if pod.spec.get("nodeName"):
                raise ConflictError(f"Pod {namespace}/{name} is already bound to {pod.spec['nodeName']}")
            if pod.terminating:
                raise ConflictError(f"Pod {namespace}/{name} is terminating")

            bound = pod.copy()
            bound.spec["nodeName"] = node_name
            if NODE_AGENT_FINALIZER not in bound.finalizers:
                bound.finalizers.append(NODE_AGENT_FINALIZER)
            set_condition(bound.status, "PodScheduled", "True", reason="Scheduled", message=f"bound to {node_name}")

            touched = node.copy()
            touched.annotations[LAST_BINDING_ANNOTATION] = f"{namespace}/{name}"

            result, _ = await self._commit_all_locked([(bound, True), (touched, False)])
            return result

    async def submit(self, document: Any) -> int:
        """Desired-state submission: validate, then create or apply.

        Returns the assigned resourceVersion. A document carrying a
        non-zero resourceVersion is applied conditionally.
        """
        obj = validate_document(document)
        async with self._write_section(obj.kind, "submit"):
            current = self._objects.get(obj.key)
            if current is None:
                created = await self._create_locked(obj)
                return created.resource_version

            self._check_version(current, obj.resource_version, force=obj.resource_version == 0)
            applied = current.copy()
            applied.spec = obj.spec
            applied.labels = obj.labels
            applied.annotations = {**current.annotations, **obj.annotations}
            if obj.owner_references:
                applied.owner_references = obj.owner_references
            result = await self._replace_locked(current, applied)
            return result.resource_version

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @contextlib.asynccontextmanager
    async def _write_section(self, kind: str, operation: str) -> AsyncIterator[None]:
        """Acquire the write lock within the write timeout."""
        try:
            async with asyncio.timeout(self._write_timeout):
                await self._lock.acquire()
        except TimeoutError as exc:
            store_transient_errors_total.labels(reason="lock_timeout").inc()
            raise TransientInfraError(f"store write lock not acquired within {self._write_timeout}s") from exc
        try:
            yield
            store_writes_total.labels(kind=kind, operation=operation).inc()
        finally:
            self._lock.release()

    def _require(self, key: ObjectKey) -> KubeObject:
        current = self._objects.get(_key(*key))
        if current is None:
            raise NotFoundError(f"{key} not found")
        return current

    def _check_version(self, current: KubeObject, expected: int, force: bool) -> None:
        if force or expected == current.resource_version:
            return
        store_conflicts_total.labels(kind=current.kind).inc()
        raise ConflictError(
            f"{current.key} has resourceVersion {current.resource_version}, write expected {expected}",
            current_version=current.resource_version,
        )

    async def _create_locked(self, obj: KubeObject) -> KubeObject:
        if not obj.kind or not obj.name:
            raise ValidationError("kind and name are required")
        created = obj.copy()
        if created.kind in CLUSTER_SCOPED_KINDS:
            created.namespace = ""
        elif not created.namespace:
            created.namespace = "default"
        if created.key in self._objects:
            raise AlreadyExistsError(f"{created.key} already exists")

        created.uid = created.uid or str(uuid.uuid4())
        created.creation_timestamp = datetime.now(tz=UTC)
        created.deletion_timestamp = None
        created.generation = 1
        return await self._commit_locked(EventType.ADDED, created)

    async def _replace_locked(self, current: KubeObject, updated: KubeObject) -> KubeObject:
        # Identity and deletion state are owned by the store
        updated.uid = current.uid
        updated.namespace = current.namespace
        updated.creation_timestamp = current.creation_timestamp
        updated.deletion_timestamp = current.deletion_timestamp
        updated.generation = current.generation
        updated.resource_version = current.resource_version

        if _same_content(current, updated):
            return current.copy()

        if updated.terminating and not updated.finalizers:
            return await self._commit_locked(EventType.DELETED, updated)
        return await self._commit_locked(EventType.MODIFIED, updated, bump_generation=updated.spec != current.spec)

    async def _commit_locked(
        self,
        event_type: EventType,
        obj: KubeObject,
        bump_generation: bool = False,
    ) -> KubeObject:
        """Persist, then apply *obj* in memory and publish the event."""
        stored = self._stage(obj, self._resource_version + 1, bump_generation)
        await self._persist(event_type, stored)
        return self._apply(event_type, stored)

    async def _commit_all_locked(self, writes: builtins.list[tuple[KubeObject, bool]]) -> builtins.list[KubeObject]:
        """Persist every modified object together, then apply them in order.

        Nothing is applied in memory unless all of *writes* were persisted.
        """
        staged = [
            self._stage(obj, self._resource_version + offset, bump_generation)
            for offset, (obj, bump_generation) in enumerate(writes, start=1)
        ]
        if self._backend is not None and self._backend.is_open:
            async with self._persisting(", ".join(str(obj.key) for obj in staged)):
                await self._backend.put_many(staged)
        return [self._apply(EventType.MODIFIED, stored) for stored in staged]

    def _stage(self, obj: KubeObject, resource_version: int, bump_generation: bool) -> KubeObject:
        stored = obj.copy()
        stored.resource_version = resource_version
        if bump_generation:
            stored.generation += 1
        return stored

    def _apply(self, event_type: EventType, stored: KubeObject) -> KubeObject:
        self._resource_version = stored.resource_version
        if event_type == EventType.DELETED:
            self._objects.pop(stored.key, None)
        else:
            self._objects[stored.key] = stored

        event = WatchEvent(type=event_type, object=stored.copy(), resource_version=stored.resource_version)
        self._record(event)
        store_resource_version.set(self._resource_version)
        store_objects.labels(kind=stored.kind).set(self.count(stored.kind))
        self._log.debug(
            "store_write",
            event_type=event_type.value,
            key=str(stored.key),
            resource_version=stored.resource_version,
        )
        self._publish(event)
        return stored.copy()

    async def _persist(self, event_type: EventType, obj: KubeObject) -> None:
        if self._backend is None or not self._backend.is_open:
            return
        async with self._persisting(str(obj.key)):
            if event_type == EventType.DELETED:
                await self._backend.delete(obj.key, obj.resource_version)
            else:
                await self._backend.put(obj)

    @contextlib.asynccontextmanager
    async def _persisting(self, what: str) -> AsyncIterator[None]:
        """Bound a backend write by the write timeout; failures become TransientInfraError."""
        try:
            async with asyncio.timeout(self._write_timeout):
                yield
        except TimeoutError as exc:
            store_transient_errors_total.labels(reason="persist_timeout").inc()
            raise TransientInfraError(f"persisting {what} timed out") from exc
        except Exception as exc:
            store_transient_errors_total.labels(reason="persist_error").inc()
            self._log.error("store_persist_failed", key=what, error=str(exc))
            raise TransientInfraError(f"persisting {what} failed: {exc}") from exc

    def _record(self, event: WatchEvent) -> None:
        if len(self._history) >= self._history_size:
            dropped = self._history.popleft()
            self._history_floor = dropped.resource_version
        self._history.append(event)

    def _publish(self, event: WatchEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as exc:
                self._log.error("store_listener_error", error=str(exc), exc_info=True)


def _key(kind: str, namespace: str, name: str) -> ObjectKey:
    if kind in CLUSTER_SCOPED_KINDS:
        namespace = ""
    return ObjectKey(kind, namespace, name)


def _same_content(a: KubeObject, b: KubeObject) -> bool:
    return (
        a.spec == b.spec
        and a.status == b.status
        and a.labels == b.labels
        and a.annotations == b.annotations
        and a.owner_references == b.owner_references
        and a.finalizers == b.finalizers
    )
