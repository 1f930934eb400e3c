"""Controller base class: informer wiring, work queue and error policy.

A controller watches its primary kind (and optionally secondary kinds that
map back to a primary key), funnels changes into a :class:`WorkQueue` and
reconciles one key at a time. Errors never escape a worker:

- ``ValidationError``     -> ``InvalidSpec=True`` condition, not retried
- ``ConflictError``       -> re-queued with back-off, state re-read next pass
- anything else           -> re-queued with back-off; after ``max_retries``
  consecutive failures the object gets ``Degraded=True`` and keeps being
  retried at the capped delay
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from structlog.typing import FilteringBoundLogger

from kubeloop.controllers.queue import WorkQueue
from kubeloop.errors import ConflictError, KubeLoopError, ValidationError
from kubeloop.models.config import ControllerConfig
from kubeloop.models.objects import EventType, KubeObject, ObjectKey, WatchEvent, get_condition, set_condition
from kubeloop.observability.logging import get_logger
from kubeloop.observability.metrics import reconcile_duration_seconds, reconcile_total
from kubeloop.store.object_store import ObjectStore
from kubeloop.store.retry import retry_on_conflict
from kubeloop.watch.bus import WatchBus
from kubeloop.watch.informer import EventHandler, Informer

Clock = Callable[[], float]

CONDITION_DEGRADED: str = "Degraded"
CONDITION_INVALID_SPEC: str = "InvalidSpec"


@dataclass
class ReconcileContext:
    """Per-pass state handed to :meth:`Controller.reconcile`."""

    key: ObjectKey
    queue: WorkQueue
    log: FilteringBoundLogger
    now: float
    attempt: int = 0
    requeue_after: float | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def superseded(self) -> bool:
        """True once a newer change to the key has been queued.

        A reconcile checks this between mutations and returns early; it is
        re-run with fresh state right after.
        """
        return self.queue.is_dirty(self.key)

    def requeue(self, delay: float) -> None:
        """Ask for another pass after *delay* seconds (earliest request wins)."""
        if self.requeue_after is None or delay < self.requeue_after:
            self.requeue_after = delay


class Controller(ABC):
    """Base class for reconcile loops over one primary kind.

    Subclasses set ``name`` and ``kind``, implement :meth:`reconcile` and
    may register secondary watches in :meth:`secondary_watches`.
    """

    name: str = "controller"
    kind: str = ""

    def __init__(
        self,
        store: ObjectStore,
        bus: WatchBus,
        config: ControllerConfig | None = None,
        clock: Clock = time.time,
    ) -> None:
        self._store = store
        self._bus = bus
        self._config = config or ControllerConfig()
        self._clock = clock
        self._log = get_logger(f"controller.{self.name}")
        self._queue = WorkQueue(
            self.name,
            self._process,
            workers=self._config.workers,
            backoff_base_seconds=self._config.backoff_base_seconds,
            backoff_cap_seconds=self._config.backoff_cap_seconds,
        )
        self._informers: list[Informer] = []

    @property
    def queue(self) -> WorkQueue:
        return self._queue

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self._informers = [
            Informer(self._store, self._bus, kind, handler, name=f"{self.name}.{kind.lower()}")
            for kind, handler in self.watches()
        ]
        await self._queue.start()
        for informer in self._informers:
            await informer.start()
        self._log.info("controller_started", controller=self.name)

    async def stop(self) -> None:
        for informer in reversed(self._informers):
            await informer.stop()
        await self._queue.stop()
        self._log.info("controller_stopped", controller=self.name)

    async def wait_synced(self, timeout: float = 10.0) -> bool:
        for informer in self._informers:
            if not await informer.wait_synced(timeout):
                return False
        return True

    # ------------------------------------------------------------------
    # Event routing
    # ------------------------------------------------------------------

    def watches(self) -> list[tuple[str, EventHandler]]:
        """Every (kind, handler) pair this controller is fed by."""
        return [(self.kind, self._on_primary_event), *self.secondary_watches()]

    def secondary_watches(self) -> list[tuple[str, EventHandler]]:
        """Extra (kind, handler) watches; none by default."""
        return []

    def enqueue(self, key: ObjectKey) -> None:
        self._queue.add(key)

    def enqueue_owner(self, obj: KubeObject, owner_kind: str | None = None) -> None:
        """Queue the controller owner of *obj* if it is of *owner_kind*."""
        ref = obj.controller_ref()
        owner_kind = owner_kind or self.kind
        if ref is not None and ref.kind == owner_kind:
            self._queue.add(ObjectKey(owner_kind, obj.namespace, ref.name))

    async def _on_primary_event(self, event: WatchEvent) -> None:
        self._queue.add(event.key)

    async def _on_owned_event(self, event: WatchEvent) -> None:
        """Secondary handler for child kinds: route to the owning object."""
        self.enqueue_owner(event.object)
        if event.type == EventType.ADDED and event.object.controller_ref() is None:
            # Orphans may be adopted by any matching owner
            for owner in self._store.list(self.kind, namespace=event.object.namespace):
                self._queue.add(owner.key)

    # ------------------------------------------------------------------
    # Reconcile
    # ------------------------------------------------------------------

    @abstractmethod
    async def reconcile(self, obj: KubeObject, ctx: ReconcileContext) -> None:
        """Drive *obj* one step towards its desired state."""

    async def on_missing(self, key: ObjectKey) -> None:
        """Called when a queued key no longer exists in the store."""

    async def reconcile_key(self, key: ObjectKey) -> None:
        """Run one reconcile pass for *key* synchronously (tests, CLI)."""
        await self._process(key)

    async def _process(self, key: ObjectKey) -> None:
        obj = self._store.try_get(*key)
        if obj is None:
            self._queue.forget(key)
            await self.on_missing(key)
            return

        ctx = ReconcileContext(
            key=key,
            queue=self._queue,
            log=self._log.bind(controller=self.name, key=str(key)),
            now=self._clock(),
            attempt=self._queue.num_requeues(key),
        )
        started = time.monotonic()
        result = "success"
        try:
            await self.reconcile(obj, ctx)
        except ValidationError as exc:
            result = "invalid"
            self._queue.forget(key)
            ctx.log.warning("reconcile_invalid_spec", error=str(exc), field=exc.field)
            await self._record_condition(key, CONDITION_INVALID_SPEC, "True", exc.reason, str(exc))
            return
        except ConflictError as exc:
            result = "conflict"
            delay = self._queue.add_rate_limited(key)
            ctx.log.debug("reconcile_conflict", error=str(exc), retry_in_s=round(delay, 3))
            return
        except Exception as exc:
            result = "error"
            failures = self._queue.num_requeues(key) + 1
            delay = self._queue.add_rate_limited(key)
            reason = exc.reason if isinstance(exc, KubeLoopError) else type(exc).__name__
            ctx.log.error(
                "reconcile_failed",
                error=str(exc),
                reason=reason,
                failures=failures,
                retry_in_s=round(delay, 3),
                exc_info=not isinstance(exc, KubeLoopError),
            )
            if failures >= self._config.max_retries:
                await self._record_condition(key, CONDITION_DEGRADED, "True", reason, str(exc))
            return
        finally:
            reconcile_total.labels(controller=self.name, result=result).inc()
            reconcile_duration_seconds.labels(controller=self.name).observe(time.monotonic() - started)

        self._queue.forget(key)
        await self._clear_failure_conditions(obj)
        if ctx.requeue_after is not None:
            self._queue.add_after(key, ctx.requeue_after)

    async def _record_condition(self, key: ObjectKey, condition_type: str, status: str, reason: str, message: str) -> None:
        try:
            await retry_on_conflict(
                self._store,
                key,
                lambda obj: set_condition(obj.status, condition_type, status, reason, message),
                status=True,
            )
        except Exception as exc:
            self._log.error("condition_write_failed", key=str(key), condition=condition_type, error=str(exc))

    async def _clear_failure_conditions(self, obj: KubeObject) -> None:
        for condition_type in (CONDITION_DEGRADED, CONDITION_INVALID_SPEC):
            condition = get_condition(obj.status, condition_type)
            if condition is not None and condition.status == "True":
                await self._record_condition(obj.key, condition_type, "False", "Reconciled", "")
