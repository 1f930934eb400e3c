"""Informer: a resumable watch with relist recovery.

Wraps a :class:`~kubeloop.watch.bus.Subscription` to provide:
- An initial list delivered as synthetic ``ADDED`` events
- Resumable watches via the last seen resourceVersion
- Exponential back-off (1 s - 60 s) on handler or stream failures
- Relist when the resume token has expired from the store's history,
  or after 3 consecutive failures
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable

from kubeloop.errors import ResourceExpiredError
from kubeloop.models.objects import EventType, WatchEvent
from kubeloop.models.selectors import LabelSelector
from kubeloop.observability.logging import get_logger
from kubeloop.observability.metrics import informer_backoff_seconds, informer_relists_total
from kubeloop.store.object_store import ObjectStore
from kubeloop.watch.bus import Subscription, WatchBus

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_BACKOFF_MIN_S: float = 1.0
_BACKOFF_MAX_S: float = 60.0
_BACKOFF_MULTIPLIER: float = 2.0

_MAX_CONSECUTIVE_FAILURES: int = 3

EventHandler = Callable[[WatchEvent], Awaitable[None]]


class Informer:
    """Delivers every change of one kind to an async handler.

    Lifecycle::

        informer = Informer(store, bus, "Pod", handler, name="replicaset.pod")
        await informer.start()
        await informer.wait_synced()
        ...
        await informer.stop()
    """

    def __init__(
        self,
        store: ObjectStore,
        bus: WatchBus,
        kind: str,
        handler: EventHandler,
        name: str = "",
        selector: LabelSelector | None = None,
    ) -> None:
        self._store = store
        self._bus = bus
        self._kind = kind
        self._handler = handler
        self._selector = selector
        self._name = name or kind.lower()
        self._log = get_logger(f"informer.{self._name}")

        self._resource_version: int | None = None
        self._running: bool = False
        self._task: asyncio.Task[None] | None = None
        self._subscription: Subscription | None = None
        self._synced = asyncio.Event()

        self._consecutive_failures: int = 0
        self._backoff_s: float = _BACKOFF_MIN_S

    @property
    def name(self) -> str:
        return self._name

    @property
    def resource_version(self) -> int | None:
        """Last resourceVersion handed to the handler."""
        return self._resource_version

    @property
    def has_synced(self) -> bool:
        return self._synced.is_set()

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the watch loop as a background asyncio task."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._watch_loop(), name=f"informer-{self._name}")
        self._log.info("informer_started", informer=self._name)

    async def stop(self) -> None:
        """Signal the watch loop to stop and wait for it to exit."""
        self._running = False
        if self._subscription is not None:
            self._subscription.close()
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._log.info("informer_stopped", informer=self._name)

    async def wait_synced(self, timeout: float = 10.0) -> bool:
        """Wait until the initial list has been delivered."""
        try:
            async with asyncio.timeout(timeout):
                await self._synced.wait()
        except TimeoutError:
            return False
        return True

    # ------------------------------------------------------------------
    # Internal watch loop
    # ------------------------------------------------------------------

    async def _watch_loop(self) -> None:
        while self._running:
            try:
                await self._run_watch()
            except asyncio.CancelledError:
                return
            except ResourceExpiredError:
                informer_relists_total.labels(informer=self._name, reason="expired").inc()
                self._log.warning("informer_resume_expired", informer=self._name)
                self._resource_version = None
            except Exception as exc:
                if not self._running:
                    return
                await self._handle_loop_exception(exc)

    async def _run_watch(self) -> None:
        if self._resource_version is None:
            await self._relist()

        self._subscription = self._bus.subscribe(self._kind, self._selector, resume_from=self._resource_version)
        try:
            async for event in self._subscription:
                if not self._running:
                    return
                self._resource_version = event.resource_version
                await self._handler(event)
                self._reset_backoff()
        finally:
            self._subscription.close()
            self._subscription = None

    async def _relist(self) -> None:
        """List current objects and deliver them as synthetic ADDED events.

        The resourceVersion is captured before listing; both happen without
        yielding to the loop, so no write can fall between them.
        """
        resource_version = self._store.resource_version
        objects = self._store.list(self._kind, selector=self._selector)
        self._resource_version = resource_version
        self._log.info("relist_complete", informer=self._name, objects=len(objects), resource_version=resource_version)
        for obj in objects:
            await self._handler(WatchEvent(EventType.ADDED, obj, obj.resource_version))
        self._synced.set()

    async def _handle_loop_exception(self, exc: Exception) -> None:
        self._consecutive_failures += 1
        self._log.error(
            "informer_handler_error",
            informer=self._name,
            error=str(exc),
            consecutive_failures=self._consecutive_failures,
            exc_info=True,
        )
        if self._consecutive_failures >= _MAX_CONSECUTIVE_FAILURES:
            informer_relists_total.labels(informer=self._name, reason="consecutive_failures").inc()
            self._resource_version = None
            self._consecutive_failures = 0
        await self._backoff()

    async def _backoff(self) -> None:
        delay = min(self._backoff_s, _BACKOFF_MAX_S)
        informer_backoff_seconds.labels(informer=self._name).observe(delay)
        await asyncio.sleep(delay)
        self._backoff_s = min(self._backoff_s * _BACKOFF_MULTIPLIER, _BACKOFF_MAX_S)

    def _reset_backoff(self) -> None:
        self._backoff_s = _BACKOFF_MIN_S
        self._consecutive_failures = 0
