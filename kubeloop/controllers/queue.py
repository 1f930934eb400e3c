"""Per-controller deduplicated work queue.

Keys (``ObjectKey``) rather than events are queued, so a burst of changes
to one object collapses into a single reconcile. Guarantees:

- A key is queued at most once at a time.
- At most one worker processes a given key at a time. A key added while it
  is being processed is marked *dirty*; the running reconcile can observe
  this (``is_dirty``) and is re-run as soon as it finishes.
- Failed keys are re-added after a full-jitter exponential back-off
  (``add_rate_limited``) until ``forget`` resets their failure count.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Awaitable, Callable

from kubeloop.models.objects import ObjectKey
from kubeloop.observability.logging import get_logger
from kubeloop.observability.metrics import queue_depth, queue_requeues_total
from kubeloop.store.retry import full_jitter_backoff

_logger = get_logger("work_queue")

_DEFAULT_WORKERS: int = 4
_DEFAULT_BACKOFF_BASE_S: float = 1.0
_DEFAULT_BACKOFF_CAP_S: float = 300.0
_IDLE_POLL_S: float = 0.01

KeyHandler = Callable[[ObjectKey], Awaitable[None]]


class WorkQueue:
    """Deduplicated async work queue with a fixed pool of workers.

    Args:
        name: Controller name, used in log and metric labels.
        handler: ``async def handler(key) -> None``; exceptions are logged
            and swallowed, retry policy belongs to the caller.
        workers: Number of concurrent worker tasks.
    """

    def __init__(
        self,
        name: str,
        handler: KeyHandler,
        workers: int = _DEFAULT_WORKERS,
        backoff_base_seconds: float = _DEFAULT_BACKOFF_BASE_S,
        backoff_cap_seconds: float = _DEFAULT_BACKOFF_CAP_S,
    ) -> None:
        self._name = name
        self._handler = handler
        self._num_workers = max(1, workers)
        self._backoff_base = backoff_base_seconds
        self._backoff_cap = backoff_cap_seconds

        self._queue: asyncio.Queue[ObjectKey | None] = asyncio.Queue()
        self._queued: set[ObjectKey] = set()
        self._processing: set[ObjectKey] = set()
        self._dirty: set[ObjectKey] = set()
        self._failures: dict[ObjectKey, int] = {}
        self._delayed: dict[ObjectKey, asyncio.TimerHandle] = {}

        self._workers: list[asyncio.Task[None]] = []
        self._running = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"{self._name}_worker_{i}") for i in range(self._num_workers)
        ]
        _logger.info("work_queue_started", controller=self._name, workers=self._num_workers)

    async def stop(self) -> None:
        """Stop the workers after their current key. Safe to call before start()."""
        self._running = False
        for handle in self._delayed.values():
            handle.cancel()
        self._delayed.clear()
        if not self._workers:
            return
        for _ in self._workers:
            self._queue.put_nowait(None)
        for task in self._workers:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._workers = []
        _logger.info("work_queue_stopped", controller=self._name)

    # ------------------------------------------------------------------
    # Producer interface
    # ------------------------------------------------------------------

    def add(self, key: ObjectKey) -> None:
        """Queue *key* unless it is already queued; mark it dirty if in flight."""
        if key in self._processing:
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        self._queued.add(key)
        self._queue.put_nowait(key)
        queue_depth.labels(controller=self._name).set(len(self._queued))

    def add_after(self, key: ObjectKey, delay: float) -> None:
        """Queue *key* after *delay* seconds, keeping the earliest pending timer."""
        if delay <= 0:
            self.add(key)
            return
        loop = asyncio.get_running_loop()
        existing = self._delayed.get(key)
        if existing is not None:
            if existing.when() <= loop.time() + delay:
                return
            existing.cancel()
        self._delayed[key] = loop.call_later(delay, self._fire_delayed, key)

    def add_rate_limited(self, key: ObjectKey) -> float:
        """Re-queue a failed key with full-jitter back-off; returns the delay."""
        attempt = self._failures.get(key, 0)
        self._failures[key] = attempt + 1
        delay = full_jitter_backoff(attempt, self._backoff_base, self._backoff_cap)
        queue_requeues_total.labels(controller=self._name).inc()
        self.add_after(key, delay)
        return delay

    def forget(self, key: ObjectKey) -> None:
        """Reset the failure count of *key*."""
        self._failures.pop(key, None)

    def num_requeues(self, key: ObjectKey) -> int:
        return self._failures.get(key, 0)

    def is_dirty(self, key: ObjectKey) -> bool:
        """True if *key* was re-added while being processed."""
        return key in self._dirty

    def __len__(self) -> int:
        return len(self._queued)

    async def wait_idle(self, timeout: float = 5.0) -> bool:
        """Wait until nothing is queued or in flight (delayed keys excluded)."""
        deadline = time.monotonic() + timeout
        while self._queued or self._processing:
            if time.monotonic() >= deadline:
                return False
            await asyncio.sleep(_IDLE_POLL_S)
        return True

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _fire_delayed(self, key: ObjectKey) -> None:
        self._delayed.pop(key, None)
        if self._running:
            self.add(key)

    async def _worker(self, worker_id: int) -> None:
        _logger.debug("worker_started", controller=self._name, worker_id=worker_id)
        while self._running:
            try:
                key = await self._queue.get()
            except asyncio.CancelledError:
                break

            # Sentinel item signals shutdown
            if key is None:
                break

            self._queued.discard(key)
            queue_depth.labels(controller=self._name).set(len(self._queued))
            self._processing.add(key)
            try:
                await self._handler(key)
            except Exception as exc:
                _logger.error(
                    "worker_handler_error",
                    controller=self._name,
                    worker_id=worker_id,
                    key=str(key),
                    error=str(exc),
                    exc_info=True,
                )
            finally:
                self._processing.discard(key)
                if key in self._dirty:
                    self._dirty.discard(key)
                    self.add(key)

        _logger.debug("worker_stopped", controller=self._name, worker_id=worker_id)
