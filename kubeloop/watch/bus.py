"""In-process watch/notification bus.

The bus registers itself as a synchronous listener on the
:class:`~kubeloop.store.object_store.ObjectStore` and fans every committed
write out to the matching subscriptions. Each subscription owns an
``asyncio.Queue`` so a slow consumer never blocks the store or its peers.

Delivery is at-least-once and ordered per key: events are enqueued in
commit order, and a subscription resuming from a token first receives the
retained backlog before any live event.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING

from kubeloop.models.objects import EventType, ObjectKey, WatchEvent
from kubeloop.models.selectors import LabelSelector
from kubeloop.observability.logging import get_logger
from kubeloop.observability.metrics import watch_events_total, watch_subscribers

if TYPE_CHECKING:
    from kubeloop.store.object_store import ObjectStore

_logger = get_logger("watch_bus")

_ALL_KINDS: str = "*"


class Subscription:
    """Async iterator over the events of one watch.

    Usage::

        sub = bus.subscribe("Pod", resume_from=rv)
        async for event in sub:
            ...
        sub.close()
    """

    def __init__(self, bus: WatchBus, kind: str | None, selector: LabelSelector | None) -> None:
        self._bus = bus
        self.kind = kind
        self.selector = selector
        self._queue: asyncio.Queue[WatchEvent | None] = asyncio.Queue()
        self._closed = False
        # Keys currently matching the selector, for synthesising DELETED on label changes
        self._matching: set[ObjectKey] = set()
        self.resource_version: int = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        """Stop the subscription; the iterator ends after draining queued events."""
        if self._closed:
            return
        self._closed = True
        self._bus._unsubscribe(self)
        self._queue.put_nowait(None)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> WatchEvent:
        event = await self._queue.get()
        if event is None:
            raise StopAsyncIteration
        self.resource_version = event.resource_version
        return event

    def _offer(self, event: WatchEvent) -> None:
        """Enqueue *event* if it concerns this subscription."""
        if self._closed:
            return
        if self.kind is not None and event.object.kind != self.kind:
            return

        if self.selector is not None:
            key = event.key
            matches = self.selector.matches(event.object.labels)
            if event.type == EventType.DELETED:
                if key not in self._matching and not matches:
                    return
                self._matching.discard(key)
            elif matches:
                self._matching.add(key)
            elif key in self._matching:
                # Object left the selector: watchers see it as deleted
                self._matching.discard(key)
                event = WatchEvent(EventType.DELETED, event.object, event.resource_version)
            else:
                return

        self._queue.put_nowait(event)
        watch_events_total.labels(kind=event.object.kind, event_type=event.type.value).inc()


class WatchBus:
    """Fans store writes out to subscribers.

    Args:
        store: The object store to observe; the bus registers itself as a
            listener on construction.
    """

    def __init__(self, store: ObjectStore) -> None:
        self._store = store
        self._subscriptions: list[Subscription] = []
        store.add_listener(self._dispatch)

    def subscribe(
        self,
        kind: str | None,
        selector: LabelSelector | None = None,
        resume_from: int | None = None,
    ) -> Subscription:
        """Open a watch on *kind* (``None`` watches every kind).

        With *resume_from*, every retained event newer than that
        resourceVersion is delivered first. Raises ResourceExpiredError if
        the token predates the retained history; the caller should relist.
        """
        subscription = Subscription(self, kind, selector)
        if resume_from is not None:
            for event in self._store.events_since(resume_from, kind):
                subscription._offer(event)
            subscription.resource_version = resume_from
        else:
            subscription.resource_version = self._store.resource_version
            if selector is not None:
                for obj in self._store.list(kind) if kind is not None else []:
                    if selector.matches(obj.labels):
                        subscription._matching.add(obj.key)

        self._subscriptions.append(subscription)
        watch_subscribers.labels(kind=kind or _ALL_KINDS).inc()
        _logger.debug("watch_subscribed", kind=kind or _ALL_KINDS, resume_from=resume_from)
        return subscription

    def close(self) -> None:
        """Close every subscription and detach from the store."""
        for subscription in list(self._subscriptions):
            subscription.close()
        self._store.remove_listener(self._dispatch)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def _dispatch(self, event: WatchEvent) -> None:
        for subscription in list(self._subscriptions):
            subscription._offer(event)

    def _unsubscribe(self, subscription: Subscription) -> None:
        with contextlib.suppress(ValueError):
            self._subscriptions.remove(subscription)
            watch_subscribers.labels(kind=subscription.kind or _ALL_KINDS).dec()
