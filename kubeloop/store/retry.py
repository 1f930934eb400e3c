"""Optimistic-concurrency helpers: re-read and re-apply on conflict."""

from __future__ import annotations

import asyncio
import random
from collections.abc import Callable

from kubeloop.errors import ConflictError
from kubeloop.models.objects import KubeObject, ObjectKey
from kubeloop.observability.logging import get_logger
from kubeloop.store.object_store import ObjectStore

_logger = get_logger("retry")

_DEFAULT_ATTEMPTS: int = 5
_CONFLICT_PAUSE_S: float = 0.01

# Return False from a mutation to skip the write
Mutation = Callable[[KubeObject], bool | None]


async def retry_on_conflict(
    store: ObjectStore,
    key: ObjectKey,
    mutate: Mutation,
    attempts: int = _DEFAULT_ATTEMPTS,
    status: bool = False,
) -> KubeObject | None:
    """Read *key*, apply *mutate* to the copy and write it back.

    A ConflictError triggers a fresh read and a new application of the
    mutation, up to *attempts* times. Returns the written object, the
    unchanged object when the mutation declined to write, or None when
    the object no longer exists.
    """
    for attempt in range(1, attempts + 1):
        current = store.try_get(*key)
        if current is None:
            return None
        if mutate(current) is False:
            return current
        try:
            if status:
                return await store.update_status(current)
            return await store.update(current)
        except ConflictError:
            if attempt == attempts:
                raise
            _logger.debug("write_conflict_retry", key=str(key), attempt=attempt)
            await asyncio.sleep(_CONFLICT_PAUSE_S * attempt)
    return None


def full_jitter_backoff(attempt: int, base: float, cap: float) -> float:
    """Exponential back-off with full jitter: uniform(0, min(cap, base * 2**attempt))."""
    ceiling = min(cap, base * (2 ** max(0, attempt)))
    return random.uniform(0, ceiling)
