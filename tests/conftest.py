from __future__ import annotations

from collections.abc import AsyncIterator

import pytest

from kubeloop.store.object_store import ObjectStore
from kubeloop.watch.bus import WatchBus


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def store() -> ObjectStore:
    return ObjectStore()


@pytest.fixture
async def bus(store: ObjectStore) -> AsyncIterator[WatchBus]:
    watch_bus = WatchBus(store)
    yield watch_bus
    watch_bus.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
