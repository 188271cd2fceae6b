from typing import List

import pytest


class FakeClock:
    """Manually advanced time source"""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Async sleep that records delays and advances a FakeClock instead of waiting"""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        self.clock.advance(delay)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeper(clock):
    return RecordingSleep(clock)
