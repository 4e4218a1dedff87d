from __future__ import annotations

import pytest


class FakeClock:
    def __init__(self, now: int = 0) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, delta_ms: int) -> None:
        self.now += delta_ms


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
