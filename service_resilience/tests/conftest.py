"""
Shared fixtures.

Time is a FakeClock (epoch ms) everywhere, so "1200ms later" is
clock.advance(1200), not time.sleep(1.2).

A process restart is simulated by building NEW breakers / timer services
over the SAME store object: the store is the only thing that survives.
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from breaker_models import CircuitBreakerConfig
from circuit_breaker import CircuitBreaker
from durable_store import InMemoryDurableStore
from durable_timer import StoreBackedTimerService


class FakeClock:
    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store() -> InMemoryDurableStore:
    return InMemoryDurableStore()


@pytest.fixture()
def timers(store, clock):
    service = StoreBackedTimerService(store, clock=clock)
    yield service
    service.stop()


@pytest.fixture()
def make_breaker(store, timers, clock):
    """Factory: build a breaker over the shared store/timers/clock."""

    def _make(
        service_id: str = "openai",
        failure_threshold: int = 3,
        recovery_timeout_ms: int = 1000,
        half_open_success_threshold: int = 2,
        timer_service=None,
    ) -> CircuitBreaker:
        config = CircuitBreakerConfig(
            service_id=service_id,
            failure_threshold=failure_threshold,
            recovery_timeout_ms=recovery_timeout_ms,
            half_open_success_threshold=half_open_success_threshold,
        )
        return CircuitBreaker(config, store, timer_service or timers, clock=clock)

    return _make
