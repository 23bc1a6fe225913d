"""
BreakerRegistry: one CircuitBreaker per service, plus process-start bootstrap.

Why a registry instead of module-level breakers?
  Two CircuitBreaker objects for the same service_id in one process would
  each hold their own counters and overwrite each other's persisted record.
  The registry is the single owner: call sites look breakers up by id, and
  register() refuses a second breaker for an id it already holds.

Bootstrap order matters:

  1. build breakers (no I/O)
  2. subscribe to timer fires      ← before anything can fire
  3. rehydrate every breaker       ← may itself move OPEN → HALF_OPEN
  4. start the timer service       ← delivers fires that fell due while dead

  A fire that arrives at step 4 for a breaker rehydrate() already moved to
  HALF_OPEN is a no-op (the OPEN-only guard), so the two recovery paths
  never double-transition.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Iterable, Iterator, Optional

from breaker_models import CircuitBreakerConfig, CircuitState
from circuit_breaker import CircuitBreaker, StateChangeCallback, service_id_from_timer
from clock import Clock
from durable_store import DurableStore
from durable_timer import DurableTimerService

logger = logging.getLogger(__name__)


class UnknownServiceError(KeyError):
    """No breaker is registered for this service_id."""

    def __init__(self, service_id: str) -> None:
        super().__init__(service_id)
        self.service_id = service_id

    def __str__(self) -> str:
        return f"Unknown circuit breaker service: {self.service_id!r}"


class BreakerRegistry:
    def __init__(
        self,
        store: DurableStore,
        timers: DurableTimerService,
        clock: Optional[Clock] = None,
    ) -> None:
        self._store = store
        self._timers = timers
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._callback: Optional[StateChangeCallback] = None

    def register(self, config: CircuitBreakerConfig) -> CircuitBreaker:
        if config.service_id in self._breakers:
            raise ValueError(f"Breaker already registered for {config.service_id!r}")
        breaker = CircuitBreaker(config, self._store, self._timers, clock=self._clock)
        # Forward through the registry so the callback can be set before or after registration
        breaker.set_on_state_change(self._forward_state_change)
        self._breakers[config.service_id] = breaker
        return breaker

    def get(self, service_id: str) -> CircuitBreaker:
        try:
            return self._breakers[service_id]
        except KeyError:
            raise UnknownServiceError(service_id) from None

    @property
    def service_ids(self) -> list[str]:
        return list(self._breakers)

    def __contains__(self, service_id: object) -> bool:
        return service_id in self._breakers

    def __iter__(self) -> Iterator[CircuitBreaker]:
        return iter(list(self._breakers.values()))

    def __len__(self) -> int:
        return len(self._breakers)

    def set_state_change_callback(self, callback: Optional[StateChangeCallback]) -> None:
        """One callback for every breaker's transitions (the health indicator)."""
        self._callback = callback

    def states(self) -> dict[str, CircuitState]:
        return {sid: breaker.state for sid, breaker in self._breakers.items()}

    def handle_timer_fired(self, name: str) -> None:
        """Timer listener: route a recovery-timer fire to its breaker."""
        service_id = service_id_from_timer(name)
        if service_id is None:
            logger.debug("Ignoring non-recovery timer %r", name)
            return
        breaker = self._breakers.get(service_id)
        if breaker is None:
            logger.warning("Recovery timer %r fired for unregistered service", name)
            return
        breaker.transition_to_half_open()

    def rehydrate_all(self, max_workers: int = 4) -> None:
        """
        Rehydrate every breaker concurrently.

        Each rehydrate is a storage round-trip, so threads overlap the I/O
        waits.  A breaker that fails to rehydrate does not stop the others;
        once all have finished, the first error is re-raised.
        """
        errors: list[BaseException] = []
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            future_to_id = {
                pool.submit(breaker.rehydrate): breaker.service_id for breaker in self
            }
            for future in as_completed(future_to_id):
                service_id = future_to_id[future]
                exc = future.exception()
                if exc is not None:
                    logger.error("Rehydrate failed for %r: %s", service_id, exc)
                    errors.append(exc)
        if errors:
            raise errors[0]

    def _forward_state_change(self, service_id: str, state: CircuitState) -> None:
        if self._callback is not None:
            self._callback(service_id, state)

    # ------------------------------------------------------------------ #
    # Process-start bootstrap                                              #
    # ------------------------------------------------------------------ #

    @classmethod
    def bootstrap(
        cls,
        configs: Iterable[CircuitBreakerConfig],
        store: DurableStore,
        timers: DurableTimerService,
        clock: Optional[Clock] = None,
        on_state_change: Optional[StateChangeCallback] = None,
    ) -> "BreakerRegistry":
        """
        The one initialisation routine to run at process start.

        Returns a registry whose breakers reflect the persisted state and
        whose recovery timers are live.
        """
        registry = cls(store, timers, clock=clock)
        for config in configs:
            registry.register(config)
        registry.set_state_change_callback(on_state_change)

        timers.add_listener(registry.handle_timer_fired)
        registry.rehydrate_all()
        timers.start()

        logger.info(
            "Circuit breakers ready: %s",
            ", ".join(f"{sid}={state.value}" for sid, state in registry.states().items()),
        )
        return registry
