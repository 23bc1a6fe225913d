"""
Circuit Breaker: resilience pattern for external services, durable across restarts.

The problem it solves:
  The speech-to-text and LLM endpoints go down.  When they do, every request
  waits for a timeout before failing.  The breaker notices sustained failure,
  stops sending traffic, and gives the service time to recover:

    "the API has failed 3 times in a row: stop trying, fail fast, and
    probe again in 60 seconds."

  The host process can be killed and restarted at any instant, losing all
  in-memory state.  A breaker that forgets it was OPEN would hammer a dead
  service again after every restart, so every transition is written to a
  DurableStore before the method returns, and the recovery timeout is a
  DurableTimerService timer rather than an in-process sleep.

The three states:

  ┌─────────┐   failure_threshold reached   ┌──────┐
  │ CLOSED  │ ─────────────────────────────▶ │ OPEN │
  │(normal) │                                │(fast │
  └─────────┘                                │ fail)│
       ▲                                     └──────┘
       │                                      │    ▲
  half_open_success_threshold     recovery timer   │ any failure
  consecutive successes           fires, or        │ (timer rescheduled)
       │                          rehydrate() sees │
       │                          deadline passed  │
  ┌───────────┐                                    │
  │ HALF_OPEN │ ◀─────────────────────────────────┘
  │  (probe)  │ ───────────────────────────────────┘
  └───────────┘

  CLOSED    → all calls pass through; consecutive failures are counted.
              A success forgives ALL accumulated failures (reset, not decrement).
  OPEN      → all calls are rejected; no external call is made.
  HALF_OPEN → calls pass through.  Enough consecutive successes close the
              circuit; a single failure reopens it.

Two paths to HALF_OPEN:
  1. The durable recovery timer fires → transition_to_half_open().
  2. rehydrate() at process start finds an OPEN record whose deadline has
     already passed → the same transition, no timer needed.
  Both are idempotent: transition_to_half_open() does nothing unless the
  state is OPEN, so a late or duplicate timer fire after the circuit already
  moved on is harmless.

Persistence contract:
  Every mutating method persists the whole PersistedCircuitState under
  "circuit_<service_id>" before returning.  If the write raises StorageError,
  the error propagates to the caller with the in-memory state ALREADY
  advanced; the in-memory view stays authoritative for this process and the
  next mutation writes the full state again.  State-change callbacks fire
  only after a successful write.

Thread safety:
  One lock per breaker serialises the read-modify-persist sequence, so two
  threads recording outcomes for the same service never interleave their
  writes.  Callbacks run after the lock is released.

Typical call site:
    if not breaker.allow_request():
        raise ServiceUnavailableError(breaker.service_id)
    try:
        result = call_external_api()
    except Exception:
        breaker.record_failure()
        raise
    breaker.record_success()
"""

import logging
import threading
from typing import Callable, Optional

from pydantic import ValidationError

from breaker_models import CircuitBreakerConfig, CircuitState, PersistedCircuitState
from clock import Clock, now_ms
from durable_store import DurableStore
from durable_timer import DurableTimerService

logger = logging.getLogger(__name__)

STORAGE_PREFIX = "circuit_"
TIMER_PREFIX = "circuit-recovery-"

StateChangeCallback = Callable[[str, CircuitState], None]


def storage_key_for(service_id: str) -> str:
    return f"{STORAGE_PREFIX}{service_id}"


def timer_name_for(service_id: str) -> str:
    return f"{TIMER_PREFIX}{service_id}"


def service_id_from_timer(name: str) -> Optional[str]:
    """Inverse of timer_name_for(); None if the name is not a recovery timer."""
    if not name.startswith(TIMER_PREFIX):
        return None
    return name[len(TIMER_PREFIX):] or None


class CircuitBreaker:
    """
    Thread-safe three-state circuit breaker for one service.

    Construction does not touch storage.  Call rehydrate() once at process
    start (BreakerRegistry.bootstrap does this for every service).
    """

    def __init__(
        self,
        config: CircuitBreakerConfig,
        store: DurableStore,
        timers: DurableTimerService,
        clock: Optional[Clock] = None,
    ) -> None:
        self._config = config
        self._store = store
        self._timers = timers
        self._clock = clock or now_ms

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time = 0
        self._opened_at: Optional[int] = None

        self._on_state_change: Optional[StateChangeCallback] = None
        # One lock guards all state mutations and the persist that follows them
        self._lock = threading.Lock()

    # ------------------------------------------------------------------ #
    # Read-only properties                                                 #
    # ------------------------------------------------------------------ #

    @property
    def config(self) -> CircuitBreakerConfig:
        return self._config

    @property
    def service_id(self) -> str:
        return self._config.service_id

    @property
    def storage_key(self) -> str:
        return storage_key_for(self._config.service_id)

    @property
    def timer_name(self) -> str:
        return timer_name_for(self._config.service_id)

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failure_count

    @property
    def success_count(self) -> int:
        with self._lock:
            return self._success_count

    @property
    def last_failure_time(self) -> int:
        with self._lock:
            return self._last_failure_time

    @property
    def opened_at(self) -> Optional[int]:
        with self._lock:
            return self._opened_at

    def snapshot(self) -> PersistedCircuitState:
        with self._lock:
            return self.__snapshot()

    # ------------------------------------------------------------------ #
    # Public API                                                           #
    # ------------------------------------------------------------------ #

    def set_on_state_change(self, callback: Optional[StateChangeCallback]) -> None:
        """Register a callback invoked on every state transition (not on count updates)."""
        self._on_state_change = callback

    def allow_request(self) -> bool:
        """
        Return False only while OPEN.  No side effects.

        HALF_OPEN admits every caller, not a single probe: concurrent call
        sites may all get through while recovery is being tested.
        """
        with self._lock:
            return self._state != CircuitState.OPEN

    def record_success(self) -> None:
        """Call after a successful external call."""
        with self._lock:
            transition = self.__apply_success()
        self._notify(transition)

    def record_failure(self) -> None:
        """Call after a failed external call."""
        with self._lock:
            transition = self.__apply_failure()
        self._notify(transition)

    def transition_to_half_open(self) -> None:
        """
        OPEN → HALF_OPEN.  Invoked when the recovery timer fires.

        No-op in any other state: the timer may be stale (the circuit already
        closed) or a duplicate (rehydrate() got there first).
        """
        with self._lock:
            transition = self.__enter_half_open()
        self._notify(transition)

    def rehydrate(self) -> None:
        """
        Replace the in-memory state with the persisted projection.

        No record → keep the fresh CLOSED defaults.
        Record OPEN and recovery_timeout_ms already elapsed since opened_at →
          transition to HALF_OPEN now; the timer that should have done it may
          have fired into a dead process.
        Record OPEN and deadline still ahead → make sure a recovery timer is
          pending for the remaining time.
        """
        with self._lock:
            transition = self.__restore()
        self._notify(transition)

    # ------------------------------------------------------------------ #
    # Private: all __methods must be called with self._lock held          #
    # ------------------------------------------------------------------ #

    def __apply_success(self) -> Optional[CircuitState]:
        if self._state == CircuitState.CLOSED:
            if self._failure_count > 0:
                self._failure_count = 0
                self.__persist()
            return None

        if self._state == CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self._config.half_open_success_threshold:
                # Recovery confirmed: close the circuit
                self._state = CircuitState.CLOSED
                self._failure_count = 0
                self._success_count = 0
                self._opened_at = None
                # A stray fire after closing must not force a HALF_OPEN excursion
                self._timers.cancel(self.timer_name)
                self.__persist()
                logger.info("Circuit CLOSED for %r: service recovered", self.service_id)
                return CircuitState.CLOSED
            self.__persist()
            return None

        # OPEN: a success should not be reported while rejecting requests
        logger.debug("Ignoring success reported for %r while OPEN", self.service_id)
        return None

    def __apply_failure(self) -> Optional[CircuitState]:
        now = self._clock()
        self._last_failure_time = now

        if self._state == CircuitState.CLOSED:
            self._failure_count += 1
            if self._failure_count >= self._config.failure_threshold:
                logger.warning(
                    "Circuit OPEN for %r after %d consecutive failures; retry in %dms",
                    self.service_id,
                    self._failure_count,
                    self._config.recovery_timeout_ms,
                )
                self.__enter_open(now)
                return CircuitState.OPEN
            self.__persist()
            return None

        if self._state == CircuitState.HALF_OPEN:
            # Probe failed: back to OPEN, timer restarts from now
            logger.warning("Recovery probe failed for %r; circuit OPEN again", self.service_id)
            self.__enter_open(now)
            return CircuitState.OPEN

        # Already OPEN: bookkeeping only
        self.__persist()
        return None

    def __enter_open(self, now: int) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = now
        self._failure_count = 0
        self._success_count = 0
        self.__schedule_recovery(self._config.recovery_timeout_ms)
        self.__persist()

    def __enter_half_open(self) -> Optional[CircuitState]:
        if self._state != CircuitState.OPEN:
            return None
        self._state = CircuitState.HALF_OPEN
        self._success_count = 0
        self._opened_at = None
        self.__persist()
        logger.info("Circuit HALF_OPEN for %r: testing recovery", self.service_id)
        return CircuitState.HALF_OPEN

    def __restore(self) -> Optional[CircuitState]:
        record = self._store.get(self.storage_key)
        if record is None:
            logger.debug("No persisted state for %r; starting CLOSED", self.service_id)
            return None

        try:
            persisted = PersistedCircuitState.from_record(record)
        except ValidationError as exc:
            logger.error(
                "Discarding corrupt persisted state for %r: %s", self.service_id, exc
            )
            return None

        self._state = persisted.state
        self._failure_count = persisted.failure_count
        self._success_count = persisted.success_count
        self._last_failure_time = persisted.last_failure_time
        self._opened_at = persisted.opened_at
        logger.info("Rehydrated %r as %s", self.service_id, self._state.value)

        if self._state == CircuitState.OPEN and self._opened_at is not None:
            elapsed = self._clock() - self._opened_at
            if elapsed >= self._config.recovery_timeout_ms:
                return self.__enter_half_open()
            if not self._timers.is_pending(self.timer_name):
                remaining = self._config.recovery_timeout_ms - elapsed
                logger.info(
                    "Re-arming lost recovery timer for %r (%dms remaining)",
                    self.service_id,
                    remaining,
                )
                self._timers.schedule(self.timer_name, remaining)
        return None

    def __schedule_recovery(self, delay_ms: int) -> None:
        # Clear first so there is exactly one recovery timer per service
        self._timers.cancel(self.timer_name)
        self._timers.schedule(self.timer_name, delay_ms)

    def __snapshot(self) -> PersistedCircuitState:
        return PersistedCircuitState(
            state=self._state,
            failure_count=self._failure_count,
            success_count=self._success_count,
            last_failure_time=self._last_failure_time,
            opened_at=self._opened_at,
        )

    def __persist(self) -> None:
        self._store.set(self.storage_key, self.__snapshot().to_record())

    def _notify(self, state: Optional[CircuitState]) -> None:
        callback = self._on_state_change
        if state is None or callback is None:
            return
        try:
            callback(self.service_id, state)
        except Exception:
            # An observer must never fail the caller's request bookkeeping
            logger.exception("State-change callback failed for %r", self.service_id)
