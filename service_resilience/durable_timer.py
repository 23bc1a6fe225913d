"""
Durable Timer Service: scheduled callbacks that survive process death.

Why not threading.Timer alone?
  An in-process timer dies with the process.  If a breaker opens with a 60s
  recovery timeout and the process is killed 10s later, a plain Timer is
  gone: the restarted process has no idea a recovery was ever due, and the
  breaker stays OPEN until something else pokes it.

The fix is to split a timer in two:

  ┌────────────────────┐        ┌──────────────────────────────┐
  │ durable schedule   │        │ in-process trigger           │
  │ {name: due_at_ms}  │ ─────▶ │ threading.Timer per entry,   │
  │ (in DurableStore)  │  arm   │ re-armed by start() after    │
  └────────────────────┘        │ every process start          │
                                └──────────────────────────────┘

  The schedule is the source of truth.  Threads are disposable: start()
  rebuilds them from the schedule, and anything that fell due while the
  process was dead is delivered immediately (late, but never lost).

Delivery is at-least-once-ish: an entry is removed from the schedule just
before its listeners run.  A crash between removal and delivery loses that
one fire, which is why consumers (the breaker) must also be able to reach
the same conclusion without the timer.  See CircuitBreaker.rehydrate().
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Callable, Optional

from clock import Clock, now_ms
from durable_store import DurableStore, StorageError

logger = logging.getLogger(__name__)

TimerListener = Callable[[str], None]

SCHEDULE_KEY = "timers"


class DurableTimerService(ABC):
    """Named one-shot timers.  Scheduling a name that exists replaces it."""

    @abstractmethod
    def schedule(self, name: str, delay_ms: int) -> None:
        ...

    @abstractmethod
    def cancel(self, name: str) -> None:
        """Cancel a pending timer.  Unknown names are a no-op."""
        ...

    @abstractmethod
    def is_pending(self, name: str) -> bool:
        ...

    @abstractmethod
    def add_listener(self, listener: TimerListener) -> None:
        """Register a process-wide callback receiving the name of each fired timer."""
        ...

    def start(self) -> list[str]:
        """
        Begin delivering fires in this process.  Returns names delivered
        immediately.  Services whose scheduler runs outside the process
        need nothing here.
        """
        return []


class StoreBackedTimerService(DurableTimerService):
    """
    Timer service whose schedule lives in a DurableStore.

    Usage:
        timers = StoreBackedTimerService(store)
        timers.add_listener(on_fire)   # register BEFORE start()
        timers.start()                 # delivers anything overdue, arms the rest

        timers.schedule("circuit-recovery-openai", 60_000)

    stop() disarms the in-process threads but leaves the schedule intact:
    exactly what a killed process leaves behind.
    """

    def __init__(self, store: DurableStore, clock: Optional[Clock] = None) -> None:
        self._store = store
        self._clock = clock or now_ms
        self._listeners: list[TimerListener] = []
        self._armed: dict[str, threading.Timer] = {}
        self._running = False
        # Guards the read-modify-write of the schedule and the _armed map.
        # Never held while listeners run: they call back into schedule()/cancel().
        self._lock = threading.Lock()

    # ------------------------------------------------------------------ #
    # Public API                                                           #
    # ------------------------------------------------------------------ #

    def add_listener(self, listener: TimerListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def schedule(self, name: str, delay_ms: int) -> None:
        if delay_ms < 0:
            raise ValueError(f"delay_ms must be >= 0, got {delay_ms}")
        with self._lock:
            schedule = self._load()
            due_at = self._clock() + delay_ms
            schedule[name] = due_at
            self._store.set(SCHEDULE_KEY, schedule)
            self._disarm(name)
            if self._running:
                self._arm(name, due_at)
        logger.debug("Timer %r scheduled in %dms", name, delay_ms)

    def cancel(self, name: str) -> None:
        with self._lock:
            schedule = self._load()
            if name in schedule:
                del schedule[name]
                self._store.set(SCHEDULE_KEY, schedule)
            self._disarm(name)

    def is_pending(self, name: str) -> bool:
        with self._lock:
            return name in self._load()

    def due_at(self, name: str) -> Optional[int]:
        with self._lock:
            return self._load().get(name)

    def start(self) -> list[str]:
        """
        Arm the schedule in this process.  Returns the names delivered
        immediately because they fell due while no process was running.
        """
        with self._lock:
            self._running = True
        delivered = self.fire_due()
        with self._lock:
            for name, due_at in self._load().items():
                if name not in self._armed:
                    self._arm(name, due_at)
            armed = len(self._armed)
        logger.info(
            "Timer service started: %d overdue delivered, %d armed", len(delivered), armed
        )
        return delivered

    def stop(self) -> None:
        with self._lock:
            self._running = False
            for name in list(self._armed):
                self._disarm(name)

    def fire_due(self, now: Optional[int] = None) -> list[str]:
        """
        Deliver every timer whose due time has passed.

        Entries are removed from the durable schedule first, then delivered,
        earliest first.  Returns the delivered names.
        """
        with self._lock:
            now = self._clock() if now is None else now
            schedule = self._load()
            due = sorted(
                (due_at, name) for name, due_at in schedule.items() if due_at <= now
            )
            if due:
                for _, name in due:
                    del schedule[name]
                    self._disarm(name)
                self._store.set(SCHEDULE_KEY, schedule)
            listeners = list(self._listeners)

        names = [name for _, name in due]
        for name in names:
            self._deliver(name, listeners)
        return names

    # ------------------------------------------------------------------ #
    # Private                                                              #
    # ------------------------------------------------------------------ #

    def _load(self) -> dict[str, int]:
        return dict(self._store.get(SCHEDULE_KEY) or {})

    def _arm(self, name: str, due_at: int) -> None:
        """Must be called with self._lock held."""
        delay_s = max(0.0, (due_at - self._clock()) / 1000)
        timer = threading.Timer(delay_s, self._on_thread_fire, args=(name,))
        timer.daemon = True
        # Store before start(): the thread checks identity against _armed
        self._armed[name] = timer
        timer.start()

    def _disarm(self, name: str) -> None:
        """Must be called with self._lock held."""
        timer = self._armed.pop(name, None)
        if timer is not None:
            timer.cancel()

    def _on_thread_fire(self, name: str) -> None:
        """
        Runs on a threading.Timer thread.

        Two races to handle:
          - The timer was rescheduled or cancelled after this thread was armed.
            Its entry in _armed is then a different object (or gone): stale, drop it.
          - The thread woke slightly before the wall clock reached due_at
            (sleep granularity).  Re-arm for the remainder rather than
            dropping the fire.
        """
        with self._lock:
            current = self._armed.get(name)
            if current is None or current is not threading.current_thread():
                return
            due_at = self._load().get(name)
            if due_at is None:
                self._armed.pop(name, None)
                return
            if due_at > self._clock():
                self._armed.pop(name, None)
                self._arm(name, due_at)
                return
        try:
            self.fire_due()
        except StorageError:
            # Entry is still in the schedule; the next start() delivers it.
            logger.exception("Could not deliver timer %r", name)

    def _deliver(self, name: str, listeners: list[TimerListener]) -> None:
        logger.info("Timer fired: %r", name)
        for listener in listeners:
            try:
                listener(name)
            except Exception:
                # One broken listener must not starve the others
                logger.exception("Timer listener failed for %r", name)
