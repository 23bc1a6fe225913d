"""
Process-start wiring: settings → durable store → timers → breakers → health.

Call start_breakers() once, before any call site needs a breaker.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from breaker_registry import BreakerRegistry
from breaker_settings import BreakerSettings, configure_logging, get_settings
from clock import Clock
from durable_store import DurableStore, JsonFileDurableStore
from durable_timer import StoreBackedTimerService
from health import ConnectionStateMessage, HealthMonitor

logger = logging.getLogger(__name__)


@dataclass
class BreakerRuntime:
    settings: BreakerSettings
    store: DurableStore
    timers: StoreBackedTimerService
    registry: BreakerRegistry
    health: HealthMonitor

    def shutdown(self) -> None:
        # Only the in-process timer threads go away; the schedule stays durable
        self.timers.stop()


def start_breakers(
    settings: Optional[BreakerSettings] = None,
    sink: Optional[Callable[[ConnectionStateMessage], None]] = None,
    store: Optional[DurableStore] = None,
    clock: Optional[Clock] = None,
) -> BreakerRuntime:
    settings = settings or get_settings()
    configure_logging(settings)

    store = store if store is not None else JsonFileDurableStore(settings.state_dir)
    timers = StoreBackedTimerService(store, clock=clock)
    health = HealthMonitor(stt_services=settings.stt_services, sink=sink)

    registry = BreakerRegistry.bootstrap(
        settings.service_configs(),
        store,
        timers,
        clock=clock,
        on_state_change=health,
    )
    logger.info("Breaker runtime started with %d services", len(registry))
    return BreakerRuntime(
        settings=settings, store=store, timers=timers, registry=registry, health=health
    )
