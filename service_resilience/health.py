"""
Connection-health notifications for the overlay.

Breaker transitions are translated into the CONNECTION_STATE messages the
overlay's health indicator renders:

    OPEN      → error        "Service temporarily unavailable"
    HALF_OPEN → reconnecting "Testing service recovery..."
    CLOSED    → connected    (indicator hides the badge)

The indicator only shows problems, so HealthMonitor keeps the latest
non-connected status per service and drops it once the service reconnects.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Optional

from breaker_models import CircuitState

logger = logging.getLogger(__name__)

STT_SERVICE = "stt-tab"
LLM_SERVICE = "llm"


class ConnectionStatus(str, Enum):
    CONNECTED    = "connected"
    RECONNECTING = "reconnecting"
    ERROR        = "error"


@dataclass(frozen=True)
class ConnectionStateMessage:
    service: str
    state: ConnectionStatus
    error: Optional[str] = None


@dataclass(frozen=True)
class HealthIssue:
    service_id: str
    service: str
    status: ConnectionStatus
    message: str


_STATUS_BY_CIRCUIT: dict[CircuitState, tuple[ConnectionStatus, Optional[str]]] = {
    CircuitState.OPEN:      (ConnectionStatus.ERROR, "Service temporarily unavailable"),
    CircuitState.HALF_OPEN: (ConnectionStatus.RECONNECTING, "Testing service recovery..."),
    CircuitState.CLOSED:    (ConnectionStatus.CONNECTED, None),
}


def to_connection_state(
    service_id: str, state: CircuitState, stt_services: Iterable[str]
) -> ConnectionStateMessage:
    service = STT_SERVICE if service_id in set(stt_services) else LLM_SERVICE
    status, error = _STATUS_BY_CIRCUIT[state]
    return ConnectionStateMessage(service=service, state=status, error=error)


class HealthMonitor:
    """
    State-change callback that feeds the health indicator.

    Usage:
        monitor = HealthMonitor(stt_services=["elevenlabs"], sink=broadcast)
        registry.set_state_change_callback(monitor)
    """

    def __init__(
        self,
        stt_services: Iterable[str],
        sink: Optional[Callable[[ConnectionStateMessage], None]] = None,
    ) -> None:
        self._stt_services = frozenset(stt_services)
        self._sink = sink
        self._issues: dict[str, HealthIssue] = {}
        self._lock = threading.Lock()

    def __call__(self, service_id: str, state: CircuitState) -> None:
        message = to_connection_state(service_id, state, self._stt_services)
        with self._lock:
            if message.state == ConnectionStatus.CONNECTED:
                self._issues.pop(service_id, None)
            else:
                self._issues[service_id] = HealthIssue(
                    service_id=service_id,
                    service=message.service,
                    status=message.state,
                    message=message.error or "",
                )
        logger.info("Connection state for %r: %s", service_id, message.state.value)
        if self._sink is not None:
            self._sink(message)

    def issues(self) -> list[HealthIssue]:
        with self._lock:
            return [self._issues[sid] for sid in sorted(self._issues)]
