"""
Pydantic v2 models for the circuit breaker state machine.

Three shapes:
  - CircuitState:          the three states the machine cycles through forever.
  - CircuitBreakerConfig:  immutable per-service tuning, supplied at construction.
  - PersistedCircuitState: the durable projection of live state: the only thing
                           that survives the host process being killed.

The persisted shape uses camelCase keys:

    {"state": "OPEN", "failureCount": 3, "successCount": 0,
     "lastFailureTime": 1718000000000, "openedAt": 1718000000000}

Records already written by earlier installations use exactly these keys, so the
aliases are part of the storage contract, not a style choice.  Internal code
uses the snake_case attribute names.
"""

import re
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# service_id ends up in the storage key "circuit_<service_id>", so it is
# restricted to characters every DurableStore backend accepts in a key.
SERVICE_ID_PATTERN = re.compile(r"[A-Za-z0-9_.-]+")


class CircuitState(str, Enum):
    CLOSED    = "CLOSED"      # Normal: calls pass through
    OPEN      = "OPEN"        # Failing: calls are rejected immediately
    HALF_OPEN = "HALF_OPEN"   # Probing: calls pass through while recovery is tested


class CircuitBreakerConfig(BaseModel):
    """
    Tuning for one protected service.

    Frozen: a breaker's thresholds never change underneath it.  To retune a
    service, build a new registry at the next process start; the persisted
    counters carry over because they are keyed by service_id only.
    """

    model_config = ConfigDict(frozen=True)

    service_id: str
    failure_threshold: int = Field(gt=0)
    recovery_timeout_ms: int = Field(gt=0)
    half_open_success_threshold: int = Field(gt=0)

    @field_validator("service_id")
    @classmethod
    def service_id_is_storage_safe(cls, v: str) -> str:
        if not SERVICE_ID_PATTERN.fullmatch(v):
            raise ValueError(
                f"service_id {v!r} must be non-empty and use only letters, digits, '_', '.' and '-'"
            )
        return v


class PersistedCircuitState(BaseModel):
    """
    Serialisable snapshot of one breaker.

    Invariant enforced on every construction (including reads from storage):
    opened_at is set if and only if the state is OPEN.
    """

    model_config = ConfigDict(populate_by_name=True)

    state: CircuitState = CircuitState.CLOSED
    failure_count: int = Field(default=0, ge=0, alias="failureCount")
    success_count: int = Field(default=0, ge=0, alias="successCount")
    last_failure_time: int = Field(default=0, ge=0, alias="lastFailureTime")
    opened_at: Optional[int] = Field(default=None, ge=0, alias="openedAt")

    @model_validator(mode="after")
    def opened_at_matches_state(self) -> "PersistedCircuitState":
        if (self.state == CircuitState.OPEN) != (self.opened_at is not None):
            raise ValueError(
                f"openedAt must be set exactly when state is OPEN "
                f"(state={self.state.value}, openedAt={self.opened_at})"
            )
        return self

    def to_record(self) -> dict:
        """JSON-safe dict in the stored (camelCase) shape."""
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_record(cls, record: dict) -> "PersistedCircuitState":
        """Validate a stored dict.  Raises pydantic.ValidationError if malformed."""
        return cls.model_validate(record)
