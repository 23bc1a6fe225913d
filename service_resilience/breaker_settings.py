"""
Runtime configuration, read from BREAKER_* environment variables or a .env file.

    BREAKER_STATE_DIR=/var/lib/assistant/breakers
    BREAKER_FAILURE_THRESHOLD=5
    BREAKER_LLM_SERVICES='["openai", "openrouter"]'
"""

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from breaker_models import SERVICE_ID_PATTERN, CircuitBreakerConfig

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class BreakerSettings(BaseSettings):
    state_dir: Path = Path(".breaker_state")

    failure_threshold: int = Field(default=3, gt=0)
    recovery_timeout_ms: int = Field(default=60_000, gt=0)
    half_open_success_threshold: int = Field(default=1, gt=0)
    # Streaming STT reconnects are cheap; probe it sooner than the LLMs
    stt_recovery_timeout_ms: int = Field(default=30_000, gt=0)

    llm_services: list[str] = ["openai", "openrouter"]
    stt_services: list[str] = ["elevenlabs"]

    request_timeout_s: float = Field(default=30.0, gt=0)
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_prefix="BREAKER_", env_file=".env", extra="ignore")

    @field_validator("llm_services", "stt_services")
    @classmethod
    def service_ids_are_storage_safe(cls, v: list[str]) -> list[str]:
        bad = [sid for sid in v if not SERVICE_ID_PATTERN.fullmatch(sid)]
        if bad:
            raise ValueError(f"invalid service ids {bad!r}: use only letters, digits, '_', '.' and '-'")
        if len(set(v)) != len(v):
            raise ValueError(f"service ids listed more than once: {v!r}")
        return v

    @model_validator(mode="after")
    def services_are_llm_or_stt(self) -> "BreakerSettings":
        # One breaker per id; an id cannot carry both recovery timeouts
        both = sorted(set(self.llm_services) & set(self.stt_services))
        if both:
            raise ValueError(f"llm_services and stt_services both list {both!r}")
        return self

    def service_configs(self) -> list[CircuitBreakerConfig]:
        configs = [
            CircuitBreakerConfig(
                service_id=service_id,
                failure_threshold=self.failure_threshold,
                recovery_timeout_ms=self.recovery_timeout_ms,
                half_open_success_threshold=self.half_open_success_threshold,
            )
            for service_id in self.llm_services
        ]
        configs.extend(
            CircuitBreakerConfig(
                service_id=service_id,
                failure_threshold=self.failure_threshold,
                recovery_timeout_ms=self.stt_recovery_timeout_ms,
                half_open_success_threshold=self.half_open_success_threshold,
            )
            for service_id in self.stt_services
        )
        return configs


@lru_cache
def get_settings() -> BreakerSettings:
    return BreakerSettings()


def configure_logging(settings: BreakerSettings) -> None:
    logging.basicConfig(level=settings.log_level.upper(), format=LOG_FORMAT)
