"""
LLM provider client: OpenAI-compatible /chat/completions behind a breaker.

Covers both OpenAI and OpenRouter: the request and response shapes are the
same, only the base URL and API key differ.

Error classification decides what the breaker sees:
  - 5xx, 429, timeouts, connection errors → ProviderServerError.
    The service is unhealthy: recorded as a breaker failure.
  - Other 4xx → ProviderClientError.
    Our request was wrong (bad key, bad model name).  The service answered,
    so it is NOT recorded against the breaker.
"""

import logging
from typing import Optional

import requests

from circuit_breaker import CircuitBreaker
from guarded_call import guarded_call

logger = logging.getLogger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"
OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_TIMEOUT = 30.0   # seconds


# --------------------------------------------------------------------------- #
# Exception hierarchy                                                          #
# --------------------------------------------------------------------------- #


class ProviderError(Exception):
    """Base for all provider errors."""


class ProviderServerError(ProviderError):
    """5xx / 429 / transport failure: the service is unhealthy."""


class ProviderClientError(ProviderError):
    """4xx: our fault; the service is up."""

    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


def counts_against_breaker(exc: BaseException) -> bool:
    return not isinstance(exc, ProviderClientError)


class ChatCompletionClient:
    """
    Usage:
        client = ChatCompletionClient(
            "openai", OPENAI_BASE_URL, api_key, registry.get("openai")
        )
        text = client.complete("gpt-4o-mini", "You are terse.", "Hi")

    Raises ServiceUnavailableError without touching the network while the
    breaker is OPEN.
    """

    def __init__(
        self,
        service_id: str,
        base_url: str,
        api_key: str,
        breaker: CircuitBreaker,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._service_id = service_id
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._breaker = breaker
        self._timeout = timeout
        self._session = session or requests.Session()

    @property
    def service_id(self) -> str:
        return self._service_id

    def complete(
        self,
        model: str,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int = 300,
    ) -> str:
        payload = {
            "model": model,
            "max_tokens": max_tokens,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        }
        return guarded_call(
            self._breaker, self._complete_once, payload, is_failure=counts_against_breaker
        )

    def _complete_once(self, payload: dict) -> str:
        body = self._post("/chat/completions", payload)
        try:
            content = body["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderServerError(
                f"Malformed completion from {self._service_id}: {exc!r}"
            ) from exc
        logger.info("Completion from %r succeeded", self._service_id)
        return content

    def _post(self, path: str, payload: dict) -> dict:
        url = f"{self._base_url}{path}"
        headers = {"Authorization": f"Bearer {self._api_key}"}
        try:
            # No timeout means a stalled provider pins this thread indefinitely
            response = self._session.post(url, json=payload, headers=headers, timeout=self._timeout)
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise ProviderServerError(f"{self._service_id} unreachable: {exc}") from exc

        if response.status_code == 429:
            raise ProviderServerError(f"Rate-limited by {self._service_id} (429)")

        if response.status_code >= 500:
            raise ProviderServerError(
                f"{self._service_id} server error {response.status_code}"
            )

        if response.status_code >= 400:
            raise ProviderClientError(
                f"{self._service_id} client error {response.status_code}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as exc:
            raise ProviderServerError(f"{self._service_id} returned non-JSON body") from exc
