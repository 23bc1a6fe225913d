"""
Tests for call-site integration: guarded_call and the chat-completion client.

  - responses library: declarative HTTP mocking, no real network traffic
  - A real breaker (not a mock) underneath, so the tests check what the
    breaker ends up believing about the service
"""

import json
from unittest.mock import MagicMock

import pytest
import requests
import responses as responses_lib  # aliased to avoid name clash with pytest fixture

from breaker_models import CircuitState
from durable_store import StorageError
from guarded_call import ServiceUnavailableError, guarded_call
from provider_client import (
    OPENAI_BASE_URL,
    ChatCompletionClient,
    ProviderClientError,
    ProviderServerError,
)

URL = f"{OPENAI_BASE_URL}/chat/completions"

COMPLETION = {"choices": [{"message": {"role": "assistant", "content": "Hello there"}}]}


@pytest.fixture()
def breaker(make_breaker):
    return make_breaker(failure_threshold=2, half_open_success_threshold=1)


@pytest.fixture()
def client(breaker) -> ChatCompletionClient:
    return ChatCompletionClient("openai", OPENAI_BASE_URL, "sk-test", breaker, timeout=1.0)


# --------------------------------------------------------------------------- #
# 1. guarded_call                                                              #
# --------------------------------------------------------------------------- #


class TestGuardedCall:
    def test_success_returns_result_and_resets_failures(self, breaker):
        breaker.record_failure()
        assert guarded_call(breaker, lambda x: x * 2, 21) == 42
        assert breaker.failure_count == 0

    def test_failure_is_recorded_and_reraised(self, breaker):
        with pytest.raises(ZeroDivisionError):
            guarded_call(breaker, lambda: 1 / 0)
        assert breaker.failure_count == 1

    def test_open_breaker_fast_fails_without_calling(self, breaker):
        breaker.record_failure()
        breaker.record_failure()
        fn = MagicMock()

        with pytest.raises(ServiceUnavailableError) as excinfo:
            guarded_call(breaker, fn)

        fn.assert_not_called()
        assert excinfo.value.service_id == "openai"
        assert "temporarily unavailable" in str(excinfo.value)

    def test_is_failure_filters_what_counts(self, breaker):
        with pytest.raises(KeyError):
            guarded_call(breaker, MagicMock(side_effect=KeyError("x")),
                         is_failure=lambda exc: not isinstance(exc, KeyError))
        assert breaker.failure_count == 0

    def test_storage_error_after_success_keeps_the_result(self, breaker, store):
        breaker.record_failure()
        store.fail_next_writes(1)
        assert guarded_call(breaker, lambda: "ok") == "ok"
        assert breaker.failure_count == 0   # in memory, even though the write failed

    def test_storage_error_after_failure_keeps_the_original_error(self, breaker, store):
        store.fail_next_writes(1)
        with pytest.raises(ZeroDivisionError):
            guarded_call(breaker, lambda: 1 / 0)
        assert breaker.failure_count == 1

    def test_storage_error_is_not_swallowed_outside_guarded_call(self, breaker, store):
        store.fail_next_writes(1)
        with pytest.raises(StorageError):
            breaker.record_failure()


# --------------------------------------------------------------------------- #
# 2. ChatCompletionClient                                                      #
# --------------------------------------------------------------------------- #


class TestChatCompletionClient:
    @responses_lib.activate
    def test_successful_completion(self, client, breaker):
        responses_lib.add(responses_lib.POST, URL, json=COMPLETION, status=200)

        assert client.complete("gpt-4o-mini", "sys", "hi") == "Hello there"

        sent = responses_lib.calls[0].request
        assert sent.headers["Authorization"] == "Bearer sk-test"
        assert json.loads(sent.body)["model"] == "gpt-4o-mini"
        assert breaker.state == CircuitState.CLOSED

    @responses_lib.activate
    @pytest.mark.parametrize("status", [500, 502, 503, 429])
    def test_server_errors_count_against_the_breaker(self, client, breaker, status):
        responses_lib.add(responses_lib.POST, URL, json={"error": "down"}, status=status)

        with pytest.raises(ProviderServerError):
            client.complete("gpt-4o-mini", "sys", "hi")

        assert breaker.failure_count == 1

    @responses_lib.activate
    @pytest.mark.parametrize("status", [400, 401, 404])
    def test_client_errors_do_not_count_against_the_breaker(self, client, breaker, status):
        responses_lib.add(responses_lib.POST, URL, json={"error": "bad"}, status=status)

        with pytest.raises(ProviderClientError) as excinfo:
            client.complete("gpt-4o-mini", "sys", "hi")

        assert excinfo.value.status_code == status
        assert breaker.failure_count == 0

    @responses_lib.activate
    def test_connection_error_counts_as_server_error(self, client, breaker):
        responses_lib.add(responses_lib.POST, URL, body=requests.ConnectionError("refused"))

        with pytest.raises(ProviderServerError):
            client.complete("gpt-4o-mini", "sys", "hi")

        assert breaker.failure_count == 1

    @responses_lib.activate
    def test_malformed_body_counts_as_failure(self, client, breaker):
        responses_lib.add(responses_lib.POST, URL, json={"choices": []}, status=200)

        with pytest.raises(ProviderServerError):
            client.complete("gpt-4o-mini", "sys", "hi")

        assert breaker.failure_count == 1

    @responses_lib.activate
    def test_repeated_outage_opens_the_circuit_and_stops_traffic(self, client, breaker):
        responses_lib.add(responses_lib.POST, URL, status=503)

        for _ in range(2):
            with pytest.raises(ProviderServerError):
                client.complete("gpt-4o-mini", "sys", "hi")
        assert breaker.state == CircuitState.OPEN

        with pytest.raises(ServiceUnavailableError):
            client.complete("gpt-4o-mini", "sys", "hi")
        assert len(responses_lib.calls) == 2   # third call never hit the network

    @responses_lib.activate
    def test_half_open_probe_success_closes_the_circuit(self, client, breaker):
        breaker.record_failure()
        breaker.record_failure()
        breaker.transition_to_half_open()
        responses_lib.add(responses_lib.POST, URL, json=COMPLETION, status=200)

        client.complete("gpt-4o-mini", "sys", "hi")

        assert breaker.state == CircuitState.CLOSED
