from __future__ import annotations

import io
import json
from email.message import Message
from urllib import error

import pytest

from governance_api.app import llm
from governance_api.app.errors import (
    ConfigurationError,
    GenerationTimeoutError,
    RateLimitError,
    ResponseError,
    TransientError,
)


class FakeResponse:
    def __init__(self, payload: object) -> None:
        self._body = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")

    def __enter__(self) -> "FakeResponse":
        return self

    def __exit__(self, *exc_info: object) -> None:
        return None

    def read(self) -> bytes:
        return self._body


def _http_error(code: int, body: str = "", retry_after: str | None = None) -> error.HTTPError:
    headers = Message()
    if retry_after is not None:
        headers["Retry-After"] = retry_after
    return error.HTTPError(
        "https://api.example.test", code, "error", headers, io.BytesIO(body.encode("utf-8"))
    )


def _patch_urlopen(monkeypatch: pytest.MonkeyPatch, outcome: object) -> list:
    requests: list = []

    def fake_urlopen(req, timeout):  # noqa: ANN001
        requests.append((req, timeout))
        if isinstance(outcome, BaseException):
            raise outcome
        return FakeResponse(outcome)

    monkeypatch.setattr(llm.request, "urlopen", fake_urlopen)
    return requests


def test_openai_adapter_sends_chat_completion(monkeypatch: pytest.MonkeyPatch) -> None:
    requests = _patch_urlopen(
        monkeypatch, {"choices": [{"message": {"content": "print('ok')"}}]}
    )
    adapter = llm.OpenAIChatCompletionsAdapter(api_key="test-key", timeout_s=12.0)

    assert adapter.generate("Format this code", "gpt-4") == "print('ok')"

    req, timeout = requests[0]
    assert timeout == 12.0
    assert req.full_url == "https://api.openai.com/v1/chat/completions"
    assert req.get_header("Authorization") == "Bearer test-key"
    body = json.loads(req.data)
    assert body["model"] == "gpt-4"
    assert body["messages"] == [{"role": "user", "content": "Format this code"}]


def test_anthropic_adapter_maps_model_and_merges_blocks(monkeypatch: pytest.MonkeyPatch) -> None:
    requests = _patch_urlopen(
        monkeypatch,
        {"content": [{"type": "text", "text": "part one "}, {"type": "text", "text": "two"}]},
    )
    adapter = llm.AnthropicMessagesAdapter(api_key="test-key")

    assert adapter.generate("Format this code", "claude-sonnet") == "part one two"

    req, _ = requests[0]
    assert req.full_url == "https://api.anthropic.com/v1/messages"
    assert req.get_header("X-api-key") == "test-key"
    assert json.loads(req.data)["model"] == llm.DEFAULT_ANTHROPIC_MODEL


def test_missing_api_key_is_configuration_error(monkeypatch: pytest.MonkeyPatch) -> None:
    requests = _patch_urlopen(monkeypatch, {})
    with pytest.raises(ConfigurationError):
        llm.OpenAIChatCompletionsAdapter(api_key="").generate("x", "gpt-4")
    with pytest.raises(ConfigurationError):
        llm.AnthropicMessagesAdapter(api_key="").generate("x", "claude-sonnet-4")
    assert requests == []


@pytest.mark.parametrize(
    ("status", "expected"),
    [
        (401, ConfigurationError),
        (403, ConfigurationError),
        (408, GenerationTimeoutError),
        (504, GenerationTimeoutError),
        (500, TransientError),
        (503, TransientError),
        (400, ResponseError),
    ],
)
def test_http_errors_are_typed(monkeypatch: pytest.MonkeyPatch, status: int, expected) -> None:
    _patch_urlopen(monkeypatch, _http_error(status, json.dumps({"error": {"message": "nope"}})))
    adapter = llm.OpenAIChatCompletionsAdapter(api_key="test-key")

    with pytest.raises(expected, match=rf"openai API error \({status}\): nope"):
        adapter.generate("x", "gpt-4")


def test_rate_limit_carries_retry_after(monkeypatch: pytest.MonkeyPatch) -> None:
    _patch_urlopen(monkeypatch, _http_error(429, "slow down", retry_after="7"))
    adapter = llm.OpenAIChatCompletionsAdapter(api_key="test-key")

    with pytest.raises(RateLimitError) as exc_info:
        adapter.generate("x", "gpt-4")

    assert exc_info.value.retry_after == 7.0
    assert exc_info.value.retryable is True


def test_rate_limit_with_http_date_retry_after(monkeypatch: pytest.MonkeyPatch) -> None:
    _patch_urlopen(
        monkeypatch, _http_error(429, "", retry_after="Wed, 21 Oct 2026 07:28:00 GMT")
    )
    with pytest.raises(RateLimitError) as exc_info:
        llm.OpenAIChatCompletionsAdapter(api_key="test-key").generate("x", "gpt-4")
    assert exc_info.value.retry_after is None


@pytest.mark.parametrize(
    ("failure", "expected"),
    [
        (TimeoutError("timed out"), GenerationTimeoutError),
        (error.URLError(TimeoutError("timed out")), GenerationTimeoutError),
        (error.URLError("connection refused"), TransientError),
    ],
)
def test_network_failures_are_typed(monkeypatch: pytest.MonkeyPatch, failure, expected) -> None:
    _patch_urlopen(monkeypatch, failure)
    with pytest.raises(expected):
        llm.OpenAIChatCompletionsAdapter(api_key="test-key").generate("x", "gpt-4")


@pytest.mark.parametrize(
    "payload",
    [b"<html>bad gateway</html>", {"choices": []}, {"choices": [{"message": {"content": ""}}]}],
)
def test_unusable_responses(monkeypatch: pytest.MonkeyPatch, payload) -> None:
    _patch_urlopen(monkeypatch, payload)
    with pytest.raises(ResponseError):
        llm.OpenAIChatCompletionsAdapter(api_key="test-key").generate("x", "gpt-4")


def test_provider_router_auto_mode() -> None:
    class Named:
        def __init__(self, name: str) -> None:
            self.name = name

        def generate(self, prompt: str, model: str) -> str:
            return f"{self.name}:{model}"

    router = llm.ProviderRouter(openai=Named("openai"), anthropic=Named("anthropic"))
    assert router.generate("x", "gpt-4") == "openai:gpt-4"
    assert router.generate("x", "claude-sonnet-4") == "anthropic:claude-sonnet-4"

    pinned = llm.ProviderRouter(
        openai=Named("openai"), anthropic=Named("anthropic"), provider="anthropic"
    )
    assert pinned.generate("x", "gpt-4") == "anthropic:gpt-4"

    with pytest.raises(ValueError):
        llm.ProviderRouter(openai=Named("a"), anthropic=Named("b"), provider="cohere")


def test_map_to_anthropic_model() -> None:
    assert llm.map_to_anthropic_model("sonnet") == llm.DEFAULT_ANTHROPIC_MODEL
    assert llm.map_to_anthropic_model("claude-3-5-haiku-latest") == "claude-3-5-haiku-latest"
    assert llm.map_to_anthropic_model("gpt-4") == llm.DEFAULT_ANTHROPIC_MODEL
