"""Text/code generation adapters.

Adapters translate provider failures into the typed errors in `errors.py` and
make exactly one request per call. Retrying is the invoker's job.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol
from urllib import error, request

from .errors import (
    ConfigurationError,
    GenerationError,
    GenerationTimeoutError,
    RateLimitError,
    ResponseError,
    TransientError,
)

logger = logging.getLogger(__name__)

DEFAULT_ANTHROPIC_MODEL = "claude-sonnet-4-20250514"
ANTHROPIC_MODEL_ALIASES = {
    "claude": DEFAULT_ANTHROPIC_MODEL,
    "claude-3-sonnet": DEFAULT_ANTHROPIC_MODEL,
    "claude-sonnet": DEFAULT_ANTHROPIC_MODEL,
    "claude-sonnet-4": DEFAULT_ANTHROPIC_MODEL,
    "sonnet": DEFAULT_ANTHROPIC_MODEL,
}
MAX_OUTPUT_TOKENS = 2000


class Generator(Protocol):
    """Interface for the external generation collaborator."""

    def generate(self, prompt: str, model: str) -> str: ...


class OpenAIChatCompletionsAdapter:
    """Small OpenAI adapter using the chat completions REST API."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        timeout_s: float = 30.0,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s

    def generate(self, prompt: str, model: str) -> str:
        if not self.api_key:
            raise ConfigurationError(
                "OpenAI API key not configured. Set GOVERNANCE_OPENAI_API_KEY or OPENAI_API_KEY."
            )
        payload = {
            "model": model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": 0.7,
            "max_tokens": MAX_OUTPUT_TOKENS,
        }
        response_json = _post_json(
            url=f"{self.base_url}/chat/completions",
            payload=payload,
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout_s=self.timeout_s,
            provider="openai",
        )
        return self._extract_content(response_json)

    @staticmethod
    def _extract_content(response_json: dict[str, Any]) -> str:
        choices = response_json.get("choices", [])
        if not choices or not isinstance(choices[0], dict):
            raise ResponseError("OpenAI response did not contain choices")

        message = choices[0].get("message") or {}
        content = message.get("content", "")
        if isinstance(content, str) and content:
            return content
        if isinstance(content, list):
            text_segments: list[str] = []
            for item in content:
                if isinstance(item, dict):
                    text = item.get("text")
                    if isinstance(text, str):
                        text_segments.append(text)
            merged = "".join(text_segments).strip()
            if merged:
                return merged
        raise ResponseError("OpenAI response content could not be parsed as text")


class AnthropicMessagesAdapter:
    """Anthropic adapter using the messages REST API."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://api.anthropic.com/v1",
        timeout_s: float = 30.0,
        api_version: str = "2023-06-01",
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.api_version = api_version

    def generate(self, prompt: str, model: str) -> str:
        if not self.api_key:
            raise ConfigurationError(
                "Anthropic API key not configured. "
                "Set GOVERNANCE_ANTHROPIC_API_KEY or ANTHROPIC_API_KEY."
            )
        payload = {
            "model": map_to_anthropic_model(model),
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": MAX_OUTPUT_TOKENS,
            "temperature": 0.7,
        }
        response_json = _post_json(
            url=f"{self.base_url}/messages",
            payload=payload,
            headers={"x-api-key": self.api_key, "anthropic-version": self.api_version},
            timeout_s=self.timeout_s,
            provider="anthropic",
        )
        return self._extract_content(response_json)

    @staticmethod
    def _extract_content(response_json: dict[str, Any]) -> str:
        blocks = response_json.get("content", [])
        if isinstance(blocks, list):
            texts = [
                block["text"]
                for block in blocks
                if isinstance(block, dict) and isinstance(block.get("text"), str)
            ]
            merged = "".join(texts).strip()
            if merged:
                return merged
        raise ResponseError("Anthropic response content could not be parsed as text")


class ProviderRouter:
    """Pick an adapter per model name.

    In "auto" mode Claude/Sonnet model ids go to Anthropic and everything else
    to OpenAI. A fixed provider sends every model to that provider.
    """

    def __init__(
        self,
        *,
        openai: Generator,
        anthropic: Generator,
        provider: str = "auto",
    ) -> None:
        if provider not in {"auto", "openai", "anthropic"}:
            raise ValueError(f"Unsupported LLM provider: {provider}")
        self.openai = openai
        self.anthropic = anthropic
        self.provider = provider

    def generate(self, prompt: str, model: str) -> str:
        return self.adapter_for(model).generate(prompt, model)

    def adapter_for(self, model: str) -> Generator:
        if self.provider == "openai":
            return self.openai
        if self.provider == "anthropic" or is_anthropic_model(model):
            return self.anthropic
        return self.openai


def is_anthropic_model(model: str) -> bool:
    lowered = model.lower()
    return "claude" in lowered or "sonnet" in lowered


def map_to_anthropic_model(model: str) -> str:
    if model in ANTHROPIC_MODEL_ALIASES:
        return ANTHROPIC_MODEL_ALIASES[model]
    if model.startswith("claude-"):
        return model
    return DEFAULT_ANTHROPIC_MODEL


def build_generator(
    *,
    provider: str,
    openai_api_key: str,
    anthropic_api_key: str,
    openai_base_url: str,
    anthropic_base_url: str,
    timeout_s: float,
) -> Generator:
    return ProviderRouter(
        openai=OpenAIChatCompletionsAdapter(
            api_key=openai_api_key,
            base_url=openai_base_url,
            timeout_s=timeout_s,
        ),
        anthropic=AnthropicMessagesAdapter(
            api_key=anthropic_api_key,
            base_url=anthropic_base_url,
            timeout_s=timeout_s,
        ),
        provider=provider,
    )


def _post_json(
    *,
    url: str,
    payload: dict[str, Any],
    headers: dict[str, str],
    timeout_s: float,
    provider: str,
) -> dict[str, Any]:
    logger.debug(
        "llm_request provider=%s model=%s timeout_s=%s", provider, payload.get("model"), timeout_s
    )
    req = request.Request(
        url=url,
        data=json.dumps(payload).encode("utf-8"),
        method="POST",
        headers={"Content-Type": "application/json", **headers},
    )
    try:
        with request.urlopen(req, timeout=timeout_s) as response:
            body = response.read().decode("utf-8")
    except error.HTTPError as exc:
        raw_error = exc.read().decode("utf-8", errors="replace")
        retry_after = exc.headers.get("Retry-After") if exc.headers else None
        raise _error_for_status(
            provider, exc.code, _provider_message(raw_error), retry_after
        ) from exc
    except TimeoutError as exc:
        raise GenerationTimeoutError(
            f"{provider} request timed out after {timeout_s:.1f}s"
        ) from exc
    except error.URLError as exc:
        if isinstance(exc.reason, TimeoutError):
            raise GenerationTimeoutError(
                f"{provider} request timed out after {timeout_s:.1f}s"
            ) from exc
        raise TransientError(f"{provider} request failed: {exc.reason}") from exc

    try:
        parsed = json.loads(body)
    except json.JSONDecodeError as exc:
        raise ResponseError(f"{provider} returned a non-JSON response") from exc
    if not isinstance(parsed, dict):
        raise ResponseError(f"{provider} returned an unexpected response shape")
    return parsed


def _error_for_status(
    provider: str, status: int, message: str, retry_after: str | None
) -> GenerationError:
    detail = f"{provider} API error ({status}): {message}"
    if status in (401, 403):
        return ConfigurationError(detail)
    if status == 429:
        return RateLimitError(detail, retry_after=_parse_retry_after(retry_after))
    if status in (408, 504):
        return GenerationTimeoutError(detail)
    if status >= 500:
        return TransientError(detail)
    return ResponseError(detail)


def _provider_message(raw_error: str) -> str:
    try:
        parsed = json.loads(raw_error)
    except json.JSONDecodeError:
        return raw_error[:200] or "Unknown error"
    if isinstance(parsed, dict):
        err = parsed.get("error")
        if isinstance(err, dict) and isinstance(err.get("message"), str):
            return err["message"]
    return "Unknown error"


def _parse_retry_after(raw: str | None) -> float | None:
    if raw is None:
        return None
    try:
        value = float(raw)
    except ValueError:
        # HTTP-date form is not worth parsing; fall back to computed backoff.
        return None
    return max(0.0, value)
