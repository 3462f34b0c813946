from __future__ import annotations

import http.client
import json
import logging
import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable
from urllib import error, request

from backend.schema_models import FeatureKind

if TYPE_CHECKING:
    from backend.model_provider import ModelProvider

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60.0
CHARS_PER_TOKEN = 4


class FailureKind(str, Enum):
    NETWORK_ERROR = "network_error"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    AUTH_ERROR = "auth_error"
    MODEL_NOT_FOUND = "model_not_found"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        return self in (FailureKind.NETWORK_ERROR, FailureKind.RATE_LIMITED, FailureKind.SERVER_ERROR)


@dataclass(frozen=True)
class PromptRequest:
    feature_kind: FeatureKind
    system_text: str
    user_text: str
    max_tokens: int = 1024
    stop_sequences: tuple[str, ...] = ()


@dataclass(frozen=True)
class ProviderReply:
    content: str
    prompt_tokens: int | None = None
    completion_tokens: int | None = None


@dataclass(frozen=True)
class GatewaySuccess:
    content: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    usage_estimated: bool
    attempts: int
    provider: str
    model: str

    @property
    def retries(self) -> int:
        return self.attempts - 1


@dataclass(frozen=True)
class GatewayFailure:
    kind: FailureKind
    message: str
    retry_after_seconds: float | None = None
    attempts: int = 1
    status_code: int | None = None


GatewayResult = GatewaySuccess | GatewayFailure


class ProviderError(Exception):
    """A single provider call failed; classified so the gateway can decide on retries."""

    def __init__(
        self,
        kind: FailureKind,
        message: str,
        *,
        status_code: int | None = None,
        retry_after_seconds: float | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code
        self.retry_after_seconds = retry_after_seconds


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def _post_json(
    url: str,
    payload: dict[str, Any],
    headers: dict[str, str],
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> dict[str, Any]:
    body = json.dumps(payload).encode("utf-8")
    req = request.Request(url, data=body, headers=headers, method="POST")
    with request.urlopen(req, timeout=timeout) as response:
        response_body = response.read().decode("utf-8")
    return json.loads(response_body)


def _http_error_warning(provider_name: str, exc: error.HTTPError) -> str:
    response_excerpt = ""
    try:
        response_body = exc.read().decode("utf-8", errors="replace").strip()
    except Exception:
        response_body = ""

    if response_body:
        try:
            parsed = json.loads(response_body)
            if isinstance(parsed, dict):
                error_payload = parsed.get("error")
                if isinstance(error_payload, dict):
                    message = error_payload.get("message")
                    if isinstance(message, str) and message.strip():
                        response_excerpt = message.strip()
        except json.JSONDecodeError:
            response_excerpt = response_body[:200]

    if response_excerpt:
        return f"{provider_name} request failed with HTTP {exc.code}: {response_excerpt}"

    return f"{provider_name} request failed with HTTP {exc.code}."


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def _classify_http_error(provider_name: str, key_env: str, exc: error.HTTPError) -> ProviderError:
    detail = _http_error_warning(provider_name, exc)
    logger.debug(detail)
    code = exc.code

    if code == 429:
        retry_after = _parse_retry_after(exc.headers.get("Retry-After") if exc.headers else None)
        return ProviderError(
            FailureKind.RATE_LIMITED,
            f"{provider_name} rate limit exceeded.",
            status_code=code,
            retry_after_seconds=retry_after,
        )
    if code >= 500:
        return ProviderError(
            FailureKind.SERVER_ERROR,
            f"{provider_name} API is temporarily unavailable.",
            status_code=code,
        )
    if code in (401, 403):
        return ProviderError(
            FailureKind.AUTH_ERROR,
            f"Invalid {provider_name} API key. Check the {key_env} environment variable.",
            status_code=code,
        )
    if code == 404:
        return ProviderError(
            FailureKind.MODEL_NOT_FOUND,
            f"{provider_name} model not found. Check the AI_MODEL_NAME environment variable.",
            status_code=code,
        )
    return ProviderError(FailureKind.UNKNOWN, detail, status_code=code)


def _request_provider(
    provider_name: str,
    key_env: str,
    url: str,
    payload: dict[str, Any],
    headers: dict[str, str],
    timeout: float,
) -> dict[str, Any]:
    try:
        response_payload = _post_json(url, payload, headers, timeout=timeout)
    except error.HTTPError as exc:
        raise _classify_http_error(provider_name, key_env, exc) from exc
    except (error.URLError, http.client.HTTPException, OSError) as exc:
        raise ProviderError(
            FailureKind.NETWORK_ERROR,
            f"Could not reach the {provider_name} API. Check the network connection.",
        ) from exc
    except ValueError as exc:
        raise ProviderError(
            FailureKind.UNKNOWN,
            f"{provider_name} returned a response that was not valid JSON.",
        ) from exc

    if not isinstance(response_payload, dict):
        raise ProviderError(
            FailureKind.UNKNOWN,
            f"{provider_name} returned an unexpected response payload.",
        )
    return response_payload


def _missing_key_error(provider_name: str, key_env: str) -> ProviderError:
    return ProviderError(
        FailureKind.AUTH_ERROR,
        f"Missing {provider_name} API key. Set the {key_env} environment variable.",
    )


def _collect_gemini_text(response_payload: dict[str, Any]) -> str | None:
    candidates = response_payload.get("candidates") or []
    if not candidates:
        return None

    parts = (candidates[0].get("content") or {}).get("parts") or []
    extracted: list[str] = []
    for part in parts:
        text = part.get("text") if isinstance(part, dict) else None
        if isinstance(text, str) and text.strip():
            extracted.append(text.strip())

    if extracted:
        return "\n".join(extracted)
    return None


def _collect_text_parts(content: Any) -> list[str]:
    if not isinstance(content, list):
        return []

    collected: list[str] = []
    for part in content:
        if not isinstance(part, dict):
            continue

        direct_text = part.get("text")
        if isinstance(direct_text, str) and direct_text.strip():
            collected.append(direct_text.strip())
            continue

        value = part.get("value")
        if isinstance(value, str) and value.strip():
            collected.append(value.strip())

    return collected


def _extract_chat_text(response_payload: dict[str, Any]) -> str | None:
    choices = response_payload.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return None

    content = (choices[0].get("message") or {}).get("content")
    if isinstance(content, str) and content.strip():
        return content.strip()

    extracted = _collect_text_parts(content)
    if extracted:
        return "\n".join(extracted)
    return None


def _usage_value(usage: Any, key: str) -> int | None:
    if not isinstance(usage, dict):
        return None
    value = usage.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


@dataclass
class GeminiProvider:
    model: str
    api_key: str | None
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    name: str = "Gemini"
    provider_id: str = "gemini"
    key_env: str = "GEMINI_API_KEY"

    def complete(self, prompt: PromptRequest) -> ProviderReply:
        if not self.api_key:
            raise _missing_key_error(self.name, self.key_env)

        endpoint = (
            "https://generativelanguage.googleapis.com/v1beta/models/"
            f"{self.model}:generateContent?key={self.api_key}"
        )
        generation_config: dict[str, Any] = {"maxOutputTokens": prompt.max_tokens}
        if prompt.stop_sequences:
            generation_config["stopSequences"] = list(prompt.stop_sequences)
        payload = {
            "systemInstruction": {"parts": [{"text": prompt.system_text}]},
            "contents": [{"role": "user", "parts": [{"text": prompt.user_text}]}],
            "generationConfig": generation_config,
        }
        response_payload = _request_provider(
            self.name,
            self.key_env,
            endpoint,
            payload,
            {"Content-Type": "application/json"},
            self.timeout,
        )

        extracted_text = _collect_gemini_text(response_payload)
        if not extracted_text:
            raise ProviderError(FailureKind.UNKNOWN, "Gemini response did not contain text content.")

        usage = response_payload.get("usageMetadata")
        return ProviderReply(
            content=extracted_text,
            prompt_tokens=_usage_value(usage, "promptTokenCount"),
            completion_tokens=_usage_value(usage, "candidatesTokenCount"),
        )


@dataclass
class OpenAICompatibleProvider:
    """Chat-completions client shared by OpenAI and DeepSeek."""

    model: str
    api_key: str | None
    name: str = "OpenAI"
    provider_id: str = "openai"
    key_env: str = "OPENAI_API_KEY"
    base_url: str = "https://api.openai.com/v1"
    timeout: float = DEFAULT_TIMEOUT_SECONDS

    def complete(self, prompt: PromptRequest) -> ProviderReply:
        if not self.api_key:
            raise _missing_key_error(self.name, self.key_env)

        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": prompt.system_text},
                {"role": "user", "content": prompt.user_text},
            ],
            "max_tokens": prompt.max_tokens,
        }
        if prompt.stop_sequences:
            payload["stop"] = list(prompt.stop_sequences)
        response_payload = _request_provider(
            self.name,
            self.key_env,
            f"{self.base_url.rstrip('/')}/chat/completions",
            payload,
            {
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self.api_key}",
            },
            self.timeout,
        )

        extracted_text = _extract_chat_text(response_payload)
        if not extracted_text:
            raise ProviderError(
                FailureKind.UNKNOWN,
                f"{self.name} response did not contain extractable text content.",
            )

        usage = response_payload.get("usage")
        return ProviderReply(
            content=extracted_text,
            prompt_tokens=_usage_value(usage, "prompt_tokens"),
            completion_tokens=_usage_value(usage, "completion_tokens"),
        )


@dataclass
class AnthropicProvider:
    model: str
    api_key: str | None
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    name: str = "Claude"
    provider_id: str = "claude"
    key_env: str = "CLAUDE_API_KEY"
    api_version: str = "2023-06-01"

    def complete(self, prompt: PromptRequest) -> ProviderReply:
        if not self.api_key:
            raise _missing_key_error(self.name, self.key_env)

        payload: dict[str, Any] = {
            "model": self.model,
            "max_tokens": prompt.max_tokens,
            "system": prompt.system_text,
            "messages": [{"role": "user", "content": prompt.user_text}],
        }
        if prompt.stop_sequences:
            payload["stop_sequences"] = list(prompt.stop_sequences)
        response_payload = _request_provider(
            self.name,
            self.key_env,
            "https://api.anthropic.com/v1/messages",
            payload,
            {
                "Content-Type": "application/json",
                "x-api-key": self.api_key,
                "anthropic-version": self.api_version,
            },
            self.timeout,
        )

        extracted = _collect_text_parts(response_payload.get("content"))
        if not extracted:
            raise ProviderError(FailureKind.UNKNOWN, "Claude response did not contain text content.")

        usage = response_payload.get("usage")
        return ProviderReply(
            content="\n".join(extracted),
            prompt_tokens=_usage_value(usage, "input_tokens"),
            completion_tokens=_usage_value(usage, "output_tokens"),
        )


class ModelGateway:
    """Single entry point for model calls with bounded retries and backoff.

    Network errors, rate limits and server errors are retried up to
    ``max_attempts`` calls in total. Rate limits wait for ``Retry-After`` when the
    provider sends one, otherwise ``rate_limit_base_delay * 2 ** (attempt - 1)``;
    other retryable failures wait ``base_delay * 2 ** (attempt - 1)``.
    """

    def __init__(
        self,
        provider: ModelProvider,
        *,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        rate_limit_base_delay: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.provider = provider
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.rate_limit_base_delay = rate_limit_base_delay
        self._sleep = sleep

    @property
    def provider_id(self) -> str:
        return self.provider.provider_id

    @property
    def model(self) -> str:
        return self.provider.model

    def backoff_delay(self, failure: GatewayFailure, attempt: int) -> float:
        if failure.kind is FailureKind.RATE_LIMITED:
            if failure.retry_after_seconds is not None:
                return failure.retry_after_seconds
            return self.rate_limit_base_delay * 2 ** (attempt - 1)
        return self.base_delay * 2 ** (attempt - 1)

    def invoke(self, prompt: PromptRequest) -> GatewayResult:
        failure: GatewayFailure | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                reply = self.provider.complete(prompt)
            except ProviderError as exc:
                failure = GatewayFailure(
                    kind=exc.kind,
                    message=str(exc),
                    retry_after_seconds=exc.retry_after_seconds,
                    attempts=attempt,
                    status_code=exc.status_code,
                )
                logger.warning(
                    "Model call %s/%s via %s (%s) failed: %s",
                    attempt,
                    self.max_attempts,
                    self.provider.provider_id,
                    prompt.feature_kind.value,
                    exc.kind.value,
                )
                if not exc.kind.retryable or attempt == self.max_attempts:
                    return failure
                delay = self.backoff_delay(failure, attempt)
                logger.info("Retrying %s call in %.1fs", self.provider.provider_id, delay)
                self._sleep(delay)
                continue

            logger.info(
                "Model call %s/%s via %s (%s) succeeded",
                attempt,
                self.max_attempts,
                self.provider.provider_id,
                prompt.feature_kind.value,
            )
            return self._success(prompt, reply, attempt)

        return failure

    def _success(self, prompt: PromptRequest, reply: ProviderReply, attempt: int) -> GatewaySuccess:
        if reply.prompt_tokens is None or reply.completion_tokens is None:
            prompt_tokens = estimate_tokens(prompt.system_text + prompt.user_text)
            completion_tokens = estimate_tokens(reply.content)
            estimated = True
        else:
            prompt_tokens = reply.prompt_tokens
            completion_tokens = reply.completion_tokens
            estimated = False

        return GatewaySuccess(
            content=reply.content,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
            usage_estimated=estimated,
            attempts=attempt,
            provider=self.provider.provider_id,
            model=self.provider.model,
        )
