from __future__ import annotations

import os
from typing import Protocol

from backend.llm_provider import (
    DEFAULT_TIMEOUT_SECONDS,
    AnthropicProvider,
    GeminiProvider,
    OpenAICompatibleProvider,
    PromptRequest,
    ProviderReply,
)


class ModelProvider(Protocol):
    name: str
    provider_id: str
    model: str

    def complete(self, prompt: PromptRequest) -> ProviderReply:
        ...


DEFAULT_MODELS = {
    "gemini": "gemini-1.5-flash",
    "openai": "gpt-4o-mini",
    "deepseek": "deepseek-chat",
    "claude": "claude-3-5-haiku-latest",
}

API_KEY_ENV_VARS = {
    "gemini": ("GEMINI_API_KEY", "GOOGLE_API_KEY"),
    "openai": ("OPENAI_API_KEY",),
    "deepseek": ("DEEPSEEK_API_KEY",),
    "claude": ("CLAUDE_API_KEY", "ANTHROPIC_API_KEY"),
}


def list_model_providers() -> list[str]:
    return list(DEFAULT_MODELS)


def resolve_api_key(provider_name: str) -> str | None:
    for env_var in API_KEY_ENV_VARS.get(provider_name, ()):
        value = os.getenv(env_var, "").strip()
        if value:
            return value
    return None


def get_model_provider(
    provider_name: str | None = None,
    *,
    model_name: str | None = None,
    api_key: str | None = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> ModelProvider:
    selected = (provider_name or os.getenv("AI_MODEL_PROVIDER", "gemini")).strip().lower()
    if selected not in DEFAULT_MODELS:
        raise ValueError(
            f"Unknown model provider '{selected}'. "
            f"Available providers: {', '.join(list_model_providers())}."
        )

    model = model_name or DEFAULT_MODELS[selected]
    key = api_key if api_key is not None else resolve_api_key(selected)

    if selected == "gemini":
        return GeminiProvider(model=model, api_key=key, timeout=timeout)
    if selected == "openai":
        return OpenAICompatibleProvider(model=model, api_key=key, timeout=timeout)
    if selected == "deepseek":
        return OpenAICompatibleProvider(
            model=model,
            api_key=key,
            name="DeepSeek",
            provider_id="deepseek",
            key_env="DEEPSEEK_API_KEY",
            base_url="https://api.deepseek.com/v1",
            timeout=timeout,
        )
    return AnthropicProvider(model=model, api_key=key, timeout=timeout)
