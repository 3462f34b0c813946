from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from backend.llm_provider import GatewayFailure, GatewaySuccess, ModelGateway, PromptRequest
from backend.output_recovery import Parsed, recover
from backend.output_validation import validate_feature_output
from backend.prompt_manager import PromptManager

logger = logging.getLogger(__name__)


@dataclass
class TokenUsage:
    """Token counts across model calls.

    Provider-reported counts and chars/4 estimates are accumulated separately.
    """

    prompt_tokens: int = 0
    completion_tokens: int = 0
    estimated_prompt_tokens: int = 0
    estimated_completion_tokens: int = 0
    calls: int = 0
    estimated_calls: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    @property
    def estimated_total_tokens(self) -> int:
        return self.estimated_prompt_tokens + self.estimated_completion_tokens

    @property
    def estimated(self) -> bool:
        return self.estimated_calls > 0

    def add(self, success: GatewaySuccess) -> None:
        if success.usage_estimated:
            self.estimated_prompt_tokens += success.prompt_tokens
            self.estimated_completion_tokens += success.completion_tokens
            self.estimated_calls += 1
        else:
            self.prompt_tokens += success.prompt_tokens
            self.completion_tokens += success.completion_tokens
        self.calls += 1

    def merge(self, other: TokenUsage) -> None:
        self.prompt_tokens += other.prompt_tokens
        self.completion_tokens += other.completion_tokens
        self.estimated_prompt_tokens += other.estimated_prompt_tokens
        self.estimated_completion_tokens += other.estimated_completion_tokens
        self.calls += other.calls
        self.estimated_calls += other.estimated_calls


@dataclass
class StructuredResult:
    value: dict[str, Any] | None
    raw_text: str
    warnings: list[str] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    corrective_attempts: int = 0
    failure: GatewayFailure | None = None
    unrecoverable_reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.value is not None


def request_structured(
    gateway: ModelGateway,
    prompts: PromptManager,
    prompt: PromptRequest,
    max_corrective_retries: int = 2,
) -> StructuredResult:
    """Call the model and turn its reply into a validated object.

    Unparseable replies trigger up to ``max_corrective_retries`` corrective
    re-prompts. Gateway failures end the loop and are returned on the result.
    """
    usage = TokenUsage()
    raw_text = ""
    reason: str | None = None
    current = prompt

    for attempt in range(max_corrective_retries + 1):
        outcome = gateway.invoke(current)
        if isinstance(outcome, GatewayFailure):
            return StructuredResult(
                value=None,
                raw_text=raw_text,
                usage=usage,
                corrective_attempts=attempt,
                failure=outcome,
                unrecoverable_reason=reason,
            )

        usage.add(outcome)
        raw_text = outcome.content
        recovered = recover(raw_text)
        if isinstance(recovered, Parsed):
            validation = validate_feature_output(recovered.value, prompt.feature_kind)
            return StructuredResult(
                value=validation.value,
                raw_text=raw_text,
                warnings=validation.warnings,
                usage=usage,
                corrective_attempts=attempt,
            )

        reason = recovered.reason
        if attempt < max_corrective_retries:
            logger.warning(
                "Unparseable %s output; sending corrective prompt %s/%s",
                prompt.feature_kind.value,
                attempt + 1,
                max_corrective_retries,
            )
            current = prompts.corrective_request(prompt, reason)

    return StructuredResult(
        value=None,
        raw_text=raw_text,
        warnings=[
            f"Model output for {prompt.feature_kind.value} was not valid JSON "
            f"after {max_corrective_retries} corrective retries."
        ],
        usage=usage,
        corrective_attempts=max_corrective_retries,
        unrecoverable_reason=reason,
    )
