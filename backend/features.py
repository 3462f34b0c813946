from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from backend.errors import GatewayError, ParseFailure
from backend.llm_provider import ModelGateway
from backend.output_validation import synthesize_text_fallback
from backend.prompt_manager import PromptManager
from backend.schema_models import RESULT_KIND_BY_FEATURE, SINGLE_SHOT_FEATURES, FeatureKind
from backend.structured_output import TokenUsage, request_structured

logger = logging.getLogger(__name__)


@dataclass
class FeatureOutcome:
    value: dict[str, Any]
    usage: TokenUsage
    warnings: list[str] = field(default_factory=list)
    used_fallback: bool = False


class FeatureRunner:
    """Runs one-call features (explain, roadmap, rewrite)."""

    def __init__(self, gateway: ModelGateway, prompts: PromptManager, max_corrective_retries: int = 2):
        self.gateway = gateway
        self.prompts = prompts
        self.max_corrective_retries = max_corrective_retries

    def run(self, kind: FeatureKind, params: dict[str, Any]) -> FeatureOutcome:
        if kind not in SINGLE_SHOT_FEATURES:
            raise ValueError(f"'{kind.value}' is not a single-shot feature.")

        result = request_structured(
            self.gateway,
            self.prompts,
            self.prompts.build(kind, params),
            self.max_corrective_retries,
        )
        if result.failure is not None:
            raise GatewayError(result.failure)

        if result.value is not None:
            value = dict(result.value)
            value["kind"] = RESULT_KIND_BY_FEATURE[kind]
            return FeatureOutcome(value=value, usage=result.usage, warnings=result.warnings)

        generic = synthesize_text_fallback(result.raw_text, kind)
        if generic is None:
            raise ParseFailure(
                f"The model response for {kind.value} could not be read. Please try again."
            )
        logger.warning("Using rule-based %s result built from unparseable model output", kind.value)
        return FeatureOutcome(
            value=generic,
            usage=result.usage,
            warnings=[*result.warnings, "Result was built from unstructured model output."],
            used_fallback=True,
        )
