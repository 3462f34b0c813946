import json

import pytest

from backend.errors import GatewayError, ParseFailure
from backend.features import FeatureRunner
from backend.llm_provider import FailureKind, ModelGateway, ProviderError, ProviderReply
from backend.prompt_manager import PromptManager
from backend.schema_models import FeatureKind


class RepeatingProvider:
    name = "Fake"
    provider_id = "fake"
    model = "fake-model"

    def __init__(self, reply):
        self.reply = reply
        self.calls = 0

    def complete(self, prompt):
        self.calls += 1
        if isinstance(self.reply, Exception):
            raise self.reply
        return ProviderReply(content=self.reply)


def _runner(reply):
    provider = RepeatingProvider(reply)
    return provider, FeatureRunner(ModelGateway(provider, sleep=lambda _: None), PromptManager())


def test_explain_result_is_tagged_and_validated():
    reply = json.dumps(
        {
            "kind": "something-else",
            "summary": "Inflation is the general rise of prices over a period of time.",
            "examples": ["bread", "rent", "fuel"],
            "bullets": ["Prices rise"],
            "keywords": ["inflation"],
            "quiz": [{"question": "q", "answer": "a"}] * 5,
            "confidence": "90%",
        }
    )
    provider, runner = _runner(reply)

    outcome = runner.run(FeatureKind.EXPLAIN, {"text": "What is inflation?"})

    assert outcome.value["kind"] == "explain"
    assert outcome.value["confidence"] == pytest.approx(0.9)
    assert outcome.used_fallback is False
    assert outcome.usage.calls == 1


def test_rewrite_reply_wrapped_in_fence_is_recovered():
    reply = (
        "Here you go:\n```json\n"
        '{"rewrites": ["A", "B", "C", "D"], "subject_suggestions": [], "caption": "c",'
        ' "changes_summary": "s", "confidence": 0.8,}\n```'
    )
    provider, runner = _runner(reply)

    outcome = runner.run(FeatureKind.REWRITE, {"text": "hey send it", "tone": "formal"})

    assert outcome.value["kind"] == "rewrite"
    assert outcome.value["rewrites"] == ["A", "B", "C"]
    assert any("truncated" in warning for warning in outcome.warnings)


def test_gateway_failure_raises_gateway_error():
    provider, runner = _runner(ProviderError(FailureKind.MODEL_NOT_FOUND, "Model not found."))

    with pytest.raises(GatewayError) as exc_info:
        runner.run(FeatureKind.ROADMAP, {"goal": "Learn Rust"})

    assert exc_info.value.kind == FailureKind.MODEL_NOT_FOUND
    assert provider.calls == 1


def test_prose_reply_becomes_generic_fallback():
    prose = "Week one covers ownership and borrowing basics.\n1. Read the book\n2. Write a CLI tool"
    provider, runner = _runner(prose)

    outcome = runner.run(FeatureKind.ROADMAP, {"goal": "Learn Rust"})

    assert provider.calls == 3
    assert outcome.used_fallback is True
    assert outcome.value["kind"] == "generic"
    assert outcome.value["source_feature"] == "roadmap"
    assert outcome.value["items"] == ["Read the book", "Write a CLI tool"]


def test_unusable_reply_raises_parse_failure():
    provider, runner = _runner("...")

    with pytest.raises(ParseFailure):
        runner.run(FeatureKind.EXPLAIN, {"text": "x"})


def test_document_kinds_are_rejected():
    provider, runner = _runner("{}")

    with pytest.raises(ValueError):
        runner.run(FeatureKind.DOCUMENT_FINAL, {"text": "x"})
