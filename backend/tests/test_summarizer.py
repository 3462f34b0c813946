import json
import re
import unittest

from backend.chunking import chunk_text
from backend.errors import GatewayError, ParseFailure, ReduceFailure
from backend.llm_provider import FailureKind, ModelGateway, ProviderError, ProviderReply
from backend.prompt_manager import PromptManager
from backend.schema_models import FeatureKind
from backend.summarizer import DocumentSummarizer, dedupe_items

FINAL_REPLY = json.dumps(
    {
        "summary_short": "The document describes the onboarding process and its open tasks.",
        "highlights": ["Onboarding takes two weeks"],
        "action_items": ["Create accounts"],
        "keywords": ["onboarding"],
        "confidence": "high",
    }
)

ROADMAP_REPLY = json.dumps(
    {
        "weeks": [{"week": 1, "focus": "Accounts", "tasks": ["Create accounts"]}],
        "resources": [{"title": "Guide", "url": "https://example.com/guide"}],
        "confidence": 0.7,
    }
)


def chunk_reply(prompt):
    number = int(re.search(r"part (\d+) of", prompt.user_text).group(1))
    return json.dumps(
        {
            "chunk_summary": f"Section {number} summary.",
            "chunk_action_items": ["Review the budget", f"Task {number}"],
            "chunk_keywords": ["Budget", " budget ", f"topic{number}"],
        }
    )


class KindProvider:
    """Answers each call based on the prompt's feature kind."""

    name = "Fake"
    provider_id = "fake"
    model = "fake-model"

    def __init__(self, responses):
        self.responses = responses
        self.calls = []

    def complete(self, prompt):
        self.calls.append(prompt)
        response = self.responses[prompt.feature_kind]
        if callable(response):
            response = response(prompt)
        if isinstance(response, Exception):
            raise response
        return ProviderReply(content=response)

    def count(self, kind):
        return sum(1 for call in self.calls if call.feature_kind == kind)


class TestDocumentSummarizer(unittest.TestCase):
    def setUp(self):
        self.sleeps = []

    def _summarizer(self, responses, **kwargs):
        provider = KindProvider(responses)
        gateway = ModelGateway(provider, sleep=lambda _: None)
        summarizer = DocumentSummarizer(gateway, PromptManager(), sleep=self.sleeps.append, **kwargs)
        return provider, summarizer

    def test_short_text_uses_single_direct_call(self):
        provider, summarizer = self._summarizer({FeatureKind.DOCUMENT_FINAL: FINAL_REPLY})

        outcome = summarizer.summarize("A short memo about onboarding.")

        self.assertEqual(len(provider.calls), 1)
        self.assertEqual(outcome.strategy, "direct")
        self.assertFalse(outcome.used_fallback)
        self.assertEqual(outcome.value["kind"], "document")
        self.assertEqual(outcome.value["confidence"], 0.9)
        self.assertEqual(outcome.value["chunk_count"], 1)
        self.assertEqual(outcome.value["failed_chunks"], [])
        self.assertNotIn("generated_roadmap", outcome.value)

    def test_just_over_threshold_uses_chunked_path(self):
        text = "x" * 8004
        provider, summarizer = self._summarizer(
            {FeatureKind.DOCUMENT_CHUNK: chunk_reply, FeatureKind.DOCUMENT_FINAL: FINAL_REPLY}
        )

        outcome = summarizer.summarize(text)

        expected_chunks = len(chunk_text(text, 2000, 100))
        self.assertEqual(expected_chunks, 2)
        self.assertEqual(provider.count(FeatureKind.DOCUMENT_CHUNK), expected_chunks)
        self.assertEqual(provider.count(FeatureKind.DOCUMENT_FINAL), 1)
        self.assertEqual(outcome.strategy, "map_reduce")
        self.assertEqual(outcome.chunk_count, expected_chunks)
        self.assertEqual(self.sleeps, [0.5])

    def test_chunks_are_mapped_in_order_and_reduced_with_deduplicated_lists(self):
        provider, summarizer = self._summarizer(
            {FeatureKind.DOCUMENT_CHUNK: chunk_reply, FeatureKind.DOCUMENT_FINAL: FINAL_REPLY},
            direct_threshold_tokens=10,
            chunk_max_tokens=20,
            chunk_overlap_tokens=2,
            inter_chunk_delay=0,
        )

        summarizer.summarize("word " * 60)

        chunk_calls = [call for call in provider.calls if call.feature_kind == FeatureKind.DOCUMENT_CHUNK]
        numbers = [int(re.search(r"part (\d+) of", call.user_text).group(1)) for call in chunk_calls]
        self.assertEqual(numbers, list(range(1, len(chunk_calls) + 1)))
        reduce_prompt = provider.calls[-1].user_text
        self.assertIn("1. Section 1 summary.", reduce_prompt)
        self.assertEqual(reduce_prompt.count("Review the budget"), 1)
        self.assertIn("Keywords: Budget, topic1", reduce_prompt)
        self.assertEqual(self.sleeps, [])

    def test_failed_chunk_is_recorded_and_absorbed(self):
        def flaky_chunk(prompt):
            if "part 2 of" in prompt.user_text:
                return ProviderError(FailureKind.AUTH_ERROR, "Invalid Fake API key.")
            return chunk_reply(prompt)

        provider, summarizer = self._summarizer(
            {FeatureKind.DOCUMENT_CHUNK: flaky_chunk, FeatureKind.DOCUMENT_FINAL: FINAL_REPLY},
            direct_threshold_tokens=10,
            chunk_max_tokens=20,
            chunk_overlap_tokens=2,
        )

        outcome = summarizer.summarize("word " * 60)

        self.assertEqual(outcome.failed_chunks, [1])
        self.assertEqual(outcome.value["failed_chunks"], [1])
        self.assertTrue(any("Chunk 1 could not be summarized" in warning for warning in outcome.warnings))
        self.assertNotIn("Section 2 summary.", provider.calls[-1].user_text)

    def test_all_chunks_failing_raises_reduce_failure_without_reduce_call(self):
        provider, summarizer = self._summarizer(
            {FeatureKind.DOCUMENT_CHUNK: "no json at all", FeatureKind.DOCUMENT_FINAL: FINAL_REPLY},
            direct_threshold_tokens=10,
            chunk_max_tokens=20,
            chunk_overlap_tokens=2,
        )

        with self.assertRaises(ReduceFailure) as ctx:
            summarizer.summarize("word " * 60)

        self.assertIn("could not be summarized", str(ctx.exception))
        self.assertEqual(provider.count(FeatureKind.DOCUMENT_FINAL), 0)

    def test_reduce_failure_falls_back_to_chunk_data(self):
        provider, summarizer = self._summarizer(
            {
                FeatureKind.DOCUMENT_CHUNK: chunk_reply,
                FeatureKind.DOCUMENT_FINAL: ProviderError(FailureKind.SERVER_ERROR, "down"),
            },
            direct_threshold_tokens=10,
            chunk_max_tokens=20,
            chunk_overlap_tokens=2,
        )

        outcome = summarizer.summarize("word " * 60)

        self.assertTrue(outcome.used_fallback)
        self.assertTrue(outcome.value["is_fallback"])
        self.assertEqual(outcome.value["confidence"], 0.3)
        self.assertEqual(outcome.value["highlights"][0], "Section 1 summary.")
        self.assertLessEqual(len(outcome.value["highlights"]), 5)
        self.assertTrue(outcome.value["summary_short"].startswith("Section 1 summary. Section 2 summary."))
        self.assertEqual(outcome.value["keywords"][0], "Budget")
        self.assertEqual(len(outcome.value["action_items"]), len(set(outcome.value["action_items"])))
        self.assertTrue(any("Final summary could not be generated" in w for w in outcome.warnings))

    def test_chunks_with_only_lists_still_reach_the_reduce(self):
        list_only = json.dumps(
            {"chunk_summary": "", "chunk_action_items": ["Renew the contract"], "chunk_keywords": ["contract"]}
        )
        provider, summarizer = self._summarizer(
            {FeatureKind.DOCUMENT_CHUNK: list_only, FeatureKind.DOCUMENT_FINAL: FINAL_REPLY},
            direct_threshold_tokens=10,
            chunk_max_tokens=20,
            chunk_overlap_tokens=2,
        )

        outcome = summarizer.summarize("word " * 60)

        self.assertEqual(outcome.strategy, "map_reduce")
        self.assertEqual(outcome.failed_chunks, [])
        self.assertEqual(provider.count(FeatureKind.DOCUMENT_FINAL), 1)
        reduce_text = provider.calls[-1].user_text
        self.assertNotIn("Section summaries", reduce_text)
        self.assertIn("- Renew the contract", reduce_text)
        self.assertFalse(outcome.used_fallback)

    def test_list_only_chunk_data_builds_fallback_summary(self):
        list_only = json.dumps(
            {"chunk_summary": "", "chunk_action_items": ["Renew the contract"], "chunk_keywords": ["contract"]}
        )
        provider, summarizer = self._summarizer(
            {
                FeatureKind.DOCUMENT_CHUNK: list_only,
                FeatureKind.DOCUMENT_FINAL: ProviderError(FailureKind.SERVER_ERROR, "down"),
            },
            direct_threshold_tokens=10,
            chunk_max_tokens=20,
            chunk_overlap_tokens=2,
        )

        outcome = summarizer.summarize("word " * 60)

        self.assertTrue(outcome.used_fallback)
        self.assertEqual(outcome.value["summary_short"], "Action items: Renew the contract. Topics: contract.")
        self.assertEqual(outcome.value["highlights"], ["Renew the contract"])
        self.assertEqual(outcome.value["action_items"], ["Renew the contract"])
        self.assertEqual(outcome.value["keywords"], ["contract"])

    def test_derived_roadmap_is_attached(self):
        provider, summarizer = self._summarizer(
            {FeatureKind.DOCUMENT_FINAL: FINAL_REPLY, FeatureKind.ROADMAP: ROADMAP_REPLY}
        )

        outcome = summarizer.summarize("Short memo.", wants_derived_roadmap=True)

        self.assertEqual(outcome.value["generated_roadmap"]["weeks"][0]["focus"], "Accounts")
        roadmap_prompt = provider.calls[-1]
        self.assertEqual(roadmap_prompt.feature_kind, FeatureKind.ROADMAP)
        self.assertIn("Keywords: onboarding", roadmap_prompt.user_text)

    def test_roadmap_failure_only_adds_warning(self):
        provider, summarizer = self._summarizer(
            {FeatureKind.DOCUMENT_FINAL: FINAL_REPLY, FeatureKind.ROADMAP: "not a roadmap"}
        )

        outcome = summarizer.summarize("Short memo.", wants_derived_roadmap=True)

        self.assertNotIn("generated_roadmap", outcome.value)
        self.assertTrue(any("Roadmap could not be generated" in w for w in outcome.warnings))

    def test_direct_gateway_failure_raises(self):
        provider, summarizer = self._summarizer(
            {FeatureKind.DOCUMENT_FINAL: ProviderError(FailureKind.AUTH_ERROR, "Missing key.")}
        )

        with self.assertRaises(GatewayError) as ctx:
            summarizer.summarize("Short memo.")

        self.assertEqual(ctx.exception.kind, FailureKind.AUTH_ERROR)

    def test_direct_prose_reply_uses_rule_based_fallback(self):
        prose = (
            "The document describes the new onboarding process for staff. "
            "Managers must approve accounts within two days."
        )
        provider, summarizer = self._summarizer({FeatureKind.DOCUMENT_FINAL: prose})

        outcome = summarizer.summarize("Short memo.")

        self.assertEqual(provider.count(FeatureKind.DOCUMENT_FINAL), 3)
        self.assertTrue(outcome.used_fallback)
        self.assertTrue(outcome.value["is_fallback"])
        self.assertTrue(outcome.value["summary_short"].startswith("The document describes"))

    def test_direct_unusable_reply_raises_parse_failure(self):
        provider, summarizer = self._summarizer({FeatureKind.DOCUMENT_FINAL: "???"})

        with self.assertRaises(ParseFailure):
            summarizer.summarize("Short memo.")


class TestDedupeItems(unittest.TestCase):
    def test_case_and_whitespace_insensitive(self):
        items = ["Budget", " budget ", "BUDGET review", "budget   Review", "", "Other"]

        self.assertEqual(dedupe_items(items), ["Budget", "BUDGET review", "Other"])


if __name__ == "__main__":
    unittest.main()
