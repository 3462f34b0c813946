from __future__ import annotations

import pytest

from backend.output_validation import (
    coerce_confidence,
    normalize_confidence,
    synthesize_text_fallback,
    validate_feature_output,
)
from backend.schema_models import FeatureKind


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("medium", 0.6),
        ("HIGH", 0.9),
        ("Very High", 0.95),
        ("very-low", 0.1),
        ("low", 0.3),
        (1.5, 1.0),
        (-0.2, 0.0),
        (0.42, 0.42),
        ("0.7", 0.7),
        ("85%", 0.85),
        (None, 0.5),
        (True, 0.5),
        (float("nan"), 0.5),
        ("certain-ish", 0.5),
        ({"value": 1}, 0.5),
    ],
)
def test_coerce_confidence(raw, expected):
    assert coerce_confidence(raw) == pytest.approx(expected)


def test_normalize_confidence_returns_copy_with_default():
    original = {"summary": "x"}

    normalized = normalize_confidence(original)

    assert normalized == {"summary": "x", "confidence": 0.5}
    assert "confidence" not in original


def test_explain_output_is_coerced_with_warnings():
    value = {
        "summary": "Too short.",
        "examples": ["one", "two", "three", "four"],
        "bullets": "only bullet",
        "quiz": [{"question": "q", "answer": "a"}],
        "confidence": "high",
    }

    result = validate_feature_output(value, FeatureKind.EXPLAIN)

    assert result.value["examples"] == ["one", "two", "three"]
    assert result.value["bullets"] == ["only bullet"]
    assert result.value["keywords"] == []
    assert result.value["confidence"] == 0.9
    assert len(result.value["quiz"]) == 1
    assert any("summary" in warning and "shorter" in warning for warning in result.warnings)
    assert any("truncated to 3" in warning for warning in result.warnings)
    assert any("'quiz' has 1 items" in warning for warning in result.warnings)
    assert any("keywords" in warning for warning in result.warnings)


def test_complete_explain_output_has_no_warnings():
    value = {
        "summary": "Photosynthesis turns light, water and carbon dioxide into sugar.",
        "examples": ["leaf", "algae", "cactus"],
        "bullets": ["light matters"],
        "keywords": ["chlorophyll"],
        "quiz": [{"question": str(n), "answer": "a"} for n in range(5)],
        "confidence": 0.8,
    }

    result = validate_feature_output(value, FeatureKind.EXPLAIN)

    assert result.warnings == []
    assert result.value == value


def test_missing_text_gets_placeholder():
    result = validate_feature_output({}, FeatureKind.DOCUMENT_FINAL)

    assert result.value["summary_short"] == "Summary unavailable."
    assert result.value["highlights"] == []
    assert result.value["confidence"] == 0.5
    assert result.warnings


def test_document_final_aliases_are_applied():
    value = {
        "executive_summary": "The board approved the annual budget and two new hires.",
        "key_highlights": ["budget approved"],
        "action_items": [],
        "keywords": ["budget"],
        "confidence": 0.7,
    }

    result = validate_feature_output(value, FeatureKind.DOCUMENT_FINAL)

    assert result.value["summary_short"].startswith("The board approved")
    assert result.value["highlights"] == ["budget approved"]
    assert "executive_summary" not in result.value
    assert any("executive_summary" in warning for warning in result.warnings)


def test_document_chunk_accepts_plain_field_names():
    value = {"summary": "Section about hiring.", "action_items": "Post the job ad", "keywords": ["hiring"]}

    result = validate_feature_output(value, FeatureKind.DOCUMENT_CHUNK)

    assert result.value["chunk_summary"] == "Section about hiring."
    assert result.value["chunk_action_items"] == ["Post the job ad"]
    assert result.value["chunk_keywords"] == ["hiring"]
    assert "confidence" not in result.value


def test_rewrite_list_over_exact_length_is_truncated():
    value = {
        "rewrites": ["a", "b", "c", "d", "e"],
        "subject_suggestions": ["s"],
        "caption": "cap",
        "changes_summary": "tightened",
        "confidence": 0.6,
    }

    result = validate_feature_output(value, FeatureKind.REWRITE)

    assert result.value["rewrites"] == ["a", "b", "c"]


def test_roadmap_resources_with_private_urls_are_dropped():
    value = {
        "weeks": [{"week": 1, "focus": "basics"}],
        "resources": [
            {"title": "Docs", "url": "https://docs.python.org/3/"},
            {"title": "Internal", "url": "http://192.168.1.10/wiki"},
            {"title": "Local", "url": "http://localhost:8080"},
            {"title": "Book without link"},
        ],
        "confidence": 0.8,
    }

    result = validate_feature_output(value, FeatureKind.ROADMAP)

    titles = [entry["title"] for entry in result.value["resources"]]
    assert titles == ["Docs", "Book without link"]
    assert sum("Dropped resource" in warning for warning in result.warnings) == 2


def test_roadmap_resources_grouped_by_level_are_filtered():
    value = {
        "weeks": [],
        "resources": {
            "beginner": [{"url": "https://example.com/intro"}, {"url": "ftp://example.com/file"}],
            "advanced": {"url": "https://example.com/deep"},
        },
    }

    result = validate_feature_output(value, FeatureKind.ROADMAP)

    assert result.value["resources"] == {
        "beginner": [{"url": "https://example.com/intro"}],
        "advanced": [{"url": "https://example.com/deep"}],
    }


def test_non_object_input_never_raises():
    result = validate_feature_output(["not", "an", "object"], FeatureKind.REWRITE)

    assert result.value["rewrites"] == []
    assert result.value["caption"] == ""
    assert result.warnings


def test_synthesize_text_fallback_extracts_summary_items_and_keywords():
    raw = (
        "The report explains the quarterly budget in detail. It lists several risks for the team.\n"
        "- Hire two engineers\n"
        "- Review vendor contracts\n"
    )

    fallback = synthesize_text_fallback(raw, FeatureKind.EXPLAIN)

    assert fallback["kind"] == "generic"
    assert fallback["source_feature"] == "explain"
    assert fallback["summary"].startswith("The report explains the quarterly budget")
    assert fallback["items"] == ["Hire two engineers", "Review vendor contracts"]
    assert "quarterly" in fallback["keywords"]
    assert fallback["confidence"] == 0.3
    assert fallback["is_fallback"] is True


@pytest.mark.parametrize("raw", [None, "", "   ", "{}", "???", "ok"])
def test_synthesize_text_fallback_returns_none_without_content(raw):
    assert synthesize_text_fallback(raw, FeatureKind.REWRITE) is None
