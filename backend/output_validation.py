from __future__ import annotations

import math
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Any

from backend.sanitization import validate_url
from backend.schema_models import FeatureKind

DEFAULT_CONFIDENCE = 0.5
FALLBACK_CONFIDENCE = 0.3
TEXT_PLACEHOLDER = "Summary unavailable."

CONFIDENCE_WORDS = {
    "very high": 0.95,
    "very-high": 0.95,
    "high": 0.9,
    "medium": 0.6,
    "low": 0.3,
    "very low": 0.1,
    "very-low": 0.1,
}

_STOPWORDS = frozenset(
    """
    about above after again against because before being below between could
    doing during every first should their there these those through under until
    which while would other where whose within without into from with that this
    have will your they them than then also only such more most some what when
    """.split()
)


@dataclass(frozen=True)
class FieldRule:
    name: str
    shape: str
    aliases: tuple[str, ...] = ()
    exact_length: int | None = None
    min_length: int | None = None
    placeholder: str = ""
    string_items: bool = False


@dataclass
class ValidationResult:
    value: dict[str, Any]
    warnings: list[str] = field(default_factory=list)


FEATURE_RULES: dict[FeatureKind, tuple[FieldRule, ...]] = {
    FeatureKind.EXPLAIN: (
        FieldRule("summary", "text", min_length=40, placeholder=TEXT_PLACEHOLDER),
        FieldRule("examples", "list", exact_length=3, string_items=True),
        FieldRule("bullets", "list", aliases=("key_takeaways",)),
        FieldRule("keywords", "list"),
        FieldRule("quiz", "list", exact_length=5),
        FieldRule("confidence", "confidence"),
    ),
    FeatureKind.ROADMAP: (
        FieldRule("weeks", "list"),
        FieldRule("resources", "resources"),
        FieldRule("confidence", "confidence"),
    ),
    FeatureKind.REWRITE: (
        FieldRule("rewrites", "list", exact_length=3),
        FieldRule("subject_suggestions", "list"),
        FieldRule("caption", "text"),
        FieldRule("changes_summary", "text"),
        FieldRule("confidence", "confidence"),
    ),
    FeatureKind.DOCUMENT_CHUNK: (
        FieldRule("chunk_summary", "text", aliases=("summary",)),
        FieldRule("chunk_action_items", "list", aliases=("action_items",), string_items=True),
        FieldRule("chunk_keywords", "list", aliases=("keywords",), string_items=True),
    ),
    FeatureKind.DOCUMENT_FINAL: (
        FieldRule(
            "summary_short",
            "text",
            aliases=("executive_summary", "summary"),
            min_length=40,
            placeholder=TEXT_PLACEHOLDER,
        ),
        FieldRule("highlights", "list", aliases=("key_highlights",)),
        FieldRule("action_items", "list"),
        FieldRule("keywords", "list", string_items=True),
        FieldRule("confidence", "confidence"),
    ),
}


def coerce_confidence(raw: Any) -> float:
    if raw is None or isinstance(raw, bool):
        return DEFAULT_CONFIDENCE
    if isinstance(raw, (int, float)):
        number = float(raw)
    elif isinstance(raw, str):
        word = " ".join(raw.strip().lower().split())
        if word in CONFIDENCE_WORDS:
            return CONFIDENCE_WORDS[word]
        is_percent = word.endswith("%")
        try:
            number = float(word.rstrip("%").strip())
        except ValueError:
            return DEFAULT_CONFIDENCE
        if is_percent:
            number /= 100
    else:
        return DEFAULT_CONFIDENCE

    if math.isnan(number):
        return DEFAULT_CONFIDENCE
    return max(0.0, min(1.0, number))


def normalize_confidence(value: dict[str, Any]) -> dict[str, Any]:
    normalized = dict(value)
    normalized["confidence"] = coerce_confidence(value.get("confidence"))
    return normalized


def _take_field(value: dict[str, Any], rule: FieldRule, warnings: list[str]) -> Any:
    if value.get(rule.name) is not None:
        return value[rule.name]
    for alias in rule.aliases:
        if value.get(alias) is not None:
            warnings.append(f"Used '{alias}' for missing field '{rule.name}'.")
            return value.pop(alias)
    return None


def _coerce_text(raw: Any, rule: FieldRule, warnings: list[str]) -> str:
    if raw is None:
        warnings.append(f"Missing field '{rule.name}'; used placeholder.")
        return rule.placeholder
    if isinstance(raw, str):
        text = raw.strip()
    elif isinstance(raw, dict):
        text = "\n\n".join(str(item).strip() for item in raw.values() if isinstance(item, str))
        warnings.append(f"Field '{rule.name}' was an object; joined its text values.")
    elif isinstance(raw, list):
        text = " ".join(str(item).strip() for item in raw if isinstance(item, (str, int, float)))
        warnings.append(f"Field '{rule.name}' was a list; joined its items.")
    else:
        text = str(raw)
        warnings.append(f"Field '{rule.name}' was not text; converted it.")

    if not text:
        if rule.placeholder:
            warnings.append(f"Field '{rule.name}' was empty; used placeholder.")
        return rule.placeholder
    if rule.min_length and len(text) < rule.min_length:
        warnings.append(f"Field '{rule.name}' is shorter than {rule.min_length} characters.")
    return text


def _coerce_list(raw: Any, rule: FieldRule, warnings: list[str]) -> list[Any]:
    if raw is None:
        warnings.append(f"Missing field '{rule.name}'; defaulted to an empty list.")
        return []
    if isinstance(raw, str):
        warnings.append(f"Field '{rule.name}' was a string; wrapped it in a list.")
        items = [raw] if raw.strip() else []
    elif isinstance(raw, dict):
        warnings.append(f"Field '{rule.name}' was an object; wrapped it in a list.")
        items = [raw]
    elif isinstance(raw, list):
        items = [item for item in raw if item is not None]
    else:
        warnings.append(f"Field '{rule.name}' was not a list; defaulted to an empty list.")
        return []

    if rule.string_items:
        coerced = [item if isinstance(item, str) else str(item) for item in items]
        if coerced != items:
            warnings.append(f"Converted non-text items in '{rule.name}' to text.")
        items = coerced

    if rule.exact_length is not None:
        if len(items) > rule.exact_length:
            warnings.append(
                f"Field '{rule.name}' had {len(items)} items; truncated to {rule.exact_length}."
            )
            items = items[: rule.exact_length]
        elif len(items) < rule.exact_length:
            warnings.append(
                f"Field '{rule.name}' has {len(items)} items; expected {rule.exact_length}."
            )
    return items


def _resource_url(entry: Any) -> str | None:
    if isinstance(entry, dict):
        url = entry.get("url") or entry.get("link")
        return url if isinstance(url, str) else None
    if isinstance(entry, str) and re.match(r"^[a-zA-Z][a-zA-Z0-9+.-]*://", entry.strip()):
        return entry.strip()
    return None


def _filter_resources(entries: list[Any], warnings: list[str]) -> list[Any]:
    kept = []
    for entry in entries:
        url = _resource_url(entry)
        if url is not None and not validate_url(url):
            warnings.append(f"Dropped resource with disallowed URL: {url}")
            continue
        kept.append(entry)
    return kept


def _coerce_resources(raw: Any, rule: FieldRule, warnings: list[str]) -> list[Any] | dict[str, Any]:
    if raw is None:
        warnings.append(f"Missing field '{rule.name}'; defaulted to an empty list.")
        return []
    if isinstance(raw, list):
        return _filter_resources(raw, warnings)
    if isinstance(raw, dict):
        grouped: dict[str, Any] = {}
        for level, entries in raw.items():
            if not isinstance(entries, list):
                entries = [entries]
            grouped[level] = _filter_resources(entries, warnings)
        return grouped
    warnings.append(f"Field '{rule.name}' was not a list or mapping; defaulted to an empty list.")
    return []


def validate_feature_output(value: Any, kind: FeatureKind) -> ValidationResult:
    """Coerce a recovered object into the field layout expected for ``kind``.

    Never raises; each coercion is reported as a warning string.
    """
    warnings: list[str] = []
    if not isinstance(value, dict):
        warnings.append("Model output was not a JSON object; started from an empty object.")
        value = {}

    rules = FEATURE_RULES[kind]
    wants_confidence = any(rule.shape == "confidence" for rule in rules)
    if wants_confidence or "confidence" in value:
        if "confidence" not in value:
            warnings.append(f"Missing confidence; defaulted to {DEFAULT_CONFIDENCE}.")
        elif coerce_confidence(value["confidence"]) != value["confidence"]:
            warnings.append(f"Normalized confidence value {value['confidence']!r}.")
        value = normalize_confidence(value)
    else:
        value = dict(value)

    for rule in rules:
        if rule.shape == "confidence":
            continue
        raw = _take_field(value, rule, warnings)
        if rule.shape == "text":
            value[rule.name] = _coerce_text(raw, rule, warnings)
        elif rule.shape == "list":
            value[rule.name] = _coerce_list(raw, rule, warnings)
        elif rule.shape == "resources":
            value[rule.name] = _coerce_resources(raw, rule, warnings)

    return ValidationResult(value=value, warnings=warnings)


def _split_sentences(text: str) -> list[str]:
    prose = re.sub(r"[{}\[\]`]+", " ", text)
    prose = re.sub(r'"\s*[\w -]+"\s*:', " ", prose)
    prose = prose.replace('"', " ")
    prose = " ".join(prose.split())
    return [sentence.strip() for sentence in re.split(r"(?<=[.!?])\s+", prose) if sentence.strip()]


def _extract_keywords(text: str, limit: int = 10) -> list[str]:
    words = re.findall(r"[A-Za-z][A-Za-z-]{4,}", text.lower())
    counts = Counter(word for word in words if word not in _STOPWORDS)
    return [word for word, _ in counts.most_common(limit)]


def synthesize_text_fallback(raw_text: str | None, kind: FeatureKind) -> dict[str, Any] | None:
    """Build a ``generic`` result from raw model text with simple text rules."""
    if not raw_text or not raw_text.strip():
        return None

    items = [
        line.strip()
        for line in re.findall(r"^\s*(?:[-*•]|\d+[.)])\s+(.+)$", raw_text, flags=re.MULTILINE)
        if line.strip()
    ][:10]
    sentences = [sentence for sentence in _split_sentences(raw_text) if len(sentence.split()) >= 4]
    summary = " ".join(sentences[:3])

    if not summary and not items:
        return None

    return {
        "kind": "generic",
        "source_feature": kind.value,
        "summary": summary or items[0],
        "items": items,
        "keywords": _extract_keywords(raw_text),
        "confidence": FALLBACK_CONFIDENCE,
        "is_fallback": True,
    }
