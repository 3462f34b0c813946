from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any

from backend.llm_provider import PromptRequest
from backend.schema_models import FeatureKind

JSON_ONLY = "Respond with exactly one JSON object. Do not add prose or code fences."


@dataclass(frozen=True)
class PromptProfile:
    system_text: str
    template: str
    max_tokens: int
    defaults: dict[str, Any] = field(default_factory=dict)
    stop_sequences: tuple[str, ...] = ()


DEFAULT_PROFILES: dict[FeatureKind, PromptProfile] = {
    FeatureKind.EXPLAIN: PromptProfile(
        system_text=f"You explain texts to learners. {JSON_ONLY}",
        template=(
            "Explain the text below. Return JSON with the keys "
            '"summary" (string), "examples" (exactly 3 strings), "bullets" (list of strings), '
            '"keywords" (list of strings), "quiz" (exactly 5 objects with "question" and "answer") '
            'and "confidence" (number between 0 and 1).\n\nText:\n{text}'
        ),
        max_tokens=1500,
    ),
    FeatureKind.ROADMAP: PromptProfile(
        system_text=f"You plan study roadmaps. {JSON_ONLY}",
        template=(
            "Create a {weeks}-week learning roadmap for the goal below at {level} level. "
            'Return JSON with the keys "weeks" (list of objects with "week", "focus" and "tasks"), '
            '"resources" (list of objects with "title" and "url") and "confidence" '
            "(number between 0 and 1).\n\nGoal:\n{goal}"
        ),
        max_tokens=1800,
        defaults={"weeks": 4, "level": "beginner"},
    ),
    FeatureKind.REWRITE: PromptProfile(
        system_text=f"You rewrite texts for clarity. {JSON_ONLY}",
        template=(
            "Rewrite the text below in a {tone} tone. Return JSON with the keys "
            '"rewrites" (exactly 3 strings), "subject_suggestions" (list of strings), '
            '"caption" (string), "changes_summary" (string) and "confidence" '
            "(number between 0 and 1).\n\nText:\n{text}"
        ),
        max_tokens=1500,
        defaults={"tone": "professional"},
    ),
    FeatureKind.DOCUMENT_CHUNK: PromptProfile(
        system_text=f"You summarize one part of a longer document. {JSON_ONLY}",
        template=(
            "This is part {chunk_number} of {chunk_total}. Return JSON with the keys "
            '"chunk_summary" (string), "chunk_action_items" (list of strings) and '
            '"chunk_keywords" (list of strings).\n\nText:\n{text}'
        ),
        max_tokens=800,
        defaults={"chunk_number": 1, "chunk_total": 1},
    ),
    FeatureKind.DOCUMENT_FINAL: PromptProfile(
        system_text=f"You write executive summaries of documents. {JSON_ONLY}",
        template=(
            "Summarize the document below. Return JSON with the keys "
            '"summary_short" (2-4 sentences), "highlights" (list of strings), '
            '"action_items" (list of strings), "keywords" (list of strings) and '
            '"confidence" (number between 0 and 1).\n\nDocument:\n{text}'
        ),
        max_tokens=1500,
    ),
}


class PromptManager:
    """Builds ``PromptRequest`` objects from per-feature profiles."""

    def __init__(self, profiles: dict[FeatureKind, PromptProfile] | None = None):
        self.profiles = dict(profiles or DEFAULT_PROFILES)

    def build(self, kind: FeatureKind, params: dict[str, Any] | str) -> PromptRequest:
        profile = self.profiles.get(kind)
        if profile is None:
            raise ValueError(f"No prompt profile registered for '{kind.value}'.")

        values = dict(profile.defaults)
        values.update({"text": params} if isinstance(params, str) else params)
        try:
            user_text = profile.template.format(**values)
        except KeyError as exc:
            raise ValueError(f"Missing prompt parameter {exc} for '{kind.value}'.") from exc

        return PromptRequest(
            feature_kind=kind,
            system_text=profile.system_text,
            user_text=user_text,
            max_tokens=profile.max_tokens,
            stop_sequences=profile.stop_sequences,
        )

    def corrective_request(self, original: PromptRequest, reason: str) -> PromptRequest:
        return replace(
            original,
            user_text=(
                f"{original.user_text}\n\n"
                f"Your previous reply could not be parsed ({reason}). "
                "Reply again with only one valid JSON object using the keys requested above."
            ),
        )
