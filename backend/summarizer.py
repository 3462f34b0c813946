from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from backend.chunking import Chunk, chunk_text, estimate_tokens
from backend.errors import ChunkMapFailure, GatewayError, ParseFailure, ReduceFailure
from backend.llm_provider import ModelGateway
from backend.output_validation import FALLBACK_CONFIDENCE, synthesize_text_fallback
from backend.prompt_manager import PromptManager
from backend.schema_models import FeatureKind
from backend.structured_output import TokenUsage, request_structured

logger = logging.getLogger(__name__)


@dataclass
class SummaryOutcome:
    value: dict[str, Any]
    usage: TokenUsage
    warnings: list[str] = field(default_factory=list)
    used_fallback: bool = False
    strategy: str = "direct"
    chunk_count: int = 1
    failed_chunks: list[int] = field(default_factory=list)


@dataclass
class ChunkSummary:
    index: int
    summary: str = ""
    action_items: list[str] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)


def dedupe_items(items: Iterable[Any]) -> list[str]:
    """Drop repeats, comparing case- and whitespace-insensitively; first spelling wins."""
    seen: set[str] = set()
    unique: list[str] = []
    for item in items:
        text = " ".join(str(item).split())
        key = text.casefold()
        if not key or key in seen:
            continue
        seen.add(key)
        unique.append(text)
    return unique


def _fallback_summary(chunk_texts: list[str], action_items: list[str], keywords: list[str]) -> str:
    if chunk_texts:
        return " ".join(chunk_texts)
    sentences = []
    if action_items:
        sentences.append("Action items: " + "; ".join(action_items) + ".")
    if keywords:
        sentences.append("Topics: " + ", ".join(keywords) + ".")
    return " ".join(sentences)


class DocumentSummarizer:
    def __init__(
        self,
        gateway: ModelGateway,
        prompts: PromptManager,
        *,
        direct_threshold_tokens: int = 2000,
        chunk_max_tokens: int = 2000,
        chunk_overlap_tokens: int = 100,
        inter_chunk_delay: float = 0.5,
        max_action_items: int = 10,
        max_keywords: int = 15,
        max_highlights: int = 5,
        max_corrective_retries: int = 2,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.gateway = gateway
        self.prompts = prompts
        self.direct_threshold_tokens = direct_threshold_tokens
        self.chunk_max_tokens = chunk_max_tokens
        self.chunk_overlap_tokens = chunk_overlap_tokens
        self.inter_chunk_delay = inter_chunk_delay
        self.max_action_items = max_action_items
        self.max_keywords = max_keywords
        self.max_highlights = max_highlights
        self.max_corrective_retries = max_corrective_retries
        self._sleep = sleep

    def summarize(self, text: str, wants_derived_roadmap: bool = False) -> SummaryOutcome:
        usage = TokenUsage()
        warnings: list[str] = []

        if estimate_tokens(text) < self.direct_threshold_tokens:
            value, used_fallback = self._summarize_direct(text, usage, warnings)
            outcome = SummaryOutcome(
                value=value,
                usage=usage,
                warnings=warnings,
                used_fallback=used_fallback,
                strategy="direct",
                chunk_count=1,
            )
        else:
            outcome = self._summarize_chunked(text, usage, warnings)

        outcome.value.update(
            {
                "kind": "document",
                "is_fallback": outcome.used_fallback,
                "strategy": outcome.strategy,
                "chunk_count": outcome.chunk_count,
                "failed_chunks": list(outcome.failed_chunks),
            }
        )
        outcome.value.pop("generated_roadmap", None)

        if wants_derived_roadmap:
            roadmap = self._derive_roadmap(outcome.value, usage, warnings)
            if roadmap is not None:
                outcome.value["generated_roadmap"] = roadmap
        return outcome

    def _summarize_direct(
        self, text: str, usage: TokenUsage, warnings: list[str]
    ) -> tuple[dict[str, Any], bool]:
        result = request_structured(
            self.gateway,
            self.prompts,
            self.prompts.build(FeatureKind.DOCUMENT_FINAL, {"text": text}),
            self.max_corrective_retries,
        )
        usage.merge(result.usage)
        warnings.extend(result.warnings)

        if result.failure is not None:
            raise GatewayError(result.failure)
        if result.value is not None:
            return result.value, False

        generic = synthesize_text_fallback(result.raw_text, FeatureKind.DOCUMENT_FINAL)
        if generic is None:
            raise ParseFailure(
                "The model response could not be read as a document summary. Please try again."
            )
        logger.warning("Using rule-based summary built from unparseable model output")
        warnings.append("Summary was built from unstructured model output.")
        return (
            {
                "summary_short": generic["summary"],
                "highlights": generic["items"][: self.max_highlights],
                "action_items": [],
                "keywords": generic["keywords"],
                "confidence": FALLBACK_CONFIDENCE,
            },
            True,
        )

    def _summarize_chunked(self, text: str, usage: TokenUsage, warnings: list[str]) -> SummaryOutcome:
        chunks = chunk_text(text, self.chunk_max_tokens, self.chunk_overlap_tokens)
        logger.info("Document split into %s chunks", len(chunks))

        summaries: list[ChunkSummary] = []
        failed_chunks: list[int] = []
        for position, chunk in enumerate(chunks):
            if position and self.inter_chunk_delay > 0:
                self._sleep(self.inter_chunk_delay)
            try:
                summaries.append(self._map_chunk(chunk, len(chunks), usage, warnings))
            except ChunkMapFailure as exc:
                logger.warning(str(exc))
                warnings.append(str(exc))
                failed_chunks.append(chunk.index)
                summaries.append(ChunkSummary(index=chunk.index))
            logger.info("Chunk %s/%s processed", position + 1, len(chunks))

        chunk_texts = [item.summary for item in summaries if item.summary.strip()]
        action_items = dedupe_items(a for item in summaries for a in item.action_items)
        keywords = dedupe_items(k for item in summaries for k in item.keywords)
        action_items = action_items[: self.max_action_items]
        keywords = keywords[: self.max_keywords]

        if not (chunk_texts or action_items or keywords):
            raise ReduceFailure(
                f"None of the {len(chunks)} document sections could be summarized, "
                "so no final summary was produced."
            )

        value, used_fallback = self._reduce(chunk_texts, action_items, keywords, usage, warnings)
        return SummaryOutcome(
            value=value,
            usage=usage,
            warnings=warnings,
            used_fallback=used_fallback,
            strategy="map_reduce",
            chunk_count=len(chunks),
            failed_chunks=failed_chunks,
        )

    def _map_chunk(
        self, chunk: Chunk, chunk_total: int, usage: TokenUsage, warnings: list[str]
    ) -> ChunkSummary:
        prompt = self.prompts.build(
            FeatureKind.DOCUMENT_CHUNK,
            {"text": chunk.text, "chunk_number": chunk.index + 1, "chunk_total": chunk_total},
        )
        result = request_structured(self.gateway, self.prompts, prompt, self.max_corrective_retries)
        usage.merge(result.usage)

        if result.failure is not None:
            raise ChunkMapFailure(chunk.index, result.failure.message)
        if result.value is None:
            raise ChunkMapFailure(chunk.index, result.unrecoverable_reason or "unreadable output")

        warnings.extend(f"Chunk {chunk.index}: {warning}" for warning in result.warnings)
        return ChunkSummary(
            index=chunk.index,
            summary=result.value["chunk_summary"],
            action_items=result.value["chunk_action_items"],
            keywords=result.value["chunk_keywords"],
        )

    def _reduce(
        self,
        chunk_texts: list[str],
        action_items: list[str],
        keywords: list[str],
        usage: TokenUsage,
        warnings: list[str],
    ) -> tuple[dict[str, Any], bool]:
        parts: list[str] = []
        if chunk_texts:
            sections = "\n".join(f"{number}. {summary}" for number, summary in enumerate(chunk_texts, 1))
            parts.append(f"Section summaries:\n{sections}")
        if action_items:
            parts.append("Action items:\n" + "\n".join(f"- {item}" for item in action_items))
        if keywords:
            parts.append("Keywords: " + ", ".join(keywords))
        reduce_text = "\n\n".join(parts)

        result = request_structured(
            self.gateway,
            self.prompts,
            self.prompts.build(FeatureKind.DOCUMENT_FINAL, {"text": reduce_text}),
            self.max_corrective_retries,
        )
        usage.merge(result.usage)

        if result.value is not None:
            warnings.extend(result.warnings)
            return result.value, False

        reason = result.failure.message if result.failure else result.unrecoverable_reason
        logger.warning("Final summary call failed (%s); building it from chunk data", reason)
        warnings.append(f"Final summary could not be generated ({reason}); built from section data.")
        return (
            {
                "summary_short": _fallback_summary(chunk_texts, action_items, keywords),
                "highlights": (chunk_texts or action_items)[: self.max_highlights],
                "action_items": action_items,
                "keywords": keywords,
                "confidence": FALLBACK_CONFIDENCE,
            },
            True,
        )

    def _derive_roadmap(
        self, summary: dict[str, Any], usage: TokenUsage, warnings: list[str]
    ) -> dict[str, Any] | None:
        goal = summary.get("summary_short", "")
        if summary.get("keywords"):
            goal += "\nKeywords: " + ", ".join(str(keyword) for keyword in summary["keywords"])

        result = request_structured(
            self.gateway,
            self.prompts,
            self.prompts.build(FeatureKind.ROADMAP, {"goal": goal}),
            self.max_corrective_retries,
        )
        usage.merge(result.usage)

        if result.value is None:
            reason = result.failure.message if result.failure else result.unrecoverable_reason
            logger.warning("Roadmap derivation failed: %s", reason)
            warnings.append(f"Roadmap could not be generated: {reason}")
            return None
        warnings.extend(f"Roadmap: {warning}" for warning in result.warnings)
        return result.value
