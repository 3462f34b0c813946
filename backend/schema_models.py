from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class FeatureKind(str, Enum):
    EXPLAIN = "explain"
    ROADMAP = "roadmap"
    REWRITE = "rewrite"
    DOCUMENT_CHUNK = "document-chunk"
    DOCUMENT_FINAL = "document-final"


SINGLE_SHOT_FEATURES = (FeatureKind.EXPLAIN, FeatureKind.ROADMAP, FeatureKind.REWRITE)


class ExplainResultModel(BaseModel):
    model_config = ConfigDict(extra="allow")

    kind: Literal["explain"] = "explain"
    summary: str
    examples: list[Any] = Field(default_factory=list)
    bullets: list[Any] = Field(default_factory=list)
    keywords: list[Any] = Field(default_factory=list)
    quiz: list[Any] = Field(default_factory=list)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)


class RoadmapResultModel(BaseModel):
    model_config = ConfigDict(extra="allow")

    kind: Literal["roadmap"] = "roadmap"
    weeks: list[Any] = Field(default_factory=list)
    resources: list[Any] | dict[str, Any] = Field(default_factory=list)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)


class RewriteResultModel(BaseModel):
    model_config = ConfigDict(extra="allow")

    kind: Literal["rewrite"] = "rewrite"
    rewrites: list[Any] = Field(default_factory=list)
    subject_suggestions: list[Any] = Field(default_factory=list)
    caption: str = ""
    changes_summary: str = ""
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)


class DocumentResultModel(BaseModel):
    """Final document summary, either model-synthesized or rebuilt from chunk data."""

    model_config = ConfigDict(extra="allow")

    kind: Literal["document"] = "document"
    summary_short: str
    highlights: list[Any] = Field(default_factory=list)
    action_items: list[Any] = Field(default_factory=list)
    keywords: list[Any] = Field(default_factory=list)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    is_fallback: bool = False
    strategy: str = "direct"
    chunk_count: int = 0
    failed_chunks: list[int] = Field(default_factory=list)
    generated_roadmap: dict[str, Any] | None = None


class GenericResultModel(BaseModel):
    """Rule-based result built from raw model text when no JSON could be recovered."""

    model_config = ConfigDict(extra="allow")

    kind: Literal["generic"] = "generic"
    source_feature: str
    summary: str = ""
    items: list[Any] = Field(default_factory=list)
    keywords: list[Any] = Field(default_factory=list)
    confidence: float = Field(default=0.3, ge=0.0, le=1.0)
    is_fallback: bool = True


JobResult = Annotated[
    Union[
        ExplainResultModel,
        RoadmapResultModel,
        RewriteResultModel,
        DocumentResultModel,
        GenericResultModel,
    ],
    Field(discriminator="kind"),
]

_JOB_RESULT_ADAPTER: TypeAdapter[Any] = TypeAdapter(JobResult)

RESULT_KIND_BY_FEATURE = {
    FeatureKind.EXPLAIN: "explain",
    FeatureKind.ROADMAP: "roadmap",
    FeatureKind.REWRITE: "rewrite",
    FeatureKind.DOCUMENT_FINAL: "document",
}


def validate_job_result(payload: dict[str, Any]) -> dict[str, Any]:
    """Validate a tagged job result before persisting it."""

    return _JOB_RESULT_ADAPTER.validate_python(payload).model_dump()


def job_result_json_schema() -> dict[str, Any]:
    """Expose the tagged-union JSON schema for tests and tooling."""

    return _JOB_RESULT_ADAPTER.json_schema()
