"""Job lifecycle for document and single-shot feature requests.

A job moves ``pending -> processing -> complete | failed`` and never leaves a
terminal state. Only :class:`JobOrchestrator` writes job records; everything
else reads them through :meth:`JobOrchestrator.get_job`.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable
from uuid import uuid4

from backend.chunking import clean_text
from backend.errors import (
    GatewayError,
    InvalidJobTransition,
    JobFatal,
    JobNotFound,
    PipelineError,
)
from backend.features import FeatureRunner
from backend.job_store import InMemoryJobStore, JobStore, JsonFileJobStore
from backend.llm_provider import FailureKind, ModelGateway
from backend.model_provider import get_model_provider
from backend.pipeline_config import PipelineSettings
from backend.prompt_manager import PromptManager
from backend.sanitization import sanitize
from backend.schema_models import FeatureKind, validate_job_result
from backend.structured_output import TokenUsage
from backend.summarizer import DocumentSummarizer
from backend.telemetry import estimate_cost_usd, log_request

logger = logging.getLogger(__name__)

INPUT_PREVIEW_CHARS = 500


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"


_ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.PROCESSING},
    JobStatus.PROCESSING: {JobStatus.COMPLETE, JobStatus.FAILED},
    JobStatus.COMPLETE: set(),
    JobStatus.FAILED: set(),
}


@dataclass
class JobMetrics:
    duration_ms: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated_prompt_tokens: int = 0
    estimated_completion_tokens: int = 0
    estimated_total_tokens: int = 0
    tokens_estimated: bool = False
    provider: str = ""
    model: str = ""
    confidence: float | None = None
    used_fallback: bool = False
    strategy: str | None = None
    chunk_count: int = 0
    estimated_cost_usd: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_job_id() -> str:
    return f"req_{uuid4()}"


def _input_preview(params: dict[str, Any]) -> dict[str, Any]:
    preview: dict[str, Any] = {}
    for key, value in params.items():
        if isinstance(value, str) and len(value) > INPUT_PREVIEW_CHARS:
            preview[key] = value[:INPUT_PREVIEW_CHARS]
            preview[f"{key}_characters"] = len(value)
        else:
            preview[key] = value
    return sanitize(preview)


def describe_failure(exc: BaseException) -> str:
    """Rewrite an exception into a message that tells the requester what to do."""
    if isinstance(exc, GatewayError):
        if exc.kind is FailureKind.AUTH_ERROR:
            return f"Model provider credentials are invalid or missing. {exc}"
        if exc.kind is FailureKind.RATE_LIMITED:
            return "Model provider rate limit exceeded. Please wait a minute and try again."
        if exc.kind in (FailureKind.SERVER_ERROR, FailureKind.NETWORK_ERROR):
            return "Model provider is temporarily unavailable. Please try again in a few minutes."
        if exc.kind is FailureKind.MODEL_NOT_FOUND:
            return f"The configured model is not available. {exc}"
        return f"The model request failed. {exc}"
    if isinstance(exc, PipelineError):
        return str(exc)
    return "Processing failed because of an internal error. Please try again."


def _log_unhandled_job_error(future: Future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error("Document job ended without recording its outcome", exc_info=exc)


class JobOrchestrator:
    def __init__(
        self,
        store: JobStore,
        summarizer: DocumentSummarizer,
        feature_runner: FeatureRunner,
        *,
        provider_name: str,
        model_name: str,
        executor: Executor | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.summarizer = summarizer
        self.feature_runner = feature_runner
        self.provider_name = provider_name
        self.model_name = model_name
        self.executor = executor or ThreadPoolExecutor(max_workers=4, thread_name_prefix="pipeline-job")
        self._clock = clock

    def _create_job(self, kind: FeatureKind, params: dict[str, Any]) -> dict[str, Any]:
        now = _utc_now()
        record = {
            "id": new_job_id(),
            "feature_kind": kind.value,
            "status": JobStatus.PENDING.value,
            "input": _input_preview(params),
            "result": None,
            "error_message": None,
            "warnings": [],
            "metrics": JobMetrics(provider=self.provider_name, model=self.model_name).to_dict(),
            "created_at": now,
            "updated_at": now,
        }
        logger.info("Job %s created (%s)", record["id"], kind.value)
        return self.store.create(record)

    def _transition(
        self, job_id: str, status: JobStatus, fields: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        job = self.get_job(job_id)
        current = JobStatus(job["status"])
        if status not in _ALLOWED_TRANSITIONS[current]:
            raise InvalidJobTransition(
                f"Job {job_id} cannot move from {current.value} to {status.value}."
            )
        payload = dict(fields or {})
        payload.update({"status": status.value, "updated_at": _utc_now()})
        logger.info("Job %s: %s -> %s", job_id, current.value, status.value)
        return self.store.update(job_id, payload)

    def _elapsed_ms(self, started: float) -> int:
        return int((self._clock() - started) * 1000)

    def _fail(self, job_id: str, exc: BaseException, started: float) -> dict[str, Any]:
        logger.exception("Job %s failed", job_id)
        if self.get_job(job_id)["status"] == JobStatus.PENDING.value:
            self._transition(job_id, JobStatus.PROCESSING)
        metrics = JobMetrics(
            duration_ms=self._elapsed_ms(started),
            provider=self.provider_name,
            model=self.model_name,
        )
        return self._transition(
            job_id,
            JobStatus.FAILED,
            {"error_message": describe_failure(exc), "metrics": metrics.to_dict()},
        )

    def _complete(
        self,
        job_id: str,
        started: float,
        value: dict[str, Any],
        usage: TokenUsage,
        warnings: list[str],
        used_fallback: bool,
        strategy: str | None = None,
        chunk_count: int = 0,
    ) -> dict[str, Any]:
        result = validate_job_result(sanitize(value))
        metrics = JobMetrics(
            duration_ms=self._elapsed_ms(started),
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
            estimated_prompt_tokens=usage.estimated_prompt_tokens,
            estimated_completion_tokens=usage.estimated_completion_tokens,
            estimated_total_tokens=usage.estimated_total_tokens,
            tokens_estimated=usage.estimated,
            provider=self.provider_name,
            model=self.model_name,
            confidence=result.get("confidence"),
            used_fallback=used_fallback,
            strategy=strategy,
            chunk_count=chunk_count,
            estimated_cost_usd=round(
                estimate_cost_usd(usage.prompt_tokens, usage.completion_tokens)
                + estimate_cost_usd(usage.estimated_prompt_tokens, usage.estimated_completion_tokens),
                6,
            ),
        )
        return self._transition(
            job_id,
            JobStatus.COMPLETE,
            {"result": result, "warnings": sanitize(warnings), "metrics": metrics.to_dict()},
        )

    def submit_document(self, text: str, wants_roadmap: bool = False) -> str:
        if not text or not text.strip():
            raise ValueError("Document text must not be empty.")

        job = self._create_job(
            FeatureKind.DOCUMENT_FINAL, {"text": text, "generate_roadmap": wants_roadmap}
        )
        try:
            future = self.executor.submit(self.run_document_job, job["id"], text, wants_roadmap)
        except Exception as exc:
            self._fail(job["id"], exc, self._clock())
            return job["id"]
        future.add_done_callback(_log_unhandled_job_error)
        return job["id"]

    def run_document_job(self, job_id: str, text: str, wants_roadmap: bool = False) -> dict[str, Any]:
        started = self._clock()
        try:
            self._transition(job_id, JobStatus.PROCESSING)
            cleaned = clean_text(text)
            if not cleaned:
                raise JobFatal("The document contains no readable text.")
            outcome = self.summarizer.summarize(cleaned, wants_derived_roadmap=wants_roadmap)
            job = self._complete(
                job_id,
                started,
                outcome.value,
                outcome.usage,
                outcome.warnings,
                outcome.used_fallback,
                strategy=outcome.strategy,
                chunk_count=outcome.chunk_count,
            )
        except Exception as exc:
            job = self._fail(job_id, exc, started)

        log_request(job)
        return job

    def run_feature_job(self, kind: FeatureKind, params: dict[str, Any]) -> dict[str, Any]:
        job = self._create_job(kind, params)
        started = self._clock()
        try:
            self._transition(job["id"], JobStatus.PROCESSING)
            outcome = self.feature_runner.run(kind, params)
            job = self._complete(
                job["id"],
                started,
                outcome.value,
                outcome.usage,
                outcome.warnings,
                outcome.used_fallback,
                strategy="single_call",
                chunk_count=0,
            )
        except Exception as exc:
            job = self._fail(job["id"], exc, started)

        log_request(job)
        return job

    def get_job(self, job_id: str) -> dict[str, Any]:
        job = self.store.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job


def build_orchestrator(settings: PipelineSettings | None = None) -> JobOrchestrator:
    settings = settings or PipelineSettings.from_env()
    provider = get_model_provider(
        settings.provider,
        model_name=settings.model_name,
        timeout=settings.request_timeout,
    )
    gateway = ModelGateway(
        provider,
        max_attempts=settings.max_attempts,
        base_delay=settings.retry_base_delay,
        rate_limit_base_delay=settings.rate_limit_base_delay,
    )
    prompts = PromptManager()
    summarizer = DocumentSummarizer(
        gateway,
        prompts,
        direct_threshold_tokens=settings.direct_threshold_tokens,
        chunk_max_tokens=settings.chunk_max_tokens,
        chunk_overlap_tokens=settings.chunk_overlap_tokens,
        inter_chunk_delay=settings.chunk_delay,
        max_corrective_retries=settings.corrective_retries,
    )
    feature_runner = FeatureRunner(gateway, prompts, settings.corrective_retries)
    store: JobStore = (
        JsonFileJobStore(settings.job_store_path) if settings.job_store_path else InMemoryJobStore()
    )
    logger.info("Pipeline using provider %s with model %s", provider.provider_id, provider.model)
    return JobOrchestrator(
        store,
        summarizer,
        feature_runner,
        provider_name=provider.provider_id,
        model_name=provider.model,
        executor=ThreadPoolExecutor(max_workers=settings.job_workers, thread_name_prefix="pipeline-job"),
    )
