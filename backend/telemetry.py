from __future__ import annotations

import json
import logging
from typing import Any

logger = logging.getLogger(__name__)

PROMPT_COST_PER_1K_TOKENS = 0.03
COMPLETION_COST_PER_1K_TOKENS = 0.06


def estimate_cost_usd(prompt_tokens: int, completion_tokens: int) -> float:
    cost = (
        prompt_tokens / 1000 * PROMPT_COST_PER_1K_TOKENS
        + completion_tokens / 1000 * COMPLETION_COST_PER_1K_TOKENS
    )
    return round(cost, 6)


def build_telemetry_record(job: dict[str, Any]) -> dict[str, Any]:
    metrics = job.get("metrics") or {}
    return {
        "event": "request_telemetry",
        "request_id": job.get("id"),
        "feature": job.get("feature_kind"),
        "status": job.get("status"),
        "duration_ms": metrics.get("duration_ms", 0),
        "provider": metrics.get("provider"),
        "model": metrics.get("model"),
        "prompt_tokens": metrics.get("prompt_tokens", 0),
        "completion_tokens": metrics.get("completion_tokens", 0),
        "total_tokens": metrics.get("total_tokens", 0),
        "estimated_prompt_tokens": metrics.get("estimated_prompt_tokens", 0),
        "estimated_completion_tokens": metrics.get("estimated_completion_tokens", 0),
        "estimated_total_tokens": metrics.get("estimated_total_tokens", 0),
        "tokens_estimated": metrics.get("tokens_estimated", False),
        "estimated_cost_usd": metrics.get("estimated_cost_usd", 0.0),
        "used_fallback": metrics.get("used_fallback", False),
        "strategy": metrics.get("strategy"),
        "chunk_count": metrics.get("chunk_count", 0),
        "confidence": metrics.get("confidence"),
        "warning_count": len(job.get("warnings") or []),
        "failed": job.get("status") == "failed",
    }


def log_request(job: dict[str, Any]) -> dict[str, Any]:
    """Emit one structured log line for a finished job and return the record."""
    record = build_telemetry_record(job)
    logger.info("request_telemetry %s", json.dumps(record, sort_keys=True))
    return record
