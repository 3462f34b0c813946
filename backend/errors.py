"""Error taxonomy shared by the gateway, recovery, summarizer and job layers."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from backend.llm_provider import GatewayFailure


class PipelineError(Exception):
    """Base class; ``str(exc)`` is safe to show to the requester."""


class GatewayError(PipelineError):
    """A model call failed after the gateway exhausted its retry policy."""

    def __init__(self, failure: GatewayFailure):
        super().__init__(failure.message)
        self.failure = failure

    @property
    def kind(self):
        return self.failure.kind


class ParseFailure(PipelineError):
    """Model output stayed unrecoverable after corrective re-prompts."""


class ChunkMapFailure(PipelineError):
    """One chunk could not be summarized; absorbed by the summarizer."""

    def __init__(self, chunk_index: int, reason: str):
        super().__init__(f"Chunk {chunk_index} could not be summarized: {reason}")
        self.chunk_index = chunk_index
        self.reason = reason


class ReduceFailure(PipelineError):
    """Neither the reduce call nor the chunk data produced a usable summary."""


class JobFatal(PipelineError):
    """A job cannot continue; persisted as ``failed``."""


class InvalidJobTransition(PipelineError):
    pass


class JobNotFound(KeyError):
    pass
