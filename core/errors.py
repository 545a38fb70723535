"""Typed errors raised by the retrieval pipeline."""

from __future__ import annotations


class RagError(Exception):
    """Base class for pipeline errors."""


class RetrievalError(RagError):
    """A fatal upstream failure: no context can be built without this call."""

    stage = "retrieval"

    def __init__(self, message: str, status_code: int | None = None, code: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code is not None:
            return f"{base} (status={self.status_code})"
        return base


class EmbeddingError(RetrievalError):
    stage = "embedding"


class VectorSearchError(RetrievalError):
    stage = "vector_search"


class PipelineCancelled(RagError):
    """Raised when the caller cancels a run; no partial results are returned."""

    def __init__(self, stage: str | None = None):
        self.stage = stage
        message = f"Pipeline cancelled before stage '{stage}'" if stage else "Pipeline cancelled"
        super().__init__(message)
