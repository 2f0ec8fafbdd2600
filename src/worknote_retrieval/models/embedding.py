"""Embedding and pipeline result models."""

from typing import List, Optional

from pydantic import BaseModel, Field, model_validator

from worknote_retrieval.models.chunk import ChunkMetadata
from worknote_retrieval.utils.errors import EmbeddingFailureReason


class EmbeddingData(BaseModel):
    """One vector from an embeddings API response."""

    index: int = Field(..., ge=0)
    embedding: List[float] = Field(..., min_length=1)


class EmbeddingResponse(BaseModel):
    """Validated embeddings API response."""

    model: Optional[str] = None
    data: List[EmbeddingData]

    @model_validator(mode="after")
    def sort_by_index(self) -> "EmbeddingResponse":
        self.data = sorted(self.data, key=lambda d: d.index)
        return self

    def vectors(self) -> List[List[float]]:
        return [d.embedding for d in self.data]


class VectorRecord(BaseModel):
    """A chunk ready to be written to the vector index."""

    chunk_id: str
    vector: List[float]
    metadata: ChunkMetadata
    # updated_at of the note version this vector was computed from
    doc_version: Optional[str] = None


class ReindexError(BaseModel):
    """Per-note failure recorded by a bulk operation."""

    work_id: str
    reason: EmbeddingFailureReason = EmbeddingFailureReason.UNKNOWN
    error: str


class ReindexResult(BaseModel):
    """Summary of a bulk embedding run."""

    total: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: List[ReindexError] = Field(default_factory=list)

    def record_success(self) -> None:
        self.processed += 1
        self.succeeded += 1

    def record_failure(
        self, work_id: str, reason: EmbeddingFailureReason, error: str
    ) -> None:
        self.processed += 1
        self.failed += 1
        self.errors.append(ReindexError(work_id=work_id, reason=reason, error=error))


class EmbeddingStats(BaseModel):
    """Embedding coverage of the work note store."""

    total: int = Field(..., ge=0)
    embedded: int = Field(..., ge=0)
    pending: int = Field(..., ge=0)
