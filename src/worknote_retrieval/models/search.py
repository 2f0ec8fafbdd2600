"""Search request and result models."""

from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator


class SearchSource(str, Enum):
    """Which ranked list(s) produced a fused result."""

    LEXICAL = "LEXICAL"
    SEMANTIC = "SEMANTIC"
    HYBRID = "HYBRID"


class SearchFilters(BaseModel):
    """Document-level filters shared by the lexical and semantic paths."""

    person_id: Optional[str] = None
    dept_name: Optional[str] = None
    category: Optional[str] = None
    date_from: Optional[date] = Field(default=None, description="Inclusive creation date lower bound")
    date_to: Optional[date] = Field(default=None, description="Inclusive creation date upper bound")
    limit: Optional[int] = Field(default=None, ge=1, le=100)

    @model_validator(mode="after")
    def check_range(self) -> "SearchFilters":
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValueError("date_from must not be after date_to")
        return self

    def is_empty(self) -> bool:
        """True when no document-level filter is set (``limit`` aside)."""
        return not any(
            (self.person_id, self.dept_name, self.category, self.date_from, self.date_to)
        )


class LexicalMatch(BaseModel):
    """One row from the full-text backend, best first."""

    work_id: str
    score: float = 0.0


class VectorMatch(BaseModel):
    """One chunk hit from the vector index."""

    chunk_id: str
    work_id: str
    score: float
    metadata: Dict[str, Any] = Field(default_factory=dict)


class RankedResult(BaseModel):
    """A fused search hit."""

    work_id: str
    title: str
    category: Optional[str] = None
    created_at: Optional[datetime] = None
    score: float
    source: SearchSource


class SearchResponse(BaseModel):
    query: str
    results: List[RankedResult]
    count: int
