"""Chunk models for work note embedding."""

from typing import List, Optional

from pydantic import BaseModel, Field


class ChunkMetadata(BaseModel):
    """Metadata stored alongside each chunk vector."""

    work_id: str = Field(..., description="Owning work note id")
    scope: str = Field(default="WORK", description="WORK for note text, FILE for attachment text")
    chunk_index: int = Field(default=0, ge=0, description="0-based chunk index")
    person_ids: List[str] = Field(default_factory=list, description="Persons linked to the note")
    dept_name: Optional[str] = Field(default=None, description="Department of the first linked person")
    category: Optional[str] = Field(default=None, description="Work note category")
    created_at_bucket: Optional[str] = Field(
        default=None, description="Creation date as YYYY-MM-DD"
    )
    project_id: Optional[str] = Field(default=None, description="Optional project id")
    file_id: Optional[str] = Field(default=None, description="Attachment id for FILE scope")


class TextChunk(BaseModel):
    """A chunk of text produced by the chunking service."""

    chunk_id: str = Field(..., description="Stable identifier '{work_id}#chunk{chunk_index}'")
    work_id: str = Field(..., description="Owning work note id")
    chunk_index: int = Field(..., ge=0, description="0-based index of this chunk within the note")
    text: str = Field(..., description="Chunk text content")
    metadata: ChunkMetadata
