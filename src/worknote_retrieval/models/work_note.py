"""Work note snapshot models passed between the store and the pipeline."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class WorkNoteDocument(BaseModel):
    """Detached, read-only view of a work note row."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    title: str
    content_raw: str = ""
    category: Optional[str] = None
    project_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    embedded_at: Optional[datetime] = None


class WorkNoteVersionSnapshot(BaseModel):
    """Prior title/content retained in version history."""

    model_config = ConfigDict(from_attributes=True)

    version_no: int
    title: str
    content_raw: str = ""
    created_at: datetime


class PersonContext(BaseModel):
    """Person-derived metadata for a work note."""

    person_ids: List[str] = Field(default_factory=list)
    dept_name: Optional[str] = None
