"""Embedding retry queue models."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class RetryStatus(str, Enum):
    PENDING = "pending"
    RETRYING = "retrying"
    DEAD_LETTER = "dead_letter"


class RetryOperation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class RetryQueueItemResponse(BaseModel):
    """Retry queue item as exposed to admin tooling."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    work_id: str = Field(..., validation_alias=AliasChoices("work_note_id", "work_id"))
    operation_type: RetryOperation
    attempt_count: int
    max_attempts: int
    next_retry_at: Optional[datetime] = None
    status: RetryStatus
    error_message: Optional[str] = None
    error_details: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    dead_letter_at: Optional[datetime] = None
    work_title: Optional[str] = None


class DeadLetterPage(BaseModel):
    """Paginated dead-letter listing."""

    items: List[RetryQueueItemResponse]
    total: int
    limit: int
    offset: int


class RetryResetResponse(BaseModel):
    id: str
    status: RetryStatus = RetryStatus.PENDING
    message: str = "Retry scheduled"
