"""SQLAlchemy database models."""

import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utc_now() -> datetime:
    """Naive UTC timestamp; all timestamp columns store naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class WorkNote(Base):
    """Work note: the document whose content is chunked and embedded."""

    __tablename__ = "work_notes"

    id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        default=lambda: f"WORK-{uuid.uuid4().hex[:12]}",
    )
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    content_raw: Mapped[str] = mapped_column(Text, nullable=False, default="")
    category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    project_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)
    # NULL until an embedding run for the current version commits
    embedded_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, index=True)

    versions: Mapped[List["WorkNoteVersion"]] = relationship(
        back_populates="work_note",
        cascade="all, delete-orphan",
        order_by="WorkNoteVersion.version_no.desc()",
    )
    persons: Mapped[List["WorkNotePerson"]] = relationship(
        back_populates="work_note",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<WorkNote(id={self.id}, title={self.title!r})>"


class WorkNoteVersion(Base):
    """Snapshot of a prior title/content, kept for a bounded window."""

    __tablename__ = "work_note_versions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    work_note_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("work_notes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    version_no: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    content_raw: Mapped[str] = mapped_column(Text, nullable=False, default="")
    category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)

    work_note: Mapped["WorkNote"] = relationship(back_populates="versions")


class Person(Base):
    """Person referenced by work notes; carries the current department."""

    __tablename__ = "persons"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    current_dept: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)


class WorkNotePerson(Base):
    """Association between work notes and persons."""

    __tablename__ = "work_note_person"

    work_note_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("work_notes.id", ondelete="CASCADE"), primary_key=True
    )
    person_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("persons.id", ondelete="CASCADE"), primary_key=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    work_note: Mapped["WorkNote"] = relationship(back_populates="persons")
    person: Mapped["Person"] = relationship()


class EmbeddingRetryQueueItem(Base):
    """Failed embedding operation awaiting retry or manual intervention."""

    __tablename__ = "embedding_retry_queue"
    __table_args__ = (
        Index("idx_retry_queue_status_next_retry", "status", "next_retry_at"),
        Index("idx_retry_queue_dead_letter", "dead_letter_at"),
    )

    id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        default=lambda: f"RETRY-{uuid.uuid4().hex}",
    )
    work_note_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("work_notes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    # create | update | delete
    operation_type: Mapped[str] = mapped_column(String(20), nullable=False)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    # pending | retrying | dead_letter
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)
    dead_letter_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
