"""Pytest configuration and fixtures."""

import hashlib
from datetime import datetime
from typing import List, Optional, Sequence
from unittest.mock import AsyncMock

import pytest
from qdrant_client import QdrantClient
from sqlalchemy.ext.asyncio import create_async_engine

from worknote_retrieval.config import (
    EmbeddingSettings,
    PipelineSettings,
    QdrantSettings,
    RetrySettings,
    SearchSettings,
)
from worknote_retrieval.database.models import Person, WorkNote, utc_now
from worknote_retrieval.database.session import build_session_factory, init_db, session_scope
from worknote_retrieval.models.work_note import WorkNoteDocument
from worknote_retrieval.repositories.work_note_repository import WorkNoteRepository
from worknote_retrieval.services.chunking_service import ChunkingService
from worknote_retrieval.services.document_store import DocumentStore
from worknote_retrieval.services.embedding_processor import EmbeddingProcessor
from worknote_retrieval.services.embedding_service import EmbeddingService
from worknote_retrieval.services.qdrant_service import QdrantService

TEST_DIMENSION = 8
# 25 tokens -> 100-char windows advancing by 80 chars
TEST_CHUNK_SIZE = 25


def fake_vector(text: str) -> List[float]:
    """Deterministic, non-zero vector for a text."""
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return [(b + 1) / 256 for b in digest[:TEST_DIMENSION]]


def text_of_length(length: int) -> str:
    base = "lorem ipsum dolor sit amet "
    return (base * (length // len(base) + 1))[:length]


class FakeEmbeddingsAPI:
    """Stands in for ``AsyncOpenAI().embeddings``; records every request."""

    def __init__(self):
        self.calls: List[List[str]] = []
        self.create = AsyncMock(side_effect=self._create)

    async def _create(self, model: str, input: Sequence[str]):
        self.calls.append(list(input))
        return {
            "model": model,
            "data": [
                {"index": i, "embedding": fake_vector(text)} for i, text in enumerate(input)
            ],
        }


class FakeOpenAIClient:
    def __init__(self, embeddings: FakeEmbeddingsAPI):
        self.embeddings = embeddings


@pytest.fixture
async def engine(tmp_path):
    """File-backed SQLite so concurrent sessions see each other's commits."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'worknotes.db'}",
        connect_args={"timeout": 30},
    )
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def store(session_factory):
    return DocumentStore(session_factory)


@pytest.fixture
def embedding_settings():
    return EmbeddingSettings(
        openai_api_key="test-key",
        embedding_model="text-embedding-3-small",
        embedding_dimension=TEST_DIMENSION,
        embedding_batch_size=100,
        embedding_max_retries=3,
    )


@pytest.fixture
def embeddings_api():
    return FakeEmbeddingsAPI()


@pytest.fixture
def embedding_service(embedding_settings, embeddings_api):
    return EmbeddingService(
        embedding_settings,
        client=FakeOpenAIClient(embeddings_api),
        wait_min=0,
        wait_max=0,
    )


@pytest.fixture
def qdrant_client():
    client = QdrantClient(":memory:")
    yield client
    client.close()


@pytest.fixture
def vector_index(qdrant_client):
    return QdrantService(QdrantSettings(collection_name="test_chunks"), client=qdrant_client)


@pytest.fixture
def chunking_service():
    return ChunkingService(chunk_size=TEST_CHUNK_SIZE, overlap_ratio=0.2)


@pytest.fixture
def pipeline_settings():
    return PipelineSettings(
        max_chunks_per_batch=100,
        delete_batch_size=100,
        version_history_limit=5,
        authoritative_cleanup=True,
    )


@pytest.fixture
def retry_settings():
    return RetrySettings(max_attempts=3, backoff_base=2.0)


@pytest.fixture
def search_settings():
    return SearchSettings(rrf_k=60, default_limit=10, overfetch_factor=2)


@pytest.fixture
def processor(store, chunking_service, embedding_service, vector_index, pipeline_settings):
    return EmbeddingProcessor(
        store, chunking_service, embedding_service, vector_index, pipeline_settings
    )


@pytest.fixture
def make_note(session_factory):
    """Insert a work note (and its persons) and return its snapshot."""

    async def _make(
        title: str = "Weekly sync",
        content: str = "",
        category: Optional[str] = None,
        created_at: Optional[datetime] = None,
        person_ids: Sequence[str] = (),
        dept_name: Optional[str] = None,
        note_id: Optional[str] = None,
    ) -> WorkNoteDocument:
        timestamp = created_at or utc_now()
        async with session_scope(session_factory) as session:
            for person_id in person_ids:
                if await session.get(Person, person_id) is None:
                    session.add(Person(id=person_id, name=person_id, current_dept=dept_name))
            note = WorkNote(
                title=title,
                content_raw=content,
                category=category,
                created_at=timestamp,
                updated_at=timestamp,
            )
            if note_id:
                note.id = note_id
            session.add(note)
            await session.flush()
            if person_ids:
                await WorkNoteRepository(session).link_persons(note.id, person_ids)
            return WorkNoteDocument.model_validate(note)

    return _make


@pytest.fixture
def edit_note(session_factory):
    """Edit a note through the repository (records a version, bumps updated_at)."""

    async def _edit(
        work_id: str, title: Optional[str] = None, content: Optional[str] = None
    ) -> WorkNoteDocument:
        async with session_scope(session_factory) as session:
            note = await WorkNoteRepository(session).update_content(
                work_id, title=title, content_raw=content
            )
            return WorkNoteDocument.model_validate(note)

    return _edit
