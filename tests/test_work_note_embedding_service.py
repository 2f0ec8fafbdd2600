"""Tests for the write-path embedding hooks."""

import json
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from worknote_retrieval.database.models import EmbeddingRetryQueueItem
from worknote_retrieval.database.session import session_scope
from worknote_retrieval.services.background import BackgroundTaskRunner
from worknote_retrieval.services.work_note_embedding_service import (
    WorkNoteEmbeddingService,
    find_rate_limit,
)
from worknote_retrieval.utils.errors import (
    EmbeddingFailureReason,
    EmbeddingPipelineError,
    EmbeddingRateLimitError,
    NotFoundError,
    VectorIndexError,
)

from tests.conftest import text_of_length


@pytest.fixture
def background():
    return BackgroundTaskRunner()


@pytest.fixture
def hooks(processor, background, session_factory, retry_settings):
    return WorkNoteEmbeddingService(
        processor,
        background,
        retry_session_factory=session_factory,
        retry_settings=retry_settings,
    )


async def _queued_items(session_factory):
    async with session_scope(session_factory) as session:
        result = await session.execute(select(EmbeddingRetryQueueItem))
        return list(result.scalars().all())


def test_find_rate_limit_walks_cause_chain():
    rate_limited = EmbeddingRateLimitError()
    wrapper = EmbeddingPipelineError(EmbeddingFailureReason.UPSERT_FAILED, "embed failed")
    wrapper.__cause__ = rate_limited

    assert find_rate_limit(wrapper) is rate_limited
    assert find_rate_limit(RuntimeError("boom")) is None


@pytest.mark.asyncio
async def test_on_created_inline_embeds(hooks, store, vector_index, make_note):
    doc = await make_note(title="Kickoff", content="agenda")

    assert await hooks.on_created(doc) is None

    assert await vector_index.list_chunk_ids(doc.id) == [f"{doc.id}#chunk0"]
    assert (await store.get_by_id(doc.id)).embedded_at is not None


@pytest.mark.asyncio
async def test_on_created_in_background(hooks, background, vector_index, make_note):
    doc = await make_note(title="Kickoff", content="agenda")

    task = await hooks.on_created(doc, background=True)
    assert task is not None
    await background.drain()

    assert await vector_index.list_chunk_ids(doc.id) == [f"{doc.id}#chunk0"]


@pytest.mark.asyncio
async def test_inline_rate_limit_is_reraised_and_queued(hooks, processor, session_factory, make_note):
    doc = await make_note(title="Kickoff", content="agenda")

    with patch.object(
        processor.embedding_service, "embed_batch", AsyncMock(side_effect=EmbeddingRateLimitError())
    ):
        with pytest.raises(EmbeddingRateLimitError):
            await hooks.on_created(doc)

    items = await _queued_items(session_factory)
    assert [(i.work_note_id, i.operation_type) for i in items] == [(doc.id, "create")]
    details = json.loads(items[0].error_details)
    assert details["error_type"] == "EmbeddingPipelineError"
    assert details["transient"] is True


@pytest.mark.asyncio
async def test_background_rate_limit_is_not_raised(hooks, background, processor, session_factory, make_note):
    doc = await make_note(title="Kickoff", content="agenda")

    with patch.object(
        processor.embedding_service, "embed_batch", AsyncMock(side_effect=EmbeddingRateLimitError())
    ):
        task = await hooks.on_created(doc, background=True)
        await background.drain()

    assert task.exception() is None
    assert len(await _queued_items(session_factory)) == 1


@pytest.mark.asyncio
async def test_other_failures_are_logged_and_queued(hooks, vector_index, session_factory, make_note):
    doc = await make_note(title="Kickoff", content="agenda")

    with patch.object(vector_index, "upsert", AsyncMock(side_effect=VectorIndexError())):
        assert await hooks.on_created(doc) is None

    items = await _queued_items(session_factory)
    assert json.loads(items[0].error_details)["reason"] == "UPSERT_FAILED"


@pytest.mark.asyncio
async def test_superseded_run_is_skipped_without_queueing(hooks, session_factory, make_note, edit_note):
    doc = await make_note(title="Kickoff", content="v1")
    await edit_note(doc.id, content="v2")

    assert await hooks.on_created(doc) is None

    assert await _queued_items(session_factory) == []


@pytest.mark.asyncio
async def test_on_updated_cleans_chunks_of_previous_content(hooks, vector_index, make_note, edit_note):
    doc = await make_note(title="T", content=text_of_length(397))
    await hooks.on_created(doc)
    assert len(await vector_index.list_chunk_ids(doc.id)) == 5

    edited = await edit_note(doc.id, content="short")
    await hooks.on_updated(edited, previous=doc)

    assert await vector_index.list_chunk_ids(doc.id) == [f"{doc.id}#chunk0"]


@pytest.mark.asyncio
async def test_reembed_only(hooks, store, vector_index, make_note):
    doc = await make_note(title="Kickoff", content="agenda")

    await hooks.reembed_only(doc.id)

    assert await vector_index.list_chunk_ids(doc.id) == [f"{doc.id}#chunk0"]
    assert (await store.get_by_id(doc.id)).embedded_at is not None


@pytest.mark.asyncio
async def test_reembed_only_unknown_note(hooks):
    with pytest.raises(NotFoundError):
        await hooks.reembed_only("WORK-missing")


@pytest.mark.asyncio
async def test_on_deleted_removes_estimated_range(hooks, vector_index, make_note):
    doc = await make_note(title="T", content=text_of_length(237))
    await hooks.on_created(doc)

    max_known = await hooks.estimate_delete_range(doc)
    assert max_known == 3

    await hooks.on_deleted(doc.id, max_known)

    assert await vector_index.list_chunk_ids(doc.id) == []


@pytest.mark.asyncio
async def test_on_deleted_swallows_index_errors(hooks, background, vector_index):
    with patch.object(vector_index, "delete_by_ids", AsyncMock(side_effect=VectorIndexError())):
        task = await hooks.on_deleted("WORK-gone", 2, background=True)
        await background.drain()

    assert task.exception() is None
