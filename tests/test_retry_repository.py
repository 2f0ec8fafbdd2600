"""Tests for the embedding retry queue state machine."""

import asyncio
import json
from datetime import timedelta

import pytest

from worknote_retrieval.database.session import session_scope
from worknote_retrieval.models.retry import RetryOperation, RetryStatus
from worknote_retrieval.repositories.embedding_retry_queue_repository import (
    EmbeddingRetryQueueRepository,
    compute_backoff,
)


def test_compute_backoff_is_exponential():
    assert compute_backoff(0) == timedelta(0)
    assert compute_backoff(1) == timedelta(seconds=2)
    assert compute_backoff(3) == timedelta(seconds=8)
    assert compute_backoff(2, base=3.0) == timedelta(seconds=9)


@pytest.fixture
def run_repo(session_factory):
    """Run ``fn(repo)`` in its own committed unit of work."""

    async def _run(fn):
        async with session_scope(session_factory) as session:
            return await fn(EmbeddingRetryQueueRepository(session))

    return _run


@pytest.fixture
def dead_letter_item(run_repo, make_note):
    async def _make(title: str = "Failed note"):
        doc = await make_note(title=title)
        item = await run_repo(
            lambda repo: repo.enqueue(doc.id, RetryOperation.UPDATE, "timeout", max_attempts=1)
        )
        await run_repo(lambda repo: repo.record_failed_attempt(item.id, "timeout again"))
        return item.id, doc

    return _make


@pytest.mark.asyncio
async def test_enqueue_creates_pending_item(run_repo, make_note):
    doc = await make_note()
    item = await run_repo(
        lambda repo: repo.enqueue(
            doc.id, RetryOperation.CREATE, "rate limited", error_details={"reason": "UNKNOWN"}
        )
    )

    assert item.status == RetryStatus.PENDING.value
    assert item.attempt_count == 0
    assert item.next_retry_at == item.created_at
    assert item.next_retry_at is not None
    assert json.loads(item.error_details) == {"reason": "UNKNOWN"}


@pytest.mark.asyncio
async def test_enqueue_dedupes_open_item(run_repo, make_note):
    doc = await make_note()
    first = await run_repo(lambda repo: repo.enqueue(doc.id, RetryOperation.UPDATE, "e1"))
    second = await run_repo(lambda repo: repo.enqueue(doc.id, RetryOperation.UPDATE, "e2"))
    other_op = await run_repo(lambda repo: repo.enqueue(doc.id, RetryOperation.CREATE, "e3"))

    assert second.id == first.id
    assert other_op.id != first.id


@pytest.mark.asyncio
async def test_find_due_items_returns_only_due_pending_items(run_repo, make_note):
    due_doc = await make_note(title="Due note")
    later_doc = await make_note(title="Later note")
    due = await run_repo(lambda repo: repo.enqueue(due_doc.id, RetryOperation.UPDATE, "e"))
    later = await run_repo(lambda repo: repo.enqueue(later_doc.id, RetryOperation.UPDATE, "e"))

    async def postpone(repo):
        item = await repo.find_by_id(later.id)
        item.next_retry_at = item.next_retry_at + timedelta(hours=1)

    await run_repo(postpone)

    rows = await run_repo(
        lambda repo: repo.find_due_items(limit=10, now=due.next_retry_at + timedelta(seconds=1))
    )

    assert [(item.id, title) for item, title in rows] == [(due.id, "Due note")]


@pytest.mark.asyncio
async def test_failed_attempt_is_due_again_after_backoff(run_repo, make_note):
    doc = await make_note()
    item = await run_repo(lambda repo: repo.enqueue(doc.id, RetryOperation.UPDATE, "e"))
    await run_repo(lambda repo: repo.update_status(item.id, RetryStatus.RETRYING))
    in_flight = await run_repo(lambda repo: repo.find_due_items(now=item.next_retry_at))
    assert in_flight == []

    failed = await run_repo(lambda repo: repo.record_failed_attempt(item.id, "e1"))

    assert await run_repo(lambda repo: repo.find_due_items(now=failed.updated_at)) == []
    rows = await run_repo(lambda repo: repo.find_due_items(now=failed.next_retry_at))
    assert [row_item.id for row_item, _ in rows] == [item.id]


@pytest.mark.asyncio
async def test_failed_attempts_back_off_then_dead_letter(run_repo, make_note):
    doc = await make_note()
    item = await run_repo(
        lambda repo: repo.enqueue(doc.id, RetryOperation.UPDATE, "e", max_attempts=3)
    )

    first = await run_repo(lambda repo: repo.record_failed_attempt(item.id, "e1"))
    assert first.status == RetryStatus.PENDING.value
    assert first.attempt_count == 1
    assert first.next_retry_at - first.updated_at == timedelta(seconds=2)

    second = await run_repo(lambda repo: repo.record_failed_attempt(item.id, "e2"))
    assert second.status == RetryStatus.PENDING.value
    assert second.next_retry_at - second.updated_at == timedelta(seconds=4)

    third = await run_repo(lambda repo: repo.record_failed_attempt(item.id, "e3"))
    assert third.status == RetryStatus.DEAD_LETTER.value
    assert third.dead_letter_at is not None
    assert third.next_retry_at is None
    assert third.error_message == "e3"


@pytest.mark.asyncio
async def test_record_failed_attempt_unknown_id(run_repo):
    assert await run_repo(lambda repo: repo.record_failed_attempt("RETRY-missing", "e")) is None


@pytest.mark.asyncio
async def test_find_dead_letter_items_joins_title(run_repo, dead_letter_item, make_note):
    item_id, doc = await dead_letter_item("Quarterly planning")
    other = await make_note()
    await run_repo(lambda repo: repo.enqueue(other.id, RetryOperation.UPDATE, "still pending"))

    rows, total = await run_repo(lambda repo: repo.find_dead_letter_items(limit=10, offset=0))

    assert total == 1
    assert [(item.id, title) for item, title in rows] == [(item_id, "Quarterly planning")]


@pytest.mark.asyncio
async def test_dead_letter_pagination(run_repo, dead_letter_item):
    for i in range(3):
        await dead_letter_item(f"Note {i}")

    rows, total = await run_repo(lambda repo: repo.find_dead_letter_items(limit=2, offset=2))

    assert total == 3
    assert len(rows) == 1


@pytest.mark.asyncio
async def test_reset_to_pending(run_repo, dead_letter_item):
    item_id, _ = await dead_letter_item()

    assert await run_repo(lambda repo: repo.reset_to_pending(item_id)) is True

    item = await run_repo(lambda repo: repo.find_by_id(item_id))
    assert item.status == RetryStatus.PENDING.value
    assert item.dead_letter_at is None
    assert item.attempt_count == 0
    assert item.next_retry_at is not None


@pytest.mark.asyncio
async def test_reset_requires_dead_letter_status(run_repo, make_note):
    doc = await make_note()
    item = await run_repo(lambda repo: repo.enqueue(doc.id, RetryOperation.UPDATE, "e"))

    assert await run_repo(lambda repo: repo.reset_to_pending(item.id)) is False
    assert await run_repo(lambda repo: repo.reset_to_pending("RETRY-missing")) is False


@pytest.mark.asyncio
async def test_concurrent_resets_change_row_once(run_repo, dead_letter_item):
    item_id, _ = await dead_letter_item()

    outcomes = await asyncio.gather(
        run_repo(lambda repo: repo.reset_to_pending(item_id)),
        run_repo(lambda repo: repo.reset_to_pending(item_id)),
    )

    assert sorted(outcomes) == [False, True]


@pytest.mark.asyncio
async def test_update_status_and_delete(run_repo, make_note):
    doc = await make_note()
    item = await run_repo(lambda repo: repo.enqueue(doc.id, RetryOperation.DELETE, "e"))

    await run_repo(lambda repo: repo.update_status(item.id, RetryStatus.DEAD_LETTER))
    counts = await run_repo(lambda repo: repo.count_by_status())
    assert counts == {"pending": 0, "retrying": 0, "dead_letter": 1}

    assert await run_repo(lambda repo: repo.delete_item(item.id)) is True
    assert await run_repo(lambda repo: repo.find_by_id(item.id)) is None
    assert await run_repo(lambda repo: repo.delete_item(item.id)) is False
