"""Tests for the work note repository and the document store adapter."""

from datetime import datetime, timedelta

import pytest

from worknote_retrieval.database.models import Person
from worknote_retrieval.database.session import session_scope
from worknote_retrieval.models.search import SearchFilters
from worknote_retrieval.repositories.work_note_repository import (
    MAX_VERSIONS,
    WorkNoteRepository,
    build_filter_clauses,
)


@pytest.mark.asyncio
async def test_update_content_bumps_updated_at_and_records_version(store, make_note, edit_note):
    doc = await make_note(title="Plan", content="v1")

    edited = await edit_note(doc.id, content="v2")

    assert edited.updated_at > doc.updated_at
    assert edited.content_raw == "v2"
    versions = await store.get_versions(doc.id)
    assert [(v.version_no, v.content_raw) for v in versions] == [(1, "v1")]


@pytest.mark.asyncio
async def test_update_content_clears_embedded_marker(store, make_note, edit_note):
    doc = await make_note(title="Plan", content="v1")
    await store.update_embedded_at(doc.id)

    edited = await edit_note(doc.id, content="v2")

    assert edited.embedded_at is None
    assert [d.id for d in await store.list_unembedded(10)] == [doc.id]


@pytest.mark.asyncio
async def test_version_history_is_pruned(store, make_note, edit_note):
    doc = await make_note(title="Plan", content="v0")
    for i in range(1, MAX_VERSIONS + 3):
        await edit_note(doc.id, content=f"v{i}")

    versions = await store.get_versions(doc.id, limit=50)

    assert len(versions) == MAX_VERSIONS
    assert versions[0].version_no == MAX_VERSIONS + 2
    assert versions[-1].version_no == 3


@pytest.mark.asyncio
async def test_update_unknown_note_returns_none(session_factory):
    async with session_scope(session_factory) as session:
        assert await WorkNoteRepository(session).update_content("WORK-missing", title="x") is None


@pytest.mark.asyncio
async def test_compare_and_set_embedded_at(store, make_note, edit_note):
    doc = await make_note()

    assert await store.update_embedded_at_if_version_matches(doc.id, doc.updated_at) is True
    edited = await edit_note(doc.id, content="changed")
    assert await store.update_embedded_at_if_version_matches(doc.id, doc.updated_at) is False
    assert await store.update_embedded_at_if_version_matches("WORK-missing", doc.updated_at) is False
    assert await store.update_embedded_at_if_version_matches(doc.id, edited.updated_at) is True


@pytest.mark.asyncio
async def test_embedding_stats(store, make_note):
    first = await make_note()
    await make_note()
    await store.update_embedded_at(first.id)

    stats = await store.get_embedding_stats()

    assert (stats.total, stats.embedded, stats.pending) == (2, 1, 1)


@pytest.mark.asyncio
async def test_list_by_cursor_orders_by_created_at_then_id(store, make_note):
    base = datetime(2024, 1, 1, 12, 0, 0)
    await make_note(note_id="WORK-b", created_at=base)
    await make_note(note_id="WORK-a", created_at=base)
    await make_note(note_id="WORK-0", created_at=base + timedelta(seconds=1))

    first_page = await store.list_by_cursor(None, 2)
    last = first_page[-1]
    second_page = await store.list_by_cursor((last.created_at, last.id), 2)

    assert [d.id for d in first_page] == ["WORK-a", "WORK-b"]
    assert [d.id for d in second_page] == ["WORK-0"]


@pytest.mark.asyncio
async def test_list_unembedded_skips_embedded_notes(store, make_note):
    embedded = await make_note()
    pending = await make_note()
    await store.update_embedded_at(embedded.id)

    assert [d.id for d in await store.list_unembedded(10)] == [pending.id]
    assert await store.list_unembedded(10, offset=1) == []


@pytest.mark.asyncio
async def test_person_context_uses_link_order_and_first_department(session_factory, store, make_note):
    async with session_scope(session_factory) as session:
        session.add(Person(id="P2", name="Kim", current_dept="Sales"))
    doc = await make_note(person_ids=["P1", "P2"], dept_name="Finance")

    context = await store.get_person_context(doc.id)

    assert context.person_ids == ["P1", "P2"]
    assert context.dept_name == "Finance"
    assert (await store.get_person_context("WORK-missing")).person_ids == []


@pytest.mark.asyncio
async def test_find_by_ids_applies_filters(store, make_note):
    a = await make_note(category="meeting")
    b = await make_note(category="report")

    found = await store.find_by_ids([a.id, b.id, "WORK-missing"])
    filtered = await store.find_by_ids([a.id, b.id], SearchFilters(category="report"))

    assert {d.id for d in found} == {a.id, b.id}
    assert [d.id for d in filtered] == [b.id]
    assert await store.find_by_ids([]) == []


def test_filter_clauses_ignore_limit_only_filters():
    assert build_filter_clauses(None) == []
    assert build_filter_clauses(SearchFilters(limit=5)) == []
    assert len(build_filter_clauses(SearchFilters(category="Ops", limit=5))) == 1
