"""Qdrant vector index adapter for work note chunks."""

from __future__ import annotations

import asyncio
import uuid
from typing import Any, Dict, List, Optional, Sequence, Set

from pydantic import ValidationError
from qdrant_client import QdrantClient
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    FilterSelector,
    HasIdCondition,
    MatchValue,
    PointIdsList,
    PointStruct,
    VectorParams,
)

from worknote_retrieval.config import QdrantSettings, get_settings
from worknote_retrieval.models.chunk import ChunkMetadata
from worknote_retrieval.models.embedding import VectorRecord
from worknote_retrieval.models.search import VectorMatch
from worknote_retrieval.utils.errors import MalformedResponseError, VectorIndexError
from worknote_retrieval.utils.logging import get_logger

logger = get_logger("qdrant_service")

# Deterministic namespace for point ids derived from chunk ids
_POINT_ID_NAMESPACE = uuid.UUID("3f0c2a9e-8d61-4b57-9a3e-5c1d7f4e2b10")

METADATA_MAX_BYTES = 60


def make_point_id(chunk_id: str) -> str:
    """Stable UUID point id for a chunk id."""
    return str(uuid.uuid5(_POINT_ID_NAMESPACE, chunk_id))


def truncate_to_bytes(value: str, max_bytes: int = METADATA_MAX_BYTES) -> str:
    """Truncate to at most ``max_bytes`` UTF-8 bytes without splitting a character."""
    encoded = value.encode("utf-8")
    if len(encoded) <= max_bytes:
        return value
    return encoded[:max_bytes].decode("utf-8", errors="ignore")


def encode_person_ids(person_ids: Sequence[str], max_bytes: int = METADATA_MAX_BYTES) -> str:
    """Comma-join whole person ids while the result fits in ``max_bytes``."""
    kept: List[str] = []
    length = 0
    for person_id in person_ids:
        addition = len(person_id.encode("utf-8")) + (1 if kept else 0)
        if length + addition > max_bytes:
            break
        kept.append(person_id)
        length += addition
    return ",".join(kept)


def decode_person_ids(encoded: Optional[str]) -> List[str]:
    return encoded.split(",") if encoded else []


def encode_metadata(metadata: ChunkMetadata) -> Dict[str, str]:
    """Flatten chunk metadata into bounded string payload fields."""
    encoded: Dict[str, str] = {
        "work_id": metadata.work_id,
        "scope": metadata.scope,
        "chunk_index": str(metadata.chunk_index),
    }
    if metadata.person_ids:
        encoded["person_ids"] = encode_person_ids(metadata.person_ids)
    if metadata.dept_name:
        encoded["dept_name"] = truncate_to_bytes(metadata.dept_name)
    if metadata.category:
        encoded["category"] = truncate_to_bytes(metadata.category)
    if metadata.created_at_bucket:
        encoded["created_at_bucket"] = metadata.created_at_bucket
    if metadata.project_id:
        encoded["project_id"] = metadata.project_id
    if metadata.file_id:
        encoded["file_id"] = metadata.file_id
    return encoded


def _build_payload(record: VectorRecord) -> Dict[str, str]:
    payload = {"chunk_id": record.chunk_id, **encode_metadata(record.metadata)}
    if record.doc_version:
        payload["doc_version"] = record.doc_version
    return payload


def build_payload_filter(conditions: Optional[Dict[str, str]]) -> Optional[Filter]:
    """Equality filter over encoded payload fields."""
    if not conditions:
        return None
    must = []
    for key, value in conditions.items():
        if value is None:
            continue
        if key in ("dept_name", "category"):
            value = truncate_to_bytes(value)
        must.append(FieldCondition(key=key, match=MatchValue(value=value)))
    return Filter(must=must) if must else None


class QdrantService:
    """
    Vector index for work note chunks.

    All chunks live in one collection. Point ids are UUIDv5 of the chunk id;
    the chunk id itself is kept in the payload so it can be enumerated and
    returned from queries. The sync ``QdrantClient`` is driven through
    ``asyncio.to_thread``.
    """

    def __init__(
        self,
        settings: Optional[QdrantSettings] = None,
        client: Optional[QdrantClient] = None,
        vector_size: Optional[int] = None,
    ) -> None:
        self._settings = settings or get_settings().qdrant
        self._client = client
        self._vector_size = vector_size
        self._ensured: Set[str] = set()

    @property
    def collection_name(self) -> str:
        return self._settings.collection_name

    def _get_client(self) -> QdrantClient:
        if self._client is not None:
            return self._client

        self._client = QdrantClient(
            url=self._settings.url,
            api_key=self._settings.api_key,
            timeout=self._settings.timeout,
        )
        logger.info(
            f"Qdrant client created: url={self._settings.url}, cloud={self._settings.is_cloud}"
        )
        return self._client

    def _collection_exists(self) -> bool:
        if self.collection_name in self._ensured:
            return True
        return self._get_client().collection_exists(self.collection_name)

    async def ensure_collection(self, vector_size: int) -> None:
        """Ensure the collection exists with the right vector size."""
        collection_name = self.collection_name

        def _ensure() -> None:
            client = self._get_client()
            if not client.collection_exists(collection_name):
                client.create_collection(
                    collection_name=collection_name,
                    vectors_config=VectorParams(size=vector_size, distance=Distance.COSINE),
                )
                return

            info = client.get_collection(collection_name)
            current_size = getattr(info.config.params.vectors, "size", None)
            if current_size is not None and int(current_size) != int(vector_size):
                raise VectorIndexError(
                    "Qdrant collection vector size mismatch",
                    details={
                        "collection": collection_name,
                        "expected": vector_size,
                        "actual": int(current_size),
                    },
                )

        if collection_name in self._ensured:
            return
        try:
            await asyncio.to_thread(_ensure)
            self._ensured.add(collection_name)
            logger.info(f"Qdrant collection ensured: {collection_name} (vector_size={vector_size})")
        except VectorIndexError:
            raise
        except Exception as e:
            raise VectorIndexError(
                "Failed to ensure Qdrant collection",
                details={"collection": collection_name, "error": str(e)},
            ) from e

    async def upsert(self, records: List[VectorRecord]) -> List[str]:
        """
        Upsert chunk vectors; re-upserting an existing chunk id overwrites it.

        Returns:
            The chunk ids written
        """
        if not records:
            return []

        vector_size = len(records[0].vector)
        if vector_size <= 0:
            raise VectorIndexError("Embedding vector size is invalid", details={"vector_size": vector_size})
        await self.ensure_collection(self._vector_size or vector_size)

        def _upsert() -> None:
            points = [
                PointStruct(
                    id=make_point_id(record.chunk_id),
                    vector=record.vector,
                    payload=_build_payload(record),
                )
                for record in records
            ]
            self._get_client().upsert(collection_name=self.collection_name, points=points, wait=True)

        try:
            await asyncio.to_thread(_upsert)
        except Exception as e:
            raise VectorIndexError(
                "Failed to upsert vectors into Qdrant",
                details={"collection": self.collection_name, "error": str(e)},
            ) from e

        logger.info(f"Qdrant upsert complete: collection={self.collection_name}, points={len(records)}")
        return [record.chunk_id for record in records]

    async def delete_by_ids(self, chunk_ids: Sequence[str]) -> None:
        """Delete points by chunk id; unknown ids are ignored."""
        if not chunk_ids:
            return

        def _delete() -> None:
            if not self._collection_exists():
                return
            self._get_client().delete(
                collection_name=self.collection_name,
                points_selector=PointIdsList(points=[make_point_id(cid) for cid in chunk_ids]),
                wait=True,
            )

        try:
            await asyncio.to_thread(_delete)
        except Exception as e:
            raise VectorIndexError(
                "Failed to delete vectors from Qdrant",
                details={"collection": self.collection_name, "count": len(chunk_ids), "error": str(e)},
            ) from e
        logger.debug(f"Qdrant delete complete: collection={self.collection_name}, points={len(chunk_ids)}")

    async def delete_version_points(
        self, chunk_ids: Sequence[str], work_id: str, doc_version: str
    ) -> None:
        """
        Delete ``chunk_ids`` only where the stored point still carries ``doc_version``.

        Points already overwritten by a newer run of the same note are kept.
        """
        if not chunk_ids:
            return
        selector = FilterSelector(
            filter=Filter(
                must=[
                    HasIdCondition(has_id=[make_point_id(cid) for cid in chunk_ids]),
                    FieldCondition(key="work_id", match=MatchValue(value=work_id)),
                    FieldCondition(key="doc_version", match=MatchValue(value=doc_version)),
                ]
            )
        )

        def _delete() -> None:
            if not self._collection_exists():
                return
            self._get_client().delete(
                collection_name=self.collection_name, points_selector=selector, wait=True
            )

        try:
            await asyncio.to_thread(_delete)
        except Exception as e:
            raise VectorIndexError(
                "Failed to delete vectors from Qdrant",
                details={"collection": self.collection_name, "work_id": work_id, "error": str(e)},
            ) from e

    async def query(
        self,
        vector: List[float],
        top_k: int,
        filter: Optional[Dict[str, str]] = None,
        return_metadata: bool = True,
    ) -> List[VectorMatch]:
        """Nearest chunks to ``vector``, best first."""
        query_filter = build_payload_filter(filter)

        def _query() -> List[Any]:
            if not self._collection_exists():
                return []
            response = self._get_client().query_points(
                collection_name=self.collection_name,
                query=vector,
                limit=top_k,
                query_filter=query_filter,
                with_payload=True,
            )
            return list(response.points)

        try:
            points = await asyncio.to_thread(_query)
        except Exception as e:
            raise VectorIndexError(
                "Qdrant query failed",
                details={"collection": self.collection_name, "error": str(e)},
            ) from e

        matches: List[VectorMatch] = []
        for point in points:
            payload = dict(point.payload or {})
            try:
                matches.append(
                    VectorMatch(
                        chunk_id=payload.get("chunk_id"),
                        work_id=payload.get("work_id"),
                        score=point.score,
                        metadata=payload if return_metadata else {},
                    )
                )
            except ValidationError as e:
                raise MalformedResponseError(
                    "qdrant",
                    "Qdrant match is missing chunk_id or work_id",
                    details={"point_id": str(point.id)},
                ) from e
        return matches

    async def list_chunk_ids(self, work_id: str) -> List[str]:
        """Enumerate stored chunk ids for a work note via a filtered scroll."""
        scroll_filter = build_payload_filter({"work_id": work_id})

        def _scroll() -> List[str]:
            if not self._collection_exists():
                return []
            client = self._get_client()
            chunk_ids: List[str] = []
            offset = None
            while True:
                points, offset = client.scroll(
                    collection_name=self.collection_name,
                    scroll_filter=scroll_filter,
                    limit=256,
                    offset=offset,
                    with_payload=["chunk_id"],
                    with_vectors=False,
                )
                chunk_ids.extend(p.payload["chunk_id"] for p in points if p.payload)
                if offset is None:
                    return chunk_ids

        try:
            return await asyncio.to_thread(_scroll)
        except Exception as e:
            raise VectorIndexError(
                "Qdrant scroll failed",
                details={"collection": self.collection_name, "work_id": work_id, "error": str(e)},
            ) from e

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
