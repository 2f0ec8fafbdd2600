"""Text chunking service for work note embeddings."""

import math
import re
from typing import List, Optional, Tuple

from worknote_retrieval.config import get_settings
from worknote_retrieval.models.chunk import ChunkMetadata, TextChunk
from worknote_retrieval.utils.errors import ChunkingError
from worknote_retrieval.utils.logging import get_logger

logger = get_logger("chunking_service")

CHARS_PER_TOKEN = 4
# trailing windows shorter than this fraction of a chunk are dropped
MIN_CHUNK_RATIO = 0.1
PREVIEW_LENGTH = 500

_CHUNK_ID_RE = re.compile(r"^(.+?)#chunk(\d+)$")


def generate_chunk_id(work_id: str, chunk_index: int) -> str:
    """Stable chunk identifier: ``{work_id}#chunk{chunk_index}``."""
    return f"{work_id}#chunk{chunk_index}"


def parse_chunk_id(chunk_id: str) -> Tuple[str, int]:
    """
    Inverse of :func:`generate_chunk_id`.

    Raises:
        ChunkingError: If the id does not look like ``<work_id>#chunk<digits>``
    """
    match = _CHUNK_ID_RE.match(chunk_id or "")
    if not match:
        raise ChunkingError(
            f"Invalid chunk ID format: {chunk_id}", details={"chunk_id": chunk_id}
        )
    return match.group(1), int(match.group(2))


def estimate_token_count(text: str) -> int:
    """Approximate token count at four characters per token."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def build_full_text(title: str, content: str) -> str:
    return f"{title}\n\n{content}"


class ChunkingService:
    """
    Deterministic sliding-window chunker.

    Token size is approximated by character count, so the same
    (title, content, configuration) always yields the same chunk texts and
    ids. Stale-vector cleanup depends on that.
    """

    def __init__(self, chunk_size: Optional[int] = None, overlap_ratio: Optional[float] = None):
        """
        Initialize the chunking service.

        Args:
            chunk_size: Chunk size in approximate tokens (defaults to settings.chunking.chunk_size)
            overlap_ratio: Fraction shared between consecutive chunks
                (defaults to settings.chunking.chunk_overlap_ratio)
        """
        if chunk_size is None or overlap_ratio is None:
            settings = get_settings()
            chunk_size = chunk_size if chunk_size is not None else settings.chunking.chunk_size
            if overlap_ratio is None:
                overlap_ratio = settings.chunking.chunk_overlap_ratio

        if chunk_size <= 0:
            raise ChunkingError("chunk_size must be > 0", details={"chunk_size": chunk_size})
        if not 0 <= overlap_ratio < 1:
            raise ChunkingError(
                "overlap_ratio must be in [0, 1)", details={"overlap_ratio": overlap_ratio}
            )

        self.chunk_size = chunk_size
        self.overlap_ratio = overlap_ratio

    @property
    def chunk_size_chars(self) -> int:
        return self.chunk_size * CHARS_PER_TOKEN

    @property
    def step_chars(self) -> int:
        return max(1, math.floor(self.chunk_size_chars * (1 - self.overlap_ratio)))

    def _windows(self, full_text: str) -> List[str]:
        size = self.chunk_size_chars
        if len(full_text) <= size:
            return [full_text]

        windows: List[str] = []
        start = 0
        while start < len(full_text):
            window = full_text[start : start + size]
            if start > 0 and len(window) < size * MIN_CHUNK_RATIO:
                break
            windows.append(window)
            start += self.step_chars
        return windows

    def chunk_work_note(
        self,
        work_id: str,
        title: str,
        content: str,
        base_metadata: Optional[ChunkMetadata] = None,
    ) -> List[TextChunk]:
        """
        Split a work note's title and content into overlapping chunks.

        Args:
            work_id: Work note id
            title: Work note title
            content: Work note body
            base_metadata: Person/department/category metadata copied onto every chunk

        Returns:
            Chunks with contiguous zero-based indices
        """
        full_text = build_full_text(title, content or "")
        base = base_metadata or ChunkMetadata(work_id=work_id)

        chunks = [
            TextChunk(
                chunk_id=generate_chunk_id(work_id, index),
                work_id=work_id,
                chunk_index=index,
                text=window,
                metadata=base.model_copy(
                    update={"work_id": work_id, "scope": "WORK", "chunk_index": index}
                ),
            )
            for index, window in enumerate(self._windows(full_text))
        ]
        logger.debug(
            f"Chunked work note {work_id} into {len(chunks)} chunks",
            extra={"work_id": work_id, "chunk_count": len(chunks), "text_length": len(full_text)},
        )
        return chunks

    def chunk_file_content(self, file_id: str, file_name: str, content: str) -> List[TextChunk]:
        """Chunk attachment text; the file id stands in for the work id."""
        full_text = f"File name: {file_name}\n\n{content}"
        return [
            TextChunk(
                chunk_id=generate_chunk_id(file_id, index),
                work_id=file_id,
                chunk_index=index,
                text=window,
                metadata=ChunkMetadata(
                    work_id=file_id,
                    scope="FILE",
                    chunk_index=index,
                    file_id=file_id,
                    created_at_bucket="",
                ),
            )
            for index, window in enumerate(self._windows(full_text))
        ]

    def count_chunks(self, title: str, content: str) -> int:
        """Number of chunks :meth:`chunk_work_note` would produce."""
        return len(self._windows(build_full_text(title, content or "")))

    def get_chunk_text(self, full_text: str, chunk_index: int) -> str:
        """Display preview of one chunk, truncated with an ellipsis."""
        start = chunk_index * self.step_chars
        text = full_text[start : start + self.chunk_size_chars]
        if len(text) > PREVIEW_LENGTH:
            return f"{text[: PREVIEW_LENGTH - 3]}..."
        return text
