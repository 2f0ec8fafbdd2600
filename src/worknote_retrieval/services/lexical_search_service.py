"""Full-text search over work notes in the relational store."""

from typing import List, Optional

from sqlalchemy import and_, case, func, literal, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from worknote_retrieval.database.models import WorkNote
from worknote_retrieval.models.search import LexicalMatch, SearchFilters
from worknote_retrieval.repositories.work_note_repository import build_filter_clauses
from worknote_retrieval.utils.errors import LexicalSearchError
from worknote_retrieval.utils.logging import get_logger

logger = get_logger("lexical_search")

TITLE_WEIGHT = 2
CONTENT_WEIGHT = 1


def split_terms(query: str) -> List[str]:
    """Lower-cased, de-duplicated whitespace terms in query order."""
    seen = set()
    terms = []
    for term in query.lower().split():
        if term not in seen:
            seen.add(term)
            terms.append(term)
    return terms


class SqlLexicalSearchClient:
    """
    Ranked keyword match over title and content.

    PostgreSQL uses ``to_tsvector`` / ``plainto_tsquery`` / ``ts_rank``. Other
    dialects fall back to term containment: every term must occur in the
    title or content, and title hits weigh double. Both paths apply the same
    document filters as the semantic path.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    def _postgres_query(self, query: str):
        document = func.to_tsvector(
            "simple", func.coalesce(WorkNote.title, "") + literal(" ") + func.coalesce(WorkNote.content_raw, "")
        )
        ts_query = func.plainto_tsquery("simple", query)
        rank = func.ts_rank(document, ts_query).label("score")
        return select(WorkNote.id, rank).where(document.op("@@")(ts_query)), rank

    def _containment_query(self, terms: List[str]):
        title = func.lower(WorkNote.title)
        content = func.lower(func.coalesce(WorkNote.content_raw, ""))

        score = literal(0)
        matches_all = []
        for term in terms:
            in_title = title.contains(term, autoescape=True)
            in_content = content.contains(term, autoescape=True)
            score = (
                score
                + case((in_title, TITLE_WEIGHT), else_=0)
                + case((in_content, CONTENT_WEIGHT), else_=0)
            )
            matches_all.append(or_(in_title, in_content))

        score = score.label("score")
        return select(WorkNote.id, score).where(and_(*matches_all)), score

    async def match(
        self, query: str, limit: int, filters: Optional[SearchFilters] = None
    ) -> List[LexicalMatch]:
        """
        Ranked work note ids for ``query``, best first.

        Raises:
            LexicalSearchError: If the backend query fails
        """
        terms = split_terms(query)
        if not terms:
            return []

        async with self._session_factory() as session:
            try:
                if session.bind.dialect.name == "postgresql":
                    stmt, score = self._postgres_query(" ".join(terms))
                else:
                    stmt, score = self._containment_query(terms)

                for clause in build_filter_clauses(filters):
                    stmt = stmt.where(clause)
                stmt = stmt.order_by(score.desc(), WorkNote.created_at.desc(), WorkNote.id.asc()).limit(limit)

                result = await session.execute(stmt)
                rows = result.all()
            except SQLAlchemyError as e:
                logger.error(f"Lexical search failed for query {query!r}: {e}")
                raise LexicalSearchError(details={"query": query, "error": str(e)}) from e

        return [LexicalMatch(work_id=row[0], score=float(row[1] or 0)) for row in rows]
