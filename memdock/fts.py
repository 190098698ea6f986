"""
Full-text index over primary memory storage.

An FTS5 external-content table (memories_fts) shadows the memories table.
Insert/update/delete triggers keep it in step with primary data, so it only
needs a manual rebuild after bulk changes made with triggers absent.

The index is best-effort: if FTS5 is unavailable, every operation returns
an "unavailable" result instead of raising, and callers fall back to a
different ranking path.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional

from sqlalchemy import text

from .config import settings
from .database import DatabaseManager

logger = logging.getLogger(__name__)


class IndexStatus(str, Enum):
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"
    ERROR = "error"


@dataclass(frozen=True)
class IndexResult:
    """
    Tri-state outcome of an index operation.

    AVAILABLE carries data. UNAVAILABLE means the feature is off (not
    initialized, or nothing to search for). ERROR means the engine failed
    this call. Callers treat both non-available states as "use another
    ranking path", never as a user-facing error.
    """
    status: IndexStatus
    data: Any = None
    reason: Optional[str] = None

    @classmethod
    def available(cls, data: Any) -> "IndexResult":
        return cls(IndexStatus.AVAILABLE, data=data)

    @classmethod
    def unavailable(cls, reason: Optional[str] = None) -> "IndexResult":
        return cls(IndexStatus.UNAVAILABLE, reason=reason)

    @classmethod
    def error(cls, reason: str) -> "IndexResult":
        return cls(IndexStatus.ERROR, reason=reason)

    @property
    def is_available(self) -> bool:
        return self.status is IndexStatus.AVAILABLE


# FTS5 query syntax characters
_FTS_METACHARS = re.compile(r"['\"*(){}\[\]^~\\:]")

# Tags are a JSON array; index them as space-joined words
_TAGS_EXPR = "COALESCE((SELECT group_concat(value, ' ') FROM json_each({row}.tags)), '')"

FTS_SCHEMA: List[str] = [
    """
    CREATE VIRTUAL TABLE IF NOT EXISTS memories_fts USING fts5(
        key,
        content,
        tags,
        content='memories',
        content_rowid='id'
    )
    """,
    f"""
    CREATE TRIGGER IF NOT EXISTS memories_ai AFTER INSERT ON memories BEGIN
        INSERT INTO memories_fts(rowid, key, content, tags)
        VALUES (new.id, new.key, new.content, {_TAGS_EXPR.format(row='new')});
    END
    """,
    f"""
    CREATE TRIGGER IF NOT EXISTS memories_ad AFTER DELETE ON memories BEGIN
        INSERT INTO memories_fts(memories_fts, rowid, key, content, tags)
        VALUES ('delete', old.id, old.key, old.content, {_TAGS_EXPR.format(row='old')});
    END
    """,
    f"""
    CREATE TRIGGER IF NOT EXISTS memories_au AFTER UPDATE ON memories BEGIN
        INSERT INTO memories_fts(memories_fts, rowid, key, content, tags)
        VALUES ('delete', old.id, old.key, old.content, {_TAGS_EXPR.format(row='old')});
        INSERT INTO memories_fts(rowid, key, content, tags)
        VALUES (new.id, new.key, new.content, {_TAGS_EXPR.format(row='new')});
    END
    """,
]


def build_match_query(query: str) -> Optional[str]:
    """
    Turn free text into a safe FTS5 OR-of-terms query.

    Returns None when nothing searchable is left after sanitizing, so an
    empty query never matches everything.
    """
    safe = _FTS_METACHARS.sub(" ", query or "").strip()
    if not safe:
        return None
    return " OR ".join(f'"{term}"' for term in safe.split())


def _db_now() -> str:
    # Same text format SQLAlchemy uses for SQLite DateTime columns
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S.%f")


class FullTextIndexManager:
    """
    Owns the memories_fts index: creation, querying and rebuilds.

    Usage:
        fts = FullTextIndexManager(db)
        await fts.ensure_index()
        result = await fts.search(project_id, "auth middleware", limit=20)
        if result.is_available:
            keys = result.data
    """

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def ensure_index(self) -> bool:
        """
        Create the index and its sync triggers. Idempotent, never raises.

        A freshly created index is backfilled from existing rows.

        Returns:
            True if the index is usable, False if the manager degraded to
            uninitialized
        """
        if self._initialized:
            return True

        try:
            await self.db.init_db()
            async with self.db.get_session() as session:
                existed = await session.execute(
                    text("SELECT 1 FROM sqlite_master WHERE type='table' AND name='memories_fts'")
                )
                is_new = existed.scalar() is None

                for statement in FTS_SCHEMA:
                    await session.execute(text(statement))

                if is_new:
                    await session.execute(
                        text("INSERT INTO memories_fts(memories_fts) VALUES ('rebuild')")
                    )
        except Exception as e:
            # FTS5 may not be compiled into this SQLite build
            logger.debug(f"Full-text index unavailable: {e}")
            self._initialized = False
            return False

        self._initialized = True
        logger.info("Full-text index ready")
        return True

    async def search(self, project_id: str, query: str, limit: int = 20) -> IndexResult:
        """
        Find memory keys matching any term of the query.

        Args:
            project_id: Project to search within
            query: Free text; index metacharacters are stripped
            limit: Maximum keys (clamped to 1..fts_max_limit)

        Returns:
            AVAILABLE with keys ranked by bm25 relevance (active records only),
            UNAVAILABLE if the index is off or the query sanitizes to nothing,
            ERROR if the engine rejected the query
        """
        if not self._initialized:
            return IndexResult.unavailable("index not initialized")

        match = build_match_query(query)
        if match is None:
            return IndexResult.unavailable("empty query")

        limit = min(max(1, limit), settings.fts_max_limit)

        try:
            async with self.db.get_session() as session:
                result = await session.execute(
                    text(
                        """
                        SELECT m.key, bm25(memories_fts) AS score
                        FROM memories m
                        JOIN memories_fts ON m.id = memories_fts.rowid
                        WHERE memories_fts MATCH :match
                          AND m.project_id = :project_id
                          AND m.archived_at IS NULL
                          AND (m.expires_at IS NULL OR m.expires_at > :now)
                        ORDER BY score
                        LIMIT :limit
                        """
                    ),
                    {"match": match, "project_id": project_id, "now": _db_now(), "limit": limit},
                )
                return IndexResult.available([row.key for row in result.fetchall()])
        except Exception as e:
            logger.debug(f"Full-text search failed, falling back: {e}")
            return IndexResult.error(str(e))

    async def rebuild(self) -> IndexResult:
        """
        Resynchronize the whole index from primary data.

        Safe to call repeatedly. Initializes the index first if needed.
        """
        if not self._initialized and not await self.ensure_index():
            return IndexResult.unavailable("index not initialized")

        try:
            async with self.db.get_session() as session:
                await session.execute(
                    text("INSERT INTO memories_fts(memories_fts) VALUES ('rebuild')")
                )
        except Exception as e:
            logger.debug(f"Full-text index rebuild failed: {e}")
            return IndexResult.error(str(e))

        logger.info("Full-text index rebuilt")
        return IndexResult.available(True)
