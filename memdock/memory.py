"""
Memory Manager - primary storage write path and ranked search.

This module handles:
- Upserting memories by (project, key), keeping updated_at strictly increasing
- Archiving and deleting
- Paginated listing (the feed for LocalCache sync)
- Applying PendingWrite-shaped requests idempotently
- Ranked search: intent classification + per-intent weights + full-text,
  vector, recency and priority signals
"""

import logging
import re
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Union
from urllib.parse import unquote

from sqlalchemy import select, or_, and_, desc, func

from .database import DatabaseManager
from .fts import FullTextIndexManager
from .intent import IntentClassifier
from .models import Memory, to_db_time, from_db_time
from .ranking import (
    RankingSignals,
    weights_for,
    merge_search_results,
    rank,
    score,
    rank_signal,
    recency_signal,
    priority_signal,
)
from .records import MemoryRecord, PendingWrite, utcnow

logger = logging.getLogger(__name__)

_KEY_PATH = re.compile(r"^/memories/([^/?]+)$")

# updated_at must move forward by at least this much on every mutation
_MIN_TICK = timedelta(microseconds=1)


def _to_record(mem: Memory) -> MemoryRecord:
    return MemoryRecord(
        key=mem.key,
        content=mem.content,
        metadata=mem.meta,
        tags=list(mem.tags or []),
        priority=mem.priority or 0,
        created_at=from_db_time(mem.created_at),
        updated_at=from_db_time(mem.updated_at),
        archived_at=from_db_time(mem.archived_at),
        expires_at=from_db_time(mem.expires_at),
        pinned_at=from_db_time(mem.pinned_at),
        last_accessed_at=from_db_time(mem.last_accessed_at),
    )


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _active_condition(now: datetime):
    """SQLAlchemy condition for records visible to search."""
    db_now = to_db_time(now)
    return and_(
        Memory.archived_at.is_(None),
        or_(Memory.expires_at.is_(None), Memory.expires_at > db_now),
    )


def _next_tick(previous: Optional[datetime]) -> datetime:
    now = utcnow()
    previous = from_db_time(previous)
    if previous is not None and now <= previous:
        return previous + _MIN_TICK
    return now


class MemoryManager:
    """
    Manages memories in primary storage.

    Writes are upserts keyed by (project_id, key), so replaying the same
    write twice leaves the same state behind.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        fts: Optional[FullTextIndexManager] = None,
        classifier: Optional[IntentClassifier] = None,
    ):
        self.db = db_manager
        self.fts = fts or FullTextIndexManager(db_manager)
        self.classifier = classifier or IntentClassifier()

    async def upsert(
        self,
        project_id: str,
        key: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
        tags: Optional[List[str]] = None,
        priority: Optional[int] = None,
        expires_at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Create or replace a memory.

        Args:
            project_id: Owning project
            key: Stable identifier, unique within the project
            content: The fact/decision/constraint text
            metadata: Optional structured map (title, source, ...)
            tags: Optional ordered tag list
            priority: Ranking/eviction precedence (kept as-is when None on update)
            expires_at: Optional expiry instant

        Returns:
            The stored record as a dict, plus "created": bool
        """
        if not key or not key.strip():
            return {"error": "Memory key cannot be empty"}

        async with self.db.get_session() as session:
            result = await session.execute(
                select(Memory).where(Memory.project_id == project_id, Memory.key == key)
            )
            mem = result.scalar_one_or_none()
            created = mem is None

            if created:
                now = to_db_time(utcnow())
                mem = Memory(
                    project_id=project_id,
                    key=key,
                    content=content,
                    meta=metadata,
                    tags=list(tags or []),
                    priority=priority or 0,
                    created_at=now,
                    updated_at=now,
                    expires_at=to_db_time(expires_at),
                )
                session.add(mem)
            else:
                mem.content = content
                if metadata is not None:
                    mem.meta = metadata
                if tags is not None:
                    mem.tags = list(tags)
                if priority is not None:
                    mem.priority = priority
                if expires_at is not None:
                    mem.expires_at = to_db_time(expires_at)
                mem.updated_at = to_db_time(_next_tick(mem.updated_at))

            await session.flush()
            record = _to_record(mem).to_dict()

        logger.debug(f"{'Created' if created else 'Updated'} memory {project_id}/{key}")
        record["created"] = created
        return record

    async def get(self, project_id: str, key: str) -> Optional[Dict[str, Any]]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(Memory).where(Memory.project_id == project_id, Memory.key == key)
            )
            mem = result.scalar_one_or_none()
            return _to_record(mem).to_dict() if mem else None

    async def archive(self, project_id: str, key: str, archived: bool = True) -> Dict[str, Any]:
        """Archive (or unarchive) a memory. Archived memories drop out of search."""
        async with self.db.get_session() as session:
            result = await session.execute(
                select(Memory).where(Memory.project_id == project_id, Memory.key == key)
            )
            mem = result.scalar_one_or_none()
            if mem is None:
                return {"error": f"Memory '{key}' not found"}

            mem.archived_at = to_db_time(utcnow()) if archived else None
            mem.updated_at = to_db_time(_next_tick(mem.updated_at))
            await session.flush()
            return _to_record(mem).to_dict()

    async def delete(self, project_id: str, key: str) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(Memory).where(Memory.project_id == project_id, Memory.key == key)
            )
            mem = result.scalar_one_or_none()
            if mem is None:
                return False
            await session.delete(mem)
            return True

    async def list_memories(
        self,
        project_id: str,
        limit: int = 100,
        offset: int = 0,
        include_archived: bool = False,
    ) -> Dict[str, Any]:
        """
        One page of memories, newest first.

        Returns:
            {"memories": [...], "total": int}
        """
        limit = min(max(1, limit), 500)
        offset = max(0, offset)

        conditions = [Memory.project_id == project_id]
        if not include_archived:
            conditions.append(_active_condition(utcnow()))

        async with self.db.get_session() as session:
            total = await session.execute(select(func.count(Memory.id)).where(*conditions))
            result = await session.execute(
                select(Memory)
                .where(*conditions)
                .order_by(desc(Memory.updated_at), desc(Memory.id))
                .limit(limit)
                .offset(offset)
            )
            return {
                "memories": [_to_record(m).to_dict() for m in result.scalars().all()],
                "total": total.scalar() or 0,
            }

    async def apply_write(
        self,
        project_id: str,
        write: Union[PendingWrite, Mapping[str, Any]],
    ) -> Dict[str, Any]:
        """
        Apply a {method, path, body} write request.

        POST /memories upserts by body["key"]; PATCH /memories/{key} upserts
        that key; DELETE /memories/{key} deletes (a missing key is not an
        error). Applying the same request twice is harmless.
        """
        if not isinstance(write, PendingWrite):
            write = PendingWrite.from_dict(write)

        body = write.body if isinstance(write.body, dict) else {}
        key_match = _KEY_PATH.match(write.path)

        if write.method in ("POST", "PUT", "PATCH"):
            if key_match:
                key = unquote(key_match.group(1))
            elif write.path.rstrip("/") == "/memories":
                key = str(body.get("key") or "")
            else:
                return {"error": f"Unsupported write path: {write.path}"}

            existing = None
            if write.method == "PATCH":
                existing = await self.get(project_id, key)
                if existing is None:
                    return {"error": f"Memory '{key}' not found"}

            content = body.get("content")
            if content is None and existing is not None:
                content = existing["content"]
            if not isinstance(content, str):
                return {"error": "Memory content must be a string"}

            return await self.upsert(
                project_id,
                key,
                content,
                metadata=body.get("metadata"),
                tags=body.get("tags"),
                priority=body.get("priority"),
                expires_at=MemoryRecord.from_dict(body).expires_at,
            )

        if write.method == "DELETE" and key_match:
            key = unquote(key_match.group(1))
            deleted = await self.delete(project_id, key)
            return {"key": key, "deleted": deleted}

        return {"error": f"Unsupported write: {write.method} {write.path}"}

    async def _like_search(self, project_id: str, query: str, limit: int) -> List[str]:
        """Substring fallback when the full-text index is unavailable."""
        terms = self.classifier.classify(query).extracted_terms or [query.strip()]
        terms = [t for t in terms if t]
        if not terms:
            return []

        like_clauses = []
        for term in terms[:10]:
            pattern = f"%{_escape_like(term)}%"
            like_clauses.append(Memory.key.ilike(pattern, escape="\\"))
            like_clauses.append(Memory.content.ilike(pattern, escape="\\"))

        async with self.db.get_session() as session:
            result = await session.execute(
                select(Memory.key)
                .where(Memory.project_id == project_id, _active_condition(utcnow()), or_(*like_clauses))
                .order_by(desc(Memory.priority), desc(Memory.updated_at))
                .limit(limit)
            )
            return [row[0] for row in result.all()]

    async def search(
        self,
        project_id: str,
        query: str,
        limit: int = 20,
        vector_scores: Optional[Dict[str, float]] = None,
        graph_scores: Optional[Dict[str, float]] = None,
    ) -> Dict[str, Any]:
        """
        Ranked search over active memories.

        The query's intent selects a weight vector; lexical rank (full-text
        index, or a LIKE scan when the index is unavailable), vector
        similarity and graph proximity (both supplied by the caller, 0..1),
        recency and priority are combined into one score.

        Args:
            project_id: Project to search
            query: Free-text query
            limit: Maximum results
            vector_scores: Optional {key: similarity} from an embedding search
            graph_scores: Optional {key: proximity} from a relationship walk

        Returns:
            {"intent": {...}, "weights": {...}, "lexical_source": "fts"|"like",
             "memories": [record dicts with "score"]}
        """
        classification = self.classifier.classify(query)
        weights = weights_for(classification.intent)
        vector_scores = vector_scores or {}
        graph_scores = graph_scores or {}

        await self.fts.ensure_index()
        pool = max(limit * 3, limit)
        lexical = await self.fts.search(project_id, query, pool)
        if lexical.is_available:
            lexical_keys: List[str] = lexical.data
            lexical_source = "fts"
        else:
            lexical_keys = await self._like_search(project_id, query, pool)
            lexical_source = "like"

        if vector_scores:
            vector_keys = sorted(vector_scores, key=lambda k: vector_scores[k], reverse=True)
            pooled = merge_search_results(lexical_keys, vector_keys, pool)
        else:
            pooled = lexical_keys
        candidate_keys = list(dict.fromkeys(pooled + list(graph_scores)))
        if not candidate_keys:
            return {
                "intent": classification.to_dict(),
                "weights": weights.as_dict(),
                "lexical_source": lexical_source,
                "memories": [],
            }

        async with self.db.get_session() as session:
            result = await session.execute(
                select(Memory).where(
                    Memory.project_id == project_id,
                    Memory.key.in_(candidate_keys),
                    _active_condition(utcnow()),
                )
            )
            records = {m.key: _to_record(m) for m in result.scalars().all()}

        now = utcnow()
        lexical_positions = {key: i for i, key in enumerate(lexical_keys)}
        signals = []
        for key, record in records.items():
            position = lexical_positions.get(key)
            signals.append(RankingSignals(
                key=key,
                lexical=rank_signal(position, len(lexical_keys)) if position is not None else 0.0,
                vector=float(vector_scores.get(key, 0.0)),
                recency=recency_signal(record.updated_at, now),
                priority=priority_signal(record.priority),
                graph=float(graph_scores.get(key, 0.0)),
                raw_priority=record.priority,
                updated_at=record.updated_at,
            ))

        ranked = rank(signals, weights)[:limit]
        memories = []
        for item in ranked:
            data = records[item.key].to_dict()
            data["score"] = round(score(item, weights), 4)
            memories.append(data)

        return {
            "intent": classification.to_dict(),
            "weights": weights.as_dict(),
            "lexical_source": lexical_source,
            "memories": memories,
        }
