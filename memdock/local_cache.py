"""
Local Cache - offline-first snapshot of one (org, project)'s memories.

One SQLite file per (org, project) holds:
- the last synced snapshot of memory records (replaced wholesale on sync)
- when that snapshot was taken
- the queue of writes made while the remote store was unreachable

No network I/O happens here. Storage faults on the read side are logged and
turned into None / [] so callers can always fall through to "no data";
only sync() raises, since a failed snapshot replace must not look like success.
"""

import logging
import re
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union
from urllib.parse import parse_qs, unquote, urlsplit

from sqlalchemy import create_engine, delete, event, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .config import Settings, settings as default_settings
from .errors import CacheError
from .models import (
    CacheBase,
    CachedMemory,
    PendingWriteEntry,
    SyncMeta,
    from_db_time,
    to_db_time,
)
from .records import MemoryRecord, PendingWrite, utcnow

logger = logging.getLogger(__name__)

_MEMORY_PATH = re.compile(r"^/memories/([^/]+)$")

# Remote routes under /memories/ that are not record keys
_NON_KEY_ROUTES = frozenset({"capacity"})


def _int_param(params: Dict[str, List[str]], name: str, default: Optional[int]) -> Optional[int]:
    try:
        return max(0, int(params[name][0]))
    except (KeyError, IndexError, ValueError):
        return default


def _page(records: List[Dict[str, Any]], params: Dict[str, List[str]]) -> List[Dict[str, Any]]:
    offset = _int_param(params, "offset", 0)
    limit = _int_param(params, "limit", None)
    if limit is None:
        return records[offset:]
    return records[offset:offset + limit]


def _to_row(record: MemoryRecord, position: int) -> CachedMemory:
    return CachedMemory(
        key=record.key,
        position=position,
        content=record.content,
        meta=record.metadata,
        tags=list(record.tags),
        priority=record.priority,
        created_at=to_db_time(record.created_at),
        updated_at=to_db_time(record.updated_at),
        archived_at=to_db_time(record.archived_at),
        expires_at=to_db_time(record.expires_at),
        pinned_at=to_db_time(record.pinned_at),
        last_accessed_at=to_db_time(record.last_accessed_at),
    )


def _from_row(row: CachedMemory) -> MemoryRecord:
    updated_at = from_db_time(row.updated_at)
    return MemoryRecord(
        key=row.key,
        content=row.content,
        metadata=row.meta,
        tags=list(row.tags or []),
        priority=row.priority or 0,
        created_at=from_db_time(row.created_at) or updated_at,
        updated_at=updated_at,
        archived_at=from_db_time(row.archived_at),
        expires_at=from_db_time(row.expires_at),
        pinned_at=from_db_time(row.pinned_at),
        last_accessed_at=from_db_time(row.last_accessed_at),
    )


class LocalCache:
    """
    Snapshot + pending-write queue for one (org, project).

    Usage:
        cache = LocalCache("acme", "web")
        cache.sync(records)
        cache.get("auth-setup")
        cache.get_by_path("/memories?q=auth")

    Records come back as dicts (MemoryRecord.to_dict()), the same shape the
    client hands out when online.
    """

    def __init__(
        self,
        org: str,
        project: str,
        cache_path: Optional[Union[str, Path]] = None,
        stale_threshold: Optional[float] = None,
        config: Optional[Settings] = None,
    ):
        self.config = config or default_settings
        self.org = org
        self.project = project

        if cache_path is None:
            cache_path = self.config.get_cache_path(org, project)
        self.cache_path = Path(cache_path)

        if stale_threshold is None:
            stale_threshold = self.config.stale_threshold_seconds
        self.stale_threshold = timedelta(seconds=stale_threshold)

        self._engine = None
        self._session_factory = None

    def _get_engine(self):
        """Lazy engine creation; the file and tables appear on first use."""
        if self._engine is None:
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
            engine = create_engine(f"sqlite:///{self.cache_path}")

            @event.listens_for(engine, "connect")
            def set_sqlite_pragmas(dbapi_conn, connection_record):
                cursor = dbapi_conn.cursor()
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.execute("PRAGMA busy_timeout=5000")
                cursor.close()

            try:
                CacheBase.metadata.create_all(engine)
            except Exception:
                engine.dispose()
                raise

            self._engine = engine
            self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)
        return self._engine

    def _session(self) -> Session:
        self._get_engine()
        return self._session_factory()

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._session_factory = None

    # Snapshot

    def sync(self, records: Iterable[Union[MemoryRecord, Dict[str, Any]]]) -> int:
        """
        Replace the whole snapshot and stamp last_synced_at.

        Either the new snapshot lands completely or the old one stays.
        Duplicate keys keep their first position and last content.

        Returns:
            Number of records stored

        Raises:
            CacheError: if the cache file cannot be written
        """
        rows: Dict[str, CachedMemory] = {}
        for record in records:
            if not isinstance(record, MemoryRecord):
                record = MemoryRecord.from_dict(record)
            if not record.key:
                continue
            position = rows[record.key].position if record.key in rows else len(rows)
            rows[record.key] = _to_row(record, position)

        try:
            with self._session() as session, session.begin():
                session.execute(delete(CachedMemory))
                session.add_all(rows.values())

                meta = session.get(SyncMeta, 1)
                if meta is None:
                    meta = SyncMeta(id=1, org=self.org, project=self.project)
                    session.add(meta)
                meta.last_synced_at = to_db_time(utcnow())
        except (SQLAlchemyError, OSError) as e:
            raise CacheError(f"Could not write local cache {self.cache_path}: {e}") from e

        logger.info(f"Synced {len(rows)} memories into local cache for {self.org}/{self.project}")
        return len(rows)

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Exact lookup in the current snapshot, regardless of archive/expiry state."""
        try:
            with self._session() as session:
                row = session.get(CachedMemory, key)
                return _from_row(row).to_dict() if row else None
        except (SQLAlchemyError, OSError) as e:
            logger.warning(f"Local cache read failed for {key}: {e}")
            return None

    def list(self) -> List[Dict[str, Any]]:
        """Full snapshot in storage order."""
        try:
            with self._session() as session:
                rows = session.execute(
                    select(CachedMemory).order_by(CachedMemory.position)
                ).scalars().all()
                return [_from_row(row).to_dict() for row in rows]
        except (SQLAlchemyError, OSError) as e:
            logger.warning(f"Local cache list failed: {e}")
            return []

    def search(self, term: str) -> List[Dict[str, Any]]:
        """
        Case-insensitive substring match over key and content.

        No ranking and no index: results come back in storage order, and
        archived or expired records are left out.
        """
        needle = (term or "").lower()
        now = utcnow()
        results = []
        try:
            with self._session() as session:
                rows = session.execute(
                    select(CachedMemory).order_by(CachedMemory.position)
                ).scalars().all()
                records = [_from_row(row) for row in rows]
        except (SQLAlchemyError, OSError) as e:
            logger.warning(f"Local cache search failed: {e}")
            return []

        # Python-side match so non-ASCII case folding agrees with str.lower()
        for record in records:
            if not record.is_active(now):
                continue
            if needle in record.key.lower() or needle in record.content.lower():
                results.append(record.to_dict())
        return results

    def get_by_path(self, path: str) -> Optional[Dict[str, Any]]:
        """
        Answer a remote-API-shaped GET path from the snapshot.

        /memories/{key}   -> {"memory": get(key)}  (None if the key is absent)
        /memories?q=term  -> {"memories": search(term)}
        /memories         -> {"memories": list()}  (also for a blank q)

        limit and offset, when present, page the returned list. Anything
        else, including /memories/capacity, returns None.
        """
        parts = urlsplit(path or "")
        route = parts.path.rstrip("/")

        if route == "/memories":
            params = parse_qs(parts.query)
            term = params.get("q", [""])[0].strip()
            records = self.search(term) if term else self.list()
            return {"memories": _page(records, params)}

        match = _MEMORY_PATH.match(route)
        if match and match.group(1) not in _NON_KEY_ROUTES:
            key = unquote(match.group(1))
            record = self.get(key)
            if record is None:
                return None
            return {"memory": record}

        return None

    def remove_keys(self, keys: Iterable[str]) -> int:
        """Drop records from the snapshot (e.g. after a local delete). Returns count removed."""
        keys = list(keys)
        if not keys:
            return 0
        try:
            with self._session() as session, session.begin():
                result = session.execute(delete(CachedMemory).where(CachedMemory.key.in_(keys)))
                return result.rowcount or 0
        except (SQLAlchemyError, OSError) as e:
            logger.warning(f"Local cache remove failed: {e}")
            return 0

    # Freshness

    @property
    def last_synced_at(self) -> Optional[datetime]:
        try:
            with self._session() as session:
                meta = session.get(SyncMeta, 1)
                return from_db_time(meta.last_synced_at) if meta else None
        except (SQLAlchemyError, OSError) as e:
            logger.warning(f"Local cache metadata read failed: {e}")
            return None

    def is_stale(self) -> bool:
        """True before the first sync, or once the freshness window has passed."""
        last = self.last_synced_at
        if last is None:
            return True
        return utcnow() - last > self.stale_threshold

    # Pending writes

    def queue_write(self, write: Union[PendingWrite, Dict[str, Any]]) -> bool:
        """
        Append a write to the queue.

        Returns:
            False if the queue could not be written
        """
        if not isinstance(write, PendingWrite):
            write = PendingWrite.from_dict(write)
        try:
            with self._session() as session, session.begin():
                session.add(PendingWriteEntry(
                    method=write.method,
                    path=write.path,
                    body=write.body,
                    enqueued_at=to_db_time(write.enqueued_at),
                    idempotency_key=write.idempotency_key,
                ))
        except (SQLAlchemyError, OSError) as e:
            logger.warning(f"Could not queue pending write {write.method} {write.path}: {e}")
            return False

        logger.debug(f"Queued pending write {write.method} {write.path}")
        return True

    def get_pending_writes(self) -> List[PendingWrite]:
        """Queue contents, oldest first. Does not modify the queue."""
        try:
            with self._session() as session:
                entries = session.execute(
                    select(PendingWriteEntry).order_by(PendingWriteEntry.id)
                ).scalars().all()
                return [
                    PendingWrite(
                        method=entry.method,
                        path=entry.path,
                        body=entry.body,
                        enqueued_at=from_db_time(entry.enqueued_at),
                        idempotency_key=entry.idempotency_key,
                    )
                    for entry in entries
                ]
        except (SQLAlchemyError, OSError) as e:
            logger.warning(f"Could not read pending writes: {e}")
            return []

    def pending_count(self) -> int:
        try:
            with self._session() as session:
                return session.execute(select(func.count(PendingWriteEntry.id))).scalar() or 0
        except (SQLAlchemyError, OSError) as e:
            logger.warning(f"Could not count pending writes: {e}")
            return 0

    def clear_pending_writes(self) -> None:
        """Empty the queue. Only call once every entry has been replayed successfully."""
        try:
            with self._session() as session, session.begin():
                session.execute(delete(PendingWriteEntry))
        except (SQLAlchemyError, OSError) as e:
            logger.warning(f"Could not clear pending writes: {e}")
