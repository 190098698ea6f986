"""
memdock Models - SQLAlchemy schema.

Two independent schemas:
- Base: the primary memory table (server side), shadowed by the
  memories_fts full-text index (see memdock.fts)
- CacheBase: the per-(org, project) local cache file (client side)
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, Integer, String, Text, JSON, DateTime, Index, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db_time(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo on write; normalize to naive UTC first."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def from_db_time(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite returns naive datetimes; they are UTC."""
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class Base(DeclarativeBase):
    pass


class Memory(Base):
    """
    A memory record in primary storage.

    `key` is unique within a project and never changes. `updated_at` strictly
    increases on every mutation (enforced by MemoryManager, not the DB).
    Rows with archived_at set or a past expires_at are excluded from search
    but never physically removed by the search path.
    """
    __tablename__ = "memories"
    __table_args__ = (
        UniqueConstraint("project_id", "key", name="uq_memories_project_key"),
        Index("ix_memories_project_archived", "project_id", "archived_at"),
    )

    # Integer rowid alias; memories_fts uses it as content_rowid
    id = Column(Integer, primary_key=True)

    project_id = Column(String, nullable=False, index=True)
    key = Column(String, nullable=False)
    content = Column(Text, nullable=False)

    # `metadata` is reserved on declarative classes
    meta = Column("metadata", JSON, nullable=True)
    tags = Column(JSON, default=list)

    # Higher = more important
    priority = Column(Integer, default=0)

    created_at = Column(DateTime, default=lambda: to_db_time(_utcnow()))
    updated_at = Column(DateTime, default=lambda: to_db_time(_utcnow()))
    archived_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    pinned_at = Column(DateTime, nullable=True)
    last_accessed_at = Column(DateTime, nullable=True)


class CacheBase(DeclarativeBase):
    pass


class CachedMemory(CacheBase):
    """Local copy of a memory record. Replaced wholesale on every sync."""
    __tablename__ = "cached_memories"

    key = Column(String, primary_key=True)

    # Storage order: position in the synced snapshot
    position = Column(Integer, nullable=False, index=True)

    content = Column(Text, nullable=False)
    meta = Column("metadata", JSON, nullable=True)
    tags = Column(JSON, default=list)
    priority = Column(Integer, default=0)

    created_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=False)
    archived_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    pinned_at = Column(DateTime, nullable=True)
    last_accessed_at = Column(DateTime, nullable=True)


class SyncMeta(CacheBase):
    """Single-row table: which (org, project) this file mirrors and when it last synced."""
    __tablename__ = "sync_meta"

    id = Column(Integer, primary_key=True)
    org = Column(String, nullable=False)
    project = Column(String, nullable=False)
    last_synced_at = Column(DateTime, nullable=True)


class PendingWriteEntry(CacheBase):
    """A queued write. The autoincrement id is the FIFO order."""
    __tablename__ = "pending_writes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    method = Column(String, nullable=False)
    path = Column(String, nullable=False)
    body = Column(JSON, nullable=True)
    enqueued_at = Column(DateTime, nullable=False)
    idempotency_key = Column(String, nullable=False)
