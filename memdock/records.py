"""
Record types shared by the cache, the index and the write path.

MemoryRecord is the unit of context. PendingWrite, CandidateMemory and
IntentClassification are transient shapes that never hit primary storage
directly.
"""

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

# Timestamp fields, with their camelCase wire names
_TIMESTAMP_FIELDS = {
    "created_at": "createdAt",
    "updated_at": "updatedAt",
    "archived_at": "archivedAt",
    "expires_at": "expiresAt",
    "pinned_at": "pinnedAt",
    "last_accessed_at": "lastAccessedAt",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Coerce a wire timestamp into an aware UTC datetime.

    Accepts datetimes, epoch milliseconds (ints/floats, the remote API's
    native unit) and ISO-8601 strings. Anything else becomes None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _first(data: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        if name in data:
            return data[name]
    return None


@dataclass
class MemoryRecord:
    """
    A single stored context fact scoped to a project.

    `key` is the stable identifier (and URL path segment); it never changes
    once assigned. Records with `archived_at` set, or an `expires_at` in the
    past, are inactive and excluded from search.
    """
    key: str
    content: str
    metadata: Optional[Dict[str, Any]] = None
    tags: List[str] = field(default_factory=list)
    priority: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    archived_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    pinned_at: Optional[datetime] = None
    last_accessed_at: Optional[datetime] = None

    def is_active(self, now: Optional[datetime] = None) -> bool:
        if self.archived_at is not None:
            return False
        if self.expires_at is not None and self.expires_at <= (now or utcnow()):
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        """Snake_case dict with ISO timestamps."""
        data: Dict[str, Any] = {
            "key": self.key,
            "content": self.content,
            "metadata": self.metadata,
            "tags": list(self.tags),
            "priority": self.priority,
        }
        for name in _TIMESTAMP_FIELDS:
            data[name] = format_timestamp(getattr(self, name))
        return data

    def to_wire(self) -> Dict[str, Any]:
        """CamelCase dict in the remote API's shape."""
        data = self.to_dict()
        for name, wire in _TIMESTAMP_FIELDS.items():
            data[wire] = data.pop(name)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MemoryRecord":
        """
        Build a record from an API or cache mapping.

        Accepts camelCase and snake_case timestamps. `tags`/`metadata` may
        arrive JSON-encoded as strings (the remote store keeps them that way).
        """
        metadata = data.get("metadata")
        if isinstance(metadata, str):
            try:
                metadata = json.loads(metadata)
            except ValueError:
                metadata = {"raw": metadata}
        if metadata is not None and not isinstance(metadata, dict):
            metadata = {"value": metadata}

        tags = data.get("tags")
        if isinstance(tags, str):
            try:
                tags = json.loads(tags)
            except ValueError:
                tags = [t.strip() for t in tags.split(",") if t.strip()]
        if not isinstance(tags, list):
            tags = []

        try:
            priority = int(data.get("priority") or 0)
        except (TypeError, ValueError):
            priority = 0

        timestamps = {
            name: parse_timestamp(_first(data, name, wire))
            for name, wire in _TIMESTAMP_FIELDS.items()
        }
        now = utcnow()
        updated_at = timestamps.pop("updated_at") or now
        created_at = timestamps.pop("created_at") or updated_at

        return cls(
            key=str(data.get("key") or ""),
            content=str(data.get("content") or ""),
            metadata=metadata,
            tags=[str(t) for t in tags],
            priority=priority,
            created_at=created_at,
            updated_at=updated_at,
            **timestamps,
        )


@dataclass
class PendingWrite:
    """
    A write attempted while the remote store was unreachable.

    Replay is at-least-once: the remote side must apply these idempotently
    (upsert by key). `idempotency_key` travels as the Idempotency-Key header
    so side effects beyond the upsert can be deduplicated too.
    """
    method: str
    path: str
    body: Any = None
    enqueued_at: datetime = field(default_factory=utcnow)
    idempotency_key: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "method": self.method,
            "path": self.path,
            "body": self.body,
            "enqueued_at": format_timestamp(self.enqueued_at),
            "idempotency_key": self.idempotency_key,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PendingWrite":
        kwargs: Dict[str, Any] = {
            "method": str(data.get("method") or "POST").upper(),
            "path": str(data.get("path") or ""),
            "body": data.get("body"),
        }
        enqueued_at = parse_timestamp(_first(data, "enqueued_at", "enqueuedAt"))
        if enqueued_at:
            kwargs["enqueued_at"] = enqueued_at
        idempotency_key = _first(data, "idempotency_key", "idempotencyKey")
        if idempotency_key:
            kwargs["idempotency_key"] = str(idempotency_key)
        return cls(**kwargs)


@dataclass
class CandidateMemory:
    """A proposed memory extracted from conversation text. Never stored as-is."""
    type: str
    text: str
    confidence: float
    title: str = ""
    key: str = ""
    priority: int = 0
    tags: List[str] = field(default_factory=list)
    score: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "text": self.text,
            "confidence": self.confidence,
            "title": self.title,
            "key": self.key,
            "priority": self.priority,
            "tags": list(self.tags),
        }


@dataclass
class IntentClassification:
    """The inferred purpose of a search query. Recomputed per query."""
    intent: str
    confidence: float
    extracted_terms: List[str] = field(default_factory=list)
    suggested_types: Optional[List[str]] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "intent": self.intent,
            "confidence": self.confidence,
            "extracted_terms": list(self.extracted_terms),
        }
        if self.suggested_types is not None:
            data["suggested_types"] = list(self.suggested_types)
        return data
