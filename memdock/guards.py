"""
Write guards - session rate limiting, capacity guidance and write admission.

Everything here is advisory or gating text; nothing touches storage.
Counters live on RateLimiter instances (one per session), so independent
sessions and tests never share state.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from .config import settings
from .errors import AdmissionError

logger = logging.getLogger(__name__)

# Fraction of the ceiling at which warnings start
RATE_WARNING_RATIO = 0.8


@dataclass
class RateLimitStatus:
    allowed: bool
    warning: Optional[str] = None


class RateLimiter:
    """
    Session-scoped write counter with a hard ceiling.

    Usage:
        limiter = RateLimiter()
        status = limiter.check_rate_limit()
        if status.allowed:
            ...perform write...
            limiter.increment_write_count()
    """

    def __init__(self, limit: Optional[int] = None, session_warning_threshold: Optional[int] = None):
        self.limit = limit if limit is not None else settings.rate_limit
        if self.limit < 1:
            raise ValueError("Rate limit must be at least 1")
        self.session_warning_threshold = (
            session_warning_threshold
            if session_warning_threshold is not None
            else settings.session_write_warning
        )
        self.write_count = 0

    def check_rate_limit(self) -> RateLimitStatus:
        """
        Gate the next write.

        Refused once the counter reaches the ceiling; allowed with a warning
        from 80% of the ceiling upward.
        """
        pct = self.write_count / self.limit
        if pct >= 1:
            return RateLimitStatus(
                allowed=False,
                warning=(
                    f"Rate limit reached ({self.write_count}/{self.limit}). "
                    "No more write operations allowed this session."
                ),
            )
        if pct >= RATE_WARNING_RATIO:
            return RateLimitStatus(
                allowed=True,
                warning=(
                    f"Approaching rate limit: {self.write_count}/{self.limit} "
                    f"write calls used ({round(pct * 100)}%)."
                ),
            )
        return RateLimitStatus(allowed=True)

    def increment_write_count(self) -> None:
        self.write_count += 1

    def get_session_write_warning(self) -> Optional[str]:
        """Advisory nudge toward batching once the session has written a lot."""
        if self.write_count >= self.session_warning_threshold:
            return (
                f" Note: {self.write_count} writes this session. Consider consolidating "
                "related memories or using batch operations to reduce write volume."
            )
        return None


@dataclass
class Capacity:
    """Server-reported memory quota for one project."""
    used: int
    limit: float = math.inf
    is_full: bool = False
    is_approaching: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Capacity":
        limit = data.get("limit")
        return cls(
            used=int(data.get("used") or 0),
            limit=math.inf if limit is None else float(limit),
            is_full=bool(data.get("is_full", data.get("isFull", False))),
            is_approaching=bool(data.get("is_approaching", data.get("isApproaching", False))),
        )


def _limit_text(limit: float) -> str:
    if limit is None or not math.isfinite(limit):
        return "unlimited"
    return str(int(limit))


def format_capacity_guidance(capacity: Capacity) -> str:
    limit = _limit_text(capacity.limit)
    if capacity.is_full:
        return (
            f"Project memory limit reached ({capacity.used}/{limit}). "
            "Delete or archive unused memories before storing new ones."
        )
    if capacity.is_approaching:
        return (
            f"Approaching project memory limit ({capacity.used}/{limit}). "
            "Consider archiving old memories."
        )
    return f"Memory available ({capacity.used}/{limit})."


@dataclass
class AdmissionDecision:
    allowed: bool
    reason: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


def validate_write_payload(
    payload: Any,
    max_content_size: Optional[int] = None,
    partial: bool = False,
) -> Optional[str]:
    """
    Check a write payload's shape.

    With partial=True (updates and deletes) only the key is required;
    fields that are present are still checked.

    Returns:
        None when valid, otherwise the rejection reason
    """
    if not isinstance(payload, Mapping):
        return "Write payload must be an object"

    max_content_size = max_content_size or settings.max_content_size

    key = payload.get("key")
    if not isinstance(key, str) or not key.strip():
        return "Memory key is required"
    if "?" in key or "#" in key:
        return "Memory key cannot contain '?' or '#'"

    content = payload.get("content")
    if not (partial and content is None):
        if not isinstance(content, str):
            return "Memory content must be a string"
        if not content.strip():
            return "Memory content cannot be empty"
        if len(content.encode("utf-8")) > max_content_size:
            return f"Memory content exceeds {max_content_size} bytes"

    tags = payload.get("tags")
    if tags is not None:
        if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
            return "Tags must be a list of strings"

    priority = payload.get("priority")
    if priority is not None and (isinstance(priority, bool) or not isinstance(priority, int)):
        return "Priority must be an integer"

    metadata = payload.get("metadata")
    if metadata is not None and not isinstance(metadata, Mapping):
        return "Metadata must be an object"

    return None


class WriteAdmission:
    """
    Decides whether a write may proceed.

    Malformed payloads, the rate ceiling and a full project are hard
    rejections. Everything else passes, carrying any advisory warnings.
    """

    def __init__(self, limiter: Optional[RateLimiter] = None, max_content_size: Optional[int] = None):
        self.limiter = limiter if limiter is not None else RateLimiter()
        self.max_content_size = max_content_size or settings.max_content_size

    def admit(
        self,
        payload: Any,
        capacity: Optional[Capacity] = None,
        partial: bool = False,
    ) -> AdmissionDecision:
        reason = validate_write_payload(payload, self.max_content_size, partial=partial)
        if reason:
            return AdmissionDecision(allowed=False, reason=reason)

        status = self.limiter.check_rate_limit()
        if not status.allowed:
            return AdmissionDecision(allowed=False, reason=status.warning)

        if capacity is not None and capacity.is_full:
            return AdmissionDecision(allowed=False, reason=format_capacity_guidance(capacity))

        warnings = []
        if status.warning:
            warnings.append(status.warning)
        if capacity is not None and capacity.is_approaching:
            warnings.append(format_capacity_guidance(capacity))
        session_warning = self.limiter.get_session_write_warning()
        if session_warning:
            warnings.append(session_warning.strip())
        return AdmissionDecision(allowed=True, warnings=warnings)

    def require(
        self,
        payload: Any,
        capacity: Optional[Capacity] = None,
        partial: bool = False,
    ) -> AdmissionDecision:
        """Like admit(), but raises AdmissionError on rejection."""
        decision = self.admit(payload, capacity, partial=partial)
        if not decision.allowed:
            logger.info(f"Write refused: {decision.reason}")
            raise AdmissionError(decision.reason)
        return decision

    def record_admitted(self) -> None:
        self.limiter.increment_write_count()
