"""
Turn capture - store what a conversation turn taught us.

Extracts candidates from the turn, runs each through write admission and
stores it (or queues it, when offline) under a stable agent context key.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from .client import MemoryClient
from .errors import AdmissionError, ApiError
from .extractor import CandidateExtractor
from .guards import Capacity, WriteAdmission
from .records import CandidateMemory, format_timestamp, utcnow

logger = logging.getLogger(__name__)

CAPTURE_SOURCE = "hook.turn"
QUALITY_TAG = "quality:high"


@dataclass
class CaptureResult:
    extracted: int = 0
    stored_keys: List[str] = field(default_factory=list)
    queued_keys: List[str] = field(default_factory=list)
    rejected: List[Dict[str, str]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def skipped_as_low_signal(self) -> bool:
        return self.extracted == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "extracted": self.extracted,
            "stored": len(self.stored_keys),
            "stored_keys": list(self.stored_keys),
            "queued_keys": list(self.queued_keys),
            "rejected": list(self.rejected),
            "warnings": list(self.warnings),
            "skipped_as_low_signal": self.skipped_as_low_signal,
        }


def candidate_payload(candidate: CandidateMemory) -> Dict[str, Any]:
    """The write payload for a candidate, in store_memory's shape."""
    tags = list(candidate.tags)
    if QUALITY_TAG not in tags:
        tags.append(QUALITY_TAG)
    return {
        "key": candidate.key,
        "content": candidate.text,
        "metadata": {
            "type": candidate.type,
            "id": candidate.key.rsplit("/", 1)[-1],
            "title": candidate.title,
            "source": CAPTURE_SOURCE,
            "captured_at": format_timestamp(utcnow()),
        },
        "tags": tags,
        "priority": candidate.priority,
    }


class TurnCapture:
    """
    Usage:
        capture = TurnCapture(client)
        result = await capture.capture(user_message="...", assistant_message="...")

    Candidates are pre-checked against project capacity here; the client
    admits and counts each write it actually sends or queues. By default
    both share the client's WriteAdmission.
    """

    def __init__(
        self,
        client: MemoryClient,
        admission: Optional[WriteAdmission] = None,
        extractor: Optional[CandidateExtractor] = None,
    ):
        self.client = client
        self.admission = admission if admission is not None else client.admission
        self.extractor = extractor or CandidateExtractor()

    async def _capacity(self) -> Optional[Capacity]:
        try:
            return await self.client.get_capacity()
        except (ApiError, httpx.HTTPError) as e:
            logger.debug(f"Capacity unavailable, admitting without it: {e}")
            return None

    async def capture(
        self,
        user_message: Optional[str] = None,
        assistant_message: Optional[str] = None,
        force_store: bool = False,
    ) -> CaptureResult:
        candidates = self.extractor.extract(user_message, assistant_message, force_store=force_store)
        result = CaptureResult(extracted=len(candidates))
        if not candidates:
            return result

        capacity = await self._capacity()

        for candidate in candidates:
            payload = candidate_payload(candidate)
            decision = self.admission.admit(payload, capacity)
            if not decision.allowed:
                result.rejected.append({"key": candidate.key, "reason": decision.reason})
                continue
            for warning in decision.warnings:
                if warning not in result.warnings:
                    result.warnings.append(warning)

            try:
                response = await self.client.store_memory(
                    payload["key"],
                    payload["content"],
                    metadata=payload["metadata"],
                    tags=payload["tags"],
                    priority=payload["priority"],
                )
            except (AdmissionError, ApiError) as e:
                result.rejected.append({"key": candidate.key, "reason": str(e)})
                continue

            if isinstance(response, dict) and response.get("queued"):
                result.queued_keys.append(candidate.key)
            else:
                result.stored_keys.append(candidate.key)

        logger.info(
            f"Captured turn: {len(result.stored_keys)} stored, "
            f"{len(result.queued_keys)} queued, {len(result.rejected)} rejected"
        )
        return result
