"""
HTTP client for the remote memory store.

Reads go through a TTL/ETag response cache and, when the network is down,
fall back to the LocalCache snapshot. Writes made while offline are queued
in the LocalCache and replayed later, at least once, in order. Every
response is tagged with a freshness marker:

- fresh:   straight from the server
- cached:  from the in-process response cache (or revalidated with a 304)
- stale:   an expired cache entry, or a LocalCache snapshot past its window
- offline: a LocalCache snapshot inside its freshness window
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set
from urllib.parse import quote, urlencode

import httpx

from .cache import ResponseCache
from .config import Settings, settings as default_settings
from .errors import ApiError, SupersededError
from .guards import Capacity, RateLimiter, WriteAdmission
from .intent import classify_search_intent
from .local_cache import LocalCache
from .logging_config import with_request_id
from .records import MemoryRecord, PendingWrite, format_timestamp

logger = logging.getLogger(__name__)

FRESH = "fresh"
CACHED = "cached"
STALE = "stale"
OFFLINE = "offline"

WRITE_METHODS = ("POST", "PATCH", "PUT", "DELETE")


@dataclass
class ReplayResult:
    replayed: int
    failed: int
    cleared: bool
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "replayed": self.replayed,
            "failed": self.failed,
            "cleared": self.cleared,
            "error": self.error,
        }


def memory_path(key: str) -> str:
    return f"/memories/{quote(key, safe='')}"


class MemoryClient:
    """
    Async client for one (org, project) on the remote store.

    Usage:
        async with MemoryClient() as client:
            result = await client.search_memories("auth middleware")
            client.last_freshness  # "fresh" / "cached" / "stale" / "offline"
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        org: Optional[str] = None,
        project: Optional[str] = None,
        local_cache: Optional[LocalCache] = None,
        response_cache: Optional[ResponseCache] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        config: Optional[Settings] = None,
        admission: Optional[WriteAdmission] = None,
    ):
        self.config = config if config is not None else default_settings
        self.base_url = (base_url or self.config.api_url).rstrip("/")
        self.token = token if token is not None else self.config.api_token
        self.org = org or self.config.org
        self.project = project or self.config.project

        # An empty ResponseCache is falsy (it defines __len__)
        if local_cache is None:
            local_cache = LocalCache(self.org, self.project, config=self.config)
        if response_cache is None:
            response_cache = ResponseCache(ttl=self.config.response_cache_ttl)
        if admission is None:
            admission = WriteAdmission(
                RateLimiter(self.config.rate_limit, self.config.session_write_warning),
                self.config.max_content_size,
            )
        self.local_cache = local_cache
        self.response_cache = response_cache
        self.admission = admission

        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.config.request_timeout,
            transport=transport,
            follow_redirects=False,
        )
        self._inflight: Dict[str, asyncio.Future] = {}
        self._background: Set[asyncio.Task] = set()

        self.is_offline = False
        self.last_freshness = FRESH

    async def __aenter__(self) -> "MemoryClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self._http.aclose()

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "X-Org-Slug": self.org,
            "X-Project-Slug": self.project,
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    # Transport

    async def _send(
        self,
        method: str,
        path: str,
        body: Any = None,
        idempotency_key: Optional[str] = None,
        conditional: bool = True,
    ) -> Any:
        """
        One HTTP round trip. Raises httpx.TransportError when unreachable
        and ApiError on a non-2xx answer.

        GETs revalidate with If-None-Match. PATCH and DELETE send If-Match
        with the ETag of the last read of that path, unless conditional is
        False (replayed writes are applied unconditionally).
        """
        headers = self._headers()
        if method == "GET":
            etag = self.response_cache.get_etag(path)
            if etag:
                headers["If-None-Match"] = etag
        elif method in ("PATCH", "DELETE") and conditional:
            etag = self.response_cache.get_etag(path)
            if etag:
                headers["If-Match"] = etag
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        kwargs: Dict[str, Any] = {"headers": headers}
        if body is not None:
            kwargs["json"] = body

        try:
            response = await self._http.request(method, path, **kwargs)
        except httpx.TransportError:
            self.is_offline = True
            raise
        self.is_offline = False

        if response.status_code == 304:
            found, data = self.response_cache.get_stale(path)
            if found:
                self.response_cache.touch(path)
                self.last_freshness = CACHED
                return data
            # Entry vanished between request and answer; ask again unconditionally
            self.response_cache.invalidate(path)
            return await self._send(method, path, body, idempotency_key)

        if response.status_code >= 400:
            text = response.text
            message = f"Request failed ({response.status_code})"
            try:
                parsed = response.json()
                if isinstance(parsed, dict):
                    message = parsed.get("error") or parsed.get("message") or message
            except ValueError:
                if text.strip():
                    message = text.strip()
            raise ApiError(response.status_code, message, text)

        data = self._parse_body(response)
        self.last_freshness = FRESH

        if method == "GET":
            self.response_cache.set(path, data, etag=response.headers.get("etag"))
        elif method in WRITE_METHODS:
            self.response_cache.invalidate_prefix("/memories")
        return data

    @staticmethod
    def _parse_body(response: httpx.Response) -> Any:
        if response.status_code in (204, 205) or not response.content:
            return None
        content_type = response.headers.get("content-type", "").lower()
        if not content_type or "json" in content_type:
            try:
                return response.json()
            except ValueError:
                pass
        text = response.text
        return text if text.strip() else None

    async def _get(self, path: str) -> Any:
        """
        GET with response cache, in-flight dedupe and offline fallback.

        An expired cache entry is served immediately (tagged stale) while a
        background request refreshes it.
        """
        found, data = self.response_cache.get(path)
        if found:
            self.last_freshness = CACHED
            return data

        found, data = self.response_cache.get_stale(path)
        if found:
            self._revalidate(path)
            self.last_freshness = STALE
            return data

        existing = self._inflight.get(path)
        if existing is not None:
            return await asyncio.shield(existing)

        future = asyncio.ensure_future(self._fetch_or_fallback(path))
        self._inflight[path] = future
        future.add_done_callback(lambda _: self._inflight.pop(path, None))
        return await asyncio.shield(future)

    async def _fetch_or_fallback(self, path: str) -> Any:
        try:
            return await self._send("GET", path)
        except httpx.TransportError as e:
            offline = self.local_cache.get_by_path(path)
            if offline is None:
                raise
            logger.debug(f"Serving {path} from local cache: {e}")
            self.last_freshness = STALE if self.local_cache.is_stale() else OFFLINE
            return offline

    def _revalidate(self, path: str) -> None:
        async def refresh():
            try:
                await self._send("GET", path)
            except (httpx.HTTPError, ApiError) as e:
                logger.debug(f"Background revalidation of {path} failed: {e}")

        task = asyncio.ensure_future(refresh())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _write(self, method: str, path: str, body: Any = None) -> Any:
        """Send a write; queue it in the local cache if the store is unreachable."""
        write = PendingWrite(method=method, path=path, body=body)
        try:
            return await self._send(method, path, body, idempotency_key=write.idempotency_key)
        except httpx.TransportError as e:
            if not self.local_cache.queue_write(write):
                raise
            logger.info(f"Offline, queued {method} {path}: {e}")
            self.last_freshness = OFFLINE
            return {
                "queued": True,
                "method": method,
                "path": path,
                "idempotency_key": write.idempotency_key,
            }

    # API

    @with_request_id
    async def ping(self) -> bool:
        try:
            response = await self._http.get("/health", headers=self._headers())
        except httpx.TransportError:
            self.is_offline = True
            return False
        self.is_offline = response.status_code >= 400
        return not self.is_offline

    @with_request_id
    async def list_memories(self, limit: int = 100, offset: int = 0) -> Dict[str, Any]:
        return await self._get(f"/memories?{urlencode({'limit': limit, 'offset': offset})}")

    @with_request_id
    async def search_memories(
        self,
        query: str,
        limit: int = 20,
        intent: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Search the remote store.

        The query's intent is classified locally and sent along so the
        server picks the matching weight vector. Offline, this degrades to
        the LocalCache substring search.
        """
        if intent is None:
            intent = classify_search_intent(query).intent
        params = {"q": query, "limit": limit, "intent": intent}
        return await self._get(f"/memories?{urlencode(params)}")

    @with_request_id
    async def get_memory(self, key: str) -> Optional[Dict[str, Any]]:
        return await self._get(memory_path(key))

    @with_request_id
    async def get_capacity(self) -> Capacity:
        data = await self._get("/memories/capacity")
        return Capacity.from_dict(data or {})

    async def _admitted_write(
        self,
        method: str,
        path: str,
        body: Any,
        payload: Dict[str, Any],
        partial: bool = False,
    ) -> Any:
        """
        Pass a write through admission, then send or queue it.

        Raises AdmissionError before anything is sent. A write counts
        against the rate limit once it is sent or queued.
        """
        self.admission.require(payload, partial=partial)
        result = await self._write(method, path, body)
        self.admission.record_admitted()
        return result

    @with_request_id
    async def store_memory(
        self,
        key: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
        tags: Optional[List[str]] = None,
        priority: Optional[int] = None,
        expires_at: Optional[datetime] = None,
    ) -> Any:
        body: Dict[str, Any] = {"key": key, "content": content}
        if metadata is not None:
            body["metadata"] = metadata
        if tags is not None:
            body["tags"] = tags
        if priority is not None:
            body["priority"] = priority
        if expires_at is not None:
            body["expires_at"] = format_timestamp(expires_at)
        return await self._admitted_write("POST", "/memories", body, body)

    @with_request_id
    async def update_memory(self, key: str, **fields: Any) -> Any:
        payload = dict(fields, key=key)
        return await self._admitted_write("PATCH", memory_path(key), fields, payload, partial=True)

    @with_request_id
    async def delete_memory(self, key: str) -> Any:
        result = await self._admitted_write("DELETE", memory_path(key), None, {"key": key}, partial=True)
        if not (isinstance(result, dict) and result.get("queued")):
            self.local_cache.remove_keys([key])
        return result

    # Sync

    @with_request_id
    async def sync_local_cache(self) -> int:
        """
        Page through the whole project and replace the LocalCache snapshot.

        Stops at a short page or after sync_max_records. Transport and API
        errors propagate; the old snapshot stays in place.

        Returns:
            Number of records now cached
        """
        page_size = self.config.sync_page_size
        max_records = self.config.sync_max_records
        records: List[MemoryRecord] = []
        offset = 0

        while len(records) < max_records:
            path = f"/memories?{urlencode({'limit': page_size, 'offset': offset})}"
            page = await self._send("GET", path)
            batch = (page or {}).get("memories") or []
            records.extend(MemoryRecord.from_dict(item) for item in batch)
            if len(batch) < page_size:
                break
            offset += page_size

        count = self.local_cache.sync(records[:max_records])
        logger.info(f"Local cache synced: {count} memories")
        return count

    @with_request_id
    async def replay_pending_writes(self) -> ReplayResult:
        """
        Re-send queued writes, oldest first.

        Stops at the first failure and leaves the whole queue in place, so
        already-sent entries go out again next time; the store absorbs that
        because writes are upserts by key and carry their Idempotency-Key.
        The queue is cleared only after every entry succeeded.
        """
        pending = self.local_cache.get_pending_writes()
        if not pending:
            return ReplayResult(replayed=0, failed=0, cleared=False)

        replayed = 0
        for write in pending:
            try:
                await self._send(
                    write.method, write.path, write.body,
                    idempotency_key=write.idempotency_key, conditional=False,
                )
            except (httpx.TransportError, ApiError) as e:
                logger.warning(
                    f"Replay stopped at {write.method} {write.path} "
                    f"({replayed}/{len(pending)} sent): {e}"
                )
                return ReplayResult(replayed=replayed, failed=1, cleared=False, error=str(e))
            replayed += 1

        self.local_cache.clear_pending_writes()
        logger.info(f"Replayed {replayed} pending writes")
        return ReplayResult(replayed=replayed, failed=0, cleared=True)


class SearchCoordinator:
    """
    Runs searches so that only the newest one's result counts.

    Starting a search cancels the previous one if it is still running; the
    caller awaiting the cancelled one gets SupersededError.

    Usage:
        coordinator = SearchCoordinator()
        results = await coordinator.run(lambda: client.search_memories(query))
    """

    def __init__(self):
        self._current: Optional[asyncio.Task] = None

    @property
    def in_flight(self) -> bool:
        return self._current is not None and not self._current.done()

    async def run(self, factory: Callable[[], Awaitable[Any]]) -> Any:
        if self.in_flight:
            self._current.cancel()

        task = asyncio.ensure_future(factory())
        self._current = task
        try:
            return await task
        except asyncio.CancelledError:
            if task.cancelled() and self._current is not task:
                raise SupersededError("Search superseded by a newer one")
            raise
        finally:
            if self._current is task:
                self._current = None
