"""
Analysis Cache

Content-addressed cache for analysis results, shared by every pipeline run
in the process. Concurrent misses on the same fingerprint share a single
in-flight computation instead of each calling the model.
"""

import asyncio
import hashlib
import json
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from ..common.schemas import AnalysisResult, DiscussionThread

logger = logging.getLogger("discubot.pipeline.analysis_cache")

DEFAULT_TTL_SECONDS = 3600.0
DEFAULT_MAX_ENTRIES = 500


def fingerprint(thread: DiscussionThread, options: Dict[str, Any]) -> str:
    """SHA-256 over the ordered message contents and the prompt options."""
    payload = {
        "messages": [m.content for m in thread.messages],
        "options": options,
    }
    encoded = json.dumps(payload, sort_keys=True, ensure_ascii=False, default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


@dataclass
class CacheEntry:
    value: AnalysisResult
    created_at: float
    expires_at: float


class AnalysisCache:
    """
    TTL + size-bounded cache.

    Expired entries are never served. When full, the oldest entry is
    evicted. The lock only guards the dict; it is never held while a
    computation runs.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._inflight: Dict[str, "asyncio.Future[AnalysisResult]"] = {}
        self._lock = asyncio.Lock()
        self._hits = 0
        self._misses = 0

    def _valid(self, entry: CacheEntry) -> bool:
        return self._clock() < entry.expires_at

    def _store(self, key: str, value: AnalysisResult) -> None:
        now = self._clock()
        self._entries.pop(key, None)
        self._entries[key] = CacheEntry(value=value, created_at=now, expires_at=now + self.ttl_seconds)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Evicted cache entry %s", evicted[:12])

    async def get(self, key: str) -> Optional[AnalysisResult]:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if not self._valid(entry):
                del self._entries[key]
                return None
            return entry.value

    async def set(self, key: str, value: AnalysisResult) -> None:
        async with self._lock:
            self._store(key, value)

    async def get_or_compute(
        self,
        key: str,
        compute: Callable[[], Awaitable[AnalysisResult]],
    ) -> Tuple[AnalysisResult, bool]:
        """
        Return ``(result, cached)``.

        ``cached`` is True when the model was not called on behalf of this
        caller, either because of a stored entry or because another caller
        was already computing the same fingerprint.
        """
        async with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                if self._valid(entry):
                    self._hits += 1
                    return replace(entry.value, cached=True), True
                del self._entries[key]
            future = self._inflight.get(key)
            owner = future is None
            if owner:
                future = asyncio.get_running_loop().create_future()
                self._inflight[key] = future
                self._misses += 1
            else:
                self._hits += 1

        if not owner:
            result = await asyncio.shield(future)
            return replace(result, cached=True), True

        try:
            result = await compute()
        except BaseException as e:
            async with self._lock:
                self._inflight.pop(key, None)
            if not future.done():
                if isinstance(e, asyncio.CancelledError):
                    future.cancel()
                else:
                    future.set_exception(e)
                    # Owner re-raises; keep waiters from logging "never retrieved"
                    future.exception()
            raise

        async with self._lock:
            self._store(key, result)
            self._inflight.pop(key, None)
        if not future.done():
            future.set_result(result)
        return result, False

    async def clear(self) -> int:
        async with self._lock:
            size = len(self._entries)
            self._entries.clear()
        logger.info("Cleared %d cached analyses", size)
        return size

    async def cleanup_expired(self) -> int:
        async with self._lock:
            expired = [k for k, e in self._entries.items() if not self._valid(e)]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.info("Removed %d expired cache entries", len(expired))
        return len(expired)

    def stats(self) -> Dict[str, Any]:
        valid = sum(1 for e in self._entries.values() if self._valid(e))
        return {
            "total_entries": len(self._entries),
            "valid_entries": valid,
            "expired_entries": len(self._entries) - valid,
            "inflight": len(self._inflight),
            "hits": self._hits,
            "misses": self._misses,
        }
