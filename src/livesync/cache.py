"""
Query result cache kept consistent with the backend.

Entries are keyed by a fingerprint of (resource, filters). The synchronizer:
- serves fresh entries without touching the network
- shares one in-flight fetch per fingerprint between concurrent readers
- marks entries stale on invalidation, keeping their data visible until the
  refetch lands
- keeps last-good data when a refetch fails
- tags every fetch with the entry generation so results that were overtaken
  by an invalidation or an optimistic update never overwrite newer state

Usage:
    cache = CacheSynchronizer(default_ttl=300)
    fp = make_fingerprint("returns", {"branch": branch_id})
    rows = await cache.read(fp, lambda: client.get_returns(filters))
    cache.invalidate(match_resource("returns", branch=branch_id))
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable
import asyncio
import json
import logging
import time

from .errors import AuthorizationError, DashboardError, NetworkError

logger = logging.getLogger(__name__)

Fetcher = Callable[[], Awaitable[Any]]
Matcher = Callable[[str], bool]


class CacheStatus(Enum):
    FRESH = "fresh"
    STALE = "stale"
    FETCHING = "fetching"
    ERROR = "error"


@dataclass
class CacheEntry:
    fingerprint: str
    data: Any = None
    fetched_at: float | None = None
    ttl: float = 0.0
    status: CacheStatus = CacheStatus.STALE
    generation: int = 0
    error: Exception | None = None
    has_data: bool = False
    fetcher: Fetcher | None = field(default=None, repr=False)


# =============================================================================
# FINGERPRINTS AND MATCHERS
# =============================================================================


def make_fingerprint(resource: str, filters: dict | None = None) -> str:
    """
    Deterministic cache key for a resource and its filters.

    Filters that are None or empty strings are dropped so that "no branch"
    and "branch=None" share an entry.
    """
    if not resource or ":" in resource:
        raise ValueError(f"Invalid resource name: {resource!r}")
    clean = {k: v for k, v in (filters or {}).items() if v is not None and v != ""}
    payload = json.dumps(clean, sort_keys=True, default=str, separators=(",", ":"), ensure_ascii=False)
    return f"{resource}:{payload}"


def parse_fingerprint(fingerprint: str) -> tuple[str, dict]:
    resource, _, payload = fingerprint.partition(":")
    return resource, json.loads(payload) if payload else {}


def match_resource(resource: str, **filters: Any) -> Matcher:
    """
    Match entries of `resource` that may contain data for the given filters.

    An entry matches when each given filter is either equal in the entry or
    absent from it: invalidating branch A also hits the all-branches view.
    """
    wanted = {k: v for k, v in filters.items() if v is not None}

    def matcher(fingerprint: str) -> bool:
        name, entry_filters = parse_fingerprint(fingerprint)
        if name != resource:
            return False
        return all(
            key not in entry_filters or str(entry_filters[key]) == str(value)
            for key, value in wanted.items()
        )

    return matcher


def any_of(*matchers: Matcher) -> Matcher:
    return lambda fingerprint: any(m(fingerprint) for m in matchers)


def match_all(fingerprint: str) -> bool:
    return True


# =============================================================================
# SYNCHRONIZER
# =============================================================================


class CacheSynchronizer:
    """
    Holds query results and coordinates fetches for them.

    All methods run on one event loop. Invalidation is a monotonic
    FRESH -> STALE transition, so realtime events and TTL expiry may both
    apply it without coordination.
    """

    def __init__(self, default_ttl: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._inflight: dict[str, tuple[int, asyncio.Task]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, fingerprint: str) -> bool:
        return fingerprint in self._entries

    def peek(self, fingerprint: str) -> CacheEntry | None:
        """Snapshot of an entry without triggering a fetch."""
        entry = self._entries.get(fingerprint)
        return replace(entry) if entry is not None else None

    def _serves_cached(self, entry: CacheEntry, ttl: float) -> bool:
        return (
            entry.status is CacheStatus.FRESH
            and entry.has_data
            and entry.fetched_at is not None
            and self._clock() - entry.fetched_at < ttl
        )

    async def read(self, fingerprint: str, fetcher: Fetcher, ttl: float | None = None) -> Any:
        """
        Return data for `fingerprint`, fetching it if missing, stale or expired.

        Concurrent reads of one fingerprint share a single fetch. A fetch
        issued before the entry was invalidated is allowed to settle, then a
        new one is started, so at most one fetch per fingerprint is ever
        outstanding.
        """
        ttl = self.default_ttl if ttl is None else ttl
        while True:
            entry = self._entries.get(fingerprint)
            if entry is not None and self._serves_cached(entry, ttl):
                return entry.data

            inflight = self._inflight.get(fingerprint)
            if inflight is None:
                task = self._start_fetch(fingerprint, fetcher, ttl)
                return await asyncio.shield(task)

            generation, task = inflight
            if entry is not None and generation == entry.generation:
                return await asyncio.shield(task)

            await asyncio.wait([task])
            if not task.cancelled():
                task.exception()

    def _start_fetch(self, fingerprint: str, fetcher: Fetcher, ttl: float) -> asyncio.Task:
        entry = self._entries.get(fingerprint)
        if entry is None:
            entry = CacheEntry(fingerprint=fingerprint)
            self._entries[fingerprint] = entry

        entry.fetcher = fetcher
        entry.ttl = ttl
        entry.status = CacheStatus.FETCHING
        generation = entry.generation

        task = asyncio.ensure_future(self._fetch(entry, fetcher, generation))
        self._inflight[fingerprint] = (generation, task)
        return task

    async def _fetch(self, entry: CacheEntry, fetcher: Fetcher, generation: int) -> Any:
        fingerprint = entry.fingerprint
        try:
            data = await fetcher()
        except Exception as exc:
            return self._fetch_failed(entry, generation, exc)
        finally:
            current = self._inflight.get(fingerprint)
            if current is not None and current[1] is asyncio.current_task():
                del self._inflight[fingerprint]
        return self._store(entry, generation, data)

    def _store(self, entry: CacheEntry, generation: int, data: Any) -> Any:
        if self._entries.get(entry.fingerprint) is not entry:
            logger.debug("Dropping result for evicted entry %s", entry.fingerprint)
            return data

        if generation != entry.generation:
            logger.debug(
                "Discarding superseded result for %s (generation %d, now %d)",
                entry.fingerprint,
                generation,
                entry.generation,
            )
            if not entry.has_data:
                entry.data = data
                entry.has_data = True
                entry.fetched_at = self._clock()
            entry.status = CacheStatus.STALE
            return entry.data

        entry.data = data
        entry.has_data = True
        entry.fetched_at = self._clock()
        entry.status = CacheStatus.FRESH
        entry.error = None
        return data

    def _fetch_failed(self, entry: CacheEntry, generation: int, exc: Exception) -> Any:
        fingerprint = entry.fingerprint
        current = self._entries.get(fingerprint) is entry
        if current:
            entry.error = exc
            entry.status = CacheStatus.ERROR if generation == entry.generation else CacheStatus.STALE

        if isinstance(exc, AuthorizationError):
            logger.error("Not authorized to read %s: %s", fingerprint, exc)
            raise exc

        if current and entry.has_data:
            logger.warning("Fetch failed for %s, serving last good data: %s", fingerprint, exc)
            return entry.data

        logger.warning("Fetch failed for %s: %s", fingerprint, exc)
        if isinstance(exc, DashboardError):
            raise exc
        raise NetworkError(str(exc) or type(exc).__name__) from exc

    def invalidate(self, matcher: Matcher) -> list[str]:
        """Mark matching entries stale. Data stays visible until refetched."""
        invalidated = []
        for fingerprint, entry in self._entries.items():
            if not matcher(fingerprint):
                continue
            entry.generation += 1
            if entry.status is CacheStatus.FRESH:
                entry.status = CacheStatus.STALE
            invalidated.append(fingerprint)

        if invalidated:
            logger.debug("Invalidated %d entries: %s", len(invalidated), ", ".join(invalidated))
        return invalidated

    def mutate(self, fingerprint: str, updater: Callable[[Any], Any]) -> Any:
        """
        Apply an optimistic local change to cached data.

        Returns the previous data so the caller can `restore` it. Fetches
        already in flight for this entry will not overwrite the change.
        """
        entry = self._entries.get(fingerprint)
        if entry is None or not entry.has_data:
            raise KeyError(fingerprint)
        previous = entry.data
        entry.data = updater(previous)
        entry.generation += 1
        return previous

    def restore(self, fingerprint: str, data: Any) -> None:
        """Roll back an optimistic change."""
        entry = self._entries.get(fingerprint)
        if entry is None:
            logger.debug("Nothing to restore for %s", fingerprint)
            return
        entry.data = data
        entry.has_data = True
        entry.generation += 1

    async def refetch(self, matcher: Matcher) -> list[str]:
        """Invalidate matching entries and refetch those with a known fetcher."""
        self.invalidate(matcher)
        targets = [
            (fingerprint, entry.fetcher, entry.ttl)
            for fingerprint, entry in list(self._entries.items())
            if matcher(fingerprint) and entry.fetcher is not None
        ]
        results = await asyncio.gather(
            *(self.read(fingerprint, fetcher, ttl) for fingerprint, fetcher, ttl in targets),
            return_exceptions=True,
        )
        for (fingerprint, _, _), result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning("Refetch of %s failed: %s", fingerprint, result)
        return [fingerprint for fingerprint, _, _ in targets]

    def sweep(self) -> list[str]:
        """Mark entries whose TTL has elapsed as stale."""
        now = self._clock()
        expired = {
            fingerprint
            for fingerprint, entry in self._entries.items()
            if entry.status is CacheStatus.FRESH
            and entry.fetched_at is not None
            and now - entry.fetched_at >= entry.ttl
        }
        if expired:
            self.invalidate(lambda fingerprint: fingerprint in expired)
        return sorted(expired)

    async def run_sweeper(self, interval: float, refetch: bool = True) -> None:
        """Periodically expire entries; run as a task and cancel to stop."""
        while True:
            await asyncio.sleep(interval)
            expired = set(self.sweep())
            if refetch and expired:
                await self.refetch(lambda fingerprint: fingerprint in expired)

    def clear(self) -> None:
        """Drop everything, e.g. on logout. Results of in-flight fetches are ignored."""
        self._entries.clear()
        self._inflight.clear()


class LiveQuery:
    """
    One consumer's view of a resource whose filters change over time.

    Each filter change starts a new generation; a refresh that completes
    after the filters moved on is ignored instead of replacing newer data.
    """

    def __init__(
        self,
        cache: CacheSynchronizer,
        resource: str,
        fetch: Callable[[dict], Awaitable[Any]],
        ttl: float | None = None,
        **filters: Any,
    ):
        self.cache = cache
        self.resource = resource
        self.ttl = ttl
        self.filters = dict(filters)
        self.data: Any = None
        self.error: DashboardError | None = None
        self._fetch = fetch
        self._generation = 0

    @property
    def fingerprint(self) -> str:
        return make_fingerprint(self.resource, self.filters)

    def set_filters(self, **filters: Any) -> None:
        self.filters = dict(filters)
        self._generation += 1

    async def refresh(self) -> Any:
        generation = self._generation
        filters = dict(self.filters)
        try:
            data = await self.cache.read(self.fingerprint, lambda: self._fetch(filters), self.ttl)
        except DashboardError as exc:
            if generation != self._generation:
                logger.debug("Ignoring error from superseded %s query: %s", self.resource, exc)
                return self.data
            self.error = exc
            raise

        if generation != self._generation:
            logger.debug("Ignoring superseded %s result for %s", self.resource, filters)
            return self.data

        self.data = data
        self.error = None
        return data
