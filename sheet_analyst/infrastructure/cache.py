"""LRU caches with a time-to-live and single-flight computation.

Both the table cache and the result cache are instances of
:class:`SingleFlightCache`.  ``get_or_compute`` is the only mutation path used
by the pipeline: the first caller for a key runs the computation while
concurrent callers for the same key await its outcome.  Failed computations
are never stored.
"""
from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Hashable, TypeVar

from sheet_analyst.core.errors import CacheComputeError, SheetAnalysisError

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


@dataclass(slots=True)
class CacheEntry(Generic[K, V]):
    key: K
    value: V
    last_access: float
    cost: int
    created_at: float


@dataclass(slots=True)
class CacheStats:
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    expirations: int = 0
    computations: int = 0


def _consume_exception(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()


class SingleFlightCache(Generic[K, V]):
    """Least-recently-used cache bounded by entry count and/or total cost."""

    def __init__(
        self,
        name: str,
        *,
        max_entries: int | None = None,
        max_cost: int | None = None,
        ttl: float | None = None,
        cost_of: Callable[[V], int] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries is None and max_cost is None:
            raise ValueError("a cache needs max_entries or max_cost")
        self.name = name
        self._max_entries = max_entries
        self._max_cost = max_cost
        self._ttl = ttl
        self._cost_of = cost_of or (lambda _value: 1)
        self._clock = clock
        self._entries: OrderedDict[K, CacheEntry[K, V]] = OrderedDict()
        self._inflight: dict[K, asyncio.Future] = {}
        self._total_cost = 0
        self._lock = threading.Lock()
        self.stats = CacheStats()

    # ------------------------------------------------------------------
    # introspection
    # ------------------------------------------------------------------
    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            entry = self._entries.get(key)  # type: ignore[arg-type]
            return entry is not None and not self._expired(entry, self._clock())

    @property
    def total_cost(self) -> int:
        return self._total_cost

    def keys(self) -> list[K]:
        """Keys from least to most recently used."""

        with self._lock:
            return list(self._entries.keys())

    # ------------------------------------------------------------------
    # internal helpers
    # ------------------------------------------------------------------
    def _expired(self, entry: CacheEntry[K, V], now: float) -> bool:
        return self._ttl is not None and now - entry.created_at >= self._ttl

    def _remove_locked(self, key: K) -> None:
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._total_cost -= entry.cost

    def _over_capacity_locked(self) -> bool:
        if self._max_entries is not None and len(self._entries) > self._max_entries:
            return True
        return self._max_cost is not None and self._total_cost > self._max_cost

    # ------------------------------------------------------------------
    # synchronous API
    # ------------------------------------------------------------------
    def get(self, key: K) -> V | None:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._expired(entry, now):
                self._remove_locked(key)
                self.stats.expirations += 1
                return None
            entry.last_access = now
            self._entries.move_to_end(key)
            return entry.value

    def put(self, key: K, value: V, *, cost: int | None = None) -> None:
        now = self._clock()
        size = max(1, cost if cost is not None else self._cost_of(value))
        if self._max_cost is not None and size > self._max_cost:
            logger.info("event=cache_skip cache=%s reason=oversized cost=%s", self.name, size)
            return
        with self._lock:
            self._remove_locked(key)
            self._entries[key] = CacheEntry(key=key, value=value, last_access=now, cost=size, created_at=now)
            self._total_cost += size
            while self._over_capacity_locked():
                oldest, evicted = self._entries.popitem(last=False)
                self._total_cost -= evicted.cost
                self.stats.evictions += 1
                logger.debug("event=cache_evict cache=%s key=%s", self.name, oldest)

    def invalidate(self, key: K) -> None:
        with self._lock:
            self._remove_locked(key)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [key for key, entry in self._entries.items() if self._expired(entry, now)]
            for key in stale:
                self._remove_locked(key)
            self.stats.expirations += len(stale)
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._total_cost = 0

    # ------------------------------------------------------------------
    # single-flight API
    # ------------------------------------------------------------------
    async def get_or_compute(
        self,
        key: K,
        compute: Callable[[], Awaitable[V]],
        *,
        cost: Callable[[V], int] | None = None,
        should_cache: Callable[[V], bool] | None = None,
    ) -> V:
        while True:
            cached = self.get(key)
            if cached is not None:
                self.stats.hits += 1
                return cached

            pending = self._inflight.get(key)
            if pending is None:
                break

            try:
                return await asyncio.shield(pending)
            except asyncio.CancelledError:
                task = asyncio.current_task()
                if pending.cancelled() and (task is None or not task.cancelling()):
                    # the computing caller went away; take over the computation
                    continue
                raise
            except SheetAnalysisError:
                # same taxonomy code for every caller sharing the computation
                raise
            except Exception as exc:
                raise CacheComputeError(self.name, exc) from exc

        self.stats.misses += 1
        self.stats.computations += 1
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        future.add_done_callback(_consume_exception)
        self._inflight[key] = future
        try:
            value = await compute()
        except BaseException as exc:
            if isinstance(exc, asyncio.CancelledError):
                future.cancel()
            else:
                future.set_exception(exc)
            raise
        else:
            if should_cache is None or should_cache(value):
                self.put(key, value, cost=cost(value) if cost is not None else None)
            future.set_result(value)
            return value
        finally:
            if self._inflight.get(key) is future:
                del self._inflight[key]
