"""
Extraction Cache Module.

Content-addressed cache of ExtractionResults keyed by document fingerprint.

Features:
    - LRU eviction beyond a maximum entry count or memory budget
    - TTL expiry checked on read and by a background sweeper
    - at most one in-flight computation per key; concurrent callers wait
      for the owner's result or exception
    - integrity check on read; corrupt entries are dropped and count as misses

Author: ML Engineering Team
"""

import hashlib
import threading
import time
from collections import OrderedDict
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from config import get_config
from vat_extraction.model_inference.extraction_result import ExtractionResult
from vat_extraction.utils.exceptions import CacheError
from vat_extraction.utils.logger import get_logger

# Initialize module logger
logger = get_logger(__name__)


def _digest(value: ExtractionResult) -> str:
    return hashlib.sha256(value.to_json().encode('utf-8')).hexdigest()


@dataclass
class CacheEntry:
    """
    A cached ExtractionResult.

    Attributes:
        key: Document fingerprint.
        value: Cached result.
        created_at: Clock reading at insertion.
        ttl: Lifetime in seconds.
        access_count: Number of hits served.
        size_bytes: Approximate memory footprint.
        digest: SHA-256 of the serialized value at insertion.
    """
    key: str
    value: Any
    created_at: float
    ttl: float
    access_count: int = 0
    size_bytes: int = 0
    digest: str = ""

    def is_expired(self, now: float) -> bool:
        return now - self.created_at >= self.ttl


@dataclass
class CacheStats:
    """Point-in-time cache counters."""
    size: int = 0
    max_size: int = 0
    memory_bytes: int = 0
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    expirations: int = 0
    errors: int = 0
    deduplicated: int = 0
    in_flight: int = 0

    @property
    def hit_rate(self) -> float:
        lookups = self.hits + self.misses
        return self.hits / lookups if lookups else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'size': self.size,
            'max_size': self.max_size,
            'memory_bytes': self.memory_bytes,
            'hits': self.hits,
            'misses': self.misses,
            'hit_rate': round(self.hit_rate, 4),
            'evictions': self.evictions,
            'expirations': self.expirations,
            'errors': self.errors,
            'deduplicated': self.deduplicated,
            'in_flight': self.in_flight,
        }


class ExtractionCache:
    """
    Thread-safe LRU + TTL cache with in-flight de-duplication.

    Attributes:
        max_size: Maximum number of entries.
        ttl: Default entry lifetime in seconds.
        sweep_interval: Seconds between background sweeps.
        max_memory_bytes: Optional memory budget (0 disables it).

    Example:
        >>> cache = ExtractionCache(max_size=3)
        >>> result, cached = cache.get_or_compute(fingerprint, lambda: pipeline_run())
        >>> cached
        False
    """

    def __init__(
        self,
        max_size: Optional[int] = None,
        ttl_seconds: Optional[float] = None,
        sweep_interval: Optional[float] = None,
        max_memory_bytes: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
        on_error: Optional[Callable[[CacheError], None]] = None
    ) -> None:
        self.max_size = int(max_size or get_config("cache.max_size", 1000))
        self.ttl = float(ttl_seconds or get_config("cache.ttl_seconds", 86400))
        self.sweep_interval = float(
            sweep_interval or get_config("cache.sweep_interval_seconds", 3600)
        )
        self.max_memory_bytes = int(
            max_memory_bytes if max_memory_bytes is not None
            else get_config("cache.max_memory_bytes", 0)
        )
        if self.max_size < 1:
            raise ValueError(f"max_size must be positive, got {self.max_size}")

        self._clock = clock
        self._on_error = on_error
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._in_flight: Dict[str, Future] = {}
        self._lock = threading.RLock()
        self._memory = 0
        self._stats = CacheStats(max_size=self.max_size)

        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None

        logger.debug(
            f"ExtractionCache initialized (max_size={self.max_size}, ttl={self.ttl:.0f}s, "
            f"max_memory={self.max_memory_bytes})"
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Start the background sweeper thread."""
        with self._lock:
            if self._sweeper is not None and self._sweeper.is_alive():
                return
            self._stop.clear()
            self._sweeper = threading.Thread(
                target=self._sweep_loop, name="extraction-cache-sweeper", daemon=True
            )
            self._sweeper.start()
        logger.info(f"Cache sweeper started (interval={self.sweep_interval:.0f}s)")

    def shutdown(self) -> None:
        """Stop the sweeper thread."""
        self._stop.set()
        sweeper, self._sweeper = self._sweeper, None
        if sweeper is not None:
            sweeper.join(timeout=5)
            logger.info("Cache sweeper stopped")

    def _sweep_loop(self) -> None:
        while not self._stop.wait(self.sweep_interval):
            removed = self.sweep()
            if removed:
                logger.debug(f"Swept {removed} expired cache entries")

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def get(self, key: str, count_miss: bool = True) -> Optional[ExtractionResult]:
        """
        Look up a fresh, intact entry.

        Expired and corrupt entries are removed and count as misses.

        Args:
            key: Document fingerprint.
            count_miss: Set to False when a following get_or_compute call
                will count the miss for the same lookup.
        """
        with self._lock:
            return self._lookup(key, count_miss)

    def set(self, key: str, value: ExtractionResult, ttl: Optional[float] = None) -> None:
        """
        Insert or replace an entry, evicting least recently used entries.

        Raises:
            CacheError: If value is not an ExtractionResult.
        """
        if not isinstance(value, ExtractionResult):
            raise CacheError(key, f"expected ExtractionResult, got {type(value).__name__}")

        size = value.estimated_size()
        entry = CacheEntry(
            key=key,
            value=value,
            created_at=self._clock(),
            ttl=float(ttl if ttl is not None else self.ttl),
            size_bytes=size,
            digest=_digest(value),
        )

        with self._lock:
            if self.max_memory_bytes and size > self.max_memory_bytes:
                logger.warning(f"Result for {key[:12]} ({size} bytes) exceeds cache memory budget")
                self._remove(key)
                return
            self._remove(key)
            self._entries[key] = entry
            self._memory += size
            self._evict()

    def delete(self, key: str) -> bool:
        """Remove an entry. Returns True if one existed."""
        with self._lock:
            removed = self._remove(key)
        if removed:
            logger.debug(f"Cache entry invalidated: {key[:12]}")
        return removed

    invalidate = delete

    def sweep(self) -> int:
        """Remove every expired entry. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                self._remove(key)
            self._stats.expirations += len(expired)
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._memory = 0
        logger.debug("Cache cleared")

    def get_or_compute(
        self,
        key: str,
        compute: Callable[[], ExtractionResult],
        force: bool = False
    ) -> Tuple[ExtractionResult, bool]:
        """
        Return the cached result or compute it exactly once per key.

        Concurrent callers for the same key wait for the first caller's
        computation. A forced call skips the cached entry but still joins a
        computation already in flight.

        Args:
            key: Document fingerprint.
            compute: Zero-argument callable producing the result.
            force: Bypass a cached entry.

        Returns:
            Tuple of (result, served_from_cache).
        """
        with self._lock:
            if not force:
                cached = self._lookup(key)
                if cached is not None:
                    return cached, True
            future = self._in_flight.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._in_flight[key] = future
            else:
                self._stats.deduplicated += 1

        if not owner:
            logger.debug(f"Waiting on in-flight computation for {key[:12]}")
            return future.result(), False

        try:
            result = compute()
            self.set(key, result)
        except BaseException as exc:
            future.set_exception(exc)
            raise
        else:
            future.set_result(result)
            return result, False
        finally:
            with self._lock:
                self._in_flight.pop(key, None)

    def contains(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and not entry.is_expired(self._clock())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> CacheStats:
        """Snapshot of the cache counters."""
        with self._lock:
            return CacheStats(
                size=len(self._entries),
                max_size=self.max_size,
                memory_bytes=self._memory,
                hits=self._stats.hits,
                misses=self._stats.misses,
                evictions=self._stats.evictions,
                expirations=self._stats.expirations,
                errors=self._stats.errors,
                deduplicated=self._stats.deduplicated,
                in_flight=len(self._in_flight),
            )

    # -------------------------------------------------------------------------
    # Internals (lock held)
    # -------------------------------------------------------------------------

    def _lookup(self, key: str, count_miss: bool = True) -> Optional[ExtractionResult]:
        entry = self._entries.get(key)
        if entry is None:
            self._stats.misses += int(count_miss)
            return None

        if entry.is_expired(self._clock()):
            self._remove(key)
            self._stats.expirations += 1
            self._stats.misses += int(count_miss)
            return None

        problem = self._integrity_problem(entry)
        if problem is not None:
            self._remove(key)
            self._stats.errors += 1
            self._stats.misses += int(count_miss)
            error = CacheError(key, problem)
            logger.warning(f"Dropping corrupt cache entry: {error}")
            if self._on_error is not None:
                self._on_error(error)
            return None

        self._entries.move_to_end(key)
        entry.access_count += 1
        self._stats.hits += 1
        return entry.value

    @staticmethod
    def _integrity_problem(entry: CacheEntry) -> Optional[str]:
        if not isinstance(entry.value, ExtractionResult):
            return f"value is {type(entry.value).__name__}"
        try:
            digest = _digest(entry.value)
        except (TypeError, ValueError) as exc:
            return f"value not serializable: {exc}"
        if digest != entry.digest:
            return "checksum mismatch"
        return None

    def _remove(self, key: str) -> bool:
        entry = self._entries.pop(key, None)
        if entry is None:
            return False
        self._memory -= entry.size_bytes
        return True

    def _evict(self) -> None:
        while self._entries and (
            len(self._entries) > self.max_size
            or (self.max_memory_bytes and self._memory > self.max_memory_bytes)
        ):
            key, entry = self._entries.popitem(last=False)
            self._memory -= entry.size_bytes
            self._stats.evictions += 1
            logger.debug(f"Evicted least recently used entry {key[:12]}")
