"""TTL and per-domain capacity bounded cache"""

import asyncio
import contextlib
import hashlib
import itertools
import re
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set
from urllib.parse import urlparse

from loguru import logger

from .config import (
    CACHE_CHECK_PERIOD,
    CACHE_CLEANUP_INTERVAL,
    CACHE_ENABLED,
    CACHE_KEY_HASH_THRESHOLD,
    CACHE_MAX_ITEMS_PER_DOMAIN,
    CACHE_TTL,
)
from .metrics import Metrics
from .models import CacheEntry
from .storage import JsonCacheBackend

_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]")


@dataclass
class DomainCacheSettings:
    ttl: float
    max_items: int
    enabled: bool = True


def domain_from_key(key: str) -> Optional[str]:
    """Keys look like ``namespace:domain:identifier``"""
    parts = key.split(":")
    return parts[1] if len(parts) >= 2 else None


class CacheService:
    """
    In-memory cache keyed by ``namespace:domain:identifier``.

    - TTL expiry checked on read and purged on its own timer
    - Per-domain capacity enforced on insert and by the periodic sweep,
      oldest entry (creation time, then insertion order) evicted first
    - Optional JSON backend mirrored by the sweep and on close
    """

    def __init__(
        self,
        enabled: bool = CACHE_ENABLED,
        default_ttl: float = CACHE_TTL,
        max_items_per_domain: int = CACHE_MAX_ITEMS_PER_DOMAIN,
        domain_settings: Optional[Dict[str, Dict[str, Any]]] = None,
        cleanup_interval: float = CACHE_CLEANUP_INTERVAL,
        check_period: float = CACHE_CHECK_PERIOD,
        key_hash_threshold: int = CACHE_KEY_HASH_THRESHOLD,
        backend: Optional[JsonCacheBackend] = None,
        metrics: Optional[Metrics] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize cache service.

        Args:
            enabled: Global switch; a disabled cache misses every read and drops writes
            default_ttl: Seconds an entry lives unless a TTL is given (0 = no expiry)
            max_items_per_domain: Default capacity per domain
            domain_settings: Per-domain overrides {domain: {ttl, max_items, enabled}}
            cleanup_interval: Seconds between capacity sweeps (0 disables the timer)
            check_period: Seconds between expired-entry purges (0 disables the timer)
            key_hash_threshold: Identifiers longer than this are md5-hashed in keys
            backend: Optional persistent mirror
            metrics: Observability sink
            clock: Wall-clock time source (creation times are persisted)
        """
        self.enabled = enabled
        self.cleanup_interval = cleanup_interval
        self.check_period = check_period
        self.key_hash_threshold = key_hash_threshold
        self.backend = backend
        self.metrics = metrics
        self.clock = clock

        self.default_settings = DomainCacheSettings(
            ttl=default_ttl, max_items=max_items_per_domain, enabled=enabled
        )
        self._domain_settings: Dict[str, DomainCacheSettings] = {}
        for domain, settings in (domain_settings or {}).items():
            self.configure_domain(domain, **settings)

        self._entries: Dict[str, CacheEntry] = {}
        self._domain_index: Dict[Optional[str], Set[str]] = {}
        self._sequence = itertools.count()
        self._lock = threading.Lock()
        self._tasks: List[asyncio.Task] = []

        self.stats = {
            "hits": 0,
            "misses": 0,
            "sets": 0,
            "deletes": 0,
            "hashed_keys": 0,
            "evictions": 0,
            "expired": 0,
        }

        logger.info(
            f"💾 Cache service initialized: ttl={default_ttl:.0f}s, "
            f"max_items={max_items_per_domain}, enabled={enabled}, "
            f"domains={len(self._domain_settings)}"
        )

    def configure_domain(
        self,
        domain: str,
        ttl: Optional[float] = None,
        max_items: Optional[int] = None,
        enabled: Optional[bool] = None,
    ) -> None:
        """Override TTL / capacity / enablement for one domain"""
        self._domain_settings[domain] = DomainCacheSettings(
            ttl=ttl if ttl is not None else self.default_settings.ttl,
            max_items=max_items if max_items is not None else self.default_settings.max_items,
            enabled=enabled if enabled is not None else True,
        )

    def settings_for(self, domain: Optional[str]) -> DomainCacheSettings:
        if domain is None:
            return self.default_settings
        return self._domain_settings.get(domain, self.default_settings)

    # ------------------------------------------------------------------ #
    # Keys
    # ------------------------------------------------------------------ #

    def create_key(self, namespace: str, identifier: str) -> Optional[str]:
        """
        Build ``namespace:domain:identifier``.

        The domain is the identifier's hostname when it parses as a URL,
        otherwise the identifier stripped of non-alphanumerics. Identifiers
        over the hash threshold are replaced by their md5 digest.
        """
        if not namespace or not identifier:
            return None

        identifier = str(identifier)
        parsed = urlparse(identifier)
        if parsed.scheme and parsed.hostname:
            # IPv6 literals carry colons, which would split the key
            domain = parsed.hostname.replace(":", "-")
        else:
            domain = _NON_ALNUM.sub("", identifier)

        if len(identifier) > self.key_hash_threshold:
            safe_identifier = hashlib.md5(identifier.encode("utf-8")).hexdigest()
            with self._lock:
                self.stats["hashed_keys"] += 1
        else:
            safe_identifier = _NON_ALNUM.sub("", identifier)

        return f"{namespace}:{domain}:{safe_identifier}"

    # ------------------------------------------------------------------ #
    # Operations
    # ------------------------------------------------------------------ #

    def get(self, key: Optional[str]) -> Any:
        """Cached value, or None on miss / expiry"""
        if not self.enabled or not key:
            return None

        now = self.clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.is_expired(now):
                self._remove(key)
                self.stats["expired"] += 1
                entry = None

            if entry is None:
                self.stats["misses"] += 1
                hit = False
            else:
                self.stats["hits"] += 1
                hit = True

        self._record_lookup(hit)
        return entry.value if entry is not None else None

    def set(self, key: Optional[str], value: Any, ttl: Optional[float] = None) -> bool:
        """
        Store a value.

        Args:
            key: Cache key (see create_key)
            value: Any value; only JSON-serializable values reach the backend
            ttl: Seconds to live, defaulting to the domain's TTL (0 = no expiry)

        Returns:
            False when the cache or the key's domain is disabled
        """
        if not self.enabled or not key:
            return False

        domain = domain_from_key(key)
        settings = self.settings_for(domain)
        if not settings.enabled:
            return False

        entry = CacheEntry(
            key=key,
            value=value,
            created_at=self.clock(),
            domain=domain,
            ttl=ttl if ttl is not None else settings.ttl,
            sequence=next(self._sequence),
        )

        with self._lock:
            self._remove(key)
            self._insert(entry)
            self.stats["sets"] += 1
            evicted = self._enforce_capacity(domain, settings.max_items)

        if evicted:
            logger.debug(f"Evicted {evicted} oldest cached items for domain {domain}")
        return True

    def delete(self, key: Optional[str]) -> bool:
        if not self.enabled or not key:
            return False

        with self._lock:
            removed = self._remove(key)
            if removed:
                self.stats["deletes"] += 1
        return removed

    def has(self, key: Optional[str]) -> bool:
        if not self.enabled or not key:
            return False

        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and not entry.is_expired(self.clock())

    def keys(self) -> List[str]:
        if not self.enabled:
            return []

        now = self.clock()
        with self._lock:
            return [k for k, e in self._entries.items() if not e.is_expired(now)]

    def get_domain_keys(self, domain: Optional[str]) -> List[str]:
        if not self.enabled or not domain:
            return []

        now = self.clock()
        with self._lock:
            return [
                k
                for k in self._domain_index.get(domain, ())
                if not self._entries[k].is_expired(now)
            ]

    def flush_domain(self, domain: Optional[str]) -> int:
        """Delete every entry for one domain"""
        if not self.enabled or not domain:
            return 0

        with self._lock:
            keys = list(self._domain_index.get(domain, ()))
            for key in keys:
                self._remove(key)
            self.stats["deletes"] += len(keys)

        logger.info(f"Flushed cache for domain {domain}: {len(keys)} items deleted")
        return len(keys)

    def flush(self) -> int:
        """Delete every entry"""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._domain_index.clear()
            self.stats["deletes"] += count

        logger.info(f"Cache flushed: {count} items deleted")
        return count

    # ------------------------------------------------------------------ #
    # Bookkeeping (caller holds the lock)
    # ------------------------------------------------------------------ #

    def _insert(self, entry: CacheEntry) -> None:
        self._entries[entry.key] = entry
        self._domain_index.setdefault(entry.domain, set()).add(entry.key)

    def _remove(self, key: str) -> bool:
        entry = self._entries.pop(key, None)
        if entry is None:
            return False

        keys = self._domain_index.get(entry.domain)
        if keys is not None:
            keys.discard(key)
            if not keys:
                del self._domain_index[entry.domain]
        return True

    def _enforce_capacity(self, domain: Optional[str], max_items: int) -> int:
        keys = self._domain_index.get(domain)
        if not keys or len(keys) <= max_items:
            return 0

        excess = len(keys) - max_items
        oldest = sorted(
            (self._entries[k] for k in keys),
            key=lambda e: (e.created_at, e.sequence),
        )[:excess]
        for entry in oldest:
            self._remove(entry.key)

        self.stats["evictions"] += excess
        if self.metrics is not None:
            self.metrics.increment("cache_evictions_total", excess, domain=domain or "")
        return excess

    def _record_lookup(self, hit: bool) -> None:
        if self.metrics is None:
            return
        self.metrics.increment("cache_requests_total", result="hit" if hit else "miss")
        self.metrics.set_gauge("cache_hit_rate", self.hit_rate())

    def hit_rate(self) -> float:
        lookups = self.stats["hits"] + self.stats["misses"]
        return self.stats["hits"] / lookups if lookups else 0.0

    # ------------------------------------------------------------------ #
    # Maintenance
    # ------------------------------------------------------------------ #

    def purge_expired(self) -> int:
        """Drop every expired entry"""
        now = self.clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                self._remove(key)
            self.stats["expired"] += len(expired)

        if expired:
            logger.debug(f"Purged {len(expired)} expired cache entries")
        return len(expired)

    def sweep(self) -> int:
        """Trim every domain over its capacity, oldest entries first"""
        if not self.enabled:
            return 0

        started = time.perf_counter()
        deleted = 0
        with self._lock:
            total = len(self._entries)
            for domain in list(self._domain_index):
                settings = self.settings_for(domain)
                removed = self._enforce_capacity(domain, settings.max_items)
                if removed:
                    logger.info(
                        f"Cleaned up {removed} cached items for domain {domain} "
                        f"(max {settings.max_items})"
                    )
                deleted += removed

        logger.info(
            f"Cache cleanup completed in {(time.perf_counter() - started) * 1000:.1f}ms: "
            f"{deleted} deleted, {total} total"
        )
        return deleted

    async def rehydrate(self) -> int:
        """Load unexpired entries from the backend"""
        if self.backend is None:
            return 0

        entries = await self.backend.load()
        now = self.clock()
        loaded = 0
        with self._lock:
            for entry in sorted(entries, key=lambda e: e.created_at):
                if entry.is_expired(now):
                    continue
                entry.sequence = next(self._sequence)
                self._remove(entry.key)
                self._insert(entry)
                loaded += 1
            for domain in list(self._domain_index):
                self._enforce_capacity(domain, self.settings_for(domain).max_items)

        logger.info(f"💾 Rehydrated {loaded} cache entries from {self.backend.path}")
        return loaded

    async def persist(self) -> int:
        """Mirror current entries to the backend"""
        if self.backend is None:
            return 0

        now = self.clock()
        with self._lock:
            entries = [e for e in self._entries.values() if not e.is_expired(now)]
        return await self.backend.save(entries)

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def _purge_loop(self) -> None:
        while True:
            await asyncio.sleep(self.check_period)
            self.purge_expired()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            self.sweep()
            try:
                await self.persist()
            except OSError as e:
                logger.error(f"Failed to mirror cache: {e}")

    async def start(self) -> None:
        """Rehydrate from the backend and start the purge/sweep timers"""
        if self._tasks:
            return
        await self.rehydrate()
        if self.check_period > 0:
            self._tasks.append(asyncio.create_task(self._purge_loop()))
        if self.cleanup_interval > 0:
            self._tasks.append(asyncio.create_task(self._sweep_loop()))

    async def close(self) -> None:
        """Stop timers and mirror entries to the backend"""
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()

        await self.persist()
        logger.debug("Cache service closed")

    # ------------------------------------------------------------------ #
    # Stats
    # ------------------------------------------------------------------ #

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            domains = {
                domain: len(keys)
                for domain, keys in self._domain_index.items()
                if domain is not None
            }
            return {
                **self.stats,
                "keys": len(self._entries),
                "domains": domains,
                "hit_rate": self.hit_rate(),
            }
