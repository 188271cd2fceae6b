"""Scored proxy pool with domain affinity, bans and health checks"""

import asyncio
import contextlib
import random
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from loguru import logger
from tqdm.asyncio import tqdm

from .config import (
    DEFAULT_PROXY_FILE,
    HEALTH_CHECK_BACKUP_SAMPLE,
    HEALTH_CHECK_CONCURRENCY,
    HEALTH_CHECK_DISABLED_SAMPLE,
    HEALTH_CHECK_INTERVAL,
    MAX_CONSECUTIVE_FAILURES,
    MIN_ACTIVE_PROXIES,
    PROXY_BAN_DURATION,
    PROXY_FLUSH_INTERVAL,
    ROTATION_STRATEGY,
    SCORE_JITTER_RANGE,
    SCORE_RECENCY_WINDOW,
    SCORE_REFERENCE_RESPONSE_TIME,
)
from .http_client import HttpFetcher
from .metrics import Metrics
from .models import Proxy, ProxyStats, RotationStrategy
from .storage import JsonProxyStore, proxy_from_record, proxy_to_record
from .utils import extract_domain

ProbeFunc = Callable[[Proxy], Awaitable[float]]


def compute_score(stats: ProxyStats, now: float) -> float:
    """
    Weighted proxy score in [0, 1].

    0.5 success rate + 0.2 response time + 0.1 recency + 0.2 ban history.
    Response times are in seconds; proxies at or under 5s get full marks.
    """
    if stats.avg_response_time <= 0:
        response_time_factor = 1.0
    else:
        response_time_factor = min(1.0, SCORE_REFERENCE_RESPONSE_TIME / stats.avg_response_time)

    if stats.last_used is None:
        recency_factor = 0.5
    else:
        recency_factor = min(1.0, SCORE_RECENCY_WINDOW / max(1.0, now - stats.last_used))

    ban_factor = max(0.1, 1 - stats.ban_count * 0.1)

    return (
        stats.success_rate * 0.5
        + response_time_factor * 0.2
        + recency_factor * 0.1
        + ban_factor * 0.2
    )


class ProxyPool:
    """
    Manages proxy rotation across three disjoint sets.

    Features:
    - active / disabled / backup sets; a proxy lives in exactly one
    - Domain affinity (bind_to_site) takes precedence over the rotation strategy
    - Progressive filter relaxation (type, tags, country, uniqueness)
    - Consecutive-failure and explicit-ban demotion
    - Timed health checks that demote failing proxies and promote recovered ones
    - Periodic flush to the JSON proxy store
    """

    def __init__(
        self,
        proxy_file: Path = DEFAULT_PROXY_FILE,
        store: Optional[JsonProxyStore] = None,
        strategy: str = ROTATION_STRATEGY,
        max_consecutive_failures: int = MAX_CONSECUTIVE_FAILURES,
        ban_duration: float = PROXY_BAN_DURATION,
        health_check_interval: float = HEALTH_CHECK_INTERVAL,
        health_check_concurrency: int = HEALTH_CHECK_CONCURRENCY,
        disabled_sample: int = HEALTH_CHECK_DISABLED_SAMPLE,
        backup_sample: int = HEALTH_CHECK_BACKUP_SAMPLE,
        min_active_proxies: int = MIN_ACTIVE_PROXIES,
        flush_interval: float = PROXY_FLUSH_INTERVAL,
        probe: Optional[ProbeFunc] = None,
        metrics: Optional[Metrics] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize proxy pool.

        Args:
            proxy_file: JSON proxy list (ignored when ``store`` is given)
            store: Persistent proxy store
            strategy: "sequential", "random" or "performance"
            max_consecutive_failures: Failures in a row before a proxy is disabled
            ban_duration: Seconds a disabled proxy waits before it may be re-tested
            health_check_interval: Seconds between health-check passes (0 disables)
            health_check_concurrency: Max probes in flight
            disabled_sample: Disabled proxies re-tested per pass
            backup_sample: Backup proxies tested when the active pool is small
            min_active_proxies: Active pool size below which backups are tested
            flush_interval: Seconds between periodic saves (0 disables)
            probe: Async callable returning a proxy's response time in seconds
            metrics: Observability sink for pool-size gauges
            clock: Wall-clock time source (timestamps are persisted)
        """
        self.store = store or JsonProxyStore(proxy_file)
        self.strategy = RotationStrategy(strategy)
        self.max_consecutive_failures = max_consecutive_failures
        self.ban_duration = ban_duration
        self.health_check_interval = health_check_interval
        self.health_check_concurrency = health_check_concurrency
        self.disabled_sample = disabled_sample
        self.backup_sample = backup_sample
        self.min_active_proxies = min_active_proxies
        self.flush_interval = flush_interval
        self.metrics = metrics
        self.clock = clock

        self.probe = probe or HttpFetcher().probe

        self._active: Dict[str, Proxy] = {}
        self._disabled: Dict[str, Proxy] = {}
        self._backup: Dict[str, Proxy] = {}

        self._domain_bindings: Dict[str, str] = {}
        self._last_used: Dict[str, str] = {}
        self._sequential_index = 0

        self._lock = threading.RLock()
        self._save_lock: Optional[asyncio.Lock] = None
        self._pending_saves: Set[asyncio.Task] = set()
        self._tasks: List[asyncio.Task] = []

        logger.debug(
            f"Proxy pool initialized: strategy={self.strategy.value}, "
            f"max_failures={max_consecutive_failures}, ban_duration={ban_duration:.0f}s"
        )

    # ------------------------------------------------------------------ #
    # Persistence
    # ------------------------------------------------------------------ #

    async def load(self) -> None:
        """Replace the pool with the persisted proxy list"""
        records = await self.store.load()

        with self._lock:
            self._active.clear()
            self._disabled.clear()
            self._backup.clear()
            self._domain_bindings.clear()
            self._last_used.clear()

            for record in records:
                self._add_record(record)

        counts = self.get_counts()
        logger.info(f"🌐 Proxy pool loaded from {self.store.path}:")
        logger.info(f"   Active:   {counts['active']}")
        logger.info(f"   Disabled: {counts['disabled']}")
        logger.info(f"   Backup:   {counts['backup']}")
        self._publish_sizes()

    async def save(self) -> None:
        """Write every proxy (active, disabled, backup order) to the store"""
        if self._save_lock is None:
            self._save_lock = asyncio.Lock()

        async with self._save_lock:
            with self._lock:
                records = (
                    [proxy_to_record(p) for p in self._active.values()]
                    + [proxy_to_record(p, disabled=True) for p in self._disabled.values()]
                    + [proxy_to_record(p) for p in self._backup.values()]
                )
            await self.store.save(records)

    def _schedule_save(self) -> None:
        """Flush a structural change without blocking the caller"""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop: the next periodic flush or close() persists it
            return

        task = loop.create_task(self._save_quietly())
        self._pending_saves.add(task)
        task.add_done_callback(self._pending_saves.discard)

    async def _save_quietly(self) -> None:
        try:
            await self.save()
        except OSError as e:
            logger.error(f"Failed to save proxies: {e}")

    # ------------------------------------------------------------------ #
    # Membership
    # ------------------------------------------------------------------ #

    def _add_record(self, record: Dict[str, Any]) -> Optional[Proxy]:
        """Place a record in its set (caller holds the lock)"""
        if not record.get("url"):
            logger.warning(f"Invalid proxy configuration: missing URL ({record!r:.80})")
            return None

        proxy = proxy_from_record(record)
        if not proxy.id:
            proxy.id = uuid.uuid4().hex[:12]

        if self._find(proxy.id) is not None:
            logger.warning(f"Duplicate proxy id {proxy.id}, skipping")
            return None

        if not proxy.enabled:
            self._backup[proxy.id] = proxy
        elif record.get("disabled") or record.get("banned"):
            self._disabled[proxy.id] = proxy
        else:
            self._active[proxy.id] = proxy
        return proxy

    def add_proxy(self, config: Dict[str, Any]) -> Optional[Proxy]:
        """
        Add a proxy at runtime.

        Args:
            config: Proxy record ({url, type, country, tags, enabled, ...})

        Returns:
            The added Proxy, or None if the config is invalid
        """
        with self._lock:
            proxy = self._add_record(dict(config))

        if proxy is None:
            return None

        logger.info(f"➕ Added proxy {proxy.id} ({proxy.type}, {proxy.country or '??'})")
        self._publish_sizes()
        self._schedule_save()
        return proxy

    def _find(self, proxy_id: str) -> Optional[Proxy]:
        return (
            self._active.get(proxy_id)
            or self._disabled.get(proxy_id)
            or self._backup.get(proxy_id)
        )

    def get_proxy_by_id(self, proxy_id: str) -> Optional[Proxy]:
        with self._lock:
            return self._find(proxy_id)

    def is_active(self, proxy_id: str) -> bool:
        with self._lock:
            return proxy_id in self._active

    # ------------------------------------------------------------------ #
    # Selection
    # ------------------------------------------------------------------ #

    def get_proxy(
        self,
        url: Optional[str],
        country: Optional[str] = None,
        tags: Optional[List[str]] = None,
        type: Optional[str] = None,
        bind_to_site: Optional[bool] = None,
        enforce_unique: bool = False,
    ) -> Optional[Proxy]:
        """
        Pick a proxy for a URL.

        An active proxy bound to the domain always wins (session continuity),
        unless ``bind_to_site`` is explicitly False.

        Args:
            url: Target URL or bare domain
            country: Preferred proxy country
            tags: Accept proxies carrying any of these tags
            type: Preferred proxy type (http, socks5, ...)
            bind_to_site: True binds the chosen proxy to the domain
            enforce_unique: Avoid the proxy last used for this domain

        Returns:
            Proxy, or None when no proxy exists in active or backup
        """
        domain = extract_domain(url)
        if not domain:
            logger.warning("Attempted to get proxy for an empty URL")
            return None

        promoted = False
        with self._lock:
            if bind_to_site is not False:
                bound_id = self._domain_bindings.get(domain)
                bound = self._active.get(bound_id) if bound_id else None
                if bound is not None:
                    self._mark_used(bound, domain)
                    return bound

            candidates = self._eligible(domain, country, tags, type, enforce_unique)

            if not candidates and self._backup:
                backup = next(iter(self._backup.values()))
                logger.warning(f"Active pool empty, promoting backup proxy {backup.id}")
                self._enable(backup)
                candidates = [backup]
                promoted = True

            if not candidates:
                logger.warning(f"No proxy available for {domain}")
                return None

            selected = self._select(candidates)
            self._mark_used(selected, domain, bind_to_site=bool(bind_to_site))

        if promoted:
            self._publish_sizes()
            self._schedule_save()

        logger.debug(f"🌐 Selected proxy {selected.id} for {domain}")
        return selected

    def _eligible(
        self,
        domain: str,
        country: Optional[str],
        tags: Optional[List[str]],
        type: Optional[str],
        enforce_unique: bool,
    ) -> List[Proxy]:
        """Apply filters, dropping the last one each time nothing matches"""
        filters: List[Any] = []

        last_id = self._last_used.get(domain)
        if enforce_unique and last_id:
            filters.append(("unique", lambda p: p.id != last_id))
        if country:
            filters.append(("country", lambda p: p.country == country))
        if tags:
            wanted = set(tags)
            filters.append(("tags", lambda p: bool(wanted.intersection(p.tags))))
        if type:
            filters.append(("type", lambda p: p.type == type))

        active = list(self._active.values())
        while filters:
            candidates = [p for p in active if all(check(p) for _, check in filters)]
            if candidates:
                return candidates
            name, _ = filters.pop()
            logger.debug(f"No proxy matches all filters for {domain}, relaxing '{name}'")

        return active

    def _select(self, candidates: List[Proxy]) -> Proxy:
        if self.strategy == RotationStrategy.SEQUENTIAL:
            self._sequential_index = (self._sequential_index + 1) % len(candidates)
            return candidates[self._sequential_index]

        if self.strategy == RotationStrategy.RANDOM:
            return random.choice(candidates)

        # Performance: jitter keeps near-tied proxies from starving
        now = self.clock()
        for proxy in candidates:
            proxy.stats.score = compute_score(proxy.stats, now)
        return max(
            candidates,
            key=lambda p: p.stats.score * random.uniform(*SCORE_JITTER_RANGE),
        )

    def _mark_used(self, proxy: Proxy, domain: str, bind_to_site: bool = False) -> None:
        self._last_used[domain] = proxy.id
        proxy.stats.last_used = self.clock()
        if bind_to_site:
            self._domain_bindings[domain] = proxy.id

    # ------------------------------------------------------------------ #
    # Outcomes
    # ------------------------------------------------------------------ #

    def record_success(self, proxy_id: Optional[str], response_time: Optional[float] = None) -> None:
        """
        Record a successful request through a proxy.

        Args:
            proxy_id: Proxy that served the request
            response_time: Seconds taken, folded into the response-time EMA
        """
        if not proxy_id:
            return

        with self._lock:
            proxy = self._find(proxy_id)
            if proxy is None:
                return

            stats = proxy.stats
            stats.total_requests += 1
            stats.successful_requests += 1
            stats.consecutive_failures = 0
            if response_time is not None:
                self._update_response_time(stats, response_time)
            self._refresh_score(stats)

    def record_failure(self, proxy_id: Optional[str], reason: Optional[str] = None) -> None:
        """Record a failed request; disables the proxy after too many in a row"""
        if not proxy_id:
            return

        with self._lock:
            proxy = self._find(proxy_id)
            if proxy is None:
                return

            stats = proxy.stats
            stats.total_requests += 1
            stats.failed_requests += 1
            stats.consecutive_failures += 1
            self._refresh_score(stats)

            if (
                proxy_id in self._active
                and stats.consecutive_failures >= self.max_consecutive_failures
            ):
                self._disable(proxy, reason or "Too many consecutive failures")
                disabled = True
            else:
                disabled = False

        if disabled:
            self._publish_sizes()
            self._schedule_save()

    def mark_proxy_banned(self, proxy_id: Optional[str], reason: str = "Proxy banned") -> None:
        """Disable a proxy immediately, regardless of its failure count"""
        if not proxy_id:
            return

        with self._lock:
            if proxy_id in self._active:
                self._disable(self._active[proxy_id], reason)
            elif proxy_id in self._disabled:
                # Already out of rotation; restart its ban window
                proxy = self._disabled[proxy_id]
                proxy.stats.last_banned = self.clock()
                proxy.stats.ban_count += 1
                proxy.disabled_reason = reason
                self._refresh_score(proxy.stats)
            else:
                return

        self._publish_sizes()
        self._schedule_save()

    def reset_failures(self) -> None:
        """Reset consecutive failures for all proxies"""
        with self._lock:
            for proxy in self._all():
                proxy.stats.consecutive_failures = 0

    def _all(self) -> List[Proxy]:
        return list(self._active.values()) + list(self._disabled.values()) + list(self._backup.values())

    def _update_response_time(self, stats: ProxyStats, response_time: float) -> None:
        if stats.avg_response_time == 0:
            stats.avg_response_time = response_time
        else:
            stats.avg_response_time = stats.avg_response_time * 0.7 + response_time * 0.3

    def _refresh_score(self, stats: ProxyStats) -> None:
        if stats.total_requests > 0:
            stats.success_rate = stats.successful_requests / stats.total_requests
        stats.score = compute_score(stats, self.clock())

    # ------------------------------------------------------------------ #
    # Transitions (caller holds the lock)
    # ------------------------------------------------------------------ #

    def _disable(self, proxy: Proxy, reason: str) -> None:
        self._active.pop(proxy.id, None)
        self._backup.pop(proxy.id, None)

        proxy.disabled_reason = reason
        proxy.stats.last_banned = self.clock()
        proxy.stats.ban_count += 1
        self._refresh_score(proxy.stats)
        self._disabled[proxy.id] = proxy

        for domain in [d for d, pid in self._domain_bindings.items() if pid == proxy.id]:
            del self._domain_bindings[domain]

        logger.warning(f"🚫 Proxy {proxy.id} disabled: {reason} (bans: {proxy.stats.ban_count})")

    def _enable(self, proxy: Proxy) -> None:
        if self._disabled.pop(proxy.id, None) is None and self._backup.pop(proxy.id, None) is None:
            return

        proxy.enabled = True
        proxy.disabled_reason = None
        proxy.stats.consecutive_failures = 0
        self._active[proxy.id] = proxy

        logger.success(f"✅ Proxy {proxy.id} enabled - back in rotation")

    # ------------------------------------------------------------------ #
    # Health checks
    # ------------------------------------------------------------------ #

    async def _check(self, proxy: Proxy, semaphore: asyncio.Semaphore) -> bool:
        async with semaphore:
            try:
                response_time = await self.probe(proxy)
            except Exception as e:
                logger.debug(f"Proxy {proxy.id} health check failed: {type(e).__name__}: {e}")
                with self._lock:
                    proxy.stats.last_tested = self.clock()
                    proxy.stats.consecutive_failures += 1
                return False

        with self._lock:
            proxy.stats.last_tested = self.clock()
            self._update_response_time(proxy.stats, response_time)
            self._refresh_score(proxy.stats)

        logger.debug(f"Proxy {proxy.id} health check passed ({response_time:.2f}s)")
        return True

    async def _check_all(
        self, proxies: List[Proxy], semaphore: asyncio.Semaphore, desc: str, progress: bool
    ) -> Dict[str, bool]:
        if not proxies:
            return {}

        async def run(proxy: Proxy):
            return proxy.id, await self._check(proxy, semaphore)

        outcomes: Dict[str, bool] = {}
        for coro in tqdm.as_completed(
            [run(p) for p in proxies],
            total=len(proxies),
            desc=desc,
            unit="proxy",
            colour="green",
            disable=not progress,
        ):
            proxy_id, passed = await coro
            outcomes[proxy_id] = passed
        return outcomes

    async def run_health_checks(self, progress: bool = False) -> Dict[str, int]:
        """
        Run one health-check pass.

        Every active proxy is probed; failures are disabled. Disabled proxies
        whose ban has lasted ``ban_duration`` are sampled and re-enabled on
        success. When the active pool is small, a few backups are probed and
        promoted on success.

        Args:
            progress: Show a tqdm progress bar per phase

        Returns:
            Counters: checked, passed, failed, activated, disabled
        """
        results = {"checked": 0, "passed": 0, "failed": 0, "activated": 0, "disabled": 0}
        semaphore = asyncio.Semaphore(self.health_check_concurrency)

        logger.info("🩺 Starting proxy health checks")

        with self._lock:
            active = list(self._active.values())

        outcomes = await self._check_all(active, semaphore, "Active proxies", progress)
        with self._lock:
            for proxy in active:
                passed = outcomes.get(proxy.id, False)
                results["checked"] += 1
                if passed:
                    results["passed"] += 1
                    continue
                results["failed"] += 1
                if proxy.id in self._active:
                    self._disable(proxy, "Failed health check")
                    results["disabled"] += 1

            now = self.clock()
            eligible = [
                p
                for p in self._disabled.values()
                if p.stats.last_banned is not None and now - p.stats.last_banned >= self.ban_duration
            ][: self.disabled_sample]

            if len(self._active) < self.min_active_proxies:
                backups = list(self._backup.values())[: self.backup_sample]
            else:
                backups = []

        candidates = eligible + backups
        outcomes = await self._check_all(candidates, semaphore, "Recovery candidates", progress)
        with self._lock:
            for proxy in candidates:
                passed = outcomes.get(proxy.id, False)
                results["checked"] += 1
                if not passed:
                    results["failed"] += 1
                    continue
                results["passed"] += 1
                if proxy.id in self._disabled or proxy.id in self._backup:
                    self._enable(proxy)
                    results["activated"] += 1

        logger.info(
            f"🩺 Health checks completed: {results['checked']} checked, "
            f"{results['passed']} passed, {results['failed']} failed, "
            f"{results['activated']} activated, {results['disabled']} disabled"
        )

        self._publish_sizes()
        await self.save()
        return results

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def _health_check_loop(self) -> None:
        while True:
            try:
                await self.run_health_checks()
            except Exception as e:
                logger.error(f"Error performing proxy health checks: {e}")
            await asyncio.sleep(self.health_check_interval)

    async def _flush_loop(self) -> None:
        while True:
            await asyncio.sleep(self.flush_interval)
            await self._save_quietly()

    def start(self) -> None:
        """Start the health-check and flush timers"""
        if self._tasks:
            return
        if self.health_check_interval > 0:
            self._tasks.append(asyncio.create_task(self._health_check_loop()))
        if self.flush_interval > 0:
            self._tasks.append(asyncio.create_task(self._flush_loop()))

    async def close(self) -> None:
        """Stop timers and persist the pool"""
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()

        if self._pending_saves:
            await asyncio.gather(*self._pending_saves, return_exceptions=True)
        await self.save()
        logger.debug("Proxy pool closed")

    # ------------------------------------------------------------------ #
    # Stats
    # ------------------------------------------------------------------ #

    def _publish_sizes(self) -> None:
        if self.metrics is None:
            return
        counts = self.get_counts()
        for name in ("active", "disabled", "backup"):
            self.metrics.set_gauge("proxy_pool_size", counts[name], set=name)

    def get_counts(self) -> Dict[str, int]:
        with self._lock:
            active, disabled, backup = len(self._active), len(self._disabled), len(self._backup)
        return {
            "active": active,
            "disabled": disabled,
            "backup": backup,
            "total": active + disabled + backup,
        }

    def get_stats(self) -> Dict[str, Any]:
        """Get comprehensive proxy pool statistics"""
        with self._lock:
            now = self.clock()
            proxies = []
            for status, group in (
                ("active", self._active),
                ("disabled", self._disabled),
                ("backup", self._backup),
            ):
                for p in group.values():
                    proxies.append(
                        {
                            "id": p.id,
                            "status": status,
                            "type": p.type,
                            "country": p.country,
                            "requests": p.stats.total_requests,
                            "success_rate": p.stats.success_rate * 100,
                            "avg_response_time": p.stats.avg_response_time,
                            "bans": p.stats.ban_count,
                            "score": compute_score(p.stats, now),
                            "disabled_reason": p.disabled_reason,
                        }
                    )
            bindings = dict(self._domain_bindings)

        total_requests = sum(p["requests"] for p in proxies)
        return {
            **self.get_counts(),
            "strategy": self.strategy.value,
            "total_requests": total_requests,
            "domain_bindings": bindings,
            "proxies": proxies,
        }

    def print_stats(self) -> None:
        """Print formatted proxy statistics"""
        stats = self.get_stats()

        logger.info("")
        logger.info("=" * 80)
        logger.info("🌐 PROXY POOL STATISTICS")
        logger.info("=" * 80)

        logger.info(f"Total Proxies:         {stats['total']}")
        logger.info(f"✅ Active:             {stats['active']}")
        logger.info(f"🔴 Disabled:           {stats['disabled']}")
        logger.info(f"💤 Backup:             {stats['backup']}")
        logger.info(f"Strategy:              {stats['strategy']}")
        logger.info(f"Total Requests:        {stats['total_requests']}")
        logger.info("")
        logger.info("Per-Proxy Breakdown:")

        icons = {"active": "🟢", "disabled": "🔴", "backup": "⚪"}
        for proxy_stat in stats["proxies"]:
            logger.info(
                f"  {icons[proxy_stat['status']]} Proxy {proxy_stat['id']} "
                f"({proxy_stat['type']}, {proxy_stat['country'] or '??'}): "
                f"{proxy_stat['requests']} req, {proxy_stat['success_rate']:.1f}% success, "
                f"{proxy_stat['avg_response_time']:.2f}s avg, "
                f"{proxy_stat['bans']} bans, score {proxy_stat['score']:.2f}"
            )
            if proxy_stat["disabled_reason"]:
                logger.info(f"     Reason: {proxy_stat['disabled_reason']}")

        logger.info("=" * 80)
