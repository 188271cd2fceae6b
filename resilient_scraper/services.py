"""Explicit wiring of the resilience services"""

from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .cache import CacheService
from .captcha import CaptchaSolver
from .circuit_breaker import CircuitBreaker
from .classifier import ErrorClassifier
from .config import DEFAULT_CACHE_FILE, DEFAULT_PROXY_FILE
from .http_client import FetchResult, HttpFetcher
from .metrics import Metrics
from .models import RetryState
from .proxy_pool import ProxyPool
from .retry import Operation, RetryContext, RetryOrchestrator
from .storage import JsonCacheBackend, JsonProxyStore


class ResilienceServices:
    """
    Owns one instance of every service and their lifecycle.

    Usage:
        async with ResilienceServices(proxy_file=Path("proxies.json")) as services:
            result = await services.fetch_url("https://www.amazon.com/dp/B0...")
    """

    def __init__(
        self,
        proxy_file: Optional[Path] = DEFAULT_PROXY_FILE,
        cache_file: Optional[Path] = DEFAULT_CACHE_FILE,
        metrics: Optional[Metrics] = None,
        classifier: Optional[ErrorClassifier] = None,
        breaker: Optional[CircuitBreaker] = None,
        proxy_pool: Optional[ProxyPool] = None,
        cache: Optional[CacheService] = None,
        orchestrator: Optional[RetryOrchestrator] = None,
        fetcher: Optional[HttpFetcher] = None,
        captcha_solver: Optional[CaptchaSolver] = None,
    ):
        """
        Build the service graph. Any service may be injected pre-built.

        Args:
            proxy_file: JSON proxy list; None runs without a proxy pool
            cache_file: JSON cache mirror; None keeps the cache in memory only
            metrics: Shared observability sink
            captcha_solver: Optional captcha capability for the orchestrator
        """
        self.metrics = metrics or Metrics()
        self.fetcher = fetcher or HttpFetcher()
        self.classifier = classifier or ErrorClassifier(metrics=self.metrics)
        self.breaker = breaker or CircuitBreaker()

        if proxy_pool is None and proxy_file is not None:
            proxy_pool = ProxyPool(
                store=JsonProxyStore(proxy_file),
                probe=self.fetcher.probe,
                metrics=self.metrics,
            )
        self.proxy_pool = proxy_pool

        if cache is None:
            backend = JsonCacheBackend(cache_file) if cache_file is not None else None
            cache = CacheService(backend=backend, metrics=self.metrics)
        self.cache = cache

        self.orchestrator = orchestrator or RetryOrchestrator(
            self.classifier,
            self.breaker,
            proxy_pool=self.proxy_pool,
            captcha_solver=captcha_solver,
        )
        self._started = False

    async def start(self) -> None:
        """Load proxies, rehydrate the cache and start background timers"""
        if self._started:
            return
        if self.proxy_pool is not None:
            await self.proxy_pool.load()
            self.proxy_pool.start()
        await self.cache.start()
        self._started = True
        logger.success("✅ Resilience services started")

    async def close(self) -> None:
        """Stop timers and flush proxy and cache state"""
        if not self._started:
            return
        if self.proxy_pool is not None:
            await self.proxy_pool.close()
        await self.cache.close()
        self._started = False
        logger.info("Resilience services closed")

    async def __aenter__(self) -> "ResilienceServices":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def fetch(
        self,
        url: str,
        operation: Operation,
        namespace: str = "product",
        ttl: Optional[float] = None,
        use_cache: bool = True,
        **context: Any,
    ) -> Any:
        """
        Cache fast path, then the retry orchestrator, then cache write.

        Args:
            url: Target URL (cache identifier and breaker/proxy key)
            operation: Single-attempt async callable taking the RetryState
            namespace: Cache key namespace
            ttl: Cache TTL override in seconds
            use_cache: Skip the cache entirely when False
            **context: Extra RetryContext fields (proxy_id, max_retries, captcha, ...)
        """
        key = self.cache.create_key(namespace, url) if use_cache else None
        if key is not None:
            cached = self.cache.get(key)
            if cached is not None:
                logger.debug(f"💾 Cache hit for {url}")
                return cached

        result = await self.orchestrator.with_retry(operation, RetryContext(url=url, **context))

        if key is not None and result is not None:
            self.cache.set(key, result, ttl=ttl)
        return result

    async def fetch_url(self, url: str, **kwargs: Any) -> str:
        """Fetch a page body through the default curl_cffi operation"""
        single_attempt = self.fetcher.operation(url)

        async def attempt(state: RetryState) -> str:
            result: FetchResult = await single_attempt(state)
            return result.text

        return await self.fetch(url, attempt, **kwargs)
