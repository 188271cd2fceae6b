"""curl_cffi-based HTTP attempt used as the default retried operation"""

import random
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Optional

from curl_cffi.requests import AsyncSession
from loguru import logger

from .config import (
    DEFAULT_IMPERSONATE,
    DEFAULT_REQUEST_TIMEOUT,
    HEALTH_CHECK_TIMEOUT,
    HEALTH_CHECK_URL,
    STEALTH_IMPERSONATE_TARGETS,
)
from .exceptions import ScrapeError
from .models import Proxy, RetryState


@dataclass
class FetchResult:
    url: str
    status_code: int
    text: str
    headers: Dict[str, str] = field(default_factory=dict)
    elapsed: float = 0.0


class HttpFetcher:
    """
    Single-attempt HTTP client with browser TLS impersonation.

    - Fresh session per call (no cookie carry-over between attempts)
    - Uses the proxy and timeout multiplier chosen by the retry loop
    - Raises ScrapeError with status/url/body so failures can be classified
    """

    def __init__(
        self,
        impersonate: str = DEFAULT_IMPERSONATE,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        health_check_url: str = HEALTH_CHECK_URL,
        health_check_timeout: float = HEALTH_CHECK_TIMEOUT,
    ):
        self.impersonate = impersonate
        self.timeout = timeout
        self.health_check_url = health_check_url
        self.health_check_timeout = health_check_timeout

    def _impersonation_for(self, state: Optional[RetryState]) -> str:
        if state is not None and state.enhance_stealth:
            return random.choice(STEALTH_IMPERSONATE_TARGETS)
        return self.impersonate

    async def fetch(
        self,
        url: str,
        state: Optional[RetryState] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> FetchResult:
        """Perform one GET attempt"""
        proxy = state.proxy_url if state else None
        timeout = self.timeout * (state.timeout_multiplier if state else 1.0)
        impersonate = self._impersonation_for(state)

        logger.debug(
            f"→ GET {url} (proxy={'yes' if proxy else 'no'}, "
            f"timeout={timeout:.0f}s, impersonate={impersonate})"
        )

        async with AsyncSession(impersonate=impersonate) as session:
            start_time = time.perf_counter()
            response = await session.get(url, headers=headers, proxy=proxy, timeout=timeout)
            elapsed = time.perf_counter() - start_time

        logger.debug(f"← Response {response.status_code} ({elapsed:.2f}s)")

        response_headers = {str(k): str(v) for k, v in response.headers.items()}
        if response.status_code >= 400:
            raise ScrapeError(
                f"HTTP {response.status_code} for {url}",
                status_code=response.status_code,
                url=url,
                body=response.text,
                headers=response_headers,
            )

        return FetchResult(
            url=url,
            status_code=response.status_code,
            text=response.text,
            headers=response_headers,
            elapsed=elapsed,
        )

    def operation(
        self, url: str, headers: Optional[Dict[str, str]] = None
    ) -> Callable[[RetryState], Awaitable[FetchResult]]:
        """Bind a URL into a retryable single-attempt operation"""

        async def attempt(state: RetryState) -> FetchResult:
            return await self.fetch(url, state, headers=headers)

        return attempt

    async def probe(self, proxy: Proxy) -> float:
        """
        Fetch the health-check URL through a proxy.

        Returns:
            Response time in seconds. Raises on any failure.
        """
        async with AsyncSession(impersonate=self.impersonate) as session:
            start_time = time.perf_counter()
            response = await session.get(
                self.health_check_url,
                proxy=proxy.url,
                timeout=self.health_check_timeout,
            )
            elapsed = time.perf_counter() - start_time

        if response.status_code >= 400:
            raise ScrapeError(
                f"Health check returned HTTP {response.status_code}",
                status_code=response.status_code,
                url=self.health_check_url,
            )
        return elapsed
