"""Resilient Scraper
Error classification, retries, circuit breaking, proxy rotation and caching
for scraping adversarial e-commerce sites
"""

__version__ = "0.1.0"

from .cache import CacheService
from .captcha import CaptchaInfo, CaptchaSolver
from .circuit_breaker import CircuitBreaker
from .classifier import ErrorClassifier
from .exceptions import (
    CircuitOpenError,
    ClassifiedError,
    InvalidPatternError,
    ProxyStoreError,
    ResilientScraperError,
    ScrapeError,
)
from .http_client import FetchResult, HttpFetcher
from .metrics import Metrics
from .models import (
    CacheEntry,
    CircuitState,
    ErrorContext,
    ErrorKind,
    Proxy,
    ProxyStats,
    RetryPolicy,
    RetryState,
    RotationStrategy,
)
from .policies import RETRY_POLICIES, calculate_backoff_delay, get_policy
from .proxy_pool import ProxyPool, compute_score
from .retry import RetryContext, RetryOrchestrator
from .services import ResilienceServices

__all__ = [
    "__version__",
    "CacheService",
    "CaptchaInfo",
    "CaptchaSolver",
    "CircuitBreaker",
    "ErrorClassifier",
    "CircuitOpenError",
    "ClassifiedError",
    "InvalidPatternError",
    "ProxyStoreError",
    "ResilientScraperError",
    "ScrapeError",
    "FetchResult",
    "HttpFetcher",
    "Metrics",
    "CacheEntry",
    "CircuitState",
    "ErrorContext",
    "ErrorKind",
    "Proxy",
    "ProxyStats",
    "RetryPolicy",
    "RetryState",
    "RotationStrategy",
    "RETRY_POLICIES",
    "calculate_backoff_delay",
    "get_policy",
    "ProxyPool",
    "compute_score",
    "RetryContext",
    "RetryOrchestrator",
    "ResilienceServices",
]
