"""Custom exception classes for the resilience layer"""

import time
from typing import Any, Dict, Optional

from .models import ErrorContext, ErrorKind, RetryPolicy


class ResilientScraperError(Exception):
    """Base exception for scraper errors"""

    pass


class ScrapeError(ResilientScraperError):
    """Raised by an operation when a single attempt fails

    Carries whatever the attempt observed so the classifier can tell a
    rate limit from a captcha wall. ``kind`` pre-tags the failure and
    short-circuits classification.
    """

    def __init__(
        self,
        message: str,
        kind: Optional[ErrorKind] = None,
        status_code: Optional[int] = None,
        url: Optional[str] = None,
        body: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        code: Optional[Any] = None,
    ):
        self.kind = kind
        self.status_code = status_code
        self.url = url
        self.body = body
        self.headers = headers or {}
        self.code = code
        super().__init__(message)


class ClassifiedError(ResilientScraperError):
    """A failure tagged with its ErrorKind and RetryPolicy

    This is the only failure shape the retry orchestrator surfaces.
    """

    def __init__(
        self,
        message: str,
        kind: ErrorKind,
        policy: RetryPolicy,
        original: Optional[BaseException] = None,
        context: Optional[ErrorContext] = None,
        classified_at: Optional[float] = None,
    ):
        self.kind = kind
        self.policy = policy
        self.original = original
        self.context = context or ErrorContext()
        self.classified_at = classified_at if classified_at is not None else time.time()
        self.attempts = 0
        super().__init__(message)
        if original is not None:
            self.__cause__ = original

    def __str__(self) -> str:
        return f"[{self.kind.value}] {super().__str__()}"


class CircuitOpenError(ClassifiedError):
    """Raised when the circuit breaker rejects a domain"""

    def __init__(self, message: str, policy: RetryPolicy, domain: Optional[str] = None):
        self.domain = domain
        super().__init__(
            message,
            kind=ErrorKind.CIRCUIT_OPEN,
            policy=policy,
            context=ErrorContext(url=domain),
        )


class InvalidPatternError(ResilientScraperError):
    """Raised when a custom error pattern or its kind is invalid"""

    pass


class ProxyStoreError(ResilientScraperError):
    """Raised when the persisted proxy list cannot be read"""

    pass
