"""Error classification: raw failure + context -> ErrorKind and RetryPolicy"""

import asyncio
import errno
import re
import socket
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Hashable, List, Mapping, Optional, Pattern, Tuple, Union

import httpx
from curl_cffi import CurlError
from loguru import logger

from .config import (
    CLASSIFICATION_CACHE_EVICT_RATIO,
    CLASSIFICATION_CACHE_SIZE,
    MIN_CONTENT_LENGTH,
)
from .exceptions import ClassifiedError, InvalidPatternError
from .metrics import Metrics
from .models import ErrorContext, ErrorKind
from .policies import get_policy
from .utils import extract_domain

PatternList = List[Tuple[Pattern, ErrorKind]]


def _p(regex: str) -> Pattern:
    return re.compile(regex, re.IGNORECASE)


STATUS_KINDS: Dict[int, ErrorKind] = {
    400: ErrorKind.HTTP_400,
    401: ErrorKind.HTTP_401,
    403: ErrorKind.HTTP_403,
    404: ErrorKind.HTTP_404,
    429: ErrorKind.HTTP_429,
    500: ErrorKind.HTTP_500,
    503: ErrorKind.HTTP_503,
}

# Symbolic errno names carried in ScrapeError.code
CODE_KINDS: Dict[str, ErrorKind] = {
    "ECONNRESET": ErrorKind.CONNECTION_RESET,
    "EPIPE": ErrorKind.CONNECTION_RESET,
    "ETIMEDOUT": ErrorKind.TIMEOUT,
    "ESOCKETTIMEDOUT": ErrorKind.TIMEOUT,
    "ENOTFOUND": ErrorKind.DNS_LOOKUP,
    "EAI_AGAIN": ErrorKind.DNS_LOOKUP,
    "ENOENT": ErrorKind.DNS_LOOKUP,
}

# libcurl error codes (CURLE_*)
CURL_KINDS: Dict[int, ErrorKind] = {
    5: ErrorKind.PROXY_ERROR,  # COULDNT_RESOLVE_PROXY
    6: ErrorKind.DNS_LOOKUP,  # COULDNT_RESOLVE_HOST
    7: ErrorKind.NETWORK,  # COULDNT_CONNECT
    28: ErrorKind.TIMEOUT,  # OPERATION_TIMEDOUT
    35: ErrorKind.NETWORK,  # SSL_CONNECT_ERROR
    52: ErrorKind.CONNECTION_RESET,  # GOT_NOTHING
    55: ErrorKind.CONNECTION_RESET,  # SEND_ERROR
    56: ErrorKind.CONNECTION_RESET,  # RECV_ERROR
    97: ErrorKind.PROXY_ERROR,  # PROXY
}

ERRNO_KINDS: Dict[int, ErrorKind] = {
    errno.ECONNRESET: ErrorKind.CONNECTION_RESET,
    errno.EPIPE: ErrorKind.CONNECTION_RESET,
    errno.ETIMEDOUT: ErrorKind.TIMEOUT,
    errno.ECONNREFUSED: ErrorKind.NETWORK,
    errno.ECONNABORTED: ErrorKind.NETWORK,
    errno.EHOSTUNREACH: ErrorKind.NETWORK,
    errno.ENETUNREACH: ErrorKind.NETWORK,
}

_TIMEOUT_MESSAGE = _p(r"(?<!session )\b(timeout|timed out)\b")
_DNS_MESSAGE = _p(r"name or service not known|nodename nor servname|getaddrinfo|name resolution")

GENERIC_PATTERNS: PatternList = [
    # Bot detection
    (_p(r"captcha|recaptcha|capcha"), ErrorKind.CAPTCHA),
    (_p(r"bot detected|bot protection|detected.+?bot|botcheck"), ErrorKind.BOT_DETECTION),
    (_p(r"browser not supported|verify.+?browser|verification required"), ErrorKind.BROWSER_VERIFICATION),
    (_p(r"unusual traffic|suspicious activity|suspicious request|security check"), ErrorKind.FINGERPRINT_DETECTED),
    # Authentication
    (_p(r"login required|please sign in|authentication required"), ErrorKind.AUTH_REQUIRED),
    (_p(r"session expired|session timeout|please login again"), ErrorKind.SESSION_EXPIRED),
    # Proxy and IP
    (_p(r"ip banned|ip blocked|address banned|address blocked"), ErrorKind.PROXY_BANNED),
    (_p(r"too many requests|rate limit|rate-limit|ratelimit|too many connections"), ErrorKind.HTTP_429),
    # Content
    (_p(r"no results found|no products found|no items found"), ErrorKind.CONTENT_EMPTY),
]

DOMAIN_PATTERNS: Dict[str, PatternList] = {
    "amazon.com": [
        (_p(r"robot check|not a robot|bot check|human|verificação de robôs"), ErrorKind.CAPTCHA),
        (_p(r"sorry.*technical issue|difficulty.*website"), ErrorKind.HTTP_503),
        (_p(r"verificação de segurança"), ErrorKind.BOT_DETECTION),
    ],
    "walmart.com": [
        (_p(r"access denied|unusual activity|security challenge"), ErrorKind.BOT_DETECTION),
        (_p(r"verification required|verify.+?human"), ErrorKind.CAPTCHA),
    ],
    "bestbuy.com": [
        (_p(r"access denied|unusual activity|security challenge"), ErrorKind.BOT_DETECTION),
        (_p(r"high demand|high volume|try again later"), ErrorKind.HTTP_429),
    ],
    "mercadolivre.com": [
        (_p(r"account-verification|verifica(ç|c)(ã|a)o de conta"), ErrorKind.AUTH_REQUIRED),
        (_p(r"acesso negado|access denied"), ErrorKind.BOT_DETECTION),
    ],
    "magazineluiza.com": [
        (_p(r"acesso negado|access denied|bloqueado"), ErrorKind.BOT_DETECTION),
    ],
    "americanas.com": [
        (_p(r"acesso negado|access denied|bloqueado"), ErrorKind.BOT_DETECTION),
        (_p(r"muitas requisi(ç|c)(õ|o)es"), ErrorKind.HTTP_429),
    ],
}

_ERROR_TITLE = _p(r"<title>.*?(error|sorry|blocked|captcha|robot|security).*?</title>")
_TITLE_CAPTCHA = _p(r"captcha|recaptcha|robot")
_TITLE_AUTH = _p(r"login|sign in|account")
_BLOCKING_VOCABULARY = _p(r"blocked|banned|unusual|suspicious|access denied|forbidden")

ContextLike = Union[ErrorContext, Mapping[str, Any], None]


def error_message(error: Any) -> str:
    """Printable message for any raised object, even one with a broken __str__"""
    if error is None:
        return "Unknown error"
    if isinstance(error, ClassifiedError):
        return Exception.__str__(error)
    try:
        message = str(error)
    except Exception:
        return type(error).__name__
    if not message and isinstance(error, BaseException):
        message = type(error).__name__
    return message


class ErrorClassifier:
    """
    Maps raw failures to a fixed ErrorKind and its static RetryPolicy.

    Precedence, first match wins:
    1. a kind already tagged on the error
    2. known HTTP status codes
    3. low-level network faults and timeouts
    4. domain-specific patterns (hostname substring) on message and body
    5. generic captcha / bot / auth / rate-limit vocabulary
    6. body heuristics: implausibly short -> CONTENT_EMPTY, blocking words -> BOT_DETECTION
    7. UNKNOWN

    Results are memoized per (error identity, url, status code).
    ``classify`` never raises.
    """

    def __init__(
        self,
        metrics: Optional[Metrics] = None,
        cache_size: int = CLASSIFICATION_CACHE_SIZE,
        min_content_length: int = MIN_CONTENT_LENGTH,
        clock: Callable[[], float] = time.time,
    ):
        self.metrics = metrics
        self.cache_size = cache_size
        self.min_content_length = min_content_length
        self.clock = clock

        self._patterns: PatternList = list(GENERIC_PATTERNS)
        self._domain_patterns: Dict[str, PatternList] = {
            domain: list(patterns) for domain, patterns in DOMAIN_PATTERNS.items()
        }
        self._memo: "OrderedDict[Hashable, ErrorKind]" = OrderedDict()
        self._lock = threading.RLock()
        self._stats = self._empty_stats()

        logger.debug(
            f"Error classifier initialized: {len(self._patterns)} generic patterns, "
            f"{len(self._domain_patterns)} domain pattern sets"
        )

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    def classify(self, error: Any, context: ContextLike = None) -> ClassifiedError:
        """Classify a raw failure. Malformed input degrades to UNKNOWN."""
        if error is None:
            logger.warning("Attempted to classify an undefined error")

        domain = None
        try:
            ctx = self._build_context(error, context)
            domain = extract_domain(ctx.url)
            key = self._cache_key(error, ctx)

            with self._lock:
                kind = self._memo.get(key)

            if kind is None:
                kind = self._detect_kind(error, ctx, domain)
                with self._lock:
                    self._memo[key] = kind
                    self._cleanup_memo()
        except Exception as e:
            logger.warning(f"Classification failed, falling back to UNKNOWN: {e!r}")
            ctx = ErrorContext()
            kind = ErrorKind.UNKNOWN

        self._record(kind, domain)

        if isinstance(error, ClassifiedError) and error.kind == kind:
            original = error.original
        else:
            original = error if isinstance(error, BaseException) else None

        classified = ClassifiedError(
            error_message(error),
            kind=kind,
            policy=get_policy(kind),
            original=original,
            context=ctx,
            classified_at=self.clock(),
        )

        logger.debug(f"Classified error as {kind.value} (url={ctx.url}): {classified}")
        return classified

    def should_retry(self, error: ClassifiedError, attempt: int) -> bool:
        """Whether retry number ``attempt`` (1-based) is within the policy"""
        if error is None or error.policy is None:
            return False
        return attempt <= error.policy.max_retries

    def add_error_pattern(
        self,
        pattern: Union[str, Pattern],
        kind: Union[ErrorKind, str],
        domain: Optional[str] = None,
    ) -> None:
        """
        Register a custom pattern at runtime.

        Domain patterns are keyed by hostname substring and appended after the
        existing ones for that domain. Clears the memo so new patterns apply.
        """
        resolved = ErrorKind.coerce(kind)
        if resolved is None:
            raise InvalidPatternError(f"Invalid error kind: {kind!r}")

        if not isinstance(pattern, re.Pattern):
            try:
                pattern = re.compile(pattern, re.IGNORECASE)
            except (re.error, TypeError) as e:
                raise InvalidPatternError(f"Invalid regex pattern: {e}") from e

        with self._lock:
            if domain:
                self._domain_patterns.setdefault(domain.lower(), []).append((pattern, resolved))
            else:
                self._patterns.append((pattern, resolved))
            self._memo.clear()

        logger.info(
            f"Added error pattern {pattern.pattern!r} -> {resolved.value}"
            + (f" for {domain}" if domain else "")
        )

    def get_error_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "total_errors": self._stats["total_errors"],
                "errors_by_kind": dict(self._stats["errors_by_kind"]),
                "errors_by_domain": {
                    d: dict(kinds) for d, kinds in self._stats["errors_by_domain"].items()
                },
            }

    def reset_error_stats(self) -> None:
        """Reset counters and clear the memo"""
        with self._lock:
            self._stats = self._empty_stats()
            self._memo.clear()

    @property
    def memo_size(self) -> int:
        return len(self._memo)

    # ------------------------------------------------------------------ #
    # Context extraction
    # ------------------------------------------------------------------ #

    def _build_context(self, error: Any, context: ContextLike) -> ErrorContext:
        ctx = self._context_from_error(error)
        explicit = self._coerce_context(context)

        if explicit.status_code is not None:
            ctx.status_code = explicit.status_code
        if explicit.url:
            ctx.url = explicit.url
        if explicit.body is not None:
            ctx.body = explicit.body
        if explicit.headers:
            ctx.headers = dict(explicit.headers)

        if ctx.status_code is not None:
            ctx.status_code = int(ctx.status_code)
        return ctx

    @staticmethod
    def _coerce_context(context: ContextLike) -> ErrorContext:
        if context is None:
            return ErrorContext()
        if isinstance(context, ErrorContext):
            return context
        return ErrorContext(
            status_code=context.get("status_code", context.get("statusCode")),
            url=context.get("url"),
            body=context.get("body", context.get("html", context.get("response_body"))),
            headers=dict(context.get("headers") or {}),
        )

    @staticmethod
    def _context_from_error(error: Any) -> ErrorContext:
        ctx = ErrorContext()
        if not isinstance(error, BaseException):
            return ctx

        if isinstance(error, ClassifiedError):
            return ErrorContext(
                status_code=error.context.status_code,
                url=error.context.url,
                body=error.context.body,
                headers=dict(error.context.headers),
            )

        if isinstance(error, httpx.RequestError):
            try:
                ctx.url = str(error.request.url)
            except RuntimeError:
                pass

        response = getattr(error, "response", None)
        if response is not None:
            status = getattr(response, "status_code", None)
            if isinstance(status, int):
                ctx.status_code = status
            try:
                text = response.text
                ctx.body = text if isinstance(text, str) else None
                url = response.url
                if url:
                    ctx.url = str(url)
            except (AttributeError, RuntimeError, UnicodeDecodeError):
                # Streaming responses that were never read, or no bound request
                pass
            headers = getattr(response, "headers", None)
            if headers:
                ctx.headers = {str(k): str(v) for k, v in headers.items()}

        status = getattr(error, "status_code", None)
        if isinstance(status, int):
            ctx.status_code = status
        url = getattr(error, "url", None)
        if isinstance(url, str) and url:
            ctx.url = url
        body = getattr(error, "body", None)
        if isinstance(body, str):
            ctx.body = body
        headers = getattr(error, "headers", None)
        if isinstance(headers, Mapping) and headers:
            ctx.headers = dict(headers)
        return ctx

    def _cache_key(self, error: Any, ctx: ErrorContext) -> Hashable:
        tagged = ErrorKind.coerce(getattr(error, "kind", None))
        code = getattr(error, "code", None)
        return (
            type(error).__name__,
            error_message(error),
            str(code) if code is not None else "",
            tagged.value if tagged else "",
            ctx.url or "",
            ctx.status_code,
        )

    # ------------------------------------------------------------------ #
    # Detection
    # ------------------------------------------------------------------ #

    def _detect_kind(self, error: Any, ctx: ErrorContext, domain: Optional[str]) -> ErrorKind:
        tagged = ErrorKind.coerce(getattr(error, "kind", None))
        if tagged is not None:
            return tagged

        if ctx.status_code in STATUS_KINDS:
            return STATUS_KINDS[ctx.status_code]

        kind = self._network_kind(error)
        if kind is not None:
            return kind

        message = error_message(error)
        body = ctx.body or ""

        # Snapshot under the lock; add_error_pattern may run concurrently
        with self._lock:
            domain_sets = [
                list(patterns)
                for pattern_domain, patterns in self._domain_patterns.items()
                if domain and pattern_domain in domain
            ]
            generic = list(self._patterns)

        for patterns in domain_sets:
            kind = self._match(patterns, message, body)
            if kind is not None:
                return kind

        kind = self._match(generic, message, body)
        if kind is not None:
            return kind

        if ctx.body is not None:
            kind = self._body_kind(ctx.body)
            if kind is not None:
                return kind

        return ErrorKind.UNKNOWN

    @staticmethod
    def _match(patterns: PatternList, message: str, body: str) -> Optional[ErrorKind]:
        for regex, kind in patterns:
            if regex.search(message) or (body and regex.search(body)):
                return kind
        return None

    def _body_kind(self, body: str) -> Optional[ErrorKind]:
        if len(body.strip()) < self.min_content_length:
            return ErrorKind.CONTENT_EMPTY

        if _ERROR_TITLE.search(body):
            if _TITLE_CAPTCHA.search(body):
                return ErrorKind.CAPTCHA
            if _BLOCKING_VOCABULARY.search(body):
                return ErrorKind.BOT_DETECTION
            if _TITLE_AUTH.search(body):
                return ErrorKind.AUTH_REQUIRED

        if _BLOCKING_VOCABULARY.search(body):
            return ErrorKind.BOT_DETECTION
        return None

    @staticmethod
    def _network_kind(error: Any) -> Optional[ErrorKind]:
        if not isinstance(error, BaseException):
            return None

        code = getattr(error, "code", None)
        if isinstance(code, str) and code:
            upper = code.upper()
            if upper in CODE_KINDS:
                return CODE_KINDS[upper]
            if upper.startswith("E"):
                return ErrorKind.NETWORK

        if isinstance(error, CurlError) and isinstance(code, int):
            if code in CURL_KINDS:
                return CURL_KINDS[code]
            if code:
                return ErrorKind.NETWORK

        if isinstance(error, httpx.ProxyError):
            return ErrorKind.PROXY_ERROR
        if isinstance(error, httpx.TimeoutException):
            return ErrorKind.TIMEOUT
        if isinstance(error, httpx.ConnectError):
            if _DNS_MESSAGE.search(error_message(error)):
                return ErrorKind.DNS_LOOKUP
            return ErrorKind.NETWORK
        if isinstance(error, (httpx.RemoteProtocolError, httpx.ReadError, httpx.WriteError)):
            return ErrorKind.CONNECTION_RESET
        if isinstance(error, httpx.TransportError):
            return ErrorKind.NETWORK

        if isinstance(error, socket.gaierror):
            return ErrorKind.DNS_LOOKUP
        if isinstance(error, ConnectionResetError):
            return ErrorKind.CONNECTION_RESET
        if isinstance(error, (TimeoutError, asyncio.TimeoutError, socket.timeout)):
            return ErrorKind.TIMEOUT
        if isinstance(error, OSError) and error.errno in ERRNO_KINDS:
            return ERRNO_KINDS[error.errno]
        if isinstance(error, ConnectionError):
            return ErrorKind.NETWORK

        if _TIMEOUT_MESSAGE.search(error_message(error)):
            return ErrorKind.TIMEOUT
        return None

    # ------------------------------------------------------------------ #
    # Bookkeeping
    # ------------------------------------------------------------------ #

    @staticmethod
    def _empty_stats() -> Dict[str, Any]:
        return {"total_errors": 0, "errors_by_kind": {}, "errors_by_domain": {}}

    def _cleanup_memo(self) -> None:
        """Drop the oldest ~20% once the memo exceeds its bound"""
        if len(self._memo) <= self.cache_size:
            return
        to_remove = max(1, int(self.cache_size * CLASSIFICATION_CACHE_EVICT_RATIO))
        for _ in range(min(to_remove, len(self._memo))):
            self._memo.popitem(last=False)

    def _record(self, kind: ErrorKind, domain: Optional[str]) -> None:
        with self._lock:
            self._stats["total_errors"] += 1
            by_kind = self._stats["errors_by_kind"]
            by_kind[kind.value] = by_kind.get(kind.value, 0) + 1
            if domain:
                by_domain = self._stats["errors_by_domain"].setdefault(domain, {})
                by_domain[kind.value] = by_domain.get(kind.value, 0) + 1

        if self.metrics is not None:
            self.metrics.increment("errors_total")
            self.metrics.increment("errors_by_kind", kind=kind.value)
            if domain:
                self.metrics.increment("errors_by_domain", domain=domain, kind=kind.value)
