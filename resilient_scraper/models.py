"""Data models and enums for the resilience layer"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional


class ErrorKind(Enum):
    """Closed taxonomy of failure causes"""

    # Network
    NETWORK = "NETWORK"
    CONNECTION_RESET = "CONNECTION_RESET"
    DNS_LOOKUP = "DNS_LOOKUP"
    TIMEOUT = "TIMEOUT"

    # HTTP
    HTTP_400 = "HTTP_400"
    HTTP_401 = "HTTP_401"
    HTTP_403 = "HTTP_403"
    HTTP_404 = "HTTP_404"
    HTTP_429 = "HTTP_429"
    HTTP_500 = "HTTP_500"
    HTTP_503 = "HTTP_503"

    # Content
    CONTENT_EMPTY = "CONTENT_EMPTY"
    CONTENT_INVALID = "CONTENT_INVALID"
    PARSE_ERROR = "PARSE_ERROR"

    # Bot detection
    CAPTCHA = "CAPTCHA"
    BOT_DETECTION = "BOT_DETECTION"
    FINGERPRINT_DETECTED = "FINGERPRINT_DETECTED"
    BROWSER_VERIFICATION = "BROWSER_VERIFICATION"

    # Authentication
    AUTH_REQUIRED = "AUTH_REQUIRED"
    SESSION_EXPIRED = "SESSION_EXPIRED"

    # Proxy
    PROXY_ERROR = "PROXY_ERROR"
    PROXY_BANNED = "PROXY_BANNED"

    RESOURCE_LIMIT = "RESOURCE_LIMIT"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def coerce(cls, value: Any) -> Optional["ErrorKind"]:
        """Return the matching kind for an enum member or its string value"""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.upper())
            except ValueError:
                return None
        return None


@dataclass(frozen=True)
class RetryPolicy:
    """Static retry/recovery behavior bound to an ErrorKind"""

    max_retries: int = 3
    base_delay: float = 2.0  # seconds
    backoff_factor: float = 1.5
    rotate_proxy: bool = False
    recreate_session: bool = False
    enhance_stealth: bool = False
    solve_captcha: bool = False
    disable_proxy: bool = False
    requires_auth: bool = False
    increase_timeout: bool = False
    wait_for_content: bool = False
    use_alternative_parser: bool = False
    reduce_resource_usage: bool = False
    evasion: FrozenSet[str] = frozenset()


@dataclass
class ErrorContext:
    """Request context attached to a failure for classification"""

    status_code: Optional[int] = None
    url: Optional[str] = None
    body: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)


class CircuitState(Enum):
    """Circuit breaker states"""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject requests
    HALF_OPEN = "half_open"  # Single probe in flight


@dataclass
class DomainCircuit:
    """Circuit breaker state for one domain"""

    domain: str
    failure_threshold: int
    reset_timeout: float
    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    opened_at: Optional[float] = None
    probe_started_at: Optional[float] = None

    # Metrics
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    rejected_requests: int = 0
    open_count: int = 0
    total_open_time: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "domain": self.domain,
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "failure_threshold": self.failure_threshold,
            "reset_timeout": self.reset_timeout,
            "opened_at": self.opened_at,
            "probe_in_flight": self.probe_started_at is not None,
            "metrics": {
                "total_requests": self.total_requests,
                "successful_requests": self.successful_requests,
                "failed_requests": self.failed_requests,
                "rejected_requests": self.rejected_requests,
                "open_count": self.open_count,
                "total_open_time": self.total_open_time,
            },
        }


class RotationStrategy(Enum):
    """Proxy selection strategies"""

    SEQUENTIAL = "sequential"
    RANDOM = "random"
    PERFORMANCE = "performance"


@dataclass
class ProxyStats:
    """Usage and health statistics for a single proxy"""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    consecutive_failures: int = 0
    avg_response_time: float = 0.0  # seconds, EMA
    last_used: Optional[float] = None
    last_tested: Optional[float] = None
    last_banned: Optional[float] = None
    ban_count: int = 0
    success_rate: float = 1.0  # Start optimistic
    score: float = 1.0


@dataclass
class Proxy:
    """A proxy endpoint and its statistics"""

    id: str
    url: str
    type: str = "http"
    country: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    enabled: bool = True
    disabled_reason: Optional[str] = None
    stats: ProxyStats = field(default_factory=ProxyStats)
    extra: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return (
            f"Proxy {self.id} ({self.type}, {self.country or '??'}) "
            f"[Score: {self.stats.score:.2f}] "
            f"[Success: {self.stats.success_rate * 100:.1f}%]"
        )


@dataclass
class CacheEntry:
    """A cached value and its bookkeeping metadata"""

    key: str
    value: Any
    created_at: float
    domain: Optional[str]
    ttl: float
    sequence: int = 0

    def expires_at(self) -> float:
        return self.created_at + self.ttl

    def is_expired(self, now: float) -> bool:
        return self.ttl > 0 and now >= self.expires_at()


@dataclass
class RetryState:
    """Mutable per-invocation state handed to every attempt"""

    retry_count: int = 0
    delay: float = 0.0
    proxy_id: Optional[str] = None
    proxy_url: Optional[str] = None
    captcha_solution: Optional[str] = None
    last_error_kind: Optional[ErrorKind] = None

    # Policy-derived flags, refreshed before every retry
    rotate_proxy: bool = False
    recreate_session: bool = False
    enhance_stealth: bool = False
    requires_auth: bool = False
    solve_captcha: bool = False
    disable_proxy: bool = False
    simplified: bool = False
    wait_for_content: bool = False
    use_alternative_parser: bool = False
    timeout_multiplier: float = 1.0
    evasion: FrozenSet[str] = frozenset()

    def apply_policy(self, kind: ErrorKind, policy: RetryPolicy) -> None:
        """Refresh the recovery flags from the policy of the last failure"""
        self.last_error_kind = kind
        self.rotate_proxy = policy.rotate_proxy
        self.recreate_session = policy.recreate_session
        self.enhance_stealth = policy.enhance_stealth
        self.requires_auth = policy.requires_auth
        self.solve_captcha = policy.solve_captcha
        self.disable_proxy = policy.disable_proxy
        self.wait_for_content = policy.wait_for_content
        self.use_alternative_parser = policy.use_alternative_parser
        self.evasion = policy.evasion

        if policy.increase_timeout:
            # +50% per attempt
            self.timeout_multiplier = 1 + self.retry_count * 0.5

        self.simplified = policy.reduce_resource_usage or (
            self.retry_count > policy.max_retries / 2
        )
