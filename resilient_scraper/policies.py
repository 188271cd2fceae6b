"""Static retry policies per error kind"""

from typing import Dict, Optional, Tuple

from .config import JITTER_RANGE, MAX_BACKOFF
from .models import ErrorKind, RetryPolicy
from .utils import apply_jitter

RETRY_POLICIES: Dict[ErrorKind, RetryPolicy] = {
    # Network errors - retry quickly with short delay
    ErrorKind.NETWORK: RetryPolicy(
        max_retries=5, base_delay=1.0, backoff_factor=1.5, rotate_proxy=True
    ),
    ErrorKind.CONNECTION_RESET: RetryPolicy(
        max_retries=4, base_delay=2.0, backoff_factor=1.5, rotate_proxy=True
    ),
    ErrorKind.DNS_LOOKUP: RetryPolicy(
        max_retries=3, base_delay=5.0, backoff_factor=1.5, rotate_proxy=True
    ),
    ErrorKind.TIMEOUT: RetryPolicy(
        max_retries=4,
        base_delay=2.0,
        backoff_factor=2.0,
        rotate_proxy=True,
        increase_timeout=True,
    ),
    # HTTP errors
    ErrorKind.HTTP_400: RetryPolicy(max_retries=2, base_delay=1.0, backoff_factor=1.5),
    ErrorKind.HTTP_401: RetryPolicy(
        max_retries=1,
        base_delay=1.0,
        backoff_factor=1.0,
        recreate_session=True,
        requires_auth=True,
    ),
    ErrorKind.HTTP_403: RetryPolicy(
        max_retries=3,
        base_delay=5.0,
        backoff_factor=2.0,
        rotate_proxy=True,
        recreate_session=True,
        enhance_stealth=True,
    ),
    # Rarely helps to retry 404s
    ErrorKind.HTTP_404: RetryPolicy(max_retries=1, base_delay=1.0, backoff_factor=1.0),
    ErrorKind.HTTP_429: RetryPolicy(
        max_retries=5,
        base_delay=10.0,
        backoff_factor=2.0,
        rotate_proxy=True,
        recreate_session=True,
        enhance_stealth=True,
    ),
    ErrorKind.HTTP_500: RetryPolicy(max_retries=3, base_delay=3.0, backoff_factor=1.5),
    ErrorKind.HTTP_503: RetryPolicy(
        max_retries=4, base_delay=5.0, backoff_factor=1.5, rotate_proxy=True
    ),
    # Content errors
    ErrorKind.CONTENT_EMPTY: RetryPolicy(
        max_retries=3,
        base_delay=2.0,
        backoff_factor=1.5,
        recreate_session=True,
        wait_for_content=True,
    ),
    ErrorKind.CONTENT_INVALID: RetryPolicy(
        max_retries=2, base_delay=2.0, backoff_factor=1.5, rotate_proxy=True
    ),
    ErrorKind.PARSE_ERROR: RetryPolicy(
        max_retries=2, base_delay=1.0, backoff_factor=1.5, use_alternative_parser=True
    ),
    # Bot detection
    ErrorKind.CAPTCHA: RetryPolicy(
        max_retries=3,
        base_delay=5.0,
        backoff_factor=1.5,
        rotate_proxy=True,
        recreate_session=True,
        enhance_stealth=True,
        solve_captcha=True,
    ),
    ErrorKind.BOT_DETECTION: RetryPolicy(
        max_retries=4,
        base_delay=5.0,
        backoff_factor=2.0,
        rotate_proxy=True,
        recreate_session=True,
        enhance_stealth=True,
        evasion=frozenset({"emulate_human_behavior", "randomize_fingerprint", "delay_requests"}),
    ),
    ErrorKind.FINGERPRINT_DETECTED: RetryPolicy(
        max_retries=3,
        base_delay=5.0,
        backoff_factor=2.0,
        rotate_proxy=True,
        recreate_session=True,
        enhance_stealth=True,
        evasion=frozenset({"randomize_fingerprint", "use_incognito_context"}),
    ),
    ErrorKind.BROWSER_VERIFICATION: RetryPolicy(
        max_retries=3,
        base_delay=3.0,
        backoff_factor=1.5,
        rotate_proxy=True,
        recreate_session=True,
        enhance_stealth=True,
        evasion=frozenset({"emulate_human_behavior"}),
    ),
    # Authentication
    ErrorKind.AUTH_REQUIRED: RetryPolicy(
        max_retries=2,
        base_delay=1.0,
        backoff_factor=1.5,
        recreate_session=True,
        requires_auth=True,
    ),
    ErrorKind.SESSION_EXPIRED: RetryPolicy(
        max_retries=2,
        base_delay=1.0,
        backoff_factor=1.5,
        recreate_session=True,
        requires_auth=True,
    ),
    # Proxy issues
    ErrorKind.PROXY_ERROR: RetryPolicy(
        max_retries=5,
        base_delay=1.0,
        backoff_factor=1.2,
        rotate_proxy=True,
        recreate_session=True,
    ),
    ErrorKind.PROXY_BANNED: RetryPolicy(
        max_retries=3,
        base_delay=5.0,
        backoff_factor=1.5,
        rotate_proxy=True,
        recreate_session=True,
        disable_proxy=True,
    ),
    ErrorKind.RESOURCE_LIMIT: RetryPolicy(
        max_retries=3,
        base_delay=10.0,
        backoff_factor=2.0,
        recreate_session=True,
        reduce_resource_usage=True,
    ),
    # Never retried
    ErrorKind.CIRCUIT_OPEN: RetryPolicy(max_retries=0, base_delay=0.0, backoff_factor=1.0),
    ErrorKind.UNKNOWN: RetryPolicy(
        max_retries=3, base_delay=2.0, backoff_factor=1.5, rotate_proxy=True
    ),
}


def get_policy(kind: Optional[ErrorKind]) -> RetryPolicy:
    """Policy for a kind, falling back to UNKNOWN's policy"""
    if kind is None:
        return RETRY_POLICIES[ErrorKind.UNKNOWN]
    return RETRY_POLICIES.get(kind, RETRY_POLICIES[ErrorKind.UNKNOWN])


def calculate_backoff_delay(
    base_delay: float,
    attempt: int,
    backoff_factor: float = 1.5,
    max_delay: float = MAX_BACKOFF,
    jitter_range: Optional[Tuple[float, float]] = JITTER_RANGE,
) -> float:
    """
    Exponential backoff: base_delay * backoff_factor^(attempt-1), capped.

    Args:
        base_delay: Delay before the first retry, in seconds
        attempt: Retry number, starting at 1
        backoff_factor: Multiplier applied per retry
        max_delay: Upper bound before jitter
        jitter_range: Random scale range, or None for a deterministic delay
    """
    attempt = max(1, attempt)
    delay = min(base_delay * (backoff_factor ** (attempt - 1)), max_delay)
    if jitter_range:
        delay = apply_jitter(delay, jitter_range)
    return max(0.0, delay)
