"""Small shared helpers"""

import random
from typing import Optional, Tuple
from urllib.parse import urlparse

from .config import JITTER_RANGE


def extract_domain(url_or_domain: Optional[str]) -> Optional[str]:
    """
    Return the lowercased hostname of a URL.

    Bare domains ("site.com", "site.com/path") are accepted as-is so callers
    can key per-domain state by either form.
    """
    if not url_or_domain:
        return None

    value = url_or_domain.strip()
    parsed = urlparse(value if "://" in value else f"//{value}")
    host = parsed.hostname
    if host:
        return host.lower()
    return value.lower()


def apply_jitter(delay: float, jitter_range: Tuple[float, float] = JITTER_RANGE) -> float:
    """Scale a delay by a random factor to avoid synchronized retry storms"""
    return delay * random.uniform(*jitter_range)
