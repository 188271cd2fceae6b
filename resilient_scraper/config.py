"""Configuration constants for the resilience layer"""

from pathlib import Path

# Retry configuration
MAX_RETRIES = 3
MAX_DURATION = 300.0  # 5 minutes per withRetry call
INITIAL_BACKOFF = 1.0
MAX_BACKOFF = 60.0
BACKOFF_MULTIPLIER = 1.5
JITTER_RANGE = (0.8, 1.2)

# Circuit breaker configuration
CIRCUIT_BREAKER_THRESHOLD = 5  # Consecutive failures before opening circuit
CIRCUIT_BREAKER_RESET_TIMEOUT = 60.0  # Seconds before admitting a probe

# Error classification
CLASSIFICATION_CACHE_SIZE = 1000
CLASSIFICATION_CACHE_EVICT_RATIO = 0.2
MIN_CONTENT_LENGTH = 50  # Bodies shorter than this are treated as empty

# Proxy pool configuration
DEFAULT_PROXY_FILE = Path("./proxies.json")
ROTATION_STRATEGY = "performance"
MAX_CONSECUTIVE_FAILURES = 3
PROXY_BAN_DURATION = 30 * 60.0
HEALTH_CHECK_URL = "https://httpbin.org/ip"
HEALTH_CHECK_INTERVAL = 15 * 60.0
HEALTH_CHECK_TIMEOUT = 10.0
HEALTH_CHECK_CONCURRENCY = 10
HEALTH_CHECK_DISABLED_SAMPLE = 5  # Disabled proxies re-tested per pass
HEALTH_CHECK_BACKUP_SAMPLE = 3  # Backup proxies tested when pool is small
MIN_ACTIVE_PROXIES = 5
PROXY_FLUSH_INTERVAL = 5 * 60.0

# Proxy scoring
SCORE_REFERENCE_RESPONSE_TIME = 5.0  # Seconds; faster proxies get full marks
SCORE_RECENCY_WINDOW = 24 * 60 * 60.0
SCORE_JITTER_RANGE = (0.8, 1.2)

# HTTP
DEFAULT_IMPERSONATE = "chrome"
STEALTH_IMPERSONATE_TARGETS = ("chrome", "edge", "safari")  # Rotated when stealth is enhanced
DEFAULT_REQUEST_TIMEOUT = 30.0

# Cache configuration
CACHE_ENABLED = True
CACHE_TTL = 4 * 60 * 60.0
CACHE_MAX_ITEMS_PER_DOMAIN = 1000
CACHE_CLEANUP_INTERVAL = 60 * 60.0  # Capacity sweep
CACHE_CHECK_PERIOD = 10 * 60.0  # Expired-entry purge
CACHE_KEY_HASH_THRESHOLD = 100
DEFAULT_CACHE_FILE = Path("./cache/cache.json")

# Logging
DEFAULT_LOG_FILE = Path("./logs/resilient_scraper.log")
