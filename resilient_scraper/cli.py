"""Command line interface for proxy maintenance and error triage"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from loguru import logger

from . import __version__
from .classifier import ErrorClassifier
from .config import (
    DEFAULT_LOG_FILE,
    DEFAULT_PROXY_FILE,
    HEALTH_CHECK_CONCURRENCY,
    HEALTH_CHECK_TIMEOUT,
    HEALTH_CHECK_URL,
)
from .exceptions import ClassifiedError, ProxyStoreError, ScrapeError
from .http_client import HttpFetcher
from .logging_config import setup_logging
from .models import ErrorContext
from .proxy_pool import ProxyPool
from .storage import JsonProxyStore


async def check_proxies(
    proxy_file: Path,
    health_check_url: str = HEALTH_CHECK_URL,
    timeout: float = HEALTH_CHECK_TIMEOUT,
    concurrency: int = HEALTH_CHECK_CONCURRENCY,
    progress: bool = True,
) -> Dict[str, Any]:
    """Run one health-check pass over a proxy file and save the result"""
    fetcher = HttpFetcher(health_check_url=health_check_url, health_check_timeout=timeout)
    pool = ProxyPool(
        store=JsonProxyStore(proxy_file),
        health_check_concurrency=concurrency,
        probe=fetcher.probe,
    )
    await pool.load()

    if pool.get_counts()["total"] == 0:
        logger.warning(f"No proxies to check in {proxy_file}")
        return {"checked": 0, "passed": 0, "failed": 0, "activated": 0, "disabled": 0}

    results = await pool.run_health_checks(progress=progress)
    pool.print_stats()
    return results


async def proxy_stats(proxy_file: Path) -> Dict[str, Any]:
    """Load a proxy file and print its statistics"""
    pool = ProxyPool(store=JsonProxyStore(proxy_file))
    await pool.load()
    pool.print_stats()
    return pool.get_stats()


def classify_message(
    message: str,
    status_code: Optional[int] = None,
    url: Optional[str] = None,
    body: Optional[str] = None,
) -> ClassifiedError:
    """Classify a failure description the way the retry loop would"""
    classifier = ErrorClassifier()
    error = ScrapeError(message, status_code=status_code, url=url, body=body)
    classified = classifier.classify(
        error, ErrorContext(status_code=status_code, url=url, body=body)
    )
    policy = classified.policy

    logger.info("")
    logger.info("=" * 60)
    logger.info(f"🔎 Kind:            {classified.kind.value}")
    logger.info(f"   Max retries:     {policy.max_retries}")
    logger.info(f"   Base delay:      {policy.base_delay:.1f}s (x{policy.backoff_factor})")
    flags = [
        name
        for name in (
            "rotate_proxy",
            "recreate_session",
            "enhance_stealth",
            "solve_captcha",
            "disable_proxy",
            "requires_auth",
            "increase_timeout",
            "reduce_resource_usage",
        )
        if getattr(policy, name)
    ]
    logger.info(f"   Recovery:        {', '.join(flags) or 'none'}")
    logger.info("=" * 60)
    return classified


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="resilient-scraper",
        description="Resilient scraper - proxy pool maintenance and error triage",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--log-file", type=str, help="Log file path")

    subparsers = parser.add_subparsers(dest="command", required=True)

    check = subparsers.add_parser("check-proxies", help="Health-check every proxy in a file")
    check.add_argument(
        "--proxy-file", type=str, default=str(DEFAULT_PROXY_FILE), help="JSON proxy list"
    )
    check.add_argument("--url", type=str, default=HEALTH_CHECK_URL, help="Health check URL")
    check.add_argument(
        "--timeout", type=float, default=HEALTH_CHECK_TIMEOUT, help="Probe timeout in seconds"
    )
    check.add_argument(
        "--concurrency", type=int, default=HEALTH_CHECK_CONCURRENCY, help="Probes in flight"
    )
    check.add_argument("--no-progress", action="store_true", help="Hide the progress bar")

    stats = subparsers.add_parser("proxy-stats", help="Print statistics for a proxy file")
    stats.add_argument(
        "--proxy-file", type=str, default=str(DEFAULT_PROXY_FILE), help="JSON proxy list"
    )

    classify = subparsers.add_parser("classify", help="Classify an error message")
    classify.add_argument("message", type=str, help="Error message")
    classify.add_argument("--status", type=int, help="HTTP status code")
    classify.add_argument("--url", type=str, help="Request URL")
    classify.add_argument("--body", type=str, help="Response body")
    classify.add_argument("--body-file", type=str, help="Read the response body from a file")

    return parser


def main() -> None:
    """Main CLI entry point"""
    parser = build_parser()
    args = parser.parse_args()

    log_file = Path(args.log_file) if args.log_file else DEFAULT_LOG_FILE
    setup_logging(verbose=args.verbose, log_file=log_file)

    async def run():
        if args.command == "check-proxies":
            await check_proxies(
                Path(args.proxy_file),
                health_check_url=args.url,
                timeout=args.timeout,
                concurrency=args.concurrency,
                progress=not args.no_progress,
            )
        elif args.command == "proxy-stats":
            await proxy_stats(Path(args.proxy_file))
        elif args.command == "classify":
            body = args.body
            if args.body_file:
                body = Path(args.body_file).read_text(encoding="utf-8", errors="replace")
            classify_message(args.message, status_code=args.status, url=args.url, body=body)

    try:
        asyncio.run(run())
    except ProxyStoreError as e:
        logger.error(f"❌ {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        sys.exit(1)


if __name__ == "__main__":
    main()
