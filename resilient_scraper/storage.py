"""Persistent stores with async I/O: proxy list and cache mirror"""

import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import aiofiles
import aiofiles.os
import orjson
from dateutil import parser as date_parser
from loguru import logger

from .exceptions import ProxyStoreError
from .models import CacheEntry, Proxy, ProxyStats

_PROXY_FIELDS = {"id", "url", "type", "country", "tags", "enabled", "disabled", "banned", "disabled_reason", "stats"}


def format_timestamp(value: Optional[float]) -> Optional[str]:
    """Epoch seconds -> ISO-8601 UTC string"""
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).isoformat()


def parse_timestamp(value: Union[None, int, float, str]) -> Optional[float]:
    """
    Parse a persisted timestamp into epoch seconds.

    Accepts ISO-8601 strings, epoch seconds, and epoch milliseconds (older
    proxy lists stored millisecond timestamps).
    """
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        try:
            number = float(value)
        except ValueError:
            parsed = date_parser.isoparse(value)
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed.timestamp()
    # Anything past year ~5138 in seconds is really milliseconds
    return number / 1000.0 if number > 1e11 else number


async def _atomic_write(path: Path, payload: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    async with aiofiles.open(tmp, "wb") as f:
        await f.write(payload)
    await aiofiles.os.replace(tmp, path)


async def _read_json(path: Path) -> Any:
    async with aiofiles.open(path, "rb") as f:
        data = await f.read()
    return orjson.loads(data) if data.strip() else None


def proxy_from_record(record: Dict[str, Any]) -> Proxy:
    """Build a Proxy from a persisted record (stats optional)"""
    raw_stats = record.get("stats") or {}
    stats = ProxyStats(
        total_requests=int(raw_stats.get("total_requests", 0)),
        successful_requests=int(raw_stats.get("successful_requests", 0)),
        failed_requests=int(raw_stats.get("failed_requests", 0)),
        consecutive_failures=int(raw_stats.get("consecutive_failures", 0)),
        avg_response_time=float(raw_stats.get("avg_response_time", 0.0)),
        last_used=parse_timestamp(raw_stats.get("last_used", raw_stats.get("lastUsed"))),
        last_tested=parse_timestamp(raw_stats.get("last_tested", raw_stats.get("lastTested"))),
        last_banned=parse_timestamp(raw_stats.get("last_banned", raw_stats.get("lastBanned"))),
        ban_count=int(raw_stats.get("ban_count", raw_stats.get("banCount", 0))),
        success_rate=float(raw_stats.get("success_rate", raw_stats.get("successRate", 1.0))),
        score=float(raw_stats.get("score", 1.0)),
    )
    return Proxy(
        id=str(record.get("id") or ""),
        url=record["url"],
        type=record.get("type") or "http",
        country=record.get("country"),
        tags=list(record.get("tags") or []),
        enabled=record.get("enabled", True) is not False,
        disabled_reason=record.get("disabled_reason"),
        stats=stats,
        extra={k: v for k, v in record.items() if k not in _PROXY_FIELDS},
    )


def proxy_to_record(proxy: Proxy, disabled: bool = False) -> Dict[str, Any]:
    stats = proxy.stats
    record = dict(proxy.extra)
    record.update(
        {
            "id": proxy.id,
            "url": proxy.url,
            "type": proxy.type,
            "country": proxy.country,
            "tags": list(proxy.tags),
            "enabled": proxy.enabled,
            "disabled": disabled,
            "disabled_reason": proxy.disabled_reason,
            "stats": {
                "total_requests": stats.total_requests,
                "successful_requests": stats.successful_requests,
                "failed_requests": stats.failed_requests,
                "consecutive_failures": stats.consecutive_failures,
                "avg_response_time": stats.avg_response_time,
                "last_used": format_timestamp(stats.last_used),
                "last_tested": format_timestamp(stats.last_tested),
                "last_banned": format_timestamp(stats.last_banned),
                "ban_count": stats.ban_count,
                "success_rate": stats.success_rate,
                "score": stats.score,
            },
        }
    )
    return record


class JsonProxyStore:
    """
    Ordered proxy list persisted as a JSON array.

    Each record is ``{id, url, type, country, tags, enabled, disabled, stats}``;
    unknown keys (city, isp, ...) are preserved.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    async def load(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            logger.warning(f"Proxy file not found: {self.path} (starting with an empty pool)")
            return []

        try:
            data = await _read_json(self.path)
        except orjson.JSONDecodeError as e:
            raise ProxyStoreError(f"Invalid proxy file {self.path}: {e}") from e

        if data is None:
            return []
        if not isinstance(data, list):
            raise ProxyStoreError(f"Invalid proxy file {self.path}: expected a JSON array")

        records = [r for r in data if isinstance(r, dict)]
        logger.debug(f"Loaded {len(records)} proxy records from {self.path}")
        return records

    async def save(self, records: Iterable[Dict[str, Any]]) -> None:
        records = list(records)
        payload = orjson.dumps(records, option=orjson.OPT_INDENT_2)
        await _atomic_write(self.path, payload)
        logger.debug(f"💾 Saved {len(records)} proxies: {self.path.name} ({len(payload)/1024:.1f}KB)")


class JsonCacheBackend:
    """
    Mirrors cache entries to a JSON file so a restart can rehydrate.

    Entries whose value is not JSON-serializable are skipped.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    async def load(self) -> List[CacheEntry]:
        if not self.path.exists():
            return []

        try:
            data = await _read_json(self.path)
        except orjson.JSONDecodeError as e:
            logger.warning(f"Ignoring unreadable cache file {self.path}: {e}")
            return []

        entries = []
        for record in data or []:
            try:
                entries.append(
                    CacheEntry(
                        key=record["key"],
                        value=record["value"],
                        created_at=float(record["created_at"]),
                        domain=record.get("domain"),
                        ttl=float(record["ttl"]),
                    )
                )
            except (KeyError, TypeError, ValueError):
                logger.debug(f"Skipping malformed cache record: {record!r:.120}")
        return entries

    async def save(self, entries: Iterable[CacheEntry]) -> int:
        records = []
        skipped = 0
        for entry in entries:
            record = {
                "key": entry.key,
                "value": entry.value,
                "created_at": entry.created_at,
                "domain": entry.domain,
                "ttl": entry.ttl,
            }
            try:
                orjson.dumps(record)
            except TypeError:
                skipped += 1
                continue
            records.append(record)

        started = time.perf_counter()
        payload = orjson.dumps(records)
        await _atomic_write(self.path, payload)

        logger.debug(
            f"💾 Mirrored {len(records)} cache entries to {self.path.name} "
            f"({len(payload)/1024:.1f}KB, {skipped} skipped, {time.perf_counter() - started:.3f}s)"
        )
        return len(records)
