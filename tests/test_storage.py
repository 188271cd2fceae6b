from datetime import datetime, timezone

import orjson
import pytest

from resilient_scraper.models import CacheEntry, Proxy
from resilient_scraper.storage import (
    JsonCacheBackend,
    JsonProxyStore,
    format_timestamp,
    parse_timestamp,
    proxy_from_record,
    proxy_to_record,
)

EPOCH = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc).timestamp()


@pytest.mark.parametrize(
    "value",
    [
        EPOCH,
        int(EPOCH * 1000),
        "2024-03-01T12:00:00Z",
        "2024-03-01T12:00:00+00:00",
        "2024-03-01T12:00:00",
        str(EPOCH),
    ],
)
def test_parse_timestamp_formats(value):
    assert parse_timestamp(value) == pytest.approx(EPOCH)


def test_parse_timestamp_empty():
    assert parse_timestamp(None) is None
    assert parse_timestamp("") is None


def test_format_timestamp_round_trips():
    assert parse_timestamp(format_timestamp(EPOCH)) == pytest.approx(EPOCH)
    assert format_timestamp(None) is None


def test_proxy_record_accepts_camel_case_stats():
    proxy = proxy_from_record(
        {
            "id": "p1",
            "url": "http://p1:8080",
            "country": "BR",
            "isp": "Vivo",
            "stats": {"lastUsed": int(EPOCH * 1000), "banCount": 2, "successRate": 0.75},
        }
    )

    assert proxy.stats.last_used == pytest.approx(EPOCH)
    assert proxy.stats.ban_count == 2
    assert proxy.stats.success_rate == 0.75
    assert proxy.type == "http"
    assert proxy.extra == {"isp": "Vivo"}


def test_proxy_to_record_keeps_extra_fields():
    proxy = Proxy(id="p1", url="http://p1:8080", extra={"city": "Recife"})
    proxy.stats.last_banned = EPOCH

    record = proxy_to_record(proxy, disabled=True)

    assert record["city"] == "Recife"
    assert record["disabled"] is True
    assert record["stats"]["last_banned"].startswith("2024-03-01T12:00:00")


@pytest.mark.asyncio
async def test_proxy_store_round_trip(tmp_path):
    store = JsonProxyStore(tmp_path / "nested" / "proxies.json")
    records = [{"id": "a", "url": "http://a:1"}, {"id": "b", "url": "http://b:1"}]

    await store.save(records)

    assert await store.load() == records
    assert not (tmp_path / "nested" / "proxies.json.tmp").exists()


@pytest.mark.asyncio
async def test_proxy_store_skips_non_object_records(tmp_path):
    path = tmp_path / "proxies.json"
    path.write_bytes(orjson.dumps([{"id": "a", "url": "http://a:1"}, "junk", 3]))

    assert await JsonProxyStore(path).load() == [{"id": "a", "url": "http://a:1"}]


@pytest.mark.asyncio
async def test_cache_backend_skips_unserializable_values(tmp_path):
    backend = JsonCacheBackend(tmp_path / "cache.json")
    entries = [
        CacheEntry("product:a.com:1", {"title": "Mouse"}, EPOCH, "a.com", 60),
        CacheEntry("product:a.com:2", {1, 2}, EPOCH, "a.com", 60),
    ]

    assert await backend.save(entries) == 1

    loaded = await backend.load()
    assert [e.key for e in loaded] == ["product:a.com:1"]
    assert loaded[0].value == {"title": "Mouse"}
    assert loaded[0].ttl == 60


@pytest.mark.asyncio
async def test_cache_backend_ignores_corrupt_file(tmp_path):
    path = tmp_path / "cache.json"
    path.write_text("not json at all")

    assert await JsonCacheBackend(path).load() == []
