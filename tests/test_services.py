import pytest

from resilient_scraper.circuit_breaker import CircuitBreaker
from resilient_scraper.classifier import ErrorClassifier
from resilient_scraper.exceptions import ClassifiedError, ScrapeError
from resilient_scraper.http_client import FetchResult
from resilient_scraper.retry import RetryOrchestrator
from resilient_scraper.services import ResilienceServices

URL = "https://www.bestbuy.com/site/123"


@pytest.fixture
def services(sleeper, clock):
    classifier = ErrorClassifier()
    breaker = CircuitBreaker(clock=clock)
    orchestrator = RetryOrchestrator(
        classifier, breaker, jitter_range=None, sleep=sleeper, clock=clock
    )
    return ResilienceServices(
        proxy_file=None,
        cache_file=None,
        classifier=classifier,
        breaker=breaker,
        orchestrator=orchestrator,
    )


@pytest.mark.asyncio
async def test_cache_fast_path_skips_operation(services):
    calls = []

    async def operation(state):
        calls.append(state.retry_count)
        return {"price": 19.99}

    async with services:
        first = await services.fetch(URL, operation)
        second = await services.fetch(URL, operation)

    assert first == second == {"price": 19.99}
    assert calls == [0]
    assert services.cache.stats["hits"] == 1


@pytest.mark.asyncio
async def test_failed_fetch_is_not_cached(services):
    async def operation(state):
        raise ScrapeError("gone", status_code=404)

    async with services:
        with pytest.raises(ClassifiedError):
            await services.fetch(URL, operation)

    assert services.cache.keys() == []


@pytest.mark.asyncio
async def test_use_cache_false_always_calls(services):
    calls = []

    async def operation(state):
        calls.append(1)
        return "page"

    async with services:
        await services.fetch(URL, operation, use_cache=False)
        await services.fetch(URL, operation, use_cache=False)

    assert len(calls) == 2


@pytest.mark.asyncio
async def test_fetch_url_returns_body_text(services, monkeypatch):
    async def fake_fetch(url, state=None, headers=None):
        return FetchResult(url=url, status_code=200, text="<html>ok</html>")

    monkeypatch.setattr(services.fetcher, "fetch", fake_fetch)

    async with services:
        assert await services.fetch_url(URL) == "<html>ok</html>"
        assert services.cache.get(services.cache.create_key("product", URL)) == "<html>ok</html>"


def test_proxy_file_wires_a_pool(tmp_path):
    services = ResilienceServices(proxy_file=tmp_path / "proxies.json", cache_file=None)
    assert services.proxy_pool is not None
    assert services.orchestrator.proxy_pool is services.proxy_pool
