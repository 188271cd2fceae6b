import pytest

import resilient_scraper.http_client as http_client
from resilient_scraper.config import STEALTH_IMPERSONATE_TARGETS
from resilient_scraper.exceptions import ScrapeError
from resilient_scraper.http_client import HttpFetcher
from resilient_scraper.models import Proxy, RetryState


class FakeResponse:
    def __init__(self, status_code=200, text="<html>ok</html>"):
        self.status_code = status_code
        self.text = text
        self.headers = {"content-type": "text/html"}


class FakeSession:
    """Records how curl_cffi would have been called"""

    calls = []
    response = FakeResponse()

    def __init__(self, impersonate=None):
        self.impersonate = impersonate

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def get(self, url, headers=None, proxy=None, timeout=None):
        FakeSession.calls.append(
            {
                "url": url,
                "headers": headers,
                "proxy": proxy,
                "timeout": timeout,
                "impersonate": self.impersonate,
            }
        )
        return FakeSession.response


@pytest.fixture
def session(monkeypatch):
    FakeSession.calls = []
    FakeSession.response = FakeResponse()
    monkeypatch.setattr(http_client, "AsyncSession", FakeSession)
    return FakeSession


@pytest.mark.asyncio
async def test_fetch_returns_body(session):
    result = await HttpFetcher().fetch("https://shop.com/p/1")

    assert result.status_code == 200
    assert result.text == "<html>ok</html>"
    assert result.headers["content-type"] == "text/html"
    assert session.calls[0]["proxy"] is None
    assert session.calls[0]["impersonate"] == "chrome"


@pytest.mark.asyncio
async def test_error_status_raises_scrape_error(session):
    session.response = FakeResponse(403, "<title>Access Denied</title>")

    with pytest.raises(ScrapeError) as exc_info:
        await HttpFetcher().fetch("https://shop.com/p/1")

    assert exc_info.value.status_code == 403
    assert exc_info.value.url == "https://shop.com/p/1"
    assert "Access Denied" in exc_info.value.body


@pytest.mark.asyncio
async def test_state_controls_proxy_and_timeout(session):
    state = RetryState(proxy_url="http://p1:8080", timeout_multiplier=1.5)

    await HttpFetcher(timeout=20).operation("https://shop.com/p/1", {"x-test": "1"})(state)

    call = session.calls[0]
    assert call["proxy"] == "http://p1:8080"
    assert call["timeout"] == 30
    assert call["headers"] == {"x-test": "1"}


@pytest.mark.asyncio
async def test_enhanced_stealth_rotates_impersonation(session):
    state = RetryState(enhance_stealth=True)

    for _ in range(5):
        await HttpFetcher(impersonate="firefox").fetch("https://shop.com/p/1", state)

    assert all(c["impersonate"] in STEALTH_IMPERSONATE_TARGETS for c in session.calls)


@pytest.mark.asyncio
async def test_probe_uses_proxy_and_health_url(session):
    fetcher = HttpFetcher(health_check_url="https://example.com/ip", health_check_timeout=4)

    elapsed = await fetcher.probe(Proxy(id="a", url="http://a:1"))

    assert elapsed >= 0
    assert session.calls[0]["url"] == "https://example.com/ip"
    assert session.calls[0]["proxy"] == "http://a:1"
    assert session.calls[0]["timeout"] == 4


@pytest.mark.asyncio
async def test_probe_raises_on_error_status(session):
    session.response = FakeResponse(407, "")

    with pytest.raises(ScrapeError):
        await HttpFetcher().probe(Proxy(id="a", url="http://a:1"))
