import socket

import httpx
import pytest

from resilient_scraper.classifier import ErrorClassifier
from resilient_scraper.exceptions import ClassifiedError, InvalidPatternError, ScrapeError
from resilient_scraper.metrics import Metrics
from resilient_scraper.models import ErrorContext, ErrorKind
from resilient_scraper.policies import get_policy

FILLER = "lorem ipsum dolor sit amet " * 10


@pytest.fixture
def classifier():
    return ErrorClassifier()


def test_tagged_kind_wins_over_status_code(classifier):
    error = ScrapeError("wall", kind=ErrorKind.CAPTCHA, status_code=404)
    assert classifier.classify(error).kind == ErrorKind.CAPTCHA


def test_tagged_kind_accepts_string_value(classifier):
    error = ScrapeError("wall", kind="proxy_banned")
    assert classifier.classify(error).kind == ErrorKind.PROXY_BANNED


@pytest.mark.parametrize(
    "status,kind",
    [
        (400, ErrorKind.HTTP_400),
        (401, ErrorKind.HTTP_401),
        (403, ErrorKind.HTTP_403),
        (404, ErrorKind.HTTP_404),
        (429, ErrorKind.HTTP_429),
        (500, ErrorKind.HTTP_500),
        (503, ErrorKind.HTTP_503),
    ],
)
def test_known_status_codes_map_to_dedicated_kinds(classifier, status, kind):
    classified = classifier.classify(ScrapeError(f"HTTP {status}", status_code=status))
    assert classified.kind == kind
    assert classified.policy == get_policy(kind)


def test_status_beats_captcha_vocabulary_in_body(classifier):
    error = ScrapeError("blocked", status_code=403, body="<title>Captcha</title>" + FILLER)
    assert classifier.classify(error).kind == ErrorKind.HTTP_403


def test_dict_context_with_camel_case_status(classifier):
    classified = classifier.classify(Exception("boom"), {"statusCode": 503})
    assert classified.kind == ErrorKind.HTTP_503


def test_explicit_context_overrides_error_attributes(classifier):
    error = ScrapeError("boom", status_code=500, url="https://a.com/x")
    classified = classifier.classify(error, ErrorContext(status_code=429))
    assert classified.kind == ErrorKind.HTTP_429
    assert classified.context.url == "https://a.com/x"


def test_httpx_status_error_uses_response(classifier):
    request = httpx.Request("GET", "https://www.walmart.com/ip/1")
    response = httpx.Response(429, request=request, text="slow down")
    error = httpx.HTTPStatusError("429", request=request, response=response)

    classified = classifier.classify(error)
    assert classified.kind == ErrorKind.HTTP_429
    assert classified.context.url == "https://www.walmart.com/ip/1"


@pytest.mark.parametrize(
    "error,kind",
    [
        (ConnectionResetError("peer reset"), ErrorKind.CONNECTION_RESET),
        (socket.gaierror("Name or service not known"), ErrorKind.DNS_LOOKUP),
        (TimeoutError(), ErrorKind.TIMEOUT),
        (ScrapeError("lookup failed", code="ENOTFOUND"), ErrorKind.DNS_LOOKUP),
        (ScrapeError("socket hang up", code="ECONNRESET"), ErrorKind.CONNECTION_RESET),
        (ScrapeError("odd socket", code="EHOSTDOWN"), ErrorKind.NETWORK),
        (httpx.ConnectTimeout("connect timed out"), ErrorKind.TIMEOUT),
        (httpx.ProxyError("407 from proxy"), ErrorKind.PROXY_ERROR),
        (httpx.RemoteProtocolError("server disconnected"), ErrorKind.CONNECTION_RESET),
        (Exception("Navigation timeout of 30000 ms exceeded"), ErrorKind.TIMEOUT),
    ],
)
def test_network_faults(classifier, error, kind):
    assert classifier.classify(error).kind == kind


def test_session_timeout_is_not_a_network_timeout(classifier):
    assert classifier.classify(Exception("Session timeout, log in")).kind == ErrorKind.SESSION_EXPIRED


def test_domain_patterns_only_apply_to_matching_host(classifier):
    on_amazon = classifier.classify(Exception("Robot Check"), {"url": "https://www.amazon.com/dp/1"})
    elsewhere = classifier.classify(Exception("Robot Check"), {"url": "https://shop.example.org/1"})

    assert on_amazon.kind == ErrorKind.CAPTCHA
    assert elsewhere.kind == ErrorKind.UNKNOWN


def test_domain_patterns_match_portuguese_vocabulary(classifier):
    error = ScrapeError("page", url="https://www.americanas.com.br/produto/1", body="Muitas requisições " + FILLER)
    assert classifier.classify(error).kind == ErrorKind.HTTP_429


@pytest.mark.parametrize(
    "message,kind",
    [
        ("Please solve the reCAPTCHA", ErrorKind.CAPTCHA),
        ("Too many requests from this client", ErrorKind.HTTP_429),
        ("Login required to view prices", ErrorKind.AUTH_REQUIRED),
        ("We noticed unusual traffic from your network", ErrorKind.FINGERPRINT_DETECTED),
        ("Your IP blocked for abuse", ErrorKind.PROXY_BANNED),
    ],
)
def test_generic_vocabulary(classifier, message, kind):
    assert classifier.classify(Exception(message)).kind == kind


def test_short_body_is_content_empty(classifier):
    error = ScrapeError("parsed nothing", body="<html></html>")
    assert classifier.classify(error).kind == ErrorKind.CONTENT_EMPTY


def test_blocking_title_is_bot_detection(classifier):
    body = "<html><title>Access Blocked</title><body>" + FILLER + "</body></html>"
    assert classifier.classify(ScrapeError("parsed nothing", body=body)).kind == ErrorKind.BOT_DETECTION


def test_unmatched_error_is_unknown(classifier):
    classified = classifier.classify(ValueError("something odd happened"))
    assert classified.kind == ErrorKind.UNKNOWN
    assert classified.policy == get_policy(ErrorKind.UNKNOWN)


def test_classified_error_chains_original(classifier):
    original = ScrapeError("not here", status_code=404)
    classified = classifier.classify(original)

    assert isinstance(classified, ClassifiedError)
    assert classified.original is original
    assert classified.__cause__ is original
    assert str(classified).startswith("[HTTP_404]")


def test_never_raises_on_malformed_input(classifier):
    class Hostile(Exception):
        @property
        def url(self):
            raise ValueError("no url for you")

    class Unprintable(Exception):
        def __str__(self):
            raise RuntimeError("broken __str__")

    assert classifier.classify(None).kind == ErrorKind.UNKNOWN
    assert classifier.classify(Hostile("x")).kind == ErrorKind.UNKNOWN

    unprintable = classifier.classify(Unprintable())
    assert unprintable.kind == ErrorKind.UNKNOWN
    assert "Unprintable" in str(unprintable)
    assert classifier.classify(Exception("x"), {"statusCode": "not-a-number"}).kind == ErrorKind.UNKNOWN


def test_classification_is_deterministic_and_memoized(classifier):
    error = ScrapeError("too many requests", url="https://www.bestbuy.com/site/1")

    first = classifier.classify(error)
    second = classifier.classify(error)

    assert first.kind == second.kind == ErrorKind.HTTP_429
    assert classifier.memo_size == 1
    assert classifier.get_error_stats()["total_errors"] == 2


def test_memo_evicts_oldest_fifth_on_overflow():
    classifier = ErrorClassifier(cache_size=10)
    for i in range(11):
        classifier.classify(Exception(f"distinct failure {i}"))

    assert classifier.memo_size == 9


def test_add_error_pattern_for_domain_clears_memo(classifier):
    context = {"url": "https://shop.example.com/item"}
    assert classifier.classify(Exception("zebra wall"), context).kind == ErrorKind.UNKNOWN

    classifier.add_error_pattern(r"zebra", "CAPTCHA", domain="example.com")

    assert classifier.classify(Exception("zebra wall"), context).kind == ErrorKind.CAPTCHA
    assert classifier.classify(Exception("zebra wall")).kind == ErrorKind.UNKNOWN


def test_add_error_pattern_rejects_bad_input(classifier):
    with pytest.raises(InvalidPatternError):
        classifier.add_error_pattern(r"(unclosed", ErrorKind.CAPTCHA)
    with pytest.raises(InvalidPatternError):
        classifier.add_error_pattern(r"fine", "NOT_A_KIND")


def test_counters_are_published_to_metrics():
    metrics = Metrics()
    classifier = ErrorClassifier(metrics=metrics)

    classifier.classify(ScrapeError("denied", status_code=403, url="https://www.amazon.com/dp/1"))
    classifier.classify(ScrapeError("denied", status_code=403, url="https://www.amazon.com/dp/1"))

    assert metrics.get_counter("errors_total") == 2
    assert metrics.get_counter("errors_by_kind", kind="HTTP_403") == 2
    assert metrics.get_counter("errors_by_domain", domain="www.amazon.com", kind="HTTP_403") == 2

    stats = classifier.get_error_stats()
    assert stats["errors_by_domain"]["www.amazon.com"]["HTTP_403"] == 2

    classifier.reset_error_stats()
    assert classifier.get_error_stats()["total_errors"] == 0
    assert classifier.memo_size == 0


def test_should_retry_follows_policy(classifier):
    classified = classifier.classify(ScrapeError("gone", status_code=404))
    assert classifier.should_retry(classified, 1)
    assert not classifier.should_retry(classified, 2)
