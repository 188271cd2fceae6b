import threading

import pytest

from resilient_scraper.circuit_breaker import CircuitBreaker
from resilient_scraper.exceptions import CircuitOpenError
from resilient_scraper.models import CircuitState, ErrorKind


@pytest.fixture
def breaker(clock):
    return CircuitBreaker(failure_threshold=5, reset_timeout=60.0, clock=clock)


def _fail(breaker, domain, times):
    for _ in range(times):
        breaker.record_failure(domain)


def test_unknown_domain_is_allowed_without_creating_state(breaker):
    assert breaker.is_request_allowed("https://www.amazon.com/dp/1")
    assert breaker.get_all_states() == []


def test_opens_after_exactly_threshold_failures(breaker):
    _fail(breaker, "shop.com", 4)
    assert breaker.is_request_allowed("shop.com")

    breaker.record_failure("shop.com")
    assert breaker.get_state("shop.com") == CircuitState.OPEN
    assert not breaker.is_request_allowed("shop.com")


def test_url_and_bare_domain_share_a_circuit(breaker):
    _fail(breaker, "https://www.shop.com/p/1", 5)
    assert breaker.get_state("www.shop.com") == CircuitState.OPEN
    assert not breaker.is_request_allowed("https://WWW.SHOP.COM/other")


def test_half_open_admits_exactly_one_probe(breaker, clock):
    _fail(breaker, "shop.com", 5)
    clock.advance(59)
    assert not breaker.is_request_allowed("shop.com")

    clock.advance(1)
    assert breaker.is_request_allowed("shop.com")
    assert breaker.get_state("shop.com") == CircuitState.HALF_OPEN
    assert not breaker.is_request_allowed("shop.com")
    assert not breaker.is_request_allowed("shop.com")


def test_open_error_reports_actual_state(breaker, clock):
    _fail(breaker, "shop.com", 5)
    clock.advance(20)
    assert str(breaker.open_error("shop.com")).endswith("is OPEN, retry in 40s")

    clock.advance(40)
    assert breaker.is_request_allowed("shop.com")
    assert not breaker.is_request_allowed("shop.com")

    message = str(breaker.open_error("shop.com"))
    assert "HALF_OPEN" in message
    assert "retry in" not in message


def test_probe_success_closes_and_resets_counter(breaker, clock):
    _fail(breaker, "shop.com", 5)
    clock.advance(60)
    assert breaker.is_request_allowed("shop.com")

    breaker.record_success("shop.com")

    assert breaker.get_state("shop.com") == CircuitState.CLOSED
    assert breaker.get_failure_count("shop.com") == 0
    assert breaker.is_request_allowed("shop.com")


def test_probe_failure_reopens_with_fresh_timer(breaker, clock):
    _fail(breaker, "shop.com", 5)
    clock.advance(60)
    assert breaker.is_request_allowed("shop.com")

    breaker.record_failure("shop.com")
    assert breaker.get_state("shop.com") == CircuitState.OPEN

    clock.advance(30)
    assert not breaker.is_request_allowed("shop.com")
    clock.advance(30)
    assert breaker.is_request_allowed("shop.com")


def test_abandoned_probe_is_replaced_after_reset_timeout(breaker, clock):
    _fail(breaker, "shop.com", 5)
    clock.advance(60)
    assert breaker.is_request_allowed("shop.com")

    clock.advance(59)
    assert not breaker.is_request_allowed("shop.com")
    clock.advance(1)
    assert breaker.is_request_allowed("shop.com")


def test_success_in_closed_resets_consecutive_failures(breaker):
    _fail(breaker, "shop.com", 4)
    breaker.record_success("shop.com")
    _fail(breaker, "shop.com", 4)

    assert breaker.get_state("shop.com") == CircuitState.CLOSED
    assert breaker.get_failure_count("shop.com") == 4


def test_configure_domain_overrides_threshold(breaker):
    breaker.configure_domain("fragile.com", failure_threshold=2, reset_timeout=5)
    _fail(breaker, "fragile.com", 2)

    assert breaker.get_state("fragile.com") == CircuitState.OPEN
    assert breaker.remaining_open_time("fragile.com") == pytest.approx(5)


def test_reset_and_metrics(breaker):
    _fail(breaker, "shop.com", 5)
    breaker.is_request_allowed("shop.com")
    breaker.reset("shop.com")

    state = breaker.get_all_states()[0]
    assert state["state"] == "closed"
    assert state["metrics"]["failed_requests"] == 5
    assert state["metrics"]["rejected_requests"] == 1
    assert state["metrics"]["open_count"] == 1


def test_concurrent_callers_race_for_single_probe(clock):
    breaker = CircuitBreaker(failure_threshold=1, reset_timeout=10, clock=clock)
    breaker.record_failure("shop.com")
    clock.advance(10)

    barrier = threading.Barrier(16)
    admitted = []

    def contender():
        barrier.wait()
        admitted.append(breaker.is_request_allowed("shop.com"))

    threads = [threading.Thread(target=contender) for _ in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert admitted.count(True) == 1


@pytest.mark.asyncio
async def test_call_records_outcomes_and_rejects_when_open(clock):
    breaker = CircuitBreaker(failure_threshold=2, reset_timeout=30, clock=clock)
    calls = []

    async def flaky():
        calls.append(1)
        raise RuntimeError("boom")

    for _ in range(2):
        with pytest.raises(RuntimeError):
            await breaker.call("https://shop.com/x", flaky)

    with pytest.raises(CircuitOpenError) as exc_info:
        await breaker.call("https://shop.com/x", flaky)

    assert len(calls) == 2
    assert exc_info.value.kind == ErrorKind.CIRCUIT_OPEN
    assert exc_info.value.attempts == 0
    assert exc_info.value.policy.max_retries == 0
