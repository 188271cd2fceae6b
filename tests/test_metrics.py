from resilient_scraper.metrics import Metrics


def test_counters_are_keyed_by_labels():
    metrics = Metrics()
    metrics.increment("errors_by_kind", kind="CAPTCHA")
    metrics.increment("errors_by_kind", kind="CAPTCHA")
    metrics.increment("errors_by_kind", 3, kind="HTTP_429")

    assert metrics.get_counter("errors_by_kind", kind="CAPTCHA") == 2
    assert metrics.get_counter("errors_by_kind", kind="HTTP_429") == 3
    assert metrics.get_counter("errors_by_kind", kind="TIMEOUT") == 0


def test_label_order_does_not_matter():
    metrics = Metrics()
    metrics.increment("errors_by_domain", domain="shop.com", kind="CAPTCHA")
    assert metrics.get_counter("errors_by_domain", kind="CAPTCHA", domain="shop.com") == 1


def test_snapshot_and_reset():
    metrics = Metrics()
    metrics.set_gauge("proxy_pool_size", 4, set="active")
    metrics.set_gauge("proxy_pool_size", 2, set="active")
    metrics.increment("errors_total")

    snap = metrics.snapshot()
    assert snap["gauges"]["proxy_pool_size"] == [{"labels": {"set": "active"}, "value": 2}]
    assert snap["counters"]["errors_total"] == [{"labels": {}, "value": 1}]

    metrics.print_stats()
    metrics.reset()
    assert metrics.snapshot() == {"counters": {}, "gauges": {}}
