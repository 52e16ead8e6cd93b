import pytest

from keyshop.observability.health import check_cache_health, check_database_health
from keyshop.observability.metrics import (
    get_counter_value,
    get_events,
    get_gauge_value,
    get_metrics_snapshot,
    increment_counter,
    observe_latency,
    record_event,
    reset_metrics,
    set_gauge,
)
from keyshop.services.cache_service import InMemoryCacheStore


def test_metrics_snapshot_accumulates_counts():
    reset_metrics()
    increment_counter("test_counter")
    increment_counter("test_counter", amount=2, labels={"route": "/example"})
    set_gauge("test_gauge", 5)
    observe_latency("test_latency", 100, labels={"route": "/example"})
    observe_latency("test_latency", 50, labels={"route": "/example"})

    snapshot = get_metrics_snapshot()
    counters = snapshot["counters"]["test_counter"]
    assert len(counters) == 2

    gauges = snapshot["gauges"]["test_gauge"]
    assert gauges[0]["value"] == 5

    hist = snapshot["histograms"]["test_latency"][0]["stats"]
    assert hist["count"] == 2
    assert hist["max"] == 100
    assert hist["avg"] == 75


def test_counter_lookup_by_labels_or_total():
    increment_counter("orders_units", labels={"code": "A"})
    increment_counter("orders_units", amount=3, labels={"code": "B"})

    assert get_counter_value("orders_units", {"code": "B"}) == 3
    assert get_counter_value("orders_units", {"code": "C"}) == 0
    assert get_counter_value("orders_units") == 4
    set_gauge("queue_depth", 7)
    assert get_gauge_value("queue_depth") == 7


def test_event_buffer_keeps_most_recent_entries():
    for index in range(205):
        record_event("tick", {"index": index})
    record_event("tock", {"index": -1})

    ticks = get_events("tick")
    assert len(get_events()) == 200
    assert ticks[-1]["payload"]["index"] == 204
    assert get_events("tock")[0]["payload"] == {"index": -1}


def test_database_health_reports_up(db_session):
    assert check_database_health() == {"status": "UP"}


@pytest.mark.parametrize("reachable, status", [(True, "UP"), (False, "DOWN")])
def test_cache_health_reflects_ping(reachable, status):
    cache = InMemoryCacheStore()
    cache.ping = lambda: reachable

    assert check_cache_health(cache) == {"status": status, "backend": "InMemoryCacheStore"}
    assert check_cache_health(None) == {"status": "UNKNOWN"}
