"""Tests for the Prometheus metrics collector."""

from agent_bus.metrics import PrometheusMetrics, notify_counter
from agent_bus.notify import NotifyResult


def test_counters_and_gauges():
    metrics = PrometheusMetrics()
    metrics.inc("agent_bus_cron_fired_total", 3)
    metrics.inc("agent_bus_not_a_metric")
    metrics.inc("agent_bus_cron_entries")
    metrics.set_gauge("agent_bus_cron_entries", 5)
    metrics.set_gauge("agent_bus_cron_fired_total", 99)

    assert metrics.get("agent_bus_cron_fired_total") == 3
    assert metrics.get("agent_bus_not_a_metric") == 0
    assert metrics.get("agent_bus_cron_entries") == 5


def test_one_counter_per_notify_result():
    metrics = PrometheusMetrics()
    metrics.record_notify(NotifyResult.DELIVERED)
    metrics.record_notify(NotifyResult.DELIVERED)
    metrics.record_notify(NotifyResult.HARNESS)

    assert notify_counter(NotifyResult.DELIVERED) == "agent_bus_notifications_delivered_total"
    assert metrics.get("agent_bus_notifications_delivered_total") == 2
    assert metrics.get("agent_bus_notifications_harness_total") == 1
    text = metrics.to_prometheus()
    for result in NotifyResult:
        assert f"# TYPE {notify_counter(result)} counter" in text


def test_prometheus_format():
    metrics = PrometheusMetrics()
    metrics.inc("agent_bus_compact_alerts_total", 2)
    text = metrics.to_prometheus()

    assert text.endswith("\n")
    assert "# TYPE agent_bus_start_time_seconds gauge" in text
    assert "# HELP agent_bus_compact_alerts_total Total compaction recommendations sent" in text
    assert "# TYPE agent_bus_compact_alerts_total counter" in text
    assert "agent_bus_compact_alerts_total 2" in text
    assert "# TYPE agent_bus_cron_entries gauge" in text


def test_log_summary():
    metrics = PrometheusMetrics()
    for _ in range(4):
        metrics.record_notify(NotifyResult.DELIVERED)
    metrics.record_notify(NotifyResult.FAILED)
    metrics.inc("agent_bus_cron_fired_total")
    summary = metrics.log_summary()

    assert summary.startswith("uptime=")
    assert "delivered=4" in summary
    assert "failed=1" in summary
    assert "suppressed=0" in summary
    assert "cron_fired=1" in summary
