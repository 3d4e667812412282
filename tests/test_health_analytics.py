"""Unit tests for fleet health scoring and predictive maintenance."""
from datetime import timedelta

from conftest import NOW, make_device
from health_analytics import PREDICTIVE_RULES, classify_fleet_health, get_health_report, predict_maintenance
from schemas import DeviceStatus, HealthAnalyticsRequest, PredictiveIssue, Severity


def test_score_and_breakdown_for_mixed_fleet() -> None:
    devices = [
        make_device("d1"),
        make_device("d2"),
        make_device("d3", status=DeviceStatus.OFFLINE),
    ]

    report = classify_fleet_health(devices, now=NOW)

    assert report.summary.total_devices == 3
    assert report.summary.active_devices == 2
    assert report.summary.health_score == 67
    assert report.status_breakdown == {"active": 2, "offline": 1}


def test_empty_fleet_is_fully_healthy() -> None:
    report = classify_fleet_health([], now=NOW)

    assert report.summary.total_devices == 0
    assert report.summary.health_score == 100
    stats = report.summary.uptime_stats
    assert (stats.avg_uptime, stats.min_uptime, stats.max_uptime, stats.total_errors) == (100, 100, 100, 0)
    assert report.status_breakdown == {}
    assert report.alerts.predictive_maintenance.count == 0


def test_health_score_rounds_half_up() -> None:
    devices = [make_device("d0")] + [make_device(f"d{i}", status=DeviceStatus.MAINTENANCE) for i in range(1, 8)]

    report = classify_fleet_health(devices, now=NOW)

    # 1/8 = 12.5%
    assert report.summary.health_score == 13


def test_uptime_stats_and_error_total() -> None:
    devices = [
        make_device("d1", uptime=90.0, error_count=2),
        make_device("d2", uptime=100.0, error_count=3),
    ]

    stats = classify_fleet_health(devices, now=NOW).summary.uptime_stats

    assert stats.avg_uptime == 95.0
    assert stats.min_uptime == 90.0
    assert stats.max_uptime == 100.0
    assert stats.total_errors == 5


def test_offline_alert_uses_threshold_and_skips_missing_last_seen() -> None:
    devices = [
        make_device("stale", last_seen=NOW - timedelta(minutes=10)),
        make_device("fresh", last_seen=NOW - timedelta(minutes=2)),
        make_device("never"),
    ]

    report = classify_fleet_health(devices, offline_threshold_minutes=5, now=NOW)

    offline = report.alerts.offline_devices
    assert offline.count == 1
    assert [d.id for d in offline.devices] == ["stale"]
    assert offline.threshold == 5


def test_low_battery_and_error_alerts() -> None:
    devices = [
        make_device("low", battery_level=18),
        make_device("ok", battery_level=60),
        make_device("broken", status=DeviceStatus.ERROR),
    ]

    alerts = classify_fleet_health(devices, battery_warning_threshold=20, now=NOW).alerts

    assert [d.id for d in alerts.low_battery_devices.devices] == ["low"]
    assert [d.id for d in alerts.error_devices.devices] == ["broken"]


def test_maintenance_due_window_is_seven_days() -> None:
    devices = [
        make_device("soon", next_maintenance=NOW + timedelta(days=5)),
        make_device("later", next_maintenance=NOW + timedelta(days=10)),
        make_device("past", next_maintenance=NOW - timedelta(days=1)),
    ]

    alerts = classify_fleet_health(devices, now=NOW).alerts

    assert [d.id for d in alerts.maintenance_due.devices] == ["soon"]
    # 5 days out is outside the 3-day predictive window
    predicted = {item.device_id: item.issue_type for item in alerts.predictive_maintenance.devices}
    assert "soon" not in predicted
    assert predicted["past"] == PredictiveIssue.MAINTENANCE_OVERDUE


def test_alert_device_lists_are_capped_but_counts_are_not() -> None:
    devices = [make_device(f"d{i:02d}", status=DeviceStatus.ERROR) for i in range(15)]

    alerts = classify_fleet_health(devices, now=NOW).alerts

    assert alerts.error_devices.count == 15
    assert len(alerts.error_devices.devices) == 10


def test_battery_critical_wins_over_overdue_maintenance() -> None:
    device = make_device("d1", battery_level=10, next_maintenance=NOW - timedelta(days=2))

    item = predict_maintenance(device, NOW)

    assert item.issue_type == PredictiveIssue.BATTERY_CRITICAL
    assert item.severity == Severity.CRITICAL
    assert item.days_until is None


def test_overdue_days_are_negative() -> None:
    two_days = predict_maintenance(make_device(next_maintenance=NOW - timedelta(days=2)), NOW)
    one_hour = predict_maintenance(make_device(next_maintenance=NOW - timedelta(hours=1)), NOW)

    assert two_days.days_until == -2
    assert one_hour.issue_type == PredictiveIssue.MAINTENANCE_OVERDUE
    assert one_hour.days_until == -1


def test_maintenance_due_rounds_days_up() -> None:
    item = predict_maintenance(make_device(next_maintenance=NOW + timedelta(days=1, hours=6)), NOW)

    assert item.issue_type == PredictiveIssue.MAINTENANCE_DUE
    assert item.days_until == 2


def test_high_error_count_is_last_rule() -> None:
    noisy = predict_maintenance(make_device(error_count=11), NOW)
    borderline = predict_maintenance(make_device(error_count=10), NOW)

    assert noisy.issue_type == PredictiveIssue.HIGH_ERROR_COUNT
    assert borderline is None
    assert [rule.issue for rule in PREDICTIVE_RULES][-1] == PredictiveIssue.HIGH_ERROR_COUNT


def test_at_most_one_predictive_item_per_device() -> None:
    devices = [
        make_device("a", battery_level=5, error_count=50, next_maintenance=NOW + timedelta(days=1)),
        make_device("b", error_count=20, next_maintenance=NOW + timedelta(days=2)),
    ]

    items = classify_fleet_health(devices, now=NOW).alerts.predictive_maintenance.devices

    assert [(i.device_id, i.issue_type) for i in items] == [
        ("a", PredictiveIssue.BATTERY_CRITICAL),
        ("b", PredictiveIssue.MAINTENANCE_DUE),
    ]


def test_report_excludes_deleted_and_applies_filters(gateway) -> None:
    gateway.add_device(make_device("live-1", building_id="bldg-a"))
    gateway.add_device(make_device("live-2", building_id="bldg-b"))
    gateway.add_device(make_device("gone", building_id="bldg-a", deleted_at=NOW - timedelta(days=1)))

    report = get_health_report(gateway, HealthAnalyticsRequest(building_id="bldg-a"), now=NOW)

    assert report.summary.total_devices == 1
    assert report.filters_applied == {"building_id": "bldg-a", "floor": None, "department": None}
