"""Unit tests for the maintenance forecast tiers."""
from datetime import timedelta

from conftest import NOW, make_device
from health_analytics import forecast_maintenance, get_maintenance_forecast
from schemas import MaintenanceForecastRequest, SeverityThreshold


def _fleet():
    return [
        make_device("crit-battery", battery_level=10),
        make_device("crit-overdue", next_maintenance=NOW - timedelta(days=4), battery_level=80),
        make_device("crit-soon", next_maintenance=NOW + timedelta(days=2)),
        make_device("warn-battery", battery_level=25),
        make_device("warn-maint", next_maintenance=NOW + timedelta(days=5)),
        make_device("watch-warranty", warranty_expiry=NOW + timedelta(days=20)),
        make_device("healthy", battery_level=90, warranty_expiry=NOW + timedelta(days=200)),
    ]


def test_devices_land_in_one_tier_each() -> None:
    report = forecast_maintenance(_fleet(), days_ahead=7, now=NOW)

    assert [d.id for d in report.critical] == ["crit-battery", "crit-overdue", "crit-soon"]
    assert [d.id for d in report.warning] == ["warn-battery", "warn-maint"]
    assert [d.id for d in report.watch] == ["watch-warranty"]
    assert report.summary.total_at_risk == 6
    assert report.summary.maintenance_overdue == ["crit-overdue"]


def test_days_ahead_controls_warning_horizon() -> None:
    report = forecast_maintenance(_fleet(), days_ahead=4, now=NOW)

    assert "warn-maint" not in [d.id for d in report.warning]


def test_critical_threshold_hides_lower_tiers() -> None:
    report = forecast_maintenance(_fleet(), severity_threshold=SeverityThreshold.CRITICAL, now=NOW)

    assert report.warning == []
    assert report.watch == []
    assert report.summary.warning_count == 0
    assert report.summary.watch_count == 0
    assert report.summary.critical_count == 3


def test_warning_threshold_hides_watch_only() -> None:
    report = forecast_maintenance(_fleet(), severity_threshold=SeverityThreshold.WARNING, now=NOW)

    assert report.summary.warning_count == 2
    assert report.watch == []


def test_average_battery_ignores_devices_without_battery() -> None:
    report = forecast_maintenance(
        [make_device("a", battery_level=40), make_device("b", battery_level=60), make_device("c")],
        now=NOW,
    )

    assert report.summary.avg_battery_all == 50.0
    assert forecast_maintenance([make_device("c")], now=NOW).summary.avg_battery_all is None


def test_forecast_via_gateway_skips_deleted(gateway) -> None:
    gateway.add_device(make_device("live", battery_level=10, floor=2))
    gateway.add_device(make_device("gone", battery_level=10, floor=2, deleted_at=NOW))

    report = get_maintenance_forecast(gateway, MaintenanceForecastRequest(floor=2), now=NOW)

    assert [d.id for d in report.critical] == ["live"]
    assert report.filters_applied["floor"] == 2
    assert report.filters_applied["days_ahead"] == 7
