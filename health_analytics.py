"""Fleet health scoring, alert categories, predictive maintenance and the maintenance forecast."""
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, List, NamedTuple, Optional

from config import settings
from gateway import TelemetryGateway
from schemas import (
    AlertCategory, Device, DeviceFilter, DeviceSnapshot, DeviceStatus,
    ForecastSummary, HealthAlerts, HealthAnalyticsRequest, HealthReport,
    HealthSummary, MaintenanceForecastReport, MaintenanceForecastRequest,
    PredictiveIssue, PredictiveMaintenanceAlert, PredictiveMaintenanceItem,
    Severity, SeverityThreshold, UptimeStats,
)
from validators import ensure_utc

logger = logging.getLogger(__name__)

ONE_DAY_SECONDS = 24 * 60 * 60


def _utcnow(now: Optional[datetime]) -> datetime:
    return ensure_utc(now) if now is not None else datetime.now(timezone.utc)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _days_between(later: datetime, earlier: datetime) -> float:
    return (later - earlier).total_seconds() / ONE_DAY_SECONDS


def snapshot(device: Device) -> DeviceSnapshot:
    """Compact view of a device for alert and forecast listings."""
    return DeviceSnapshot(
        id=device.id,
        serial_number=device.serial_number,
        building_id=device.location.building_id,
        floor=device.location.floor,
        room_name=device.location.room_name,
        status=device.status,
        last_seen=device.health.last_seen,
        battery_level=device.health.battery_level,
        error_count=device.health.error_count,
        last_error=device.health.last_error,
        next_maintenance=device.metadata.next_maintenance,
        warranty_expiry=device.metadata.warranty_expiry,
    )


# ---------------------------------------------------------------------------
# Predictive maintenance rules
# ---------------------------------------------------------------------------

class PredictiveRule(NamedTuple):
    """One predictive-maintenance rule. Rules are evaluated in order; first match wins."""
    issue: PredictiveIssue
    matches: Callable[[Device, datetime], bool]
    days_until: Callable[[Device, datetime], Optional[int]]


def _no_days(device: Device, now: datetime) -> Optional[int]:
    return None


def _battery_critical(device: Device, now: datetime) -> bool:
    level = device.health.battery_level
    return level is not None and level < settings.battery_critical_threshold


def _maintenance_overdue(device: Device, now: datetime) -> bool:
    due = device.metadata.next_maintenance
    return due is not None and due < now


def _overdue_days(device: Device, now: datetime) -> Optional[int]:
    return math.floor(_days_between(device.metadata.next_maintenance, now))


def _maintenance_due(device: Device, now: datetime) -> bool:
    due = device.metadata.next_maintenance
    if due is None:
        return False
    return timedelta(0) <= due - now <= timedelta(days=settings.predictive_maintenance_days)


def _due_days(device: Device, now: datetime) -> Optional[int]:
    return math.ceil(_days_between(device.metadata.next_maintenance, now))


def _high_error_count(device: Device, now: datetime) -> bool:
    return device.health.error_count > settings.high_error_count_threshold


PREDICTIVE_RULES: List[PredictiveRule] = [
    PredictiveRule(PredictiveIssue.BATTERY_CRITICAL, _battery_critical, _no_days),
    PredictiveRule(PredictiveIssue.MAINTENANCE_OVERDUE, _maintenance_overdue, _overdue_days),
    PredictiveRule(PredictiveIssue.MAINTENANCE_DUE, _maintenance_due, _due_days),
    PredictiveRule(PredictiveIssue.HIGH_ERROR_COUNT, _high_error_count, _no_days),
]


def predict_maintenance(device: Device, now: datetime) -> Optional[PredictiveMaintenanceItem]:
    """
    Classify one device against the ordered predictive rules.

    Args:
        device: Device to classify
        now: Reference time (UTC)

    Returns:
        The item for the first matching rule, or None when no rule applies
    """
    for rule in PREDICTIVE_RULES:
        if rule.matches(device, now):
            return PredictiveMaintenanceItem(
                device_id=device.id,
                serial_number=device.serial_number,
                room_name=device.location.room_name,
                issue_type=rule.issue,
                severity=Severity.CRITICAL,
                days_until=rule.days_until(device, now),
            )
    return None


# ---------------------------------------------------------------------------
# Fleet health
# ---------------------------------------------------------------------------

def _alert(devices: List[Device], threshold: Optional[float] = None) -> AlertCategory:
    return AlertCategory(
        count=len(devices),
        devices=[snapshot(d) for d in devices[:settings.alert_sample_size]],
        threshold=threshold,
    )


def _uptime_stats(devices: List[Device]) -> UptimeStats:
    if not devices:
        return UptimeStats(avg_uptime=100, min_uptime=100, max_uptime=100, total_errors=0)
    uptimes = [d.health.uptime_percentage for d in devices]
    return UptimeStats(
        avg_uptime=sum(uptimes) / len(uptimes),
        min_uptime=min(uptimes),
        max_uptime=max(uptimes),
        total_errors=sum(d.health.error_count for d in devices),
    )


def classify_fleet_health(
    devices: Iterable[Device],
    offline_threshold_minutes: Optional[int] = None,
    battery_warning_threshold: Optional[float] = None,
    now: Optional[datetime] = None,
) -> HealthReport:
    """
    Compute the fleet health report for a set of (non-deleted) devices.

    Args:
        devices: Devices to classify
        offline_threshold_minutes: Minutes since last_seen before a device counts as offline
        battery_warning_threshold: Battery level (%) below which a device is low on battery
        now: Reference time; defaults to the current UTC time

    Returns:
        HealthReport with summary, status breakdown and alert categories
    """
    devices = list(devices)
    now = _utcnow(now)
    if offline_threshold_minutes is None:
        offline_threshold_minutes = settings.default_offline_threshold_minutes
    if battery_warning_threshold is None:
        battery_warning_threshold = settings.default_battery_warning_threshold

    total = len(devices)
    active = sum(1 for d in devices if d.status == DeviceStatus.ACTIVE)
    health_score = _round_half_up(active / total * 100) if total else 100

    status_breakdown = {}
    for device in devices:
        status_breakdown[device.status.value] = status_breakdown.get(device.status.value, 0) + 1

    offline_cutoff = timedelta(minutes=offline_threshold_minutes)
    maintenance_window = timedelta(days=settings.maintenance_due_alert_days)

    offline, low_battery, errored, maintenance_due = [], [], [], []
    predictive: List[PredictiveMaintenanceItem] = []
    for device in devices:
        last_seen = device.health.last_seen
        if last_seen is not None and now - last_seen > offline_cutoff:
            offline.append(device)

        battery = device.health.battery_level
        if battery is not None and battery < battery_warning_threshold:
            low_battery.append(device)

        if device.status == DeviceStatus.ERROR:
            errored.append(device)

        due = device.metadata.next_maintenance
        if due is not None and timedelta(0) <= due - now <= maintenance_window:
            maintenance_due.append(device)

        item = predict_maintenance(device, now)
        if item is not None:
            predictive.append(item)

    logger.debug(
        f"Fleet health: {total} devices, score {health_score}, "
        f"{len(offline)} offline, {len(predictive)} predictive alerts"
    )

    return HealthReport(
        summary=HealthSummary(
            total_devices=total,
            active_devices=active,
            health_score=health_score,
            uptime_stats=_uptime_stats(devices),
        ),
        status_breakdown=status_breakdown,
        alerts=HealthAlerts(
            offline_devices=_alert(offline, offline_threshold_minutes),
            low_battery_devices=_alert(low_battery, battery_warning_threshold),
            error_devices=_alert(errored),
            maintenance_due=_alert(maintenance_due, settings.maintenance_due_alert_days),
            predictive_maintenance=PredictiveMaintenanceAlert(
                count=len(predictive),
                devices=predictive[:settings.alert_sample_size],
            ),
        ),
    )


def get_health_report(
    gateway: TelemetryGateway,
    request: HealthAnalyticsRequest,
    now: Optional[datetime] = None,
) -> HealthReport:
    """Fetch the live fleet matching the request's location filters and classify it."""
    devices = gateway.find_devices(DeviceFilter(
        building_id=request.building_id,
        floor=request.floor,
        department=request.department,
        include_deleted=False,
    ))
    report = classify_fleet_health(
        devices,
        offline_threshold_minutes=request.offline_threshold_minutes,
        battery_warning_threshold=request.battery_warning_threshold,
        now=now,
    )
    report.filters_applied = {
        "building_id": request.building_id,
        "floor": request.floor,
        "department": request.department,
    }
    return report


# ---------------------------------------------------------------------------
# Maintenance forecast
# ---------------------------------------------------------------------------

def _forecast_tier(device: Device, now: datetime, days_ahead: int) -> Optional[Severity]:
    battery = device.health.battery_level
    due = device.metadata.next_maintenance

    if battery is not None and battery < settings.battery_critical_threshold:
        return Severity.CRITICAL
    if due is not None and due < now + timedelta(days=settings.predictive_maintenance_days):
        return Severity.CRITICAL

    if battery is not None and battery < settings.battery_warning_forecast_threshold:
        return Severity.WARNING
    if due is not None and due < now + timedelta(days=days_ahead):
        return Severity.WARNING
    return None


def _is_watch(device: Device, now: datetime) -> bool:
    expiry = device.metadata.warranty_expiry
    return expiry is not None and expiry < now + timedelta(days=settings.warranty_watch_days)


def forecast_maintenance(
    devices: Iterable[Device],
    days_ahead: int = 7,
    severity_threshold: SeverityThreshold = SeverityThreshold.ALL,
    now: Optional[datetime] = None,
) -> MaintenanceForecastReport:
    """
    Band the fleet into critical, warning and watch tiers.

    Each device lands in at most one tier, checked top-down. The summary's
    total_at_risk counts all tiers before the severity threshold is applied.
    """
    devices = list(devices)
    now = _utcnow(now)
    severity_threshold = SeverityThreshold(severity_threshold)

    critical: List[Device] = []
    warning: List[Device] = []
    watch: List[Device] = []
    for device in devices:
        tier = _forecast_tier(device, now, days_ahead)
        if tier == Severity.CRITICAL:
            critical.append(device)
        elif tier == Severity.WARNING:
            warning.append(device)
        elif _is_watch(device, now):
            watch.append(device)

    batteries = [d.health.battery_level for d in devices if d.health.battery_level is not None]
    overdue = [d.id for d in critical if _maintenance_overdue(d, now)]
    total_at_risk = len(critical) + len(warning) + len(watch)

    if severity_threshold == SeverityThreshold.CRITICAL:
        warning, watch = [], []
    elif severity_threshold == SeverityThreshold.WARNING:
        watch = []

    return MaintenanceForecastReport(
        critical=[snapshot(d) for d in critical],
        warning=[snapshot(d) for d in warning],
        watch=[snapshot(d) for d in watch],
        summary=ForecastSummary(
            total_at_risk=total_at_risk,
            critical_count=len(critical),
            warning_count=len(warning),
            watch_count=len(watch),
            avg_battery_all=sum(batteries) / len(batteries) if batteries else None,
            maintenance_overdue=overdue,
        ),
    )


def get_maintenance_forecast(
    gateway: TelemetryGateway,
    request: MaintenanceForecastRequest,
    now: Optional[datetime] = None,
) -> MaintenanceForecastReport:
    devices = gateway.find_devices(DeviceFilter(
        building_id=request.building_id,
        floor=request.floor,
        include_deleted=False,
    ))
    report = forecast_maintenance(
        devices,
        days_ahead=request.days_ahead,
        severity_threshold=request.severity_threshold,
        now=now,
    )
    report.filters_applied = {
        "days_ahead": request.days_ahead,
        "severity_threshold": request.severity_threshold.value,
        "building_id": request.building_id,
        "floor": request.floor,
    }
    return report
