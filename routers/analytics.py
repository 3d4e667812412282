"""API endpoints for fleet health, maintenance forecast, anomaly, energy and temperature analytics."""
import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from anomaly_analytics import get_anomaly_report
from energy_analytics import get_energy_report
from error_handler import AnalyticsError
from gateway import TelemetryGateway
from health_analytics import get_health_report, get_maintenance_forecast
from metrics import metrics
from schemas import (
    AnomalyAnalyticsRequest, EnergyAnalyticsRequest, HealthAnalyticsRequest,
    MaintenanceForecastRequest, TemperatureCorrelationRequest,
)
from sql_gateway import get_gateway
from temperature_correlation import get_temperature_correlation
from validators import parse_request

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/analytics", tags=["analytics"])


def run_timed(endpoint: str, compute: Callable[[], BaseModel]) -> Dict[str, Any]:
    """
    Run an analytics computation, record its metrics and wrap the result.

    Args:
        endpoint: Endpoint label used for metrics
        compute: Callable producing the report

    Returns:
        Success envelope with the serialized report
    """
    start = time.perf_counter()
    try:
        report = compute()
    except AnalyticsError as e:
        duration_ms = (time.perf_counter() - start) * 1000
        metrics.record_error(endpoint, e.code)
        metrics.record_request(endpoint, e.status_code, duration_ms)
        raise
    except Exception as e:
        duration_ms = (time.perf_counter() - start) * 1000
        metrics.record_error(endpoint, type(e).__name__)
        metrics.record_request(endpoint, 500, duration_ms)
        logger.error(f"{endpoint} failed: {e}", exc_info=True)
        raise

    duration_ms = (time.perf_counter() - start) * 1000
    metrics.record_request(endpoint, 200, duration_ms)
    logger.debug(f"{endpoint} served in {duration_ms:.1f}ms")
    return {"success": True, "data": report.model_dump(mode="json")}


@router.get("/health")
def fleet_health(
    gateway: TelemetryGateway = Depends(get_gateway),
    building_id: Optional[str] = Query(None, description="Restrict to one building"),
    floor: Optional[int] = Query(None, description="Restrict to one floor"),
    department: Optional[str] = Query(None, description="Restrict to one department"),
    offline_threshold_minutes: Optional[int] = Query(None, description="Minutes since last_seen before a device is offline"),
    battery_warning_threshold: Optional[float] = Query(None, description="Battery level (%) considered low"),
):
    """Fleet health score, status breakdown and alert categories."""
    def compute():
        request = parse_request(
            HealthAnalyticsRequest,
            building_id=building_id,
            floor=floor,
            department=department,
            offline_threshold_minutes=offline_threshold_minutes,
            battery_warning_threshold=battery_warning_threshold,
        )
        return get_health_report(gateway, request)

    return run_timed("analytics.health", compute)


@router.get("/maintenance-forecast")
def maintenance_forecast(
    gateway: TelemetryGateway = Depends(get_gateway),
    days_ahead: Optional[int] = Query(None, description="Warning horizon in days (1-365)"),
    severity_threshold: Optional[str] = Query(None, description="critical, warning or all"),
    building_id: Optional[str] = Query(None),
    floor: Optional[int] = Query(None),
):
    """Band the fleet into critical, warning and watch maintenance tiers."""
    def compute():
        request = parse_request(
            MaintenanceForecastRequest,
            days_ahead=days_ahead,
            severity_threshold=severity_threshold,
            building_id=building_id,
            floor=floor,
        )
        return get_maintenance_forecast(gateway, request)

    return run_timed("analytics.maintenance_forecast", compute)


@router.get("/anomalies")
def anomalies(
    gateway: TelemetryGateway = Depends(get_gateway),
    device_id: Optional[List[str]] = Query(None, description="Device id(s), repeated or comma-separated"),
    type: Optional[List[str]] = Query(None, description="Reading type(s), repeated or comma-separated"),
    start_time: Optional[datetime] = Query(None, alias="startDate"),
    end_time: Optional[datetime] = Query(None, alias="endDate"),
    min_score: Optional[float] = Query(None, description="Minimum anomaly score (0-1)"),
    bucket_granularity: Optional[str] = Query(None, description="second, minute, hour, day, week or month"),
    sort_by: Optional[str] = Query(None, alias="sortBy"),
    sort_direction: Optional[str] = Query(None, alias="sortDirection"),
    page: Optional[int] = Query(None),
    limit: Optional[int] = Query(None),
):
    """Anomalous readings with per-device/per-type breakdowns and optional trends."""
    def compute():
        request = parse_request(
            AnomalyAnalyticsRequest,
            device_id=device_id,
            type=type,
            start_time=start_time,
            end_time=end_time,
            min_score=min_score,
            bucket_granularity=bucket_granularity,
            sort_by=sort_by,
            sort_direction=sort_direction,
            page=page,
            limit=limit,
        )
        return get_anomaly_report(gateway, request)

    return run_timed("analytics.anomalies", compute)


@router.get("/temperature-correlation")
def temperature_correlation(
    device_id: str = Query(..., description="Device to diagnose"),
    gateway: TelemetryGateway = Depends(get_gateway),
    hours: Optional[int] = Query(None, description="Lookback window in hours (1-168)"),
    device_temp_threshold: Optional[float] = Query(None),
    ambient_temp_threshold: Optional[float] = Query(None),
    ambient_device_id: Optional[str] = Query(None, description="Dedicated ambient sensor"),
):
    """Correlate a device's temperature with ambient temperature and diagnose it."""
    def compute():
        request = parse_request(
            TemperatureCorrelationRequest,
            device_id=device_id,
            hours=hours,
            device_temp_threshold=device_temp_threshold,
            ambient_temp_threshold=ambient_temp_threshold,
            ambient_device_id=ambient_device_id,
        )
        return get_temperature_correlation(gateway, request)

    return run_timed("analytics.temperature_correlation", compute)


@router.get("/energy")
def energy(
    gateway: TelemetryGateway = Depends(get_gateway),
    device_id: Optional[List[str]] = Query(None, description="Device id(s), repeated or comma-separated"),
    type: Optional[List[str]] = Query(None, description="Reading type(s), repeated or comma-separated"),
    start_time: Optional[datetime] = Query(None, alias="startDate"),
    end_time: Optional[datetime] = Query(None, alias="endDate"),
    granularity: Optional[str] = Query(None, description="second, minute, hour, day, week or month"),
    aggregation: Optional[str] = Query(None, description="sum, avg, min, max, count, first or last"),
    group_by: Optional[str] = Query(None, description="device, type, floor, room, building or department"),
    compare_with: Optional[str] = Query(
        None, description="previous_period, same_period_last_week or same_period_last_month"
    ),
    include_invalid: Optional[bool] = Query(None, description="Include readings flagged invalid"),
):
    """Time-bucketed reading aggregation with optional grouping and period comparison."""
    def compute():
        request = parse_request(
            EnergyAnalyticsRequest,
            device_id=device_id,
            type=type,
            start_time=start_time,
            end_time=end_time,
            granularity=granularity,
            aggregation=aggregation,
            group_by=group_by,
            compare_with=compare_with,
            include_invalid=include_invalid,
        )
        return get_energy_report(gateway, request)

    return run_timed("analytics.energy", compute)
