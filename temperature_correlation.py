"""Device vs. ambient temperature correlation and failure diagnosis."""
import bisect
import logging
from datetime import datetime, timedelta, timezone
from typing import List, NamedTuple, Optional, Sequence

import numpy as np

from config import settings
from error_handler import NotFoundError
from gateway import TelemetryGateway
from schemas import (
    CorrelationStatus, CurrentTemperatures, Diagnosis, Reading, ReadingFilter,
    ReadingType, SeriesPoint, SortDirection, TemperatureCorrelationRequest,
    TemperatureCorrelationResult, ThresholdBreach, TimeRange,
)
from validators import ensure_utc

logger = logging.getLogger(__name__)

MIN_ALIGNED_POINTS = 2


class AlignedPoint(NamedTuple):
    """A device temperature paired with the ambient temperature observed at (about) the same time."""
    timestamp: datetime
    device_temp: float
    ambient_temp: float


def pearson_correlation(x: Sequence[float], y: Sequence[float]) -> Optional[float]:
    """
    Pearson correlation coefficient of two equally long series.

    Returns:
        r in [-1, 1], or None when there are fewer than two pairs, the
        lengths differ, or either series has zero variance
    """
    if len(x) != len(y) or len(x) < 2:
        return None
    xs = np.asarray(x, dtype=float)
    ys = np.asarray(y, dtype=float)
    if np.ptp(xs) == 0 or np.ptp(ys) == 0:
        return None
    correlation = np.corrcoef(xs, ys)[0, 1]
    if np.isnan(correlation):
        return None
    return float(correlation)


def diagnose_temperature(
    device_temp: float,
    ambient_temp: float,
    device_threshold: float,
    ambient_threshold: float,
) -> Diagnosis:
    """
    Classify the latest device/ambient pair.

    A hot device in a room above its threshold is environmental, in a room
    below its threshold a device failure. Ambient exactly at its threshold
    is inconclusive and reads as normal.
    """
    if device_temp > device_threshold:
        if ambient_temp > ambient_threshold:
            return Diagnosis.ENVIRONMENTAL
        if ambient_temp < ambient_threshold:
            return Diagnosis.DEVICE_FAILURE
    return Diagnosis.NORMAL


def diagnosis_explanation(diagnosis: Optional[Diagnosis], device_temp: Optional[float] = None,
                          ambient_temp: Optional[float] = None) -> str:
    """Human-readable explanation of a diagnosis."""
    if diagnosis is None or device_temp is None or ambient_temp is None:
        return (
            "Insufficient data: fewer than 2 device readings with a matching ambient "
            "temperature in the requested window. No diagnosis possible."
        )
    if diagnosis == Diagnosis.DEVICE_FAILURE:
        return (
            f"Device temperature ({device_temp:.1f}°C) is elevated while ambient temperature "
            f"({ambient_temp:.1f}°C) is normal. This suggests an internal device failure. "
            f"Schedule immediate inspection."
        )
    if diagnosis == Diagnosis.ENVIRONMENTAL:
        return (
            f"Both device temperature ({device_temp:.1f}°C) and ambient temperature "
            f"({ambient_temp:.1f}°C) are elevated. This suggests an environmental issue "
            f"(e.g., room AC failure). Check building climate control."
        )
    return (
        f"Device temperature ({device_temp:.1f}°C) and ambient temperature "
        f"({ambient_temp:.1f}°C) are within normal ranges."
    )


def align_series(
    device_readings: Sequence[Reading],
    ambient_readings: Sequence[Reading] = (),
    tolerance_seconds: Optional[int] = None,
) -> List[AlignedPoint]:
    """
    Pair each device reading with an ambient temperature.

    The reading's own context.ambient_temp wins. Otherwise the ambient
    reading nearest in time is used if it lies within tolerance_seconds.
    Device readings with neither are left out.

    Args:
        device_readings: Device temperature readings, ascending by timestamp
        ambient_readings: Readings from a dedicated ambient sensor (any order)
        tolerance_seconds: Maximum time distance for a nearest-timestamp match

    Returns:
        Aligned points in device reading order
    """
    if tolerance_seconds is None:
        tolerance_seconds = settings.ambient_alignment_tolerance_seconds
    tolerance = timedelta(seconds=tolerance_seconds)

    ambient = sorted(ambient_readings, key=lambda r: r.timestamp)
    ambient_times = [r.timestamp for r in ambient]

    points: List[AlignedPoint] = []
    for reading in device_readings:
        if reading.context.ambient_temp is not None:
            points.append(AlignedPoint(reading.timestamp, reading.value, reading.context.ambient_temp))
            continue
        nearest = _nearest(ambient, ambient_times, reading.timestamp)
        if nearest is not None and abs(nearest.timestamp - reading.timestamp) <= tolerance:
            points.append(AlignedPoint(reading.timestamp, reading.value, nearest.value))
    return points


def _nearest(readings: List[Reading], times: List[datetime], target: datetime) -> Optional[Reading]:
    if not readings:
        return None
    idx = bisect.bisect_left(times, target)
    candidates = [i for i in (idx - 1, idx) if 0 <= i < len(readings)]
    best = min(candidates, key=lambda i: abs(times[i] - target))
    return readings[best]


def analyze_temperature_correlation(
    device_readings: Sequence[Reading],
    request: TemperatureCorrelationRequest,
    ambient_readings: Sequence[Reading] = (),
    now: Optional[datetime] = None,
) -> TemperatureCorrelationResult:
    """
    Correlate a device's temperature with ambient temperature and diagnose it.

    Insufficient data (fewer than two aligned points) is reported through
    the result status, never raised.
    """
    now = ensure_utc(now) if now is not None else datetime.now(timezone.utc)
    device_readings = sorted(device_readings, key=lambda r: r.timestamp)
    points = align_series(device_readings, ambient_readings)

    breaches = [
        ThresholdBreach(timestamp=p.timestamp, device_temp=p.device_temp, ambient_temp=p.ambient_temp)
        for p in points
        if p.device_temp > request.device_temp_threshold
    ]

    current = None
    if device_readings:
        latest = device_readings[-1]
        latest_ambient = points[-1].ambient_temp if points and points[-1].timestamp == latest.timestamp else None
        current = CurrentTemperatures(
            device_temp=latest.value,
            ambient_temp=latest_ambient,
            timestamp=latest.timestamp,
        )

    if len(points) < MIN_ALIGNED_POINTS:
        status = CorrelationStatus.INSUFFICIENT_DATA
        diagnosis = None
        correlation = None
        explanation = diagnosis_explanation(None)
    else:
        status = CorrelationStatus.OK
        correlation = pearson_correlation(
            [p.device_temp for p in points],
            [p.ambient_temp for p in points],
        )
        last = points[-1]
        diagnosis = diagnose_temperature(
            last.device_temp,
            last.ambient_temp,
            request.device_temp_threshold,
            request.ambient_temp_threshold,
        )
        explanation = diagnosis_explanation(diagnosis, last.device_temp, last.ambient_temp)

    logger.debug(
        f"Temperature correlation for {request.device_id}: {len(device_readings)} readings, "
        f"{len(points)} aligned, diagnosis {diagnosis}"
    )

    return TemperatureCorrelationResult(
        device_id=request.device_id,
        status=status,
        device_temp_series=[SeriesPoint(timestamp=r.timestamp, value=r.value) for r in device_readings],
        ambient_temp_series=[SeriesPoint(timestamp=p.timestamp, value=p.ambient_temp) for p in points],
        correlation_score=correlation,
        diagnosis=diagnosis,
        diagnosis_explanation=explanation,
        threshold_breaches=breaches,
        data_points=len(device_readings),
        ambient_data_points=len(points),
        time_range=TimeRange(start=now - timedelta(hours=request.hours), end=now),
        current_readings=current,
    )


def _temperature_readings(gateway: TelemetryGateway, device_id: str, start: datetime, end: datetime) -> List[Reading]:
    return gateway.find_readings(
        ReadingFilter(
            device_id=[device_id],
            type=[ReadingType.TEMPERATURE],
            start_time=start,
            end_time=end,
        ),
        sort=("timestamp", SortDirection.ASC),
    )


def get_temperature_correlation(
    gateway: TelemetryGateway,
    request: TemperatureCorrelationRequest,
    now: Optional[datetime] = None,
) -> TemperatureCorrelationResult:
    """
    Run the temperature diagnostic for one device over the last request.hours hours.

    Raises:
        NotFoundError: if the device (or the requested ambient device) does not exist
    """
    now = ensure_utc(now) if now is not None else datetime.now(timezone.utc)
    if gateway.get_device_by_id(request.device_id) is None:
        raise NotFoundError.device(request.device_id)

    start = now - timedelta(hours=request.hours)
    device_readings = _temperature_readings(gateway, request.device_id, start, now)

    ambient_readings: List[Reading] = []
    if request.ambient_device_id:
        if gateway.get_device_by_id(request.ambient_device_id) is None:
            raise NotFoundError.device(request.ambient_device_id)
        tolerance = timedelta(seconds=settings.ambient_alignment_tolerance_seconds)
        ambient_readings = _temperature_readings(
            gateway, request.ambient_device_id, start - tolerance, now + tolerance
        )

    return analyze_temperature_correlation(device_readings, request, ambient_readings, now=now)
