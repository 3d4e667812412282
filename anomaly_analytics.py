"""Anomaly analytics: filtering, per-device/per-type breakdowns, sorting, pagination and time-bucketed trends."""
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd

from gateway import TelemetryGateway, iter_reading_batches
from pagination import PageWindow, calculate_pagination
from schemas import (
    AnomalyAnalyticsRequest, AnomalyReport, AnomalySortField, AnomalySummary,
    DeviceAnomalyBreakdown, Granularity, Reading, ReadingFilter, SortDirection,
    TrendPoint, TypeAnomalyBreakdown,
)
from validators import ensure_utc

logger = logging.getLogger(__name__)

SCORE_DECIMALS = 3

_BREAKDOWN_COLUMNS = ["device_id", "type", "score", "timestamp"]

# Per-batch aggregates, and how partial aggregates of consecutive batches combine
_DEVICE_AGG = dict(
    count=("score", "size"),
    score_sum=("score", "sum"),
    score_n=("score", "count"),
    latest_timestamp=("timestamp", "max"),
)
_DEVICE_MERGE = {"count": "sum", "score_sum": "sum", "score_n": "sum", "latest_timestamp": "max"}

_TYPE_AGG = dict(count=("score", "size"), score_sum=("score", "sum"), score_n=("score", "count"))
_TYPE_MERGE = {"count": "sum", "score_sum": "sum", "score_n": "sum"}

_TREND_AGG = dict(
    count=("score", "size"),
    score_sum=("score", "sum"),
    score_n=("score", "count"),
    max_score=("score", "max"),
)
_TREND_MERGE = {"count": "sum", "score_sum": "sum", "score_n": "sum", "max_score": "max"}


def bucket_label(timestamp: datetime, granularity: Granularity) -> str:
    """
    Label the calendar bucket a timestamp falls into, computed in UTC.

    Args:
        timestamp: Reading timestamp
        granularity: Bucket unit

    Returns:
        Label that sorts lexically in time order, e.g. "2024-01-15T10:00:00"
        for hour or "2024-W03" for ISO week
    """
    ts = ensure_utc(timestamp)
    granularity = Granularity(granularity)
    if granularity == Granularity.SECOND:
        return ts.strftime("%Y-%m-%dT%H:%M:%S")
    if granularity == Granularity.MINUTE:
        return ts.strftime("%Y-%m-%dT%H:%M:00")
    if granularity == Granularity.HOUR:
        return ts.strftime("%Y-%m-%dT%H:00:00")
    if granularity == Granularity.DAY:
        return ts.strftime("%Y-%m-%d")
    if granularity == Granularity.WEEK:
        iso_year, iso_week, _ = ts.isocalendar()
        return f"{iso_year}-W{iso_week:02d}"
    return ts.strftime("%Y-%m")


def bucket_labels(timestamps: pd.Series, granularity: Granularity) -> pd.Series:
    """Vector form of bucket_label over a tz-aware timestamp column."""
    return timestamps.map(lambda ts: bucket_label(ts.to_pydatetime(), granularity))


def _is_candidate(reading: Reading, request: AnomalyAnalyticsRequest) -> bool:
    quality = reading.quality
    if not quality.is_anomaly:
        return False
    if request.min_score is not None and (quality.anomaly_score is None or quality.anomaly_score < request.min_score):
        return False
    if request.device_id and reading.metadata.device_id not in request.device_id:
        return False
    if request.type and reading.metadata.type not in request.type:
        return False
    if request.start_time is not None and reading.timestamp < request.start_time:
        return False
    if request.end_time is not None and reading.timestamp > request.end_time:
        return False
    return True


def _sort_key(field: AnomalySortField):
    if field == AnomalySortField.ANOMALY_SCORE:
        return lambda r: r.quality.anomaly_score if r.quality.anomaly_score is not None else 0.0
    if field == AnomalySortField.VALUE:
        return lambda r: r.value
    return lambda r: r.timestamp


def _to_frame(readings: List[Reading]) -> pd.DataFrame:
    df = pd.DataFrame(
        [
            {
                "device_id": r.metadata.device_id,
                "type": r.metadata.type.value,
                "score": r.quality.anomaly_score,
                "timestamp": r.timestamp,
            }
            for r in readings
        ],
        columns=_BREAKDOWN_COLUMNS,
    )
    df["timestamp"] = pd.to_datetime(df["timestamp"], utc=True)
    return df


def merge_partials(running: Optional[pd.DataFrame], partial: pd.DataFrame, how: Dict[str, str]) -> pd.DataFrame:
    """Fold one batch's grouped aggregates into the running ones, keeping first-appearance group order."""
    if running is None:
        return partial
    levels = 0 if partial.index.nlevels == 1 else list(range(partial.index.nlevels))
    return pd.concat([running, partial]).groupby(level=levels, sort=False, dropna=False).agg(how)


def _by_count(grouped: pd.DataFrame) -> pd.DataFrame:
    # groupby(sort=False) keeps first-appearance order; the stable sort preserves it among ties
    return grouped.sort_values("count", ascending=False, kind="stable")


def _mean(row: pd.Series) -> float:
    if not row["score_n"]:
        return 0.0
    return round(float(row["score_sum"]) / int(row["score_n"]), SCORE_DECIMALS)


class AnomalyAccumulator:
    """
    Running per-device, per-type and per-bucket aggregates over batches of anomalies.

    Memory is bounded by the number of distinct devices, types and buckets,
    not by the number of readings fed in.
    """

    def __init__(self, granularity: Optional[Granularity] = None):
        self.granularity = granularity
        self.total = 0
        self._by_device: Optional[pd.DataFrame] = None
        self._by_type: Optional[pd.DataFrame] = None
        self._trends: Optional[pd.DataFrame] = None

    def add(self, readings: List[Reading]) -> None:
        """Fold a batch of anomalous readings into the running aggregates."""
        df = _to_frame(readings)
        if df.empty:
            return
        self.total += len(df)
        self._by_device = merge_partials(
            self._by_device, df.groupby("device_id", sort=False).agg(**_DEVICE_AGG), _DEVICE_MERGE
        )
        self._by_type = merge_partials(
            self._by_type, df.groupby("type", sort=False).agg(**_TYPE_AGG), _TYPE_MERGE
        )
        if self.granularity is not None:
            bucketed = df.assign(time_bucket=bucket_labels(df["timestamp"], self.granularity))
            self._trends = merge_partials(
                self._trends, bucketed.groupby("time_bucket", sort=False).agg(**_TREND_AGG), _TREND_MERGE
            )

    def by_device(self) -> List[DeviceAnomalyBreakdown]:
        if self._by_device is None:
            return []
        return [
            DeviceAnomalyBreakdown(
                device_id=device_id,
                count=int(row["count"]),
                avg_score=_mean(row),
                latest_timestamp=row["latest_timestamp"].to_pydatetime(),
            )
            for device_id, row in _by_count(self._by_device).iterrows()
        ]

    def by_type(self) -> List[TypeAnomalyBreakdown]:
        if self._by_type is None:
            return []
        return [
            TypeAnomalyBreakdown(type=reading_type, count=int(row["count"]), avg_score=_mean(row))
            for reading_type, row in _by_count(self._by_type).iterrows()
        ]

    def trends(self) -> Optional[List[TrendPoint]]:
        """Calendar buckets ascending by label; empty buckets are omitted. None when not bucketing."""
        if self.granularity is None:
            return None
        if self._trends is None:
            return []
        return [
            TrendPoint(
                time_bucket=label,
                count=int(row["count"]),
                avg_score=_mean(row),
                max_score=round(float(row["max_score"]), SCORE_DECIMALS),
            )
            for label, row in self._trends.sort_index().iterrows()
        ]


def _filters_applied(request: AnomalyAnalyticsRequest) -> Dict[str, Any]:
    return {
        "device_id": request.device_id,
        "type": [t.value for t in request.type] if request.type else None,
        "min_score": request.min_score,
        "time_range": {"start": request.start_time, "end": request.end_time},
        "bucket_granularity": request.bucket_granularity.value if request.bucket_granularity else None,
    }


def _build_report(
    accumulator: AnomalyAccumulator,
    anomalies: List[Reading],
    request: AnomalyAnalyticsRequest,
) -> AnomalyReport:
    logger.debug(
        f"Aggregated {accumulator.total} anomalies "
        f"(page {request.page}, limit {request.limit}, granularity {request.bucket_granularity})"
    )
    return AnomalyReport(
        anomalies=anomalies,
        pagination=calculate_pagination(accumulator.total, request.page, request.limit),
        summary=AnomalySummary(
            total_anomalies=accumulator.total,
            by_device=accumulator.by_device(),
            by_type=accumulator.by_type(),
        ),
        trends=accumulator.trends(),
        filters_applied=_filters_applied(request),
    )


def aggregate_anomalies(readings: Iterable[Reading], request: AnomalyAnalyticsRequest) -> AnomalyReport:
    """
    Build the anomaly report from a set of readings already in memory.

    Only readings flagged as anomalies (and meeting min_score and the other
    request filters) are considered. Breakdowns and trends cover every
    candidate; only the anomalies list is paginated.

    Args:
        readings: Readings to aggregate
        request: Validated anomaly analytics request

    Returns:
        AnomalyReport with the requested page, summary and optional trends
    """
    candidates = [r for r in readings if _is_candidate(r, request)]

    accumulator = AnomalyAccumulator(request.bucket_granularity)
    accumulator.add(candidates)

    ordered = sorted(
        candidates,
        key=_sort_key(request.sort_by),
        reverse=request.sort_direction == SortDirection.DESC,
    )
    window = PageWindow(page=request.page, limit=request.limit)
    return _build_report(accumulator, window.slice(ordered), request)


def get_anomaly_report(
    gateway: TelemetryGateway,
    request: AnomalyAnalyticsRequest,
    batch_size: Optional[int] = None,
) -> AnomalyReport:
    """
    Build the anomaly report straight from the store.

    Breakdowns and trends are folded from bounded batches of matching
    anomalies; the anomalies page itself is sorted and sliced by the store.
    """
    reading_filter = ReadingFilter(
        device_id=request.device_id,
        type=request.type,
        start_time=request.start_time,
        end_time=request.end_time,
        min_score=request.min_score,
        is_anomaly=True,
    )

    accumulator = AnomalyAccumulator(request.bucket_granularity)
    for batch in iter_reading_batches(gateway, reading_filter, batch_size=batch_size):
        accumulator.add(batch)

    anomalies: List[Reading] = []
    if accumulator.total:
        anomalies = gateway.find_readings(
            reading_filter,
            sort=(request.sort_by.value, request.sort_direction),
            page=request.page,
            limit=request.limit,
        )
    return _build_report(accumulator, anomalies, request)
