"""Energy analytics: time-bucketed reading aggregation with optional grouping and period comparison."""
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional

import pandas as pd

from anomaly_analytics import bucket_labels, merge_partials
from gateway import TelemetryGateway, iter_reading_batches
from schemas import (
    AggregationType, CompareWith, ComparisonSummary, ComparisonTrend, Device,
    DeviceFilter, EnergyAnalyticsRequest, EnergyComparison, EnergyGroupBy,
    EnergyMetadata, EnergyPoint, EnergyReport, Reading, ReadingFilter,
    SortDirection, TimeRange,
)

logger = logging.getLogger(__name__)

VALUE_DECIMALS = 3
PERCENT_DECIMALS = 2

_NO_GROUP = ""
_UNKNOWN_DEVICE = object()

_CELL_AGG = dict(
    count=("value", "size"),
    total=("value", "sum"),
    min_value=("value", "min"),
    max_value=("value", "max"),
    first_value=("value", "first"),
    last_value=("value", "last"),
    first_timestamp=("timestamp", "min"),
    last_timestamp=("timestamp", "max"),
)
# Batches arrive in ascending time order, so first/last carry across them
_CELL_MERGE = {
    "count": "sum",
    "total": "sum",
    "min_value": "min",
    "max_value": "max",
    "first_value": "first",
    "last_value": "last",
    "first_timestamp": "min",
    "last_timestamp": "max",
}

_GROUP_FIELDS = {
    EnergyGroupBy.DEVICE: "device_id",
    EnergyGroupBy.TYPE: "type",
    EnergyGroupBy.FLOOR: "floor",
    EnergyGroupBy.ROOM: "room",
    EnergyGroupBy.BUILDING: "building",
    EnergyGroupBy.DEPARTMENT: "department",
}

# Groupings that need the reading's device record
_DEVICE_ATTRIBUTES: Dict[EnergyGroupBy, Callable[[Device], Any]] = {
    EnergyGroupBy.FLOOR: lambda d: d.location.floor,
    EnergyGroupBy.ROOM: lambda d: d.location.room_name,
    EnergyGroupBy.BUILDING: lambda d: d.location.building_id,
    EnergyGroupBy.DEPARTMENT: lambda d: d.metadata.department,
}


class ComparisonWindow(NamedTuple):
    start: datetime
    end: datetime
    label: str


class DeviceAttributeLookup:
    """Resolves and caches one device attribute per device id, fetching only ids not seen yet."""

    def __init__(self, attribute: Callable[[Device], Any], fetch: Callable[[List[str]], Iterable[Device]]):
        self.attribute = attribute
        self.fetch = fetch
        self._known: Dict[str, Any] = {}

    @classmethod
    def from_gateway(cls, gateway: TelemetryGateway, group_by: EnergyGroupBy) -> "DeviceAttributeLookup":
        return cls(
            _DEVICE_ATTRIBUTES[group_by],
            lambda ids: gateway.find_devices(DeviceFilter(device_ids=ids, include_deleted=True)),
        )

    @classmethod
    def from_devices(cls, devices: Iterable[Device], group_by: EnergyGroupBy) -> "DeviceAttributeLookup":
        index = {d.id: d for d in devices}
        return cls(_DEVICE_ATTRIBUTES[group_by], lambda ids: [index[i] for i in ids if i in index])

    def resolve(self, device_ids: Iterable[str]) -> Dict[str, Any]:
        missing = sorted({i for i in device_ids if i not in self._known})
        if missing:
            found = {d.id: d for d in self.fetch(missing)}
            for device_id in missing:
                device = found.get(device_id)
                self._known[device_id] = _UNKNOWN_DEVICE if device is None else self.attribute(device)
        return self._known


def _bucket_value(row: pd.Series, aggregation: AggregationType) -> float:
    if aggregation == AggregationType.SUM:
        return row["total"]
    if aggregation == AggregationType.MIN:
        return row["min_value"]
    if aggregation == AggregationType.MAX:
        return row["max_value"]
    if aggregation == AggregationType.COUNT:
        return row["count"]
    if aggregation == AggregationType.FIRST:
        return row["first_value"]
    if aggregation == AggregationType.LAST:
        return row["last_value"]
    return row["total"] / row["count"]


def _group_value(group_by: EnergyGroupBy, key: Any) -> Any:
    if pd.isna(key):
        return None
    if group_by == EnergyGroupBy.FLOOR:
        return int(key)
    return str(key)


def _round(value: Any) -> float:
    return round(float(value), VALUE_DECIMALS)


class EnergyAccumulator:
    """
    Running (time bucket, group) aggregates over batches of readings.

    Batches must be fed in ascending timestamp order. Readings whose device
    cannot be found are left out of device-attribute groupings.
    """

    def __init__(self, request: EnergyAnalyticsRequest, lookup: Optional[DeviceAttributeLookup] = None):
        self.request = request
        self.lookup = lookup
        self._cells: Optional[pd.DataFrame] = None

    def _group_keys(self, readings: List[Reading]) -> List[Any]:
        group_by = self.request.group_by
        if group_by is None:
            return [_NO_GROUP] * len(readings)
        if group_by == EnergyGroupBy.DEVICE:
            return [r.metadata.device_id for r in readings]
        if group_by == EnergyGroupBy.TYPE:
            return [r.metadata.type.value for r in readings]
        attributes = self.lookup.resolve(r.metadata.device_id for r in readings)
        return [attributes[r.metadata.device_id] for r in readings]

    def add(self, readings: List[Reading]) -> None:
        rows = [
            {"group": group, "value": r.value, "timestamp": r.timestamp}
            for r, group in zip(readings, self._group_keys(readings))
            if group is not _UNKNOWN_DEVICE
        ]
        if not rows:
            return
        df = pd.DataFrame(rows, columns=["group", "value", "timestamp"])
        df["timestamp"] = pd.to_datetime(df["timestamp"], utc=True)
        df["time_bucket"] = bucket_labels(df["timestamp"], self.request.granularity)
        partial = df.groupby(["time_bucket", "group"], sort=False, dropna=False).agg(**_CELL_AGG)
        self._cells = merge_partials(self._cells, partial, _CELL_MERGE)

    def points(self) -> List[EnergyPoint]:
        """Aggregated cells ascending by time bucket; groups within a bucket keep first-appearance order."""
        if self._cells is None:
            return []
        table = self._cells.reset_index().sort_values("time_bucket", kind="stable")
        return [self._point(row) for _, row in table.iterrows()]

    def _point(self, row: pd.Series) -> EnergyPoint:
        fields = dict(
            time_bucket=row["time_bucket"],
            value=_round(_bucket_value(row, self.request.aggregation)),
            count=int(row["count"]),
            min_value=_round(row["min_value"]),
            max_value=_round(row["max_value"]),
            first_timestamp=row["first_timestamp"].to_pydatetime(),
            last_timestamp=row["last_timestamp"].to_pydatetime(),
        )
        group_by = self.request.group_by
        if group_by is not None:
            fields[_GROUP_FIELDS[group_by]] = _group_value(group_by, row["group"])
        return EnergyPoint(**fields)


def comparison_window(start: datetime, end: datetime, compare_with: CompareWith) -> ComparisonWindow:
    """
    Time range the current window is compared against.

    Args:
        start: Current window start
        end: Current window end
        compare_with: Comparison mode

    Returns:
        ComparisonWindow; the previous period has the same duration and ends
        1 ms before the current start, calendar months are clamped to the
        shorter month's last day
    """
    compare_with = CompareWith(compare_with)
    if compare_with == CompareWith.PREVIOUS_PERIOD:
        comparison_end = start - timedelta(milliseconds=1)
        return ComparisonWindow(comparison_end - (end - start), comparison_end, "Previous Period")
    if compare_with == CompareWith.SAME_PERIOD_LAST_WEEK:
        week = timedelta(days=7)
        return ComparisonWindow(start - week, end - week, "Same Period Last Week")
    month = pd.DateOffset(months=1)
    return ComparisonWindow(
        (pd.Timestamp(start) - month).to_pydatetime(),
        (pd.Timestamp(end) - month).to_pydatetime(),
        "Same Period Last Month",
    )


def compare_totals(current: List[EnergyPoint], comparison: List[EnergyPoint]) -> ComparisonSummary:
    """Compare the sums of the bucket values of two windows."""
    current_total = sum(p.value for p in current)
    comparison_total = sum(p.value for p in comparison)

    change = None
    if comparison_total != 0:
        change = (current_total - comparison_total) / comparison_total * 100

    if change is None:
        trend = ComparisonTrend.NO_DATA
    elif change > 0:
        trend = ComparisonTrend.INCREASE
    elif change < 0:
        trend = ComparisonTrend.DECREASE
    else:
        trend = ComparisonTrend.STABLE

    return ComparisonSummary(
        current_total=round(current_total, VALUE_DECIMALS),
        comparison_total=round(comparison_total, VALUE_DECIMALS),
        percentage_change=round(change, PERCENT_DECIMALS) if change is not None else None,
        trend=trend,
    )


def aggregate_energy(
    readings: Iterable[Reading],
    request: EnergyAnalyticsRequest,
    devices: Iterable[Device] = (),
) -> List[EnergyPoint]:
    """
    Aggregate readings already matched to the request's filters.

    Args:
        readings: Readings in any order
        request: Validated energy analytics request
        devices: Devices backing floor/room/building/department groupings

    Returns:
        Energy points ascending by time bucket
    """
    lookup = None
    if request.group_by in _DEVICE_ATTRIBUTES:
        lookup = DeviceAttributeLookup.from_devices(devices, request.group_by)
    accumulator = EnergyAccumulator(request, lookup)
    accumulator.add(sorted(readings, key=lambda r: r.timestamp))
    return accumulator.points()


def _reading_filter(request: EnergyAnalyticsRequest, start: Optional[datetime], end: Optional[datetime]) -> ReadingFilter:
    return ReadingFilter(
        device_id=request.device_id,
        type=request.type,
        start_time=start,
        end_time=end,
        is_valid=None if request.include_invalid else True,
    )


def _aggregate_window(
    gateway: TelemetryGateway,
    reading_filter: ReadingFilter,
    request: EnergyAnalyticsRequest,
    lookup: Optional[DeviceAttributeLookup],
    batch_size: Optional[int],
) -> List[EnergyPoint]:
    accumulator = EnergyAccumulator(request, lookup)
    for batch in iter_reading_batches(
        gateway, reading_filter, sort=("timestamp", SortDirection.ASC), batch_size=batch_size
    ):
        accumulator.add(batch)
    return accumulator.points()


def get_energy_report(
    gateway: TelemetryGateway,
    request: EnergyAnalyticsRequest,
    batch_size: Optional[int] = None,
) -> EnergyReport:
    """
    Time-bucketed aggregation of readings, streamed from the store in bounded batches.

    Invalid readings are excluded (and counted) unless include_invalid is set.
    A comparison window is aggregated only when compare_with, start and end
    are all given.
    """
    lookup = None
    if request.group_by in _DEVICE_ATTRIBUTES:
        lookup = DeviceAttributeLookup.from_gateway(gateway, request.group_by)

    current_filter = _reading_filter(request, request.start_time, request.end_time)
    results = _aggregate_window(gateway, current_filter, request, lookup, batch_size)

    excluded_invalid = 0
    if not request.include_invalid:
        excluded_invalid = gateway.count_readings(current_filter.model_copy(update={"is_valid": False}))

    comparison = None
    if request.compare_with is not None and request.start_time is not None and request.end_time is not None:
        window = comparison_window(request.start_time, request.end_time, request.compare_with)
        comparison_results = _aggregate_window(
            gateway, _reading_filter(request, window.start, window.end), request, lookup, batch_size
        )
        comparison = EnergyComparison(
            label=window.label,
            time_range=TimeRange(start=window.start, end=window.end),
            results=comparison_results,
            total_points=len(comparison_results),
            summary=compare_totals(results, comparison_results),
        )

    logger.debug(
        f"Energy report: {len(results)} points, granularity {request.granularity.value}, "
        f"aggregation {request.aggregation.value}, {excluded_invalid} invalid excluded"
    )

    return EnergyReport(
        results=results,
        comparison=comparison,
        metadata=EnergyMetadata(
            granularity=request.granularity,
            aggregation_type=request.aggregation,
            total_points=len(results),
            excluded_invalid=excluded_invalid,
            group_by=request.group_by,
            time_range=TimeRange(start=request.start_time, end=request.end_time),
            compare_with=request.compare_with,
        ),
    )
