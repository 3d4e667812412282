"""Pydantic schemas: device/reading records, typed analytics requests and reports."""
import enum
from datetime import datetime
from typing import Annotated, Any, Dict, List, Optional

from pydantic import AfterValidator, BaseModel, Field, field_validator, model_validator

from config import settings
from validators import ensure_utc, split_csv, validate_device_id

UtcDatetime = Annotated[datetime, AfterValidator(ensure_utc)]


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class DeviceStatus(str, enum.Enum):
    """Operational status of a device."""
    ACTIVE = "active"
    MAINTENANCE = "maintenance"
    OFFLINE = "offline"
    ERROR = "error"
    DECOMMISSIONED = "decommissioned"


class DeviceType(str, enum.Enum):
    """Kind of sensor device."""
    TEMPERATURE = "temperature"
    HUMIDITY = "humidity"
    OCCUPANCY = "occupancy"
    POWER = "power"
    CO2 = "co2"
    PRESSURE = "pressure"
    LIGHT = "light"
    MOTION = "motion"
    AIR_QUALITY = "air_quality"
    WATER_FLOW = "water_flow"
    GAS = "gas"
    VIBRATION = "vibration"


class ReadingType(str, enum.Enum):
    """Measurement type of a reading."""
    TEMPERATURE = "temperature"
    HUMIDITY = "humidity"
    OCCUPANCY = "occupancy"
    POWER = "power"
    CO2 = "co2"
    PRESSURE = "pressure"
    LIGHT = "light"
    MOTION = "motion"
    AIR_QUALITY = "air_quality"
    WATER_FLOW = "water_flow"
    GAS = "gas"
    VIBRATION = "vibration"
    VOLTAGE = "voltage"
    CURRENT = "current"
    ENERGY = "energy"


class ReadingSource(str, enum.Enum):
    """Where a reading came from."""
    SENSOR = "sensor"
    SIMULATION = "simulation"
    MANUAL = "manual"
    CALIBRATION = "calibration"


class Granularity(str, enum.Enum):
    """Calendar unit for time buckets."""
    SECOND = "second"
    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


class SortDirection(str, enum.Enum):
    ASC = "asc"
    DESC = "desc"


class AnomalySortField(str, enum.Enum):
    TIMESTAMP = "timestamp"
    ANOMALY_SCORE = "anomaly_score"
    VALUE = "value"


class AuditAction(str, enum.Enum):
    """Reconstructed audit event kinds."""
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class AuditSortField(str, enum.Enum):
    TIMESTAMP = "timestamp"
    ACTION = "action"
    DEVICE_ID = "device_id"
    USER = "user"


class Severity(str, enum.Enum):
    CRITICAL = "critical"
    WARNING = "warning"


class SeverityThreshold(str, enum.Enum):
    """Lowest maintenance forecast tier to include."""
    CRITICAL = "critical"
    WARNING = "warning"
    ALL = "all"


class PredictiveIssue(str, enum.Enum):
    BATTERY_CRITICAL = "battery_critical"
    MAINTENANCE_OVERDUE = "maintenance_overdue"
    MAINTENANCE_DUE = "maintenance_due"
    HIGH_ERROR_COUNT = "high_error_count"


class Diagnosis(str, enum.Enum):
    DEVICE_FAILURE = "device_failure"
    ENVIRONMENTAL = "environmental"
    NORMAL = "normal"


class CorrelationStatus(str, enum.Enum):
    OK = "ok"
    INSUFFICIENT_DATA = "insufficient_data"


class AggregationType(str, enum.Enum):
    """Value reported per energy bucket."""
    SUM = "sum"
    AVG = "avg"
    MIN = "min"
    MAX = "max"
    COUNT = "count"
    FIRST = "first"
    LAST = "last"


class EnergyGroupBy(str, enum.Enum):
    DEVICE = "device"
    TYPE = "type"
    FLOOR = "floor"
    ROOM = "room"
    BUILDING = "building"
    DEPARTMENT = "department"


class CompareWith(str, enum.Enum):
    PREVIOUS_PERIOD = "previous_period"
    SAME_PERIOD_LAST_WEEK = "same_period_last_week"
    SAME_PERIOD_LAST_MONTH = "same_period_last_month"


class ComparisonTrend(str, enum.Enum):
    INCREASE = "increase"
    DECREASE = "decrease"
    STABLE = "stable"
    NO_DATA = "no_data"


# ---------------------------------------------------------------------------
# Device records
# ---------------------------------------------------------------------------

class DeviceHealth(BaseModel):
    uptime_percentage: float = Field(100.0, ge=0, le=100)
    error_count: int = Field(0, ge=0)
    last_seen: Optional[UtcDatetime] = None
    battery_level: Optional[float] = Field(None, ge=0, le=100)
    signal_strength: Optional[float] = None
    last_error: Optional[str] = None


class DeviceLocation(BaseModel):
    building_id: str
    floor: int = Field(..., ge=0)
    room_name: str
    zone: Optional[str] = None


class DeviceMetadata(BaseModel):
    department: str
    next_maintenance: Optional[UtcDatetime] = None
    last_maintenance: Optional[UtcDatetime] = None
    warranty_expiry: Optional[UtcDatetime] = None
    tags: List[str] = Field(default_factory=list)


class DeviceAudit(BaseModel):
    created_at: UtcDatetime
    created_by: Optional[str] = None
    updated_at: Optional[UtcDatetime] = None
    updated_by: Optional[str] = None
    deleted_at: Optional[UtcDatetime] = None
    deleted_by: Optional[str] = None


class Device(BaseModel):
    """A monitored device as returned by the telemetry store."""
    id: str
    serial_number: str
    type: DeviceType
    status: DeviceStatus
    health: DeviceHealth = Field(default_factory=DeviceHealth)
    location: DeviceLocation
    metadata: DeviceMetadata
    audit: DeviceAudit

    @property
    def is_deleted(self) -> bool:
        """Soft-deleted devices carry a deletion timestamp."""
        return self.audit.deleted_at is not None


# ---------------------------------------------------------------------------
# Reading records
# ---------------------------------------------------------------------------

class ReadingMetadata(BaseModel):
    device_id: str
    type: ReadingType
    unit: str
    source: ReadingSource = ReadingSource.SENSOR


class ReadingQuality(BaseModel):
    is_valid: bool = True
    confidence_score: Optional[float] = Field(None, ge=0, le=1)
    is_anomaly: bool = False
    anomaly_score: Optional[float] = Field(None, ge=0, le=1)
    validation_flags: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _anomaly_needs_score(self):
        if self.is_anomaly and self.anomaly_score is None:
            raise ValueError("anomaly_score is required when is_anomaly is true")
        return self


class ReadingContext(BaseModel):
    battery_level: Optional[float] = Field(None, ge=0, le=100)
    signal_strength: Optional[float] = None
    ambient_temp: Optional[float] = None


class Reading(BaseModel):
    """A single telemetry reading (append-only)."""
    metadata: ReadingMetadata
    timestamp: UtcDatetime
    value: float
    quality: ReadingQuality = Field(default_factory=ReadingQuality)
    context: ReadingContext = Field(default_factory=ReadingContext)


# ---------------------------------------------------------------------------
# Gateway query filters
# ---------------------------------------------------------------------------

class DeviceFilter(BaseModel):
    """Device query accepted by the telemetry store gateway."""
    status: Optional[DeviceStatus] = None
    type: Optional[DeviceType] = None
    building_id: Optional[str] = None
    floor: Optional[int] = None
    department: Optional[str] = None
    device_ids: Optional[List[str]] = None
    include_deleted: bool = False


class ReadingFilter(BaseModel):
    """Reading query accepted by the telemetry store gateway. Unset means no constraint."""
    device_id: Optional[List[str]] = None
    type: Optional[List[ReadingType]] = None
    start_time: Optional[UtcDatetime] = None
    end_time: Optional[UtcDatetime] = None
    min_score: Optional[float] = None
    is_anomaly: Optional[bool] = None
    is_valid: Optional[bool] = None

    @field_validator("device_id", "type", mode="before")
    @classmethod
    def _normalize_multi(cls, value):
        return split_csv(value)


# ---------------------------------------------------------------------------
# Typed requests
# ---------------------------------------------------------------------------

def _check_date_range(start: Optional[datetime], end: Optional[datetime]) -> None:
    if start is not None and end is not None and start > end:
        raise ValueError("Start date must be before or equal to end date")


_ACTION_ALIASES = {
    "create": AuditAction.CREATED.value,
    "update": AuditAction.UPDATED.value,
    "delete": AuditAction.DELETED.value,
}


def _normalize_actions(value):
    actions = split_csv(value)
    if actions is None:
        return None
    return [_ACTION_ALIASES.get(a.lower(), a.lower()) for a in actions]


class HealthAnalyticsRequest(BaseModel):
    building_id: Optional[str] = None
    floor: Optional[int] = Field(None, ge=0)
    department: Optional[str] = None
    offline_threshold_minutes: int = Field(
        default_factory=lambda: settings.default_offline_threshold_minutes, ge=0
    )
    battery_warning_threshold: float = Field(
        default_factory=lambda: settings.default_battery_warning_threshold, ge=0, le=100
    )


class MaintenanceForecastRequest(BaseModel):
    days_ahead: int = Field(7, ge=1, le=365)
    severity_threshold: SeverityThreshold = SeverityThreshold.ALL
    building_id: Optional[str] = None
    floor: Optional[int] = Field(None, ge=0)


class AnomalyAnalyticsRequest(BaseModel):
    device_id: Optional[List[str]] = None
    type: Optional[List[ReadingType]] = None
    start_time: Optional[UtcDatetime] = None
    end_time: Optional[UtcDatetime] = None
    min_score: Optional[float] = Field(None, ge=0, le=1)
    bucket_granularity: Optional[Granularity] = None
    sort_by: AnomalySortField = AnomalySortField.TIMESTAMP
    sort_direction: SortDirection = SortDirection.DESC
    page: int = Field(1, ge=1)
    limit: int = Field(settings.default_page_size, ge=1, le=settings.max_analytics_page_size)

    @field_validator("device_id", "type", mode="before")
    @classmethod
    def _normalize_multi(cls, value):
        return split_csv(value)

    @model_validator(mode="after")
    def _check_range(self):
        _check_date_range(self.start_time, self.end_time)
        return self


class EnergyAnalyticsRequest(BaseModel):
    device_id: Optional[List[str]] = None
    type: Optional[List[ReadingType]] = None
    start_time: Optional[UtcDatetime] = None
    end_time: Optional[UtcDatetime] = None
    granularity: Granularity = Granularity.HOUR
    aggregation: AggregationType = AggregationType.AVG
    group_by: Optional[EnergyGroupBy] = None
    compare_with: Optional[CompareWith] = None
    include_invalid: bool = False

    @field_validator("device_id", "type", mode="before")
    @classmethod
    def _normalize_multi(cls, value):
        return split_csv(value)

    @model_validator(mode="after")
    def _check_range(self):
        _check_date_range(self.start_time, self.end_time)
        return self


class TemperatureCorrelationRequest(BaseModel):
    device_id: str
    hours: int = Field(24, ge=1, le=168)
    device_temp_threshold: float = Field(default_factory=lambda: settings.default_device_temp_threshold)
    ambient_temp_threshold: float = Field(default_factory=lambda: settings.default_ambient_temp_threshold)
    ambient_device_id: Optional[str] = None

    @field_validator("device_id", "ambient_device_id")
    @classmethod
    def _check_device_id(cls, value):
        if value is None:
            return value
        return validate_device_id(value)


class DeviceHistoryRequest(BaseModel):
    device_id: str
    action: Optional[List[AuditAction]] = None
    user: Optional[str] = Field(None, max_length=100)
    start_time: Optional[UtcDatetime] = None
    end_time: Optional[UtcDatetime] = None
    page: int = Field(1, ge=1)
    limit: int = Field(settings.default_page_size, ge=1, le=settings.max_page_size)

    @field_validator("device_id")
    @classmethod
    def _check_device_id(cls, value):
        return validate_device_id(value)

    @field_validator("action", mode="before")
    @classmethod
    def _normalize_action(cls, value):
        return _normalize_actions(value)

    @model_validator(mode="after")
    def _check_range(self):
        _check_date_range(self.start_time, self.end_time)
        return self


class AuditFeedRequest(BaseModel):
    device_id: Optional[List[str]] = None
    action: Optional[List[AuditAction]] = None
    user: Optional[str] = Field(None, max_length=100)
    start_time: Optional[UtcDatetime] = None
    end_time: Optional[UtcDatetime] = None
    include_deleted: bool = True
    sort_by: AuditSortField = AuditSortField.TIMESTAMP
    sort_direction: SortDirection = SortDirection.DESC
    page: int = Field(1, ge=1)
    limit: int = Field(settings.default_page_size, ge=1, le=settings.max_page_size)

    @field_validator("device_id", mode="before")
    @classmethod
    def _normalize_devices(cls, value):
        return split_csv(value)

    @field_validator("action", mode="before")
    @classmethod
    def _normalize_action(cls, value):
        return _normalize_actions(value)

    @model_validator(mode="after")
    def _check_range(self):
        _check_date_range(self.start_time, self.end_time)
        return self


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

class PaginationInfo(BaseModel):
    total: int
    page: int
    limit: int
    total_pages: int
    has_next: bool
    has_previous: bool


class DeviceSnapshot(BaseModel):
    """Compact device view listed under alerts and forecast tiers."""
    id: str
    serial_number: str
    building_id: str
    floor: int
    room_name: str
    status: DeviceStatus
    last_seen: Optional[datetime] = None
    battery_level: Optional[float] = None
    error_count: int = 0
    last_error: Optional[str] = None
    next_maintenance: Optional[datetime] = None
    warranty_expiry: Optional[datetime] = None


class UptimeStats(BaseModel):
    avg_uptime: float
    min_uptime: float
    max_uptime: float
    total_errors: int


class HealthSummary(BaseModel):
    total_devices: int
    active_devices: int
    health_score: int
    uptime_stats: UptimeStats


class AlertCategory(BaseModel):
    count: int
    devices: List[DeviceSnapshot]
    threshold: Optional[float] = None


class PredictiveMaintenanceItem(BaseModel):
    device_id: str
    serial_number: str
    room_name: str
    issue_type: PredictiveIssue
    severity: Severity
    days_until: Optional[int] = None


class PredictiveMaintenanceAlert(BaseModel):
    count: int
    devices: List[PredictiveMaintenanceItem]


class HealthAlerts(BaseModel):
    offline_devices: AlertCategory
    low_battery_devices: AlertCategory
    error_devices: AlertCategory
    maintenance_due: AlertCategory
    predictive_maintenance: PredictiveMaintenanceAlert


class HealthReport(BaseModel):
    summary: HealthSummary
    status_breakdown: Dict[str, int]
    alerts: HealthAlerts
    filters_applied: Dict[str, Any] = Field(default_factory=dict)


class ForecastSummary(BaseModel):
    total_at_risk: int
    critical_count: int
    warning_count: int
    watch_count: int
    avg_battery_all: Optional[float] = None
    maintenance_overdue: List[str] = Field(default_factory=list)


class MaintenanceForecastReport(BaseModel):
    critical: List[DeviceSnapshot]
    warning: List[DeviceSnapshot]
    watch: List[DeviceSnapshot]
    summary: ForecastSummary
    filters_applied: Dict[str, Any] = Field(default_factory=dict)


class DeviceAnomalyBreakdown(BaseModel):
    device_id: str
    count: int
    avg_score: float
    latest_timestamp: datetime


class TypeAnomalyBreakdown(BaseModel):
    type: ReadingType
    count: int
    avg_score: float


class TrendPoint(BaseModel):
    time_bucket: str
    count: int
    avg_score: float
    max_score: float


class AnomalySummary(BaseModel):
    total_anomalies: int
    by_device: List[DeviceAnomalyBreakdown]
    by_type: List[TypeAnomalyBreakdown]


class AnomalyReport(BaseModel):
    anomalies: List[Reading]
    pagination: PaginationInfo
    summary: AnomalySummary
    trends: Optional[List[TrendPoint]] = None
    filters_applied: Dict[str, Any] = Field(default_factory=dict)


class SeriesPoint(BaseModel):
    timestamp: datetime
    value: float


class ThresholdBreach(BaseModel):
    timestamp: datetime
    device_temp: float
    ambient_temp: float


class TimeRange(BaseModel):
    start: Optional[datetime] = None
    end: Optional[datetime] = None


class CurrentTemperatures(BaseModel):
    device_temp: float
    ambient_temp: Optional[float] = None
    timestamp: datetime


class TemperatureCorrelationResult(BaseModel):
    device_id: str
    status: CorrelationStatus
    device_temp_series: List[SeriesPoint]
    ambient_temp_series: List[SeriesPoint]
    correlation_score: Optional[float] = None
    diagnosis: Optional[Diagnosis] = None
    diagnosis_explanation: str
    threshold_breaches: List[ThresholdBreach]
    data_points: int
    ambient_data_points: int
    time_range: TimeRange
    current_readings: Optional[CurrentTemperatures] = None


class AuditEvent(BaseModel):
    device_id: str
    action: AuditAction
    timestamp: datetime
    user: str
    changes: Dict[str, Any] = Field(default_factory=dict)


class UserActivity(BaseModel):
    user: str
    count: int


class AuditSummary(BaseModel):
    total_entries: int
    by_action: Dict[str, int]
    top_users: List[UserActivity]


class AuditTrailReport(BaseModel):
    entries: List[AuditEvent]
    pagination: PaginationInfo
    summary: AuditSummary
    filters_applied: Dict[str, Any] = Field(default_factory=dict)


class EnergyPoint(BaseModel):
    """One (time bucket, group) cell of an energy report. Only the grouped field is set."""
    time_bucket: str
    value: float
    count: int
    min_value: float
    max_value: float
    first_timestamp: datetime
    last_timestamp: datetime
    device_id: Optional[str] = None
    type: Optional[str] = None
    floor: Optional[int] = None
    room: Optional[str] = None
    building: Optional[str] = None
    department: Optional[str] = None


class ComparisonSummary(BaseModel):
    current_total: float
    comparison_total: float
    percentage_change: Optional[float] = None
    trend: ComparisonTrend


class EnergyComparison(BaseModel):
    label: str
    time_range: TimeRange
    results: List[EnergyPoint]
    total_points: int
    summary: ComparisonSummary


class EnergyMetadata(BaseModel):
    granularity: Granularity
    aggregation_type: AggregationType
    total_points: int
    excluded_invalid: int
    group_by: Optional[EnergyGroupBy] = None
    time_range: TimeRange
    compare_with: Optional[CompareWith] = None


class EnergyReport(BaseModel):
    results: List[EnergyPoint]
    comparison: Optional[EnergyComparison] = None
    metadata: EnergyMetadata
