"""Shared fixtures and record factories for the analytics tests."""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timedelta, timezone  # noqa: E402
from typing import Iterable, List, Optional  # noqa: E402

import pytest  # noqa: E402

from gateway import TelemetryGateway  # noqa: E402
from schemas import (  # noqa: E402
    Device, DeviceAudit, DeviceFilter, DeviceHealth, DeviceLocation,
    DeviceMetadata, DeviceStatus, DeviceType, Reading, ReadingContext,
    ReadingFilter, ReadingMetadata, ReadingQuality, ReadingType, SortDirection,
)

NOW = datetime(2024, 6, 15, 12, 0, 0, tzinfo=timezone.utc)


def _paginate(items: List, page: Optional[int], limit: Optional[int]) -> List:
    if limit is None:
        return items
    start = ((page or 1) - 1) * limit
    return items[start:start + limit]


def _reading_sort_value(reading: Reading, field: str):
    if field == "anomaly_score":
        score = reading.quality.anomaly_score
        return score if score is not None else 0.0
    if field == "value":
        return reading.value
    return reading.timestamp


class InMemoryTelemetryGateway(TelemetryGateway):
    """Gateway over in-memory lists, in insertion order."""

    def __init__(self, devices: Iterable[Device] = (), readings: Iterable[Reading] = ()):
        self._devices: List[Device] = list(devices)
        self._readings: List[Reading] = list(readings)

    def add_device(self, device: Device) -> None:
        self._devices.append(device)

    def add_readings(self, readings: Iterable[Reading]) -> None:
        self._readings.extend(readings)

    def find_devices(self, filter, page=None, limit=None):
        matches = [d for d in self._devices if self._device_matches(d, filter)]
        matches.sort(key=lambda d: d.id)
        return _paginate(matches, page, limit)

    def find_readings(self, filter, sort=None, page=None, limit=None):
        matches = [r for r in self._readings if self._reading_matches(r, filter)]
        if sort is not None:
            field, direction = sort
            matches.sort(
                key=lambda r: _reading_sort_value(r, field),
                reverse=SortDirection(direction) == SortDirection.DESC,
            )
        return _paginate(matches, page, limit)

    def count_readings(self, filter):
        return sum(1 for r in self._readings if self._reading_matches(r, filter))

    def get_device_by_id(self, device_id):
        for device in self._devices:
            if device.id == device_id:
                return device
        return None

    @staticmethod
    def _device_matches(device: Device, f: DeviceFilter) -> bool:
        if not f.include_deleted and device.is_deleted:
            return False
        if f.status is not None and device.status != f.status:
            return False
        if f.type is not None and device.type != f.type:
            return False
        if f.building_id is not None and device.location.building_id != f.building_id:
            return False
        if f.floor is not None and device.location.floor != f.floor:
            return False
        if f.department is not None and device.metadata.department != f.department:
            return False
        if f.device_ids is not None and device.id not in f.device_ids:
            return False
        return True

    @staticmethod
    def _reading_matches(reading: Reading, f: ReadingFilter) -> bool:
        if f.device_id and reading.metadata.device_id not in f.device_id:
            return False
        if f.type and reading.metadata.type not in f.type:
            return False
        if f.start_time is not None and reading.timestamp < f.start_time:
            return False
        if f.end_time is not None and reading.timestamp > f.end_time:
            return False
        if f.is_anomaly is not None and reading.quality.is_anomaly != f.is_anomaly:
            return False
        if f.is_valid is not None and reading.quality.is_valid != f.is_valid:
            return False
        if f.min_score is not None:
            score = reading.quality.anomaly_score
            if score is None or score < f.min_score:
                return False
        return True


def make_device(
    device_id: str = "dev-001",
    *,
    status: DeviceStatus = DeviceStatus.ACTIVE,
    device_type: DeviceType = DeviceType.TEMPERATURE,
    uptime: float = 99.0,
    error_count: int = 0,
    last_seen: Optional[datetime] = None,
    battery_level: Optional[float] = None,
    building_id: str = "bldg-a",
    floor: int = 1,
    room_name: str = "Room 101",
    department: str = "facilities",
    next_maintenance: Optional[datetime] = None,
    warranty_expiry: Optional[datetime] = None,
    created_at: datetime = NOW - timedelta(days=30),
    created_by: Optional[str] = "admin",
    updated_at: Optional[datetime] = None,
    updated_by: Optional[str] = None,
    deleted_at: Optional[datetime] = None,
    deleted_by: Optional[str] = None,
) -> Device:
    return Device(
        id=device_id,
        serial_number=f"SN-{device_id}",
        type=device_type,
        status=status,
        health=DeviceHealth(
            uptime_percentage=uptime,
            error_count=error_count,
            last_seen=last_seen,
            battery_level=battery_level,
        ),
        location=DeviceLocation(building_id=building_id, floor=floor, room_name=room_name),
        metadata=DeviceMetadata(
            department=department,
            next_maintenance=next_maintenance,
            warranty_expiry=warranty_expiry,
        ),
        audit=DeviceAudit(
            created_at=created_at,
            created_by=created_by,
            updated_at=updated_at,
            updated_by=updated_by,
            deleted_at=deleted_at,
            deleted_by=deleted_by,
        ),
    )


def make_reading(
    device_id: str = "dev-001",
    timestamp: datetime = NOW,
    value: float = 21.0,
    *,
    reading_type: ReadingType = ReadingType.TEMPERATURE,
    unit: str = "celsius",
    is_anomaly: bool = False,
    anomaly_score: Optional[float] = None,
    ambient_temp: Optional[float] = None,
    is_valid: bool = True,
) -> Reading:
    return Reading(
        metadata=ReadingMetadata(device_id=device_id, type=reading_type, unit=unit),
        timestamp=timestamp,
        value=value,
        quality=ReadingQuality(is_valid=is_valid, is_anomaly=is_anomaly, anomaly_score=anomaly_score),
        context=ReadingContext(ambient_temp=ambient_temp),
    )


def make_anomaly(device_id: str, timestamp: datetime, score: float, **kwargs) -> Reading:
    return make_reading(device_id, timestamp, is_anomaly=True, anomaly_score=score, **kwargs)


@pytest.fixture
def gateway() -> InMemoryTelemetryGateway:
    return InMemoryTelemetryGateway()
