"""Database models for the telemetry store (devices and readings)."""
from sqlalchemy import Column, String, Integer, Boolean, DateTime, Text, JSON, Float, Index
from sqlalchemy.sql import func

from database import Base
from schemas import (
    Device, DeviceAudit, DeviceHealth, DeviceLocation, DeviceMetadata,
    Reading, ReadingContext, ReadingMetadata, ReadingQuality,
)


class DeviceRecord(Base):
    """Device row. Nested device sections are flattened into columns."""
    __tablename__ = "devices"

    id = Column(String(100), primary_key=True, index=True)
    serial_number = Column(String(100), unique=True, nullable=False, index=True)
    type = Column(String(50), nullable=False, index=True)
    status = Column(String(20), nullable=False, index=True)  # active, maintenance, offline, error, decommissioned

    # Health
    uptime_percentage = Column(Float, nullable=False, default=100.0)
    error_count = Column(Integer, nullable=False, default=0)
    last_seen = Column(DateTime(timezone=True), nullable=True, index=True)
    battery_level = Column(Float, nullable=True)
    signal_strength = Column(Float, nullable=True)
    last_error = Column(Text, nullable=True)

    # Location
    building_id = Column(String(100), nullable=False, index=True)
    floor = Column(Integer, nullable=False, index=True)
    room_name = Column(String(200), nullable=False)
    zone = Column(String(100), nullable=True)

    # Operational metadata
    department = Column(String(100), nullable=False, index=True)
    next_maintenance = Column(DateTime(timezone=True), nullable=True, index=True)
    last_maintenance = Column(DateTime(timezone=True), nullable=True)
    warranty_expiry = Column(DateTime(timezone=True), nullable=True)
    tags = Column(JSON, nullable=False, default=list)

    # Audit trail
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    created_by = Column(String(100), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)
    updated_by = Column(String(100), nullable=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True, index=True)  # Soft delete marker
    deleted_by = Column(String(100), nullable=True)

    def to_schema(self) -> Device:
        """Convert the row into the Device record the analytics engine consumes."""
        return Device(
            id=self.id,
            serial_number=self.serial_number,
            type=self.type,
            status=self.status,
            health=DeviceHealth(
                uptime_percentage=self.uptime_percentage if self.uptime_percentage is not None else 100.0,
                error_count=self.error_count or 0,
                last_seen=self.last_seen,
                battery_level=self.battery_level,
                signal_strength=self.signal_strength,
                last_error=self.last_error,
            ),
            location=DeviceLocation(
                building_id=self.building_id,
                floor=self.floor,
                room_name=self.room_name,
                zone=self.zone,
            ),
            metadata=DeviceMetadata(
                department=self.department,
                next_maintenance=self.next_maintenance,
                last_maintenance=self.last_maintenance,
                warranty_expiry=self.warranty_expiry,
                tags=self.tags or [],
            ),
            audit=DeviceAudit(
                created_at=self.created_at,
                created_by=self.created_by,
                updated_at=self.updated_at,
                updated_by=self.updated_by,
                deleted_at=self.deleted_at,
                deleted_by=self.deleted_by,
            ),
        )

    @classmethod
    def from_schema(cls, device: Device) -> "DeviceRecord":
        """Build a row from a Device record (used by seeding and tests)."""
        return cls(
            id=device.id,
            serial_number=device.serial_number,
            type=device.type.value,
            status=device.status.value,
            uptime_percentage=device.health.uptime_percentage,
            error_count=device.health.error_count,
            last_seen=device.health.last_seen,
            battery_level=device.health.battery_level,
            signal_strength=device.health.signal_strength,
            last_error=device.health.last_error,
            building_id=device.location.building_id,
            floor=device.location.floor,
            room_name=device.location.room_name,
            zone=device.location.zone,
            department=device.metadata.department,
            next_maintenance=device.metadata.next_maintenance,
            last_maintenance=device.metadata.last_maintenance,
            warranty_expiry=device.metadata.warranty_expiry,
            tags=list(device.metadata.tags),
            created_at=device.audit.created_at,
            created_by=device.audit.created_by,
            updated_at=device.audit.updated_at,
            updated_by=device.audit.updated_by,
            deleted_at=device.audit.deleted_at,
            deleted_by=device.audit.deleted_by,
        )


class ReadingRecord(Base):
    """Append-only telemetry reading row."""
    __tablename__ = "readings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    device_id = Column(String(100), nullable=False, index=True)  # Not enforced as a foreign key
    type = Column(String(50), nullable=False, index=True)
    unit = Column(String(50), nullable=False)
    source = Column(String(20), nullable=False, default="sensor")  # sensor, simulation, manual, calibration

    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    value = Column(Float, nullable=False)

    # Quality
    is_valid = Column(Boolean, nullable=False, default=True)
    confidence_score = Column(Float, nullable=True)
    is_anomaly = Column(Boolean, nullable=False, default=False, index=True)
    anomaly_score = Column(Float, nullable=True)
    validation_flags = Column(JSON, nullable=False, default=list)

    # Context captured with the reading
    battery_level = Column(Float, nullable=True)
    signal_strength = Column(Float, nullable=True)
    ambient_temp = Column(Float, nullable=True)

    __table_args__ = (
        Index("ix_readings_device_type_ts", "device_id", "type", "timestamp"),
    )

    def to_schema(self) -> Reading:
        """Convert the row into the Reading record the analytics engine consumes."""
        return Reading(
            metadata=ReadingMetadata(
                device_id=self.device_id,
                type=self.type,
                unit=self.unit,
                source=self.source or "sensor",
            ),
            timestamp=self.timestamp,
            value=self.value,
            quality=ReadingQuality(
                is_valid=True if self.is_valid is None else self.is_valid,
                confidence_score=self.confidence_score,
                is_anomaly=bool(self.is_anomaly),
                anomaly_score=self.anomaly_score,
                validation_flags=self.validation_flags or [],
            ),
            context=ReadingContext(
                battery_level=self.battery_level,
                signal_strength=self.signal_strength,
                ambient_temp=self.ambient_temp,
            ),
        )

    @classmethod
    def from_schema(cls, reading: Reading) -> "ReadingRecord":
        """Build a row from a Reading record (used by seeding and tests)."""
        return cls(
            device_id=reading.metadata.device_id,
            type=reading.metadata.type.value,
            unit=reading.metadata.unit,
            source=reading.metadata.source.value,
            timestamp=reading.timestamp,
            value=reading.value,
            is_valid=reading.quality.is_valid,
            confidence_score=reading.quality.confidence_score,
            is_anomaly=reading.quality.is_anomaly,
            anomaly_score=reading.quality.anomaly_score,
            validation_flags=list(reading.quality.validation_flags),
            battery_level=reading.context.battery_level,
            signal_strength=reading.context.signal_strength,
            ambient_temp=reading.context.ambient_temp,
        )
