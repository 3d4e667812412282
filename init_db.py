"""Database initialization script to create sample building sensor data."""
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from database import Base, SessionLocal, engine
from models import DeviceRecord, ReadingRecord

SAMPLE_BUILDING = "HQ-01"


def _sample_devices(now: datetime):
    created = now - timedelta(days=90)
    return [
        DeviceRecord(
            id="TEMP-HQ-101", serial_number="SN-TEMP-0001", type="temperature", status="active",
            uptime_percentage=99.2, error_count=1, last_seen=now - timedelta(minutes=1),
            battery_level=82, building_id=SAMPLE_BUILDING, floor=1, room_name="Server Room",
            department="IT", next_maintenance=now + timedelta(days=2),
            warranty_expiry=now + timedelta(days=400), tags=["critical"],
            created_at=created, created_by="seed",
        ),
        DeviceRecord(
            id="AMB-HQ-101", serial_number="SN-AMB-0001", type="temperature", status="active",
            uptime_percentage=99.8, error_count=0, last_seen=now - timedelta(minutes=2),
            battery_level=64, building_id=SAMPLE_BUILDING, floor=1, room_name="Server Room",
            department="IT", warranty_expiry=now + timedelta(days=20), tags=["ambient"],
            created_at=created, created_by="seed",
        ),
        DeviceRecord(
            id="CO2-HQ-204", serial_number="SN-CO2-0001", type="co2", status="offline",
            uptime_percentage=71.5, error_count=14, last_seen=now - timedelta(hours=6),
            battery_level=12, building_id=SAMPLE_BUILDING, floor=2, room_name="Conference B",
            department="Facilities", next_maintenance=now - timedelta(days=5), tags=[],
            created_at=created, created_by="seed",
            updated_at=created + timedelta(days=30), updated_by="facilities-team",
        ),
        DeviceRecord(
            id="HUM-HQ-310", serial_number="SN-HUM-0001", type="humidity", status="error",
            uptime_percentage=88.0, error_count=4, last_seen=now - timedelta(minutes=40),
            battery_level=27, building_id=SAMPLE_BUILDING, floor=3, room_name="Archive",
            department="Records", tags=[],
            created_at=created, created_by="seed",
            deleted_at=now - timedelta(days=1), deleted_by="seed",
        ),
    ]


def _sample_readings(now: datetime):
    readings = []
    for hour in range(12, 0, -1):
        ts = now - timedelta(hours=hour)
        device_temp = 55.0 + (12 - hour) * 2.5
        readings.append(ReadingRecord(
            device_id="TEMP-HQ-101", type="temperature", unit="celsius", timestamp=ts,
            value=device_temp, ambient_temp=21.0 + (12 - hour) * 0.1,
            is_anomaly=device_temp > 75, anomaly_score=0.9 if device_temp > 75 else None,
        ))
        readings.append(ReadingRecord(
            device_id="AMB-HQ-101", type="temperature", unit="celsius",
            timestamp=ts + timedelta(seconds=45), value=21.0 + (12 - hour) * 0.1,
        ))
    readings.append(ReadingRecord(
        device_id="CO2-HQ-204", type="co2", unit="ppm", timestamp=now - timedelta(hours=7),
        value=2150.0, is_anomaly=True, anomaly_score=0.82,
    ))
    return readings


def seed_sample_data(db: Session, now: Optional[datetime] = None) -> Tuple[int, int]:
    """
    Insert the sample fleet and its readings unless the fleet already exists.

    Returns:
        (devices created, readings created)
    """
    now = now or datetime.now(timezone.utc)
    created_devices = 0
    for device in _sample_devices(now):
        if db.query(DeviceRecord).filter(DeviceRecord.id == device.id).first():
            continue
        db.add(device)
        created_devices += 1

    created_readings = 0
    if created_devices:
        readings = _sample_readings(now)
        db.add_all(readings)
        created_readings = len(readings)

    db.commit()
    return created_devices, created_readings


if __name__ == "__main__":
    # Create tables
    Base.metadata.create_all(bind=engine)

    db = SessionLocal()
    try:
        devices, readings = seed_sample_data(db)
        print(f"Created {devices} devices and {readings} readings")
        print("Database initialization complete!")
    except Exception as e:
        print(f"Error initializing database: {e}")
        db.rollback()
    finally:
        db.close()
