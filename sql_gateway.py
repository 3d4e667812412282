"""SQLAlchemy-backed implementation of the telemetry store gateway."""
import logging
from typing import List, Optional

from fastapi import Depends
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database import get_db
from error_handler import UpstreamUnavailableError
from gateway import ReadingSort, TelemetryGateway
from models import DeviceRecord, ReadingRecord
from schemas import Device, DeviceFilter, Reading, ReadingFilter, SortDirection

logger = logging.getLogger(__name__)

_READING_SORT_COLUMNS = {
    "timestamp": ReadingRecord.timestamp,
    "anomaly_score": ReadingRecord.anomaly_score,
    "value": ReadingRecord.value,
}


class SqlTelemetryGateway(TelemetryGateway):
    """Gateway that answers device/reading queries from a SQLAlchemy session."""

    def __init__(self, db: Session):
        self.db = db

    def find_devices(self, filter: DeviceFilter, page: Optional[int] = None, limit: Optional[int] = None) -> List[Device]:
        try:
            query = self.db.query(DeviceRecord)
            if not filter.include_deleted:
                query = query.filter(DeviceRecord.deleted_at.is_(None))
            if filter.status is not None:
                query = query.filter(DeviceRecord.status == filter.status.value)
            if filter.type is not None:
                query = query.filter(DeviceRecord.type == filter.type.value)
            if filter.building_id is not None:
                query = query.filter(DeviceRecord.building_id == filter.building_id)
            if filter.floor is not None:
                query = query.filter(DeviceRecord.floor == filter.floor)
            if filter.department is not None:
                query = query.filter(DeviceRecord.department == filter.department)
            if filter.device_ids is not None:
                query = query.filter(DeviceRecord.id.in_(filter.device_ids))

            query = query.order_by(DeviceRecord.id.asc())
            if limit is not None:
                query = query.offset(((page or 1) - 1) * limit).limit(limit)

            rows = query.all()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Device query failed: {e}", exc_info=True)
            raise UpstreamUnavailableError("Telemetry store failed to answer device query") from e

        return [row.to_schema() for row in rows]

    def find_readings(
        self,
        filter: ReadingFilter,
        sort: Optional[ReadingSort] = None,
        page: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[Reading]:
        try:
            query = self._reading_query(filter)
            if sort is not None:
                field, direction = sort
                column = _READING_SORT_COLUMNS.get(field, ReadingRecord.timestamp)
                ordered = column.desc() if SortDirection(direction) == SortDirection.DESC else column.asc()
                query = query.order_by(ordered, ReadingRecord.id.asc())
            else:
                query = query.order_by(ReadingRecord.id.asc())

            if limit is not None:
                query = query.offset(((page or 1) - 1) * limit).limit(limit)

            rows = query.all()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Reading query failed: {e}", exc_info=True)
            raise UpstreamUnavailableError("Telemetry store failed to answer reading query") from e

        return [row.to_schema() for row in rows]

    def count_readings(self, filter: ReadingFilter) -> int:
        try:
            return self._reading_query(filter).count()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Reading count failed: {e}", exc_info=True)
            raise UpstreamUnavailableError("Telemetry store failed to answer reading count") from e

    def _reading_query(self, filter: ReadingFilter):
        query = self.db.query(ReadingRecord)
        if filter.device_id:
            query = query.filter(ReadingRecord.device_id.in_(filter.device_id))
        if filter.type:
            query = query.filter(ReadingRecord.type.in_([t.value for t in filter.type]))
        if filter.start_time is not None:
            query = query.filter(ReadingRecord.timestamp >= filter.start_time)
        if filter.end_time is not None:
            query = query.filter(ReadingRecord.timestamp <= filter.end_time)
        if filter.is_anomaly is not None:
            query = query.filter(ReadingRecord.is_anomaly == filter.is_anomaly)
        if filter.min_score is not None:
            query = query.filter(ReadingRecord.anomaly_score >= filter.min_score)
        if filter.is_valid is not None:
            query = query.filter(ReadingRecord.is_valid == filter.is_valid)
        return query

    def get_device_by_id(self, device_id: str) -> Optional[Device]:
        try:
            row = self.db.query(DeviceRecord).filter(DeviceRecord.id == device_id).first()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Device lookup failed for {device_id}: {e}", exc_info=True)
            raise UpstreamUnavailableError("Telemetry store failed to answer device lookup") from e
        return row.to_schema() if row else None


def get_gateway(db: Session = Depends(get_db)) -> TelemetryGateway:
    """FastAPI dependency providing a gateway bound to the request's session."""
    return SqlTelemetryGateway(db)
