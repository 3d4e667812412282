"""Telemetry store gateway: the read contract the analytics engine depends on."""
import logging
from abc import ABC, abstractmethod
from typing import Iterator, List, Optional, Tuple

from config import settings
from schemas import Device, DeviceFilter, Reading, ReadingFilter, SortDirection

logger = logging.getLogger(__name__)

# (field, direction); field is one of "timestamp", "anomaly_score", "value"
ReadingSort = Tuple[str, SortDirection]


class TelemetryGateway(ABC):
    """
    Read-only access to devices and readings.

    Implementations own filtering, sorting, pagination and query timeouts.
    Failures to answer must surface as UpstreamUnavailableError.
    """

    @abstractmethod
    def find_devices(
        self,
        filter: DeviceFilter,
        page: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[Device]:
        """
        Find devices matching a filter.

        Args:
            filter: Device filter; soft-deleted devices are excluded unless
                include_deleted is set
            page: 1-indexed page, used together with limit
            limit: Maximum devices to return (None for all)

        Returns:
            Matching devices in stable id order
        """

    @abstractmethod
    def find_readings(
        self,
        filter: ReadingFilter,
        sort: Optional[ReadingSort] = None,
        page: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[Reading]:
        """
        Find readings matching a filter.

        Args:
            filter: Reading filter; unset fields impose no constraint and
                the time range is inclusive at both ends
            sort: Optional (field, direction); ties keep storage order
            page: 1-indexed page, used together with limit
            limit: Maximum readings to return (None for all)

        Returns:
            Matching readings
        """

    @abstractmethod
    def count_readings(self, filter: ReadingFilter) -> int:
        """Count readings matching a filter without loading them."""

    @abstractmethod
    def get_device_by_id(self, device_id: str) -> Optional[Device]:
        """Look up one device, soft-deleted or not. Returns None if it does not exist."""


def iter_reading_batches(
    gateway: TelemetryGateway,
    reading_filter: ReadingFilter,
    sort: Optional[ReadingSort] = None,
    batch_size: Optional[int] = None,
) -> Iterator[List[Reading]]:
    """Yield the readings matching a filter as bounded, consecutively paged batches."""
    batch_size = batch_size or settings.reading_batch_size
    page = 1
    while True:
        batch = gateway.find_readings(reading_filter, sort=sort, page=page, limit=batch_size)
        if batch:
            yield batch
        if len(batch) < batch_size:
            return
        page += 1
