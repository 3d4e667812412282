"""Audit history reconstructed from device audit stamps (per device and fleet-wide)."""
import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from config import settings
from error_handler import NotFoundError
from gateway import TelemetryGateway
from pagination import PageWindow, calculate_pagination
from schemas import (
    AuditAction, AuditEvent, AuditFeedRequest, AuditSortField, AuditSummary,
    AuditTrailReport, Device, DeviceFilter, DeviceHistoryRequest, SortDirection,
    UserActivity,
)

logger = logging.getLogger(__name__)

TOP_USERS_LIMIT = 10

# Events sharing a timestamp are listed deleted, then updated, then created (newest first)
_ACTION_PRIORITY = {
    AuditAction.CREATED: 0,
    AuditAction.UPDATED: 1,
    AuditAction.DELETED: 2,
}


def reconstruct_events(device: Device) -> List[AuditEvent]:
    """
    Derive the audit events of a device from its audit stamps.

    A creation event is always present. An update counts only when it
    trails creation by more than the configured epsilon; a deletion
    whenever deleted_at is set.
    """
    audit = device.audit
    events = [
        AuditEvent(
            device_id=device.id,
            action=AuditAction.CREATED,
            timestamp=audit.created_at,
            user=audit.created_by or "unknown",
            changes={
                "initial_status": device.status.value,
                "initial_type": device.type.value,
                "initial_location": device.location.model_dump(),
            },
        )
    ]

    epsilon = timedelta(milliseconds=settings.audit_update_epsilon_ms)
    if audit.updated_at is not None and audit.updated_at - audit.created_at > epsilon:
        events.append(AuditEvent(
            device_id=device.id,
            action=AuditAction.UPDATED,
            timestamp=audit.updated_at,
            user=audit.updated_by or audit.created_by or "unknown",
            changes={"current_status": device.status.value},
        ))

    if audit.deleted_at is not None:
        events.append(AuditEvent(
            device_id=device.id,
            action=AuditAction.DELETED,
            timestamp=audit.deleted_at,
            user=audit.deleted_by or "system",
        ))
    return events


def filter_events(
    events: Iterable[AuditEvent],
    actions: Optional[Iterable[AuditAction]] = None,
    user: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> List[AuditEvent]:
    """Keep events matching every given filter. User matching is a case-insensitive substring test."""
    wanted = {AuditAction(a) for a in actions} if actions else None
    needle = user.lower() if user else None

    result = []
    for event in events:
        if wanted is not None and event.action not in wanted:
            continue
        if needle is not None and needle not in event.user.lower():
            continue
        if start is not None and event.timestamp < start:
            continue
        if end is not None and event.timestamp > end:
            continue
        result.append(event)
    return result


def sort_events(
    events: Iterable[AuditEvent],
    sort_by: AuditSortField = AuditSortField.TIMESTAMP,
    direction: SortDirection = SortDirection.DESC,
) -> List[AuditEvent]:
    """
    Order events by a field.

    Events are first put in canonical order (timestamp, then action
    priority, newest first); sorting by another field is stable on top of
    that.
    """
    sort_by = AuditSortField(sort_by)
    descending = SortDirection(direction) == SortDirection.DESC

    if sort_by == AuditSortField.TIMESTAMP:
        return sorted(events, key=lambda e: (e.timestamp, _ACTION_PRIORITY[e.action]), reverse=descending)

    canonical = sorted(events, key=lambda e: (e.timestamp, _ACTION_PRIORITY[e.action]), reverse=True)
    if sort_by == AuditSortField.ACTION:
        key = lambda e: e.action.value
    elif sort_by == AuditSortField.DEVICE_ID:
        key = lambda e: e.device_id
    else:
        key = lambda e: e.user
    return sorted(canonical, key=key, reverse=descending)


def summarize_events(events: List[AuditEvent]) -> AuditSummary:
    by_action: Dict[str, int] = {}
    for event in events:
        by_action[event.action.value] = by_action.get(event.action.value, 0) + 1
    users = Counter(event.user for event in events)
    return AuditSummary(
        total_entries=len(events),
        by_action=by_action,
        top_users=[UserActivity(user=u, count=c) for u, c in users.most_common(TOP_USERS_LIMIT)],
    )


def _build_report(events: List[AuditEvent], page: int, limit: int, filters: Dict[str, Any]) -> AuditTrailReport:
    window = PageWindow(page=page, limit=limit)
    return AuditTrailReport(
        entries=window.slice(events),
        pagination=calculate_pagination(len(events), page, limit),
        summary=summarize_events(events),
        filters_applied=filters,
    )


def get_device_history(gateway: TelemetryGateway, request: DeviceHistoryRequest) -> AuditTrailReport:
    """
    Reconstructed history of one device, soft-deleted or not, newest first.

    Raises:
        NotFoundError: if the device does not exist
    """
    device = gateway.get_device_by_id(request.device_id)
    if device is None:
        raise NotFoundError.device(request.device_id)

    events = filter_events(
        reconstruct_events(device),
        actions=request.action,
        user=request.user,
        start=request.start_time,
        end=request.end_time,
    )
    events = sort_events(events)
    logger.debug(f"History for {request.device_id}: {len(events)} events")

    return _build_report(events, request.page, request.limit, {
        "device_id": request.device_id,
        "action": [a.value for a in request.action] if request.action else None,
        "user": request.user,
        "date_range": {"start": request.start_time, "end": request.end_time},
    })


def iter_devices(gateway: TelemetryGateway, device_filter: DeviceFilter, batch_size: Optional[int] = None):
    """Yield every device matching a filter, reading the store in bounded batches."""
    batch_size = batch_size or settings.audit_device_batch_size
    page = 1
    while True:
        batch = gateway.find_devices(device_filter, page=page, limit=batch_size)
        yield from batch
        if len(batch) < batch_size:
            return
        page += 1


def get_audit_feed(gateway: TelemetryGateway, request: AuditFeedRequest) -> AuditTrailReport:
    """Fleet-wide audit feed: events of all matching devices merged, filtered, sorted and paginated."""
    device_filter = DeviceFilter(device_ids=request.device_id, include_deleted=request.include_deleted)

    events: List[AuditEvent] = []
    device_count = 0
    for device in iter_devices(gateway, device_filter):
        device_count += 1
        events.extend(reconstruct_events(device))

    events = filter_events(
        events,
        actions=request.action,
        user=request.user,
        start=request.start_time,
        end=request.end_time,
    )
    events = sort_events(events, request.sort_by, request.sort_direction)
    logger.debug(f"Audit feed: {len(events)} events from {device_count} devices")

    return _build_report(events, request.page, request.limit, {
        "device_id": request.device_id,
        "action": [a.value for a in request.action] if request.action else None,
        "user": request.user,
        "include_deleted": request.include_deleted,
        "date_range": {"start": request.start_time, "end": request.end_time},
    })
