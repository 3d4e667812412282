"""API endpoints for the reconstructed device audit trail."""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from audit_trail import get_audit_feed, get_device_history
from gateway import TelemetryGateway
from routers.analytics import run_timed
from schemas import AuditFeedRequest, DeviceHistoryRequest
from sql_gateway import get_gateway
from validators import parse_request

router = APIRouter(tags=["audit"])


@router.get("/audit")
def audit_feed(
    gateway: TelemetryGateway = Depends(get_gateway),
    device_id: Optional[List[str]] = Query(None, description="Device id(s), repeated or comma-separated"),
    action: Optional[List[str]] = Query(None, description="created/updated/deleted (create/update/delete accepted)"),
    user: Optional[str] = Query(None, description="Case-insensitive user substring"),
    start_time: Optional[datetime] = Query(None, alias="startDate"),
    end_time: Optional[datetime] = Query(None, alias="endDate"),
    include_deleted: Optional[bool] = Query(None),
    sort_by: Optional[str] = Query(None, alias="sortBy"),
    sort_direction: Optional[str] = Query(None, alias="sortDirection"),
    page: Optional[int] = Query(None),
    limit: Optional[int] = Query(None),
):
    """Fleet-wide audit feed merged from every matching device."""
    def compute():
        request = parse_request(
            AuditFeedRequest,
            device_id=device_id,
            action=action,
            user=user,
            start_time=start_time,
            end_time=end_time,
            include_deleted=include_deleted,
            sort_by=sort_by,
            sort_direction=sort_direction,
            page=page,
            limit=limit,
        )
        return get_audit_feed(gateway, request)

    return run_timed("audit.feed", compute)


@router.get("/devices/{device_id}/history")
def device_history(
    device_id: str,
    gateway: TelemetryGateway = Depends(get_gateway),
    action: Optional[List[str]] = Query(None),
    user: Optional[str] = Query(None),
    start_time: Optional[datetime] = Query(None, alias="startDate"),
    end_time: Optional[datetime] = Query(None, alias="endDate"),
    page: Optional[int] = Query(None),
    limit: Optional[int] = Query(None),
):
    """Audit history of one device (soft-deleted devices included), newest first."""
    def compute():
        request = parse_request(
            DeviceHistoryRequest,
            device_id=device_id,
            action=action,
            user=user,
            start_time=start_time,
            end_time=end_time,
            page=page,
            limit=limit,
        )
        return get_device_history(gateway, request)

    return run_timed("audit.device_history", compute)
