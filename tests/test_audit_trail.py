"""Unit tests for audit trail reconstruction and the audit feed."""
from datetime import timedelta

import pytest

from audit_trail import (
    filter_events, get_audit_feed, get_device_history, iter_devices,
    reconstruct_events, sort_events,
)
from config import settings
from conftest import NOW, InMemoryTelemetryGateway, make_device
from error_handler import InvalidArgumentError, NotFoundError
from schemas import (
    AuditAction, AuditFeedRequest, AuditSortField, DeviceFilter,
    DeviceHistoryRequest, SortDirection,
)
from validators import parse_request

CREATED = NOW - timedelta(days=1)


def _full_lifecycle(device_id: str = "dev-001", **kwargs):
    return make_device(
        device_id,
        created_at=CREATED,
        updated_at=CREATED + timedelta(milliseconds=10),
        updated_by="editor",
        deleted_at=CREATED + timedelta(milliseconds=20),
        deleted_by="Remover",
        **kwargs,
    )


def test_lifecycle_is_listed_newest_first() -> None:
    events = sort_events(reconstruct_events(_full_lifecycle()))

    assert [e.action for e in events] == [AuditAction.DELETED, AuditAction.UPDATED, AuditAction.CREATED]
    assert [e.user for e in events] == ["Remover", "editor", "admin"]


def test_creation_only_device_has_one_event() -> None:
    events = reconstruct_events(make_device(created_at=CREATED))

    assert len(events) == 1
    created = events[0]
    assert created.changes["initial_status"] == "active"
    assert created.changes["initial_location"]["building_id"] == "bldg-a"


def test_update_within_epsilon_is_ignored() -> None:
    device = make_device(created_at=CREATED, updated_at=CREATED + timedelta(microseconds=500))

    assert [e.action for e in reconstruct_events(device)] == [AuditAction.CREATED]


def test_user_fallbacks() -> None:
    device = make_device(
        created_at=CREATED,
        created_by=None,
        updated_at=CREATED + timedelta(hours=1),
        deleted_at=CREATED + timedelta(hours=2),
    )

    users = {e.action: e.user for e in reconstruct_events(device)}

    assert users == {
        AuditAction.CREATED: "unknown",
        AuditAction.UPDATED: "unknown",
        AuditAction.DELETED: "system",
    }


def test_updated_by_falls_back_to_creator() -> None:
    device = make_device(created_at=CREATED, created_by="alice", updated_at=CREATED + timedelta(hours=1))

    updated = [e for e in reconstruct_events(device) if e.action == AuditAction.UPDATED][0]
    assert updated.user == "alice"
    assert updated.changes == {"current_status": "active"}


def test_ties_order_deleted_then_updated_then_created() -> None:
    device = make_device(created_at=CREATED, updated_at=CREATED + timedelta(hours=1), deleted_at=CREATED + timedelta(hours=1))

    events = sort_events(reconstruct_events(device))

    assert [e.action for e in events] == [AuditAction.DELETED, AuditAction.UPDATED, AuditAction.CREATED]


def test_filter_by_user_is_case_insensitive_substring() -> None:
    events = reconstruct_events(_full_lifecycle())

    assert [e.action for e in filter_events(events, user="MOVE")] == [AuditAction.DELETED]


def test_filter_by_time_range_is_inclusive() -> None:
    events = reconstruct_events(_full_lifecycle())

    kept = filter_events(events, start=CREATED, end=CREATED + timedelta(milliseconds=10))

    assert {e.action for e in kept} == {AuditAction.CREATED, AuditAction.UPDATED}


def test_history_accepts_action_aliases(gateway) -> None:
    gateway.add_device(_full_lifecycle())
    request = parse_request(DeviceHistoryRequest, device_id="dev-001", action="delete,update")

    report = get_device_history(gateway, request)

    assert [e.action for e in report.entries] == [AuditAction.DELETED, AuditAction.UPDATED]
    assert report.pagination.total == 2


def test_history_includes_soft_deleted_device(gateway) -> None:
    gateway.add_device(_full_lifecycle())

    report = get_device_history(gateway, DeviceHistoryRequest(device_id="dev-001"))

    assert report.summary.total_entries == 3
    timestamps = [e.timestamp for e in report.entries]
    assert timestamps == sorted(timestamps, reverse=True)


def test_history_for_unknown_device(gateway) -> None:
    with pytest.raises(NotFoundError):
        get_device_history(gateway, DeviceHistoryRequest(device_id="nope"))


def test_history_rejects_malformed_id() -> None:
    with pytest.raises(InvalidArgumentError):
        parse_request(DeviceHistoryRequest, device_id="bad id!")


class CountingGateway(InMemoryTelemetryGateway):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.device_calls = 0

    def find_devices(self, filter, page=None, limit=None):
        self.device_calls += 1
        return super().find_devices(filter, page=page, limit=limit)


def test_iter_devices_reads_in_batches() -> None:
    gateway = CountingGateway(devices=[make_device(f"d{i}") for i in range(5)])

    ids = [d.id for d in iter_devices(gateway, DeviceFilter(), batch_size=2)]

    assert ids == ["d0", "d1", "d2", "d3", "d4"]
    assert gateway.device_calls == 3


def test_feed_merges_devices_and_summarizes(monkeypatch) -> None:
    monkeypatch.setattr(settings, "audit_device_batch_size", 2)
    gateway = InMemoryTelemetryGateway(devices=[
        _full_lifecycle("dev-a"),
        make_device("dev-b", created_at=CREATED + timedelta(hours=1)),
        make_device("dev-c", created_at=CREATED + timedelta(hours=2), created_by="bob"),
    ])

    report = get_audit_feed(gateway, AuditFeedRequest())

    assert report.summary.total_entries == 5
    assert report.summary.by_action == {"created": 3, "updated": 1, "deleted": 1}
    assert report.summary.top_users[0].user == "admin"
    assert report.summary.top_users[0].count == 2
    assert report.entries[0].device_id == "dev-c"


def test_feed_can_exclude_deleted_devices() -> None:
    gateway = InMemoryTelemetryGateway(devices=[_full_lifecycle("dev-a"), make_device("dev-b")])

    report = get_audit_feed(gateway, AuditFeedRequest(include_deleted=False))

    assert {e.device_id for e in report.entries} == {"dev-b"}


def test_feed_sorts_by_device_id() -> None:
    gateway = InMemoryTelemetryGateway(devices=[make_device("dev-b"), make_device("dev-a")])

    report = get_audit_feed(
        gateway,
        AuditFeedRequest(sort_by=AuditSortField.DEVICE_ID, sort_direction=SortDirection.ASC),
    )

    assert [e.device_id for e in report.entries] == ["dev-a", "dev-b"]


def test_feed_paginates_after_sorting() -> None:
    gateway = InMemoryTelemetryGateway(devices=[
        make_device(f"d{i}", created_at=CREATED + timedelta(minutes=i)) for i in range(5)
    ])

    report = get_audit_feed(gateway, AuditFeedRequest(page=2, limit=2))

    assert [e.device_id for e in report.entries] == ["d2", "d1"]
    assert report.pagination.total_pages == 3
