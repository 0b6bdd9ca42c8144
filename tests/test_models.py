from datetime import datetime, timedelta, timezone

import pytest

from svcstatus.registry import InvalidRecord, ServiceStatus, ServiceType, StatusRecord, make_service_id
from svcstatus.registry.models import RecordFilter, merge_records

from conftest import T0, build_record


def test_make_service_id():
    assert make_service_id("scraper", "doj") == "scraper:doj"
    assert make_service_id(ServiceType.OCR, "worker-1") == "ocr:worker-1"


def test_enum_values_are_normalised_to_strings():
    record = build_record("ocr:worker-1", service_type=ServiceType.OCR, status=ServiceStatus.IDLE)
    assert record.service_type == "ocr"
    assert record.status == "idle"
    record.validate()


def test_open_service_type_is_accepted():
    build_record("indexer:main", service_type="indexer").validate()


@pytest.mark.parametrize(
    "overrides",
    [
        {"id": ""},
        {"service_type": ""},
        {"status": "sleeping"},
        {"last_heartbeat": None},
        {"started_at": None},
        {"last_heartbeat": datetime(2024, 12, 30, 12, 0, 0)},
        {"last_activity": "2024-12-30T12:00:00+00:00"},
        {"error_count": -1},
        {"error_count": True},
        {"stats": {"pages": {1, 2}}},
        {"stats": {"nested": {1: "non-string key"}}},
        {"stats": ["not", "a", "mapping"]},
        {"current_task": 42},
    ],
)
def test_validate_rejects_malformed_records(overrides):
    record = build_record("scraper:doj", **overrides)
    with pytest.raises(InvalidRecord):
        record.validate()


def test_source_id_only_for_scrapers():
    with pytest.raises(InvalidRecord, match="source_id"):
        build_record("ocr:worker-1", source_id="doj").validate()
    build_record("scraper:doj", source_id=None).validate()


def test_nested_stats_are_valid():
    record = build_record(stats={"pages": 5, "rate": 1.5, "ok": True, "urls": ["/a", "/b"],
                                 "by_domain": {"doj.gov": {"fetched": 3, "errors": None}}})
    record.validate()


def test_to_dict_from_dict():
    record = build_record(
        last_activity=T0 + timedelta(seconds=3),
        stats={"pages": [1, 2, {"x": None}]},
        last_error="timeout",
        last_error_at=T0,
        error_count=2,
    )
    data = record.to_dict()
    assert data["last_heartbeat"] == "2024-12-30T12:00:00+00:00"
    assert StatusRecord.from_dict(data) == record


def test_copy_does_not_share_stats():
    record = build_record(stats={"counts": {"pages": 1}})
    clone = record.copy()
    clone.stats["counts"]["pages"] = 99
    assert record.stats["counts"]["pages"] == 1


def test_filter_heartbeat_bounds():
    record = build_record(last_heartbeat=T0)
    assert RecordFilter(heartbeat_after=T0).matches(record)
    assert not RecordFilter(heartbeat_before=T0).matches(record)
    assert RecordFilter(heartbeat_before=T0 + timedelta(microseconds=1)).matches(record)


class TestMergeRecords:

    def test_insert_when_absent(self):
        incoming = build_record()
        assert merge_records(None, incoming) == incoming

    def test_started_at_is_kept(self):
        existing = build_record()
        incoming = build_record(last_heartbeat=T0 + timedelta(seconds=5), started_at=T0 + timedelta(seconds=5))
        assert merge_records(existing, incoming).started_at == T0

    def test_restart_takes_new_epoch(self):
        existing = build_record(error_count=4, last_error="boom", last_error_at=T0)
        later = T0 + timedelta(minutes=1)
        incoming = build_record(last_heartbeat=later, started_at=later)
        merged = merge_records(existing, incoming, restart=True)
        assert merged.started_at == later
        assert merged.error_count == 0
        assert merged.last_error is None

    def test_older_heartbeat_is_ignored(self):
        existing = build_record(last_heartbeat=T0 + timedelta(seconds=10))
        assert merge_records(existing, build_record(last_heartbeat=T0)) is None

    def test_nulls_preserve_activity_and_errors(self):
        existing = build_record(last_activity=T0, last_error="boom", last_error_at=T0, error_count=3)
        incoming = build_record(last_heartbeat=T0 + timedelta(seconds=1), error_count=0)
        merged = merge_records(existing, incoming)
        assert merged.last_activity == T0
        assert merged.last_error == "boom"
        assert merged.last_error_at == T0
        assert merged.error_count == 3

    def test_other_fields_are_replaced(self):
        existing = build_record(current_task="crawling /foia/page/4", stats={"pages": 4}, host="a")
        incoming = build_record(
            last_heartbeat=T0 + timedelta(seconds=1),
            status="idle", current_task=None, stats={}, host="b",
        )
        merged = merge_records(existing, incoming)
        assert merged.status == "idle"
        assert merged.current_task is None
        assert merged.stats == {}
        assert merged.host == "b"


def test_timestamps_in_other_zones_compare_by_instant():
    plus_two = timezone(timedelta(hours=2))
    record = build_record(last_heartbeat=T0.astimezone(plus_two))
    record.validate()
    assert RecordFilter(heartbeat_after=T0).matches(record)
