from datetime import timedelta

import pytest

from svcstatus.detector import Liveness, classify, heartbeat_age
from svcstatus.heartbeat import HeartbeatClient
from svcstatus.registry import MemoryStatusStore

from conftest import T0, FakeClock, build_record

THRESHOLD = timedelta(seconds=30)


@pytest.mark.parametrize(
    "age, expected",
    [
        (timedelta(0), Liveness.ALIVE),
        (timedelta(seconds=29), Liveness.ALIVE),
        (THRESHOLD, Liveness.ALIVE),
        (THRESHOLD + timedelta(microseconds=1), Liveness.STALE),
        (timedelta(hours=6), Liveness.STALE),
    ],
)
def test_alive_iff_within_threshold(age, expected):
    record = build_record(last_heartbeat=T0)
    assert classify(record, T0 + age, THRESHOLD) is expected


@pytest.mark.parametrize("age", [timedelta(0), timedelta(seconds=5), timedelta(days=3)])
def test_stopped_overrides_heartbeat_age(age):
    record = build_record(status="stopped", last_heartbeat=T0)
    assert classify(record, T0 + age, THRESHOLD) is Liveness.STOPPED


@pytest.mark.parametrize("status", ["starting", "running", "idle", "error"])
def test_other_statuses_use_heartbeat_age(status):
    record = build_record(status=status, last_heartbeat=T0)
    assert classify(record, T0 + timedelta(seconds=10), THRESHOLD) is Liveness.ALIVE
    assert classify(record, T0 + timedelta(seconds=31), THRESHOLD) is Liveness.STALE


def test_future_heartbeat_reads_as_alive():
    record = build_record(last_heartbeat=T0 + timedelta(minutes=5))
    assert classify(record, T0, THRESHOLD) is Liveness.ALIVE
    assert heartbeat_age(record, T0) == timedelta(minutes=-5)


def test_threshold_in_seconds():
    record = build_record(last_heartbeat=T0)
    assert classify(record, T0 + timedelta(seconds=30), 30) is Liveness.ALIVE
    assert classify(record, T0 + timedelta(seconds=30.5), 30) is Liveness.STALE


def test_deterministic():
    record = build_record(last_heartbeat=T0)
    now = T0 + timedelta(seconds=45)
    assert {classify(record, now, THRESHOLD) for _ in range(10)} == {Liveness.STALE}


def test_scraper_goes_stale_after_missed_heartbeats():
    store = MemoryStatusStore()
    clock = FakeClock()
    client = HeartbeatClient(store, "scraper:doj", "scraper", source_id="doj", clock=clock)

    client.report("starting")
    clock.advance(5)
    client.report("running", current_task="crawling /foia/page/5", activity_occurred=True)
    record = store.get("scraper:doj")

    assert record.current_task == "crawling /foia/page/5"
    assert classify(record, T0 + timedelta(seconds=8), THRESHOLD) is Liveness.ALIVE
    assert classify(record, T0 + timedelta(seconds=60), THRESHOLD) is Liveness.STALE
