from datetime import datetime, timedelta, timezone

import pytest

from svcstatus.registry import MemoryStatusStore, SqlStatusStore, StatusRecord

T0 = datetime(2024, 12, 30, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic clock for heartbeat and query tests."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


def build_record(record_id: str = "scraper:doj", **overrides) -> StatusRecord:
    service_type = overrides.pop("service_type", record_id.split(":", 1)[0])
    values = dict(
        id=record_id,
        service_type=service_type,
        source_id=record_id.split(":", 1)[1] if service_type == "scraper" else None,
        status="running",
        last_heartbeat=T0,
        started_at=T0,
    )
    values.update(overrides)
    return StatusRecord(**values)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_record():
    return build_record


@pytest.fixture
def sqlite_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'status.db'}"


@pytest.fixture
def sql_store(sqlite_url):
    store = SqlStatusStore(sqlite_url, create_schema=True)
    yield store
    store.close()


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        s = MemoryStatusStore()
    else:
        s = SqlStatusStore(f"sqlite:///{tmp_path / 'status.db'}", create_schema=True)
    yield s
    s.close()
