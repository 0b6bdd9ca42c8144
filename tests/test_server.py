import socket
from datetime import timedelta

import pytest

from svcstatus.detector import Liveness
from svcstatus.query import StatusQuery
from svcstatus.registry import MemoryStatusStore, StoreUnavailable
from svcstatus.server import StatusRegistryClient, start_status_server

from conftest import T0, FakeClock, build_record


@pytest.fixture
def store():
    store = MemoryStatusStore()
    store.upsert(build_record("server:main", last_heartbeat=T0))
    store.upsert(build_record("scraper:doj", current_task="crawling /foia/page/5",
                              last_heartbeat=T0 - timedelta(seconds=45)))
    store.upsert(build_record("scraper:fbi", status="idle", last_heartbeat=T0 - timedelta(seconds=5)))
    store.upsert(build_record("ocr:worker-1", status="stopped", last_heartbeat=T0 - timedelta(seconds=5)))
    return store


@pytest.fixture
def client(store):
    query = StatusQuery(store, threshold=30, clock=FakeClock())
    server = start_status_server(query, host="127.0.0.1", port=0)
    yield StatusRegistryClient(host="127.0.0.1", port=server.server_address[1])
    server.shutdown()
    server.server_close()


def test_get_service(client):
    status = client.get_service("scraper:doj")
    assert status.record.current_task == "crawling /foia/page/5"
    assert status.record.last_heartbeat == T0 - timedelta(seconds=45)
    assert status.liveness is Liveness.STALE
    assert status.age_seconds == 45.0


def test_get_unknown_service(client):
    assert client.get_service("scraper:nowhere") is None


def test_list_services(client):
    ids = [s.record.id for s in client.list_services()]
    assert ids == ["ocr:worker-1", "scraper:doj", "scraper:fbi", "server:main"]


def test_list_services_filters(client):
    assert [s.record.id for s in client.list_services(service_type="scraper")] == ["scraper:doj", "scraper:fbi"]
    assert [s.record.id for s in client.list_services(source_id="fbi")] == ["scraper:fbi"]
    assert [s.record.id for s in client.list_services(status="idle")] == ["scraper:fbi"]
    assert [s.record.id for s in client.list_services(liveness="stopped")] == ["ocr:worker-1"]
    recent = client.list_services(heartbeat_after=T0 - timedelta(seconds=10))
    assert [s.record.id for s in recent] == ["ocr:worker-1", "scraper:fbi", "server:main"]
    old = client.list_services(heartbeat_before=T0 - timedelta(seconds=10))
    assert [s.record.id for s in old] == ["scraper:doj"]


def test_alive_services(client):
    assert [s.record.id for s in client.get_alive_services()] == ["scraper:fbi", "server:main"]
    assert [s.record.id for s in client.get_alive_services(service_type="server")] == ["server:main"]


def test_summary(client):
    summary = client.get_summary()
    assert summary["total"] == 4
    assert summary["by_liveness"] == {"alive": 2, "stale": 1, "stopped": 1}


def test_bad_parameters_are_rejected(client):
    with pytest.raises(ValueError, match="unknown status"):
        client.list_services(status="sleeping")
    with pytest.raises(ValueError, match="unknown liveness"):
        client.list_services(liveness="zombie")


def test_store_outage_is_reported(client, store):
    store.close()
    with pytest.raises(StoreUnavailable):
        client.list_services()
    with pytest.raises(StoreUnavailable):
        client.get_service("server:main")


def test_unreachable_server():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]
    client = StatusRegistryClient(host="127.0.0.1", port=port, timeout=2)
    with pytest.raises(StoreUnavailable):
        client.get_service("server:main")
