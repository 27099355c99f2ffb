import pytest
from fastapi.testclient import TestClient

from helpers import BASE, FakeResponse, FakeSession
from main import create_app

BATCH = f"{BASE}/api/labtests/batch"


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def api(cfg, engine, session):
    return TestClient(create_app(cfg, session=session, engine=engine))


def test_root(api):
    assert "labsync" in api.get("/").json()


def test_order_is_queued_when_remote_is_down(api):
    resp = api.post("/visits/31/labtests", json={"patient_id": "026", "tests": [{"test_name": "CBC"}]})

    assert resp.status_code == 200
    assert resp.json()["status"] == "queued"

    pending = api.get("/sync/pending").json()
    assert [p["key"] for p in pending] == ["labtests_31_026"]
    assert pending[0]["tests"] == ["CBC"]
    assert pending[0]["state"] == "created"


def test_order_saved_when_remote_accepts(api, session):
    session.routes[BATCH] = [FakeResponse(201, {"created": [{"test_id": 9, "name": "CBC"}]})]

    resp = api.post("/visits/31/labtests", json={"patient_id": "026", "tests": [{"test_name": "CBC"}]})

    body = resp.json()
    assert body["status"] == "saved"
    assert body["outcomes"][0]["remote_id"] == 9


def test_catalog_order(api, session):
    session.routes[BATCH] = [FakeResponse(201)]
    resp = api.post("/visits/31/labtests", json={"patient_id": "026", "catalog_ids": ["ecg"]})
    assert resp.json()["status"] == "saved"
    assert session.calls[0][2][0]["test_name"] == "Electrocardiogram"


@pytest.mark.parametrize("path, payload", [
    ("/visits/abc/labtests", {"patient_id": "026", "tests": [{"test_name": "CBC"}]}),
    ("/visits/31/labtests", {"patient_id": "026", "tests": []}),
    ("/visits/31/labtests", {"patient_id": "026", "catalog_ids": ["nope"]}),
])
def test_invalid_orders_are_422(api, session, path, payload):
    resp = api.post(path, json=payload)
    assert resp.status_code == 422
    assert session.calls == []


def test_drain_and_abandon_cycle(cfg, engine, session):
    cfg["queue"]["maxSyncAttempts"] = 1
    api = TestClient(create_app(cfg, session=session, engine=engine))
    api.post("/visits/31/labtests", json={"patient_id": "026", "tests": [{"test_name": "CBC"}]})

    resp = api.post("/sync/drain")
    assert resp.json() == {"synced": 0, "still_pending": 0, "abandoned": 1}

    abandoned = api.get("/sync/abandoned").json()
    assert abandoned[0]["key"] == "labtests_31_026"
    assert abandoned[0]["sync_attempts"] == 1

    session.routes[BATCH] = [FakeResponse(201)]
    requeued = api.post("/sync/abandoned/labtests_31_026/requeue").json()
    assert requeued["state"] == "created"
    assert api.post("/sync/drain").json()["synced"] == 1
    assert api.post("/sync/abandoned/missing/requeue").status_code == 404


def test_drain_conflict(api):
    queue = api.app.state.queue
    queue._drain_lock.acquire()
    try:
        assert api.post("/sync/drain").status_code == 409
    finally:
        queue._drain_lock.release()


def test_catalog(api):
    ids = [t["id"] for t in api.get("/catalog").json()]
    assert "cbc" in ids and "tsh" in ids
