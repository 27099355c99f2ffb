import threading

import pytest
import requests

from client import DeliveryStatus, RemoteLabTestClient
from config import DEFAULTS
from errors import DeliveryCancelled, DeliveryFailed, ValidationFailed
from helpers import BASE, FakeResponse, FakeSession

BATCH = f"{BASE}/api/labtests/batch"
VISIT_BATCH = f"{BASE}/api/visits/31/labtests/batch"
SINGLE = f"{BASE}/api/labtests"

TESTS = [{"test_name": "CBC"}, {"test_name": "ESR"}]


def make_client(cfg, **routes):
    session = FakeSession(routes)
    return RemoteLabTestClient(cfg["remote"], session=session), session


def test_batch_success_maps_remote_ids(cfg):
    created = {"created": [{"test_id": 11, "name": "ESR"}, {"test_id": 10, "name": "CBC"}], "status": "SUCCESS"}
    client, session = make_client(cfg, **{BATCH: [FakeResponse(201, created)]})

    result = client.submit_batch(31, TESTS, "026")

    assert result.status == DeliveryStatus.ALL
    assert [o.remote_id for o in result.outcomes] == [10, 11]
    assert session.urls() == [BATCH]
    body = session.calls[0][2]
    assert isinstance(body, list)
    assert body[0]["test_name"] == "CBC"
    assert body[0]["visit_id"] == 31


def test_batch_success_without_body(cfg):
    client, _ = make_client(cfg, **{BATCH: [FakeResponse(200)]})
    result = client.submit_batch(31, TESTS, "026")
    assert result.status == DeliveryStatus.ALL
    assert all(o.remote_id is None for o in result.outcomes)


def test_falls_back_to_next_batch_strategy(cfg):
    client, session = make_client(cfg, **{BATCH: [FakeResponse(404)], VISIT_BATCH: [FakeResponse(201)]})

    result = client.submit_batch("31", TESTS, "026")

    assert result.status == DeliveryStatus.ALL
    assert session.urls() == [BATCH, VISIT_BATCH]
    wrapped = session.calls[1][2]
    assert wrapped["visit_id"] == 31
    assert wrapped["patient_id"] == "026"
    assert len(wrapped["tests"]) == 2
    assert {o.strategy for o in result.outcomes} == {"/api/visits/{visit_id}/labtests/batch"}


def test_per_record_fallback_after_batch_failure(cfg):
    client, session = make_client(
        cfg,
        **{
            BATCH: [FakeResponse(500)],
            VISIT_BATCH: [requests.ConnectionError("refused")],
            SINGLE: [FakeResponse(201, {"testId": 1}), FakeResponse(500), FakeResponse(201, {"testId": 2})],
        },
    )

    result = client.submit_batch(31, TESTS, "026")

    assert result.status == DeliveryStatus.ALL
    assert [o.remote_id for o in result.outcomes] == [1, 2]
    assert session.urls() == [BATCH, VISIT_BATCH, SINGLE, SINGLE, SINGLE]


def test_multi_status_retries_rejected_records(cfg):
    partial = {"created": [{"test_id": 5, "name": "CBC"}], "errors": ["boom"], "status": "PARTIAL_SUCCESS"}
    client, session = make_client(cfg, **{BATCH: [FakeResponse(207, partial)], SINGLE: [FakeResponse(400)]})

    result = client.submit_batch(31, TESTS, "026")

    assert result.status == DeliveryStatus.PARTIAL
    cbc, esr = result.outcomes
    assert cbc.accepted and cbc.remote_id == 5
    assert not esr.accepted
    assert "400" in esr.error
    assert session.urls().count(SINGLE) == 3


def test_total_failure_raises_with_every_record_accounted(cfg):
    client, session = make_client(cfg)

    with pytest.raises(DeliveryFailed) as excinfo:
        client.submit_batch(31, TESTS, "026")

    err = excinfo.value
    assert isinstance(err.last_error, requests.HTTPError)
    assert err.result.status == DeliveryStatus.NONE
    assert [o.record.test_name for o in err.result.outcomes] == ["CBC", "ESR"]
    # 2 batch strategies, then 3 attempts per record
    assert len(session.calls) == 2 + 3 * 2


def test_transport_error_is_kept_as_last_error(cfg):
    cfg["remote"]["batchStrategies"] = []
    client, _ = make_client(cfg, **{SINGLE: [requests.Timeout("slow")]})

    with pytest.raises(DeliveryFailed) as excinfo:
        client.submit_batch(31, [{"test_name": "CBC"}], "026")

    assert isinstance(excinfo.value.last_error, requests.Timeout)


def test_non_numeric_visit_is_rejected_before_network(cfg):
    client, session = make_client(cfg)
    with pytest.raises(ValidationFailed):
        client.submit_batch("abc", [{"test_name": "CBC", "status": "pending"}], "026")
    assert session.calls == []


def test_missing_test_name_is_rejected_before_network(cfg):
    client, session = make_client(cfg)
    with pytest.raises(ValidationFailed):
        client.submit_batch(31, [{"test_name": ""}], "026")
    with pytest.raises(ValidationFailed):
        client.submit_batch(31, [], "026")
    assert session.calls == []


def test_cancelled_submission_makes_no_calls(cfg):
    client, session = make_client(cfg)
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(DeliveryCancelled, match="cancelled"):
        client.submit_batch(31, TESTS, "026", cancel=cancel)
    assert session.calls == []


def test_cancel_during_retry_wait_stops_record_delivery(cfg, caplog):
    cancel = threading.Event()

    class CancellingSession(FakeSession):
        def post(self, url, **kwargs):
            if url == SINGLE:
                cancel.set()
            return super().post(url, **kwargs)

    session = CancellingSession({SINGLE: [FakeResponse(503)]})
    client = RemoteLabTestClient(cfg["remote"], session=session)

    with caplog.at_level("INFO", logger="client"):
        with pytest.raises(DeliveryCancelled):
            client.submit_batch(31, TESTS, "026", cancel=cancel)

    assert session.urls() == [BATCH, VISIT_BATCH, SINGLE]
    assert "cancelled after attempt 1" in caplog.text
    assert "Failed to save lab test" not in caplog.text


def test_each_submission_gets_its_own_cancel_state(cfg):
    client, session = make_client(cfg, **{BATCH: [FakeResponse(201)]})
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(DeliveryCancelled):
        client.submit_batch(31, TESTS, "026", cancel=cancel)

    assert client.submit_batch(31, TESTS, "026").status == DeliveryStatus.ALL
    assert session.urls() == [BATCH]


def test_expired_deadline_stops_retries(cfg):
    cfg["remote"]["deadline"] = 0
    client, session = make_client(cfg)

    with pytest.raises(DeliveryFailed, match="deadline"):
        client.submit_batch(31, TESTS, "026")
    assert session.calls == []


def test_backoff_is_capped():
    client = RemoteLabTestClient(DEFAULTS["remote"], session=FakeSession())
    assert [client.backoff(n) for n in range(1, 6)] == [0.5, 1.0, 1.5, 2.0, 2.0]


def test_unknown_shape_is_a_config_error(cfg):
    cfg["remote"]["batchStrategies"] = [{"endpoint": "/x", "shape": "csv"}]
    with pytest.raises(ValueError, match="shape"):
        RemoteLabTestClient(cfg["remote"], session=FakeSession())


def test_fetch_visit_tests(cfg):
    stored = [
        {"test_id": 1, "visit_id": 31, "patient_id": "026", "test_name": "CBC", "status": "normal"},
        {"test_id": 2, "visit_id": 31, "test_name": ""},
    ]
    client, _ = make_client(cfg, **{f"{BASE}/api/labtests/visit/31": [FakeResponse(200, stored)]})

    tests = client.fetch_visit_tests(31)

    assert [t.test_name for t in tests] == ["CBC"]
    assert tests[0].status.value == "normal"


def test_fetch_visit_tests_falls_back_to_patient_route(cfg):
    patient_url = f"{BASE}/api/labtests/visit/31/patient/026"
    client, session = make_client(cfg, **{patient_url: [FakeResponse(200, [{"name": "TSH"}])]})

    tests = client.fetch_visit_tests(31, "026")

    assert tests[0].test_name == "TSH"
    assert tests[0].visit_id == 31
    assert session.urls("GET") == [f"{BASE}/api/labtests/visit/31", patient_url]


def test_fetch_visit_tests_fails_when_every_route_fails(cfg):
    client, _ = make_client(cfg)
    with pytest.raises(DeliveryFailed):
        client.fetch_visit_tests(31)


def test_check_health(cfg):
    client, _ = make_client(cfg, **{f"{BASE}/api/health": [FakeResponse(200, {"status": "UP"})]})
    assert client.check_health() is True

    down, _ = make_client(cfg, **{f"{BASE}/api/health": [requests.ConnectionError("down")]})
    assert down.check_health() is False


def test_fetch_visit_tests_encodes_patient_id(cfg):
    patient_url = f"{BASE}/api/labtests/visit/31/patient/P%7B1%7D%2F..%2Fadmin"
    client, session = make_client(cfg, **{patient_url: [FakeResponse(200, [{"name": "TSH"}])]})

    tests = client.fetch_visit_tests(31, "P{1}/../admin")

    assert tests[0].test_name == "TSH"
    assert session.urls("GET")[-1] == patient_url


def test_fetch_visit_tests_with_brace_in_patient_id_fails_cleanly(cfg):
    client, _ = make_client(cfg)
    with pytest.raises(DeliveryFailed):
        client.fetch_visit_tests(31, "P{1}")
