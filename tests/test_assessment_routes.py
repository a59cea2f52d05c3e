from __future__ import annotations

import logging

import pytest
from fastapi.testclient import TestClient

from services.assessment import container as container_module
from services.assessment.app import create_app


@pytest.fixture
def container(make_container):
    return make_container()


@pytest.fixture
def client(container):
    return TestClient(create_app(container))


def _body(rd_input, identity="u1", **extra):
    return {"identity": identity, "domainInput": rd_input, **extra}


def test_sync_assess_returns_result(client, rd_input) -> None:
    resp = client.post("/assess", json=_body(rd_input))
    assert resp.status_code == 200
    data = resp.json()
    assert data["result"]["eligibilityScore"] == 82
    assert data["isFallback"] is False
    assert data["assessmentType"] == "rd_assessment"
    assert data["jobId"].startswith("job_")
    assert data["timestamp"]
    assert resp.headers["x-request-id"]


def test_legacy_user_id_field_is_accepted(client, rd_input) -> None:
    resp = client.post("/assess", json={"userId": "u1", "domainInput": rd_input})
    assert resp.status_code == 200


def test_request_id_header_is_echoed(client, rd_input) -> None:
    resp = client.post("/assess", json=_body(rd_input), headers={"x-request-id": "abc123"})
    assert resp.headers["x-request-id"] == "abc123"


def test_rate_limit_returns_429_with_retry_after(client, rd_input) -> None:
    for _ in range(3):
        assert client.post("/assess", json=_body(rd_input)).status_code == 200
    resp = client.post("/assess", json=_body(rd_input))
    assert resp.status_code == 429
    assert resp.json()["retryAfterMs"] == 60_000
    assert resp.json()["error"]
    assert resp.headers["retry-after"] == "60"


@pytest.mark.parametrize(
    "payload, fragment",
    [
        ({"domainInput": {"query": "q"}}, "identity is required"),
        ({"identity": "u1", "domainInput": {"query": "q"}}, "Missing required fields"),
        ({"identity": "u1", "domainInput": {}, "assessmentType": "nope"}, "Unknown assessment type"),
        ({"identity": "u1", "domainInput": "plain text"}, "domainInput"),
    ],
)
def test_bad_requests_return_400(client, payload, fragment) -> None:
    resp = client.post("/assess", json=payload)
    assert resp.status_code == 400
    assert fragment in resp.json()["error"]


def test_malformed_json_returns_400(client) -> None:
    resp = client.post("/assess", content=b"{not json", headers={"Content-Type": "application/json"})
    assert resp.status_code == 400
    assert "error" in resp.json()


def test_async_flow(client, container, run_queued, rd_input) -> None:
    resp = client.post("/assess-async", json=_body(rd_input))
    assert resp.status_code == 202
    job_id = resp.json()["jobId"]
    assert resp.json()["status"] == "processing"

    pending = client.get("/assess-status", params={"jobId": job_id, "identity": "u1"})
    assert pending.status_code == 200
    assert pending.json()["status"] == "processing"

    run_queued(container)
    done = client.get("/assess-status", params={"jobId": job_id, "identity": "u1"})
    assert done.json()["status"] == "completed"
    assert done.json()["result"]["eligibilityScore"] == 82


def test_async_rate_limit(client, rd_input) -> None:
    for _ in range(3):
        assert client.post("/assess-async", json=_body(rd_input)).status_code == 202
    assert client.post("/assess-async", json=_body(rd_input)).status_code == 429


def test_status_hides_other_identities_jobs(client, rd_input) -> None:
    job_id = client.post("/assess-async", json=_body(rd_input)).json()["jobId"]
    resp = client.get("/assess-status", params={"jobId": job_id, "identity": "intruder"})
    assert resp.status_code == 404
    assert resp.json() == {"error": "Job not found"}


def test_status_requires_job_id(client) -> None:
    resp = client.get("/assess-status", params={"identity": "u1"})
    assert resp.status_code == 400


def test_cancel_endpoint(client, rd_input) -> None:
    job_id = client.post("/assess-async", json=_body(rd_input)).json()["jobId"]
    resp = client.post("/assess-cancel", json={"identity": "u1", "jobId": job_id})
    assert resp.status_code == 200
    assert resp.json()["cancelled"] is True
    status = client.get("/assess-status", params={"jobId": job_id, "identity": "u1"}).json()
    assert status == {**status, "status": "failed", "message": "cancelled"}


@pytest.mark.parametrize("path", ["/assess", "/assess-async", "/assess-status", "/anything"])
def test_options_preflight_returns_204(client, path) -> None:
    resp = client.options(path, headers={"Origin": "https://app.example", "Access-Control-Request-Method": "POST"})
    assert resp.status_code == 204
    assert resp.headers["access-control-allow-origin"] == "*"
    assert resp.headers["access-control-allow-methods"] == "GET, POST, OPTIONS"
    assert resp.headers["access-control-allow-headers"] == "Content-Type"


def test_unsupported_method_returns_405(client) -> None:
    resp = client.put("/assess", json={})
    assert resp.status_code == 405
    assert resp.json() == {"error": "Method not allowed"}
    assert "POST" in resp.headers["allow"]
    assert client.get("/assess").status_code == 405


def test_health_reports_inline_queue(client) -> None:
    resp = client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["checks"]["queue"] == {"status": "ok", "backend": "inline"}
    assert data["checks"]["redis"]["status"] == "skipped"
    assert "rd_assessment" in data["assessmentTypes"]


def test_lifespan_builds_and_releases_shared_container(tmp_path, monkeypatch) -> None:
    for name in ("LLM_API_KEY", "OPENAI_API_KEY", "JOB_QUEUE_BACKEND", "RATE_LIMIT_BACKEND", "JOB_STORE_BACKEND"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("JOB_STORE_DIR", str(tmp_path / "jobs"))
    monkeypatch.setenv("ASSESS_PROFILES_PATH", "")
    container_module.reset_container()
    root = logging.getLogger()
    saved = (root.level, root.handlers[:])

    app = create_app()
    try:
        with TestClient(app) as client:
            resp = client.get("/health")
            assert resp.status_code == 200
            assert resp.json()["checks"]["model"]["status"] == "degraded"
            assert app.state.container is container_module.get_container()
    finally:
        root.setLevel(saved[0])
        root.handlers[:] = saved[1]
    assert app.state.container is None
    assert container_module._CONTAINER is None
