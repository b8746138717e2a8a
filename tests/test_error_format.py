"""RFC 9457 problem details and health endpoints."""

from unittest.mock import patch


def test_http_errors_are_problem_json(client):
    response = client.get("/api/user/subscription-status")

    assert response.status_code == 401
    assert response.headers["content-type"].startswith("application/problem+json")
    body = response.json()
    assert body["title"] == "Unauthorized"
    assert body["instance"].startswith("urn:billsync:trace:")


def test_instance_carries_the_request_id(client):
    response = client.get("/api/user/subscription-status", headers={"X-Request-ID": "req-abc"})

    assert response.json()["instance"] == "urn:billsync:trace:req-abc"
    assert response.headers["X-Request-ID"] == "req-abc"


def test_string_details_are_wrapped(client, make_account, broker):
    from tests.billing_helpers import sign_in_cookie

    sign_in_cookie(client, broker, make_account())
    response = client.post("/api/stripe/create-portal", json={"return_url": "https://elsewhere.example"})

    assert response.status_code == 400
    body = response.json()
    assert body["type"] == "https://billsync.dev/problems/http-400"
    assert body["detail"] == "Invalid return_url"


def test_validation_errors_are_422_problem_json(client):
    response = client.post("/api/auth/session", json={})

    assert response.status_code == 422
    body = response.json()
    assert body["type"] == "https://billsync.dev/problems/validation-error"
    assert "id_token" in body["detail"]


def test_health_is_always_200(client):
    body = client.get("/health").json()

    assert body["status"] == "healthy"
    assert body["services"]["database"] == "up"


def test_readyz_reports_database_outage(client):
    with patch("billsync_api.routers.health.check_database", return_value="down: refused"):
        response = client.get("/readyz")

    assert response.status_code == 503
    assert response.json()["status"] == "not_ready"


def test_readyz_when_ready(client):
    response = client.get("/readyz")

    assert response.status_code == 200
    assert response.json()["status"] == "ready"
