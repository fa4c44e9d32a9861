from fastapi.testclient import TestClient

from riskgate import app as app_module


def _client():
    return TestClient(app_module.app)


def test_validation_errors_list_every_field():
    response = _client().post(
        "/users",
        json={"username": "a!", "email": "not-an-email", "password": "weak"},
    )
    assert response.status_code == 400
    body = response.json()
    assert body["status"] == "error"
    assert body["error"]["code"] == "validation_error"
    paths = {detail["path"] for detail in body["error"]["details"]}
    assert {"username", "email", "password"} <= paths
    assert len(paths) == 4
    assert all(detail["message"] for detail in body["error"]["details"])


def test_password_messages_are_specific():
    response = _client().post(
        "/users",
        json={
            "username": "alice",
            "email": "alice@example.com",
            "password": "alllowercase",
            "fullName": "Alice",
        },
    )
    assert response.status_code == 400
    (detail,) = response.json()["error"]["details"]
    assert detail["path"] == "password"
    assert "uppercase" in detail["message"]
    assert not detail["message"].startswith("Value error")


def test_missing_bearer_token():
    response = _client().get("/users/current")
    assert response.status_code == 401
    assert response.json()["error"] == {
        "code": "unauthorized",
        "message": "Missing bearer token",
        "details": None,
    }


def test_unknown_token():
    response = _client().get("/users/current", headers={"Authorization": "Bearer deadbeef"})
    assert response.status_code == 401
    assert response.json()["error"]["message"] == "Invalid or expired token"


def test_duplicate_registration_is_conflict():
    client = _client()
    body = {
        "username": "alice",
        "email": "alice@example.com",
        "password": "Str0ng#Pass",
        "fullName": "Alice Example",
    }
    assert client.post("/users", json=body).status_code == 201
    response = client.post("/users", json={**body, "username": "Alice"})
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "conflict"
    assert {d["path"] for d in response.json()["error"]["details"]} == {"username", "email"}


def test_snake_case_body_is_accepted():
    response = _client().post(
        "/users",
        json={
            "username": "carol",
            "email": "carol@example.com",
            "password": "Str0ng#Pass",
            "full_name": "Carol Example",
        },
    )
    assert response.status_code == 201
    assert response.json()["data"]["fullName"] == "Carol Example"


def test_request_id_and_security_headers():
    response = _client().get("/healthz", headers={"X-Request-ID": "req-123"})
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.headers["x-request-id"] == "req-123"
    assert response.headers["x-frame-options"] == "DENY"
    assert response.headers["cache-control"] == "no-store"
