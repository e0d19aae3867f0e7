def test_request_id_is_added(client) -> None:
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.headers.get("x-request-id", "").startswith("req_")


def test_incoming_request_id_is_echoed(client) -> None:
    response = client.get("/healthz", headers={"x-request-id": "req-abc"})
    assert response.headers["x-request-id"] == "req-abc"


def test_auth_errors_carry_request_id(client) -> None:
    response = client.get("/v1/models", headers={"x-request-id": "req-denied"})
    assert response.status_code == 401
    assert response.headers["x-request-id"] == "req-denied"
    assert response.json()["error"]["request_id"] == "req-denied"
