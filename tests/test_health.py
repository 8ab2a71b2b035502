def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ok"
    assert payload["trace_id"]
    assert response.headers["X-Trace-ID"] == payload["trace_id"]


def test_ready(client):
    response = client.get("/ready")
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ready"
    assert payload["trace_id"]


def test_trace_id_is_echoed_from_request(client):
    response = client.get("/health", headers={"X-Trace-ID": "trace-health-1"})
    assert response.status_code == 200
    assert response.json()["trace_id"] == "trace-health-1"
    assert response.headers["X-Trace-ID"] == "trace-health-1"


def test_openapi_documents_transition_errors(client):
    schema = client.get("/openapi.json").json()
    approve = schema["paths"]["/surplus/transfers/{transfer_id}/approve"]["post"]
    assert {"403", "404", "409", "422"} <= set(approve["responses"])
    assert "ApiErrorResponse" in schema["components"]["schemas"]
