def test_health_reports_readiness(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["readiness"]["database"]["ok"] is True
    assert body["readiness"]["cleanup_scheduler"]["running"] is False
    assert body["readiness"]["live_connections"] == 0


def test_security_headers_and_request_id(client):
    response = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-Request-ID"] == "req-123"


def test_metrics_endpoint(client):
    client.get("/health")
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "inventory_http_requests_total" in response.text


def test_validation_errors_use_error_envelope(client):
    response = client.post("/api/v1/auth/login", json={"email": "not-an-email"})
    assert response.status_code == 422
    body = response.json()
    assert body["success"] is False
    fields = {item["field"] for item in body["details"]}
    assert "body.email" in fields
    assert "body.password" in fields
