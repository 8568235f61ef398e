def test_health_endpoint_returns_ok(client):
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["service"] == "Communication Audit API"
    assert "version" in body
    assert "environment" in body


def test_health_needs_no_token(client):
    assert client.get("/health", headers={"Authorization": "Bearer junk"}).status_code == 200
