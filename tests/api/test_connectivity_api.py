"""Tests for connectivity reporting, health and the root endpoint."""


class TestConnectivity:
    """Test suite for the connectivity endpoints."""

    def test_initial_state(self, client, researcher_headers):
        response = client.get("/api/connectivity", headers=researcher_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "online"
        assert body["is_online"] is True
        assert body["pending_records"] == 0
        assert body["offline_cache_size"] == 0

    def test_offline_capture_and_reconnect_sync(self, client, researcher_headers, admin_headers):
        offline = client.put("/api/connectivity", json={"online": False}, headers=researcher_headers)
        assert offline.json()["status"] == "offline"

        created = client.post(
            "/api/patients",
            json={
                "patient_external_id": "PAT-400001-OFF",
                "first_name": "Lee",
                "last_name": "Park",
                "diagnosis": "Migraine",
            },
            headers=researcher_headers,
        )
        assert created.status_code == 201
        status = client.get("/api/connectivity", headers=researcher_headers).json()
        assert status["pending_records"] == 1
        assert status["offline_cache_size"] == 1

        online = client.put("/api/connectivity", json={"online": True}, headers=researcher_headers).json()

        assert online["status"] == "online"
        assert online["pending_records"] == 0
        assert online["offline_cache_size"] == 0
        entries = client.get(
            "/api/admin/audit-logs",
            params={"action": "SYNC_PATIENT"},
            headers=admin_headers,
        ).json()["entries"]
        assert [entry["actor_email"] for entry in entries] == ["system"]

    def test_single_sync_while_offline_is_deferred(self, client, researcher_headers):
        record = client.post(
            "/api/patients",
            json={"patient_external_id": "PAT-400002-OFF", "first_name": "Sam", "last_name": "Ng"},
            headers=researcher_headers,
        ).json()
        client.put("/api/connectivity", json={"online": False}, headers=researcher_headers)

        result = client.post(f"/api/patients/{record['id']}/sync", headers=researcher_headers).json()

        assert result["outcome"] == "deferred"
        assert result["sync_status"] == "pending"

    def test_requires_authentication(self, client):
        assert client.put("/api/connectivity", json={"online": False}).status_code == 401


class TestHealth:
    def test_healthy(self, client):
        response = client.get("/api/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database"] == {"status": "connected", "type": "memory", "response_time_ms": None}
        assert body["connectivity"] == "online"

    def test_degraded_while_offline(self, client, researcher_headers):
        client.put("/api/connectivity", json={"online": False}, headers=researcher_headers)
        assert client.get("/api/health").json()["status"] == "degraded"

    def test_root(self, client):
        body = client.get("/").json()
        assert body["message"] == "Clinical-Sync API"
        assert body["health"] == "/api/health"
