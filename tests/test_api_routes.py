"""Test suite for the HTTP and WebSocket API."""

import pytest
from fastapi.testclient import TestClient

from app import create_app
from integration import OutbreakAlertSystem, SystemConfig


def diagnosis(**overrides):
    payload = {"disease": "Blast", "crop": "Rice", "severity": "Moderate",
               "region": "Maharashtra", "lat": 20.0, "lon": 75.0}
    payload.update(overrides)
    return payload


@pytest.fixture
def system(flaky_backend):
    return OutbreakAlertSystem(SystemConfig(), backend=flaky_backend)


@pytest.fixture
def client(system):
    with TestClient(create_app(system)) as test_client:
        yield test_client


def submit(client, device_id="device-1", **overrides):
    return client.post("/api/reports", json=diagnosis(**overrides), headers={"X-Device-Id": device_id})


class TestReportRoutes:
    """Test report submission and resolution"""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["system_status"]["status"] == "running"

    def test_submit_report(self, client):
        response = submit(client)

        assert response.status_code == 201
        body = response.json()
        assert body["disease_key"] == "blast"
        assert body["owner_id"] == "device-1"
        assert body["resolved"] is False

    def test_submit_invalid_report(self, client):
        response = client.post("/api/reports", json={"disease": "Blast"})

        assert response.status_code == 422
        fields = {error["field"] for error in response.json()["detail"]["errors"]}
        assert {"crop", "severity", "region"} <= fields

    def test_submit_dropped_on_storage_failure(self, client, flaky_backend):
        flaky_backend.failing_paths.add("reports")

        response = submit(client)

        assert response.status_code == 202
        assert response.json()["status"] == "dropped"

    def test_list_reports(self, client):
        report_id = submit(client).json()["id"]
        client.post(f"/api/reports/{report_id}/resolve", headers={"X-Device-Id": "device-1"})
        submit(client)

        assert len(client.get("/api/reports").json()) == 2
        assert len(client.get("/api/reports", params={"include_resolved": False}).json()) == 1

    def test_resolve_by_owner(self, client):
        report_id = submit(client).json()["id"]

        response = client.post(f"/api/reports/{report_id}/resolve", headers={"X-Device-Id": "device-1"})

        assert response.status_code == 200
        assert response.json()["resolved"] is True

    def test_resolve_by_other_device(self, client):
        report_id = submit(client).json()["id"]

        response = client.post(f"/api/reports/{report_id}/resolve", headers={"X-Device-Id": "device-2"})

        assert response.status_code == 403

    def test_resolve_unknown_report(self, client):
        response = client.post("/api/reports/missing/resolve", headers={"X-Device-Id": "device-1"})

        assert response.status_code == 404


class TestQueryRoutes:
    """Test cluster, counter and tracker queries"""

    def test_clusters(self, client):
        submit(client, lat=20.00, lon=75.00)
        submit(client, disease="blast", lat=20.02, lon=75.01)

        clusters = client.get("/api/clusters").json()

        assert len(clusters) == 1
        assert clusters[0]["count"] == 2
        assert clusters[0]["is_alert"] is True
        assert clusters[0]["tier"] == "alert"

    def test_nearby_clusters(self, client):
        submit(client)
        submit(client, lat=21.0)

        nearby = client.get("/api/clusters/nearby", params={"lat": 20.0, "lon": 75.0}).json()
        wide = client.get("/api/clusters/nearby", params={"lat": 20.0, "lon": 75.0, "radius_km": 200}).json()

        assert len(nearby) == 1
        assert len(wide) == 2
        assert client.get("/api/clusters/nearby").json() == []

    def test_nearby_clusters_rejects_bad_location(self, client):
        response = client.get("/api/clusters/nearby", params={"lat": 120.0, "lon": 75.0})

        assert response.status_code == 422

    def test_combo_counters_and_prone_alerts(self, client):
        for _ in range(3):
            submit(client, crop="Cotton", disease="wilt", lat=None, lon=None)

        assert client.get("/api/combo-counters").json() == {"maharashtra|cotton|wilt": 3}
        alerts = client.get("/api/prone-alerts").json()
        assert len(alerts) == 1
        assert alerts[0]["count"] == 3

    def test_tracker(self, client):
        submit(client)
        submit(client, region="Punjab", lat=None, lon=None)
        submit(client, region="Gujarat", crop="Wheat")

        tracker = client.get("/api/tracker").json()

        assert tracker[0]["disease_key"] == "blast"
        assert tracker[0]["count"] == 3
        assert tracker[0]["regions"] == ["Maharashtra", "Punjab", "Gujarat"]
        assert tracker[0]["status"] == "alert"


class TestVoteRoutes:
    """Test recovery votes"""

    def test_vote_once_per_device(self, client):
        first = client.post("/api/ok-votes/blast", headers={"X-Device-Id": "device-1"})
        second = client.post("/api/ok-votes/blast", headers={"X-Device-Id": "device-1"})

        assert first.json()["status"] == "counted"
        assert second.json()["status"] == "not_counted"
        assert second.json()["ok_votes"] == 1
        assert client.get("/api/ok-votes").json() == {"blast": 1}

    def test_vote_requires_device(self, client):
        response = client.post("/api/ok-votes/blast")

        assert response.status_code == 400


class TestAlertWebSocket:
    """Test live alert views"""

    def test_initial_view_and_location_update(self, client):
        submit(client, lat=20.00, lon=75.00)
        submit(client, lat=20.02, lon=75.01)

        with client.websocket_connect("/ws/alerts?device_id=device-9") as websocket:
            first = websocket.receive_json()
            assert first["local_alerts"] == []
            assert len(first["clusters"]) == 1

            websocket.send_json({"type": "location", "lat": 20.0, "lon": 75.0})
            second = websocket.receive_json()

        assert second["session_id"] == first["session_id"]
        assert len(second["local_alerts"]) == 1

    def test_invalid_location_message(self, client):
        with client.websocket_connect("/ws/alerts") as websocket:
            websocket.receive_json()
            websocket.send_json({"type": "location", "lat": 200, "lon": 0})

            assert websocket.receive_json() == {"type": "error", "message": "Invalid location"}

    def test_prone_alerts_shown_once_per_session(self, client):
        for _ in range(3):
            submit(client, crop="Cotton", disease="wilt", lat=None, lon=None)

        with client.websocket_connect("/ws/alerts") as websocket:
            first = websocket.receive_json()
            websocket.send_json({"type": "location", "lat": 20.0, "lon": 75.0})
            second = websocket.receive_json()

        assert [a["combo_key"] for a in first["prone_alerts"]] == ["maharashtra|cotton|wilt"]
        assert second["prone_alerts"] == []

    def test_non_json_message(self, client):
        with client.websocket_connect("/ws/alerts") as websocket:
            websocket.receive_json()
            websocket.send_text("not json")

            assert websocket.receive_json() == {"type": "error", "message": "Invalid message"}

            websocket.send_json({"type": "location", "lat": 20.0, "lon": 75.0})
            assert websocket.receive_json()["viewer_location"] == {"lat": 20.0, "lon": 75.0}
