import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

from fastapi.testclient import TestClient

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from app import app  # noqa: E402
from detour_worker import DetourWorker  # noqa: E402


BASE = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
OFF_ROUTE_LATS = [44.39, 44.395, 44.40, 44.405, 44.41]

REFERENCE = {
    "shapes": {
        "shape_1": [{"lat": 44.38 + i * 0.01, "lon": -79.69} for i in range(4)],
        "shape_1_variant": [{"lat": 44.38 + i * 0.01, "lon": -79.685} for i in range(4)],
    },
    "trip_mapping": {},
    "route_shape_mapping": {"1": ["shape_1", "shape_1_variant"]},
    "stops": [{"id": "s1", "name": "Mapleview", "lat": 44.3951, "lon": -79.6801}],
    "route_stops_mapping": {"1": ["s1"]},
}


def _client() -> TestClient:
    app.state.detour_worker = DetourWorker(vehicles_url="")
    return TestClient(app)


def _vehicle(vid, lat, lon):
    return {"id": vid, "routeId": "1", "directionId": "0", "coordinate": {"latitude": lat, "longitude": lon}}


def _post_batch(client, vehicles, when):
    response = client.post(
        "/api/detours/vehicles",
        json={"timestamp": when.isoformat(), "vehicles": vehicles},
    )
    assert response.status_code == 200
    return response.json()


def _drive(client, vid, start):
    now = start
    for lat in OFF_ROUTE_LATS:
        _post_batch(client, [_vehicle(vid, lat, -79.68)], now)
        now += timedelta(seconds=15)
    return _post_batch(client, [_vehicle(vid, 44.41, -79.69)], now)


def test_detection_round_trip_over_http():
    client = _client()
    loaded = client.post("/api/detours/reference", json=REFERENCE)
    assert loaded.status_code == 200
    assert loaded.json() == {"shapes": 2, "trips": 0, "routes": 1, "stops": 1}

    _drive(client, "v1", BASE)
    result = _drive(client, "v2", BASE + timedelta(minutes=2))
    assert len(result["detected"]) == 1

    listing = client.get("/api/detours").json()
    assert listing["count"] == 1
    detour = listing["detours"][0]
    assert detour["route_id"] == "1"
    assert detour["status"] == "suspected"
    assert detour["segment_label"] == "Near Mapleview"
    # Straight-line corridor collapses to its endpoints for display.
    assert len(detour["polyline"]) == 2

    route = client.get("/api/detours/routes/1", params={"direction_id": "0"}).json()
    assert route["has_active_detour"] is True
    assert [d["id"] for d in route["detours"]] == [detour["id"]]

    other = client.get("/api/detours/routes/1", params={"direction_id": "1"}).json()
    assert other["has_active_detour"] is False


def test_alerts_endpoint_adds_official_detours():
    client = _client()
    response = client.post(
        "/api/detours/alerts",
        json={"alerts": [{"id": "A1", "effect": "Detour", "title": "Bridge work", "affectedRoutes": ["8B"]}]},
    )
    assert response.status_code == 200
    assert response.json() == {"alerts": 1}

    detours = client.get("/api/detours").json()["detours"]
    assert [d["id"] for d in detours] == ["official_alert_A1_8"]
    assert detours[0]["alert_correlation"] == "official-only"
    assert detours[0]["confidence_score"] == 96


def test_history_endpoint_after_expiry():
    client = _client()
    client.post("/api/detours/reference", json=REFERENCE)
    _drive(client, "v1", BASE)
    _drive(client, "v2", BASE + timedelta(minutes=2))
    _post_batch(client, [], BASE + timedelta(hours=2))

    history = client.get("/api/detours/history", params={"route_id": "1"}).json()
    assert history["count"] == 1
    assert history["history"][0]["archive_reason"] == "expired"
    assert client.get("/api/detours/history", params={"route_id": "2"}).json()["count"] == 0
    assert client.get("/api/detours/history", params={"limit": 0}).json()["count"] == 0
    assert client.get("/api/detours/history", params={"limit": -1}).status_code == 422


def test_diagnostics_and_health():
    client = _client()
    client.post("/api/detours/reference", json=REFERENCE)
    _drive(client, "v1", BASE)

    diagnostics = client.get("/api/detours/diagnostics").json()
    assert diagnostics["engine"]["pending_paths"] == 1
    assert diagnostics["worker"]["consecutive_failures"] == 0

    health = client.get("/v1/health").json()
    assert health["ok"] is True
    assert health["active_detours"] == 0


def test_bad_payloads_are_rejected():
    client = _client()
    assert client.post("/api/detours/vehicles", json={"vehicles": "nope"}).status_code == 400
    assert client.post("/api/detours/vehicles", json={"vehicles": [], "timestamp": "yesterday"}).status_code == 400
    assert client.post("/api/detours/alerts", json={"alerts": {}}).status_code == 400
    assert client.post("/api/detours/reference", json=[1, 2]).status_code == 400
    assert client.post("/api/detours/reference", json={"shapes": [[44.38, -79.69]]}).status_code == 400
    assert client.post("/api/detours/reference", json={"trip_mapping": ["t1"]}).status_code == 400
    assert client.post("/api/detours/reference", json={"stops": {"s1": {}}}).status_code == 400


def test_bare_list_payload_is_accepted():
    client = _client()
    client.post("/api/detours/reference", json=REFERENCE)
    response = client.post("/api/detours/vehicles", json=[_vehicle("v1", 44.40, -79.68)])
    assert response.status_code == 200
    assert response.json()["processed"] == 1


def test_missing_worker_returns_503():
    app.state.detour_worker = None
    client = TestClient(app)
    assert client.get("/api/detours").status_code == 503
    assert client.get("/v1/health").status_code == 503


def test_malformed_vehicle_entries_are_skipped():
    client = _client()
    client.post("/api/detours/reference", json=REFERENCE)
    response = client.post(
        "/api/detours/vehicles",
        json={"vehicles": [None, 7, _vehicle("v1", 44.40, -79.68)]},
    )
    assert response.status_code == 200
    assert response.json()["processed"] == 1
