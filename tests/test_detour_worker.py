import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from detour_config import DetourSettings
from detour_storage import DetourStateStore
from detour_worker import DetourWorker, ReferenceData


BASE = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
OFF_ROUTE_LATS = [44.39, 44.395, 44.40, 44.405, 44.41]


def _reference():
    return ReferenceData.from_dict(
        {
            "shapes": {
                "shape_1": [{"lat": 44.38 + i * 0.01, "lon": -79.69} for i in range(4)],
                "shape_1_variant": [[44.38 + i * 0.01, -79.685] for i in range(4)],
            },
            "trip_mapping": {"t1": {"routeId": "1", "directionId": 0}},
            "route_shape_mapping": {"1": ["shape_1", "shape_1_variant"]},
            "stops": [{"id": "s1", "name": "Mapleview", "latitude": 44.3951, "longitude": -79.6801}],
            "route_stops_mapping": {},
        }
    )


def _feed_vehicle(vid, lat, lon):
    return {"id": vid, "routeId": "1", "tripId": "t1", "coordinate": {"latitude": lat, "longitude": lon}}


async def _drive(worker, vid, start):
    now = start
    for lat in OFF_ROUTE_LATS:
        await worker.process_vehicles([_feed_vehicle(vid, lat, -79.68)], now=now)
        now += timedelta(seconds=15)
    return await worker.process_vehicles([_feed_vehicle(vid, 44.41, -79.69)], now=now)


def test_reference_data_parsing():
    reference = _reference()
    assert len(reference.shapes["shape_1"]) == 4
    assert reference.shapes["shape_1_variant"][0].lon == -79.685
    assert reference.trip_mapping["t1"] == {"route_id": "1", "direction_id": "0"}
    assert reference.stops[0].name == "Mapleview"
    assert reference.stops[0].code == "s1"


def test_process_vehicles_detects_and_records_event():
    worker = DetourWorker(reference=_reference(), vehicles_url="")

    async def scenario():
        first = await _drive(worker, "v1", BASE)
        second = await _drive(worker, "v2", BASE + timedelta(minutes=3))
        return first, second

    first, second = asyncio.run(scenario())
    assert first["detected"] == []
    assert len(second["detected"]) == 1
    detour = worker.state.active_detours[second["detected"][0]]
    assert detour.route_key == "1_0"
    assert any("Route 1: detour detected" in event for event in worker.recent_events)


def test_process_vehicles_clears_detour():
    # Wider corridor so return traffic on the variant shape counts as near the detour.
    settings = DetourSettings(route_overrides={"1": {"corridor_width_m": 150.0}})
    worker = DetourWorker(reference=_reference(), settings=settings, vehicles_url="")

    async def scenario():
        await _drive(worker, "v1", BASE)
        detected = await _drive(worker, "v2", BASE + timedelta(minutes=3))
        now = BASE + timedelta(minutes=10)
        first = await worker.process_vehicles([_feed_vehicle("c1", 44.40, -79.685)], now=now)
        second = await worker.process_vehicles([_feed_vehicle("c2", 44.40, -79.685)], now=now)
        return detected, first, second

    detected, first, second = asyncio.run(scenario())
    detour_id = detected["detected"][0]
    assert first["cleared"] == []
    assert second["cleared"] == [detour_id]
    detour = worker.state.active_detours[detour_id]
    assert detour.status == "cleared"
    assert detour.cleared_by_vehicle == "c2"
    assert any("Route 1: detour cleared" in event for event in worker.recent_events)


def test_alerts_feed_official_detours_and_correlation():
    worker = DetourWorker(reference=_reference(), vehicles_url="")

    async def scenario():
        await _drive(worker, "v1", BASE)
        await _drive(worker, "v2", BASE + timedelta(minutes=3))
        count = await worker.set_alerts(
            [
                {"id": "A1", "effect": "Detour", "affectedRoutes": ["1"], "title": "Dunlop closure"},
                {"id": "A2", "effect": "Reduced Service", "affectedRoutes": ["7A"]},
                {"effect": "Detour"},
            ],
            now=BASE + timedelta(minutes=5),
        )
        detours = await worker.active_detours(now=BASE + timedelta(minutes=5))
        return count, detours

    count, detours = asyncio.run(scenario())
    assert count == 2
    assert [d.route_id for d in detours] == ["7", "1"]
    auto = detours[1]
    assert auto.official_alert.matched is True
    assert auto.alert_correlation == "matched"
    assert [s.id for s in auto.affected_stops] == ["s1"]
    assert auto.segment_label == "Near Mapleview"


def test_sweep_archives_expired_detours():
    worker = DetourWorker(reference=_reference(), vehicles_url="")

    async def scenario():
        await _drive(worker, "v1", BASE)
        await _drive(worker, "v2", BASE + timedelta(minutes=3))
        archived = await worker.sweep(now=BASE + timedelta(hours=2))
        history = await worker.history()
        return archived, history

    archived, history = asyncio.run(scenario())
    assert [e.archive_reason for e in archived] == ["expired"]
    assert len(history) == 1
    assert worker.state.active_detours == {}
    assert worker.state.vehicle_tracking == {}
    assert any("detour expired" in event for event in worker.recent_events)


def test_tick_fetches_vehicle_feed():
    payload = {"vehicles": [_feed_vehicle("v1", 44.40, -79.68), {"id": "bad"}]}

    def handler(request: httpx.Request) -> httpx.Response:
        assert str(request.url) == "http://feed.test/vehicles"
        return httpx.Response(200, json=payload)

    worker = DetourWorker(reference=_reference(), vehicles_url="http://feed.test/vehicles")

    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await worker.tick(client, now=BASE)

    assert asyncio.run(scenario()) is True
    assert worker.tick_count == 1
    assert worker.consecutive_failures == 0
    assert worker.last_successful_tick == BASE
    assert worker.state.vehicle_tracking["v1"].is_currently_off_route


def test_tick_failure_is_counted_and_logged(capsys):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, json={"error": "upstream"})

    worker = DetourWorker(reference=_reference(), vehicles_url="http://feed.test/vehicles")

    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            first = await worker.tick(client)
            second = await worker.tick(client)
            return first, second

    assert asyncio.run(scenario()) == (False, False)
    assert worker.tick_count == 0
    assert worker.consecutive_failures == 2
    assert worker.last_error
    assert "[detour-worker] tick failed (2 consecutive)" in capsys.readouterr().out


def test_tick_without_feed_url_is_skipped():
    worker = DetourWorker(vehicles_url="")

    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500))) as client:
            return await worker.tick(client)

    assert asyncio.run(scenario()) is False
    assert worker.consecutive_failures == 0


def test_persist_writes_only_dirty_state(tmp_path):
    store = DetourStateStore(tmp_path / "detour_state.json")
    worker = DetourWorker(reference=_reference(), store=store, vehicles_url="", persist_interval_s=3600)

    async def scenario():
        clean = await worker.persist()
        await worker.process_vehicles([_feed_vehicle("v1", 44.40, -79.68)], now=BASE)
        first = await worker.persist()
        await worker.process_vehicles([_feed_vehicle("v1", 44.41, -79.68)], now=BASE + timedelta(seconds=15))
        throttled = await worker.persist()
        forced = await worker.persist(force=True)
        return clean, first, throttled, forced

    assert asyncio.run(scenario()) == (False, True, False, True)
    restored = DetourStateStore(tmp_path / "detour_state.json").load()
    assert len(restored.vehicle_tracking["v1"].off_route_breadcrumbs) == 2


def test_persist_failure_is_retried(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("x")
    worker = DetourWorker(
        reference=_reference(),
        store=DetourStateStore(blocker / "detour_state.json"),
        vehicles_url="",
    )

    async def scenario():
        await worker.process_vehicles([_feed_vehicle("v1", 44.40, -79.68)], now=BASE)
        first = await worker.persist()
        blocker.unlink()
        second = await worker.persist()
        return first, second

    assert asyncio.run(scenario()) == (False, True)


def test_diagnostics_reports_engine_and_worker_status():
    worker = DetourWorker(reference=_reference(), vehicles_url="")

    async def scenario():
        await _drive(worker, "v1", BASE)
        return await worker.diagnostics()

    diagnostics = asyncio.run(scenario())
    assert diagnostics["engine"]["pending_paths"] == 1
    assert diagnostics["worker"]["tick_count"] == 0
    assert diagnostics["worker"]["vehicles_url_configured"] is False
    assert diagnostics["storage"]["path"] is None


def test_malformed_batch_entries_do_not_block_the_batch(capsys):
    worker = DetourWorker(reference=_reference(), vehicles_url="")

    async def scenario():
        return await worker.process_vehicles(
            [None, "v9", 42, _feed_vehicle("v1", 44.40, -79.68)],
            now=BASE,
        )

    result = asyncio.run(scenario())
    assert result["processed"] == 1
    assert worker.state.vehicle_tracking["v1"].is_currently_off_route
    assert "[detour-worker] skipping malformed vehicle entry: None" in capsys.readouterr().out


def test_reference_data_ignores_wrong_section_types():
    reference = ReferenceData.from_dict(
        {
            "shapes": [[44.38, -79.69], [44.39, -79.69]],
            "trip_mapping": ["t1"],
            "route_shape_mapping": "shape_1",
            "stops": 5,
            "route_stops_mapping": None,
        }
    )
    assert reference.shapes == {}
    assert reference.trip_mapping == {}
    assert reference.route_shape_mapping == {}
    assert reference.stops == []
    assert reference.route_stops_mapping == {}
