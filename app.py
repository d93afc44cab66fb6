"""
Detour Detection Service: FastAPI wrapper around the detour engine

Purpose
=======
Watch live transit-vehicle positions and infer route detours when several
independent vehicles leave their published shape in the same place and later
rejoin it. Detours clear once on-route vehicles are seen back near the
detour, and expire on a confidence-tiered schedule.

Key features
------------
- Poll a JSON vehicle feed (VEHICLES_URL) or accept pushed vehicle batches.
- Correlate detours with official service alerts.
- Persist engine state as a JSON snapshot and restore it on start-up.
- REST endpoints for active detours, per-route lookups, history and diagnostics.

Run
---
$ uvicorn app:app --reload --port 8080

Environment
-----------
- PYTHON >= 3.10
- pip install fastapi uvicorn httpx
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
from pathlib import Path
import asyncio, os

import httpx
from fastapi import Body, FastAPI, HTTPException, Query

from detour_config import DEFAULT_DETOUR_CONFIG_PATH, load_detour_settings
from detour_geometry import douglas_peucker_simplify
from detour_state import Detour, isoformat, parse_timestamp
from detour_storage import DetourStateStore
from detour_worker import DetourWorker, ReferenceData


DETOUR_STATE_PATH = Path(os.getenv("DETOUR_STATE_PATH", "/data/detour_state.json"))
POLYLINE_DISPLAY_TOLERANCE_M = 8.0
MAX_HISTORY_LIMIT = 500
REFERENCE_MAPPING_KEYS = ("shapes", "trip_mapping", "route_shape_mapping", "route_stops_mapping")

# ---------------------------
# App & state
# ---------------------------
app = FastAPI(title="Detour Detection Service")


@app.on_event("startup")
async def init_detour_worker() -> None:
    # A worker attached before start-up (tests, embedding) is kept as-is.
    if getattr(app.state, "detour_worker", None) is None:
        settings = load_detour_settings(DEFAULT_DETOUR_CONFIG_PATH)
        store = DetourStateStore(DETOUR_STATE_PATH)
        app.state.detour_worker = DetourWorker(store.load(), settings=settings, store=store)
    app.state.http_client = httpx.AsyncClient(timeout=10.0)
    worker: DetourWorker = app.state.detour_worker
    app.state.detour_task = asyncio.create_task(worker.run_forever(app.state.http_client))


@app.on_event("shutdown")
async def shutdown_detour_worker() -> None:
    task = getattr(app.state, "detour_task", None)
    if task is not None:
        task.cancel()
    worker: Optional[DetourWorker] = getattr(app.state, "detour_worker", None)
    if worker is not None:
        try:
            await worker.persist(force=True)
        except Exception as exc:
            print(f"[detour] final persist failed: {exc}")
    client = getattr(app.state, "http_client", None)
    if client is not None:
        await client.aclose()


def _get_worker() -> DetourWorker:
    worker = getattr(app.state, "detour_worker", None)
    if worker is None:
        raise HTTPException(status_code=503, detail="detour worker unavailable")
    return worker


def detour_to_response(detour: Detour) -> Dict[str, Any]:
    data = detour.to_dict()
    data["polyline"] = [
        point.to_dict() for point in douglas_peucker_simplify(detour.polyline, POLYLINE_DISPLAY_TOLERANCE_M)
    ]
    return data


def _payload_list(payload: Any, key: str) -> List[Any]:
    items = payload.get(key) if isinstance(payload, dict) else payload
    if not isinstance(items, list):
        raise HTTPException(status_code=400, detail=f"{key} must be a list")
    return items


def _payload_time(payload: Any) -> Optional[datetime]:
    if not isinstance(payload, dict) or payload.get("timestamp") is None:
        return None
    now = parse_timestamp(payload.get("timestamp"))
    if now is None:
        raise HTTPException(status_code=400, detail="invalid timestamp")
    return now


@app.get("/v1/health")
async def health():
    worker = _get_worker()
    return {
        "ok": worker.consecutive_failures == 0,
        "last_error": worker.last_error,
        "last_successful_tick": isoformat(worker.last_successful_tick),
        "active_detours": len(worker.state.active_detours),
    }


@app.get("/api/detours")
async def api_detours():
    worker = _get_worker()
    detours = await worker.active_detours()
    return {
        "generated_at": isoformat(datetime.now(timezone.utc)),
        "count": len(detours),
        "detours": [detour_to_response(d) for d in detours],
    }


@app.get("/api/detours/routes/{route_id}")
async def api_route_detours(
    route_id: str,
    direction_id: Optional[str] = Query(None, description="GTFS direction id filter"),
):
    worker = _get_worker()
    detours = await worker.detours_for_route(route_id, direction_id)
    return {
        "route_id": route_id,
        "direction_id": direction_id,
        "has_active_detour": bool(detours),
        "detours": [detour_to_response(d) for d in detours],
    }


@app.get("/api/detours/history")
async def api_detour_history(
    route_id: Optional[str] = Query(None, description="Only entries for this route"),
    limit: Optional[int] = Query(None, ge=0, le=MAX_HISTORY_LIMIT),
):
    worker = _get_worker()
    entries = await worker.history(route_id, limit)
    return {"count": len(entries), "history": [entry.to_dict() for entry in entries]}


@app.get("/api/detours/diagnostics")
async def api_detour_diagnostics():
    worker = _get_worker()
    return await worker.diagnostics()


@app.post("/api/detours/reference")
async def api_load_reference(payload: Any = Body(...)):
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="reference payload must be an object")
    for key in REFERENCE_MAPPING_KEYS:
        if payload.get(key) is not None and not isinstance(payload[key], dict):
            raise HTTPException(status_code=400, detail=f"{key} must be an object")
    if payload.get("stops") is not None and not isinstance(payload["stops"], list):
        raise HTTPException(status_code=400, detail="stops must be a list")
    worker = _get_worker()
    reference = ReferenceData.from_dict(payload)
    await worker.set_reference(reference)
    return {
        "shapes": len(reference.shapes),
        "trips": len(reference.trip_mapping),
        "routes": len(reference.route_shape_mapping),
        "stops": len(reference.stops),
    }


@app.post("/api/detours/vehicles")
async def api_ingest_vehicles(payload: Any = Body(...)):
    vehicles = _payload_list(payload, "vehicles")
    now = _payload_time(payload)
    worker = _get_worker()
    result = await worker.process_vehicles(vehicles, now=now)
    return result


@app.post("/api/detours/alerts")
async def api_set_alerts(payload: Any = Body(...)):
    alerts = _payload_list(payload, "alerts")
    now = _payload_time(payload)
    worker = _get_worker()
    count = await worker.set_alerts(alerts, now=now)
    return {"alerts": count}
