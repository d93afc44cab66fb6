from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional
import asyncio
import os
import time

import httpx

from detour_config import DEFAULT_DETOUR_SETTINGS, DetourSettings
from detour_context import (
    TransitStop,
    build_official_detours_from_alerts,
    coerce_stops,
    enrich_detours_with_route_context,
    merge_auto_and_official_detours,
)
from detour_detector import (
    check_detour_clearing,
    cleanup_expired_detours,
    correlate_detours_with_service_alerts,
    get_active_detours,
    get_detour_debug_summary,
    get_detour_history,
    get_detours_for_route,
    process_vehicle_for_detour,
)
from detour_state import (
    Coordinate,
    Detour,
    DetourHistoryEntry,
    DetourState,
    ServiceAlert,
    VehicleSnapshot,
    initialize_detour_state,
    isoformat,
    normalize_id,
    parse_path,
    state_to_dict,
)
from detour_storage import DetourStateStore


VEHICLES_URL = os.getenv("VEHICLES_URL", "")
TICK_INTERVAL_S = float(os.getenv("DETOUR_TICK_S", "30"))
SWEEP_INTERVAL_S = float(os.getenv("DETOUR_SWEEP_S", "60"))
PERSIST_INTERVAL_S = float(os.getenv("DETOUR_PERSIST_S", "10"))
VEHICLES_HTTP_TIMEOUT_S = 10.0
MAX_RECENT_EVENTS = 20


@dataclass
class ReferenceData:
    """Static inputs the engine matches vehicles against."""
    shapes: Dict[str, List[Coordinate]] = field(default_factory=dict)
    trip_mapping: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    route_shape_mapping: Dict[str, List[str]] = field(default_factory=dict)
    stops: List[TransitStop] = field(default_factory=list)
    route_stops_mapping: Dict[str, List[str]] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "ReferenceData":
        shapes: Dict[str, List[Coordinate]] = {}
        for shape_id, points in _mapping(raw.get("shapes")).items():
            path = parse_path(points)
            if path:
                shapes[str(shape_id)] = path

        trip_mapping: Dict[str, Dict[str, Any]] = {}
        for trip_id, info in _mapping(raw.get("trip_mapping")).items():
            if not isinstance(info, dict):
                continue
            trip_mapping[str(trip_id)] = {
                "route_id": normalize_id(info.get("route_id", info.get("routeId"))),
                "direction_id": normalize_id(info.get("direction_id", info.get("directionId"))),
            }

        stops = raw.get("stops")
        return cls(
            shapes=shapes,
            trip_mapping=trip_mapping,
            route_shape_mapping=_string_list_mapping(raw.get("route_shape_mapping")),
            stops=coerce_stops(stops if isinstance(stops, list) else []),
            route_stops_mapping=_string_list_mapping(raw.get("route_stops_mapping")),
        )


def _mapping(raw: Any) -> Dict[Any, Any]:
    return raw if isinstance(raw, dict) else {}


def _string_list_mapping(raw: Any) -> Dict[str, List[str]]:
    if not isinstance(raw, dict):
        return {}
    result: Dict[str, List[str]] = {}
    for key, values in raw.items():
        if isinstance(values, list):
            result[str(key)] = [str(v) for v in values if v is not None]
    return result


def _with_trip_direction(vehicle: VehicleSnapshot, trip_mapping: Dict[str, Dict[str, Any]]) -> VehicleSnapshot:
    if vehicle.direction_id is not None or not vehicle.trip_id:
        return vehicle
    direction_id = (trip_mapping.get(vehicle.trip_id) or {}).get("direction_id")
    if direction_id is None:
        return vehicle
    return replace(vehicle, direction_id=direction_id)


def _vehicles_from_payload(data: Any) -> List[Dict[str, Any]]:
    if isinstance(data, dict):
        data = data.get("vehicles", data.get("d", []))
    if not isinstance(data, list):
        return []
    return [item for item in data if isinstance(item, dict)]


class DetourWorker:
    """
    Owns one detection state and serializes every pass over it.

    Vehicle batches, alert correlation, the expiry sweep and snapshotting all
    take ``lock``; the engine functions themselves never run concurrently.
    """

    def __init__(
        self,
        state: Optional[DetourState] = None,
        *,
        settings: Optional[DetourSettings] = None,
        store: Optional[DetourStateStore] = None,
        reference: Optional[ReferenceData] = None,
        vehicles_url: Optional[str] = None,
        tick_interval_s: float = TICK_INTERVAL_S,
        sweep_interval_s: float = SWEEP_INTERVAL_S,
        persist_interval_s: float = PERSIST_INTERVAL_S,
    ):
        self.lock = asyncio.Lock()
        self.state = state or initialize_detour_state()
        self.settings = settings or DEFAULT_DETOUR_SETTINGS
        self.store = store
        self.reference = reference or ReferenceData()
        self.alerts: List[ServiceAlert] = []
        self.vehicles_url = VEHICLES_URL if vehicles_url is None else vehicles_url
        self.tick_interval_s = tick_interval_s
        self.sweep_interval_s = sweep_interval_s
        self.persist_interval_s = persist_interval_s

        self.tick_count = 0
        self.last_successful_tick: Optional[datetime] = None
        self.consecutive_failures = 0
        self.last_error: Optional[str] = None
        self.recent_events: deque[str] = deque(maxlen=MAX_RECENT_EVENTS)
        self._tick_in_progress = False
        self._dirty = False
        self._last_persist_mono: Optional[float] = None

    def add_event(self, message: str, now: Optional[datetime] = None) -> None:
        stamp = (now or datetime.now(timezone.utc)).strftime("%H:%M")
        self.recent_events.append(f"{message} at {stamp}")
        print(f"[detour-worker] {message}")

    async def set_reference(self, reference: ReferenceData) -> None:
        async with self.lock:
            self.reference = reference
        print(
            f"[detour-worker] reference data: {len(reference.shapes)} shapes, "
            f"{len(reference.route_shape_mapping)} routes, {len(reference.stops)} stops"
        )

    async def set_alerts(self, alerts: Iterable[Any], now: Optional[datetime] = None) -> int:
        parsed: List[ServiceAlert] = []
        for alert in alerts:
            if isinstance(alert, ServiceAlert):
                parsed.append(alert)
            elif isinstance(alert, dict):
                item = ServiceAlert.from_dict(alert)
                if item is not None:
                    parsed.append(item)
        async with self.lock:
            self.alerts = parsed
            correlate_detours_with_service_alerts(self.state, parsed, now=now, settings=self.settings)
            self._dirty = True
        return len(parsed)

    async def process_vehicles(
        self,
        vehicles: Iterable[Any],
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Run one processing pass over a vehicle batch."""
        processed = 0
        detected: List[str] = []
        cleared: List[str] = []
        async with self.lock:
            ref = self.reference
            known = set(self.state.active_detours)
            for raw in vehicles:
                if isinstance(raw, VehicleSnapshot):
                    vehicle = raw
                elif isinstance(raw, dict):
                    vehicle = VehicleSnapshot.from_dict(raw)
                else:
                    print(f"[detour-worker] skipping malformed vehicle entry: {raw!r}")
                    continue
                vehicle = _with_trip_direction(vehicle, ref.trip_mapping)
                try:
                    detour = process_vehicle_for_detour(
                        vehicle,
                        ref.shapes,
                        ref.trip_mapping,
                        ref.route_shape_mapping,
                        self.state,
                        now=now,
                        settings=self.settings,
                    )
                    for item in check_detour_clearing(
                        vehicle,
                        ref.shapes,
                        ref.route_shape_mapping,
                        self.state,
                        now=now,
                        settings=self.settings,
                    ):
                        cleared.append(item.id)
                        self.add_event(f"Route {item.route_id}: detour cleared", now)
                except Exception as exc:
                    print(f"[detour-worker] vehicle {vehicle.vehicle_id} failed: {exc}")
                    continue
                processed += 1
                if detour is not None and detour.id not in known:
                    known.add(detour.id)
                    detected.append(detour.id)
                    self.add_event(f"Route {detour.route_id}: detour detected", now)

            correlate_detours_with_service_alerts(self.state, self.alerts, now=now, settings=self.settings)
            self._record_archived(cleanup_expired_detours(self.state, now=now, settings=self.settings), now)
            self._dirty = True
        return {"processed": processed, "detected": detected, "cleared": cleared}

    def _record_archived(self, archived: List[DetourHistoryEntry], now: Optional[datetime]) -> None:
        for entry in archived:
            if entry.archive_reason != "cleared":
                self.add_event(f"Route {entry.route_id}: detour {entry.archive_reason}", now)

    async def sweep(self, now: Optional[datetime] = None) -> List[DetourHistoryEntry]:
        """Periodic alert correlation and expiry."""
        async with self.lock:
            correlate_detours_with_service_alerts(self.state, self.alerts, now=now, settings=self.settings)
            archived = cleanup_expired_detours(self.state, now=now, settings=self.settings)
            self._record_archived(archived, now)
            self._dirty = True
        return archived

    async def active_detours(self, now: Optional[datetime] = None) -> List[Detour]:
        """Auto detours with stop context, merged with alert-only detours."""
        async with self.lock:
            auto = get_active_detours(self.state)
            stops = self.reference.stops
            route_stops = self.reference.route_stops_mapping
            alerts = list(self.alerts)
        enriched = enrich_detours_with_route_context(auto, stops, route_stops, self.settings)
        official = build_official_detours_from_alerts(alerts, stops, now=now)
        return merge_auto_and_official_detours(enriched, official)

    async def detours_for_route(self, route_id: str, direction_id: Optional[str] = None) -> List[Detour]:
        async with self.lock:
            detours = get_detours_for_route(self.state, route_id, direction_id)
            stops = self.reference.stops
            route_stops = self.reference.route_stops_mapping
        return enrich_detours_with_route_context(detours, stops, route_stops, self.settings)

    async def history(self, route_id: Optional[str] = None, limit: Optional[int] = None) -> List[DetourHistoryEntry]:
        async with self.lock:
            return get_detour_history(self.state, route_id, limit, settings=self.settings)

    async def diagnostics(self) -> Dict[str, Any]:
        async with self.lock:
            summary = get_detour_debug_summary(self.state)
        return {
            "engine": summary,
            "worker": {
                "tick_count": self.tick_count,
                "last_successful_tick": isoformat(self.last_successful_tick),
                "consecutive_failures": self.consecutive_failures,
                "last_error": self.last_error,
                "tick_in_progress": self._tick_in_progress,
                "vehicles_url_configured": bool(self.vehicles_url),
                "alerts": len(self.alerts),
                "recent_events": list(self.recent_events),
            },
            "storage": {
                "path": str(self.store.path) if self.store else None,
                "last_saved_at": isoformat(self.store.last_saved_at) if self.store else None,
                "last_error": self.store.last_error if self.store else None,
            },
        }

    async def fetch_vehicles(self, client: httpx.AsyncClient) -> List[Dict[str, Any]]:
        r = await client.get(self.vehicles_url, timeout=VEHICLES_HTTP_TIMEOUT_S)
        r.raise_for_status()
        return _vehicles_from_payload(r.json())

    async def tick(self, client: httpx.AsyncClient, now: Optional[datetime] = None) -> bool:
        """Fetch the vehicle feed and process it. Overlapping ticks are skipped."""
        if not self.vehicles_url:
            return False
        if self._tick_in_progress:
            print("[detour-worker] previous tick still running, skipping")
            return False
        self._tick_in_progress = True
        try:
            vehicles = await self.fetch_vehicles(client)
            result = await self.process_vehicles(vehicles, now=now)
        except Exception as exc:
            self.consecutive_failures += 1
            self.last_error = str(exc)
            print(f"[detour-worker] tick failed ({self.consecutive_failures} consecutive): {exc}")
            return False
        finally:
            self._tick_in_progress = False

        self.tick_count += 1
        self.consecutive_failures = 0
        self.last_error = None
        self.last_successful_tick = now or datetime.now(timezone.utc)
        if self.tick_count <= 3 or self.tick_count % 20 == 0:
            print(
                f"[detour-worker] tick #{self.tick_count}: {result['processed']} vehicles, "
                f"{len(self.state.active_detours)} detours"
            )
        return True

    async def persist(self, force: bool = False) -> bool:
        """Write a snapshot when state changed and the persist interval has passed."""
        if self.store is None:
            return False
        mono = time.monotonic()
        if not force:
            if not self._dirty:
                return False
            if self._last_persist_mono is not None and mono - self._last_persist_mono < self.persist_interval_s:
                return False
        async with self.lock:
            snapshot = state_to_dict(self.state)
            self._dirty = False
        ok = await self.store.save_snapshot(snapshot)
        if ok:
            self._last_persist_mono = mono
        else:
            # Retried on the next cycle.
            self._dirty = True
        return ok

    async def run_forever(self, client: httpx.AsyncClient) -> None:
        await asyncio.sleep(0.1)
        next_sweep = time.monotonic() + self.sweep_interval_s
        if not self.vehicles_url:
            print("[detour-worker] VEHICLES_URL not set; waiting for pushed vehicle batches")
        while True:
            try:
                await self.tick(client)
                if time.monotonic() >= next_sweep:
                    await self.sweep()
                    next_sweep = time.monotonic() + self.sweep_interval_s
                await self.persist()
            except Exception as exc:
                print(f"[detour-worker] loop error: {exc}")
            await asyncio.sleep(self.tick_interval_s)
