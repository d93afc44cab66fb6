from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence
import math
import re

from detour_config import DetourSettings, resolve_route_detour_config
from detour_detector import DETOUR_ALERT_EFFECTS
from detour_geometry import haversine_distance, point_to_polyline_distance
from detour_state import (
    CORRELATION_OFFICIAL_ONLY,
    LEVEL_HIGH_CONFIDENCE,
    SOURCE_OFFICIAL_ALERT,
    STATUS_SUSPECTED,
    AffectedStop,
    Coordinate,
    Detour,
    OfficialAlertMatch,
    ServiceAlert,
    normalize_id,
    to_utc,
)


OFFICIAL_DETOUR_CONFIDENCE = 96
OFFICIAL_DETOUR_MAX_STOPS = 6


@dataclass
class TransitStop:
    """A stop from static reference data."""
    id: str
    name: str
    code: str
    lat: float
    lon: float

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> Optional["TransitStop"]:
        stop_id = normalize_id(raw.get("id", raw.get("stop_id")))
        coord = Coordinate.from_value(raw)
        if stop_id is None or coord is None:
            return None
        name = raw.get("name") or raw.get("stop_name") or raw.get("stopName") or f"Stop {stop_id}"
        code = raw.get("code") or raw.get("stop_code") or raw.get("stopCode") or stop_id
        return cls(id=stop_id, name=str(name), code=str(code), lat=coord.lat, lon=coord.lon)


def coerce_stops(stops: Optional[Iterable[Any]]) -> List[TransitStop]:
    result: List[TransitStop] = []
    for stop in stops or []:
        if isinstance(stop, TransitStop):
            result.append(stop)
        elif isinstance(stop, dict):
            parsed = TransitStop.from_dict(stop)
            if parsed is not None:
                result.append(parsed)
    return result


def _nearest_path_index(stop: TransitStop, polyline: Sequence[Coordinate]) -> int:
    nearest_index = 0
    min_distance = math.inf
    for index, point in enumerate(polyline):
        dist = haversine_distance(stop.lat, stop.lon, point.lat, point.lon)
        if dist < min_distance:
            min_distance = dist
            nearest_index = index
    return nearest_index


def build_segment_label(affected_stops: Sequence[AffectedStop]) -> Optional[str]:
    if not affected_stops:
        return None
    if len(affected_stops) == 1:
        return f"Near {affected_stops[0].name}"
    return f"{affected_stops[0].name} to {affected_stops[-1].name}"


def enrich_detour_with_route_context(
    detour: Detour,
    stops: Optional[Iterable[Any]] = None,
    route_stops_mapping: Optional[Mapping[str, Sequence[str]]] = None,
    settings: Optional[DetourSettings] = None,
) -> Detour:
    """
    Return a copy of the detour with nearby stops and a segment label.

    Candidate stops are limited to the route's stops when a mapping exists.
    Matches are ordered by where they fall along the detour path, then by
    distance, and capped at the route's max affected stops.
    """
    if detour is None or len(detour.polyline) < 2:
        return detour

    route_config = resolve_route_detour_config(detour.route_id, settings)
    all_stops = coerce_stops(stops)
    route_stop_ids = set((route_stops_mapping or {}).get(detour.route_id) or [])
    candidates = [s for s in all_stops if s.id in route_stop_ids] if route_stop_ids else all_stops

    scored = []
    for stop in candidates:
        dist = point_to_polyline_distance(Coordinate(lat=stop.lat, lon=stop.lon), detour.polyline)
        if dist > route_config.stop_match_radius_m:
            continue
        scored.append((_nearest_path_index(stop, detour.polyline), dist, stop))

    scored.sort(key=lambda item: (item[0], item[1]))
    affected = [
        AffectedStop(
            id=stop.id,
            name=stop.name,
            code=stop.code,
            lat=stop.lat,
            lon=stop.lon,
            distance_m=int(round(dist)),
        )
        for _, dist, stop in scored[: route_config.max_affected_stops]
    ]
    return replace(detour, affected_stops=affected, segment_label=build_segment_label(affected))


def enrich_detours_with_route_context(
    detours: Iterable[Detour],
    stops: Optional[Iterable[Any]] = None,
    route_stops_mapping: Optional[Mapping[str, Sequence[str]]] = None,
    settings: Optional[DetourSettings] = None,
) -> List[Detour]:
    parsed_stops = coerce_stops(stops)
    return [
        enrich_detour_with_route_context(d, parsed_stops, route_stops_mapping, settings)
        for d in detours
    ]


def canonical_route_id(route_id: Optional[str]) -> Optional[str]:
    """Alert route ids collapse to their numeric part when they have one."""
    if not route_id:
        return None
    text = str(route_id).strip()
    if not text:
        return None
    match = re.search(r"\d+", text)
    if not match:
        return text
    return str(int(match.group(0)))


def build_official_detours_from_alerts(
    alerts: Optional[Iterable[ServiceAlert]],
    stops: Optional[Iterable[Any]] = None,
    now: Optional[datetime] = None,
) -> List[Detour]:
    """Alert-only detour records for detour-relevant service alerts."""
    now = to_utc(now) if now is not None else datetime.now(timezone.utc)
    stop_lookup = {stop.id: stop for stop in coerce_stops(stops)}
    official: List[Detour] = []

    for alert in alerts or []:
        if alert.effect not in DETOUR_ALERT_EFFECTS or not alert.affected_routes:
            continue
        route_ids: List[str] = []
        for raw_route in alert.affected_routes:
            route_id = canonical_route_id(raw_route)
            if route_id and route_id not in route_ids:
                route_ids.append(route_id)

        known = [stop_lookup[s] for s in alert.affected_stops if s in stop_lookup]
        for route_id in route_ids:
            affected = [
                AffectedStop(id=s.id, name=s.name, code=s.code, lat=s.lat, lon=s.lon, distance_m=0)
                for s in known[:OFFICIAL_DETOUR_MAX_STOPS]
            ]
            official.append(
                Detour(
                    id=f"official_alert_{alert.id}_{route_id}",
                    route_id=route_id,
                    route_key=f"{route_id}_official",
                    first_detected_at=alert.active_period_start or now,
                    last_seen_at=now,
                    status=STATUS_SUSPECTED,
                    evidence_count=0,
                    confidence_score=OFFICIAL_DETOUR_CONFIDENCE,
                    confidence_level=LEVEL_HIGH_CONFIDENCE,
                    official_alert=OfficialAlertMatch(
                        matched=True,
                        alert_id=alert.id,
                        title=alert.title,
                        effect=alert.effect,
                        severity=alert.severity,
                        matched_at=now,
                    ),
                    alert_correlation=CORRELATION_OFFICIAL_ONLY,
                    segment_label=alert.title or "Official detour",
                    affected_stops=affected,
                    source=SOURCE_OFFICIAL_ALERT,
                )
            )
    return official


def merge_auto_and_official_detours(
    auto_detours: Sequence[Detour],
    official_detours: Sequence[Detour],
) -> List[Detour]:
    """Auto-detected detours win per route; official ones fill routes without one."""
    merged = list(auto_detours)
    auto_routes = {d.route_id for d in auto_detours}
    merged.extend(d for d in official_detours if d.route_id not in auto_routes)

    def sort_key(detour: Detour):
        seen = detour.last_seen_at.timestamp() if detour.last_seen_at else 0.0
        return (detour.confidence_score, seen)

    return sorted(merged, key=sort_key, reverse=True)
