from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from detour_config import (
    DEFAULT_DETOUR_SETTINGS,
    DetourSettings,
    RouteDetourConfig,
    normalize_route_id,
    resolve_route_detour_config,
)
from detour_geometry import (
    calculate_path_centroid,
    haversine_distance,
    path_length,
    paths_overlap,
    point_to_polyline_distance,
    simplify_path,
)
from detour_state import (
    CORRELATION_MATCHED,
    CORRELATION_NONE,
    LEVEL_HIGH_CONFIDENCE,
    LEVEL_LIKELY,
    LEVEL_SUSPECTED,
    STATUS_CLEARED,
    STATUS_SUSPECTED,
    Coordinate,
    Detour,
    DetourHistoryEntry,
    DetourState,
    OfficialAlertMatch,
    PendingPath,
    ServiceAlert,
    VehicleEvidence,
    VehicleSnapshot,
    VehicleTrackingRecord,
    get_route_key,
    normalize_id,
    to_utc,
)


DETOUR_ALERT_EFFECTS = {"Detour", "Modified Service", "No Service", "Reduced Service"}

# Base confidence by number of distinct corroborating vehicles.
CONFIDENCE_TIERS = ((5, 90), (4, 82), (3, 72), (2, 60), (1, 45))
RECENCY_BONUSES = ((timedelta(minutes=5), 5), (timedelta(minutes=15), 2))
OFFICIAL_ALERT_BONUS = 8


@dataclass
class ShapeCandidate:
    shape_id: str
    polyline: Sequence[Coordinate]


@dataclass
class NearestShape:
    shape_id: Optional[str]
    distance_m: float


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _resolve_now(now: Optional[datetime], vehicle: Optional[VehicleSnapshot] = None) -> datetime:
    if now is not None:
        return to_utc(now)
    if vehicle is not None and vehicle.timestamp is not None:
        return to_utc(vehicle.timestamp)
    return _utcnow()


def _coerce_vehicle(vehicle: Any) -> Optional[VehicleSnapshot]:
    if vehicle is None:
        return None
    if isinstance(vehicle, VehicleSnapshot):
        return vehicle
    if isinstance(vehicle, dict):
        return VehicleSnapshot.from_dict(vehicle)
    return None


def _seconds_since(now: datetime, then: Optional[datetime]) -> float:
    if then is None:
        return float("inf")
    return (now - then).total_seconds()


def _route_candidates(
    route_id: str,
    shapes: Mapping[str, Sequence[Coordinate]],
    route_shape_mapping: Mapping[str, Sequence[str]],
) -> List[ShapeCandidate]:
    """Shape variants for a route; polylines with fewer than two points are skipped."""
    candidates: List[ShapeCandidate] = []
    for shape_id in route_shape_mapping.get(route_id) or []:
        polyline = shapes.get(shape_id) or []
        if len(polyline) >= 2:
            candidates.append(ShapeCandidate(shape_id=shape_id, polyline=polyline))
    return candidates


def _nearest_shape(point: Coordinate, candidates: Iterable[ShapeCandidate]) -> NearestShape:
    best = NearestShape(shape_id=None, distance_m=float("inf"))
    for candidate in candidates:
        dist = point_to_polyline_distance(point, candidate.polyline)
        if dist < best.distance_m:
            best = NearestShape(shape_id=candidate.shape_id, distance_m=dist)
    return best


def _unique_vehicle_count(entries: Iterable[VehicleEvidence]) -> int:
    return len({entry.vehicle_id for entry in entries})


def _generate_detour_id(state: DetourState, now: datetime) -> str:
    state.detour_id_counter += 1
    return f"detour_{int(now.timestamp() * 1000)}_{state.detour_id_counter}"


def check_vehicle_off_route(
    vehicle: Any,
    shape_polyline: Optional[Sequence[Coordinate]],
    settings: Optional[DetourSettings] = None,
) -> bool:
    """True when the vehicle is strictly farther than the off-route threshold from the shape."""
    settings = settings or DEFAULT_DETOUR_SETTINGS
    snapshot = _coerce_vehicle(vehicle)
    if snapshot is None or not shape_polyline or len(shape_polyline) < 2:
        return False
    point = snapshot.coordinate
    if point is None:
        return False
    distance = point_to_polyline_distance(point, shape_polyline)
    return distance > settings.route_defaults.off_route_threshold_m


def calculate_confidence_score(detour: Detour, now: datetime) -> int:
    unique = _unique_vehicle_count(detour.confirmed_by_vehicles)
    score = 0
    for min_vehicles, base in CONFIDENCE_TIERS:
        if unique >= min_vehicles:
            score = base
            break

    last_seen = detour.last_seen_at or now
    age = now - last_seen
    for window, bonus in RECENCY_BONUSES:
        if age <= window:
            score += bonus
            break

    if detour.official_alert.matched:
        score += OFFICIAL_ALERT_BONUS
    return max(0, min(100, score))


def confidence_level_for_score(score: int, settings: Optional[DetourSettings] = None) -> str:
    settings = settings or DEFAULT_DETOUR_SETTINGS
    if score >= settings.high_confidence_threshold:
        return LEVEL_HIGH_CONFIDENCE
    if score >= settings.likely_confidence_threshold:
        return LEVEL_LIKELY
    return LEVEL_SUSPECTED


def update_detour_confidence(
    detour: Detour,
    *,
    now: Optional[datetime] = None,
    settings: Optional[DetourSettings] = None,
) -> Detour:
    """Recompute evidence count, score and level after any mutation."""
    now = _resolve_now(now)
    detour.evidence_count = _unique_vehicle_count(detour.confirmed_by_vehicles)
    detour.confidence_score = calculate_confidence_score(detour, now)
    detour.confidence_level = confidence_level_for_score(detour.confidence_score, settings)
    return detour


def process_vehicle_for_detour(
    vehicle: Any,
    shapes: Mapping[str, Sequence[Coordinate]],
    trip_mapping: Optional[Mapping[str, Mapping[str, Any]]],
    route_shape_mapping: Mapping[str, Sequence[str]],
    state: DetourState,
    *,
    now: Optional[datetime] = None,
    settings: Optional[DetourSettings] = None,
) -> Optional[Detour]:
    """
    Advance one vehicle's off-route state machine by a tick.

    Returns the detour created or updated when the vehicle rejoins its route
    with an excursion that corroborates another vehicle's, otherwise None.
    """
    snapshot = _coerce_vehicle(vehicle)
    if snapshot is None or snapshot.vehicle_id is None or snapshot.route_id is None:
        return None
    point = snapshot.coordinate
    if point is None:
        return None

    now = _resolve_now(now, snapshot)
    vehicle_id = snapshot.vehicle_id
    route_id = snapshot.route_id
    direction_id = snapshot.direction_id
    if direction_id is None and snapshot.trip_id and trip_mapping:
        trip_info = trip_mapping.get(snapshot.trip_id) or {}
        direction_id = normalize_id(trip_info.get("direction_id", trip_info.get("directionId")))

    route_config = resolve_route_detour_config(route_id, settings)
    candidates = _route_candidates(route_id, shapes, route_shape_mapping)
    if not candidates:
        return None

    nearest = _nearest_shape(point, candidates)
    is_off_route = nearest.distance_m > route_config.off_route_threshold_m
    route_key = get_route_key(route_id, direction_id)

    tracking = state.vehicle_tracking.get(vehicle_id)
    if tracking is None:
        tracking = VehicleTrackingRecord(
            vehicle_id=vehicle_id,
            route_id=route_id,
            trip_id=snapshot.trip_id,
            direction_id=direction_id,
            last_matched_shape_id=nearest.shape_id,
            last_update_time=now,
        )
        state.vehicle_tracking[vehicle_id] = tracking
    elif not tracking.is_currently_off_route:
        tracking.route_id = route_id
        tracking.trip_id = snapshot.trip_id
        tracking.direction_id = direction_id

    if is_off_route:
        if not tracking.is_currently_off_route:
            tracking.is_currently_off_route = True
            tracking.off_route_start_time = now
            tracking.off_route_breadcrumbs = []
        tracking.off_route_breadcrumbs.append(
            Coordinate(
                lat=point.lat,
                lon=point.lon,
                timestamp=now,
                matched_shape_id=nearest.shape_id,
                off_route_distance_m=nearest.distance_m,
            )
        )
        tracking.last_matched_shape_id = nearest.shape_id
        tracking.last_update_time = now
        return None

    result: Optional[Detour] = None
    if tracking.is_currently_off_route:
        result = _process_completed_off_route_path(
            tracking, route_key, state, route_config, now, settings or DEFAULT_DETOUR_SETTINGS
        )
        tracking.is_currently_off_route = False
        tracking.off_route_breadcrumbs = []
        tracking.off_route_start_time = None

    tracking.last_matched_shape_id = nearest.shape_id or tracking.last_matched_shape_id
    tracking.last_update_time = now
    return result


def _process_completed_off_route_path(
    tracking: VehicleTrackingRecord,
    route_key: str,
    state: DetourState,
    route_config: RouteDetourConfig,
    now: datetime,
    settings: DetourSettings,
) -> Optional[Detour]:
    breadcrumbs = tracking.off_route_breadcrumbs
    if len(breadcrumbs) < route_config.min_off_route_points:
        return None
    if _seconds_since(now, tracking.off_route_start_time) < route_config.min_off_route_duration_s:
        return None

    simplified = simplify_path(breadcrumbs, settings.simplify_min_distance_m)
    if path_length(simplified) < route_config.min_path_length_m:
        return None

    expiry = route_config.pending_path_expiry_s
    pending = [p for p in state.pending_paths.get(route_key, []) if _seconds_since(now, p.timestamp) < expiry]
    state.pending_paths[route_key] = pending

    vehicle_id = tracking.vehicle_id
    for candidate in pending:
        if not paths_overlap(
            simplified,
            candidate.path,
            route_config.corridor_width_m,
            route_config.path_overlap_pct,
        ):
            continue

        matched = list(candidate.matched_vehicles or [candidate.vehicle_id])
        if vehicle_id in matched:
            # Same vehicle retracing its own excursion is not corroboration.
            if len(simplified) > len(candidate.path):
                candidate.path = simplified
            candidate.timestamp = now
            candidate.matched_vehicles = matched
            return None

        matched.append(vehicle_id)
        detour = _create_or_update_detour(
            route_key, simplified, candidate, tracking, state, route_config, now
        )
        recorded = {entry.vehicle_id for entry in detour.confirmed_by_vehicles}
        for vid in matched:
            if vid not in recorded:
                detour.confirmed_by_vehicles.append(VehicleEvidence(vehicle_id=vid, timestamp=now))
                recorded.add(vid)
        update_detour_confidence(detour, now=now, settings=settings)
        state.pending_paths[route_key] = [p for p in pending if p is not candidate]
        if not state.pending_paths[route_key]:
            del state.pending_paths[route_key]
        return detour

    pending.append(
        PendingPath(
            vehicle_id=vehicle_id,
            path=simplified,
            timestamp=now,
            route_id=tracking.route_id,
            direction_id=tracking.direction_id,
            matched_vehicles=[vehicle_id],
        )
    )
    return None


def _create_or_update_detour(
    route_key: str,
    new_path: List[Coordinate],
    matched_pending: PendingPath,
    tracking: VehicleTrackingRecord,
    state: DetourState,
    route_config: RouteDetourConfig,
    now: datetime,
) -> Detour:
    vehicle_id = tracking.vehicle_id
    for existing in state.active_detours.values():
        if existing.route_key != route_key or existing.status != STATUS_SUSPECTED:
            continue
        if not paths_overlap(
            new_path,
            existing.polyline,
            route_config.corridor_width_m,
            route_config.path_overlap_pct,
        ):
            continue

        existing.last_seen_at = now
        recently_confirmed = any(
            entry.vehicle_id == vehicle_id
            and _seconds_since(now, entry.timestamp) < route_config.pending_path_expiry_s
            for entry in existing.confirmed_by_vehicles
        )
        if not recently_confirmed:
            existing.confirmed_by_vehicles.append(VehicleEvidence(vehicle_id=vehicle_id, timestamp=now))
        return existing

    polyline = new_path if len(new_path) >= len(matched_pending.path) else matched_pending.path
    detour = Detour(
        id=_generate_detour_id(state, now),
        route_id=tracking.route_id,
        direction_id=tracking.direction_id,
        route_key=route_key,
        polyline=list(polyline),
        centroid=calculate_path_centroid(polyline),
        confirmed_by_vehicles=[
            VehicleEvidence(vehicle_id=matched_pending.vehicle_id, timestamp=matched_pending.timestamp),
            VehicleEvidence(vehicle_id=vehicle_id, timestamp=now),
        ],
        first_detected_at=matched_pending.timestamp,
        last_seen_at=now,
        status=STATUS_SUSPECTED,
        evidence_count=2,
    )
    state.active_detours[detour.id] = detour
    return detour


def clearing_threshold(detour: Detour, settings: Optional[DetourSettings] = None) -> int:
    """
    Distinct on-route vehicles needed to clear a detour.

    Capped at the detour's own evidence count so a detour seen by two
    vehicles never needs three to clear.
    """
    settings = settings or DEFAULT_DETOUR_SETTINGS
    if detour.confidence_level == LEVEL_HIGH_CONFIDENCE:
        required = settings.clearing_threshold_high
    elif detour.confidence_level == LEVEL_LIKELY:
        required = settings.clearing_threshold_likely
    else:
        required = settings.clearing_threshold_suspected
    evidence = detour.evidence_count or _unique_vehicle_count(detour.confirmed_by_vehicles)
    return min(required, evidence)


def check_detour_clearing(
    vehicle: Any,
    shapes: Mapping[str, Sequence[Coordinate]],
    route_shape_mapping: Mapping[str, Sequence[str]],
    state: DetourState,
    *,
    now: Optional[datetime] = None,
    settings: Optional[DetourSettings] = None,
) -> List[Detour]:
    """
    Record the vehicle as clearing evidence for nearby suspected detours.

    Returns the detours this sighting cleared.
    """
    snapshot = _coerce_vehicle(vehicle)
    if snapshot is None or snapshot.vehicle_id is None or snapshot.route_id is None:
        return []
    point = snapshot.coordinate
    if point is None:
        return []

    now = _resolve_now(now, snapshot)
    settings = settings or DEFAULT_DETOUR_SETTINGS
    route_key = get_route_key(snapshot.route_id, snapshot.direction_id)
    detours = [
        d for d in state.active_detours.values()
        if d.route_key == route_key and d.status == STATUS_SUSPECTED
    ]
    if not detours:
        return []

    route_config = resolve_route_detour_config(snapshot.route_id, settings)
    candidates = _route_candidates(snapshot.route_id, shapes, route_shape_mapping)
    if not candidates:
        return []
    if _nearest_shape(point, candidates).distance_m > route_config.off_route_threshold_m:
        return []

    cleared: List[Detour] = []
    window = settings.clearing_evidence_window_s
    for detour in detours:
        if detour.centroid is None:
            continue
        dist = haversine_distance(point.lat, point.lon, detour.centroid.lat, detour.centroid.lon)
        if dist >= route_config.corridor_width_m * 3:
            continue

        detour.clearing_evidence = [
            e for e in detour.clearing_evidence if _seconds_since(now, e.timestamp) < window
        ]
        if all(e.vehicle_id != snapshot.vehicle_id for e in detour.clearing_evidence):
            detour.clearing_evidence.append(
                VehicleEvidence(vehicle_id=snapshot.vehicle_id, timestamp=now)
            )

        unique = _unique_vehicle_count(detour.clearing_evidence)
        if unique >= clearing_threshold(detour, settings):
            detour.status = STATUS_CLEARED
            detour.cleared_at = now
            detour.cleared_by_vehicle = snapshot.vehicle_id
            detour.cleared_by_evidence_count = unique
            update_detour_confidence(detour, now=now, settings=settings)
            cleared.append(detour)
    return cleared


def _coerce_alerts(alerts: Optional[Iterable[Any]]) -> List[ServiceAlert]:
    result: List[ServiceAlert] = []
    for alert in alerts or []:
        if isinstance(alert, ServiceAlert):
            result.append(alert)
        elif isinstance(alert, dict):
            parsed = ServiceAlert.from_dict(alert)
            if parsed is not None:
                result.append(parsed)
    return result


def find_correlating_alert(detour: Detour, alerts: Iterable[ServiceAlert]) -> Optional[ServiceAlert]:
    for alert in alerts:
        if detour.route_id in alert.affected_routes and alert.effect in DETOUR_ALERT_EFFECTS:
            return alert
    return None


def correlate_detours_with_service_alerts(
    state: DetourState,
    alerts: Optional[Iterable[Any]] = None,
    *,
    now: Optional[datetime] = None,
    settings: Optional[DetourSettings] = None,
) -> None:
    """Attach (or detach) an official alert to every suspected detour."""
    now = _resolve_now(now)
    parsed = _coerce_alerts(alerts)
    for detour in state.active_detours.values():
        if detour.status != STATUS_SUSPECTED:
            continue
        alert = find_correlating_alert(detour, parsed)
        if alert is not None:
            detour.official_alert = OfficialAlertMatch(
                matched=True,
                alert_id=alert.id,
                title=alert.title,
                effect=alert.effect,
                severity=alert.severity,
                matched_at=now,
            )
            detour.alert_correlation = CORRELATION_MATCHED
        else:
            detour.official_alert = OfficialAlertMatch()
            detour.alert_correlation = CORRELATION_NONE
        detour.last_alert_check_at = now
        update_detour_confidence(detour, now=now, settings=settings)


def _archive_detour(
    state: DetourState,
    detour: Detour,
    reason: str,
    now: datetime,
    settings: DetourSettings,
) -> DetourHistoryEntry:
    entry = DetourHistoryEntry.from_detour(detour, archived_at=now, reason=reason)
    state.detour_history.insert(0, entry)
    del state.detour_history[settings.history_limit:]
    state.active_detours.pop(detour.id, None)
    return entry


def cleanup_expired_detours(
    state: DetourState,
    *,
    now: Optional[datetime] = None,
    settings: Optional[DetourSettings] = None,
) -> List[DetourHistoryEntry]:
    """
    Archive expired and cleared detours, then prune pending paths and
    stale vehicle tracking.

    Returns the history entries created by this sweep.
    """
    now = _resolve_now(now)
    settings = settings or DEFAULT_DETOUR_SETTINGS
    archived: List[DetourHistoryEntry] = []

    for detour in list(state.active_detours.values()):
        route_config = resolve_route_detour_config(detour.route_id, settings)

        if detour.status == STATUS_CLEARED:
            cleared_at = detour.cleared_at or detour.last_seen_at
            if _seconds_since(now, cleared_at) > settings.cleared_retention_s:
                archived.append(_archive_detour(state, detour, "cleared", now, settings))
            continue

        started = detour.first_detected_at or detour.last_seen_at
        if started is None:
            archived.append(_archive_detour(state, detour, "expired", now, settings))
            continue
        if _seconds_since(now, started) > settings.max_retention_s:
            archived.append(_archive_detour(state, detour, "expired_max_retention", now, settings))
            continue

        # Likely and high-confidence detours persist until cleared or max retention.
        if detour.confidence_level == LEVEL_SUSPECTED and (
            _seconds_since(now, detour.last_seen_at) > route_config.suspected_expiry_s
        ):
            archived.append(_archive_detour(state, detour, "expired", now, settings))

    for route_key in list(state.pending_paths):
        kept = []
        for pending in state.pending_paths[route_key]:
            expiry = resolve_route_detour_config(pending.route_id, settings).pending_path_expiry_s
            if _seconds_since(now, pending.timestamp) < expiry:
                kept.append(pending)
        if kept:
            state.pending_paths[route_key] = kept
        else:
            del state.pending_paths[route_key]

    for vehicle_id in list(state.vehicle_tracking):
        tracking = state.vehicle_tracking[vehicle_id]
        expiry = resolve_route_detour_config(tracking.route_id, settings).pending_path_expiry_s
        if _seconds_since(now, tracking.last_update_time) > expiry:
            del state.vehicle_tracking[vehicle_id]

    return archived


def _sort_key_recency(detour: Detour) -> float:
    return detour.last_seen_at.timestamp() if detour.last_seen_at else 0.0


def get_active_detours(state: DetourState) -> List[Detour]:
    """Suspected detours, highest confidence first, then most recently seen."""
    active = [d for d in state.active_detours.values() if d.status == STATUS_SUSPECTED]
    return sorted(active, key=lambda d: (d.confidence_score, _sort_key_recency(d)), reverse=True)


def get_detours_for_route(
    state: DetourState,
    route_id: Optional[object],
    direction_id: Optional[object] = None,
) -> List[Detour]:
    target_route = normalize_route_id(route_id)
    target_direction = None if direction_id is None else str(direction_id)
    matches: List[Detour] = []
    for detour in state.active_detours.values():
        if detour.status != STATUS_SUSPECTED:
            continue
        if normalize_route_id(detour.route_id) != target_route:
            continue
        if (
            target_direction is not None
            and detour.direction_id is not None
            and str(detour.direction_id) != target_direction
        ):
            continue
        matches.append(detour)
    return sorted(matches, key=_sort_key_recency, reverse=True)


def has_active_detour(
    state: DetourState,
    route_id: Optional[object],
    direction_id: Optional[object] = None,
) -> bool:
    return bool(get_detours_for_route(state, route_id, direction_id))


def get_detour_history(
    state: DetourState,
    route_id: Optional[object] = None,
    limit: Optional[int] = None,
    settings: Optional[DetourSettings] = None,
) -> List[DetourHistoryEntry]:
    """Archived detours, newest first, optionally for one route."""
    settings = settings or DEFAULT_DETOUR_SETTINGS
    history = state.detour_history
    target = normalize_route_id(route_id)
    if target is not None:
        history = [entry for entry in history if normalize_route_id(entry.route_id) == target]
    max_items = settings.history_limit if limit is None else max(0, limit)
    return list(history[:max_items])


def get_detour_debug_summary(state: DetourState) -> Dict[str, Any]:
    pending_count = sum(len(paths) for paths in state.pending_paths.values())
    off_route = sum(1 for rec in state.vehicle_tracking.values() if rec.is_currently_off_route)
    return {
        "tracked_vehicles": len(state.vehicle_tracking),
        "off_route_vehicles": off_route,
        "pending_paths": pending_count,
        "pending_route_keys": sorted(state.pending_paths),
        "active_detours": len(state.active_detours),
        "suspected_detours": sum(
            1 for d in state.active_detours.values() if d.status == STATUS_SUSPECTED
        ),
        "history_entries": len(state.detour_history),
        "detour_id_counter": state.detour_id_counter,
    }
