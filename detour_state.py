from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import math


STATUS_SUSPECTED = "suspected"
STATUS_CLEARED = "cleared"

LEVEL_SUSPECTED = "suspected"
LEVEL_LIKELY = "likely"
LEVEL_HIGH_CONFIDENCE = "high-confidence"

CORRELATION_NONE = "none"
CORRELATION_MATCHED = "matched"
CORRELATION_OFFICIAL_ONLY = "official-only"

CONFIDENCE_LEVELS = (LEVEL_SUSPECTED, LEVEL_LIKELY, LEVEL_HIGH_CONFIDENCE)
CORRELATIONS = (CORRELATION_NONE, CORRELATION_MATCHED, CORRELATION_OFFICIAL_ONLY)

SOURCE_AUTO = "auto"
SOURCE_OFFICIAL_ALERT = "official-alert"


def to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def isoformat(dt: Optional[datetime]) -> Optional[str]:
    """Format a datetime as ISO8601 UTC string."""
    if dt is None:
        return None
    return to_utc(dt).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a persisted timestamp.

    Accepts datetimes, ISO-8601 strings (with or without a trailing Z) and
    epoch milliseconds, which older snapshots stored.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return to_utc(value)
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.lower().endswith("z"):
            text = text[:-1] + "+00:00"
        try:
            return to_utc(datetime.fromisoformat(text))
        except ValueError:
            return None
    return None


def normalize_id(value: Optional[object]) -> Optional[str]:
    """Normalize an ID value to a string."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        text = value.strip()
        return text if text else None
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _parse_float(value: Optional[object]) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _parse_int(value: Optional[object], default: Optional[int] = 0) -> Optional[int]:
    number = _parse_float(value)
    return default if number is None else int(number)


def _choice(value: Any, allowed: tuple) -> str:
    return value if value in allowed else allowed[0]


def _optional_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _first_present(raw: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is not None:
            return value
    return None


def get_route_key(route_id: Optional[str], direction_id: Optional[str]) -> str:
    """Composite key scoping pending paths and detours to a route direction."""
    return f"{route_id}_{direction_id if direction_id is not None else 'unknown'}"


@dataclass
class Coordinate:
    """A position; breadcrumbs also carry when and how far off-route it was."""
    lat: float
    lon: float
    timestamp: Optional[datetime] = None
    matched_shape_id: Optional[str] = None
    off_route_distance_m: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"lat": self.lat, "lon": self.lon}
        if self.timestamp is not None:
            data["timestamp"] = isoformat(self.timestamp)
        if self.matched_shape_id is not None:
            data["matched_shape_id"] = self.matched_shape_id
        if self.off_route_distance_m is not None:
            data["off_route_distance_m"] = self.off_route_distance_m
        return data

    @classmethod
    def from_value(cls, value: Any) -> Optional["Coordinate"]:
        """Build a coordinate from a dict, a [lat, lon] pair or a Coordinate."""
        if isinstance(value, Coordinate):
            return value
        if isinstance(value, (list, tuple)) and len(value) >= 2:
            lat = _parse_float(value[0])
            lon = _parse_float(value[1])
            if lat is None or lon is None:
                return None
            return cls(lat=lat, lon=lon)
        if not isinstance(value, dict):
            return None
        lat = _parse_float(_first_present(value, "lat", "latitude", "Latitude", "Lat"))
        lon = _parse_float(
            _first_present(value, "lon", "longitude", "lng", "Longitude", "Lon", "Lng")
        )
        if lat is None or lon is None:
            return None
        return cls(
            lat=lat,
            lon=lon,
            timestamp=parse_timestamp(value.get("timestamp")),
            matched_shape_id=normalize_id(value.get("matched_shape_id")),
            off_route_distance_m=_parse_float(value.get("off_route_distance_m")),
        )


def parse_path(raw: Any) -> List[Coordinate]:
    """Parse a list of coordinates, dropping entries that are not positions."""
    if not isinstance(raw, list):
        return []
    path: List[Coordinate] = []
    for item in raw:
        coord = Coordinate.from_value(item)
        if coord is not None:
            path.append(coord)
    return path


@dataclass
class VehicleSnapshot:
    """A single position report for a vehicle."""
    vehicle_id: Optional[str]
    route_id: Optional[str]
    lat: Optional[float]
    lon: Optional[float]
    direction_id: Optional[str] = None
    trip_id: Optional[str] = None
    timestamp: Optional[datetime] = None

    @property
    def coordinate(self) -> Optional[Coordinate]:
        if self.lat is None or self.lon is None:
            return None
        return Coordinate(lat=self.lat, lon=self.lon)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "VehicleSnapshot":
        coord_raw = _first_present(raw, "coordinate", "position")
        coord = Coordinate.from_value(coord_raw) if coord_raw is not None else Coordinate.from_value(raw)
        return cls(
            vehicle_id=normalize_id(_first_present(raw, "id", "vehicle_id", "vehicleId", "VehicleID")),
            route_id=normalize_id(_first_present(raw, "route_id", "routeId", "RouteID")),
            lat=coord.lat if coord else None,
            lon=coord.lon if coord else None,
            direction_id=normalize_id(_first_present(raw, "direction_id", "directionId")),
            trip_id=normalize_id(_first_present(raw, "trip_id", "tripId")),
            timestamp=parse_timestamp(raw.get("timestamp")),
        )


@dataclass
class VehicleEvidence:
    vehicle_id: str
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {"vehicle_id": self.vehicle_id, "timestamp": isoformat(self.timestamp)}

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["VehicleEvidence"]:
        if not isinstance(raw, dict):
            return None
        vehicle_id = normalize_id(raw.get("vehicle_id"))
        timestamp = parse_timestamp(raw.get("timestamp"))
        if vehicle_id is None or timestamp is None:
            return None
        return cls(vehicle_id=vehicle_id, timestamp=timestamp)


def _parse_evidence(raw: Any) -> List[VehicleEvidence]:
    if not isinstance(raw, list):
        return []
    entries = (VehicleEvidence.from_dict(item) for item in raw)
    return [entry for entry in entries if entry is not None]


@dataclass
class VehicleTrackingRecord:
    """
    Off-route state for one vehicle.

    State machine:
    1. On route -> nothing recorded beyond the last matched shape
    2. Leaves the route -> breadcrumbs reset, start time recorded
    3. Off route -> one breadcrumb per tick
    4. Rejoins -> the excursion is handed to corroboration, breadcrumbs cleared
    """
    vehicle_id: str
    route_id: str
    trip_id: Optional[str] = None
    direction_id: Optional[str] = None
    is_currently_off_route: bool = False
    off_route_breadcrumbs: List[Coordinate] = field(default_factory=list)
    off_route_start_time: Optional[datetime] = None
    last_matched_shape_id: Optional[str] = None
    last_update_time: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vehicle_id": self.vehicle_id,
            "trip_id": self.trip_id,
            "route_id": self.route_id,
            "direction_id": self.direction_id,
            "is_currently_off_route": self.is_currently_off_route,
            "off_route_breadcrumbs": [c.to_dict() for c in self.off_route_breadcrumbs],
            "off_route_start_time": isoformat(self.off_route_start_time),
            "last_matched_shape_id": self.last_matched_shape_id,
            "last_update_time": isoformat(self.last_update_time),
        }

    @classmethod
    def from_dict(cls, raw: Any, vehicle_id: Optional[str] = None) -> Optional["VehicleTrackingRecord"]:
        if not isinstance(raw, dict):
            return None
        vid = normalize_id(raw.get("vehicle_id")) or vehicle_id
        route_id = normalize_id(raw.get("route_id"))
        if vid is None or route_id is None:
            return None
        return cls(
            vehicle_id=vid,
            route_id=route_id,
            trip_id=normalize_id(raw.get("trip_id")),
            direction_id=normalize_id(raw.get("direction_id")),
            is_currently_off_route=bool(raw.get("is_currently_off_route", False)),
            off_route_breadcrumbs=parse_path(raw.get("off_route_breadcrumbs")),
            off_route_start_time=parse_timestamp(raw.get("off_route_start_time")),
            last_matched_shape_id=normalize_id(raw.get("last_matched_shape_id")),
            last_update_time=parse_timestamp(raw.get("last_update_time")),
        )


@dataclass
class PendingPath:
    """One vehicle's finished excursion waiting for a second vehicle."""
    vehicle_id: str
    path: List[Coordinate]
    timestamp: datetime
    route_id: Optional[str] = None
    direction_id: Optional[str] = None
    matched_vehicles: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.matched_vehicles:
            self.matched_vehicles = [self.vehicle_id]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vehicle_id": self.vehicle_id,
            "path": [c.to_dict() for c in self.path],
            "timestamp": isoformat(self.timestamp),
            "route_id": self.route_id,
            "direction_id": self.direction_id,
            "matched_vehicles": list(self.matched_vehicles),
        }

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["PendingPath"]:
        if not isinstance(raw, dict):
            return None
        timestamp = parse_timestamp(raw.get("timestamp"))
        if timestamp is None:
            return None
        matched = raw.get("matched_vehicles")
        return cls(
            vehicle_id=normalize_id(raw.get("vehicle_id")) or "",
            path=parse_path(raw.get("path")),
            timestamp=timestamp,
            route_id=normalize_id(raw.get("route_id")),
            direction_id=normalize_id(raw.get("direction_id")),
            matched_vehicles=[str(v) for v in matched if v is not None] if isinstance(matched, list) else [],
        )


@dataclass
class OfficialAlertMatch:
    matched: bool = False
    alert_id: Optional[str] = None
    title: Optional[str] = None
    effect: Optional[str] = None
    severity: Optional[str] = None
    matched_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        if not self.matched:
            return {"matched": False}
        return {
            "matched": True,
            "alert_id": self.alert_id,
            "title": self.title,
            "effect": self.effect,
            "severity": self.severity,
            "matched_at": isoformat(self.matched_at),
        }

    @classmethod
    def from_dict(cls, raw: Any) -> "OfficialAlertMatch":
        if not isinstance(raw, dict) or not raw.get("matched"):
            return cls()
        return cls(
            matched=True,
            alert_id=normalize_id(raw.get("alert_id")),
            title=raw.get("title"),
            effect=raw.get("effect"),
            severity=raw.get("severity"),
            matched_at=parse_timestamp(raw.get("matched_at")),
        )


@dataclass
class AffectedStop:
    id: str
    name: str
    code: str
    lat: float
    lon: float
    distance_m: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "lat": self.lat,
            "lon": self.lon,
            "distance_m": self.distance_m,
        }

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["AffectedStop"]:
        if not isinstance(raw, dict):
            return None
        stop_id = normalize_id(raw.get("id"))
        lat = _parse_float(raw.get("lat"))
        lon = _parse_float(raw.get("lon"))
        if stop_id is None or lat is None or lon is None:
            return None
        return cls(
            id=stop_id,
            name=str(raw.get("name") or f"Stop {stop_id}"),
            code=str(raw.get("code") or stop_id),
            lat=lat,
            lon=lon,
            distance_m=_parse_int(raw.get("distance_m")),
        )


@dataclass
class Detour:
    """A suspected detour corroborated by independent off-route vehicles."""
    id: str
    route_id: str
    direction_id: Optional[str] = None
    route_key: str = ""
    polyline: List[Coordinate] = field(default_factory=list)
    centroid: Optional[Coordinate] = None
    confirmed_by_vehicles: List[VehicleEvidence] = field(default_factory=list)
    first_detected_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None
    status: str = STATUS_SUSPECTED
    evidence_count: int = 0
    confidence_score: int = 0
    confidence_level: str = LEVEL_SUSPECTED
    official_alert: OfficialAlertMatch = field(default_factory=OfficialAlertMatch)
    alert_correlation: str = CORRELATION_NONE
    affected_stops: List[AffectedStop] = field(default_factory=list)
    segment_label: Optional[str] = None
    clearing_evidence: List[VehicleEvidence] = field(default_factory=list)
    cleared_at: Optional[datetime] = None
    cleared_by_vehicle: Optional[str] = None
    cleared_by_evidence_count: Optional[int] = None
    last_alert_check_at: Optional[datetime] = None
    source: str = SOURCE_AUTO

    def __post_init__(self) -> None:
        if not self.route_key:
            self.route_key = get_route_key(self.route_id, self.direction_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "route_id": self.route_id,
            "direction_id": self.direction_id,
            "route_key": self.route_key,
            "polyline": [c.to_dict() for c in self.polyline],
            "centroid": self.centroid.to_dict() if self.centroid else None,
            "confirmed_by_vehicles": [e.to_dict() for e in self.confirmed_by_vehicles],
            "first_detected_at": isoformat(self.first_detected_at),
            "last_seen_at": isoformat(self.last_seen_at),
            "status": self.status,
            "evidence_count": self.evidence_count,
            "confidence_score": self.confidence_score,
            "confidence_level": self.confidence_level,
            "official_alert": self.official_alert.to_dict(),
            "alert_correlation": self.alert_correlation,
            "affected_stops": [s.to_dict() for s in self.affected_stops],
            "segment_label": self.segment_label,
            "clearing_evidence": [e.to_dict() for e in self.clearing_evidence],
            "cleared_at": isoformat(self.cleared_at),
            "cleared_by_vehicle": self.cleared_by_vehicle,
            "cleared_by_evidence_count": self.cleared_by_evidence_count,
            "last_alert_check_at": isoformat(self.last_alert_check_at),
            "source": self.source,
        }

    @staticmethod
    def _kwargs_from_dict(raw: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        detour_id = normalize_id(raw.get("id"))
        route_id = normalize_id(raw.get("route_id"))
        if detour_id is None or route_id is None:
            return None
        stops_raw = raw.get("affected_stops")
        stops = (AffectedStop.from_dict(s) for s in (stops_raw if isinstance(stops_raw, list) else []))
        return {
            "id": detour_id,
            "route_id": route_id,
            "direction_id": normalize_id(raw.get("direction_id")),
            "route_key": str(raw.get("route_key") or ""),
            "polyline": parse_path(raw.get("polyline")),
            "centroid": Coordinate.from_value(raw.get("centroid")),
            "confirmed_by_vehicles": _parse_evidence(raw.get("confirmed_by_vehicles")),
            "first_detected_at": parse_timestamp(raw.get("first_detected_at")),
            "last_seen_at": parse_timestamp(raw.get("last_seen_at")),
            "status": STATUS_CLEARED if raw.get("status") == STATUS_CLEARED else STATUS_SUSPECTED,
            "evidence_count": _parse_int(raw.get("evidence_count")),
            "confidence_score": _parse_int(raw.get("confidence_score")),
            "confidence_level": _choice(raw.get("confidence_level"), CONFIDENCE_LEVELS),
            "official_alert": OfficialAlertMatch.from_dict(raw.get("official_alert")),
            "alert_correlation": _choice(raw.get("alert_correlation"), CORRELATIONS),
            "affected_stops": [s for s in stops if s is not None],
            "segment_label": _optional_str(raw.get("segment_label")),
            "clearing_evidence": _parse_evidence(raw.get("clearing_evidence")),
            "cleared_at": parse_timestamp(raw.get("cleared_at")),
            "cleared_by_vehicle": normalize_id(raw.get("cleared_by_vehicle")),
            "cleared_by_evidence_count": _parse_int(raw.get("cleared_by_evidence_count"), None),
            "last_alert_check_at": parse_timestamp(raw.get("last_alert_check_at")),
            "source": str(raw.get("source") or SOURCE_AUTO),
        }

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["Detour"]:
        if not isinstance(raw, dict):
            return None
        kwargs = cls._kwargs_from_dict(raw)
        if kwargs is None:
            return None
        return cls(**kwargs)


@dataclass
class DetourHistoryEntry(Detour):
    """A detour archived out of the active set."""
    archived_at: Optional[datetime] = None
    archive_reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["archived_at"] = isoformat(self.archived_at)
        data["archive_reason"] = self.archive_reason
        return data

    @classmethod
    def from_detour(cls, detour: Detour, archived_at: datetime, reason: str) -> "DetourHistoryEntry":
        # Round-trip through the dict form so nothing is shared with the live record.
        kwargs = Detour._kwargs_from_dict(detour.to_dict()) or {}
        return cls(**kwargs, archived_at=archived_at, archive_reason=reason)

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["DetourHistoryEntry"]:
        if not isinstance(raw, dict):
            return None
        kwargs = Detour._kwargs_from_dict(raw)
        if kwargs is None:
            return None
        return cls(
            **kwargs,
            archived_at=parse_timestamp(raw.get("archived_at")),
            archive_reason=str(raw.get("archive_reason") or ""),
        )


@dataclass
class ServiceAlert:
    """An official service alert as supplied by the alerts feed."""
    id: str
    effect: Optional[str] = None
    title: Optional[str] = None
    severity: Optional[str] = None
    affected_routes: List[str] = field(default_factory=list)
    affected_stops: List[str] = field(default_factory=list)
    active_period_start: Optional[datetime] = None

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> Optional["ServiceAlert"]:
        alert_id = normalize_id(_first_present(raw, "id", "alert_id", "alertId"))
        if alert_id is None:
            return None
        routes = _first_present(raw, "affected_routes", "affectedRoutes") or []
        stops = _first_present(raw, "affected_stops", "affectedStops") or []
        periods = _first_present(raw, "active_periods", "activePeriods")
        start = None
        if isinstance(periods, list) and periods and isinstance(periods[0], dict):
            start = parse_timestamp(periods[0].get("start"))
        return cls(
            id=alert_id,
            effect=raw.get("effect"),
            title=raw.get("title"),
            severity=raw.get("severity"),
            affected_routes=[r for r in (normalize_id(v) for v in routes) if r is not None],
            affected_stops=[s for s in (normalize_id(v) for v in stops) if s is not None],
            active_period_start=start,
        )


@dataclass
class DetourState:
    """All mutable detection state; every engine entry point takes one of these."""
    vehicle_tracking: Dict[str, VehicleTrackingRecord] = field(default_factory=dict)
    pending_paths: Dict[str, List[PendingPath]] = field(default_factory=dict)
    active_detours: Dict[str, Detour] = field(default_factory=dict)
    detour_history: List[DetourHistoryEntry] = field(default_factory=list)
    detour_id_counter: int = 0


def initialize_detour_state() -> DetourState:
    return DetourState()


def state_to_dict(state: DetourState) -> Dict[str, Any]:
    """JSON-serializable projection of the detection state."""
    return {
        "vehicle_tracking": {vid: rec.to_dict() for vid, rec in state.vehicle_tracking.items()},
        "pending_paths": {
            key: [p.to_dict() for p in paths] for key, paths in state.pending_paths.items()
        },
        "active_detours": {did: d.to_dict() for did, d in state.active_detours.items()},
        "detour_history": [entry.to_dict() for entry in state.detour_history],
        "detour_id_counter": state.detour_id_counter,
    }


def normalize_loaded_state(raw: Any) -> DetourState:
    """
    Rebuild state from a persisted snapshot.

    Each section is restored independently; anything missing or malformed
    falls back to empty rather than failing the whole load.
    """
    state = initialize_detour_state()
    if not isinstance(raw, dict):
        return state

    tracking_raw = raw.get("vehicle_tracking")
    if isinstance(tracking_raw, dict):
        for vid, entry in tracking_raw.items():
            record = VehicleTrackingRecord.from_dict(entry, vehicle_id=normalize_id(vid))
            if record is not None:
                state.vehicle_tracking[record.vehicle_id] = record

    pending_raw = raw.get("pending_paths")
    if isinstance(pending_raw, dict):
        for route_key, entries in pending_raw.items():
            if not isinstance(entries, list):
                continue
            paths = [p for p in (PendingPath.from_dict(e) for e in entries) if p is not None]
            if paths:
                state.pending_paths[str(route_key)] = paths

    detours_raw = raw.get("active_detours")
    if isinstance(detours_raw, dict):
        for entry in detours_raw.values():
            detour = Detour.from_dict(entry)
            if detour is not None:
                state.active_detours[detour.id] = detour

    history_raw = raw.get("detour_history")
    if isinstance(history_raw, list):
        for entry in history_raw:
            archived = DetourHistoryEntry.from_dict(entry)
            if archived is not None:
                state.detour_history.append(archived)

    counter = raw.get("detour_id_counter")
    if isinstance(counter, int) and not isinstance(counter, bool) and counter > 0:
        state.detour_id_counter = counter
    return state
