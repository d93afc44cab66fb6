from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple
import json
import os
import re


DEFAULT_DETOUR_CONFIG_PATH = Path(os.getenv("DETOUR_CONFIG_PATH", "config/detour_config.json"))
DEFAULT_DATA_DIRS = [Path(p) for p in os.getenv("DATA_DIRS", "/data").split(":")]

# Older config files used this name for the suspected-tier expiry.
_LEGACY_ROUTE_KEYS = {"detour_expiry_s": "suspected_expiry_s"}


@dataclass(frozen=True)
class RouteDetourConfig:
    """Effective detection thresholds for one route."""
    off_route_threshold_m: float = 50.0
    corridor_width_m: float = 50.0
    path_overlap_pct: float = 0.70
    min_off_route_points: int = 3
    min_off_route_duration_s: float = 30.0
    min_path_length_m: float = 150.0
    pending_path_expiry_s: float = 30 * 60.0
    suspected_expiry_s: float = 60 * 60.0
    stop_match_radius_m: float = 120.0
    max_affected_stops: int = 6


@dataclass
class DetourSettings:
    """Global settings plus per-route threshold overrides."""
    route_defaults: RouteDetourConfig = field(default_factory=RouteDetourConfig)
    route_overrides: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    likely_confidence_threshold: int = 70
    high_confidence_threshold: int = 85
    clearing_threshold_suspected: int = 2
    clearing_threshold_likely: int = 3
    clearing_threshold_high: int = 4
    clearing_evidence_window_s: float = 30 * 60.0
    cleared_retention_s: float = 5 * 60.0
    max_retention_s: float = 24 * 60 * 60.0
    history_limit: int = 100
    simplify_min_distance_m: float = 20.0


DEFAULT_DETOUR_SETTINGS = DetourSettings()

_ROUTE_FIELDS = {f.name: f for f in fields(RouteDetourConfig)}
_GLOBAL_FIELDS = {
    f.name: f for f in fields(DetourSettings) if f.name not in {"route_defaults", "route_overrides"}
}


def normalize_route_id(route_id: Optional[object]) -> Optional[str]:
    if route_id is None:
        return None
    text = str(route_id).strip().upper()
    return text or None


def base_route_id(route_id: Optional[object]) -> Optional[str]:
    """Numeric base of a lettered branch id: "2A" -> "2", "02B" -> "2"."""
    text = normalize_route_id(route_id)
    if text is None:
        return None
    match = re.search(r"\d+", text)
    if not match:
        return None
    return str(int(match.group(0)))


def _coerce(value: Any, default: Any) -> Any:
    if isinstance(value, bool):
        raise ValueError(f"unexpected boolean {value!r}")
    if isinstance(default, int):
        return int(value)
    return float(value)


def _coerce_route_fields(raw: Dict[str, Any], *, source: str) -> Dict[str, Any]:
    defaults = RouteDetourConfig()
    result: Dict[str, Any] = {}
    for key, value in raw.items():
        name = _LEGACY_ROUTE_KEYS.get(key, key)
        if name not in _ROUTE_FIELDS:
            print(f"[detour] ignoring unknown setting {key!r} in {source}")
            continue
        try:
            result[name] = _coerce(value, getattr(defaults, name))
        except (TypeError, ValueError) as exc:
            print(f"[detour] invalid value for {key!r} in {source}: {exc}")
    return result


def resolve_route_detour_config(
    route_id: Optional[object],
    settings: Optional[DetourSettings] = None,
) -> RouteDetourConfig:
    """
    Merge global defaults with the overrides configured for a route.

    The numeric base route's override applies first, then an override keyed
    by the exact id, so "2A" matches "2" in every field it does not override.
    """
    settings = settings or DEFAULT_DETOUR_SETTINGS
    key = normalize_route_id(route_id)
    if key is None or not settings.route_overrides:
        return settings.route_defaults

    merged: Dict[str, Any] = {}
    base = base_route_id(key)
    if base is not None and base != key:
        merged.update(settings.route_overrides.get(base, {}))
    merged.update(settings.route_overrides.get(key, {}))
    if not merged:
        return settings.route_defaults
    return replace(settings.route_defaults, **merged)


def settings_from_dict(raw: Any) -> DetourSettings:
    """Build settings from a parsed config document."""
    if not isinstance(raw, dict):
        return DetourSettings()

    route_defaults = RouteDetourConfig()
    defaults_raw = raw.get("defaults")
    if isinstance(defaults_raw, dict):
        route_defaults = replace(route_defaults, **_coerce_route_fields(defaults_raw, source="defaults"))

    overrides: Dict[str, Dict[str, Any]] = {}
    routes_raw = raw.get("routes")
    if isinstance(routes_raw, dict):
        for route_id, entry in routes_raw.items():
            key = normalize_route_id(route_id)
            if key is None or not isinstance(entry, dict):
                continue
            values = _coerce_route_fields(entry, source=f"routes.{key}")
            if values:
                overrides[key] = values

    global_values: Dict[str, Any] = {}
    for name, spec in _GLOBAL_FIELDS.items():
        if name not in raw:
            continue
        try:
            global_values[name] = _coerce(raw[name], spec.default)
        except (TypeError, ValueError) as exc:
            print(f"[detour] invalid value for {name!r}: {exc}")

    return DetourSettings(route_defaults=route_defaults, route_overrides=overrides, **global_values)


def _read_data_file(
    path: Path,
    *,
    data_dirs: Optional[Sequence[Path]] = None,
) -> Tuple[Optional[Path], Optional[str]]:
    """Read a data file from one of the configured data directories."""
    if data_dirs is None:
        data_dirs = DEFAULT_DATA_DIRS
    path_obj = Path(path)
    candidates: List[Path]
    if path_obj.is_absolute():
        candidates = [path_obj]
    else:
        candidates = [base / path_obj for base in data_dirs]
        candidates.append(path_obj)
    for candidate in candidates:
        if not candidate.exists():
            continue
        try:
            return candidate, candidate.read_text()
        except OSError as exc:
            print(f"[detour] failed to read config file {candidate}: {exc}")
    return None, None


def load_detour_settings(
    path: Path = DEFAULT_DETOUR_CONFIG_PATH,
    *,
    data_dirs: Optional[Sequence[Path]] = None,
) -> DetourSettings:
    """Load detour settings from JSON, falling back to defaults."""
    resolved, text = _read_data_file(path, data_dirs=data_dirs)
    if text is None:
        return DetourSettings()
    try:
        settings = settings_from_dict(json.loads(text))
    except (ValueError, TypeError) as exc:
        print(f"[detour] failed to load config {resolved}: {exc}")
        return DetourSettings()
    print(f"[detour] loaded settings from {resolved} ({len(settings.route_overrides)} route overrides)")
    return settings
