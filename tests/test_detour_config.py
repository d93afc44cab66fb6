import json
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from detour_config import (
    DetourSettings,
    RouteDetourConfig,
    base_route_id,
    load_detour_settings,
    resolve_route_detour_config,
)


def test_defaults_without_overrides():
    config = resolve_route_detour_config("1")
    assert config == RouteDetourConfig()
    assert config.off_route_threshold_m == 50.0
    assert config.corridor_width_m == 50.0
    assert config.path_overlap_pct == 0.70
    assert config.min_off_route_points == 3
    assert config.pending_path_expiry_s == 1800.0
    assert config.suspected_expiry_s == 3600.0
    assert config.stop_match_radius_m == 120.0
    assert config.max_affected_stops == 6


def test_branch_routes_inherit_base_override():
    settings = DetourSettings(
        route_overrides={"2": {"off_route_threshold_m": 80.0, "corridor_width_m": 70.0, "path_overlap_pct": 0.6}}
    )
    base = resolve_route_detour_config("2", settings)
    assert base.off_route_threshold_m == 80.0
    assert resolve_route_detour_config("2A", settings) == base
    assert resolve_route_detour_config("2B", settings) == base
    assert resolve_route_detour_config(" 2a ", settings) == base
    assert resolve_route_detour_config("02B", settings) == base
    assert resolve_route_detour_config("3", settings) == RouteDetourConfig()


def test_branch_override_layers_on_base_override():
    settings = DetourSettings(
        route_overrides={
            "2": {"off_route_threshold_m": 80.0},
            "2A": {"corridor_width_m": 90.0},
        }
    )
    branch = resolve_route_detour_config("2A", settings)
    assert branch.off_route_threshold_m == 80.0
    assert branch.corridor_width_m == 90.0
    assert resolve_route_detour_config("2", settings).corridor_width_m == 50.0


def test_base_route_id():
    assert base_route_id("2A") == "2"
    assert base_route_id("100") == "100"
    assert base_route_id("08") == "8"
    assert base_route_id("LOOP") is None
    assert base_route_id(None) is None


def test_missing_route_id_uses_defaults():
    settings = DetourSettings(route_overrides={"2": {"off_route_threshold_m": 80.0}})
    assert resolve_route_detour_config(None, settings) == RouteDetourConfig()


def test_load_settings_from_file(tmp_path):
    path = tmp_path / "detour_config.json"
    path.write_text(
        json.dumps(
            {
                "defaults": {"corridor_width_m": 60, "bogus": 1},
                "routes": {"8a": {"off_route_threshold_m": 75, "detour_expiry_s": 900}},
                "history_limit": 25,
                "high_confidence_threshold": 90,
            }
        )
    )
    settings = load_detour_settings(path)
    assert settings.route_defaults.corridor_width_m == 60.0
    assert settings.history_limit == 25
    assert settings.high_confidence_threshold == 90
    branch = resolve_route_detour_config("8A", settings)
    assert branch.off_route_threshold_m == 75.0
    assert branch.suspected_expiry_s == 900.0
    assert branch.corridor_width_m == 60.0


def test_load_settings_relative_path_uses_data_dirs(tmp_path):
    (tmp_path / "detour_config.json").write_text(json.dumps({"history_limit": 7}))
    settings = load_detour_settings(Path("detour_config.json"), data_dirs=[tmp_path])
    assert settings.history_limit == 7


def test_load_settings_missing_file_returns_defaults(tmp_path):
    settings = load_detour_settings(tmp_path / "missing.json")
    assert settings == DetourSettings()


def test_load_settings_malformed_file_returns_defaults(tmp_path, capsys):
    path = tmp_path / "broken.json"
    path.write_text("{not json")
    settings = load_detour_settings(path)
    assert settings == DetourSettings()
    assert "[detour] failed to load config" in capsys.readouterr().out
