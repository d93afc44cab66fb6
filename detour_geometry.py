from __future__ import annotations

from typing import List, Optional, Sequence
import math

from detour_state import Coordinate


EARTH_RADIUS_M = 6371000.0


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters between two lat/lon points."""
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(dlon / 2) ** 2
    )
    return 2 * EARTH_RADIUS_M * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def point_to_segment_distance(point: Coordinate, start: Coordinate, end: Coordinate) -> float:
    """
    Distance in meters from a point to the segment [start, end].

    The projection treats (lon, lat) as planar x/y, which holds at city scale;
    only the final offset is measured with haversine.
    """
    x, y = point.lon, point.lat
    x1, y1 = start.lon, start.lat
    dx = end.lon - x1
    dy = end.lat - y1

    if dx == 0 and dy == 0:
        return haversine_distance(y, x, y1, x1)

    t = ((x - x1) * dx + (y - y1) * dy) / (dx * dx + dy * dy)
    t = max(0.0, min(1.0, t))
    return haversine_distance(y, x, y1 + t * dy, x1 + t * dx)


def point_to_polyline_distance(point: Coordinate, polyline: Optional[Sequence[Coordinate]]) -> float:
    """Minimum distance in meters from a point to any segment of a polyline."""
    if not polyline:
        return math.inf
    if len(polyline) == 1:
        return haversine_distance(point.lat, point.lon, polyline[0].lat, polyline[0].lon)

    best = math.inf
    for i in range(len(polyline) - 1):
        dist = point_to_segment_distance(point, polyline[i], polyline[i + 1])
        if dist < best:
            best = dist
    return best


def _fraction_within(path: Sequence[Coordinate], other: Sequence[Coordinate], corridor_m: float) -> float:
    near = 0
    for point in path:
        if point_to_polyline_distance(point, other) <= corridor_m:
            near += 1
    return near / len(path)


def paths_overlap(
    path_a: Optional[Sequence[Coordinate]],
    path_b: Optional[Sequence[Coordinate]],
    corridor_width_m: float = 50.0,
    overlap_threshold: float = 0.70,
) -> bool:
    """
    True when each path keeps at least ``overlap_threshold`` of its points
    inside the other's corridor.

    Containment is checked both ways so a short path cannot overlap a long
    one just by lying on part of it.
    """
    if not path_a or not path_b or len(path_a) < 2 or len(path_b) < 2:
        return False
    if _fraction_within(path_a, path_b, corridor_width_m) < overlap_threshold:
        return False
    return _fraction_within(path_b, path_a, corridor_width_m) >= overlap_threshold


def calculate_path_centroid(path: Optional[Sequence[Coordinate]]) -> Optional[Coordinate]:
    """Arithmetic mean of the path's coordinates, or None for an empty path."""
    if not path:
        return None
    lat = sum(p.lat for p in path) / len(path)
    lon = sum(p.lon for p in path) / len(path)
    return Coordinate(lat=lat, lon=lon)


def path_length(path: Sequence[Coordinate]) -> float:
    """Total length in meters along consecutive points."""
    total = 0.0
    for prev, point in zip(path, path[1:]):
        total += haversine_distance(prev.lat, prev.lon, point.lat, point.lon)
    return total


def simplify_path(path: Sequence[Coordinate], min_distance_m: float = 20.0) -> List[Coordinate]:
    """
    Greedy decimation of a breadcrumb trail.

    A point is kept only when it is at least ``min_distance_m`` from the last
    kept point. The first and last points are always kept.
    """
    if len(path) <= 2:
        return list(path)

    simplified: List[Coordinate] = [path[0]]
    for point in path[1:]:
        last = simplified[-1]
        if haversine_distance(last.lat, last.lon, point.lat, point.lon) >= min_distance_m:
            simplified.append(point)

    tail = path[-1]
    if simplified[-1].lat != tail.lat or simplified[-1].lon != tail.lon:
        simplified.append(tail)
    return simplified


def douglas_peucker_simplify(path: Sequence[Coordinate], tolerance_m: float = 8.0) -> List[Coordinate]:
    """Douglas-Peucker simplification for display polylines."""
    if len(path) <= 2:
        return list(path)

    first = path[0]
    last = path[-1]
    max_dist = 0.0
    max_index = 0
    for i in range(1, len(path) - 1):
        dist = point_to_segment_distance(path[i], first, last)
        if dist > max_dist:
            max_dist = dist
            max_index = i

    if max_dist <= tolerance_m:
        return [first, last]

    left = douglas_peucker_simplify(path[: max_index + 1], tolerance_m)
    right = douglas_peucker_simplify(path[max_index:], tolerance_m)
    # The split point ends ``left`` and starts ``right``.
    return left[:-1] + right
