"""
Great-circle helpers shared by the graph builder, the search heuristic,
report matching, and nearest-stop lookup.
"""

import heapq
import math
from typing import Iterable

from errors import InvalidInputError

EARTH_RADIUS_M = 6_371_000


def haversine_metres(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two (lat, lon) points in metres."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    return haversine_metres(lat1, lon1, lat2, lon2) / 1000


def travel_minutes(distance_km: float, speed_kph: float) -> float:
    """Minutes needed to cover distance_km at a constant speed_kph."""
    return distance_km / speed_kph * 60


def validate_coordinates(lat: float, lon: float) -> None:
    """Raise InvalidInputError unless (lat, lon) is a finite point on Earth."""
    if lat is None or lon is None:
        raise InvalidInputError("Coordinates are required.")
    if not (math.isfinite(lat) and math.isfinite(lon)):
        raise InvalidInputError("Coordinates must be finite numbers.")
    if not -90 <= lat <= 90:
        raise InvalidInputError(f"Latitude {lat} is out of range [-90, 90].")
    if not -180 <= lon <= 180:
        raise InvalidInputError(f"Longitude {lon} is out of range [-180, 180].")


def nearest_stops(stops: Iterable, lat: float, lon: float, limit: int = 5) -> list[tuple[object, float]]:
    """
    Return up to `limit` (stop, distance_m) pairs closest to (lat, lon).

    Accepts any objects exposing stop_lat / stop_lon; stops without
    coordinates are ignored.
    """
    validate_coordinates(lat, lon)
    scored = (
        (haversine_metres(lat, lon, s.stop_lat, s.stop_lon), i, s)
        for i, s in enumerate(stops)
        if s.stop_lat is not None and s.stop_lon is not None
    )
    return [(s, d) for d, _, s in heapq.nsmallest(limit, scored)]
