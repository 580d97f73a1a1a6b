"""
Builds a directed graph of transit stops and travel-time edges.

Graph structure:
  Nodes: stop_id strings, attributed with {name, lat, lon, transport_type}
  Edges: stop A → stop B for each consecutive stop pair on a route
         attrs: {route_id, line_id, line_name, transport_type, duration}

duration is the schedule-free estimate in whole minutes:
  round(max(MIN_EDGE_MINUTES, distance_km / line_speed_kph * 60))
Incident delay is NOT baked in; the search layers it on per query so the
same cached graph serves every incident state.

The graph is built once from the DB and cached in memory.  It must be
rebuilt after each reference-data import.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

import networkx as nx
from sqlalchemy import select as sa_select
from sqlalchemy.orm import Session

from config import (
    DEFAULT_EDGE_MINUTES,
    DEFAULT_SPEED_KPH,
    MIN_EDGE_MINUTES,
    TRANSPORT_SPEEDS_KPH,
)
from db.models import Line, Route, RouteStop, Stop, utcnow
from graph.geo import haversine_km, travel_minutes

logger = logging.getLogger(__name__)

# Module-level cached graph and build timestamp
_graph: Optional[nx.MultiDiGraph] = None
_last_built_at: Optional[datetime] = None


@dataclass
class RoutePattern:
    """Ordered stop sequence of one route, as the builder consumes it."""
    route_id: str
    line_id: str
    stop_ids: list[str] = field(default_factory=list)


def get_graph() -> nx.MultiDiGraph:
    """Return the cached transit graph. Raises if not yet built."""
    if _graph is None:
        raise RuntimeError("Transit graph has not been built yet. Call build_graph() first.")
    return _graph


def get_last_built_at() -> Optional[datetime]:
    """Return the UTC timestamp of the last successful build_graph() call, or None."""
    return _last_built_at


def build_graph(session: Session) -> nx.MultiDiGraph:
    """
    Construct and cache the transit graph from the database.
    Returns the graph and stores it in the module-level cache.
    """
    global _graph, _last_built_at
    stops = session.query(Stop).all()
    lines = session.query(Line).all()
    G = build_transit_graph(stops, lines, _load_route_patterns(session))

    _graph = G
    _last_built_at = utcnow()
    logger.info(
        "Graph built: %d nodes, %d edges.", G.number_of_nodes(), G.number_of_edges()
    )
    return G


def build_transit_graph(
    stops: Iterable,
    lines: Iterable,
    routes: Iterable[RoutePattern],
) -> nx.MultiDiGraph:
    """
    Pure graph construction from already-loaded reference data.

    stops / lines may be ORM rows or any objects with the same attribute
    names.  Empty input yields an empty graph.
    """
    G = nx.MultiDiGraph()
    _add_stop_nodes(G, stops)
    lines_by_id = {line.line_id: line for line in lines}
    _add_route_edges(G, routes, lines_by_id)
    return G


def _add_stop_nodes(G: nx.MultiDiGraph, stops: Iterable) -> None:
    for stop in stops:
        G.add_node(
            stop.stop_id,
            name=stop.stop_name,
            lat=stop.stop_lat,
            lon=stop.stop_lon,
            transport_type=transport_type_name(stop.transport_type),
        )


def _add_route_edges(
    G: nx.MultiDiGraph, routes: Iterable[RoutePattern], lines_by_id: dict
) -> None:
    """
    For every consecutive stop pair on every route, add a directed edge.

    Keyed by route_id so repeated imports of the same pattern collapse to
    one edge per (from_stop, to_stop, route).
    """
    count = 0
    for route in routes:
        line = lines_by_id.get(route.line_id)
        transport_type = transport_type_name(line.transport_type if line else None) or "BUS"
        line_name = line.line_name if line else "Unknown"

        for a, b in zip(route.stop_ids, route.stop_ids[1:]):
            if a == b:
                continue
            if G.has_edge(a, b, key=route.route_id):
                continue
            G.add_edge(
                a, b,
                key=route.route_id,
                route_id=route.route_id,
                line_id=route.line_id,
                line_name=line_name,
                transport_type=transport_type,
                duration=edge_duration_minutes(G, a, b, transport_type),
            )
            count += 1
    logger.info("Added %d route edges.", count)


def edge_duration_minutes(G: nx.MultiDiGraph, a: str, b: str, transport_type: str) -> int:
    """
    Base travel time between two stops in whole minutes.

    Falls back to DEFAULT_EDGE_MINUTES when either endpoint is unknown or
    has no coordinates.
    """
    na, nb = G.nodes.get(a), G.nodes.get(b)
    if not na or not nb or None in (na.get("lat"), na.get("lon"), nb.get("lat"), nb.get("lon")):
        return DEFAULT_EDGE_MINUTES
    distance_km = haversine_km(na["lat"], na["lon"], nb["lat"], nb["lon"])
    minutes = travel_minutes(distance_km, speed_for(transport_type))
    return round(max(MIN_EDGE_MINUTES, minutes))


def speed_for(transport_type: Optional[str]) -> float:
    """Average speed (km/h) for a transport type; DEFAULT_SPEED_KPH if unknown."""
    if not transport_type:
        return DEFAULT_SPEED_KPH
    return TRANSPORT_SPEEDS_KPH.get(transport_type, DEFAULT_SPEED_KPH)


def transport_type_name(value) -> Optional[str]:
    """Normalise a TransportType enum or raw string to its upper-case name."""
    if value is None:
        return None
    return getattr(value, "value", str(value)).upper()


def _load_route_patterns(session: Session) -> list[RoutePattern]:
    """
    Load every route's ordered stop ids with a single join query rather
    than relationship loading, grouping rows as they stream in.
    """
    rows = session.execute(
        sa_select(RouteStop.route_id, RouteStop.stop_id, RouteStop.stop_sequence, Route.line_id)
        .join(Route, RouteStop.route_id == Route.route_id)
        .order_by(RouteStop.route_id, RouteStop.stop_sequence)
    ).all()

    patterns: list[RoutePattern] = []
    current: RoutePattern | None = None
    for row in rows:
        if current is None or row.route_id != current.route_id:
            current = RoutePattern(route_id=row.route_id, line_id=row.line_id)
            patterns.append(current)
        current.stop_ids.append(row.stop_id)
    return patterns
