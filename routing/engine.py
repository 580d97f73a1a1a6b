"""
Incident-aware multi-path journey search.

Algorithm (A*-family, deliberately not strictly optimal):
  1. Open set ordered by fScore = gScore + heuristic, where the heuristic is
     great-circle distance to the destination at the speed of the transport
     type used to reach the node (DEFAULT_SPEED_KPH if unknown).
  2. Pop the lowest-fScore node.  Destination arrivals are recorded and the
     search carries on until MAX_PATHS arrivals or the open set is empty,
     which yields the ranked alternatives.
  3. Otherwise close the stop and relax its out-edges:
       tentative = g + edge duration + incident delay
                   + NON_PREFERRED_PENALTY_MINUTES if the edge's transport
                     type is outside the caller's preferred set
     Neighbours whose path would exceed max_transfers line changes are
     skipped.  An improved neighbour replaces its open-set entry.  Edges
     into the destination bypass that check: every (stop, line) arrival is
     pushed as its own node, so a slower alternative is kept rather than
     dropped for costing more than the first arrival.
  4. Each arrival is walked back to the origin and emitted as a Journey of
     per-edge Segments with absolute departure/arrival times.

Search nodes live in a per-call arena (a plain list).  A node's predecessor
is its arena index, so replacing a neighbour's open-set entry never
invalidates a chain another node already points into.  The open set is a
heap with lazy invalidation: `open_index[stop_id]` names the live arena
node for each stop and stale heap entries are skipped when popped.

A "journey" as returned to callers:
  {
    "segments":              [Segment, ...],
    "total_duration":        int minutes (incident delay included),
    "total_distance_km":     float,
    "transfer_count":        int line changes,
    "has_incidents":         bool,
    "alternative_available": bool   # more than one arrival was found
  }
"""

import heapq
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Optional

import networkx as nx
from sqlalchemy.orm import Session

from config import (
    DEFAULT_SPEED_KPH,
    MAX_PATHS,
    MAX_TRANSFERS,
    NON_PREFERRED_PENALTY_MINUTES,
)
from db.models import Severity, utcnow
from errors import StopNotFoundError
from graph.builder import get_graph, speed_for
from graph.geo import haversine_km, travel_minutes
from incidents.delay import (
    NO_IMPACT,
    DelayImpact,
    edge_incident_impact,
    index_incidents_by_line,
    load_active_incidents,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SearchOptions:
    max_transfers: int = MAX_TRANSFERS
    preferred_transport_types: tuple[str, ...] = ()
    avoid_incidents: bool = True
    max_paths: int = MAX_PATHS


@dataclass(frozen=True)
class StopRef:
    stop_id: str
    name: str
    lat: Optional[float]
    lon: Optional[float]


@dataclass(frozen=True)
class Segment:
    from_stop: StopRef
    to_stop: StopRef
    route_id: str
    line_id: str
    line_name: str
    transport_type: str
    departure_time: datetime
    arrival_time: datetime
    duration: int
    distance_km: float
    has_incident: bool
    incident_delay: Optional[int] = None
    incident_severity: Optional[Severity] = None


@dataclass(frozen=True)
class Journey:
    segments: list[Segment]
    total_duration: int
    total_distance_km: float
    transfer_count: int
    has_incidents: bool
    alternative_available: bool


@dataclass
class SearchResult:
    journeys: list[Journey] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    from_cache: bool = False


@dataclass
class _PathNode:
    stop_id: str
    g_score: float
    f_score: float
    parent: Optional[int]          # arena index of the predecessor
    route_id: Optional[str] = None
    line_id: Optional[str] = None
    line_name: Optional[str] = None
    transport_type: Optional[str] = None
    edge_minutes: int = 0          # travel time of the edge into this node
    impact: DelayImpact = NO_IMPACT


def find_optimal_path(
    G: nx.MultiDiGraph,
    from_stop_id: str,
    to_stop_id: str,
    incidents_by_line: Optional[dict[str, list]] = None,
    departure_time: Optional[datetime] = None,
    options: Optional[SearchOptions] = None,
) -> SearchResult:
    """
    Return up to options.max_paths ranked journeys from one stop to another.

    Args:
        G:                 Transit graph from graph.builder.
        from_stop_id:      Origin stop id.
        to_stop_id:        Destination stop id.
        incidents_by_line: line_id → active incidents (see
                           incidents.delay.index_incidents_by_line).
                           Ignored when options.avoid_incidents is False.
        departure_time:    Departure of the first segment; defaults to now.
        options:           Transfer cap, preferred transport types, ...

    Returns:
        SearchResult.  An empty graph or unreachable destination yields no
        journeys and an explanatory warning, not an exception.

    Raises:
        StopNotFoundError: If the graph has stops but not the requested ones.
    """
    options = options or SearchOptions()
    departure_time = departure_time or utcnow()

    if G.number_of_nodes() == 0:
        return SearchResult(warnings=["Transit graph is empty; no journeys can be planned."])
    if from_stop_id not in G:
        raise StopNotFoundError(from_stop_id)
    if to_stop_id not in G:
        raise StopNotFoundError(to_stop_id)
    if from_stop_id == to_stop_id:
        return SearchResult(warnings=["Origin and destination are the same stop."])

    incidents = incidents_by_line if (options.avoid_incidents and incidents_by_line) else {}
    preferred = {t.upper() for t in options.preferred_transport_types}
    impact_memo: dict[tuple[str, str, str], DelayImpact] = {}

    def impact_for(u: str, v: str, line_id: str) -> DelayImpact:
        key = (u, v, line_id)
        if key not in impact_memo:
            line_incidents = incidents.get(line_id)
            impact_memo[key] = (
                edge_incident_impact(line_incidents, u, v) if line_incidents else NO_IMPACT
            )
        return impact_memo[key]

    arena: list[_PathNode] = [
        _PathNode(
            stop_id=from_stop_id,
            g_score=0.0,
            f_score=heuristic(G, from_stop_id, to_stop_id),
            parent=None,
        )
    ]
    heap: list[tuple[float, int, int]] = [(arena[0].f_score, 0, 0)]
    open_index: dict[str, int] = {from_stop_id: 0}
    g_scores: dict[str, float] = {from_stop_id: 0.0}
    closed: set[str] = set()
    arrivals: set[int] = set()
    arrived_via: set[tuple[str, str]] = set()
    found: list[int] = []
    expanded = 0

    while heap and len(found) < options.max_paths:
        _, _, idx = heapq.heappop(heap)
        if idx in arrivals:
            found.append(idx)
            continue
        current = arena[idx]
        if open_index.get(current.stop_id) != idx:
            continue  # superseded by a better entry
        del open_index[current.stop_id]

        closed.add(current.stop_id)
        expanded += 1
        transfers_so_far = _count_transfers(arena, idx)

        for _, neighbor, edge in G.out_edges(current.stop_id, data=True):
            if neighbor in closed:
                continue

            line_id = edge["line_id"]
            transfers = transfers_so_far
            if current.line_id is not None and current.line_id != line_id:
                transfers += 1
            if transfers > options.max_transfers:
                continue

            impact = impact_for(current.stop_id, neighbor, line_id)
            edge_minutes = edge["duration"] + impact.delay
            penalty = 0
            if preferred and edge["transport_type"] not in preferred:
                penalty = NON_PREFERRED_PENALTY_MINUTES

            tentative = current.g_score + edge_minutes + penalty
            is_arrival = neighbor == to_stop_id
            if is_arrival:
                if (current.stop_id, line_id) in arrived_via:
                    continue
                arrived_via.add((current.stop_id, line_id))
            elif neighbor in g_scores and tentative >= g_scores[neighbor]:
                continue
            else:
                g_scores[neighbor] = tentative

            node = _PathNode(
                stop_id=neighbor,
                g_score=tentative,
                f_score=tentative + heuristic(G, neighbor, to_stop_id, edge["transport_type"]),
                parent=idx,
                route_id=edge["route_id"],
                line_id=line_id,
                line_name=edge["line_name"],
                transport_type=edge["transport_type"],
                edge_minutes=edge_minutes,
                impact=impact,
            )
            arena.append(node)
            new_idx = len(arena) - 1
            if is_arrival:
                arrivals.add(new_idx)
            else:
                open_index[neighbor] = new_idx
            heapq.heappush(heap, (node.f_score, new_idx, new_idx))

    journeys = [
        _reconstruct(G, arena, end_idx, departure_time, alternative=len(found) > 1)
        for end_idx in found
    ]
    journeys.sort(key=lambda j: (j.total_duration, j.transfer_count))

    warnings: list[str] = []
    if not journeys:
        warnings.append(
            f"No path from '{from_stop_id}' to '{to_stop_id}' within "
            f"{options.max_transfers} transfer(s)."
        )
    logger.info(
        "Found %d journeys from %s to %s (%d stops expanded, %d arena nodes).",
        len(journeys), from_stop_id, to_stop_id, expanded, len(arena),
    )
    return SearchResult(journeys=journeys, warnings=warnings)


def plan_journeys(
    session: Session,
    from_stop_id: str,
    to_stop_id: str,
    departure_time: Optional[datetime] = None,
    options: Optional[SearchOptions] = None,
    cache=None,
    graph: Optional[nx.MultiDiGraph] = None,
) -> SearchResult:
    """
    Search entry point used by the API: cached graph + live incidents +
    short-lived result cache (routing.cache.PathCache).

    Cache entries are keyed on (from, to, max_transfers, avoid_incidents)
    and expire by time only; a hit is re-timed onto departure_time.
    """
    options = options or SearchOptions()
    departure_time = departure_time or utcnow()
    G = graph if graph is not None else get_graph()

    if cache is not None:
        cached = cache.get(from_stop_id, to_stop_id, options)
        if cached is not None:
            return SearchResult(
                journeys=retime_journeys(cached.journeys, departure_time),
                warnings=list(cached.warnings),
                from_cache=True,
            )

    incidents_by_line = (
        index_incidents_by_line(load_active_incidents(session)) if options.avoid_incidents else {}
    )
    result = find_optimal_path(
        G, from_stop_id, to_stop_id, incidents_by_line, departure_time, options
    )
    if cache is not None and result.journeys:
        cache.put(from_stop_id, to_stop_id, options, result)
    return result


# ---------------------------------------------------------------------------
# Heuristic
# ---------------------------------------------------------------------------

def heuristic(
    G: nx.MultiDiGraph, stop_id: str, goal_id: str, transport_type: Optional[str] = None
) -> float:
    """
    Estimated minutes from stop_id to goal_id.  Only approximately
    admissible: real speeds vary, which trades optimality for fewer
    expansions.  Stops without coordinates estimate 0.
    """
    a, b = G.nodes[stop_id], G.nodes[goal_id]
    if None in (a.get("lat"), a.get("lon"), b.get("lat"), b.get("lon")):
        return 0.0
    speed = speed_for(transport_type) if transport_type else DEFAULT_SPEED_KPH
    return travel_minutes(haversine_km(a["lat"], a["lon"], b["lat"], b["lon"]), speed)


# ---------------------------------------------------------------------------
# Path reconstruction
# ---------------------------------------------------------------------------

def _count_transfers(arena: list[_PathNode], idx: int) -> int:
    """Line changes along the predecessor chain ending at arena[idx]."""
    transfers = 0
    node = arena[idx]
    while node.parent is not None:
        parent = arena[node.parent]
        if parent.line_id is not None and parent.line_id != node.line_id:
            transfers += 1
        node = parent
    return transfers


def _reconstruct(
    G: nx.MultiDiGraph,
    arena: list[_PathNode],
    end_idx: int,
    departure_time: datetime,
    alternative: bool,
) -> Journey:
    chain: list[_PathNode] = []
    idx: Optional[int] = end_idx
    while idx is not None:
        chain.append(arena[idx])
        idx = arena[idx].parent
    chain.reverse()

    segments: list[Segment] = []
    elapsed = 0
    for prev, node in zip(chain, chain[1:]):
        from_ref, to_ref = _stop_ref(G, prev.stop_id), _stop_ref(G, node.stop_id)
        departure = departure_time + timedelta(minutes=elapsed)
        arrival = departure + timedelta(minutes=node.edge_minutes)
        segments.append(Segment(
            from_stop=from_ref,
            to_stop=to_ref,
            route_id=node.route_id,
            line_id=node.line_id,
            line_name=node.line_name,
            transport_type=node.transport_type,
            departure_time=departure,
            arrival_time=arrival,
            duration=node.edge_minutes,
            distance_km=_distance_km(from_ref, to_ref),
            has_incident=node.impact.has_incident,
            incident_delay=node.impact.delay if node.impact.has_incident else None,
            incident_severity=node.impact.severity if node.impact.has_incident else None,
        ))
        elapsed += node.edge_minutes

    return Journey(
        segments=segments,
        total_duration=round(elapsed),
        total_distance_km=sum(s.distance_km for s in segments),
        transfer_count=count_transfers(segments),
        has_incidents=any(s.has_incident for s in segments),
        alternative_available=alternative,
    )


def _stop_ref(G: nx.MultiDiGraph, stop_id: str) -> StopRef:
    data = G.nodes[stop_id]
    return StopRef(
        stop_id=stop_id,
        name=data.get("name") or stop_id,
        lat=data.get("lat"),
        lon=data.get("lon"),
    )


def _distance_km(a: StopRef, b: StopRef) -> float:
    if None in (a.lat, a.lon, b.lat, b.lon):
        return 0.0
    return haversine_km(a.lat, a.lon, b.lat, b.lon)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def count_transfers(segments: list[Segment]) -> int:
    """Number of line changes between consecutive segments."""
    return sum(
        1 for prev, seg in zip(segments, segments[1:]) if seg.line_id != prev.line_id
    )


def retime_journeys(journeys: list[Journey], departure_time: datetime) -> list[Journey]:
    """Shift every journey so its first segment departs at departure_time."""
    shifted: list[Journey] = []
    for journey in journeys:
        elapsed = 0
        segments = []
        for seg in journey.segments:
            dep = departure_time + timedelta(minutes=elapsed)
            segments.append(replace(
                seg, departure_time=dep, arrival_time=dep + timedelta(minutes=seg.duration)
            ))
            elapsed += seg.duration
        shifted.append(replace(journey, segments=segments))
    return shifted
