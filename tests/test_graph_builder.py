"""
Unit tests for graph.builder and graph.geo.

build_transit_graph is pure, so most tests feed it plain objects; the
build_graph tests go through an in-memory database.
"""

from types import SimpleNamespace

import pytest

from config import DEFAULT_EDGE_MINUTES, DEFAULT_SPEED_KPH, MIN_EDGE_MINUTES
from db.models import Line, Route, RouteStop, Stop, TransportType
from errors import InvalidInputError
from graph import builder
from graph.builder import (
    RoutePattern,
    build_graph,
    build_transit_graph,
    edge_duration_minutes,
    speed_for,
    transport_type_name,
)
from graph.geo import haversine_km, haversine_metres, nearest_stops, travel_minutes, validate_coordinates


def _stop(stop_id: str, lat, lon, name: str | None = None):
    return SimpleNamespace(
        stop_id=stop_id, stop_name=name or f"Stop {stop_id}",
        stop_lat=lat, stop_lon=lon, transport_type=None,
    )


def _line(line_id: str, transport_type="BUS"):
    return SimpleNamespace(line_id=line_id, line_name=f"Line {line_id}", transport_type=transport_type)


# ---------------------------------------------------------------------------
# graph.geo
# ---------------------------------------------------------------------------

class TestHaversine:
    def test_same_point_is_zero(self):
        assert haversine_metres(52.23, 21.01, 52.23, 21.01) == pytest.approx(0.0, abs=0.01)

    def test_symmetry(self):
        d1 = haversine_metres(52.2297, 21.0122, 50.0647, 19.9450)
        d2 = haversine_metres(50.0647, 19.9450, 52.2297, 21.0122)
        assert d1 == pytest.approx(d2, rel=1e-6)

    def test_one_degree_on_equator_approx_111km(self):
        assert 110 < haversine_km(0.0, 0.0, 0.0, 1.0) < 112

    def test_travel_minutes(self):
        # 10 km at 20 km/h = 30 min
        assert travel_minutes(10, 20) == pytest.approx(30.0)


class TestValidateCoordinates:
    def test_valid_point_passes(self):
        validate_coordinates(52.0, 21.0)

    @pytest.mark.parametrize("lat,lon", [(91, 0), (-91, 0), (0, 181), (0, -181), (float("nan"), 0)])
    def test_out_of_range_rejected(self, lat, lon):
        with pytest.raises(InvalidInputError):
            validate_coordinates(lat, lon)

    def test_missing_rejected(self):
        with pytest.raises(InvalidInputError):
            validate_coordinates(None, 21.0)


class TestNearestStops:
    def test_orders_by_distance(self):
        stops = [_stop("far", 0.0, 0.05), _stop("near", 0.0, 0.001), _stop("mid", 0.0, 0.01)]
        result = nearest_stops(stops, 0.0, 0.0, limit=3)
        assert [s.stop_id for s, _ in result] == ["near", "mid", "far"]

    def test_limit_respected(self):
        stops = [_stop(str(i), 0.0, i * 0.001) for i in range(10)]
        assert len(nearest_stops(stops, 0.0, 0.0, limit=4)) == 4

    def test_stops_without_coordinates_ignored(self):
        stops = [_stop("nowhere", None, None), _stop("here", 0.0, 0.0)]
        result = nearest_stops(stops, 0.0, 0.0)
        assert [s.stop_id for s, _ in result] == ["here"]

    def test_distance_returned_in_metres(self):
        (_, d), = nearest_stops([_stop("x", 0.0, 0.01)], 0.0, 0.0)
        assert 1100 < d < 1125


# ---------------------------------------------------------------------------
# build_transit_graph
# ---------------------------------------------------------------------------

class TestBuildTransitGraph:
    def test_empty_input_gives_empty_graph(self):
        G = build_transit_graph([], [], [])
        assert G.number_of_nodes() == 0
        assert G.number_of_edges() == 0

    def test_nodes_carry_stop_attributes(self):
        G = build_transit_graph([_stop("A", 1.0, 2.0, "Alpha")], [], [])
        assert G.nodes["A"] == {"name": "Alpha", "lat": 1.0, "lon": 2.0, "transport_type": None}

    def test_consecutive_pairs_become_directed_edges(self):
        stops = [_stop(s, 0.0, i * 0.01) for i, s in enumerate("ABC")]
        G = build_transit_graph(stops, [_line("L1")], [RoutePattern("R1", "L1", ["A", "B", "C"])])
        assert G.has_edge("A", "B", key="R1")
        assert G.has_edge("B", "C", key="R1")
        assert not G.has_edge("B", "A")
        assert not G.has_edge("A", "C")

    def test_edge_attributes(self):
        stops = [_stop("A", 0.0, 0.0), _stop("B", 0.0, 0.01)]
        G = build_transit_graph(stops, [_line("L1", TransportType.TRAM)], [RoutePattern("R1", "L1", ["A", "B"])])
        data = G.get_edge_data("A", "B", key="R1")
        assert data["route_id"] == "R1"
        assert data["line_id"] == "L1"
        assert data["line_name"] == "Line L1"
        assert data["transport_type"] == "TRAM"
        assert isinstance(data["duration"], int)

    def test_duplicate_route_pairs_collapse(self):
        stops = [_stop("A", 0.0, 0.0), _stop("B", 0.0, 0.01)]
        routes = [RoutePattern("R1", "L1", ["A", "B"]), RoutePattern("R1", "L1", ["A", "B"])]
        G = build_transit_graph(stops, [_line("L1")], routes)
        assert G.number_of_edges("A", "B") == 1

    def test_two_routes_on_same_pair_keep_both_edges(self):
        stops = [_stop("A", 0.0, 0.0), _stop("B", 0.0, 0.01)]
        routes = [RoutePattern("R1", "L1", ["A", "B"]), RoutePattern("R2", "L2", ["A", "B"])]
        G = build_transit_graph(stops, [_line("L1"), _line("L2")], routes)
        assert G.number_of_edges("A", "B") == 2

    def test_unknown_line_defaults_to_bus(self):
        stops = [_stop("A", 0.0, 0.0), _stop("B", 0.0, 0.01)]
        G = build_transit_graph(stops, [], [RoutePattern("R1", "ghost", ["A", "B"])])
        assert G.get_edge_data("A", "B", key="R1")["transport_type"] == "BUS"


class TestEdgeDuration:
    def test_bus_over_0_01_degree_is_three_minutes(self):
        # ≈1.11 km at 20 km/h ≈ 3.3 min → 3
        G = build_transit_graph([_stop("A", 0.0, 0.0), _stop("B", 0.0, 0.01)], [], [])
        assert edge_duration_minutes(G, "A", "B", "BUS") == 3

    def test_short_hop_floored_at_minimum(self):
        G = build_transit_graph([_stop("A", 0.0, 0.0), _stop("B", 0.0, 0.0001)], [], [])
        assert edge_duration_minutes(G, "A", "B", "BUS") == MIN_EDGE_MINUTES

    def test_faster_mode_is_quicker(self):
        G = build_transit_graph([_stop("A", 0.0, 0.0), _stop("B", 0.0, 0.1)], [], [])
        assert edge_duration_minutes(G, "A", "B", "METRO") < edge_duration_minutes(G, "A", "B", "BUS")

    def test_missing_coordinates_use_default(self):
        G = build_transit_graph([_stop("A", None, None), _stop("B", 0.0, 0.01)], [], [])
        assert edge_duration_minutes(G, "A", "B", "BUS") == DEFAULT_EDGE_MINUTES


class TestSpeedAndTypeHelpers:
    def test_known_speed(self):
        assert speed_for("METRO") == 40

    def test_unknown_speed_defaults(self):
        assert speed_for("HOVERCRAFT") == DEFAULT_SPEED_KPH
        assert speed_for(None) == DEFAULT_SPEED_KPH

    def test_enum_and_string_normalised(self):
        assert transport_type_name(TransportType.TRAM) == "TRAM"
        assert transport_type_name("bus") == "BUS"
        assert transport_type_name(None) is None


# ---------------------------------------------------------------------------
# build_graph (DB-backed)
# ---------------------------------------------------------------------------

class TestBuildGraphFromDb:
    def test_builds_and_caches(self, db_session, monkeypatch):
        monkeypatch.setattr(builder, "_graph", None)
        db_session.add_all([
            Stop(stop_id="A", stop_name="A", stop_lat=0.0, stop_lon=0.0),
            Stop(stop_id="B", stop_name="B", stop_lat=0.0, stop_lon=0.01),
            Stop(stop_id="C", stop_name="C", stop_lat=0.0, stop_lon=0.02),
            Line(line_id="L1", line_name="1", transport_type=TransportType.BUS),
            Route(route_id="R1", line_id="L1"),
        ])
        db_session.add_all([
            RouteStop(route_id="R1", stop_id="C", stop_sequence=3),
            RouteStop(route_id="R1", stop_id="A", stop_sequence=1),
            RouteStop(route_id="R1", stop_id="B", stop_sequence=2),
        ])
        db_session.commit()

        G = build_graph(db_session)

        assert builder.get_graph() is G
        assert builder.get_last_built_at() is not None
        assert G.has_edge("A", "B", key="R1")
        assert G.has_edge("B", "C", key="R1")
        assert G.number_of_edges() == 2

    def test_get_graph_before_build_raises(self, monkeypatch):
        monkeypatch.setattr(builder, "_graph", None)
        with pytest.raises(RuntimeError):
            builder.get_graph()
