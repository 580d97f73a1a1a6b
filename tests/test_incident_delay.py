"""
Unit tests for incidents.delay.
"""

from types import SimpleNamespace

import pytest

from db.models import Incident, IncidentKind, IncidentStatus, Severity, utcnow
from incidents.delay import (
    BASE_DELAY_MINUTES,
    NO_IMPACT,
    calculate_incident_delay,
    edge_incident_impact,
    index_incidents_by_line,
    load_active_incidents,
    severity_for_delay,
)


def _incident(kind, line_ids=("L1",), affected=()):
    return SimpleNamespace(kind=kind, line_ids=list(line_ids), affected_stop_ids=list(affected))


class TestSeverityForDelay:
    @pytest.mark.parametrize("delay,expected", [
        (0, Severity.LOW),
        (4, Severity.LOW),
        (5, Severity.MEDIUM),
        (14, Severity.MEDIUM),
        (15, Severity.HIGH),
        (29, Severity.HIGH),
        (30, Severity.CRITICAL),
        (999, Severity.CRITICAL),
    ])
    def test_bands(self, delay, expected):
        assert severity_for_delay(delay) == expected


class TestCalculateIncidentDelay:
    def test_base_delay_by_kind(self):
        impact = calculate_incident_delay(_incident(IncidentKind.ACCIDENT), "A", "B")
        assert impact.delay == 15
        assert impact.severity == Severity.HIGH

    def test_cancelled_effectively_blocks(self):
        assert calculate_incident_delay(_incident(IncidentKind.CANCELLED), "A", "B").delay == 999

    def test_from_stop_proximity_doubles(self):
        impact = calculate_incident_delay(_incident(IncidentKind.TRAFFIC_JAM, affected=["A"]), "A", "B")
        assert impact.delay == 20

    def test_to_stop_proximity_doubles(self):
        impact = calculate_incident_delay(_incident(IncidentKind.DELAY, affected=["B"]), "A", "B")
        assert impact.delay == 10

    def test_unrelated_affected_stop_does_not_double(self):
        impact = calculate_incident_delay(_incident(IncidentKind.DELAY, affected=["Z"]), "A", "B")
        assert impact.delay == 5

    def test_string_kind_accepted(self):
        assert calculate_incident_delay(_incident("blocked"), "A", "B").delay == 30

    def test_unknown_kind_is_no_delay(self):
        assert calculate_incident_delay(_incident("METEOR"), "A", "B").delay == 0

    def test_every_kind_has_a_base_delay(self):
        assert set(BASE_DELAY_MINUTES) == set(IncidentKind)


class TestEdgeIncidentImpact:
    def test_no_incidents_is_no_impact(self):
        assert edge_incident_impact([], "A", "B") is NO_IMPACT
        assert not NO_IMPACT.has_incident

    def test_delays_accumulate(self):
        impact = edge_incident_impact(
            [_incident(IncidentKind.DELAY), _incident(IncidentKind.ACCIDENT)], "A", "B"
        )
        assert impact.delay == 20
        assert impact.has_incident

    def test_severity_from_accumulated_delay(self):
        # 10 + 10 + 10 → CRITICAL, though each alone is only MEDIUM
        impact = edge_incident_impact([_incident(IncidentKind.TRAFFIC_JAM)] * 3, "A", "B")
        assert impact.severity == Severity.CRITICAL


class TestIndexByLine:
    def test_groups_by_every_named_line(self):
        a = _incident(IncidentKind.DELAY, line_ids=["L1", "L2"])
        b = _incident(IncidentKind.BLOCKED, line_ids=["L2"])
        index = index_incidents_by_line([a, b])
        assert index["L1"] == [a]
        assert index["L2"] == [a, b]

    def test_empty_line_ids_skipped(self):
        assert index_incidents_by_line([_incident(IncidentKind.DELAY, line_ids=[])]) == {}


class TestLoadActiveIncidents:
    def test_only_published_unresolved(self, db_session):
        db_session.add_all([
            Incident(title="live", kind=IncidentKind.DELAY, status=IncidentStatus.PUBLISHED, line_ids=["L1"]),
            Incident(title="draft", kind=IncidentKind.DELAY, status=IncidentStatus.DRAFT, line_ids=["L1"]),
            Incident(title="done", kind=IncidentKind.DELAY, status=IncidentStatus.RESOLVED,
                     line_ids=["L1"], resolved_at=utcnow()),
        ])
        db_session.commit()
        assert [i.title for i in load_active_incidents(db_session)] == ["live"]
