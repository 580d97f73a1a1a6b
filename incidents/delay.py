"""
Maps active incidents onto extra travel time for individual graph edges.

For one incident and one edge (from_stop → to_stop on the incident's line):
  delay    = BASE_DELAY_MINUTES[kind]
  delay   *= 2 if from_stop or to_stop is in incident.affected_stop_ids
  severity = CRITICAL (>= 30) | HIGH (>= 15) | MEDIUM (>= 5) | LOW

Several incidents on the same line add up on the same edge; the severity
of the combined impact is derived from the accumulated delay.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from db.models import Incident, IncidentKind, IncidentStatus, Severity

logger = logging.getLogger(__name__)

# Minutes added per incident (tunable).  CANCELLED is effectively a block.
BASE_DELAY_MINUTES: dict[IncidentKind, int] = {
    IncidentKind.DELAY: 5,
    IncidentKind.CROWDED: 3,
    IncidentKind.BLOCKED: 30,
    IncidentKind.CANCELLED: 999,
    IncidentKind.ACCIDENT: 15,
    IncidentKind.TRAFFIC_JAM: 10,
    IncidentKind.OTHER: 2,
    # Crowd-reported kinds, mapped onto the closest disruption above
    IncidentKind.INCIDENT: 2,
    IncidentKind.NETWORK_FAILURE: 30,
    IncidentKind.VEHICLE_FAILURE: 5,
    IncidentKind.PLATFORM_CHANGES: 2,
}

PROXIMITY_MULTIPLIER = 2


@dataclass(frozen=True)
class DelayImpact:
    delay: int
    severity: Severity

    @property
    def has_incident(self) -> bool:
        return self.delay > 0


NO_IMPACT = DelayImpact(delay=0, severity=Severity.LOW)


def severity_for_delay(delay: float) -> Severity:
    if delay >= 30:
        return Severity.CRITICAL
    if delay >= 15:
        return Severity.HIGH
    if delay >= 5:
        return Severity.MEDIUM
    return Severity.LOW


def calculate_incident_delay(incident, from_stop_id: str, to_stop_id: str) -> DelayImpact:
    """Delay and severity one incident imposes on one edge."""
    kind = _as_kind(incident.kind)
    delay = BASE_DELAY_MINUTES.get(kind, 0) if kind is not None else 0

    affected = incident.affected_stop_ids or []
    if from_stop_id in affected or to_stop_id in affected:
        delay *= PROXIMITY_MULTIPLIER

    return DelayImpact(delay=delay, severity=severity_for_delay(delay))


def edge_incident_impact(
    incidents: Iterable, from_stop_id: str, to_stop_id: str
) -> DelayImpact:
    """Accumulated impact of every incident on the edge's line."""
    total = sum(
        calculate_incident_delay(incident, from_stop_id, to_stop_id).delay
        for incident in incidents
    )
    if total <= 0:
        return NO_IMPACT
    return DelayImpact(delay=total, severity=severity_for_delay(total))


def index_incidents_by_line(incidents: Iterable) -> dict[str, list]:
    """Group incidents under each line id they name, for O(1) edge lookup."""
    by_line: dict[str, list] = defaultdict(list)
    for incident in incidents:
        for line_id in incident.line_ids or []:
            if line_id:
                by_line[line_id].append(incident)
    return dict(by_line)


def load_active_incidents(session: Session) -> list[Incident]:
    """Published, unresolved incidents: the set the search routes around."""
    incidents = (
        session.query(Incident)
        .filter(Incident.status == IncidentStatus.PUBLISHED, Incident.resolved_at.is_(None))
        .all()
    )
    logger.debug("Loaded %d active incidents.", len(incidents))
    return incidents


def _as_kind(value) -> Optional[IncidentKind]:
    if isinstance(value, IncidentKind):
        return value
    try:
        return IncidentKind(str(value).upper())
    except ValueError:
        logger.warning("Unknown incident kind %r; treating as no delay.", value)
        return None
