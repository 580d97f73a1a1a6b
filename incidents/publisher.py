"""
Creates, publishes and resolves authoritative Incidents.

Three ways an Incident comes to exist:
  - a pending crowd report reaches quorum (reports.pending)
  - a moderator approves a pending report (reports.pending)
  - an admin or moderator publishes one directly (create_official_incident)

Functions that take a caller's session without committing leave event
publication to the caller, which must only announce after its commit.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from db.models import (
    Incident,
    IncidentKind,
    IncidentStatus,
    PendingIncidentReport,
    PendingIncidentStatus,
    ReporterRole,
    User,
    utcnow,
)
from errors import ConflictError, InvalidInputError, NotFoundError
from incidents.events import INCIDENT_UPDATED, EventPublisher, announce_incident
from trust.score import ReputationChange, apply_reputation_change

logger = logging.getLogger(__name__)

INCIDENT_TITLES: dict[IncidentKind, str] = {
    IncidentKind.ACCIDENT: "Accident",
    IncidentKind.TRAFFIC_JAM: "Traffic jam",
    IncidentKind.INCIDENT: "Other incident",
    IncidentKind.NETWORK_FAILURE: "Network failure",
    IncidentKind.VEHICLE_FAILURE: "Vehicle failure",
    IncidentKind.PLATFORM_CHANGES: "Platform change",
    IncidentKind.DELAY: "Delay",
    IncidentKind.CROWDED: "Overcrowding",
    IncidentKind.BLOCKED: "Line blocked",
    IncidentKind.CANCELLED: "Service cancelled",
    IncidentKind.OTHER: "Incident",
}

STAFF_ROLES = (ReporterRole.ADMIN, ReporterRole.MODERATOR)


def publish_incident_from_pending(
    session: Session,
    pending: PendingIncidentReport,
    moderator_id: Optional[str] = None,
    moderator_notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Incident:
    """
    Materialize a pending report as a PUBLISHED Incident and link the two.

    Flushes but does not commit.  The pending status becomes
    MANUALLY_APPROVED when a moderator is given, THRESHOLD_MET otherwise.
    Pass ``now`` to stamp the incident from the caller's clock.
    """
    now = now or utcnow()
    incident = Incident(
        title=INCIDENT_TITLES.get(pending.kind, "Incident"),
        description=pending.description,
        kind=pending.kind,
        status=IncidentStatus.PUBLISHED,
        line_ids=list(pending.line_ids or []),
        affected_stop_ids=[],
        delay_minutes=pending.delay_minutes,
        is_fake=False,
        reported_by=pending.reporter_ids[0] if pending.reporter_ids else None,
        source=ReporterRole.MODERATOR if moderator_id else ReporterRole.USER,
        created_at=now,
    )
    session.add(incident)
    session.flush()

    pending.published_incident_id = incident.id
    pending.threshold_met_at = now
    if moderator_id:
        pending.status = PendingIncidentStatus.MANUALLY_APPROVED
        pending.moderator_id = moderator_id
        if moderator_notes:
            pending.moderator_notes = moderator_notes
    else:
        pending.status = PendingIncidentStatus.THRESHOLD_MET

    logger.info(
        "Incident %d (%s) materialized from pending report %d.",
        incident.id, incident.kind.value, pending.id,
    )
    return incident


def create_official_incident(
    session: Session,
    author_id: str,
    kind: IncidentKind,
    line_ids: list[str],
    title: Optional[str] = None,
    description: Optional[str] = None,
    affected_stop_ids: Optional[list[str]] = None,
    delay_minutes: Optional[int] = None,
    events: Optional[EventPublisher] = None,
    dispatcher=None,
) -> Incident:
    """Publish an incident directly on behalf of an admin or moderator."""
    author = session.get(User, author_id)
    if author is None:
        raise NotFoundError(f"User '{author_id}' not found.")
    if author.role not in STAFF_ROLES:
        raise InvalidInputError("Only moderators and admins can publish incidents directly.")

    incident = Incident(
        title=title or INCIDENT_TITLES.get(kind, "Incident"),
        description=description,
        kind=kind,
        status=IncidentStatus.PUBLISHED,
        line_ids=list(line_ids),
        affected_stop_ids=list(affected_stop_ids or []),
        delay_minutes=delay_minutes,
        reported_by=author_id,
        source=author.role,
        created_at=utcnow(),
    )
    session.add(incident)
    session.commit()
    logger.info("Official incident %d published by %s.", incident.id, author_id)

    if events is not None:
        announce_incident(events, incident)
    if dispatcher is not None:
        dispatcher.process_incident(session, incident, author.role)
    return incident


def resolve_incident(
    session: Session,
    incident_id: int,
    was_valid: bool = True,
    events: Optional[EventPublisher] = None,
) -> tuple[Incident, list[ReputationChange]]:
    """
    Close an incident and settle its reporters' reputation.

    was_valid=False marks the incident fake, which penalizes every reporter
    and counts against their trust score.
    """
    incident = session.get(Incident, incident_id)
    if incident is None:
        raise NotFoundError(f"Incident {incident_id} not found.")
    if incident.status == IncidentStatus.RESOLVED:
        raise ConflictError(f"Incident {incident_id} is already resolved.")

    now = utcnow()
    incident.status = IncidentStatus.RESOLVED
    incident.resolved_at = now
    incident.is_fake = not was_valid

    changes = []
    for user_id in _reporters_of(session, incident):
        change = apply_reputation_change(session, user_id, was_valid, incident.created_at, now)
        if change is not None:
            changes.append(change)
    session.commit()

    logger.info(
        "Incident %d resolved (%s); %d reporter(s) adjusted.",
        incident.id, "valid" if was_valid else "fake", len(changes),
    )
    if events is not None:
        announce_incident(events, incident, channel=INCIDENT_UPDATED)
    return incident, changes


def _reporters_of(session: Session, incident: Incident) -> list[str]:
    pending = (
        session.query(PendingIncidentReport)
        .filter(PendingIncidentReport.published_incident_id == incident.id)
        .first()
    )
    if pending is not None and pending.reporter_ids:
        return list(pending.reporter_ids)
    return [incident.reported_by] if incident.reported_by else []
