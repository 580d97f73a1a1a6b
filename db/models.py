"""
SQLAlchemy ORM models for transit reference data, incidents, crowd reports
and the trust-relevant part of the user record.

Reference data (stops, lines, routes, route_stops) is written by the import
tooling and only read at runtime.  Route stop times are kept as HH:MM:SS
strings because schedules may run past 24:00:00.

List-valued fields (reporter ids, line ids, ...) are JSON columns.  They
must be reassigned, never mutated in place, for SQLAlchemy to see the change.

All timestamps are naive UTC.
"""

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    JSON, Boolean, Column, DateTime, Enum, Float, ForeignKey, Integer, String, Text
)
from sqlalchemy.orm import declarative_base, relationship

from config import NEW_USER_REPUTATION

Base = declarative_base()


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (what SQLite round-trips)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class TransportType(str, enum.Enum):
    BUS = "BUS"
    TRAM = "TRAM"
    METRO = "METRO"
    TRAIN = "TRAIN"
    RAIL = "RAIL"


class IncidentKind(str, enum.Enum):
    # Kinds users and moderators report
    INCIDENT = "INCIDENT"                # generic
    NETWORK_FAILURE = "NETWORK_FAILURE"
    VEHICLE_FAILURE = "VEHICLE_FAILURE"
    ACCIDENT = "ACCIDENT"
    TRAFFIC_JAM = "TRAFFIC_JAM"
    PLATFORM_CHANGES = "PLATFORM_CHANGES"
    # Service-disruption kinds published by operators
    DELAY = "DELAY"
    CROWDED = "CROWDED"
    BLOCKED = "BLOCKED"
    CANCELLED = "CANCELLED"
    OTHER = "OTHER"


class IncidentStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"
    RESOLVED = "RESOLVED"


class PendingIncidentStatus(str, enum.Enum):
    PENDING = "PENDING"
    THRESHOLD_MET = "THRESHOLD_MET"
    MANUALLY_APPROVED = "MANUALLY_APPROVED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


class QueuePriority(str, enum.Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class Severity(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class ReporterRole(str, enum.Enum):
    USER = "USER"
    MODERATOR = "MODERATOR"
    ADMIN = "ADMIN"


# ---------------------------------------------------------------------------
# Reference data
# ---------------------------------------------------------------------------

class Stop(Base):
    __tablename__ = "stops"

    stop_id = Column(String, primary_key=True)
    stop_name = Column(String, nullable=False)
    stop_lat = Column(Float, nullable=True)
    stop_lon = Column(Float, nullable=True)
    transport_type = Column(Enum(TransportType), nullable=True)

    route_stops = relationship("RouteStop", back_populates="stop")


class Line(Base):
    __tablename__ = "lines"

    line_id = Column(String, primary_key=True)
    line_name = Column(String, nullable=False)
    transport_type = Column(Enum(TransportType), nullable=False, default=TransportType.BUS)

    routes = relationship("Route", back_populates="line")


class Route(Base):
    """One scheduled trip pattern of a line."""
    __tablename__ = "routes"

    route_id = Column(String, primary_key=True)
    line_id = Column(String, ForeignKey("lines.line_id"), index=True, nullable=False)
    headsign = Column(String, nullable=True)

    line = relationship("Line", back_populates="routes")
    stops = relationship(
        "RouteStop", back_populates="route", order_by="RouteStop.stop_sequence"
    )


class RouteStop(Base):
    __tablename__ = "route_stops"

    id = Column(Integer, primary_key=True, autoincrement=True)
    route_id = Column(String, ForeignKey("routes.route_id"), index=True, nullable=False)
    stop_id = Column(String, ForeignKey("stops.stop_id"), index=True, nullable=False)
    stop_sequence = Column(Integer, nullable=False)
    arrival_time = Column(String, nullable=True)    # HH:MM:SS (may exceed 24:00:00)
    departure_time = Column(String, nullable=True)  # HH:MM:SS (may exceed 24:00:00)

    route = relationship("Route", back_populates="stops")
    stop = relationship("Stop", back_populates="route_stops")


# ---------------------------------------------------------------------------
# Incidents and crowd reports
# ---------------------------------------------------------------------------

class Incident(Base):
    __tablename__ = "incidents"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    kind = Column(Enum(IncidentKind), nullable=False, index=True)
    status = Column(Enum(IncidentStatus), nullable=False, default=IncidentStatus.DRAFT, index=True)
    line_ids = Column(JSON, nullable=False, default=list)
    affected_stop_ids = Column(JSON, nullable=False, default=list)
    delay_minutes = Column(Integer, nullable=True)
    is_fake = Column(Boolean, nullable=False, default=False)
    reported_by = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    source = Column(Enum(ReporterRole), nullable=False, default=ReporterRole.USER)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    resolved_at = Column(DateTime, nullable=True)


class PendingIncidentReport(Base):
    """
    Aggregates every user report describing one real-world event until it
    is published, rejected, or expires.  reporter_ids holds each user id at
    most once; reporter_reputations is index-aligned with it.
    """
    __tablename__ = "pending_incident_reports"

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(Enum(IncidentKind), nullable=False, index=True)
    status = Column(
        Enum(PendingIncidentStatus), nullable=False,
        default=PendingIncidentStatus.PENDING, index=True,
    )
    description = Column(Text, nullable=True)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    line_ids = Column(JSON, nullable=False, default=list)
    delay_minutes = Column(Integer, nullable=True)

    reporter_ids = Column(JSON, nullable=False, default=list)
    reporter_reputations = Column(JSON, nullable=False, default=list)
    total_reports = Column(Integer, nullable=False, default=0)
    aggregate_reputation = Column(Integer, nullable=False, default=0)
    threshold_score = Column(Float, nullable=False, default=0.0)
    threshold_required = Column(Float, nullable=False, default=1.0)

    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    last_report_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False, index=True)
    threshold_met_at = Column(DateTime, nullable=True)

    published_incident_id = Column(Integer, ForeignKey("incidents.id"), nullable=True)
    moderator_id = Column(String, nullable=True)
    moderator_notes = Column(Text, nullable=True)

    # Optimistic concurrency: every UPDATE checks and bumps this column.
    version = Column(Integer, nullable=False)

    published_incident = relationship("Incident")
    queue_items = relationship("ModeratorQueueItem", back_populates="pending_report")

    __mapper_args__ = {"version_id_col": version}


class ModeratorQueueItem(Base):
    __tablename__ = "moderator_queue"

    id = Column(Integer, primary_key=True, autoincrement=True)
    pending_incident_id = Column(
        Integer, ForeignKey("pending_incident_reports.id"), index=True, nullable=False
    )
    priority = Column(Enum(QueuePriority), nullable=False, default=QueuePriority.MEDIUM)
    reason = Column(String, nullable=False)
    assigned_to = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    reviewed_at = Column(DateTime, nullable=True)  # set = archived

    pending_report = relationship("PendingIncidentReport", back_populates="queue_items")


# ---------------------------------------------------------------------------
# Users (trust-relevant fields only)
# ---------------------------------------------------------------------------

class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True)
    display_name = Column(String, nullable=True)
    role = Column(Enum(ReporterRole), nullable=False, default=ReporterRole.USER)
    reputation = Column(Integer, nullable=False, default=NEW_USER_REPUTATION)

    # Derived from reputation and report history; None until first computed.
    trust_score = Column(Float, nullable=True)
    trust_base_score = Column(Float, nullable=True)
    trust_accuracy_bonus = Column(Float, nullable=True)
    trust_high_rep_bonus = Column(Float, nullable=True)
    trust_validation_rate = Column(Float, nullable=True)
    trust_updated_at = Column(DateTime, nullable=True)

    active_journey_line_ids = Column(JSON, nullable=False, default=list)
    favorite_line_ids = Column(JSON, nullable=False, default=list)
