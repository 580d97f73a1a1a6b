from __future__ import annotations
from datetime import datetime
from typing import Literal
from pydantic import BaseModel, ConfigDict, Field

from db.models import (
    IncidentKind,
    IncidentStatus,
    PendingIncidentStatus,
    QueuePriority,
    ReporterRole,
    Severity,
)


class _FromAttributes(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# ---------------------------------------------------------------------------
# GET /stops, GET /stops/nearest
# ---------------------------------------------------------------------------

class StopResult(BaseModel):
    stop_id: str
    stop_name: str
    lat: float | None
    lon: float | None
    transport_type: str | None


class NearestStopResult(StopResult):
    distance_m: float


# ---------------------------------------------------------------------------
# GET /journeys
# ---------------------------------------------------------------------------

class StopRef(_FromAttributes):
    stop_id: str
    name: str
    lat: float | None
    lon: float | None


class Segment(_FromAttributes):
    from_stop: StopRef
    to_stop: StopRef
    route_id: str
    line_id: str
    line_name: str
    transport_type: str
    departure_time: datetime
    arrival_time: datetime
    duration: int                 # minutes, incident delay included
    distance_km: float
    has_incident: bool
    incident_delay: int | None = None
    incident_severity: Severity | None = None


class Journey(_FromAttributes):
    segments: list[Segment]
    total_duration: int
    total_distance_km: float
    transfer_count: int
    has_incidents: bool
    alternative_available: bool


class JourneysResponse(_FromAttributes):
    journeys: list[Journey]
    warnings: list[str]
    from_cache: bool


# ---------------------------------------------------------------------------
# POST /reports
# ---------------------------------------------------------------------------

class Location(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class ReportRequest(BaseModel):
    kind: IncidentKind
    location: Location
    reporter_id: str = Field(..., min_length=1)
    reporter_reputation: int | None = Field(None, ge=0)
    line_ids: list[str] = Field(default_factory=list)
    description: str | None = None
    delay_minutes: int | None = Field(None, ge=0)


class ReportResponse(_FromAttributes):
    success: bool
    pending_report_id: int
    status: PendingIncidentStatus
    threshold_progress: float
    threshold_score: float
    message: str
    is_new: bool
    total_reports: int
    reports_needed: int
    reputation_needed: int
    published_incident_id: int | None


# ---------------------------------------------------------------------------
# Incidents and moderation
# ---------------------------------------------------------------------------

class IncidentOut(_FromAttributes):
    id: int
    title: str
    description: str | None
    kind: IncidentKind
    status: IncidentStatus
    line_ids: list[str]
    affected_stop_ids: list[str]
    delay_minutes: int | None
    is_fake: bool
    reported_by: str | None
    source: ReporterRole
    created_at: datetime
    resolved_at: datetime | None


class ReputationChangeOut(_FromAttributes):
    user_id: str
    old_reputation: int
    change: int
    new_reputation: int


class QueueItemOut(_FromAttributes):
    id: int
    pending_incident_id: int
    priority: QueuePriority
    reason: str
    assigned_to: str | None
    created_at: datetime


class ApproveRequest(BaseModel):
    moderator_id: str
    notes: str | None = None


class ApproveResponse(BaseModel):
    incident: IncidentOut
    rewarded_users: list[ReputationChangeOut]


class RejectRequest(BaseModel):
    moderator_id: str
    reason: str = Field(..., min_length=1)


class RejectResponse(BaseModel):
    success: bool


class IncidentCreateRequest(BaseModel):
    author_id: str
    kind: IncidentKind
    line_ids: list[str] = Field(..., min_length=1)
    title: str | None = None
    description: str | None = None
    affected_stop_ids: list[str] = Field(default_factory=list)
    delay_minutes: int | None = Field(None, ge=0)


class ResolveRequest(BaseModel):
    moderator_id: str
    was_valid: bool = True


class ResolveResponse(BaseModel):
    incident: IncidentOut
    reputation_changes: list[ReputationChangeOut]


class TrustScoreResponse(BaseModel):
    user_id: str
    trust_score: float


# ---------------------------------------------------------------------------
# GET /health
# ---------------------------------------------------------------------------

class GraphStats(BaseModel):
    stops: int
    graph_nodes: int
    graph_edges: int
    graph_built: bool
    last_built_at: str | None


class ReportStats(BaseModel):
    pending_reports: int
    active_incidents: int
    queue_items: int


class HealthResponse(BaseModel):
    status: Literal["ok"]
    timestamp: str
    graph: GraphStats
    reports: ReportStats
    scheduler_running: bool


# ---------------------------------------------------------------------------
# POST /ingest/*
# ---------------------------------------------------------------------------

class IngestResponse(BaseModel):
    status: Literal["ok"]
    message: str
