"""
FastAPI application entry point.

On startup:
  1. Initialise the database schema.
  2. Build the transit graph from stored reference data (if available).
  3. Start the APScheduler with the maintenance sweeps from jobs.maintenance:
       - delivery / path cache eviction   (every DELIVERY_SWEEP_MINUTES)
       - pending report expiry            (every EXPIRY_SWEEP_MINUTES)
       - trust score recompute            (every TRUST_RECOMPUTE_HOURS)
On shutdown the sweeps' cancellation tokens are set and the scheduler stops.

Endpoints (v1):
  GET  /health
  GET  /stops?query=<name>
  GET  /stops/nearest?lat=<lat>&lon=<lon>
  GET  /journeys?from_stop_id=<id>&to_stop_id=<id>
  POST /reports
  GET  /moderation/queue?moderator_id=<id>
  POST /moderation/queue/{item_id}/assign
  POST /moderation/pending/{pending_id}/approve
  POST /moderation/pending/{pending_id}/reject
  POST /incidents
  POST /incidents/{incident_id}/resolve
  GET  /users/{user_id}/trust-score
  POST /ingest/graph-rebuild

Authentication is handled upstream; moderator endpoints only check the
acting user's stored role.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import Depends, FastAPI, HTTPException, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from sqlalchemy import func
from sqlalchemy.orm import Session

from api.schemas import (
    ApproveRequest,
    ApproveResponse,
    HealthResponse,
    IncidentCreateRequest,
    IncidentOut,
    IngestResponse,
    JourneysResponse,
    NearestStopResult,
    QueueItemOut,
    RejectRequest,
    RejectResponse,
    ReputationChangeOut,
    ReportRequest,
    ReportResponse,
    ResolveRequest,
    ResolveResponse,
    StopResult,
    TrustScoreResponse,
)
from config import CORS_ORIGINS, INGEST_API_KEY, LOG_LEVEL, MAX_TRANSFERS
from db.models import (
    Incident,
    IncidentStatus,
    ModeratorQueueItem,
    PendingIncidentReport,
    PendingIncidentStatus,
    ReporterRole,
    Stop,
    User,
)
from db.session import SessionLocal, get_session, init_db
from errors import (
    ConflictError,
    ExhaustedError,
    InvalidInputError,
    NotFoundError,
    TransientStoreError,
    TransitError,
)
from graph.builder import build_graph, get_graph, get_last_built_at, transport_type_name
from graph.geo import nearest_stops
from incidents.events import InMemoryEventBus
from incidents.publisher import create_official_incident, resolve_incident
from jobs.maintenance import build_maintenance_tasks, cancel_all, register_jobs
from notifications.dispatch import NotificationDispatcher
from reports.pending import QuorumEngine
from routing.cache import PathCache
from routing.engine import SearchOptions, plan_journeys
from trust.score import get_user_trust_score

logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger(__name__)

_ingest_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def _require_ingest_key(key: str | None = Security(_ingest_key_header)) -> None:
    """
    Optional API-key guard for the ingest endpoint.

    If INGEST_API_KEY is not set the endpoint is open (local dev / testing).
    If it is set, the request must include the matching X-API-Key header.
    """
    if not INGEST_API_KEY:
        return  # no key configured → open
    if key != INGEST_API_KEY:
        raise HTTPException(status_code=401, detail="Invalid or missing X-API-Key header.")


scheduler = AsyncIOScheduler()

# Process-wide services; each owns its own cache and locks.
events = InMemoryEventBus()
dispatcher = NotificationDispatcher(events)
quorum = QuorumEngine(events=events, dispatcher=dispatcher)
path_cache = PathCache()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    init_db()
    logger.info("Database initialised.")

    db = SessionLocal()
    try:
        build_graph(db)
    except Exception as exc:
        logger.warning("Could not build graph on startup (no reference data yet?): %s", exc)
    finally:
        db.close()

    tasks = build_maintenance_tasks(quorum, dispatcher, path_cache)
    register_jobs(scheduler, tasks)
    scheduler.start()
    logger.info("Scheduler started with %d maintenance jobs.", len(tasks))

    yield

    # Shutdown
    cancel_all(tasks)
    if scheduler.running:
        scheduler.shutdown()


app = FastAPI(
    title="Incident-aware Transit Planner",
    description="Journey planning around live incidents, with crowd-reported incident quorum.",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

_STATUS_BY_ERROR: list[tuple[type, int]] = [
    (NotFoundError, 404),
    (InvalidInputError, 422),
    (ConflictError, 409),
    (ExhaustedError, 410),
    (TransientStoreError, 503),
]


@app.exception_handler(TransitError)
async def transit_error_handler(request: Request, exc: TransitError) -> JSONResponse:
    status = next((code for cls, code in _STATUS_BY_ERROR if isinstance(exc, cls)), 400)
    return JSONResponse(status_code=status, content={"detail": str(exc)})


def _require_staff(session: Session, user_id: str) -> User:
    user = session.get(User, user_id)
    if user is None:
        raise NotFoundError(f"User '{user_id}' not found.")
    if user.role not in (ReporterRole.ADMIN, ReporterRole.MODERATOR):
        raise HTTPException(status_code=403, detail="Moderator or admin role required.")
    return user


def _as_naive_utc(dt: datetime | None) -> datetime | None:
    if dt is None or dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def _stop_result(stop: Stop) -> dict:
    return {
        "stop_id": stop.stop_id,
        "stop_name": stop.stop_name,
        "lat": stop.stop_lat,
        "lon": stop.stop_lon,
        "transport_type": transport_type_name(stop.transport_type),
    }


@app.get("/health", response_model=HealthResponse)
async def health(session: Session = Depends(get_session)) -> HealthResponse:
    """
    Liveness + data-freshness check.

    Returns stop and report counts plus graph stats so operators can tell
    whether reference data has been loaded and the graph is ready.
    """
    stop_count: int = session.query(func.count(Stop.stop_id)).scalar() or 0
    pending_count: int = (
        session.query(func.count(PendingIncidentReport.id))
        .filter(PendingIncidentReport.status == PendingIncidentStatus.PENDING)
        .scalar() or 0
    )
    active_incidents: int = (
        session.query(func.count(Incident.id))
        .filter(Incident.status == IncidentStatus.PUBLISHED)
        .scalar() or 0
    )
    queue_items: int = (
        session.query(func.count(ModeratorQueueItem.id))
        .filter(ModeratorQueueItem.reviewed_at.is_(None))
        .scalar() or 0
    )

    # Graph stats (may not be built yet)
    graph_built = False
    graph_nodes = 0
    graph_edges = 0
    last_built_at: str | None = None
    try:
        G = get_graph()
        graph_built = True
        graph_nodes = G.number_of_nodes()
        graph_edges = G.number_of_edges()
        ts = get_last_built_at()
        last_built_at = ts.isoformat() if ts else None
    except RuntimeError:
        pass

    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "graph": {
            "stops": stop_count,
            "graph_nodes": graph_nodes,
            "graph_edges": graph_edges,
            "graph_built": graph_built,
            "last_built_at": last_built_at,
        },
        "reports": {
            "pending_reports": pending_count,
            "active_incidents": active_incidents,
            "queue_items": queue_items,
        },
        "scheduler_running": scheduler.running,
    }


@app.get("/stops", response_model=list[StopResult])
async def search_stops(
    query: str = Query(..., min_length=2, description="Stop name substring to search"),
    session: Session = Depends(get_session),
) -> list[StopResult]:
    """Search stops by name substring."""
    results = (
        session.query(Stop)
        .filter(Stop.stop_name.ilike(f"%{query}%"))
        .order_by(Stop.stop_name)
        .limit(20)
        .all()
    )
    return [_stop_result(s) for s in results]


@app.get("/stops/nearest", response_model=list[NearestStopResult])
async def stops_nearest(
    lat: float = Query(..., description="Latitude in degrees"),
    lon: float = Query(..., description="Longitude in degrees"),
    limit: int = Query(5, ge=1, le=50),
    session: Session = Depends(get_session),
) -> list[NearestStopResult]:
    """Closest stops to a point, nearest first."""
    stops = session.query(Stop).filter(Stop.stop_lat.isnot(None), Stop.stop_lon.isnot(None)).all()
    return [
        {**_stop_result(stop), "distance_m": round(distance, 1)}
        for stop, distance in nearest_stops(stops, lat, lon, limit)
    ]


@app.get("/journeys", response_model=JourneysResponse)
def get_journeys(
    from_stop_id: str = Query(..., description="Origin stop_id"),
    to_stop_id: str = Query(..., description="Destination stop_id"),
    departure_time: datetime | None = Query(None, description="ISO-8601 departure; defaults to now."),
    max_transfers: int = Query(MAX_TRANSFERS, ge=0, le=10),
    preferred_transport_types: list[str] = Query([], description="e.g. TRAM, METRO"),
    avoid_incidents: bool = Query(True),
    session: Session = Depends(get_session),
) -> JourneysResponse:
    """
    Return up to three ranked journeys, fastest first.  An unreachable
    destination yields an empty list with warnings rather than an error.
    """
    try:
        get_graph()
    except RuntimeError:
        raise HTTPException(status_code=503, detail="Transit graph is not built yet.")

    options = SearchOptions(
        max_transfers=max_transfers,
        preferred_transport_types=tuple(preferred_transport_types),
        avoid_incidents=avoid_incidents,
    )
    result = plan_journeys(
        session, from_stop_id, to_stop_id,
        departure_time=_as_naive_utc(departure_time),
        options=options,
        cache=path_cache,
    )
    return JourneysResponse.model_validate(result)


@app.post("/reports", response_model=ReportResponse)
def submit_report(body: ReportRequest, session: Session = Depends(get_session)) -> ReportResponse:
    """Submit a crowd report; it joins a nearby pending report or starts one."""
    result = quorum.submit_report(
        session,
        kind=body.kind,
        latitude=body.location.latitude,
        longitude=body.location.longitude,
        reporter_id=body.reporter_id,
        reporter_reputation=body.reporter_reputation,
        line_ids=body.line_ids,
        description=body.description,
        delay_minutes=body.delay_minutes,
    )
    return ReportResponse.model_validate(result)


@app.get("/moderation/queue", response_model=list[QueueItemOut])
def moderation_queue(
    moderator_id: str = Query(..., description="Acting moderator's user id"),
    session: Session = Depends(get_session),
) -> list[QueueItemOut]:
    _require_staff(session, moderator_id)
    return [QueueItemOut.model_validate(i) for i in quorum.get_moderator_queue(session)]


@app.post("/moderation/queue/{item_id}/assign", response_model=QueueItemOut)
def assign_queue_item(
    item_id: int,
    moderator_id: str = Query(..., description="Acting moderator's user id"),
    session: Session = Depends(get_session),
) -> QueueItemOut:
    _require_staff(session, moderator_id)
    return QueueItemOut.model_validate(quorum.assign_queue_item(session, item_id, moderator_id))


@app.post("/moderation/pending/{pending_id}/approve", response_model=ApproveResponse)
def approve_pending(
    pending_id: int, body: ApproveRequest, session: Session = Depends(get_session)
) -> ApproveResponse:
    """Publish a pending report as an Incident and reward its reporters."""
    _require_staff(session, body.moderator_id)
    outcome = quorum.approve_report(session, pending_id, body.moderator_id, body.notes)
    return {
        "incident": IncidentOut.model_validate(outcome.incident),
        "rewarded_users": [ReputationChangeOut.model_validate(c) for c in outcome.rewarded_users],
    }


@app.post("/moderation/pending/{pending_id}/reject", response_model=RejectResponse)
def reject_pending(
    pending_id: int, body: RejectRequest, session: Session = Depends(get_session)
) -> RejectResponse:
    _require_staff(session, body.moderator_id)
    return {"success": quorum.reject_report(session, pending_id, body.moderator_id, body.reason)}


@app.post("/incidents", response_model=IncidentOut)
def create_incident(body: IncidentCreateRequest, session: Session = Depends(get_session)) -> IncidentOut:
    """Publish an incident directly (admins and moderators only, no quorum)."""
    _require_staff(session, body.author_id)
    incident = create_official_incident(
        session,
        author_id=body.author_id,
        kind=body.kind,
        line_ids=body.line_ids,
        title=body.title,
        description=body.description,
        affected_stop_ids=body.affected_stop_ids,
        delay_minutes=body.delay_minutes,
        events=events,
        dispatcher=dispatcher,
    )
    return IncidentOut.model_validate(incident)


@app.post("/incidents/{incident_id}/resolve", response_model=ResolveResponse)
def resolve(incident_id: int, body: ResolveRequest, session: Session = Depends(get_session)) -> ResolveResponse:
    _require_staff(session, body.moderator_id)
    incident, changes = resolve_incident(session, incident_id, body.was_valid, events=events)
    return {
        "incident": IncidentOut.model_validate(incident),
        "reputation_changes": [ReputationChangeOut.model_validate(c) for c in changes],
    }


@app.get("/users/{user_id}/trust-score", response_model=TrustScoreResponse)
def trust_score(user_id: str, session: Session = Depends(get_session)) -> TrustScoreResponse:
    return {"user_id": user_id, "trust_score": get_user_trust_score(session, user_id)}


@app.post("/ingest/graph-rebuild", response_model=IngestResponse)
def trigger_graph_rebuild(
    session: Session = Depends(get_session),
    _: None = Depends(_require_ingest_key),
) -> IngestResponse:
    """
    Rebuild the transit graph after a reference-data import and drop
    cached journeys computed against the old graph.
    """
    G = build_graph(session)
    cleared = path_cache.clear()
    return {
        "status": "ok",
        "message": (
            f"Graph rebuilt with {G.number_of_nodes()} stops and {G.number_of_edges()} edges; "
            f"{cleared} cached journey result(s) dropped."
        ),
    }
