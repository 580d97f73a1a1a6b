"""
Crowd-report quorum: aggregates individual user reports into pending items
and promotes them to Incidents once enough trusted users agree.

submit_report()
  1. Validate kind, coordinates and reputation (nothing is written on failure).
  2. Under the per-kind lock, look for a matching pending item:
       same kind, status PENDING or THRESHOLD_MET, created within the match
       window (30 min), within the match radius (500 m), and sharing a line
       when both sides name lines.  The nearest match wins.
  3. No match: create a new pending item (expires after 24 h) and queue it
     for moderators at a priority derived from its kind.
  4. Match: under the pending-id lock, re-read it, refuse a repeat reporter,
     append the reporter, recompute the score.
  5. PENDING → THRESHOLD_MET on quorum: the Incident is created and every
     reporter rewarded in the same transaction.  Scores in [0.7, 1.0) are
     queued for moderators as "near threshold" (once per item).
  6. After commit, hand the new Incident to the notifier; the incident and
     line channels are broadcast only if its trust gate passes.

Lost updates across processes are caught by the optimistic `version`
column; a stale write or store timeout is rolled back and the whole cycle
re-run from a fresh read up to STORE_RETRY_ATTEMPTS times, then surfaced as
TransientStoreError.  Lock order is always kind → pending id.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from config import (
    NEAR_THRESHOLD_SCORE,
    PENDING_REPORT_TTL_HOURS,
    REPORT_MATCH_RADIUS_METRES,
    REPORT_MATCH_WINDOW_MINUTES,
    STORE_RETRY_ATTEMPTS,
)
from db.models import (
    Incident,
    IncidentKind,
    ModeratorQueueItem,
    PendingIncidentReport,
    PendingIncidentStatus,
    QueuePriority,
    ReporterRole,
    User,
    utcnow,
)
from errors import (
    ConflictError,
    ExhaustedError,
    InvalidInputError,
    NotFoundError,
    TransientStoreError,
    TransitError,
)
from graph.geo import haversine_metres, validate_coordinates
from incidents.events import EventPublisher, announce_incident
from incidents.publisher import INCIDENT_TITLES, STAFF_ROLES, publish_incident_from_pending
from reports.locks import KeyedLocks
from reports.threshold import (
    DEFAULT_THRESHOLD_CONFIG,
    THRESHOLD_REQUIRED,
    ThresholdConfig,
    ThresholdResult,
    calculate_threshold,
    reports_needed,
    threshold_message,
)
from trust.score import ReputationChange, apply_reputation_change

logger = logging.getLogger(__name__)

MATCHABLE_STATUSES = (PendingIncidentStatus.PENDING, PendingIncidentStatus.THRESHOLD_MET)
NEAR_THRESHOLD_REASON = "near threshold"
DUPLICATE_REPORT_MESSAGE = "You have already reported this incident"
PRIORITY_ORDER = {QueuePriority.HIGH: 0, QueuePriority.MEDIUM: 1, QueuePriority.LOW: 2}


def priority_for_kind(kind: IncidentKind) -> QueuePriority:
    if kind in (IncidentKind.ACCIDENT, IncidentKind.VEHICLE_FAILURE):
        return QueuePriority.HIGH
    if kind == IncidentKind.TRAFFIC_JAM:
        return QueuePriority.MEDIUM
    return QueuePriority.LOW


@dataclass
class SubmitReportResult:
    success: bool
    pending_report_id: int
    status: PendingIncidentStatus
    threshold_progress: float      # 0-100
    threshold_score: float
    message: str
    is_new: bool
    total_reports: int
    reports_needed: int = 0
    reputation_needed: int = 0
    published_incident_id: Optional[int] = None


@dataclass
class ApprovalResult:
    incident: Incident
    rewarded_users: list[ReputationChange] = field(default_factory=list)


class QuorumEngine:
    """One per process; owns the locks that serialize pending-item updates."""

    def __init__(
        self,
        events: Optional[EventPublisher] = None,
        dispatcher=None,
        config: ThresholdConfig = DEFAULT_THRESHOLD_CONFIG,
        clock: Callable[[], datetime] = utcnow,
        locks: Optional[KeyedLocks] = None,
        match_radius_m: float = REPORT_MATCH_RADIUS_METRES,
        match_window_minutes: int = REPORT_MATCH_WINDOW_MINUTES,
        pending_ttl_hours: int = PENDING_REPORT_TTL_HOURS,
        retry_attempts: int = STORE_RETRY_ATTEMPTS,
    ):
        self.events = events
        self.dispatcher = dispatcher
        self.config = config
        self.clock = clock
        self.locks = locks or KeyedLocks()
        self.match_radius_m = match_radius_m
        self.match_window_minutes = match_window_minutes
        self.pending_ttl_hours = pending_ttl_hours
        self.retry_attempts = retry_attempts

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def submit_report(
        self,
        session: Session,
        kind,
        latitude: float,
        longitude: float,
        reporter_id: str,
        reporter_reputation: Optional[int] = None,
        line_ids: Optional[list[str]] = None,
        description: Optional[str] = None,
        delay_minutes: Optional[int] = None,
    ) -> SubmitReportResult:
        kind = _parse_kind(kind)
        validate_coordinates(latitude, longitude)
        if not reporter_id:
            raise InvalidInputError("reporter_id is required.")
        if reporter_reputation is None:
            user = session.get(User, reporter_id)
            if user is None:
                raise NotFoundError(f"User '{reporter_id}' not found.")
            reporter_reputation = user.reputation
        if reporter_reputation < 0:
            raise InvalidInputError("Reporter reputation cannot be negative.")
        line_ids = [str(l) for l in (line_ids or []) if l]

        def attempt():
            now = self.clock()
            match = self._find_match(session, kind, latitude, longitude, line_ids, now)
            if match is None:
                return self._create_pending(
                    session, kind, latitude, longitude, line_ids, reporter_id,
                    reporter_reputation, description, delay_minutes, now,
                )
            with self.locks.hold(("pending", match.id)):
                session.refresh(match)
                return self._add_to_pending(session, match, reporter_id, reporter_reputation, now)

        with self.locks.hold(("kind", kind)):
            result, incident = self._with_retry(session, attempt, "submit report")

        if incident is not None:
            self._announce(session, incident, ReporterRole.USER)
        return result

    def _find_match(
        self, session: Session, kind: IncidentKind, lat: float, lon: float,
        line_ids: list[str], now: datetime,
    ) -> Optional[PendingIncidentReport]:
        since = now - timedelta(minutes=self.match_window_minutes)
        candidates = (
            session.query(PendingIncidentReport)
            .filter(
                PendingIncidentReport.kind == kind,
                PendingIncidentReport.status.in_(MATCHABLE_STATUSES),
                PendingIncidentReport.created_at >= since,
            )
            .all()
        )

        best: Optional[tuple[float, PendingIncidentReport]] = None
        for candidate in candidates:
            distance = haversine_metres(lat, lon, candidate.latitude, candidate.longitude)
            if distance > self.match_radius_m:
                continue
            if line_ids and candidate.line_ids and not set(line_ids) & set(candidate.line_ids):
                continue
            if best is None or distance < best[0]:
                best = (distance, candidate)
        return best[1] if best else None

    def _create_pending(
        self, session: Session, kind: IncidentKind, lat: float, lon: float,
        line_ids: list[str], reporter_id: str, reputation: int,
        description: Optional[str], delay_minutes: Optional[int], now: datetime,
    ) -> tuple[SubmitReportResult, Optional[Incident]]:
        pending = PendingIncidentReport(
            kind=kind,
            status=PendingIncidentStatus.PENDING,
            description=description,
            latitude=lat,
            longitude=lon,
            line_ids=line_ids,
            delay_minutes=delay_minutes,
            reporter_ids=[reporter_id],
            reporter_reputations=[reputation],
            total_reports=1,
            aggregate_reputation=reputation,
            threshold_required=THRESHOLD_REQUIRED,
            created_at=now,
            last_report_at=now,
            expires_at=now + timedelta(hours=self.pending_ttl_hours),
        )
        session.add(pending)
        session.flush()

        self._enqueue(
            session, pending.id, priority_for_kind(kind),
            f"New report: {INCIDENT_TITLES.get(kind, 'Incident')}", now,
        )
        threshold, incident = self._evaluate(session, pending, now)
        session.commit()

        logger.info("New pending report %d (%s) from %s.", pending.id, kind.value, reporter_id)
        return self._result(pending, threshold, is_new=True, incident=incident), incident

    def _add_to_pending(
        self, session: Session, pending: PendingIncidentReport,
        reporter_id: str, reputation: int, now: datetime,
    ) -> tuple[SubmitReportResult, Optional[Incident]]:
        if reporter_id in (pending.reporter_ids or []):
            raise ConflictError(DUPLICATE_REPORT_MESSAGE)

        # Reassign, never mutate: JSON columns only track replacement.
        pending.reporter_ids = list(pending.reporter_ids) + [reporter_id]
        pending.reporter_reputations = list(pending.reporter_reputations) + [reputation]
        pending.total_reports = len(pending.reporter_ids)
        pending.aggregate_reputation = sum(pending.reporter_reputations)
        pending.last_report_at = now

        threshold, incident = self._evaluate(session, pending, now)
        session.commit()

        logger.info(
            "Pending report %d now has %d reports (score %.2f).",
            pending.id, pending.total_reports, pending.threshold_score,
        )
        return self._result(pending, threshold, is_new=False, incident=incident), incident

    def _evaluate(
        self, session: Session, pending: PendingIncidentReport, now: datetime
    ) -> tuple[ThresholdResult, Optional[Incident]]:
        """Rescore; publish on the PENDING → THRESHOLD_MET flip; queue near misses."""
        threshold = calculate_threshold(
            pending.total_reports,
            pending.aggregate_reputation,
            pending.reporter_reputations,
            self.config,
        )
        pending.threshold_score = threshold.current_score

        incident = None
        if threshold.is_official and pending.status == PendingIncidentStatus.PENDING:
            incident = publish_incident_from_pending(session, pending, now=now)
            self._settle_reporters(session, pending, was_correct=True, now=now)
            logger.info("Pending report %d met threshold; incident %d published.", pending.id, incident.id)
        elif NEAR_THRESHOLD_SCORE <= threshold.current_score < THRESHOLD_REQUIRED:
            self._enqueue(session, pending.id, QueuePriority.MEDIUM, NEAR_THRESHOLD_REASON, now)
        return threshold, incident

    def _result(
        self, pending: PendingIncidentReport, threshold: ThresholdResult,
        is_new: bool, incident: Optional[Incident],
    ) -> SubmitReportResult:
        if incident is not None:
            message = "Threshold met. Incident published automatically."
        else:
            message = threshold_message(threshold, self.config)
        return SubmitReportResult(
            success=True,
            pending_report_id=pending.id,
            status=pending.status,
            threshold_progress=min(threshold.current_score * 100, 100.0),
            threshold_score=threshold.current_score,
            message=message,
            is_new=is_new,
            total_reports=pending.total_reports,
            reports_needed=reports_needed(threshold, self.config),
            reputation_needed=max(0, self.config.base_reputation_required - pending.aggregate_reputation),
            published_incident_id=incident.id if incident is not None else None,
        )

    # ------------------------------------------------------------------
    # Moderation
    # ------------------------------------------------------------------

    def approve_report(
        self, session: Session, pending_id: int, moderator_id: str, notes: Optional[str] = None
    ) -> ApprovalResult:
        def attempt():
            now = self.clock()
            pending = self._load_reviewable(session, pending_id, now)
            incident = publish_incident_from_pending(session, pending, moderator_id, notes, now=now)
            rewarded = self._settle_reporters(session, pending, was_correct=True, now=now)
            self._archive_queue_items(pending, now)
            session.commit()
            logger.info(
                "Pending report %d approved by %s; incident %d published.",
                pending_id, moderator_id, incident.id,
            )
            return ApprovalResult(incident=incident, rewarded_users=rewarded)

        with self.locks.hold(("pending", pending_id)):
            outcome = self._with_retry(session, attempt, "approve report")
        self._announce(session, outcome.incident, ReporterRole.MODERATOR)
        return outcome

    def reject_report(self, session: Session, pending_id: int, moderator_id: str, reason: str) -> bool:
        def attempt():
            now = self.clock()
            pending = self._load_reviewable(session, pending_id, now)
            pending.status = PendingIncidentStatus.REJECTED
            pending.moderator_id = moderator_id
            pending.moderator_notes = reason
            self._settle_reporters(session, pending, was_correct=False, now=now)
            self._archive_queue_items(pending, now)
            session.commit()
            logger.info("Pending report %d rejected by %s: %s", pending_id, moderator_id, reason)
            return True

        with self.locks.hold(("pending", pending_id)):
            return self._with_retry(session, attempt, "reject report")

    def _load_reviewable(self, session: Session, pending_id: int, now: datetime) -> PendingIncidentReport:
        pending = session.get(PendingIncidentReport, pending_id)
        if pending is None:
            raise NotFoundError(f"Pending report {pending_id} not found.")
        if pending.status != PendingIncidentStatus.PENDING:
            raise ConflictError(
                f"Pending report {pending_id} is {pending.status.value} and can no longer be reviewed."
            )
        if pending.expires_at <= now:
            pending.status = PendingIncidentStatus.EXPIRED
            self._archive_queue_items(pending, now)
            session.commit()
            raise ExhaustedError(f"Pending report {pending_id} expired at {pending.expires_at.isoformat()}.")
        return pending

    def get_moderator_queue(self, session: Session) -> list[ModeratorQueueItem]:
        """Unreviewed queue items, highest priority first, oldest first within a priority."""
        items = session.query(ModeratorQueueItem).filter(ModeratorQueueItem.reviewed_at.is_(None)).all()
        return sorted(items, key=lambda i: (PRIORITY_ORDER[i.priority], i.created_at, i.id))

    def assign_queue_item(self, session: Session, item_id: int, moderator_id: str) -> ModeratorQueueItem:
        item = session.get(ModeratorQueueItem, item_id)
        if item is None:
            raise NotFoundError(f"Queue item {item_id} not found.")
        if item.reviewed_at is not None:
            raise ConflictError(f"Queue item {item_id} has already been reviewed.")
        item.assigned_to = moderator_id
        session.commit()
        return item

    def get_pending_report(self, session: Session, pending_id: int) -> PendingIncidentReport:
        pending = session.get(PendingIncidentReport, pending_id)
        if pending is None:
            raise NotFoundError(f"Pending report {pending_id} not found.")
        return pending

    def list_pending_reports(
        self, session: Session, status: Optional[PendingIncidentStatus] = None
    ) -> list[PendingIncidentReport]:
        query = session.query(PendingIncidentReport)
        if status is not None:
            query = query.filter(PendingIncidentReport.status == status)
        return query.order_by(PendingIncidentReport.created_at.desc()).all()

    # ------------------------------------------------------------------
    # Expiry sweep
    # ------------------------------------------------------------------

    def expire_pending_reports(self, session: Session, token=None) -> int:
        """
        Move every PENDING item past its expiry to EXPIRED.  Each item is
        locked and committed on its own; an item lost to a concurrent
        writer is left for the next sweep.
        """
        now = self.clock()
        ids = [
            row[0]
            for row in session.query(PendingIncidentReport.id)
            .filter(
                PendingIncidentReport.status == PendingIncidentStatus.PENDING,
                PendingIncidentReport.expires_at < now,
            )
            .all()
        ]

        expired = 0
        for pending_id in ids:
            if token is not None and token.cancelled:
                break
            with self.locks.hold(("pending", pending_id)):
                try:
                    pending = session.get(PendingIncidentReport, pending_id)
                    if pending is None or pending.status != PendingIncidentStatus.PENDING:
                        continue
                    pending.status = PendingIncidentStatus.EXPIRED
                    self._archive_queue_items(pending, now)
                    session.commit()
                    expired += 1
                except (StaleDataError, OperationalError):
                    session.rollback()
                    logger.warning("Expiry of pending report %d deferred: concurrent update.", pending_id)

        if expired:
            logger.info("Expired %d pending report(s).", expired)
        return expired

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _settle_reporters(
        self, session: Session, pending: PendingIncidentReport, was_correct: bool, now: datetime
    ) -> list[ReputationChange]:
        changes = []
        for user_id in pending.reporter_ids or []:
            change = apply_reputation_change(session, user_id, was_correct, pending.created_at, now)
            if change is not None:
                changes.append(change)
        return changes

    def _enqueue(
        self, session: Session, pending_id: int, priority: QueuePriority, reason: str, now: datetime
    ) -> Optional[ModeratorQueueItem]:
        existing = (
            session.query(ModeratorQueueItem)
            .filter(
                ModeratorQueueItem.pending_incident_id == pending_id,
                ModeratorQueueItem.reason == reason,
                ModeratorQueueItem.reviewed_at.is_(None),
            )
            .first()
        )
        if existing is not None:
            return None
        item = ModeratorQueueItem(
            pending_incident_id=pending_id, priority=priority, reason=reason, created_at=now
        )
        session.add(item)
        return item

    @staticmethod
    def _archive_queue_items(pending: PendingIncidentReport, now: datetime) -> None:
        for item in pending.queue_items:
            if item.reviewed_at is None:
                item.reviewed_at = now

    def _with_retry(self, session: Session, attempt: Callable, what: str):
        for n in range(1, self.retry_attempts + 1):
            try:
                return attempt()
            except (StaleDataError, OperationalError):
                session.rollback()
                logger.warning(
                    "%s: stale or failed write (attempt %d/%d); retrying from a fresh read.",
                    what, n, self.retry_attempts,
                )
            except TransitError:
                session.rollback()
                raise
        raise TransientStoreError(f"Could not {what} after {self.retry_attempts} attempts.")

    def _announce(self, session: Session, incident: Incident, role: ReporterRole) -> None:
        """Broadcast only once the dispatcher's trust gate lets the incident through."""
        notified = role in STAFF_ROLES
        if self.dispatcher is not None:
            notified = self.dispatcher.process_incident(session, incident, role).notified
        if notified and self.events is not None:
            announce_incident(self.events, incident)


def _parse_kind(value) -> IncidentKind:
    if isinstance(value, IncidentKind):
        return value
    try:
        return IncidentKind(str(value).upper())
    except ValueError:
        raise InvalidInputError(f"Unknown incident kind '{value}'.") from None
