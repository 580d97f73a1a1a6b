"""
Decides who hears about a newly published incident, and makes sure nobody
hears about it twice.

Gating by source role:
  ADMIN / MODERATOR  deliver immediately
  USER               deliver only if
                       avg trust(reporter + reporters of similar incidents) >= 1.2
                       or similar incidents >= base_report_count (3)
                     "similar" = PUBLISHED, same kind, sharing a line,
                     created in the last 24 h, not this incident

Recipients are users whose active journey or favourite lines overlap the
incident's lines.  Each (incident, user) pair is claimed in the delivery
cache before sending, so concurrent or repeated dispatches of the same
incident deliver at most once per TTL.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session

from cache.ttl import TTLCache
from config import DELIVERY_TTL_SECONDS, NOTIFY_TRUST_THRESHOLD
from db.models import Incident, IncidentStatus, ReporterRole, User, utcnow
from incidents.events import USER_NOTIFICATION, EventPublisher, incident_payload
from reports.threshold import DEFAULT_THRESHOLD_CONFIG

logger = logging.getLogger(__name__)

SIMILAR_WINDOW_HOURS = 24
DEFAULT_TRUST = 1.0


class DeliveryCache:
    """(incident_id, user_id) pairs already notified, forgotten after the TTL."""

    def __init__(self, ttl_s: float = DELIVERY_TTL_SECONDS, clock: Optional[Callable[[], float]] = None):
        kwargs = {"ttl_s": ttl_s}
        if clock is not None:
            kwargs["clock"] = clock
        self._cache = TTLCache(**kwargs)

    def claim(self, incident_id: int, user_id: str) -> bool:
        return self._cache.claim((incident_id, user_id))

    def release(self, incident_id: int, user_id: str) -> None:
        self._cache.discard((incident_id, user_id))

    def was_delivered(self, incident_id: int, user_id: str) -> bool:
        return self._cache.get((incident_id, user_id)) is not None

    def evict_expired(self) -> int:
        return self._cache.evict_expired()

    def __len__(self) -> int:
        return len(self._cache)


@dataclass
class DispatchResult:
    notified: bool
    reason: str
    aggregate_trust: Optional[float] = None
    similar_reports: int = 0
    delivered: list[str] = field(default_factory=list)
    skipped_duplicates: int = 0


class NotificationDispatcher:
    def __init__(
        self,
        events: EventPublisher,
        cache: Optional[DeliveryCache] = None,
        trust_threshold: float = NOTIFY_TRUST_THRESHOLD,
        min_similar_reports: int = DEFAULT_THRESHOLD_CONFIG.base_report_count,
    ):
        self.events = events
        self.cache = cache or DeliveryCache()
        self.trust_threshold = trust_threshold
        self.min_similar_reports = min_similar_reports

    def process_incident(self, session: Session, incident: Incident, role: ReporterRole) -> DispatchResult:
        role = ReporterRole(getattr(role, "value", role))

        if role in (ReporterRole.ADMIN, ReporterRole.MODERATOR):
            result = DispatchResult(notified=True, reason=f"published by {role.value.lower()}")
        else:
            similar = self._similar_incidents(session, incident)
            trust = self._aggregate_trust(session, incident, similar)
            notify = trust >= self.trust_threshold or len(similar) >= self.min_similar_reports
            result = DispatchResult(
                notified=notify,
                reason="trusted reporters" if notify else "below trust threshold",
                aggregate_trust=trust,
                similar_reports=len(similar),
            )
            if not notify:
                logger.info(
                    "Incident %d not dispatched: trust %.2f, %d similar report(s).",
                    incident.id, trust, len(similar),
                )
                return result

        payload = incident_payload(incident)
        for user in self._recipients(session, incident):
            if not self.cache.claim(incident.id, user.id):
                result.skipped_duplicates += 1
                continue
            try:
                self.events.publish(USER_NOTIFICATION, {"user_id": user.id, "incident": payload})
            except Exception:
                self.cache.release(incident.id, user.id)
                raise
            result.delivered.append(user.id)

        logger.info(
            "Incident %d dispatched: %d delivered, %d duplicate(s) skipped.",
            incident.id, len(result.delivered), result.skipped_duplicates,
        )
        return result

    def _similar_incidents(self, session: Session, incident: Incident) -> list[Incident]:
        lines = set(incident.line_ids or [])
        if not lines:
            return []
        since = utcnow() - timedelta(hours=SIMILAR_WINDOW_HOURS)
        candidates = (
            session.query(Incident)
            .filter(
                Incident.id != incident.id,
                Incident.kind == incident.kind,
                Incident.status == IncidentStatus.PUBLISHED,
                Incident.created_at >= since,
            )
            .all()
        )
        return [c for c in candidates if lines.intersection(c.line_ids or [])]

    def _aggregate_trust(self, session: Session, incident: Incident, similar: list[Incident]) -> float:
        """Mean stored trust of the reporter and the similar incidents' reporters."""
        if not incident.reported_by:
            return 0.0
        scores = [_trust_of(session.get(User, incident.reported_by))]
        for other_id in sorted({s.reported_by for s in similar if s.reported_by}):
            other = session.get(User, other_id)
            if other is not None:
                scores.append(_trust_of(other))
        return sum(scores) / len(scores)

    def _recipients(self, session: Session, incident: Incident) -> list[User]:
        lines = set(incident.line_ids or [])
        if not lines:
            return []
        return [
            u for u in session.query(User).order_by(User.id).all()
            if lines.intersection(u.active_journey_line_ids or [])
            or lines.intersection(u.favorite_line_ids or [])
        ]


def _trust_of(user: Optional[User]) -> float:
    if user is None or not user.trust_score:
        return DEFAULT_TRUST
    return user.trust_score
