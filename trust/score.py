"""
Per-user trust score and reputation bookkeeping.

Reputation (integer, user-facing) is the only value ever mutated, and only
through apply_reputation_change().  The trust score is derived from it plus
the user's last 30 days of reports, and is stored on the user row purely as
a cached read:

  base      = clamp(reputation / 100, 0.5, 2.0)
  accuracy  = validation_rate * 0.3
              validation_rate = resolved-and-not-fake / resolved (0 if none)
  high_rep  = base * 0.25 * min((reputation - 100) / 100, 1)   if reputation >= 100
  penalty   = 0.1 * fake reports
  final     = clamp(base + accuracy + high_rep - penalty, 0.5, 2.5)
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from db.models import Incident, IncidentStatus, User, utcnow
from errors import NotFoundError
from reports.threshold import DEFAULT_THRESHOLD_CONFIG

logger = logging.getLogger(__name__)

TRUST_WINDOW_DAYS = 30
MIN_TRUST_SCORE = 0.5
MAX_BASE_SCORE = 2.0
MAX_TRUST_SCORE = 2.5
ACCURACY_WEIGHT = 0.3
FAKE_REPORT_PENALTY = 0.1
DEFAULT_REPUTATION = 100  # trust reads on a user row with no reputation


@dataclass(frozen=True)
class TrustScoreBreakdown:
    base_score: float
    accuracy_bonus: float
    high_rep_bonus: float
    final_score: float
    validation_rate: float
    recent_reports: int = 0
    validated_reports: int = 0
    fake_reports: int = 0


@dataclass(frozen=True)
class ReputationChange:
    user_id: str
    old_reputation: int
    change: int
    new_reputation: int


def compute_trust_score(
    reputation: int,
    validation_rate: float,
    fake_reports: int,
    recent_reports: int = 0,
    validated_reports: int = 0,
) -> TrustScoreBreakdown:
    base = max(MIN_TRUST_SCORE, min(MAX_BASE_SCORE, reputation / 100))
    accuracy = validation_rate * ACCURACY_WEIGHT

    high_rep = 0.0
    high_threshold = DEFAULT_THRESHOLD_CONFIG.high_reputation_threshold
    if reputation >= high_threshold:
        scale = min((reputation - high_threshold) / 100, 1.0)
        high_rep = base * DEFAULT_THRESHOLD_CONFIG.high_reputation_bonus * scale

    penalty = fake_reports * FAKE_REPORT_PENALTY
    final = max(MIN_TRUST_SCORE, min(MAX_TRUST_SCORE, base + accuracy + high_rep - penalty))
    return TrustScoreBreakdown(
        base_score=base,
        accuracy_bonus=accuracy,
        high_rep_bonus=high_rep,
        final_score=final,
        validation_rate=validation_rate,
        recent_reports=recent_reports,
        validated_reports=validated_reports,
        fake_reports=fake_reports,
    )


def calculate_reputation_change(was_correct: bool, reputation: int, age_minutes: float) -> int:
    """
    Reputation delta for one reporter once their report is judged.

    Correct reports earn +10, incorrect ones cost -5, scaled down for
    established users (never below half).  Correct reports judged within
    10 minutes earn up to double.  Incorrect reports from users above 50
    reputation cost 1.5x.  Halves round up, so 12.5 gives 13 and -7.5 gives -7.
    """
    base = 10 if was_correct else -5
    multiplier = max(0.5, 1 - reputation / 1000)
    time_bonus = 1.0
    if was_correct and age_minutes < 10:
        time_bonus = max(0.0, 1 + (10 - age_minutes) / 10)
    false_penalty = 1.5 if (not was_correct and reputation > 50) else 1.0
    return math.floor(base * multiplier * time_bonus * false_penalty + 0.5)


def calculate_user_trust_score(
    session: Session, user_id: str, now: Optional[datetime] = None
) -> TrustScoreBreakdown:
    user = session.get(User, user_id)
    if user is None:
        raise NotFoundError(f"User '{user_id}' not found.")

    since = (now or utcnow()) - timedelta(days=TRUST_WINDOW_DAYS)
    reports = (
        session.query(Incident)
        .filter(Incident.reported_by == user_id, Incident.created_at >= since)
        .all()
    )
    resolved = [r for r in reports if r.status == IncidentStatus.RESOLVED]
    validated = sum(1 for r in resolved if not r.is_fake)
    fake = sum(1 for r in reports if r.is_fake)
    rate = validated / len(resolved) if resolved else 0.0

    return compute_trust_score(
        _reputation_of(user),
        rate,
        fake,
        recent_reports=len(reports),
        validated_reports=validated,
    )


def get_user_trust_score(session: Session, user_id: str) -> float:
    """Stored trust score, computed and persisted on first read."""
    user = session.get(User, user_id)
    if user is None:
        raise NotFoundError(f"User '{user_id}' not found.")
    if user.trust_score is not None:
        return user.trust_score

    breakdown = calculate_user_trust_score(session, user_id)
    _store_breakdown(user, breakdown)
    session.commit()
    return breakdown.final_score


def update_all_user_trust_scores(session: Session, token=None) -> int:
    """
    Recompute the stored trust score of every user who has ever reported.
    Commits per user.  Stops early when token is cancelled.
    """
    reporter_ids = [
        row[0]
        for row in session.query(Incident.reported_by)
        .filter(Incident.reported_by.isnot(None))
        .distinct()
        .all()
    ]

    updated = 0
    for user_id in reporter_ids:
        if token is not None and token.cancelled:
            logger.info("Trust recompute cancelled after %d users.", updated)
            break
        user = session.get(User, user_id)
        if user is None:
            continue
        try:
            _store_breakdown(user, calculate_user_trust_score(session, user_id))
            session.commit()
            updated += 1
        except SQLAlchemyError:
            session.rollback()
            logger.error("Trust score update failed for user %s.", user_id, exc_info=True)

    logger.info("Recomputed trust scores for %d of %d reporters.", updated, len(reporter_ids))
    return updated


def apply_reputation_change(
    session: Session,
    user_id: str,
    was_correct: bool,
    reported_at: datetime,
    now: Optional[datetime] = None,
) -> Optional[ReputationChange]:
    """
    Adjust one reporter's reputation and refresh their stored trust score.

    Does not commit; the caller's transaction owns the change.  Unknown
    users are skipped with a warning and None is returned.
    """
    user = session.get(User, user_id)
    if user is None:
        logger.warning("Reputation change skipped: user %s not found.", user_id)
        return None

    now = now or utcnow()
    old = _reputation_of(user)
    age_minutes = max(0.0, (now - reported_at).total_seconds() / 60)
    change = calculate_reputation_change(was_correct, old, age_minutes)
    user.reputation = max(0, old + change)

    session.flush()
    _store_breakdown(user, calculate_user_trust_score(session, user_id, now))
    logger.debug("Reputation of %s: %d → %d.", user_id, old, user.reputation)
    return ReputationChange(user_id, old, change, user.reputation)


def _reputation_of(user: User) -> int:
    return user.reputation if user.reputation is not None else DEFAULT_REPUTATION


def _store_breakdown(user: User, breakdown: TrustScoreBreakdown) -> None:
    user.trust_score = breakdown.final_score
    user.trust_base_score = breakdown.base_score
    user.trust_accuracy_bonus = breakdown.accuracy_bonus
    user.trust_high_rep_bonus = breakdown.high_rep_bonus
    user.trust_validation_rate = breakdown.validation_rate
    user.trust_updated_at = utcnow()
