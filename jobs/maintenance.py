"""
Background maintenance sweeps.

  cache_sweep      every DELIVERY_SWEEP_MINUTES   evict expired delivery / path cache entries
  pending_expiry   every EXPIRY_SWEEP_MINUTES     PENDING → EXPIRED past expires_at
  trust_recompute  every TRUST_RECOMPUTE_HOURS    refresh stored trust scores

Each sweep is a ScheduledTask with its own CancellationToken.  The API
lifespan registers them on the APScheduler instance and cancels them on
shutdown.  Tasks open their own DB session because scheduler jobs run
outside FastAPI's DI system; exceptions are caught and logged so one bad
run cannot crash the scheduler.
"""

import logging
from datetime import timedelta
from threading import Event, Lock
from typing import Callable, Optional

from sqlalchemy.orm import Session

from config import DELIVERY_SWEEP_MINUTES, EXPIRY_SWEEP_MINUTES, TRUST_RECOMPUTE_HOURS
from db.session import SessionLocal
from trust.score import update_all_user_trust_scores

logger = logging.getLogger(__name__)


class CancellationToken:
    def __init__(self) -> None:
        self._event = Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class ScheduledTask:
    """
    A named periodic job: fn(session, token) -> count.

    Overlapping runs are skipped rather than queued; a cancelled task
    does nothing.
    """

    def __init__(
        self,
        name: str,
        fn: Callable[[Session, CancellationToken], Optional[int]],
        interval: timedelta,
        session_factory: Callable[[], Session] = SessionLocal,
    ):
        self.name = name
        self.fn = fn
        self.interval = interval
        self.session_factory = session_factory
        self.token = CancellationToken()
        self._running = Lock()

    def __call__(self) -> Optional[int]:
        if self.token.cancelled:
            return None
        if not self._running.acquire(blocking=False):
            logger.warning("%s still running; skipping this run.", self.name)
            return None

        session = self.session_factory()
        try:
            result = self.fn(session, self.token)
            logger.info("%s complete: %s.", self.name, result)
            return result
        except Exception as exc:
            logger.error("%s failed: %s", self.name, exc, exc_info=True)
            return None
        finally:
            session.close()
            self._running.release()

    def cancel(self) -> None:
        self.token.cancel()


def build_maintenance_tasks(
    quorum,
    dispatcher,
    path_cache=None,
    session_factory: Callable[[], Session] = SessionLocal,
) -> list[ScheduledTask]:
    def sweep_caches(session: Session, token: CancellationToken) -> int:
        evicted = dispatcher.cache.evict_expired()
        if path_cache is not None:
            evicted += path_cache.evict_expired()
        return evicted

    def expire_pending(session: Session, token: CancellationToken) -> int:
        return quorum.expire_pending_reports(session, token)

    def recompute_trust(session: Session, token: CancellationToken) -> int:
        return update_all_user_trust_scores(session, token)

    return [
        ScheduledTask("cache_sweep", sweep_caches,
                      timedelta(minutes=DELIVERY_SWEEP_MINUTES), session_factory),
        ScheduledTask("pending_expiry", expire_pending,
                      timedelta(minutes=EXPIRY_SWEEP_MINUTES), session_factory),
        ScheduledTask("trust_recompute", recompute_trust,
                      timedelta(hours=TRUST_RECOMPUTE_HOURS), session_factory),
    ]


def register_jobs(scheduler, tasks: list[ScheduledTask]) -> None:
    """Add each task as an APScheduler interval job keyed by its name."""
    for task in tasks:
        scheduler.add_job(
            task,
            "interval",
            seconds=int(task.interval.total_seconds()),
            id=task.name,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        logger.info("Scheduled %s every %s.", task.name, task.interval)


def cancel_all(tasks: list[ScheduledTask]) -> None:
    for task in tasks:
        task.cancel()
