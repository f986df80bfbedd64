"""APScheduler-based housekeeping for the session store."""

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from tessera.storage.kv import StoreError
from tessera.storage.sessions import SessionStore

logger = logging.getLogger(__name__)

DEFAULT_PURGE_INTERVAL = 600

_JOB_ID = "purge-expired-sessions"


class SessionPurger:
    """
    Removes expired sessions in the background while the server runs.

    Usage::

        purger = SessionPurger(orchestrator.sessions, interval=600)
        purger.run_now()
        purger.start()
        # ... serve requests ...
        purger.stop()

    Pass the same :class:`SessionStore` the orchestrator uses so a purge and
    a ceremony step on one session serialize on the same lock.
    """

    def __init__(self, sessions: SessionStore, interval: int = DEFAULT_PURGE_INTERVAL) -> None:
        if interval <= 0:
            raise ValueError(f"purge interval must be positive, got {interval}")
        self._sessions = sessions
        self.interval = interval
        self._scheduler = BackgroundScheduler(timezone="UTC")
        self._scheduler.add_job(
            func=self.run_now,
            trigger=IntervalTrigger(seconds=interval),
            id=_JOB_ID,
            name=_JOB_ID,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
            misfire_grace_time=interval,
        )

    def run_now(self) -> int:
        """Purge once. Returns the number of sessions removed (0 on failure)."""
        try:
            return self._sessions.purge_expired()
        except (StoreError, OSError):
            logger.exception("Session purge failed; retrying in %d s", self.interval)
            return 0

    @property
    def running(self) -> bool:
        return bool(self._scheduler.running)

    def start(self) -> None:
        """Start the background scheduler."""
        self._scheduler.start()
        logger.info("Session purge scheduled every %d s", self.interval)

    def stop(self, wait: bool = True) -> None:
        """Stop the background scheduler."""
        self._scheduler.shutdown(wait=wait)
        logger.info("Session purge stopped")
