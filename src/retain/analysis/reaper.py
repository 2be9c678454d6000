"""
Background reaper for the analysis queue.

Releases claims held by crashed or stuck workers, fails claims that used up
their attempts, and applies completed results left unapplied by a crash.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from retain.analysis.processor import ResultProcessor
from retain.config import settings
from retain.db.connection import session_scope
from retain.db.repositories.analysis_queue import AnalysisQueueRepository
from retain.utils.time import Clock, utcnow

logger = logging.getLogger(__name__)


@dataclass
class ReaperStatus:
    is_running: bool
    last_reap_time: Optional[datetime]
    last_released_count: int
    last_failed_count: int
    orphaned_results_processed: int
    stale_after: timedelta
    interval_seconds: float

    @property
    def formatted_stale_threshold(self) -> str:
        return f"{int(self.stale_after.total_seconds() // 60)} min"


@dataclass
class ReapResult:
    released: int = 0
    failed: int = 0
    applied: int = 0


class StaleClaimsReaper:
    """
    Periodic queue maintenance on a background thread.

    Each tick runs in its own short transactions; an ``OperationalError``
    (database locked or unavailable) backs off for 5s, anything else for 1s.
    """

    def __init__(
        self,
        session_factory: Optional[sessionmaker[Session]] = None,
        processor: Optional[ResultProcessor] = None,
        stale_after: Optional[timedelta] = None,
        interval: Optional[float] = None,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.processor = processor or ResultProcessor(session_factory, clock=clock)
        self.stale_after = stale_after or timedelta(seconds=settings.queue_stale_claim_seconds)
        self.interval = settings.queue_reaper_interval_seconds if interval is None else interval
        self.clock = clock

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._running = False
        self._last_reap_time: Optional[datetime] = None
        self._last_released = 0
        self._last_failed = 0
        self._orphans_processed = 0

    def reap_once(self) -> ReapResult:
        """Run one maintenance pass."""
        with session_scope(self.session_factory) as session:
            queue = AnalysisQueueRepository(session, clock=self.clock)
            released = queue.release_stale_claims(self.stale_after)
            failed = queue.fail_exhausted_claims(self.stale_after)

        applied = self.processor.process_all_unprocessed()

        self._last_reap_time = self.clock()
        self._last_released = released
        self._last_failed = failed
        self._orphans_processed += applied

        if released or failed or applied:
            logger.info(
                f"Reaper: released {released} stale claims, failed {failed} exhausted, "
                f"applied {applied} orphaned results"
            )
        return ReapResult(released=released, failed=failed, applied=applied)

    def cleanup_old_items(self, days: Optional[int] = None) -> int:
        """Delete finished queue items older than ``days``."""
        days = settings.queue_retention_days if days is None else days
        with session_scope(self.session_factory) as session:
            return AnalysisQueueRepository(session, clock=self.clock).delete_old_items(
                timedelta(days=days)
            )

    def run(self) -> None:
        """Reap immediately, then every ``interval`` seconds until stopped."""
        logger.info("Stale claims reaper starting")
        self._running = True

        while not self._stop_event.is_set():
            try:
                self.reap_once()
                self._stop_event.wait(self.interval)
            except OperationalError as e:
                logger.warning(f"Reaper DB unavailable: {e}")
                self._stop_event.wait(5.0)
            except Exception as e:
                logger.error(f"Error in reaper loop: {e}", exc_info=True)
                self._stop_event.wait(1.0)

        self._running = False
        logger.info("Stale claims reaper stopped")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Stale claims reaper is already running")
            return

        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run, daemon=True, name="retain-reaper")
        self._thread.start()

    def stop(self, timeout: float = 10.0) -> None:
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning(f"Reaper thread did not stop within {timeout}s")
        self._thread = None

    @property
    def is_running(self) -> bool:
        return self._running

    def status(self) -> ReaperStatus:
        return ReaperStatus(
            is_running=self._running,
            last_reap_time=self._last_reap_time,
            last_released_count=self._last_released,
            last_failed_count=self._last_failed,
            orphaned_results_processed=self._orphans_processed,
            stale_after=self.stale_after,
            interval_seconds=self.interval,
        )
