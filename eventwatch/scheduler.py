"""
Poll scheduler driving periodic checks.
"""

import logging
import signal
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)

TICK_JOB_ID = "poll_tick"


class SchedulerState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"


class PollScheduler:
    """
    Runs ``app.process_user`` for every eligible user on a fixed interval.

    Ticks run on APScheduler's worker threads so the timer keeps firing
    while a tick finishes; a tick that is still running when the next one
    is due makes the new one skip. Users are processed on a bounded pool
    and one user's failure never aborts the tick.
    """

    def __init__(
        self,
        app,
        interval_minutes: float = 5,
        initial_delay_seconds: float = 10,
        max_workers: int = 4,
        scheduler: Optional[BackgroundScheduler] = None,
    ):
        self.app = app
        self.interval_minutes = interval_minutes
        self.initial_delay_seconds = initial_delay_seconds
        self.max_workers = max_workers
        self._scheduler_factory = (lambda: scheduler) if scheduler else BackgroundScheduler

        self.state = SchedulerState.STOPPED
        self._scheduler: Optional[BackgroundScheduler] = None
        self._pool: Optional[ThreadPoolExecutor] = None
        self._state_lock = threading.Lock()
        self._stopped = threading.Event()
        self._stopped.set()
        self._in_flight: set[int] = set()
        self._in_flight_lock = threading.Lock()
        self._handlers_registered = False

    @property
    def running(self) -> bool:
        return self.state == SchedulerState.RUNNING

    def start(self) -> None:
        """Start ticking. No-op when already running."""
        with self._state_lock:
            if self.state == SchedulerState.RUNNING:
                logger.debug("Scheduler already running")
                return

            self._pool = ThreadPoolExecutor(
                max_workers=self.max_workers, thread_name_prefix="poll-user"
            )
            self._scheduler = self._scheduler_factory()
            self._scheduler.add_job(
                self.run_tick,
                IntervalTrigger(minutes=self.interval_minutes),
                id=TICK_JOB_ID,
                name="Check holdings for abnormal events",
                next_run_time=datetime.now() + timedelta(seconds=self.initial_delay_seconds),
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
            self._scheduler.start()
            self._stopped.clear()
            self.state = SchedulerState.RUNNING

        logger.info(
            f"Scheduler started: every {self.interval_minutes} min, "
            f"first tick in {self.initial_delay_seconds}s"
        )

    def stop(self) -> None:
        """Stop ticking and let an in-flight tick finish. Idempotent."""
        with self._state_lock:
            if self.state == SchedulerState.STOPPED:
                return
            self.state = SchedulerState.STOPPED

            if self._scheduler is not None:
                self._scheduler.shutdown(wait=True)
                self._scheduler = None
            if self._pool is not None:
                self._pool.shutdown(wait=True)
                self._pool = None
            self._stopped.set()

        logger.info("Scheduler stopped")

    def wait(self, poll_seconds: float = 1.0) -> None:
        """Block until stopped."""
        while not self._stopped.wait(poll_seconds):
            pass

    def run_tick(self) -> int:
        """
        One poll cycle: sweep the ledger, then process every eligible user.

        Returns:
            Number of users processed without error
        """
        pool = self._pool
        if pool is None or not self.running:
            return 0

        self.app.ledger.sweep_expired()
        try:
            user_ids = self.app.eligible_user_ids()
        except Exception as e:
            logger.error(f"Could not list eligible users: {e}", exc_info=True)
            return 0

        futures = {}
        for user_id in user_ids:
            if not self._claim(user_id):
                logger.info(f"User {user_id} still in progress, skipping this tick")
                continue
            try:
                futures[pool.submit(self._process, user_id)] = user_id
            except RuntimeError:
                # Pool shut down mid-tick
                self._release(user_id)
                break

        wait(futures)
        ok = sum(1 for future in futures if future.result())
        logger.info(f"Tick complete: {ok}/{len(futures)} users processed")
        return ok

    def _process(self, user_id: int) -> bool:
        try:
            self.app.process_user(user_id)
            return True
        except Exception as e:
            logger.error(f"Error processing user {user_id}: {e}", exc_info=True)
            return False
        finally:
            self._release(user_id)

    def _claim(self, user_id: int) -> bool:
        with self._in_flight_lock:
            if user_id in self._in_flight:
                return False
            self._in_flight.add(user_id)
            return True

    def _release(self, user_id: int) -> None:
        with self._in_flight_lock:
            self._in_flight.discard(user_id)

    def register_shutdown_handlers(self) -> None:
        """Stop gracefully on SIGINT/SIGTERM. Registers once."""
        if self._handlers_registered:
            return

        def _handle(signum, frame):
            logger.info(f"Received signal {signum}, shutting down")
            self.stop()

        signal.signal(signal.SIGINT, _handle)
        signal.signal(signal.SIGTERM, _handle)
        self._handlers_registered = True
