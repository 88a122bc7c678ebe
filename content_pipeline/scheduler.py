"""
Scheduling of recurring pipeline jobs.

Schedules are pure: whether a job is due depends only on the current time
and the job's last run, which is kept in the job_history table.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from content_pipeline.constants import SECONDS_PER_DAY
from content_pipeline.database import get_job_last_run, record_job_run
from util.logging_util import setup_logger

logger = setup_logger(__name__)

SECONDS_PER_HOUR = 60 * 60


@dataclass(frozen=True)
class Schedule:
    """Either a fixed interval or a daily run at an hour (UTC)."""
    interval_seconds: Optional[int] = None
    hour_utc: Optional[int] = None

    @classmethod
    def every(cls, hours: float) -> "Schedule":
        return cls(interval_seconds=int(hours * SECONDS_PER_HOUR))

    @classmethod
    def daily_at(cls, hour_utc: int) -> "Schedule":
        if not 0 <= hour_utc < 24:
            raise ValueError(f"hour_utc must be in [0, 24), got {hour_utc}")
        return cls(hour_utc=hour_utc)

    def next_run(self, last_run: Optional[int]) -> int:
        """Earliest time the job should run again. A job that never ran is due at once."""
        if last_run is None:
            return 0
        if self.interval_seconds is not None:
            return last_run + self.interval_seconds

        day_start = last_run - last_run % SECONDS_PER_DAY
        candidate = day_start + self.hour_utc * SECONDS_PER_HOUR
        if candidate <= last_run:
            candidate += SECONDS_PER_DAY
        return candidate

    def is_due(self, now: int, last_run: Optional[int]) -> bool:
        return now >= self.next_run(last_run)


class ReadinessState:
    """Tracks what the startup sequence has initialised. Jobs only run once ready."""

    def __init__(self):
        self._lock = threading.Lock()
        self._database_ready = False
        self._topics_ready = False

    def mark_database_ready(self):
        with self._lock:
            self._database_ready = True

    def mark_topics_ready(self):
        with self._lock:
            self._topics_ready = True

    @property
    def is_ready(self) -> bool:
        with self._lock:
            return self._database_ready and self._topics_ready

    def as_dict(self) -> Dict[str, bool]:
        with self._lock:
            return {"database": self._database_ready, "topics": self._topics_ready}


@dataclass
class Job:
    name: str
    schedule: Schedule
    run: Callable[[int], object]


class JobRunner:
    """Runs whichever jobs are due, recording each outcome independently."""

    def __init__(self, jobs: List[Job], readiness: ReadinessState, logger: Optional[logging.Logger] = None):
        self.jobs = jobs
        self.readiness = readiness
        self.logger = logger or logging.getLogger(__name__)

    def run_due_jobs(self, now: Optional[int] = None) -> Dict[str, str]:
        """
        Run every due job once.

        A failing job is logged and recorded as failed; the remaining jobs
        still run.

        Returns:
            Status ("ok" or "failed") keyed by the name of each job that ran.
        """
        now = int(time.time()) if now is None else now
        if not self.readiness.is_ready:
            self.logger.warning(f"Pipeline not ready, skipping jobs: {self.readiness.as_dict()}")
            return {}

        statuses = {}
        for job in self.jobs:
            if not job.schedule.is_due(now, get_job_last_run(job.name)):
                continue

            self.logger.info(f"Running job {job.name}")
            try:
                outcome = job.run(now)
            except Exception as e:
                self.logger.exception(f"Job {job.name} failed: {e}")
                status, detail = "failed", str(e)[:500]
            else:
                status, detail = "ok", str(outcome)[:500] if outcome is not None else None

            statuses[job.name] = status
            try:
                record_job_run(job.name, status, detail, now)
            except SQLAlchemyError as e:
                self.logger.error(f"Could not record run of {job.name}: {e}")
        return statuses

    def run_forever(self, poll_seconds: float = 60.0, stop_event: Optional[threading.Event] = None):
        """Poll for due jobs until `stop_event` is set."""
        stop_event = stop_event or threading.Event()
        self.logger.info(f"Starting scheduler with jobs: {[job.name for job in self.jobs]}")
        while not stop_event.is_set():
            try:
                self.run_due_jobs()
            except Exception as e:
                self.logger.error(f"Error in scheduler loop: {e}")
            stop_event.wait(poll_seconds)
