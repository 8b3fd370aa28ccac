"""
Database-coordinated periodic jobs.

Each job has a row in ``oob_cron_jobs``. A process runs a job only after
claiming it with a conditional UPDATE on ``next_run_at`` and
``locked_until``, so several service instances sharing one database run
each job once per interval. The checkpoint handed to a job pushes the lock
forward; a job that stops checkpointing loses its lock after
``timeout_seconds`` and another process may take over.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from oob import config
from oob.database import db

logger = logging.getLogger("oob.cron")

Clock = Callable[[], datetime]


class CronJobCancelled(Exception):
    """Raised from a checkpoint when the runner is shutting down."""


@dataclass
class CronJob:
    name: str
    interval_seconds: int
    timeout_seconds: int
    callback: Callable[[Callable[[], None]], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class CronRunner:
    def __init__(self, poll_seconds: Optional[float] = None, clock: Clock = _utcnow):
        self.poll_seconds = poll_seconds if poll_seconds is not None else config.CRON_POLL_SECONDS
        self._clock = clock
        self._jobs: Dict[str, CronJob] = {}
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def jobs(self) -> Dict[str, CronJob]:
        return dict(self._jobs)

    def register_job(
        self,
        name: str,
        interval_seconds: int,
        timeout_seconds: int,
        callback: Callable[[Callable[[], None]], None],
    ) -> None:
        """Register a job; a job seen for the first time is due immediately."""
        conn = db()
        try:
            conn.execute(
                """
                INSERT INTO oob_cron_jobs (name, interval_seconds, timeout_seconds, next_run_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    interval_seconds = excluded.interval_seconds,
                    timeout_seconds = excluded.timeout_seconds
                """,
                (name, interval_seconds, timeout_seconds, _iso(self._clock())),
            )
            conn.commit()
        finally:
            conn.close()
        self._jobs[name] = CronJob(name, interval_seconds, timeout_seconds, callback)
        logger.info("Registered cron job %s (every %ds, timeout %ds)", name, interval_seconds, timeout_seconds)

    def get_job_state(self, name: str) -> Optional[dict]:
        conn = db()
        try:
            row = conn.execute("SELECT * FROM oob_cron_jobs WHERE name = ?", (name,)).fetchone()
        finally:
            conn.close()
        return dict(row) if row else None

    def run_now(self, name: str) -> bool:
        """Make a job due on the next tick. False if it is unknown."""
        conn = db()
        try:
            cur = conn.execute(
                "UPDATE oob_cron_jobs SET next_run_at = ? WHERE name = ?",
                (_iso(self._clock()), name),
            )
            conn.commit()
            return cur.rowcount > 0
        finally:
            conn.close()

    def _claim(self, job: CronJob) -> bool:
        now = self._clock()
        now_iso = _iso(now)
        conn = db()
        try:
            cur = conn.execute(
                """
                UPDATE oob_cron_jobs SET locked_until = ?, last_started_at = ?
                WHERE name = ? AND next_run_at <= ?
                  AND (locked_until IS NULL OR locked_until <= ?)
                """,
                (_iso(now + timedelta(seconds=job.timeout_seconds)), now_iso, job.name, now_iso, now_iso),
            )
            conn.commit()
            return cur.rowcount > 0
        finally:
            conn.close()

    def _checkpoint_for(self, job: CronJob) -> Callable[[], None]:
        def checkpoint() -> None:
            if self._stop.is_set():
                raise CronJobCancelled(job.name)
            now = self._clock()
            conn = db()
            try:
                conn.execute(
                    "UPDATE oob_cron_jobs SET locked_until = ?, last_checkpoint_at = ? WHERE name = ?",
                    (_iso(now + timedelta(seconds=job.timeout_seconds)), _iso(now), job.name),
                )
                conn.commit()
            finally:
                conn.close()

        return checkpoint

    def _finish(self, job: CronJob, error: Optional[str]) -> None:
        now = self._clock()
        conn = db()
        try:
            if error is None:
                conn.execute(
                    """
                    UPDATE oob_cron_jobs
                    SET locked_until = NULL, last_finished_at = ?, last_error = NULL, next_run_at = ?
                    WHERE name = ?
                    """,
                    (_iso(now), _iso(now + timedelta(seconds=job.interval_seconds)), job.name),
                )
            else:
                # next_run_at is left alone so the next tick retries.
                conn.execute(
                    "UPDATE oob_cron_jobs SET locked_until = NULL, last_error = ? WHERE name = ?",
                    (error[:2000], job.name),
                )
            conn.commit()
        finally:
            conn.close()

    def run_job(self, job: CronJob) -> bool:
        """Claim and run one job. Returns True if this process ran it."""
        if not self._claim(job):
            return False
        logger.info("Running cron job %s", job.name)
        try:
            job.callback(self._checkpoint_for(job))
        except CronJobCancelled:
            logger.info("Cron job %s cancelled", job.name)
            self._finish(job, "cancelled")
            return True
        except Exception as e:
            logger.error("Cron job %s failed: %s", job.name, e, exc_info=True)
            self._finish(job, str(e) or type(e).__name__)
            return True
        self._finish(job, None)
        logger.info("Cron job %s finished", job.name)
        return True

    def run_due_jobs(self) -> List[str]:
        ran = []
        for job in list(self._jobs.values()):
            if self._stop.is_set():
                break
            try:
                if self.run_job(job):
                    ran.append(job.name)
            except Exception as e:
                logger.error("Cron bookkeeping failed for %s: %s", job.name, e, exc_info=True)
        return ran

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.run_due_jobs()
            self._stop.wait(self.poll_seconds)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="oob-cron", daemon=True)
        self._thread.start()
        logger.info("Cron runner started (poll every %ss)", self.poll_seconds)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Cron runner stopped")
