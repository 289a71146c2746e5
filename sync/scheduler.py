"""Cron-driven scheduling of sync runs with a single-flight guard."""
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, Optional
from zoneinfo import ZoneInfo

from croniter import croniter

from processor.models import SyncSummary
from sync.errors import SyncInProgressError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CronJob:
    """A wall-clock trigger evaluated in the configured time zone."""
    expression: str
    label: str

    @property
    def trigger_source(self) -> str:
        return f"cron:{self.label}"


CRON_JOBS = (
    CronJob(expression='0 9 * * *', label='morning'),
    CronJob(expression='0 20 * * *', label='evening'),
)


class SingleFlightGuard:
    """Mutex-protected flag allowing at most one run at a time."""

    def __init__(self):
        self._lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._running_label = None

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    @property
    def running_label(self) -> Optional[str]:
        with self._state_lock:
            return self._running_label

    @contextmanager
    def hold(self, label: str):
        """
        Hold the guard for the duration of a run.

        Raises:
            SyncInProgressError: If another run holds the guard
        """
        if not self._lock.acquire(blocking=False):
            raise SyncInProgressError(self.running_label)
        with self._state_lock:
            self._running_label = label
        try:
            yield
        finally:
            with self._state_lock:
                self._running_label = None
            self._lock.release()


def _default_timer(delay: float, callback: Callable[[], None]):
    timer = threading.Timer(delay, callback)
    timer.daemon = True
    return timer


class SyncScheduler:
    """
    Fires sync runs from a declarative cron table.

    Cron and manual triggers share run_once(), which serializes runs
    through a SingleFlightGuard. State moves IDLE -> RUNNING -> IDLE.
    """

    def __init__(
        self,
        engine,
        time_zone: str,
        jobs: Iterable[CronJob] = CRON_JOBS,
        timer_factory: Callable = _default_timer,
        clock: Optional[Callable[[], datetime]] = None,
        guard: Optional[SingleFlightGuard] = None
    ):
        """
        Args:
            engine: Object with run(trigger_source, trigger_label, trigger_user)
            time_zone: IANA zone the cron expressions are evaluated in
            jobs: Cron table
            timer_factory: Callable(delay_seconds, callback) returning an
                object with start() and cancel()
            clock: Returns the current aware datetime, for tests
            guard: Shared single-flight guard
        """
        self.engine = engine
        self.time_zone = time_zone
        self.tz = ZoneInfo(time_zone)
        self.jobs = tuple(jobs)
        self.timer_factory = timer_factory
        self.clock = clock or (lambda: datetime.now(self.tz))
        self.guard = guard or SingleFlightGuard()
        self._timers: Dict[str, object] = {}
        self._timers_lock = threading.Lock()
        self._started = False

    @property
    def state(self) -> str:
        return 'RUNNING' if self.guard.is_running else 'IDLE'

    @property
    def started(self) -> bool:
        return self._started

    def next_fire_time(self, job: CronJob, now: Optional[datetime] = None) -> datetime:
        """
        Next wall-clock time the job fires after `now`.

        Args:
            job: Cron job
            now: Reference time, defaults to the scheduler clock

        Returns:
            Timezone-aware datetime in the configured zone
        """
        anchor = (now or self.clock()).astimezone(self.tz)
        return croniter(job.expression, anchor).get_next(datetime)

    def start(self) -> None:
        """Register a timer for every cron job."""
        if self._started:
            logger.warning("Scheduler already started")
            return

        self._started = True
        for job in self.jobs:
            self._schedule(job)

        logger.info(
            "googleCalendar.scheduler.started",
            extra={'jobs': len(self.jobs), 'timezone': self.time_zone}
        )

    def stop(self) -> None:
        """Cancel all pending timers. A run already in progress completes."""
        self._started = False
        with self._timers_lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()

        logger.info("googleCalendar.scheduler.stopped", extra={'timezone': self.time_zone})

    def run_once(
        self,
        trigger_source: str,
        trigger_label: Optional[str] = None,
        trigger_user: Optional[str] = None
    ) -> SyncSummary:
        """
        Single entry point for cron and manual runs.

        Args:
            trigger_source: e.g. "cron:morning" or "manual"
            trigger_label: Trigger label
            trigger_user: Operator for manual runs

        Returns:
            SyncSummary from the engine

        Raises:
            SyncInProgressError: If a run is already executing
        """
        with self.guard.hold(trigger_label or trigger_source):
            return self.engine.run(trigger_source, trigger_label, trigger_user)

    def _schedule(self, job: CronJob, after: Optional[datetime] = None) -> None:
        """
        Arm a timer for the job's next slot.

        Args:
            job: Cron job
            after: Slot that just fired. The next slot is computed strictly
                after it, so a timer waking before the wall clock reaches
                its slot cannot re-arm the same slot.
        """
        now = self.clock()
        anchor = now if after is None else max(now, after)
        fire_at = self.next_fire_time(job, anchor)
        delay = max(0.0, (fire_at - now).total_seconds())

        timer = self.timer_factory(delay, lambda: self._fire(job, fire_at))
        with self._timers_lock:
            if not self._started:
                return
            self._timers[job.label] = timer
        timer.start()

        logger.debug(
            f"Scheduled {job.label} sync at {fire_at.isoformat()}",
            extra={'label': job.label, 'expression': job.expression}
        )

    def _fire(self, job: CronJob, slot: Optional[datetime] = None) -> None:
        """Timer callback. Never raises so the process keeps scheduling."""
        if self._started:
            self._schedule(job, after=slot)

        try:
            self.run_once(job.trigger_source, job.label)
        except SyncInProgressError as e:
            logger.warning(
                "sync.rejected",
                extra={
                    'label': job.label,
                    'expression': job.expression,
                    'running_label': e.running_label
                }
            )
        except Exception:
            logger.exception(
                f"Unexpected failure in {job.label} sync",
                extra={'label': job.label, 'expression': job.expression}
            )
