"""
APScheduler configuration and job scheduling for the launch agent.

Manages:
- One timer per model with an enabled schedule (cron or interval)
- The resource pulse and supervisor status jobs (if enabled)
- Manual "run now" triggers

The timer set is rebuilt wholesale from the current configuration snapshot
on every restart; there are no incremental updates. All model jobs share a
single lock so only one pipeline runs at a time, while the monitoring jobs
use their own lock and are never blocked by a long backup.
"""

import logging
import math
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple
from zoneinfo import ZoneInfo

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from launch_agent.backup.executor import PerformResult, perform_model
from launch_agent.models import ModelConfig, PulseConfig, ScheduleConfig, SupervisorConfig, parse_duration
from launch_agent.monitoring import pulse as pulse_module
from launch_agent.monitoring import supervisor as supervisor_module


logger = logging.getLogger(__name__)

MONITORING_EXECUTOR = 'monitoring'
PULSE_JOB_ID = 'pulse'
SUPERVISOR_JOB_ID = 'supervisor_status'


def model_job_id(model_name: str) -> str:
    return f"model_{model_name}"


def _resolve_timezone(tz: Optional[str]):
    # None lets APScheduler use the host's local zone
    if not tz:
        return None
    if tz.upper() == 'UTC':
        return timezone.utc
    return ZoneInfo(tz)


def _parse_time_of_day(value: str) -> Tuple[int, int, int]:
    parts = value.strip().split(':')
    if len(parts) not in (2, 3):
        raise ValueError(f"Invalid time of day: {value!r}")
    hour, minute = int(parts[0]), int(parts[1])
    second = int(parts[2]) if len(parts) == 3 else 0
    if not (0 <= hour < 24 and 0 <= minute < 60 and 0 <= second < 60):
        raise ValueError(f"Invalid time of day: {value!r}")
    return hour, minute, second


def next_anchor(now: datetime, at: str, interval: timedelta) -> datetime:
    """
    First fire time aligned to a time of day.

    Today's anchor if still ahead, otherwise the first point after now on
    the grid anchor + n * interval.
    """
    hour, minute, second = _parse_time_of_day(at)
    candidate = now.replace(hour=hour, minute=minute, second=second, microsecond=0)
    if candidate > now:
        return candidate

    steps = math.floor((now - candidate) / interval) + 1
    return candidate + steps * interval


def build_trigger(schedule: ScheduleConfig, tz: Optional[str] = None, now: Optional[datetime] = None):
    """
    Build the APScheduler trigger for a schedule.

    Interval schedules without an anchor fire for the first time one full
    interval after now, never immediately.

    Raises:
        ValueError: If the schedule is disabled or malformed
    """
    if not schedule.enabled:
        raise ValueError("Schedule is disabled")

    tzinfo = _resolve_timezone(tz)

    if schedule.cron:
        return CronTrigger.from_crontab(schedule.cron, timezone=tzinfo)

    interval = parse_duration(schedule.every)
    if now is None:
        now = datetime.now(tzinfo) if tzinfo else datetime.now().astimezone()

    if schedule.at:
        start_date = next_anchor(now, schedule.at, interval)
    else:
        start_date = now + interval

    return IntervalTrigger(
        seconds=interval.total_seconds(),
        start_date=start_date,
        timezone=tzinfo
    )


class Scheduler:
    """
    Owns the background scheduler and its timer set.
    """

    def __init__(self, store, timezone: Optional[str] = None, max_workers: int = 3,
                 perform: Callable[[ModelConfig], PerformResult] = perform_model):
        """
        Args:
            store: ConfigStore providing the current snapshot
            timezone: Timezone name for triggers (None = local time)
            max_workers: Size of the job thread pool
            perform: Pipeline entry point invoked for each model fire
        """
        self.store = store
        self.timezone = timezone
        self.max_workers = max_workers
        self._perform = perform
        self._scheduler = None
        self._state_lock = threading.RLock()
        # Locks outlive restarts so new timers wait for in-flight runs
        self._model_lock = threading.Lock()
        self._pulse_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def _create_scheduler(self) -> BackgroundScheduler:
        return BackgroundScheduler(
            executors={
                'default': ThreadPoolExecutor(max_workers=self.max_workers),
                # Pulse and supervisor jobs only
                MONITORING_EXECUTOR: ThreadPoolExecutor(max_workers=1)
            },
            job_defaults={
                'coalesce': True,  # Combine multiple pending instances into one
                'max_instances': 1,  # Only one instance of a job at a time
                'misfire_grace_time': 300  # 5 minutes grace period for misfires
            },
            timezone=_resolve_timezone(self.timezone)
        )

    def start(self) -> List[Tuple[str, Exception]]:
        """
        Register every job from the current snapshot and start firing.

        A job that fails to register is logged and skipped; the others
        still register.

        Returns:
            (job id, error) for every job that failed to register
        """
        with self._state_lock:
            if self.running:
                logger.info("Scheduler already running")
                return []

            snapshot = self.store.snapshot
            scheduler = self._create_scheduler()
            failures: List[Tuple[str, Exception]] = []

            if snapshot.pulse.enabled:
                self._register(scheduler, failures, PULSE_JOB_ID, 'Launch pulse',
                               lambda: IntervalTrigger(minutes=snapshot.pulse.interval),
                               self._run_pulse, [snapshot.pulse],
                               executor=MONITORING_EXECUTOR)

            if snapshot.supervisor.enabled:
                self._register(scheduler, failures, SUPERVISOR_JOB_ID, 'Supervisor status',
                               lambda: IntervalTrigger(minutes=snapshot.supervisor.interval),
                               self._run_supervisor_status, [snapshot.supervisor, snapshot.pulse],
                               executor=MONITORING_EXECUTOR)

            for model in snapshot.models:
                if not model.schedule.enabled:
                    continue

                logger.info(f"Register {model.name} with ({model.schedule})")
                self._register(scheduler, failures, model_job_id(model.name), f"Backup: {model.name}",
                               lambda model=model: build_trigger(model.schedule, self.timezone),
                               self._run_model, [model])

            scheduler.start()
            self._scheduler = scheduler

            jobs = scheduler.get_jobs()
            logger.info(f"Scheduler started with {len(jobs)} jobs")
            for job in jobs:
                next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
                logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")

            return failures

    def _register(self, scheduler: BackgroundScheduler, failures: list, job_id: str, name: str,
                  make_trigger: Callable, func: Callable, args: list, executor: str = 'default'):
        try:
            scheduler.add_job(
                func=func,
                args=args,
                trigger=make_trigger(),
                id=job_id,
                name=name,
                executor=executor,
                replace_existing=True
            )
        except Exception as e:
            logger.error(f"Failed to register job {job_id}: {e}")
            failures.append((job_id, e))

    def stop(self):
        """
        Cancel every timer.

        Jobs already running are not interrupted. Safe to call when stopped.
        """
        with self._state_lock:
            if self._scheduler is None:
                return
            if self._scheduler.running:
                self._scheduler.shutdown(wait=False)
                logger.info("Scheduler stopped")
            self._scheduler = None

    def restart(self) -> List[Tuple[str, Exception]]:
        """Tear down every timer and rebuild from the current snapshot."""
        with self._state_lock:
            logger.info("Reloading...")
            self.stop()
            return self.start()

    def _run_model(self, model: ModelConfig):
        """
        Job body for a model timer.

        Errors are logged against the model and never escape, so the timer
        keeps firing.
        """
        try:
            logger.info(f"[{model.name}] Performing...")
            with self._model_lock:
                result = self._perform(model)
            if result is not None and not result.succeeded:
                logger.error(f"[{model.name}] Failed to perform: {result.error}")
            logger.info(f"[{model.name}] Done.")
        except Exception as e:
            logger.exception(f"[{model.name}] Scheduled run failed: {e}")

    def _run_pulse(self, pulse_config: PulseConfig):
        try:
            with self._pulse_lock:
                stats = pulse_module.fetch()
                pulse_module.pulse(stats, pulse_config.webhook)
        except Exception as e:
            logger.error(f"[{PULSE_JOB_ID}] Pulse failed: {e}")

    def _run_supervisor_status(self, supervisor_config: SupervisorConfig, pulse_config: PulseConfig):
        try:
            with self._pulse_lock:
                supervisor_module.send_daemon_status(supervisor_config, pulse_config.webhook)
        except Exception as e:
            logger.error(f"[{SUPERVISOR_JOB_ID}] Supervisor status failed: {e}")

    def trigger_now(self, model_name: str) -> str:
        """
        Run a model once, as soon as possible, under the model lock.

        Returns:
            Id of the one-shot job

        Raises:
            ValueError: If the model is not configured
            RuntimeError: If the scheduler is not running
        """
        model = self.store.get_model(model_name)
        if model is None:
            raise ValueError(f"Model not found: {model_name}")

        with self._state_lock:
            if not self.running:
                raise RuntimeError("Scheduler not running")

            now = datetime.now(timezone.utc)
            job_id = f"manual_{model_name}_{uuid.uuid4().hex[:12]}"
            self._scheduler.add_job(
                func=self._run_model,
                args=[model],
                trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
                id=job_id,
                name=f"Manual: {model_name}",
                replace_existing=False
            )

        logger.info(f"Manually triggered model: {model_name}")
        return job_id

    def perform_now(self, model_name: str) -> PerformResult:
        """
        Run a model synchronously, waiting for any pipeline already running.

        Raises:
            ValueError: If the model is not configured
        """
        model = self.store.get_model(model_name)
        if model is None:
            raise ValueError(f"Model not found: {model_name}")

        with self._model_lock:
            return self._perform(model)

    def get_scheduled_jobs(self) -> list:
        """
        Get list of all scheduled jobs.

        Returns:
            List of dicts with job information
        """
        with self._state_lock:
            if self._scheduler is None:
                return []

            return [
                {
                    'id': job.id,
                    'name': job.name,
                    'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
                    'trigger': str(job.trigger)
                }
                for job in self._scheduler.get_jobs()
            ]

    def get_diagnostics(self) -> dict:
        """
        Get detailed scheduler diagnostics for troubleshooting.

        Returns:
            Dict with scheduler state, jobs, and lock state
        """
        with self._state_lock:
            if self._scheduler is None:
                return {
                    'initialized': False,
                    'running': False,
                    'state': 'STOPPED',
                    'job_count': 0,
                    'jobs': [],
                    'model_running': self._model_lock.locked()
                }

            try:
                jobs = self.get_scheduled_jobs()
                return {
                    'initialized': True,
                    'running': self._scheduler.running,
                    'state': str(self._scheduler.state),
                    'job_count': len(jobs),
                    'jobs': jobs,
                    'model_running': self._model_lock.locked()
                }
            except Exception as e:
                return {
                    'initialized': True,
                    'running': self._scheduler.running,
                    'state': 'ERROR',
                    'error': str(e)
                }
