"""
APScheduler-based timing of backup cycles.

Policies, in order of precedence:
- once: run one cycle now and return its result
- cron: five-field crontab expression
- begin/frequency: first run at HHMM or +MM, then every frequency minutes

The loop runs one job on a single worker with max_instances=1, so a trigger
that fires while a cycle is still running is dropped and logged.
"""

import re
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from apscheduler.events import EVENT_JOB_MAX_INSTANCES
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.util import astimezone
from tzlocal import get_localzone

from dbbackup.config import ConfigError, SchedulePolicy


logger = logging.getLogger(__name__)

JOB_ID = 'backup'

_ABSOLUTE_BEGIN = re.compile(r'^(\d{2})(\d{2})$')
_RELATIVE_BEGIN = re.compile(r'^\+(\d+)$')


class SchedulerError(Exception):
    """A backup cycle failed while running on a recurring schedule."""
    pass


def _now(timezone=None) -> datetime:
    return datetime.now(astimezone(timezone) or get_localzone())


def parse_begin(begin: str, now: datetime) -> datetime:
    """
    Compute the first run time.

    Args:
        begin: "HHMM" for a local time of day (tomorrow if already past),
            or "+MM" for minutes after now
        now: Timezone-aware current time

    Raises:
        ConfigError: If begin is in neither format
    """
    begin = (begin or '+0').strip()

    match = _RELATIVE_BEGIN.match(begin)
    if match:
        return now + timedelta(minutes=int(match.group(1)))

    match = _ABSOLUTE_BEGIN.match(begin)
    if match:
        hour, minute = int(match.group(1)), int(match.group(2))
        if hour > 23 or minute > 59:
            raise ConfigError(f"Invalid begin time: {begin!r}")

        first_run = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
        if first_run <= now:
            first_run += timedelta(days=1)
        return first_run

    raise ConfigError(f"Invalid begin time: {begin!r}. Use HHMM or +MM")


def build_trigger(policy: SchedulePolicy, now: datetime, timezone=None):
    """
    Build the APScheduler trigger for a recurring policy.

    Returns:
        (trigger, first_run_time); first_run_time is None for cron

    Raises:
        ConfigError: If the policy is once, or cron/begin/frequency is invalid
    """
    if policy.once:
        raise ConfigError("A once policy has no trigger")

    timezone = timezone or now.tzinfo

    if policy.cron:
        try:
            return CronTrigger.from_crontab(policy.cron, timezone=timezone), None
        except ValueError as e:
            raise ConfigError(f"Invalid cron expression {policy.cron!r}: {e}")

    if policy.frequency is None or policy.frequency <= 0:
        raise ConfigError(f"Frequency must be a positive number of minutes: {policy.frequency}")

    first_run = parse_begin(policy.begin, now)
    trigger = IntervalTrigger(minutes=policy.frequency, start_date=first_run, timezone=timezone)
    return trigger, first_run


def next_run_time(policy: SchedulePolicy, now: datetime = None, timezone=None) -> datetime:
    """When the first cycle of a recurring policy will run."""
    now = now or _now(timezone)
    trigger, first_run = build_trigger(policy, now, timezone)
    if first_run is not None:
        return first_run
    return trigger.get_next_fire_time(None, now)


class BackupScheduler:
    """
    Runs a backup cycle according to a SchedulePolicy.

    The cycle is any callable that raises on failure, typically
    run_backup_cycle bound to its options and database.
    """

    def __init__(self, cycle: Callable[[], Any], policy: SchedulePolicy, timezone=None):
        self.cycle = cycle
        self.policy = policy
        self.timezone = timezone
        self.scheduler = None
        self.runs = 0
        self.failures = 0
        self.skipped = 0
        self.last_error = None

    def run(self):
        """
        Run according to the policy.

        Under once, the cycle's return value is returned and its exceptions
        propagate. Otherwise this blocks until shutdown() is called.

        Raises:
            ConfigError: If the recurring policy is invalid
        """
        if self.policy.once:
            logger.info("Running single backup cycle")
            self.runs += 1
            return self.cycle()

        now = _now(self.timezone)
        trigger, first_run = build_trigger(self.policy, now, self.timezone)

        self.scheduler = BlockingScheduler(
            executors={'default': ThreadPoolExecutor(max_workers=1)},
            job_defaults={
                'coalesce': True,
                'max_instances': 1,
                'misfire_grace_time': 300
            },
            timezone=self.timezone or now.tzinfo
        )
        self.scheduler.add_listener(self._on_max_instances, EVENT_JOB_MAX_INSTANCES)

        job_kwargs = {}
        if first_run is not None:
            # the interval trigger alone would skip a start time that is already due
            job_kwargs['next_run_time'] = first_run

        self.scheduler.add_job(
            func=self._run_cycle,
            trigger=trigger,
            id=JOB_ID,
            name='Database backup',
            replace_existing=True,
            **job_kwargs
        )

        logger.info(
            "Backup scheduled (trigger: %s, next run: %s)",
            trigger, first_run or trigger.get_next_fire_time(None, now)
        )
        self.scheduler.start()

    def shutdown(self, wait: bool = True):
        """Stop the scheduler loop."""
        if self.scheduler and self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            logger.info("Backup scheduler stopped")

    def _run_cycle(self):
        """Run one cycle; failures are logged and the loop keeps going."""
        self.runs += 1
        try:
            result = self.cycle()
            logger.info("Backup cycle %d completed", self.runs)
            return result
        except Exception as e:
            self.failures += 1
            self.last_error = SchedulerError(f"Backup cycle {self.runs} failed: {e}")
            logger.error("%s", self.last_error, exc_info=True)
            return None

    def _on_max_instances(self, event):
        self.skipped += 1
        logger.warning(
            "Skipping backup trigger at %s: previous cycle still running",
            ', '.join(str(t) for t in getattr(event, 'scheduled_run_times', []))
        )
