"""
Configuration for backup and restore tasks.

The task configuration is an immutable value built once (usually from the
environment) and handed to the scheduler and task runner. Schedule
expressions are parsed into APScheduler triggers here so malformed settings
fail before anything runs.
"""

import os
import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Mapping, Optional

from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger


SCHEDULE_NONE = 'none'
SCHEDULER_TIMEZONE = 'UTC'

# Cron descriptors, day_of_week uses names to stay unambiguous
SCHEDULE_DESCRIPTORS = {
    '@yearly': '0 0 1 1 *',
    '@annually': '0 0 1 1 *',
    '@monthly': '0 0 1 * *',
    '@weekly': '0 0 * * sun',
    '@daily': '0 0 * * *',
    '@midnight': '0 0 * * *',
    '@hourly': '0 * * * *',
}

_DURATION_PART = re.compile(r'(\d+(?:\.\d+)?)(h|m|s)')
_DURATION_UNITS = {'h': 'hours', 'm': 'minutes', 's': 'seconds'}


class ConfigurationError(Exception):
    """Raised when settings are malformed."""
    pass


def env_str(name: str, default: str = '', environ: Optional[Mapping[str, str]] = None) -> str:
    environ = os.environ if environ is None else environ
    return environ.get(name, default)


def env_int(name: str, default: int, environ: Optional[Mapping[str, str]] = None) -> int:
    raw = env_str(name, '', environ).strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


def env_bool(name: str, default: bool, environ: Optional[Mapping[str, str]] = None) -> bool:
    raw = env_str(name, '', environ).strip().lower()
    if not raw:
        return default
    if raw in ('1', 'true', 't', 'yes', 'y', 'on'):
        return True
    if raw in ('0', 'false', 'f', 'no', 'n', 'off'):
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {raw!r}")


def parse_duration(value: str) -> timedelta:
    """
    Parse a duration such as '1h30m' or '90s'.

    Raises:
        ConfigurationError: If the duration is malformed or not positive
    """
    text = value.strip()
    if not text:
        raise ConfigurationError("Empty duration")

    position = 0
    kwargs = {}
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        unit = _DURATION_UNITS[match.group(2)]
        kwargs[unit] = kwargs.get(unit, 0) + float(match.group(1))
        position = match.end()

    if position != len(text):
        raise ConfigurationError(f"Invalid duration: {value!r}")

    duration = timedelta(**kwargs)
    if duration <= timedelta(0):
        raise ConfigurationError(f"Duration must be positive: {value!r}")
    return duration


def is_run_once(schedule: Optional[str]) -> bool:
    """True when the schedule asks for a single immediate run."""
    return schedule is None or schedule.strip().lower() in ('', SCHEDULE_NONE)


def build_trigger(schedule: str, timezone: str = SCHEDULER_TIMEZONE):
    """
    Build an APScheduler trigger from a schedule expression.

    Supported forms:
    - 5-field crontab: "0 2 * * *"
    - 6-field crontab with a leading seconds field: "0 30 2 * * *"
    - descriptors: "@daily", "@hourly", "@weekly", ...
    - intervals: "@every 1h30m"

    Args:
        schedule: Schedule expression
        timezone: Timezone for cron triggers

    Returns:
        CronTrigger or IntervalTrigger

    Raises:
        ConfigurationError: If the expression cannot be parsed
    """
    if is_run_once(schedule):
        raise ConfigurationError("Schedule is empty, the task runs once and needs no trigger")

    expression = schedule.strip()
    lowered = expression.lower()

    if lowered.startswith('@every'):
        duration = parse_duration(expression[len('@every'):])
        return IntervalTrigger(seconds=duration.total_seconds(), timezone=timezone)

    if lowered.startswith('@'):
        if lowered not in SCHEDULE_DESCRIPTORS:
            raise ConfigurationError(f"Unknown schedule descriptor: {expression}")
        expression = SCHEDULE_DESCRIPTORS[lowered]

    fields = expression.split()
    try:
        if len(fields) == 5:
            return CronTrigger.from_crontab(expression, timezone=timezone)
        if len(fields) == 6:
            second, minute, hour, day, month, day_of_week = fields
            return CronTrigger(
                second=second,
                minute=minute,
                hour=hour,
                day=day,
                month=month,
                day_of_week=day_of_week,
                timezone=timezone
            )
    except ValueError as e:
        raise ConfigurationError(f"Invalid schedule {schedule!r}: {e}") from e

    raise ConfigurationError(
        f"Invalid schedule {schedule!r}: expected 5 or 6 fields, got {len(fields)}"
    )


@dataclass(frozen=True)
class Config:
    """
    Settings shared by the scheduler and the backup/restore tasks.

    Attributes:
        schedule: Cron-like expression, or "none"/"" for a single immediate run
        max_backups: Number of artifacts kept in the store after a backup
        restore_file: Artifact to restore instead of the latest one
        random_delay: Upper bound (seconds, exclusive) of the jitter before
            each scheduled run; values below 1 are treated as 1
    """

    schedule: str = '@daily'
    max_backups: int = 7
    restore_file: str = ''
    random_delay: int = 1

    def __post_init__(self):
        if self.schedule is None:
            object.__setattr__(self, 'schedule', '')

        if not isinstance(self.max_backups, int) or self.max_backups < 0:
            raise ConfigurationError(
                f"max_backups must be a non-negative integer, got {self.max_backups!r}"
            )

        if not isinstance(self.random_delay, int):
            raise ConfigurationError(
                f"random_delay must be an integer, got {self.random_delay!r}"
            )

        if not self.runs_once:
            build_trigger(self.schedule)

    @property
    def runs_once(self) -> bool:
        return is_run_once(self.schedule)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'Config':
        """
        Load configuration from environment variables.

        SCHEDULE (default "@daily"), MAX_BACKUPS (default 7), RESTORE_FILE,
        RANDOM_DELAY (default 1).
        """
        return cls(
            schedule=env_str('SCHEDULE', '@daily', environ),
            max_backups=env_int('MAX_BACKUPS', 7, environ),
            restore_file=env_str('RESTORE_FILE', '', environ),
            random_delay=env_int('RANDOM_DELAY', 1, environ),
        )
