"""
APScheduler driven execution of backup and restore tasks.

Manages:
- Immediate single runs (no schedule, or "none")
- Recurring runs on a cron-like schedule, each delayed by a random jitter
- Cancellation of pending runs on stop or termination signals
"""

import random
import signal
import logging
import threading
from typing import Any, Callable, Iterable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.executors.pool import ThreadPoolExecutor

from autobackup.config import Config, SCHEDULER_TIMEZONE, build_trigger
from autobackup.backup.executor import backup_task, restore_task
from autobackup.backup.sources import Source
from autobackup.backup.storage import Store


logger = logging.getLogger(__name__)

JOB_ID = 'autobackup_task'

Task = Callable[[Config], Any]


class Scheduler:
    """
    Runs a task once, or repeatedly on the configured schedule.

    Every scheduled run first waits a random number of seconds in
    [0, random_delay). stop() cancels runs that are still waiting; a run that
    already started is never interrupted. A trigger that fires while the
    previous run is still waiting or executing is skipped.
    """

    def __init__(self, config: Config, task: Task, rng: Optional[random.Random] = None):
        """
        Initialize scheduler.

        Args:
            config: Task configuration (schedule and jitter bound)
            task: Callable receiving the configuration
            rng: Random generator for the jitter (default: a new random.Random)
        """
        self.config = config
        self.task = task
        self._rng = rng or random.Random()
        self._quit = threading.Event()
        self._scheduler = None

    @property
    def max_delay(self) -> int:
        return max(self.config.random_delay, 1)

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self):
        """
        Start the task.

        Without a schedule the task runs here, synchronously, and its result
        is returned (exceptions propagate). Otherwise the schedule starts in
        the background and None is returned.

        Raises:
            RuntimeError: If the schedule is already running
        """
        if self.config.runs_once:
            logger.info("Running task directly")
            return self.task(self.config)

        if self.running:
            raise RuntimeError("Scheduler already running")

        if self.config.random_delay <= 0:
            logger.warning("Schedule random delay was set to a number <= 0, using 1 as default")

        self._quit.clear()

        executors = {
            'default': ThreadPoolExecutor(max_workers=1)
        }

        job_defaults = {
            'coalesce': True,  # Combine multiple pending instances into one
            'max_instances': 1,  # Only one instance of a job at a time
            'misfire_grace_time': 300  # 5 minutes grace period for misfires
        }

        self._scheduler = BackgroundScheduler(
            executors=executors,
            job_defaults=job_defaults,
            timezone=SCHEDULER_TIMEZONE
        )

        self._scheduler.add_job(
            func=self._fire,
            trigger=build_trigger(self.config.schedule),
            id=JOB_ID,
            name=f"Scheduled task ({self.config.schedule})",
            replace_existing=True
        )

        self._scheduler.start()
        logger.info(f"Starting scheduled task ({self.config.schedule})")

        job = self._scheduler.get_job(JOB_ID)
        next_run = getattr(job, 'next_run_time', None)
        if next_run:
            logger.info(f"Next run: {next_run.isoformat()}")

        return None

    def _fire(self):
        """Run one scheduled execution: jitter wait, then the task."""
        seconds = self._rng.randrange(self.max_delay)

        if seconds > 0:
            logger.info(f"Waiting for {seconds} seconds before starting scheduled job")
            if self._quit.wait(seconds):
                logger.info("Scheduled run cancelled")
                return

        logger.info("Running scheduled task")
        try:
            self.task(self.config)
        except Exception:
            logger.exception("Failed to run scheduled task")

    def stop(self):
        """
        Stop the schedule.

        Pending jitter waits are cancelled; an executing task runs to completion.
        """
        self._quit.set()

        if self.running:
            logger.info("Stopping scheduled task")
            self._scheduler.shutdown(wait=False)

    def wait(self, signals: Iterable[int] = (signal.SIGINT, signal.SIGTERM)):
        """
        Block until a termination signal is received or stop() is called, then stop.

        Must be called from the main thread.
        """
        received = threading.Event()

        def handle_signal(signum, frame):
            logger.info(f"Received signal {signum}")
            received.set()

        previous = {sig: signal.signal(sig, handle_signal) for sig in signals}

        try:
            while not self._quit.is_set():
                if received.wait(1):
                    break
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)

        self.stop()


def schedule_backup(config: Config, source: Source, store: Store, rng: Optional[random.Random] = None) -> Scheduler:
    """Create a scheduler that backs up `source` into `store`."""
    return Scheduler(config, lambda c: backup_task(c, source, store), rng=rng)


def schedule_restore(config: Config, source: Source, store: Store, rng: Optional[random.Random] = None) -> Scheduler:
    """Create a scheduler that restores `source` from `store`."""
    return Scheduler(config, lambda c: restore_task(c, source, store), rng=rng)
