"""
Ready-made task assemblies.

A recipe builds the configuration, a source and a store, hands them to a
scheduler and starts it.
"""

import logging
from typing import Mapping, Optional

from autobackup.config import Config
from autobackup.backup.sources import TarballSource
from autobackup.backup.storage import S3Store
from autobackup.scheduler import Scheduler, schedule_backup


logger = logging.getLogger(__name__)


def file_backup(file_name: str, environ: Optional[Mapping[str, str]] = None) -> Scheduler:
    """
    Back up a single file to S3.

    Task settings (SCHEDULE, MAX_BACKUPS, ...), the tarball location
    (TAR_PATH, SAVEDIR, ...) and the S3 destination (S3_BUCKET, ...) are read
    from the environment.

    Args:
        file_name: File to archive, relative to TAR_PATH
        environ: Environment mapping (default: os.environ)

    Returns:
        The started scheduler. With an empty schedule the backup has already
        run when this returns.

    Raises:
        ConfigurationError: If the settings are invalid; nothing is scheduled
    """
    config = Config.from_env(environ)
    source = TarballSource.from_env(environ, file=file_name)
    store = S3Store.from_env(environ)

    scheduler = schedule_backup(config, source, store)
    scheduler.start()

    logger.info(f"Backup of {source.target} scheduled ({config.schedule or 'once'})")
    return scheduler
