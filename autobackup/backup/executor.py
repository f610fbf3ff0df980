"""
Backup and restore task orchestration.

Backup workflow:
1. Source produces a local artifact
2. Store persists it
3. Store prunes artifacts beyond the retention count

Restore workflow:
1. Pick the configured artifact, or the latest one in the store
2. Store retrieves it locally (released again when the task ends)
3. Source restores from it

Each stage failure is raised as a TaskError naming the stage and aborts the
remaining stages. A prune failure after a successful upload still fails the
task; the uploaded artifact is kept.
"""

import os
import logging

from autobackup.config import Config
from .sources import Source
from .storage import Store


logger = logging.getLogger(__name__)


class TaskError(Exception):
    """Raised when a stage of a backup or restore task fails."""

    def __init__(self, stage: str, message: str):
        super().__init__(message)
        self.stage = stage


class TaskRunner:
    """
    Runs backup and restore tasks for one source/store pair.
    """

    def __init__(self, config: Config, source: Source, store: Store):
        """
        Initialize task runner.

        Args:
            config: Task configuration (retention count, restore file)
            source: Data system to back up or restore
            store: Destination holding the artifacts
        """
        self.config = config
        self.source = source
        self.store = store

    def backup(self) -> str:
        """
        Execute a backup.

        Returns:
            Name of the stored artifact

        Raises:
            TaskError: If any stage fails
        """
        try:
            filepath = self.source.backup()
        except Exception as e:
            raise TaskError('backup', f"Source backup failed: {e}") from e

        logger.info(f"Backup saved to {filepath}")
        filename = os.path.basename(filepath)

        try:
            self.store.store(filepath, filename)
        except Exception as e:
            raise TaskError('store', f"Couldn't upload file to store: {e}") from e

        try:
            self.store.remove_older_backups(self.config.max_backups)
        except Exception as e:
            raise TaskError('prune', f"Couldn't remove old backups from store: {e}") from e

        logger.info(f"Backup completed successfully: {filename}")
        return filename

    def restore(self) -> str:
        """
        Execute a restore.

        Returns:
            Name of the restored artifact

        Raises:
            TaskError: If any stage fails
        """
        filename = self.config.restore_file

        if filename:
            logger.info(f"Restoring configured backup {filename}")
        else:
            try:
                filename = self.store.find_latest_backup()
            except Exception as e:
                raise TaskError('find_latest', f"Cannot find the latest backup: {e}") from e
            logger.info(f"Restoring latest backup {filename}")

        try:
            filepath = self.store.retrieve(filename)
        except Exception as e:
            raise TaskError('retrieve', f"Cannot download file {filename}: {e}") from e

        try:
            self.source.restore(filepath)
        except Exception as e:
            raise TaskError('restore', f"Source restore failed: {e}") from e
        finally:
            self.store.close()

        logger.info(f"Restore completed successfully: {filename}")
        return filename


def backup_task(config: Config, source: Source, store: Store) -> str:
    """Run one backup of `source` into `store`."""
    return TaskRunner(config, source, store).backup()


def restore_task(config: Config, source: Source, store: Store) -> str:
    """Restore `source` from the configured or latest artifact in `store`."""
    return TaskRunner(config, source, store).restore()
