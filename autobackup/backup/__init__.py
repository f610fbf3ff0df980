"""
Backup module for autobackup.

This module handles the core backup functionality including:
- External command execution (streaming into and out of processes)
- Sources (tarball, MySQL, PostgreSQL, Consul)
- Stores (local filesystem and S3)
- Retention policy enforcement
- Backup/restore task orchestration
"""

from .command import CommandRunner, Credential, ProcessError, ProcessExitError, StreamError
from .sources import (
    Source,
    TarballSource,
    MySQLSource,
    PostgresSource,
    ConsulSource,
    SourceError
)
from .storage import Store, FilesystemStore, S3Store, StoreError, BackupNotFoundError
from .executor import TaskRunner, TaskError, backup_task, restore_task

__all__ = [
    'CommandRunner',
    'Credential',
    'ProcessError',
    'ProcessExitError',
    'StreamError',
    'Source',
    'TarballSource',
    'MySQLSource',
    'PostgresSource',
    'ConsulSource',
    'SourceError',
    'Store',
    'FilesystemStore',
    'S3Store',
    'StoreError',
    'BackupNotFoundError',
    'TaskRunner',
    'TaskError',
    'backup_task',
    'restore_task'
]
