"""
Source handlers for backup and restore operations.

Supports:
- TarballSource: Archive a local file or directory
- MySQLSource: Dump/restore with mysqldump and mysql
- PostgresSource: Dump/restore with pg_dump, pg_dumpall, pg_restore and psql
- ConsulSource: Consul snapshots

Every source writes one artifact named {prefix}-{YYYYMMDDHHMMSS}[.ext] to its
save directory on backup and consumes such an artifact on restore.
"""

import os
import gzip
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, BinaryIO, Iterator, List, Mapping, Optional

from autobackup.config import ConfigurationError, env_bool, env_str
from .command import CommandRunner, ProcessError, ProcessExitError, StreamError
from .compression import (
    CompressionError,
    create_tarball,
    extract_tarball,
    generate_filename,
    remove_directory_contents,
    tarball_read_mode
)


logger = logging.getLogger(__name__)

DEFAULT_SAVE_DIR = '/tmp/'


class SourceError(Exception):
    """Raised when a source backup or restore fails."""
    pass


class Source(ABC):
    """A data system that produces artifacts on backup and consumes them on restore."""

    @abstractmethod
    def backup(self) -> str:
        """
        Produce a local artifact.

        Returns:
            Path of the artifact

        Raises:
            SourceError: If the backup fails
        """

    @abstractmethod
    def restore(self, path: str):
        """
        Restore the data system from a local artifact.

        Raises:
            SourceError: If the restore fails
        """


@contextmanager
def open_artifact(path: str) -> Iterator[BinaryIO]:
    """Open an artifact for reading, decompressing .gz artifacts on the fly."""
    try:
        if path.endswith('.gz'):
            stream = gzip.open(path, 'rb')
        else:
            stream = open(path, 'rb')
    except OSError as e:
        raise SourceError(f"Cannot open file {path}: {e}") from e

    with stream:
        yield stream


def _remove_partial(path: str):
    if os.path.exists(path):
        try:
            os.remove(path)
        except OSError as e:
            logger.warning(f"Cannot remove partial artifact {path}: {e}")


class TarballSource(Source):
    """
    Archives a local file or directory.

    Restoring empties the target directory (the directory itself is kept)
    and unpacks the archive into its parent.
    """

    def __init__(
        self,
        path: str = './',
        file: str = '',
        name: str = '',
        compress: bool = True,
        save_dir: str = DEFAULT_SAVE_DIR
    ):
        """
        Initialize tarball source.

        Args:
            path: Directory to back up, or the directory holding `file`
            file: Optional single file inside `path`
            name: Artifact prefix (default: basename of the target)
            compress: Gzip the tarball
            save_dir: Directory where artifacts are written
        """
        self.path = path
        self.file = file
        self.name = name
        self.compress = compress
        self.save_dir = save_dir

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> 'TarballSource':
        """Build from TAR_FILE, TAR_PATH, TAR_COMPRESS and SAVEDIR."""
        options = {
            'file': env_str('TAR_FILE', '', environ),
            'path': env_str('TAR_PATH', './', environ),
            'compress': env_bool('TAR_COMPRESS', True, environ),
            'save_dir': env_str('SAVEDIR', DEFAULT_SAVE_DIR, environ),
        }
        options.update(overrides)
        return cls(**options)

    @property
    def target(self) -> str:
        if self.file:
            return os.path.join(self.path, self.file)
        return self.path

    def backup(self) -> str:
        target = self.target
        prefix = self.name or os.path.basename(os.path.abspath(target))

        archive_path = generate_filename(self.save_dir, f"{prefix}-backup") + '.tar'
        if self.compress:
            archive_path += '.gz'

        try:
            create_tarball(target, archive_path, self.compress)
        except CompressionError as e:
            raise SourceError(f"Cannot create tarball on {archive_path}: {e}") from e

        return archive_path

    def restore(self, path: str):
        if tarball_read_mode(path) is None:
            raise SourceError(f"Unsupported file extension: {os.path.basename(path)}")

        target = os.path.abspath(self.target)

        try:
            if os.path.isdir(target):
                remove_directory_contents(target)
            elif os.path.lexists(target):
                os.remove(target)
        except (CompressionError, OSError) as e:
            raise SourceError(f"Failed to empty directory contents before restoring: {e}") from e

        # The archive already contains the target itself, so unpack into its parent
        try:
            extract_tarball(path, os.path.dirname(target))
        except CompressionError as e:
            raise SourceError(str(e)) from e


def _closed_stdin_early(error: StreamError) -> bool:
    # A tool exiting before reading all its input breaks the stdin pipe
    return error.direction == 'stdin' and isinstance(error.cause, BrokenPipeError)


class _DatabaseSource(Source):
    """Shared connection settings and restore handling for database dumps."""

    default_prefix = ''

    def __init__(
        self,
        host: str = 'localhost',
        port: Any = '',
        user: str = '',
        password: str = '',
        database: str = '',
        options: str = '',
        compress: bool = False,
        save_dir: str = DEFAULT_SAVE_DIR,
        ignore_exit_code: bool = False,
        prefix: str = ''
    ):
        self.host = host
        self.port = str(port)
        self.user = user
        self.password = password
        self.database = database
        self.options = options
        self.compress = compress
        self.save_dir = save_dir
        self.ignore_exit_code = ignore_exit_code
        self.prefix = prefix or self.default_prefix

    def _extra_options(self) -> List[str]:
        return self.options.split()

    def _new_filename(self) -> str:
        return generate_filename(self.save_dir, self.prefix)

    def _run_dump(self, runner: CommandRunner, command: str, args: List[str], filepath: str):
        """Run a dump command, streaming stdout through gzip when compressing."""
        try:
            if filepath.endswith('.gz'):
                with gzip.open(filepath, 'wb') as writer:
                    runner.output_file = writer
                    runner.run(command, *args)
            else:
                runner.run(command, *args)
        except (ProcessError, StreamError, OSError) as e:
            _remove_partial(filepath)
            raise SourceError(f"Couldn't execute {command}: {e}") from e

    def _run_restore(self, runner: CommandRunner, command: str, args: List[str]):
        """Run a restore command, tolerating a nonzero exit code when configured."""
        try:
            runner.run(command, *args)
        except ProcessExitError as e:
            if self.ignore_exit_code and all(_closed_stdin_early(err) for err in e.stream_errors):
                logger.warning(f"Ignored exit code of restore process: {e}")
                return
            raise SourceError(f"Couldn't execute {command}: {e}") from e
        except (ProcessError, StreamError) as e:
            raise SourceError(f"Couldn't execute {command}: {e}") from e


class MySQLSource(_DatabaseSource):
    """Dumps and restores MySQL databases with mysqldump and mysql."""

    default_prefix = 'mysql-backup'

    def __init__(
        self,
        host: str = 'localhost',
        port: Any = '3306',
        user: str = 'root',
        password: str = '',
        database: str = '',
        options: str = '',
        compress: bool = False,
        save_dir: str = DEFAULT_SAVE_DIR,
        ignore_exit_code: bool = False,
        prefix: str = '',
        dump_cmd: str = '/usr/bin/mysqldump',
        restore_cmd: str = '/usr/bin/mysql'
    ):
        super().__init__(
            host=host, port=port, user=user, password=password, database=database,
            options=options, compress=compress, save_dir=save_dir,
            ignore_exit_code=ignore_exit_code, prefix=prefix
        )
        self.dump_cmd = dump_cmd
        self.restore_cmd = restore_cmd

    def base_args(self) -> List[str]:
        args = ['-h', self.host, '-P', self.port, '-u', self.user]

        if self.password:
            args.append('-p' + self.password)

        return args + self._extra_options()

    def backup(self) -> str:
        filepath = self._new_filename()
        args = self.base_args()

        if self.database:
            args += ['-B', self.database]
        else:
            args.append('--all-databases')

        if self.compress:
            filepath += '.sql.gz'
        else:
            filepath += '.sql'
            args += ['-r', filepath]

        runner = CommandRunner(redact='-p')
        self._run_dump(runner, self.dump_cmd, args, filepath)
        return filepath

    def restore(self, path: str):
        args = self.base_args()

        if self.database:
            args += ['-D', self.database]

        with open_artifact(path) as stream:
            runner = CommandRunner(input_file=stream, redact='-p')
            self._run_restore(runner, self.restore_cmd, args)


class PostgresSource(_DatabaseSource):
    """
    Dumps and restores PostgreSQL databases.

    A single database is dumped with pg_dump (optionally in custom format,
    restored with pg_restore); without a database everything is dumped with
    pg_dumpall. Plain SQL dumps are restored by piping them into psql.
    """

    default_prefix = 'postgres-backup'

    maintenance_database = 'postgres'

    terminate_query = (
        "SELECT pg_terminate_backend(pg_stat_activity.pid)\n"
        "FROM pg_stat_activity\n"
        "WHERE pg_stat_activity.datname = {name} AND pid <> pg_backend_pid();"
    )
    drop_query = 'DROP DATABASE {name};'
    create_query = 'CREATE DATABASE {name} OWNER {owner};'

    def __init__(
        self,
        host: str = 'localhost',
        port: Any = '5432',
        user: str = 'postgres',
        password: str = '',
        database: str = '',
        options: str = '',
        compress: bool = False,
        custom: bool = False,
        save_dir: str = DEFAULT_SAVE_DIR,
        ignore_exit_code: bool = False,
        drop: bool = False,
        owner: str = '',
        prefix: str = '',
        dump_cmd: str = '/usr/bin/pg_dump',
        dumpall_cmd: str = '/usr/bin/pg_dumpall',
        restore_cmd: str = '/usr/bin/pg_restore',
        psql_cmd: str = '/usr/bin/psql'
    ):
        super().__init__(
            host=host, port=port, user=user, password=password, database=database,
            options=options, compress=compress, save_dir=save_dir,
            ignore_exit_code=ignore_exit_code, prefix=prefix
        )
        if drop and not database:
            raise ConfigurationError("Dropping before restore requires a database name")

        self.custom = custom
        self.drop = drop
        self.owner = owner
        self.dump_cmd = dump_cmd
        self.dumpall_cmd = dumpall_cmd
        self.restore_cmd = restore_cmd
        self.psql_cmd = psql_cmd

    @property
    def custom_format(self) -> bool:
        # Custom format only applies to a single database
        return self.custom and bool(self.database)

    def connection_args(self) -> List[str]:
        return ['-h', self.host, '-p', self.port, '-U', self.user]

    def base_args(self) -> List[str]:
        args = self.connection_args()

        if self.database:
            args += ['-d', self.database]

        return args + self._extra_options()

    def _runner(self, **kwargs) -> CommandRunner:
        env = {'PGPASSWORD': self.password} if self.password else None
        return CommandRunner(env=env, **kwargs)

    def backup(self) -> str:
        filepath = self._new_filename()
        args = self.base_args()
        command = self.dump_cmd if self.database else self.dumpall_cmd

        if self.custom_format:
            filepath += '.dump'
            args += ['-f', filepath, '-Fc']
        elif not self.compress:
            filepath += '.sql'
            args += ['-f', filepath]
        else:
            filepath += '.sql.gz'

        self._run_dump(self._runner(), command, args, filepath)
        return filepath

    def restore(self, path: str):
        args = self.base_args()

        if self.custom_format:
            args.append(path)
            self._recreate_if_requested()
            self._run_restore(self._runner(), self.restore_cmd, args)
            return

        with open_artifact(path) as stream:
            self._recreate_if_requested()
            self._run_restore(self._runner(input_file=stream), self.psql_cmd, args)

    def _recreate_if_requested(self):
        if not self.drop:
            return

        logger.info(f"Recreating database {self.database}")
        try:
            self.recreate()
        except SourceError as e:
            raise SourceError(f"Couldn't recreate database: {e}") from e

    def recreate(self):
        """
        Terminate other connections, drop and create the database again.

        Each step runs only if the previous one succeeded.

        Raises:
            SourceError: Naming the step that failed
        """
        args = self.connection_args() + [self.maintenance_database]
        owner = self.owner or self.user

        steps = [
            ('terminate', self.terminate_query.format(name=_quote_literal(self.database))),
            ('drop', self.drop_query.format(name=_quote_identifier(self.database))),
            ('create', self.create_query.format(
                name=_quote_identifier(self.database),
                owner=_quote_identifier(owner)
            )),
        ]

        runner = self._runner()
        for step, query in steps:
            try:
                runner.run(self.psql_cmd, *args, '-c', query)
            except (ProcessError, StreamError) as e:
                raise SourceError(f"psql error on {step}: {e}") from e


def _quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def _quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


class ConsulSource(Source):
    """Saves and restores Consul snapshots."""

    def __init__(self, save_dir: str = DEFAULT_SAVE_DIR, consul_cmd: str = '/bin/consul', prefix: str = 'consul-backup'):
        self.save_dir = save_dir
        self.consul_cmd = consul_cmd
        self.prefix = prefix

    def backup(self) -> str:
        filepath = generate_filename(self.save_dir, self.prefix) + '.snap'

        try:
            CommandRunner().run(self.consul_cmd, 'snapshot', 'save', filepath)
        except (ProcessError, StreamError) as e:
            raise SourceError(f"Couldn't execute {self.consul_cmd}: {e}") from e

        return filepath

    def restore(self, path: str):
        try:
            CommandRunner().run(self.consul_cmd, 'snapshot', 'restore', path)
        except (ProcessError, StreamError) as e:
            raise SourceError(f"Couldn't execute consul restore: {e}") from e
