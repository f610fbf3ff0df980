"""
External command execution for process-based sources.

CommandRunner runs one external program and optionally streams a file into
its stdin and/or its stdout into a file. Both directions are copied
concurrently so the child never blocks on a full, undrained pipe.
"""

import os
import shutil
import logging
import subprocess
from collections import namedtuple
from concurrent.futures import Future, ThreadPoolExecutor
from typing import BinaryIO, List, Mapping, Optional, Sequence


logger = logging.getLogger(__name__)

# Replacement for secret values in logged command lines
MASK = '********'

COPY_BUFSIZE = 64 * 1024


Credential = namedtuple('Credential', ['uid', 'gid', 'groups'], defaults=[()])
Credential.__doc__ = "User/group a child process is switched to when running as root."


class ProcessError(Exception):
    """Raised when an external command cannot be started or fails."""

    def __init__(self, message: str, command: str = ''):
        super().__init__(message)
        self.command = command


class ProcessExitError(ProcessError):
    """Raised when an external command exits with a nonzero code."""

    def __init__(self, command: str, returncode: int, stream_errors: Optional[List['StreamError']] = None):
        self.returncode = returncode
        self.stream_errors = list(stream_errors or [])

        message = f"{command} exited with code {returncode}"
        if self.stream_errors:
            message += '; ' + '; '.join(str(e) for e in self.stream_errors)

        super().__init__(message, command)


class StreamError(Exception):
    """Raised when copying data to or from a process pipe fails."""

    def __init__(self, direction: str, cause: BaseException):
        super().__init__(f"failed to copy process {direction}: {cause}")
        self.direction = direction
        self.cause = cause


def redact_args(args: Sequence[str], token: str) -> List[str]:
    """
    Hide a secret argument value before logging a command line.

    A token that does not start with '--' is a short option with an attached
    value ('-pSECRET', '-p=SECRET'); the first argument starting with it is
    replaced by token + mask. A '--long' token takes its value from the next
    argument, which is replaced by the mask.

    Args:
        args: Command arguments
        token: Option whose value must not be logged ('' disables redaction)

    Returns:
        New argument list safe for logging
    """
    args = list(args)
    if not token:
        return args

    if token.startswith('--'):
        for i, arg in enumerate(args):
            if arg == token:
                if i + 1 < len(args):
                    return args[:i + 1] + [MASK] + args[i + 2:]
                return args
        return args

    for i, arg in enumerate(args):
        if arg.startswith(token):
            return args[:i] + [token + MASK] + args[i + 1:]
    return args


def _completed() -> Future:
    future = Future()
    future.set_result(None)
    return future


class CommandRunner:
    """
    Runs one external command with optional stdin/stdout streaming.

    Configure once, then call run(). A runner has no per-process state and
    can be reused for several commands sharing the same settings.
    """

    def __init__(
        self,
        env: Optional[Mapping[str, str]] = None,
        input_file: Optional[BinaryIO] = None,
        output_file: Optional[BinaryIO] = None,
        credential: Optional[Credential] = None,
        redact: str = ''
    ):
        """
        Initialize command runner.

        Args:
            env: Environment overrides merged onto the current environment
            input_file: Readable binary stream fed to the process stdin
            output_file: Writable binary stream receiving the process stdout
            credential: User to run as (only applied when running as root)
            redact: Option whose value is masked in log output
        """
        self.env = dict(env or {})
        self.input_file = input_file
        self.output_file = output_file
        self.credential = credential
        self.redact = redact

    def _popen_kwargs(self, name: str) -> dict:
        kwargs = {}

        if self.env:
            environment = dict(os.environ)
            environment.update(self.env)
            kwargs['env'] = environment

        # Only switch user when running as root
        euid = os.geteuid()
        if euid == 0 and self.credential is not None:
            kwargs['user'] = self.credential.uid
            kwargs['group'] = self.credential.gid
            kwargs['extra_groups'] = list(self.credential.groups)
        elif euid != 0:
            logger.info(f"Not running as root, starting {name} with UID {euid}")

        return kwargs

    def run(self, name: str, *args: str):
        """
        Run a command and wait for it to finish.

        Args:
            name: Program path
            *args: Program arguments

        Raises:
            ProcessError: If the program cannot be started
            ProcessExitError: If it exits with a nonzero code
            StreamError: If copying stdin or stdout fails
        """
        command = [name, *args]
        kwargs = self._popen_kwargs(name)
        logger.info(f"Running {name} {' '.join(redact_args(args, self.redact))}".rstrip())

        if self.input_file is None and self.output_file is None:
            try:
                returncode = subprocess.call(command, **kwargs)
            except OSError as e:
                raise ProcessError(f"cannot start process {name}: {e}", name) from e
            if returncode != 0:
                raise ProcessExitError(name, returncode)
            return

        if self.output_file is not None:
            kwargs['stdout'] = subprocess.PIPE
            logger.info("Sending command stdout to file")
        if self.input_file is not None:
            kwargs['stdin'] = subprocess.PIPE
            logger.info("Sending file to command stdin")

        try:
            process = subprocess.Popen(command, **kwargs)
        except OSError as e:
            raise ProcessError(f"cannot start process {name}: {e}", name) from e

        with ThreadPoolExecutor(max_workers=2, thread_name_prefix='command-copy') as pool:
            if self.output_file is not None:
                done_write = pool.submit(self._copy_stdout, process)
            else:
                done_write = _completed()

            if self.input_file is not None:
                done_read = pool.submit(self._copy_stdin, process)
            else:
                done_read = _completed()

            write_error = done_write.exception()
            read_error = done_read.exception()

        returncode = process.wait()

        stream_errors = [e for e in (read_error, write_error) if e is not None]
        if returncode != 0:
            raise ProcessExitError(name, returncode, stream_errors)
        if read_error is not None:
            raise read_error
        if write_error is not None:
            raise write_error

    def _copy_stdin(self, process: subprocess.Popen):
        try:
            shutil.copyfileobj(self.input_file, process.stdin, COPY_BUFSIZE)
        except Exception as e:
            raise StreamError('stdin', e) from e
        finally:
            # EOF for the child
            try:
                process.stdin.close()
            except OSError:
                pass

    def _copy_stdout(self, process: subprocess.Popen):
        try:
            shutil.copyfileobj(process.stdout, self.output_file, COPY_BUFSIZE)
        except Exception as e:
            # Keep draining so the child is never stuck on a full pipe
            try:
                while process.stdout.read(COPY_BUFSIZE):
                    pass
            except (OSError, ValueError) as drain_error:
                logger.debug(f"Stopped draining process stdout: {drain_error}")
            raise StreamError('stdout', e) from e
        finally:
            process.stdout.close()
