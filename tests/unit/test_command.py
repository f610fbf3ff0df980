"""
Unit tests for command execution (autobackup/backup/command.py).

Tests CommandRunner streaming, error priority and argument redaction.
Child processes are Python one-liners run with the current interpreter.
"""

import io
import os
import sys
import logging
from unittest.mock import MagicMock, patch

import pytest

from autobackup.backup.command import (
    CommandRunner,
    Credential,
    ProcessError,
    ProcessExitError,
    StreamError,
    redact_args,
    MASK
)


PYTHON = sys.executable

ECHO_STDIN = 'import sys, shutil; shutil.copyfileobj(sys.stdin.buffer, sys.stdout.buffer)'


class FailingWriter(io.RawIOBase):
    """Writable stream that fails on every write."""

    def writable(self):
        return True

    def write(self, data):
        raise OSError("disk full")


class FailingReader(io.RawIOBase):
    """Readable stream that fails on the first read."""

    def readable(self):
        return True

    def readinto(self, buffer):
        raise OSError("read error")


class TestRedactArgs:
    """Test redact_args for masking secrets in logged command lines."""

    def test_short_token_attached_value(self):
        """Test short token with attached value is masked."""
        result = redact_args(['--foo', '-b=1234', '--baz'], '-b')

        assert result == ['--foo', '-b' + MASK, '--baz']
        assert MASK == '********'

    def test_short_token_mysql_password(self):
        """Test mysql style -pSECRET is masked."""
        args = ['-h', 'db', '-u', 'root', '-psecret', '--single-transaction']

        result = redact_args(args, '-p')

        assert 'secret' not in ' '.join(result)
        assert result[4] == '-p********'
        assert result[5] == '--single-transaction'

    def test_long_token_separate_value(self):
        """Test long token masks the following argument."""
        args = ['--foo', '--bar', '1234', '--baz']

        result = redact_args(args, '--bar')

        assert '1234' not in result
        assert result == ['--foo', '--bar', MASK, '--baz']

    def test_absent_token_unchanged(self):
        """Test absent tokens leave args unchanged."""
        long_args = ['--foo', '--bar', '1234', '--baz']
        short_args = ['--foo', '-b=1234', '--baz']

        assert redact_args(long_args, '--none') == long_args
        assert redact_args(short_args, '-c') == short_args

    def test_empty_token_unchanged(self):
        """Test empty token disables redaction."""
        args = ['--foo', '--bar', '1234', '--baz']

        assert redact_args(args, '') == args

    def test_does_not_modify_input(self):
        """Test the original list is left untouched."""
        args = ['-psecret']

        redact_args(args, '-p')

        assert args == ['-psecret']


class TestCommandRunnerWithoutStreams:
    """Test CommandRunner when the child inherits the standard streams."""

    def test_run_success(self):
        """Test successful command returns normally."""
        CommandRunner().run(PYTHON, '-c', 'pass')

    def test_run_nonzero_exit(self):
        """Test nonzero exit raises ProcessExitError with the code."""
        with pytest.raises(ProcessExitError) as exc_info:
            CommandRunner().run(PYTHON, '-c', 'import sys; sys.exit(3)')

        assert exc_info.value.returncode == 3
        assert exc_info.value.command == PYTHON
        assert exc_info.value.stream_errors == []

    def test_run_missing_program(self, tmp_path):
        """Test spawn failure raises ProcessError, not an exit error."""
        missing = str(tmp_path / 'does-not-exist')

        with pytest.raises(ProcessError) as exc_info:
            CommandRunner().run(missing)

        assert not isinstance(exc_info.value, ProcessExitError)
        assert 'cannot start process' in str(exc_info.value)

    def test_env_overrides_are_merged(self):
        """Test env overrides are added to the inherited environment."""
        script = (
            "import os, sys; "
            "sys.exit(0 if os.environ.get('AUTOBACKUP_TEST') == 'value' and 'PATH' in os.environ else 1)"
        )

        CommandRunner(env={'AUTOBACKUP_TEST': 'value'}).run(PYTHON, '-c', script)

    def test_logged_command_is_redacted(self, caplog):
        """Test secrets never appear in the logged command line."""
        caplog.set_level(logging.INFO, logger='autobackup')

        CommandRunner(redact='-p').run(PYTHON, '-c', 'pass', '-psecret')

        assert 'secret' not in caplog.text
        assert '-p********' in caplog.text


class TestCommandRunnerStreaming:
    """Test CommandRunner with stdin/stdout streaming."""

    def test_output_stream(self):
        """Test child stdout is copied into the output file."""
        output = io.BytesIO()

        CommandRunner(output_file=output).run(
            PYTHON, '-c', "import sys; sys.stdout.write('hello')"
        )

        assert output.getvalue() == b'hello'

    def test_input_stream(self):
        """Test input file is fed to child stdin and closed for EOF."""
        data = b'x' * 1000
        script = f"import sys; sys.exit(0 if len(sys.stdin.buffer.read()) == {len(data)} else 1)"

        CommandRunner(input_file=io.BytesIO(data)).run(PYTHON, '-c', script)

    def test_large_input_and_output_do_not_deadlock(self):
        """Test transfers larger than the pipe buffer in both directions complete."""
        data = os.urandom(4 * 1024 * 1024)
        output = io.BytesIO()

        CommandRunner(input_file=io.BytesIO(data), output_file=output).run(
            PYTHON, '-c', ECHO_STDIN
        )

        assert output.getvalue() == data

    def test_output_stream_failure(self):
        """Test failing output writer raises StreamError and the child still finishes."""
        script = "import sys; sys.stdout.buffer.write(b'x' * (1024 * 1024))"

        with pytest.raises(StreamError) as exc_info:
            CommandRunner(output_file=FailingWriter()).run(PYTHON, '-c', script)

        assert exc_info.value.direction == 'stdout'
        assert 'disk full' in str(exc_info.value)

    def test_input_stream_failure(self):
        """Test failing input reader raises StreamError for stdin."""
        script = "import sys; sys.stdin.buffer.read()"

        with pytest.raises(StreamError) as exc_info:
            CommandRunner(input_file=FailingReader()).run(PYTHON, '-c', script)

        assert exc_info.value.direction == 'stdin'

    def test_exit_error_takes_priority_over_stream_error(self):
        """Test exit error is raised first, with the copy error attached."""
        script = "import sys; sys.stdout.buffer.write(b'x' * (1024 * 1024)); sys.exit(2)"

        with pytest.raises(ProcessExitError) as exc_info:
            CommandRunner(output_file=FailingWriter()).run(PYTHON, '-c', script)

        assert exc_info.value.returncode == 2
        assert len(exc_info.value.stream_errors) == 1
        assert exc_info.value.stream_errors[0].direction == 'stdout'

    def test_nonzero_exit_with_streams(self):
        """Test nonzero exit without stream errors has no attached errors."""
        output = io.BytesIO()

        with pytest.raises(ProcessExitError) as exc_info:
            CommandRunner(output_file=output).run(
                PYTHON, '-c', "import sys; sys.stdout.write('partial'); sys.exit(5)"
            )

        assert exc_info.value.returncode == 5
        assert exc_info.value.stream_errors == []
        assert output.getvalue() == b'partial'

    def test_output_read_failure_is_stream_error(self):
        """Test a failing read from the process pipe is reported as StreamError."""
        process = MagicMock()
        process.stdout = FailingReader()
        runner = CommandRunner(output_file=io.BytesIO())

        with pytest.raises(StreamError) as exc_info:
            runner._copy_stdout(process)

        assert exc_info.value.direction == 'stdout'
        assert 'read error' in str(exc_info.value)
        assert process.stdout.closed

    def test_missing_program_with_streams(self, tmp_path):
        """Test spawn failure with streams configured raises ProcessError."""
        with pytest.raises(ProcessError):
            CommandRunner(output_file=io.BytesIO()).run(str(tmp_path / 'missing'))


class TestCommandRunnerCredential:
    """Test privilege downgrade handling."""

    @patch('autobackup.backup.command.subprocess.call', return_value=0)
    @patch('autobackup.backup.command.os.geteuid', return_value=0)
    def test_credential_applied_as_root(self, mock_geteuid, mock_call):
        """Test credential is passed to the child when running as root."""
        runner = CommandRunner(credential=Credential(uid=70, gid=70, groups=(5,)))

        runner.run('/usr/bin/pg_dump')

        kwargs = mock_call.call_args[1]
        assert kwargs['user'] == 70
        assert kwargs['group'] == 70
        assert kwargs['extra_groups'] == [5]

    @patch('autobackup.backup.command.subprocess.call', return_value=0)
    @patch('autobackup.backup.command.os.geteuid', return_value=1000)
    def test_credential_ignored_when_not_root(self, mock_geteuid, mock_call, caplog):
        """Test non-root callers run the command as themselves and log it."""
        caplog.set_level(logging.INFO, logger='autobackup')
        runner = CommandRunner(credential=Credential(uid=70, gid=70))

        runner.run('/usr/bin/pg_dump')

        kwargs = mock_call.call_args[1]
        assert 'user' not in kwargs
        assert 'group' not in kwargs
        assert 'Not running as root' in caplog.text
        assert 'UID 1000' in caplog.text

    @patch('autobackup.backup.command.subprocess.call', return_value=0)
    @patch('autobackup.backup.command.os.geteuid', return_value=0)
    def test_no_credential_as_root(self, mock_geteuid, mock_call):
        """Test root without credential runs as root."""
        CommandRunner().run('/usr/bin/pg_dump')

        assert 'user' not in mock_call.call_args[1]
