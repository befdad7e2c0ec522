#!/usr/bin/env python3
"""Tests for common.py - subprocess helpers.

Tests verify:
1. run_command execution and error handling
2. stream_command capture, echo, on_start and timeout behavior
"""

import io
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from common import PhaseResult, run_command, stream_command


class TestRunCommand:
    """Test run_command utility."""

    def test_returns_success_tuple(self):
        """Should return (returncode, stdout, stderr) on success."""
        rc, stdout, stderr = run_command(['echo', 'hello'])
        assert rc == 0
        assert 'hello' in stdout
        assert stderr == ''

    def test_returns_failure_tuple(self):
        rc, stdout, stderr = run_command(['false'])
        assert rc != 0

    def test_respects_cwd(self, tmp_path):
        (tmp_path / 'marker.txt').write_text('found')
        rc, stdout, stderr = run_command(['cat', 'marker.txt'], cwd=tmp_path)
        assert rc == 0
        assert 'found' in stdout

    def test_timeout_returns_error(self):
        rc, stdout, stderr = run_command(['sleep', '5'], timeout=1)
        assert rc == -1
        assert 'timed out' in stderr

    def test_missing_binary(self):
        rc, stdout, stderr = run_command(['definitely-not-a-binary-xyz'])
        assert rc == -1
        assert stderr


class TestStreamCommand:
    """Test stream_command utility."""

    def test_combines_stdout_and_stderr(self):
        rc, output = stream_command(['sh', '-c', 'echo out; echo err >&2'])
        assert rc == 0
        assert 'out' in output
        assert 'err' in output

    def test_nonzero_exit(self):
        rc, output = stream_command(['sh', '-c', 'echo failing; exit 3'])
        assert rc == 3
        assert 'failing' in output

    def test_echo_writes_lines(self):
        stream = io.StringIO()
        rc, output = stream_command(['printf', 'a\\nb\\n'], echo=True, stream=stream)
        assert rc == 0
        assert stream.getvalue() == 'a\nb\n'
        assert output == 'a\nb\n'

    def test_quiet_by_default(self):
        stream = io.StringIO()
        stream_command(['echo', 'hidden'], stream=stream)
        assert stream.getvalue() == ''

    def test_on_start_receives_process(self):
        seen = []
        stream_command(['true'], on_start=seen.append)
        assert len(seen) == 1
        assert hasattr(seen[0], 'send_signal')

    def test_missing_binary(self):
        rc, output = stream_command(['definitely-not-a-binary-xyz'])
        assert rc == -1

    def test_timeout_kills_child(self):
        rc, output = stream_command(['sleep', '5'], timeout=0.5)
        assert rc == -1
        assert 'timed out' in output

    def test_undecodable_output_replaced(self):
        rc, output = stream_command(['sh', '-c', "printf 'ok\\n\\377\\n'"])
        assert rc == 0
        assert 'ok' in output
        assert '�' in output

    def test_child_killed_when_reading_fails(self):
        class BrokenStream(io.StringIO):
            def write(self, s):
                raise OSError('stream closed')

        seen = []
        with pytest.raises(OSError, match='stream closed'):
            stream_command(['sh', '-c', 'echo x; sleep 5'], echo=True,
                           stream=BrokenStream(), on_start=seen.append)
        assert seen[0].poll() is not None


class TestPhaseResult:
    """Test PhaseResult defaults."""

    def test_defaults(self):
        result = PhaseResult(success=True)
        assert result.message == ''
        assert result.returncode == 0
        assert result.outputs == {}
