#!/usr/bin/env python3
"""Tests for common.py - shared utilities.

Tests verify:
1. run_command execution and error handling
2. run_ssh command construction
3. Timeout detection
"""

import subprocess
import sys
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from common import (
    SSH_TRANSPORT_ERROR,
    TIMEOUT_RC,
    StageResult,
    is_timeout,
    run_command,
    run_ssh,
)


class TestRunCommand:
    """Test run_command utility."""

    def test_returns_success_tuple(self):
        """Should return (returncode, stdout, stderr) on success."""
        rc, stdout, stderr = run_command(['echo', 'hello'])
        assert rc == 0
        assert 'hello' in stdout
        assert stderr == ''

    def test_returns_failure_tuple(self):
        rc, _, _ = run_command(['false'])
        assert rc != 0

    def test_captures_stderr(self):
        """Should capture stderr."""
        rc, stdout, stderr = run_command(['sh', '-c', 'echo error >&2'])
        assert 'error' in stderr

    def test_respects_cwd(self, tmp_path):
        rc, stdout, _ = run_command(['pwd'], cwd=tmp_path)
        assert stdout.strip() == str(tmp_path)

    def test_timeout_returns_sentinel(self):
        """Should return -1 and a timed-out message on timeout."""
        with patch('common.subprocess.run', side_effect=subprocess.TimeoutExpired(['x'], 5)):
            rc, stdout, stderr = run_command(['x'], timeout=5)
        assert rc == TIMEOUT_RC
        assert stderr == 'Command timed out after 5s'
        assert is_timeout(rc, stderr)

    def test_missing_binary(self):
        """Missing executable is reported, not raised."""
        rc, _, stderr = run_command(['/nonexistent/tofu', 'version'])
        assert rc == TIMEOUT_RC
        assert stderr
        assert not is_timeout(rc, stderr)


class TestRunSsh:
    """Test run_ssh command construction."""

    @patch('common.run_command', return_value=(0, 'ok', ''))
    def test_basic_command(self, mock_run):
        run_ssh('pve1', 'pvecm status', user='admin', timeout=20)
        cmd = mock_run.call_args[0][0]
        assert cmd[0] == 'ssh'
        assert 'BatchMode=yes' in cmd
        assert 'ConnectTimeout=5' in cmd
        assert cmd[-2:] == ['admin@pve1', 'pvecm status']
        assert mock_run.call_args[1]['timeout'] == 20

    @patch('common.run_command', return_value=(0, '', ''))
    def test_identity_file(self, mock_run):
        run_ssh('pve1', 'true', identity_file=Path('/keys/id_ed25519'), connect_timeout=2)
        cmd = mock_run.call_args[0][0]
        assert cmd[cmd.index('-i') + 1] == '/keys/id_ed25519'
        assert 'ConnectTimeout=2' in cmd

    @patch('common.run_command', return_value=(SSH_TRANSPORT_ERROR, '', 'Connection refused'))
    def test_transport_error_passed_through(self, _mock_run):
        rc, _, err = run_ssh('pve1', 'true')
        assert rc == 255
        assert err == 'Connection refused'


def test_stage_result_defaults():
    result = StageResult(success=True)
    assert result.message == ''
    assert result.details == {}
