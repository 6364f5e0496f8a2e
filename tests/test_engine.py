#!/usr/bin/env python3
"""Tests for engine/tofu.py - apply engine wrapper."""

import sys
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest

from engine.tofu import ApplyEngine, EngineResult, parse_state_show
from errors import StateQueryError

STATE_SHOW_OUTPUT = '''# module.vm["web1"].null_resource.vm[0]:
resource "null_resource" "vm" {
    id       = "4721983475"
    triggers = {
        "cores"     = "2"
        "force_run" = "1700000000"
        "network"   = "model=virtio,bridge=vmbr0"
        "vmid"      = "100"
    }
}
'''


@pytest.fixture
def engine(tmp_path):
    return ApplyEngine(tmp_path, binary='tofu', timeouts={'plan': 42})


class TestEngineResult:
    """Test diagnostic detail extraction."""

    def test_detail_prefers_stderr(self):
        result = EngineResult(ok=False, rc=1, stdout='out', stderr='\nerr1\n\nerr2\n')
        assert result.detail() == 'err1\nerr2'

    def test_detail_tail(self):
        result = EngineResult(ok=False, rc=1, stdout='\n'.join(str(i) for i in range(10)))
        assert result.detail(lines=2) == '8\n9'


class TestCommands:
    """Test the commands the engine runs."""

    @patch('engine.tofu.run_command', return_value=(0, '', ''))
    def test_init(self, mock_run, engine, tmp_path):
        result = engine.init()
        cmd = mock_run.call_args[0][0]
        assert cmd == ['tofu', 'init', '-upgrade', '-input=false', '-no-color']
        assert mock_run.call_args[1]['cwd'] == tmp_path
        assert mock_run.call_args[1]['timeout'] == 300
        assert mock_run.call_args[1]['env']['TF_IN_AUTOMATION'] == '1'
        assert result.ok is True

    @patch('engine.tofu.run_command', return_value=(2, 'Plan: 1 to add', ''))
    def test_plan_changes(self, mock_run, engine, tmp_path):
        result = engine.plan(tmp_path / 'vars.json', tmp_path / 'out.plan')
        cmd = mock_run.call_args[0][0]
        assert '-detailed-exitcode' in cmd
        assert f'-var-file={tmp_path / "vars.json"}' in cmd
        assert f'-out={tmp_path / "out.plan"}' in cmd
        assert mock_run.call_args[1]['timeout'] == 42
        assert result.outcome == 'changes'
        assert result.ok is True
        assert result.plan_file == tmp_path / 'out.plan'

    @patch('engine.tofu.run_command', return_value=(0, 'No changes.', ''))
    def test_plan_noop(self, _mock_run, engine, tmp_path):
        result = engine.plan(tmp_path / 'v.json', tmp_path / 'p')
        assert result.outcome == 'noop'
        assert result.ok is True

    @patch('engine.tofu.run_command', return_value=(1, '', 'Error: Invalid reference'))
    def test_plan_error(self, _mock_run, engine, tmp_path):
        result = engine.plan(tmp_path / 'v.json', tmp_path / 'p')
        assert result.outcome == 'error'
        assert result.ok is False
        assert result.locked is False

    @patch('engine.tofu.run_command',
           return_value=(1, '', 'Error: Error acquiring the state lock\nLock Info: ID: abc'))
    def test_lock_detected(self, _mock_run, engine, tmp_path):
        result = engine.plan(tmp_path / 'v.json', tmp_path / 'p')
        assert result.locked is True
        assert result.ok is False

    @patch('engine.tofu.run_command', return_value=(-1, '', 'Command timed out after 1800s'))
    def test_timeout_detected(self, _mock_run, engine, tmp_path):
        result = engine.apply(tmp_path / 'p')
        assert result.timed_out is True
        assert result.ok is False

    @patch('engine.tofu.run_command', return_value=(0, '', ''))
    def test_apply_uses_plan_file(self, mock_run, engine, tmp_path):
        engine.apply(tmp_path / 'p')
        cmd = mock_run.call_args[0][0]
        assert cmd[-2:] == ['-auto-approve', str(tmp_path / 'p')]

    def test_terraform_binary(self, tmp_path):
        with patch('engine.tofu.run_command', return_value=(0, '', '')) as mock_run:
            ApplyEngine(tmp_path, binary='terraform').validate()
        assert mock_run.call_args[0][0][:2] == ['terraform', 'validate']


class TestStateQueries:
    """Test state list and show."""

    @patch('engine.tofu.run_command', return_value=(
        0, 'module.vm["web1"].null_resource.vm[0]\n\nmodule.storage["nfs1"].null_resource.storage[0]\n', ''))
    def test_state_list(self, _mock_run, engine):
        assert engine.state_list() == [
            'module.vm["web1"].null_resource.vm[0]',
            'module.storage["nfs1"].null_resource.storage[0]',
        ]

    @patch('engine.tofu.run_command', return_value=(1, '', 'No state file was found!'))
    def test_state_list_without_state(self, _mock_run, engine):
        assert engine.state_list() == []

    @patch('engine.tofu.run_command', return_value=(1, '', 'Error: Failed to load state: permission denied'))
    def test_state_list_failure_raises(self, _mock_run, engine):
        with pytest.raises(StateQueryError, match='permission denied'):
            engine.state_list()

    @patch('engine.tofu.run_command', return_value=(0, STATE_SHOW_OUTPUT, ''))
    def test_state_show(self, mock_run, engine):
        attrs = engine.state_show('module.vm["web1"].null_resource.vm[0]')
        assert mock_run.call_args[0][0][-1] == 'module.vm["web1"].null_resource.vm[0]'
        assert attrs['vmid'] == '100'
        assert attrs['force_run'] == '1700000000'

    @patch('engine.tofu.run_command', return_value=(1, '', 'No instance found'))
    def test_state_show_failure_raises(self, _mock_run, engine):
        with pytest.raises(StateQueryError):
            engine.state_show('module.vm["x"].null_resource.vm[0]')


class TestParseStateShow:
    """Test trigger extraction from state show output."""

    def test_only_triggers_collected(self):
        attrs = parse_state_show(STATE_SHOW_OUTPUT)
        assert attrs == {
            'cores': '2',
            'force_run': '1700000000',
            'network': 'model=virtio,bridge=vmbr0',
            'vmid': '100',
        }

    def test_empty_output(self):
        assert parse_state_show('') == {}

    def test_empty_value(self):
        output = 'resource "null_resource" "vm" {\n    triggers = {\n        "ostemplate" = ""\n    }\n}\n'
        assert parse_state_show(output) == {'ostemplate': ''}
