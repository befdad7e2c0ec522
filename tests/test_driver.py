"""Tests for driver module (terraform/tofu phases and output parsing)."""

import json
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from catalog import resolve
from driver import TFVARS_FILE, TerraformDriver, parse_outputs
from errors import SubprocessApplyFailed, SubprocessInitializeFailed
from variables import RunConfiguration, build
from workspace import Workspace


APPLY_STDOUT = """\
aws_instance.fuoco: Creating...
aws_instance.fuoco: Creation complete after 12s [id=i-0abc]

Apply complete! Resources: 3 added, 0 changed, 0 destroyed.

Outputs:

public_ip = "203.0.113.7"
region = "eu-west-1"
"""


@pytest.fixture
def workspace(tmp_path):
    path = tmp_path / 'ws'
    path.mkdir()
    return Workspace(path=path, key='k', provider='aws', region='eu-west-1')


@pytest.fixture
def aws_variables(home):
    config = RunConfiguration.create('aws', region='eu-west-1', inbound_rules=['tcp:22', 'tcp:80'])
    return build(config, resolve('aws'), environ={}, home=home)


class TestParseOutputs:
    """Tests for parse_outputs()."""

    def test_quoted_values(self):
        assert parse_outputs(APPLY_STDOUT) == {'public_ip': '203.0.113.7', 'region': 'eu-west-1'}

    def test_unquoted_values(self):
        stdout = "Outputs:\n\ncount = 3\nenabled = true\n"
        assert parse_outputs(stdout) == {'count': '3', 'enabled': 'true'}

    def test_multiline_value(self):
        stdout = 'Outputs:\n\nips = [\n  "10.0.0.1",\n  "10.0.0.2",\n]\nregion = "fsn1"\n'
        outputs = parse_outputs(stdout)
        assert outputs['ips'].startswith('[')
        assert '"10.0.0.2",' in outputs['ips']
        assert outputs['ips'].rstrip().endswith(']')
        assert outputs['region'] == 'fsn1'

    def test_escaped_string(self):
        assert parse_outputs('Outputs:\n\nmsg = "say \\"hi\\""\n') == {'msg': 'say "hi"'}

    def test_ansi_colors_stripped(self):
        stdout = '\x1b[0m\x1b[1m\x1b[32mOutputs:\x1b[0m\n\npublic_ip = "198.51.100.1"\n'
        assert parse_outputs(stdout) == {'public_ip': '198.51.100.1'}

    def test_heredoc_value(self):
        stdout = (
            'Outputs:\n\n'
            'cloud_init = <<EOT\n'
            '#!/bin/sh\n'
            'region = "not-an-output"\n'
            '\n'
            'echo [done\n'
            'EOT\n'
            'public_ip = "203.0.113.7"\n'
        )
        assert parse_outputs(stdout) == {
            'cloud_init': '#!/bin/sh\nregion = "not-an-output"\n\necho [done\n',
            'public_ip': '203.0.113.7',
        }

    def test_indented_heredoc_value(self):
        stdout = 'Outputs:\n\nmotd = <<-EOT\n    hello\n      world\n  EOT\nregion = "fsn1"\n'
        assert parse_outputs(stdout) == {'motd': 'hello\n  world\n', 'region': 'fsn1'}

    def test_no_outputs_block(self):
        assert parse_outputs('Apply complete! Resources: 0 added.\n') == {}


class TestInitialize:
    """Tests for TerraformDriver.initialize()."""

    def test_success(self, workspace):
        driver = TerraformDriver(binary='tofu')
        with patch('driver.stream_command', return_value=(0, 'Initialized')) as mock_cmd:
            result = driver.initialize(workspace)

        assert result.success is True
        cmd = mock_cmd.call_args[0][0]
        assert cmd == ['tofu', 'init', '-input=false', '-no-color']
        assert mock_cmd.call_args.kwargs['cwd'] == workspace.path
        assert mock_cmd.call_args.kwargs['env']['TF_IN_AUTOMATION'] == '1'

    def test_failure_raises(self, workspace):
        driver = TerraformDriver()
        with patch('driver.stream_command', return_value=(1, 'Error: provider not found')):
            with pytest.raises(SubprocessInitializeFailed) as exc_info:
                driver.initialize(workspace)
        assert exc_info.value.returncode == 1
        assert exc_info.value.code == 'E300'
        assert 'provider not found' in exc_info.value.output

    def test_on_start_forwarded(self, workspace):
        driver = TerraformDriver()
        callback = object()
        with patch('driver.stream_command', return_value=(0, '')) as mock_cmd:
            driver.initialize(workspace, on_start=callback)
        assert mock_cmd.call_args.kwargs['on_start'] is callback


class TestApply:
    """Tests for TerraformDriver.apply()."""

    def test_success_parses_outputs(self, workspace, aws_variables):
        driver = TerraformDriver()
        with patch('driver.stream_command', return_value=(0, APPLY_STDOUT)) as mock_cmd:
            outcome = driver.apply(workspace, aws_variables)

        assert outcome.public_ip == '203.0.113.7'
        assert outcome.outputs['region'] == 'eu-west-1'
        cmd = mock_cmd.call_args[0][0]
        assert cmd[:3] == ['terraform', 'apply', '-auto-approve']
        assert f'-var-file={TFVARS_FILE}' in cmd

    def test_writes_tfvars(self, workspace, aws_variables):
        driver = TerraformDriver()
        with patch('driver.stream_command', return_value=(0, APPLY_STDOUT)):
            driver.apply(workspace, aws_variables)

        tfvars = json.loads((workspace.path / TFVARS_FILE).read_text())
        assert tfvars['region'] == 'eu-west-1'
        assert tfvars['inbound_rules'] == [
            {'protocol': 'tcp', 'port_number': 22},
            {'protocol': 'tcp', 'port_number': 80},
        ]

    def test_failure_logs_output_and_raises(self, workspace, aws_variables, caplog):
        driver = TerraformDriver()
        with patch('driver.stream_command', return_value=(1, 'Error: quota exceeded')):
            with pytest.raises(SubprocessApplyFailed) as exc_info:
                driver.apply(workspace, aws_variables)

        assert exc_info.value.code == 'E301'
        assert 'quota exceeded' in caplog.text

    def test_sensitive_tfvars_permissions(self, workspace, home):
        config = RunConfiguration.create('hetzner', region='fsn1', extras={'hcloud_token': 'secret'})
        variables = build(config, resolve('hetzner'), environ={}, home=home)
        path = TerraformDriver().write_tfvars(workspace, variables)
        assert path.stat().st_mode & 0o777 == 0o600


class TestDestroy:
    """Tests for TerraformDriver.destroy()."""

    def test_success(self, workspace, aws_variables):
        driver = TerraformDriver()
        with patch('driver.stream_command', return_value=(0, 'Destroy complete!')) as mock_cmd:
            result = driver.destroy(workspace, aws_variables)

        assert result.success is True
        assert mock_cmd.call_args[0][0][:3] == ['terraform', 'destroy', '-auto-approve']

    def test_failure_does_not_raise(self, workspace, aws_variables):
        driver = TerraformDriver()
        with patch('driver.stream_command', return_value=(1, 'Error: timeout')):
            result = driver.destroy(workspace, aws_variables)

        assert result.success is False
        assert result.returncode == 1
        assert 'timeout' in result.output

    def test_unexpected_error_does_not_raise(self, workspace, aws_variables):
        driver = TerraformDriver()
        with patch('driver.stream_command', side_effect=RuntimeError('boom')):
            result = driver.destroy(workspace, aws_variables)

        assert result.success is False
        assert result.returncode == -1
        assert 'boom' in result.message
