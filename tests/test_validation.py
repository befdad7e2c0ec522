"""Tests for validation module (pre-flight checks)."""

import sys
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from catalog import resolve
from validation import (
    format_preflight_errors,
    run_preflight,
    validate_binary,
    validate_credentials,
    validate_template_bundle,
)


class TestValidateBinary:
    """Test validate_binary()."""

    def test_not_on_path(self):
        with patch('validation.shutil.which', return_value=None):
            errors = validate_binary('tofu')
        assert len(errors) == 1
        assert "'tofu' not found on PATH" in errors[0]
        assert 'FUOCO_BINARY' in errors[0]

    def test_version_fails(self):
        with patch('validation.shutil.which', return_value='/usr/bin/terraform'), \
             patch('validation.run_command', return_value=(1, '', 'broken install')):
            errors = validate_binary('terraform')
        assert errors == ["'terraform version' failed: broken install"]

    def test_valid(self):
        with patch('validation.shutil.which', return_value='/usr/bin/terraform'), \
             patch('validation.run_command', return_value=(0, 'Terraform v1.9.0\n', '')) as mock_cmd:
            errors = validate_binary('terraform')
        assert errors == []
        assert mock_cmd.call_args[0][0] == ['/usr/bin/terraform', 'version']


class TestValidateTemplateBundle:
    """Test validate_template_bundle()."""

    def test_present(self, templates_dir):
        assert validate_template_bundle(resolve('aws'), templates_dir) == []

    def test_missing(self, tmp_path):
        errors = validate_template_bundle(resolve('gcp'), tmp_path)
        assert len(errors) == 1
        assert 'Template bundle for gcp not found' in errors[0]

    def test_no_tf_files(self, tmp_path):
        (tmp_path / 'hetzner').mkdir()
        errors = validate_template_bundle(resolve('hetzner'), tmp_path)
        assert 'contains no .tf files' in errors[0]


class TestValidateCredentials:
    """Test validate_credentials()."""

    def test_aws_env_pair(self, tmp_path):
        environ = {'AWS_ACCESS_KEY_ID': 'AKIA', 'AWS_SECRET_ACCESS_KEY': 'secret'}
        assert validate_credentials(resolve('aws'), environ=environ, home=tmp_path) == []

    def test_aws_partial_env_pair(self, tmp_path):
        errors = validate_credentials(resolve('aws'), environ={'AWS_ACCESS_KEY_ID': 'AKIA'}, home=tmp_path)
        assert len(errors) == 1
        assert 'No aws credentials found' in errors[0]

    def test_aws_credentials_file(self, tmp_path):
        (tmp_path / '.aws').mkdir()
        (tmp_path / '.aws' / 'credentials').write_text('[default]\n')
        assert validate_credentials(resolve('aws'), environ={}, home=tmp_path) == []

    def test_gcp_application_default(self, tmp_path):
        adc = tmp_path / '.config' / 'gcloud' / 'application_default_credentials.json'
        adc.parent.mkdir(parents=True)
        adc.write_text('{}')
        assert validate_credentials(resolve('gcp'), environ={}, home=tmp_path) == []

    def test_hetzner_missing_token(self, tmp_path):
        errors = validate_credentials(resolve('hetzner'), environ={}, home=tmp_path)
        assert 'HCLOUD_TOKEN' in errors[0]


class TestRunPreflight:
    """Test run_preflight()."""

    def test_collects_all_errors(self, settings, tmp_path):
        settings.templates_dir = tmp_path / 'nowhere'
        with patch('validation.shutil.which', return_value=None):
            errors = run_preflight(resolve('hetzner'), settings, environ={}, home=tmp_path)
        assert len(errors) == 3

    def test_all_pass(self, settings, tmp_path):
        with patch('validation.shutil.which', return_value='/usr/bin/terraform'), \
             patch('validation.run_command', return_value=(0, 'Terraform v1.9.0', '')):
            errors = run_preflight(resolve('hetzner'), settings, environ={'HCLOUD_TOKEN': 't'}, home=tmp_path)
        assert errors == []


class TestFormatPreflightErrors:
    """Test format_preflight_errors()."""

    def test_format(self):
        output = format_preflight_errors(['first problem\n  hint line', 'second problem'])
        lines = output.split('\n')
        assert 'Pre-flight validation failed:' in lines
        assert '  ✗ first problem' in lines
        assert '      hint line' in lines
        assert '  ✗ second problem' in lines
        assert lines[-1] == 'Use --skip-preflight to bypass these checks'
