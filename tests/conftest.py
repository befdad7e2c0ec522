"""Shared pytest fixtures for fuoco tests."""

import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from common import PhaseResult
from config import Settings
from driver import ApplyOutcome


@pytest.fixture
def templates_dir(tmp_path):
    """Create a templates directory with one small bundle per provider."""
    root = tmp_path / 'templates'
    for name in ('aws', 'gcp', 'hetzner'):
        bundle = root / name
        (bundle / 'modules').mkdir(parents=True)
        (bundle / 'main.tf').write_text(f'# {name} bundle\n')
        (bundle / 'modules' / 'net.tf').write_text('# network\n')
    return root


@pytest.fixture
def settings(tmp_path, templates_dir):
    """Settings pointing at temporary workspace and template directories."""
    return Settings(
        binary='terraform',
        workspace_root=tmp_path / 'workspaces',
        templates_dir=templates_dir,
    )


@pytest.fixture
def home(tmp_path):
    """Fake home directory with an ed25519 public key."""
    home = tmp_path / 'home'
    (home / '.ssh').mkdir(parents=True)
    (home / '.ssh' / 'id_ed25519.pub').write_text('ssh-ed25519 AAAA test@example\n')
    return home


@pytest.fixture
def environ():
    """Environment providing every provider's required values."""
    return {
        'GOOGLE_PROJECT': 'test-project',
        'HCLOUD_TOKEN': 'secret-token',
    }


@pytest.fixture
def fake_driver():
    """Driver double whose phases succeed by default."""
    driver = MagicMock()
    driver.binary = 'terraform'
    driver.initialize.return_value = PhaseResult(success=True, message='init ok')
    driver.apply.return_value = ApplyOutcome(
        outputs={'public_ip': '203.0.113.7', 'region': 'eu-west-1'},
        result=PhaseResult(success=True, message='apply ok'),
    )
    driver.destroy.return_value = PhaseResult(success=True, message='destroy ok')
    return driver
