"""Settings management.

Settings are loaded from an optional YAML file:
- $FUOCO_CONFIG if set (must exist)
- ~/.config/fuoco/config.yaml otherwise (optional)

File layout:
    defaults:
      binary: terraform        # or tofu
      workspace_root: /tmp/fuoco
      templates_dir: /path/to/bundles
      debug: false
    providers:
      aws:
        region: eu-west-1

Environment overrides (highest priority): FUOCO_BINARY, FUOCO_WORKSPACE_ROOT,
FUOCO_TEMPLATES_DIR.

The merge order is: built-in defaults → file → environment.
"""

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from errors import ConfigError

DEFAULT_BINARY = 'terraform'


def get_base_dir() -> Path:
    """Get the directory holding the fuoco modules."""
    return Path(__file__).resolve().parent


def get_default_templates_dir() -> Path:
    """Get the bundled template directory (one subdirectory per provider)."""
    return get_base_dir() / 'templates'


def get_default_workspace_root() -> Path:
    """Get the default parent directory for run workspaces."""
    return Path(tempfile.gettempdir()) / 'fuoco'


def get_config_path(environ: Optional[dict] = None) -> Optional[Path]:
    """Discover the settings file.

    Resolution order:
    1. $FUOCO_CONFIG environment variable (error if missing)
    2. ~/.config/fuoco/config.yaml (skipped if missing)
    """
    environ = os.environ if environ is None else environ

    if env_path := environ.get('FUOCO_CONFIG'):
        path = Path(env_path).expanduser()
        if path.is_file():
            return path
        raise ConfigError(f"FUOCO_CONFIG={env_path} does not exist")

    home = Path(environ.get('HOME') or Path.home())
    default = home / '.config' / 'fuoco' / 'config.yaml'
    if default.is_file():
        return default
    return None


@dataclass
class Settings:
    """Resolved tool settings.

    Attributes:
        binary: External provisioning tool executable (terraform or tofu)
        workspace_root: Parent directory for per-run workspaces
        templates_dir: Directory containing one template bundle per provider
        debug: Stream external tool output by default
        provider_defaults: Per-provider variable defaults from the file
        source: File the settings were read from (None for built-ins)
    """
    binary: str = DEFAULT_BINARY
    workspace_root: Path = field(default_factory=get_default_workspace_root)
    templates_dir: Path = field(default_factory=get_default_templates_dir)
    debug: bool = False
    provider_defaults: dict = field(default_factory=dict)
    source: Optional[Path] = None

    def __post_init__(self):
        if isinstance(self.workspace_root, str):
            self.workspace_root = Path(self.workspace_root)
        if isinstance(self.templates_dir, str):
            self.templates_dir = Path(self.templates_dir)

    def defaults_for(self, provider: str) -> dict:
        """Get the variable defaults configured for a provider."""
        return dict(self.provider_defaults.get(provider) or {})


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    return data


def load_settings(path: Optional[Path] = None, environ: Optional[dict] = None) -> Settings:
    """Load settings with merge order: defaults → file → environment.

    Args:
        path: Explicit settings file. Discovered if not provided.
        environ: Environment mapping (defaults to os.environ)

    Raises:
        ConfigError: If the file is unreadable or malformed
    """
    environ = os.environ if environ is None else environ
    settings = Settings()

    if path is None:
        path = get_config_path(environ)

    if path is not None:
        data = _parse_yaml(path)
        defaults = data.get('defaults') or {}
        providers = data.get('providers') or {}
        if not isinstance(defaults, dict) or not isinstance(providers, dict):
            raise ConfigError(f"{path}: 'defaults' and 'providers' must be mappings")

        if binary := defaults.get('binary'):
            settings.binary = str(binary)
        if workspace_root := defaults.get('workspace_root'):
            settings.workspace_root = Path(workspace_root).expanduser()
        if templates_dir := defaults.get('templates_dir'):
            settings.templates_dir = Path(templates_dir).expanduser()
        settings.debug = bool(defaults.get('debug', False))
        settings.provider_defaults = {
            str(name).lower(): values for name, values in providers.items()
            if isinstance(values, dict)
        }
        settings.source = path

    if binary := environ.get('FUOCO_BINARY'):
        settings.binary = binary
    if workspace_root := environ.get('FUOCO_WORKSPACE_ROOT'):
        settings.workspace_root = Path(workspace_root).expanduser()
    if templates_dir := environ.get('FUOCO_TEMPLATES_DIR'):
        settings.templates_dir = Path(templates_dir).expanduser()

    return settings
