"""Pre-flight validation checks for deploy/undeploy.

Catches missing tooling, template bundles and credentials before any
workspace is prepared, with actionable error messages.
"""

import logging
import os
import shutil
from pathlib import Path
from typing import Optional

from catalog import ProviderDescriptor
from common import run_command
from config import Settings

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# External tool
# -----------------------------------------------------------------------------

def validate_binary(binary: str) -> list[str]:
    """Validate the provisioning tool is installed and runs.

    Returns:
        List of validation error messages (empty if valid)
    """
    path = shutil.which(binary)
    if path is None:
        return [
            f"Provisioning tool '{binary}' not found on PATH\n"
            f"  Install terraform or tofu, or set FUOCO_BINARY / defaults.binary"
        ]

    rc, out, err = run_command([path, 'version'], timeout=30)
    if rc != 0:
        return [f"'{binary} version' failed: {(err or out).strip()}"]

    logger.debug(f"Using {out.splitlines()[0] if out else binary} at {path}")
    return []


# -----------------------------------------------------------------------------
# Template bundle
# -----------------------------------------------------------------------------

def validate_template_bundle(descriptor: ProviderDescriptor, templates_dir: Path) -> list[str]:
    """Validate the provider's template bundle exists and has .tf files."""
    bundle = descriptor.template_dir(templates_dir)
    if not bundle.is_dir():
        return [
            f"Template bundle for {descriptor.name} not found\n"
            f"  Expected: {bundle}\n"
            f"  Set FUOCO_TEMPLATES_DIR or defaults.templates_dir"
        ]
    if not any(bundle.glob('*.tf')):
        return [f"Template bundle {bundle} contains no .tf files"]
    return []


# -----------------------------------------------------------------------------
# Credentials
# -----------------------------------------------------------------------------

def validate_credentials(
    descriptor: ProviderDescriptor,
    environ: Optional[dict] = None,
    home: Optional[Path] = None,
) -> list[str]:
    """Validate at least one credential source for the provider is present.

    Only checks presence; the provider's own tooling validates the values.
    """
    environ = os.environ if environ is None else environ
    home = home or Path.home()

    for source in descriptor.credentials:
        if source.env_all and all(environ.get(name) for name in source.env_all):
            logger.debug(f"{descriptor.name} credentials from {source.description}")
            return []
        if any((home / rel).is_file() for rel in source.files):
            logger.debug(f"{descriptor.name} credentials from {source.description}")
            return []

    options = '\n'.join(f"  - {s.description}" for s in descriptor.credentials)
    return [f"No {descriptor.name} credentials found. Provide one of:\n{options}"]


def run_preflight(
    descriptor: ProviderDescriptor,
    settings: Settings,
    environ: Optional[dict] = None,
    home: Optional[Path] = None,
) -> list[str]:
    """Run all pre-flight checks for a provider.

    Returns:
        Combined list of all validation errors
    """
    errors = []
    errors.extend(validate_binary(settings.binary))
    errors.extend(validate_template_bundle(descriptor, settings.templates_dir))
    errors.extend(validate_credentials(descriptor, environ=environ, home=home))
    return errors


def format_preflight_errors(errors: list[str]) -> str:
    """Format validation errors for display."""
    lines = ["", "Pre-flight validation failed:"]
    for error in errors:
        # Indent multi-line errors
        for i, line in enumerate(error.split('\n')):
            prefix = "  ✗ " if i == 0 else "    "
            lines.append(f"{prefix}{line}")
    lines.append("")
    lines.append("Use --skip-preflight to bypass these checks")
    return '\n'.join(lines)
