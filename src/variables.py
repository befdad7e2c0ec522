"""Run configuration and template variable resolution.

Translates CLI/environment input into the variable set a provider's
template bundle expects. Resolution order per variable:

1. Explicit CLI value (RunConfiguration)
2. Environment variables named in the schema
3. Settings file provider defaults (providers.<id>.<var>)
4. Computed default (instance type, random region, AWS AMI path, SSH key)
5. Schema default
6. MissingRequiredVariable

Computed values are reported back as notices so the caller can show them.
"""

import json
import logging
import os
import random
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from catalog import Provider, ProviderDescriptor, resolve
from config import Settings
from errors import InvalidConfiguration, MissingRequiredVariable

logger = logging.getLogger(__name__)

# Graviton families: digit followed by 'g', optionally d/e/n (t4g, m7gd, c7gn)
GRAVITON_FAMILY = re.compile(r'^[a-z]+\d+g[den]*$')
# First-generation Graviton, outside the naming scheme above
ARM64_FAMILIES = frozenset({'a1'})

# Ubuntu 24.04 LTS public AMIs via SSM Parameter Store
UBUNTU_AMI_SSM = {
    'arm64': '/aws/service/canonical/ubuntu/server/24.04/stable/current/arm64/hvm/ebs-gp3/ami-id',
    'x86_64': '/aws/service/canonical/ubuntu/server/24.04/stable/current/amd64/hvm/ebs-gp3/ami-id',
}

# Checked in order when no --ssh-public-key-path is given
SSH_PUBLIC_KEY_FALLBACKS = ('id_ed25519.pub', 'id_rsa.pub', 'id_ecdsa.pub')

MASK = '********'


@dataclass(frozen=True)
class InboundRule:
    """Firewall ingress rule, parsed from PROTO:PORT."""
    protocol: str
    port_number: int

    @classmethod
    def parse(cls, value: str) -> 'InboundRule':
        """Parse 'tcp:22' style input.

        Raises:
            InvalidConfiguration: If the format or port is invalid
        """
        parts = value.split(':')
        if len(parts) != 2 or not parts[0]:
            raise InvalidConfiguration(f"Inbound rule must be in format protocol:port, got '{value}'")
        protocol, port = parts[0].strip().lower(), parts[1].strip()
        try:
            port_number = int(port)
        except ValueError:
            raise InvalidConfiguration(f"Invalid port number in inbound rule '{value}'") from None
        if not 0 < port_number < 65536:
            raise InvalidConfiguration(f"Port out of range in inbound rule '{value}'")
        return cls(protocol=protocol, port_number=port_number)

    def to_dict(self) -> dict:
        return {'protocol': self.protocol, 'port_number': self.port_number}

    def __str__(self) -> str:
        return f"{self.protocol}:{self.port_number}"


@dataclass(frozen=True)
class RunConfiguration:
    """Resolved input for one invocation. Immutable after construction.

    extras holds provider-specific values keyed by template variable name
    (project_id, hcloud_token, ami_ssm_parameter).
    """
    provider: Provider
    region: Optional[str] = None
    instance_type: Optional[str] = None
    script_path: Optional[Path] = None
    debug: bool = False
    inbound_rules: Optional[tuple[InboundRule, ...]] = None
    ssh_public_key_path: Optional[Path] = None
    extras: dict = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        provider,
        region: Optional[str] = None,
        instance_type: Optional[str] = None,
        script_path=None,
        debug: bool = False,
        inbound_rules: Optional[list] = None,
        ssh_public_key_path=None,
        extras: Optional[dict] = None,
    ) -> 'RunConfiguration':
        """Validate raw input and build a RunConfiguration.

        Args:
            provider: Provider id or enum member
            inbound_rules: InboundRule objects or 'proto:port' strings

        Raises:
            UnknownProvider: If provider is not supported
            InvalidConfiguration: If a value is malformed
        """
        descriptor = resolve(provider)

        script = None
        if script_path:
            script = Path(script_path).expanduser().resolve()
            if not script.is_file():
                raise InvalidConfiguration(f"Startup script not found: {script_path}")

        key_path = None
        if ssh_public_key_path:
            key_path = Path(ssh_public_key_path).expanduser().resolve()
            if not key_path.is_file():
                raise InvalidConfiguration(f"SSH public key not found: {ssh_public_key_path}")

        rules = None
        if inbound_rules:
            rules = tuple(
                r if isinstance(r, InboundRule) else InboundRule.parse(str(r))
                for r in inbound_rules
            )

        known = set(descriptor.variable_names())
        clean_extras = {}
        for key, value in (extras or {}).items():
            if value in (None, ''):
                continue
            if key not in known:
                raise InvalidConfiguration(f"Option '{key}' is not supported by provider {descriptor.name}")
            clean_extras[key] = str(value)

        return cls(
            provider=descriptor.provider,
            region=region or None,
            instance_type=instance_type or None,
            script_path=script,
            debug=debug,
            inbound_rules=rules,
            ssh_public_key_path=key_path,
            extras=clean_extras,
        )

    def explicit_values(self) -> dict:
        """Get values given explicitly on the command line, keyed by variable name."""
        values = dict(self.extras)
        if self.region:
            values['region'] = self.region
        if self.instance_type:
            values['instance_type'] = self.instance_type
        if self.script_path:
            values['script_path'] = str(self.script_path)
        if self.inbound_rules:
            values['inbound_rules'] = json.dumps([r.to_dict() for r in self.inbound_rules])
        if self.ssh_public_key_path:
            values['ssh_public_key_path'] = str(self.ssh_public_key_path)
        return values


@dataclass
class VariableSet:
    """Resolved template variables for one run.

    Attributes:
        provider: Provider the values were resolved for
        values: Variable name -> value (strings, JSON encoded for json kind)
        sources: Variable name -> where the value came from
        notices: Informational messages about computed values
        sensitive: Names whose values must not be printed
    """
    provider: Provider
    values: dict[str, str] = field(default_factory=dict)
    sources: dict[str, str] = field(default_factory=dict)
    notices: list[str] = field(default_factory=list)
    sensitive: frozenset = frozenset()

    def __getitem__(self, name: str) -> str:
        return self.values[name]

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.values.get(name, default)

    @property
    def region(self) -> str:
        return self.values['region']

    def to_tfvars(self) -> dict:
        """Get the mapping written to the tfvars JSON file.

        JSON-kind variables are decoded so the template receives real lists.
        """
        tfvars = {}
        for name, value in self.values.items():
            if name == 'inbound_rules':
                tfvars[name] = json.loads(value)
            else:
                tfvars[name] = value
        return tfvars

    def describe(self) -> list[str]:
        """Get 'name: value [source]' lines with sensitive values masked."""
        lines = []
        for name, value in self.values.items():
            shown = MASK if name in self.sensitive else (value if value != '' else '[none]')
            lines.append(f"{name}: {shown} [{self.sources.get(name, '?')}]")
        return lines


def infer_architecture(instance_type: str) -> str:
    """Infer CPU architecture from an AWS instance type name."""
    family = instance_type.split('.')[0].lower()
    if family in ARM64_FAMILIES or GRAVITON_FAMILY.match(family):
        return 'arm64'
    return 'x86_64'


def detect_ssh_public_key(home: Path) -> Optional[Path]:
    """Find the first existing public key among the fallback names."""
    ssh_dir = home / '.ssh'
    for name in SSH_PUBLIC_KEY_FALLBACKS:
        candidate = ssh_dir / name
        if candidate.is_file():
            return candidate
    return None


def _from_environment(names: tuple[str, ...], environ: dict) -> tuple[Optional[str], Optional[str]]:
    for name in names:
        if value := environ.get(name):
            return value, name
    return None, None


def _computed_default(
    name: str,
    descriptor: ProviderDescriptor,
    resolved: dict,
    home: Path,
    rng: random.Random,
) -> tuple[Optional[str], Optional[str]]:
    """Compute a provider-specific default, returning (value, notice)."""
    if name == 'instance_type':
        return descriptor.default_instance_type, None

    if name == 'region':
        region = rng.choice(descriptor.regions)
        return region, f"No {descriptor.region_label} given, picked random {descriptor.region_label}: {region}"

    if descriptor.provider is Provider.AWS and name == 'ami_ssm_parameter':
        instance_type = resolved.get('instance_type', descriptor.default_instance_type)
        arch = infer_architecture(instance_type)
        path = UBUNTU_AMI_SSM[arch]
        return path, f"Instance type {instance_type} is {arch}, using AMI from SSM parameter {path}"

    if descriptor.provider is Provider.AWS and name == 'ssh_public_key_path':
        key = detect_ssh_public_key(home)
        if key is None:
            return None, None
        return str(key), f"Using SSH public key: {key}"

    return None, None


def build(
    config: RunConfiguration,
    descriptor: ProviderDescriptor,
    environ: Optional[dict] = None,
    home: Optional[Path] = None,
    settings: Optional[Settings] = None,
    rng: Optional[random.Random] = None,
) -> VariableSet:
    """Resolve every schema variable for a run.

    Args:
        config: Run configuration from the CLI
        descriptor: Provider descriptor (schema)
        environ: Environment mapping (defaults to os.environ)
        home: Home directory for SSH key detection (defaults to Path.home())
        settings: Settings with per-provider defaults
        rng: Random source for region selection

    Returns:
        VariableSet with values in schema order

    Raises:
        MissingRequiredVariable: If a required variable cannot be resolved
    """
    environ = os.environ if environ is None else environ
    home = home or Path.home()
    rng = rng or random.Random()
    explicit = config.explicit_values()
    file_defaults = settings.defaults_for(descriptor.name) if settings else {}

    variables = VariableSet(
        provider=descriptor.provider,
        sensitive=frozenset(s.name for s in descriptor.variables if s.sensitive),
    )

    for entry in descriptor.variables:
        value, source = None, None

        if entry.name in explicit:
            value, source = explicit[entry.name], 'cli'

        if value is None and entry.env:
            value, env_name = _from_environment(entry.env, environ)
            if value is not None:
                source = f'env:{env_name}'

        if value is None and file_defaults.get(entry.name) not in (None, ''):
            raw = file_defaults[entry.name]
            value = json.dumps(raw) if entry.kind == 'json' and not isinstance(raw, str) else str(raw)
            source = 'settings'

        if value is None:
            value, notice = _computed_default(entry.name, descriptor, variables.values, home, rng)
            if value is not None:
                source = 'computed'
                if notice:
                    variables.notices.append(notice)

        if value is None and entry.default is not None:
            value, source = entry.default, 'default'

        if value is None:
            if entry.required:
                sources = tuple(s for s in ((entry.flag,) if entry.flag else ()) + entry.env)
                raise MissingRequiredVariable(descriptor.name, entry.name, sources)
            value, source = '', 'default'

        variables.values[entry.name] = value
        variables.sources[entry.name] = source
        logger.debug(f"Resolved {entry.name} from {source}")

    return variables
