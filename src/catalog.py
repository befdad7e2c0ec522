"""Provider catalog.

Static registry of supported cloud providers. Each descriptor names the
template bundle directory, default instance type, region table, variable
schema and the credential sources that satisfy the provider's tooling.

Descriptors are built at import time and never mutated.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from config import get_default_templates_dir
from errors import UnknownProvider


class Provider(str, Enum):
    """Supported cloud providers."""
    AWS = 'aws'
    GCP = 'gcp'
    HETZNER = 'hetzner'


@dataclass(frozen=True)
class VariableSpec:
    """One template variable.

    Attributes:
        name: Variable name in the template bundle
        kind: 'string', 'path' or 'json'
        required: If True, resolution must produce a value or fail
        default: Schema default (used after computed defaults)
        env: Environment variables consulted, in order
        flag: CLI flag that sets the variable (for error hints)
        sensitive: Mask the value in summaries
    """
    name: str
    kind: str = 'string'
    required: bool = True
    default: Optional[str] = None
    env: tuple[str, ...] = ()
    flag: Optional[str] = None
    sensitive: bool = False


@dataclass(frozen=True)
class CredentialSource:
    """One way of providing credentials to the provider's tooling.

    The source is satisfied when every variable in env_all is set, or
    when any file in files (relative to the home directory) exists.
    """
    description: str
    env_all: tuple[str, ...] = ()
    files: tuple[str, ...] = ()


@dataclass(frozen=True)
class ProviderDescriptor:
    """Immutable description of a supported provider."""
    provider: Provider
    bundle: str
    default_instance_type: str
    regions: tuple[str, ...]
    variables: tuple[VariableSpec, ...]
    credentials: tuple[CredentialSource, ...] = field(default=())
    region_label: str = 'region'

    @property
    def name(self) -> str:
        return self.provider.value

    def template_dir(self, templates_root: Optional[Path] = None) -> Path:
        """Get the template bundle directory under templates_root."""
        return (templates_root or get_default_templates_dir()) / self.bundle

    def variable(self, name: str) -> VariableSpec:
        """Get a schema variable by name.

        Raises:
            KeyError: If the provider has no such variable
        """
        for entry in self.variables:
            if entry.name == name:
                return entry
        raise KeyError(name)

    def variable_names(self) -> list[str]:
        return [entry.name for entry in self.variables]


AWS_REGIONS = (
    'us-east-1', 'us-east-2', 'us-west-1', 'us-west-2',
    'ap-south-1', 'ap-northeast-3', 'ap-northeast-2', 'ap-southeast-1',
    'ap-southeast-2', 'ap-northeast-1', 'ca-central-1', 'eu-central-1',
    'eu-west-1', 'eu-west-2', 'eu-west-3', 'eu-north-1', 'sa-east-1',
)

GCP_REGIONS = (
    'us-central1', 'us-east1', 'us-east4', 'us-west1', 'us-west2',
    'us-west3', 'us-west4', 'northamerica-northeast1', 'southamerica-east1',
    'europe-west1', 'europe-west2', 'europe-west3', 'europe-west4',
    'europe-west6', 'europe-west8', 'europe-west9', 'europe-north1',
    'europe-southwest1', 'asia-east1', 'asia-east2', 'asia-northeast1',
    'asia-northeast2', 'asia-northeast3', 'asia-south1', 'asia-south2',
    'asia-southeast1', 'asia-southeast2', 'australia-southeast1',
    'australia-southeast2', 'me-central1', 'me-west1',
)

HETZNER_LOCATIONS = ('fsn1', 'nbg1', 'hel1', 'ash', 'hil')

# Shared by all bundles
_COMMON = (
    VariableSpec('instance_type', flag='--instance-type'),
    VariableSpec('script_path', kind='path', required=False, default='', flag='--script-path'),
)

_CATALOG: dict[Provider, ProviderDescriptor] = {
    Provider.AWS: ProviderDescriptor(
        provider=Provider.AWS,
        bundle='aws',
        default_instance_type='t4g.nano',
        regions=AWS_REGIONS,
        variables=(
            VariableSpec('region', env=('AWS_REGION', 'AWS_DEFAULT_REGION'), flag='--region'),
            *_COMMON,
            VariableSpec('inbound_rules', kind='json', default='[{"protocol": "tcp", "port_number": 22}]',
                         flag='--inbound-rule'),
            VariableSpec('ssh_public_key_path', kind='path', default='none',
                         flag='--ssh-public-key-path'),
            VariableSpec('ami_ssm_parameter', env=('FUOCO_AWS_AMI_SSM_PARAMETER',)),
        ),
        credentials=(
            CredentialSource('AWS_ACCESS_KEY_ID + AWS_SECRET_ACCESS_KEY',
                             env_all=('AWS_ACCESS_KEY_ID', 'AWS_SECRET_ACCESS_KEY')),
            CredentialSource('AWS_PROFILE', env_all=('AWS_PROFILE',)),
            CredentialSource('~/.aws/credentials', files=('.aws/credentials',)),
        ),
    ),
    Provider.GCP: ProviderDescriptor(
        provider=Provider.GCP,
        bundle='gcp',
        default_instance_type='e2-micro',
        regions=GCP_REGIONS,
        variables=(
            VariableSpec('region', env=('GOOGLE_REGION', 'CLOUDSDK_COMPUTE_REGION'), flag='--region'),
            *_COMMON,
            VariableSpec('project_id', env=('GOOGLE_PROJECT', 'GOOGLE_CLOUD_PROJECT', 'CLOUDSDK_CORE_PROJECT'),
                         flag='--project-id'),
        ),
        credentials=(
            CredentialSource('GOOGLE_APPLICATION_CREDENTIALS', env_all=('GOOGLE_APPLICATION_CREDENTIALS',)),
            CredentialSource('gcloud application-default login',
                             files=('.config/gcloud/application_default_credentials.json',)),
        ),
    ),
    Provider.HETZNER: ProviderDescriptor(
        provider=Provider.HETZNER,
        bundle='hetzner',
        default_instance_type='cx11',
        regions=HETZNER_LOCATIONS,
        region_label='location',
        variables=(
            VariableSpec('region', env=('HCLOUD_LOCATION',), flag='--region'),
            *_COMMON,
            VariableSpec('hcloud_token', env=('HCLOUD_TOKEN',), flag='--token', sensitive=True),
        ),
        credentials=(
            CredentialSource('HCLOUD_TOKEN', env_all=('HCLOUD_TOKEN',)),
        ),
    ),
}


def list_providers() -> list[str]:
    """List supported provider identifiers."""
    return [p.value for p in Provider]


def resolve(provider_id) -> ProviderDescriptor:
    """Get the descriptor for a provider identifier.

    Args:
        provider_id: Provider enum member or identifier string (case-insensitive)

    Raises:
        UnknownProvider: If the identifier is not supported
    """
    if isinstance(provider_id, Provider):
        return _CATALOG[provider_id]
    try:
        provider = Provider(str(provider_id).strip().lower())
    except ValueError:
        raise UnknownProvider(str(provider_id), list_providers()) from None
    return _CATALOG[provider]
