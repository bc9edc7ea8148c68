"""Deployment configuration management.

Configuration is loaded from a YAML file and then overridden from the
environment:
- deploy.yaml in the repo root, or the file named by $NEON_DEPLOY_CONFIG
- AWS_DEFAULT_REGION, STORAGE_BACKEND, NEON_DEPLOY_STATE_FILE

All fields have defaults, so a missing config file is not an error. Names of
provider resources are derived from the prefix.
"""

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Optional

import yaml

from common import PreconditionError

BACKEND_AWS_S3 = 'aws-s3'
BACKEND_MINIO = 'minio'
STORAGE_BACKENDS = (BACKEND_AWS_S3, BACKEND_MINIO)

METADATA_TRANSPORTS = ('exec', 'http')

DEFAULT_REGISTRY_REPOS = [
    'neon/pageserver',
    'neon/safekeeper',
    'neon/proxy',
    'neon/storage-broker',
    'neon/storage-controller',
    'neon/compute',
]


class ConfigError(PreconditionError):
    """Configuration error."""


def get_base_dir() -> Path:
    """Get the repository root directory."""
    return Path(__file__).parent.parent  # src/ -> repo root


@dataclass
class DeployConfig:
    """Settings for one deployment (one account, one cluster).

    Attributes:
        prefix: Name prefix for all provider resources
        region: Provider region
        namespace: Orchestrator namespace holding the workloads
        storage_backend: 'aws-s3' (cloud object store) or 'minio' (in-cluster)
        metadata_transport: 'exec' (curl inside a storage-node pod) or 'http'
    """
    prefix: str = 'neon1'
    region: str = 'us-west-2'
    namespace: str = 'neon'
    storage_backend: str = BACKEND_AWS_S3

    pageserver_replicas: int = 2
    safekeeper_replicas: int = 3
    metadata_db_instances: int = 3
    pg_version: int = 17
    image_tag: str = 'latest'
    registry_repos: list = field(default_factory=lambda: list(DEFAULT_REGISTRY_REPOS))

    cnpg_version: str = '1.25.1'
    cnpg_namespace: str = 'cnpg-system'
    metadata_db_cluster: str = 'storage-controller-pg-cluster'
    service_account: str = 'pageserver-sa'
    minio_bucket: str = 'minio-s3-neon-pageserver'
    storage_class: str = 'gp3-encrypted'

    pageserver_pg_port: int = 6400
    pageserver_http_port: int = 9898
    safekeeper_pg_port: int = 5454
    storage_controller_port: int = 1234
    cluster_domain: str = 'svc.cluster.local'

    metadata_transport: str = 'exec'
    pageserver_url: str = ''
    storage_controller_url: str = ''

    rollout_timeout: int = 120
    stateful_timeout: int = 300
    metadata_db_timeout: int = 300
    poll_interval: int = 10
    compute_ready_timeout: int = 120

    state_file: Path = field(default_factory=lambda: get_base_dir() / '.env')
    manifests_dir: Path = field(default_factory=lambda: get_base_dir() / 'manifests')
    report_dir: Path = field(default_factory=lambda: get_base_dir() / 'reports')

    def __post_init__(self):
        for name in ('state_file', 'manifests_dir', 'report_dir'):
            value = getattr(self, name)
            if isinstance(value, str):
                setattr(self, name, Path(value))
        self.validate()

    def validate(self) -> None:
        """Reject settings the pipeline cannot act on."""
        if self.storage_backend not in STORAGE_BACKENDS:
            raise ConfigError(
                f"Unknown storage backend '{self.storage_backend}'. "
                f"Expected one of: {', '.join(STORAGE_BACKENDS)}"
            )
        if self.metadata_transport not in METADATA_TRANSPORTS:
            raise ConfigError(
                f"Unknown metadata transport '{self.metadata_transport}'. "
                f"Expected one of: {', '.join(METADATA_TRANSPORTS)}"
            )
        for name in ('pageserver_replicas', 'safekeeper_replicas', 'metadata_db_instances'):
            if getattr(self, name) < 1:
                raise ConfigError(f"{name} must be at least 1")

    @property
    def cluster_name(self) -> str:
        return f'{self.prefix}-cluster'

    @property
    def bucket_name(self) -> str:
        return f'{self.prefix}-pageserver-data'

    @property
    def policy_name(self) -> str:
        return f'{self.prefix}-pageserver-s3'

    @property
    def cnpg_release_url(self) -> str:
        minor = '.'.join(self.cnpg_version.split('.')[:2])
        return (
            'https://raw.githubusercontent.com/cloudnative-pg/cloudnative-pg/'
            f'release-{minor}/releases/cnpg-{self.cnpg_version}.yaml'
        )

    def service_host(self, service: str) -> str:
        """In-cluster DNS name of a namespaced service."""
        return f'{service}.{self.namespace}.{self.cluster_domain}'

    def replica_host(self, group: str, ordinal: int) -> str:
        """Stable DNS name of a stateful-group replica."""
        return f'{group}-{ordinal}.{group}.{self.namespace}.{self.cluster_domain}'

    def resolved_storage_controller_url(self) -> str:
        if self.storage_controller_url:
            return self.storage_controller_url.rstrip('/')
        return f'http://{self.service_host("storage-controller")}:{self.storage_controller_port}'

    def resolved_pageserver_url(self) -> str:
        if self.pageserver_url:
            return self.pageserver_url.rstrip('/')
        if self.metadata_transport == 'exec':
            # Requests are issued from inside pageserver-0
            return f'http://localhost:{self.pageserver_http_port}'
        return f'http://{self.service_host("pageserver")}:{self.pageserver_http_port}'


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a mapping at top level")
    return data


def find_config_file() -> Optional[Path]:
    """Locate the config file.

    Resolution order:
    1. $NEON_DEPLOY_CONFIG environment variable (must exist)
    2. deploy.yaml in the repo root
    """
    if env_path := os.environ.get('NEON_DEPLOY_CONFIG'):
        path = Path(env_path)
        if not path.exists():
            raise ConfigError(f"NEON_DEPLOY_CONFIG={env_path} does not exist")
        return path

    default = get_base_dir() / 'deploy.yaml'
    if default.exists():
        return default
    return None


def load_config(path: Optional[Path] = None, env: Optional[dict] = None) -> DeployConfig:
    """Load configuration: defaults → YAML file → environment."""
    env = os.environ if env is None else env
    if path is None:
        path = find_config_file()

    values: dict = {}
    if path is not None:
        try:
            values = _parse_yaml(path)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    known = {f.name for f in fields(DeployConfig)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ConfigError(f"Unknown config keys in {path}: {', '.join(unknown)}")

    if region := env.get('AWS_DEFAULT_REGION'):
        values['region'] = region
    if backend := env.get('STORAGE_BACKEND'):
        values['storage_backend'] = backend
    if state_file := env.get('NEON_DEPLOY_STATE_FILE'):
        values['state_file'] = state_file

    try:
        return DeployConfig(**values)
    except TypeError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


def apply_persisted_state(config: DeployConfig, state) -> DeployConfig:
    """Return config using the prefix, region and backend recorded at provisioning."""
    overrides = {}
    for key, attr in (('PREFIX', 'prefix'), ('REGION', 'region'), ('STORAGE_BACKEND', 'storage_backend')):
        persisted = state.get(key)
        if persisted and persisted != getattr(config, attr):
            overrides[attr] = persisted
    return replace(config, **overrides) if overrides else config
