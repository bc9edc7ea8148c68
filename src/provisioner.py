"""Idempotent provisioning of cloud-provider resources.

Each resource is described by an existence check, a creation operation and
the state key its identifier is persisted under. ensure() runs the check
first and creates only when the check comes back empty, so re-running the
whole provisioning pass after a partial failure is the recovery path.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from common import (
    STATUS_OK,
    STATUS_SKIPPED,
    AlreadyExistsError,
    ProviderError,
    StepResult,
    TransientProviderError,
)
from config import BACKEND_AWS_S3, DeployConfig
from providers import Providers
from providers.iam import bucket_access_policy
from templater import render_file

logger = logging.getLogger(__name__)


@dataclass
class ResourceDescriptor:
    """One provisionable resource.

    Attributes:
        name: Step label (e.g. 'eks-cluster')
        state_key: Key the identifier is stored under
        check: Returns the existing identifier, or None. Must not mutate.
        create: Creates the resource and returns its identifier
        requires: State keys that must be present before check/create run
    """
    name: str
    state_key: str
    check: Callable[[], Optional[str]]
    create: Callable[[], str]
    requires: tuple[str, ...] = ()


class ResourceProvisioner:
    """Runs ensure() over descriptors, persisting identifiers to state."""

    def __init__(self, state, create_attempts: int = 3, retry_delay: float = 5.0,
                 sleep: Callable[[float], None] = time.sleep):
        self.state = state
        self.create_attempts = create_attempts
        self.retry_delay = retry_delay
        self.sleep = sleep
        self.results: list[StepResult] = []

    def ensure(self, descriptor: ResourceDescriptor) -> str:
        """Return the resource's identifier, creating it only if absent.

        A duplicate-resource error from create() is treated as success and
        resolved by re-running the check. After a transient failure the check
        runs again before create() is retried, so a resource the provider made
        despite the error is adopted instead of duplicated.

        Raises:
            MissingStateError: If a required state key is absent
            ProviderError: On unrecoverable creation failure
        """
        start = time.time()
        for key in descriptor.requires:
            self.state.require(key)

        existing = descriptor.check()
        if existing:
            logger.info(f"[{descriptor.name}] Already exists: {existing} - skipping creation")
            self.state.set(descriptor.state_key, existing)
            self.results.append(StepResult(descriptor.name, STATUS_SKIPPED, existing, time.time() - start))
            return existing

        logger.info(f"[{descriptor.name}] Creating...")
        identifier = self._create(descriptor)

        if not identifier:
            raise ProviderError(f"{descriptor.name}: creation returned no identifier")

        self.state.set(descriptor.state_key, identifier)
        logger.info(f"[{descriptor.name}] Created: {identifier}")
        self.results.append(StepResult(descriptor.name, STATUS_OK, identifier, time.time() - start))
        return identifier

    def _create(self, descriptor: ResourceDescriptor) -> Optional[str]:
        attempt = 1
        while True:
            try:
                return descriptor.create()
            except AlreadyExistsError:
                logger.info(f"[{descriptor.name}] Create reported already exists; re-checking")
                identifier = descriptor.check()
                if not identifier:
                    raise ProviderError(
                        f"{descriptor.name}: provider reports the resource exists but it cannot be found"
                    )
                return identifier
            except TransientProviderError as e:
                existing = descriptor.check()
                if existing:
                    logger.info(f"[{descriptor.name}] Create failed ({e}) but the resource exists: {existing}")
                    return existing
                if attempt >= self.create_attempts:
                    raise
                logger.warning(
                    f"[{descriptor.name}] Create failed ({e}); retrying in {self.retry_delay}s "
                    f"(attempt {attempt}/{self.create_attempts})"
                )
                self.sleep(self.retry_delay)
                attempt += 1


# -----------------------------------------------------------------------------
# Descriptors for the fixed topology
# -----------------------------------------------------------------------------

def cluster_descriptor(config: DeployConfig, providers: Providers) -> ResourceDescriptor:
    name = config.cluster_name

    def check() -> Optional[str]:
        return name if providers.cluster.describe(name) else None

    def create() -> str:
        document = render_file(
            config.manifests_dir / 'eks' / 'cluster-config.yaml',
            {'CLUSTER_NAME': name, 'REGION': config.region},
        )
        providers.cluster.create(document)
        return name

    return ResourceDescriptor('eks-cluster', 'CLUSTER_NAME', check, create)


def bucket_descriptor(config: DeployConfig, providers: Providers) -> ResourceDescriptor:
    bucket = config.bucket_name

    def check() -> Optional[str]:
        return bucket if providers.object_store.bucket_exists(bucket) else None

    def create() -> str:
        providers.object_store.create_bucket(bucket)
        return bucket

    return ResourceDescriptor('s3-bucket', 'S3_BUCKET', check, create)


def vpc_endpoint_descriptor(providers: Providers, state) -> ResourceDescriptor:
    def check() -> Optional[str]:
        return providers.network.find_gateway_endpoint(state.require('VPC_ID'))

    def create() -> str:
        return providers.network.create_gateway_endpoint(state.require('VPC_ID'))

    return ResourceDescriptor('vpc-endpoint', 'VPC_ENDPOINT_ID', check, create, requires=('VPC_ID',))


def policy_descriptor(config: DeployConfig, providers: Providers, state) -> ResourceDescriptor:
    def arn() -> str:
        return providers.policy.policy_arn(state.require('ACCOUNT_ID'), config.policy_name)

    def check() -> Optional[str]:
        candidate = arn()
        return candidate if providers.policy.policy_exists(candidate) else None

    def create() -> str:
        bucket = state.require('S3_BUCKET')
        return providers.policy.create_policy(config.policy_name, bucket_access_policy(bucket))

    return ResourceDescriptor('iam-policy', 'IAM_POLICY_ARN', check, create,
                              requires=('ACCOUNT_ID', 'S3_BUCKET'))


def identity_binding_descriptor(config: DeployConfig, providers: Providers, state) -> ResourceDescriptor:
    sa = config.service_account

    def check() -> Optional[str]:
        cluster = state.require('CLUSTER_NAME')
        return sa if providers.identity.exists(cluster, config.namespace, sa) else None

    def create() -> str:
        providers.identity.create(
            state.require('CLUSTER_NAME'), config.namespace, sa, state.require('IAM_POLICY_ARN'),
        )
        return sa

    return ResourceDescriptor('irsa-binding', 'IRSA_SERVICE_ACCOUNT', check, create,
                              requires=('CLUSTER_NAME', 'IAM_POLICY_ARN', 'OIDC_PROVIDER'))


def registry_descriptor(config: DeployConfig, providers: Providers, state) -> ResourceDescriptor:
    """All image repositories as one resource keyed by the registry URL."""

    def url() -> str:
        return providers.registry.registry_url(state.require('ACCOUNT_ID'))

    def missing() -> list[str]:
        return [r for r in config.registry_repos if not providers.registry.repository_exists(r)]

    def check() -> Optional[str]:
        return None if missing() else url()

    def create() -> str:
        for repo in missing():
            logger.info(f"[ecr-repositories] Creating repository {repo}")
            try:
                providers.registry.create_repository(repo)
            except AlreadyExistsError:
                logger.info(f"[ecr-repositories] {repo} already exists")
        return url()

    return ResourceDescriptor('ecr-repositories', 'ECR_REGISTRY', check, create, requires=('ACCOUNT_ID',))


def storage_class_descriptor(config: DeployConfig, providers: Providers) -> ResourceDescriptor:
    name = config.storage_class

    def check() -> Optional[str]:
        return name if providers.kube.get('storageclass', name) else None

    def create() -> str:
        providers.kube.apply(render_file(
            config.manifests_dir / 'storage-classes.yaml', {'STORAGE_CLASS': name},
        ))
        return name

    return ResourceDescriptor('storage-class', 'STORAGE_CLASS', check, create)


def ensure_namespace(config: DeployConfig, providers: Providers) -> None:
    """Namespace must exist before the identity binding creates its service account."""
    providers.kube.apply(render_file(
        config.manifests_dir / 'namespace.yaml', {'NAMESPACE': config.namespace},
    ))


def provision_infrastructure(config: DeployConfig, providers: Providers, state) -> list[StepResult]:
    """Provision every cloud resource in dependency order (fail-fast).

    Order: cluster → kubeconfig → [bucket → bucket versioning and lifecycle
    (reapplied on every run) → VPC lookup → endpoint → policy
    → OIDC lookup → namespace → identity binding] → registries → storage
    class. The bracketed steps apply only to the aws-s3 backend.
    """
    provisioner = ResourceProvisioner(state)

    account_id = providers.account.account_id()
    logger.info(f"Account: {account_id}  Region: {config.region}")
    state.set('PREFIX', config.prefix)
    state.set('REGION', config.region)
    state.set('ACCOUNT_ID', account_id)
    state.set('STORAGE_BACKEND', config.storage_backend)

    cluster = provisioner.ensure(cluster_descriptor(config, providers))
    providers.cluster.update_kubeconfig(cluster)

    if config.storage_backend == BACKEND_AWS_S3:
        bucket = provisioner.ensure(bucket_descriptor(config, providers))
        providers.object_store.configure_bucket(bucket)
        state.set('VPC_ID', providers.cluster.vpc_id(cluster))
        provisioner.ensure(vpc_endpoint_descriptor(providers, state))
        provisioner.ensure(policy_descriptor(config, providers, state))
        state.set('OIDC_PROVIDER', providers.cluster.oidc_issuer(cluster))
        ensure_namespace(config, providers)
        provisioner.ensure(identity_binding_descriptor(config, providers, state))
    else:
        logger.info("MinIO backend: skipping bucket, VPC endpoint, IAM policy and IRSA")

    provisioner.ensure(registry_descriptor(config, providers, state))
    provisioner.ensure(storage_class_descriptor(config, providers))
    return provisioner.results
