"""Reverse-order destruction of the whole deployment.

Steps run in reverse dependency order. Each step checks existence first and
reports 'absent' when there is nothing to delete, so the sequence can be
re-run after a partial failure. A failing step does not stop the remaining
ones; the failures are counted and the state file is kept until a run
completes without any.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from common import (
    STATUS_ABSENT,
    STATUS_OK,
    STATUS_SKIPPED,
    STATUS_WARNING,
    StepResult,
    run_step,
)
from config import BACKEND_AWS_S3, DeployConfig
from providers import Providers

logger = logging.getLogger(__name__)

CONFIRM_WORD = 'yes'


@dataclass
class TeardownSummary:
    confirmed: bool = True
    results: list[StepResult] = field(default_factory=list)
    state_removed: bool = False

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if r.failed)

    @property
    def warnings(self) -> int:
        return sum(1 for r in self.results if r.status == STATUS_WARNING)


class TeardownOrchestrator:
    """Destroys every resource recorded in the deployment state."""

    def __init__(self, config: DeployConfig, state, providers: Providers,
                 confirm_fn: Callable[[str], bool]):
        self.config = config
        self.state = state
        self.providers = providers
        self.confirm_fn = confirm_fn
        self._cluster_present: Optional[bool] = None

    @property
    def aws_s3(self) -> bool:
        return self.config.storage_backend == BACKEND_AWS_S3

    @property
    def cluster_name(self) -> str:
        return self.state.get('CLUSTER_NAME') or self.config.cluster_name

    @property
    def bucket_name(self) -> str:
        return self.state.get('S3_BUCKET') or self.config.bucket_name

    def plan(self) -> list[str]:
        """Human-readable list of what will be destroyed."""
        lines = [
            f"Storage Backend: {self.config.storage_backend}",
            f"EKS Cluster:     {self.cluster_name}",
        ]
        if self.aws_s3:
            lines += [
                f"S3 Bucket:       {self.bucket_name}  (all objects force-deleted)",
                f"VPC Endpoint:    {self.state.get('VPC_ENDPOINT_ID') or '<not set>'}",
                f"IAM Policy:      {self.state.get('IAM_POLICY_ARN') or '<not set>'}",
            ]
        else:
            lines.append("MinIO:           destroyed with namespace")
        lines += [
            f"ECR Repos:       {' '.join(self.config.registry_repos)}",
            f"Region:          {self.state.get('REGION') or self.config.region}",
        ]
        return lines

    def steps(self) -> list[tuple[str, Callable[[], StepResult]]]:
        return [
            ('namespace', self._delete_namespace),
            ('metadata-db-operator', self._delete_operator),
            ('irsa-binding', self._delete_identity_binding),
            ('vpc-endpoint', self._delete_endpoint),
            ('eks-cluster', self._delete_cluster),
            ('ecr-repositories', self._delete_registries),
            ('s3-bucket', self._delete_bucket),
            ('iam-policy', self._delete_policy),
        ]

    def teardown_all(self) -> TeardownSummary:
        """Confirm, then run every step. Requires the operator to type 'yes'."""
        print("")
        print("!! TEARDOWN - This will PERMANENTLY DELETE the following resources !!")
        print("")
        for line in self.plan():
            print(f"  {line}")
        print("")
        if not self.confirm_fn(f"Type '{CONFIRM_WORD}' to confirm destruction: "):
            logger.info("Aborted.")
            return TeardownSummary(confirmed=False)

        summary = TeardownSummary()
        steps = self.steps()
        for i, (name, fn) in enumerate(steps, 1):
            logger.info(f"Step {i}/{len(steps)}: {name}")
            summary.results.append(run_step(name, fn))

        if summary.failed:
            logger.warning(f"{summary.failed} teardown step(s) failed; state file kept. Re-run to retry.")
        else:
            self.state.remove()
            summary.state_removed = True
            logger.info("Teardown complete. State file removed.")
        return summary

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    def _cluster_exists(self) -> bool:
        if self._cluster_present is None:
            self._cluster_present = self.providers.cluster.describe(self.cluster_name) is not None
            if self._cluster_present:
                self.providers.cluster.update_kubeconfig(self.cluster_name)
        return self._cluster_present

    def _delete_namespace(self) -> StepResult:
        ns = self.config.namespace
        if not self._cluster_exists():
            return StepResult('namespace', STATUS_ABSENT, "cluster not found")
        if not self.providers.kube.namespace_exists(ns):
            logger.info(f"Namespace '{ns}' not found - skipping.")
            return StepResult('namespace', STATUS_ABSENT, f"namespace {ns} not found")
        self.providers.kube.delete_namespace(ns)
        logger.info("Namespace deleted.")
        return StepResult('namespace', STATUS_OK, f"deleted namespace {ns}")

    def _delete_operator(self) -> StepResult:
        if not self._cluster_exists():
            return StepResult('metadata-db-operator', STATUS_ABSENT, "cluster not found")
        if not self.providers.kube.namespace_exists(self.config.cnpg_namespace):
            logger.info("CNPG operator not found - skipping.")
            return StepResult('metadata-db-operator', STATUS_ABSENT, "operator not installed")
        self.providers.kube.delete_url(self.config.cnpg_release_url)
        return StepResult('metadata-db-operator', STATUS_OK, "operator removed")

    def _delete_identity_binding(self) -> StepResult:
        if not self.aws_s3:
            return StepResult('irsa-binding', STATUS_SKIPPED, "MinIO mode - no IRSA to delete")
        if not self._cluster_exists():
            return StepResult('irsa-binding', STATUS_ABSENT, "cluster not found")
        sa = self.config.service_account
        identity = self.providers.identity
        if not identity.exists(self.cluster_name, self.config.namespace, sa):
            logger.info("IRSA service account not found - skipping.")
            return StepResult('irsa-binding', STATUS_ABSENT, f"{sa} not found")
        identity.delete(self.cluster_name, self.config.namespace, sa)
        return StepResult('irsa-binding', STATUS_OK, f"deleted {sa}")

    def _delete_endpoint(self) -> StepResult:
        if not self.aws_s3:
            return StepResult('vpc-endpoint', STATUS_SKIPPED, "MinIO mode - no VPC endpoint to delete")
        endpoint_id = self.state.get('VPC_ENDPOINT_ID')
        if not endpoint_id:
            return StepResult('vpc-endpoint', STATUS_ABSENT, "no VPC_ENDPOINT_ID in state")
        if not self.providers.network.endpoint_exists(endpoint_id):
            return StepResult('vpc-endpoint', STATUS_ABSENT, f"{endpoint_id} not found")
        self.providers.network.delete_endpoint(endpoint_id)
        logger.info(f"VPC endpoint {endpoint_id} deleted.")
        return StepResult('vpc-endpoint', STATUS_OK, f"deleted {endpoint_id}")

    def _delete_cluster(self) -> StepResult:
        name = self.cluster_name
        if not self._cluster_exists():
            logger.info(f"EKS cluster '{name}' not found - skipping.")
            return StepResult('eks-cluster', STATUS_ABSENT, f"{name} not found")
        logger.info(f"Deleting EKS cluster '{name}' (this takes 10-15 minutes)...")
        self.providers.cluster.delete(name)
        self._cluster_present = False
        return StepResult('eks-cluster', STATUS_OK, f"deleted {name}")

    def _delete_registries(self) -> StepResult:
        registry = self.providers.registry
        deleted = []
        for repo in self.config.registry_repos:
            if registry.repository_exists(repo):
                registry.delete_repository(repo)
                logger.info(f"  Deleted ECR repo: {repo}")
                deleted.append(repo)
            else:
                logger.info(f"  ECR repo '{repo}' not found - skipping.")
        if not deleted:
            return StepResult('ecr-repositories', STATUS_ABSENT, "no repositories found")
        return StepResult('ecr-repositories', STATUS_OK, f"deleted {len(deleted)} repositories")

    def _delete_bucket(self) -> StepResult:
        if not self.aws_s3:
            return StepResult('s3-bucket', STATUS_SKIPPED, "MinIO mode - bucket deleted with namespace")
        bucket = self.bucket_name
        store = self.providers.object_store
        if not store.bucket_exists(bucket):
            logger.info(f"S3 bucket '{bucket}' not found - skipping.")
            return StepResult('s3-bucket', STATUS_ABSENT, f"{bucket} not found")
        logger.info("  Emptying bucket (all versions + delete markers)...")
        removed = store.drain(bucket)
        store.delete_bucket(bucket)
        logger.info("  S3 bucket deleted.")
        return StepResult('s3-bucket', STATUS_OK, f"deleted {bucket} ({removed} object versions)")

    def _delete_policy(self) -> StepResult:
        if not self.aws_s3:
            return StepResult('iam-policy', STATUS_SKIPPED, "MinIO mode - no IAM policy to delete")
        arn = self.state.get('IAM_POLICY_ARN')
        if not arn:
            return StepResult('iam-policy', STATUS_ABSENT, "no IAM_POLICY_ARN in state")
        policy = self.providers.policy
        if not policy.policy_exists(arn):
            logger.info("IAM policy not found - skipping.")
            return StepResult('iam-policy', STATUS_ABSENT, f"{arn} not found")
        policy.detach_all(arn)
        policy.delete_non_default_versions(arn)
        policy.delete_policy(arn)
        logger.info("  IAM policy deleted.")
        return StepResult('iam-policy', STATUS_OK, f"deleted {arn}")
