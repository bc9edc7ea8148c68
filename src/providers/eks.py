"""Cluster, network endpoint and federated identity providers (EKS)."""

import logging
import os
import tempfile
from dataclasses import dataclass
from typing import Optional

from common import NotFoundError, ProviderError, run_command
from providers.aws import AwsCli, Eksctl, classify_cli_error

logger = logging.getLogger(__name__)


@dataclass
class EksClusterProvider:
    """Managed Kubernetes cluster lifecycle."""
    aws: AwsCli
    eksctl: Eksctl

    def describe(self, name: str) -> Optional[dict]:
        """Return the cluster description, or None if it does not exist."""
        try:
            data = self.aws.call('eks', 'describe-cluster', '--name', name)
        except NotFoundError:
            return None
        return (data or {}).get('cluster')

    def create(self, cluster_config: str) -> None:
        """Create the cluster from an eksctl config document (15-20 minutes)."""
        fd, path = tempfile.mkstemp(prefix='eksctl-cluster-', suffix='.yaml')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(cluster_config)
            self.eksctl.run('create', 'cluster', '-f', path, with_region=False)
        finally:
            os.unlink(path)

    def delete(self, name: str) -> None:
        """Delete the cluster and wait for completion (10-15 minutes)."""
        self.eksctl.run('delete', 'cluster', '--name', name, '--wait')

    def update_kubeconfig(self, name: str) -> None:
        """Point the local kubeconfig at the cluster."""
        cmd = [self.aws.binary, 'eks', 'update-kubeconfig', '--name', name, '--region', self.aws.region]
        rc, _, err = run_command(cmd, timeout=120)
        if rc != 0:
            raise classify_cli_error('aws eks update-kubeconfig', err)

    def vpc_id(self, name: str) -> str:
        cluster = self.describe(name)
        if cluster is None:
            raise NotFoundError(f"Cluster '{name}' not found")
        vpc_id = cluster.get('resourcesVpcConfig', {}).get('vpcId')
        if not vpc_id:
            raise ProviderError(f"Cluster '{name}' reports no VPC")
        return vpc_id

    def oidc_issuer(self, name: str) -> str:
        """OIDC issuer host/path without the https:// scheme."""
        cluster = self.describe(name)
        if cluster is None:
            raise NotFoundError(f"Cluster '{name}' not found")
        issuer = cluster.get('identity', {}).get('oidc', {}).get('issuer', '')
        if not issuer:
            raise ProviderError(f"Cluster '{name}' has no OIDC issuer")
        return issuer.removeprefix('https://')


@dataclass
class VpcEndpointProvider:
    """Gateway endpoint routing object-store traffic inside the VPC."""
    aws: AwsCli

    def _service_name(self) -> str:
        return f'com.amazonaws.{self.aws.region}.s3'

    def find_gateway_endpoint(self, vpc_id: str) -> Optional[str]:
        ids = self.aws.call(
            'ec2', 'describe-vpc-endpoints',
            '--filters', f'Name=service-name,Values={self._service_name()}', f'Name=vpc-id,Values={vpc_id}',
            query="VpcEndpoints[?VpcEndpointType=='Gateway'].VpcEndpointId",
        ) or []
        return ids[0] if ids else None

    def route_tables(self, vpc_id: str) -> list[str]:
        return self.aws.call(
            'ec2', 'describe-route-tables',
            '--filters', f'Name=vpc-id,Values={vpc_id}',
            query='RouteTables[].RouteTableId',
        ) or []

    def create_gateway_endpoint(self, vpc_id: str) -> str:
        route_tables = self.route_tables(vpc_id)
        if not route_tables:
            raise ProviderError(f"No route tables found in VPC {vpc_id}")
        endpoint_id = self.aws.call(
            'ec2', 'create-vpc-endpoint',
            '--vpc-id', vpc_id,
            '--service-name', self._service_name(),
            '--route-table-ids', *route_tables,
            query='VpcEndpoint.VpcEndpointId',
            attempts=1,
        )
        if not endpoint_id:
            raise ProviderError("create-vpc-endpoint returned no endpoint ID")
        return endpoint_id

    def endpoint_exists(self, endpoint_id: str) -> bool:
        try:
            found = self.aws.call(
                'ec2', 'describe-vpc-endpoints', '--vpc-endpoint-ids', endpoint_id,
                query='VpcEndpoints[].VpcEndpointId',
            )
        except NotFoundError:
            return False
        return bool(found)

    def delete_endpoint(self, endpoint_id: str) -> None:
        self.aws.call('ec2', 'delete-vpc-endpoints', '--vpc-endpoint-ids', endpoint_id)


@dataclass
class IrsaBindingProvider:
    """Service account bound to a provider role through the cluster's OIDC issuer."""
    eksctl: Eksctl

    def exists(self, cluster: str, namespace: str, name: str) -> bool:
        try:
            found = self.eksctl.run(
                'get', 'iamserviceaccount', '--cluster', cluster,
                '--namespace', namespace, '--name', name, '-o', 'json',
                parse_json=True,
            )
        except NotFoundError:
            return False
        return bool(found)

    def create(self, cluster: str, namespace: str, name: str, policy_arn: str) -> None:
        self.eksctl.run(
            'create', 'iamserviceaccount', '--cluster', cluster,
            '--namespace', namespace, '--name', name,
            '--attach-policy-arn', policy_arn,
            '--approve', '--override-existing-serviceaccounts',
        )

    def delete(self, cluster: str, namespace: str, name: str) -> None:
        self.eksctl.run(
            'delete', 'iamserviceaccount', '--cluster', cluster,
            '--namespace', namespace, '--name', name,
        )
