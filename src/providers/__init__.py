"""Narrow interfaces to the external systems the pipelines drive.

Orchestration code depends only on the protocols below. The concrete
adapters shell out to the aws/eksctl/kubectl CLIs or call the storage
layer's HTTP API; tests substitute in-memory fakes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol, runtime_checkable


@runtime_checkable
class ClusterProvider(Protocol):
    def describe(self, name: str) -> Optional[dict]: ...
    def create(self, cluster_config: str) -> None: ...
    def delete(self, name: str) -> None: ...
    def update_kubeconfig(self, name: str) -> None: ...
    def vpc_id(self, name: str) -> str: ...
    def oidc_issuer(self, name: str) -> str: ...


@runtime_checkable
class NetworkEndpointProvider(Protocol):
    def find_gateway_endpoint(self, vpc_id: str) -> Optional[str]: ...
    def create_gateway_endpoint(self, vpc_id: str) -> str: ...
    def endpoint_exists(self, endpoint_id: str) -> bool: ...
    def delete_endpoint(self, endpoint_id: str) -> None: ...


@runtime_checkable
class IdentityBindingProvider(Protocol):
    def exists(self, cluster: str, namespace: str, name: str) -> bool: ...
    def create(self, cluster: str, namespace: str, name: str, policy_arn: str) -> None: ...
    def delete(self, cluster: str, namespace: str, name: str) -> None: ...


@runtime_checkable
class ObjectStoreProvider(Protocol):
    def bucket_exists(self, bucket: str) -> bool: ...
    def create_bucket(self, bucket: str) -> None: ...
    def configure_bucket(self, bucket: str) -> None: ...
    def drain(self, bucket: str) -> int: ...
    def delete_bucket(self, bucket: str) -> None: ...


@runtime_checkable
class PolicyProvider(Protocol):
    def policy_arn(self, account_id: str, name: str) -> str: ...
    def policy_exists(self, arn: str) -> bool: ...
    def create_policy(self, name: str, document: dict) -> str: ...
    def detach_all(self, arn: str) -> list[str]: ...
    def delete_non_default_versions(self, arn: str) -> list[str]: ...
    def delete_policy(self, arn: str) -> None: ...


@runtime_checkable
class RegistryProvider(Protocol):
    def registry_url(self, account_id: str) -> str: ...
    def repository_exists(self, name: str) -> bool: ...
    def create_repository(self, name: str) -> None: ...
    def delete_repository(self, name: str) -> None: ...


@runtime_checkable
class SchedulerClient(Protocol):
    def apply(self, document: str, server_side: bool = False) -> Any: ...
    def apply_url(self, url: str, server_side: bool = True) -> Any: ...
    def delete_url(self, url: str, timeout: int = 60) -> Any: ...
    def get(self, kind: str, name: str, namespace: Optional[str] = None) -> Optional[dict]: ...
    def list(self, kind: str, selector: Optional[str] = None, namespace: Optional[str] = None) -> list[dict]: ...
    def delete(self, kind: str, name: str, namespace: Optional[str] = None) -> bool: ...
    def exec(self, pod: str, command: list[str], namespace: Optional[str] = None,
             timeout: Optional[int] = None) -> str: ...
    def run_pod(self, name: str, image: str, command: list[str]) -> str: ...
    def namespace_exists(self, name: str) -> bool: ...
    def delete_namespace(self, name: str, timeout: int = 120) -> None: ...


@runtime_checkable
class MetadataApi(Protocol):
    def status(self) -> Any: ...
    def create_tenant(self, tenant_id: str) -> Any: ...
    def create_timeline(self, tenant_id: str, timeline_id: str, pg_version: int,
                        ancestor_timeline_id: Optional[str] = None,
                        ancestor_start_lsn: Optional[str] = None) -> Any: ...
    def list_timelines(self, tenant_id: str) -> list[dict]: ...
    def register_node(self, node_id: int, host: str, pg_port: int, http_port: int,
                      availability_zone: str) -> Any: ...
    def list_nodes(self) -> list[dict]: ...
    def list_tenants(self) -> list[dict]: ...
    def delete_tenant(self, tenant_id: str) -> Any: ...


@dataclass
class Providers:
    """All external collaborators for one deployment."""
    account: Any
    cluster: ClusterProvider
    network: NetworkEndpointProvider
    identity: IdentityBindingProvider
    object_store: ObjectStoreProvider
    policy: PolicyProvider
    registry: RegistryProvider
    kube: SchedulerClient
    metadata: MetadataApi


def build_providers(config) -> Providers:
    """Wire the CLI/HTTP adapters for a DeployConfig."""
    from providers.aws import AwsCli, Eksctl
    from providers.ecr import EcrRegistryProvider
    from providers.eks import EksClusterProvider, IrsaBindingProvider, VpcEndpointProvider
    from providers.iam import IamPolicyProvider
    from providers.kube import KubeClient
    from providers.metadata import ExecTransport, HttpTransport, MetadataApiClient
    from providers.s3 import S3ObjectStore

    aws = AwsCli(region=config.region)
    eksctl = Eksctl(region=config.region)
    kube = KubeClient(namespace=config.namespace)

    if config.metadata_transport == 'exec':
        transport = ExecTransport(kube=kube)
    else:
        transport = HttpTransport()

    return Providers(
        account=aws,
        cluster=EksClusterProvider(aws=aws, eksctl=eksctl),
        network=VpcEndpointProvider(aws=aws),
        identity=IrsaBindingProvider(eksctl=eksctl),
        object_store=S3ObjectStore(aws=aws),
        policy=IamPolicyProvider(aws=aws),
        registry=EcrRegistryProvider(aws=aws),
        kube=kube,
        metadata=MetadataApiClient(
            transport=transport,
            pageserver_url=config.resolved_pageserver_url(),
            controller_url=config.resolved_storage_controller_url(),
        ),
    )
