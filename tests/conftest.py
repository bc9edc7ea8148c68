"""Shared pytest fixtures and in-memory provider fakes for neon-deploy tests."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

import pytest
import yaml

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from common import AlreadyExistsError, NotFoundError, ProviderError, TransientProviderError  # noqa: E402
from config import DeployConfig  # noqa: E402
from providers import Providers  # noqa: E402
from state_store import MemoryStateStore  # noqa: E402

REPO_ROOT = Path(__file__).parent.parent
MANIFESTS_DIR = REPO_ROOT / 'manifests'
ACCOUNT_ID = '123456789012'

DATA_PLANE_APPS = ('storage-controller', 'storage-broker', 'safekeeper', 'pageserver', 'proxy')


class FakeClock:
    """Deterministic monotonic clock; sleep() advances time."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


# -----------------------------------------------------------------------------
# Scheduler fake
# -----------------------------------------------------------------------------

def _mark_ready(doc: dict) -> None:
    kind = doc.get('kind', '').lower()
    meta = doc.setdefault('metadata', {})
    if kind in ('deployment', 'statefulset'):
        replicas = doc.get('spec', {}).get('replicas', 1)
        meta['generation'] = 1
        doc['status'] = {'readyReplicas': replicas, 'updatedReplicas': replicas, 'observedGeneration': 1}
    elif kind == 'cluster':
        doc['status'] = {'readyInstances': doc.get('spec', {}).get('instances', 1)}
    elif kind == 'pod':
        doc['status'] = {'phase': 'Running', 'conditions': [{'type': 'Ready', 'status': 'True'}]}


class FakeKube:
    """In-memory scheduler keyed by (lowercase kind, name).

    With auto_ready, applied workloads immediately report full readiness.
    """

    def __init__(self, auto_ready: bool = True):
        self.auto_ready = auto_ready
        self.objects: dict[tuple[str, str], dict] = {}
        self.applied: list[dict] = []
        self.deleted: list[tuple[str, str]] = []
        self.urls_applied: list[str] = []
        self.urls_deleted: list[str] = []
        self.exec_calls: list[tuple[str, list]] = []
        self.exec_output = '{"id": 1}'
        self.exec_error: Optional[Exception] = None
        self.pods_run: list[tuple[str, str, list]] = []
        self.run_pod_error: Optional[Exception] = None
        self.namespaces: set[str] = set()
        self.fail_apply_for: set[str] = set()

    def add(self, kind: str, name: str, labels: Optional[dict] = None, **extra) -> dict:
        obj = {'kind': kind, 'metadata': {'name': name, 'labels': labels or {}}, **extra}
        self.objects[(kind.lower(), name)] = obj
        return obj

    def add_pod(self, name: str, labels: dict, phase: str = 'Running', ready: bool = True) -> dict:
        status = {'phase': phase, 'conditions': [{'type': 'Ready', 'status': 'True' if ready else 'False'}]}
        return self.add('pod', name, labels, status=status)

    def apply(self, document: str, server_side: bool = False) -> str:
        for doc in yaml.safe_load_all(document):
            if not doc:
                continue
            name = doc['metadata']['name']
            if name in self.fail_apply_for:
                raise ProviderError(f"kubectl apply failed for {name}")
            if self.auto_ready:
                _mark_ready(doc)
            kind = doc['kind'].lower()
            if kind == 'namespace':
                self.namespaces.add(name)
            self.objects[(kind, name)] = doc
            self.applied.append(doc)
        return 'applied'

    def apply_url(self, url: str, server_side: bool = True) -> str:
        self.urls_applied.append(url)
        self.namespaces.add('cnpg-system')
        operator = {'kind': 'Deployment', 'metadata': {'name': 'cnpg-controller-manager'},
                    'spec': {'replicas': 1}}
        if self.auto_ready:
            _mark_ready(operator)
        self.objects[('deployment', 'cnpg-controller-manager')] = operator
        return 'applied'

    def delete_url(self, url: str, timeout: int = 60) -> str:
        self.urls_deleted.append(url)
        self.namespaces.discard('cnpg-system')
        return 'deleted'

    def get(self, kind: str, name: str, namespace: Optional[str] = None) -> Optional[dict]:
        return self.objects.get((kind.lower(), name))

    def list(self, kind: str, selector: Optional[str] = None, namespace: Optional[str] = None) -> list[dict]:
        wanted = {}
        if selector:
            for term in selector.split(','):
                key, _, value = term.partition('=')
                wanted[key] = value
        items = []
        for (k, _), obj in self.objects.items():
            if k != kind.lower():
                continue
            labels = obj.get('metadata', {}).get('labels') or {}
            if all(labels.get(key) == value for key, value in wanted.items()):
                items.append(obj)
        return items

    def delete(self, kind: str, name: str, namespace: Optional[str] = None) -> bool:
        self.deleted.append((kind.lower(), name))
        return self.objects.pop((kind.lower(), name), None) is not None

    def exec(self, pod: str, command: list, namespace: Optional[str] = None,
             timeout: Optional[int] = None) -> str:
        self.exec_calls.append((pod, command))
        if self.exec_error is not None:
            raise self.exec_error
        return self.exec_output

    def run_pod(self, name: str, image: str, command: list) -> str:
        self.pods_run.append((name, image, command))
        if self.run_pod_error is not None:
            raise self.run_pod_error
        return ''

    def namespace_exists(self, name: str) -> bool:
        return name in self.namespaces

    def delete_namespace(self, name: str, timeout: int = 120) -> None:
        self.namespaces.discard(name)
        self.objects.clear()


def seed_data_plane(kube: FakeKube, apps=DATA_PLANE_APPS) -> None:
    """Running pods and services for every workload group."""
    for app in apps:
        kube.add_pod(f'{app}-0', {'app': app})
        kube.add('service', app, {'app': app})


# -----------------------------------------------------------------------------
# Metadata API fake
# -----------------------------------------------------------------------------

class FakeMetadata:
    """Storage layer control API holding tenants, timelines and nodes."""

    def __init__(self):
        self.tenants: dict[str, list[dict]] = {}
        self.nodes: dict[int, dict] = {}
        self.fail_nodes: set[int] = set()
        self.fail_tenant_deletes: set[str] = set()
        self.node_list_error: Optional[Exception] = None

    def status(self):
        return {'id': 1}

    def create_tenant(self, tenant_id: str):
        if tenant_id in self.tenants:
            raise AlreadyExistsError(f"tenant {tenant_id} exists")
        self.tenants[tenant_id] = []

    def create_timeline(self, tenant_id, timeline_id, pg_version,
                        ancestor_timeline_id=None, ancestor_start_lsn=None):
        if tenant_id not in self.tenants:
            raise NotFoundError(f"tenant {tenant_id} not found")
        if any(t['timeline_id'] == timeline_id for t in self.tenants[tenant_id]):
            raise AlreadyExistsError(f"timeline {timeline_id} exists")
        self.tenants[tenant_id].append({
            'timeline_id': timeline_id,
            'pg_version': pg_version,
            'ancestor_timeline_id': ancestor_timeline_id,
            'ancestor_lsn': ancestor_start_lsn,
        })

    def list_timelines(self, tenant_id):
        return list(self.tenants.get(tenant_id, []))

    def register_node(self, node_id, host, pg_port, http_port, availability_zone):
        if node_id in self.fail_nodes:
            raise ProviderError(f"node {node_id} rejected")
        if node_id in self.nodes:
            raise AlreadyExistsError(f"node {node_id} exists")
        self.nodes[node_id] = {'id': node_id, 'listen_pg_addr': host, 'listen_pg_port': pg_port,
                               'listen_http_port': http_port, 'availability_zone_id': availability_zone}

    def list_nodes(self):
        if self.node_list_error is not None:
            raise self.node_list_error
        return list(self.nodes.values())

    def list_tenants(self):
        return [{'tenant_id': t} for t in self.tenants]

    def delete_tenant(self, tenant_id):
        if tenant_id in self.fail_tenant_deletes:
            raise ProviderError(f"delete {tenant_id} failed")
        self.tenants.pop(tenant_id, None)


# -----------------------------------------------------------------------------
# Cloud provider fakes
# -----------------------------------------------------------------------------

class FakeAccount:
    def account_id(self) -> str:
        return ACCOUNT_ID


class FakeCluster:
    def __init__(self):
        self.clusters: dict[str, dict] = {}
        self.created: list[str] = []
        self.deleted: list[str] = []
        self.kubeconfigs: list[str] = []

    def describe(self, name):
        return self.clusters.get(name)

    def create(self, cluster_config):
        name = yaml.safe_load(cluster_config)['metadata']['name']
        self.created.append(name)
        self.clusters[name] = {
            'name': name,
            'resourcesVpcConfig': {'vpcId': 'vpc-0abc'},
            'identity': {'oidc': {'issuer': 'https://oidc.eks.us-west-2.amazonaws.com/id/ABC123'}},
        }

    def delete(self, name):
        self.deleted.append(name)
        self.clusters.pop(name, None)

    def update_kubeconfig(self, name):
        self.kubeconfigs.append(name)

    def vpc_id(self, name):
        return self.clusters[name]['resourcesVpcConfig']['vpcId']

    def oidc_issuer(self, name):
        return self.clusters[name]['identity']['oidc']['issuer'].removeprefix('https://')


class FakeNetwork:
    def __init__(self):
        self.endpoints: dict[str, str] = {}
        self.created = 0
        self.deleted: list[str] = []
        self.lose_create_response = False

    def find_gateway_endpoint(self, vpc_id):
        return self.endpoints.get(vpc_id)

    def create_gateway_endpoint(self, vpc_id):
        self.created += 1
        self.endpoints[vpc_id] = f'vpce-{self.created:04d}'
        if self.lose_create_response:
            self.lose_create_response = False
            raise TransientProviderError("aws ec2 create-vpc-endpoint: Read timed out")
        return self.endpoints[vpc_id]

    def endpoint_exists(self, endpoint_id):
        return endpoint_id in self.endpoints.values()

    def delete_endpoint(self, endpoint_id):
        self.deleted.append(endpoint_id)
        self.endpoints = {k: v for k, v in self.endpoints.items() if v != endpoint_id}


class FakeIdentity:
    def __init__(self):
        self.bindings: set[tuple[str, str, str]] = set()
        self.created = 0

    def exists(self, cluster, namespace, name):
        return (cluster, namespace, name) in self.bindings

    def create(self, cluster, namespace, name, policy_arn):
        self.created += 1
        self.bindings.add((cluster, namespace, name))

    def delete(self, cluster, namespace, name):
        self.bindings.discard((cluster, namespace, name))


class FakeObjectStore:
    def __init__(self):
        self.buckets: set[str] = set()
        self.created = 0
        self.configured: list[str] = []
        self.drained: list[str] = []
        self.delete_error: Optional[Exception] = None
        self.configure_error: Optional[Exception] = None

    def bucket_exists(self, bucket):
        return bucket in self.buckets

    def create_bucket(self, bucket):
        self.created += 1
        self.buckets.add(bucket)

    def configure_bucket(self, bucket):
        if self.configure_error is not None:
            raise self.configure_error
        self.configured.append(bucket)

    def drain(self, bucket):
        self.drained.append(bucket)
        return 3

    def delete_bucket(self, bucket):
        if self.delete_error is not None:
            raise self.delete_error
        self.buckets.discard(bucket)


class FakePolicy:
    def __init__(self):
        self.policies: dict[str, dict] = {}
        self.created = 0
        self.detached: list[str] = []
        self.create_error: Optional[Exception] = None

    @staticmethod
    def policy_arn(account_id, name):
        return f'arn:aws:iam::{account_id}:policy/{name}'

    def policy_exists(self, arn):
        return arn in self.policies

    def create_policy(self, name, document):
        if self.create_error is not None:
            raise self.create_error
        self.created += 1
        arn = self.policy_arn(ACCOUNT_ID, name)
        self.policies[arn] = document
        return arn

    def detach_all(self, arn):
        self.detached.append(arn)
        return ['role/pageserver-role']

    def delete_non_default_versions(self, arn):
        return []

    def delete_policy(self, arn):
        self.policies.pop(arn, None)


class FakeRegistry:
    def __init__(self, region: str = 'us-west-2'):
        self.region = region
        self.repos: set[str] = set()
        self.created: list[str] = []

    def registry_url(self, account_id):
        return f'{account_id}.dkr.ecr.{self.region}.amazonaws.com'

    def repository_exists(self, name):
        return name in self.repos

    def create_repository(self, name):
        self.created.append(name)
        self.repos.add(name)

    def delete_repository(self, name):
        self.repos.discard(name)


# -----------------------------------------------------------------------------
# Fixtures
# -----------------------------------------------------------------------------

@pytest.fixture
def make_config(tmp_path):
    """Factory for DeployConfig pointed at tmp paths and the repo manifests."""

    def _make(**overrides) -> DeployConfig:
        values = {
            'state_file': tmp_path / '.env',
            'manifests_dir': MANIFESTS_DIR,
            'report_dir': tmp_path / 'reports',
            'poll_interval': 2,
            'rollout_timeout': 10,
            'stateful_timeout': 10,
            'metadata_db_timeout': 10,
            'compute_ready_timeout': 10,
        }
        values.update(overrides)
        return DeployConfig(**values)

    return _make


@pytest.fixture
def config(make_config):
    return make_config()


@pytest.fixture
def minio_config(make_config):
    return make_config(storage_backend='minio')


@pytest.fixture
def state():
    return MemoryStateStore()


@pytest.fixture
def deployed_state():
    """State as left by a completed aws-s3 provisioning run."""
    return MemoryStateStore({
        'PREFIX': 'neon1',
        'REGION': 'us-west-2',
        'ACCOUNT_ID': ACCOUNT_ID,
        'STORAGE_BACKEND': 'aws-s3',
        'CLUSTER_NAME': 'neon1-cluster',
        'S3_BUCKET': 'neon1-pageserver-data',
        'VPC_ID': 'vpc-0abc',
        'VPC_ENDPOINT_ID': 'vpce-0001',
        'IAM_POLICY_ARN': f'arn:aws:iam::{ACCOUNT_ID}:policy/neon1-pageserver-s3',
        'OIDC_PROVIDER': 'oidc.eks.us-west-2.amazonaws.com/id/ABC123',
        'IRSA_SERVICE_ACCOUNT': 'pageserver-sa',
        'ECR_REGISTRY': f'{ACCOUNT_ID}.dkr.ecr.us-west-2.amazonaws.com',
        'STORAGE_CLASS': 'gp3-encrypted',
    })


@pytest.fixture
def kube():
    return FakeKube()


@pytest.fixture
def metadata():
    return FakeMetadata()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def providers(kube, metadata):
    return Providers(
        account=FakeAccount(),
        cluster=FakeCluster(),
        network=FakeNetwork(),
        identity=FakeIdentity(),
        object_store=FakeObjectStore(),
        policy=FakePolicy(),
        registry=FakeRegistry(),
        kube=kube,
        metadata=metadata,
    )
