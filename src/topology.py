"""The fixed deployment topology as an explicit stage graph.

namespace → storage classes → [object store] → metadata DB operator →
metadata DB → storage controller → storage broker → safekeepers →
pageservers → node registration → proxy

Each stage renders its template from deployment state and configuration,
applies it, and declares the readiness probe the sequencer blocks on.
"""

import logging
from typing import Optional

from common import DeployError
from config import BACKEND_AWS_S3, BACKEND_MINIO, DeployConfig
from readiness import ready_instances_probe, rollout_probe
from registrar import NodeRegistrar
from sequencer import DeploymentSequencer, Stage
from templater import ConditionalFragment, render_file

logger = logging.getLogger(__name__)

MINIO_CREDENTIALS_SECRET = 'minio-credentials'
MINIO_INIT_IMAGE = 'minio/mc'

# Keys every deploy needs, and the extra ones the cloud object store needs
DEPLOY_REQUIRED_KEYS = ('ECR_REGISTRY', 'CLUSTER_NAME', 'REGION')
AWS_S3_REQUIRED_KEYS = ('S3_BUCKET', 'IAM_POLICY_ARN')


def storage_fragments(config: DeployConfig) -> list[ConditionalFragment]:
    """Backend-dependent template fragments."""
    minio_endpoint = f'http://{config.service_host("minio")}:9000'
    return [
        ConditionalFragment('REMOTE_STORAGE_EXTRA', {
            BACKEND_MINIO: f'endpoint = "{minio_endpoint}"',
        }),
        ConditionalFragment('S3_CREDENTIALS_ENV', {
            BACKEND_MINIO: (
                '- name: AWS_ACCESS_KEY_ID\n'
                '  valueFrom:\n'
                f'    secretKeyRef: {{name: {MINIO_CREDENTIALS_SECRET}, key: accesskey}}\n'
                '- name: AWS_SECRET_ACCESS_KEY\n'
                '  valueFrom:\n'
                f'    secretKeyRef: {{name: {MINIO_CREDENTIALS_SECRET}, key: secretkey}}'
            ),
        }),
    ]


def bucket_for(config: DeployConfig, state) -> str:
    if config.storage_backend == BACKEND_AWS_S3:
        return state.require('S3_BUCKET')
    return config.minio_bucket


def substitutions(config: DeployConfig, state) -> dict[str, object]:
    """Values for every PLACEHOLDER_<NAME> the templates use."""
    return {
        'NAMESPACE': config.namespace,
        'ECR_REGISTRY': state.require('ECR_REGISTRY'),
        'IMAGE_TAG': config.image_tag,
        'S3_BUCKET': bucket_for(config, state),
        'REGION': state.get('REGION') or config.region,
        'STORAGE_CLASS': state.get('STORAGE_CLASS') or config.storage_class,
        'SERVICE_ACCOUNT': config.service_account,
        'PAGESERVER_REPLICAS': config.pageserver_replicas,
        'SAFEKEEPER_REPLICAS': config.safekeeper_replicas,
        'METADATA_DB_CLUSTER': config.metadata_db_cluster,
        'METADATA_DB_INSTANCES': config.metadata_db_instances,
        'PAGESERVER_PG_PORT': config.pageserver_pg_port,
        'PAGESERVER_HTTP_PORT': config.pageserver_http_port,
        'SAFEKEEPER_PG_PORT': config.safekeeper_pg_port,
        'STORAGE_CONTROLLER_PORT': config.storage_controller_port,
    }


def check_deploy_state(config: DeployConfig, state) -> None:
    """Fail before anything is applied if a required key is missing."""
    for key in DEPLOY_REQUIRED_KEYS:
        state.require(key)
    if config.storage_backend == BACKEND_AWS_S3:
        for key in AWS_S3_REQUIRED_KEYS:
            state.require(key)


class TopologyBuilder:
    """Builds the Stage list for one deployment."""

    def __init__(self, config: DeployConfig, state, kube, registrar: NodeRegistrar):
        self.config = config
        self.state = state
        self.kube = kube
        self.registrar = registrar
        self._registration = None

    def render(self, relative: str) -> str:
        return render_file(
            self.config.manifests_dir / relative,
            substitutions(self.config, self.state),
            storage_fragments(self.config),
            selector=self.config.storage_backend,
        )

    def _apply(self, relative: str):
        def submit() -> None:
            self.kube.apply(self.render(relative))
        return submit

    def _rollout(self, kind: str, name: str, namespace: Optional[str] = None):
        return lambda: rollout_probe(self.kube, kind, name, namespace=namespace)

    def _init_minio_bucket(self) -> Optional[str]:
        bucket = self.config.minio_bucket
        script = (
            'mc alias set local http://minio:9000 minioadmin minioadmin && '
            f'mc mb --ignore-existing local/{bucket}'
        )
        try:
            self.kube.run_pod('minio-init', MINIO_INIT_IMAGE, ['sh', '-c', script])
        except DeployError as e:
            return f"MinIO bucket creation returned an error (may already exist): {e}"
        logger.info(f"[object-store] Bucket '{bucket}' ready")
        return None

    def _install_operator(self) -> None:
        self.kube.apply_url(self.config.cnpg_release_url, server_side=True)

    def _register_nodes(self) -> None:
        self._registration = self.registrar.register_all()

    def _registration_warning(self) -> Optional[str]:
        if self._registration is not None and self._registration.failed:
            return (f"{self._registration.failed} node registration(s) failed; "
                    "re-run: neon-deploy nodes register")
        return None

    def build(self) -> list[Stage]:
        c = self.config
        minio = c.storage_backend == BACKEND_MINIO
        return [
            Stage('namespace', f"Create namespace {c.namespace}",
                  self._apply('namespace.yaml')),
            Stage('storage-classes', "Apply storage classes",
                  self._apply('storage-classes.yaml'), requires=('namespace',)),
            Stage('object-store', "Deploy in-cluster MinIO object store",
                  self._apply('minio/statefulset.yaml'),
                  probe=self._rollout('statefulset', 'minio'),
                  requires=('storage-classes',), timeout=c.rollout_timeout,
                  interval=c.poll_interval, enabled=minio, finalize=self._init_minio_bucket),
            Stage('metadata-db-operator', f"Install CloudNativePG operator v{c.cnpg_version}",
                  self._install_operator,
                  probe=self._rollout('deployment', 'cnpg-controller-manager', c.cnpg_namespace),
                  requires=('namespace',), timeout=c.rollout_timeout, interval=c.poll_interval),
            Stage('metadata-db', f"Metadata database cluster ({c.metadata_db_instances} instances)",
                  self._apply('cnpg/cluster.yaml'),
                  probe=lambda: ready_instances_probe(
                      self.kube, 'cluster', c.metadata_db_cluster, c.metadata_db_instances),
                  requires=('metadata-db-operator', 'storage-classes'),
                  timeout=c.metadata_db_timeout, interval=c.poll_interval),
            Stage('storage-controller', "Deploy storage controller",
                  self._apply('storage-controller/deployment.yaml'),
                  probe=self._rollout('deployment', 'storage-controller'),
                  requires=('metadata-db',), timeout=c.rollout_timeout, interval=c.poll_interval),
            Stage('storage-broker', "Deploy storage broker",
                  self._apply('storage-broker/deployment.yaml'),
                  probe=self._rollout('deployment', 'storage-broker'),
                  requires=('storage-controller',), timeout=c.rollout_timeout,
                  interval=c.poll_interval),
            Stage('safekeepers', f"Deploy safekeepers ({c.safekeeper_replicas} replicas)",
                  self._apply('safekeeper/statefulset.yaml'),
                  probe=self._rollout('statefulset', 'safekeeper'),
                  requires=('storage-broker', 'storage-classes'),
                  timeout=c.stateful_timeout, interval=c.poll_interval),
            Stage('pageservers', f"Deploy pageservers ({c.pageserver_replicas} replicas)",
                  self._apply('pageserver/statefulset.yaml'),
                  probe=self._rollout('statefulset', 'pageserver'),
                  requires=('safekeepers', 'storage-controller', 'object-store'),
                  timeout=c.stateful_timeout, interval=c.poll_interval),
            Stage('node-registration', "Register pageservers with the storage controller",
                  self._register_nodes, requires=('pageservers',),
                  finalize=self._registration_warning),
            Stage('proxy', "Deploy proxy",
                  self._apply('proxy/deployment.yaml'),
                  probe=self._rollout('deployment', 'proxy'),
                  requires=('node-registration',), timeout=c.rollout_timeout,
                  interval=c.poll_interval),
        ]


def build_sequencer(config: DeployConfig, state, kube, metadata, **kwargs) -> DeploymentSequencer:
    registrar = NodeRegistrar(config, metadata, kube=kube)
    stages = TopologyBuilder(config, state, kube, registrar).build()
    return DeploymentSequencer(stages, **kwargs)


def proxy_endpoint(kube) -> Optional[str]:
    """External load balancer hostname of the proxy, once provisioned."""
    svc = kube.get('service', 'proxy')
    ingress = ((svc or {}).get('status', {}).get('loadBalancer', {}).get('ingress') or [])
    if not ingress:
        return None
    return ingress[0].get('hostname') or ingress[0].get('ip')
