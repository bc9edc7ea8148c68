"""Per-tenant compute instance lifecycle.

A compute instance is a Postgres process bound to one (tenant, timeline)
pair. Creating one composes three control planes in a fixed order:

1. storage layer: tenant, then timeline (optionally branched)
2. generated configuration: the compute spec JSON, stored in a ConfigMap
3. scheduler: the Pod and its Service

Teardown removes only the scheduler resources (Pod, Service, ConfigMap).
Tenant and timeline data stay in the storage layer.
"""

import json
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

import yaml

from common import (
    STATUS_OK,
    AlreadyExistsError,
    NotFoundError,
    PreconditionError,
    PrerequisiteNotReadyError,
    StepResult,
    generate_id,
    run_step,
)
from config import DeployConfig
from readiness import ReadinessTimeout, pod_ready_probe, wait_until_ready
from templater import render_file

logger = logging.getLogger(__name__)

ID_PATTERN = re.compile(r'^[0-9a-f]{32}$')
COMPUTE_PREFIX_LEN = 8

COMPUTE_APP_LABEL = 'compute'
TENANT_LABEL = 'neon/tenant-id'
TIMELINE_LABEL = 'neon/timeline-id'
COMPUTE_ID_LABEL = 'neon/compute-id'
SPEC_CONFIGMAP_SUFFIX = '-spec'

# kind → name suffix for the resources making up one compute
COMPUTE_KINDS = (
    ('pod', ''),
    ('service', ''),
    ('configmap', SPEC_CONFIGMAP_SUFFIX),
)

# Components that must be healthy before a compute can attach
PREREQUISITE_APPS = ('storage-controller', 'storage-broker', 'safekeeper', 'pageserver')

COMPUTE_SETTINGS = [
    ('port', '5432', 'integer'),
    ('listen_addresses', '0.0.0.0', 'string'),
    ('max_connections', '100', 'integer'),
    ('shared_buffers', '131072', 'integer'),
    ('fsync', 'off', 'bool'),
    ('wal_level', 'logical', 'enum'),
    ('hot_standby', 'on', 'bool'),
    ('shared_preload_libraries', 'neon', 'string'),
    ('synchronous_standby_names', 'walproposer', 'string'),
]

REPLICATION_SETTINGS = [
    ('max_wal_senders', '10', 'integer'),
    ('max_replication_slots', '10', 'integer'),
    ('wal_sender_timeout', '0', 'integer'),
    ('password_encryption', 'md5', 'enum'),
    ('log_connections', 'on', 'bool'),
]


class ComputeExistsError(PreconditionError):
    """The tenant already has a compute bound to a different timeline."""


@dataclass
class ComputeHandle:
    """Result of a compute creation.

    Attributes:
        compute_id: Name shared by the Pod, Service and '<id>-spec' ConfigMap
        tenant_id: 32-hex tenant identifier
        timeline_id: 32-hex timeline identifier
        spec: The generated compute spec document
        ready: Whether the Pod reported Ready within the timeout
        warnings: Non-fatal problems (e.g. readiness timeout)
    """
    compute_id: str
    tenant_id: str
    timeline_id: str
    spec: dict
    ready: bool = False
    warnings: list[str] = field(default_factory=list)


@dataclass
class ComputeSummary:
    name: str
    phase: str
    tenant_id: str = ''
    timeline_id: str = ''
    created: str = ''


@dataclass
class ComputeTeardownSummary:
    """Aggregate result of tearing down several computes."""
    requested: list[str] = field(default_factory=list)
    results: list[StepResult] = field(default_factory=list)
    confirmed: bool = True

    @property
    def deleted(self) -> int:
        return sum(1 for r in self.results if r.status == STATUS_OK)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if r.failed)


def validate_id(value: str, kind: str) -> str:
    value = value.strip().lower()
    if not ID_PATTERN.match(value):
        raise PreconditionError(
            f"Invalid {kind} id '{value}': expected 32 hexadecimal characters",
        )
    return value


def pageserver_connstring(config: DeployConfig) -> str:
    return f'host={config.replica_host("pageserver", 0)} port={config.pageserver_pg_port}'


def safekeeper_connstrings(config: DeployConfig) -> list[str]:
    return [
        f'{config.replica_host("safekeeper", i)}:{config.safekeeper_pg_port}'
        for i in range(config.safekeeper_replicas)
    ]


def build_compute_spec(
    config: DeployConfig,
    compute_id: str,
    tenant_id: str,
    timeline_id: str,
    operation_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict:
    """Generate the compute spec document the compute process boots from."""
    now = now or datetime.now(timezone.utc)
    pageserver = pageserver_connstring(config)
    safekeepers = safekeeper_connstrings(config)

    settings = [{'name': n, 'value': v, 'vartype': t} for n, v, t in COMPUTE_SETTINGS]
    settings += [
        {'name': 'neon.tenant_id', 'value': tenant_id, 'vartype': 'string'},
        {'name': 'neon.timeline_id', 'value': timeline_id, 'vartype': 'string'},
        {'name': 'neon.pageserver_connstring', 'value': pageserver, 'vartype': 'string'},
        {'name': 'neon.safekeepers', 'value': ','.join(safekeepers), 'vartype': 'string'},
    ]
    settings += [{'name': n, 'value': v, 'vartype': t} for n, v, t in REPLICATION_SETTINGS]

    return {
        'format_version': 1.0,
        'timestamp': now.strftime('%Y-%m-%dT%H:%M:%S.000Z'),
        'operation_uuid': operation_id or generate_id(),
        'cluster': {
            'cluster_id': compute_id,
            'name': compute_id,
            'roles': [{'name': 'postgres', 'encrypted_password': None, 'options': None}],
            'databases': [{'name': 'postgres', 'owner': 'postgres'}],
            'settings': settings,
        },
        'delta_operations': [],
        'tenant_id': tenant_id,
        'timeline_id': timeline_id,
        'pageserver_connstring': pageserver,
        'safekeeper_connstrings': safekeepers,
        'mode': 'Primary',
        'skip_pg_catalog_updates': False,
    }


def spec_configmap(config: DeployConfig, compute_id: str, tenant_id: str,
                   timeline_id: str, spec: dict) -> str:
    """ConfigMap document carrying spec.json."""
    document = {
        'apiVersion': 'v1',
        'kind': 'ConfigMap',
        'metadata': {
            'name': f'{compute_id}{SPEC_CONFIGMAP_SUFFIX}',
            'namespace': config.namespace,
            'labels': compute_labels(compute_id, tenant_id, timeline_id),
        },
        'data': {'spec.json': json.dumps(spec, indent=2)},
    }
    return yaml.safe_dump(document, sort_keys=False)


def compute_labels(compute_id: str, tenant_id: str, timeline_id: str) -> dict[str, str]:
    return {
        'app': COMPUTE_APP_LABEL,
        'tenant': tenant_id[:COMPUTE_PREFIX_LEN],
        TENANT_LABEL: tenant_id,
        TIMELINE_LABEL: timeline_id,
        COMPUTE_ID_LABEL: compute_id,
    }


def _pod_healthy(pod: dict) -> bool:
    status = pod.get('status', {})
    if status.get('phase') != 'Running':
        return False
    for condition in status.get('conditions', []) or []:
        if condition.get('type') == 'Ready':
            return condition.get('status') == 'True'
    return True


class ComputeManager:
    """Creates, lists and tears down compute instances."""

    def __init__(
        self,
        config: DeployConfig,
        state,
        kube,
        metadata,
        id_factory: Callable[[], str] = generate_id,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.state = state
        self.kube = kube
        self.metadata = metadata
        self.id_factory = id_factory
        self.clock = clock
        self.sleep = sleep

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def check_prerequisites(self) -> None:
        """Fail fast unless the data plane and control service are healthy."""
        for app in PREREQUISITE_APPS:
            pods = self.kube.list('pod', selector=f'app={app}')
            unhealthy = [p['metadata']['name'] for p in pods if not _pod_healthy(p)]
            if not pods or unhealthy:
                detail = f"not running: {', '.join(unhealthy)}" if unhealthy else 'no pods found'
                raise PrerequisiteNotReadyError(
                    f"{app} is not ready ({detail})",
                    hint="Run: neon-deploy deploy apply",
                )
        logger.info("Data plane is healthy.")

    def derive_compute_id(self, tenant_id: str, timeline_id: str) -> str:
        """compute-<first 8 hex of tenant>, or the full id if the prefix is taken.

        Raises:
            ComputeExistsError: If this tenant's compute is bound to another timeline
        """
        short = f'compute-{tenant_id[:COMPUTE_PREFIX_LEN]}'
        for candidate in (short, f'compute-{tenant_id}'):
            labels = self._existing_labels(candidate)
            if labels is None:
                return candidate
            owner = labels.get(TENANT_LABEL)
            if owner == tenant_id:
                bound = labels.get(TIMELINE_LABEL)
                if bound and bound != timeline_id:
                    raise ComputeExistsError(
                        f"Tenant {tenant_id} already has compute {candidate} on timeline {bound}",
                        hint=f"Run: neon-deploy compute teardown {candidate}",
                    )
                return candidate
            if candidate == short:
                logger.warning(f"Compute id {short} belongs to tenant {owner}; using full tenant id")
        raise ComputeExistsError(f"No free compute id for tenant {tenant_id}")

    def _existing_labels(self, compute_id: str) -> Optional[dict]:
        for kind, name in (('pod', compute_id), ('configmap', f'{compute_id}{SPEC_CONFIGMAP_SUFFIX}')):
            obj = self.kube.get(kind, name)
            if obj is not None:
                return obj.get('metadata', {}).get('labels', {}) or {}
        return None

    def _ensure_tenant(self, tenant_id: str, supplied: bool) -> None:
        logger.info(f"Creating tenant {tenant_id}...")
        try:
            self.metadata.create_tenant(tenant_id)
        except AlreadyExistsError:
            if not supplied:
                raise
            logger.info(f"Tenant {tenant_id} already exists")

    def _ensure_timeline(self, tenant_id: str, timeline_id: str, supplied: bool,
                         ancestor_timeline_id: Optional[str], ancestor_start_lsn: Optional[str]) -> None:
        branch = f" (branch of {ancestor_timeline_id})" if ancestor_timeline_id else ''
        logger.info(f"Creating timeline {timeline_id}{branch}...")
        try:
            self.metadata.create_timeline(
                tenant_id, timeline_id, self.config.pg_version,
                ancestor_timeline_id=ancestor_timeline_id,
                ancestor_start_lsn=ancestor_start_lsn,
            )
        except AlreadyExistsError:
            if not supplied:
                raise
            logger.info(f"Timeline {timeline_id} already exists")

    def create_compute(
        self,
        tenant_id: Optional[str] = None,
        timeline_id: Optional[str] = None,
        ancestor_timeline_id: Optional[str] = None,
        ancestor_start_lsn: Optional[str] = None,
    ) -> ComputeHandle:
        """Create tenant → timeline → compute.

        Supplied ids may refer to existing tenants/timelines. A readiness
        timeout is reported as a warning on the handle, not raised.

        Raises:
            PrerequisiteNotReadyError: Data plane unhealthy (nothing attempted)
            ComputeExistsError: Tenant's compute is bound to another timeline
            ProviderError: Storage layer or scheduler call failed
        """
        tenant_supplied = tenant_id is not None
        timeline_supplied = timeline_id is not None
        tenant_id = validate_id(tenant_id, 'tenant') if tenant_supplied else self.id_factory()
        timeline_id = validate_id(timeline_id, 'timeline') if timeline_supplied else self.id_factory()
        if ancestor_timeline_id:
            ancestor_timeline_id = validate_id(ancestor_timeline_id, 'ancestor timeline')

        registry = self.state.require('ECR_REGISTRY')
        self.check_prerequisites()
        compute_id = self.derive_compute_id(tenant_id, timeline_id)

        self._ensure_tenant(tenant_id, tenant_supplied)
        self._ensure_timeline(tenant_id, timeline_id, timeline_supplied,
                              ancestor_timeline_id, ancestor_start_lsn)

        logger.info(f"Tenant ID:   {tenant_id}")
        logger.info(f"Timeline ID: {timeline_id}")
        logger.info(f"Compute ID:  {compute_id}")

        spec = build_compute_spec(self.config, compute_id, tenant_id, timeline_id,
                                  operation_id=self.id_factory())
        logger.info("Creating ConfigMap with compute spec...")
        self.kube.apply(spec_configmap(self.config, compute_id, tenant_id, timeline_id, spec))

        logger.info("Deploying compute pod...")
        self.kube.apply(render_file(self.config.manifests_dir / 'compute' / 'compute.yaml', {
            'COMPUTE_ID': compute_id,
            'NAMESPACE': self.config.namespace,
            'ECR_REGISTRY': registry,
            'IMAGE_TAG': self.config.image_tag,
            'TENANT_PREFIX': tenant_id[:COMPUTE_PREFIX_LEN],
            'TENANT_ID': tenant_id,
            'TIMELINE_ID': timeline_id,
        }))

        handle = ComputeHandle(compute_id, tenant_id, timeline_id, spec)
        try:
            wait_until_ready(
                pod_ready_probe(self.kube, compute_id),
                interval=min(self.config.poll_interval, self.config.compute_ready_timeout),
                timeout=self.config.compute_ready_timeout,
                description=f'compute {compute_id}',
                clock=self.clock, sleep=self.sleep,
            )
            handle.ready = True
        except ReadinessTimeout as e:
            message = (f"Pod did not become Ready within {self.config.compute_ready_timeout}s. "
                       f"Check: kubectl describe pod {compute_id} -n {self.config.namespace}")
            logger.warning(message)
            logger.debug(str(e))
            handle.warnings.append(message)
        return handle

    # -------------------------------------------------------------------------
    # Enumeration
    # -------------------------------------------------------------------------

    def list_computes(self) -> list[ComputeSummary]:
        """Compute pods in the namespace (read-only)."""
        summaries = []
        for pod in self.kube.list('pod', selector=f'app={COMPUTE_APP_LABEL}'):
            meta = pod.get('metadata', {})
            labels = meta.get('labels', {}) or {}
            summaries.append(ComputeSummary(
                name=meta.get('name', ''),
                phase=pod.get('status', {}).get('phase', 'Unknown'),
                tenant_id=labels.get(TENANT_LABEL) or labels.get('tenant', ''),
                timeline_id=labels.get(TIMELINE_LABEL, ''),
                created=meta.get('creationTimestamp', ''),
            ))
        return sorted(summaries, key=lambda s: s.name)

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    def _resources(self, compute_id: str) -> list[tuple[str, str]]:
        return [(kind, f'{compute_id}{suffix}') for kind, suffix in COMPUTE_KINDS]

    def teardown_compute(self, compute_id: str) -> StepResult:
        """Delete the compute's Pod, Service and ConfigMap.

        Raises:
            NotFoundError: If none of the three resources exist
        """
        present = [(k, n) for k, n in self._resources(compute_id) if self.kube.get(k, n) is not None]
        if not present:
            raise NotFoundError(f"Compute '{compute_id}' not found in namespace '{self.config.namespace}'")

        logger.info(f"Tearing down compute: {compute_id}")
        for kind, name in present:
            self.kube.delete(kind, name)
        logger.info("Tenant/timeline data remains in the storage layer; only the compute was removed.")
        return StepResult(f'teardown-{compute_id}', STATUS_OK, f"deleted {len(present)} resources")

    def compute_ids(self) -> list[str]:
        """Ids of every compute with a labelled Pod, Service or ConfigMap."""
        ids = set()
        for kind, _ in COMPUTE_KINDS:
            for item in self.kube.list(kind, selector=f'app={COMPUTE_APP_LABEL}'):
                meta = item.get('metadata', {})
                compute_id = (meta.get('labels') or {}).get(COMPUTE_ID_LABEL)
                if not compute_id:
                    compute_id = meta.get('name', '')
                    if kind == 'configmap' and compute_id.endswith(SPEC_CONFIGMAP_SUFFIX):
                        compute_id = compute_id[:-len(SPEC_CONFIGMAP_SUFFIX)]
                if compute_id:
                    ids.add(compute_id)
        return sorted(ids)

    def teardown_all(self, confirm_fn: Callable[[str], bool]) -> ComputeTeardownSummary:
        """Tear down every compute after confirmation, continuing past failures.

        Computes are found by label across Pods, Services and ConfigMaps, so
        a Service or ConfigMap left without its Pod is removed too.
        """
        names = self.compute_ids()
        summary = ComputeTeardownSummary(requested=names)
        if not names:
            logger.info("No compute resources found.")
            return summary

        logger.info(f"Found computes: {' '.join(names)}")
        if not confirm_fn("Delete ALL compute pods, services, and configmaps? [y/N] "):
            logger.info("Aborted.")
            summary.confirmed = False
            return summary

        for name in names:
            summary.results.append(run_step(f'teardown-{name}', lambda n=name: self.teardown_compute(n)))
        if summary.failed:
            logger.warning(f"{summary.failed}/{len(names)} compute teardowns failed; re-run to retry")
        else:
            logger.info("All compute resources deleted.")
        return summary


def connection_instructions(config: DeployConfig, handle: ComputeHandle) -> list[str]:
    """Operator-facing connection hints for a new compute."""
    ns = config.namespace
    cid = handle.compute_id
    return [
        "Compute node deployed:",
        f"  Pod:         {cid}",
        f"  Tenant ID:   {handle.tenant_id}",
        f"  Timeline ID: {handle.timeline_id}",
        f"  Service:     {config.service_host(cid)}:5432",
        "",
        "Connect from your machine:",
        f"  kubectl port-forward -n {ns} pod/{cid} 5432:5432",
        "  psql postgresql://postgres@localhost:5432/postgres",
        "",
        "Or connect from within the cluster:",
        f"  psql postgresql://postgres@{config.service_host(cid)}:5432/postgres",
        "",
        "Teardown this compute:",
        f"  neon-deploy compute teardown {cid}",
    ]

