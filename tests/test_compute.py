"""Tests for compute instance lifecycle."""

import json
from datetime import datetime, timezone

import pytest
import yaml

from common import (
    STATUS_OK,
    AlreadyExistsError,
    MissingStateError,
    NotFoundError,
    PreconditionError,
    PrerequisiteNotReadyError,
    ProviderError,
)
from compute import (
    ComputeExistsError,
    ComputeManager,
    build_compute_spec,
    connection_instructions,
    spec_configmap,
)

from conftest import FakeKube, seed_data_plane

TENANT_A = 'a1b2c3d4' + '0' * 24
TENANT_B = 'b1b2c3d4' + '0' * 24
TENANT_C = 'c1b2c3d4' + '0' * 24
TIMELINE_1 = '1' * 32
TIMELINE_2 = '2' * 32


def _ids(*values):
    it = iter(values)
    return lambda: next(it)


@pytest.fixture
def ready_kube():
    kube = FakeKube()
    seed_data_plane(kube)
    return kube


def _manager(config, state, kube, metadata, clock, ids):
    return ComputeManager(config, state, kube, metadata, id_factory=_ids(*ids),
                          clock=clock, sleep=clock.sleep)


class TestCreateCompute:
    """Tests for tenant → timeline → compute creation."""

    def test_fresh_compute(self, config, deployed_state, ready_kube, metadata, clock):
        """No ids supplied: new tenant, new timeline, compute-<prefix>."""
        manager = _manager(config, deployed_state, ready_kube, metadata, clock,
                           [TENANT_A, TIMELINE_1, 'f' * 32])

        handle = manager.create_compute()

        assert handle.compute_id == 'compute-a1b2c3d4'
        assert handle.tenant_id == TENANT_A
        assert handle.timeline_id == TIMELINE_1
        assert handle.ready is True
        assert handle.warnings == []
        assert metadata.tenants[TENANT_A][0]['timeline_id'] == TIMELINE_1
        assert metadata.tenants[TENANT_A][0]['pg_version'] == 17

        configmap = ready_kube.get('configmap', 'compute-a1b2c3d4-spec')
        spec = json.loads(configmap['data']['spec.json'])
        assert spec['tenant_id'] == TENANT_A
        assert spec['operation_uuid'] == 'f' * 32
        pod = ready_kube.get('pod', 'compute-a1b2c3d4')
        assert pod['metadata']['labels']['tenant'] == 'a1b2c3d4'
        assert pod['spec']['containers'][0]['image'] == f"{deployed_state.get('ECR_REGISTRY')}/neon/compute:latest"
        assert ready_kube.get('service', 'compute-a1b2c3d4') is not None

    def test_existing_tenant_new_timeline(self, config, deployed_state, ready_kube, metadata, clock):
        """Supplied tenant that already exists is reused."""
        metadata.tenants[TENANT_A] = []
        manager = _manager(config, deployed_state, ready_kube, metadata, clock, [TIMELINE_1, 'f' * 32])

        handle = manager.create_compute(tenant_id=TENANT_A.upper())

        assert handle.tenant_id == TENANT_A
        assert [t['timeline_id'] for t in metadata.tenants[TENANT_A]] == [TIMELINE_1]

    def test_branch_from_ancestor(self, config, deployed_state, ready_kube, metadata, clock):
        metadata.tenants[TENANT_A] = [{'timeline_id': TIMELINE_1}]
        manager = _manager(config, deployed_state, ready_kube, metadata, clock, [TIMELINE_2, 'f' * 32])

        manager.create_compute(tenant_id=TENANT_A, ancestor_timeline_id=TIMELINE_1,
                               ancestor_start_lsn='0/16B5A50')

        branch = metadata.tenants[TENANT_A][1]
        assert branch['ancestor_timeline_id'] == TIMELINE_1
        assert branch['ancestor_lsn'] == '0/16B5A50'

    def test_generated_tenant_collision_is_error(self, config, deployed_state, ready_kube, metadata, clock):
        metadata.tenants[TENANT_A] = []
        manager = _manager(config, deployed_state, ready_kube, metadata, clock, [TENANT_A, TIMELINE_1])

        with pytest.raises(AlreadyExistsError):
            manager.create_compute()

    def test_invalid_id(self, config, deployed_state, ready_kube, metadata, clock):
        manager = _manager(config, deployed_state, ready_kube, metadata, clock, [])

        with pytest.raises(PreconditionError, match='32 hexadecimal'):
            manager.create_compute(tenant_id='not-an-id')

    def test_unhealthy_data_plane_attempts_nothing(self, config, deployed_state, metadata, clock):
        """Missing prerequisites fail before any storage-layer call."""
        kube = FakeKube()
        seed_data_plane(kube, apps=('storage-controller', 'storage-broker', 'safekeeper'))
        manager = _manager(config, deployed_state, kube, metadata, clock, [TENANT_A, TIMELINE_1])

        with pytest.raises(PrerequisiteNotReadyError) as exc_info:
            manager.create_compute()

        assert 'pageserver' in str(exc_info.value)
        assert exc_info.value.hint == 'Run: neon-deploy deploy apply'
        assert metadata.tenants == {}
        assert kube.applied == []

    def test_crashing_pod_is_not_ready(self, config, deployed_state, metadata, clock):
        kube = FakeKube()
        seed_data_plane(kube)
        kube.add_pod('safekeeper-1', {'app': 'safekeeper'}, phase='CrashLoopBackOff', ready=False)
        manager = _manager(config, deployed_state, kube, metadata, clock, [TENANT_A, TIMELINE_1])

        with pytest.raises(PrerequisiteNotReadyError, match='safekeeper-1'):
            manager.create_compute()

    def test_missing_registry_state(self, config, ready_kube, metadata, clock, state):
        manager = _manager(config, state, ready_kube, metadata, clock, [TENANT_A, TIMELINE_1])

        with pytest.raises(MissingStateError, match='ECR_REGISTRY'):
            manager.create_compute()

    def test_readiness_timeout_is_warning(self, config, deployed_state, metadata, clock):
        kube = FakeKube(auto_ready=False)
        seed_data_plane(kube)
        manager = _manager(config, deployed_state, kube, metadata, clock, [TENANT_A, TIMELINE_1, 'f' * 32])

        handle = manager.create_compute()

        assert handle.ready is False
        assert 'did not become Ready within 10s' in handle.warnings[0]
        assert 10 <= clock.now <= 12
        assert kube.get('pod', 'compute-a1b2c3d4') is not None


class TestDeriveComputeId:
    """Tests for compute naming."""

    def test_prefix_collision_uses_full_tenant_id(self, config, deployed_state, ready_kube, metadata, clock):
        other_tenant = 'a1b2c3d4' + 'f' * 24
        ready_kube.add_pod('compute-a1b2c3d4', {'app': 'compute', 'neon/tenant-id': other_tenant,
                                                'neon/timeline-id': TIMELINE_1})
        manager = _manager(config, deployed_state, ready_kube, metadata, clock, [])

        assert manager.derive_compute_id(TENANT_A, TIMELINE_1) == f'compute-{TENANT_A}'

    def test_same_tenant_other_timeline_rejected(self, config, deployed_state, ready_kube, metadata, clock):
        ready_kube.add_pod('compute-a1b2c3d4', {'app': 'compute', 'neon/tenant-id': TENANT_A,
                                                'neon/timeline-id': TIMELINE_1})
        manager = _manager(config, deployed_state, ready_kube, metadata, clock, ['f' * 32])

        with pytest.raises(ComputeExistsError) as exc_info:
            manager.create_compute(tenant_id=TENANT_A, timeline_id=TIMELINE_2)

        assert 'compute teardown compute-a1b2c3d4' in exc_info.value.hint
        assert metadata.tenants == {}

    def test_same_tenant_same_timeline_reuses_name(self, config, deployed_state, ready_kube, metadata, clock):
        ready_kube.add('configmap', 'compute-a1b2c3d4-spec', {'neon/tenant-id': TENANT_A,
                                                              'neon/timeline-id': TIMELINE_1})
        manager = _manager(config, deployed_state, ready_kube, metadata, clock, [])

        assert manager.derive_compute_id(TENANT_A, TIMELINE_1) == 'compute-a1b2c3d4'


class TestTeardown:
    """Tests for compute teardown."""

    def _create_three(self, config, state, kube, metadata, clock):
        manager = _manager(config, state, kube, metadata, clock, [
            TENANT_A, TIMELINE_1, 'f' * 32,
            TENANT_B, TIMELINE_1, 'f' * 32,
            TENANT_C, TIMELINE_1, 'f' * 32,
        ])
        for _ in range(3):
            manager.create_compute()
        return manager

    def test_teardown_all_removes_computes_and_keeps_tenants(
            self, config, deployed_state, ready_kube, metadata, clock):
        manager = self._create_three(config, deployed_state, ready_kube, metadata, clock)
        prompts = []

        summary = manager.teardown_all(confirm_fn=lambda p: prompts.append(p) or True)

        assert summary.deleted == 3
        assert summary.failed == 0
        assert len(prompts) == 1
        assert manager.list_computes() == []
        for cid in ('compute-a1b2c3d4', 'compute-b1b2c3d4', 'compute-c1b2c3d4'):
            assert ready_kube.get('service', cid) is None
            assert ready_kube.get('configmap', f'{cid}-spec') is None
        assert sorted(metadata.tenants) == [TENANT_A, TENANT_B, TENANT_C]

    def test_teardown_all_declined(self, config, deployed_state, ready_kube, metadata, clock):
        manager = self._create_three(config, deployed_state, ready_kube, metadata, clock)

        summary = manager.teardown_all(confirm_fn=lambda p: False)

        assert summary.confirmed is False
        assert len(manager.list_computes()) == 3

    def test_teardown_all_continues_past_failure(self, config, deployed_state, ready_kube, metadata, clock):
        manager = self._create_three(config, deployed_state, ready_kube, metadata, clock)
        original_delete = ready_kube.delete

        def delete(kind, name, namespace=None):
            if name == 'compute-b1b2c3d4':
                raise ProviderError("delete timed out")
            return original_delete(kind, name, namespace)

        ready_kube.delete = delete

        summary = manager.teardown_all(confirm_fn=lambda p: True)

        assert summary.deleted == 2
        assert summary.failed == 1
        assert [c.name for c in manager.list_computes()] == ['compute-b1b2c3d4']

    def test_teardown_no_computes(self, config, deployed_state, ready_kube, metadata, clock):
        manager = _manager(config, deployed_state, ready_kube, metadata, clock, [])

        summary = manager.teardown_all(confirm_fn=lambda p: pytest.fail("prompted"))

        assert summary.results == []

    def test_teardown_all_removes_resources_left_without_pod(
            self, config, deployed_state, ready_kube, metadata, clock):
        """A Service or ConfigMap whose Pod is gone is still found and deleted."""
        ready_kube.add('service', 'compute-a1b2c3d4',
                       {'app': 'compute', 'neon/compute-id': 'compute-a1b2c3d4'})
        ready_kube.add('configmap', 'compute-e1b2c3d4-spec', {'app': 'compute'})
        manager = _manager(config, deployed_state, ready_kube, metadata, clock, [])

        summary = manager.teardown_all(confirm_fn=lambda p: True)

        assert summary.requested == ['compute-a1b2c3d4', 'compute-e1b2c3d4']
        assert summary.deleted == 2
        assert ready_kube.get('service', 'compute-a1b2c3d4') is None
        assert ready_kube.get('configmap', 'compute-e1b2c3d4-spec') is None

    def test_teardown_single(self, config, deployed_state, ready_kube, metadata, clock):
        manager = self._create_three(config, deployed_state, ready_kube, metadata, clock)

        result = manager.teardown_compute('compute-b1b2c3d4')

        assert result.status == STATUS_OK
        assert [c.name for c in manager.list_computes()] == ['compute-a1b2c3d4', 'compute-c1b2c3d4']

    def test_teardown_unknown(self, config, deployed_state, ready_kube, metadata, clock):
        manager = _manager(config, deployed_state, ready_kube, metadata, clock, [])

        with pytest.raises(NotFoundError, match='compute-deadbeef'):
            manager.teardown_compute('compute-deadbeef')


class TestListComputes:
    def test_sorted_with_labels(self, config, deployed_state, ready_kube, metadata, clock):
        ready_kube.add_pod('compute-b', {'app': 'compute', 'neon/tenant-id': TENANT_B})
        ready_kube.add_pod('compute-a', {'app': 'compute', 'tenant': 'a1b2c3d4'}, phase='Pending')
        manager = _manager(config, deployed_state, ready_kube, metadata, clock, [])

        computes = manager.list_computes()

        assert [(c.name, c.phase, c.tenant_id) for c in computes] == [
            ('compute-a', 'Pending', 'a1b2c3d4'),
            ('compute-b', 'Running', TENANT_B),
        ]


class TestComputeSpec:
    """Tests for the generated compute spec."""

    def test_spec_contents(self, config):
        now = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)

        spec = build_compute_spec(config, 'compute-a1b2c3d4', TENANT_A, TIMELINE_1,
                                  operation_id='f' * 32, now=now)

        assert spec['timestamp'] == '2026-01-02T03:04:05.000Z'
        assert spec['cluster']['cluster_id'] == 'compute-a1b2c3d4'
        assert spec['pageserver_connstring'] == 'host=pageserver-0.pageserver.neon.svc.cluster.local port=6400'
        assert spec['safekeeper_connstrings'] == [
            f'safekeeper-{i}.safekeeper.neon.svc.cluster.local:5454' for i in range(3)
        ]
        settings = {s['name']: s['value'] for s in spec['cluster']['settings']}
        assert settings['neon.tenant_id'] == TENANT_A
        assert settings['neon.timeline_id'] == TIMELINE_1
        assert settings['neon.safekeepers'] == ','.join(spec['safekeeper_connstrings'])
        assert settings['shared_preload_libraries'] == 'neon'

    def test_configmap_document(self, config):
        spec = build_compute_spec(config, 'compute-a1b2c3d4', TENANT_A, TIMELINE_1, operation_id='f' * 32)

        doc = yaml.safe_load(spec_configmap(config, 'compute-a1b2c3d4', TENANT_A, TIMELINE_1, spec))

        assert doc['metadata']['name'] == 'compute-a1b2c3d4-spec'
        assert doc['metadata']['labels']['neon/timeline-id'] == TIMELINE_1
        assert json.loads(doc['data']['spec.json']) == spec

    def test_connection_instructions(self, config, deployed_state, ready_kube, metadata, clock):
        manager = _manager(config, deployed_state, ready_kube, metadata, clock, [TENANT_A, TIMELINE_1, 'f' * 32])
        lines = connection_instructions(config, manager.create_compute())

        assert '  kubectl port-forward -n neon pod/compute-a1b2c3d4 5432:5432' in lines
        assert '  neon-deploy compute teardown compute-a1b2c3d4' in lines
