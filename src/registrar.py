"""Storage-node registration with the metadata control service.

Each storage-node replica is registered under node id ordinal + 1 with its
stable per-ordinal address. Registration is idempotent: a node the service
already knows is reported as already-registered, and a failure for one
ordinal is a warning that does not stop the others.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from common import (
    STATUS_OK,
    STATUS_SKIPPED,
    STATUS_WARNING,
    AlreadyExistsError,
    DeployError,
    StepResult,
)
from config import DeployConfig

logger = logging.getLogger(__name__)

REGISTERED = 'registered'
ALREADY_REGISTERED = 'already-registered'
REGISTRATION_FAILED = 'failed'


@dataclass
class ReplicaRecord:
    """A storage-node replica as the control service sees it."""
    ordinal: int
    address: str
    pg_port: int
    http_port: int
    availability_zone: str

    @property
    def node_id(self) -> int:
        return self.ordinal + 1


@dataclass
class RegistrationSummary:
    outcomes: dict[int, str] = field(default_factory=dict)
    errors: dict[int, str] = field(default_factory=dict)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes.values() if o == REGISTRATION_FAILED)

    def to_results(self) -> list[StepResult]:
        status_map = {REGISTERED: STATUS_OK, ALREADY_REGISTERED: STATUS_SKIPPED,
                      REGISTRATION_FAILED: STATUS_WARNING}
        return [
            StepResult(f'register-node-{ordinal + 1}', status_map[outcome],
                       self.errors.get(ordinal, outcome))
            for ordinal, outcome in sorted(self.outcomes.items())
        ]


class NodeRegistrar:
    """Registers storage-node replicas by ordinal."""

    def __init__(self, config: DeployConfig, metadata, kube=None):
        self.config = config
        self.metadata = metadata
        self.kube = kube
        self.failures: dict[int, str] = {}

    def record_for(self, ordinal: int, metadata: Optional[dict] = None) -> ReplicaRecord:
        metadata = metadata or {}
        return ReplicaRecord(
            ordinal=ordinal,
            address=metadata.get('address') or self.config.replica_host('pageserver', ordinal),
            pg_port=metadata.get('pg_port', self.config.pageserver_pg_port),
            http_port=metadata.get('http_port', self.config.pageserver_http_port),
            availability_zone=metadata.get('availability_zone', f'az-{ordinal}'),
        )

    def _known_node_ids(self) -> set[int]:
        try:
            nodes = self.metadata.list_nodes()
        except DeployError as e:
            logger.debug(f"Could not list registered nodes: {e}")
            return set()
        ids = (n.get('id', n.get('node_id')) for n in nodes)
        return {int(i) for i in ids if i is not None}

    def register_replica(self, ordinal: int, address: Optional[str] = None,
                         metadata: Optional[dict] = None) -> str:
        """Register one replica.

        Returns REGISTERED, ALREADY_REGISTERED or REGISTRATION_FAILED.
        The reason for a failure is kept in self.failures under the ordinal.
        """
        metadata = dict(metadata or {})
        if address:
            metadata['address'] = address
        record = self.record_for(ordinal, metadata)
        self.failures.pop(ordinal, None)

        if record.node_id in self._known_node_ids():
            logger.info(f"  Node {record.node_id} ({record.address}) already registered")
            return ALREADY_REGISTERED

        logger.info(f"  Registering node {record.node_id} ({record.address})...")
        try:
            self.metadata.register_node(
                record.node_id, record.address, record.pg_port,
                record.http_port, record.availability_zone,
            )
        except AlreadyExistsError:
            logger.info(f"  Node {record.node_id} already registered")
            return ALREADY_REGISTERED
        except DeployError as e:
            logger.warning(f"Failed to register node {record.node_id}: {e}")
            self.failures[ordinal] = str(e)
            return REGISTRATION_FAILED
        return REGISTERED

    def replica_count(self) -> int:
        """Replica count from the live stateful group, falling back to config."""
        if self.kube is not None:
            try:
                group = self.kube.get('statefulset', 'pageserver')
            except DeployError as e:
                logger.debug(f"Could not read pageserver statefulset: {e}")
                group = None
            if group:
                replicas = group.get('spec', {}).get('replicas')
                if replicas:
                    return int(replicas)
        return self.config.pageserver_replicas

    def register_all(self, count: Optional[int] = None) -> RegistrationSummary:
        """Register ordinals 0..count-1, continuing past failures."""
        count = self.replica_count() if count is None else count
        summary = RegistrationSummary()
        for ordinal in range(count):
            summary.outcomes[ordinal] = self.register_replica(ordinal)
            if summary.outcomes[ordinal] == REGISTRATION_FAILED:
                reason = self.failures.get(ordinal, 'unknown error')
                summary.errors[ordinal] = f'registration failed: {reason} (re-run to retry)'
        if summary.failed:
            logger.warning(f"{summary.failed}/{count} node registrations failed")
        else:
            logger.info(f"Storage nodes registered ({count})")
        return summary

