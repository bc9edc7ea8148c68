"""Tenant administration through the storage controller.

Clearing tenants removes both controller metadata and storage-node state;
it is used before switching storage backends so the controller matches the
(empty) new object store.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable

from common import STATUS_FAILED, STATUS_OK, DeployError, StepResult

logger = logging.getLogger(__name__)


@dataclass
class TenantClearSummary:
    tenants: list[str] = field(default_factory=list)
    results: list[StepResult] = field(default_factory=list)
    confirmed: bool = True

    @property
    def deleted(self) -> int:
        return sum(1 for r in self.results if r.status == STATUS_OK)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if r.failed)


def list_tenants(metadata) -> list[str]:
    """Tenant ids known to the storage controller."""
    ids = []
    for entry in metadata.list_tenants():
        tenant_id = entry.get('tenant_id') if isinstance(entry, dict) else entry
        if tenant_id:
            ids.append(tenant_id)
    return ids


def clear_tenants(metadata, confirm_fn: Callable[[str], bool]) -> TenantClearSummary:
    """Delete every tenant after confirmation, continuing past failures."""
    summary = TenantClearSummary(tenants=list_tenants(metadata))
    if not summary.tenants:
        logger.info("No tenants found. Nothing to do.")
        return summary

    prompt = (f"Delete ALL {len(summary.tenants)} tenant(s)? This removes controller "
              "metadata and pageserver state. [y/N] ")
    if not confirm_fn(prompt):
        logger.info("Aborted.")
        summary.confirmed = False
        return summary

    for tenant_id in summary.tenants:
        logger.info(f"Deleting tenant {tenant_id}...")
        try:
            metadata.delete_tenant(tenant_id)
        except DeployError as e:
            logger.warning(f"Failed to delete tenant {tenant_id}: {e}")
            summary.results.append(StepResult(f'tenant-{tenant_id}', STATUS_FAILED, str(e)))
            continue
        summary.results.append(StepResult(f'tenant-{tenant_id}', STATUS_OK))

    if summary.failed:
        logger.warning("Some tenants failed to delete. Re-run to retry.")
    else:
        logger.info("All tenants deleted. Storage controller metadata is clean.")
    return summary
