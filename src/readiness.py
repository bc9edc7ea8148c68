"""Bounded readiness polling.

Used wherever a resource becomes ready asynchronously and the provider
offers no blocking wait: workload rollouts, the metadata database reaching
full write quorum, compute instances reporting Ready.

A probe is a side-effect-free callable returning (ready, observed). The
observed value is kept so a timeout can report what was last seen.
"""

import logging
import time
from typing import Any, Callable, Optional

from common import DeployError, TransientProviderError

logger = logging.getLogger(__name__)

Probe = Callable[[], tuple[bool, Any]]


class ReadinessTimeout(DeployError):
    """Readiness not observed within the timeout.

    Attributes:
        description: What was being waited on
        timeout: Configured bound in seconds
        elapsed: Seconds actually waited
        last_observed: Last value returned by the probe
    """

    def __init__(self, description: str, timeout: float, elapsed: float, last_observed: Any):
        self.description = description
        self.timeout = timeout
        self.elapsed = elapsed
        self.last_observed = last_observed
        super().__init__(
            f"{description or 'resource'} not ready after {elapsed:.0f}s "
            f"(timeout {timeout:.0f}s, last observed: {last_observed})"
        )


def wait_until_ready(
    probe: Probe,
    interval: float,
    timeout: float,
    description: str = '',
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> Any:
    """Poll probe until ready or the timeout elapses.

    The probe is evaluated immediately, then every interval seconds. The
    final sleep is shortened so the last evaluation happens at the timeout,
    which bounds the wait to [timeout, timeout + interval].

    Returns:
        The observed value from the successful probe.

    Raises:
        ReadinessTimeout: carrying the last observed value
    """
    start = clock()
    last_observed: Any = None
    while True:
        try:
            ready, last_observed = probe()
        except TransientProviderError as e:
            ready, last_observed = False, f'transient error: {e}'

        if ready:
            logger.debug(f"{description}: ready ({last_observed})")
            return last_observed

        elapsed = clock() - start
        if elapsed >= timeout:
            raise ReadinessTimeout(description, timeout, elapsed, last_observed)

        logger.info(f"  {description}: {last_observed} - waiting {interval}s...")
        sleep(min(interval, timeout - elapsed))


def rollout_probe(kube, kind: str, name: str, namespace: Optional[str] = None) -> Probe:
    """Probe for a Deployment/StatefulSet having all replicas updated and ready."""

    def probe() -> tuple[bool, str]:
        obj = kube.get(kind, name, namespace=namespace)
        if obj is None:
            return False, f'{kind}/{name} not found'
        desired = obj.get('spec', {}).get('replicas', 1)
        status = obj.get('status', {})
        ready = status.get('readyReplicas', 0) or 0
        updated = status.get('updatedReplicas', 0) or 0
        observed_gen = status.get('observedGeneration', 0) or 0
        generation = obj.get('metadata', {}).get('generation', 0) or 0
        done = observed_gen >= generation and ready >= desired and updated >= desired
        return done, f'{ready}/{desired} ready'

    return probe


def ready_instances_probe(kube, kind: str, name: str, expected: int) -> Probe:
    """Probe for a custom resource reporting status.readyInstances == expected."""

    def probe() -> tuple[bool, str]:
        obj = kube.get(kind, name)
        ready = int((obj or {}).get('status', {}).get('readyInstances', 0) or 0)
        return ready >= expected, f'{ready}/{expected} instances ready'

    return probe


def pod_ready_probe(kube, name: str) -> Probe:
    """Probe for a pod's Ready condition."""

    def probe() -> tuple[bool, str]:
        pod = kube.get('pod', name)
        if pod is None:
            return False, 'pod not found'
        status = pod.get('status', {})
        for condition in status.get('conditions', []) or []:
            if condition.get('type') == 'Ready':
                return condition.get('status') == 'True', status.get('phase', 'Unknown')
        return False, status.get('phase', 'Unknown')

    return probe
