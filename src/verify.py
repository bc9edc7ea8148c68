"""Post-deployment health verification.

Checks are grouped into sections; each section collects passed, failed and
warning messages. Any failure makes the run fail.
"""

import logging

from common import DeployError
from config import DeployConfig
from topology import proxy_endpoint

logger = logging.getLogger(__name__)

WORKLOAD_APPS = ('storage-broker', 'safekeeper', 'pageserver', 'proxy')
SAFEKEEPER_HTTP_PORT = 7676

SECTION_NAMES = {
    'pods': 'Pods',
    'volumes': 'Persistent Volume Claims',
    'services': 'Services',
    'health': 'Health Checks',
}


def _empty_results() -> dict:
    return {key: {'passed': [], 'failed': [], 'warnings': []} for key in SECTION_NAMES}


def _check_pods(kube, section: dict) -> None:
    for app in WORKLOAD_APPS:
        pods = kube.list('pod', selector=f'app={app}')
        if not pods:
            section['failed'].append(f"{app}: no pods found")
            continue
        for pod in pods:
            name = pod['metadata']['name']
            phase = pod.get('status', {}).get('phase', 'Unknown')
            if phase == 'Running':
                section['passed'].append(f"{name} Running")
            else:
                section['failed'].append(f"{name} {phase}")

    computes = kube.list('pod', selector='app=compute')
    if not computes:
        section['warnings'].append("No compute pods (run: neon-deploy compute create)")
    for pod in computes:
        name = pod['metadata']['name']
        phase = pod.get('status', {}).get('phase', 'Unknown')
        if phase == 'Running':
            section['passed'].append(f"{name} Running")
        else:
            section['failed'].append(f"{name} {phase}")


def _check_volumes(kube, section: dict) -> None:
    claims = kube.list('pvc')
    if not claims:
        section['failed'].append("No PVCs found")
        return
    for claim in claims:
        name = claim['metadata']['name']
        phase = claim.get('status', {}).get('phase', 'Unknown')
        if phase == 'Bound':
            section['passed'].append(f"{name} Bound")
        else:
            section['failed'].append(f"{name} {phase}")


def _check_services(kube, section: dict) -> None:
    for svc in WORKLOAD_APPS:
        if kube.get('service', svc) is not None:
            section['passed'].append(f"{svc} service exists")
        else:
            section['failed'].append(f"{svc} service not found")

    endpoint = proxy_endpoint(kube)
    if endpoint:
        section['passed'].append(f"Proxy LoadBalancer: {endpoint}")
    else:
        section['warnings'].append("Proxy LoadBalancer not yet provisioned")


def _probe_status(kube, pod: str, port: int) -> str:
    return kube.exec(pod, ['curl', '-sf', f'http://localhost:{port}/v1/status'], timeout=30).strip()


def _check_health(config: DeployConfig, kube, section: dict) -> None:
    for i in range(config.pageserver_replicas):
        pod = f'pageserver-{i}'
        try:
            result = _probe_status(kube, pod, config.pageserver_http_port)
            section['passed'].append(f"{pod} API responding: {result}")
        except DeployError as e:
            logger.debug(f"{pod} status check failed: {e}")
            section['failed'].append(f"{pod} API not responding")

    for i in range(config.safekeeper_replicas):
        pod = f'safekeeper-{i}'
        try:
            _probe_status(kube, pod, SAFEKEEPER_HTTP_PORT)
            section['passed'].append(f"{pod} API responding")
        except DeployError as e:
            logger.debug(f"{pod} status check failed: {e}")
            section['failed'].append(f"{pod} API not responding")


def run_verification(config: DeployConfig, kube) -> tuple[bool, dict]:
    """Run every check. Returns (all_passed, results)."""
    results = _empty_results()
    _check_pods(kube, results['pods'])
    _check_volumes(kube, results['volumes'])
    _check_services(kube, results['services'])
    _check_health(config, kube, results['health'])
    failed = sum(len(section['failed']) for section in results.values())
    return failed == 0, results


def tally(results: dict) -> tuple[int, int, int]:
    """(passed, failed, warnings) across all sections."""
    return (
        sum(len(s['passed']) for s in results.values()),
        sum(len(s['failed']) for s in results.values()),
        sum(len(s['warnings']) for s in results.values()),
    )


def format_verification_results(config: DeployConfig, results: dict) -> str:
    lines = [f"\nVerification of namespace '{config.namespace}':"]
    for key, name in SECTION_NAMES.items():
        section = results.get(key, {'passed': [], 'failed': [], 'warnings': []})
        if not (section['passed'] or section['failed'] or section['warnings']):
            continue
        lines.append("")
        lines.append(f"── {name} ──")
        lines.extend(f"  ✓ {item}" for item in section['passed'])
        lines.extend(f"  ✗ {item}" for item in section['failed'])
        lines.extend(f"  ! {item}" for item in section['warnings'])

    passed, failed, warnings = tally(results)
    lines += [
        "",
        "═══════════════════════════════════",
        f"  Results: {passed} passed, {failed} failed, {warnings} warnings",
        "═══════════════════════════════════",
    ]
    if failed:
        lines += [
            "",
            "Troubleshooting:",
            f"  kubectl describe pods -n {config.namespace}        # Check Events section",
            f"  kubectl logs <pod-name> -n {config.namespace}      # Check pod logs",
        ]
    return '\n'.join(lines)
