"""Container scheduler client (kubectl).

Every operation is a kubectl invocation. Apply is idempotent: re-applying
an identical document is a no-op update.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Optional

from common import (
    AlreadyExistsError,
    NotFoundError,
    ProviderError,
    TransientProviderError,
    retry_call,
    run_command,
)

logger = logging.getLogger(__name__)

TRANSIENT_MARKERS = (
    'Unable to connect to the server',
    'i/o timeout',
    'TLS handshake timeout',
    'connection refused',
    'the server is currently unable to handle the request',
    'etcdserver: request timed out',
    'Too Many Requests',
)


def classify_kubectl_error(label: str, stderr: str) -> ProviderError:
    message = f"{label} failed: {stderr.strip()[:500]}"
    if any(marker in stderr for marker in TRANSIENT_MARKERS):
        return TransientProviderError(message)
    if 'AlreadyExists' in stderr or 'already exists' in stderr:
        return AlreadyExistsError(message)
    if 'NotFound' in stderr or 'not found' in stderr:
        return NotFoundError(message)
    return ProviderError(message)


@dataclass
class KubeClient:
    """kubectl wrapper bound to one namespace.

    Attributes:
        namespace: Default namespace for namespaced calls
        kubectl: kubectl binary
        context: Optional kubeconfig context
        timeout: Per-invocation timeout in seconds
    """
    namespace: str
    kubectl: str = 'kubectl'
    context: Optional[str] = None
    timeout: int = 300
    attempts: int = 3

    def _run(self, args: list[str], namespace: Optional[str] = None, input_text: Optional[str] = None,
             namespaced: bool = True, timeout: Optional[int] = None) -> str:
        cmd = [self.kubectl]
        if self.context:
            cmd += ['--context', self.context]
        if namespaced:
            cmd += ['-n', namespace or self.namespace]
        cmd += args
        label = f'kubectl {" ".join(args[:2])}'

        def _once() -> str:
            rc, out, err = run_command(cmd, timeout=timeout or self.timeout, input_text=input_text)
            if rc != 0:
                raise classify_kubectl_error(label, err)
            return out

        return retry_call(_once, attempts=self.attempts)

    def apply(self, document: str, server_side: bool = False) -> str:
        """Apply a YAML document (may hold several resources)."""
        args = ['apply', '-f', '-']
        if server_side:
            args.insert(1, '--server-side')
        return self._run(args, input_text=document, namespaced=False)

    def apply_url(self, url: str, server_side: bool = True) -> str:
        args = ['apply', '-f', url]
        if server_side:
            args.insert(1, '--server-side')
        return self._run(args, namespaced=False)

    def delete_url(self, url: str, timeout: int = 60) -> str:
        return self._run(['delete', '-f', url, '--ignore-not-found', f'--timeout={timeout}s'],
                         namespaced=False, timeout=timeout + 30)

    def get(self, kind: str, name: str, namespace: Optional[str] = None) -> Optional[dict]:
        """Return the resource as a dict, or None if it does not exist."""
        try:
            out = self._run(['get', kind, name, '-o', 'json'], namespace=namespace)
        except NotFoundError:
            return None
        return json.loads(out)

    def list(self, kind: str, selector: Optional[str] = None, namespace: Optional[str] = None) -> list[dict]:
        args = ['get', kind, '-o', 'json']
        if selector:
            args += ['-l', selector]
        out = self._run(args, namespace=namespace)
        return json.loads(out).get('items', [])

    def delete(self, kind: str, name: str, namespace: Optional[str] = None) -> bool:
        """Delete a resource. Returns False if it did not exist."""
        out = self._run(['delete', f'{kind}/{name}', '--ignore-not-found'], namespace=namespace)
        return bool(out.strip())

    def exec(self, pod: str, command: list[str], namespace: Optional[str] = None,
             timeout: Optional[int] = None) -> str:
        """Run a command inside a pod's first container."""
        return self._run(['exec', pod, '--', *command], namespace=namespace, timeout=timeout)

    def run_pod(self, name: str, image: str, command: list[str]) -> str:
        """Run a one-shot pod to completion and remove it."""
        return self._run(['run', name, '--rm', '--restart=Never', '-i',
                          f'--image={image}', '--command', '--', *command])

    def namespace_exists(self, name: str) -> bool:
        try:
            self._run(['get', 'namespace', name], namespaced=False)
        except NotFoundError:
            return False
        return True

    def delete_namespace(self, name: str, timeout: int = 120) -> None:
        self._run(['delete', 'namespace', name, f'--timeout={timeout}s'],
                  namespaced=False, timeout=timeout + 30)
