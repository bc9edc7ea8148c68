"""Storage-layer and metadata control API client.

Two endpoints are involved:
- the storage node (pageserver) API: tenant and timeline creation
- the storage controller API: node registration, tenant listing/deletion

Requests go through a transport. HttpTransport talks to the endpoints
directly (port-forward or in-cluster). ExecTransport runs curl inside a
storage-node pod, so the operator needs only kubectl access.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import requests

from common import (
    AlreadyExistsError,
    NotFoundError,
    ProviderError,
    TransientProviderError,
    retry_call,
)

logger = logging.getLogger(__name__)

TRANSIENT_STATUSES = {429, 502, 503, 504}


class MetadataApiError(ProviderError):
    """Metadata API returned an unexpected status."""

    def __init__(self, message: str, status: int = 0):
        self.status = status
        super().__init__(message)


def check_status(method: str, url: str, status: int, body: str) -> None:
    """Raise the classified error for a non-2xx status."""
    if 200 <= status < 300:
        return
    message = f"{method} {url} returned {status}: {body.strip()[:300]}"
    if status == 409:
        raise AlreadyExistsError(message)
    if status == 404:
        raise NotFoundError(message)
    if status in TRANSIENT_STATUSES or status == 0:
        raise TransientProviderError(message)
    raise MetadataApiError(message, status)


class Transport(Protocol):
    def request(self, method: str, url: str, payload: Optional[dict] = None) -> tuple[int, str]:
        """Issue a request, returning (status, body)."""


@dataclass
class HttpTransport:
    """Direct HTTP via requests."""
    timeout: float = 30.0
    session: requests.Session = field(default_factory=requests.Session)

    def request(self, method: str, url: str, payload: Optional[dict] = None) -> tuple[int, str]:
        try:
            resp = self.session.request(method, url, json=payload, timeout=self.timeout)
        except requests.exceptions.ConnectionError as e:
            raise TransientProviderError(f"Cannot connect to {url}: {e}") from e
        except requests.exceptions.Timeout as e:
            raise TransientProviderError(f"Timeout calling {url}") from e
        return resp.status_code, resp.text


@dataclass
class ExecTransport:
    """curl executed inside a pod via the scheduler's exec."""
    kube: Any
    pod: str = 'pageserver-0'
    timeout: int = 60

    # Status code is appended on its own line after the body
    STATUS_MARKER = '\n__HTTP_STATUS__:'

    def request(self, method: str, url: str, payload: Optional[dict] = None) -> tuple[int, str]:
        command = ['curl', '-s', '-X', method, '-w', self.STATUS_MARKER.replace('\n', r'\n') + '%{http_code}']
        if payload is not None:
            command += ['-H', 'Content-Type: application/json', '-d', json.dumps(payload)]
        command.append(url)
        out = self.kube.exec(self.pod, command, timeout=self.timeout)
        body, sep, code = out.rpartition(self.STATUS_MARKER)
        if not sep:
            raise ProviderError(f"{method} {url}: unparseable curl output")
        try:
            status = int(code.strip())
        except ValueError as e:
            raise ProviderError(f"{method} {url}: bad status '{code.strip()}'") from e
        return status, body


@dataclass
class MetadataApiClient:
    """Storage layer control API.

    Attributes:
        transport: How requests reach the endpoints
        pageserver_url: Base URL of the storage-node API
        controller_url: Base URL of the storage controller API
    """
    transport: Transport
    pageserver_url: str
    controller_url: str
    attempts: int = 4

    def _call(self, method: str, url: str, payload: Optional[dict] = None) -> Any:
        def _once() -> Any:
            status, body = self.transport.request(method, url, payload)
            check_status(method, url, status, body)
            if not body.strip():
                return None
            try:
                return json.loads(body)
            except json.JSONDecodeError:
                return body

        return retry_call(_once, attempts=self.attempts)

    def status(self) -> Any:
        return self._call('GET', f'{self.pageserver_url}/v1/status')

    def create_tenant(self, tenant_id: str) -> Any:
        """Create a tenant. Raises AlreadyExistsError if it exists."""
        return self._call('POST', f'{self.pageserver_url}/v1/tenant', {'new_tenant_id': tenant_id})

    def create_timeline(self, tenant_id: str, timeline_id: str, pg_version: int,
                        ancestor_timeline_id: Optional[str] = None,
                        ancestor_start_lsn: Optional[str] = None) -> Any:
        """Create a timeline, optionally branched from an ancestor."""
        payload: dict[str, Any] = {'new_timeline_id': timeline_id, 'pg_version': pg_version}
        if ancestor_timeline_id:
            payload['ancestor_timeline_id'] = ancestor_timeline_id
            if ancestor_start_lsn:
                payload['ancestor_start_lsn'] = ancestor_start_lsn
        return self._call('POST', f'{self.pageserver_url}/v1/tenant/{tenant_id}/timeline', payload)

    def list_timelines(self, tenant_id: str) -> list[dict]:
        return self._call('GET', f'{self.pageserver_url}/v1/tenant/{tenant_id}/timeline') or []

    def register_node(self, node_id: int, host: str, pg_port: int, http_port: int,
                      availability_zone: str) -> Any:
        return self._call('POST', f'{self.controller_url}/control/v1/node', {
            'node_id': node_id,
            'listen_pg_addr': host,
            'listen_pg_port': pg_port,
            'listen_http_addr': host,
            'listen_http_port': http_port,
            'availability_zone_id': availability_zone,
        })

    def list_nodes(self) -> list[dict]:
        return self._call('GET', f'{self.controller_url}/control/v1/node') or []

    def list_tenants(self) -> list[dict]:
        return self._call('GET', f'{self.controller_url}/control/v1/tenant') or []

    def delete_tenant(self, tenant_id: str) -> Any:
        """Remove a tenant and its storage-layer state."""
        return self._call('DELETE', f'{self.controller_url}/v1/tenant/{tenant_id}')
