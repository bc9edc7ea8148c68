"""AWS and eksctl CLI invocation with error classification.

All provider calls shell out to the `aws` and `eksctl` binaries. Failures
are classified from stderr so callers can treat duplicates as success,
missing resources as absent, and throttling as retryable.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

from common import (
    AlreadyExistsError,
    NotFoundError,
    ProviderError,
    TransientProviderError,
    retry_call,
    run_command,
)

logger = logging.getLogger(__name__)

NOT_FOUND_MARKERS = (
    'NoSuchEntity',
    'NoSuchBucket',
    'ResourceNotFoundException',
    'RepositoryNotFoundException',
    'NotFound',
    'Not Found',
    'does not exist',
    'not found',
    '(404)',
)

ALREADY_EXISTS_MARKERS = (
    'EntityAlreadyExists',
    'BucketAlreadyOwnedByYou',
    'RepositoryAlreadyExistsException',
    'ResourceInUseException',
    'AlreadyExists',
    'already exists',
)

TRANSIENT_MARKERS = (
    'Throttling',
    'ThrottlingException',
    'RequestLimitExceeded',
    'TooManyRequestsException',
    'SlowDown',
    'ServiceUnavailable',
    'RequestTimeout',
    'InternalError',
    'Could not connect to the endpoint URL',
    'Connection was closed',
    'timed out',
)


def classify_cli_error(command: str, stderr: str) -> ProviderError:
    """Map CLI stderr to the provider error taxonomy."""
    message = f"{command} failed: {stderr.strip()[:500]}"
    if any(marker in stderr for marker in TRANSIENT_MARKERS):
        return TransientProviderError(message)
    if any(marker in stderr for marker in ALREADY_EXISTS_MARKERS):
        return AlreadyExistsError(message)
    if any(marker in stderr for marker in NOT_FOUND_MARKERS):
        return NotFoundError(message)
    return ProviderError(message)


@dataclass
class AwsCli:
    """Thin wrapper over the `aws` CLI returning parsed JSON output."""
    region: str
    binary: str = 'aws'
    timeout: int = 300
    attempts: int = 5

    def call(self, service: str, operation: str, *args: str, query: Optional[str] = None,
             attempts: Optional[int] = None) -> Any:
        """Run `aws <service> <operation> ...` and return parsed JSON (or None).

        Transient failures are retried with backoff; other failures raise the
        classified ProviderError. Pass attempts=1 for operations that are not
        safe to repeat blindly.
        """
        cmd = [self.binary, service, operation, *args, '--region', self.region, '--output', 'json']
        if query:
            cmd += ['--query', query]
        label = f'aws {service} {operation}'

        def _once() -> Any:
            rc, out, err = run_command(cmd, timeout=self.timeout)
            if rc != 0:
                raise classify_cli_error(label, err)
            out = out.strip()
            if not out:
                return None
            try:
                return json.loads(out)
            except json.JSONDecodeError as e:
                raise ProviderError(f"{label}: invalid JSON output: {e}") from e

        return retry_call(_once, attempts=attempts or self.attempts)

    def account_id(self) -> str:
        """Return the caller's account ID (also proves credentials work)."""
        account = self.call('sts', 'get-caller-identity', query='Account')
        if not account:
            raise ProviderError("aws sts get-caller-identity returned no account")
        return str(account)


@dataclass
class Eksctl:
    """Wrapper over the `eksctl` CLI. Cluster operations are long-running."""
    region: str
    binary: str = 'eksctl'
    timeout: int = 3600
    attempts: int = 3

    def run(self, *args: str, parse_json: bool = False, with_region: bool = True) -> Any:
        # eksctl rejects --region together with a config file (-f)
        cmd = [self.binary, *args]
        if with_region:
            cmd += ['--region', self.region]
        label = f'eksctl {" ".join(args[:2])}'

        def _once() -> Any:
            rc, out, err = run_command(cmd, timeout=self.timeout)
            if rc != 0:
                raise classify_cli_error(label, err or out)
            if not parse_json:
                return out
            try:
                return json.loads(out) if out.strip() else None
            except json.JSONDecodeError as e:
                raise ProviderError(f"{label}: invalid JSON output: {e}") from e

        return retry_call(_once, attempts=self.attempts)
