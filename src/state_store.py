"""Deployment state persisted across invocations.

State is a flat KEY=value mapping of resource identifiers (cluster name,
bucket, registry URL, policy ARN, OIDC issuer, ...). A present key is
treated as the truth about that resource; an absent key means the resource
is not provisioned yet (or must be re-attempted).

The file backend writes the whole file after every set() so a killed run
leaves the state exactly as of the last successful step.
"""

import logging
import os
import tempfile
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

from common import MissingStateError, PreconditionError

logger = logging.getLogger(__name__)

# Command that produces each key, for corrective hints
KEY_PRODUCERS = {
    'PREFIX': 'neon-deploy infra provision',
    'REGION': 'neon-deploy infra provision',
    'ACCOUNT_ID': 'neon-deploy infra provision',
    'STORAGE_BACKEND': 'neon-deploy infra provision',
    'CLUSTER_NAME': 'neon-deploy infra provision',
    'S3_BUCKET': 'neon-deploy infra provision',
    'VPC_ID': 'neon-deploy infra provision',
    'VPC_ENDPOINT_ID': 'neon-deploy infra provision',
    'IAM_POLICY_ARN': 'neon-deploy infra provision',
    'OIDC_PROVIDER': 'neon-deploy infra provision',
    'IRSA_SERVICE_ACCOUNT': 'neon-deploy infra provision',
    'ECR_REGISTRY': 'neon-deploy infra provision',
    'STORAGE_CLASS': 'neon-deploy infra provision',
}


@runtime_checkable
class StateStore(Protocol):
    """Key/value record of provisioned resource identifiers."""

    def get(self, key: str) -> Optional[str]:
        """Return the value, or None when absent."""

    def set(self, key: str, value: str) -> None:
        """Write (or overwrite) a key and persist it."""

    def require(self, key: str) -> str:
        """Return the value or raise MissingStateError."""

    def items(self) -> dict[str, str]:
        """Snapshot of all keys."""


def _hint_for(key: str) -> str:
    producer = KEY_PRODUCERS.get(key)
    return f"Run: {producer}" if producer else ''


class MemoryStateStore:
    """In-memory state, used for dry runs and tests."""

    def __init__(self, initial: Optional[dict[str, str]] = None):
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        value = self._data.get(key)
        return value if value else None

    def set(self, key: str, value: str) -> None:
        if value is None or str(value) == '':
            raise ValueError(f"Refusing to store empty value for {key}")
        self._data[key] = str(value)

    def require(self, key: str) -> str:
        value = self.get(key)
        if value is None:
            raise MissingStateError(key, _hint_for(key))
        return value

    def items(self) -> dict[str, str]:
        return dict(self._data)


class EnvFileStateStore(MemoryStateStore):
    """State backed by a newline-delimited KEY=value file.

    Comments (#) and blank lines are ignored on load. Values may be wrapped
    in single or double quotes. The file is rewritten atomically
    (write to .tmp, rename) after every set().
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        super().__init__(self._load() if self.path.exists() else {})

    def _load(self) -> dict[str, str]:
        data: dict[str, str] = {}
        with open(self.path, encoding='utf-8') as f:
            for lineno, raw in enumerate(f, 1):
                line = raw.strip()
                if not line or line.startswith('#'):
                    continue
                if line.startswith('export '):
                    line = line[len('export '):]
                key, sep, value = line.partition('=')
                if not sep or not key.strip():
                    logger.warning(f"{self.path}:{lineno}: ignoring malformed line")
                    continue
                value = value.strip()
                if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
                    value = value[1:-1]
                data[key.strip()] = value
        logger.debug(f"Loaded {len(data)} state keys from {self.path}")
        return data

    def exists(self) -> bool:
        return self.path.exists()

    def set(self, key: str, value: str) -> None:
        super().set(key, value)
        self._save()
        logger.debug(f"State: {key}={value}")

    def _save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=f'.{self.path.name}.', suffix='.tmp')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                for key, value in self._data.items():
                    f.write(f'{key}={value}\n')
            os.replace(tmp, self.path)
        except OSError:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def remove(self) -> None:
        """Delete the state file. Only called after a fully confirmed teardown."""
        if self.path.exists():
            self.path.unlink()
            logger.info(f"Removed state file {self.path}")
        self._data.clear()


def open_state(path: Path, must_exist: bool = False) -> EnvFileStateStore:
    """Open the state file, optionally requiring that it already exists."""
    if must_exist and not Path(path).exists():
        raise PreconditionError(
            f"State file not found: {path}",
            hint="Run: neon-deploy infra provision",
        )
    return EnvFileStateStore(path)
