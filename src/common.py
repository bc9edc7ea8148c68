"""Common utilities and types for deployment automation."""

import logging
import random
import subprocess
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


# -----------------------------------------------------------------------------
# Error taxonomy
# -----------------------------------------------------------------------------

class DeployError(Exception):
    """Base exception for deployment errors."""


class PreconditionError(DeployError):
    """A prerequisite is missing. Nothing has been attempted.

    Attributes:
        hint: Suggested corrective command shown to the operator
    """

    def __init__(self, message: str, hint: str = ''):
        self.hint = hint
        super().__init__(message)


class MissingStateError(PreconditionError):
    """A required key is absent from the deployment state."""

    def __init__(self, key: str, hint: str = ''):
        self.key = key
        super().__init__(f"{key} not set in deployment state", hint)


class PrerequisiteNotReadyError(PreconditionError):
    """A component the operation depends on is not healthy."""


class ProviderError(DeployError):
    """An external provider call failed."""


class NotFoundError(ProviderError):
    """The resource does not exist."""


class AlreadyExistsError(ProviderError):
    """The resource already exists (treated as success by callers)."""


class TransientProviderError(ProviderError):
    """Throttling or eventual-consistency lag. Safe to retry."""


# -----------------------------------------------------------------------------
# Step results
# -----------------------------------------------------------------------------

STATUS_OK = 'ok'
STATUS_SKIPPED = 'skipped'
STATUS_ABSENT = 'absent'
STATUS_WARNING = 'warning'
STATUS_FAILED = 'failed'


@dataclass
class StepResult:
    """Classified outcome of a single step.

    ok: work performed; skipped: already satisfied; absent: nothing to
    delete; warning: non-fatal problem; failed: real failure.
    """
    name: str
    status: str
    message: str = ''
    duration: float = 0.0

    @property
    def failed(self) -> bool:
        return self.status == STATUS_FAILED

    @property
    def succeeded(self) -> bool:
        return self.status in (STATUS_OK, STATUS_SKIPPED, STATUS_ABSENT)


def run_step(name: str, fn: Callable[[], StepResult]) -> StepResult:
    """Run fn, converting any DeployError into a failed StepResult.

    Used where siblings must continue past an individual failure.
    """
    start = time.time()
    try:
        result = fn()
    except DeployError as e:
        logger.warning(f"[{name}] {e}")
        return StepResult(name, STATUS_FAILED, str(e), time.time() - start)
    if not result.duration:
        result.duration = time.time() - start
    return result


# -----------------------------------------------------------------------------
# Subprocess and retry helpers
# -----------------------------------------------------------------------------

def run_command(
    cmd: list[str],
    cwd: Optional[Path] = None,
    timeout: int = 600,
    capture: bool = True,
    env: Optional[dict] = None,
    input_text: Optional[str] = None,
) -> tuple[int, str, str]:
    """Run a command and return (returncode, stdout, stderr)."""
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=capture,
            text=True,
            timeout=timeout,
            env=env,
            input=input_text,
            check=False  # We handle return codes explicitly
        )
        return result.returncode, result.stdout, result.stderr
    except subprocess.TimeoutExpired:
        return -1, '', f'Command timed out after {timeout}s'
    except OSError as e:
        return -1, '', str(e)


def retry_call(
    fn: Callable[[], T],
    attempts: int = 5,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call fn, retrying TransientProviderError with exponential backoff.

    Any other exception propagates immediately. The last transient error
    is re-raised once attempts are exhausted.
    """
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except TransientProviderError as e:
            if attempt == attempts:
                raise
            delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
            delay += random.uniform(0, delay * 0.1)
            logger.warning(f"Transient provider error (attempt {attempt}/{attempts}), "
                           f"retrying in {delay:.1f}s: {e}")
            sleep(delay)
    raise AssertionError("unreachable")


def generate_id() -> str:
    """Generate a 128-bit identifier as 32 lowercase hex characters."""
    return uuid.uuid4().hex


def confirm(prompt: str, accept: tuple[str, ...] = ('y', 'yes'),
            input_fn: Callable[[str], str] = input, exact: bool = False) -> bool:
    """Ask for interactive confirmation. EOF counts as a refusal.

    Surrounding whitespace is ignored. With exact=True the answer must match
    an accepted word case included; otherwise case is ignored.
    """
    try:
        answer = input_fn(prompt).strip()
    except EOFError:
        return False
    if not exact:
        answer = answer.lower()
    return answer in accept
