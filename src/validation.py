"""Pre-flight validation checks.

Catches missing credentials, tools and deployment state before any
provider call is made, with actionable error messages.
"""

import logging
import os
import shutil
from pathlib import Path
from typing import Optional

from common import PreconditionError

logger = logging.getLogger(__name__)

REQUIRED_TOOLS = ('aws', 'eksctl', 'kubectl')

# State keys each pipeline needs before it can start
DEPLOY_STATE_KEYS = ('CLUSTER_NAME', 'REGION', 'ECR_REGISTRY')


# -----------------------------------------------------------------------------
# Credentials
# -----------------------------------------------------------------------------

def validate_credentials(env: Optional[dict] = None) -> list[str]:
    """Validate that provider credentials are available.

    Either a static key pair or a named profile is accepted.

    Returns:
        List of validation error messages (empty if valid)
    """
    env = os.environ if env is None else env
    if env.get('AWS_PROFILE'):
        return []

    missing = [k for k in ('AWS_ACCESS_KEY_ID', 'AWS_SECRET_ACCESS_KEY') if not env.get(k)]
    if missing:
        return [
            f"{' and '.join(missing)} not set\n"
            f"  Export AWS_ACCESS_KEY_ID and AWS_SECRET_ACCESS_KEY, or set AWS_PROFILE"
        ]
    return []


def require_credentials(env: Optional[dict] = None) -> None:
    """Raise PreconditionError if credentials are missing."""
    errors = validate_credentials(env)
    if errors:
        message, _, hint = errors[0].partition('\n')
        raise PreconditionError(message, hint=hint.strip())


# -----------------------------------------------------------------------------
# Tools
# -----------------------------------------------------------------------------

def validate_tools(tools: tuple[str, ...] = REQUIRED_TOOLS) -> tuple[list[str], list[str]]:
    """Check required CLIs are on PATH.

    Returns:
        (found, errors) where found lists 'tool (path)' entries
    """
    found = []
    errors = []
    for tool in tools:
        path = shutil.which(tool)
        if path:
            found.append(f"{tool} ({path})")
        else:
            errors.append(f"{tool} not found on PATH\n  Install {tool} and re-run")
    return found, errors


# -----------------------------------------------------------------------------
# Deployment state
# -----------------------------------------------------------------------------

def validate_state(state_file: Path, keys: tuple[str, ...] = DEPLOY_STATE_KEYS) -> tuple[list[str], list[str]]:
    """Check the state file exists and holds the keys later stages need.

    Returns:
        (passed, errors)
    """
    from state_store import EnvFileStateStore

    if not state_file.exists():
        return [], [
            f"State file not found: {state_file}\n"
            f"  Run: neon-deploy infra provision"
        ]

    state = EnvFileStateStore(state_file)
    passed = [f"{state_file} exists"]
    errors = []
    for key in keys:
        value = state.get(key)
        if value:
            passed.append(f"{key}={value}")
        else:
            errors.append(f"{key} not set in deployment state\n  Run: neon-deploy infra provision")
    return passed, errors


def run_preflight_checks(state_file: Path, env: Optional[dict] = None) -> tuple[bool, dict]:
    """Run standalone preflight checks.

    Returns:
        (success, results) tuple where results contains check details
    """
    results: dict[str, dict[str, list[str]]] = {
        'credentials': {'passed': [], 'failed': []},
        'tools': {'passed': [], 'failed': []},
        'state': {'passed': [], 'failed': []},
    }

    credential_errors = validate_credentials(env)
    if credential_errors:
        results['credentials']['failed'].extend(credential_errors)
    else:
        env = os.environ if env is None else env
        source = f"profile {env['AWS_PROFILE']}" if env.get('AWS_PROFILE') else "access key"
        results['credentials']['passed'].append(f"AWS credentials present ({source})")

    found, tool_errors = validate_tools()
    results['tools']['passed'].extend(found)
    results['tools']['failed'].extend(tool_errors)

    state_passed, state_errors = validate_state(state_file)
    results['state']['passed'].extend(state_passed)
    results['state']['failed'].extend(state_errors)

    all_failed = []
    for category in results.values():
        all_failed.extend(category['failed'])

    return len(all_failed) == 0, results


def format_preflight_results(results: dict) -> str:
    """Format preflight check results for display."""
    lines = ["\nPreflight checks:\n"]

    category_names = {
        'credentials': 'Credentials',
        'tools': 'Tools',
        'state': 'Deployment state',
    }

    for key, name in category_names.items():
        category = results.get(key, {'passed': [], 'failed': []})
        if category['passed'] or category['failed']:
            lines.append(f"{name}:")
            for item in category['passed']:
                lines.append(f"✓ {item}")
            for item in category['failed']:
                # Handle multi-line errors
                first_line = item.split('\n')[0]
                lines.append(f"✗ {first_line}")
                for line in item.split('\n')[1:]:
                    lines.append(f"  {line}")
            lines.append("")

    all_passed = all(
        len(cat['failed']) == 0
        for cat in results.values()
    )

    if all_passed:
        lines.append("All checks passed. Ready to deploy.")
    else:
        lines.append("Some checks failed. Fix issues before deploying.")

    return '\n'.join(lines)
