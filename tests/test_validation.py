"""Tests for validation module."""

import pytest
from unittest.mock import patch

from common import PreconditionError
from validation import (
    format_preflight_results,
    require_credentials,
    run_preflight_checks,
    validate_credentials,
    validate_state,
    validate_tools,
)

KEYS = {'AWS_ACCESS_KEY_ID': 'AKIA', 'AWS_SECRET_ACCESS_KEY': 'secret'}


def _write_state(path, **values):
    path.write_text(''.join(f'{k}={v}\n' for k, v in values.items()))


class TestValidateCredentials:
    """Tests for credential checks."""

    def test_key_pair_accepted(self):
        """Static key pair passes."""
        assert validate_credentials(KEYS) == []

    def test_profile_accepted(self):
        """Named profile passes without keys."""
        assert validate_credentials({'AWS_PROFILE': 'dev'}) == []

    def test_missing_secret(self):
        """Missing secret key is named in the error."""
        errors = validate_credentials({'AWS_ACCESS_KEY_ID': 'AKIA'})
        assert len(errors) == 1
        assert errors[0].startswith('AWS_SECRET_ACCESS_KEY not set')

    def test_nothing_set(self):
        errors = validate_credentials({})
        assert 'AWS_ACCESS_KEY_ID and AWS_SECRET_ACCESS_KEY not set' in errors[0]

    def test_require_raises_with_hint(self):
        """require_credentials() splits message and hint."""
        with pytest.raises(PreconditionError) as exc_info:
            require_credentials({})
        assert 'not set' in str(exc_info.value)
        assert 'AWS_PROFILE' in exc_info.value.hint

    def test_require_passes(self):
        require_credentials(KEYS)


class TestValidateTools:
    """Tests for CLI tool checks."""

    def test_all_found(self):
        with patch('validation.shutil.which', side_effect=lambda t: f'/usr/bin/{t}'):
            found, errors = validate_tools()
        assert errors == []
        assert found == ['aws (/usr/bin/aws)', 'eksctl (/usr/bin/eksctl)', 'kubectl (/usr/bin/kubectl)']

    def test_missing_tool(self):
        """Missing tool produces an install hint."""
        with patch('validation.shutil.which', side_effect=lambda t: None if t == 'eksctl' else f'/bin/{t}'):
            found, errors = validate_tools()
        assert len(found) == 2
        assert errors == ['eksctl not found on PATH\n  Install eksctl and re-run']


class TestValidateState:
    """Tests for deployment state checks."""

    def test_missing_file(self, tmp_path):
        passed, errors = validate_state(tmp_path / '.env')
        assert passed == []
        assert 'State file not found' in errors[0]
        assert 'neon-deploy infra provision' in errors[0]

    def test_complete_state(self, tmp_path):
        path = tmp_path / '.env'
        _write_state(path, CLUSTER_NAME='neon1-cluster', REGION='us-west-2',
                     ECR_REGISTRY='1.dkr.ecr.us-west-2.amazonaws.com')

        passed, errors = validate_state(path)

        assert errors == []
        assert 'CLUSTER_NAME=neon1-cluster' in passed

    def test_missing_key(self, tmp_path):
        path = tmp_path / '.env'
        _write_state(path, CLUSTER_NAME='neon1-cluster', REGION='us-west-2')

        _, errors = validate_state(path)

        assert len(errors) == 1
        assert errors[0].startswith('ECR_REGISTRY not set')


class TestPreflight:
    """Tests for combined preflight checks."""

    def test_all_pass(self, tmp_path):
        path = tmp_path / '.env'
        _write_state(path, CLUSTER_NAME='c', REGION='r', ECR_REGISTRY='e')

        with patch('validation.shutil.which', return_value='/usr/bin/x'):
            success, results = run_preflight_checks(path, env={'AWS_PROFILE': 'dev'})

        assert success is True
        assert results['credentials']['passed'] == ['AWS credentials present (profile dev)']

    def test_failures_collected(self, tmp_path):
        with patch('validation.shutil.which', return_value=None):
            success, results = run_preflight_checks(tmp_path / '.env', env={})

        assert success is False
        assert len(results['credentials']['failed']) == 1
        assert len(results['tools']['failed']) == 3
        assert len(results['state']['failed']) == 1

    def test_format_success(self):
        results = {
            'credentials': {'passed': ['AWS credentials present (access key)'], 'failed': []},
            'tools': {'passed': [], 'failed': []},
            'state': {'passed': [], 'failed': []},
        }

        output = format_preflight_results(results)

        assert '✓ AWS credentials present (access key)' in output
        assert 'Tools:' not in output
        assert output.endswith('All checks passed. Ready to deploy.')

    def test_format_multiline_failure(self):
        results = {
            'credentials': {'passed': [], 'failed': []},
            'tools': {'passed': [], 'failed': ['kubectl not found on PATH\n  Install kubectl and re-run']},
            'state': {'passed': [], 'failed': []},
        }

        output = format_preflight_results(results)

        assert '✗ kubectl not found on PATH' in output
        assert '    Install kubectl and re-run' in output
        assert 'Some checks failed' in output
