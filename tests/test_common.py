#!/usr/bin/env python3
"""Tests for common.py - shared utilities.

Tests verify:
1. run_command execution and error handling
2. retry_call backoff on transient errors only
3. run_step conversion of errors into results
4. confirm() input handling
5. Identifier generation
"""

import re

import pytest

from common import (
    STATUS_ABSENT,
    STATUS_FAILED,
    STATUS_OK,
    STATUS_SKIPPED,
    STATUS_WARNING,
    MissingStateError,
    NotFoundError,
    PreconditionError,
    ProviderError,
    StepResult,
    TransientProviderError,
    confirm,
    generate_id,
    retry_call,
    run_command,
    run_step,
)


class TestRunCommand:
    """Test run_command utility."""

    def test_returns_success_tuple(self):
        """Should return (returncode, stdout, stderr) on success."""
        rc, stdout, stderr = run_command(['echo', 'hello'])
        assert rc == 0
        assert 'hello' in stdout
        assert stderr == ''

    def test_returns_failure_tuple(self):
        rc, _, _ = run_command(['false'])
        assert rc != 0

    def test_passes_input(self):
        """Should feed input_text on stdin."""
        rc, stdout, _ = run_command(['cat'], input_text='kind: Namespace\n')
        assert rc == 0
        assert stdout == 'kind: Namespace\n'

    def test_timeout_returns_error(self):
        rc, _, stderr = run_command(['sleep', '5'], timeout=1)
        assert rc == -1
        assert 'timed out' in stderr

    def test_missing_binary(self):
        """Missing executable is reported, not raised."""
        rc, _, stderr = run_command(['definitely-not-a-real-binary-xyz'])
        assert rc == -1
        assert stderr


class TestRetryCall:
    """Test retry_call backoff."""

    def test_returns_first_success(self):
        sleeps = []
        assert retry_call(lambda: 42, sleep=sleeps.append) == 42
        assert sleeps == []

    def test_retries_transient_then_succeeds(self):
        calls = []
        sleeps = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise TransientProviderError("Throttling")
            return 'done'

        assert retry_call(flaky, attempts=5, base_delay=1.0, sleep=sleeps.append) == 'done'
        assert len(calls) == 3
        assert len(sleeps) == 2
        # Exponential with up to 10% jitter
        assert 1.0 <= sleeps[0] <= 1.1
        assert 2.0 <= sleeps[1] <= 2.2

    def test_exhausted_reraises(self):
        sleeps = []

        def always():
            raise TransientProviderError("SlowDown")

        with pytest.raises(TransientProviderError):
            retry_call(always, attempts=3, sleep=sleeps.append)
        assert len(sleeps) == 2

    def test_delay_capped(self):
        sleeps = []
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 4:
                raise TransientProviderError("busy")
            return True

        retry_call(flaky, attempts=4, base_delay=10.0, max_delay=15.0, sleep=sleeps.append)
        assert all(s <= 16.5 for s in sleeps)

    def test_non_transient_not_retried(self):
        """NotFound and other provider errors propagate immediately."""
        calls = []

        def missing():
            calls.append(1)
            raise NotFoundError("gone")

        with pytest.raises(NotFoundError):
            retry_call(missing, attempts=5, sleep=lambda s: None)
        assert len(calls) == 1


class TestStepResult:
    @pytest.mark.parametrize('status,succeeded,failed', [
        (STATUS_OK, True, False),
        (STATUS_SKIPPED, True, False),
        (STATUS_ABSENT, True, False),
        (STATUS_WARNING, False, False),
        (STATUS_FAILED, False, True),
    ])
    def test_classification(self, status, succeeded, failed):
        result = StepResult('step', status)
        assert result.succeeded is succeeded
        assert result.failed is failed


class TestRunStep:
    """Test run_step error conversion."""

    def test_passes_result_through(self):
        result = run_step('bucket', lambda: StepResult('bucket', STATUS_SKIPPED, 'exists'))
        assert result.status == STATUS_SKIPPED
        assert result.message == 'exists'

    def test_deploy_error_becomes_failed(self):
        def boom():
            raise ProviderError("AccessDenied")

        result = run_step('policy', boom)

        assert result.name == 'policy'
        assert result.status == STATUS_FAILED
        assert result.message == 'AccessDenied'

    def test_other_exceptions_propagate(self):
        def bug():
            raise KeyError('x')

        with pytest.raises(KeyError):
            run_step('x', bug)


class TestErrors:
    def test_missing_state_message(self):
        error = MissingStateError('CLUSTER_NAME', hint='Run: neon-deploy infra provision')

        assert isinstance(error, PreconditionError)
        assert str(error) == 'CLUSTER_NAME not set in deployment state'
        assert error.key == 'CLUSTER_NAME'
        assert error.hint == 'Run: neon-deploy infra provision'


class TestConfirm:
    """Test interactive confirmation."""

    def test_accepts_yes(self):
        assert confirm('? ', input_fn=lambda p: ' Yes ') is True

    def test_exact_requires_matching_case(self):
        """A typed confirmation word must match exactly."""
        assert confirm('? ', accept=('yes',), input_fn=lambda p: 'YES', exact=True) is False
        assert confirm('? ', accept=('yes',), input_fn=lambda p: 'Yes', exact=True) is False
        assert confirm('? ', accept=('yes',), input_fn=lambda p: ' yes\n', exact=True) is True

    def test_rejects_other(self):
        assert confirm('? ', input_fn=lambda p: 'n') is False

    def test_custom_accept_word(self):
        assert confirm('? ', accept=('yes',), input_fn=lambda p: 'y') is False

    def test_eof_is_refusal(self):
        def eof(prompt):
            raise EOFError

        assert confirm('? ', input_fn=eof) is False


class TestGenerateId:
    def test_format(self):
        assert re.fullmatch(r'[0-9a-f]{32}', generate_id())

    def test_unique(self):
        assert generate_id() != generate_id()
