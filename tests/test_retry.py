"""Tests for retry with exponential backoff."""

import logging

import pytest

from agent_company.core.errors import GitHostError, MergeConflictError, TransportError, ValidationError
from agent_company.core.retry import NO_RETRY, RetryPolicy, default_retryable, with_retry
from agent_company.integrations.git import GitError, GitTimeoutError


class Flaky:
    """Fails with the given errors in order, then returns 'ok'."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


class TestPolicy:
    def test_default_backoff(self):
        assert RetryPolicy().delays() == [1.0, 2.0]

    def test_delay_capped(self):
        policy = RetryPolicy(max_attempts=5)
        assert policy.delays() == [1.0, 2.0, 4.0, 4.0]

    def test_invalid(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)
        with pytest.raises(ValueError):
            RetryPolicy(multiplier=0.5)


class TestRetryable:
    def test_classification(self):
        assert default_retryable(TransportError("db locked"))
        assert default_retryable(GitHostError("502"))
        assert default_retryable(GitTimeoutError("git merge timed out"))
        assert default_retryable(GitError("fatal: Unable to create '.git/index.lock': File exists"))
        assert not default_retryable(GitError("fatal: not a git repository"))
        assert not default_retryable(MergeConflictError("task/x", ["a.ts"]))
        assert not default_retryable(ValidationError("bad"))
        assert not default_retryable(KeyError("x"))


class TestWithRetry:
    def test_succeeds_after_transient_failures(self, caplog):
        op = Flaky(TransportError("busy"), TransportError("busy"))
        slept = []
        with caplog.at_level(logging.WARNING, logger="agent_company.core.retry"):
            assert with_retry(op, RetryPolicy(), "send", sleep=slept.append) == "ok"
        assert op.calls == 3
        assert slept == [1.0, 2.0]
        assert len([r for r in caplog.records if r.levelno == logging.WARNING]) == 2

    def test_exhaustion_reraises_last_error(self, caplog):
        last = TransportError("third")
        op = Flaky(TransportError("first"), TransportError("second"), last)
        with caplog.at_level(logging.ERROR, logger="agent_company.core.retry"):
            with pytest.raises(TransportError) as exc:
                with_retry(op, RetryPolicy(), "send", sleep=lambda s: None)
        assert exc.value is last
        assert op.calls == 3
        assert any(r.levelno == logging.ERROR for r in caplog.records)

    def test_non_retryable_raises_immediately(self):
        op = Flaky(ValidationError("bad"))
        with pytest.raises(ValidationError):
            with_retry(op, RetryPolicy(), sleep=lambda s: None)
        assert op.calls == 1

    def test_no_retry_policy(self):
        op = Flaky(TransportError("busy"))
        with pytest.raises(TransportError):
            with_retry(op, NO_RETRY, sleep=lambda s: None)
        assert op.calls == 1

    def test_custom_predicate(self):
        policy = RetryPolicy(retryable=lambda e: isinstance(e, KeyError))
        op = Flaky(KeyError("x"))
        assert with_retry(op, policy, sleep=lambda s: None) == "ok"
