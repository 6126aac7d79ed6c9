"""Tests for the shared retry helper."""

import pytest

from storyreel.utils.retry import RetryExhaustedError, RetryPolicy, with_retry


class Transient(Exception):
    pass


class Permanent(Exception):
    pass


class TestRetryPolicy:
    def test_delay_grows_exponentially(self):
        policy = RetryPolicy(base_delay_s=1.0, max_delay_s=30.0, jitter_s=0.0)
        assert [policy.delay_for(n) for n in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_delay_capped(self):
        policy = RetryPolicy(base_delay_s=1.0, max_delay_s=5.0, jitter_s=0.0)
        assert policy.delay_for(10) == 5.0

    def test_jitter_bounded(self):
        policy = RetryPolicy(base_delay_s=1.0, max_delay_s=30.0, jitter_s=2.0)
        for _ in range(50):
            assert 1.0 <= policy.delay_for(0) <= 3.0


class TestWithRetry:
    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self):
        calls = []
        sleeps = []

        async def operation():
            calls.append(1)
            if len(calls) < 3:
                raise Transient("busy")
            return "ok"

        async def sleep(delay):
            sleeps.append(delay)

        policy = RetryPolicy(max_attempts=5, base_delay_s=1.0, jitter_s=0.0)
        result = await with_retry(operation, policy=policy, retry_on=(Transient,), sleep=sleep)

        assert result == "ok"
        assert len(calls) == 3
        assert sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_exhausted_after_max_attempts(self):
        calls = []

        async def operation():
            calls.append(1)
            raise Transient("still busy")

        async def sleep(delay):
            return None

        with pytest.raises(RetryExhaustedError) as exc_info:
            await with_retry(operation, policy=RetryPolicy(max_attempts=5), retry_on=(Transient,), sleep=sleep)

        assert len(calls) == 5
        assert exc_info.value.attempts == 5
        assert isinstance(exc_info.value.last_error, Transient)

    @pytest.mark.asyncio
    async def test_non_matching_error_not_retried(self):
        calls = []

        async def operation():
            calls.append(1)
            raise Permanent("gone")

        async def sleep(delay):
            return None

        with pytest.raises(Permanent):
            await with_retry(operation, policy=RetryPolicy(max_attempts=5), retry_on=(Transient,), sleep=sleep)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_on_retry_called_with_attempt_number(self):
        seen = []

        async def operation():
            if len(seen) < 2:
                raise Transient("busy")
            return 42

        async def sleep(delay):
            return None

        result = await with_retry(
            operation,
            policy=RetryPolicy(max_attempts=5, jitter_s=0.0),
            retry_on=(Transient,),
            on_retry=lambda attempt, error, delay: seen.append((attempt, delay)),
            sleep=sleep,
        )
        assert result == 42
        assert seen == [(1, 1.0), (2, 2.0)]
