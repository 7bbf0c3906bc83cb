"""Unit tests for the Retry Controller

Tests: backoff schedule, jitter bounds, outcome classification (including
requests exceptions), attempt accounting, exhaustion, per-attempt timeout
"""
import asyncio
import random
from unittest.mock import AsyncMock, Mock

import pytest
import requests

from optimist.errors import ConflictError, TerminalError, TransientError
from optimist.models import Operation, OperationKind
from optimist.outcomes import Confirmed, Conflict, ErrorKind, Failed
from optimist.retry import RetryController, RetryPolicy, classify_exception


def make_operation():
    return Operation(
        op_id="op-1",
        entity_id="todo-1",
        kind=OperationKind.UPDATE,
        forward_patch={"done": True},
        previous_snapshot={"done": False},
        base_version=3,
    )


def http_error(status, body=None):
    response = requests.Response()
    response.status_code = status
    response._content = body if body is not None else b""
    return requests.HTTPError(f"HTTP {status}", response=response)


class TestRetryPolicy:
    """Tests for backoff delay computation."""

    def test_delays_grow_geometrically(self):
        policy = RetryPolicy(base_delay_ms=100, backoff_multiplier=2.0, jitter=0.0)
        assert [policy.delay_ms(n) for n in (1, 2, 3, 4)] == [100, 200, 400, 800]

    def test_delay_capped_at_max(self):
        policy = RetryPolicy(base_delay_ms=100, backoff_multiplier=3.0, max_delay_ms=250, jitter=0.0)
        assert policy.delay_ms(1) == 100
        assert policy.delay_ms(2) == 250
        assert policy.delay_ms(10) == 250

    def test_jitter_stays_within_bounds(self):
        policy = RetryPolicy(base_delay_ms=100, jitter=0.1)
        rng = random.Random(42)
        delays = [policy.delay_ms(1, rng) for _ in range(200)]
        assert all(90 <= d <= 110 for d in delays)
        assert len(set(delays)) > 1

    def test_jitter_deterministic_with_seeded_rng(self):
        policy = RetryPolicy(base_delay_ms=100, jitter=0.5)
        assert policy.delay_ms(2, random.Random(7)) == policy.delay_ms(2, random.Random(7))

    def test_zero_base_delay(self):
        assert RetryPolicy(base_delay_ms=0).delay_ms(5) == 0.0


class TestClassifyException:
    """Tests for exception -> Outcome mapping."""

    def test_engine_errors(self):
        assert classify_exception(TransientError("flaky")) == Failed(ErrorKind.TRANSIENT, "flaky")
        assert classify_exception(TerminalError("invalid")) == Failed(ErrorKind.TERMINAL, "invalid")
        assert classify_exception(ConflictError({"a": 1}, 9)) == Conflict({"a": 1}, 9)

    def test_builtin_network_errors_are_transient(self):
        assert classify_exception(TimeoutError("slow")).kind == ErrorKind.TRANSIENT
        assert classify_exception(ConnectionError("reset")).kind == ErrorKind.TRANSIENT

    def test_requests_network_errors_are_transient(self):
        assert classify_exception(requests.Timeout("read timeout")).kind == ErrorKind.TRANSIENT
        assert classify_exception(requests.ConnectionError("refused")).kind == ErrorKind.TRANSIENT

    @pytest.mark.parametrize("status", [500, 502, 503, 504, 408, 429])
    def test_retryable_http_statuses(self, status):
        outcome = classify_exception(http_error(status))
        assert outcome == Failed(ErrorKind.TRANSIENT, f"HTTP {status}")

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 422])
    def test_client_http_statuses_are_terminal(self, status):
        assert classify_exception(http_error(status)).kind == ErrorKind.TERMINAL

    def test_http_409_with_state_body_is_conflict(self):
        outcome = classify_exception(http_error(409, b'{"version": 7, "state": {"title": "C"}}'))
        assert outcome == Conflict(remote_state={"title": "C"}, version=7)

    def test_http_412_with_flat_body_is_conflict(self):
        outcome = classify_exception(http_error(412, b'{"version": 4, "title": "C"}'))
        assert outcome == Conflict(remote_state={"title": "C"}, version=4)

    def test_http_409_without_json_body(self):
        outcome = classify_exception(http_error(409, b"conflict"))
        assert outcome == Conflict(remote_state=None, version=0)

    def test_unknown_exception_is_terminal(self):
        outcome = classify_exception(KeyError("boom"))
        assert outcome.kind == ErrorKind.TERMINAL
        assert "KeyError" in outcome.message


class TestRetryController:
    """Tests for RetryController.execute."""

    @pytest.mark.asyncio
    async def test_confirmed_first_try(self, fake_sleep):
        controller = RetryController(RetryPolicy(), sleep=fake_sleep)
        executor = AsyncMock(return_value=Confirmed(version=4))
        operation = make_operation()

        outcome = await controller.execute(operation, executor)

        assert outcome == Confirmed(version=4)
        assert operation.attempt == 1
        assert fake_sleep.delays == []

    @pytest.mark.asyncio
    async def test_executor_receives_copy(self, fake_sleep):
        controller = RetryController(RetryPolicy(), sleep=fake_sleep)
        executor = AsyncMock(return_value=Confirmed())
        operation = make_operation()

        await controller.execute(operation, executor)

        sent = executor.call_args[0][0]
        assert sent is not operation
        assert sent.op_id == operation.op_id
        assert sent.forward_patch == {"done": True}

    @pytest.mark.asyncio
    async def test_transient_then_success_same_operation(self, fake_sleep):
        policy = RetryPolicy(max_attempts=5, base_delay_ms=100, jitter=0.0)
        on_retry = Mock()
        controller = RetryController(policy, sleep=fake_sleep, on_retry=on_retry)
        executor = AsyncMock(side_effect=[
            TransientError("503"),
            Failed(ErrorKind.TRANSIENT, "timeout"),
            Confirmed(version=4),
        ])
        operation = make_operation()

        outcome = await controller.execute(operation, executor)

        assert outcome == Confirmed(version=4)
        assert operation.attempt == 3
        assert fake_sleep.delays == [0.1, 0.2]
        assert on_retry.call_count == 2
        sent_ids = {call.args[0].op_id for call in executor.call_args_list}
        assert sent_ids == {"op-1"}
        assert all(call.args[0].forward_patch == {"done": True} for call in executor.call_args_list)

    @pytest.mark.asyncio
    async def test_exhaustion_returns_exhausted_failure(self, fake_sleep):
        policy = RetryPolicy(max_attempts=3, base_delay_ms=10, jitter=0.0)
        controller = RetryController(policy, sleep=fake_sleep)
        executor = AsyncMock(side_effect=TransientError("down"))
        operation = make_operation()

        outcome = await controller.execute(operation, executor)

        assert outcome == Failed(ErrorKind.TRANSIENT, "down", exhausted=True)
        assert executor.await_count == 3
        assert len(fake_sleep.delays) == 2

    @pytest.mark.asyncio
    async def test_terminal_not_retried(self, fake_sleep):
        controller = RetryController(RetryPolicy(), sleep=fake_sleep)
        executor = AsyncMock(side_effect=TerminalError("forbidden"))

        outcome = await controller.execute(make_operation(), executor)

        assert outcome == Failed(ErrorKind.TERMINAL, "forbidden")
        assert executor.await_count == 1

    @pytest.mark.asyncio
    async def test_conflict_not_retried(self, fake_sleep):
        controller = RetryController(RetryPolicy(), sleep=fake_sleep)
        executor = AsyncMock(return_value=Conflict({"title": "C"}, 5))

        outcome = await controller.execute(make_operation(), executor)

        assert outcome == Conflict({"title": "C"}, 5)
        assert executor.await_count == 1

    @pytest.mark.asyncio
    async def test_non_outcome_return_is_terminal(self, fake_sleep):
        controller = RetryController(RetryPolicy(), sleep=fake_sleep)
        executor = AsyncMock(return_value={"ok": True})

        outcome = await controller.execute(make_operation(), executor)

        assert outcome.kind == ErrorKind.TERMINAL
        assert "expected an Outcome" in outcome.message

    @pytest.mark.asyncio
    async def test_attempt_timeout_is_transient(self, fake_sleep):
        policy = RetryPolicy(max_attempts=2, base_delay_ms=0, attempt_timeout_ms=10)
        controller = RetryController(policy, sleep=fake_sleep)

        async def hang(operation):
            await asyncio.sleep(10)

        outcome = await controller.execute(make_operation(), hang)

        assert outcome.kind == ErrorKind.TRANSIENT
        assert outcome.exhausted is True

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, fake_sleep):
        controller = RetryController(RetryPolicy(), sleep=fake_sleep)
        executor = AsyncMock(side_effect=asyncio.CancelledError())

        with pytest.raises(asyncio.CancelledError):
            await controller.execute(make_operation(), executor)
