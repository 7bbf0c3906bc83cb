"""
Retry Controller.

Runs a mutation executor and classifies what comes back:

    Confirmed                     -> returned as-is
    Conflict / ConflictError      -> returned as Conflict, no retry
    Failed(TERMINAL) / terminal   -> returned immediately, no retry
    Failed(TRANSIENT) / transient -> retried with exponential backoff + jitter

Recognised transient exceptions: TransientError, TimeoutError (including the
per-attempt timeout), ConnectionError, requests.Timeout,
requests.ConnectionError, and requests.HTTPError with status 5xx/408/429.
HTTP 409/412 are treated as conflicts; any other exception is terminal.

Retries reuse the same Operation (same op_id, same forward patch). The
operation's previous_snapshot is never touched here.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import requests

from .config import EngineConfig
from .errors import ConflictError, TerminalError, TransientError
from .models import Operation
from .outcomes import Confirmed, Conflict, ErrorKind, Failed, Outcome, describe

logger = logging.getLogger(__name__)

Executor = Callable[[Operation], Awaitable[Outcome]]

TRANSIENT_HTTP_STATUSES = frozenset({408, 429, 500, 502, 503, 504})
CONFLICT_HTTP_STATUSES = frozenset({409, 412})


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters (delays in milliseconds)."""
    max_attempts: int = 5
    base_delay_ms: int = 100
    backoff_multiplier: float = 2.0
    max_delay_ms: int = 30_000
    jitter: float = 0.1
    attempt_timeout_ms: Optional[int] = None

    @classmethod
    def from_config(cls, config: EngineConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            base_delay_ms=config.base_delay_ms,
            backoff_multiplier=config.backoff_multiplier,
            max_delay_ms=config.max_delay_ms,
            jitter=config.jitter,
            attempt_timeout_ms=config.attempt_timeout_ms,
        )

    def delay_ms(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """
        Backoff delay after the given (1-based) failed attempt.

        delay = base * multiplier ** (attempt - 1), capped at max_delay_ms,
        then spread by +/- jitter.
        """
        delay = self.base_delay_ms * (self.backoff_multiplier ** (attempt - 1))
        delay = min(delay, self.max_delay_ms)
        if self.jitter and delay:
            spread = (rng or random).uniform(-self.jitter, self.jitter)
            delay = delay * (1 + spread)
        return max(delay, 0.0)


def classify_exception(exc: BaseException) -> Outcome:
    """Map an exception raised by an executor to an Outcome."""
    if isinstance(exc, ConflictError):
        return Conflict(remote_state=exc.remote_state, version=exc.version)
    if isinstance(exc, TransientError):
        return Failed(ErrorKind.TRANSIENT, exc.message)
    if isinstance(exc, TerminalError):
        return Failed(ErrorKind.TERMINAL, exc.message)

    if isinstance(exc, requests.HTTPError) and exc.response is not None:
        status = exc.response.status_code
        if status in CONFLICT_HTTP_STATUSES:
            return _conflict_from_response(exc.response)
        if status in TRANSIENT_HTTP_STATUSES or status >= 500:
            return Failed(ErrorKind.TRANSIENT, f"HTTP {status}")
        return Failed(ErrorKind.TERMINAL, f"HTTP {status}")

    if isinstance(exc, (requests.Timeout, requests.ConnectionError)):
        return Failed(ErrorKind.TRANSIENT, f"{type(exc).__name__}: {exc}")
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError, ConnectionError)):
        return Failed(ErrorKind.TRANSIENT, f"{type(exc).__name__}: {exc}")

    return Failed(ErrorKind.TERMINAL, f"{type(exc).__name__}: {exc}")


def _conflict_from_response(response: Any) -> Conflict:
    """Read remote state/version from a 409/412 JSON body, when present."""
    remote_state = None
    version = 0
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        version = body.get("version", 0)
        remote_state = body.get("state")
        if remote_state is None:
            remote_state = {k: v for k, v in body.items() if k != "version"}
    return Conflict(remote_state=remote_state, version=version)


class RetryController:
    """
    Executes operations with retry/backoff and classifies the result.

    Args:
        policy: Backoff parameters
        sleep: Awaitable sleep(seconds), injectable for tests
        rng: Random source for jitter, injectable for deterministic tests
        on_retry: Optional callback(operation, outcome, delay_ms) fired
                  before each backoff sleep
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        on_retry: Optional[Callable[[Operation, Failed, float], None]] = None,
    ):
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._on_retry = on_retry

    async def execute(self, operation: Operation, executor: Executor) -> Outcome:
        """
        Run executor until it yields a non-transient outcome or attempts run out.

        Args:
            operation: The engine's Operation; attempt is incremented in place
            executor: Async callable receiving a copy of the operation

        Returns:
            Confirmed, Conflict or Failed. Never raises for business failures;
            asyncio.CancelledError propagates.
        """
        while True:
            operation.attempt += 1
            outcome = await self._attempt(operation, executor)
            logger.debug(
                f"Operation {operation.op_id} attempt {operation.attempt}: {describe(outcome)}"
            )

            if not (isinstance(outcome, Failed) and outcome.kind == ErrorKind.TRANSIENT):
                return outcome

            if operation.attempt >= self.policy.max_attempts:
                logger.warning(
                    f"Operation {operation.op_id} failed after "
                    f"{operation.attempt} attempts: {outcome.message}"
                )
                return Failed(ErrorKind.TRANSIENT, outcome.message, exhausted=True)

            delay = self.policy.delay_ms(operation.attempt, self._rng)
            logger.warning(
                f"Operation {operation.op_id} transient failure "
                f"(attempt {operation.attempt}/{self.policy.max_attempts}): "
                f"{outcome.message}. Retrying in {delay:.0f}ms..."
            )
            if self._on_retry is not None:
                self._on_retry(operation, outcome, delay)
            await self._sleep(delay / 1000.0)

    async def _attempt(self, operation: Operation, executor: Executor) -> Outcome:
        try:
            call = executor(operation.copy())
            if self.policy.attempt_timeout_ms is not None:
                result = await asyncio.wait_for(call, self.policy.attempt_timeout_ms / 1000.0)
            else:
                result = await call
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return classify_exception(e)

        if isinstance(result, (Confirmed, Conflict, Failed)):
            return result
        return Failed(
            ErrorKind.TERMINAL,
            f"Executor returned {type(result).__name__}, expected an Outcome",
        )
