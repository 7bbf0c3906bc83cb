"""
Scripted executor and scenario runner.

ScriptedExecutor stands in for a real transport: every executor call parks on
a future until the test (or a scenario file) answers it. Answers given before
the engine has dispatched the operation are queued and consumed in order, so
retries can be scripted up front.

Scenario documents (YAML or dict) drive a Reconciler step by step:

    config:
      base_delay_ms: 0
    entities:
      counter: {state: {count: 0}, version: 0}
    steps:
      - submit: {as: op1, entity: counter, kind: update, patch: {count: {$inc: 1}}}
      - submit: {as: op2, entity: counter, kind: update, patch: {count: {$inc: 1}}}
      - respond: {op: op1, outcome: failed, kind: terminal}
      - expect: {entity: counter, state: {count: 1}}
      - respond: {op: op2, outcome: confirmed}
      - expect: {entity: counter, state: {count: 1}, version: 1}
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional, Union

from .config import EngineConfig
from .engine import Reconciler
from .errors import OptimistError
from .models import Operation, OperationStatus
from .outcomes import Confirmed, Conflict, ErrorKind, Failed, Outcome
from .patches import decode_patch

logger = logging.getLogger(__name__)

# Yields granted to the event loop while waiting for an answer to land
_SETTLE_ROUNDS = 200

Answer = Union[Outcome, BaseException]


class ScriptedExecutor:
    """
    Mutation executor answered by hand.

    Attributes:
        calls: Every operation copy the engine sent, in call order
    """

    def __init__(self):
        self.calls: List[Operation] = []
        self._waiting: Dict[str, asyncio.Future] = {}
        self._queued: Dict[str, Deque[Answer]] = {}

    async def __call__(self, operation: Operation) -> Outcome:
        self.calls.append(operation)
        queued = self._queued.get(operation.op_id)
        if queued:
            answer = queued.popleft()
        else:
            fut = asyncio.get_running_loop().create_future()
            self._waiting[operation.op_id] = fut
            try:
                answer = await fut
            finally:
                self._waiting.pop(operation.op_id, None)

        if isinstance(answer, BaseException):
            raise answer
        return answer

    def respond(self, op_id: str, outcome: Outcome) -> None:
        """Answer the current (or next) executor call for op_id."""
        self._answer(op_id, outcome)

    def fail(self, op_id: str, exc: BaseException) -> None:
        """Make the current (or next) executor call for op_id raise exc."""
        self._answer(op_id, exc)

    def _answer(self, op_id: str, answer: Answer) -> None:
        fut = self._waiting.pop(op_id, None)
        if fut is not None and not fut.done():
            fut.set_result(answer)
        else:
            self._queued.setdefault(op_id, deque()).append(answer)

    def is_waiting(self, op_id: str) -> bool:
        return op_id in self._waiting

    def call_count(self, op_id: str) -> int:
        return sum(1 for call in self.calls if call.op_id == op_id)

    def last_call(self, op_id: str) -> Optional[Operation]:
        for call in reversed(self.calls):
            if call.op_id == op_id:
                return call
        return None

    async def settle(self, engine: Reconciler, op_id: str) -> None:
        """
        Yield to the event loop until op_id has been answered.

        Returns once the operation left Pending, or the executor has been
        called again (a retry), or it is parked waiting for an answer.
        """
        calls_before = self.call_count(op_id)
        for _ in range(_SETTLE_ROUNDS):
            await asyncio.sleep(0)
            operation = engine.get_operation(op_id)
            if operation.status != OperationStatus.PENDING:
                return
            if self.call_count(op_id) > calls_before and self.is_waiting(op_id):
                return
        logger.debug(f"Operation {op_id} still pending after {_SETTLE_ROUNDS} rounds")


async def _no_sleep(_seconds: float) -> None:
    await asyncio.sleep(0)


@dataclass
class ScenarioResult:
    """Timeline and failed expectations of a scenario run."""
    lines: List[str] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)
    op_ids: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures


def parse_outcome(spec: Dict[str, Any]) -> Outcome:
    """
    Build an Outcome from a scenario 'respond' step.

    Raises:
        ValueError: On an unknown outcome name
    """
    name = str(spec.get("outcome", "confirmed")).lower()
    if name == "confirmed":
        return Confirmed(server_state=spec.get("state"), version=spec.get("version"))
    if name == "conflict":
        return Conflict(remote_state=spec.get("state"), version=int(spec.get("version", 0)))
    if name == "failed":
        return Failed(ErrorKind(str(spec.get("kind", "terminal")).lower()), spec.get("message", ""))
    raise ValueError(f"Unknown outcome '{name}' (expected confirmed, conflict or failed)")


async def run_scenario(data: Dict[str, Any], config: Optional[EngineConfig] = None) -> ScenarioResult:
    """
    Run a scenario document against a fresh Reconciler.

    Args:
        data: Parsed scenario (see module docstring)
        config: Base config; a 'config' section in the scenario overrides it

    Returns:
        ScenarioResult with one timeline line per step
    """
    if "config" in data:
        merged = dict(config.to_dict() if config else {})
        merged.update(data["config"] or {})
        config = EngineConfig.from_dict(merged)

    executor = ScriptedExecutor()
    engine = Reconciler(config, executor=executor, sleep=_no_sleep)
    result = ScenarioResult()

    for entity_id, entity in (data.get("entities") or {}).items():
        engine.load(str(entity_id), entity.get("state"), int(entity.get("version", 0)))
        result.lines.append(f"load {entity_id} -> {engine.project(str(entity_id))}")

    try:
        for index, step in enumerate(data.get("steps") or [], start=1):
            if not isinstance(step, dict) or len(step) != 1:
                raise ValueError(f"Step {index} must be a mapping with exactly one action")
            action, args = next(iter(step.items()))
            args = args or {}
            line = await _run_step(engine, executor, result, action, args)
            result.lines.append(f"{index:>3} {line}")
    finally:
        await engine.close()

    return result


async def _run_step(
    engine: Reconciler,
    executor: ScriptedExecutor,
    result: ScenarioResult,
    action: str,
    args: Dict[str, Any],
) -> str:
    def op_ref(name: str) -> str:
        try:
            return result.op_ids[name]
        except KeyError:
            raise ValueError(f"Unknown operation alias '{name}'") from None

    if action == "load":
        entity_id = str(args["entity"])
        engine.load(entity_id, args.get("state"), int(args.get("version", 0)))
        return f"load {entity_id} -> {engine.project(entity_id)}"

    if action == "submit":
        entity_id = str(args["entity"])
        alias = args.get("as", f"op{len(result.op_ids) + 1}")
        try:
            op_id = engine.submit(
                entity_id,
                args.get("kind", "update"),
                decode_patch(args.get("patch") or {}),
                policy=args.get("policy"),
            )
        except OptimistError as e:
            if args.get("expect_error"):
                return f"submit {alias} on {entity_id} rejected: {e.message}"
            raise
        result.op_ids[alias] = op_id
        await asyncio.sleep(0)
        return f"submit {alias} on {entity_id} -> {engine.project(entity_id)}"

    if action == "respond":
        alias = args["op"]
        op_id = op_ref(alias)
        executor.respond(op_id, parse_outcome(args))
        await executor.settle(engine, op_id)
        operation = engine.get_operation(op_id)
        return (
            f"respond {alias} {args.get('outcome', 'confirmed')} -> "
            f"{operation.status.value}, {operation.entity_id} = {engine.project(operation.entity_id)}"
        )

    if action == "cancel":
        alias = args["op"]
        op_id = op_ref(alias)
        engine.cancel(op_id)
        entity_id = engine.get_operation(op_id).entity_id
        return f"cancel {alias} -> {entity_id} = {engine.project(entity_id)}"

    if action == "resolve":
        alias = args["op"]
        op_id = op_ref(alias)
        engine.resolve(op_id, args["policy"])
        await asyncio.sleep(0)
        entity_id = engine.get_operation(op_id).entity_id
        return f"resolve {alias} {args['policy']} -> {entity_id} = {engine.project(entity_id)}"

    if action == "expect":
        entity_id = str(args["entity"])
        actual = engine.project(entity_id)
        checks = []
        if "state" in args and actual != args["state"]:
            checks.append(f"state {actual} != {args['state']}")
        if "version" in args:
            confirmed = engine.confirmed(entity_id)
            version = confirmed.version if confirmed else None
            if version != args["version"]:
                checks.append(f"version {version} != {args['version']}")
        if "pending" in args and engine.pending_count(entity_id) != args["pending"]:
            checks.append(f"pending {engine.pending_count(entity_id)} != {args['pending']}")
        if checks:
            message = f"expect {entity_id}: " + "; ".join(checks)
            result.failures.append(message)
            return f"FAIL {message}"
        return f"ok   {entity_id} = {actual}"

    raise ValueError(f"Unknown scenario action '{action}'")
