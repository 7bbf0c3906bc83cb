"""
Reconciler - drives optimistic mutations from submission to a terminal status

Manages the full lifecycle of an operation:
- Optimistic apply (synchronous, before any network activity)
- Dispatch through the RetryController to the caller's mutation executor
- Commit of confirmed operations into the entity's confirmed state
- Rollback by replay when an operation fails or is cancelled
- Conflict hand-off to the ConflictResolver

Usage:
    from optimist import Reconciler, Confirmed, Increment

    async def executor(operation):
        response = await api.patch(operation.entity_id, operation.forward_patch,
                                   if_match=operation.base_version)
        return Confirmed(response["state"], response["version"])

    engine = Reconciler(executor=executor)
    engine.load("todo-1", {"done": False, "count": 0}, version=3)

    op_id = engine.submit("todo-1", "update", {"done": True})
    engine.project("todo-1")        # {"done": True, "count": 0} immediately
    result = await engine.wait(op_id)

Ordering model:
    All bookkeeping runs synchronously between awaits on a single event loop,
    guarded by an RLock so project() is safe from other threads. Per entity,
    operations replay in submission order. A Confirmed operation is folded
    into confirmed state only once every operation before it is terminal, so
    a fast confirm never jumps ahead of a slower, earlier operation.
"""

import asyncio
import copy
import logging
import threading
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Union

from .config import EngineConfig
from .conflict import ConflictPolicy, ConflictResolver, MergeFn, ResolutionAction
from .errors import (
    EntityExistsError,
    EntityNotFoundError,
    MisuseError,
    OperationStateError,
    UnknownOperationError,
)
from .event_bus import EventBus
from .events import (
    EntityChangedEvent,
    OperationCancelledEvent,
    OperationConfirmedEvent,
    OperationConflictedEvent,
    OperationResolvedEvent,
    OperationRetryingEvent,
    OperationRolledBackEvent,
    OperationSubmittedEvent,
)
from .models import (
    ConfirmedState,
    ConflictRecord,
    Operation,
    OperationKind,
    OperationResult,
    OperationStatus,
)
from .outcomes import Confirmed, Conflict, Failed, Outcome, describe
from .patches import Patch, encode_patch
from .projector import Projector, fold
from .retry import Executor, RetryController, RetryPolicy
from .store import EntityStore, OperationLog

logger = logging.getLogger(__name__)


class Reconciler:
    """
    Optimistic mutation reconciliation engine.

    Args:
        config: Engine options (defaults to EngineConfig())
        executor: Default mutation executor used when submit() gets none
        bus: EventBus to publish on (a private bus is created if omitted)
        journal: Optional durable journal (see optimist.journal.SQLiteJournal)
        merge_fn: Default merge function for ConflictPolicy.MERGE
        sleep: Awaitable sleep used for retry backoff (injectable for tests)
        rng: random.Random used for backoff jitter
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        executor: Optional[Executor] = None,
        bus: Optional[EventBus] = None,
        journal: Optional[Any] = None,
        merge_fn: Optional[MergeFn] = None,
        sleep: Callable = asyncio.sleep,
        rng: Optional[Any] = None,
    ):
        self.config = config or EngineConfig()
        self.store = EntityStore()
        self.log = OperationLog(self.store)
        self.projector = Projector(self.store, self.log, self.config.conflict_visibility)
        self.bus = bus or EventBus()
        self.resolver = ConflictResolver(default_merge_fn=merge_fn)
        self.retry = RetryController(
            RetryPolicy.from_config(self.config),
            sleep=sleep,
            rng=rng,
            on_retry=self._on_retry,
        )
        self.journal = journal

        self._default_executor = executor
        self._default_policy = (
            ConflictPolicy.from_string(self.config.conflict_policy)
            if self.config.conflict_policy else None
        )
        if self._default_policy == ConflictPolicy.MERGE and merge_fn is None:
            raise MisuseError("conflict_policy 'merge' requires a merge_fn")

        self._lock = threading.RLock()
        self._outbox: Deque[Any] = deque()
        self._conflicts: Dict[str, ConflictRecord] = {}
        self._executors: Dict[str, Executor] = {}
        self._policies: Dict[str, ConflictPolicy] = {}
        self._futures: Dict[str, asyncio.Future] = {}
        self._results: Dict[str, OperationResult] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._waiters: Dict[str, List[asyncio.Future]] = {}

        logger.info(
            f"Reconciler initialized (max_attempts={self.config.max_attempts}, "
            f"conflict_visibility={self.config.conflict_visibility}, "
            f"journal={'enabled' if journal else 'disabled'})"
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit(
        self,
        entity_id: str,
        kind: Union[OperationKind, str],
        patch: Optional[Patch] = None,
        executor: Optional[Executor] = None,
        policy: Optional[Union[ConflictPolicy, str]] = None,
    ) -> str:
        """
        Apply a mutation optimistically and dispatch it.

        The read model reflects the patch before this method returns; the
        executor runs later in a background task.

        Args:
            entity_id: Target entity
            kind: create | update | delete
            patch: Forward patch (ignored for delete)
            executor: Mutation executor (falls back to the engine default)
            policy: Conflict policy to apply automatically if this operation
                    conflicts (falls back to config.conflict_policy)

        Returns:
            The new operation id

        Raises:
            EntityNotFoundError: Update/Delete on an entity with no effective state
            EntityExistsError: Create on an entity that already exists
            MisuseError: No executor, no running event loop, or an invalid patch
        """
        if not isinstance(kind, OperationKind):
            kind = OperationKind.from_string(kind)
        if isinstance(policy, str) and not isinstance(policy, ConflictPolicy):
            policy = ConflictPolicy.from_string(policy)
        if policy == ConflictPolicy.MERGE and self.resolver.default_merge_fn is None:
            raise MisuseError("policy 'merge' requires the engine to have a merge_fn")

        executor = executor or self._default_executor
        if executor is None:
            raise MisuseError("No executor given and the engine has no default executor")

        loop = self._running_loop("submit")

        patch = dict(patch or {})
        if self.journal is not None:
            encode_patch(patch)

        with self._lock:
            current = self.projector.project(entity_id)
            if kind == OperationKind.CREATE and current is not None:
                raise EntityExistsError(entity_id)
            if kind != OperationKind.CREATE and current is None:
                raise EntityNotFoundError(entity_id)
            try:
                fold(current, kind, patch)
            except TypeError as e:
                raise MisuseError(f"Patch cannot be applied to {entity_id}: {e}") from e

            record = self.store.ensure(entity_id)
            operation = Operation(
                op_id=Operation.new_id(),
                entity_id=entity_id,
                kind=kind,
                forward_patch=patch,
                previous_snapshot=current,
                base_version=record.confirmed_state.version,
            )
            self.log.append(operation)
            self._executors[operation.op_id] = executor
            if policy is not None:
                self._policies[operation.op_id] = policy
            self._futures[operation.op_id] = loop.create_future()
            self._journal_operation(operation)

            state = self.projector.project(entity_id)
            self._emit(OperationSubmittedEvent(
                op_id=operation.op_id,
                entity_id=entity_id,
                kind=kind.value,
                state=copy.deepcopy(state),
            ))
            self._emit_changed(entity_id, "submitted", operation.op_id)
            self._schedule(operation.op_id, loop)

        logger.info(f"Submitted {kind.value} {operation.op_id} on {entity_id}")
        self._flush()
        return operation.op_id

    def cancel(self, op_id: str) -> None:
        """
        Cancel a Pending operation before its executor settles.

        Equivalent to an immediate terminal failure: the operation is removed
        and effective state is re-projected from the remaining queue. Any
        late executor response is ignored.

        Raises:
            UnknownOperationError: op_id is unknown
            OperationStateError: The operation is not Pending
        """
        with self._lock:
            operation = self.log.get(op_id)
            if operation.status != OperationStatus.PENDING:
                raise OperationStateError(op_id, operation.status.value, "cancel")
            self._roll_back(operation, OperationStatus.CANCELLED, reason="cancelled")
            self._finish_task(op_id)
        logger.info(f"Cancelled operation {op_id} on {operation.entity_id}")
        self._flush()

    def resolve(
        self,
        op_id: str,
        policy: Union[ConflictPolicy, str],
        merge_fn: Optional[MergeFn] = None,
    ) -> str:
        """
        Resolve a Conflicted operation.

        Args:
            op_id: Conflicted operation
            policy: keep_local | keep_remote | merge
            merge_fn: fn(local_patch, remote_state) -> merged_patch (for merge)

        Returns:
            op_id; await wait(op_id) for the terminal result

        Raises:
            UnknownOperationError: op_id is unknown
            OperationStateError: The operation is not Conflicted
            MisuseError: merge requested without a merge function
        """
        if isinstance(policy, str) and not isinstance(policy, ConflictPolicy):
            policy = ConflictPolicy.from_string(policy)
        loop = self._running_loop("resolve")

        with self._lock:
            operation = self.log.get(op_id)
            if operation.status != OperationStatus.CONFLICTED:
                raise OperationStateError(op_id, operation.status.value, "resolve")
            record = self._conflicts[op_id]
            resolution = self.resolver.resolve(record, policy, merge_fn)
            if resolution.action == ResolutionAction.RESUBMIT:
                executor = self._executors.get(op_id) or self._default_executor
                if executor is None:
                    raise MisuseError(
                        f"Cannot resubmit {op_id}: no executor (call resume() or give the engine a default executor)"
                    )
                self._executors[op_id] = executor

            entity_id = operation.entity_id
            self._accept_snapshot(entity_id, resolution.accepted_state, resolution.accepted_version)
            del self._conflicts[op_id]

            if resolution.action == ResolutionAction.DISCARD:
                self._roll_back(operation, OperationStatus.ROLLED_BACK, reason=policy.value)
            else:
                operation.forward_patch = resolution.forward_patch
                operation.base_version = resolution.base_version
                operation.status = OperationStatus.PENDING
                operation.attempt = 0
                self._journal_operation(operation)
                self._schedule(op_id, loop)

            self._emit(OperationResolvedEvent(
                op_id=op_id,
                entity_id=entity_id,
                policy=policy.value,
                action=resolution.action.value,
                state=self.projector.project(entity_id),
            ))
            self._emit_changed(entity_id, "resolved", op_id)
            self._wake(entity_id)

        logger.info(
            f"Resolved conflict on {op_id} with {policy.value} -> {resolution.action.value}"
        )
        self._flush()
        return op_id

    def apply_outcome(self, op_id: str, outcome: Outcome) -> bool:
        """
        Deliver a server outcome for an operation.

        Used internally when an executor settles, and externally for
        out-of-band acknowledgements. Outcomes for operations that are no
        longer Pending are ignored, which makes commits idempotent and late
        responses to cancelled operations harmless.

        Returns:
            True if the outcome changed the operation, False if ignored
        """
        auto_policy = None
        with self._lock:
            operation = self.log.get(op_id)
            if operation.status != OperationStatus.PENDING:
                logger.debug(
                    f"Ignoring {describe(outcome)} for {op_id}: status is {operation.status.value}"
                )
                return False

            if isinstance(outcome, Confirmed):
                self._confirm(operation, outcome)
            elif isinstance(outcome, Conflict):
                record = self._mark_conflicted(operation, outcome)
                auto_policy = record.policy
            elif isinstance(outcome, Failed):
                reason = "exhausted" if outcome.exhausted else outcome.kind.value
                self._roll_back(operation, OperationStatus.ROLLED_BACK, reason=reason, error=outcome.message)
            else:
                raise MisuseError(f"Not an outcome: {outcome!r}")
            self._finish_task(op_id)

        self._flush()
        if auto_policy is not None:
            # A subscriber may already have resolved it during the flush
            with self._lock:
                still_conflicted = self.log.get(op_id).status == OperationStatus.CONFLICTED
            if still_conflicted:
                self.resolve(op_id, auto_policy)
        return True

    def project(self, entity_id: str) -> Optional[Dict[str, Any]]:
        """Effective state of an entity (a copy), or None if it does not exist."""
        with self._lock:
            return self.projector.project(entity_id)

    def pending_count(self, entity_id: str) -> int:
        """Number of unresolved (Pending or Conflicted) operations on an entity."""
        with self._lock:
            return sum(
                1 for operation in self.log.queue(entity_id)
                if not operation.status.is_terminal
            )

    def load(self, entity_id: str, state: Optional[Dict[str, Any]], version: int = 0) -> bool:
        """
        Seed or refresh confirmed state from the server.

        Queued operations replay on top of the new base. Snapshots older than
        the current confirmed version are ignored. state=None records a
        server-side deletion.

        Returns:
            True if the snapshot was accepted
        """
        with self._lock:
            accepted = self._accept_snapshot(entity_id, state, version, keep_fields=False)
            if accepted:
                self._emit_changed(entity_id, "loaded")
                self._drop_if_deleted(entity_id)
        self._flush()
        return accepted

    async def wait(self, op_id: str) -> OperationResult:
        """Wait until an operation reaches a terminal status."""
        return await self.future(op_id)

    def future(self, op_id: str) -> asyncio.Future:
        """Future settling with the operation's OperationResult."""
        with self._lock:
            self.log.get(op_id)
            fut = self._futures.get(op_id)
            if fut is None:
                fut = asyncio.get_running_loop().create_future()
                if op_id in self._results:
                    fut.set_result(self._results[op_id])
                else:
                    self._futures[op_id] = fut
            return fut

    def on_change(self, entity_id: str, callback: Callable[[EntityChangedEvent], None]) -> Callable[[], bool]:
        """
        Subscribe to effective-state changes of one entity.

        Returns:
            A function that removes the subscription
        """
        self.bus.subscribe("entity.changed", callback, key=entity_id)
        return lambda: self.bus.unsubscribe("entity.changed", callback, key=entity_id)

    def subscribe(self, event_type: str, callback: Callable[[Any], None]) -> Callable[[], bool]:
        """Subscribe to lifecycle events ('operation.confirmed', '*', ...)."""
        self.bus.subscribe(event_type, callback)
        return lambda: self.bus.unsubscribe(event_type, callback)

    def get_operation(self, op_id: str) -> Operation:
        with self._lock:
            return self.log.get(op_id).copy()

    def conflicts(self, entity_id: Optional[str] = None) -> List[ConflictRecord]:
        """Open conflicts, optionally for one entity."""
        with self._lock:
            return [
                copy.deepcopy(record) for record in self._conflicts.values()
                if entity_id is None or record.entity_id == entity_id
            ]

    def confirmed(self, entity_id: str) -> Optional[ConfirmedState]:
        with self._lock:
            record = self.store.get(entity_id)
            return copy.deepcopy(record.confirmed_state) if record else None

    def entity_ids(self) -> List[str]:
        with self._lock:
            return self.store.ids()

    def read_model(self) -> Dict[str, Dict[str, Any]]:
        """Effective state of every existing entity."""
        with self._lock:
            model = {}
            for entity_id in self.store.ids():
                state = self.projector.project(entity_id)
                if state is not None:
                    model[entity_id] = state
            return model

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for in-flight dispatch tasks to finish.

        Operations queued behind an unresolved conflict keep their tasks
        alive, so use a timeout when conflicts may be open.

        Returns:
            True if every task finished, False on timeout
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._tasks:
            remaining = None if deadline is None else max(deadline - loop.time(), 0)
            done, pending = await asyncio.wait(list(self._tasks.values()), timeout=remaining)
            if pending and deadline is not None and loop.time() >= deadline:
                return False
        return True

    async def close(self) -> None:
        """Cancel all dispatch tasks. Pending operations stay queued."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info(f"Reconciler closed ({len(tasks)} dispatch tasks cancelled)")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    # ------------------------------------------------------------------
    # Journal recovery
    # ------------------------------------------------------------------

    def restore(self) -> int:
        """
        Rebuild confirmed state and queued operations from the journal.

        Returns:
            Number of operations restored

        Raises:
            MisuseError: No journal attached, or the engine already holds state
        """
        if self.journal is None:
            raise MisuseError("restore() requires a journal")

        with self._lock:
            if len(self.store) or len(self.log):
                raise MisuseError("restore() must run before any entity is loaded or submitted")

            for entity_id, state in self.journal.load_entities().items():
                self.store.set_confirmed(entity_id, state)

            restored = 0
            for operation, conflict in self.journal.load_operations():
                self.log.append(operation)
                if conflict is not None:
                    self._conflicts[operation.op_id] = conflict
                restored += 1

            for entity_id in self.store.ids():
                self._emit_changed(entity_id, "restored")

        logger.info(f"Restored {len(self.store)} entities and {restored} operations from journal")
        self._flush()
        return restored

    def resume(self, executor: Optional[Executor] = None) -> List[str]:
        """
        Re-dispatch restored Pending operations.

        Conflicted operations are given the executor too, so a later
        resolve() can resubmit them.

        Returns:
            Ids of the operations dispatched
        """
        executor = executor or self._default_executor
        if executor is None:
            raise MisuseError("No executor given and the engine has no default executor")
        loop = self._running_loop("resume")

        dispatched = []
        with self._lock:
            for entity_id in self.store.ids():
                for operation in self.log.queue(entity_id):
                    if operation.status.is_terminal:
                        continue
                    self._executors.setdefault(operation.op_id, executor)
                    if operation.op_id not in self._futures:
                        self._futures[operation.op_id] = loop.create_future()
                    if operation.status == OperationStatus.PENDING and operation.op_id not in self._tasks:
                        self._schedule(operation.op_id, loop)
                        dispatched.append(operation.op_id)
        logger.info(f"Resumed {len(dispatched)} pending operations")
        return dispatched

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    @staticmethod
    def _running_loop(action: str) -> asyncio.AbstractEventLoop:
        try:
            return asyncio.get_running_loop()
        except RuntimeError:
            raise MisuseError(f"{action}() must be called from a running event loop") from None

    def _schedule(self, op_id: str, loop: asyncio.AbstractEventLoop) -> None:
        task = loop.create_task(self._dispatch(op_id))
        self._tasks[op_id] = task

        def _done(t, op_id=op_id):
            if self._tasks.get(op_id) is t:
                del self._tasks[op_id]

        task.add_done_callback(_done)

    async def _dispatch(self, op_id: str) -> None:
        operation = self.log.get(op_id)
        await self._wait_turn(operation)

        with self._lock:
            if operation.status != OperationStatus.PENDING:
                return
            record = self.store.get(operation.entity_id)
            if record is not None and record.confirmed_state.version > operation.base_version:
                operation.base_version = record.confirmed_state.version
            executor = self._executors.get(op_id) or self._default_executor
            if executor is None:
                raise MisuseError(f"No executor registered for {op_id}")

        logger.debug(f"Dispatching {op_id} (base_version={operation.base_version})")
        outcome = await self.retry.execute(operation, executor)
        self.apply_outcome(op_id, outcome)

    def _blocked(self, operation: Operation) -> bool:
        """True while a Conflicted operation precedes this one on its entity."""
        for queued in self.log.queue(operation.entity_id):
            if queued.op_id == operation.op_id:
                return False
            if queued.status == OperationStatus.CONFLICTED:
                return True
        return False

    async def _wait_turn(self, operation: Operation) -> None:
        loop = asyncio.get_running_loop()
        while True:
            with self._lock:
                if not self._blocked(operation):
                    return
                waiter = loop.create_future()
                self._waiters.setdefault(operation.entity_id, []).append(waiter)
            logger.debug(f"Operation {operation.op_id} queued behind a conflict on {operation.entity_id}")
            await waiter

    def _wake(self, entity_id: str) -> None:
        for waiter in self._waiters.pop(entity_id, []):
            if not waiter.done():
                waiter.set_result(None)

    def _finish_task(self, op_id: str) -> None:
        task = self._tasks.get(op_id)
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is not current:
            task.cancel()

    def _on_retry(self, operation: Operation, outcome: Failed, delay_ms: float) -> None:
        self._journal_operation(operation)
        self._emit(OperationRetryingEvent(
            op_id=operation.op_id,
            entity_id=operation.entity_id,
            attempt=operation.attempt,
            delay_ms=delay_ms,
            reason=outcome.message,
        ))
        self._flush()

    # ------------------------------------------------------------------
    # Lifecycle transitions (caller holds the lock)
    # ------------------------------------------------------------------

    def _confirm(self, operation: Operation, outcome: Confirmed) -> None:
        operation.status = OperationStatus.CONFIRMED
        operation.server_state = copy.deepcopy(outcome.server_state)
        operation.server_version = outcome.version
        self._journal_operation(operation)

        entity_id = operation.entity_id
        self._fold_confirmed(entity_id, settling=operation.op_id)
        record = self.store.get(entity_id)
        version = record.confirmed_state.version if record else outcome.version

        logger.info(f"Confirmed {operation.op_id} on {entity_id} (version={version})")
        self._emit(OperationConfirmedEvent(
            op_id=operation.op_id,
            entity_id=entity_id,
            version=outcome.version if outcome.version is not None else version,
            state=self.projector.project(entity_id),
        ))
        self._emit_changed(entity_id, "confirmed", operation.op_id)
        self._settle(operation)
        self._drop_if_deleted(entity_id)

    def _roll_back(
        self,
        operation: Operation,
        status: OperationStatus,
        reason: str,
        error: Optional[str] = None,
    ) -> None:
        operation.status = status
        operation.error = error
        entity_id = operation.entity_id
        self.log.detach(operation.op_id)
        self._conflicts.pop(operation.op_id, None)
        self._forget(operation.op_id)

        # Removing an earlier operation may release confirmed ones behind it
        self._fold_confirmed(entity_id)
        state = self.projector.project(entity_id)

        if status == OperationStatus.CANCELLED:
            self._emit(OperationCancelledEvent(
                op_id=operation.op_id,
                entity_id=entity_id,
                previous_snapshot=copy.deepcopy(operation.previous_snapshot),
                state=state,
            ))
            self._emit_changed(entity_id, "cancelled", operation.op_id)
        else:
            logger.info(f"Rolled back {operation.op_id} on {entity_id} ({reason}: {error or '-'})")
            self._emit(OperationRolledBackEvent(
                op_id=operation.op_id,
                entity_id=entity_id,
                previous_snapshot=copy.deepcopy(operation.previous_snapshot),
                state=state,
                reason=reason,
                error=error,
            ))
            self._emit_changed(entity_id, "rolled_back", operation.op_id)

        self._settle(operation)
        self._wake(entity_id)
        self._drop_if_deleted(entity_id)

    def _mark_conflicted(self, operation: Operation, outcome: Conflict) -> ConflictRecord:
        operation.status = OperationStatus.CONFLICTED
        record = ConflictRecord(
            op_id=operation.op_id,
            entity_id=operation.entity_id,
            local_patch=copy.deepcopy(dict(operation.forward_patch)),
            remote_state=copy.deepcopy(outcome.remote_state),
            remote_version=outcome.version,
            policy=self._policies.get(operation.op_id, self._default_policy),
        )
        self._conflicts[operation.op_id] = record
        self._journal_operation(operation)

        logger.info(
            f"Conflict on {operation.op_id} ({operation.entity_id}): "
            f"base_version={operation.base_version}, remote_version={outcome.version}"
        )
        self._emit(OperationConflictedEvent(
            op_id=operation.op_id,
            entity_id=operation.entity_id,
            local_patch=encode_patch(record.local_patch),
            remote_state=copy.deepcopy(record.remote_state),
            remote_version=record.remote_version,
            state=self.projector.project(operation.entity_id),
        ))
        self._emit_changed(operation.entity_id, "conflicted", operation.op_id)
        return record

    def _fold_confirmed(self, entity_id: str, settling: Optional[str] = None) -> None:
        """
        Commit Confirmed operations at the head of the queue into confirmed state.

        Folded operations are settled and retired, except `settling`, which the
        caller settles itself once the fold is complete.
        """
        record = self.store.get(entity_id)
        if record is None:
            return
        while record.pending_ops:
            head = self.log.get(record.pending_ops[0])
            if head.status != OperationStatus.CONFIRMED:
                break
            record.confirmed_state = self._committed_state(record.confirmed_state, head)
            record.pending_ops.pop(0)
            self._forget(head.op_id)
            logger.debug(f"Folded {head.op_id} into {entity_id} (version={record.confirmed_state.version})")
            self._journal_entity(entity_id)
            if head.op_id == settling:
                continue
            if head.op_id in self._results:
                self._retire(head.op_id)
            else:
                # Confirmed before a restart; nobody has been told yet
                self._settle(head)

    @staticmethod
    def _committed_state(base: ConfirmedState, operation: Operation) -> ConfirmedState:
        if operation.kind == OperationKind.DELETE:
            fields = None
        elif operation.kind == OperationKind.CREATE or base.fields is None:
            if operation.server_state is not None:
                fields = copy.deepcopy(operation.server_state)
            else:
                fields = fold(base.fields, operation.kind, operation.forward_patch)
        else:
            # Server fields are canonical, but only on top of the operation's own effect
            fields = fold(base.fields, operation.kind, operation.forward_patch)
            if operation.server_state is not None:
                fields.update(copy.deepcopy(operation.server_state))

        if operation.server_version is not None:
            version = max(base.version, operation.server_version)
        else:
            version = base.version + 1
        return ConfirmedState(fields=fields, version=version)

    def _accept_snapshot(
        self,
        entity_id: str,
        state: Optional[Dict[str, Any]],
        version: int,
        keep_fields: bool = True,
    ) -> bool:
        """
        Adopt a server snapshot as the confirmed base.

        With keep_fields, a missing remote state keeps the current fields and
        only adopts the version (conflicts that report a version but no body).
        """
        record = self.store.ensure(entity_id)
        base = record.confirmed_state
        if version < base.version:
            logger.warning(
                f"Ignoring stale snapshot for {entity_id}: version {version} < {base.version}"
            )
            return False
        if state is None and keep_fields:
            fields = copy.deepcopy(base.fields)
        else:
            fields = copy.deepcopy(state)
        record.confirmed_state = ConfirmedState(fields=fields, version=version)
        self._journal_entity(entity_id)
        return True

    def _drop_if_deleted(self, entity_id: str) -> None:
        record = self.store.get(entity_id)
        if record is not None and record.confirmed_state.fields is None and not record.pending_ops:
            if record.confirmed_state.version > 0:
                self.store.remove(entity_id)
                if self.journal is not None:
                    self.journal.delete_entity(entity_id)

    def _settle(self, operation: Operation) -> None:
        record = self.store.get(operation.entity_id)
        result = OperationResult(
            op_id=operation.op_id,
            entity_id=operation.entity_id,
            status=operation.status,
            state=self.projector.project(operation.entity_id),
            version=record.confirmed_state.version if record else 0,
            error=operation.error,
        )
        self._results[operation.op_id] = result
        fut = self._futures.get(operation.op_id)
        if fut is not None and not fut.done():
            fut.set_result(result)
        if self.log.position(operation.op_id) == -1:
            self._retire(operation.op_id)

    def _retire(self, op_id: str) -> None:
        """Release a settled, dequeued operation; its result stays in bounded history."""
        self._futures.pop(op_id, None)
        for evicted in self.log.retire(op_id):
            self._results.pop(evicted, None)

    def _forget(self, op_id: str) -> None:
        self._executors.pop(op_id, None)
        self._policies.pop(op_id, None)
        if self.journal is not None:
            self.journal.delete_operation(op_id)

    # ------------------------------------------------------------------
    # Events and journal
    # ------------------------------------------------------------------

    def _emit(self, event: Any) -> None:
        self._outbox.append(event)

    def _emit_changed(self, entity_id: str, cause: str, op_id: Optional[str] = None) -> None:
        record = self.store.get(entity_id)
        self._emit(EntityChangedEvent(
            entity_id=entity_id,
            state=self.projector.project(entity_id),
            version=record.confirmed_state.version if record else 0,
            cause=cause,
            op_id=op_id,
        ))

    def _flush(self) -> None:
        """Publish queued events in order, outside the lock."""
        while self._outbox:
            self.bus.publish(self._outbox.popleft())

    def _journal_operation(self, operation: Operation) -> None:
        # Confirmed operations stay journaled until folded
        if self.journal is None:
            return
        if operation.status in (OperationStatus.ROLLED_BACK, OperationStatus.CANCELLED):
            return
        self.journal.save_operation(operation, self._conflicts.get(operation.op_id))

    def _journal_entity(self, entity_id: str) -> None:
        if self.journal is None:
            return
        record = self.store.get(entity_id)
        if record is not None:
            self.journal.save_entity(entity_id, record.confirmed_state)


__all__ = ["Reconciler"]
