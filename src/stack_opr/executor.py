"""Plan executor for stack-based provisioning.

Applies plan operations against a provider in dependency order. Each
provider call is retried on transient errors with exponential backoff, and
in-progress operations are polled until they reach a terminal status.

The first non-retryable failure stops scheduling; operations already in
flight run to completion. The state record is then committed exactly once,
containing exactly the operations that completed, so the next plan resumes
where this run stopped.

With concurrency > 1, independent operations run on a thread pool; an
operation becomes eligible only when every operation it depends on has
committed.
"""

import heapq
import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from common import retry_transient, wait_for
from config import RunConfig
from errors import (ApplyFailure, ProviderError, RunCancelled, StackError, StalePlanError,
                    TransientProviderError)
from providers.base import Provider, ProviderResult
from stack import Resource
from stack_opr.plan import Action, Plan, PlanOperation
from stack_opr.resolve import require_resolved
from stack_opr.state import OperationState, ResourceState, StateRecord, StateStore

logger = logging.getLogger(__name__)


def declared_dependencies(resource: Resource) -> list[str]:
    """Logical ids a resource depends on (references first, then depends_on)."""
    deps: list[str] = []
    for ref in resource.references():
        if ref.resource not in deps:
            deps.append(ref.resource)
    for dep in resource.depends_on:
        if dep not in deps:
            deps.append(dep)
    return deps


@dataclass
class ApplyResult:
    """Outcome of applying a plan.

    Attributes:
        success: True if every operation completed
        record: State record as committed
        operations: Operation key -> OperationState
        failure: First failure that stopped the run (if any)
        cancelled: True if the run was cancelled mid-way
    """
    success: bool
    record: StateRecord
    operations: dict[str, OperationState] = field(default_factory=dict)
    failure: Optional[ApplyFailure] = None
    cancelled: bool = False

    @property
    def completed(self) -> list[str]:
        return [key for key, s in self.operations.items() if s.status == 'completed']

    @property
    def skipped(self) -> list[str]:
        return [key for key, s in self.operations.items() if s.status == 'skipped']


@dataclass
class Executor:
    """Applies a Plan through a Provider and commits the resulting state.

    Attributes:
        provider: Provider control-plane client
        store: State store for the stack
        concurrency: Max operations in flight (1 = sequential)
        max_attempts: Attempts per provider call on transient errors
        backoff_base: First retry delay in seconds
        backoff_max: Cap on retry delay
        poll_interval: Seconds between status polls
        poll_timeout: Max seconds to wait for an in-progress operation
        cancel_event: Set to stop scheduling new operations
        sleep: Sleep function (injectable for tests)
    """
    provider: Provider
    store: StateStore
    concurrency: int = 1
    max_attempts: int = 5
    backoff_base: float = 0.5
    backoff_max: float = 20.0
    poll_interval: float = 2.0
    poll_timeout: float = 600.0
    cancel_event: threading.Event = field(default_factory=threading.Event)
    sleep: Callable[[float], None] = time.sleep
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    @classmethod
    def from_config(cls, config: RunConfig, provider: Provider, store: StateStore,
                    concurrency: Optional[int] = None) -> 'Executor':
        return cls(
            provider=provider,
            store=store,
            concurrency=concurrency or config.concurrency,
            max_attempts=config.max_attempts,
            backoff_base=config.backoff_base,
            backoff_max=config.backoff_max,
            poll_interval=config.poll_interval,
            poll_timeout=config.poll_timeout,
        )

    def cancel(self) -> None:
        """Request best-effort cancellation."""
        self.cancel_event.set()

    def apply(self, plan: Plan, record: StateRecord, token: str) -> ApplyResult:
        """Apply plan on top of record and commit the result.

        Args:
            plan: Plan computed from record
            record: State record loaded under the current lock
            token: Lock token for the commit

        Raises:
            StalePlanError: If plan was computed from a different serial
            RunCancelled: If cancellation was requested before start
        """
        if plan.state_serial != record.serial:
            raise StalePlanError(
                f"Plan was computed against state serial {plan.state_serial}, "
                f"current serial is {record.serial}. Re-run plan."
            )
        if self.cancel_event.is_set():
            raise RunCancelled("Run cancelled before apply started")

        working = record.copy()
        outputs = working.outputs()
        states = {
            op.key: OperationState(key=op.key, logical_id=op.logical_id, action=op.action.value)
            for op in plan.operations
        }
        failures: list[ApplyFailure] = []

        try:
            if self.concurrency > 1:
                self._run_concurrent(plan, working, outputs, states, failures)
            else:
                self._run_sequential(plan, working, outputs, states, failures)
        finally:
            for state in states.values():
                if state.status == 'pending':
                    state.skip()
            working.serial = record.serial + 1
            self.store.commit(working, token)

        cancelled = self.cancel_event.is_set() and any(
            s.status == 'skipped' for s in states.values())
        failure = failures[0] if failures else None
        success = failure is None and not cancelled
        if cancelled:
            logger.warning(f"Run cancelled: {len(self._keys(states, 'skipped'))} operation(s) not started")
        return ApplyResult(success=success, record=working, operations=states,
                           failure=failure, cancelled=cancelled)

    @staticmethod
    def _keys(states: dict[str, OperationState], status: str) -> list[str]:
        return [k for k, s in states.items() if s.status == status]

    def _run_sequential(self, plan: Plan, working: StateRecord, outputs: dict,
                        states: dict[str, OperationState], failures: list[ApplyFailure]) -> None:
        for op in plan.operations:
            if self.cancel_event.is_set():
                break
            if not self._execute(op, working, outputs, states[op.key], failures):
                break

    def _run_concurrent(self, plan: Plan, working: StateRecord, outputs: dict,
                        states: dict[str, OperationState], failures: list[ApplyFailure]) -> None:
        index = {op.key: i for i, op in enumerate(plan.operations)}
        waiting: dict[str, set[str]] = {
            op.key: {d for d in op.deps if d in index} for op in plan.operations
        }
        dependents: dict[str, list[str]] = {op.key: [] for op in plan.operations}
        for key, deps in waiting.items():
            for dep in deps:
                dependents[dep].append(key)

        ready = [index[key] for key, deps in waiting.items() if not deps]
        heapq.heapify(ready)
        stop = False

        with ThreadPoolExecutor(max_workers=self.concurrency,
                                thread_name_prefix='stackplan') as pool:
            in_flight: dict[Future, PlanOperation] = {}
            while ready or in_flight:
                if self.cancel_event.is_set():
                    stop = True
                while ready and not stop and len(in_flight) < self.concurrency:
                    op = plan.operations[heapq.heappop(ready)]
                    future = pool.submit(self._execute, op, working, outputs,
                                         states[op.key], failures)
                    in_flight[future] = op
                if not in_flight:
                    break
                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    op = in_flight.pop(future)
                    if not future.result():
                        stop = True
                        continue
                    for dependent in dependents[op.key]:
                        waiting[dependent].discard(op.key)
                        if not waiting[dependent]:
                            heapq.heappush(ready, index[dependent])

    def _execute(self, op: PlanOperation, working: StateRecord, outputs: dict,
                 state: OperationState, failures: list[ApplyFailure]) -> bool:
        """Run one operation, recording its outcome. Returns True on success."""
        state.start()
        attempts = 0
        try:
            if op.action == Action.CREATE:
                attempts = self._create(op, working, outputs)
            elif op.action == Action.UPDATE:
                attempts = self._update(op, working, outputs)
            elif op.action == Action.DELETE:
                attempts = self._delete(op, working, outputs)
            else:
                self._refresh(op, working)
        except ApplyFailure as e:
            logger.error(f"[{op.action.value}] {op.logical_id} failed: {e}")
            state.fail(str(e), attempts=attempts)
            with self._lock:
                failures.append(e)
            return False
        state.complete(attempts=attempts)
        return True

    def _retry(self, op: PlanOperation, fn: Callable[[], Any], label: str = '') -> tuple[Any, int]:
        """Call fn with transient retry, mapping provider errors to ApplyFailure."""
        try:
            return retry_transient(
                fn, max_attempts=self.max_attempts, base=self.backoff_base,
                cap=self.backoff_max, label=label, sleep=self.sleep,
            )
        except TransientProviderError as e:
            raise ApplyFailure(op.logical_id, 'retries-exhausted', e.message, code=e.code)
        except ProviderError as e:
            raise ApplyFailure(op.logical_id, 'rejected', e.message, code=e.code)

    def _call(self, op: PlanOperation, fn: Callable[[], ProviderResult]) -> tuple[ProviderResult, int]:
        """Call the provider with retry, then wait for a terminal status.

        Raises:
            ApplyFailure: On rejection, retry exhaustion or poll timeout
        """
        result, attempts = self._retry(op, fn, label=f"[{op.action.value}] {op.logical_id}: ")
        if result.in_progress:
            result = self._await(op, result)
        if result.failed:
            raise ApplyFailure(op.logical_id, 'rejected', result.message, code=result.code)
        return result, attempts

    def _await(self, op: PlanOperation, pending: ProviderResult) -> ProviderResult:
        """Poll an in-progress operation until terminal or timeout."""
        if not pending.operation_id:
            raise ApplyFailure(op.logical_id, 'rejected',
                               "Provider reported in-progress without an operation id")
        logger.info(f"[{op.action.value}] {op.logical_id}: waiting for operation "
                    f"{pending.operation_id}")

        def _check() -> Optional[ProviderResult]:
            result, _ = self._retry(op, lambda: self.provider.describe(pending.operation_id))
            return None if result.in_progress else result

        result = wait_for(_check, timeout=self.poll_timeout, interval=self.poll_interval,
                          sleep=self.sleep)
        if result is None:
            raise ApplyFailure(op.logical_id, 'timeout',
                               f"Operation {pending.operation_id} still in progress after "
                               f"{self.poll_timeout:.0f}s")
        if result.physical_id is None:
            result.physical_id = pending.physical_id
        return result

    def _resolved(self, op: PlanOperation, outputs: dict) -> dict[str, Any]:
        with self._lock:
            snapshot = {lid: dict(values) for lid, values in outputs.items()}
        try:
            return require_resolved(op.resource, snapshot)
        except StackError as e:
            raise ApplyFailure(op.logical_id, 'unresolved', e.message)

    def _commit_resource(self, op: PlanOperation, working: StateRecord, outputs: dict,
                         physical_id: str, properties: dict, values: dict) -> None:
        resource = op.resource
        with self._lock:
            working.resources[op.logical_id] = ResourceState(
                logical_id=op.logical_id,
                resource_type=resource.type,
                physical_id=physical_id,
                properties=properties,
                outputs=dict(values),
                dependencies=declared_dependencies(resource),
                removal_policy=resource.removal_policy,
                applied_at=time.time(),
            )
            outputs[op.logical_id] = dict(values)

    def _create(self, op: PlanOperation, working: StateRecord, outputs: dict) -> int:
        properties = self._resolved(op, outputs)
        resource_type = op.resource.type

        existing, attempts = self._lookup(op)
        if existing is not None and op.prior and existing.physical_id == op.prior.physical_id:
            # Retained original of a replacement
            existing = None
        if existing is not None:
            logger.info(f"[create] {op.logical_id}: already exists as {existing.physical_id}, adopting")
            self._commit_resource(op, working, outputs, existing.physical_id,
                                  properties, existing.outputs)
            return attempts

        logger.info(f"[create] {op.logical_id} ({resource_type})")
        result, call_attempts = self._call(
            op, lambda: self.provider.create(resource_type, op.logical_id, properties))
        if not result.physical_id:
            raise ApplyFailure(op.logical_id, 'rejected', "Provider returned no physical id")
        self._commit_resource(op, working, outputs, result.physical_id, properties, result.outputs)
        logger.info(f"[create] {op.logical_id} created as {result.physical_id}")
        return attempts + call_attempts

    def _lookup(self, op: PlanOperation) -> tuple[Optional[ProviderResult], int]:
        """Find a resource already created for this logical id (e.g. by an interrupted run)."""
        return self._retry(op, lambda: self.provider.find(op.resource.type, op.logical_id),
                           label=f"[create] {op.logical_id}: ")

    def _update(self, op: PlanOperation, working: StateRecord, outputs: dict) -> int:
        properties = self._resolved(op, outputs)
        with self._lock:
            prior = working.resources[op.logical_id]
        logger.info(f"[update] {op.logical_id}: {', '.join(op.changed)}")
        result, attempts = self._call(
            op, lambda: self.provider.update(op.resource.type, prior.physical_id,
                                             properties, list(op.changed)))
        self._commit_resource(op, working, outputs, result.physical_id or prior.physical_id,
                              properties, result.outputs or prior.outputs)
        return attempts

    def _delete(self, op: PlanOperation, working: StateRecord, outputs: dict) -> int:
        with self._lock:
            prior = working.resources.get(op.logical_id)
        if prior is None:
            return 0

        attempts = 0
        if prior.removal_policy == 'retain':
            logger.info(f"[delete] {op.logical_id}: retained, removing from state only")
        else:
            logger.info(f"[delete] {op.logical_id} ({prior.physical_id})")
            _, attempts = self._call(
                op, lambda: self.provider.delete(prior.resource_type, prior.physical_id))

        with self._lock:
            working.resources.pop(op.logical_id, None)
            outputs.pop(op.logical_id, None)
        return attempts

    def _refresh(self, op: PlanOperation, working: StateRecord) -> None:
        """No-op: refresh state metadata without calling the provider."""
        with self._lock:
            prior = working.resources.get(op.logical_id)
            if prior is None or op.resource is None:
                return
            prior.dependencies = declared_dependencies(op.resource)
            prior.removal_policy = op.resource.removal_policy
