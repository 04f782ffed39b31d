"""
Converge - Plan Executor

Applies plans against the provider in dependency order.
Handles bounded parallelism, retries, abort on failure, cancellation and
per-step state persistence.
"""

from __future__ import annotations
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple
import asyncio
import logging
import threading

from converge.models import (
    Configuration,
    EntryResult,
    EntryStatus,
    LifecycleState,
    Plan,
    PlanAction,
    PlanEntry,
    RunStatus,
    RunSummary,
    StateRecord,
    StateSnapshot,
)
from converge.adapters.base import CloudProvider, ProviderError
from converge.engine.expressions import (
    EvaluationContext,
    ExpressionError,
    contains_unknown,
    evaluate,
)
from converge.engine.graph import DependencyGraph
from converge.storage import LockToken, StateStore

logger = logging.getLogger(__name__)

# A plan entry is applied in up to two steps: a replacement is destroyed,
# then created again
DESTROY_STEP = "destroy"
APPLY_STEP = "apply"

StepKey = Tuple[str, str]


class ExecutionError(Exception):
    """Exception raised when applying a single plan entry fails."""

    def __init__(self, message: str, address: str, original_error: Optional[Exception] = None):
        self.message = message
        self.address = address
        self.original_error = original_error
        super().__init__(self.message)


@dataclass
class RetryPolicy:
    """Exponential backoff for transient provider errors."""
    max_attempts: int = 5
    base_delay: float = 0.5
    max_delay: float = 10.0

    def delay(self, attempt: int) -> float:
        """Seconds to wait after the given failed attempt (1-based)."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)


async def call_with_retry(
    call: Callable[[], Any],
    policy: RetryPolicy,
    description: str,
    executor: Optional[Executor] = None,
    on_attempt: Optional[Callable[[int], None]] = None,
) -> Any:
    """
    Run a blocking provider call in a worker thread, retrying transient errors.

    Args:
        call: Zero-argument provider call
        policy: Backoff policy
        description: Operation and address, used in log messages
        executor: Thread pool running the call (loop default if None)
        on_attempt: Called with the 1-based attempt number before each try

    Raises:
        ProviderError: On a permanent error, or the last transient error
            once ``policy.max_attempts`` is reached
    """
    loop = asyncio.get_running_loop()
    attempt = 0

    while True:
        attempt += 1
        if on_attempt is not None:
            on_attempt(attempt)
        try:
            return await loop.run_in_executor(executor, call)
        except ProviderError as e:
            if not e.transient or attempt >= policy.max_attempts:
                raise
            delay = policy.delay(attempt)
            logger.warning(
                f"Transient error on {description} "
                f"(attempt {attempt}/{policy.max_attempts}), retrying in {delay:.2f}s: {e}"
            )
            await asyncio.sleep(delay)


class PlanExecutor:
    """
    Executes plans against a cloud provider.

    Responsibilities:
    - Destroy dependents before the resources they depend on
    - Update resources that stop referencing a destroyed resource before
      destroying it
    - Start an entry only after every entry it waits for has completed
    - Bound concurrent provider calls
    - Retry transient provider errors with exponential backoff
    - Stop issuing calls after a permanent failure or cancellation
    - Persist state after every successful provider call

    Error Handling:
    - Each step is wrapped in try/except
    - A failed entry aborts the run; in-flight calls are allowed to finish
    - Entries that never started are marked skipped
    - State always reflects exactly the calls that succeeded
    """

    def __init__(
        self,
        provider: CloudProvider,
        store: StateStore,
        parallelism: int = 10,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        """
        Initialize executor.

        Args:
            provider: Provider adapter receiving the calls
            store: State store persisting every applied step
            parallelism: Maximum concurrent provider calls
            retry_policy: Backoff policy for transient errors
        """
        self.provider = provider
        self.store = store
        self.parallelism = parallelism
        self.retry_policy = retry_policy or RetryPolicy()
        self.logger = logging.getLogger(__name__)

        # Execution state
        self._abort = threading.Event()
        self._cancel = threading.Event()
        self._progress_callback: Optional[Callable[[str, int, str], None]] = None
        self._results: Dict[str, EntryResult] = {}
        self._destroyed: Set[str] = set()
        self._pool: Optional[ThreadPoolExecutor] = None
        self._finished = 0
        self._total = 0

    def set_progress_callback(self, callback: Callable[[str, int, str], None]) -> None:
        """
        Set callback for progress updates.

        Args:
            callback: Function(run_id, percent, current_address)
        """
        self._progress_callback = callback

    def _report_progress(self, run_id: str, current: str) -> None:
        """Report progress via callback if set."""
        if self._progress_callback:
            percent = int(self._finished / self._total * 100) if self._total else 100
            self._progress_callback(run_id, percent, current)

    def cancel(self) -> None:
        """Stop issuing new provider calls; in-flight calls finish."""
        if not self._cancel.is_set():
            self.logger.warning("Cancellation requested, waiting for in-flight calls")
        self._cancel.set()

    @property
    def stopping(self) -> bool:
        return self._abort.is_set() or self._cancel.is_set()

    async def execute(
        self,
        plan: Plan,
        config: Configuration,
        graph: DependencyGraph,
        state: StateSnapshot,
        token: LockToken,
    ) -> RunSummary:
        """
        Apply a plan.

        Args:
            plan: Plan produced against ``state``
            config: Configuration the plan was produced from
            graph: Dependency graph of ``config``
            state: Working state snapshot; mutated and persisted per step
            token: Held state lock

        Returns:
            RunSummary with per-entry results and outputs
        """
        started_at = datetime.utcnow()
        self._abort.clear()
        self._results = {
            entry.address: EntryResult(address=entry.address, action=entry.action)
            for entry in plan.actions
        }
        self._destroyed = set()
        self._finished = 0
        self._total = len(self._results)
        state_lock = asyncio.Lock()

        summary = RunSummary(
            run_id=plan.run_id,
            workspace=plan.workspace,
            status=RunStatus.APPLYING,
            started_at=started_at,
            to_add=plan.to_add,
            to_change=plan.to_change,
            to_destroy=plan.to_destroy,
        )

        self.logger.info(
            f"Starting apply: {plan.run_id} with {self._total} actions "
            f"(parallelism={self.parallelism})"
        )

        async def persist() -> None:
            async with state_lock:
                self.store.save(state, token)

        async def destroy(entry: PlanEntry) -> None:
            record = state.resources[entry.address]
            await self._call(
                entry,
                partial(self.provider.delete, record.resource_type, record.provider_id),
                "delete",
            )
            async with state_lock:
                del state.resources[entry.address]
                self.store.save(state, token)
            self._destroyed.add(entry.address)
            node = graph.resources.get(entry.address)
            if node is not None and entry.action == PlanAction.DESTROY:
                node.state = LifecycleState.DESTROYED
            self.logger.info(f"Destroyed: {entry.address} ({record.provider_id})")

        async def apply(entry: PlanEntry) -> None:
            await self._apply_entry(entry, config, graph, state, persist)

        steps, waits_for = self.schedule(plan, graph, state)
        self._pool = ThreadPoolExecutor(
            max_workers=self.parallelism,
            thread_name_prefix="converge-provider",
        )
        try:
            await self._run_steps(
                plan.run_id,
                steps,
                waits_for,
                {DESTROY_STEP: destroy, APPLY_STEP: apply},
            )
        finally:
            self._pool.shutdown(wait=True)
            self._pool = None

        # Outputs
        if not self.stopping:
            state.outputs = {} if plan.destroy else self.evaluate_outputs(config, graph, state)
            await persist()
        summary.outputs = dict(state.outputs)

        # Finalize summary
        completed_at = datetime.utcnow()
        results = list(self._results.values())
        summary.results = results
        summary.completed_at = completed_at
        summary.duration_seconds = (completed_at - started_at).total_seconds()
        summary.failed = sum(1 for r in results if r.status == EntryStatus.FAILED)
        summary.skipped = sum(1 for r in results if r.status == EntryStatus.SKIPPED)
        completed = [r for r in results if r.status == EntryStatus.COMPLETED]
        summary.added = sum(
            1 for r in completed if r.action in (PlanAction.CREATE, PlanAction.REPLACE)
        )
        summary.changed = sum(1 for r in completed if r.action == PlanAction.UPDATE)
        # A replacement whose create half never ran still destroyed something
        summary.destroyed = len(self._destroyed)

        if summary.failed:
            summary.status = RunStatus.FAILED
            summary.error_message = "; ".join(
                f"{r.address}: {r.error_message}" for r in results
                if r.status == EntryStatus.FAILED
            )
        elif self._cancel.is_set():
            summary.status = RunStatus.CANCELLED
            summary.error_message = "Apply cancelled"
        else:
            summary.status = RunStatus.COMPLETED

        self._report_progress(plan.run_id, "Complete")
        self.logger.info(
            f"Apply finished: {plan.run_id} - {summary.status.value}: "
            f"{summary.added} added, {summary.changed} changed, "
            f"{summary.destroyed} destroyed, {summary.failed} failed, "
            f"{summary.skipped} skipped"
        )
        return summary

    def schedule(
        self,
        plan: Plan,
        graph: DependencyGraph,
        state: StateSnapshot,
    ) -> Tuple[List[Tuple[str, PlanEntry]], Dict[StepKey, Set[StepKey]]]:
        """
        Split plan entries into destroy and apply steps.

        Ordering rules:
        - An apply waits for the applies of its dependencies; a replacement
          is created only after its old instance is destroyed
        - A destroy waits for the destroys of resources recorded as
          depending on it
        - A destroy waits for in-place updates of resources still recorded
          as referencing it, so the provider sees no live reference. Updates
          that would themselves wait on a destroy are not waited for.

        Returns:
            Tuple of (steps in plan order, step -> steps it waits for)
        """
        destroying = [
            e for e in plan.actions
            if e.action in (PlanAction.DESTROY, PlanAction.REPLACE)
        ]
        applying = {
            e.address: e for e in plan.actions
            if e.action in (PlanAction.CREATE, PlanAction.UPDATE, PlanAction.REPLACE)
        }
        waits_for: Dict[StepKey, Set[StepKey]] = {}

        # Applies whose prerequisites never include a destroy step
        destroy_free: Dict[str, bool] = {}
        for address in graph.topological_order():
            entry = applying.get(address)
            if entry is None:
                continue
            dependencies = [d for d in graph.dependencies(address) if d in applying]
            waits = {(APPLY_STEP, d) for d in dependencies}
            if entry.action == PlanAction.REPLACE:
                waits.add((DESTROY_STEP, address))
            waits_for[(APPLY_STEP, address)] = waits
            destroy_free[address] = (
                entry.action != PlanAction.REPLACE
                and all(destroy_free[d] for d in dependencies)
            )

        destroy_addresses = {e.address for e in destroying}
        for entry in destroying:
            waits = {
                (DESTROY_STEP, other) for other in destroy_addresses
                if other != entry.address
                and entry.address in state.resources[other].dependencies
            }
            for address, other in applying.items():
                if other.action != PlanAction.UPDATE:
                    continue
                if entry.address not in state.resources[address].dependencies:
                    continue
                if destroy_free[address]:
                    waits.add((APPLY_STEP, address))
                else:
                    self.logger.warning(
                        f"{address} may still reference {entry.address} when it is destroyed"
                    )
            waits_for[(DESTROY_STEP, entry.address)] = waits

        steps = [(DESTROY_STEP, e) for e in destroying]
        steps.extend((APPLY_STEP, e) for e in plan.actions if e.address in applying)
        return steps, waits_for

    async def _run_steps(
        self,
        run_id: str,
        steps: List[Tuple[str, PlanEntry]],
        waits_for: Dict[StepKey, Set[StepKey]],
        workers: Dict[str, Callable[[PlanEntry], Awaitable[None]]],
    ) -> None:
        """
        Run every step once the steps it waits for are done.

        A step whose prerequisite did not succeed is skipped. An entry is
        finalized by its last step: the apply step, or the destroy step of
        a plain destroy.
        """
        if not steps:
            return

        semaphore = asyncio.Semaphore(self.parallelism)
        done = {(kind, entry.address): asyncio.Event() for kind, entry in steps}
        succeeded: Set[StepKey] = set()

        async def run(kind: str, entry: PlanEntry) -> None:
            key = (kind, entry.address)
            result = self._results[entry.address]
            try:
                for prerequisite in waits_for[key]:
                    await done[prerequisite].wait()

                # Replacement whose destroy half already failed or was skipped
                if result.status in (EntryStatus.FAILED, EntryStatus.SKIPPED):
                    return

                blocked = sorted({a for k, a in waits_for[key] if (k, a) not in succeeded})
                if blocked or self.stopping:
                    self._skip(result, blocked)
                    return

                async with semaphore:
                    if self.stopping:
                        self._skip(result, [])
                        return
                    result.status = EntryStatus.RUNNING
                    if result.started_at is None:
                        result.started_at = datetime.utcnow()
                    self._report_progress(run_id, entry.address)
                    await workers[kind](entry)

                succeeded.add(key)
                if kind == APPLY_STEP or entry.action == PlanAction.DESTROY:
                    self._complete(result)

            except Exception as e:
                self._abort.set()
                result.status = EntryStatus.FAILED
                result.completed_at = datetime.utcnow()
                result.error_message = e.message if isinstance(e, ExecutionError) else str(e)
                self._finished += 1
                if isinstance(e, ExecutionError):
                    self.logger.error(f"Apply failed: {entry.address} - {e.message}")
                else:
                    self.logger.exception(f"Unexpected error applying {entry.address}")
            finally:
                done[key].set()

        await asyncio.gather(*(run(kind, entry) for kind, entry in steps))

    def _complete(self, result: EntryResult) -> None:
        result.status = EntryStatus.COMPLETED
        result.completed_at = datetime.utcnow()
        if result.started_at:
            result.duration_seconds = (result.completed_at - result.started_at).total_seconds()
        self._finished += 1

    def _skip(self, result: EntryResult, blocked: List[str]) -> None:
        result.status = EntryStatus.SKIPPED
        if blocked:
            result.error_message = f"Skipped: dependency not applied ({', '.join(blocked)})"
        elif self._cancel.is_set():
            result.error_message = "Skipped: apply cancelled"
        else:
            result.error_message = "Skipped due to previous failure"
        self._finished += 1

    async def _apply_entry(
        self,
        entry: PlanEntry,
        config: Configuration,
        graph: DependencyGraph,
        state: StateSnapshot,
        persist: Callable[[], Awaitable[None]],
    ) -> None:
        """Create or update one resource and record it in state."""
        node = graph.resources[entry.address]
        context = EvaluationContext(
            variables=config.variable_values,
            resources={a: r.values() for a, r in state.resources.items()},
            instances=graph.instances,
            count_index=node.index,
        )
        try:
            attributes = evaluate(node.attributes, context)
        except ExpressionError as e:
            raise ExecutionError(f"Cannot evaluate attributes: {e.message}", entry.address, e)
        if contains_unknown(attributes):
            raise ExecutionError(
                "Attributes still unknown after dependencies were applied",
                entry.address,
            )

        record = state.resources.get(entry.address)
        dependencies = graph.dependencies(entry.address)

        if entry.action == PlanAction.UPDATE and record is not None:
            for name in node.lifecycle.ignore_changes:
                if name in record.attributes:
                    attributes[name] = record.attributes[name]
            resource = await self._call(
                entry,
                partial(self.provider.update, node.resource_type, record.provider_id, attributes),
                "update",
            )
            record.attributes = attributes
            record.computed = resource.attributes
            record.dependencies = dependencies
            record.status = LifecycleState.UPDATED
            record.updated_at = datetime.utcnow()
            node.state = LifecycleState.UPDATED
            self.logger.info(f"Updated: {entry.address} ({record.provider_id})")
        else:
            resource = await self._call(
                entry,
                partial(self.provider.create, node.resource_type, attributes),
                "create",
            )
            record = StateRecord(
                address=entry.address,
                resource_type=node.resource_type,
                name=node.name,
                index=node.index,
                provider_id=resource.id,
                attributes=attributes,
                computed=resource.attributes,
                dependencies=dependencies,
                status=LifecycleState.CREATED,
            )
            state.resources[entry.address] = record
            node.state = LifecycleState.CREATED
            self.logger.info(f"Created: {entry.address} ({resource.id})")

        self._results[entry.address].provider_id = record.provider_id
        await persist()

    async def _call(self, entry: PlanEntry, call: Callable[[], Any], operation: str) -> Any:
        """
        Run one provider call for ``entry`` on the executor's thread pool.

        Raises:
            ExecutionError: On a permanent error or when retries are exhausted
        """
        result = self._results[entry.address]
        attempts = 0

        def count_attempt(attempt: int) -> None:
            nonlocal attempts
            attempts = attempt
            result.attempts += 1

        try:
            return await call_with_retry(
                call,
                self.retry_policy,
                f"{operation} {entry.address}",
                executor=self._pool,
                on_attempt=count_attempt,
            )
        except ProviderError as e:
            if not e.transient:
                raise ExecutionError(f"{operation} failed: {e}", entry.address, e)
            raise ExecutionError(
                f"{operation} failed after {attempts} attempts: {e}",
                entry.address,
                e,
            )

    def evaluate_outputs(
        self,
        config: Configuration,
        graph: DependencyGraph,
        state: StateSnapshot,
    ) -> Dict[str, Any]:
        """Evaluate output blocks against applied state."""
        context = EvaluationContext(
            variables=config.variable_values,
            resources={a: r.values() for a, r in state.resources.items()},
            instances=graph.instances,
        )
        outputs: Dict[str, Any] = {}
        for name, output in config.outputs.items():
            try:
                value = evaluate(output.value, context)
            except ExpressionError as e:
                self.logger.warning(f"Output '{name}' could not be evaluated: {e.message}")
                continue
            if contains_unknown(value):
                self.logger.warning(f"Output '{name}' is not known")
                continue
            outputs[name] = value
        return outputs


# Factory function
def create_executor(
    provider: CloudProvider,
    store: StateStore,
    parallelism: int = 10,
    retry_policy: Optional[RetryPolicy] = None,
) -> PlanExecutor:
    """
    Create a plan executor instance.

    Args:
        provider: Provider adapter
        store: State store
        parallelism: Maximum concurrent provider calls
        retry_policy: Backoff policy for transient errors

    Returns:
        Configured PlanExecutor
    """
    return PlanExecutor(
        provider=provider,
        store=store,
        parallelism=parallelism,
        retry_policy=retry_policy,
    )
