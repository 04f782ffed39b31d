"""
Converge - Engine

Runs one plan/apply cycle under the state lock:
parse -> build graph -> refresh -> plan -> execute -> outputs.
"""

from __future__ import annotations
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Tuple
import asyncio
import logging
import uuid

from converge.config import EngineSettings
from converge.models import (
    Configuration,
    LifecycleState,
    Plan,
    RunStatus,
    RunSummary,
    StateRecord,
    StateSnapshot,
)
from converge.adapters.base import CloudProvider, ProviderFactory
from converge.engine.graph import DependencyGraph, GraphBuilder
from converge.engine.parser import ConfigParser
from converge.engine.planner import ExecutionPlanner, render_plan
from converge.engine.executor import (
    PlanExecutor,
    RetryPolicy,
    call_with_retry,
    create_executor,
)
from converge.storage import LockToken, StateStore, StorageManager

logger = logging.getLogger(__name__)


def generate_run_id() -> str:
    """Generate unique run ID."""
    timestamp = datetime.utcnow().strftime("%Y%m%d%H%M%S")
    unique = uuid.uuid4().hex[:6]
    return f"run_{timestamp}_{unique}"


class ConvergeEngine:
    """
    Facade over parser, graph builder, planner, executor and state store.

    The state store and provider are explicit collaborators; every state
    mutation happens under a lock token obtained from the store.
    """

    def __init__(
        self,
        settings: EngineSettings,
        store: Optional[StateStore] = None,
        provider: Optional[CloudProvider] = None,
        artifacts: Optional[StorageManager] = None,
    ):
        """
        Initialize engine.

        Args:
            settings: Engine settings
            store: State store (defaults to one under settings.state_dir)
            provider: Provider adapter (defaults to settings.provider.type)
            artifacts: Run artifact storage (defaults to settings.artifacts_dir)
        """
        self.settings = settings
        self.store = store or StateStore(settings.state_dir, settings.workspace)
        self.artifacts = artifacts or StorageManager(settings.artifacts_dir)
        if provider is None:
            provider = ProviderFactory.create(
                settings.provider.type,
                settings.provider.region,
                simulate_latency=settings.provider.simulate_latency,
                latency_scale=settings.provider.latency_scale,
                failure_rate=settings.provider.failure_rate,
                state_path=settings.provider.state_file,
            )
            if not provider.connect():
                raise ConnectionError(
                    f"Cannot connect to provider '{settings.provider.type}' "
                    f"in {settings.provider.region}"
                )
        self.provider = provider
        self.parser = ConfigParser()
        self.graph_builder = GraphBuilder()
        self.planner = ExecutionPlanner(provider)
        self.logger = logging.getLogger(__name__)
        self._executor: Optional[PlanExecutor] = None
        self._progress_callback: Optional[Callable[[str, int, str], None]] = None

    def set_progress_callback(self, callback: Callable[[str, int, str], None]) -> None:
        """Forward apply progress (run_id, percent, address) to ``callback``."""
        self._progress_callback = callback

    def close(self) -> None:
        """Disconnect the provider."""
        self.provider.disconnect()

    # =========================================================================
    # LOAD / PLAN
    # =========================================================================

    def load(
        self,
        yaml_content: str,
        variables: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Configuration, DependencyGraph]:
        """
        Parse a configuration and build its dependency graph.

        Raises:
            ParseError: If the configuration is malformed
            CycleError: If references form a cycle
        """
        config = self.parser.parse(yaml_content, variables)
        graph = self.graph_builder.build(config)
        return config, graph

    def _retry_policy(self) -> RetryPolicy:
        retry = self.settings.retry
        return RetryPolicy(
            max_attempts=retry.max_attempts,
            base_delay=retry.base_delay,
            max_delay=retry.max_delay,
        )

    async def refresh(self, state: StateSnapshot) -> List[str]:
        """
        Re-read every recorded resource from the provider.

        Reads run on ``parallelism`` worker threads and retry transient
        errors like every other provider call. Resources that no longer
        exist are dropped from ``state`` so the next plan recreates them.

        Returns:
            Addresses of resources that drifted away

        Raises:
            ProviderError: If a read fails permanently or keeps failing
        """
        records = list(state.resources.items())
        if not records:
            return []

        policy = self._retry_policy()
        with ThreadPoolExecutor(
            max_workers=self.settings.parallelism,
            thread_name_prefix="converge-refresh",
        ) as pool:
            results = await asyncio.gather(
                *(
                    call_with_retry(
                        partial(self.provider.read, record.resource_type, record.provider_id),
                        policy,
                        f"read {address}",
                        executor=pool,
                    )
                    for address, record in records
                ),
                return_exceptions=True,
            )

        failures = []
        for (address, _), result in zip(records, results):
            if isinstance(result, BaseException):
                self.logger.error(f"Refresh of {address} failed: {result}")
                failures.append(result)
        if failures:
            raise failures[0]

        drifted: List[str] = []
        for (address, record), resource in zip(records, results):
            if resource is None:
                self.logger.warning(
                    f"Drift: {address} ({record.provider_id}) no longer exists"
                )
                del state.resources[address]
                drifted.append(address)
            elif resource.attributes != record.computed:
                self.logger.info(f"Refreshed computed attributes of {address}")
                record.computed = resource.attributes
        return drifted

    async def _plan_locked(
        self,
        run_id: str,
        config: Configuration,
        graph: DependencyGraph,
        state: StateSnapshot,
        destroy: bool,
        refresh: bool,
    ) -> Plan:
        drifted = await self.refresh(state) if refresh else []
        plan = self.planner.create_plan(run_id, config, graph, state, destroy=destroy)
        plan.drifted = drifted
        return plan

    async def plan(
        self,
        yaml_content: str,
        variables: Optional[Dict[str, Any]] = None,
        destroy: bool = False,
        refresh: bool = True,
        run_id: Optional[str] = None,
        token: Optional[LockToken] = None,
    ) -> Plan:
        """
        Produce a plan without applying it.

        The state lock is held while state is read and refreshed; pass
        ``token`` when the caller already holds it.

        Raises:
            ParseError, CycleError, PlanError, LockHeldError, ProviderError
        """
        run_id = run_id or generate_run_id()
        config, graph = self.load(yaml_content, variables)

        if token is not None:
            self.store.check_token(token)
            state = self.store.load()
            return await self._plan_locked(run_id, config, graph, state, destroy, refresh)

        with self.store.lock("plan"):
            state = self.store.load()
            return await self._plan_locked(run_id, config, graph, state, destroy, refresh)

    # =========================================================================
    # APPLY
    # =========================================================================

    async def apply(
        self,
        yaml_content: str,
        variables: Optional[Dict[str, Any]] = None,
        destroy: bool = False,
        refresh: bool = True,
        run_id: Optional[str] = None,
        token: Optional[LockToken] = None,
    ) -> RunSummary:
        """
        Plan and apply in one locked cycle.

        Parse, cycle and plan errors are raised before any provider call.
        When ``token`` is given the caller owns the lock and releases it.

        Raises:
            ParseError, CycleError, PlanError, LockHeldError, ProviderError
        """
        run_id = run_id or generate_run_id()
        config, graph = self.load(yaml_content, variables)

        if token is not None:
            self.store.check_token(token)
            return await self._apply_locked(run_id, config, graph, destroy, refresh, token)

        token = self.store.acquire("destroy" if destroy else "apply")
        try:
            return await self._apply_locked(run_id, config, graph, destroy, refresh, token)
        finally:
            self.store.release(token)

    async def _apply_locked(
        self,
        run_id: str,
        config: Configuration,
        graph: DependencyGraph,
        destroy: bool,
        refresh: bool,
        token: LockToken,
    ) -> RunSummary:
        state = self.store.load()
        plan = await self._plan_locked(run_id, config, graph, state, destroy, refresh)
        plan_text = render_plan(plan)
        self.artifacts.save_plan(run_id, plan, plan_text)
        self.logger.info(f"Plan for {run_id}:\n{plan_text}")

        if not plan.has_changes and not plan.drifted:
            summary = RunSummary(
                run_id=run_id,
                workspace=plan.workspace,
                status=RunStatus.COMPLETED,
                started_at=datetime.utcnow(),
                completed_at=datetime.utcnow(),
                outputs=dict(state.outputs),
            )
            self.artifacts.save_summary(run_id, summary)
            return summary

        executor = create_executor(
            provider=self.provider,
            store=self.store,
            parallelism=self.settings.parallelism,
            retry_policy=self._retry_policy(),
        )
        if self._progress_callback:
            executor.set_progress_callback(self._progress_callback)

        self._executor = executor
        try:
            summary = await executor.execute(plan, config, graph, state, token)
        finally:
            self._executor = None

        self.artifacts.save_summary(run_id, summary)
        return summary

    def cancel(self) -> None:
        """Cancel the apply in progress, if any."""
        if self._executor is not None:
            self._executor.cancel()

    # =========================================================================
    # STATE OPERATIONS
    # =========================================================================

    def state(self) -> StateSnapshot:
        """Read the current state (no lock needed for reads)."""
        return self.store.load()

    def outputs(self) -> Dict[str, Any]:
        return dict(self.store.load().outputs)

    def taint(self, address: str) -> StateRecord:
        """Mark a resource for replacement on the next apply."""
        return self._set_status(address, LifecycleState.TAINTED, "taint")

    def untaint(self, address: str) -> StateRecord:
        """Clear a taint mark."""
        return self._set_status(address, LifecycleState.CREATED, "untaint")

    def _set_status(self, address: str, status: LifecycleState, operation: str) -> StateRecord:
        with self.store.lock(operation) as token:
            state = self.store.load()
            record = state.resources.get(address)
            if record is None:
                raise KeyError(address)
            record.status = status
            record.updated_at = datetime.utcnow()
            self.store.save(state, token)
        self.logger.info(f"{operation}: {address}")
        return record


def create_engine(settings: EngineSettings) -> ConvergeEngine:
    """Create an engine with the store, provider and artifact storage from settings."""
    return ConvergeEngine(settings)
