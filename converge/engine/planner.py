"""
Converge - Execution Planner

Creates execution plans by diffing the desired configuration against the
recorded state. Determines actions, ordering and the human-readable plan.
"""

from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from converge.models import (
    Configuration,
    LifecycleState,
    Plan,
    PlanAction,
    PlanEntry,
    ResourceNode,
    StateRecord,
    StateSnapshot,
)
from converge.adapters.base import CloudProvider
from converge.engine.expressions import (
    EvaluationContext,
    ExpressionError,
    contains_unknown,
    evaluate,
    render_value,
)
from converge.engine.graph import DependencyGraph

logger = logging.getLogger(__name__)


class PlanError(Exception):
    """Exception raised when a valid plan cannot be produced."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        self.message = message
        self.errors = errors or []
        super().__init__(self.message)


class ExecutionPlanner:
    """
    Creates execution plans from a dependency graph and recorded state.

    Responsibilities:
    - Evaluate desired attributes in dependency order
    - Diff against the recorded state (create / update / replace / no-op)
    - Plan destroys for recorded resources no longer desired
    - Order destroys in reverse dependency order, before creates

    Replacement is destroy-then-create and is forced by a taint, by a
    change to an attribute the provider cannot update in place, or by a
    recorded reference to a resource that is itself replaced.
    """

    # Symbols used in the rendered plan
    ACTION_SYMBOLS = {
        PlanAction.CREATE: "+",
        PlanAction.UPDATE: "~",
        PlanAction.REPLACE: "-/+",
        PlanAction.DESTROY: "-",
    }

    def __init__(self, provider: CloudProvider):
        """
        Initialize planner.

        Args:
            provider: Provider consulted for attribute mutability rules
        """
        self.provider = provider
        self.logger = logging.getLogger(__name__)

    def create_plan(
        self,
        run_id: str,
        config: Configuration,
        graph: DependencyGraph,
        state: StateSnapshot,
        destroy: bool = False,
    ) -> Plan:
        """
        Create execution plan.

        Args:
            run_id: Unique run identifier
            config: Parsed configuration (desired state)
            graph: Dependency graph built from ``config``
            state: Recorded state to diff against
            destroy: Plan destruction of every recorded resource

        Returns:
            Plan with destroys first (reverse dependency order), then
            creates/updates/no-ops in dependency order

        Raises:
            PlanError: If lifecycle rules forbid the plan or attributes
                cannot be evaluated
        """
        errors: List[str] = []
        desired: List[PlanEntry] = []

        if not destroy:
            desired = self._plan_desired(config, graph, state, errors)

        desired_addresses = {entry.address for entry in desired}
        orphans = [a for a in state.resources if a not in desired_addresses]
        destroys = self._plan_destroys(orphans, graph, state, errors)

        if errors:
            raise PlanError("Plan failed", errors=errors)

        plan = Plan(
            run_id=run_id,
            workspace=state.workspace,
            created_at=datetime.utcnow(),
            destroy=destroy,
            state_serial=state.serial,
            state_lineage=state.lineage,
            entries=destroys + desired,
        )

        self.logger.info(
            f"Created plan: {plan.to_add} to add, {plan.to_change} to change, "
            f"{plan.to_destroy} to destroy"
        )
        return plan

    def _plan_desired(
        self,
        config: Configuration,
        graph: DependencyGraph,
        state: StateSnapshot,
        errors: List[str],
    ) -> List[PlanEntry]:
        """Plan every desired resource in topological order."""
        entries: List[PlanEntry] = []

        # Values known before apply: only resources left untouched or
        # updated in place keep their recorded outputs.
        known: Dict[str, Dict[str, Any]] = {}
        planned: Dict[str, PlanAction] = {}

        for address in graph.topological_order():
            node = graph.resources[address]
            record = state.resources.get(address)
            context = EvaluationContext(
                variables=config.variable_values,
                resources=known,
                instances=graph.instances,
                count_index=node.index,
            )
            try:
                after = evaluate(node.attributes, context)
            except ExpressionError as e:
                errors.append(f"{address}: {e.message}")
                continue

            entry = self._diff(node, record, after, graph.dependencies(address))

            # The old instance of a replaced resource cannot be destroyed
            # while this one still references it
            if entry.action == PlanAction.UPDATE and record is not None:
                replaced = [
                    dep for dep in record.dependencies
                    if planned.get(dep) == PlanAction.REPLACE
                ]
                if replaced:
                    entry.action = PlanAction.REPLACE
                    entry.replace_reasons = [
                        f"references {dep}, which is replaced" for dep in replaced
                    ]
            planned[address] = entry.action

            if entry.action == PlanAction.REPLACE and node.lifecycle.prevent_destroy:
                errors.append(
                    f"{address} has lifecycle.prevent_destroy set but the plan "
                    f"requires replacing it ({'; '.join(entry.replace_reasons)})"
                )

            if entry.action == PlanAction.NO_OP:
                known[address] = record.values()
            elif entry.action == PlanAction.UPDATE:
                known[address] = {**record.values(), **after}

            entries.append(entry)

        return entries

    def _diff(
        self,
        node: ResourceNode,
        record: Optional[StateRecord],
        after: Dict[str, Any],
        dependencies: List[str],
    ) -> PlanEntry:
        """Compare desired attributes with a state record."""
        entry = PlanEntry(
            address=node.address,
            resource_type=node.resource_type,
            name=node.name,
            index=node.index,
            action=PlanAction.CREATE,
            after=render_value(after),
            dependencies=dependencies,
        )

        if record is None:
            return entry

        entry.before = dict(record.attributes)
        entry.provider_id = record.provider_id

        # Ignored attributes keep their recorded value
        for name in node.lifecycle.ignore_changes:
            if name in record.attributes:
                after[name] = record.attributes[name]
        entry.after = render_value(after)

        changed = self.changed_attributes(record.attributes, after)
        entry.changed_attributes = changed

        if record.status == LifecycleState.TAINTED:
            entry.action = PlanAction.REPLACE
            entry.replace_reasons = ["resource is tainted"]
            return entry

        if not changed:
            entry.action = PlanAction.NO_OP
            return entry

        forcing = sorted(set(changed) & self.provider.immutable_attributes(node.resource_type))
        if forcing:
            entry.action = PlanAction.REPLACE
            entry.replace_reasons = [f"{name} forces replacement" for name in forcing]
        else:
            entry.action = PlanAction.UPDATE
        return entry

    @staticmethod
    def changed_attributes(before: Dict[str, Any], after: Dict[str, Any]) -> List[str]:
        """Names of attributes whose desired value differs from the recorded one."""
        changed = []
        for name in sorted(set(before) | set(after)):
            new = after.get(name)
            if contains_unknown(new) or before.get(name) != new:
                changed.append(name)
        return changed

    def _plan_destroys(
        self,
        orphans: List[str],
        graph: DependencyGraph,
        state: StateSnapshot,
        errors: List[str],
    ) -> List[PlanEntry]:
        """Plan destroys, dependents before the resources they depend on."""
        if not orphans:
            return []

        # Order orphans by their recorded dependencies; instances of one
        # block sort together by index
        orphan_graph = DependencyGraph()
        first_seen: Dict[str, int] = {}
        for i, address in enumerate(state.resources):
            first_seen.setdefault(address.split("[", 1)[0], i)
        for address in orphans:
            index = state.resources[address].index
            orphan_graph.add_node(
                address,
                (first_seen[address.split("[", 1)[0]], -1 if index is None else index),
            )
        for address in orphans:
            for dep in state.resources[address].dependencies:
                if dep in orphan_graph:
                    orphan_graph.add_edge(address, dep)

        entries = []
        for address in orphan_graph.reverse_order():
            record = state.resources[address]
            node = graph.resources.get(address)
            if node is not None and node.lifecycle.prevent_destroy:
                errors.append(
                    f"{address} has lifecycle.prevent_destroy set and cannot be destroyed"
                )
            entries.append(
                PlanEntry(
                    address=address,
                    resource_type=record.resource_type,
                    name=record.name,
                    index=record.index,
                    action=PlanAction.DESTROY,
                    before=dict(record.attributes),
                    provider_id=record.provider_id,
                    dependencies=list(record.dependencies),
                )
            )
        return entries


def render_plan(plan: Plan) -> str:
    """
    Render a plan the way an operator reads it.

    Example:
        + aws_vpc.eks_vpc
        ~ aws_lb.eks_lb  (tags)
        -/+ aws_subnet.eks_subnet[0]  (cidr_block forces replacement)
        - aws_route_table.old

        Plan: 2 to add, 1 to change, 2 to destroy.
    """
    lines: List[str] = []
    for entry in plan.actions:
        symbol = ExecutionPlanner.ACTION_SYMBOLS[entry.action]
        detail = ""
        if entry.action == PlanAction.REPLACE:
            detail = f"  ({'; '.join(entry.replace_reasons)})"
        elif entry.action == PlanAction.UPDATE:
            detail = f"  ({', '.join(entry.changed_attributes)})"
        lines.append(f"{symbol:>3} {entry.address}{detail}")

    if not plan.has_changes:
        lines.append("No changes. Infrastructure matches the configuration.")
    else:
        lines.append("")
        lines.append(
            f"Plan: {plan.to_add} to add, {plan.to_change} to change, "
            f"{plan.to_destroy} to destroy."
        )
    return "\n".join(lines)
