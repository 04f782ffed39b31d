"""
Converge - Domain Models

Defines all Pydantic models for parsed configurations, the dependency graph,
execution plans, persisted state and API responses. These models form the
core data structures that flow through the entire system.
"""

from __future__ import annotations
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
import uuid


# =============================================================================
# ENUMS
# =============================================================================

class LifecycleState(str, Enum):
    """Lifecycle state of a resource node or state record."""
    PLANNED = "planned"
    CREATED = "created"
    UPDATED = "updated"
    DESTROYED = "destroyed"
    TAINTED = "tainted"


class PlanAction(str, Enum):
    """Action planned for a single resource."""
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DESTROY = "destroy"
    NO_OP = "no-op"


class EntryStatus(str, Enum):
    """Status of an individual plan entry during apply."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunStatus(str, Enum):
    """Overall status of a plan/apply run."""
    CREATED = "created"
    PLANNING = "planning"
    APPLYING = "applying"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# =============================================================================
# CONFIGURATION MODEL (YAML -> Domain Model)
# =============================================================================

class VariableDefinition(BaseModel):
    """Input variable declared in a configuration."""
    name: str
    default: Optional[Any] = None
    has_default: bool = False
    description: Optional[str] = None


class LifecycleConfig(BaseModel):
    """Per-resource lifecycle meta-arguments."""
    prevent_destroy: bool = False
    create_before_destroy: bool = False
    ignore_changes: List[str] = Field(default_factory=list)


class ResourceNode(BaseModel):
    """
    A typed resource block.

    Parsed blocks carry their raw ``count`` expression; the graph builder
    expands them into one node per instance with ``index`` set.
    """
    resource_type: str = Field(..., description="Resource type (e.g., aws_vpc)")
    name: str = Field(..., description="Logical name within the type")
    index: Optional[int] = Field(default=None, description="Count instance index")
    attributes: Dict[str, Any] = Field(default_factory=dict)
    count: Optional[Any] = None
    depends_on: List[str] = Field(default_factory=list)
    lifecycle: LifecycleConfig = Field(default_factory=LifecycleConfig)
    declaration_order: int = 0
    state: LifecycleState = LifecycleState.PLANNED

    @property
    def base_address(self) -> str:
        return f"{self.resource_type}.{self.name}"

    @property
    def address(self) -> str:
        if self.index is None:
            return self.base_address
        return f"{self.base_address}[{self.index}]"


class OutputDefinition(BaseModel):
    """Named output evaluated after apply."""
    name: str
    value: Any = None
    description: Optional[str] = None
    sensitive: bool = False


class Configuration(BaseModel):
    """
    Complete parsed configuration - the desired state.

    ``variable_values`` holds the effective variable values (defaults merged
    with caller-supplied overrides).
    """
    variables: Dict[str, VariableDefinition] = Field(default_factory=dict)
    variable_values: Dict[str, Any] = Field(default_factory=dict)
    resources: List[ResourceNode] = Field(default_factory=list)
    outputs: Dict[str, OutputDefinition] = Field(default_factory=dict)

    def get_resource(self, base_address: str) -> Optional[ResourceNode]:
        for resource in self.resources:
            if resource.base_address == base_address:
                return resource
        return None


class ReferenceEdge(BaseModel):
    """Edge source -> target: source references target's attributes."""
    source: str
    target: str
    attribute: Optional[str] = None


# =============================================================================
# PLAN MODELS
# =============================================================================

class PlanEntry(BaseModel):
    """A resource and the action planned for it."""
    address: str
    resource_type: str
    name: str
    index: Optional[int] = None
    action: PlanAction
    before: Optional[Dict[str, Any]] = None
    after: Dict[str, Any] = Field(default_factory=dict)
    changed_attributes: List[str] = Field(default_factory=list)
    replace_reasons: List[str] = Field(default_factory=list)
    dependencies: List[str] = Field(default_factory=list)
    provider_id: Optional[str] = None


class Plan(BaseModel):
    """Ordered set of actions reconciling desired and recorded state."""
    run_id: str
    workspace: str = "default"
    created_at: datetime = Field(default_factory=datetime.utcnow)
    destroy: bool = False
    state_serial: int = 0
    state_lineage: Optional[str] = None
    entries: List[PlanEntry] = Field(default_factory=list)
    drifted: List[str] = Field(default_factory=list)

    @property
    def actions(self) -> List[PlanEntry]:
        return [e for e in self.entries if e.action != PlanAction.NO_OP]

    @property
    def to_add(self) -> int:
        return sum(
            1 for e in self.entries
            if e.action in (PlanAction.CREATE, PlanAction.REPLACE)
        )

    @property
    def to_change(self) -> int:
        return sum(1 for e in self.entries if e.action == PlanAction.UPDATE)

    @property
    def to_destroy(self) -> int:
        return sum(
            1 for e in self.entries
            if e.action in (PlanAction.DESTROY, PlanAction.REPLACE)
        )

    @property
    def has_changes(self) -> bool:
        return bool(self.actions)

    def get_entry(self, address: str) -> Optional[PlanEntry]:
        for entry in self.entries:
            if entry.address == address:
                return entry
        return None


# =============================================================================
# STATE MODELS
# =============================================================================

class StateRecord(BaseModel):
    """Last-applied snapshot of a single resource."""
    address: str
    resource_type: str
    name: str
    index: Optional[int] = None
    provider_id: str
    attributes: Dict[str, Any] = Field(default_factory=dict)
    computed: Dict[str, Any] = Field(default_factory=dict)
    dependencies: List[str] = Field(default_factory=list)
    status: LifecycleState = LifecycleState.CREATED
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    def values(self) -> Dict[str, Any]:
        """All known attribute values, as seen by references."""
        return {**self.attributes, **self.computed, "id": self.provider_id}


class StateSnapshot(BaseModel):
    """Persisted state of a workspace."""
    version: int = 1
    serial: int = 0
    lineage: str = Field(default_factory=lambda: uuid.uuid4().hex)
    workspace: str = "default"
    resources: Dict[str, StateRecord] = Field(default_factory=dict)
    outputs: Dict[str, Any] = Field(default_factory=dict)
    updated_at: Optional[datetime] = None


class LockInfo(BaseModel):
    """Information written into a held state lock."""
    id: str
    workspace: str
    operation: str
    who: str
    created_at: datetime = Field(default_factory=datetime.utcnow)


# =============================================================================
# EXECUTION MODELS
# =============================================================================

class EntryResult(BaseModel):
    """Result of applying a single plan entry."""
    address: str
    action: PlanAction
    status: EntryStatus = EntryStatus.PENDING
    attempts: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_seconds: float = 0.0
    provider_id: Optional[str] = None
    error_message: Optional[str] = None


class RunSummary(BaseModel):
    """Summary of a plan/apply run."""
    run_id: str
    workspace: str = "default"
    status: RunStatus
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_seconds: float = 0.0

    # Plan statistics
    to_add: int = 0
    to_change: int = 0
    to_destroy: int = 0

    # Apply statistics
    added: int = 0
    changed: int = 0
    destroyed: int = 0
    failed: int = 0
    skipped: int = 0

    outputs: Dict[str, Any] = Field(default_factory=dict)
    results: List[EntryResult] = Field(default_factory=list)
    error_message: Optional[str] = None


# =============================================================================
# API MODELS
# =============================================================================

class RunCreateRequest(BaseModel):
    """Request to create a new plan/apply run."""
    config_yaml: str = Field(..., description="YAML configuration content")
    variables: Dict[str, Any] = Field(default_factory=dict)
    dry_run: bool = Field(default=False, description="Plan without applying")
    destroy: bool = Field(default=False, description="Destroy all managed resources")
    refresh: bool = Field(default=True, description="Refresh state before planning")


class RunCreateResponse(BaseModel):
    """Response after creating a run."""
    run_id: str
    status: RunStatus
    message: str
    plan: Optional[Plan] = None
    plan_text: Optional[str] = None


class RunStatusResponse(BaseModel):
    """Response for run status query."""
    run_id: str
    status: RunStatus
    progress_percent: float = 0.0
    current_resource: Optional[str] = None
    message: Optional[str] = None
    summary: Optional[RunSummary] = None


class StateResponse(BaseModel):
    """Current workspace state."""
    workspace: str
    serial: int
    lineage: str
    resources: List[StateRecord] = Field(default_factory=list)
    outputs: Dict[str, Any] = Field(default_factory=dict)

