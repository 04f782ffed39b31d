"""
Converge - Fake AWS Provider

Simulates AWS control-plane behavior for prototyping and testing.
Stores resources in-memory with JSON persistence for state inspection.
"""

from __future__ import annotations
import base64
import copy
import json
import random
import re
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Set
import logging

from converge.adapters.base import (
    CloudProvider,
    ProviderFactory,
    ProviderError,
    ProviderResource,
    PermanentProviderError,
    TransientProviderError,
)

logger = logging.getLogger(__name__)


EC2_ID_PATTERN = re.compile(r"^(vpc|subnet|igw|rtb|rtbassoc|sg|sgr|lt|r)-[0-9a-f]{17}$")


@dataclass
class InjectedFailure:
    """A scripted failure raised by the next matching calls."""
    operation: str
    error: ProviderError
    resource_type: Optional[str] = None
    times: int = 1


class FakeAWSProvider(CloudProvider):
    """
    Fake AWS provider for simulation and testing.

    Features:
    - In-memory resource storage keyed by provider id
    - Generated ids, ARNs, EKS endpoint and load balancer DNS names
    - Required attribute and referenced-id validation (permanent errors)
    - DependencyViolation on deleting a still-referenced resource and
      random throttling (transient errors)
    - Scripted failure injection and a call log for tests
    - State persistence to JSON

    This provider allows running the entire plan/apply flow without
    touching a real AWS account.
    """

    ACCOUNT_ID = "123456789012"

    # Resource types with their id style, required and immutable attributes
    RESOURCE_DEFINITIONS: Dict[str, Dict[str, Any]] = {
        # Network
        "aws_vpc": {
            "id": "vpc", "service": "ec2", "arn_kind": "vpc",
            "required": ["cidr_block"],
            "immutable": ["cidr_block", "instance_tenancy"],
            "latency_ms": 150,
        },
        "aws_subnet": {
            "id": "subnet", "service": "ec2", "arn_kind": "subnet",
            "required": ["vpc_id", "cidr_block"],
            "immutable": ["vpc_id", "cidr_block", "availability_zone"],
            "latency_ms": 100,
        },
        "aws_internet_gateway": {
            "id": "igw", "service": "ec2", "arn_kind": "internet-gateway",
            "required": [],
            "immutable": ["vpc_id"],
            "latency_ms": 100,
        },
        "aws_route_table": {
            "id": "rtb", "service": "ec2", "arn_kind": "route-table",
            "required": ["vpc_id"],
            "immutable": ["vpc_id"],
            "latency_ms": 80,
        },
        "aws_route": {
            "id": "r", "service": None,
            "required": ["route_table_id", "destination_cidr_block"],
            "immutable": ["route_table_id", "destination_cidr_block"],
            "latency_ms": 50,
        },
        "aws_route_table_association": {
            "id": "rtbassoc", "service": None,
            "required": ["subnet_id", "route_table_id"],
            "immutable": ["subnet_id"],
            "latency_ms": 50,
        },
        "aws_security_group": {
            "id": "sg", "service": "ec2", "arn_kind": "security-group",
            "required": ["vpc_id"],
            "immutable": ["vpc_id", "name", "description"],
            "latency_ms": 80,
        },
        "aws_security_group_rule": {
            "id": "sgr", "service": None,
            "required": ["security_group_id", "type", "from_port", "to_port", "protocol"],
            "immutable": ["security_group_id", "type", "from_port", "to_port", "protocol"],
            "latency_ms": 50,
        },

        # IAM
        "aws_iam_role": {
            "id": "name", "service": "iam", "arn_kind": "role",
            "required": ["name", "assume_role_policy"],
            "immutable": ["name", "path"],
            "latency_ms": 100,
        },
        "aws_iam_role_policy_attachment": {
            "id": "attachment", "service": None,
            "required": ["role", "policy_arn"],
            "immutable": ["role", "policy_arn"],
            "latency_ms": 50,
        },
        "aws_iam_instance_profile": {
            "id": "name", "service": "iam", "arn_kind": "instance-profile",
            "required": ["name", "role"],
            "immutable": ["name"],
            "latency_ms": 80,
        },

        # Compute
        "aws_eks_cluster": {
            "id": "name", "service": "eks", "arn_kind": "cluster",
            "required": ["name", "role_arn", "vpc_config"],
            "immutable": ["name", "role_arn"],
            "latency_ms": 2000,
        },
        "aws_launch_template": {
            "id": "lt", "service": "ec2", "arn_kind": "launch-template",
            "required": [],
            "immutable": ["name"],
            "latency_ms": 80,
        },
        "aws_autoscaling_group": {
            "id": "name", "service": "autoscaling", "arn_kind": "autoScalingGroup",
            "required": ["name", "min_size", "max_size"],
            "immutable": ["name"],
            "latency_ms": 1000,
        },

        # Load balancing
        "aws_lb": {
            "id": "arn", "service": "elasticloadbalancing", "arn_kind": "loadbalancer/app",
            "required": ["name", "subnets"],
            "immutable": ["name", "internal", "load_balancer_type"],
            "latency_ms": 800,
        },
        "aws_lb_target_group": {
            "id": "arn", "service": "elasticloadbalancing", "arn_kind": "targetgroup",
            "required": ["name", "port", "protocol", "vpc_id"],
            "immutable": ["name", "port", "protocol", "vpc_id"],
            "latency_ms": 100,
        },
        "aws_lb_listener": {
            "id": "arn", "service": "elasticloadbalancing", "arn_kind": "listener/app",
            "required": ["load_balancer_arn", "port"],
            "immutable": ["load_balancer_arn"],
            "latency_ms": 100,
        },
        "aws_autoscaling_attachment": {
            "id": "attachment", "service": None,
            "required": ["autoscaling_group_name", "lb_target_group_arn"],
            "immutable": ["autoscaling_group_name", "lb_target_group_arn"],
            "latency_ms": 50,
        },
    }

    def __init__(
        self,
        region: str,
        simulate_latency: bool = True,
        latency_scale: float = 1.0,
        failure_rate: float = 0.0,
        state_path: Optional[str] = None,
        seed: Optional[int] = None,
    ):
        """
        Initialize Fake AWS Provider.

        Args:
            region: AWS region name
            simulate_latency: Add realistic delays
            latency_scale: Multiplier applied to every simulated delay
            failure_rate: Probability of simulated throttling (0.0 - 1.0)
            state_path: Optional path to persist state between sessions
            seed: Seed for generated ids and failures
        """
        super().__init__(region)
        self.simulate_latency = simulate_latency
        self.latency_scale = latency_scale
        self.failure_rate = failure_rate
        self.state_path = Path(state_path) if state_path else None

        # In-memory storage
        self._resources: Dict[str, Dict[str, Any]] = {}
        self._calls: List[Dict[str, Any]] = []
        self._failures: List[InjectedFailure] = []
        self._connected = False
        self._operation_count = 0
        self._lock = threading.Lock()
        self._random = random.Random(seed)

        logger.info(f"FakeAWSProvider initialized: region={region}")

    # =========================================================================
    # SIMULATION HELPERS
    # =========================================================================

    def _simulate_latency(self, base_ms: int = 50, variance_ms: int = 30) -> None:
        """Simulate realistic control-plane latency."""
        if self.simulate_latency:
            delay = (base_ms + self._random.randint(-variance_ms, variance_ms)) / 1000
            time.sleep(max(0.01, delay * self.latency_scale))

    def _should_fail(self) -> bool:
        """Check if the call should be throttled."""
        return self._random.random() < self.failure_rate

    def _hex(self, length: int) -> str:
        return "".join(self._random.choice("0123456789abcdef") for _ in range(length))

    def _record_call(
        self,
        operation: str,
        resource_type: str,
        resource_id: Optional[str] = None,
    ) -> None:
        with self._lock:
            self._operation_count += 1
            self._calls.append({
                "timestamp": datetime.utcnow().isoformat(),
                "operation": operation,
                "resource_type": resource_type,
                "resource_id": resource_id,
            })

    def _maybe_fail(self, operation: str, resource_type: str) -> None:
        """Raise an injected or random failure for this call, if any."""
        with self._lock:
            for failure in self._failures:
                if failure.operation != operation or failure.times <= 0:
                    continue
                if failure.resource_type not in (None, resource_type):
                    continue
                failure.times -= 1
                raise failure.error

        if self._should_fail():
            raise TransientProviderError(
                "Rate exceeded",
                code="Throttling",
                resource_type=resource_type,
            )

    def _definition(self, resource_type: str) -> Dict[str, Any]:
        definition = self.RESOURCE_DEFINITIONS.get(resource_type)
        if definition is None:
            raise PermanentProviderError(
                f"Resource type '{resource_type}' is not supported",
                code="UnsupportedResourceType",
                resource_type=resource_type,
            )
        return definition

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def _validate(self, resource_type: str, attributes: Dict[str, Any]) -> None:
        definition = self._definition(resource_type)
        missing = [a for a in definition["required"] if attributes.get(a) in (None, "")]
        if missing:
            raise PermanentProviderError(
                f"Missing required parameter(s) for {resource_type}: {', '.join(missing)}",
                code="InvalidParameterValue",
                resource_type=resource_type,
            )

        # Every EC2-style id passed in must exist
        known_ids = set(self._resources)
        for entry in self._resources.values():
            known_ids.update(_iter_strings(entry["computed"]))
        for value in _iter_strings(attributes):
            if EC2_ID_PATTERN.match(value) and value not in known_ids:
                kind = value.split("-", 1)[0]
                raise PermanentProviderError(
                    f"The {kind} ID '{value}' does not exist",
                    code="InvalidParameterValue",
                    resource_type=resource_type,
                )

    def _referenced_by(self, resource_id: str) -> List[str]:
        """Ids of live resources whose attributes mention this resource."""
        target = self._resources[resource_id]
        needles = {resource_id, target["computed"].get("arn")} - {None}
        return [
            other_id
            for other_id, other in self._resources.items()
            if other_id != resource_id
            and needles.intersection(_iter_strings(other["attributes"]))
        ]

    # =========================================================================
    # ID / COMPUTED ATTRIBUTE GENERATION
    # =========================================================================

    def _arn(self, resource_type: str, name: str) -> Optional[str]:
        definition = self.RESOURCE_DEFINITIONS[resource_type]
        service = definition["service"]
        if service is None:
            return None
        kind = definition["arn_kind"]
        if service == "iam":
            return f"arn:aws:iam::{self.ACCOUNT_ID}:{kind}/{name}"
        if service == "elasticloadbalancing":
            return (
                f"arn:aws:elasticloadbalancing:{self.region}:{self.ACCOUNT_ID}:"
                f"{kind}/{name}/{self._hex(16)}"
            )
        if service == "autoscaling":
            return (
                f"arn:aws:autoscaling:{self.region}:{self.ACCOUNT_ID}:{kind}:"
                f"{self._hex(8)}-{self._hex(4)}-{self._hex(4)}-{self._hex(4)}-"
                f"{self._hex(12)}:autoScalingGroupName/{name}"
            )
        return f"arn:aws:{service}:{self.region}:{self.ACCOUNT_ID}:{kind}/{name}"

    def _generate(
        self,
        resource_type: str,
        attributes: Dict[str, Any],
    ) -> ProviderResource:
        """Create id and computed attributes for a new resource."""
        id_style = self.RESOURCE_DEFINITIONS[resource_type]["id"]

        if id_style == "name":
            resource_id = str(attributes["name"])
            arn = self._arn(resource_type, resource_id)
        elif id_style == "arn":
            name = str(attributes.get("name") or self._hex(8))
            if resource_type == "aws_lb_listener":
                name = self._listener_parent(attributes)
            arn = self._arn(resource_type, name)
            resource_id = arn
        elif id_style == "attachment":
            resource_id = f"{resource_type.split('_', 1)[1]}-{self._hex(20)}"
            arn = None
        else:
            resource_id = f"{id_style}-{self._hex(17)}"
            arn = self._arn(resource_type, resource_id)

        computed: Dict[str, Any] = {}
        if arn:
            computed["arn"] = arn

        if resource_type == "aws_vpc":
            computed["main_route_table_id"] = f"rtb-{self._hex(17)}"
            computed["owner_id"] = self.ACCOUNT_ID
        elif resource_type == "aws_subnet":
            computed["availability_zone_id"] = f"{self.region.replace('-', '')[:4]}-az1"
            computed["owner_id"] = self.ACCOUNT_ID
        elif resource_type == "aws_security_group":
            computed["owner_id"] = self.ACCOUNT_ID
        elif resource_type == "aws_iam_role":
            computed["unique_id"] = f"AROA{self._hex(17).upper()}"
            computed["create_date"] = datetime.utcnow().isoformat()
        elif resource_type == "aws_eks_cluster":
            computed["endpoint"] = (
                f"https://{self._hex(32).upper()}.gr7.{self.region}.eks.amazonaws.com"
            )
            certificate = base64.b64encode(self._hex(48).encode()).decode()
            computed["certificate_authority"] = [{"data": certificate}]
            computed["status"] = "ACTIVE"
            computed["platform_version"] = "eks.1"
        elif resource_type == "aws_launch_template":
            computed["latest_version"] = 1
            computed["default_version"] = 1
        elif resource_type == "aws_lb":
            suffix = "".join(self._random.choice("0123456789") for _ in range(10))
            computed["dns_name"] = f"{attributes['name']}-{suffix}.{self.region}.elb.amazonaws.com"
            computed["zone_id"] = "Z1H1FL5HABSF5"
            computed["arn_suffix"] = arn.split(":loadbalancer/", 1)[1]
        elif resource_type == "aws_lb_target_group":
            computed["arn_suffix"] = arn.split(":", 5)[5]

        return ProviderResource(id=resource_id, resource_type=resource_type, attributes=computed)

    def _listener_parent(self, attributes: Dict[str, Any]) -> str:
        lb_arn = str(attributes.get("load_balancer_arn", ""))
        parts = lb_arn.split("loadbalancer/app/", 1)
        return f"{parts[1]}/{self._hex(16)}" if len(parts) == 2 else self._hex(8)

    # =========================================================================
    # PROVIDER INTERFACE
    # =========================================================================

    def connect(self) -> bool:
        """Simulate session setup, loading persisted state if configured."""
        self._simulate_latency(100, 50)
        if self._should_fail():
            logger.error(f"Connection failed to FakeAWS: {self.region}")
            return False
        if self.state_path and self.state_path.exists():
            self.import_state(str(self.state_path))
        self._connected = True
        logger.info(f"Connected to FakeAWS: {self.region}")
        return True

    def disconnect(self) -> None:
        """Simulate session teardown, persisting state if configured."""
        if self.state_path:
            self.export_state(str(self.state_path))
        self._connected = False
        logger.info(f"Disconnected from FakeAWS: {self.region}")

    def create(
        self,
        resource_type: str,
        attributes: Dict[str, Any],
    ) -> ProviderResource:
        """Create a resource."""
        self._record_call("create", resource_type)
        self._maybe_fail("create", resource_type)
        definition = self._definition(resource_type)
        self._simulate_latency(definition["latency_ms"], definition["latency_ms"] // 4)

        with self._lock:
            self._validate(resource_type, attributes)
            resource = self._generate(resource_type, attributes)
            if resource.id in self._resources:
                raise PermanentProviderError(
                    f"{resource_type} '{resource.id}' already exists",
                    code="EntityAlreadyExists",
                    resource_type=resource_type,
                )
            self._resources[resource.id] = {
                "type": resource_type,
                "attributes": copy.deepcopy(attributes),
                "computed": copy.deepcopy(resource.attributes),
            }

        logger.debug(f"Created {resource_type}: {resource.id}")
        return resource

    def read(
        self,
        resource_type: str,
        resource_id: str,
    ) -> Optional[ProviderResource]:
        """Describe a resource."""
        self._record_call("read", resource_type, resource_id)
        self._maybe_fail("read", resource_type)
        self._simulate_latency(20, 10)

        with self._lock:
            entry = self._resources.get(resource_id)
            if entry is None or entry["type"] != resource_type:
                return None
            return ProviderResource(
                id=resource_id,
                resource_type=resource_type,
                attributes=copy.deepcopy(entry["computed"]),
            )

    def update(
        self,
        resource_type: str,
        resource_id: str,
        attributes: Dict[str, Any],
    ) -> ProviderResource:
        """Update mutable attributes in place."""
        self._record_call("update", resource_type, resource_id)
        self._maybe_fail("update", resource_type)
        definition = self._definition(resource_type)
        self._simulate_latency(definition["latency_ms"] // 2, definition["latency_ms"] // 8)

        with self._lock:
            entry = self._resources.get(resource_id)
            if entry is None:
                raise PermanentProviderError(
                    f"{resource_type} '{resource_id}' does not exist",
                    code="NotFound",
                    resource_type=resource_type,
                )
            self._validate(resource_type, attributes)
            for name in definition["immutable"]:
                if entry["attributes"].get(name) != attributes.get(name):
                    raise PermanentProviderError(
                        f"Attribute '{name}' of {resource_type} cannot be updated in place",
                        code="InvalidParameterCombination",
                        resource_type=resource_type,
                    )
            entry["attributes"] = copy.deepcopy(attributes)
            computed = copy.deepcopy(entry["computed"])

        logger.debug(f"Updated {resource_type}: {resource_id}")
        return ProviderResource(id=resource_id, resource_type=resource_type, attributes=computed)

    def delete(
        self,
        resource_type: str,
        resource_id: str,
    ) -> None:
        """Delete a resource; deleting something that is gone is a no-op."""
        self._record_call("delete", resource_type, resource_id)
        self._maybe_fail("delete", resource_type)
        definition = self._definition(resource_type)
        self._simulate_latency(definition["latency_ms"] // 2, definition["latency_ms"] // 8)

        with self._lock:
            if resource_id not in self._resources:
                logger.warning(f"Delete of missing {resource_type}: {resource_id}")
                return
            dependents = self._referenced_by(resource_id)
            if dependents:
                raise TransientProviderError(
                    f"{resource_type} '{resource_id}' has dependencies and "
                    f"cannot be deleted: {', '.join(dependents)}",
                    code="DependencyViolation",
                    resource_type=resource_type,
                )
            del self._resources[resource_id]

        logger.debug(f"Deleted {resource_type}: {resource_id}")

    def immutable_attributes(self, resource_type: str) -> Set[str]:
        definition = self.RESOURCE_DEFINITIONS.get(resource_type)
        return set(definition["immutable"]) if definition else set()

    # =========================================================================
    # TEST / INSPECTION HELPERS
    # =========================================================================

    def inject_failure(
        self,
        operation: str,
        error: ProviderError,
        resource_type: Optional[str] = None,
        times: int = 1,
    ) -> None:
        """Make the next ``times`` matching calls raise ``error``."""
        with self._lock:
            self._failures.append(
                InjectedFailure(
                    operation=operation,
                    error=error,
                    resource_type=resource_type,
                    times=times,
                )
            )

    def delete_out_of_band(self, resource_id: str) -> None:
        """Remove a resource behind the engine's back (simulates drift)."""
        with self._lock:
            self._resources.pop(resource_id, None)

    def resource_ids(self, resource_type: Optional[str] = None) -> List[str]:
        with self._lock:
            return [
                rid for rid, entry in self._resources.items()
                if resource_type is None or entry["type"] == resource_type
            ]

    def call_log(self, operation: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                dict(call) for call in self._calls
                if operation is None or call["operation"] == operation
            ]

    def get_state(self) -> Dict[str, Any]:
        """Get current provider state."""
        with self._lock:
            counts: Dict[str, int] = {}
            for entry in self._resources.values():
                counts[entry["type"]] = counts.get(entry["type"], 0) + 1
            return {
                "region": self.region,
                "connected": self._connected,
                "operation_count": self._operation_count,
                "resources": counts,
                "calls": len(self._calls),
            }

    def reset(self) -> None:
        """Reset provider state."""
        with self._lock:
            self._resources = {}
            self._calls = []
            self._failures = []
            self._operation_count = 0
        logger.info(f"FakeAWS provider reset: {self.region}")

    def export_state(self, path: Optional[str] = None) -> str:
        """Export current state to JSON file."""
        export_path = Path(path) if path else self.state_path
        if not export_path:
            export_path = Path(f"./fake_aws_state_{self.region}.json")

        with self._lock:
            state = {
                "metadata": {
                    "region": self.region,
                    "exported_at": datetime.utcnow().isoformat(),
                    "operation_count": self._operation_count,
                },
                "resources": self._resources,
                "calls": self._calls[-100:],  # Last 100 calls
            }
            export_path.parent.mkdir(parents=True, exist_ok=True)
            with open(export_path, "w", encoding="utf-8") as f:
                json.dump(state, f, indent=2, default=str)

        logger.info(f"State exported to: {export_path}")
        return str(export_path)

    def import_state(self, path: str) -> None:
        """Import state from JSON file."""
        with open(path, "r", encoding="utf-8") as f:
            state = json.load(f)

        with self._lock:
            self._resources = state.get("resources", {})
            self._calls = state.get("calls", [])
        logger.info(f"State imported from: {path}")


def _iter_strings(value: Any) -> Iterator[str]:
    """Yield every string nested inside a value."""
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from _iter_strings(item)
    elif isinstance(value, list):
        for item in value:
            yield from _iter_strings(item)


# Register provider with factory
ProviderFactory.register("fake", FakeAWSProvider)
