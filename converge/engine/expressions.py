"""
Converge - Expression Evaluation

Parses ``${...}`` interpolations found in attribute values and evaluates
them against variables, ``count.index`` and known resource attributes.

Supported expressions:
- ``var.NAME`` / ``var.NAME[N]`` / ``var.NAME[count.index]``
- ``count.index``
- ``TYPE.NAME.ATTR``, ``TYPE.NAME[N].ATTR``, ``TYPE.NAME[count.index].ATTR``
- ``TYPE.NAME[*].ATTR`` (list over every count instance)

ATTR may be a dotted path into nested maps and lists
(``certificate_authority.0.data``).
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union
import json
import re


INTERPOLATION_PATTERN = re.compile(r"\$\{([^}]*)\}")

_INDEX = r"(?:\[(?P<index>\*|\d+|count\.index)\])?"

VARIABLE_PATTERN = re.compile(r"^var\.(?P<name>[A-Za-z_][\w-]*)" + _INDEX + r"$")

RESOURCE_PATTERN = re.compile(
    r"^(?P<type>[A-Za-z_][\w-]*)\.(?P<name>[A-Za-z_][\w-]*)"
    + _INDEX
    + r"(?:\.(?P<attr>[\w-]+(?:\.[\w-]+)*))?$"
)

COUNT_INDEX = "count.index"

KNOWN_AFTER_APPLY = "(known after apply)"


class ExpressionError(Exception):
    """Exception raised for malformed or unresolvable expressions."""

    def __init__(self, message: str, expression: Optional[str] = None):
        self.message = message
        self.expression = expression
        super().__init__(self.message)


class UnknownValue:
    """Placeholder for a value only known once a resource is applied."""

    _instance: Optional["UnknownValue"] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return KNOWN_AFTER_APPLY

    def __bool__(self) -> bool:
        return False


UNKNOWN = UnknownValue()


@dataclass(frozen=True)
class Reference:
    """A parsed reference found inside an interpolation."""
    kind: str  # "resource", "variable" or "count"
    expression: str
    resource_type: Optional[str] = None
    name: Optional[str] = None
    index: Optional[Union[int, str]] = None
    attribute: Optional[str] = None

    @property
    def base_address(self) -> Optional[str]:
        if self.kind != "resource":
            return None
        return f"{self.resource_type}.{self.name}"

    @property
    def is_splat(self) -> bool:
        return self.index == "*"


@dataclass
class EvaluationContext:
    """
    Values visible to expressions.

    ``resources`` maps instance addresses to their known values; an address
    that is absent is not yet applied and evaluates to ``UNKNOWN``.
    ``instances`` maps each declared base address to its instance addresses.
    """
    variables: Dict[str, Any] = field(default_factory=dict)
    resources: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    instances: Dict[str, List[str]] = field(default_factory=dict)
    count_index: Optional[int] = None


# =============================================================================
# PARSING
# =============================================================================

def _parse_index(raw: Optional[str]) -> Optional[Union[int, str]]:
    if raw is None:
        return None
    if raw in ("*", COUNT_INDEX):
        return raw
    return int(raw)


def parse_reference(expression: str) -> Reference:
    """
    Parse the body of a single ``${...}`` interpolation.

    Raises:
        ExpressionError: If the expression is not a supported reference
    """
    text = expression.strip()
    if not text:
        raise ExpressionError("Empty interpolation", expression)

    if text == COUNT_INDEX:
        return Reference(kind="count", expression=text)

    if text.startswith("var."):
        match = VARIABLE_PATTERN.match(text)
        if not match:
            raise ExpressionError(f"Invalid variable reference: '{text}'", text)
        index = _parse_index(match.group("index"))
        if index == "*":
            raise ExpressionError(f"Splat is not supported on variables: '{text}'", text)
        return Reference(
            kind="variable",
            expression=text,
            name=match.group("name"),
            index=index,
        )

    match = RESOURCE_PATTERN.match(text)
    if not match:
        raise ExpressionError(f"Invalid reference: '{text}'", text)

    return Reference(
        kind="resource",
        expression=text,
        resource_type=match.group("type"),
        name=match.group("name"),
        index=_parse_index(match.group("index")),
        attribute=match.group("attr"),
    )


def find_references(value: Any) -> List[Reference]:
    """Collect every reference in a (possibly nested) attribute value."""
    references: List[Reference] = []

    if isinstance(value, str):
        for body in INTERPOLATION_PATTERN.findall(value):
            references.append(parse_reference(body))
    elif isinstance(value, dict):
        for item in value.values():
            references.extend(find_references(item))
    elif isinstance(value, list):
        for item in value:
            references.extend(find_references(item))

    return references


def contains_unknown(value: Any) -> bool:
    """Check whether a value contains an unknown placeholder."""
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, list):
        return any(contains_unknown(v) for v in value)
    return False


def render_value(value: Any) -> Any:
    """Replace unknown placeholders with a printable marker."""
    if value is UNKNOWN:
        return KNOWN_AFTER_APPLY
    if isinstance(value, dict):
        return {k: render_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [render_value(v) for v in value]
    return value


# =============================================================================
# EVALUATION
# =============================================================================

def evaluate(value: Any, context: EvaluationContext) -> Any:
    """
    Evaluate every interpolation inside a value.

    A string consisting of a single interpolation yields the raw referenced
    value (list, number, map...). Interpolations mixed with text produce a
    string, or ``UNKNOWN`` if any part is unknown.
    """
    if isinstance(value, dict):
        return {k: evaluate(v, context) for k, v in value.items()}
    if isinstance(value, list):
        return [evaluate(v, context) for v in value]
    if not isinstance(value, str) or "${" not in value:
        return value

    whole = INTERPOLATION_PATTERN.fullmatch(value)
    if whole:
        return resolve(parse_reference(whole.group(1)), context)

    parts: List[str] = []
    position = 0
    for match in INTERPOLATION_PATTERN.finditer(value):
        parts.append(value[position:match.start()])
        resolved = resolve(parse_reference(match.group(1)), context)
        if contains_unknown(resolved):
            return UNKNOWN
        parts.append(_to_text(resolved))
        position = match.end()
    parts.append(value[position:])
    return "".join(parts)


def resolve(reference: Reference, context: EvaluationContext) -> Any:
    """Resolve a single reference to its value."""
    if reference.kind == "count":
        if context.count_index is None:
            raise ExpressionError(
                "count.index used in a resource without count",
                reference.expression,
            )
        return context.count_index

    if reference.kind == "variable":
        if reference.name not in context.variables:
            raise ExpressionError(
                f"Undeclared variable: '{reference.name}'",
                reference.expression,
            )
        value = context.variables[reference.name]
        if reference.index is None:
            return value
        index = _concrete_index(reference, context)
        try:
            return value[index]
        except (IndexError, KeyError, TypeError):
            raise ExpressionError(
                f"Index {index} out of range for variable '{reference.name}'",
                reference.expression,
            )

    base = reference.base_address
    if base not in context.instances:
        raise ExpressionError(
            f"Reference to undeclared resource: '{base}'",
            reference.expression,
        )
    instances = context.instances[base]

    if reference.is_splat:
        return [_lookup(address, reference, context) for address in instances]

    if reference.index is None:
        if instances != [base]:
            raise ExpressionError(
                f"Resource '{base}' has count set; reference an instance "
                f"with [N] or all instances with [*]",
                reference.expression,
            )
        return _lookup(base, reference, context)

    address = f"{base}[{_concrete_index(reference, context)}]"
    if address not in instances:
        raise ExpressionError(
            f"Reference to missing instance: '{address}'",
            reference.expression,
        )
    return _lookup(address, reference, context)


def _concrete_index(reference: Reference, context: EvaluationContext) -> int:
    if reference.index == COUNT_INDEX:
        if context.count_index is None:
            raise ExpressionError(
                "count.index used in a resource without count",
                reference.expression,
            )
        return context.count_index
    return reference.index  # type: ignore[return-value]


def _lookup(address: str, reference: Reference, context: EvaluationContext) -> Any:
    values = context.resources.get(address)
    if values is None:
        return UNKNOWN
    if not reference.attribute:
        return values

    current: Any = values
    for segment in reference.attribute.split("."):
        if current is UNKNOWN:
            return UNKNOWN
        if isinstance(current, dict) and segment in current:
            current = current[segment]
        elif isinstance(current, list) and segment.isdigit() and int(segment) < len(current):
            current = current[int(segment)]
        else:
            raise ExpressionError(
                f"Resource '{address}' has no attribute '{reference.attribute}'",
                reference.expression,
            )
    return current


def _to_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)
