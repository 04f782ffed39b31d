"""
Converge - Configuration Parser

Parses and validates YAML resource definition files.
Transforms raw YAML into a validated Configuration of typed resource blocks.
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional
import logging
import re
import yaml
from pydantic import ValidationError

from converge.models import (
    Configuration,
    LifecycleConfig,
    OutputDefinition,
    ResourceNode,
    VariableDefinition,
)
from converge.engine.expressions import (
    ExpressionError,
    EvaluationContext,
    evaluate,
    find_references,
    contains_unknown,
)

logger = logging.getLogger(__name__)


IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][\w-]*$")
DEPENDS_ON_PATTERN = re.compile(r"^[A-Za-z_][\w-]*\.[A-Za-z_][\w-]*(\[\d+\])?$")


class ParseError(Exception):
    """Exception raised for malformed configuration input."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        self.message = message
        self.errors = errors or []
        super().__init__(self.message)


class ConfigParser:
    """
    Parser for resource definition files.

    Responsibilities:
    - Parse YAML content
    - Validate block structure (variable / resource / output)
    - Transform to domain model (Configuration)
    - Check references point at declared resources and variables
    - Report clear validation errors
    """

    # Allowed top-level sections
    SECTIONS = ["variable", "resource", "output"]

    # Keys inside a resource block that are not provider attributes
    META_ARGUMENTS = ["count", "depends_on", "lifecycle"]

    # Keys allowed inside an output block
    OUTPUT_KEYS = ["value", "description", "sensitive"]

    def __init__(self):
        """Initialize parser."""
        self.logger = logging.getLogger(__name__)

    def parse(
        self,
        yaml_content: str,
        variables: Optional[Dict[str, Any]] = None,
    ) -> Configuration:
        """
        Parse YAML content into a Configuration.

        Args:
            yaml_content: YAML configuration string
            variables: Values overriding variable defaults

        Returns:
            Validated Configuration

        Raises:
            ParseError: If parsing or validation fails
        """
        # Step 1: Parse YAML syntax
        raw_config = self._parse_yaml(yaml_content)

        # Step 2: Validate structure
        validation_errors = self._validate_structure(raw_config)
        if validation_errors:
            raise ParseError(
                "Configuration validation failed",
                errors=validation_errors,
            )

        # Step 3: Transform to domain model
        try:
            config = self._transform_to_model(raw_config)
        except ValidationError as e:
            errors = [f"{err['loc']}: {err['msg']}" for err in e.errors()]
            raise ParseError("Model validation failed", errors=errors)

        # Step 4: Resolve variable values
        variable_errors = self._resolve_variables(config, variables or {})
        if variable_errors:
            raise ParseError("Variable resolution failed", errors=variable_errors)

        # Step 5: Semantic validation
        semantic_errors = self._validate_semantics(config)
        if semantic_errors:
            raise ParseError(
                "Semantic validation failed",
                errors=semantic_errors,
            )

        self.logger.info(
            f"Parsed configuration: {len(config.resources)} resources, "
            f"{len(config.variables)} variables, {len(config.outputs)} outputs"
        )
        return config

    def _parse_yaml(self, yaml_content: str) -> Dict[str, Any]:
        """
        Parse YAML string to dictionary.

        Raises:
            ParseError: If YAML syntax is invalid
        """
        try:
            config = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ParseError(f"YAML syntax error: {str(e)}")

        if config is None:
            raise ParseError("Empty configuration")
        if not isinstance(config, dict):
            raise ParseError("Configuration must be a YAML mapping/dictionary")
        return config

    def _validate_structure(self, config: Dict[str, Any]) -> List[str]:
        """
        Validate configuration structure.

        Args:
            config: Parsed configuration dictionary

        Returns:
            List of validation errors
        """
        errors = []

        for section in config:
            if section not in self.SECTIONS:
                errors.append(
                    f"Unknown top-level section: '{section}'. "
                    f"Allowed: {self.SECTIONS}"
                )

        if "resource" not in config:
            errors.append("Missing required section: 'resource'")

        for section in self.SECTIONS:
            if section in config and config[section] is not None:
                if not isinstance(config[section], dict):
                    errors.append(f"Section '{section}' must be a mapping")

        # Validate variable section
        variables = config.get("variable") or {}
        if isinstance(variables, dict):
            for name, block in variables.items():
                if not IDENTIFIER_PATTERN.match(str(name)):
                    errors.append(f"Invalid variable name: '{name}'")
                if block is not None and not isinstance(block, dict):
                    errors.append(f"variable.{name} must be a mapping")

        # Validate resource section
        resources = config.get("resource") or {}
        if isinstance(resources, dict):
            for resource_type, blocks in resources.items():
                if not IDENTIFIER_PATTERN.match(str(resource_type)):
                    errors.append(f"Invalid resource type: '{resource_type}'")
                    continue
                if not isinstance(blocks, dict):
                    errors.append(f"resource.{resource_type} must be a mapping of names")
                    continue
                for name, block in blocks.items():
                    prefix = f"resource.{resource_type}.{name}"
                    if not IDENTIFIER_PATTERN.match(str(name)):
                        errors.append(f"Invalid resource name: '{prefix}'")
                    if block is None:
                        continue
                    if not isinstance(block, dict):
                        errors.append(f"{prefix} must be a mapping")
                        continue
                    errors.extend(self._validate_meta_arguments(prefix, block))

        # Validate output section
        outputs = config.get("output") or {}
        if isinstance(outputs, dict):
            for name, block in outputs.items():
                if not isinstance(block, dict):
                    errors.append(f"output.{name} must be a mapping")
                    continue
                if "value" not in block:
                    errors.append(f"output.{name}.value is required")
                for key in block:
                    if key not in self.OUTPUT_KEYS:
                        errors.append(
                            f"output.{name}: unknown key '{key}'. Allowed: {self.OUTPUT_KEYS}"
                        )

        return errors

    def _validate_meta_arguments(self, prefix: str, block: Dict[str, Any]) -> List[str]:
        """Validate count / depends_on / lifecycle of one resource block."""
        errors = []

        if "count" in block:
            count = block["count"]
            if isinstance(count, bool) or not isinstance(count, (int, str)):
                errors.append(f"{prefix}.count must be an integer or expression")
            elif isinstance(count, int) and count < 0:
                errors.append(f"{prefix}.count must not be negative")

        if "depends_on" in block:
            depends_on = block["depends_on"]
            if not isinstance(depends_on, list):
                errors.append(f"{prefix}.depends_on must be a list")
            else:
                for dep in depends_on:
                    if not isinstance(dep, str) or not DEPENDS_ON_PATTERN.match(dep):
                        errors.append(
                            f"{prefix}.depends_on entry '{dep}' must be TYPE.NAME"
                        )

        if "lifecycle" in block and not isinstance(block["lifecycle"], dict):
            errors.append(f"{prefix}.lifecycle must be a mapping")

        return errors

    def _transform_to_model(self, config: Dict[str, Any]) -> Configuration:
        """
        Transform dictionary to Configuration.

        Resource blocks keep their declaration order, which later breaks
        ties in the topological ordering.
        """
        variables: Dict[str, VariableDefinition] = {}
        for name, block in (config.get("variable") or {}).items():
            block = block or {}
            variables[name] = VariableDefinition(
                name=name,
                default=block.get("default"),
                has_default="default" in block,
                description=block.get("description"),
            )

        resources: List[ResourceNode] = []
        order = 0
        for resource_type, blocks in (config.get("resource") or {}).items():
            for name, block in blocks.items():
                block = dict(block or {})
                meta = {k: block.pop(k) for k in self.META_ARGUMENTS if k in block}
                resources.append(
                    ResourceNode(
                        resource_type=resource_type,
                        name=name,
                        attributes=block,
                        count=meta.get("count"),
                        depends_on=meta.get("depends_on", []),
                        lifecycle=LifecycleConfig(**(meta.get("lifecycle") or {})),
                        declaration_order=order,
                    )
                )
                order += 1

        outputs: Dict[str, OutputDefinition] = {}
        for name, block in (config.get("output") or {}).items():
            outputs[name] = OutputDefinition(**{**block, "name": name})

        return Configuration(
            variables=variables,
            resources=resources,
            outputs=outputs,
        )

    def _resolve_variables(
        self,
        config: Configuration,
        overrides: Dict[str, Any],
    ) -> List[str]:
        """Merge defaults and overrides into ``config.variable_values``."""
        errors = []

        for name in overrides:
            if name not in config.variables:
                errors.append(f"Value given for undeclared variable: '{name}'")

        for name, definition in config.variables.items():
            if name in overrides:
                config.variable_values[name] = overrides[name]
            elif definition.has_default:
                config.variable_values[name] = definition.default
            else:
                errors.append(f"No value for required variable: '{name}'")

        return errors

    def _validate_semantics(self, config: Configuration) -> List[str]:
        """
        Validate semantic correctness of the configuration.

        Checks references, counts and dependency targets without touching
        the provider.
        """
        errors = []
        declared = {r.base_address: r for r in config.resources}

        # Check for duplicate addresses
        addresses = [r.base_address for r in config.resources]
        if len(addresses) != len(set(addresses)):
            errors.append("Duplicate resource addresses found")

        for resource in config.resources:
            address = resource.base_address

            # Count may only depend on variables
            if isinstance(resource.count, str):
                count_error = self._check_count(resource, config)
                if count_error:
                    errors.append(count_error)

            # Check references in attributes
            try:
                references = find_references(resource.attributes)
            except ExpressionError as e:
                errors.append(f"{address}: {e.message}")
                continue

            for ref in references:
                if ref.kind == "variable" and ref.name not in config.variables:
                    errors.append(
                        f"{address} references undeclared variable '{ref.name}'"
                    )
                elif ref.kind == "count" or ref.index == "count.index":
                    if resource.count is None:
                        errors.append(f"{address} uses count.index without count")
                elif ref.kind == "resource" and ref.base_address not in declared:
                    errors.append(
                        f"{address} references undeclared resource '{ref.base_address}'"
                    )

            for dep in resource.depends_on:
                base = dep.split("[", 1)[0]
                if base not in declared:
                    errors.append(f"{address} depends on undeclared resource '{dep}'")

            for attr in resource.lifecycle.ignore_changes:
                if attr not in resource.attributes:
                    self.logger.warning(
                        f"{address}: ignore_changes lists unset attribute '{attr}'"
                    )

        # Check references in outputs
        for name, output in config.outputs.items():
            try:
                references = find_references(output.value)
            except ExpressionError as e:
                errors.append(f"output.{name}: {e.message}")
                continue
            for ref in references:
                if ref.kind == "count" or ref.index == "count.index":
                    errors.append(f"output.{name} cannot use count.index")
                elif ref.kind == "variable" and ref.name not in config.variables:
                    errors.append(
                        f"output.{name} references undeclared variable '{ref.name}'"
                    )
                elif ref.kind == "resource" and ref.base_address not in declared:
                    errors.append(
                        f"output.{name} references undeclared resource '{ref.base_address}'"
                    )

        return errors

    def _check_count(self, resource: ResourceNode, config: Configuration) -> Optional[str]:
        """Evaluate a count expression against variables only."""
        address = resource.base_address
        try:
            references = find_references(resource.count)
            if any(ref.kind != "variable" for ref in references):
                return f"{address}.count may only reference variables"
            value = evaluate(
                resource.count,
                EvaluationContext(variables=config.variable_values),
            )
        except ExpressionError as e:
            return f"{address}.count: {e.message}"

        if contains_unknown(value):
            return f"{address}.count is not known before apply"
        try:
            count = int(value)
        except (TypeError, ValueError):
            return f"{address}.count must evaluate to an integer, got {value!r}"
        if count < 0:
            return f"{address}.count must not be negative"
        return None


def resolve_count(resource: ResourceNode, variables: Dict[str, Any]) -> Optional[int]:
    """Return the evaluated count of a resource block, or None if unset."""
    if resource.count is None:
        return None
    try:
        value = evaluate(resource.count, EvaluationContext(variables=variables))
        return int(value)
    except (ExpressionError, TypeError, ValueError) as e:
        raise ParseError(f"{resource.base_address}.count is invalid: {e}")
