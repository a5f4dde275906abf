"""
Stack declarations - the YAML/JSON input format.

A declaration names a stack, its variables and stack-wide tags, the
resources it wants (keyed by logical ID) and the outputs to report:

    stack: postgres-aurora
    variables:
      instance_class: t3.medium
    tags:
      ManagedBy: cairn
    resources:
      vpc:
        type: network
        properties: {cidr: 10.0.0.0/16}
      db:
        type: managed-database
        properties:
          instance_class: ${var.instance_class}
          subnet_ids: ["${isolated.id}"]
    outputs:
      endpoint: ${db.endpoint.address}
"""

import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from errors import DeclarationError
from models import Resource

logger = logging.getLogger(__name__)

# Stack names: lowercase alphanumeric and '-', max 63 chars
NAME_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
# Logical IDs must be usable inside ${id.attr} references
RESOURCE_ID_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_-]{0,62}$")
VARIABLE_PATTERN = re.compile(r"\$\{var\.([A-Za-z_][A-Za-z0-9_]*)\}")
RESERVED_IDS = {"var"}


def validate_name_format(value: str, field_name: str) -> str:
    """Validate that a stack name is lowercase alphanumeric with hyphens."""
    if not value:
        raise ValueError(f"{field_name} cannot be empty")
    if not NAME_PATTERN.match(value):
        raise ValueError(
            f"{field_name} must consist of lowercase alphanumeric characters or '-', "
            f"must start and end with an alphanumeric character, max 63 characters"
        )
    return value


class ResourceDeclaration(BaseModel):
    """One declared resource."""

    type: str = Field(..., description="Resource type tag, e.g. 'network'")
    properties: Dict[str, Any] = Field(default_factory=dict)
    depends_on: List[str] = Field(default_factory=list)

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("type cannot be empty")
        return v


class StackDeclaration(BaseModel):
    """A whole stack declaration."""

    stack: str = Field(..., description="Stack name")
    description: Optional[str] = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    tags: Dict[str, str] = Field(default_factory=dict)
    resources: Dict[str, ResourceDeclaration] = Field(default_factory=dict)
    outputs: Dict[str, str] = Field(default_factory=dict)

    @field_validator("stack")
    @classmethod
    def validate_stack(cls, v: str) -> str:
        return validate_name_format(v, "stack")

    @field_validator("resources")
    @classmethod
    def validate_resource_ids(
        cls, v: Dict[str, ResourceDeclaration]
    ) -> Dict[str, ResourceDeclaration]:
        for rid in v:
            if rid in RESERVED_IDS:
                raise ValueError(f"'{rid}' is reserved and cannot be a resource ID")
            if not RESOURCE_ID_PATTERN.match(rid):
                raise ValueError(
                    f"Resource ID '{rid}' must start with a letter and contain only "
                    f"letters, digits, '_' or '-' (max 63 characters)"
                )
        return v

    def resolved_variables(self, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Variable defaults merged with overrides.

        Raises:
            DeclarationError: If an override names an undeclared variable or
                a variable is left without a value.
        """
        overrides = overrides or {}
        unknown = sorted(set(overrides) - set(self.variables))
        if unknown:
            raise DeclarationError(f"Unknown variables: {', '.join(unknown)}")

        values = dict(self.variables)
        values.update(overrides)
        missing = sorted(name for name, value in values.items() if value is None)
        if missing:
            raise DeclarationError(f"Variables without a value: {', '.join(missing)}")
        return values

    def to_resources(self, overrides: Optional[Dict[str, Any]] = None) -> List[Resource]:
        """
        Produce the flat resource set with variables substituted and stack
        tags merged into each resource's ``tags`` property.

        Raises:
            DeclarationError: On unknown or unset variables.
        """
        values = self.resolved_variables(overrides)
        resources = []
        for rid in sorted(self.resources):
            declared = self.resources[rid]
            properties = substitute_variables(declared.properties, values, rid)
            if self.tags:
                tags = dict(self.tags)
                tags.update(properties.get("tags") or {})
                properties["tags"] = tags
            resources.append(
                Resource(
                    id=rid,
                    type=declared.type,
                    properties=properties,
                    depends_on=frozenset(declared.depends_on),
                )
            )
        logger.debug(f"Declaration '{self.stack}' produced {len(resources)} resources")
        return resources

    def output_expressions(self, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Output name -> expression with variables substituted."""
        values = self.resolved_variables(overrides)
        return {
            name: substitute_variables(expr, values, f"outputs.{name}")
            for name, expr in sorted(self.outputs.items())
        }


def substitute_variables(value: Any, variables: Dict[str, Any], where: str) -> Any:
    """
    Replace ``${var.name}`` in a (possibly nested) value.

    A string that is exactly one variable reference takes the variable's
    value with its own type.
    """
    if isinstance(value, str):
        match = VARIABLE_PATTERN.fullmatch(value)
        if match:
            return _variable(variables, match.group(1), where)
        return VARIABLE_PATTERN.sub(
            lambda m: str(_variable(variables, m.group(1), where)), value
        )
    if isinstance(value, dict):
        return {k: substitute_variables(v, variables, where) for k, v in value.items()}
    if isinstance(value, list):
        return [substitute_variables(v, variables, where) for v in value]
    return value


def _variable(variables: Dict[str, Any], name: str, where: str) -> Any:
    if name not in variables:
        raise DeclarationError(f"{where}: undeclared variable '{name}'")
    return variables[name]


def parse_declaration(data: Any) -> StackDeclaration:
    """
    Validate raw declaration data.

    Raises:
        DeclarationError: If the data does not form a valid declaration.
    """
    if not isinstance(data, dict):
        raise DeclarationError("Declaration must be a mapping")
    try:
        return StackDeclaration(**data)
    except ValidationError as e:
        problems = []
        for error in e.errors():
            location = ".".join(str(p) for p in error["loc"]) or "(root)"
            problems.append(f"{location}: {error['msg']}")
        raise DeclarationError("Invalid declaration: " + "; ".join(problems)) from e


def load_declaration(path: str) -> StackDeclaration:
    """
    Load a declaration from a YAML (.yaml/.yml) or JSON file.

    Raises:
        DeclarationError: If the file cannot be read or parsed.
    """
    file_path = Path(path)
    try:
        with open(file_path, encoding="utf-8") as f:
            if file_path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(f)
            else:
                data = json.load(f)
    except OSError as e:
        raise DeclarationError(f"Cannot read {path}: {e}") from e
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise DeclarationError(f"Cannot parse {path}: {e}") from e

    return parse_declaration(data)


def parse_variable_overrides(pairs: Iterable[str]) -> Dict[str, Any]:
    """
    Parse ``name=value`` pairs from the command line.

    Values are read as YAML scalars, so ``3`` is an integer and ``true``
    a boolean.

    Raises:
        DeclarationError: On a pair without '='.
    """
    overrides = {}
    for pair in pairs:
        name, sep, raw = pair.partition("=")
        if not sep or not name.strip():
            raise DeclarationError(f"Invalid variable '{pair}': expected name=value")
        try:
            value = yaml.safe_load(raw) if raw else ""
        except yaml.YAMLError:
            value = raw
        overrides[name.strip()] = raw if isinstance(value, (dict, list)) else value
    return overrides
