"""
Core engine types: resources, state records, change operations and plans.

Resources reference each other by logical ID only; no model holds a live
pointer to another, so every value here serialises to plain JSON.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from references import UNKNOWN, Unknown


class RecordStatus(Enum):
    """Status of a persisted state record."""

    PENDING = "pending"
    APPLIED = "applied"
    FAILED = "failed"
    DELETED = "deleted"


class OperationKind(Enum):
    """Kind of change planned for a resource."""

    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"


class StepAction(Enum):
    """Executable action of a plan step. A replace expands to two steps."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    DELETE_OLD = "delete-old"
    CREATE_NEW = "create-new"

    @property
    def is_destroy(self) -> bool:
        return self in (StepAction.DELETE, StepAction.DELETE_OLD)


class OutcomeStatus(Enum):
    """Outcome of executing a plan step."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


def to_plain(value: Any) -> Any:
    """Convert a property value into something json.dumps accepts."""
    if isinstance(value, Unknown):
        return str(value)
    if isinstance(value, dict):
        return {k: to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_plain(v) for v in value]
    return value


@dataclass(frozen=True)
class Resource:
    """A declared resource. Treated as immutable once planned."""

    id: str
    type: str
    properties: Dict[str, Any] = field(default_factory=dict, hash=False)
    depends_on: FrozenSet[str] = frozenset()

    def with_properties(self, properties: Dict[str, Any]) -> "Resource":
        """Return a copy of this resource carrying different property values."""
        return Resource(
            id=self.id,
            type=self.type,
            properties=properties,
            depends_on=self.depends_on,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "properties": to_plain(self.properties),
            "depends_on": sorted(self.depends_on),
        }


@dataclass
class StateRecord:
    """Last-applied state of one resource, keyed by its logical ID."""

    resource_id: str
    resource_type: str
    status: RecordStatus = RecordStatus.APPLIED
    provider_id: Optional[str] = None
    properties: Dict[str, Any] = field(default_factory=dict)
    outputs: Dict[str, Any] = field(default_factory=dict)
    dependencies: List[str] = field(default_factory=list)
    updated_at: Optional[str] = None

    def attributes(self) -> Dict[str, Any]:
        """Attributes other resources may reference (`id` plus outputs)."""
        attrs = dict(self.outputs)
        attrs["id"] = self.provider_id
        return attrs

    @property
    def exists(self) -> bool:
        """Whether the provider-side resource is believed to exist."""
        return self.status in (RecordStatus.APPLIED, RecordStatus.FAILED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource_id": self.resource_id,
            "resource_type": self.resource_type,
            "status": self.status.value,
            "provider_id": self.provider_id,
            "properties": self.properties,
            "outputs": self.outputs,
            "dependencies": sorted(self.dependencies),
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StateRecord":
        return cls(
            resource_id=data["resource_id"],
            resource_type=data["resource_type"],
            status=RecordStatus(data.get("status", RecordStatus.APPLIED.value)),
            provider_id=data.get("provider_id"),
            properties=data.get("properties") or {},
            outputs=data.get("outputs") or {},
            dependencies=list(data.get("dependencies") or []),
            updated_at=data.get("updated_at"),
        )


@dataclass(frozen=True)
class PropertyChange:
    """Difference of a single property between last-applied and desired."""

    before: Any = None
    after: Any = None
    unknown: bool = False
    immutable: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "before": to_plain(self.before),
            "after": str(UNKNOWN) if self.unknown else to_plain(self.after),
            "unknown": self.unknown,
            "immutable": self.immutable,
        }


@dataclass(frozen=True)
class ChangeOperation:
    """One planned create, update, replace or delete of a resource."""

    kind: OperationKind
    resource_id: str
    resource_type: str
    desired: Optional[Resource] = None
    prior: Optional[StateRecord] = field(default=None, compare=False)
    diff: Dict[str, PropertyChange] = field(default_factory=dict, hash=False)
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "resource_id": self.resource_id,
            "resource_type": self.resource_type,
            "reason": self.reason,
            "diff": {k: self.diff[k].to_dict() for k in sorted(self.diff)},
        }


@dataclass(frozen=True)
class Step:
    """A single executable unit of a plan."""

    resource_id: str
    action: StepAction

    @property
    def key(self) -> str:
        return f"{self.resource_id}:{self.action.value}"

    def __str__(self) -> str:
        return f"{self.action.value}({self.resource_id})"


@dataclass(frozen=True)
class Plan:
    """
    A change set plus its execution order.

    ``steps`` is a topological order of the step graph; ``prerequisites``
    maps each step key to the keys of steps that must succeed before it.
    """

    stack: str
    changes: Tuple[ChangeOperation, ...] = ()
    steps: Tuple[Step, ...] = ()
    prerequisites: Dict[str, Tuple[str, ...]] = field(default_factory=dict, hash=False)
    destroy: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.changes

    def operation(self, resource_id: str) -> ChangeOperation:
        for change in self.changes:
            if change.resource_id == resource_id:
                return change
        raise KeyError(resource_id)

    def prerequisites_of(self, step: Step) -> Tuple[str, ...]:
        return self.prerequisites.get(step.key, ())

    def summary(self) -> Dict[str, int]:
        counts = {kind.value: 0 for kind in OperationKind}
        for change in self.changes:
            counts[change.kind.value] += 1
        return counts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stack": self.stack,
            "destroy": self.destroy,
            "changes": [c.to_dict() for c in self.changes],
            "steps": [s.key for s in self.steps],
            "prerequisites": {
                k: list(self.prerequisites[k]) for k in sorted(self.prerequisites)
            },
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, indent=2)


@dataclass
class StepOutcome:
    """Result of executing one step."""

    step: Step
    status: OutcomeStatus
    reason: Optional[str] = None
    attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource_id": self.step.resource_id,
            "action": self.step.action.value,
            "status": self.status.value,
            "reason": self.reason,
            "attempts": self.attempts,
        }


_SEVERITY = {
    OutcomeStatus.SUCCEEDED: 0,
    OutcomeStatus.SKIPPED: 1,
    OutcomeStatus.FAILED: 2,
}


@dataclass
class ApplyResult:
    """Per-step outcomes of an apply run, in plan order."""

    outcomes: List[StepOutcome] = field(default_factory=list)
    duration_seconds: float = 0.0
    cancelled: bool = False

    def by_resource(self) -> Dict[str, OutcomeStatus]:
        """Worst outcome per resource (failed > skipped > succeeded)."""
        statuses: Dict[str, OutcomeStatus] = {}
        for outcome in self.outcomes:
            rid = outcome.step.resource_id
            current = statuses.get(rid)
            if current is None or _SEVERITY[outcome.status] > _SEVERITY[current]:
                statuses[rid] = outcome.status
        return statuses

    def failures(self) -> List[StepOutcome]:
        return [o for o in self.outcomes if o.status != OutcomeStatus.SUCCEEDED]

    @property
    def has_failures(self) -> bool:
        return bool(self.failures())

    @property
    def succeeded(self) -> bool:
        return not self.has_failures

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcomes": [o.to_dict() for o in self.outcomes],
            "duration_seconds": self.duration_seconds,
            "cancelled": self.cancelled,
        }
