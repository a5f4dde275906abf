"""
Planner - diffs desired resources against last-applied state.

Produces a Plan: the change set (one ChangeOperation per affected
resource) and a deterministic, dependency-respecting order of executable
steps. Creates and updates run dependencies-first, deletes run
dependents-first, and a replacement is a delete-old step followed by a
create-new step for the same resource.
"""

import logging
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Set, Tuple

from errors import UnresolvedReferenceError
from graph import ResourceGraph, kahn_order
from models import (
    ChangeOperation,
    OperationKind,
    Plan,
    PropertyChange,
    RecordStatus,
    Resource,
    StateRecord,
    Step,
    StepAction,
)
from references import UNKNOWN, Reference, contains_unknown, get_attribute, resolve

logger = logging.getLogger(__name__)

_ACTION_RANK = {
    StepAction.DELETE: 0,
    StepAction.DELETE_OLD: 1,
    StepAction.CREATE: 2,
    StepAction.UPDATE: 3,
    StepAction.CREATE_NEW: 4,
}


def diff_properties(
    before: Mapping[str, Any],
    after: Mapping[str, Any],
    immutable: Iterable[str] = (),
) -> Dict[str, PropertyChange]:
    """
    Compare two property mappings key by key.

    A value that is unknown until apply always counts as a change.
    """
    immutable = set(immutable)
    changes = {}
    for name in sorted(set(before) | set(after)):
        old = before.get(name)
        new = after.get(name)
        unknown = contains_unknown(new)
        if unknown or old != new or (name in before) != (name in after):
            changes[name] = PropertyChange(
                before=old,
                after=new,
                unknown=unknown,
                immutable=name in immutable,
            )
    return changes


def _step_key(step: Step) -> Tuple[int, str, int]:
    # Destroy steps first, then by logical ID, then by action.
    return (0 if step.action.is_destroy else 1, step.resource_id, _ACTION_RANK[step.action])


# Only applies when create-new is ready the moment delete-old finishes. In a
# replacement cascade a dependent's create-new still waits for the new
# version of what it references, so other steps run in between.
def _follow(step: Step) -> Optional[Step]:
    if step.action == StepAction.DELETE_OLD:
        return Step(step.resource_id, StepAction.CREATE_NEW)
    return None


class Planner:
    """
    Computes plans for one stack.

    Which properties are immutable is provider metadata, passed in as a
    mapping of resource type tag to property names.
    """

    def __init__(
        self,
        stack: str = "default",
        immutable_properties: Optional[Mapping[str, Iterable[str]]] = None,
    ):
        self.stack = stack
        self.immutable_properties: Dict[str, FrozenSet[str]] = {
            rtype: frozenset(names)
            for rtype, names in (immutable_properties or {}).items()
        }

    def _immutable(self, resource_type: str) -> FrozenSet[str]:
        return self.immutable_properties.get(resource_type, frozenset())

    def plan(
        self, graph: ResourceGraph, prior_state: Mapping[str, StateRecord]
    ) -> Plan:
        """
        Plan the changes that bring prior state to the desired graph.

        Raises:
            UnresolvedReferenceError: If a resource references an ID that is
                not in the graph, or an attribute missing from the state of
                an unchanged resource.
        """
        unresolved = graph.unresolved_references()
        if unresolved:
            resource_id, missing = unresolved[0]
            raise UnresolvedReferenceError(resource_id, missing)

        changes: Dict[str, ChangeOperation] = {}
        for rid in graph.topological_order():
            change = self._plan_resource(
                graph.get(rid), prior_state.get(rid), prior_state, changes
            )
            if change is not None:
                changes[rid] = change

        for rid in sorted(prior_state):
            if rid not in graph:
                changes[rid] = self._delete(prior_state[rid])

        plan = self._assemble(changes, graph, prior_state, destroy=False)
        logger.info(f"Planned stack '{self.stack}': {plan.summary()}")
        return plan

    def plan_destroy(self, prior_state: Mapping[str, StateRecord]) -> Plan:
        """Plan the deletion of every resource in state, dependents first."""
        changes = {rid: self._delete(prior_state[rid]) for rid in sorted(prior_state)}
        plan = self._assemble(changes, None, prior_state, destroy=True)
        logger.info(f"Planned destroy of stack '{self.stack}': {plan.summary()}")
        return plan

    # Classification

    def _delete(self, record: StateRecord) -> ChangeOperation:
        return ChangeOperation(
            kind=OperationKind.DELETE,
            resource_id=record.resource_id,
            resource_type=record.resource_type,
            prior=record,
            diff={
                name: PropertyChange(before=value, after=None)
                for name, value in sorted(record.properties.items())
            },
            reason="no longer declared",
        )

    def _lookup(
        self,
        resource: Resource,
        prior_state: Mapping[str, StateRecord],
        changes: Mapping[str, ChangeOperation],
    ):
        def lookup(ref: Reference) -> Any:
            change = changes.get(ref.resource_id)
            if change is not None and change.kind in (
                OperationKind.CREATE,
                OperationKind.REPLACE,
            ):
                return UNKNOWN
            record = prior_state.get(ref.resource_id)
            if record is None:
                return UNKNOWN
            try:
                return get_attribute(record.attributes(), ref.attribute)
            except KeyError:
                if change is not None:
                    # An in-place update may add the attribute.
                    return UNKNOWN
                raise UnresolvedReferenceError(
                    resource.id,
                    ref.expression,
                    f"attribute '{ref.attribute}' not found on '{ref.resource_id}'",
                ) from None

        return lookup

    def _plan_resource(
        self,
        resource: Resource,
        record: Optional[StateRecord],
        prior_state: Mapping[str, StateRecord],
        changes: Mapping[str, ChangeOperation],
    ) -> Optional[ChangeOperation]:
        resolved = resolve(
            resource.properties, self._lookup(resource, prior_state, changes)
        )

        if record is None or record.status in (
            RecordStatus.PENDING,
            RecordStatus.DELETED,
        ):
            return ChangeOperation(
                kind=OperationKind.CREATE,
                resource_id=resource.id,
                resource_type=resource.type,
                desired=resource,
                prior=record,
                diff=diff_properties({}, resolved),
                reason=(
                    "not yet created"
                    if record is None
                    else f"previous create did not complete ({record.status.value})"
                ),
            )

        if record.resource_type != resource.type:
            return ChangeOperation(
                kind=OperationKind.REPLACE,
                resource_id=resource.id,
                resource_type=resource.type,
                desired=resource,
                prior=record,
                diff=diff_properties(
                    record.properties,
                    resolved,
                    set(record.properties) | set(resolved),
                ),
                reason=(
                    f"type changed from {record.resource_type} to {resource.type}"
                ),
            )

        diff = diff_properties(record.properties, resolved, self._immutable(resource.type))
        if not diff:
            if record.status == RecordStatus.FAILED:
                return ChangeOperation(
                    kind=OperationKind.UPDATE,
                    resource_id=resource.id,
                    resource_type=resource.type,
                    desired=resource,
                    prior=record,
                    reason="retrying after a failed operation",
                )
            return None

        immutable_changes = [name for name, change in diff.items() if change.immutable]
        if immutable_changes:
            return ChangeOperation(
                kind=OperationKind.REPLACE,
                resource_id=resource.id,
                resource_type=resource.type,
                desired=resource,
                prior=record,
                diff=diff,
                reason=f"immutable properties changed: {', '.join(immutable_changes)}",
            )

        return ChangeOperation(
            kind=OperationKind.UPDATE,
            resource_id=resource.id,
            resource_type=resource.type,
            desired=resource,
            prior=record,
            diff=diff,
            reason=f"properties changed: {', '.join(diff)}",
        )

    # Step ordering

    def _assemble(
        self,
        changes: Mapping[str, ChangeOperation],
        graph: Optional[ResourceGraph],
        prior_state: Mapping[str, StateRecord],
        destroy: bool,
    ) -> Plan:
        forward: Dict[str, Step] = {}
        teardown: Dict[str, Step] = {}
        for rid, change in changes.items():
            if change.kind == OperationKind.CREATE:
                forward[rid] = Step(rid, StepAction.CREATE)
            elif change.kind == OperationKind.UPDATE:
                forward[rid] = Step(rid, StepAction.UPDATE)
            elif change.kind == OperationKind.REPLACE:
                teardown[rid] = Step(rid, StepAction.DELETE_OLD)
                forward[rid] = Step(rid, StepAction.CREATE_NEW)
            else:
                teardown[rid] = Step(rid, StepAction.DELETE)

        steps = list(forward.values()) + list(teardown.values())
        prereqs: Dict[Step, Set[Step]] = {step: set() for step in steps}
        soft: List[Tuple[Step, Step]] = []

        if graph is not None:
            for rid, step in forward.items():
                for dep in graph.dependencies(rid):
                    if dep in forward:
                        prereqs[step].add(forward[dep])
                if rid in teardown:
                    prereqs[step].add(teardown[rid])

        prior_dependents: Dict[str, Set[str]] = {}
        for rid, record in prior_state.items():
            for dep in record.dependencies:
                prior_dependents.setdefault(dep, set()).add(rid)

        # Recorded dependencies may be stale and point both ways; an edge
        # that would close a cycle among teardown steps is dropped.
        teardown_edges: List[Tuple[Step, Step]] = []
        for rid, step in teardown.items():
            for dependent in sorted(prior_dependents.get(rid, ())):
                if dependent in teardown:
                    teardown_edges.append((teardown[dependent], step))
                elif step.action == StepAction.DELETE and dependent in forward:
                    # Let the dependent stop referencing us before we go.
                    soft.append((forward[dependent], step))
            if step.action == StepAction.DELETE_OLD and graph is not None:
                # Hold the old resource until the new one can be created
                # straight after it is deleted.
                for dep in graph.dependencies(rid):
                    if dep in forward:
                        soft.append((forward[dep], step))

        for before, after in sorted(
            teardown_edges, key=lambda pair: (pair[1].key, pair[0].key)
        ):
            if self._reaches(prereqs, before, after):
                logger.warning(
                    f"Ignoring recorded dependency of {before.resource_id} on "
                    f"{after.resource_id}: it conflicts with another recorded one"
                )
            else:
                prereqs[after].add(before)

        for before, after in sorted(soft, key=lambda pair: (pair[1].key, pair[0].key)):
            if not self._reaches(prereqs, before, after):
                prereqs[after].add(before)

        order = kahn_order(
            sorted(steps, key=_step_key), prereqs, key=_step_key, follow=_follow
        )
        return Plan(
            stack=self.stack,
            changes=tuple(changes[rid] for rid in sorted(changes)),
            steps=tuple(order),
            prerequisites={
                step.key: tuple(sorted(p.key for p in prereqs[step])) for step in order
            },
            destroy=destroy,
        )

    @staticmethod
    def _reaches(prereqs: Mapping[Step, Set[Step]], start: Step, target: Step) -> bool:
        """Whether ``target`` is already a transitive prerequisite of ``start``."""
        seen: Set[Step] = set()
        stack = [start]
        while stack:
            node = stack.pop()
            if node == target:
                return True
            if node in seen:
                continue
            seen.add(node)
            stack.extend(prereqs.get(node, ()))
        return False
