"""
Engine - wires declarations, providers, state and the executor together.

One Engine drives one stack: validate a declaration, plan it against the
stored state (optionally refreshed from the providers), apply the plan
under the state lease, destroy the stack, and report drift and outputs.
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple

from config import ExecutorConfig, StateConfig
from declaration import StackDeclaration
from errors import (
    LockContentionError,
    ResourceNotFoundError,
    StateError,
    UnresolvedReferenceError,
)
from events import EventBus
from executor import Executor
from graph import ResourceGraph, build, dependency_ids
from models import (
    ApplyResult,
    Plan,
    PropertyChange,
    RecordStatus,
    StateRecord,
    to_plain,
)
from planner import Planner, diff_properties
from providers.base import ProviderCapability
from providers.registry import immutable_properties
from references import UNKNOWN, Reference, find_references, get_attribute, resolve
from state import Lease, StateStore
from validation import validate_resources

logger = logging.getLogger(__name__)


@dataclass
class DriftReport:
    """Differences between recorded state and what the providers report."""

    stack: str
    changed: Dict[str, Dict[str, PropertyChange]] = field(default_factory=dict)
    missing: List[str] = field(default_factory=list)

    @property
    def has_drift(self) -> bool:
        return bool(self.changed or self.missing)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stack": self.stack,
            "changed": {
                rid: {name: change.to_dict() for name, change in sorted(diff.items())}
                for rid, diff in sorted(self.changed.items())
            },
            "missing": sorted(self.missing),
        }


@dataclass
class ApplyReport:
    """Result of an apply or destroy run."""

    plan: Plan
    result: ApplyResult = field(default_factory=ApplyResult)
    outputs: Dict[str, Any] = field(default_factory=dict)
    # Output name -> why it could not be resolved after the run
    output_errors: Dict[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.result.succeeded and not self.result.cancelled

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plan": self.plan.to_dict(),
            "result": self.result.to_dict(),
            "outputs": self.outputs,
            "output_errors": self.output_errors,
        }


class Engine:
    """
    Reconciles one stack's declaration with its providers.

    Planning is side-effect free. ``apply`` and ``destroy`` hold the stack's
    state lease for their whole run and renew it at a third of its TTL.
    """

    def __init__(
        self,
        provider: ProviderCapability,
        store: StateStore,
        executor_config: Optional[ExecutorConfig] = None,
        state_config: Optional[StateConfig] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.provider = provider
        self.store = store
        self.executor_config = executor_config or ExecutorConfig()
        self.state_config = state_config or StateConfig()
        self._event_bus = event_bus
        self._executor: Optional[Executor] = None
        self._cancel_requested = False

    @property
    def stack(self) -> str:
        return self.store.stack

    def _check_stack(self, declaration: StackDeclaration) -> None:
        if declaration.stack != self.store.stack:
            raise StateError(
                f"Declaration is for stack '{declaration.stack}' but the state "
                f"store holds stack '{self.store.stack}'"
            )

    def _planner(self) -> Planner:
        return Planner(
            stack=self.stack,
            immutable_properties=immutable_properties(self.provider.resource_types),
        )

    # Validation and planning

    def validate(
        self, declaration: StackDeclaration, variables: Optional[Dict[str, Any]] = None
    ) -> ResourceGraph:
        """
        Validate a declaration and build its resource graph.

        Raises:
            DeclarationError: On unknown types or schema violations.
            CycleError: If resource dependencies form a cycle.
            UnresolvedReferenceError: If an output refers to an undeclared
                resource.
        """
        self._check_stack(declaration)
        resources = declaration.to_resources(variables)
        schemas = {
            rtype: spec.schema for rtype, spec in self.provider.resource_types.items()
        }
        validate_resources(resources, schemas)
        graph = build(resources)

        for name, expression in declaration.output_expressions(variables).items():
            for ref in find_references(expression):
                if ref.resource_id not in graph:
                    raise UnresolvedReferenceError(
                        f"outputs.{name}",
                        ref.expression,
                        f"'{ref.resource_id}' is not declared",
                    )
        return graph

    async def refresh(self, records: Dict[str, StateRecord]) -> DriftReport:
        """Describe every applied resource and compare with its record."""
        report = DriftReport(stack=self.stack)
        for rid in sorted(records):
            record = records[rid]
            if not record.exists or not record.provider_id:
                continue
            try:
                live = await self.provider.describe(
                    record.provider_id, record.resource_type
                )
            except ResourceNotFoundError:
                logger.warning(f"{rid} ({record.provider_id}) no longer exists")
                report.missing.append(rid)
                continue

            observed = {name: live.get(name) for name in record.properties}
            diff = diff_properties(record.properties, observed)
            if diff:
                logger.warning(f"{rid} has drifted: {', '.join(diff)}")
                report.changed[rid] = diff

        if not report.has_drift:
            logger.info(f"No drift detected in stack '{self.stack}'")
        return report

    async def drift(self) -> DriftReport:
        """Compare stored state with the live resources."""
        return await self.refresh(await self.store.load())

    @staticmethod
    def _refreshed(
        records: Dict[str, StateRecord], report: DriftReport
    ) -> Dict[str, StateRecord]:
        """Records as observed: missing resources dropped, drifted ones updated."""
        refreshed = {}
        for rid, record in records.items():
            if rid in report.missing:
                continue
            if rid in report.changed:
                properties = dict(record.properties)
                for name, change in report.changed[rid].items():
                    properties[name] = change.after
                record = StateRecord(
                    resource_id=record.resource_id,
                    resource_type=record.resource_type,
                    status=record.status,
                    provider_id=record.provider_id,
                    properties=properties,
                    outputs=dict(record.outputs),
                    dependencies=list(record.dependencies),
                    updated_at=record.updated_at,
                )
            refreshed[rid] = record
        return refreshed

    async def plan(
        self,
        declaration: StackDeclaration,
        variables: Optional[Dict[str, Any]] = None,
        refresh: bool = False,
    ) -> Plan:
        """Plan the changes for a declaration without side effects."""
        graph = self.validate(declaration, variables)
        records = await self.store.load()
        if refresh:
            records = self._refreshed(records, await self.refresh(records))
        return self._planner().plan(graph, records)

    async def plan_destroy(self, declaration: StackDeclaration) -> Plan:
        self._check_stack(declaration)
        return self._planner().plan_destroy(await self.store.load())

    # Apply

    async def apply(
        self,
        declaration: StackDeclaration,
        variables: Optional[Dict[str, Any]] = None,
        refresh: bool = False,
    ) -> ApplyReport:
        """
        Plan and apply a declaration under the state lease.

        Raises:
            DeclarationError, CycleError, UnresolvedReferenceError: Before
                any side effect.
            LockContentionError: If another writer holds the lease.
        """
        graph = self.validate(declaration, variables)

        async with self.store.lease(
            self.state_config.lease_holder, self.state_config.lease_ttl
        ) as lease:
            records = await self.store.load()
            if refresh:
                report = await self.refresh(records)
                if report.has_drift:
                    records = self._refreshed(records, report)
                    await self.store.save(lease, records)
            plan = self._planner().plan(graph, records)
            await self._sync_dependencies(lease, graph, records, plan)
            result = await self._execute(plan, lease)

        outputs, output_errors = self._resolve_outputs(
            declaration, variables, await self.store.load()
        )
        for name, error in output_errors.items():
            logger.error(f"Output '{name}' could not be resolved: {error.message}")
        return ApplyReport(
            plan=plan,
            result=result,
            outputs=outputs,
            output_errors={name: e.message for name, e in output_errors.items()},
        )

    async def destroy(self, declaration: StackDeclaration) -> ApplyReport:
        """Delete every resource recorded for the stack, dependents first."""
        self._check_stack(declaration)
        async with self.store.lease(
            self.state_config.lease_holder, self.state_config.lease_ttl
        ) as lease:
            plan = self._planner().plan_destroy(await self.store.load())
            result = await self._execute(plan, lease)
        return ApplyReport(plan=plan, result=result)

    async def _sync_dependencies(
        self,
        lease: Lease,
        graph: ResourceGraph,
        records: Dict[str, StateRecord],
        plan: Plan,
    ) -> None:
        """
        Record the current dependencies of resources the plan leaves alone.

        Steps rewrite the dependencies of what they touch; a change to
        ``depends_on`` alone plans no step, so without this the recorded
        edges used for teardown order would go stale.
        """
        planned = {change.resource_id for change in plan.changes}
        for rid in graph.ids():
            record = records.get(rid)
            if rid in planned or record is None or not record.exists:
                continue
            current = sorted(dependency_ids(graph.get(rid)))
            if sorted(record.dependencies) != current:
                logger.info(f"Recording new dependencies of {rid}: {current}")
                await self.store.put(lease, replace(record, dependencies=current))

    async def _execute(self, plan: Plan, lease: Lease) -> ApplyResult:
        if plan.is_empty:
            logger.info(f"Stack '{plan.stack}' is up to date")
            return ApplyResult()

        executor = Executor(
            self.provider,
            self.store,
            lease,
            config=self.executor_config,
            event_bus=self._event_bus,
        )
        self._executor = executor
        if self._cancel_requested:
            executor.cancel()

        renewal = asyncio.create_task(self._keep_lease(lease, executor))
        try:
            return await executor.apply(plan)
        finally:
            renewal.cancel()
            try:
                await renewal
            except asyncio.CancelledError:
                pass
            self._executor = None

    async def _keep_lease(self, lease: Lease, executor: Executor) -> None:
        """Renew the lease until cancelled; cancel the run if it is lost."""
        ttl = self.state_config.lease_ttl
        while True:
            await asyncio.sleep(ttl / 3)
            try:
                lease = await self.store.renew_lease(lease, ttl)
            except LockContentionError as e:
                logger.error(f"Lost state lease, cancelling apply: {e.message}")
                executor.cancel()
                return

    def cancel(self) -> None:
        """Stop scheduling new steps of the running apply."""
        self._cancel_requested = True
        if self._executor is not None:
            self._executor.cancel()

    # Outputs

    async def outputs(
        self, declaration: StackDeclaration, variables: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Resolve the declaration's outputs against the stored state.

        Raises:
            UnresolvedReferenceError: If an output names an attribute the
                applied resource does not have.
        """
        self._check_stack(declaration)
        values, errors = self._resolve_outputs(
            declaration, variables, await self.store.load()
        )
        if errors:
            raise errors[sorted(errors)[0]]
        return values

    @staticmethod
    def _resolve_outputs(
        declaration: StackDeclaration,
        variables: Optional[Dict[str, Any]],
        records: Dict[str, StateRecord],
    ) -> Tuple[Dict[str, Any], Dict[str, UnresolvedReferenceError]]:
        """Resolved outputs plus the error of each output that failed."""

        def lookup(ref: Reference) -> Any:
            record = records.get(ref.resource_id)
            if record is None or record.status != RecordStatus.APPLIED:
                return UNKNOWN
            try:
                return get_attribute(record.attributes(), ref.attribute)
            except KeyError:
                raise UnresolvedReferenceError(
                    "outputs", ref.expression, f"attribute '{ref.attribute}' not found"
                ) from None

        values: Dict[str, Any] = {}
        errors: Dict[str, UnresolvedReferenceError] = {}
        for name, expression in declaration.output_expressions(variables).items():
            try:
                values[name] = to_plain(resolve(expression, lookup))
            except UnresolvedReferenceError as e:
                errors[name] = e
        return values, errors

    async def state(self) -> List[Tuple[str, StateRecord]]:
        """Stored records in logical ID order."""
        records = await self.store.load()
        return [(rid, records[rid]) for rid in sorted(records)]
