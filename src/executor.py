"""
Executor - applies a Plan against a provider.

Steps start in plan order on a bounded pool of asyncio tasks. A step
never starts before every prerequisite step has succeeded; when a step
fails, everything that depends on it is skipped while independent
branches of the plan run to completion. Every successful step is saved
to the state store before it is reported complete.
"""

import asyncio
import logging
import random
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from config import ExecutorConfig
from errors import (
    ProviderError,
    ResourceNotFoundError,
    TransientProviderError,
    UnresolvedReferenceError,
)
from events import EventBus, EventType, StepEvent
from graph import dependency_ids
from models import (
    ApplyResult,
    ChangeOperation,
    OutcomeStatus,
    Plan,
    RecordStatus,
    Resource,
    StateRecord,
    Step,
    StepAction,
    StepOutcome,
)
from planner import diff_properties
from providers.base import ProviderCapability
from references import Reference, get_attribute, resolve
from state import Lease, StateStore

logger = logging.getLogger(__name__)


def backoff_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    jitter_factor: float,
) -> float:
    """Delay before retrying after the given (1-based) failed attempt."""
    delay = min(base_delay * (2 ** min(attempt - 1, 10)), max_delay)
    return max(0.0, delay * (1 + random.uniform(-jitter_factor, jitter_factor)))


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class StepFailed(Exception):
    """Terminal failure of a single step."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class Executor:
    """
    Runs plans for one stack.

    The lease is the caller's proof of being the single writer of the
    stack's state; it is passed to every state mutation.
    """

    def __init__(
        self,
        provider: ProviderCapability,
        store: StateStore,
        lease: Lease,
        config: Optional[ExecutorConfig] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.provider = provider
        self.store = store
        self.lease = lease
        self.config = config or ExecutorConfig()
        self._event_bus = event_bus
        self._cancelled = asyncio.Event()
        self._records: Dict[str, StateRecord] = {}

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        """Stop scheduling new steps; in-flight steps run to completion."""
        if not self._cancelled.is_set():
            logger.warning("Cancellation requested, waiting for in-flight steps")
        self._cancelled.set()

    async def apply(self, plan: Plan) -> ApplyResult:
        """Execute every step of the plan and report per-step outcomes."""
        start_time = time.monotonic()
        self._records = dict(await self.store.load())
        outcomes: Dict[str, StepOutcome] = {}
        pending: List[Step] = list(plan.steps)
        running: Dict[asyncio.Task, Step] = {}

        logger.info(
            f"Applying {len(plan.steps)} steps to stack '{plan.stack}' "
            f"(max {self.config.max_workers} concurrent)"
        )

        while pending or running:
            if self.cancelled:
                for step in pending:
                    outcomes[step.key] = await self._skip(plan, step, "cancelled")
                pending = []
            else:
                waiting = []
                for step in pending:
                    prereqs = plan.prerequisites_of(step)
                    blocked = [
                        key
                        for key in prereqs
                        if key in outcomes
                        and outcomes[key].status != OutcomeStatus.SUCCEEDED
                    ]
                    if blocked:
                        outcomes[step.key] = await self._skip(
                            plan,
                            step,
                            f"dependency {blocked[0]} {outcomes[blocked[0]].status.value}",
                        )
                        continue
                    ready = all(key in outcomes for key in prereqs)
                    if ready and len(running) < self.config.max_workers:
                        task = asyncio.create_task(self._run_step(plan, step))
                        running[task] = step
                    else:
                        waiting.append(step)
                pending = waiting

            if not running:
                for step in pending:
                    outcomes[step.key] = await self._skip(
                        plan, step, "prerequisites missing from plan"
                    )
                break

            done, _ = await asyncio.wait(
                running.keys(), return_when=asyncio.FIRST_COMPLETED
            )
            for task in done:
                step = running.pop(task)
                outcomes[step.key] = task.result()

        result = ApplyResult(
            outcomes=[outcomes[step.key] for step in plan.steps],
            duration_seconds=time.monotonic() - start_time,
            cancelled=self.cancelled,
        )
        failed = len(result.failures())
        if failed:
            logger.error(
                f"Apply of stack '{plan.stack}' finished with {failed} "
                f"failed or skipped steps"
            )
        else:
            logger.info(
                f"Apply of stack '{plan.stack}' completed in "
                f"{result.duration_seconds:.1f}s"
            )
        return result

    async def _publish(
        self,
        event_type: EventType,
        plan: Plan,
        step: Step,
        message: str = "",
        attempt: int = 0,
    ) -> None:
        if self._event_bus:
            await self._event_bus.publish(
                StepEvent.for_step(event_type, plan.stack, step, message, attempt)
            )

    async def _skip(self, plan: Plan, step: Step, reason: str) -> StepOutcome:
        logger.warning(f"Skipping {step}: {reason}")
        await self._publish(EventType.STEP_SKIPPED, plan, step, reason)
        return StepOutcome(step=step, status=OutcomeStatus.SKIPPED, reason=reason)

    async def _run_step(self, plan: Plan, step: Step) -> StepOutcome:
        """Run one step to a terminal outcome. Never raises."""
        outcome = StepOutcome(step=step, status=OutcomeStatus.FAILED)
        change = plan.operation(step.resource_id)
        await self._publish(EventType.STEP_STARTED, plan, step, change.reason)
        logger.info(f"Starting {step} ({change.resource_type})")

        handlers = {
            StepAction.CREATE: self._create,
            StepAction.CREATE_NEW: self._create,
            StepAction.UPDATE: self._update,
            StepAction.DELETE: self._delete,
            StepAction.DELETE_OLD: self._delete,
        }

        try:
            await handlers[step.action](plan, step, change, outcome)
            outcome.status = OutcomeStatus.SUCCEEDED
            logger.info(f"Completed {step}")
            await self._publish(EventType.STEP_SUCCEEDED, plan, step)
        except StepFailed as e:
            outcome.reason = e.reason
            logger.error(f"Failed {step}: {e.reason}")
            await self._publish(EventType.STEP_FAILED, plan, step, e.reason)
        except Exception as e:
            outcome.reason = f"unexpected error: {e}"
            logger.error(f"Unexpected error in {step}: {e}", exc_info=True)
            await self._publish(EventType.STEP_FAILED, plan, step, outcome.reason)

        return outcome

    # Provider calls

    async def _call(
        self,
        plan: Plan,
        step: Step,
        outcome: StepOutcome,
        call: Callable[[], Awaitable[Any]],
    ) -> Any:
        """
        Invoke a provider call with timeout, retries and backoff.

        Raises:
            ProviderError: The last error once retries are exhausted or the
                error is permanent.
        """
        while True:
            outcome.attempts += 1
            try:
                return await asyncio.wait_for(
                    call(), timeout=self.config.operation_timeout
                )
            except asyncio.TimeoutError:
                error: ProviderError = TransientProviderError(
                    f"timed out after {self.config.operation_timeout}s"
                )
            except ProviderError as e:
                error = e

            if not error.transient or outcome.attempts >= self.config.max_attempts:
                raise error

            delay = backoff_delay(
                outcome.attempts,
                self.config.backoff_base_delay,
                self.config.backoff_max_delay,
                self.config.backoff_jitter_factor,
            )
            logger.warning(
                f"Transient error in {step} (attempt {outcome.attempts}/"
                f"{self.config.max_attempts}): {error.message}; "
                f"retrying in {delay:.1f}s"
            )
            await self._publish(
                EventType.STEP_RETRYING, plan, step, error.message, outcome.attempts
            )
            await asyncio.sleep(delay)

    def _resolved(self, resource: Resource) -> Resource:
        def lookup(ref: Reference) -> Any:
            record = self._records.get(ref.resource_id)
            if record is None or not record.exists:
                raise UnresolvedReferenceError(
                    resource.id, ref.expression, f"'{ref.resource_id}' is not applied"
                )
            try:
                return get_attribute(record.attributes(), ref.attribute)
            except KeyError:
                raise UnresolvedReferenceError(
                    resource.id,
                    ref.expression,
                    f"attribute '{ref.attribute}' not found on '{ref.resource_id}'",
                ) from None

        return resource.with_properties(resolve(resource.properties, lookup))

    # State writes

    async def _put(self, record: StateRecord) -> None:
        record.updated_at = _now()
        try:
            await self.store.put(self.lease, record)
        except Exception as e:
            self.cancel()
            raise StepFailed(f"state write failed: {e}") from e
        self._records[record.resource_id] = record

    async def _remove(self, resource_id: str) -> None:
        try:
            await self.store.remove(self.lease, resource_id)
        except Exception as e:
            self.cancel()
            raise StepFailed(f"state write failed: {e}") from e
        self._records.pop(resource_id, None)

    # Step handlers

    async def _create(
        self, plan: Plan, step: Step, change: ChangeOperation, outcome: StepOutcome
    ) -> None:
        desired = change.desired
        try:
            resource = self._resolved(desired)
        except UnresolvedReferenceError as e:
            raise StepFailed(e.message) from e

        dependencies = sorted(dependency_ids(desired))
        await self._put(
            StateRecord(
                resource_id=desired.id,
                resource_type=desired.type,
                status=RecordStatus.PENDING,
                properties=resource.properties,
                dependencies=dependencies,
            )
        )

        try:
            result = await self._call(
                plan,
                step,
                outcome,
                lambda: self.provider.create(resource, idempotency_key=step.key),
            )
        except ProviderError as e:
            if step.action == StepAction.CREATE:
                await self._remove(desired.id)
            else:
                await self._put(
                    StateRecord(
                        resource_id=desired.id,
                        resource_type=desired.type,
                        status=RecordStatus.DELETED,
                        properties=resource.properties,
                        dependencies=dependencies,
                    )
                )
            raise StepFailed(f"{step.action.value} {desired.id}: {e.message}") from e

        await self._put(
            StateRecord(
                resource_id=desired.id,
                resource_type=desired.type,
                status=RecordStatus.APPLIED,
                provider_id=result.provider_id,
                properties=resource.properties,
                outputs=dict(result.outputs),
                dependencies=dependencies,
            )
        )

    async def _update(
        self, plan: Plan, step: Step, change: ChangeOperation, outcome: StepOutcome
    ) -> None:
        desired = change.desired
        record = self._records.get(desired.id)
        if record is None:
            raise StepFailed(f"update {desired.id}: no state record to update")
        try:
            resource = self._resolved(desired)
        except UnresolvedReferenceError as e:
            raise StepFailed(e.message) from e

        diff = diff_properties(record.properties, resource.properties)
        try:
            outputs = await self._call(
                plan,
                step,
                outcome,
                lambda: self.provider.update(
                    resource, diff, provider_id=record.provider_id, idempotency_key=step.key
                ),
            )
        except ProviderError as e:
            record.status = RecordStatus.FAILED
            await self._put(record)
            raise StepFailed(f"update {desired.id}: {e.message}") from e

        merged = dict(record.outputs)
        merged.update(outputs or {})
        await self._put(
            StateRecord(
                resource_id=desired.id,
                resource_type=desired.type,
                status=RecordStatus.APPLIED,
                provider_id=record.provider_id,
                properties=resource.properties,
                outputs=merged,
                dependencies=sorted(dependency_ids(desired)),
            )
        )

    async def _delete(
        self, plan: Plan, step: Step, change: ChangeOperation, outcome: StepOutcome
    ) -> None:
        record = self._records.get(change.resource_id)
        if record is not None and record.provider_id and record.exists:
            try:
                await self._call(
                    plan,
                    step,
                    outcome,
                    lambda: self.provider.delete(
                        record.provider_id,
                        record.resource_type,
                        idempotency_key=step.key,
                    ),
                )
            except ResourceNotFoundError:
                logger.info(f"{change.resource_id} was already gone from the provider")
            except ProviderError as e:
                record.status = RecordStatus.FAILED
                await self._put(record)
                raise StepFailed(
                    f"{step.action.value} {change.resource_id}: {e.message}"
                ) from e

        if step.action == StepAction.DELETE:
            await self._remove(change.resource_id)
        elif record is not None:
            await self._put(
                StateRecord(
                    resource_id=record.resource_id,
                    resource_type=record.resource_type,
                    status=RecordStatus.DELETED,
                    properties=record.properties,
                    dependencies=record.dependencies,
                )
            )
