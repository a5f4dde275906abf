"""Unit tests for executor.py - plan execution."""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock

from errors import TransientProviderError
from events import EventBus, EventType
from executor import Executor, backoff_delay
from graph import build
from models import OutcomeStatus, RecordStatus, Resource, StepAction
from planner import Planner
from providers.simulated import SimulatedProvider
from providers.simulated.types import RESOURCE_TYPES
from providers.registry import immutable_properties


def _resource(rid, rtype, **properties):
    return Resource(id=rid, type=rtype, properties=properties)


def _chain():
    """net <- subnet <- vm"""
    return [
        _resource("net", "network", cidr="10.0.0.0/16"),
        _resource("subnet", "subnet", network_id="${net.id}", cidr="10.0.1.0/24"),
        _resource(
            "vm",
            "compute-instance",
            instance_type="small",
            image="img-1",
            subnet_id="${subnet.id}",
        ),
    ]


def _planner():
    return Planner(stack="web", immutable_properties=immutable_properties(RESOURCE_TYPES))


async def _plan(store, resources):
    return _planner().plan(build(resources), await store.load())


async def _executor(store, provider, config, event_bus=None):
    lease = await store.acquire_lease("test", 30)
    return Executor(provider, store, lease, config=config, event_bus=event_bus)


class TestBackoffDelay:
    """Tests for backoff_delay."""

    def test_exponential(self):
        assert backoff_delay(1, 1.0, 30.0, 0.0) == 1.0
        assert backoff_delay(2, 1.0, 30.0, 0.0) == 2.0
        assert backoff_delay(4, 1.0, 30.0, 0.0) == 8.0

    def test_capped(self):
        assert backoff_delay(20, 1.0, 30.0, 0.0) == 30.0

    def test_jitter_bounds(self):
        for _ in range(50):
            delay = backoff_delay(3, 1.0, 30.0, 0.1)
            assert 3.6 <= delay <= 4.4


@pytest.mark.asyncio
class TestApply:
    """Tests for Executor.apply."""

    async def test_creates_in_order_and_records_state(
        self, store, simulated, fast_executor_config
    ):
        plan = await _plan(store, _chain())
        executor = await _executor(store, simulated, fast_executor_config)

        result = await executor.apply(plan)

        assert result.succeeded
        assert simulated.calls == ["create:net", "create:subnet", "create:vm"]
        records = await store.load()
        assert all(r.status == RecordStatus.APPLIED for r in records.values())
        assert records["subnet"].properties["network_id"] == records["net"].provider_id
        assert records["vm"].properties["subnet_id"] == records["subnet"].provider_id
        assert records["vm"].dependencies == ["subnet"]
        assert "private_ip" in records["vm"].outputs

    async def test_replan_after_apply_is_empty(self, store, simulated, fast_executor_config):
        executor = await _executor(store, simulated, fast_executor_config)
        await executor.apply(await _plan(store, _chain()))

        plan = await _plan(store, _chain())
        assert plan.is_empty

    async def test_failure_skips_dependents(self, store, simulated, fast_executor_config):
        simulated.inject_failure("subnet", "create", "permanent")
        executor = await _executor(store, simulated, fast_executor_config)

        result = await executor.apply(await _plan(store, _chain()))

        statuses = result.by_resource()
        assert statuses == {
            "net": OutcomeStatus.SUCCEEDED,
            "subnet": OutcomeStatus.FAILED,
            "vm": OutcomeStatus.SKIPPED,
        }
        assert "injected permanent failure" in result.outcomes[1].reason
        assert "subnet:create" in result.outcomes[2].reason
        assert result.outcomes[1].attempts == 1

        records = await store.load()
        assert set(records) == {"net"}
        assert simulated.find("subnet") is None

    async def test_independent_branch_completes(self, store, simulated, fast_executor_config):
        resources = _chain() + [_resource("logs", "bucket", name="logs")]
        simulated.inject_failure("net", "create", "permanent")
        executor = await _executor(store, simulated, fast_executor_config)

        result = await executor.apply(await _plan(store, resources))

        assert result.by_resource()["logs"] == OutcomeStatus.SUCCEEDED
        assert result.by_resource()["vm"] == OutcomeStatus.SKIPPED

    async def test_transient_failure_is_retried(self, store, simulated, fast_executor_config):
        simulated.inject_failure("net", "create", "transient", times=2)
        bus = EventBus()
        subscriber_id, subscription = await bus.subscribe()
        executor = await _executor(store, simulated, fast_executor_config, bus)

        result = await executor.apply(await _plan(store, [_chain()[0]]))
        await bus.unsubscribe(subscriber_id)
        events = [event async for event in subscription]

        assert result.succeeded
        assert result.outcomes[0].attempts == 3
        retries = [e for e in events if e.event_type == EventType.STEP_RETRYING]
        assert [e.attempt for e in retries] == [1, 2]
        assert events[-1].event_type == EventType.STEP_SUCCEEDED

    async def test_retries_exhausted(self, store, simulated, fast_executor_config):
        simulated.inject_failure("net", "create", "transient")
        executor = await _executor(store, simulated, fast_executor_config)

        result = await executor.apply(await _plan(store, [_chain()[0]]))

        outcome = result.outcomes[0]
        assert outcome.status == OutcomeStatus.FAILED
        assert outcome.attempts == fast_executor_config.max_attempts

    async def test_timeout_counts_as_transient(self, store, fast_executor_config):
        fast_executor_config.operation_timeout = 0.01
        fast_executor_config.max_attempts = 2

        async def slow_create(resource, idempotency_key):
            await asyncio.sleep(1)

        provider = MagicMock()
        provider.create = AsyncMock(side_effect=slow_create)
        executor = await _executor(store, provider, fast_executor_config)

        result = await executor.apply(await _plan(store, [_chain()[0]]))

        outcome = result.outcomes[0]
        assert outcome.status == OutcomeStatus.FAILED
        assert outcome.attempts == 2
        assert "timed out" in outcome.reason
        assert provider.create.await_count == 2

    async def test_idempotency_key_is_step_key(self, store, fast_executor_config):
        provider = MagicMock()
        provider.create = AsyncMock(
            side_effect=[TransientProviderError("throttled"), MagicMock(provider_id="net-1", outputs={})]
        )
        executor = await _executor(store, provider, fast_executor_config)

        await executor.apply(await _plan(store, [_chain()[0]]))

        keys = [call.kwargs["idempotency_key"] for call in provider.create.await_args_list]
        assert keys == ["net:create", "net:create"]

    async def test_bounded_concurrency(self, store, fast_executor_config):
        fast_executor_config.max_workers = 2
        active = 0
        peak = 0

        class CountingProvider(SimulatedProvider):
            async def create(self, resource, idempotency_key):
                nonlocal active, peak
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.01)
                try:
                    return await super().create(resource, idempotency_key)
                finally:
                    active -= 1

        resources = [_resource(f"b{i}", "bucket", name=f"b{i}") for i in range(6)]
        executor = await _executor(store, CountingProvider(), fast_executor_config)

        result = await executor.apply(await _plan(store, resources))

        assert result.succeeded
        assert peak == 2

    async def test_cancel_skips_remaining_steps(self, store, simulated, fast_executor_config):
        executor = await _executor(store, simulated, fast_executor_config)
        executor.cancel()

        result = await executor.apply(await _plan(store, _chain()))

        assert result.cancelled
        assert all(o.status == OutcomeStatus.SKIPPED for o in result.outcomes)
        assert all(o.reason == "cancelled" for o in result.outcomes)
        assert simulated.calls == []

    async def test_state_write_failure_cancels(self, store, simulated, fast_executor_config):
        plan = await _plan(store, _chain())
        executor = await _executor(store, simulated, fast_executor_config)
        store.lock_path.unlink()

        result = await executor.apply(plan)

        assert result.cancelled
        assert result.outcomes[0].status == OutcomeStatus.FAILED
        assert "state write failed" in result.outcomes[0].reason
        assert simulated.calls == []

    async def test_replace_deletes_then_creates(self, store, simulated, fast_executor_config):
        executor = await _executor(store, simulated, fast_executor_config)
        await executor.apply(await _plan(store, [_chain()[0]]))
        old_id = (await store.load())["net"].provider_id

        plan = await _plan(store, [_resource("net", "network", cidr="10.9.0.0/16")])
        assert [s.action for s in plan.steps] == [StepAction.DELETE_OLD, StepAction.CREATE_NEW]
        result = await executor.apply(plan)

        assert result.succeeded
        record = (await store.load())["net"]
        assert record.status == RecordStatus.APPLIED
        assert record.provider_id != old_id
        assert simulated.calls[-2:] == ["delete:net", "create:net"]

    async def test_update_failure_marks_record_failed(
        self, store, simulated, fast_executor_config
    ):
        executor = await _executor(store, simulated, fast_executor_config)
        await executor.apply(await _plan(store, [_resource("logs", "bucket", name="logs")]))

        simulated.inject_failure("logs", "update", "permanent")
        plan = await _plan(store, [_resource("logs", "bucket", name="logs", versioned=True)])
        result = await executor.apply(plan)

        assert result.has_failures
        assert (await store.load())["logs"].status == RecordStatus.FAILED

    async def test_delete_of_missing_resource_succeeds(
        self, store, simulated, fast_executor_config
    ):
        executor = await _executor(store, simulated, fast_executor_config)
        await executor.apply(await _plan(store, [_resource("logs", "bucket", name="logs")]))
        simulated.remove_out_of_band((await store.load())["logs"].provider_id)

        result = await executor.apply(_planner().plan_destroy(await store.load()))

        assert result.succeeded
        assert await store.load() == {}
