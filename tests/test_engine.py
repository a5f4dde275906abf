"""Tests for engine.py - plan, apply, destroy, drift and outputs end to end."""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock

from declaration import parse_declaration
from errors import (
    CycleError,
    DeclarationError,
    LockContentionError,
    StateError,
    UnresolvedReferenceError,
)
from models import OperationKind, OutcomeStatus, RecordStatus


@pytest.mark.asyncio
class TestPlanAndApply:
    """Tests for planning and applying declarations."""

    async def test_plan_fresh_stack(self, engine, web_declaration):
        plan = await engine.plan(web_declaration)

        assert [step.key for step in plan.steps] == [
            "net:create",
            "subnet:create",
            "vm:create",
        ]
        assert plan.summary()["create"] == 3

    async def test_explicit_depends_on(self, engine, store):
        declaration = parse_declaration(
            {
                "stack": "web",
                "resources": {
                    "vm": {
                        "type": "compute-instance",
                        "properties": {
                            "instance_type": "small",
                            "image": "img-1",
                            "subnet_id": "subnet-static",
                        },
                        "depends_on": ["net"],
                    },
                    "net": {"type": "network", "properties": {"cidr": "10.0.0.0/16"}},
                },
            }
        )

        plan = await engine.plan(declaration)
        assert [step.key for step in plan.steps] == ["net:create", "vm:create"]

        report = await engine.apply(declaration)
        assert report.succeeded
        records = await store.load()
        assert {r.status for r in records.values()} == {RecordStatus.APPLIED}
        assert records["vm"].dependencies == ["net"]

    async def test_plan_has_no_side_effects(self, engine, web_declaration, simulated, store):
        await engine.plan(web_declaration)
        assert simulated.calls == []
        assert await store.load() == {}

    async def test_apply_then_replan_is_empty(self, engine, web_declaration, simulated, store):
        report = await engine.apply(web_declaration)

        assert report.succeeded
        assert report.outputs["net_id"] == simulated.find("net")["provider_id"]
        assert report.outputs["vm_ip"].startswith("10.")
        assert not store.lock_path.exists()

        plan = await engine.plan(web_declaration)
        assert plan.is_empty

    async def test_variable_override_updates_in_place(self, engine, web_declaration, simulated):
        await engine.apply(web_declaration)
        vm_id = simulated.find("vm")["provider_id"]

        plan = await engine.plan(web_declaration, {"instance_type": "large"})
        assert plan.operation("vm").kind == OperationKind.UPDATE

        report = await engine.apply(web_declaration, {"instance_type": "large"})
        assert report.succeeded
        assert simulated.find("vm")["provider_id"] == vm_id
        assert simulated.find("vm")["properties"]["instance_type"] == "large"

    async def test_immutable_change_replaces_chain(
        self, engine, web_declaration_data, simulated, store
    ):
        await engine.apply(parse_declaration(web_declaration_data))
        old_net = simulated.find("net")["provider_id"]

        web_declaration_data["resources"]["net"]["properties"]["cidr"] = "10.1.0.0/16"
        declaration = parse_declaration(web_declaration_data)
        plan = await engine.plan(declaration)

        assert {c.kind for c in plan.changes} == {OperationKind.REPLACE}
        keys = [step.key for step in plan.steps]
        assert keys.index("net:create-new") == keys.index("net:delete-old") + 1
        assert keys.index("vm:delete-old") < keys.index("subnet:delete-old")

        report = await engine.apply(declaration)
        assert report.succeeded
        records = await store.load()
        assert records["net"].provider_id != old_net
        assert records["subnet"].properties["network_id"] == records["net"].provider_id
        assert records["vm"].properties["subnet_id"] == records["subnet"].provider_id
        assert (await engine.plan(declaration)).is_empty

    async def test_removed_resource_is_deleted(self, engine, web_declaration_data, simulated):
        await engine.apply(parse_declaration(web_declaration_data))

        del web_declaration_data["resources"]["vm"]
        web_declaration_data["outputs"] = {}
        report = await engine.apply(parse_declaration(web_declaration_data))

        assert report.succeeded
        assert [s.key for s in report.plan.steps] == ["vm:delete"]
        assert simulated.find("vm") is None

    async def test_partial_failure(self, engine, web_declaration, simulated, store):
        simulated.inject_failure("subnet", "create", "permanent", times=1)

        report = await engine.apply(web_declaration)

        assert not report.succeeded
        assert report.result.by_resource() == {
            "net": OutcomeStatus.SUCCEEDED,
            "subnet": OutcomeStatus.FAILED,
            "vm": OutcomeStatus.SKIPPED,
        }
        assert report.outputs["vm_ip"] == "(known after apply)"
        assert set(await store.load()) == {"net"}

        # The next apply picks up where the last one stopped.
        report = await engine.apply(web_declaration)
        assert report.succeeded
        assert [s.key for s in report.plan.steps] == ["subnet:create", "vm:create"]

    async def test_invalid_properties_rejected_before_side_effects(
        self, engine, web_declaration_data, simulated, store
    ):
        del web_declaration_data["resources"]["net"]["properties"]["cidr"]

        with pytest.raises(DeclarationError, match="net \\(network\\)"):
            await engine.apply(parse_declaration(web_declaration_data))
        assert simulated.calls == []
        assert not store.lock_path.exists()

    async def test_unknown_type_rejected(self, engine, web_declaration_data):
        web_declaration_data["resources"]["q"] = {"type": "queue"}
        with pytest.raises(DeclarationError, match="unknown resource type 'queue'"):
            await engine.plan(parse_declaration(web_declaration_data))

    async def test_cycle_rejected(self, engine):
        declaration = parse_declaration(
            {
                "stack": "web",
                "resources": {
                    "a": {"type": "bucket", "properties": {"name": "${b.arn}"}},
                    "b": {"type": "bucket", "properties": {"name": "${a.arn}"}},
                },
            }
        )
        with pytest.raises(CycleError):
            await engine.plan(declaration)

    async def test_dangling_reference_rejected(self, engine):
        declaration = parse_declaration(
            {
                "stack": "web",
                "resources": {"a": {"type": "bucket", "properties": {"name": "${ghost.arn}"}}},
            }
        )
        with pytest.raises(UnresolvedReferenceError):
            await engine.plan(declaration)

    async def test_wrong_stack(self, engine, web_declaration_data):
        web_declaration_data["stack"] = "other"
        with pytest.raises(StateError, match="stack 'other'"):
            await engine.plan(parse_declaration(web_declaration_data))

    async def test_lock_contention(self, engine, web_declaration, store, simulated):
        await store.acquire_lease("someone-else", 60)

        with pytest.raises(LockContentionError) as exc_info:
            await engine.apply(web_declaration)
        assert exc_info.value.holder == "someone-else"
        assert simulated.calls == []

    async def test_cancel_before_apply(self, engine, web_declaration, simulated):
        engine.cancel()

        report = await engine.apply(web_declaration)

        assert report.result.cancelled
        assert not report.succeeded
        assert simulated.calls == []


@pytest.mark.asyncio
class TestDestroy:
    """Tests for destroy."""

    async def test_destroy_deletes_dependents_first(self, engine, web_declaration, simulated, store):
        await engine.apply(web_declaration)

        plan = await engine.plan_destroy(web_declaration)
        assert [s.key for s in plan.steps] == ["vm:delete", "subnet:delete", "net:delete"]

        report = await engine.destroy(web_declaration)
        assert report.succeeded
        assert report.plan.destroy
        assert simulated.calls[-3:] == ["delete:vm", "delete:subnet", "delete:net"]
        assert await store.load() == {}

    async def test_destroy_empty_stack(self, engine, web_declaration):
        report = await engine.destroy(web_declaration)
        assert report.plan.is_empty
        assert report.succeeded

    async def test_reversed_dependency_is_recorded(self, engine, store, simulated):
        first = {
            "stack": "web",
            "resources": {
                "a": {
                    "type": "bucket",
                    "properties": {"name": "logs-a"},
                    "depends_on": ["b"],
                },
                "b": {"type": "bucket", "properties": {"name": "logs-b"}},
            },
        }
        await engine.apply(parse_declaration(first))

        second = {
            "stack": "web",
            "resources": {
                "a": {"type": "bucket", "properties": {"name": "logs-a"}},
                "b": {
                    "type": "bucket",
                    "properties": {"name": "logs-b", "tags": {"peer": "${a.arn}"}},
                },
            },
        }
        declaration = parse_declaration(second)
        report = await engine.apply(declaration)
        assert [s.key for s in report.plan.steps] == ["b:update"]

        records = await store.load()
        assert records["a"].dependencies == []
        assert records["b"].dependencies == ["a"]

        report = await engine.destroy(declaration)
        assert report.succeeded
        assert [s.key for s in report.plan.steps] == ["b:delete", "a:delete"]
        assert simulated.calls[-2:] == ["delete:b", "delete:a"]
        assert await store.load() == {}


@pytest.mark.asyncio
class TestDrift:
    """Tests for drift detection and refresh."""

    async def test_no_drift(self, engine, web_declaration):
        await engine.apply(web_declaration)
        report = await engine.drift()
        assert not report.has_drift

    async def test_changed_and_missing(self, engine, web_declaration, simulated):
        await engine.apply(web_declaration)
        simulated.modify_out_of_band(
            simulated.find("vm")["provider_id"], {"instance_type": "huge"}
        )
        simulated.remove_out_of_band(simulated.find("net")["provider_id"])

        report = await engine.drift()

        assert report.changed["vm"]["instance_type"].before == "small"
        assert report.changed["vm"]["instance_type"].after == "huge"
        assert report.missing == ["net"]
        assert report.to_dict()["missing"] == ["net"]

    async def test_plan_with_refresh_corrects_drift(self, engine, web_declaration, simulated):
        await engine.apply(web_declaration)
        simulated.modify_out_of_band(
            simulated.find("vm")["provider_id"], {"instance_type": "huge"}
        )

        assert (await engine.plan(web_declaration)).is_empty
        plan = await engine.plan(web_declaration, refresh=True)
        assert plan.operation("vm").kind == OperationKind.UPDATE

    async def test_apply_with_refresh_recreates_missing(
        self, engine, web_declaration, simulated, store
    ):
        await engine.apply(web_declaration)
        simulated.remove_out_of_band(simulated.find("vm")["provider_id"])

        report = await engine.apply(web_declaration, refresh=True)

        assert report.succeeded
        assert [s.key for s in report.plan.steps] == ["vm:create"]
        assert simulated.find("vm") is not None


@pytest.mark.asyncio
class TestOutputsAndState:
    """Tests for outputs and state inspection."""

    async def test_outputs_before_apply_are_unknown(self, engine, web_declaration):
        assert await engine.outputs(web_declaration) == {
            "net_id": "(known after apply)",
            "vm_ip": "(known after apply)",
        }

    async def test_missing_output_attribute(self, engine, web_declaration_data):
        web_declaration_data["outputs"] = {}
        await engine.apply(parse_declaration(web_declaration_data))

        web_declaration_data["outputs"] = {"bad": "${net.nonexistent}"}
        declaration = parse_declaration(web_declaration_data)

        with pytest.raises(UnresolvedReferenceError):
            await engine.outputs(declaration)

    async def test_output_naming_undeclared_resource_rejected(
        self, engine, web_declaration_data, simulated, store
    ):
        web_declaration_data["outputs"]["ghost"] = "${ghost.id}"
        declaration = parse_declaration(web_declaration_data)

        with pytest.raises(UnresolvedReferenceError, match="outputs.ghost"):
            await engine.plan(declaration)
        with pytest.raises(UnresolvedReferenceError, match="outputs.ghost"):
            await engine.apply(declaration)
        assert simulated.calls == []
        assert await store.load() == {}

    async def test_unresolvable_output_reported_after_apply(
        self, engine, web_declaration_data, simulated
    ):
        web_declaration_data["outputs"]["bad"] = "${net.no_such_attr}"

        report = await engine.apply(parse_declaration(web_declaration_data))

        assert report.succeeded
        assert simulated.find("vm") is not None
        assert report.outputs["net_id"] == simulated.find("net")["provider_id"]
        assert "bad" not in report.outputs
        assert "no_such_attr" in report.output_errors["bad"]
        assert report.to_dict()["output_errors"] == report.output_errors

    async def test_state_sorted(self, engine, web_declaration):
        await engine.apply(web_declaration)
        records = await engine.state()
        assert [rid for rid, _ in records] == ["net", "subnet", "vm"]
        assert all(r.status == RecordStatus.APPLIED for _, r in records)


@pytest.mark.asyncio
class TestLeaseRenewal:
    """Tests for lease renewal during long applies."""

    async def test_lost_lease_cancels_executor(self, engine, store, state_config):
        state_config.lease_ttl = 0.03
        lease = await store.acquire_lease("test-holder", 30)
        store.renew_lease = AsyncMock(side_effect=LockContentionError("web"))
        executor = MagicMock()

        await asyncio.wait_for(engine._keep_lease(lease, executor), timeout=1)

        executor.cancel.assert_called_once()

    async def test_renews_while_running(self, engine, web_declaration, simulated, store, state_config):
        state_config.lease_ttl = 0.15
        simulated.latency = 0.1
        renew = AsyncMock(wraps=store.renew_lease)
        store.renew_lease = renew

        report = await engine.apply(web_declaration)

        assert report.succeeded
        assert renew.await_count >= 1
