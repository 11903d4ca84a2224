"""
Tests for the orchestrator runtime and operator commands
"""

import asyncio

from dr_orchestrator.models import DrRole, DrState
from dr_orchestrator.orchestrator import CommandOutcome, Orchestrator, classify
from dr_orchestrator.error_models import LeaseHeldError, PromotionFailedError, ValidationError

from conftest import make_settings, make_spec, wait_until


class TestClassify:

    def test_orchestrator_errors_are_rejections(self):
        assert classify(ValidationError("bad")) == CommandOutcome.REJECTED
        assert classify(LeaseHeldError("shop/orders-db", "dr-1")) == CommandOutcome.REJECTED

    def test_fatal_and_unexpected_errors_are_fatal(self):
        assert classify(PromotionFailedError("boom")) == CommandOutcome.FATAL
        assert classify(RuntimeError("unexpected")) == CommandOutcome.FATAL


class TestRegisterWorkload:

    async def test_register_from_plain_mapping(self, harness):
        result = await harness.orchestrator.register_workload({
            "name": "orders-db", "namespace": "shop", "dump_executor": "pg",
            "restore_executor": "pg", "cadence_seconds": 900,
        })

        assert result.outcome == CommandOutcome.ACCEPTED
        assert result.data == {"workload_id": "shop/orders-db", "reregistered": False}
        spec = await harness.repository.get_workload("shop/orders-db")
        assert spec.cadence_seconds == 900

    async def test_reregistration_replaces_spec(self, harness):
        await harness.register(make_spec(cadence_seconds=3600))

        result = await harness.orchestrator.register_workload(make_spec(cadence_seconds=60))

        assert result.data["reregistered"] is True
        assert (await harness.repository.get_workload("shop/orders-db")).cadence_seconds == 60

    async def test_invalid_spec_is_rejected_with_validation_error(self, harness):
        result = await harness.orchestrator.register_workload({"name": "Orders_DB", "namespace": "shop"})

        assert result.outcome == CommandOutcome.REJECTED
        assert result.error.code == "VALIDATION_ERROR"
        assert result.error.details["errors"]
        assert await harness.repository.list_workloads() == []

    async def test_unknown_executor_is_rejected(self, harness):
        spec = make_spec().model_copy(update={"dump_executor": "mysql"})

        result = await harness.orchestrator.register_workload(spec)

        assert result.outcome == CommandOutcome.REJECTED
        assert "mysql" in result.message

    async def test_registration_rejected_mid_transition(self, harness, spec):
        await harness.repository.save_dr_state(DrState(role=DrRole.PROMOTING))

        result = await harness.orchestrator.register_workload(spec)

        assert result.error.code == "INVALID_DR_STATE"


class TestTriggerCommands:

    async def test_trigger_backup_accepted(self, harness, spec):
        await harness.register(spec)

        result = await harness.orchestrator.trigger_backup(spec.workload_id)
        await harness.orchestrator.wait_background()

        assert result.outcome == CommandOutcome.ACCEPTED
        assert (await harness.repository.latest_record(spec.workload_id)).sequence == 1

    async def test_trigger_backup_for_unknown_workload(self, harness):
        result = await harness.orchestrator.trigger_backup("shop/missing")

        assert result.outcome == CommandOutcome.REJECTED
        assert result.error.code == "WORKLOAD_NOT_FOUND"

    async def test_trigger_backup_while_lease_held(self, harness, spec):
        await harness.register(spec)
        await harness.orchestrator.lease_manager.acquire(spec.workload_id, harness.clock())

        result = await harness.orchestrator.trigger_backup(spec.workload_id)

        assert result.error.code == "LEASE_HELD"

    async def test_trigger_restore_restores_in_active_region(self, harness, spec):
        await harness.register(spec)
        record = await harness.backup(spec)

        result = await harness.orchestrator.trigger_restore(spec.workload_id, record.sequence)
        await harness.orchestrator.wait_background()

        assert result.outcome == CommandOutcome.ACCEPTED
        assert result.data["region"] == "primary"
        assert harness.executors["primary"].restored[spec.workload_id] == harness.executors["primary"].payload
        assert harness.events.events[-1]["message"].endswith("completed")

    async def test_trigger_restore_of_failed_backup_is_rejected(self, harness, spec):
        await harness.register(spec)
        harness.executors["primary"].dump_error = RuntimeError("dump failed")
        record = await harness.backup(spec)

        result = await harness.orchestrator.trigger_restore(spec.workload_id, record.sequence)

        assert result.error.code == "BACKUP_NOT_RESTORABLE"

    async def test_trigger_restore_of_missing_backup_is_rejected(self, harness, spec):
        await harness.register(spec)

        result = await harness.orchestrator.trigger_restore(spec.workload_id, 7)

        assert result.outcome == CommandOutcome.REJECTED
        assert result.error.code == "VALIDATION_ERROR"

    async def test_restore_rejected_while_backup_holds_the_lease(self, harness, spec):
        await harness.register(spec)
        record = await harness.backup(spec)
        executor = harness.executors["primary"]
        executor.dump_gate = asyncio.Event()
        await harness.orchestrator.trigger_backup(spec.workload_id)
        await wait_until(lambda: executor.active_dumps == 1)

        result = await harness.orchestrator.trigger_restore(spec.workload_id, record.sequence)

        assert result.outcome == CommandOutcome.REJECTED
        assert result.error.code == "LEASE_HELD"
        executor.dump_gate.set()
        await harness.orchestrator.wait_background()
        assert spec.workload_id not in executor.restored
        assert (await harness.repository.latest_record(spec.workload_id)).sequence == 2

    async def test_restore_rejected_when_backup_was_just_started(self, harness, spec):
        await harness.register(spec)
        record = await harness.backup(spec)

        await harness.orchestrator.trigger_backup(spec.workload_id)
        result = await harness.orchestrator.trigger_restore(spec.workload_id, record.sequence)
        await harness.orchestrator.wait_background()

        assert result.error.code == "LEASE_HELD"
        assert spec.workload_id not in harness.executors["primary"].restored

    async def test_backups_wait_out_a_running_restore(self, harness, spec):
        await harness.register(spec)
        record = await harness.backup(spec)
        executor = harness.executors["primary"]
        executor.restore_gate = asyncio.Event()

        result = await harness.orchestrator.trigger_restore(spec.workload_id, record.sequence)
        assert result.outcome == CommandOutcome.ACCEPTED

        backup = await harness.orchestrator.trigger_backup(spec.workload_id)
        assert backup.error.code == "LEASE_HELD"
        harness.clock.advance(hours=2)
        assert await harness.orchestrator.scheduler.tick(harness.clock()) == []

        executor.restore_gate.set()
        await harness.orchestrator.wait_background()
        assert executor.restored[spec.workload_id] == executor.payload
        assert await harness.orchestrator.lease_manager.current(spec.workload_id, harness.clock()) is None
        assert executor.dumps == 1

    async def test_failed_restore_releases_the_lease(self, harness, spec):
        await harness.register(spec)
        record = await harness.backup(spec)
        harness.executors["primary"].restore_error = RuntimeError("psql exited with 3")

        await harness.orchestrator.trigger_restore(spec.workload_id, record.sequence)
        await harness.orchestrator.wait_background()

        assert await harness.orchestrator.lease_manager.current(spec.workload_id, harness.clock()) is None
        assert harness.events.events[-1]["message"].endswith("failed")

    async def test_restore_of_backup_missing_from_active_region_is_rejected(self, harness, spec):
        await harness.register(spec)
        await harness.backup(spec)
        await harness.replicate(spec)
        harness.clock.advance(hours=1)
        unreplicated = await harness.backup(spec)
        await harness.orchestrator.promote(actor="alice", reason="drill")
        await harness.orchestrator.wait_background()
        assert (await harness.repository.load_dr_state()).role == DrRole.PROMOTED

        result = await harness.orchestrator.trigger_restore(spec.workload_id, unreplicated.sequence)

        assert result.outcome == CommandOutcome.REJECTED
        assert result.error.code == "NOT_REPLICATED"
        assert result.error.details["replicated_through"] == 1

    async def test_restore_of_replicated_backup_after_promotion(self, harness, spec):
        await harness.register(spec)
        record = await harness.backup(spec)
        await harness.replicate(spec)
        await harness.orchestrator.promote(actor="alice", reason="drill")
        await harness.orchestrator.wait_background()
        harness.executors["standby"].restored.clear()

        result = await harness.orchestrator.trigger_restore(spec.workload_id, record.sequence)
        await harness.orchestrator.wait_background()

        assert result.outcome == CommandOutcome.ACCEPTED
        assert result.data["region"] == "standby"
        assert harness.executors["standby"].restored[spec.workload_id] == harness.executors["standby"].payload


class TestStatusAndLifecycle:

    async def test_status_reports_state_health_and_workloads(self, harness, spec):
        await harness.register(spec)
        await harness.backup(spec)
        await harness.replicate(spec)

        status = await harness.orchestrator.get_status()

        assert status["dr_state"]["role"] == "primary_active"
        assert status["transition_in_flight"] is False
        assert set(status["health"]) == {"primary", "standby"}
        workload = status["workloads"][0]
        assert workload["workload_id"] == spec.workload_id
        assert workload["last_succeeded"]["sequence"] == 1
        assert workload["replication_cursors"] == {"primary": 0, "standby": 1}
        assert workload["lease"] is None

    async def test_cycles_run_every_control_loop_step(self, harness, spec):
        await harness.register(spec)
        orchestrator = harness.orchestrator

        assert await orchestrator.scheduler_cycle(harness.clock()) == [spec.workload_id]
        await orchestrator.scheduler.wait_idle()
        await orchestrator.replication_cycle(harness.clock())
        await orchestrator.prune_cycle(harness.clock())
        await orchestrator.health_cycle(harness.clock())

        assert (await harness.repository.get_cursor(spec.workload_id, "standby")).sequence == 1
        assert (await harness.repository.get_health("primary")).last_probe_time == harness.clock()

    async def test_start_and_stop(self, harness):
        await harness.orchestrator.start()
        assert len(harness.orchestrator._loops) == 4

        await harness.orchestrator.stop()
        assert harness.orchestrator._loops == []


def test_from_settings_builds_memory_deployment(tmp_path):
    settings = make_settings(blob_backend="local", local_root=str(tmp_path))

    orchestrator = Orchestrator.from_settings(settings)

    assert orchestrator.sites.primary.name == settings.primary_region
    assert orchestrator.sites.standby.name == settings.standby_region
    assert orchestrator.controller.config.auto_failover_enabled is False
