"""
Tests for the persisted state layout: sequences, records, cursors
"""

import asyncio
from datetime import timedelta

import pytest

from dr_orchestrator.error_models import StateCorruptionError
from dr_orchestrator.models import BackupRecord, BackupStatus, DrRole, DrState
from dr_orchestrator.repository import StateRepository
from dr_orchestrator.state_store import InMemoryStateStore

from conftest import T0, make_spec

WORKLOAD = "shop/orders-db"


@pytest.fixture
def store():
    return InMemoryStateStore()


@pytest.fixture
def repository(store):
    return StateRepository(store)


def _record(sequence: int, status: BackupStatus = BackupStatus.SUCCEEDED) -> BackupRecord:
    return BackupRecord(
        workload_id=WORKLOAD,
        sequence=sequence,
        region="primary",
        started_at=T0 + timedelta(hours=sequence),
        artifact_key=f"backups/shop/orders-db/{sequence:012d}.dra",
        checksum="c" * 64 if status == BackupStatus.SUCCEEDED else None,
        status=status,
    )


class TestSequences:

    async def test_sequences_are_gap_free_and_unique_under_concurrency(self, repository):
        sequences = await asyncio.gather(*(repository.allocate_sequence(WORKLOAD) for _ in range(20)))

        assert sorted(sequences) == list(range(1, 21))
        assert await repository.last_sequence(WORKLOAD) == 20

    async def test_sequences_are_per_workload(self, repository):
        await repository.allocate_sequence(WORKLOAD)
        await repository.allocate_sequence(WORKLOAD)

        assert await repository.allocate_sequence("shop/cache") == 1

    async def test_corrupt_sequence_value_is_reported(self, repository, store):
        await store.put(repository.sequence_key(WORKLOAD), "not-a-number")

        with pytest.raises(StateCorruptionError):
            await repository.allocate_sequence(WORKLOAD)


class TestRecords:

    async def test_records_list_in_sequence_order(self, repository):
        for sequence in (3, 1, 2):
            await repository.put_record(_record(sequence))

        records = await repository.list_records(WORKLOAD)
        assert [r.sequence for r in records] == [1, 2, 3]
        assert (await repository.latest_record(WORKLOAD)).sequence == 3

    async def test_record_keys_sort_numerically(self, repository):
        """Zero padding keeps lexical key order equal to sequence order"""
        assert repository.record_key(WORKLOAD, 9) < repository.record_key(WORKLOAD, 10)
        assert repository.record_key(WORKLOAD, 10) == "dr:record:shop/orders-db:000000000010"

    async def test_succeeded_records_exclude_failed_and_verifying(self, repository):
        await repository.put_record(_record(1))
        await repository.put_record(_record(2, BackupStatus.FAILED))
        await repository.put_record(_record(3, BackupStatus.VERIFYING))

        assert [r.sequence for r in await repository.succeeded_records(WORKLOAD)] == [1]

    async def test_corrupt_record_raises_state_corruption(self, repository, store):
        await store.put(repository.record_key(WORKLOAD, 1), "{not json")

        with pytest.raises(StateCorruptionError) as exc_info:
            await repository.get_record(WORKLOAD, 1)
        assert exc_info.value.code == "STATE_CORRUPT"


class TestCursors:

    async def test_cursor_defaults_to_zero(self, repository):
        cursor = await repository.get_cursor(WORKLOAD, "standby")
        assert cursor.sequence == 0

    async def test_cursor_never_moves_backwards(self, repository):
        await repository.advance_cursor(WORKLOAD, "standby", 5, T0)
        cursor = await repository.advance_cursor(WORKLOAD, "standby", 3, T0 + timedelta(minutes=1))

        assert cursor.sequence == 5
        assert (await repository.get_cursor(WORKLOAD, "standby")).sequence == 5

    async def test_cursors_are_per_region(self, repository):
        await repository.advance_cursor(WORKLOAD, "standby", 4, T0)

        assert (await repository.get_cursor(WORKLOAD, "primary")).sequence == 0


class TestStateAndWorkloads:

    async def test_default_dr_state_is_primary_active(self, repository):
        state = await repository.load_dr_state()
        assert state.role == DrRole.PRIMARY_ACTIVE
        assert state.halted is False

    async def test_dr_state_round_trips_plan_and_history(self, repository):
        state = DrState().with_transition(DrRole.PROMOTING, T0, "test", "operator", 10)
        state = state.model_copy(update={"plan": {WORKLOAD: 4}, "completed": [WORKLOAD]})
        await repository.save_dr_state(state)

        loaded = await repository.load_dr_state()
        assert loaded.role == DrRole.PROMOTING
        assert loaded.plan == {WORKLOAD: 4}
        assert loaded.completed == [WORKLOAD]
        assert loaded.history[-1].from_role == DrRole.PRIMARY_ACTIVE

    async def test_transition_history_is_bounded(self):
        state = DrState()
        for i in range(5):
            to_role = DrRole.PROMOTING if i % 2 == 0 else DrRole.PRIMARY_ACTIVE
            state = state.with_transition(to_role, T0 + timedelta(minutes=i), f"step {i}", "test", 3)

        assert len(state.history) == 3
        assert state.history[-1].reason == "step 4"

    async def test_workloads_round_trip(self, repository):
        spec = make_spec()
        await repository.put_workload(spec)

        assert await repository.get_workload(spec.workload_id) == spec
        assert [s.workload_id for s in await repository.list_workloads()] == [spec.workload_id]
