"""
Typed access to persisted orchestrator state
Key layout:
    <prefix>:state                          DrState
    <prefix>:workload:<id>                  WorkloadSpec
    <prefix>:lease:<id>                     Lease
    <prefix>:seq:<id>                       last allocated sequence
    <prefix>:record:<id>:<seq:012d>         BackupRecord
    <prefix>:cursor:<region>:<id>           ReplicationCursor
    <prefix>:health:<region>                HealthVerdict
    <prefix>:schedule:<id>                  ScheduleState
"""

from datetime import datetime
from typing import List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, ValidationError as PydanticValidationError

from .error_models import StateCorruptionError
from .logging_adapter import get_safe_logger
from .models import (
    BackupRecord, BackupStatus, DrState, HealthVerdict, Lease,
    ReplicationCursor, ScheduleState, WorkloadSpec,
)
from .state_store import StateStore

logger = get_safe_logger("dr_orchestrator.repository")

M = TypeVar("M", bound=BaseModel)

_MAX_CAS_ATTEMPTS = 50


class StateRepository:
    """Serializes domain models to the state store under a fixed key layout"""

    def __init__(self, store: StateStore, prefix: str = "dr"):
        self.store = store
        self.prefix = prefix

    # Keys

    def state_key(self) -> str:
        return f"{self.prefix}:state"

    def workload_key(self, workload_id: str) -> str:
        return f"{self.prefix}:workload:{workload_id}"

    def lease_key(self, workload_id: str) -> str:
        return f"{self.prefix}:lease:{workload_id}"

    def sequence_key(self, workload_id: str) -> str:
        return f"{self.prefix}:seq:{workload_id}"

    def record_key(self, workload_id: str, sequence: int) -> str:
        return f"{self.prefix}:record:{workload_id}:{sequence:012d}"

    def cursor_key(self, region: str, workload_id: str) -> str:
        return f"{self.prefix}:cursor:{region}:{workload_id}"

    def health_key(self, region: str) -> str:
        return f"{self.prefix}:health:{region}"

    def schedule_key(self, workload_id: str) -> str:
        return f"{self.prefix}:schedule:{workload_id}"

    # Codec

    def _decode(self, key: str, raw: str, model: Type[M]) -> M:
        try:
            return model.model_validate_json(raw)
        except PydanticValidationError as e:
            logger.critical("persisted_state_corrupt", key=key, error=str(e))
            raise StateCorruptionError(key, str(e)) from e

    async def _load(self, key: str, model: Type[M]) -> Optional[M]:
        raw = await self.store.get(key)
        if raw is None:
            return None
        return self._decode(key, raw, model)

    # DR state

    async def load_dr_state(self) -> DrState:
        state = await self._load(self.state_key(), DrState)
        return state or DrState()

    async def save_dr_state(self, state: DrState) -> None:
        await self.store.put(self.state_key(), state.model_dump_json())

    # Workloads

    async def put_workload(self, spec: WorkloadSpec) -> None:
        await self.store.put(self.workload_key(spec.workload_id), spec.model_dump_json())

    async def get_workload(self, workload_id: str) -> Optional[WorkloadSpec]:
        return await self._load(self.workload_key(workload_id), WorkloadSpec)

    async def list_workloads(self) -> List[WorkloadSpec]:
        specs = []
        for key in await self.store.scan(f"{self.prefix}:workload:"):
            spec = await self._load(key, WorkloadSpec)
            if spec is not None:
                specs.append(spec)
        return specs

    # Leases

    async def get_lease(self, workload_id: str) -> Tuple[Optional[str], Optional[Lease]]:
        """Return the raw stored value alongside the decoded lease, for CAS."""
        key = self.lease_key(workload_id)
        raw = await self.store.get(key)
        if raw is None:
            return None, None
        return raw, self._decode(key, raw, Lease)

    async def swap_lease(self, workload_id: str, expected_raw: Optional[str],
                         lease: Optional[Lease]) -> bool:
        new_raw = lease.model_dump_json() if lease is not None else None
        return await self.store.compare_and_set(self.lease_key(workload_id), expected_raw, new_raw)

    # Sequences

    async def allocate_sequence(self, workload_id: str) -> int:
        """Allocate the next sequence by compare-and-set; gap-free across processes."""
        key = self.sequence_key(workload_id)
        for _ in range(_MAX_CAS_ATTEMPTS):
            raw = await self.store.get(key)
            try:
                current = int(raw) if raw is not None else 0
            except ValueError as e:
                raise StateCorruptionError(key, f"sequence is not an integer: {raw!r}") from e
            if await self.store.compare_and_set(key, raw, str(current + 1)):
                return current + 1
        raise StateCorruptionError(key, "sequence allocation did not converge")

    async def last_sequence(self, workload_id: str) -> int:
        raw = await self.store.get(self.sequence_key(workload_id))
        return int(raw) if raw is not None else 0

    # Backup records

    async def put_record(self, record: BackupRecord) -> None:
        await self.store.put(self.record_key(record.workload_id, record.sequence), record.model_dump_json())

    async def get_record(self, workload_id: str, sequence: int) -> Optional[BackupRecord]:
        return await self._load(self.record_key(workload_id, sequence), BackupRecord)

    async def delete_record(self, workload_id: str, sequence: int) -> None:
        await self.store.delete(self.record_key(workload_id, sequence))

    async def list_records(self, workload_id: str) -> List[BackupRecord]:
        """All records of a workload in ascending sequence order."""
        records = []
        for key in await self.store.scan(f"{self.prefix}:record:{workload_id}:"):
            record = await self._load(key, BackupRecord)
            if record is not None:
                records.append(record)
        records.sort(key=lambda r: r.sequence)
        return records

    async def succeeded_records(self, workload_id: str) -> List[BackupRecord]:
        return [r for r in await self.list_records(workload_id) if r.status == BackupStatus.SUCCEEDED]

    async def latest_record(self, workload_id: str) -> Optional[BackupRecord]:
        records = await self.list_records(workload_id)
        return records[-1] if records else None

    # Replication cursors

    async def get_cursor(self, workload_id: str, region: str) -> ReplicationCursor:
        cursor = await self._load(self.cursor_key(region, workload_id), ReplicationCursor)
        return cursor or ReplicationCursor(workload_id=workload_id, target_region=region)

    async def advance_cursor(self, workload_id: str, region: str, sequence: int,
                             now: datetime) -> ReplicationCursor:
        """Move the cursor forward to ``sequence``; never moves it backwards."""
        key = self.cursor_key(region, workload_id)
        for _ in range(_MAX_CAS_ATTEMPTS):
            raw = await self.store.get(key)
            current = (
                self._decode(key, raw, ReplicationCursor) if raw is not None
                else ReplicationCursor(workload_id=workload_id, target_region=region)
            )
            if sequence <= current.sequence:
                return current
            updated = current.model_copy(update={"sequence": sequence, "updated_at": now})
            if await self.store.compare_and_set(key, raw, updated.model_dump_json()):
                return updated
        raise StateCorruptionError(key, "cursor update did not converge")

    # Health

    async def get_health(self, region: str) -> HealthVerdict:
        verdict = await self._load(self.health_key(region), HealthVerdict)
        return verdict or HealthVerdict(region=region)

    async def put_health(self, verdict: HealthVerdict) -> None:
        await self.store.put(self.health_key(verdict.region), verdict.model_dump_json())

    # Schedule

    async def get_schedule(self, workload_id: str) -> ScheduleState:
        state = await self._load(self.schedule_key(workload_id), ScheduleState)
        return state or ScheduleState(workload_id=workload_id)

    async def put_schedule(self, state: ScheduleState) -> None:
        await self.store.put(self.schedule_key(state.workload_id), state.model_dump_json())
