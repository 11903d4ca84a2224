"""
Replication relay
Copies finalized artifacts from the active region's store to the passive
region's store as opaque bytes and advances the per-region cursor one
verified copy at a time.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from .artifacts import checksum
from .concurrency import WorkloadLocks
from .contracts import EventSink
from .error_models import (
    ArtifactCorruptError, ArtifactNotFoundError, CopyVerificationError, WorkloadNotFoundError,
)
from .lease_manager import LeaseManager
from .logging_adapter import get_safe_logger
from .metrics import replication_copies_total, replication_cursor, replication_lag_sequences
from .models import BackupRecord, BackupStatus, EventSeverity
from .repository import StateRepository
from .resilience import with_deadline
from .sites import RegionSite, SiteDirectory

logger = get_safe_logger("dr_orchestrator.replication_relay")


@dataclass
class RelayConfig:
    copy_timeout_seconds: float = 600.0

    @classmethod
    def from_settings(cls, settings) -> "RelayConfig":
        return cls(copy_timeout_seconds=settings.copy_timeout_seconds)


@dataclass
class SyncResult:
    workload_id: str
    target_region: str
    start_cursor: int = 0
    cursor: int = 0
    copied: List[int] = field(default_factory=list)
    already_present: List[int] = field(default_factory=list)
    marked_failed: List[int] = field(default_factory=list)
    blocked_at: Optional[int] = None
    reason: Optional[str] = None

    @property
    def advanced(self) -> bool:
        return self.cursor > self.start_cursor


class ReplicationRelay:
    """
    The target region's visible state is always a contiguous prefix: the
    cursor moves only after a verified copy, and finalized Failed records
    are stepped over together with the next verified copy, never alone.
    """

    def __init__(self, repository: StateRepository, sites: SiteDirectory, locks: WorkloadLocks,
                 events: EventSink, lease_manager: LeaseManager,
                 config: Optional[RelayConfig] = None):
        self.repository = repository
        self.sites = sites
        self.locks = locks
        self.events = events
        self.lease_manager = lease_manager
        self.config = config or RelayConfig()

    async def sync(self, workload_id: str, now: datetime,
                   source: Optional[RegionSite] = None,
                   target: Optional[RegionSite] = None) -> SyncResult:
        """
        Replicate everything above the target cursor. Without explicit sites,
        runs active -> passive for the current DR role and is a no-op during
        transitions.
        """
        if await self.repository.get_workload(workload_id) is None:
            raise WorkloadNotFoundError(workload_id)
        if source is None or target is None:
            state = await self.repository.load_dr_state()
            sites = self.sites.active_passive(state.role)
            if sites is None:
                result = SyncResult(workload_id=workload_id, target_region="")
                result.reason = "dr_transition_in_progress"
                return result
            source, target = sites

        async with self.locks.lock(workload_id):
            return await self._sync_locked(workload_id, now, source, target)

    async def _sync_locked(self, workload_id: str, now: datetime, source: RegionSite,
                           target: RegionSite) -> SyncResult:
        cursor = (await self.repository.get_cursor(workload_id, target.name)).sequence
        result = SyncResult(workload_id=workload_id, target_region=target.name,
                            start_cursor=cursor, cursor=cursor)
        records = {r.sequence: r for r in await self.repository.list_records(workload_id)}
        last = await self.repository.last_sequence(workload_id)

        sequence = cursor + 1
        while sequence <= last:
            record = records.get(sequence)
            if record is None or record.status == BackupStatus.VERIFYING:
                if await self.lease_manager.current(workload_id, now) is not None:
                    result.blocked_at = sequence
                    result.reason = "backup_in_progress"
                    break
                if record is None:
                    # Pruned, or never written by a run that crashed after allocating
                    sequence += 1
                    continue
                record = await self._abandon(record, now)
                result.marked_failed.append(sequence)

            if record.status == BackupStatus.FAILED:
                sequence += 1
                continue

            try:
                copied = await with_deadline(
                    self._copy(record, source, target),
                    self.config.copy_timeout_seconds,
                    f"copy:{record.artifact_key}:{target.name}"
                )
            except ArtifactCorruptError as e:
                await self._mark_corrupt(record, source, e, now)
                result.marked_failed.append(sequence)
                sequence += 1
                continue
            except Exception as e:
                replication_copies_total.labels(target_region=target.name, status="failed").inc()
                result.blocked_at = sequence
                result.reason = f"{type(e).__name__}: {e}"
                logger.warning("replication_copy_failed", workload_id=workload_id, sequence=sequence,
                               source=source.name, target=target.name, error=str(e))
                break

            cursor = (await self.repository.advance_cursor(workload_id, target.name, sequence, now)).sequence
            result.cursor = cursor
            if copied:
                result.copied.append(sequence)
            else:
                result.already_present.append(sequence)
            sequence += 1

        await self._export_lag(workload_id, target.name, result.cursor)
        if result.advanced:
            logger.info("replication_advanced", workload_id=workload_id, target=target.name,
                        start_cursor=result.start_cursor, cursor=result.cursor, copied=result.copied)
        return result

    async def _copy(self, record: BackupRecord, source: RegionSite, target: RegionSite) -> bool:
        """Returns False when a verified copy was already present."""
        key = record.artifact_key
        try:
            existing = await target.blob_store.get(key)
            if checksum(existing) == record.checksum:
                replication_copies_total.labels(target_region=target.name, status="present").inc()
                return False
            logger.warning("replica_mismatch_overwriting", key=key, target=target.name)
        except ArtifactNotFoundError:
            pass

        try:
            data = await source.blob_store.get(key)
        except ArtifactNotFoundError as e:
            raise ArtifactCorruptError(key, record.checksum, None, source.name) from e
        actual = checksum(data)
        if actual != record.checksum:
            raise ArtifactCorruptError(key, record.checksum, actual, source.name)

        await target.blob_store.put(key, data)
        stored = checksum(await target.blob_store.get(key))
        if stored != record.checksum:
            try:
                await target.blob_store.delete(key)
            except Exception as e:
                logger.warning("bad_replica_cleanup_failed", key=key, target=target.name, error=str(e))
            replication_copies_total.labels(target_region=target.name, status="mismatch").inc()
            raise CopyVerificationError(key, target.name, record.checksum, stored)

        replication_copies_total.labels(target_region=target.name, status="copied").inc()
        return True

    async def _mark_corrupt(self, record: BackupRecord, source: RegionSite,
                            error: ArtifactCorruptError, now: datetime) -> None:
        failed = record.finalize_failed(now, f"{error.code}: {error.message}")
        await self.repository.put_record(failed)
        replication_copies_total.labels(target_region=source.name, status="corrupt_source").inc()
        logger.error("source_artifact_corrupt", workload_id=record.workload_id, sequence=record.sequence,
                     region=source.name, details=error.details)
        await self.events.emit(
            EventSeverity.ERROR,
            f"Backup {record.sequence} of {record.workload_id} is corrupt and was marked failed",
            {"workload_id": record.workload_id, "sequence": record.sequence, "region": source.name},
        )

    async def _abandon(self, record: BackupRecord, now: datetime) -> BackupRecord:
        """Finalize a record left unfinished by a crashed run, with no lease outstanding."""
        failed = record.finalize_failed(now, "ABANDONED: run ended without finalizing its record")
        await self.repository.put_record(failed)
        logger.warning("abandoned_backup_marked_failed", workload_id=record.workload_id,
                       sequence=record.sequence)
        return failed

    async def _export_lag(self, workload_id: str, target_region: str, cursor: int) -> None:
        succeeded = await self.repository.succeeded_records(workload_id)
        lag = sum(1 for r in succeeded if r.sequence > cursor)
        replication_lag_sequences.labels(workload=workload_id, target_region=target_region).set(lag)
        replication_cursor.labels(workload=workload_id, target_region=target_region).set(cursor)

    async def lag(self, workload_id: str, target_region: str) -> int:
        cursor = (await self.repository.get_cursor(workload_id, target_region)).sequence
        succeeded = await self.repository.succeeded_records(workload_id)
        return sum(1 for r in succeeded if r.sequence > cursor)
