"""
Retention pruner
Count- and age-based pruning that never outruns replication and never
removes the last good copy of a workload.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Set

from .artifacts import artifact_prefix, artifact_sequence
from .concurrency import WorkloadLocks
from .contracts import EventSink
from .error_models import PolicyViolationError, WorkloadNotFoundError
from .logging_adapter import get_safe_logger
from .metrics import prune_deletions_total, prune_failures_total
from .models import BackupRecord, BackupStatus, EventSeverity, WorkloadSpec
from .repository import StateRepository
from .sites import SiteDirectory

logger = get_safe_logger("dr_orchestrator.retention_pruner")


@dataclass
class PruneResult:
    workload_id: str
    deleted: List[int] = field(default_factory=list)
    retained: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)
    orphans_removed: List[str] = field(default_factory=list)
    skipped_reason: Optional[str] = None


@dataclass
class RetentionPlan:
    """Which sequences survive a prune and which may go"""
    protected: Set[int]
    expired: List[BackupRecord]


class RetentionPruner:
    """Applies each workload's RetentionPolicy under the workload lock"""

    def __init__(self, repository: StateRepository, sites: SiteDirectory,
                 locks: WorkloadLocks, events: EventSink):
        self.repository = repository
        self.sites = sites
        self.locks = locks
        self.events = events

    @staticmethod
    def plan(spec: WorkloadSpec, records: List[BackupRecord], cursor: int,
             now: datetime) -> RetentionPlan:
        policy = spec.retention
        succeeded = sorted(
            (r for r in records if r.status == BackupStatus.SUCCEEDED),
            key=lambda r: r.sequence,
            reverse=True,
        )
        protected = {r.sequence for r in succeeded[:policy.min_keep]}
        if succeeded:
            protected.add(succeeded[0].sequence)
        replicated = [r for r in succeeded if r.sequence <= cursor]
        if replicated:
            protected.add(replicated[0].sequence)

        expired = []
        for record in records:
            if record.sequence in protected or record.sequence > cursor:
                continue
            if record.status == BackupStatus.VERIFYING:
                continue
            if now - record.started_at > policy.max_age:
                expired.append(record)
        return RetentionPlan(protected=protected, expired=expired)

    async def _passive_cursor(self, workload_id: str) -> Optional[int]:
        state = await self.repository.load_dr_state()
        sites = self.sites.active_passive(state.role)
        if sites is None:
            return None
        _, passive = sites
        cursor = await self.repository.get_cursor(workload_id, passive.name)
        return cursor.sequence

    async def prune(self, workload_id: str, now: datetime) -> PruneResult:
        spec = await self.repository.get_workload(workload_id)
        if spec is None:
            raise WorkloadNotFoundError(workload_id)

        async with self.locks.lock(workload_id):
            result = PruneResult(workload_id=workload_id)
            cursor = await self._passive_cursor(workload_id)
            if cursor is None:
                result.skipped_reason = "dr_transition_in_progress"
                logger.debug("prune_skipped_during_transition", workload_id=workload_id)
                return result

            records = await self.repository.list_records(workload_id)
            plan = self.plan(spec, records, cursor, now)
            for record in plan.expired:
                if await self._delete(record):
                    result.deleted.append(record.sequence)
                else:
                    result.failed.append(record.sequence)

            removed = set(result.deleted)
            result.retained = [r.sequence for r in records if r.sequence not in removed]
            result.orphans_removed = await self._sweep_orphans(workload_id, set(result.retained), now)

        if result.deleted or result.failed or result.orphans_removed:
            logger.info("prune_completed", workload_id=workload_id, deleted=result.deleted,
                        failed=result.failed, orphans_removed=len(result.orphans_removed), cursor=cursor)
        return result

    async def delete_backup(self, workload_id: str, sequence: int, now: datetime) -> None:
        """
        Delete one backup on request. Refuses, before touching anything, to
        delete a protected or not-yet-replicated record.
        """
        spec = await self.repository.get_workload(workload_id)
        if spec is None:
            raise WorkloadNotFoundError(workload_id)

        async with self.locks.lock(workload_id):
            record = await self.repository.get_record(workload_id, sequence)
            if record is None:
                return
            cursor = await self._passive_cursor(workload_id)
            if cursor is None:
                raise PolicyViolationError(
                    "Backups cannot be deleted while a DR transition is in progress",
                    details={"workload_id": workload_id, "sequence": sequence},
                )
            records = await self.repository.list_records(workload_id)
            plan = self.plan(spec, records, cursor, now)
            if sequence in plan.protected:
                raise PolicyViolationError(
                    f"Backup {sequence} of {workload_id} is a protected last good copy",
                    code="LAST_GOOD_COPY",
                    details={"workload_id": workload_id, "sequence": sequence},
                )
            if sequence > cursor:
                raise PolicyViolationError(
                    f"Backup {sequence} of {workload_id} is not yet replicated",
                    code="NOT_REPLICATED",
                    details={"workload_id": workload_id, "sequence": sequence, "cursor": cursor},
                )
            if record.status == BackupStatus.VERIFYING:
                raise PolicyViolationError(
                    f"Backup {sequence} of {workload_id} is still in progress",
                    details={"workload_id": workload_id, "sequence": sequence},
                )
            if not await self._delete(record):
                raise PolicyViolationError(
                    f"Backup {sequence} of {workload_id} could not be fully deleted; retrying next cycle",
                    code="DELETE_INCOMPLETE",
                    details={"workload_id": workload_id, "sequence": sequence},
                )

    async def _delete(self, record: BackupRecord) -> bool:
        """Artifact from every region first, then the record. False on any failure."""
        try:
            for site in self.sites.all():
                await site.blob_store.delete(record.artifact_key)
            await self.repository.delete_record(record.workload_id, record.sequence)
        except Exception as e:
            prune_failures_total.labels(workload=record.workload_id).inc()
            logger.warning("prune_delete_failed", workload_id=record.workload_id,
                           sequence=record.sequence, key=record.artifact_key, error=str(e))
            await self.events.emit(
                EventSeverity.WARNING,
                f"Pruning backup {record.sequence} of {record.workload_id} failed",
                {"workload_id": record.workload_id, "sequence": record.sequence, "error": str(e)},
            )
            return False

        prune_deletions_total.labels(workload=record.workload_id, status=record.status.value).inc()
        logger.debug("backup_pruned", workload_id=record.workload_id, sequence=record.sequence,
                     status=record.status.value)
        return True

    async def _sweep_orphans(self, workload_id: str, known: Set[int], now: datetime) -> List[str]:
        """
        Remove artifacts that no record points at, left behind by runs that
        died before their cleanup. Skipped while any leased run is active,
        since its artifact may not have a finalized record yet.
        """
        _, lease = await self.repository.get_lease(workload_id)
        if lease is not None and not lease.is_expired(now):
            logger.debug("orphan_sweep_skipped_lease_held", workload_id=workload_id)
            return []

        removed = []
        for site in self.sites.all():
            try:
                keys = await site.blob_store.list(artifact_prefix(workload_id))
            except Exception as e:
                logger.warning("orphan_listing_failed", workload_id=workload_id, region=site.name,
                               error=str(e))
                continue
            for key in keys:
                sequence = artifact_sequence(workload_id, key)
                if sequence is None or sequence in known:
                    continue
                try:
                    await site.blob_store.delete(key)
                except Exception as e:
                    prune_failures_total.labels(workload=workload_id).inc()
                    logger.warning("orphan_delete_failed", workload_id=workload_id, region=site.name,
                                   key=key, error=str(e))
                    continue
                prune_deletions_total.labels(workload=workload_id, status="orphan").inc()
                logger.info("orphan_artifact_removed", workload_id=workload_id, region=site.name, key=key)
                removed.append(key)
        return removed
