"""
Snapshot executor: one consistent, encrypted, verified backup of a workload
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from .artifacts import ArtifactEncoder, EncodedArtifact, artifact_key, checksum
from .contracts import POST_BACKUP_HOOK, PRE_BACKUP_HOOK, DumpRestoreExecutor, EventSink
from .error_models import ArtifactCorruptError, OrchestratorError
from .hooks import run_hook
from .lease_manager import LeaseManager
from .logging_adapter import get_safe_logger
from .metrics import (
    backup_duration, backup_runs_total, backup_size_bytes, last_successful_backup_sequence,
)
from .models import BackupRecord, BackupStatus, EventSeverity, WorkloadSpec
from .repository import StateRepository
from .resilience import with_deadline
from .sites import RegionSite

logger = get_safe_logger("dr_orchestrator.snapshot_executor")


@dataclass
class SnapshotConfig:
    snapshot_timeout_seconds: float = 3600.0
    hook_timeout_seconds: float = 60.0

    @classmethod
    def from_settings(cls, settings) -> "SnapshotConfig":
        return cls(
            snapshot_timeout_seconds=settings.snapshot_timeout_seconds,
            hook_timeout_seconds=settings.hook_timeout_seconds,
        )


def describe_error(error: BaseException) -> str:
    if isinstance(error, OrchestratorError):
        return f"{error.code}: {error.message}"
    if isinstance(error, asyncio.CancelledError):
        return "CANCELLED: backup run was cancelled before it completed"
    return f"{type(error).__name__}: {error}"


class SnapshotExecutor:
    """
    Runs a single backup to completion:

    lease -> verifying record -> pre-backup hook -> dump, gzip, encrypt,
    checksum -> upload -> read-back verification -> post-backup hook ->
    finalize Succeeded.

    Any failure or cancellation after the record exists finalizes it Failed
    and removes the uploaded artifact. The lease is released on every exit path.
    """

    def __init__(
        self,
        repository: StateRepository,
        lease_manager: LeaseManager,
        encoder: ArtifactEncoder,
        events: EventSink,
        config: Optional[SnapshotConfig] = None
    ):
        self.repository = repository
        self.lease_manager = lease_manager
        self.encoder = encoder
        self.events = events
        self.config = config or SnapshotConfig()

    async def run_backup(self, spec: WorkloadSpec, site: RegionSite, now: datetime) -> BackupRecord:
        """
        Returns the finalized record, Succeeded or Failed. Raises only when
        no record could be created (lease held, state store unavailable).
        """
        workload_id = spec.workload_id
        lease = await self.lease_manager.acquire(workload_id, now)
        started = time.monotonic()
        try:
            sequence = await self.repository.allocate_sequence(workload_id)
            record = BackupRecord(
                workload_id=workload_id,
                sequence=sequence,
                region=site.name,
                started_at=now,
                artifact_key=artifact_key(workload_id, sequence),
                status=BackupStatus.VERIFYING,
            )
            await self.repository.put_record(record)
            logger.info("backup_started", workload_id=workload_id, sequence=sequence, region=site.name)

            uploaded = False
            try:
                handle = site.handle(spec)
                executor = site.executor(spec.dump_executor)
                await run_hook(handle, PRE_BACKUP_HOOK, workload_id, self.config.hook_timeout_seconds)

                encoded = await with_deadline(
                    self._dump_and_encode(spec, executor, record.artifact_key),
                    self.config.snapshot_timeout_seconds,
                    f"dump:{workload_id}"
                )

                uploaded = True
                await site.blob_store.put(record.artifact_key, encoded.data)
                stored = await site.blob_store.get(record.artifact_key)
                actual = checksum(stored)
                if actual != encoded.checksum:
                    raise ArtifactCorruptError(record.artifact_key, encoded.checksum, actual, site.name)

                await run_hook(handle, POST_BACKUP_HOOK, workload_id, self.config.hook_timeout_seconds)

                elapsed = time.monotonic() - started
                record = record.finalize_succeeded(
                    finished_at=now + timedelta(seconds=elapsed),
                    size_bytes=encoded.size_bytes,
                    checksum=encoded.checksum,
                    encryption_key_id=encoded.key_id,
                )
                await self.repository.put_record(record)
            except asyncio.CancelledError as e:
                # Finish the cleanup even though the run itself is being torn down
                await asyncio.shield(self._fail(record, site, uploaded, e, now, started))
                raise
            except Exception as e:
                return await self._fail(record, site, uploaded, e, now, started)

            backup_runs_total.labels(workload=workload_id, region=site.name, status="succeeded").inc()
            backup_duration.labels(workload=workload_id).observe(time.monotonic() - started)
            backup_size_bytes.labels(workload=workload_id).set(record.size_bytes)
            last_successful_backup_sequence.labels(workload=workload_id).set(sequence)
            logger.info(
                "backup_succeeded",
                workload_id=workload_id,
                sequence=sequence,
                region=site.name,
                size_bytes=record.size_bytes,
                plaintext_bytes=encoded.plaintext_bytes,
                checksum=record.checksum,
            )
            return record
        finally:
            await self.lease_manager.release(lease)

    async def _dump_and_encode(self, spec: WorkloadSpec, executor: DumpRestoreExecutor,
                               key: str) -> EncodedArtifact:
        chunks = executor.dump(spec)
        try:
            return await self.encoder.encode(spec.workload_id, key, chunks)
        finally:
            aclose = getattr(chunks, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _fail(self, record: BackupRecord, site: RegionSite, uploaded: bool,
                    error: BaseException, now: datetime, started: float) -> BackupRecord:
        message = describe_error(error)
        if uploaded:
            try:
                await site.blob_store.delete(record.artifact_key)
            except Exception as cleanup_error:
                logger.warning("partial_artifact_cleanup_failed", key=record.artifact_key,
                               region=site.name, error=str(cleanup_error))

        elapsed = time.monotonic() - started
        record = record.finalize_failed(now + timedelta(seconds=elapsed), message)
        await self.repository.put_record(record)

        backup_runs_total.labels(workload=record.workload_id, region=site.name, status="failed").inc()
        logger.error("backup_failed", workload_id=record.workload_id, sequence=record.sequence,
                     region=site.name, error=message)
        await self.events.emit(
            EventSeverity.ERROR,
            f"Backup {record.sequence} of {record.workload_id} failed",
            {"workload_id": record.workload_id, "sequence": record.sequence,
             "region": site.name, "error": message},
        )
        return record
