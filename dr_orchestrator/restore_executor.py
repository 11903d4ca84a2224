"""
Restore executor: materializes a backup record into a region's workload
"""

import time
from dataclasses import dataclass
from typing import AsyncIterator, Iterator, Optional

from .artifacts import ArtifactEncoder, checksum
from .contracts import POST_RESTORE_HOOK, PRE_RESTORE_HOOK
from .error_models import ArtifactCorruptError, DataIntegrityError
from .hooks import run_hook
from .logging_adapter import get_safe_logger
from .metrics import restore_duration, restore_runs_total
from .models import BackupRecord, BackupStatus, WorkloadSpec
from .resilience import with_deadline
from .sites import RegionSite

logger = get_safe_logger("dr_orchestrator.restore_executor")


@dataclass
class RestoreConfig:
    restore_timeout_seconds: float = 3600.0
    hook_timeout_seconds: float = 60.0

    @classmethod
    def from_settings(cls, settings) -> "RestoreConfig":
        return cls(
            restore_timeout_seconds=settings.restore_timeout_seconds,
            hook_timeout_seconds=settings.hook_timeout_seconds,
        )


async def _stream(chunks: Iterator[bytes]) -> AsyncIterator[bytes]:
    for chunk in chunks:
        yield chunk


class RestoreExecutor:
    """Read-path twin of the snapshot executor"""

    def __init__(self, encoder: ArtifactEncoder, config: Optional[RestoreConfig] = None):
        self.encoder = encoder
        self.config = config or RestoreConfig()

    async def restore(self, spec: WorkloadSpec, record: BackupRecord, site: RegionSite) -> None:
        """
        Verify the artifact in ``site``'s store against the record, then feed
        the decrypted dump to the workload's restore executor.
        """
        workload_id = spec.workload_id
        if record.status != BackupStatus.SUCCEEDED:
            raise DataIntegrityError(
                f"Record {workload_id}#{record.sequence} is {record.status.value}, not restorable",
                details={"workload_id": workload_id, "sequence": record.sequence},
            )
        started = time.monotonic()
        logger.info("restore_started", workload_id=workload_id, sequence=record.sequence, region=site.name)
        try:
            data = await site.blob_store.get(record.artifact_key)
            actual = checksum(data)
            if actual != record.checksum:
                raise ArtifactCorruptError(record.artifact_key, record.checksum, actual, site.name)

            handle = site.handle(spec)
            executor = site.executor(spec.restore_executor)
            await run_hook(handle, PRE_RESTORE_HOOK, workload_id, self.config.hook_timeout_seconds)

            chunks = _stream(self.encoder.decode(workload_id, record.artifact_key, data,
                                                 record.encryption_key_id))
            try:
                await with_deadline(
                    executor.restore(spec, chunks),
                    self.config.restore_timeout_seconds,
                    f"restore:{workload_id}"
                )
            finally:
                await chunks.aclose()

            await run_hook(handle, POST_RESTORE_HOOK, workload_id, self.config.hook_timeout_seconds)
        except Exception as e:
            restore_runs_total.labels(workload=workload_id, region=site.name, status="failed").inc()
            logger.error("restore_failed", workload_id=workload_id, sequence=record.sequence,
                         region=site.name, error=str(e), error_type=type(e).__name__)
            raise

        restore_runs_total.labels(workload=workload_id, region=site.name, status="succeeded").inc()
        restore_duration.labels(workload=workload_id).observe(time.monotonic() - started)
        logger.info("restore_succeeded", workload_id=workload_id, sequence=record.sequence, region=site.name)
