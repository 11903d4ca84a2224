"""
Backup scheduler
Starts snapshot runs on each workload's cadence against the active region,
with capped exponential backoff after failures.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from .error_models import LeaseHeldError, StateMachineViolationError, WorkloadNotFoundError
from .lease_manager import LeaseManager
from .logging_adapter import get_safe_logger
from .models import BackupRecord, BackupStatus, DrRole, ScheduleState, WorkloadSpec
from .repository import StateRepository
from .sites import RegionSite, SiteDirectory
from .snapshot_executor import SnapshotExecutor

logger = get_safe_logger("dr_orchestrator.scheduler")

BACKUP_ROLES = (DrRole.PRIMARY_ACTIVE, DrRole.PROMOTED)


@dataclass
class SchedulerConfig:
    max_concurrent_backups: int = 4
    retry_base_seconds: float = 60.0
    retry_ceiling_seconds: float = 3600.0

    @classmethod
    def from_settings(cls, settings) -> "SchedulerConfig":
        return cls(
            max_concurrent_backups=settings.max_concurrent_backups,
            retry_base_seconds=settings.retry_base_seconds,
            retry_ceiling_seconds=settings.retry_ceiling_seconds,
        )


class BackupScheduler:
    """
    Evaluates every registered workload on each tick. A workload already in
    flight in this process is skipped, as is one whose lease is held
    elsewhere; the lease itself is the cross-process guard.
    """

    def __init__(
        self,
        repository: StateRepository,
        lease_manager: LeaseManager,
        executor: SnapshotExecutor,
        sites: SiteDirectory,
        config: Optional[SchedulerConfig] = None
    ):
        self.repository = repository
        self.lease_manager = lease_manager
        self.executor = executor
        self.sites = sites
        self.config = config or SchedulerConfig()
        self._semaphore = asyncio.Semaphore(self.config.max_concurrent_backups)
        self._in_flight: Dict[str, asyncio.Task] = {}

    def backoff_delay(self, consecutive_failures: int) -> timedelta:
        if consecutive_failures <= 0:
            return timedelta(0)
        delay = self.config.retry_base_seconds * (2 ** (consecutive_failures - 1))
        return timedelta(seconds=min(delay, self.config.retry_ceiling_seconds))

    def is_due(self, spec: WorkloadSpec, schedule: ScheduleState, now: datetime) -> bool:
        if schedule.consecutive_failures > 0 and schedule.next_retry_at is not None:
            return now >= schedule.next_retry_at
        if schedule.last_run_start is None:
            return True
        return now - schedule.last_run_start >= spec.cadence

    async def _active_site(self) -> Optional[RegionSite]:
        state = await self.repository.load_dr_state()
        if state.role not in BACKUP_ROLES:
            return None
        active, _ = self.sites.active_passive(state.role)
        return active

    async def tick(self, now: datetime) -> List[str]:
        """Start every due backup. Returns the workload ids started."""
        site = await self._active_site()
        if site is None:
            logger.debug("scheduler_paused_during_transition")
            return []

        started = []
        for spec in await self.repository.list_workloads():
            workload_id = spec.workload_id
            if workload_id in self._in_flight:
                continue
            schedule = await self.repository.get_schedule(workload_id)
            if not self.is_due(spec, schedule, now):
                continue
            if await self.lease_manager.current(workload_id, now) is not None:
                logger.debug("backup_skipped_lease_held", workload_id=workload_id)
                continue
            self._start(spec, site, schedule, now)
            started.append(workload_id)

        if started:
            logger.info("scheduler_tick_started_backups", workloads=started, region=site.name)
        return started

    async def trigger(self, workload_id: str, now: datetime) -> asyncio.Task:
        """Start a backup immediately, regardless of cadence."""
        spec = await self.repository.get_workload(workload_id)
        if spec is None:
            raise WorkloadNotFoundError(workload_id)
        site = await self._active_site()
        if site is None:
            state = await self.repository.load_dr_state()
            raise StateMachineViolationError("trigger_backup", state.role.value)
        if workload_id in self._in_flight:
            raise LeaseHeldError(workload_id, self.lease_manager.holder)
        lease = await self.lease_manager.current(workload_id, now)
        if lease is not None:
            raise LeaseHeldError(workload_id, lease.holder, lease.expires_at)
        schedule = await self.repository.get_schedule(workload_id)
        return self._start(spec, site, schedule, now)

    def _start(self, spec: WorkloadSpec, site: RegionSite, schedule: ScheduleState,
               now: datetime) -> asyncio.Task:
        task = asyncio.create_task(self._run(spec, site, schedule, now))
        self._in_flight[spec.workload_id] = task
        task.add_done_callback(lambda _: self._in_flight.pop(spec.workload_id, None))
        return task

    async def _run(self, spec: WorkloadSpec, site: RegionSite, schedule: ScheduleState,
                   now: datetime) -> Optional[BackupRecord]:
        workload_id = spec.workload_id
        async with self._semaphore:
            await self.repository.put_schedule(schedule.model_copy(update={"last_run_start": now}))
            try:
                record = await self.executor.run_backup(spec, site, now)
            except LeaseHeldError:
                logger.info("backup_skipped_lease_held", workload_id=workload_id)
                return None
            except Exception as e:
                # No record was created; count it like a failed run
                logger.error("backup_run_aborted", workload_id=workload_id, error=str(e),
                             error_type=type(e).__name__)
                await self._record_outcome(workload_id, now, BackupStatus.FAILED)
                return None

            await self._record_outcome(workload_id, now, record.status)
            return record

    async def _record_outcome(self, workload_id: str, now: datetime, status: BackupStatus) -> None:
        schedule = await self.repository.get_schedule(workload_id)
        if status == BackupStatus.SUCCEEDED:
            update = {"last_outcome": status, "consecutive_failures": 0, "next_retry_at": None}
        else:
            failures = schedule.consecutive_failures + 1
            retry_at = now + self.backoff_delay(failures)
            update = {"last_outcome": status, "consecutive_failures": failures, "next_retry_at": retry_at}
            logger.warning("backup_retry_scheduled", workload_id=workload_id,
                           consecutive_failures=failures, next_retry_at=retry_at.isoformat())
        await self.repository.put_schedule(schedule.model_copy(update=update))

    def in_flight(self) -> List[str]:
        return sorted(self._in_flight)

    async def wait_idle(self) -> None:
        """Wait for every in-flight backup to finish."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight.values()), return_exceptions=True)

    async def cancel_all(self) -> None:
        tasks = list(self._in_flight.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
