"""
DR orchestrator runtime
Wires every component from settings, runs the control loops and exposes
the operator commands.
"""

import asyncio
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from .adapters.command_executor import build_executors
from .adapters.event_sinks import CompositeEventSink, LoggingEventSink, WebhookEventSink
from .adapters.kubernetes_handle import (
    StaticWorkloadHandle, kubernetes_handle_factory, load_api_client,
)
from .adapters.probes import HttpRegionProbe, StaticRegionProbe
from .artifacts import ArtifactEncoder, KeyProvider
from .concurrency import WorkloadLocks
from .config import OrchestratorSettings
from .contracts import EventSink, RegionProbe
from .error_models import (
    ErrorCategory, ErrorDetail, ErrorSeverity, LeaseHeldError, OperationTimeoutError,
    OrchestratorError, PolicyViolationError, StateMachineViolationError, ValidationError,
    WorkloadNotFoundError,
)
from .failover_controller import FailoverConfig, FailoverController, IN_FLIGHT_ROLES, utc_now
from .health_monitor import HealthConfig, HealthMonitor
from .lease_manager import LeaseManager
from .logging_adapter import get_safe_logger
from .models import BackupStatus, DrRole, EventSeverity, Lease, WorkloadSpec
from .replication_relay import RelayConfig, ReplicationRelay
from .repository import StateRepository
from .resilience import RetryConfig
from .restore_executor import RestoreConfig, RestoreExecutor
from .retention_pruner import RetentionPruner
from .scheduler import BACKUP_ROLES, BackupScheduler, SchedulerConfig
from .sites import RegionSite, SiteDirectory
from .snapshot_executor import SnapshotConfig, SnapshotExecutor
from .state_store import StateStore, create_state_store
from .storage.blob_store import RetryingBlobStore, create_blob_store

logger = get_safe_logger("dr_orchestrator.orchestrator")


class CommandOutcome(str, Enum):
    """Operator command outcomes"""
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    FATAL = "fatal"


class CommandResult(BaseModel):
    """Result of an operator command"""
    command: str
    outcome: CommandOutcome
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[ErrorDetail] = None


def classify(error: Exception) -> CommandOutcome:
    if isinstance(error, OrchestratorError) and error.category != ErrorCategory.FATAL:
        return CommandOutcome.REJECTED
    return CommandOutcome.FATAL


def error_detail(error: Exception) -> ErrorDetail:
    if isinstance(error, OrchestratorError):
        return error.to_error_detail()
    return OrchestratorError(
        message=f"Internal error: {error}",
        code="INTERNAL_ERROR",
        category=ErrorCategory.FATAL,
        severity=ErrorSeverity.CRITICAL,
        details={"error_type": type(error).__name__},
    ).to_error_detail()


class Orchestrator:
    """
    One orchestrator per deployment. Control loops are independent tasks;
    operator commands validate synchronously and run their side effects in
    the background.
    """

    def __init__(
        self,
        settings: OrchestratorSettings,
        repository: StateRepository,
        sites: SiteDirectory,
        events: EventSink,
        primary_probe: RegionProbe,
        standby_probe: RegionProbe,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.settings = settings
        self.repository = repository
        self.sites = sites
        self.events = events
        self.primary_probe = primary_probe
        self.standby_probe = standby_probe
        self.clock = clock
        self.sleep = sleep

        self.locks = WorkloadLocks()
        self.lease_manager = LeaseManager(repository, settings.instance_id, settings.lease_ttl_seconds)
        self.encoder = ArtifactEncoder(
            KeyProvider(settings.key_ring(), settings.master_key_id),
            compression_level=settings.compression_level,
        )
        self.snapshot_executor = SnapshotExecutor(
            repository, self.lease_manager, self.encoder, events, SnapshotConfig.from_settings(settings)
        )
        self.restore_executor = RestoreExecutor(self.encoder, RestoreConfig.from_settings(settings))
        self.scheduler = BackupScheduler(
            repository, self.lease_manager, self.snapshot_executor, sites,
            SchedulerConfig.from_settings(settings)
        )
        self.pruner = RetentionPruner(repository, sites, self.locks, events)
        self.relay = ReplicationRelay(
            repository, sites, self.locks, events, self.lease_manager, RelayConfig.from_settings(settings)
        )
        self.health = HealthMonitor(
            repository, primary_probe, standby_probe, events, HealthConfig.from_settings(settings)
        )
        self.controller = FailoverController(
            repository, sites, self.restore_executor, self.relay, self.snapshot_executor, events,
            FailoverConfig.from_settings(settings), clock=clock, sleep=sleep
        )

        self._loops: List[asyncio.Task] = []
        self._background: Set[asyncio.Task] = set()
        self._closers: List[Callable[[], Awaitable[None]]] = []

    @classmethod
    def from_settings(cls, settings: OrchestratorSettings) -> "Orchestrator":
        store = create_state_store(settings.state_backend.value, settings.redis_url)
        repository = StateRepository(store, prefix=settings.state_key_prefix)
        sites = SiteDirectory(
            build_site(settings, settings.primary_region, settings.primary_bucket,
                       settings.primary_endpoint_url, settings.primary_kube_context),
            build_site(settings, settings.standby_region, settings.standby_bucket,
                       settings.standby_endpoint_url, settings.standby_kube_context),
        )

        sinks: List[EventSink] = [LoggingEventSink()]
        if settings.webhook_url:
            sinks.append(WebhookEventSink(settings.webhook_url, settings.instance_id,
                                          timeout=settings.webhook_timeout_seconds))
        events = CompositeEventSink(sinks)

        primary_probe = build_probe(settings.primary_region, settings.primary_health_url,
                                    settings.probe_timeout_seconds)
        standby_probe = build_probe(settings.standby_region, settings.standby_health_url,
                                    settings.probe_timeout_seconds)

        orchestrator = cls(settings, repository, sites, events, primary_probe, standby_probe)
        orchestrator._closers.append(store.close)
        orchestrator._closers.append(events.aclose)
        for probe in (primary_probe, standby_probe):
            if isinstance(probe, HttpRegionProbe):
                orchestrator._closers.append(probe.aclose)
        return orchestrator

    # Lifecycle

    async def start(self) -> None:
        """Resume an interrupted transition, then start the control loops."""
        try:
            state = await self.controller.resume()
            logger.info("orchestrator_state_loaded", role=state.role.value, halted=state.halted)
        except OrchestratorError as e:
            logger.critical("transition_resume_failed", code=e.code, error=e.message)

        settings = self.settings
        self._loops = [
            asyncio.create_task(self._run_loop("scheduler", settings.scheduler_tick_seconds, self.scheduler_cycle)),
            asyncio.create_task(self._run_loop("replication", settings.replication_interval_seconds,
                                               self.replication_cycle)),
            asyncio.create_task(self._run_loop("prune", settings.prune_interval_seconds, self.prune_cycle)),
            asyncio.create_task(self._run_loop("health", settings.probe_interval_seconds, self.health_cycle)),
        ]
        logger.info("orchestrator_started", instance_id=settings.instance_id,
                    primary_region=self.sites.primary.name, standby_region=self.sites.standby.name)

    async def stop(self) -> None:
        for task in self._loops + list(self._background):
            task.cancel()
        await asyncio.gather(*self._loops, *self._background, return_exceptions=True)
        self._loops = []
        await self.scheduler.cancel_all()
        for close in self._closers:
            try:
                await close()
            except Exception as e:
                logger.warning("resource_close_failed", error=str(e))
        logger.info("orchestrator_stopped")

    async def _run_loop(self, name: str, interval: float,
                        cycle: Callable[[datetime], Awaitable[Any]]) -> None:
        logger.info("control_loop_started", loop=name, interval_seconds=interval)
        while True:
            try:
                await cycle(self.clock())
            except asyncio.CancelledError:
                logger.info("control_loop_stopped", loop=name)
                raise
            except Exception as e:
                logger.error("control_loop_cycle_failed", loop=name, error=str(e),
                             error_type=type(e).__name__)
            await self.sleep(interval)

    # Control loop cycles

    async def scheduler_cycle(self, now: datetime) -> List[str]:
        return await self.scheduler.tick(now)

    async def replication_cycle(self, now: datetime) -> None:
        for spec in await self.repository.list_workloads():
            try:
                await self.relay.sync(spec.workload_id, now)
            except Exception as e:
                logger.error("replication_cycle_failed", workload_id=spec.workload_id, error=str(e))

    async def prune_cycle(self, now: datetime) -> None:
        for spec in await self.repository.list_workloads():
            try:
                await self.pruner.prune(spec.workload_id, now)
            except Exception as e:
                logger.error("prune_cycle_failed", workload_id=spec.workload_id, error=str(e))

    async def health_cycle(self, now: datetime) -> None:
        verdict = await self.health.probe(now)
        await self.health.probe_standby(now)
        await self.controller.evaluate(verdict, now)

    # Operator commands

    async def _execute(self, command: str, action: Callable[[], Awaitable[Dict[str, Any]]],
                       message: str) -> CommandResult:
        try:
            data = await action()
        except Exception as e:
            outcome = classify(e)
            detail = error_detail(e)
            log = logger.error if outcome == CommandOutcome.FATAL else logger.warning
            log("operator_command_failed", command=command, outcome=outcome.value,
                code=detail.code, error=detail.message)
            return CommandResult(command=command, outcome=outcome, message=detail.message, error=detail)
        logger.info("operator_command_accepted", command=command, **{k: v for k, v in data.items()
                                                                      if isinstance(v, (str, int))})
        return CommandResult(command=command, outcome=CommandOutcome.ACCEPTED, message=message, data=data)

    def _spawn(self, name: str, coro: Awaitable[Any]) -> asyncio.Task:
        async def runner():
            try:
                await coro
            except Exception as e:
                logger.error("background_command_failed", command=name, error=str(e),
                             error_type=type(e).__name__)

        task = asyncio.create_task(runner())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def wait_background(self) -> None:
        """Wait for every background command and in-flight backup to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        await self.scheduler.wait_idle()

    async def _require_steady(self, command: str) -> DrRole:
        state = await self.repository.load_dr_state()
        if state.role in IN_FLIGHT_ROLES or self.controller.transition_in_flight:
            raise StateMachineViolationError(command, state.role.value)
        return state.role

    async def register_workload(self, spec: Any) -> CommandResult:
        async def action():
            try:
                workload = spec if isinstance(spec, WorkloadSpec) else WorkloadSpec.model_validate(spec)
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid workload spec: {e.error_count()} error(s)",
                                      details={"errors": e.errors(include_url=False, include_context=False)})
            await self._require_steady("register_workload")
            for site in self.sites.all():
                site.executor(workload.dump_executor)
                site.executor(workload.restore_executor)
            existing = await self.repository.get_workload(workload.workload_id)
            await self.repository.put_workload(workload)
            logger.info("workload_registered", workload_id=workload.workload_id,
                        reregistered=existing is not None, cadence_seconds=workload.cadence_seconds)
            return {"workload_id": workload.workload_id, "reregistered": existing is not None}

        return await self._execute("register_workload", action, "Workload registered")

    async def trigger_backup(self, workload_id: str) -> CommandResult:
        async def action():
            await self.scheduler.trigger(workload_id, self.clock())
            return {"workload_id": workload_id}

        return await self._execute("trigger_backup", action, "Backup started")

    async def trigger_restore(self, workload_id: str, sequence: int) -> CommandResult:
        async def action():
            role = await self._require_steady("trigger_restore")
            if role not in BACKUP_ROLES:
                raise StateMachineViolationError("trigger_restore", role.value)
            spec = await self.repository.get_workload(workload_id)
            if spec is None:
                raise WorkloadNotFoundError(workload_id)
            record = await self.repository.get_record(workload_id, sequence)
            if record is None:
                raise ValidationError(f"Backup {sequence} of {workload_id} does not exist",
                                      field="sequence", details={"workload_id": workload_id})
            if record.status != BackupStatus.SUCCEEDED:
                raise PolicyViolationError(
                    f"Backup {sequence} of {workload_id} is {record.status.value} and cannot be restored",
                    code="BACKUP_NOT_RESTORABLE",
                    details={"workload_id": workload_id, "sequence": sequence},
                )
            active, _ = self.sites.active_passive(role)
            if record.region != active.name:
                cursor = await self.repository.get_cursor(workload_id, active.name)
                if record.sequence > cursor.sequence:
                    raise PolicyViolationError(
                        f"Backup {sequence} of {workload_id} has not been replicated to {active.name}",
                        code="NOT_REPLICATED",
                        details={"workload_id": workload_id, "sequence": sequence,
                                 "region": active.name, "replicated_through": cursor.sequence},
                    )
            if workload_id in self.scheduler.in_flight():
                raise LeaseHeldError(workload_id, self.lease_manager.holder)
            lease = await self.lease_manager.acquire(workload_id, self.clock())
            self._spawn("trigger_restore", self._restore(spec, record, active, lease))
            return {"workload_id": workload_id, "sequence": sequence, "region": active.name}

        return await self._execute("trigger_restore", action, "Restore started")

    async def _restore(self, spec: WorkloadSpec, record, site: RegionSite, lease: Lease) -> None:
        # Holding the backup lease keeps the scheduler off the workload while it is rewritten
        try:
            async with self.locks.lock(spec.workload_id):
                try:
                    await self.restore_executor.restore(spec, record, site)
                except Exception as e:
                    await self.events.emit(
                        EventSeverity.ERROR,
                        f"Restore of {spec.workload_id} from backup {record.sequence} failed",
                        {"workload_id": spec.workload_id, "sequence": record.sequence,
                         "region": site.name, "error": str(e)},
                    )
                    raise
        finally:
            await self.lease_manager.release(lease)
        await self.events.emit(
            EventSeverity.INFO,
            f"Restore of {spec.workload_id} from backup {record.sequence} completed",
            {"workload_id": spec.workload_id, "sequence": record.sequence, "region": site.name},
        )

    async def promote(self, actor: str = "operator", reason: str = "operator request") -> CommandResult:
        async def action():
            state = await self.controller.begin_promotion(actor, reason)
            self._spawn("promote", self.controller.run_promotion())
            return {"role": state.role.value, "plan": state.plan}

        return await self._execute("promote", action, "Promotion started")

    async def failback(self, actor: str = "operator", reason: str = "operator request") -> CommandResult:
        async def action():
            state = await self.controller.begin_failback(actor, reason)
            self._spawn("failback", self.controller.run_failback())
            return {"role": state.role.value}

        return await self._execute("failback", action, "Failback started")

    async def clear_halt(self, actor: str = "operator") -> CommandResult:
        async def action():
            state = await self.controller.clear_halt(actor)
            return {"role": state.role.value, "halted": state.halted}

        return await self._execute("clear_halt", action, "Automated transitions re-enabled")

    async def get_status(self) -> Dict[str, Any]:
        now = self.clock()
        state = await self.repository.load_dr_state()
        workloads = []
        for spec in await self.repository.list_workloads():
            workload_id = spec.workload_id
            records = await self.repository.list_records(workload_id)
            succeeded = [r for r in records if r.status == BackupStatus.SUCCEEDED]
            cursors = {}
            for site in self.sites.all():
                cursor = await self.repository.get_cursor(workload_id, site.name)
                cursors[site.name] = cursor.sequence
            lease = await self.lease_manager.current(workload_id, now)
            schedule = await self.repository.get_schedule(workload_id)
            workloads.append({
                "workload_id": workload_id,
                "spec": spec.model_dump(mode="json"),
                "last_record": records[-1].model_dump(mode="json") if records else None,
                "last_succeeded": succeeded[-1].model_dump(mode="json") if succeeded else None,
                "replication_cursors": cursors,
                "lease": lease.model_dump(mode="json") if lease else None,
                "schedule": schedule.model_dump(mode="json"),
            })
        health = {}
        for site in self.sites.all():
            verdict = await self.repository.get_health(site.name)
            health[site.name] = verdict.model_dump(mode="json")
        return {
            "dr_state": state.model_dump(mode="json"),
            "transition_in_flight": self.controller.transition_in_flight,
            "health": health,
            "workloads": workloads,
        }


def build_site(settings: OrchestratorSettings, region: str, bucket: Optional[str],
               endpoint_url: Optional[str], kube_context: Optional[str]) -> RegionSite:
    raw_store = create_blob_store(
        settings.blob_backend.value, region,
        bucket=bucket, endpoint_url=endpoint_url, local_root=settings.local_root,
    )
    blob_store = RetryingBlobStore(
        raw_store,
        timeout=settings.store_timeout_seconds,
        retry_config=RetryConfig(
            max_attempts=settings.store_retry_attempts,
            base_delay=settings.store_retry_base_seconds,
            max_delay=settings.store_retry_max_seconds,
            retryable_exceptions=(ConnectionError, TimeoutError, OSError, OperationTimeoutError),
        ),
    )
    if settings.kubernetes_enabled:
        handle_factory = kubernetes_handle_factory(load_api_client(kube_context), settings.hook_timeout_seconds)
    else:
        handle_factory = StaticWorkloadHandle
    return RegionSite(
        name=region,
        blob_store=blob_store,
        handle_factory=handle_factory,
        executors=build_executors(settings.executors, region),
    )


def build_probe(region: str, url: Optional[str], timeout: float) -> RegionProbe:
    if url:
        return HttpRegionProbe(region, url, timeout=timeout)
    logger.warning("region_probe_not_configured", region=region)
    return StaticRegionProbe(region)
