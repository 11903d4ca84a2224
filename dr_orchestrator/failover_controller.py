"""
Failover/failback controller
The persisted DrState is the single source of truth for which region is
authoritative. Every transition is written before its first side effect so
an interrupted promotion or failback resumes from its last persisted step.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, List, Optional

from .contracts import EventSink
from .error_models import (
    FailbackFailedError, LeaseHeldError, OperationTimeoutError, PolicyViolationError,
    PromotionFailedError, ReplicationIncompleteError, StateMachineViolationError,
    WorkloadNotFoundError,
)
from .logging_adapter import get_safe_logger
from .metrics import dr_halted, dr_role, dr_transitions_total
from .models import (
    BackupStatus, DrRole, DrState, EventSeverity, HealthState, HealthVerdict, WorkloadSpec,
)
from .replication_relay import ReplicationRelay
from .repository import StateRepository
from .restore_executor import RestoreExecutor
from .sites import RegionSite, SiteDirectory
from .snapshot_executor import SnapshotExecutor

logger = get_safe_logger("dr_orchestrator.failover_controller")

# Allowed role transitions
TRANSITIONS: Dict[DrRole, tuple] = {
    DrRole.PRIMARY_ACTIVE: (DrRole.PROMOTING,),
    DrRole.STANDBY_PASSIVE: (DrRole.PROMOTING,),
    DrRole.PROMOTING: (DrRole.PROMOTED, DrRole.PRIMARY_ACTIVE),
    DrRole.PROMOTED: (DrRole.DEMOTING,),
    DrRole.DEMOTING: (DrRole.FAILBACK_PENDING, DrRole.PROMOTED),
    DrRole.FAILBACK_PENDING: (DrRole.PRIMARY_ACTIVE, DrRole.PROMOTED),
}

IN_FLIGHT_ROLES = (DrRole.PROMOTING, DrRole.DEMOTING, DrRole.FAILBACK_PENDING)

AUTOMATION_ACTOR = "health-monitor"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class FailoverConfig:
    auto_failover_enabled: bool = False
    failover_grace_seconds: float = 300.0
    ready_timeout_seconds: float = 600.0
    ready_poll_seconds: float = 5.0
    transition_history_size: int = 50
    final_backup_on_failback: bool = True

    @classmethod
    def from_settings(cls, settings) -> "FailoverConfig":
        return cls(
            auto_failover_enabled=settings.auto_failover_enabled,
            failover_grace_seconds=settings.failover_grace_seconds,
            ready_timeout_seconds=settings.ready_timeout_seconds,
            ready_poll_seconds=settings.ready_poll_seconds,
            transition_history_size=settings.transition_history_size,
            final_backup_on_failback=settings.final_backup_on_failback,
        )


class FailoverController:
    """
    Globally serialized DR state machine.

    Commands are split into ``begin_*`` (validate and write-ahead persist,
    synchronous rejection) and ``run_*`` (side effects). A command issued
    while any transition is in flight is rejected, never queued.
    """

    def __init__(
        self,
        repository: StateRepository,
        sites: SiteDirectory,
        restore_executor: RestoreExecutor,
        relay: ReplicationRelay,
        snapshot_executor: SnapshotExecutor,
        events: EventSink,
        config: Optional[FailoverConfig] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.repository = repository
        self.sites = sites
        self.restore_executor = restore_executor
        self.relay = relay
        self.snapshot_executor = snapshot_executor
        self.events = events
        self.config = config or FailoverConfig()
        self.clock = clock
        self.sleep = sleep
        self._transition_lock = asyncio.Lock()
        self._outage_alerted = False

    # State helpers

    async def get_state(self) -> DrState:
        return await self.repository.load_dr_state()

    @property
    def transition_in_flight(self) -> bool:
        return self._transition_lock.locked()

    async def _claim(self, command: str) -> None:
        """Take the global transition lock without waiting."""
        if self._transition_lock.locked():
            state = await self.repository.load_dr_state()
            raise StateMachineViolationError(
                command, state.role.value,
                message=f"{command} rejected: a DR transition is already in flight",
            )
        await self._transition_lock.acquire()

    def _release(self) -> None:
        if self._transition_lock.locked():
            self._transition_lock.release()

    async def _transition(self, state: DrState, to_role: DrRole, reason: str, actor: str,
                          **changes) -> DrState:
        if to_role not in TRANSITIONS.get(state.role, ()):
            raise StateMachineViolationError(
                f"transition_to_{to_role.value}", state.role.value,
                message=f"Transition {state.role.value} -> {to_role.value} is not allowed",
            )
        new_state = state.with_transition(
            to_role, self.clock(), reason, actor, self.config.transition_history_size
        )
        if changes:
            new_state = new_state.model_copy(update=changes)
        await self._persist(new_state)
        dr_transitions_total.labels(from_role=state.role.value, to_role=to_role.value).inc()
        logger.info("dr_transition", from_role=state.role.value, to_role=to_role.value,
                    actor=actor, reason=reason)
        return new_state

    async def _persist(self, state: DrState) -> None:
        await self.repository.save_dr_state(state)
        export_state_metrics(state)

    async def _specs(self, workload_ids: List[str]) -> List[WorkloadSpec]:
        specs = []
        for workload_id in workload_ids:
            spec = await self.repository.get_workload(workload_id)
            if spec is None:
                raise WorkloadNotFoundError(workload_id)
            specs.append(spec)
        return specs

    async def _materialization_plan(self, region: str) -> Dict[str, int]:
        """
        Latest Succeeded sequence at or below ``region``'s cursor per workload.
        Rejects when any workload has nothing verified there.
        """
        plan: Dict[str, int] = {}
        missing = []
        for spec in await self.repository.list_workloads():
            cursor = (await self.repository.get_cursor(spec.workload_id, region)).sequence
            candidates = [
                r.sequence for r in await self.repository.succeeded_records(spec.workload_id)
                if r.sequence <= cursor
            ]
            if candidates:
                plan[spec.workload_id] = max(candidates)
            else:
                missing.append(spec.workload_id)
        if missing:
            raise PolicyViolationError(
                f"No verified backup in {region} for: {', '.join(sorted(missing))}",
                code="NO_VERIFIED_DATA",
                details={"region": region, "workloads": sorted(missing)},
            )
        return plan

    async def _wait_ready(self, site: RegionSite, specs: List[WorkloadSpec]) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.ready_timeout_seconds
        pending = list(specs)
        while True:
            pending = [spec for spec in pending if not await site.handle(spec).is_ready()]
            if not pending:
                return
            if loop.time() >= deadline:
                raise OperationTimeoutError(
                    f"wait_ready:{site.name}", self.config.ready_timeout_seconds,
                    details={"not_ready": [spec.workload_id for spec in pending]},
                )
            await self.sleep(self.config.ready_poll_seconds)

    async def _scale_down_best_effort(self, site: RegionSite, specs: List[WorkloadSpec]) -> None:
        for spec in specs:
            try:
                await site.handle(spec).scale(0)
            except Exception as e:
                logger.error("best_effort_scale_down_failed", workload_id=spec.workload_id,
                             region=site.name, error=str(e))

    # Automatic evaluation

    async def evaluate(self, verdict: HealthVerdict, now: datetime) -> bool:
        """
        React to a primary verdict. Returns True when an automatic promotion
        ran to completion.
        """
        if verdict.state != HealthState.DOWN:
            self._outage_alerted = False
            return False

        state = await self.repository.load_dr_state()
        if state.role not in (DrRole.PRIMARY_ACTIVE, DrRole.STANDBY_PASSIVE):
            return False
        down_since = verdict.last_transition_time or now
        if now - down_since < timedelta(seconds=self.config.failover_grace_seconds):
            return False

        if not self.config.auto_failover_enabled or state.halted:
            if not self._outage_alerted:
                self._outage_alerted = True
                reason = "automation halted" if state.halted else "automatic failover disabled"
                logger.critical("manual_promotion_required", region=verdict.region, reason=reason,
                                down_since=down_since.isoformat())
                await self.events.emit(
                    EventSeverity.CRITICAL,
                    f"Region {verdict.region} is down; manual promotion required",
                    {"region": verdict.region, "reason": reason, "down_since": down_since.isoformat()},
                )
            return False

        if self.transition_in_flight:
            return False
        try:
            await self.begin_promotion(AUTOMATION_ACTOR, f"region {verdict.region} down since {down_since.isoformat()}")
        except (PolicyViolationError, StateMachineViolationError) as e:
            if not self._outage_alerted:
                self._outage_alerted = True
                logger.critical("automatic_promotion_rejected", code=e.code, error=e.message)
                await self.events.emit(
                    EventSeverity.CRITICAL,
                    f"Automatic promotion rejected: {e.message}",
                    {"code": e.code, **e.details},
                )
            return False
        try:
            await self.run_promotion()
        except PromotionFailedError:
            return False
        return True

    # Promotion

    async def begin_promotion(self, actor: str, reason: str) -> DrState:
        await self._claim("promote")
        try:
            state = await self.repository.load_dr_state()
            if state.role not in (DrRole.PRIMARY_ACTIVE, DrRole.STANDBY_PASSIVE):
                raise StateMachineViolationError("promote", state.role.value)

            standby = self.sites.standby
            readiness = await self.repository.get_health(standby.name)
            if readiness.state == HealthState.DOWN:
                raise PolicyViolationError(
                    f"Standby region {standby.name} is down",
                    code="STANDBY_NOT_READY",
                    details={"region": standby.name, "last_error": readiness.last_error},
                )
            plan = await self._materialization_plan(standby.name)

            state = await self._transition(state, DrRole.PROMOTING, reason, actor,
                                           plan=plan, completed=[])
        except BaseException:
            self._release()
            raise

        logger.warning("promotion_started", actor=actor, reason=reason, plan=plan)
        await self.events.emit(
            EventSeverity.CRITICAL,
            f"Promotion of {self.sites.standby.name} started",
            {"actor": actor, "reason": reason, "plan": plan},
        )
        return state

    async def run_promotion(self) -> DrState:
        """Side effects of a persisted promotion. The caller must hold the transition lock."""
        standby = self.sites.standby
        specs: List[WorkloadSpec] = []
        state = await self.repository.load_dr_state()
        if state.role != DrRole.PROMOTING:
            self._release()
            raise StateMachineViolationError("run_promotion", state.role.value)
        try:
            specs = await self._specs(list(state.plan))

            for spec in specs:
                workload_id = spec.workload_id
                if workload_id in state.completed:
                    continue
                record = await self.repository.get_record(workload_id, state.plan[workload_id])
                if record is None or record.status != BackupStatus.SUCCEEDED:
                    raise PromotionFailedError(
                        f"Planned backup {state.plan[workload_id]} of {workload_id} is no longer usable",
                        details={"workload_id": workload_id, "sequence": state.plan[workload_id]},
                    )
                await self.restore_executor.restore(spec, record, standby)
                state = state.model_copy(update={"completed": state.completed + [workload_id]})
                await self._persist(state)

            for spec in specs:
                await standby.handle(spec).scale(spec.replicas)
            await self._wait_ready(standby, specs)

            # Fence the old primary so a reachable one stops serving writes
            primary = self.sites.primary
            logger.warning("fencing_primary", region=primary.name, workloads=[s.workload_id for s in specs])
            await self._scale_down_best_effort(primary, specs)

            state = await self._transition(state, DrRole.PROMOTED, "standby workloads ready",
                                           state.history[-1].actor if state.history else AUTOMATION_ACTOR,
                                           plan={}, completed=[], degraded=False)
        except Exception as e:
            await self._fail_promotion(state, specs, e)
        finally:
            self._release()

        logger.warning("promotion_completed", region=standby.name)
        await self.events.emit(EventSeverity.CRITICAL, f"Region {standby.name} promoted",
                               {"region": standby.name})
        return state

    async def _fail_promotion(self, state: DrState, specs: List[WorkloadSpec], error: Exception) -> None:
        message = getattr(error, "message", str(error))
        await self._scale_down_best_effort(self.sites.standby, specs)
        if state.role == DrRole.PROMOTING:
            await self._transition(state, DrRole.PRIMARY_ACTIVE, f"promotion failed: {message}", "controller",
                                   plan={}, completed=[], degraded=True, halted=True,
                                   halt_reason=f"promotion failed: {message}")
        logger.critical("promotion_failed", error=message, error_type=type(error).__name__)
        await self.events.emit(
            EventSeverity.CRITICAL,
            "Promotion failed; automated transitions halted until an operator intervenes",
            {"error": message, "error_type": type(error).__name__},
        )
        raise PromotionFailedError(f"Promotion failed: {message}",
                                   details={"error_type": type(error).__name__}) from error

    # Failback

    async def begin_failback(self, actor: str, reason: str) -> DrState:
        await self._claim("failback")
        try:
            state = await self.repository.load_dr_state()
            if state.role != DrRole.PROMOTED:
                raise StateMachineViolationError("failback", state.role.value)
            primary = self.sites.primary
            verdict = await self.repository.get_health(primary.name)
            if verdict.state != HealthState.HEALTHY:
                raise PolicyViolationError(
                    f"Primary region {primary.name} is {verdict.state.value}, failback needs it healthy",
                    code="PRIMARY_NOT_HEALTHY",
                    details={"region": primary.name, "state": verdict.state.value},
                )
            state = await self._transition(state, DrRole.DEMOTING, reason, actor, plan={}, completed=[])
        except BaseException:
            self._release()
            raise

        logger.warning("failback_started", actor=actor, reason=reason)
        await self.events.emit(EventSeverity.WARNING, f"Failback to {self.sites.primary.name} started",
                               {"actor": actor, "reason": reason})
        return state

    async def run_failback(self) -> DrState:
        """Side effects of a persisted failback. The caller must hold the transition lock."""
        primary, standby = self.sites.primary, self.sites.standby
        specs: List[WorkloadSpec] = []
        state = await self.repository.load_dr_state()
        if state.role not in (DrRole.DEMOTING, DrRole.FAILBACK_PENDING):
            self._release()
            raise StateMachineViolationError("run_failback", state.role.value)
        try:
            specs = await self.repository.list_workloads()
            if state.role == DrRole.DEMOTING:
                if self.config.final_backup_on_failback:
                    for spec in specs:
                        await self._final_backup(spec, standby)
                for spec in specs:
                    await self._replicate_back(spec, standby, primary)
                plan = await self._materialization_plan(primary.name)
                state = await self._transition(state, DrRole.FAILBACK_PENDING, "promoted-era backups replicated",
                                               "controller", plan=plan, completed=[])

            specs = await self._specs(list(state.plan))

            for spec in specs:
                workload_id = spec.workload_id
                if workload_id in state.completed:
                    continue
                record = await self.repository.get_record(workload_id, state.plan[workload_id])
                if record is None or record.status != BackupStatus.SUCCEEDED:
                    raise FailbackFailedError(
                        f"Planned backup {state.plan[workload_id]} of {workload_id} is no longer usable",
                        details={"workload_id": workload_id, "sequence": state.plan[workload_id]},
                    )
                await self.restore_executor.restore(spec, record, primary)
                state = state.model_copy(update={"completed": state.completed + [workload_id]})
                await self._persist(state)

            for spec in specs:
                await primary.handle(spec).scale(spec.replicas)
            await self._wait_ready(primary, specs)
            for spec in specs:
                await standby.handle(spec).scale(0)

            state = await self._transition(state, DrRole.PRIMARY_ACTIVE, "primary workloads ready",
                                           "controller", plan={}, completed=[], degraded=False)
        except Exception as e:
            await self._fail_failback(state, specs, e)
        finally:
            self._release()

        logger.warning("failback_completed", region=primary.name)
        await self.events.emit(EventSeverity.WARNING, f"Failback to {primary.name} completed",
                               {"region": primary.name})
        return state

    async def _final_backup(self, spec: WorkloadSpec, site: RegionSite) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.ready_timeout_seconds
        while True:
            try:
                record = await self.snapshot_executor.run_backup(spec, site, self.clock())
                break
            except LeaseHeldError:
                if loop.time() >= deadline:
                    raise
                await self.sleep(self.config.ready_poll_seconds)
        if record.status != BackupStatus.SUCCEEDED:
            raise FailbackFailedError(
                f"Final backup of {spec.workload_id} failed: {record.error_message}",
                details={"workload_id": spec.workload_id, "sequence": record.sequence},
            )

    async def _replicate_back(self, spec: WorkloadSpec, source: RegionSite, target: RegionSite) -> None:
        workload_id = spec.workload_id
        result = await self.relay.sync(workload_id, self.clock(), source=source, target=target)
        succeeded = await self.repository.succeeded_records(workload_id)
        required = max((r.sequence for r in succeeded), default=0)
        if result.cursor < required:
            raise ReplicationIncompleteError(workload_id, result.cursor, required)

    async def _fail_failback(self, state: DrState, specs: List[WorkloadSpec], error: Exception) -> None:
        message = getattr(error, "message", str(error))
        await self._scale_down_best_effort(self.sites.primary, specs)
        if state.role in (DrRole.DEMOTING, DrRole.FAILBACK_PENDING):
            await self._transition(state, DrRole.PROMOTED, f"failback failed: {message}", "controller",
                                   plan={}, completed=[], degraded=True, halted=True,
                                   halt_reason=f"failback failed: {message}")
        logger.critical("failback_failed", error=message, error_type=type(error).__name__)
        await self.events.emit(
            EventSeverity.CRITICAL,
            "Failback failed; automated transitions halted until an operator intervenes",
            {"error": message, "error_type": type(error).__name__},
        )
        raise FailbackFailedError(f"Failback failed: {message}",
                                  details={"error_type": type(error).__name__}) from error

    # Recovery and operator acknowledgement

    async def resume(self) -> DrState:
        """Continue a transition interrupted by a crash or restart."""
        state = await self.repository.load_dr_state()
        export_state_metrics(state)
        if state.role not in IN_FLIGHT_ROLES:
            return state

        await self._claim("resume")
        logger.warning("resuming_interrupted_transition", role=state.role.value,
                       completed=state.completed, plan=state.plan)
        await self.events.emit(EventSeverity.WARNING,
                               f"Resuming interrupted DR transition from {state.role.value}",
                               {"role": state.role.value, "completed": state.completed})
        if state.role == DrRole.PROMOTING:
            return await self.run_promotion()
        return await self.run_failback()

    async def clear_halt(self, actor: str) -> DrState:
        state = await self.repository.load_dr_state()
        if not state.halted:
            return state
        state = state.model_copy(update={"halted": False, "halt_reason": None})
        await self._persist(state)
        self._outage_alerted = False
        logger.warning("automation_halt_cleared", actor=actor)
        await self.events.emit(EventSeverity.INFO, "Automated DR transitions re-enabled", {"actor": actor})
        return state


def export_state_metrics(state: DrState) -> None:
    for role in DrRole:
        dr_role.labels(role=role.value).set(1 if role == state.role else 0)
    dr_halted.set(1 if state.halted else 0)
