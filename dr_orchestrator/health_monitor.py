"""
Health monitor
Rolling per-region verdicts with hysteresis: the first failure degrades, the
N-th consecutive failure marks the region down, and recovery from Down needs
M consecutive successes.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .contracts import EventSink, RegionProbe
from .logging_adapter import get_safe_logger
from .metrics import probe_failures_total, region_health_state
from .models import EventSeverity, HealthState, HealthVerdict
from .repository import StateRepository
from .resilience import with_deadline

logger = get_safe_logger("dr_orchestrator.health_monitor")

_STATE_GAUGE = {HealthState.HEALTHY: 0, HealthState.DEGRADED: 1, HealthState.DOWN: 2}


@dataclass
class HealthConfig:
    probe_timeout_seconds: float = 5.0
    down_threshold: int = 3
    recovery_threshold: int = 3

    @classmethod
    def from_settings(cls, settings) -> "HealthConfig":
        return cls(
            probe_timeout_seconds=settings.probe_timeout_seconds,
            down_threshold=settings.down_threshold,
            recovery_threshold=settings.recovery_threshold,
        )


def next_verdict(verdict: HealthVerdict, success: bool, now: datetime, config: HealthConfig,
                 error: Optional[str] = None) -> HealthVerdict:
    """Pure hysteresis step"""
    if success:
        successes = verdict.consecutive_successes + 1
        state = verdict.state
        if state == HealthState.DEGRADED:
            state = HealthState.HEALTHY
        elif state == HealthState.DOWN and successes >= config.recovery_threshold:
            state = HealthState.HEALTHY
        update = {
            "state": state,
            "consecutive_failures": 0,
            "consecutive_successes": successes,
            "last_probe_time": now,
            "last_error": None,
        }
    else:
        failures = verdict.consecutive_failures + 1
        state = HealthState.DOWN if failures >= config.down_threshold else verdict.state
        if state == HealthState.HEALTHY:
            state = HealthState.DEGRADED
        update = {
            "state": state,
            "consecutive_failures": failures,
            "consecutive_successes": 0,
            "last_probe_time": now,
            "last_error": error,
        }
    if update["state"] != verdict.state:
        update["last_transition_time"] = now
    return verdict.model_copy(update=update)


class HealthMonitor:
    """Owns the persisted HealthVerdict of both regions"""

    def __init__(self, repository: StateRepository, primary_probe: RegionProbe,
                 standby_probe: RegionProbe, events: EventSink,
                 config: Optional[HealthConfig] = None):
        self.repository = repository
        self.primary_probe = primary_probe
        self.standby_probe = standby_probe
        self.events = events
        self.config = config or HealthConfig()

    async def probe(self, now: datetime) -> HealthVerdict:
        """Probe the primary region's control surface"""
        return await self._probe_region(self.primary_probe, now)

    async def probe_standby(self, now: datetime) -> HealthVerdict:
        """Maintain the standby region's readiness verdict"""
        return await self._probe_region(self.standby_probe, now)

    async def _probe_region(self, probe: RegionProbe, now: datetime) -> HealthVerdict:
        region = probe.region
        error = None
        try:
            success = bool(await with_deadline(
                probe.check(), self.config.probe_timeout_seconds, f"probe:{region}"
            ))
            if not success:
                error = "probe reported unreachable"
        except Exception as e:
            success = False
            error = f"{type(e).__name__}: {e}"

        if not success:
            probe_failures_total.labels(region=region).inc()

        previous = await self.repository.get_health(region)
        verdict = next_verdict(previous, success, now, self.config, error)
        await self.repository.put_health(verdict)
        region_health_state.labels(region=region).set(_STATE_GAUGE[verdict.state])

        if verdict.state != previous.state:
            await self._announce(previous, verdict)
        return verdict

    async def _announce(self, previous: HealthVerdict, verdict: HealthVerdict) -> None:
        context = {
            "region": verdict.region,
            "from_state": previous.state.value,
            "to_state": verdict.state.value,
            "consecutive_failures": verdict.consecutive_failures,
            "last_error": verdict.last_error,
        }
        if verdict.state == HealthState.DOWN:
            logger.critical("region_down", **context)
            await self.events.emit(EventSeverity.CRITICAL, f"Region {verdict.region} is down", context)
        elif verdict.state == HealthState.DEGRADED:
            logger.warning("region_degraded", **context)
            await self.events.emit(EventSeverity.WARNING, f"Region {verdict.region} is degraded", context)
        else:
            logger.info("region_recovered", **context)
            await self.events.emit(EventSeverity.INFO, f"Region {verdict.region} recovered", context)
