"""
Domain models for the DR orchestrator
Persisted as JSON in the state store, so every model round-trips through pydantic
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# Kubernetes DNS-1123 label
NAME_PATTERN = r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$"


class BackupStatus(str, Enum):
    """Backup record status"""
    VERIFYING = "verifying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class HealthState(str, Enum):
    """Region health verdict states"""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    DOWN = "down"


class DrRole(str, Enum):
    """Roles of the process-wide DR state machine"""
    PRIMARY_ACTIVE = "primary_active"
    STANDBY_PASSIVE = "standby_passive"
    PROMOTING = "promoting"
    PROMOTED = "promoted"
    DEMOTING = "demoting"
    FAILBACK_PENDING = "failback_pending"


class EventSeverity(str, Enum):
    """Operator-visible event severities"""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class RetentionPolicy(BaseModel):
    """Count- and age-based retention applied per workload"""
    model_config = ConfigDict(frozen=True)

    min_keep: int = Field(default=3, ge=0, description="Newest succeeded backups always kept")
    max_age_days: int = Field(default=7, ge=0, description="Age beyond which older backups expire")

    @property
    def max_age(self) -> timedelta:
        return timedelta(days=self.max_age_days)


class WorkloadSpec(BaseModel):
    """A stateful unit under protection. Immutable once registered."""
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., pattern=NAME_PATTERN, max_length=63)
    namespace: str = Field(..., pattern=NAME_PATTERN, max_length=63)
    dump_executor: str = Field(..., min_length=1, description="Dump executor reference")
    restore_executor: str = Field(..., min_length=1, description="Restore executor reference")
    cadence_seconds: int = Field(..., gt=0, description="Desired backup cadence")
    retention: RetentionPolicy = Field(default_factory=RetentionPolicy)
    replicas: int = Field(default=1, ge=1, description="Replica count when the workload is scaled up")

    @property
    def workload_id(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def cadence(self) -> timedelta:
        return timedelta(seconds=self.cadence_seconds)


class BackupRecord(BaseModel):
    """One snapshot attempt of a workload"""

    workload_id: str
    sequence: int = Field(..., ge=1)
    region: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    artifact_key: str
    size_bytes: Optional[int] = None
    checksum: Optional[str] = None
    encryption_key_id: Optional[str] = None
    status: BackupStatus = BackupStatus.VERIFYING
    error_message: Optional[str] = None

    @property
    def is_finalized(self) -> bool:
        return self.status != BackupStatus.VERIFYING

    def finalize_succeeded(self, finished_at: datetime, size_bytes: int,
                           checksum: str, encryption_key_id: str) -> "BackupRecord":
        if self.is_finalized:
            raise ValueError(f"record {self.workload_id}#{self.sequence} is already {self.status.value}")
        return self.model_copy(update={
            "finished_at": finished_at,
            "size_bytes": size_bytes,
            "checksum": checksum,
            "encryption_key_id": encryption_key_id,
            "status": BackupStatus.SUCCEEDED,
        })

    def finalize_failed(self, finished_at: datetime, error_message: str) -> "BackupRecord":
        """Finalize as failed; also the terminal flip of a succeeded record."""
        if self.status == BackupStatus.FAILED:
            return self
        return self.model_copy(update={
            "finished_at": self.finished_at or finished_at,
            "status": BackupStatus.FAILED,
            "error_message": error_message,
        })


class Lease(BaseModel):
    """Time-bounded mutual-exclusion token for backup runs"""

    workload_id: str
    holder: str
    acquired_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class ReplicationCursor(BaseModel):
    """Highest sequence confirmed present in ``target_region``"""

    workload_id: str
    target_region: str
    sequence: int = Field(default=0, ge=0)
    updated_at: Optional[datetime] = None


class HealthVerdict(BaseModel):
    """Rolling health verdict for one region"""

    region: str
    state: HealthState = HealthState.HEALTHY
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    last_transition_time: Optional[datetime] = None
    last_probe_time: Optional[datetime] = None
    last_error: Optional[str] = None


class ScheduleState(BaseModel):
    """Per-workload scheduling bookkeeping"""

    workload_id: str
    last_run_start: Optional[datetime] = None
    last_outcome: Optional[BackupStatus] = None
    consecutive_failures: int = 0
    next_retry_at: Optional[datetime] = None


class TransitionEntry(BaseModel):
    from_role: DrRole
    to_role: DrRole
    at: datetime
    reason: str
    actor: str


class DrState(BaseModel):
    """
    Process-wide DR state machine instance.

    ``plan`` and ``completed`` are the write-ahead context of an in-flight
    promotion or failback: which sequence to materialize per workload and
    which workloads are already restored.
    """

    role: DrRole = DrRole.PRIMARY_ACTIVE
    degraded: bool = False
    halted: bool = False
    halt_reason: Optional[str] = None
    last_transition_time: Optional[datetime] = None
    history: List[TransitionEntry] = Field(default_factory=list)
    plan: Dict[str, int] = Field(default_factory=dict)
    completed: List[str] = Field(default_factory=list)

    def with_transition(self, to_role: DrRole, at: datetime, reason: str,
                        actor: str, history_size: int) -> "DrState":
        entry = TransitionEntry(from_role=self.role, to_role=to_role, at=at, reason=reason, actor=actor)
        history = (self.history + [entry])[-history_size:]
        return self.model_copy(update={
            "role": to_role,
            "last_transition_time": at,
            "history": history,
        })
