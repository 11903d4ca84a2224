"""
Configuration for the DR orchestrator
Loaded from DR_* environment variables (or a .env file) and validated up front
"""

import base64
import binascii
from enum import Enum
from functools import lru_cache
from typing import Dict, Optional

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .adapters.command_executor import ExecutorCommand
from .logging_adapter import get_safe_logger

logger = get_safe_logger("dr_orchestrator.config")


class EnvironmentType(str, Enum):
    """Supported environment types"""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class StateBackend(str, Enum):
    MEMORY = "memory"
    REDIS = "redis"


class BlobBackend(str, Enum):
    MEMORY = "memory"
    LOCAL = "local"
    S3 = "s3"


def decode_key(value: str, field: str = "master_key") -> bytes:
    """Decode a base64 AES-256 key, rejecting anything that is not 32 bytes."""
    try:
        raw = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"{field} must be valid base64: {e}")
    if len(raw) != 32:
        raise ValueError(f"{field} must decode to 32 bytes, got {len(raw)}")
    return raw


class OrchestratorSettings(BaseSettings):
    """
    Orchestrator settings. Every interval, timeout and threshold used by the
    control loops lives here so one process configuration drives them all.
    """

    model_config = SettingsConfigDict(
        env_prefix="DR_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    # Identity
    instance_id: str = Field(default="dr-orchestrator-0", min_length=1,
                             description="Lease holder identity of this process")
    environment: EnvironmentType = Field(default=EnvironmentType.DEVELOPMENT)
    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=True, description="Render logs as JSON lines")

    # Regions
    primary_region: str = Field(default="primary", min_length=1)
    standby_region: str = Field(default="standby", min_length=1)

    # Persisted state
    state_backend: StateBackend = Field(default=StateBackend.MEMORY)
    redis_url: Optional[str] = Field(default=None, description="Required when state_backend is redis")
    state_key_prefix: str = Field(default="dr", min_length=1)

    # Blob storage
    blob_backend: BlobBackend = Field(default=BlobBackend.MEMORY)
    primary_bucket: Optional[str] = None
    standby_bucket: Optional[str] = None
    primary_endpoint_url: Optional[str] = None
    standby_endpoint_url: Optional[str] = None
    local_root: str = Field(default="/var/lib/dr-orchestrator/blobs")

    # Artifact encryption
    master_key: SecretStr = Field(..., description="Base64 encoded 32 byte master key - REQUIRED")
    master_key_id: str = Field(default="k1", min_length=1)
    previous_keys: Dict[str, SecretStr] = Field(
        default_factory=dict, description="Retired key id -> base64 key, kept for restores"
    )
    compression_level: int = Field(default=6, ge=1, le=9)

    # Scheduler and leases
    scheduler_tick_seconds: float = Field(default=30.0, gt=0)
    max_concurrent_backups: int = Field(default=4, ge=1)
    retry_base_seconds: float = Field(default=60.0, gt=0)
    retry_ceiling_seconds: float = Field(default=3600.0, gt=0)
    lease_ttl_seconds: float = Field(default=7200.0, gt=0)
    lease_margin_seconds: float = Field(default=300.0, ge=0)

    # Deadlines
    snapshot_timeout_seconds: float = Field(default=3600.0, gt=0)
    restore_timeout_seconds: float = Field(default=3600.0, gt=0)
    copy_timeout_seconds: float = Field(default=600.0, gt=0)
    hook_timeout_seconds: float = Field(default=60.0, gt=0)
    store_timeout_seconds: float = Field(default=30.0, gt=0)

    # Store call retries
    store_retry_attempts: int = Field(default=3, ge=1)
    store_retry_base_seconds: float = Field(default=0.5, gt=0)
    store_retry_max_seconds: float = Field(default=10.0, gt=0)

    # Control loop intervals
    prune_interval_seconds: float = Field(default=3600.0, gt=0)
    replication_interval_seconds: float = Field(default=60.0, gt=0)

    # Health monitoring
    probe_interval_seconds: float = Field(default=30.0, gt=0)
    probe_timeout_seconds: float = Field(default=5.0, gt=0)
    down_threshold: int = Field(default=3, ge=1)
    recovery_threshold: int = Field(default=3, ge=1)
    primary_health_url: Optional[str] = None
    standby_health_url: Optional[str] = None

    # Failover
    auto_failover_enabled: bool = Field(default=False, description="Promote automatically on a sustained Down verdict")
    failover_grace_seconds: float = Field(default=300.0, ge=0)
    ready_timeout_seconds: float = Field(default=600.0, gt=0)
    ready_poll_seconds: float = Field(default=5.0, gt=0)
    transition_history_size: int = Field(default=50, ge=1)
    final_backup_on_failback: bool = Field(default=True)

    # Workloads and executors
    kubernetes_enabled: bool = Field(default=False, description="Drive StatefulSets through the Kubernetes API")
    primary_kube_context: Optional[str] = None
    standby_kube_context: Optional[str] = None
    executors: Dict[str, ExecutorCommand] = Field(
        default_factory=dict, description="Executor reference -> dump/restore commands"
    )

    # Events
    webhook_url: Optional[str] = Field(default=None, description="Alert webhook; events are always logged")
    webhook_timeout_seconds: float = Field(default=10.0, gt=0)

    # Operator API
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8080, ge=1, le=65535)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        allowed_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed_levels:
            raise ValueError(f"Log level must be one of: {allowed_levels}")
        return v.upper()

    @field_validator("master_key")
    @classmethod
    def validate_master_key(cls, v):
        decode_key(v.get_secret_value())
        return v

    @field_validator("previous_keys")
    @classmethod
    def validate_previous_keys(cls, v):
        for key_id, key in v.items():
            decode_key(key.get_secret_value(), field=f"previous_keys[{key_id}]")
        return v

    @model_validator(mode="after")
    def validate_cross_field_rules(self):
        if self.primary_region == self.standby_region:
            raise ValueError("primary_region and standby_region must differ")
        if self.lease_ttl_seconds <= self.lease_budget_seconds() + self.lease_margin_seconds:
            raise ValueError(
                "lease_ttl_seconds must exceed the worst-case leased run "
                f"({self.lease_budget_seconds():.0f}s) plus lease_margin_seconds"
            )
        if self.recovery_threshold <= 1:
            raise ValueError("recovery_threshold must be greater than 1")
        if self.retry_ceiling_seconds < self.retry_base_seconds:
            raise ValueError("retry_ceiling_seconds must not be below retry_base_seconds")
        if self.state_backend == StateBackend.REDIS and not self.redis_url:
            raise ValueError("redis_url is required when state_backend is redis")
        if self.blob_backend == BlobBackend.S3 and not (self.primary_bucket and self.standby_bucket):
            raise ValueError("primary_bucket and standby_bucket are required when blob_backend is s3")
        if self.master_key_id in self.previous_keys:
            raise ValueError("master_key_id must not also appear in previous_keys")
        if self.environment == EnvironmentType.PRODUCTION:
            if self.state_backend == StateBackend.MEMORY:
                raise ValueError("production requires state_backend redis")
            if self.blob_backend == BlobBackend.MEMORY:
                raise ValueError("production requires a durable blob_backend (local or s3)")
        return self

    def store_call_budget_seconds(self) -> float:
        """Longest a single retried blob store call can take, jitter included"""
        attempts = self.store_retry_attempts
        backoff = self.store_retry_max_seconds + self.store_retry_max_seconds / 10
        return attempts * self.store_timeout_seconds + (attempts - 1) * backoff

    def lease_budget_seconds(self) -> float:
        """
        Worst case for one leased run: the dump or restore deadline, a hook
        on each side of it, plus the blob store calls made under the lease.
        """
        work = max(self.snapshot_timeout_seconds, self.restore_timeout_seconds)
        return work + 2 * self.hook_timeout_seconds + 3 * self.store_call_budget_seconds()

    def master_key_bytes(self) -> bytes:
        return decode_key(self.master_key.get_secret_value())

    def key_ring(self) -> Dict[str, bytes]:
        """All known key ids mapped to raw key material, current key included."""
        ring = {
            key_id: decode_key(key.get_secret_value(), field=key_id)
            for key_id, key in self.previous_keys.items()
        }
        ring[self.master_key_id] = self.master_key_bytes()
        return ring


@lru_cache()
def get_settings() -> OrchestratorSettings:
    """Load and cache the process settings"""
    settings = OrchestratorSettings()
    logger.info(
        "configuration_loaded",
        environment=settings.environment.value,
        primary_region=settings.primary_region,
        standby_region=settings.standby_region,
        state_backend=settings.state_backend.value,
        blob_backend=settings.blob_backend.value,
        auto_failover_enabled=settings.auto_failover_enabled,
    )
    return settings
