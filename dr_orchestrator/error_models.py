"""
Error taxonomy and exceptions for the DR orchestrator
Every rejected or failed operation carries a category tag, a code and context
"""

from typing import Optional, Dict, Any
from datetime import datetime, timezone
from enum import Enum
import uuid

from pydantic import BaseModel, Field


class ErrorSeverity(str, Enum):
    """Error severity levels for alerting and routing"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    """Failure taxonomy"""
    TRANSIENT = "transient"
    DATA_INTEGRITY = "data_integrity"
    POLICY_VIOLATION = "policy_violation"
    STATE_MACHINE_VIOLATION = "state_machine_violation"
    FATAL = "fatal"
    VALIDATION = "validation"


class ErrorDetail(BaseModel):
    """Detailed error information"""
    code: str = Field(..., description="Error code for programmatic handling")
    message: str = Field(..., description="Human-readable error message")
    correlation_id: str = Field(..., description="Unique correlation ID for tracing")
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    category: ErrorCategory = Field(..., description="Error category")
    severity: ErrorSeverity = Field(..., description="Error severity level")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error context")
    retry_after: Optional[int] = Field(None, description="Retry after seconds for transient errors")


class OrchestratorError(Exception):
    """Base exception for all orchestrator errors"""

    def __init__(
        self,
        message: str,
        code: str,
        category: ErrorCategory,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        details: Optional[Dict[str, Any]] = None,
        retry_after: Optional[int] = None,
        correlation_id: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.category = category
        self.severity = severity
        self.details = details or {}
        self.retry_after = retry_after
        self.correlation_id = correlation_id or str(uuid.uuid4())

    def to_error_detail(self) -> ErrorDetail:
        """Convert exception to ErrorDetail model"""
        return ErrorDetail(
            code=self.code,
            message=self.message,
            correlation_id=self.correlation_id,
            category=self.category,
            severity=self.severity,
            details=self.details,
            retry_after=self.retry_after
        )


# Transient: retried by the owning control loop, never fatal

class TransientError(OrchestratorError):
    """Temporary failure that the next cycle may resolve"""

    def __init__(self, message: str, code: str = "TRANSIENT_ERROR",
                 details: Optional[Dict[str, Any]] = None, retry_after: Optional[int] = None):
        super().__init__(
            message=message,
            code=code,
            category=ErrorCategory.TRANSIENT,
            severity=ErrorSeverity.LOW,
            details=details,
            retry_after=retry_after
        )


class LeaseHeldError(TransientError):
    """An unexpired backup lease exists for the workload"""

    def __init__(self, workload_id: str, holder: Optional[str] = None,
                 expires_at: Optional[datetime] = None):
        details: Dict[str, Any] = {"workload_id": workload_id}
        if holder:
            details["holder"] = holder
        if expires_at:
            details["expires_at"] = expires_at.isoformat()
        super().__init__(
            message=f"Backup lease for {workload_id} is held by {holder or 'another holder'}",
            code="LEASE_HELD",
            details=details
        )
        self.workload_id = workload_id
        self.holder = holder
        self.expires_at = expires_at


class StoreUnavailableError(TransientError):
    """Blob or state store did not answer within its retry budget"""

    def __init__(self, service: str, message: str, details: Optional[Dict[str, Any]] = None):
        error_details = details or {}
        error_details["service"] = service
        super().__init__(
            message=f"Store unavailable ({service}): {message}",
            code="STORE_UNAVAILABLE",
            details=error_details
        )


class OperationTimeoutError(TransientError):
    """A bounded operation exceeded its deadline"""

    def __init__(self, operation: str, timeout_seconds: float, details: Optional[Dict[str, Any]] = None):
        error_details = details or {}
        error_details.update({"operation": operation, "timeout_seconds": timeout_seconds})
        super().__init__(
            message=f"{operation} exceeded its deadline of {timeout_seconds}s",
            code="OPERATION_TIMEOUT",
            details=error_details
        )


class ReplicationIncompleteError(TransientError):
    """Replication did not reach the required cursor position"""

    def __init__(self, workload_id: str, cursor: int, required: int):
        super().__init__(
            message=f"Replication of {workload_id} reached {cursor}, {required} required",
            code="REPLICATION_INCOMPLETE",
            details={"workload_id": workload_id, "cursor": cursor, "required": required}
        )


# Data integrity: the record or copy is excluded, never silently accepted

class DataIntegrityError(OrchestratorError):
    """Checksum mismatch or undecodable artifact"""

    def __init__(self, message: str, code: str = "DATA_INTEGRITY_ERROR",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            code=code,
            category=ErrorCategory.DATA_INTEGRITY,
            severity=ErrorSeverity.HIGH,
            details=details
        )


class ArtifactCorruptError(DataIntegrityError):
    """Stored artifact does not match its record"""

    def __init__(self, key: str, expected: Optional[str], actual: Optional[str], region: Optional[str] = None):
        super().__init__(
            message=f"Artifact {key} failed checksum verification",
            code="ARTIFACT_CORRUPT",
            details={"key": key, "expected": expected, "actual": actual, "region": region}
        )


class CopyVerificationError(DataIntegrityError):
    """Replicated copy does not match its source"""

    def __init__(self, key: str, region: str, expected: Optional[str], actual: Optional[str]):
        super().__init__(
            message=f"Copy of {key} in {region} failed checksum verification",
            code="COPY_CHECKSUM_MISMATCH",
            details={"key": key, "region": region, "expected": expected, "actual": actual}
        )


class ArtifactNotFoundError(DataIntegrityError):
    """Artifact key is absent from a blob store"""

    def __init__(self, key: str, region: Optional[str] = None):
        super().__init__(
            message=f"Artifact {key} not found" + (f" in {region}" if region else ""),
            code="ARTIFACT_NOT_FOUND",
            details={"key": key, "region": region}
        )
        self.key = key


# Policy and state-machine violations: rejected before any side effect

class PolicyViolationError(OrchestratorError):
    """Operation conflicts with a safety policy"""

    def __init__(self, message: str, code: str = "POLICY_VIOLATION",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            code=code,
            category=ErrorCategory.POLICY_VIOLATION,
            severity=ErrorSeverity.HIGH,
            details=details
        )


class HookUnsafeError(PolicyViolationError):
    """Raised by a hook to signal that the operation must not proceed"""

    def __init__(self, hook: str, message: str = "hook reported unsafe to proceed",
                 details: Optional[Dict[str, Any]] = None):
        error_details = details or {}
        error_details["hook"] = hook
        super().__init__(
            message=f"{hook}: {message}",
            code="HOOK_UNSAFE",
            details=error_details
        )


class StateMachineViolationError(OrchestratorError):
    """Command incompatible with the current DR state"""

    def __init__(self, command: str, role: str, message: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        error_details = details or {}
        error_details.update({"command": command, "role": role})
        super().__init__(
            message=message or f"{command} is not allowed while DR role is {role}",
            code="INVALID_DR_STATE",
            category=ErrorCategory.STATE_MACHINE_VIOLATION,
            severity=ErrorSeverity.MEDIUM,
            details=error_details
        )


# Fatal: automated transitions halt until an operator intervenes

class FatalError(OrchestratorError):
    """Irrecoverable failure requiring operator intervention"""

    def __init__(self, message: str, code: str = "FATAL_ERROR",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            code=code,
            category=ErrorCategory.FATAL,
            severity=ErrorSeverity.CRITICAL,
            details=details
        )


class PromotionFailedError(FatalError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, code="PROMOTION_FAILED", details=details)


class FailbackFailedError(FatalError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, code="FAILBACK_FAILED", details=details)


class StateCorruptionError(FatalError):
    """Persisted state cannot be decoded"""

    def __init__(self, key: str, message: str):
        super().__init__(
            message=f"Persisted state at {key} is corrupt: {message}",
            code="STATE_CORRUPT",
            details={"key": key}
        )


# Validation

class ValidationError(OrchestratorError):
    """Invalid input"""

    def __init__(self, message: str, field: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        error_details = details or {}
        if field:
            error_details["field"] = field
        super().__init__(
            message=message,
            code="VALIDATION_ERROR",
            category=ErrorCategory.VALIDATION,
            severity=ErrorSeverity.LOW,
            details=error_details
        )


class WorkloadNotFoundError(ValidationError):
    def __init__(self, workload_id: str):
        super().__init__(message=f"Workload {workload_id} is not registered",
                         details={"workload_id": workload_id})
        self.code = "WORKLOAD_NOT_FOUND"


# Error code mappings for HTTP status codes
ERROR_CODE_TO_HTTP_STATUS = {
    "VALIDATION_ERROR": 400,
    "WORKLOAD_NOT_FOUND": 404,
    "LEASE_HELD": 409,
    "INVALID_DR_STATE": 409,
    "POLICY_VIOLATION": 409,
    "NO_VERIFIED_DATA": 409,
    "STANDBY_NOT_READY": 409,
    "PRIMARY_NOT_HEALTHY": 409,
    "LAST_GOOD_COPY": 409,
    "NOT_REPLICATED": 409,
    "DELETE_INCOMPLETE": 409,
    "BACKUP_NOT_RESTORABLE": 409,
    "HOOK_UNSAFE": 409,
    "REPLICATION_INCOMPLETE": 409,
    "ARTIFACT_NOT_FOUND": 409,
    "ARTIFACT_CORRUPT": 409,
    "COPY_CHECKSUM_MISMATCH": 409,
    "DATA_INTEGRITY_ERROR": 409,
    "STORE_UNAVAILABLE": 503,
    "OPERATION_TIMEOUT": 504,
    "TRANSIENT_ERROR": 503,
    "PROMOTION_FAILED": 500,
    "FAILBACK_FAILED": 500,
    "STATE_CORRUPT": 500,
    "FATAL_ERROR": 500,
    "INTERNAL_ERROR": 500,
}


CATEGORY_TO_HTTP_STATUS = {
    ErrorCategory.VALIDATION: 400,
    ErrorCategory.TRANSIENT: 409,
    ErrorCategory.DATA_INTEGRITY: 409,
    ErrorCategory.POLICY_VIOLATION: 409,
    ErrorCategory.STATE_MACHINE_VIOLATION: 409,
    ErrorCategory.FATAL: 500,
}


def http_status_for(detail: ErrorDetail) -> int:
    """HTTP status for an error, by code first and category otherwise"""
    status = ERROR_CODE_TO_HTTP_STATUS.get(detail.code)
    if status is not None:
        return status
    return CATEGORY_TO_HTTP_STATUS.get(detail.category, 500)
