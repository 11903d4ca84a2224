"""
Interfaces of the external collaborators the orchestrator drives
Cluster workloads, data systems, object storage, alert transport and region probes
"""

from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, runtime_checkable

from .models import EventSeverity, WorkloadSpec


# Hook names passed to WorkloadHandle.run_hook
PRE_BACKUP_HOOK = "pre-backup"
POST_BACKUP_HOOK = "post-backup"
PRE_RESTORE_HOOK = "pre-restore"
POST_RESTORE_HOOK = "post-restore"


@runtime_checkable
class WorkloadHandle(Protocol):
    """
    One workload in one region, backed by the cluster's workload API.
    """

    async def scale(self, replicas: int) -> None:
        """Set the desired replica count"""
        ...

    async def is_ready(self) -> bool:
        """True once every desired replica reports ready"""
        ...

    async def run_hook(self, name: str) -> None:
        """
        Run a named lifecycle hook.

        Raise HookUnsafeError to veto the surrounding operation; any other
        exception is logged and ignored.
        """
        ...


@runtime_checkable
class DumpRestoreExecutor(Protocol):
    """Data-system specific dump and restore, bound to one region"""

    def dump(self, spec: WorkloadSpec) -> AsyncIterator[bytes]:
        """Stream a consistent point-in-time dump"""
        ...

    async def restore(self, spec: WorkloadSpec, chunks: AsyncIterator[bytes]) -> None:
        """Replace the workload's data with the streamed dump"""
        ...


@runtime_checkable
class BlobStore(Protocol):
    """
    Object storage for artifacts. Every operation is idempotent: putting the
    same key twice overwrites, deleting a missing key succeeds.
    """

    region: str

    async def put(self, key: str, data: bytes) -> None:
        ...

    async def get(self, key: str) -> bytes:
        """Raise ArtifactNotFoundError when the key is absent"""
        ...

    async def list(self, prefix: str) -> List[str]:
        ...

    async def delete(self, key: str) -> None:
        ...


@runtime_checkable
class EventSink(Protocol):
    """Operator-visible alerts"""

    async def emit(self, severity: EventSeverity, message: str,
                   context: Optional[Dict[str, Any]] = None) -> None:
        ...


@runtime_checkable
class RegionProbe(Protocol):
    """Lightweight reachability check against a region's control surface"""

    region: str

    async def check(self) -> bool:
        """True when reachable; False or an exception counts as a failure"""
        ...
