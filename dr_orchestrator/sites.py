"""
Region sites: the blob store, workload handles and executors of one region
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Tuple

from .contracts import BlobStore, DumpRestoreExecutor, WorkloadHandle
from .error_models import ValidationError
from .models import DrRole, WorkloadSpec


HandleFactory = Callable[[WorkloadSpec], WorkloadHandle]


@dataclass
class RegionSite:
    """Everything the orchestrator touches inside one region"""
    name: str
    blob_store: BlobStore
    handle_factory: HandleFactory
    executors: Dict[str, DumpRestoreExecutor] = field(default_factory=dict)
    _handles: Dict[str, WorkloadHandle] = field(default_factory=dict, repr=False)

    def handle(self, spec: WorkloadSpec) -> WorkloadHandle:
        handle = self._handles.get(spec.workload_id)
        if handle is None:
            handle = self.handle_factory(spec)
            self._handles[spec.workload_id] = handle
        return handle

    def executor(self, reference: str) -> DumpRestoreExecutor:
        try:
            return self.executors[reference]
        except KeyError:
            raise ValidationError(
                f"Executor {reference} is not configured in region {self.name}",
                field="executor",
            )


class SiteDirectory:
    """Primary and standby sites, resolved to active/passive by DR role"""

    def __init__(self, primary: RegionSite, standby: RegionSite):
        if primary.name == standby.name:
            raise ValidationError("Primary and standby regions must differ", field="region")
        self.primary = primary
        self.standby = standby

    def by_name(self, region: str) -> RegionSite:
        if region == self.primary.name:
            return self.primary
        if region == self.standby.name:
            return self.standby
        raise ValidationError(f"Unknown region {region}", field="region")

    def active_passive(self, role: DrRole) -> Optional[Tuple[RegionSite, RegionSite]]:
        """Backup source and replication target for a steady role, None mid-transition."""
        if role == DrRole.PROMOTED:
            return self.standby, self.primary
        if role in (DrRole.PRIMARY_ACTIVE, DrRole.STANDBY_PASSIVE):
            return self.primary, self.standby
        return None

    def all(self) -> Tuple[RegionSite, RegionSite]:
        return self.primary, self.standby
