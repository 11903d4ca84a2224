"""
Backup lease manager
At most one unexpired lease per workload, enforced through the state store's
compare-and-set so it holds across processes and restarts.
"""

from datetime import datetime, timedelta
from typing import Optional

from .error_models import LeaseHeldError
from .logging_adapter import get_safe_logger
from .metrics import lease_contention_total
from .models import Lease
from .repository import StateRepository

logger = get_safe_logger("dr_orchestrator.lease_manager")

_MAX_ACQUIRE_ATTEMPTS = 5


class LeaseManager:
    """Acquires and releases time-bounded backup leases"""

    def __init__(self, repository: StateRepository, holder: str, ttl_seconds: float):
        self.repository = repository
        self.holder = holder
        self.ttl = timedelta(seconds=ttl_seconds)

    async def acquire(self, workload_id: str, now: datetime) -> Lease:
        """
        Take the lease for ``workload_id``.

        An expired lease is reclaimed. Raises LeaseHeldError while an
        unexpired lease exists, including one held by this same holder.
        """
        lease = Lease(
            workload_id=workload_id,
            holder=self.holder,
            acquired_at=now,
            expires_at=now + self.ttl,
        )
        for _ in range(_MAX_ACQUIRE_ATTEMPTS):
            raw, current = await self.repository.get_lease(workload_id)
            if current is not None and not current.is_expired(now):
                lease_contention_total.labels(workload=workload_id).inc()
                logger.info(
                    "lease_held",
                    workload_id=workload_id,
                    holder=current.holder,
                    expires_at=current.expires_at.isoformat()
                )
                raise LeaseHeldError(workload_id, current.holder, current.expires_at)

            if await self.repository.swap_lease(workload_id, raw, lease):
                if current is not None:
                    logger.warning(
                        "expired_lease_reclaimed",
                        workload_id=workload_id,
                        previous_holder=current.holder,
                        expired_at=current.expires_at.isoformat()
                    )
                logger.debug("lease_acquired", workload_id=workload_id, holder=self.holder,
                             expires_at=lease.expires_at.isoformat())
                return lease

        # Lost every race; someone else is actively taking it
        lease_contention_total.labels(workload=workload_id).inc()
        raise LeaseHeldError(workload_id)

    async def release(self, lease: Lease) -> bool:
        """Release ``lease`` if it is still the stored one. Returns False otherwise."""
        raw, current = await self.repository.get_lease(lease.workload_id)
        if current is None or current.holder != lease.holder or current.acquired_at != lease.acquired_at:
            logger.warning("lease_release_skipped", workload_id=lease.workload_id, holder=lease.holder,
                           current_holder=current.holder if current else None)
            return False
        released = await self.repository.swap_lease(lease.workload_id, raw, None)
        if released:
            logger.debug("lease_released", workload_id=lease.workload_id, holder=lease.holder)
        return released

    async def current(self, workload_id: str, now: datetime) -> Optional[Lease]:
        """The unexpired lease for ``workload_id``, if any"""
        _, lease = await self.repository.get_lease(workload_id)
        if lease is None or lease.is_expired(now):
            return None
        return lease
