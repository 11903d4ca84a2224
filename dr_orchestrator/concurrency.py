"""
Per-workload locks shared by the replication relay and the retention pruner
"""

import asyncio
from typing import Dict


class WorkloadLocks:
    """One asyncio.Lock per workload id, created on first use"""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def lock(self, workload_id: str) -> asyncio.Lock:
        lock = self._locks.get(workload_id)
        if lock is None:
            lock = self._locks[workload_id] = asyncio.Lock()
        return lock
