"""
Best-effort lifecycle hook invocation
"""

from typing import Optional

from .contracts import WorkloadHandle
from .error_models import HookUnsafeError
from .logging_adapter import get_safe_logger
from .resilience import with_deadline

logger = get_safe_logger("dr_orchestrator.hooks")


async def run_hook(handle: WorkloadHandle, name: str, workload_id: str,
                   timeout: Optional[float]) -> bool:
    """
    Run a hook under a deadline. Only HookUnsafeError propagates; every
    other failure, timeouts included, is logged and the caller proceeds.
    Returns True when the hook completed.
    """
    try:
        await with_deadline(handle.run_hook(name), timeout, f"hook:{name}:{workload_id}")
        return True
    except HookUnsafeError:
        logger.warning("hook_vetoed_operation", hook=name, workload_id=workload_id)
        raise
    except Exception as e:
        logger.warning("hook_failed", hook=name, workload_id=workload_id, error=str(e),
                       error_type=type(e).__name__)
        return False
