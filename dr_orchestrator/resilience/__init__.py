"""
Retry and deadline helpers shared by every external call
"""

from .retry_utils import (
    RetryConfig,
    DEFAULT_RETRY_CONFIGS,
    call_with_retry,
    with_deadline,
)

__all__ = [
    "RetryConfig",
    "DEFAULT_RETRY_CONFIGS",
    "call_with_retry",
    "with_deadline",
]
