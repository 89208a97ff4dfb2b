"""
Resilience components: reconnect backoff policy.
"""

from campus_sync.components.resilience.retry import (
    RetryConfig,
    calculate_delay_with_jitter,
    create_reconnect_retry_config,
    should_retry,
)

__all__ = [
    "RetryConfig",
    "calculate_delay_with_jitter",
    "create_reconnect_retry_config",
    "should_retry",
]
