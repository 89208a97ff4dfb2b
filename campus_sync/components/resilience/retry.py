"""
Reconnect backoff policy.

Capped exponential backoff with jitter. Many clients lose connectivity at
the same moment (campus Wi-Fi drop, server deploy), so retries are spread
out instead of arriving in lockstep.
"""

from __future__ import annotations

import random
from dataclasses import dataclass

from campus_sync.shared.config.settings import Settings, get_settings


@dataclass(frozen=True, slots=True)
class RetryConfig:
    """
    Backoff curve for reconnect passes.

    Pass n waits initial_delay * backoff_base**n, capped at max_delay, then
    spread by up to ±jitter_factor. max_attempts counts the retry passes
    after the first failed one. Defaults mirror the reconnect settings.
    """

    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_base: float = 2.0
    jitter_factor: float = 0.25
    max_attempts: int = 8

    def __post_init__(self) -> None:
        problems = []
        if self.initial_delay <= 0:
            problems.append("initial_delay must be positive")
        if self.max_delay < self.initial_delay:
            problems.append("max_delay must not be below initial_delay")
        if self.backoff_base < 1:
            problems.append("backoff_base must be at least 1")
        if not 0 <= self.jitter_factor <= 1:
            problems.append("jitter_factor must be within [0, 1]")
        if self.max_attempts < 1:
            problems.append("max_attempts must be at least 1")
        if problems:
            raise ValueError(f"Invalid reconnect backoff: {'; '.join(problems)}")

    @property
    def upper_bound(self) -> float:
        """Largest delay calculate_delay_with_jitter can return."""
        return self.max_delay * (1 + self.jitter_factor)


# =============================================================================
# Retry Functions
# =============================================================================


def calculate_delay_with_jitter(
    attempt: int,
    config: RetryConfig | None = None,
    rng: random.Random | None = None,
) -> float:
    """
    Seconds to wait before reconnect pass `attempt` (0 for the first retry).

    Pass `rng` to make the jitter deterministic.
    """
    if config is None:
        config = RetryConfig()
    if attempt < 0:
        raise ValueError("attempt must be >= 0")

    # Past 64 doublings every realistic curve is at the cap; skip the power
    if config.backoff_base > 1 and attempt > 64:
        delay = config.max_delay
    else:
        delay = min(config.initial_delay * (config.backoff_base ** attempt), config.max_delay)

    spread = delay * config.jitter_factor
    return max(0.0, delay + (rng or random).uniform(-spread, spread))


def should_retry(attempt: int, max_attempts: int) -> bool:
    """Whether retry pass `attempt` (1-indexed) is still within budget."""
    return attempt < max_attempts


# =============================================================================
# Factory Functions
# =============================================================================


def create_reconnect_retry_config(config: Settings | None = None) -> RetryConfig:
    """
    Build the reconnect policy from settings.

    Args:
        config: Settings to read from (process settings if None).

    Returns:
        RetryConfig for channel re-establishment.
    """
    config = config or get_settings()
    return RetryConfig(
        initial_delay=config.reconnect_initial_delay,
        max_delay=config.reconnect_max_delay,
        backoff_base=config.reconnect_backoff_base,
        jitter_factor=config.reconnect_jitter_factor,
        max_attempts=config.reconnect_max_attempts,
    )
