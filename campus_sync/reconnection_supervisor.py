"""
Reconnection supervisor.

Turns app lifecycle and connectivity signals into registry reconnect passes.
Foreground and back-online signals often arrive together (and flap on
unstable networks), so requests are debounced by a cooldown and at most one
pass, or one backoff loop, runs at a time. A pass that leaves channels
pending is retried with capped exponential backoff with jitter until every
channel is back or the attempts run out; the next signal starts over.

Usage:
    supervisor = ReconnectionSupervisor(registry)
    supervisor.start()
    supervisor.on_app_state_change(AppState.ACTIVE)
    await supervisor.stop()
"""

from __future__ import annotations

import asyncio
import random
import time
from enum import Enum
from typing import Awaitable, Callable

from campus_sync.components.resilience.retry import (
    RetryConfig,
    calculate_delay_with_jitter,
    create_reconnect_retry_config,
    should_retry,
)
from campus_sync.shared.config.logging import get_logger
from campus_sync.shared.config.settings import settings
from campus_sync.subscription_registry import ReconnectReport, SubscriptionRegistry

logger = get_logger(__name__)


class AppState(str, Enum):
    """Application lifecycle state as reported by the host."""

    ACTIVE = "active"
    BACKGROUND = "background"
    INACTIVE = "inactive"


class ReconnectionSupervisor:
    """
    Debounced, backoff-driven reconnect policy over a SubscriptionRegistry.

    Clock and sleep are injectable so tests control time.
    """

    def __init__(
        self,
        registry: SubscriptionRegistry,
        retry_config: RetryConfig | None = None,
        cooldown_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ):
        self._registry = registry
        self._retry_config = retry_config or create_reconnect_retry_config()
        self._cooldown = (
            cooldown_seconds if cooldown_seconds is not None else settings.reconnect_cooldown_seconds
        )
        self._clock = clock
        self._sleep = sleep
        self._rng = rng

        self._started = False
        self._online = True
        self._app_state = AppState.ACTIVE
        self._last_started_at: float | None = None
        self._task: asyncio.Task | None = None
        self._last_report: ReconnectReport | None = None

        self._passes = 0
        self._dropped_requests = 0
        self._gave_up = 0

    @property
    def online(self) -> bool:
        return self._online

    @property
    def app_state(self) -> AppState:
        return self._app_state

    @property
    def is_active(self) -> bool:
        """Whether a reconnect pass or backoff loop is running."""
        return self._task is not None and not self._task.done()

    @property
    def last_report(self) -> ReconnectReport | None:
        return self._last_report

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        self._started = True
        logger.debug("Reconnection supervisor started", cooldown=self._cooldown)

    async def stop(self) -> None:
        """Stop reacting to signals and cancel any running pass or backoff wait."""
        self._started = False
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.debug("Reconnection supervisor stopped")

    # =========================================================================
    # Signals
    # =========================================================================

    def on_app_state_change(self, state: AppState) -> asyncio.Task | None:
        """Returning to the foreground requests a reconnect."""
        previous, self._app_state = self._app_state, state
        if state is AppState.ACTIVE and previous is not AppState.ACTIVE:
            return self.request_reconnect("foreground")
        return None

    def on_connectivity_change(self, online: bool) -> asyncio.Task | None:
        """Coming back online requests a reconnect."""
        previous, self._online = self._online, online
        if online and not previous:
            return self.request_reconnect("online")
        return None

    def request_reconnect(self, reason: str) -> asyncio.Task | None:
        """
        Start a reconnect pass unless one is running, offline, or within cooldown.

        Returns:
            The task running the pass and its retries, or None if dropped.
        """
        if not self._started:
            return None
        if not self._online:
            return self._drop(reason, "offline")
        if self.is_active:
            return self._drop(reason, "already running")

        now = self._clock()
        if self._last_started_at is not None and now - self._last_started_at < self._cooldown:
            return self._drop(reason, "cooldown")

        self._last_started_at = now
        self._task = asyncio.get_running_loop().create_task(self._run(reason))
        return self._task

    def _drop(self, reason: str, why: str) -> None:
        self._dropped_requests += 1
        logger.debug("Reconnect request dropped", reason=reason, why=why)
        return None

    async def _run(self, reason: str) -> ReconnectReport | None:
        attempt = 0
        try:
            while True:
                report = await self._registry.reconnect_all()
                self._passes += 1
                self._last_report = report

                if report.skipped or not report.failed:
                    return report

                if not should_retry(attempt, self._retry_config.max_attempts):
                    self._gave_up += 1
                    logger.error(
                        "Giving up on channel recreation until the next signal",
                        reason=reason,
                        attempts=attempt,
                        pending=report.failed,
                    )
                    return report

                if not self._online:
                    logger.info("Offline, pausing channel recreation", pending=len(report.failed))
                    return report

                delay = calculate_delay_with_jitter(attempt, self._retry_config, self._rng)
                attempt += 1
                logger.warning(
                    "Channels still pending, retrying with jitter...",
                    reason=reason,
                    attempt=attempt,
                    max_attempts=self._retry_config.max_attempts,
                    pending=len(report.failed),
                    delay_with_jitter=round(delay, 2),
                )
                await self._sleep(delay)
        except asyncio.CancelledError:
            logger.debug("Reconnect loop cancelled", reason=reason, attempts=attempt)
            raise
        except Exception as e:
            logger.error("Reconnect loop failed", reason=reason, error=str(e), exc_info=True)
            return None

    def get_stats(self) -> dict[str, int | bool | str]:
        return {
            "online": self._online,
            "app_state": self._app_state.value,
            "active": self.is_active,
            "passes": self._passes,
            "dropped_requests": self._dropped_requests,
            "gave_up": self._gave_up,
        }
