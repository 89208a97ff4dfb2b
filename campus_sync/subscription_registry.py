"""
Subscription registry for named push channels.

Owns every live channel handle of a session under a unique name and is the
only caller of transport teardown. Screens ask for channels by name (see
`components.events.channels`); asking again for a name that is already
registered replaces the old channel instead of adding a second one.

Reconnection replays each channel's factory. Channels registered without a
factory cannot be recreated and are dropped on reconnect.

Usage:
    registry = SubscriptionRegistry(transport)
    await registry.open(spec.name, spec.filter, on_event)
    report = await registry.reconnect_all()
    await registry.unsubscribe_all()
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol

from campus_sync.components.events.channels import ChannelFilter
from campus_sync.components.events.types import ChangeEvent
from campus_sync.shared.config.logging import get_logger
from campus_sync.shared.config.settings import settings
from campus_sync.shared.exceptions import ChannelLimitExceededError

logger = get_logger(__name__)

EventCallback = Callable[[ChangeEvent], Any]
ChannelFactory = Callable[[], Awaitable[Any]]


class PushTransport(Protocol):
    """Opens and closes server push channels."""

    async def open_channel(self, channel_filter: ChannelFilter, on_event: EventCallback) -> Any: ...

    async def close_channel(self, handle: Any) -> None: ...


@dataclass
class Subscription:
    """
    One registered channel.

    A subscription whose handle is None is pending: its last recreation
    failed and the next reconnect pass retries it.
    """

    name: str
    handle: Any | None
    factory: ChannelFactory | None = None

    @property
    def pending(self) -> bool:
        return self.handle is None


@dataclass
class ReconnectReport:
    """Outcome of one reconnect pass."""

    recreated: list[str] = field(default_factory=list)
    dropped: list[str] = field(default_factory=list)  # No factory to recreate from
    failed: list[str] = field(default_factory=list)  # Factory raised; left pending
    discarded: list[str] = field(default_factory=list)  # Entry changed while recreating
    skipped: bool = False  # Another pass was already running

    @property
    def success(self) -> bool:
        return not self.skipped and not self.failed


class SubscriptionRegistry:
    """
    Named channel multiplexer.

    Invariant: at any instant each name maps to at most one handle. A
    replacement is recorded before the old handle's teardown is awaited, so
    the invariant also holds while teardown is suspended.
    """

    def __init__(
        self,
        transport: PushTransport,
        max_channels: int | None = None,
        close_timeout: float | None = None,
    ):
        """
        Initialize registry.

        Args:
            transport: Push transport the channels are opened on.
            max_channels: Maximum number of registered names.
            close_timeout: Seconds to wait for one channel teardown.
        """
        self._transport = transport
        self._max_channels = max_channels if max_channels is not None else settings.max_channels
        self._close_timeout = (
            close_timeout if close_timeout is not None else settings.channel_close_timeout
        )
        self._entries: dict[str, Subscription] = {}
        self._reconnecting = False
        # Bumped by unsubscribe_all so an in-progress reconnect pass stops
        # registering the handles it recreates.
        self._epoch = 0
        self._close_failures = 0
        self._reconnect_passes = 0

    # =========================================================================
    # Introspection
    # =========================================================================

    @property
    def size(self) -> int:
        return len(self._entries)

    @property
    def is_reconnecting(self) -> bool:
        return self._reconnecting

    @property
    def max_channels(self) -> int:
        return self._max_channels

    def has(self, name: str) -> bool:
        return name in self._entries

    def get(self, name: str) -> Subscription | None:
        return self._entries.get(name)

    def get_active_channels(self) -> list[str]:
        """Names with a live handle."""
        return [name for name, entry in self._entries.items() if not entry.pending]

    def get_pending_channels(self) -> list[str]:
        """Names whose recreation failed and awaits the next reconnect pass."""
        return [name for name, entry in self._entries.items() if entry.pending]

    def get_stats(self) -> dict[str, int | bool]:
        return {
            "channels": self.size,
            "active": len(self.get_active_channels()),
            "pending": len(self.get_pending_channels()),
            "max_channels": self._max_channels,
            "reconnecting": self._reconnecting,
            "reconnect_passes": self._reconnect_passes,
            "close_failures": self._close_failures,
        }

    # =========================================================================
    # Registration
    # =========================================================================

    async def subscribe(
        self,
        name: str,
        handle: Any,
        factory: ChannelFactory | None = None,
    ) -> Any:
        """
        Register a channel handle under a name, replacing any previous one.

        Args:
            name: Unique channel name.
            handle: Live handle returned by the transport.
            factory: Recreates an equivalent handle on reconnect.

        Returns:
            The handle, unchanged.

        Raises:
            ChannelLimitExceededError: New name beyond max_channels. The
                offered handle is closed before raising.
        """
        previous = self._entries.get(name)
        if previous is None and len(self._entries) >= self._max_channels:
            await self._close(name, handle)
            raise ChannelLimitExceededError(name, self._max_channels)

        self._entries[name] = Subscription(name, handle, factory)

        if previous is not None and previous.handle is not None and previous.handle is not handle:
            logger.debug("Replacing channel", channel=name)
            await self._close(name, previous.handle)
        else:
            logger.debug("Channel registered", channel=name, channels=len(self._entries))
        return handle

    async def open(
        self,
        name: str,
        channel_filter: ChannelFilter,
        on_event: EventCallback,
    ) -> Any:
        """
        Open a channel on the transport and register it with a factory.

        If opening fails, the name is still registered as pending so the
        next reconnect pass retries it, and the error is re-raised.

        Raises:
            ChannelLimitExceededError: New name beyond max_channels.
        """
        if name not in self._entries and len(self._entries) >= self._max_channels:
            raise ChannelLimitExceededError(name, self._max_channels)

        def factory() -> Awaitable[Any]:
            return self._transport.open_channel(channel_filter, on_event)

        try:
            handle = await factory()
        except Exception:
            if name not in self._entries:
                self._entries[name] = Subscription(name, None, factory)
            logger.warning("Channel open failed, left pending", channel=name, exc_info=True)
            raise
        return await self.subscribe(name, handle, factory)

    async def unsubscribe(self, name: str) -> bool:
        """
        Remove a channel and tear it down. Idempotent.

        Returns:
            True if the name was registered.
        """
        entry = self._entries.pop(name, None)
        if entry is None:
            return False
        if entry.handle is not None:
            await self._close(name, entry.handle)
        logger.debug("Channel unsubscribed", channel=name, channels=len(self._entries))
        return True

    async def unsubscribe_all(self) -> int:
        """
        Tear down every channel.

        Returns:
            Number of channels removed.
        """
        self._epoch += 1
        names = list(self._entries)
        for name in names:
            await self.unsubscribe(name)
        if names:
            logger.info("All channels unsubscribed", count=len(names))
        return len(names)

    async def _close(self, name: str, handle: Any) -> bool:
        """Tear a handle down; failures are logged, never raised."""
        try:
            await asyncio.wait_for(
                self._transport.close_channel(handle),
                timeout=self._close_timeout,
            )
            return True
        except asyncio.TimeoutError:
            self._close_failures += 1
            logger.warning("Channel close timed out", channel=name, timeout=self._close_timeout)
        except Exception as e:
            self._close_failures += 1
            logger.warning("Error closing channel", channel=name, error=str(e))
        return False

    # =========================================================================
    # Reconnection
    # =========================================================================

    async def reconnect_all(self) -> ReconnectReport:
        """
        Recreate every channel from its factory.

        A call while another pass is running returns immediately with
        `skipped=True`. Per-channel failures are reported and leave the
        channel pending; they never abort the pass.
        """
        if self._reconnecting:
            logger.debug("Reconnect already in progress, skipping")
            return ReconnectReport(skipped=True)

        self._reconnecting = True
        self._reconnect_passes += 1
        epoch = self._epoch
        report = ReconnectReport()

        try:
            for name, entry in list(self._entries.items()):
                if self._epoch != epoch:
                    break
                if self._entries.get(name) is not entry:
                    continue  # Replaced or removed earlier in this pass
                await self._reconnect_one(name, entry, epoch, report)
        finally:
            self._reconnecting = False

        logger.info(
            "Reconnect pass finished",
            recreated=len(report.recreated),
            dropped=len(report.dropped),
            failed=len(report.failed),
            discarded=len(report.discarded),
        )
        return report

    async def _reconnect_one(
        self,
        name: str,
        entry: Subscription,
        epoch: int,
        report: ReconnectReport,
    ) -> None:
        if entry.factory is None:
            del self._entries[name]
            if entry.handle is not None:
                await self._close(name, entry.handle)
            report.dropped.append(name)
            return

        # Park the entry as pending before teardown so the old handle is
        # never registered while it is being closed.
        pending = Subscription(name, None, entry.factory)
        self._entries[name] = pending
        if entry.handle is not None:
            await self._close(name, entry.handle)

        if self._epoch != epoch or self._entries.get(name) is not pending:
            report.discarded.append(name)
            return

        try:
            handle = await entry.factory()
        except Exception as e:
            report.failed.append(name)
            logger.warning("Channel recreation failed", channel=name, error=str(e))
            return

        if self._epoch != epoch or self._entries.get(name) is not pending:
            # Unsubscribed or replaced while the factory ran
            await self._close(name, handle)
            report.discarded.append(name)
            return

        self._entries[name] = Subscription(name, handle, entry.factory)
        report.recreated.append(name)
