"""
Redis pub/sub push transport.

Each channel is one Redis pub/sub subscription plus a listener task that
decodes messages into change events and hands matching ones to the
channel's callback. Malformed payloads are dropped at this boundary and
never reach the router.

The listener does not reconnect by itself: a lost connection ends the
listener, and the reconnection supervisor recreates the channel through the
registry.

Usage:
    transport = RedisPushTransport(redis_client)
    handle = await transport.open_channel(spec.filter, on_event)
    await transport.close_channel(handle)
"""

from __future__ import annotations

import asyncio
import inspect
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

import redis.asyncio as aioredis
import redis.exceptions

from campus_sync.components.core.constants import SyncConstants
from campus_sync.components.events.channels import ChannelFilter
from campus_sync.components.events.types import (
    ChangeEvent,
    DecodeFailureTracker,
    decode_change_event,
)
from campus_sync.shared.config.logging import get_logger
from campus_sync.shared.config.settings import settings
from campus_sync.shared.exceptions import (
    ChannelCloseError,
    ChannelOpenError,
    EventDecodeError,
)

logger = get_logger(__name__)

EventCallback = Callable[[ChangeEvent], Any]


@dataclass(eq=False)
class RedisChannelHandle:
    """Live subscription: the pub/sub connection and its listener task."""

    channel: str
    channel_filter: ChannelFilter
    pubsub: Any
    listener: asyncio.Task | None = None
    delivered: int = 0
    dropped: int = 0
    closed: bool = field(default=False)

    @property
    def alive(self) -> bool:
        return not self.closed and self.listener is not None and not self.listener.done()


def redis_channel(topic: str, prefix: str | None = None) -> str:
    """Redis channel name for a filter topic."""
    prefix = prefix if prefix is not None else settings.redis_channel_prefix
    return f"{prefix}:{topic}" if prefix else topic


class RedisPushTransport:
    """PushTransport over Redis pub/sub."""

    def __init__(
        self,
        redis_client: aioredis.Redis | None = None,
        channel_prefix: str | None = None,
        close_timeout: float | None = None,
        decode_tracker: DecodeFailureTracker | None = None,
    ):
        """
        Initialize transport.

        Args:
            redis_client: Client to open pub/sub connections from. Created
                from settings.redis_url on first use if None.
            channel_prefix: Prefix for Redis channel names.
            close_timeout: Seconds per unsubscribe/close step.
            decode_tracker: Shared counter of rejected payloads.
        """
        self._redis = redis_client
        self._prefix = channel_prefix if channel_prefix is not None else settings.redis_channel_prefix
        self._close_timeout = (
            close_timeout if close_timeout is not None else settings.channel_close_timeout
        )
        self._decode_failures = decode_tracker or DecodeFailureTracker()

    @property
    def decode_failures(self) -> DecodeFailureTracker:
        return self._decode_failures

    def _client(self) -> aioredis.Redis:
        if self._redis is None:
            self._redis = aioredis.from_url(settings.redis_url, decode_responses=True)
        return self._redis

    async def open_channel(
        self,
        channel_filter: ChannelFilter,
        on_event: EventCallback,
    ) -> RedisChannelHandle:
        """
        Subscribe to a filter's topic and start its listener.

        Raises:
            ChannelOpenError: Redis refused or dropped the subscription.
        """
        channel = redis_channel(channel_filter.topic, self._prefix)
        pubsub = self._client().pubsub()
        try:
            await pubsub.subscribe(channel)
        except (redis.exceptions.RedisError, OSError) as e:
            await self._safe_close(pubsub, channel)
            raise ChannelOpenError(channel, str(e)) from e

        handle = RedisChannelHandle(channel=channel, channel_filter=channel_filter, pubsub=pubsub)
        handle.listener = asyncio.get_running_loop().create_task(
            self._listen(handle, on_event),
            name=f"listener:{channel}",
        )
        logger.debug("Redis channel opened", channel=channel)
        return handle

    async def _listen(self, handle: RedisChannelHandle, on_event: EventCallback) -> None:
        try:
            while True:
                try:
                    msg = await handle.pubsub.get_message(
                        ignore_subscribe_messages=True,
                        timeout=SyncConstants.LISTENER_POLL_TIMEOUT,
                    )
                except redis.exceptions.TimeoutError:
                    # Normal for pubsub - continue listening
                    continue

                if msg is None or msg.get("type") != "message":
                    continue

                try:
                    event = self._decode_message(msg, handle)
                except Exception as e:
                    # One bad message must not end the channel
                    handle.dropped += 1
                    self._decode_failures.record(type(e).__name__)
                    logger.error(
                        "Unexpected error decoding message",
                        channel=handle.channel,
                        error=str(e),
                        exc_info=True,
                    )
                    continue
                if event is None:
                    continue
                await self._deliver(event, handle, on_event)

        except asyncio.CancelledError:
            raise
        except (redis.exceptions.ConnectionError, OSError) as e:
            logger.warning(
                "Redis channel connection lost; waiting for reconnect",
                channel=handle.channel,
                error=str(e),
            )
        except Exception as e:
            logger.error(
                "Redis channel listener crashed",
                channel=handle.channel,
                error=str(e),
                exc_info=True,
            )

    def _decode_message(self, msg: Mapping[str, Any], handle: RedisChannelHandle) -> ChangeEvent | None:
        raw = msg.get("data")
        if isinstance(raw, (str, bytes)):
            size = len(raw.encode() if isinstance(raw, str) else raw)
            if size > SyncConstants.MAX_MESSAGE_BYTES:
                handle.dropped += 1
                self._decode_failures.record("oversized")
                logger.warning(
                    "Message exceeds size limit",
                    size=size,
                    limit=SyncConstants.MAX_MESSAGE_BYTES,
                    channel=handle.channel,
                )
                return None

        try:
            payload = json.loads(raw)
            event = decode_change_event(payload)
        except EventDecodeError as e:
            handle.dropped += 1
            self._decode_failures.record(e.reason)
            return None
        except (ValueError, TypeError):
            # JSONDecodeError and UnicodeDecodeError are both ValueErrors
            handle.dropped += 1
            self._decode_failures.record("invalid_json")
            return None
        except RecursionError:
            handle.dropped += 1
            self._decode_failures.record("too_deep")
            return None

        if not handle.channel_filter.matches(event):
            handle.dropped += 1
            logger.debug(
                "Dropped event outside channel filter",
                channel=handle.channel,
                collection=event.collection.value,
            )
            return None
        return event

    async def _deliver(
        self,
        event: ChangeEvent,
        handle: RedisChannelHandle,
        on_event: EventCallback,
    ) -> None:
        try:
            result = on_event(event)
            if inspect.isawaitable(result):
                await asyncio.wait_for(result, timeout=SyncConstants.EVENT_CALLBACK_TIMEOUT)
            handle.delivered += 1
        except asyncio.TimeoutError:
            handle.dropped += 1
            logger.error(
                "Event callback timed out - event dropped",
                channel=handle.channel,
                timeout=SyncConstants.EVENT_CALLBACK_TIMEOUT,
            )
        except Exception as e:
            handle.dropped += 1
            logger.error(
                "Error processing change event",
                channel=handle.channel,
                event_type=type(event).__name__,
                error=str(e),
                exc_info=True,
            )

    async def close_channel(self, handle: RedisChannelHandle) -> None:
        """
        Stop the listener, then unsubscribe and close with per-step timeouts.

        Every step is attempted even if an earlier one fails.

        Raises:
            ChannelCloseError: If unsubscribing or closing failed.
        """
        if handle.closed:
            return
        handle.closed = True

        listener = handle.listener
        if listener is not None and not listener.done():
            listener.cancel()
            try:
                await listener
            except asyncio.CancelledError:
                pass

        failures = await self._safe_close(handle.pubsub, handle.channel, unsubscribe=True)
        if failures:
            raise ChannelCloseError(handle.channel, "; ".join(failures))
        logger.debug("Redis channel closed", channel=handle.channel)

    async def _safe_close(self, pubsub: Any, channel: str, unsubscribe: bool = False) -> list[str]:
        failures: list[str] = []

        if unsubscribe:
            try:
                await asyncio.wait_for(pubsub.unsubscribe(channel), timeout=self._close_timeout)
            except asyncio.TimeoutError:
                failures.append("unsubscribe timed out")
                logger.warning("Pubsub unsubscribe timed out", channel=channel, timeout=self._close_timeout)
            except Exception as e:
                failures.append(f"unsubscribe failed: {e}")
                logger.warning("Error during pubsub unsubscribe", channel=channel, error=str(e))

        # Always attempt to close, even if unsubscribe failed
        try:
            await asyncio.wait_for(pubsub.aclose(), timeout=self._close_timeout)
        except asyncio.TimeoutError:
            failures.append("close timed out")
            logger.warning("Pubsub close timed out", channel=channel, timeout=self._close_timeout)
        except Exception as e:
            failures.append(f"close failed: {e}")
            logger.debug("Error closing pubsub", channel=channel, error=str(e))

        return failures


async def publish_change(
    redis_client: aioredis.Redis,
    topic: str,
    payload: Mapping[str, Any] | ChangeEvent,
    prefix: str | None = None,
) -> int:
    """
    Publish a change payload to a filter topic.

    Returns:
        Number of subscribers that received the message.
    """
    if isinstance(payload, ChangeEvent):
        payload = payload.to_payload()
    message = json.dumps(dict(payload), default=str)
    return await redis_client.publish(redis_channel(topic, prefix), message)
