"""
Tests for the Redis pub/sub push transport.

Tests verify:
- Channels subscribe to the prefixed filter topic
- Listener decodes, filters and delivers events; bad payloads are dropped
  without ending the listener
- A failing callback does not stop the listener
- Open failures surface as ChannelOpenError after cleanup
- Close runs every step and reports failures as ChannelCloseError
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
import redis.exceptions

from campus_sync import redis_transport as redis_transport_module
from campus_sync.components.core.constants import SyncConstants
from campus_sync.components.events.channels import ChannelFilter
from campus_sync.components.events.types import Collection, ProfileChange, decode_change_event
from campus_sync.redis_transport import RedisPushTransport, publish_change, redis_channel
from campus_sync.shared.exceptions import ChannelCloseError, ChannelOpenError

PROFILE_FILTER = ChannelFilter(Collection.PROFILES, "id", "u1")


class FakePubSub:
    """Queue-backed stand-in for redis.asyncio.client.PubSub."""

    def __init__(self):
        self.queue: asyncio.Queue = asyncio.Queue()
        self.subscribe = AsyncMock()
        self.unsubscribe = AsyncMock()
        self.aclose = AsyncMock()

    async def get_message(self, ignore_subscribe_messages=False, timeout=None):
        item = await self.queue.get()
        if isinstance(item, BaseException):
            raise item
        return item

    def push(self, payload, raw=False):
        data = payload if raw else json.dumps(payload)
        self.queue.put_nowait({"type": "message", "channel": "test", "data": data})


def _profile_payload(user_id="u1", **after):
    return {
        "collection": "profiles",
        "operation": "UPDATE",
        "before": {"id": user_id, "role": "Student"},
        "after": {"id": user_id, "role": "Alumni", **after},
    }


async def _until(condition, limit=200):
    for _ in range(limit):
        if condition():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


@pytest.fixture
def pubsub():
    return FakePubSub()


@pytest.fixture
def redis_client(pubsub):
    client = MagicMock()
    client.pubsub.return_value = pubsub
    client.publish = AsyncMock(return_value=1)
    return client


@pytest.fixture
def redis_transport(redis_client):
    return RedisPushTransport(redis_client, channel_prefix="test", close_timeout=0.05)


class TestOpenChannel:
    """Subscription setup."""

    @pytest.mark.asyncio
    async def test_subscribes_to_prefixed_topic(self, redis_transport, pubsub):
        handle = await redis_transport.open_channel(PROFILE_FILTER, lambda e: None)

        pubsub.subscribe.assert_awaited_once_with("test:profiles:id=eq.u1")
        assert handle.channel == "test:profiles:id=eq.u1"
        assert handle.alive

        await redis_transport.close_channel(handle)

    @pytest.mark.asyncio
    async def test_subscribe_failure_raises_open_error_and_closes(self, redis_transport, pubsub):
        pubsub.subscribe.side_effect = redis.exceptions.ConnectionError("connection refused")

        with pytest.raises(ChannelOpenError):
            await redis_transport.open_channel(PROFILE_FILTER, lambda e: None)

        pubsub.aclose.assert_awaited_once()

    def test_channel_name_without_prefix(self):
        assert redis_channel("connections", "") == "connections"
        assert redis_channel("connections", "rt") == "rt:connections"


class TestListener:
    """Decoding and delivery."""

    @pytest.mark.asyncio
    async def test_delivers_decoded_event(self, redis_transport, pubsub):
        received = []
        handle = await redis_transport.open_channel(PROFILE_FILTER, received.append)

        pubsub.push(_profile_payload())
        await _until(lambda: handle.delivered == 1)

        assert isinstance(received[0], ProfileChange)
        assert received[0].changed_fields() == frozenset({"role"})

        await redis_transport.close_channel(handle)

    @pytest.mark.asyncio
    async def test_async_callback_is_awaited(self, redis_transport, pubsub):
        received = []

        async def on_event(event):
            await asyncio.sleep(0)
            received.append(event)

        handle = await redis_transport.open_channel(PROFILE_FILTER, on_event)
        pubsub.push(_profile_payload())
        await _until(lambda: handle.delivered == 1)

        assert len(received) == 1
        await redis_transport.close_channel(handle)

    @pytest.mark.asyncio
    async def test_bad_payloads_are_dropped(self, redis_transport, pubsub):
        received = []
        handle = await redis_transport.open_channel(PROFILE_FILTER, received.append)

        pubsub.push("{not json", raw=True)
        pubsub.push({"collection": "posts", "operation": "INSERT", "after": {"id": "1"}})
        pubsub.push("x" * (SyncConstants.MAX_MESSAGE_BYTES + 1), raw=True)
        pubsub.push(_profile_payload())
        await _until(lambda: handle.delivered == 1)

        assert handle.dropped == 3
        assert len(received) == 1
        by_reason = redis_transport.decode_failures.get_metrics()["decode_failures_by_reason"]
        assert by_reason["invalid_json"] == 1
        assert by_reason["oversized"] == 1

        await redis_transport.close_channel(handle)

    @pytest.mark.asyncio
    async def test_undecodable_bytes_and_deep_nesting_keep_channel_alive(self, redis_transport, pubsub):
        received = []
        handle = await redis_transport.open_channel(PROFILE_FILTER, received.append)

        pubsub.push(b"\xff\xfe\xfa", raw=True)
        pubsub.push("[" * 5000 + "]" * 5000, raw=True)
        pubsub.push(_profile_payload())
        await _until(lambda: handle.delivered == 1)

        assert handle.alive
        assert handle.dropped == 2
        assert len(received) == 1
        by_reason = redis_transport.decode_failures.get_metrics()["decode_failures_by_reason"]
        assert by_reason["invalid_json"] == 1
        assert by_reason["too_deep"] == 1

        await redis_transport.close_channel(handle)

    @pytest.mark.asyncio
    async def test_unexpected_decode_error_skips_only_that_message(self, redis_transport, pubsub, monkeypatch):
        real_decode = redis_transport_module.decode_change_event
        calls = []

        def flaky_decode(payload):
            calls.append(payload)
            if len(calls) == 1:
                raise RuntimeError("decoder bug")
            return real_decode(payload)

        monkeypatch.setattr(redis_transport_module, "decode_change_event", flaky_decode)
        received = []
        handle = await redis_transport.open_channel(PROFILE_FILTER, received.append)

        pubsub.push(_profile_payload())
        pubsub.push(_profile_payload(bio="second"))
        await _until(lambda: handle.delivered == 1)

        assert handle.alive
        assert handle.dropped == 1
        assert received[0].after["bio"] == "second"

        await redis_transport.close_channel(handle)

    @pytest.mark.asyncio
    async def test_event_outside_filter_is_dropped(self, redis_transport, pubsub):
        received = []
        handle = await redis_transport.open_channel(PROFILE_FILTER, received.append)

        pubsub.push(_profile_payload(user_id="u2"))
        pubsub.push(_profile_payload())
        await _until(lambda: handle.delivered == 1)

        assert [e.user_id for e in received] == ["u1"]
        assert handle.dropped == 1

        await redis_transport.close_channel(handle)

    @pytest.mark.asyncio
    async def test_failing_callback_keeps_listener_running(self, redis_transport, pubsub):
        calls = []

        def on_event(event):
            calls.append(event)
            if len(calls) == 1:
                raise RuntimeError("handler bug")

        handle = await redis_transport.open_channel(PROFILE_FILTER, on_event)
        pubsub.push(_profile_payload())
        pubsub.push(_profile_payload(bio="second"))
        await _until(lambda: handle.delivered == 1)

        assert len(calls) == 2
        assert handle.dropped == 1
        assert handle.alive

        await redis_transport.close_channel(handle)

    @pytest.mark.asyncio
    async def test_connection_loss_ends_listener(self, redis_transport, pubsub):
        handle = await redis_transport.open_channel(PROFILE_FILTER, lambda e: None)

        pubsub.queue.put_nowait(redis.exceptions.ConnectionError("connection reset"))
        await _until(lambda: handle.listener.done())

        assert not handle.alive
        await redis_transport.close_channel(handle)


class TestCloseChannel:
    """Teardown."""

    @pytest.mark.asyncio
    async def test_close_cancels_listener_and_unsubscribes(self, redis_transport, pubsub):
        handle = await redis_transport.open_channel(PROFILE_FILTER, lambda e: None)

        await redis_transport.close_channel(handle)

        assert handle.listener.cancelled()
        pubsub.unsubscribe.assert_awaited_once_with(handle.channel)
        pubsub.aclose.assert_awaited_once()
        assert not handle.alive

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, redis_transport, pubsub):
        handle = await redis_transport.open_channel(PROFILE_FILTER, lambda e: None)

        await redis_transport.close_channel(handle)
        await redis_transport.close_channel(handle)

        assert pubsub.unsubscribe.await_count == 1

    @pytest.mark.asyncio
    async def test_unsubscribe_failure_still_closes(self, redis_transport, pubsub):
        pubsub.unsubscribe.side_effect = redis.exceptions.ConnectionError("gone")
        handle = await redis_transport.open_channel(PROFILE_FILTER, lambda e: None)

        with pytest.raises(ChannelCloseError, match="unsubscribe failed"):
            await redis_transport.close_channel(handle)

        pubsub.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_hanging_close_times_out(self, redis_transport, pubsub):
        async def hang():
            await asyncio.Event().wait()

        pubsub.aclose = AsyncMock(side_effect=hang)
        handle = await redis_transport.open_channel(PROFILE_FILTER, lambda e: None)

        with pytest.raises(ChannelCloseError, match="close timed out"):
            await redis_transport.close_channel(handle)


class TestPublishChange:
    """Server-side publishing helper."""

    @pytest.mark.asyncio
    async def test_publishes_event_as_json(self, redis_client):
        event = decode_change_event(_profile_payload())

        receivers = await publish_change(redis_client, PROFILE_FILTER.topic, event, prefix="test")

        assert receivers == 1
        channel, message = redis_client.publish.await_args.args
        assert channel == "test:profiles:id=eq.u1"
        assert dict(decode_change_event(json.loads(message)).after) == dict(event.after)
