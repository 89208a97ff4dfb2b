"""
Tests for RealtimeSession wiring.

Tests verify:
- Start resolves identity and opens the standard channels once
- Inbound events invalidate caches and fold request changes
- A college domain change re-scopes the mentor directory channel
- Sign-out and user switch tear down channels, identity and cache
- Failed opens are recovered by the reconnection supervisor
"""

import asyncio

import pytest

from campus_sync.components.cache.identity import AuthEvent, AuthEventKind, IdentityStatus
from campus_sync.components.cache.store import QueryCache
from campus_sync.components.events.channels import mentorship_offers, session_channels
from campus_sync.components.requests.service import CollaborationRequestService, list_key
from campus_sync.components.requests.transitions import Party, RequestStatus
from campus_sync.reconnection_supervisor import ReconnectionSupervisor
from campus_sync.session import RealtimeSession
from tests.conftest import DOMAIN, MENTOR, STUDENT
from tests.fakes import identity_payload, request_change


async def _noop_sleep(delay):
    await asyncio.sleep(0)


@pytest.fixture
def session(transport, identity_fetcher, backend):
    session = RealtimeSession(transport, identity_fetcher, backend, max_channels=16)
    session.supervisor = ReconnectionSupervisor(session.registry, cooldown_seconds=0.0, sleep=_noop_sleep)
    return session


def _channel_names(user_id, domain):
    return sorted(spec.name for spec in session_channels(user_id, domain))


class TestStart:
    """Session start."""

    @pytest.mark.asyncio
    async def test_opens_standard_channels(self, session, transport):
        snapshot = await session.start(STUDENT)

        assert snapshot.college_domain == DOMAIN
        assert session.started
        assert sorted(session.registry.get_active_channels()) == _channel_names(STUDENT, DOMAIN)
        assert len(transport.live_handles()) == 6
        assert session.router.context.viewer_id == STUDENT

        await session.close()

    @pytest.mark.asyncio
    async def test_start_twice_for_same_user_opens_nothing_new(self, session, transport):
        await session.start(STUDENT)
        opens = transport.open_calls

        await session.start(STUDENT)

        assert transport.open_calls == opens
        assert session.registry.size == 6

        await session.close()

    @pytest.mark.asyncio
    async def test_no_profile_skips_domain_channel(self, session, identity_fetcher):
        identity_fetcher.payload = {"error": "no_profile"}

        assert await session.start(STUDENT) is None

        assert session.identity.needs_onboarding
        assert not any(name.startswith("mentorship-offers-") for name in session.registry.get_active_channels())

        await session.close()

    @pytest.mark.asyncio
    async def test_failed_open_is_recovered_by_supervisor(self, session, transport):
        failing = session_channels(STUDENT, DOMAIN)[0]
        transport.fail_topics.add(failing.filter.topic)

        await session.start(STUDENT)
        assert session.registry.get_pending_channels() == [failing.name]

        transport.fail_topics.clear()
        while session.registry.get_pending_channels():
            await asyncio.sleep(0)

        assert session.registry.has(failing.name)
        assert len(transport.live_handles()) == 6

        await session.close()


class TestEvents:
    """Inbound event handling."""

    @pytest.mark.asyncio
    async def test_request_change_folds_and_invalidates(self, session, transport, backend, draft):
        await session.start(STUDENT)
        request = await session.requests.create_request(draft, role="Student")
        await session.requests.list_requests(STUDENT, Party.REQUESTER)

        # The mentor accepts from their own device
        await CollaborationRequestService(backend, QueryCache()).accept(request.id, MENTOR)
        delivered = transport.deliver(request_change(backend.records[request.id]))

        assert delivered == 1
        assert session.requests.known(request.id).status is RequestStatus.ACCEPTED
        assert not session.store.is_fresh(list_key(STUDENT, Party.REQUESTER))
        assert session.get_stats()["events_received"] == 1

        await session.close()

    @pytest.mark.asyncio
    async def test_domain_change_rescopes_directory_channel(self, session, transport, identity_fetcher):
        await session.start(STUDENT)
        old_channel = mentorship_offers(DOMAIN).name
        new_channel = mentorship_offers("du.ac.in").name

        identity_fetcher.payload = identity_payload(STUDENT, college_domain="du.ac.in")
        transport.deliver({
            "collection": "profiles",
            "operation": "UPDATE",
            "before": {"id": STUDENT, "college_domain": DOMAIN},
            "after": {"id": STUDENT, "college_domain": "du.ac.in"},
        })
        snapshot = await session.identity.get_identity()
        while not session.registry.has(new_channel):
            await asyncio.sleep(0)

        assert snapshot.college_domain == "du.ac.in"
        assert not session.registry.has(old_channel)
        assert session.college_domain == "du.ac.in"
        assert session.router.context.college_domain == "du.ac.in"

        await session.close()

    @pytest.mark.asyncio
    async def test_irrelevant_profile_change_keeps_identity_cached(self, session, transport, identity_fetcher):
        await session.start(STUDENT)
        calls = identity_fetcher.calls

        transport.deliver({
            "collection": "profiles",
            "operation": "UPDATE",
            "before": {"id": STUDENT, "last_active_at": "2026-10-01T10:00:00Z"},
            "after": {"id": STUDENT, "last_active_at": "2026-10-01T10:05:00Z"},
        })
        await session.identity.get_identity()

        assert identity_fetcher.calls == calls

        await session.close()


class TestTeardown:
    """Sign-out, user switch and close."""

    @pytest.mark.asyncio
    async def test_sign_out_tears_everything_down(self, session, transport):
        await session.start(STUDENT)

        await session.on_auth_event(AuthEvent(AuthEventKind.SIGNED_OUT))

        assert session.identity.state is IdentityStatus.SIGNED_OUT
        assert session.registry.size == 0
        assert transport.live_handles() == []
        assert session.store.size == 0
        assert session.user_id is None
        assert not session.started

    @pytest.mark.asyncio
    async def test_switching_user_replaces_channels(self, session, transport, identity_fetcher):
        await session.start(STUDENT)
        identity_fetcher.payload = identity_payload("student-2")

        snapshot = await session.on_auth_event(AuthEvent(AuthEventKind.SIGNED_IN, "student-2"))

        assert snapshot.user_id == "student-2"
        assert sorted(session.registry.get_active_channels()) == _channel_names("student-2", DOMAIN)
        assert len(transport.live_handles()) == 6

        await session.close()

    @pytest.mark.asyncio
    async def test_token_refresh_keeps_channels(self, session, transport, identity_fetcher):
        await session.start(STUDENT)
        opens = transport.open_calls

        await session.on_auth_event(AuthEvent(AuthEventKind.TOKEN_REFRESHED, STUDENT))

        assert transport.open_calls == opens
        assert identity_fetcher.calls == 2

        await session.close()

    @pytest.mark.asyncio
    async def test_close_is_idempotent_and_final(self, session, transport):
        async with session:
            await session.start(STUDENT)

        await session.close()

        assert transport.live_handles() == []
        with pytest.raises(RuntimeError):
            await session.start(STUDENT)

    @pytest.mark.asyncio
    async def test_going_offline_suppresses_onboarding_redirect(self, session, identity_fetcher):
        identity_fetcher.payload = {"error": "no_profile"}
        await session.start(STUDENT)

        session.on_connectivity_change(False)

        assert session.identity.needs_onboarding is False

        await session.close()
