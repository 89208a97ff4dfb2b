"""
Tests for CollaborationRequestService against the in-memory backend.

Tests verify:
- Creation gates: role, self-request, one active request per pair
- Concurrent creates for one pair from two devices yield one request
- Party ownership of every transition and of feedback fields
- A stale local copy is corrected from the server's answer
- Capacity, suggestions, expiry and cache invalidation after writes
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from hypothesis import given, settings, strategies as st

from campus_sync.components.cache.store import QueryCache
from campus_sync.components.events.types import decode_change_event
from campus_sync.components.requests.models import RequestDraft
from campus_sync.components.requests.service import (
    CollaborationRequestService,
    expires_at,
    list_key,
    pending_count_key,
    request_key,
)
from campus_sync.components.requests.transitions import (
    REQUEST_TRANSITIONS,
    TERMINAL_STATUSES,
    Party,
    RequestStatus,
)
from campus_sync.shared.exceptions import (
    CapacityExhaustedError,
    DuplicateActiveRequestError,
    FeedbackNotAllowedError,
    FeedbackOwnershipError,
    InvalidRequestError,
    NotAPartyError,
    RequestNotFoundError,
    RoleNotPermittedError,
    SyncError,
    TerminalStateError,
    WrongPartyError,
)
from tests.conftest import DOMAIN, MENTOR, OTHER_MENTOR, STUDENT
from tests.fakes import InMemoryRequestBackend, request_change

STUDENT_ROLE = "Student"


def _draft(requester=STUDENT, counterparty=MENTOR):
    return RequestDraft(
        requester_id=requester,
        counterparty_id=counterparty,
        college_domain=DOMAIN,
        topic="Internship advice",
    )


@pytest.fixture
def mentor_service(backend):
    """Second device: the counterparty's client, with its own cache."""
    return CollaborationRequestService(backend, QueryCache())


class TestCreateRequest:
    """Creation gates."""

    @pytest.mark.asyncio
    async def test_creates_pending_request(self, service, store, draft):
        request = await service.create_request(draft, role=STUDENT_ROLE)

        assert request.status is RequestStatus.PENDING
        assert service.known(request.id) == request
        assert store.get(request_key(request.id)) == request
        assert service.has_active_request(STUDENT)

    @pytest.mark.asyncio
    async def test_non_student_role_rejected_before_backend(self, service, backend, draft):
        with pytest.raises(RoleNotPermittedError):
            await service.create_request(draft, role="Alumni")

        assert backend.calls == []

    @pytest.mark.asyncio
    async def test_self_request_rejected(self, service, backend):
        with pytest.raises(InvalidRequestError):
            await service.create_request(_draft(STUDENT, STUDENT), role=STUDENT_ROLE)

        assert backend.calls == []

    @pytest.mark.asyncio
    async def test_known_active_pair_rejected_locally(self, service, backend, draft):
        await service.create_request(draft, role=STUDENT_ROLE)

        with pytest.raises(DuplicateActiveRequestError):
            await service.create_request(draft, role=STUDENT_ROLE)

        assert backend.calls == ["create"]

    @pytest.mark.asyncio
    async def test_unknown_active_pair_rejected_by_backend(self, service, backend, draft):
        await CollaborationRequestService(backend, QueryCache()).create_request(draft, role=STUDENT_ROLE)

        with pytest.raises(DuplicateActiveRequestError):
            await service.create_request(draft, role=STUDENT_ROLE)

        assert len(backend.records) == 1

    @pytest.mark.asyncio
    async def test_concurrent_creates_from_two_devices_yield_one_request(self, backend, draft):
        phone = CollaborationRequestService(backend, QueryCache())
        laptop = CollaborationRequestService(backend, QueryCache())

        results = await asyncio.gather(
            phone.create_request(draft, role=STUDENT_ROLE),
            laptop.create_request(draft, role=STUDENT_ROLE),
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, Exception)]
        assert len(backend.records) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], DuplicateActiveRequestError)

    @pytest.mark.asyncio
    async def test_new_request_allowed_after_terminal(self, service, mentor_service, backend, draft):
        first = await service.create_request(draft, role=STUDENT_ROLE)
        await mentor_service.reject(first.id, MENTOR)
        service.apply_change(decode_change_event(request_change(backend.records[first.id])))

        second = await service.create_request(draft, role=STUDENT_ROLE)

        assert second.id != first.id
        assert second.status is RequestStatus.PENDING


class TestTransitions:
    """Party ownership and lifecycle."""

    @pytest.mark.asyncio
    async def test_counterparty_accepts_and_completes(self, service, draft):
        request = await service.create_request(draft, role=STUDENT_ROLE)

        accepted = await service.accept(request.id, MENTOR)
        completed = await service.complete(request.id, MENTOR)

        assert accepted.status is RequestStatus.ACCEPTED
        assert accepted.accepted_at is not None
        assert completed.status is RequestStatus.COMPLETED
        assert not service.has_active_request(STUDENT)

    @pytest.mark.asyncio
    async def test_requester_cannot_accept(self, service, backend, draft):
        request = await service.create_request(draft, role=STUDENT_ROLE)

        with pytest.raises(WrongPartyError):
            await service.accept(request.id, STUDENT)

        assert "transition:accepted" not in backend.calls

    @pytest.mark.asyncio
    async def test_outsider_cannot_transition(self, service, backend, draft):
        request = await service.create_request(draft, role=STUDENT_ROLE)

        with pytest.raises(NotAPartyError):
            await service.reject(request.id, OTHER_MENTOR)

        assert backend.records[request.id]["status"] == "pending"

    @pytest.mark.asyncio
    async def test_backend_permission_denied_maps_to_not_a_party(self, service, backend, draft):
        request = await service.create_request(draft, role=STUDENT_ROLE)
        # Server re-assigned the counterparty behind our back
        backend.records[request.id]["counterparty_id"] = OTHER_MENTOR

        with pytest.raises(NotAPartyError):
            await service.accept(request.id, MENTOR)

    @pytest.mark.asyncio
    async def test_cancel_then_accept_from_stale_device(self, service, mentor_service, draft):
        request = await service.create_request(draft, role=STUDENT_ROLE)
        view = await mentor_service.list_requests(MENTOR, Party.COUNTERPARTY)
        assert view.pending[0].id == request.id

        await service.cancel(request.id, STUDENT)

        with pytest.raises(TerminalStateError):
            await mentor_service.accept(request.id, MENTOR)

        assert mentor_service.known(request.id).status is RequestStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_capacity_exhausted(self, store, draft):
        backend = InMemoryRequestBackend(capacity={MENTOR: 1})
        service = CollaborationRequestService(backend, store)
        first = await service.create_request(draft, role=STUDENT_ROLE)
        second = await service.create_request(_draft("student-2"), role=STUDENT_ROLE)

        await service.accept(first.id, MENTOR)

        with pytest.raises(CapacityExhaustedError):
            await service.accept(second.id, MENTOR)
        assert service.known(second.id).status is RequestStatus.PENDING

    @pytest.mark.asyncio
    async def test_reject_with_suggestion(self, service, draft):
        request = await service.create_request(draft, role=STUDENT_ROLE)

        rejected = await service.reject(request.id, MENTOR, suggested_counterparty_id=OTHER_MENTOR)

        assert rejected.suggested_counterparty_id == OTHER_MENTOR
        assert service.suggested_alternatives(STUDENT) == [rejected]

    @pytest.mark.asyncio
    async def test_suggestion_must_be_outside_pair(self, service, draft):
        request = await service.create_request(draft, role=STUDENT_ROLE)

        with pytest.raises(InvalidRequestError):
            await service.reject(request.id, MENTOR, suggested_counterparty_id=STUDENT)

    @pytest.mark.asyncio
    async def test_unknown_request_not_found(self, service):
        with pytest.raises(RequestNotFoundError):
            await service.accept("req-404", MENTOR)


class TestFeedback:
    """Feedback fields."""

    @pytest.mark.asyncio
    async def test_each_party_sets_own_field(self, service, draft):
        request = await service.create_request(draft, role=STUDENT_ROLE)
        await service.accept(request.id, MENTOR)
        await service.complete(request.id, MENTOR)

        await service.submit_feedback(request.id, STUDENT, Party.REQUESTER, helpful=True)
        updated = await service.submit_feedback(request.id, MENTOR, Party.COUNTERPARTY, helpful=False)

        assert updated.requester_feedback is True
        assert updated.counterparty_feedback is False

    @pytest.mark.asyncio
    async def test_cannot_write_other_partys_field(self, service, backend, draft):
        request = await service.create_request(draft, role=STUDENT_ROLE)
        await service.accept(request.id, MENTOR)
        await service.complete(request.id, MENTOR)

        with pytest.raises(FeedbackOwnershipError):
            await service.submit_feedback(request.id, STUDENT, Party.COUNTERPARTY, helpful=True)

        assert backend.records[request.id].get("counterparty_feedback") is None

    @pytest.mark.asyncio
    async def test_feedback_requires_completed(self, service, draft):
        request = await service.create_request(draft, role=STUDENT_ROLE)

        with pytest.raises(FeedbackNotAllowedError):
            await service.submit_feedback(request.id, STUDENT, Party.REQUESTER, helpful=True)


class TestKnownView:
    """Folding notifications and list reads."""

    @pytest.mark.asyncio
    async def test_stale_notification_is_ignored(self, service, backend, draft):
        request = await service.create_request(draft, role=STUDENT_ROLE)
        pending_copy = dict(backend.records[request.id])
        await service.accept(request.id, MENTOR)

        result = service.apply_change(decode_change_event(request_change(pending_copy)))

        assert result is None
        assert service.known(request.id).status is RequestStatus.ACCEPTED

    @pytest.mark.asyncio
    async def test_unreachable_status_is_ignored_even_if_newer(self, service, backend, draft):
        request = await service.create_request(draft, role=STUDENT_ROLE)
        await service.accept(request.id, MENTOR)
        regressed = dict(backend.records[request.id])
        regressed["status"] = "pending"
        regressed["updated_at"] = regressed["updated_at"] + timedelta(minutes=5)

        assert service.apply_change(decode_change_event(request_change(regressed))) is None

    @pytest.mark.asyncio
    async def test_fresher_notification_is_applied(self, service, mentor_service, backend, draft):
        request = await service.create_request(draft, role=STUDENT_ROLE)
        await mentor_service.accept(request.id, MENTOR)

        applied = service.apply_change(decode_change_event(request_change(backend.records[request.id])))

        assert applied.status is RequestStatus.ACCEPTED
        assert service.known(request.id).status is RequestStatus.ACCEPTED

    def test_delete_notification_is_ignored(self, service):
        event = decode_change_event({
            "collection": "mentorship_requests",
            "operation": "DELETE",
            "before": {"id": "req-1", "requester_id": STUDENT, "counterparty_id": MENTOR, "status": "pending"},
        })

        assert service.apply_change(event) is None

    @pytest.mark.asyncio
    async def test_list_failure_returns_last_known_good(self, service, backend, store, draft):
        await service.create_request(draft, role=STUDENT_ROLE)
        first = await service.list_requests(STUDENT, Party.REQUESTER)
        backend.list_for = AsyncMock(side_effect=ConnectionError("offline"))
        store.invalidate(list_key(STUDENT, Party.REQUESTER))

        view = await service.list_requests(STUDENT, Party.REQUESTER)

        assert view.degraded
        assert view.requests == first.requests
        assert not first.degraded

    @pytest.mark.asyncio
    async def test_writes_invalidate_both_parties_lists(self, service, store, draft):
        request = await service.create_request(draft, role=STUDENT_ROLE)
        await service.list_requests(MENTOR, Party.COUNTERPARTY)
        assert await service.pending_count(MENTOR) == 1

        await service.accept(request.id, MENTOR)

        assert not store.is_fresh(list_key(MENTOR, Party.COUNTERPARTY))
        assert not store.is_fresh(pending_count_key(MENTOR))
        assert await service.pending_count(MENTOR) == 0


class TestExpiry:
    """Server-side auto-expiry of pending requests."""

    @pytest.mark.asyncio
    async def test_expires_at_only_for_pending(self, service, draft):
        request = await service.create_request(draft, role=STUDENT_ROLE)

        assert expires_at(request, expiry_days=14) == request.created_at + timedelta(days=14)

        accepted = await service.accept(request.id, MENTOR)
        assert expires_at(accepted) is None

    @pytest.mark.asyncio
    async def test_expired_request_folds_in_as_cancelled(self, service, backend, draft):
        request = await service.create_request(draft, role=STUDENT_ROLE)

        expired = backend.expire_stale(request.created_at + timedelta(days=14))
        applied = service.apply_change(decode_change_event(request_change(backend.records[request.id])))

        assert expired == [request.id]
        assert applied.status is RequestStatus.CANCELLED
        assert applied.auto_expired is True
        assert not service.has_active_request(STUDENT)


class TestLifecycleProperty:
    """Property: any interleaving of actions keeps the record on table edges."""

    @given(
        actions=st.lists(
            st.tuples(
                st.sampled_from(["accept", "reject", "cancel", "complete"]),
                st.sampled_from([STUDENT, MENTOR, OTHER_MENTOR]),
                st.booleans(),  # act from the mentor's possibly stale device
            ),
            max_size=12,
        )
    )
    @settings(max_examples=60, deadline=None)
    def test_backend_status_follows_edges(self, actions):
        async def scenario():
            backend = InMemoryRequestBackend()
            student_device = CollaborationRequestService(backend, QueryCache())
            mentor_device = CollaborationRequestService(backend, QueryCache())
            request = await student_device.create_request(_draft(), role=STUDENT_ROLE)
            await mentor_device.get_request(request.id)

            previous = RequestStatus.PENDING
            for action, actor, from_mentor_device in actions:
                device = mentor_device if from_mentor_device else student_device
                try:
                    await getattr(device, action)(request.id, actor)
                except SyncError:
                    pass
                current = RequestStatus(backend.records[request.id]["status"])
                if current is not previous:
                    assert previous not in TERMINAL_STATUSES
                    assert current in REQUEST_TRANSITIONS[previous]
                previous = current

        asyncio.run(scenario())
