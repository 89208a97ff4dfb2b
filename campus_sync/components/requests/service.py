"""
Collaboration request service.

Client side of the mentorship request workflow. Every mutation is checked
locally first (same guards the server trigger runs) and then sent to the
backend, whose answer is authoritative. A backend rejection after a passing
local check means our view was stale: the record is re-read and the
rejection is reported as the domain error the fresh record explains.

Usage:
    service = CollaborationRequestService(backend, store)
    request = await service.create_request(draft, role=identity.role)
    await service.accept(request.id, actor_id=mentor_id)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Iterable, Mapping, NoReturn, Protocol

from pydantic import ValidationError

from campus_sync.components.cache.store import CacheKey, QueryCache
from campus_sync.components.core.constants import CacheNamespace
from campus_sync.components.events.types import MentorshipRequestChange, Operation
from campus_sync.components.requests.models import CollaborationRequest, RequestDraft
from campus_sync.components.requests.transitions import (
    REQUEST_TRANSITIONS,
    Party,
    RequestStatus,
    can_request_collaboration,
    check_feedback,
    check_transition,
)
from campus_sync.shared.config.logging import audit_request_event, get_logger, mask_user_id
from campus_sync.shared.config.settings import settings
from campus_sync.shared.exceptions import (
    CapacityExhaustedError,
    DuplicateActiveRequestError,
    FeedbackNotAllowedError,
    InvalidRequestError,
    InvalidTransitionError,
    NotAPartyError,
    RequestFetchError,
    RequestNotFoundError,
    RoleNotPermittedError,
)

logger = get_logger(__name__)

Record = Mapping[str, Any]


class RejectionCode(str, Enum):
    """Why the backend refused a write."""

    UNIQUE_VIOLATION = "unique_violation"  # Active request already exists for the pair
    TRANSITION_GUARD = "transition_guard"  # Status trigger refused the move
    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"  # Row-level policy: not a party
    CAPACITY = "capacity"  # Counterparty has no free slots


class BackendRejection(Exception):
    """Raised by a RequestBackend when the server refuses a write."""

    def __init__(self, code: RejectionCode, message: str = ""):
        self.code = code
        self.message = message
        super().__init__(f"{code.value}: {message}" if message else code.value)


class RequestBackend(Protocol):
    """Server API for collaboration requests. Returns raw records."""

    async def create(self, draft: RequestDraft) -> Record: ...

    async def transition(
        self,
        request_id: str,
        actor_id: str,
        to_status: RequestStatus,
        suggested_counterparty_id: str | None = None,
    ) -> Record: ...

    async def submit_feedback(
        self, request_id: str, actor_id: str, field: str, helpful: bool
    ) -> Record: ...

    async def get(self, request_id: str) -> Record | None: ...

    async def list_for(self, user_id: str, party: Party) -> list[Record]: ...


@dataclass(frozen=True, slots=True)
class RequestListView:
    """A request list as last known, with the refresh error if any."""

    requests: tuple[CollaborationRequest, ...]
    error: RequestFetchError | None = None

    @property
    def degraded(self) -> bool:
        return self.error is not None

    @property
    def pending(self) -> tuple[CollaborationRequest, ...]:
        return tuple(r for r in self.requests if r.status is RequestStatus.PENDING)

    @property
    def active(self) -> tuple[CollaborationRequest, ...]:
        return tuple(r for r in self.requests if r.is_active)


def _reachable(status: RequestStatus) -> frozenset[RequestStatus]:
    """Every status reachable from `status` in one or more steps."""
    seen: set[RequestStatus] = set()
    frontier = [status]
    while frontier:
        for nxt in REQUEST_TRANSITIONS[frontier.pop()]:
            if nxt not in seen:
                seen.add(nxt)
                frontier.append(nxt)
    return frozenset(seen)


def list_key(user_id: str, party: Party) -> CacheKey:
    return (CacheNamespace.MENTORSHIP, "requests", party.value, user_id)


def pending_count_key(user_id: str) -> CacheKey:
    return (CacheNamespace.MENTORSHIP, "pending-count", user_id)


def request_key(request_id: str) -> CacheKey:
    return (CacheNamespace.MENTORSHIP, "request", request_id)


class CollaborationRequestService:
    """
    Guards, sends and tracks collaboration request transitions.

    Keeps the freshest known copy of every request it has seen, from
    mutation responses, list reads and change notifications.
    """

    def __init__(
        self,
        backend: RequestBackend,
        store: QueryCache,
        list_ttl: float | None = None,
    ):
        self._backend = backend
        self._store = store
        self._list_ttl = list_ttl if list_ttl is not None else settings.request_list_ttl_seconds
        self._known: dict[str, CollaborationRequest] = {}

    # =========================================================================
    # Known records
    # =========================================================================

    def known(self, request_id: str) -> CollaborationRequest | None:
        return self._known.get(request_id)

    def known_requests(self) -> list[CollaborationRequest]:
        return list(self._known.values())

    def active_between(self, user_a: str, user_b: str) -> CollaborationRequest | None:
        """The known active request for an unordered pair, if any."""
        pair = frozenset({user_a, user_b})
        for request in self._known.values():
            if request.is_active and request.pair == pair:
                return request
        return None

    def has_active_request(self, user_id: str) -> bool:
        """Whether the user has any pending or accepted request as requester."""
        return any(
            r.is_active and r.requester_id == user_id for r in self._known.values()
        )

    def suggested_alternatives(self, user_id: str) -> list[CollaborationRequest]:
        """Rejected requests where the counterparty pointed at someone else."""
        return [
            r for r in self._known.values()
            if r.requester_id == user_id
            and r.status is RequestStatus.REJECTED
            and r.suggested_counterparty_id
        ]

    def _is_stale(self, incoming: CollaborationRequest, known: CollaborationRequest) -> bool:
        if (
            incoming.updated_at is not None
            and known.updated_at is not None
            and incoming.updated_at < known.updated_at
        ):
            return True
        if incoming.status is not known.status and incoming.status not in _reachable(known.status):
            return True
        return False

    def _remember(self, request: CollaborationRequest) -> bool:
        """Store a copy unless it is older than the one already known."""
        known = self._known.get(request.id)
        if known is not None and self._is_stale(request, known):
            logger.debug(
                "Ignored stale request copy",
                request_id=request.id,
                known_status=known.status.value,
                incoming_status=request.status.value,
            )
            return False
        self._known[request.id] = request
        return True

    def apply_change(self, event: MentorshipRequestChange) -> CollaborationRequest | None:
        """
        Fold a change notification into the known view.

        Returns:
            The request now known, or None if the notification was ignored
            (delete, malformed, or older than the known copy).
        """
        if event.operation is Operation.DELETE or event.after is None:
            return None
        try:
            incoming = CollaborationRequest.from_record(event.after)
        except ValidationError as e:
            logger.warning("Ignored malformed request notification", error=str(e))
            return None
        if not self._remember(incoming):
            return None
        return incoming

    # =========================================================================
    # Reads
    # =========================================================================

    async def list_requests(self, user_id: str, party: Party) -> RequestListView:
        """
        Requests where the user is recorded on the given side.

        On a failed refresh the last-known-good list is returned with the
        error attached.
        """
        key = list_key(user_id, party)

        async def load() -> tuple[CollaborationRequest, ...]:
            try:
                records = await self._backend.list_for(user_id, party)
                return tuple(CollaborationRequest.from_record(r) for r in records)
            except RequestFetchError:
                raise
            except Exception as e:
                raise RequestFetchError(
                    str(e) or type(e).__name__,
                    user=mask_user_id(user_id),
                    party=party.value,
                ) from e

        try:
            requests = await self._store.fetch(key, load, ttl=self._list_ttl)
        except RequestFetchError as e:
            entry = self._store.peek(key)
            return RequestListView(entry.value if entry is not None else (), error=e)

        for request in requests:
            self._remember(request)
        return RequestListView(tuple(self._known.get(r.id, r) for r in requests))

    async def pending_count(self, user_id: str) -> int:
        """Pending requests addressed to the user."""
        async def load() -> int:
            records = await self._backend.list_for(user_id, Party.COUNTERPARTY)
            return sum(1 for r in records if r.get("status") == RequestStatus.PENDING.value)

        return await self._store.fetch(pending_count_key(user_id), load, ttl=self._list_ttl)

    async def get_request(self, request_id: str) -> CollaborationRequest:
        """
        Authoritative copy of one request.

        Raises:
            RequestNotFoundError: The backend has no such request.
        """
        async def load() -> CollaborationRequest:
            record = await self._backend.get(request_id)
            if record is None:
                raise RequestNotFoundError(request_id)
            return CollaborationRequest.from_record(record)

        request = await self._store.fetch(request_key(request_id), load)
        self._remember(request)
        return self._known.get(request_id, request)

    async def _current(self, request_id: str) -> CollaborationRequest:
        known = self._known.get(request_id)
        if known is not None:
            return known
        return await self.get_request(request_id)

    async def _reread(self, request_id: str) -> CollaborationRequest:
        self._store.invalidate(request_key(request_id))
        record = await self._backend.get(request_id)
        if record is None:
            self._known.pop(request_id, None)
            raise RequestNotFoundError(request_id)
        fresh = CollaborationRequest.from_record(record)
        # Authoritative: replaces the known copy even if it looks older
        self._known[request_id] = fresh
        return fresh

    # =========================================================================
    # Writes
    # =========================================================================

    async def create_request(self, draft: RequestDraft, role: str | None) -> CollaborationRequest:
        """
        Create a new pending request.

        Raises:
            RoleNotPermittedError: The requester's current role may not ask.
            InvalidRequestError: Requester and counterparty are the same user.
            DuplicateActiveRequestError: An active request exists for the pair.
        """
        if not can_request_collaboration(role):
            raise RoleNotPermittedError(role, requester=mask_user_id(draft.requester_id))
        if draft.requester_id == draft.counterparty_id:
            raise InvalidRequestError("Cannot send a request to yourself")

        existing = self.active_between(draft.requester_id, draft.counterparty_id)
        if existing is not None:
            raise DuplicateActiveRequestError(
                draft.requester_id, draft.counterparty_id, request_id=existing.id
            )

        try:
            record = await self._backend.create(draft)
        except BackendRejection as rejection:
            if rejection.code is RejectionCode.UNIQUE_VIOLATION:
                raise DuplicateActiveRequestError(
                    draft.requester_id, draft.counterparty_id
                ) from rejection
            if rejection.code is RejectionCode.PERMISSION_DENIED:
                raise RoleNotPermittedError(role, requester=mask_user_id(draft.requester_id)) from rejection
            raise InvalidRequestError(f"Request rejected by server: {rejection}") from rejection

        request = CollaborationRequest.from_record(record)
        self._remember(request)
        self._after_write(request)
        audit_request_event(
            "CREATE",
            request.id,
            request.requester_id,
            counterparty=mask_user_id(request.counterparty_id),
        )
        return request

    async def accept(self, request_id: str, actor_id: str) -> CollaborationRequest:
        """Counterparty accepts a pending request."""
        return await self._transition(request_id, actor_id, RequestStatus.ACCEPTED)

    async def reject(
        self,
        request_id: str,
        actor_id: str,
        suggested_counterparty_id: str | None = None,
    ) -> CollaborationRequest:
        """Counterparty declines a pending request, optionally suggesting someone else."""
        return await self._transition(
            request_id,
            actor_id,
            RequestStatus.REJECTED,
            suggested_counterparty_id=suggested_counterparty_id,
        )

    async def cancel(self, request_id: str, actor_id: str) -> CollaborationRequest:
        """Requester withdraws a pending request or ends an accepted one."""
        return await self._transition(request_id, actor_id, RequestStatus.CANCELLED)

    async def complete(self, request_id: str, actor_id: str) -> CollaborationRequest:
        """Counterparty marks an accepted collaboration as done."""
        return await self._transition(request_id, actor_id, RequestStatus.COMPLETED)

    async def _transition(
        self,
        request_id: str,
        actor_id: str,
        to_status: RequestStatus,
        suggested_counterparty_id: str | None = None,
    ) -> CollaborationRequest:
        request = await self._current(request_id)
        check_transition(request, actor_id, to_status)

        if suggested_counterparty_id is not None and suggested_counterparty_id in request.pair:
            raise InvalidRequestError("Suggested alternative must be a different user")

        try:
            record = await self._backend.transition(
                request_id,
                actor_id,
                to_status,
                suggested_counterparty_id=suggested_counterparty_id,
            )
        except BackendRejection as rejection:
            audit_request_event(
                to_status.value.upper(),
                request_id,
                actor_id,
                success=False,
                reason=rejection.code.value,
            )
            await self._raise_for_rejection(rejection, request_id, actor_id, to_status)

        updated = CollaborationRequest.from_record(record)
        self._known[updated.id] = updated
        self._after_write(updated, status_changed_from=request.status)
        audit_request_event(
            to_status.value.upper(),
            request_id,
            actor_id,
            from_status=request.status.value,
        )
        return updated

    async def _raise_for_rejection(
        self,
        rejection: BackendRejection,
        request_id: str,
        actor_id: str,
        to_status: RequestStatus | None,
        as_party: Party | None = None,
    ) -> NoReturn:
        code = rejection.code
        if code is RejectionCode.CAPACITY:
            raise CapacityExhaustedError(request_id) from rejection
        if code is RejectionCode.NOT_FOUND:
            self._known.pop(request_id, None)
            raise RequestNotFoundError(request_id) from rejection
        if code is RejectionCode.PERMISSION_DENIED:
            raise NotAPartyError(request_id, actor_id=actor_id) from rejection

        # Our copy was stale: let the authoritative record explain the refusal
        fresh = await self._reread(request_id)
        if to_status is None:
            check_feedback(fresh, actor_id, as_party)
            raise FeedbackNotAllowedError(request_id, fresh.status.value) from rejection

        check_transition(fresh, actor_id, to_status)
        raise InvalidTransitionError(
            request_id,
            fresh.status.value,
            to_status.value,
            detail=f"Server refused the change to request {request_id}: {rejection}",
        ) from rejection

    async def submit_feedback(
        self,
        request_id: str,
        actor_id: str,
        as_party: Party,
        helpful: bool,
    ) -> CollaborationRequest:
        """
        Record whether a completed collaboration was helpful.

        Raises:
            FeedbackOwnershipError: as_party is not the actor's side.
            FeedbackNotAllowedError: Request is not completed.
        """
        request = await self._current(request_id)
        field = check_feedback(request, actor_id, as_party)

        try:
            record = await self._backend.submit_feedback(request_id, actor_id, field, helpful)
        except BackendRejection as rejection:
            await self._raise_for_rejection(rejection, request_id, actor_id, None, as_party=as_party)

        updated = CollaborationRequest.from_record(record)
        self._known[updated.id] = updated
        self._store.set(request_key(updated.id), updated)
        return updated

    def _after_write(
        self,
        request: CollaborationRequest,
        status_changed_from: RequestStatus | None = None,
    ) -> None:
        self._store.set(request_key(request.id), request)
        for key in self._affected_keys(request, status_changed_from):
            self._store.invalidate(key)

    def _affected_keys(
        self,
        request: CollaborationRequest,
        status_changed_from: RequestStatus | None,
    ) -> Iterable[CacheKey]:
        yield list_key(request.requester_id, Party.REQUESTER)
        yield list_key(request.counterparty_id, Party.COUNTERPARTY)
        yield pending_count_key(request.counterparty_id)
        accepted = RequestStatus.ACCEPTED
        if (status_changed_from is accepted) != (request.status is accepted):
            for user_id in request.pair:
                yield (CacheNamespace.MENTORSHIP, "connections", user_id)


def expires_at(request: CollaborationRequest, expiry_days: int | None = None) -> datetime | None:
    """When the server will auto-cancel a pending request, if it stays pending."""
    if request.status is not RequestStatus.PENDING or request.created_at is None:
        return None
    days = expiry_days if expiry_days is not None else settings.request_expiry_days
    return request.created_at + timedelta(days=days)
