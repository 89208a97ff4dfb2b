"""
Collaboration request transition table and guards.

Mirrors the server-side status guard trigger and the per-party ownership
checks. The client runs these as an optimistic pre-check to avoid needless
round-trips; the mutation response from the server stays authoritative.
The reference in-memory backend used in tests runs the same functions, so
client and server agree exactly on which moves are legal.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Final

from campus_sync.shared.exceptions import (
    FeedbackNotAllowedError,
    FeedbackOwnershipError,
    InvalidTransitionError,
    NotAPartyError,
    TerminalStateError,
    WrongPartyError,
)

if TYPE_CHECKING:
    from campus_sync.components.requests.models import CollaborationRequest


class RequestStatus(str, Enum):
    """Lifecycle status of a collaboration request."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class Party(str, Enum):
    """Side of a collaboration request."""

    REQUESTER = "requester"
    COUNTERPARTY = "counterparty"

    @property
    def other(self) -> "Party":
        return Party.COUNTERPARTY if self is Party.REQUESTER else Party.REQUESTER

    @property
    def feedback_field(self) -> str:
        """Record field this party owns for feedback."""
        return f"{self.value}_feedback"


class Roles:
    """Canonical role strings from the identity context."""

    STUDENT: Final[str] = "Student"
    ALUMNI: Final[str] = "Alumni"
    FACULTY: Final[str] = "Faculty"
    CLUB: Final[str] = "Club"


# Roles allowed to *create* a new request (students ask, alumni/faculty offer).
# Only creation is gated by the current role; every later step is gated by
# being the recorded party of that record.
REQUEST_CREATOR_ROLES: Final[frozenset[str]] = frozenset({Roles.STUDENT})

ACTIVE_STATUSES: Final[frozenset[RequestStatus]] = frozenset({
    RequestStatus.PENDING,
    RequestStatus.ACCEPTED,
})

TERMINAL_STATUSES: Final[frozenset[RequestStatus]] = frozenset({
    RequestStatus.REJECTED,
    RequestStatus.CANCELLED,
    RequestStatus.COMPLETED,
})

# Valid status transitions
REQUEST_TRANSITIONS: Final[dict[RequestStatus, frozenset[RequestStatus]]] = {
    RequestStatus.PENDING: frozenset({
        RequestStatus.ACCEPTED,
        RequestStatus.REJECTED,
        RequestStatus.CANCELLED,
    }),
    RequestStatus.ACCEPTED: frozenset({
        RequestStatus.COMPLETED,
        RequestStatus.CANCELLED,
    }),
    RequestStatus.REJECTED: frozenset(),  # Terminal state
    RequestStatus.CANCELLED: frozenset(),  # Terminal state
    RequestStatus.COMPLETED: frozenset(),  # Terminal state
}

# Which party may perform each transition
# Format: (from_status, to_status) -> party
TRANSITION_ACTORS: Final[dict[tuple[RequestStatus, RequestStatus], Party]] = {
    (RequestStatus.PENDING, RequestStatus.ACCEPTED): Party.COUNTERPARTY,
    (RequestStatus.PENDING, RequestStatus.REJECTED): Party.COUNTERPARTY,
    (RequestStatus.PENDING, RequestStatus.CANCELLED): Party.REQUESTER,
    (RequestStatus.ACCEPTED, RequestStatus.COMPLETED): Party.COUNTERPARTY,
    (RequestStatus.ACCEPTED, RequestStatus.CANCELLED): Party.REQUESTER,
}


def can_request_collaboration(role: str | None) -> bool:
    """Whether a user with this *current* role may create a new request."""
    return role in REQUEST_CREATOR_ROLES


def validate_request_transition(current_status: RequestStatus, new_status: RequestStatus) -> bool:
    """
    Validate that a request status transition is allowed.

    Returns True if transition is valid, False otherwise.
    """
    return new_status in REQUEST_TRANSITIONS.get(current_status, frozenset())


def get_allowed_transitions(current_status: RequestStatus, party: Party) -> list[RequestStatus]:
    """
    Get allowed transitions for a given status and party.

    Returns list of status values the party can move the request to.
    """
    return sorted(
        (
            new_status
            for new_status in REQUEST_TRANSITIONS.get(current_status, frozenset())
            if TRANSITION_ACTORS[(current_status, new_status)] is party
        ),
        key=lambda status: status.value,
    )


def check_transition(
    request: CollaborationRequest,
    actor_id: str,
    to_status: RequestStatus,
) -> Party:
    """
    Guard a status transition for one actor.

    Checks run in the same order as the server trigger: party membership,
    terminal status, edge existence, then which party owns the edge.

    Returns:
        The actor's party on this request.

    Raises:
        NotAPartyError: Actor is neither requester nor counterparty.
        TerminalStateError: Request is already rejected, cancelled or completed.
        InvalidTransitionError: No edge from the current status to to_status.
        WrongPartyError: The edge belongs to the other party.
    """
    party = request.party_of(actor_id)
    if party is None:
        raise NotAPartyError(request.id, actor_id=actor_id)

    current = request.status
    if current in TERMINAL_STATUSES:
        raise TerminalStateError(request.id, current.value, to_status.value)

    if not validate_request_transition(current, to_status):
        raise InvalidTransitionError(request.id, current.value, to_status.value)

    required = TRANSITION_ACTORS[(current, to_status)]
    if party is not required:
        raise WrongPartyError(
            request.id,
            actor_id=actor_id,
            required_party=required.value,
            to_status=to_status.value,
        )

    return party


def check_feedback(
    request: CollaborationRequest,
    actor_id: str,
    as_party: Party,
) -> str:
    """
    Guard a feedback write.

    Ownership is checked before status: writing the other party's field is
    rejected no matter what state the request is in.

    Returns:
        The record field the actor may write.

    Raises:
        NotAPartyError: Actor is neither requester nor counterparty.
        FeedbackOwnershipError: Actor is not the party that owns the field.
        FeedbackNotAllowedError: Request is not completed.
    """
    party = request.party_of(actor_id)
    if party is None:
        raise NotAPartyError(request.id, actor_id=actor_id)

    if party is not as_party:
        raise FeedbackOwnershipError(request.id, actor_id=actor_id, field=as_party.feedback_field)

    if request.status is not RequestStatus.COMPLETED:
        raise FeedbackNotAllowedError(request.id, request.status.value)

    return as_party.feedback_field
