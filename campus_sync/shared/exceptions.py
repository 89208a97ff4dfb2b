"""
Centralized exceptions for the realtime sync layer.

Every error carries an ErrorKind so callers can branch on the category
without string matching, and logs itself with structured context when raised.

Usage:
    from campus_sync.shared.exceptions import TerminalStateError, NotAPartyError

    raise TerminalStateError("request-1", current_status="cancelled", target_status="accepted")
    raise NotAPartyError("request-1", actor_id=user_id)
"""

from enum import Enum
from typing import Any

from campus_sync.shared.config.logging import get_logger

logger = get_logger(__name__)


class ErrorKind(str, Enum):
    """Error categories surfaced to callers."""

    TRANSPORT = "transport"
    FETCH = "fetch"
    DOMAIN_CONFLICT = "domain_conflict"
    AUTHORIZATION = "authorization"
    DECODE = "decode"


class SyncError(Exception):
    """
    Base exception with automatic logging.

    All custom exceptions should inherit from this class
    to ensure consistent logging and a stable `kind` for callers.
    """

    kind: ErrorKind = ErrorKind.TRANSPORT

    def __init__(
        self,
        detail: str,
        log_level: str = "warning",
        **log_context: Any,
    ):
        self.detail = detail
        self.context = log_context

        # Log the error with context
        log_fn = getattr(logger, log_level, logger.warning)
        log_fn(detail, error_kind=self.kind.value, error_type=type(self).__name__, **log_context)

        super().__init__(detail)


# =============================================================================
# Transport Errors
# =============================================================================


class TransportError(SyncError):
    """
    Push transport failure (channel open/close).

    Non-fatal: recovered by the next reconnect pass, never shown to the user.
    """

    kind = ErrorKind.TRANSPORT

    def __init__(self, detail: str, **log_context: Any):
        super().__init__(detail, log_level="warning", **log_context)


class ChannelOpenError(TransportError):
    """Transport refused or failed to open a channel."""

    def __init__(self, channel: str, reason: str | None = None, **log_context: Any):
        self.channel = channel
        detail = f"Failed to open channel '{channel}'"
        if reason:
            detail = f"{detail}: {reason}"
        super().__init__(detail, channel=channel, **log_context)


class ChannelCloseError(TransportError):
    """Transport failed to tear a channel down."""

    def __init__(self, channel: str, reason: str | None = None, **log_context: Any):
        self.channel = channel
        detail = f"Failed to close channel '{channel}'"
        if reason:
            detail = f"{detail}: {reason}"
        super().__init__(detail, channel=channel, **log_context)


class ChannelLimitExceededError(TransportError):
    """Registering another channel would exceed the configured maximum."""

    def __init__(self, channel: str, limit: int, **log_context: Any):
        self.channel = channel
        self.limit = limit
        super().__init__(
            f"Cannot register channel '{channel}': limit of {limit} channels reached",
            channel=channel,
            limit=limit,
            **log_context,
        )


# =============================================================================
# Fetch Errors
# =============================================================================


class FetchError(SyncError):
    """
    Refresh of a cached value failed.

    Returned next to the last-known-good value instead of replacing it.
    """

    kind = ErrorKind.FETCH

    def __init__(self, detail: str, **log_context: Any):
        super().__init__(detail, log_level="warning", **log_context)


class IdentityFetchError(FetchError):
    """Identity context could not be resolved from the server."""

    def __init__(self, reason: str, **log_context: Any):
        self.reason = reason
        super().__init__(f"Identity fetch failed: {reason}", **log_context)


class RequestFetchError(FetchError):
    """Collaboration request list could not be refreshed."""

    def __init__(self, reason: str, **log_context: Any):
        self.reason = reason
        super().__init__(f"Request list fetch failed: {reason}", **log_context)


# =============================================================================
# Domain Conflict Errors
# =============================================================================


class DomainConflictError(SyncError):
    """
    Business-level uniqueness or state constraint violation.

    Expected under concurrent use; callers present these to the user.
    """

    kind = ErrorKind.DOMAIN_CONFLICT

    def __init__(self, detail: str, **log_context: Any):
        super().__init__(detail, log_level="warning", **log_context)


class DuplicateActiveRequestError(DomainConflictError):
    """An active (pending or accepted) request already exists for the pair."""

    def __init__(self, requester_id: str, counterparty_id: str, **log_context: Any):
        self.requester_id = requester_id
        self.counterparty_id = counterparty_id
        super().__init__(
            "A pending or active request already exists between these users",
            requester_id=requester_id,
            counterparty_id=counterparty_id,
            **log_context,
        )


class InvalidTransitionError(DomainConflictError):
    """No edge exists from the current status to the requested one."""

    def __init__(
        self,
        request_id: str,
        from_status: str,
        to_status: str,
        detail: str | None = None,
        **log_context: Any,
    ):
        self.request_id = request_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            detail or f"Invalid transition from '{from_status}' to '{to_status}' for request {request_id}",
            request_id=request_id,
            from_status=from_status,
            to_status=to_status,
            **log_context,
        )


class TerminalStateError(InvalidTransitionError):
    """The request is in a terminal status and cannot transition again."""

    def __init__(self, request_id: str, current_status: str, target_status: str, **log_context: Any):
        super().__init__(
            request_id,
            current_status,
            target_status,
            detail=f"Request {request_id} is already {current_status}",
            **log_context,
        )


class FeedbackNotAllowedError(DomainConflictError):
    """Feedback is only accepted on completed requests."""

    def __init__(self, request_id: str, current_status: str, **log_context: Any):
        self.request_id = request_id
        self.current_status = current_status
        super().__init__(
            f"Feedback requires a completed request; request {request_id} is {current_status}",
            request_id=request_id,
            current_status=current_status,
            **log_context,
        )


class CapacityExhaustedError(DomainConflictError):
    """The counterparty has no free collaboration slots."""

    def __init__(self, request_id: str, **log_context: Any):
        self.request_id = request_id
        super().__init__(
            f"No available slots to accept request {request_id}",
            request_id=request_id,
            **log_context,
        )


class RoleNotPermittedError(DomainConflictError):
    """The actor's current role may not create new requests."""

    def __init__(self, role: str | None, **log_context: Any):
        self.role = role
        super().__init__(
            f"Role '{role}' cannot create collaboration requests",
            role=role,
            **log_context,
        )


class InvalidRequestError(DomainConflictError):
    """Request draft rejected before reaching the server (e.g. self-request)."""

    def __init__(self, reason: str, **log_context: Any):
        self.reason = reason
        super().__init__(reason, **log_context)


class RequestNotFoundError(DomainConflictError):
    """The request does not exist or is no longer visible."""

    def __init__(self, request_id: str, **log_context: Any):
        self.request_id = request_id
        super().__init__(f"Request {request_id} not found", request_id=request_id, **log_context)


# =============================================================================
# Authorization Errors
# =============================================================================


class AuthorizationError(SyncError):
    """
    Action attempted by someone who is not the recorded party for it.

    Indicates a programming or integrity error, so it is logged loudly.
    """

    kind = ErrorKind.AUTHORIZATION

    def __init__(self, detail: str, **log_context: Any):
        super().__init__(detail, log_level="error", **log_context)


class NotAPartyError(AuthorizationError):
    """Actor is neither the requester nor the counterparty of the record."""

    def __init__(self, request_id: str, actor_id: str, **log_context: Any):
        self.request_id = request_id
        self.actor_id = actor_id
        super().__init__(
            f"User is not a party to request {request_id}",
            request_id=request_id,
            actor_id=actor_id,
            **log_context,
        )


class WrongPartyError(AuthorizationError):
    """Actor is a party, but the transition belongs to the other party."""

    def __init__(
        self,
        request_id: str,
        actor_id: str,
        required_party: str,
        to_status: str,
        **log_context: Any,
    ):
        self.request_id = request_id
        self.actor_id = actor_id
        self.required_party = required_party
        self.to_status = to_status
        super().__init__(
            f"Only the {required_party} can move request {request_id} to '{to_status}'",
            request_id=request_id,
            actor_id=actor_id,
            required_party=required_party,
            to_status=to_status,
            **log_context,
        )


class FeedbackOwnershipError(AuthorizationError):
    """Actor tried to write the other party's feedback field."""

    def __init__(self, request_id: str, actor_id: str, field: str, **log_context: Any):
        self.request_id = request_id
        self.actor_id = actor_id
        self.field = field
        super().__init__(
            f"User cannot write '{field}' on request {request_id}",
            request_id=request_id,
            actor_id=actor_id,
            field=field,
            **log_context,
        )


# =============================================================================
# Decode Errors
# =============================================================================


class EventDecodeError(SyncError, ValueError):
    """Inbound change payload does not match any known event variant."""

    kind = ErrorKind.DECODE

    def __init__(self, reason: str, **log_context: Any):
        self.reason = reason
        super().__init__(f"Invalid change event: {reason}", log_level="debug", **log_context)
