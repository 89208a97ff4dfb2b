"""
Change Event Value Objects.

Server push notifications decoded once at the transport boundary into a
closed set of per-collection variants. The router matches on the variant
type instead of comparing collection strings.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, ClassVar, Mapping

from campus_sync.components.core.constants import SyncConstants
from campus_sync.components.requests.transitions import RequestStatus
from campus_sync.shared.config.logging import get_logger
from campus_sync.shared.exceptions import EventDecodeError

logger = get_logger(__name__)


class Collection(str, Enum):
    """Server collections whose changes are pushed to the client."""

    PROFILES = "profiles"
    MENTORSHIP_OFFERS = "mentorship_offers"
    MENTORSHIP_REQUESTS = "mentorship_requests"
    CONNECTIONS = "connections"


class Operation(str, Enum):
    """Row-level change operations."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


Record = Mapping[str, Any]


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    """
    Immutable change notification.

    Attributes:
        collection: Collection the changed record belongs to.
        operation: INSERT, UPDATE or DELETE.
        scope_key: Attribute value the channel was scoped by (domain, user id), if any.
        before: Record before the change (None for inserts).
        after: Record after the change (None for deletes).
    """

    COLLECTION: ClassVar[Collection]
    REQUIRED_FIELDS: ClassVar[frozenset[str]] = frozenset()

    collection: Collection
    operation: Operation
    scope_key: str | None = None
    before: Record | None = None
    after: Record | None = None

    @property
    def record(self) -> Record:
        """The most recent known state of the record."""
        if self.after is not None:
            return self.after
        return self.before or MappingProxyType({})

    @property
    def record_id(self) -> str | None:
        value = self.record.get("id")
        return str(value) if value is not None else None

    def value(self, field_name: str) -> Any:
        """Current value of a field, falling back to the prior value."""
        if self.after is not None and field_name in self.after:
            return self.after[field_name]
        if self.before is not None:
            return self.before.get(field_name)
        return None

    def previous(self, field_name: str) -> Any:
        """Prior value of a field, None for inserts."""
        if self.before is None:
            return None
        return self.before.get(field_name)

    def changed_fields(self) -> frozenset[str]:
        """
        Keys whose value differs between before and after.

        Inserts and deletes report every key of the record present.
        A key present on only one side of an update counts as changed.
        """
        if self.before is None or self.after is None:
            return frozenset(self.record.keys())

        keys = set(self.before.keys()) | set(self.after.keys())
        _missing = object()
        return frozenset(
            key for key in keys
            if self.before.get(key, _missing) != self.after.get(key, _missing)
        )

    def to_payload(self) -> dict[str, Any]:
        """Convert back to a plain dict for serialization."""
        return {
            "collection": self.collection.value,
            "operation": self.operation.value,
            "scope_key": self.scope_key,
            "before": dict(self.before) if self.before is not None else None,
            "after": dict(self.after) if self.after is not None else None,
        }


@dataclass(frozen=True, slots=True)
class ProfileChange(ChangeEvent):
    """A user's profile row changed."""

    COLLECTION: ClassVar[Collection] = Collection.PROFILES
    REQUIRED_FIELDS: ClassVar[frozenset[str]] = frozenset({"id"})

    @property
    def user_id(self) -> str | None:
        return self.record_id


@dataclass(frozen=True, slots=True)
class MentorshipOfferChange(ChangeEvent):
    """A mentor's offer row changed (directory listing)."""

    COLLECTION: ClassVar[Collection] = Collection.MENTORSHIP_OFFERS
    REQUIRED_FIELDS: ClassVar[frozenset[str]] = frozenset({"id", "mentor_id"})

    @property
    def mentor_id(self) -> str | None:
        return self.value("mentor_id")

    @property
    def college_domain(self) -> str | None:
        return self.value("college_domain") or self.scope_key


@dataclass(frozen=True, slots=True)
class MentorshipRequestChange(ChangeEvent):
    """A collaboration (mentorship) request row changed."""

    COLLECTION: ClassVar[Collection] = Collection.MENTORSHIP_REQUESTS
    REQUIRED_FIELDS: ClassVar[frozenset[str]] = frozenset(
        {"id", "requester_id", "counterparty_id", "status"}
    )

    @property
    def request_id(self) -> str | None:
        return self.record_id

    @property
    def requester_id(self) -> str | None:
        return self.value("requester_id")

    @property
    def counterparty_id(self) -> str | None:
        return self.value("counterparty_id")

    @property
    def status(self) -> RequestStatus | None:
        value = self.value("status")
        return RequestStatus(value) if value is not None else None

    @property
    def previous_status(self) -> RequestStatus | None:
        value = self.previous("status")
        return RequestStatus(value) if value is not None else None

    def involves(self, user_id: str) -> bool:
        return user_id in (self.requester_id, self.counterparty_id)


@dataclass(frozen=True, slots=True)
class ConnectionChange(ChangeEvent):
    """A connection between two users changed."""

    COLLECTION: ClassVar[Collection] = Collection.CONNECTIONS
    REQUIRED_FIELDS: ClassVar[frozenset[str]] = frozenset({"id", "requester_id", "receiver_id"})

    @property
    def requester_id(self) -> str | None:
        return self.value("requester_id")

    @property
    def receiver_id(self) -> str | None:
        return self.value("receiver_id")

    def involves(self, user_id: str) -> bool:
        return user_id in (self.requester_id, self.receiver_id)


# Closed set of variants, one per collection
EVENT_VARIANTS: Mapping[Collection, type[ChangeEvent]] = MappingProxyType({
    Collection.PROFILES: ProfileChange,
    Collection.MENTORSHIP_OFFERS: MentorshipOfferChange,
    Collection.MENTORSHIP_REQUESTS: MentorshipRequestChange,
    Collection.CONNECTIONS: ConnectionChange,
})

VALID_COLLECTIONS: frozenset[str] = frozenset(c.value for c in Collection)
VALID_OPERATIONS: frozenset[str] = frozenset(o.value for o in Operation)
VALID_REQUEST_STATUSES: frozenset[str] = frozenset(s.value for s in RequestStatus)


def _freeze_record(value: Any, side: str) -> Record | None:
    """Validate a record and return a read-only deep copy."""
    if value is None:
        return None
    if not isinstance(value, Mapping):
        raise EventDecodeError(f"'{side}' must be an object, got {type(value).__name__}")
    if len(value) > SyncConstants.MAX_RECORD_FIELDS:
        raise EventDecodeError(f"'{side}' has too many fields: {len(value)}")
    return MappingProxyType(copy.deepcopy(dict(value)))


def decode_change_event(payload: Mapping[str, Any]) -> ChangeEvent:
    """
    Decode a raw change payload into its collection variant.

    Args:
        payload: Mapping with collection, operation, scope_key, before, after.

    Returns:
        The matching ChangeEvent subclass instance.

    Raises:
        EventDecodeError: If the payload does not describe a known change.
    """
    if not isinstance(payload, Mapping):
        raise EventDecodeError("payload must be an object")

    collection_name = payload.get("collection")
    if collection_name not in VALID_COLLECTIONS:
        raise EventDecodeError(f"unknown collection {collection_name!r}")
    collection = Collection(collection_name)

    operation_name = payload.get("operation")
    if isinstance(operation_name, str):
        operation_name = operation_name.upper()
    if operation_name not in VALID_OPERATIONS:
        raise EventDecodeError(f"unknown operation {operation_name!r}")
    operation = Operation(operation_name)

    scope_key = payload.get("scope_key")
    if scope_key is not None and not isinstance(scope_key, str):
        raise EventDecodeError("scope_key must be a string")

    before = _freeze_record(payload.get("before"), "before")
    after = _freeze_record(payload.get("after"), "after")

    if operation is Operation.INSERT and after is None:
        raise EventDecodeError("INSERT requires 'after'")
    if operation is Operation.DELETE and before is None:
        raise EventDecodeError("DELETE requires 'before'")
    if operation is Operation.UPDATE and after is None:
        raise EventDecodeError("UPDATE requires 'after'")

    variant = EVENT_VARIANTS[collection]
    current = after if after is not None else before
    missing = variant.REQUIRED_FIELDS - set(current.keys())
    if missing:
        raise EventDecodeError(
            f"{collection.value} record missing fields: {sorted(missing)}",
            collection=collection.value,
        )

    if variant is MentorshipRequestChange:
        for record in (before, after):
            if record is not None and "status" in record and record["status"] not in VALID_REQUEST_STATUSES:
                raise EventDecodeError(f"unknown request status {record['status']!r}")

    return variant(
        collection=collection,
        operation=operation,
        scope_key=scope_key,
        before=before,
        after=after,
    )


class DecodeFailureTracker:
    """
    Counts rejected payloads per reason for monitoring.

    Bounded: once max_reasons distinct reasons are tracked, new reasons
    are counted under "other".
    """

    def __init__(self, max_reasons: int = SyncConstants.MAX_DECODE_FAILURES_LOGGED):
        self._max_reasons = max_reasons
        self._by_reason: dict[str, int] = {}
        self._count = 0

    @property
    def count(self) -> int:
        """Total number of rejected payloads."""
        return self._count

    def record(self, reason: str) -> None:
        self._count += 1
        if reason not in self._by_reason and len(self._by_reason) >= self._max_reasons:
            reason = "other"
        self._by_reason[reason] = self._by_reason.get(reason, 0) + 1

        # Log sparsely once the first batch has been reported
        if self._count <= self._max_reasons or self._count % SyncConstants.DECODE_LOG_INTERVAL == 0:
            logger.warning("Dropped undecodable change event", reason=reason, total=self._count)

    def get_metrics(self) -> dict[str, Any]:
        """Get tracker metrics."""
        return {
            "decode_failures": self._count,
            "decode_failures_by_reason": dict(self._by_reason),
        }
