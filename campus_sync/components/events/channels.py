"""
Channel name catalogue and channel filters.

Every channel the client opens takes its name from here so that two screens
asking for the same stream share one registry entry instead of opening a
second channel. Domain-scoped channels are named by the scope value, not by
the viewer, which bounds the channel count per domain.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from campus_sync.components.events.types import ChangeEvent, Collection


@dataclass(frozen=True, slots=True)
class ChannelFilter:
    """
    Server-side filter for one channel: a collection narrowed by `column = value`.

    The transport subscribes to `topic`; `matches` re-checks inbound events
    on the client since the filter is only advisory for some transports.
    """

    collection: Collection
    column: str | None = None
    value: str | None = None

    @property
    def topic(self) -> str:
        if self.column is None:
            return self.collection.value
        return f"{self.collection.value}:{self.column}=eq.{self.value}"

    @property
    def scope_key(self) -> str | None:
        return self.value

    def matches(self, event: ChangeEvent) -> bool:
        if event.collection is not self.collection:
            return False
        if self.column is None:
            return True
        return _matches_column(event, self.column, self.value)


def _matches_column(event: ChangeEvent, column: str, value: Any) -> bool:
    # Updates that move a record out of scope are still delivered so the
    # previous scope's caches are invalidated too.
    for record in (event.after, event.before):
        if record is not None and str(record.get(column)) == str(value):
            return True
    return False


@dataclass(frozen=True, slots=True)
class ChannelSpec:
    """A named channel and the filter it subscribes with."""

    name: str
    filter: ChannelFilter


# =============================================================================
# Identity
# =============================================================================


def identity_profile(user_id: str) -> ChannelSpec:
    """The signed-in user's own profile row (identity-critical fields)."""
    return ChannelSpec(
        name=f"identity-profile-{user_id}",
        filter=ChannelFilter(Collection.PROFILES, "id", user_id),
    )


# =============================================================================
# Mentorship
# =============================================================================


def mentorship_offers(college_domain: str) -> ChannelSpec:
    """Mentor directory for a college domain, shared by every viewer in it."""
    return ChannelSpec(
        name=f"mentorship-offers-{college_domain}",
        filter=ChannelFilter(Collection.MENTORSHIP_OFFERS, "college_domain", college_domain),
    )


def mentorship_requests_as_requester(user_id: str) -> ChannelSpec:
    """Requests the user has sent."""
    return ChannelSpec(
        name=f"mentorship-requests-requester-{user_id}",
        filter=ChannelFilter(Collection.MENTORSHIP_REQUESTS, "requester_id", user_id),
    )


def mentorship_requests_as_counterparty(user_id: str) -> ChannelSpec:
    """Requests addressed to the user."""
    return ChannelSpec(
        name=f"mentorship-requests-counterparty-{user_id}",
        filter=ChannelFilter(Collection.MENTORSHIP_REQUESTS, "counterparty_id", user_id),
    )


# =============================================================================
# Social
# =============================================================================


def connections_as_requester(user_id: str) -> ChannelSpec:
    return ChannelSpec(
        name=f"connections-requester-{user_id}",
        filter=ChannelFilter(Collection.CONNECTIONS, "requester_id", user_id),
    )


def connections_as_receiver(user_id: str) -> ChannelSpec:
    return ChannelSpec(
        name=f"connections-receiver-{user_id}",
        filter=ChannelFilter(Collection.CONNECTIONS, "receiver_id", user_id),
    )


def session_channels(user_id: str, college_domain: str | None) -> list[ChannelSpec]:
    """Standard channel set for one signed-in user."""
    specs = [
        identity_profile(user_id),
        mentorship_requests_as_requester(user_id),
        mentorship_requests_as_counterparty(user_id),
        connections_as_requester(user_id),
        connections_as_receiver(user_id),
    ]
    if college_domain:
        specs.append(mentorship_offers(college_domain))
    return specs
