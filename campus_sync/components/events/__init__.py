"""
Event handling components.

Change event variants, channel catalogue and invalidation routing.
"""

from campus_sync.components.events.types import (
    ChangeEvent,
    Collection,
    Operation,
    ProfileChange,
    MentorshipOfferChange,
    MentorshipRequestChange,
    ConnectionChange,
    EVENT_VARIANTS,
    DecodeFailureTracker,
    decode_change_event,
)
from campus_sync.components.events.channels import ChannelFilter, ChannelSpec, session_channels
from campus_sync.components.events.router import (
    InvalidationRouter,
    RoutingContext,
    RoutingResult,
    RoutingRule,
    IDENTITY_FIELDS,
    create_default_router,
)

__all__ = [
    # Event types
    "ChangeEvent",
    "Collection",
    "Operation",
    "ProfileChange",
    "MentorshipOfferChange",
    "MentorshipRequestChange",
    "ConnectionChange",
    "EVENT_VARIANTS",
    "DecodeFailureTracker",
    "decode_change_event",
    # Channels
    "ChannelFilter",
    "ChannelSpec",
    "session_channels",
    # Invalidation router
    "InvalidationRouter",
    "RoutingContext",
    "RoutingResult",
    "RoutingRule",
    "IDENTITY_FIELDS",
    "create_default_router",
]
