"""
Collaboration request workflow.

The service lives in `campus_sync.components.requests.service`; it is not
re-exported here because event decoding imports the transition table.
"""

from campus_sync.components.requests.transitions import (
    Party,
    RequestStatus,
    Roles,
    REQUEST_TRANSITIONS,
    TRANSITION_ACTORS,
    check_feedback,
    check_transition,
    get_allowed_transitions,
)
from campus_sync.components.requests.models import CollaborationRequest, RequestDraft

__all__ = [
    "Party",
    "RequestStatus",
    "Roles",
    "REQUEST_TRANSITIONS",
    "TRANSITION_ACTORS",
    "check_feedback",
    "check_transition",
    "get_allowed_transitions",
    "CollaborationRequest",
    "RequestDraft",
]
