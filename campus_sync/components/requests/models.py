"""
Collaboration request schemas.
"""

from datetime import datetime
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, model_validator

from campus_sync.components.requests.transitions import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    Party,
    RequestStatus,
)


class CollaborationRequest(BaseModel):
    """
    A cross-party request (mentorship) as last reported by the server.

    Replaced wholesale whenever a fresher copy arrives; never mutated.
    Terminal records are kept for history and feedback.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    requester_id: str
    counterparty_id: str
    status: RequestStatus = RequestStatus.PENDING
    college_domain: str | None = None
    topic: str | None = None
    message: str | None = None

    created_at: datetime | None = None
    updated_at: datetime | None = None
    responded_at: datetime | None = None  # Counterparty accepted or rejected
    accepted_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None

    # Counterparty may point the requester at someone else when rejecting
    suggested_counterparty_id: str | None = None
    # Cancelled by the server's stale-request expiry rather than by a person
    auto_expired: bool = False

    # true = helpful, false = not helpful, None = no feedback yet
    requester_feedback: bool | None = None
    counterparty_feedback: bool | None = None

    @model_validator(mode="after")
    def _parties_differ(self) -> "CollaborationRequest":
        if self.requester_id == self.counterparty_id:
            raise ValueError("requester and counterparty must be different users")
        return self

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "CollaborationRequest":
        """Build from a pushed row or a backend response row."""
        return cls.model_validate(dict(record))

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def pair(self) -> frozenset[str]:
        """Unordered pair of participants, the uniqueness scope for active requests."""
        return frozenset({self.requester_id, self.counterparty_id})

    def party_of(self, user_id: str) -> Party | None:
        """Which side of this request a user is recorded on, if any."""
        if user_id == self.requester_id:
            return Party.REQUESTER
        if user_id == self.counterparty_id:
            return Party.COUNTERPARTY
        return None

    def feedback_of(self, party: Party) -> bool | None:
        return getattr(self, party.feedback_field)


class RequestDraft(BaseModel):
    """New request as submitted by the requesting party."""

    model_config = ConfigDict(frozen=True)

    requester_id: str = Field(min_length=1)
    counterparty_id: str = Field(min_length=1)
    college_domain: str | None = None
    topic: str = Field(min_length=1, max_length=200)
    message: str = Field(default="", max_length=2000)

    @property
    def pair(self) -> frozenset[str]:
        return frozenset({self.requester_id, self.counterparty_id})
