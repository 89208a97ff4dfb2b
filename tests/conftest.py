"""
Pytest configuration and fixtures for campus_sync tests.
"""

import pytest

from campus_sync.components.cache.store import QueryCache
from campus_sync.components.requests.models import RequestDraft
from campus_sync.components.requests.service import CollaborationRequestService
from campus_sync.subscription_registry import SubscriptionRegistry
from tests.fakes import (
    FakeIdentityFetcher,
    FakeTransport,
    InMemoryRequestBackend,
    identity_payload,
)

STUDENT = "student-1"
MENTOR = "alumni-1"
OTHER_MENTOR = "faculty-1"
DOMAIN = "iitd.ac.in"


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return QueryCache(clock=clock)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def registry(transport):
    return SubscriptionRegistry(transport, max_channels=8, close_timeout=1.0)


@pytest.fixture
def identity_fetcher():
    return FakeIdentityFetcher(identity_payload(STUDENT))


@pytest.fixture
def backend():
    return InMemoryRequestBackend()


@pytest.fixture
def service(backend, store):
    return CollaborationRequestService(backend, store)


@pytest.fixture
def draft():
    return RequestDraft(
        requester_id=STUDENT,
        counterparty_id=MENTOR,
        college_domain=DOMAIN,
        topic="Career guidance",
        message="Could you review my resume?",
    )
