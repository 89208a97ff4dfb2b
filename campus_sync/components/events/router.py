"""
Invalidation Router - Maps change events to the cache keys they make stale.

The router never fetches and never writes values; dependent caches refetch
lazily on their next read. Rules are declared per event variant and the
table is checked for exhaustiveness when the router is built, so adding a
variant without deciding how it invalidates fails at startup.

Usage:
    router = create_default_router(store, RoutingContext(viewer_id, domain))
    result = router.dispatch(event)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Final, Iterable, Sequence

from campus_sync.components.cache.store import CacheKey, CacheStore
from campus_sync.components.core.constants import CacheNamespace
from campus_sync.components.events.types import (
    EVENT_VARIANTS,
    ChangeEvent,
    ConnectionChange,
    MentorshipOfferChange,
    MentorshipRequestChange,
    Operation,
    ProfileChange,
)
from campus_sync.components.requests.transitions import RequestStatus
from campus_sync.shared.config.logging import get_logger

logger = get_logger(__name__)


# Profile fields that feed the identity snapshot. Changes to any other
# profile column (last_active_at, bio, avatar) leave identity untouched.
IDENTITY_FIELDS: Final[frozenset[str]] = frozenset({
    "role",
    "is_verified",
    "college_domain",
    "email",
    "college_email",
})


@dataclass(frozen=True, slots=True)
class RoutingContext:
    """Who is looking: rules only invalidate the viewer's own keys."""

    viewer_id: str | None = None
    college_domain: str | None = None


# Receives only events of the rule's variant
KeyBuilder = Callable[[Any, RoutingContext], Iterable[CacheKey]]


@dataclass(frozen=True, slots=True)
class RoutingRule:
    """One routing table entry: which keys a variant invalidates."""

    name: str
    variant: type[ChangeEvent]
    keys: KeyBuilder


@dataclass
class RoutingResult:
    """Result of dispatching one event."""

    event_type: str
    keys: list[CacheKey] = field(default_factory=list)
    invalidated: int = 0
    errors: list[str] | None = None

    @property
    def success(self) -> bool:
        """Whether dispatch completed without errors."""
        return not self.errors


class InvalidationRouter:
    """
    Routes change events to targeted cache invalidations.

    Routing rules (create_default_router):
    - ProfileChange: ("identity", user) when an identity field changed
    - MentorshipOfferChange: ("mentorship", "mentors", domain)
    - MentorshipRequestChange: viewer's request lists, counts and the record
    - ConnectionChange: viewer's connection list and count
    """

    def __init__(
        self,
        store: CacheStore,
        rules: Sequence[RoutingRule],
        context: RoutingContext | None = None,
    ):
        """
        Initialize router.

        Args:
            store: Cache receiving the invalidations.
            rules: Routing table.
            context: Initial viewer context.

        Raises:
            ValueError: If some event variant has no rule.
        """
        missing = [
            variant.__name__
            for variant in EVENT_VARIANTS.values()
            if not any(rule.variant is variant for rule in rules)
        ]
        if missing:
            raise ValueError(f"No routing rule for event variants: {sorted(missing)}")

        self._store = store
        self._rules: tuple[RoutingRule, ...] = tuple(rules)
        self._context = context or RoutingContext()
        self._dispatched = 0
        self._invalidated = 0
        self._errors = 0

    @property
    def context(self) -> RoutingContext:
        return self._context

    def set_context(self, context: RoutingContext) -> None:
        self._context = context

    def _evaluate(self, event: ChangeEvent) -> tuple[list[CacheKey], list[str]]:
        keys: list[CacheKey] = []
        errors: list[str] = []
        seen: set[CacheKey] = set()

        for rule in self._rules:
            if not isinstance(event, rule.variant):
                continue
            try:
                produced = list(rule.keys(event, self._context))
            except Exception as e:
                errors.append(f"Rule '{rule.name}' failed: {e}")
                logger.error("Routing rule failed", rule=rule.name, error=str(e), exc_info=True)
                continue
            for key in produced:
                if key not in seen:
                    seen.add(key)
                    keys.append(key)

        return keys, errors

    def route(self, event: ChangeEvent) -> list[CacheKey]:
        """
        Compute the keys an event invalidates.

        Returns:
            De-duplicated keys in rule order. Empty if nothing is affected.
        """
        keys, _ = self._evaluate(event)
        return keys

    def dispatch(self, event: ChangeEvent) -> RoutingResult:
        """
        Route an event and invalidate each key.

        A failing invalidation is recorded and the remaining keys are still
        invalidated. Never raises.
        """
        keys, errors = self._evaluate(event)
        result = RoutingResult(event_type=type(event).__name__, keys=keys)

        for key in keys:
            try:
                self._store.invalidate(key)
                result.invalidated += 1
            except Exception as e:
                errors.append(f"Failed to invalidate {key}: {e}")
                logger.error("Error invalidating cache key", key=key, error=str(e))

        if errors:
            result.errors = errors
            self._errors += len(errors)

        self._dispatched += 1
        self._invalidated += result.invalidated

        if keys:
            logger.debug(
                "Dispatched change event",
                event_type=result.event_type,
                operation=event.operation.value,
                keys=len(keys),
            )
        return result

    def get_stats(self) -> dict[str, int]:
        return {
            "rules": len(self._rules),
            "dispatched": self._dispatched,
            "invalidated": self._invalidated,
            "errors": self._errors,
        }


# =============================================================================
# Default rules
# =============================================================================


def identity_keys(event: ProfileChange, context: RoutingContext) -> list[CacheKey]:
    user_id = event.user_id
    if user_id is None:
        return []
    if event.operation is Operation.UPDATE and not (event.changed_fields() & IDENTITY_FIELDS):
        return []
    return [(CacheNamespace.IDENTITY, user_id)]


def mentor_directory_keys(event: MentorshipOfferChange, context: RoutingContext) -> list[CacheKey]:
    domain = event.college_domain
    if not domain:
        return []
    return [(CacheNamespace.MENTORSHIP, "mentors", domain)]


def _enters_or_leaves(event: MentorshipRequestChange, status: RequestStatus) -> bool:
    if event.operation is Operation.UPDATE:
        return (event.previous_status is status) != (event.status is status)
    return event.status is status


def request_keys(event: MentorshipRequestChange, context: RoutingContext) -> list[CacheKey]:
    viewer = context.viewer_id
    if viewer is None or not event.involves(viewer):
        return []

    ns = CacheNamespace.MENTORSHIP
    keys: list[CacheKey] = []
    if event.requester_id == viewer:
        keys.append((ns, "requests", "requester", viewer))
    if event.counterparty_id == viewer:
        keys.append((ns, "requests", "counterparty", viewer))
        keys.append((ns, "pending-count", viewer))
    if event.request_id is not None:
        keys.append((ns, "request", event.request_id))
    if _enters_or_leaves(event, RequestStatus.ACCEPTED):
        keys.append((ns, "connections", viewer))
    return keys


def connection_keys(event: ConnectionChange, context: RoutingContext) -> list[CacheKey]:
    viewer = context.viewer_id
    if viewer is None or not event.involves(viewer):
        return []
    return [
        (CacheNamespace.CONNECTIONS, viewer),
        (CacheNamespace.CONNECTIONS, "count", viewer),
    ]


DEFAULT_RULES: Final[tuple[RoutingRule, ...]] = (
    RoutingRule("identity", ProfileChange, identity_keys),
    RoutingRule("mentor-directory", MentorshipOfferChange, mentor_directory_keys),
    RoutingRule("my-requests", MentorshipRequestChange, request_keys),
    RoutingRule("connections", ConnectionChange, connection_keys),
)


def create_default_router(
    store: CacheStore,
    context: RoutingContext | None = None,
) -> InvalidationRouter:
    """Build a router with the standard campus rules."""
    return InvalidationRouter(store, DEFAULT_RULES, context)
