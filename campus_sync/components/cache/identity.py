"""
Identity snapshot cache.

The server-authoritative identity tuple (user id, college domain, role,
source) read once after sign-in and kept until an auth transition or an
identity-critical profile change invalidates it. Every permission check and
domain-isolation filter reads identity from here.

Loading and absent are different answers: a user with no profile yet needs
onboarding, a user whose identity is still loading (or failed to load) does
not, and is never redirected on a network error.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping

from pydantic import BaseModel, ConfigDict, ValidationError

from campus_sync.components.cache.store import CacheKey, QueryCache
from campus_sync.components.core.constants import CacheNamespace
from campus_sync.shared.config.logging import get_logger, mask_user_id
from campus_sync.shared.config.settings import settings
from campus_sync.shared.exceptions import IdentityFetchError

logger = get_logger(__name__)

IdentityFetcher = Callable[[], Awaitable[Mapping[str, Any] | None]]
IdentityListener = Callable[["IdentitySnapshot | None", "IdentitySnapshot | None"], None]

# Server marker for an authenticated user without a profile row
NO_PROFILE_ERROR = "no_profile"

ALUMNI_SOURCES = frozenset({"alumni", "alumni_invite_pending_onboarding"})


class IdentitySnapshot(BaseModel):
    """Resolved identity context, replaced wholesale on refresh."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    user_id: str
    college_domain: str | None = None
    role: str | None = None
    source: str | None = None  # student | alumni | faculty | club
    is_verified: bool = False
    onboarding_complete: bool = False
    college_email: str | None = None

    @property
    def is_alumni(self) -> bool:
        return self.source in ALUMNI_SOURCES

    @property
    def is_student(self) -> bool:
        return self.source == "student"

    @property
    def is_faculty(self) -> bool:
        return self.source == "faculty"

    @property
    def is_club(self) -> bool:
        return self.source == "club"


class IdentityStatus(str, Enum):
    SIGNED_OUT = "signed_out"
    LOADING = "loading"
    RESOLVED = "resolved"
    NO_PROFILE = "no_profile"
    DEGRADED = "degraded"  # Last fetch failed; last-known-good (if any) still served


class AuthEventKind(str, Enum):
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"


@dataclass(frozen=True, slots=True)
class AuthEvent:
    """Auth session transition reported by the auth client."""

    kind: AuthEventKind
    user_id: str | None = None


def identity_key(user_id: str) -> CacheKey:
    return (CacheNamespace.IDENTITY, user_id)


def parse_identity_payload(payload: Mapping[str, Any] | None) -> IdentitySnapshot | None:
    """
    Turn an identity context payload into a snapshot.

    Returns:
        The snapshot, or None when the user has no profile yet.

    Raises:
        IdentityFetchError: Error payload other than no_profile, or a malformed payload.
    """
    if payload is None:
        return None

    error = payload.get("error")
    if error == NO_PROFILE_ERROR:
        return None
    if error:
        raise IdentityFetchError(str(error))

    try:
        return IdentitySnapshot.model_validate(dict(payload))
    except ValidationError as exc:
        raise IdentityFetchError(f"malformed identity payload: {exc.error_count()} errors") from exc


class IdentitySnapshotCache:
    """
    Session-wide identity snapshot with single-flight refresh.

    Concurrent readers share one fetch through the query cache. Fetch errors
    never discard the last-known-good snapshot; they are reported separately
    via `error` and `state`.

    Usage:
        identity = IdentitySnapshotCache(fetch_identity_context, store)
        identity.on_auth_transition(AuthEvent(AuthEventKind.SIGNED_IN, user_id))
        snapshot = await identity.get_identity()
    """

    def __init__(
        self,
        fetcher: IdentityFetcher,
        store: QueryCache,
        ttl: float | None = None,
    ) -> None:
        self._fetcher = fetcher
        self._store = store
        self._ttl = ttl if ttl is not None else settings.identity_ttl_seconds
        self._user_id: str | None = None
        self._snapshot: IdentitySnapshot | None = None
        self._resolved = False
        self._error: IdentityFetchError | None = None
        self._online = True
        self._listeners: list[IdentityListener] = []

    @property
    def user_id(self) -> str | None:
        return self._user_id

    @property
    def snapshot(self) -> IdentitySnapshot | None:
        """Last-known-good snapshot without fetching."""
        return self._snapshot

    @property
    def error(self) -> IdentityFetchError | None:
        """Error from the most recent fetch, cleared by the next success."""
        return self._error

    @property
    def online(self) -> bool:
        return self._online

    @property
    def state(self) -> IdentityStatus:
        if self._user_id is None:
            return IdentityStatus.SIGNED_OUT
        if self._error is not None:
            return IdentityStatus.DEGRADED
        if not self._resolved:
            return IdentityStatus.LOADING
        if self._snapshot is None:
            return IdentityStatus.NO_PROFILE
        return IdentityStatus.RESOLVED

    @property
    def needs_onboarding(self) -> bool:
        """
        True only on a definitive answer: profile missing or onboarding unfinished.

        False while loading, offline, or after a fetch error.
        """
        if not self._online:
            return False
        status = self.state
        if status is IdentityStatus.NO_PROFILE:
            return True
        if status is IdentityStatus.RESOLVED:
            return not self._snapshot.onboarding_complete
        return False

    def add_listener(self, listener: IdentityListener) -> None:
        """Call `listener(previous, current)` whenever the snapshot changes."""
        self._listeners.append(listener)

    def set_online(self, online: bool) -> None:
        self._online = online

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_identity(self) -> IdentitySnapshot | None:
        """
        Current identity, fetching it if absent or invalidated.

        Returns:
            The snapshot, None when signed out or without a profile, or the
            last-known-good snapshot when the fetch fails.
        """
        user_id = self._user_id
        if user_id is None:
            return None

        key = identity_key(user_id)
        generation = self._store.generation(key)
        try:
            snapshot = await self._store.fetch(key, self._load, ttl=self._ttl)
        except IdentityFetchError as exc:
            if self._user_id != user_id:
                return None
            if self._store.generation(key) != generation:
                return await self.get_identity()
            self._error = exc
            return self._snapshot

        # Signed out or switched user while the fetch was in flight
        if self._user_id != user_id:
            return None
        # Invalidated mid-flight: this result predates the invalidation, so
        # read again and get (or join) the fetch that started after it
        if self._store.generation(key) != generation:
            return await self.get_identity()

        self._error = None
        self._resolved = True
        self._replace(snapshot)
        return snapshot

    async def refresh(self) -> IdentitySnapshot | None:
        """Invalidate then refetch."""
        if self._user_id is not None:
            self._store.invalidate(identity_key(self._user_id))
        return await self.get_identity()

    async def _load(self) -> IdentitySnapshot | None:
        try:
            payload = await self._fetcher()
        except IdentityFetchError:
            raise
        except Exception as exc:
            raise IdentityFetchError(str(exc) or type(exc).__name__) from exc
        return parse_identity_payload(payload)

    # =========================================================================
    # Auth transitions
    # =========================================================================

    def on_auth_transition(self, event: AuthEvent) -> asyncio.Task | None:
        """
        React to an auth session change.

        Sign-out clears the snapshot synchronously, so no reader observes the
        previous user's identity afterwards. Sign-in and token refresh
        invalidate synchronously and schedule a refresh.

        Returns:
            The scheduled refresh task, or None for sign-out.
        """
        if event.kind is AuthEventKind.SIGNED_OUT or event.user_id is None:
            self._sign_out()
            return None

        if event.user_id != self._user_id:
            if self._user_id is not None:
                self._store.remove(identity_key(self._user_id))
            self._user_id = event.user_id
            self._resolved = False
            self._error = None
            self._replace(None)

        self._store.invalidate(identity_key(event.user_id))
        logger.info(
            "Identity invalidated by auth transition",
            auth_event=event.kind.value,
            user=mask_user_id(event.user_id),
        )
        return asyncio.get_running_loop().create_task(self.refresh())

    def _sign_out(self) -> None:
        if self._user_id is not None:
            self._store.remove(identity_key(self._user_id))
            logger.info("Identity cleared on sign-out", user=mask_user_id(self._user_id))
        self._user_id = None
        self._resolved = False
        self._error = None
        self._replace(None)

    def _replace(self, snapshot: IdentitySnapshot | None) -> None:
        previous = self._snapshot
        self._snapshot = snapshot
        if previous == snapshot:
            return
        for listener in list(self._listeners):
            try:
                listener(previous, snapshot)
            except Exception:
                logger.error("Identity listener failed", exc_info=True)
