"""
Realtime session orchestrator.

Wires the registry, router, caches, request service and reconnection
supervisor for one authenticated user, and tears them all down again on
sign-out. Nothing here is a module-level singleton: each session owns its
components and can be started and closed independently.

Usage:
    async with RealtimeSession(transport, fetch_identity, backend) as session:
        await session.start(user_id)
        ...
        await session.on_auth_event(AuthEvent(AuthEventKind.SIGNED_OUT))
"""

from __future__ import annotations

import asyncio
from typing import Any

from campus_sync.components.cache.identity import (
    AuthEvent,
    AuthEventKind,
    IdentityFetcher,
    IdentitySnapshot,
    IdentitySnapshotCache,
)
from campus_sync.components.cache.store import QueryCache
from campus_sync.components.core.constants import CacheNamespace
from campus_sync.components.events.channels import (
    ChannelSpec,
    mentorship_offers,
    session_channels,
)
from campus_sync.components.events.router import (
    InvalidationRouter,
    RoutingContext,
    create_default_router,
)
from campus_sync.components.events.types import ChangeEvent, MentorshipRequestChange
from campus_sync.components.requests.service import (
    CollaborationRequestService,
    RequestBackend,
)
from campus_sync.reconnection_supervisor import AppState, ReconnectionSupervisor
from campus_sync.shared.config.logging import (
    audit_session_event,
    bind_session_id,
    get_logger,
    mask_user_id,
    new_session_id,
)
from campus_sync.shared.exceptions import ChannelLimitExceededError
from campus_sync.subscription_registry import PushTransport, SubscriptionRegistry

logger = get_logger(__name__)


class RealtimeSession:
    """
    One signed-in user's realtime sync lifecycle.

    Inbound events are routed to cache invalidations and, for collaboration
    requests, folded into the request service's known view. A change of the
    user's college domain re-scopes the mentor directory channel.
    """

    def __init__(
        self,
        transport: PushTransport,
        identity_fetcher: IdentityFetcher,
        request_backend: RequestBackend,
        store: QueryCache | None = None,
        supervisor: ReconnectionSupervisor | None = None,
        max_channels: int | None = None,
    ):
        self.store = store or QueryCache()
        self.registry = SubscriptionRegistry(transport, max_channels=max_channels)
        self.router: InvalidationRouter = create_default_router(self.store)
        self.identity = IdentitySnapshotCache(identity_fetcher, self.store)
        self.requests = CollaborationRequestService(request_backend, self.store)
        self.supervisor = supervisor or ReconnectionSupervisor(self.registry)

        self._session_id = ""
        self._user_id: str | None = None
        self._domain: str | None = None
        self._started = False
        self._closed = False
        self._tasks: set[asyncio.Task] = set()
        self._events_received = 0

        self.identity.add_listener(self._on_identity_changed)

    async def __aenter__(self) -> "RealtimeSession":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @property
    def user_id(self) -> str | None:
        return self._user_id

    @property
    def college_domain(self) -> str | None:
        return self._domain

    @property
    def started(self) -> bool:
        return self._started

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self, user_id: str) -> IdentitySnapshot | None:
        """
        Resolve identity and open the user's standard channels.

        Starting again for the same user is a no-op; starting for another
        user tears the previous user's channels and cache down first.

        Returns:
            The resolved identity snapshot (None if the user has no profile yet).
        """
        if self._closed:
            raise RuntimeError("Session is closed")
        if self._started and self._user_id == user_id:
            return self.identity.snapshot
        if self._user_id is not None and self._user_id != user_id:
            audit_session_event("USER_SWITCH", self._user_id, next_user=mask_user_id(user_id))
            await self._teardown()

        self._session_id = new_session_id()
        bind_session_id(self._session_id)
        self._user_id = user_id
        refresh = self.identity.on_auth_transition(AuthEvent(AuthEventKind.SIGNED_IN, user_id))
        snapshot = await refresh if refresh is not None else None
        if self._user_id != user_id:
            # Signed out while identity was loading
            return None

        self._domain = snapshot.college_domain if snapshot is not None else None
        self.router.set_context(RoutingContext(user_id, self._domain))

        await self._open_channels(session_channels(user_id, self._domain))
        self._started = True
        self.supervisor.start()

        audit_session_event(
            "START",
            user_id,
            college_domain=self._domain,
            channels=self.registry.size,
            pending=len(self.registry.get_pending_channels()),
        )
        if self.registry.get_pending_channels():
            self.supervisor.request_reconnect("initial open failed")
        return snapshot

    async def close(self) -> None:
        """Stop the supervisor and tear down every channel. Idempotent."""
        if self._closed:
            return
        self._closed = True
        await self._teardown()
        logger.info("Realtime session closed")

    async def _teardown(self) -> None:
        self._started = False
        await self.supervisor.stop()

        tasks, self._tasks = self._tasks, set()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("Error in session task during teardown", error=str(e))

        if self.identity.user_id is not None:
            self.identity.on_auth_transition(AuthEvent(AuthEventKind.SIGNED_OUT))
        await self.registry.unsubscribe_all()
        self.store.clear()
        self._user_id = None
        self._domain = None
        self.router.set_context(RoutingContext())
        bind_session_id("")

    # =========================================================================
    # Host signals
    # =========================================================================

    async def on_auth_event(self, event: AuthEvent) -> IdentitySnapshot | None:
        """
        Apply an auth session transition.

        Sign-out clears identity before anything is awaited, then tears the
        session's channels and cache down.
        """
        if event.kind is AuthEventKind.SIGNED_OUT or event.user_id is None:
            self.identity.on_auth_transition(AuthEvent(AuthEventKind.SIGNED_OUT))
            if self._user_id is not None:
                audit_session_event("SIGN_OUT", self._user_id)
            await self._teardown()
            return None

        if event.user_id != self._user_id or not self._started:
            return await self.start(event.user_id)

        refresh = self.identity.on_auth_transition(event)
        return await refresh if refresh is not None else None

    def on_app_state_change(self, state: AppState) -> asyncio.Task | None:
        return self.supervisor.on_app_state_change(state)

    def on_connectivity_change(self, online: bool) -> asyncio.Task | None:
        self.identity.set_online(online)
        return self.supervisor.on_connectivity_change(online)

    # =========================================================================
    # Channels
    # =========================================================================

    async def _open_channels(self, specs: list[ChannelSpec]) -> None:
        for spec in specs:
            if self.registry.has(spec.name):
                continue
            await self._open(spec)

    async def _open(self, spec: ChannelSpec) -> bool:
        try:
            await self.registry.open(spec.name, spec.filter, self._on_event)
            return True
        except ChannelLimitExceededError:
            return False
        except Exception as e:
            logger.warning("Channel left pending after open failure", channel=spec.name, error=str(e))
            return False

    def _on_event(self, event: ChangeEvent) -> None:
        self._events_received += 1
        self.router.dispatch(event)
        if isinstance(event, MentorshipRequestChange):
            self.requests.apply_change(event)

    def _on_identity_changed(
        self,
        previous: IdentitySnapshot | None,
        current: IdentitySnapshot | None,
    ) -> None:
        if not self._started or current is None:
            return
        if current.college_domain == self._domain:
            return
        task = asyncio.get_running_loop().create_task(
            self._rescope_domain(current.college_domain),
            name="rescope-domain",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _rescope_domain(self, domain: str | None) -> None:
        """Move the mentor directory channel to a new college domain."""
        old, self._domain = self._domain, domain
        if self._user_id is None or old == domain:
            return
        self.router.set_context(RoutingContext(self._user_id, domain))

        if old:
            await self.registry.unsubscribe(mentorship_offers(old).name)
            self.store.invalidate((CacheNamespace.MENTORSHIP, "mentors", old))
        if domain:
            await self._open(mentorship_offers(domain))

        audit_session_event("RESCOPE", self._user_id, previous_domain=old, college_domain=domain)

    def get_stats(self) -> dict[str, Any]:
        return {
            "session_id": self._session_id,
            "user": mask_user_id(self._user_id),
            "started": self._started,
            "events_received": self._events_received,
            "identity_status": self.identity.state.value,
            "registry": self.registry.get_stats(),
            "router": self.router.get_stats(),
            "cache": self.store.get_stats(),
            "supervisor": self.supervisor.get_stats(),
        }
