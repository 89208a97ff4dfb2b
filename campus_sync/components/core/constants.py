"""
Realtime Sync Constants.

Operational constants with the reasoning behind each value.
Values that deployments tune live in Settings instead.
"""

from typing import Final, Protocol

__all__ = [
    "SyncConstants",
    "CacheNamespace",
    "HasStats",
]


class SyncConstants:
    """
    Realtime sync operational constants.

    These are internal implementation details. Tunable values
    (TTLs, reconnect backoff, channel limit) are read from
    `campus_sync.shared.config.settings` instead.
    """

    # ==========================================================================
    # Event Decoding
    # ==========================================================================

    # MAX_RECORD_FIELDS: 200
    # Rationale: The widest row pushed to the client (profiles) has ~60
    # columns. A record with more than 200 keys is a malformed or hostile
    # payload and is rejected at the transport boundary.
    MAX_RECORD_FIELDS: Final[int] = 200

    # MAX_DECODE_FAILURES_LOGGED: 100
    # Rationale: Log the first 100 decode failures per transport, then only
    # every DECODE_LOG_INTERVAL-th one to keep a bad publisher from flooding logs.
    MAX_DECODE_FAILURES_LOGGED: Final[int] = 100
    DECODE_LOG_INTERVAL: Final[int] = 100

    # ==========================================================================
    # Transport Timeouts
    # ==========================================================================

    # LISTENER_POLL_TIMEOUT: 1 second
    # Rationale: get_message() timeout for the pub/sub listener. Short enough
    # that cancellation is observed promptly, long enough to avoid busy-looping.
    LISTENER_POLL_TIMEOUT: Final[float] = 1.0

    # MAX_MESSAGE_BYTES: 64 KB
    # Rationale: One row with before and after images stays well under 16 KB.
    # Larger messages are dropped before JSON parsing.
    MAX_MESSAGE_BYTES: Final[int] = 64 * 1024

    # EVENT_CALLBACK_TIMEOUT: 5 seconds
    # Rationale: on_event only invalidates keys and folds records; if it
    # blocks longer than this something downstream is stuck. The event is
    # dropped and logged so the listener keeps draining the channel.
    EVENT_CALLBACK_TIMEOUT: Final[float] = 5.0

    # ==========================================================================
    # Single-flight
    # ==========================================================================

    # MAX_INFLIGHT_FETCHES: 256
    # Rationale: One session reads a few dozen keys. More outstanding fetches
    # than this means keys are being generated per render; logged as a warning.
    MAX_INFLIGHT_FETCHES: Final[int] = 256


class CacheNamespace:
    """Leading element of every cache key, one per cached resource family."""

    IDENTITY: Final[str] = "identity"
    MENTORSHIP: Final[str] = "mentorship"
    CONNECTIONS: Final[str] = "connections"


class HasStats(Protocol):
    """
    Protocol for components that provide statistics.

    All stats methods should return a dict with string keys.
    """

    def get_stats(self) -> dict[str, int | float | str | bool]:
        """Return component statistics as a dictionary."""
        ...
