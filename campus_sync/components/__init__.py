"""
Realtime sync components.

- core/       - Operational constants and shared protocols
- events/     - Change event variants, channel catalogue, invalidation router
- cache/      - Query cache with single-flight, identity snapshot
- requests/   - Collaboration request transitions, models, service
- resilience/ - Reconnect backoff policy

Import from the specific submodule; this package re-exports nothing so the
submodules can import each other without cycles.
"""
