"""
Campus realtime sync.

Keeps a campus client's local caches consistent with server push
notifications: named channel registry, invalidation routing, identity
snapshot, collaboration request workflow and reconnection policy.
"""
