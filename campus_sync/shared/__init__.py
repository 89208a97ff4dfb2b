"""
Shared infrastructure for the realtime sync layer: configuration, logging, errors.
"""
