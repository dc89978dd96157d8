"""Infrastructure layer for lotsync.

Holds adapters for HTTP, persistence and observability. Submodules are
imported explicitly by their callers.
"""
