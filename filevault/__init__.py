"""
FileVault upload core.

In-memory chunked upload sessions and TTL cache used by the file service.
"""
__version__ = "1.0.0"
